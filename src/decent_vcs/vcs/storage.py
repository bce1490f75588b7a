"""Content-addressed object transfer.

``ContentStore`` moves file contents between the working tree and object
storage.  Objects are keyed by content hash inside a project namespace,
so identical content is stored once across paths and commits.

Transfers go through presigned URLs issued by the metadata service:

1. Objects are split into batches of ``config.batch_size``.
2. Each batch is presigned with one ``presign_many`` call.
3. The batch is transferred on a thread pool bounded by the upload or
   download pool size.

Uploads are zstd-compressed when enabled and switch to multipart once
the payload exceeds ``config.multipart_threshold``.  Every open multipart
upload is journaled so an interrupted run can be aborted on the next one.
Downloads land in a scratch directory and are moved into the working tree
only once complete.
"""

from __future__ import annotations

import json
import logging
import math
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)
from zstandard import ZstdError

from ..config import Config
from ..core.client import ApiClient
from ..exceptions import (
    MultipartUploadError,
    NotFoundError,
    ObjectNotFoundError,
    TransferError,
)
from ..file_handler import move_into_place
from ..models import (
    AbortMultipartRequest,
    CompleteMultipartRequest,
    HashMap,
    MultipartPart,
    PresignRequest,
    PresignResponse,
)
from .compression import compress_file, decompress_file, is_compressed
from .scanner import from_key

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/octet-stream"
DEFAULT_JOURNAL_DIR = Path.home() / ".decent" / "tmp"

_CHUNK_SIZE = 1024 * 1024
_SLOW_DOWN_MARKER = b"<Code>SlowDown</Code>"


def chunked(items: list, size: int) -> Iterator[list]:
    """Yield successive *size*-length slices of *items*."""
    for start in range(0, len(items), size):
        yield items[start : start + size]


def is_slow_down(body: bytes) -> bool:
    """Return ``True`` for a storage provider "slow down" XML error body."""
    return body.lstrip().startswith(b"<?xml") and _SLOW_DOWN_MARKER in body


def _source_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError as exc:
        raise TransferError(f"Cannot read {path} for upload: {exc}") from exc


def check_storage_response(
    response: requests.Response, action: str, key: str
) -> None:
    """Raise a ``TransferError`` for a failed object-storage response."""
    if response.status_code < 300:
        return

    body = response.content or b""
    if is_slow_down(body):
        raise TransferError(
            f"Failed to {action} object {key}: storage provider asked to "
            "slow down",
            remedy="Lower DECENT_UPLOAD_POOL_SIZE / DECENT_DOWNLOAD_POOL_SIZE "
            "and retry.",
        )
    raise TransferError(
        f"Failed to {action} object {key}: received HTTP status "
        f"{response.status_code}"
    )


class MultipartJournal:
    """On-disk record of multipart uploads that have not finished.

    One JSON file per upload ID.  Entries are removed once an upload is
    completed or aborted; anything left over belongs to an interrupted
    run.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _entry_path(self, upload_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in upload_id)
        return self.directory / f"multipart-{safe}.json"

    def record(self, project_id: str, key: str, upload_id: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        entry = {"project": project_id, "key": key, "upload_id": upload_id}
        self._entry_path(upload_id).write_text(
            json.dumps(entry), encoding="utf-8"
        )

    def forget(self, upload_id: str) -> None:
        self._entry_path(upload_id).unlink(missing_ok=True)

    def pending(self, project_id: str) -> list[dict]:
        """Return journaled uploads belonging to *project_id*."""
        if not self.directory.is_dir():
            return []
        entries = []
        for path in sorted(self.directory.glob("multipart-*.json")):
            try:
                entry = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Discarding unreadable journal %s: %s", path, exc)
                path.unlink(missing_ok=True)
                continue
            if entry.get("project") == project_id:
                entries.append(entry)
        return entries


class ContentStore:
    """Upload and download content-addressed objects for a project.

    Args:
        config: Transfer tuning (pool sizes, batch size, part size, ...).
        client: Metadata service client used for presigning.
        journal_dir: Where open multipart uploads are recorded.
    """

    def __init__(
        self,
        config: Config,
        client: ApiClient,
        journal_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.journal = MultipartJournal(journal_dir or DEFAULT_JOURNAL_DIR)
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local session for presigned URLs.

        Presigned URLs carry their own signature, so this session has no
        Authorization header.
        """
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = requests.Session()
        return self._thread_local.session

    @contextmanager
    def _progress(
        self, description: str, total: int | None
    ) -> Iterator[Callable[[int], None]]:
        """Yield an ``advance(nbytes)`` callback backed by a rich progress bar.

        A ``None`` total renders an open-ended byte counter, used when
        sizes are only known once responses arrive.
        """
        if not self.config.show_progress or total == 0:
            yield lambda _n: None
            return

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            transient=True,
        ) as progress:
            task = progress.add_task(description, total=total)
            yield lambda n: progress.update(task, advance=n)

    def _presign(
        self, project_id: str, requests_: list[PresignRequest]
    ) -> dict[str, PresignResponse]:
        responses = self.client.presign_many(project_id, requests_)
        by_key = {r.key: r for r in responses}
        missing = [r.key for r in requests_ if r.key not in by_key]
        if missing:
            raise TransferError(
                f"Storage did not presign {len(missing)} object(s): "
                + ", ".join(missing[:5])
            )
        return by_key

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def abort_leftover_uploads(self, project_id: str) -> int:
        """Abort multipart uploads journaled by an interrupted run.

        Returns:
            Number of uploads aborted.
        """
        aborted = 0
        for entry in self.journal.pending(project_id):
            request = AbortMultipartRequest(
                upload_id=entry["upload_id"], key=entry["key"]
            )
            try:
                self.client.abort_multipart_upload(project_id, request)
            except NotFoundError:
                logger.debug(
                    "Multipart upload %s already gone", request.upload_id
                )
            except TransferError as exc:
                logger.warning(
                    "Could not abort stale multipart upload for %s: %s",
                    request.key,
                    exc,
                )
                continue
            self.journal.forget(request.upload_id)
            aborted += 1

        if aborted:
            logger.info("Aborted %d interrupted multipart upload(s)", aborted)
        return aborted

    def upload_many(
        self, project_id: str, root: Path, path_to_hash: HashMap
    ) -> list[str]:
        """Upload the objects for *path_to_hash* from the tree at *root*.

        Identical hashes are uploaded once, and objects the server reports
        as already stored are skipped.

        Returns:
            Object keys that were actually transferred.

        Raises:
            TransferError: If any object fails to upload.
        """
        self.abort_leftover_uploads(project_id)

        sources: dict[str, Path] = {}
        for path, key in sorted(path_to_hash.items()):
            sources.setdefault(key, from_key(root, path))
        if not sources:
            return []

        sizes = {key: _source_size(path) for key, path in sources.items()}
        total = sum(sizes.values())
        keys = list(sources)
        uploaded: list[str] = []

        logger.debug("Uploading %d object(s) for %s", len(keys), project_id)
        with tempfile.TemporaryDirectory(prefix="decent-up-") as scratch, \
                self._progress("Uploading", total) as advance:
            for batch in chunked(keys, self.config.batch_size):
                payloads = {
                    key: self._prepare_payload(sources[key], Path(scratch), key)
                    for key in batch
                }
                presigned = self._presign(
                    project_id,
                    [
                        PresignRequest(
                            method="PUT",
                            key=key,
                            content_type=CONTENT_TYPE,
                            multipart=self._is_multipart(payloads[key]),
                            size=payloads[key].stat().st_size,
                        )
                        for key in batch
                    ],
                )

                workers = min(self.config.upload_pool_size, len(batch))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = {
                        key: pool.submit(
                            self._upload_one,
                            project_id,
                            payloads[key],
                            presigned[key],
                            sizes[key],
                            advance,
                        )
                        for key in batch
                    }
                for key, future in futures.items():
                    if future.result():
                        uploaded.append(key)

        logger.info(
            "Uploaded %d object(s), %d already stored",
            len(uploaded),
            len(keys) - len(uploaded),
        )
        return uploaded

    def _is_multipart(self, payload: Path) -> bool:
        return payload.stat().st_size > self.config.multipart_threshold

    def _prepare_payload(self, source: Path, scratch: Path, key: str) -> Path:
        """Return the file to send for *source*.

        Downloads decompress anything that starts with the zstd magic
        number, so content that already looks like a zstd frame is wrapped
        in one more frame even when compression is disabled.
        """
        if not self.config.compression:
            try:
                looks_compressed = is_compressed(source)
            except OSError as exc:
                raise TransferError(f"Failed to read {source}: {exc}") from exc
            if not looks_compressed:
                return source
            logger.debug("Wrapping %s: content starts with a zstd frame", source)
        dest = scratch / f"{key}.zst"
        try:
            compress_file(source, dest, level=self.config.compression_level)
        except OSError as exc:
            raise TransferError(f"Failed to compress {source}: {exc}") from exc
        return dest

    def _upload_one(
        self,
        project_id: str,
        payload: Path,
        presigned: PresignResponse,
        source_size: int,
        advance: Callable[[int], None],
    ) -> bool:
        if presigned.exists:
            logger.debug("Object %s already stored, skipping", presigned.key)
            advance(source_size)
            return False

        if presigned.upload_id:
            self._upload_multipart(project_id, payload, presigned)
        else:
            if len(presigned.urls) != 1:
                raise TransferError(
                    f"Expected one upload URL for object {presigned.key}, "
                    f"got {len(presigned.urls)}"
                )
            try:
                data = payload.read_bytes()
            except OSError as exc:
                raise TransferError(
                    f"Failed to read {payload} for object {presigned.key}: {exc}"
                ) from exc
            self._put(presigned.urls[0], data, presigned.key)
        advance(source_size)
        return True

    def _put(self, url: str, data: bytes, key: str) -> requests.Response:
        try:
            response = self._get_session().put(
                url,
                data=data,
                headers={"Content-Type": CONTENT_TYPE},
                timeout=(10, self.config.timeout),
            )
        except requests.RequestException as exc:
            raise TransferError(f"Failed to upload object {key}: {exc}") from exc
        check_storage_response(response, "upload", key)
        return response

    def _upload_multipart(
        self, project_id: str, payload: Path, presigned: PresignResponse
    ) -> None:
        """Upload *payload* in ``part_size`` parts, then complete the upload.

        Any failure aborts the upload so no partial object becomes visible.
        """
        key = presigned.key
        upload_id = presigned.upload_id
        size = payload.stat().st_size
        part_size = self.config.part_size
        expected = max(1, math.ceil(size / part_size))

        self.journal.record(project_id, key, upload_id)
        try:
            if len(presigned.urls) < expected:
                raise TransferError(
                    f"Expected {expected} part URLs for object {key}, "
                    f"got {len(presigned.urls)}"
                )

            parts: list[MultipartPart] = []
            with open(payload, "rb") as fh:
                for number, url in enumerate(presigned.urls[:expected], start=1):
                    data = fh.read(part_size)
                    response = self._put(url, data, key)
                    etag = response.headers.get("ETag", "").replace('"', "")
                    if not etag:
                        raise TransferError(
                            f"No ETag returned for part {number} of object {key}"
                        )
                    logger.debug(
                        "[%s] part %d/%d uploaded", key, number, expected
                    )
                    parts.append(MultipartPart(part_number=number, etag=etag))

            self.client.complete_multipart_upload(
                project_id,
                CompleteMultipartRequest(
                    upload_id=upload_id, key=key, parts=parts
                ),
            )
        except Exception as exc:
            logger.debug("Multipart upload of %s failed: %s", key, exc)
            try:
                self.client.abort_multipart_upload(
                    project_id,
                    AbortMultipartRequest(upload_id=upload_id, key=key),
                )
            except TransferError as abort_exc:
                # Stays journaled; the next upload retries the abort.
                logger.warning(
                    "Could not abort multipart upload for %s: %s",
                    key,
                    abort_exc,
                )
                raise MultipartUploadError(
                    f"Multipart upload of object {key} failed: {exc}"
                ) from exc
            self.journal.forget(upload_id)
            raise MultipartUploadError(
                f"Multipart upload of object {key} failed and was aborted: {exc}"
            ) from exc

        self.journal.forget(upload_id)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def download_many(
        self,
        project_id: str,
        dest_root: Path,
        path_to_hash: HashMap,
        allow_missing: bool = False,
    ) -> list[str]:
        """Download objects and write them to their paths under *dest_root*.

        Existing files are overwritten atomically.  Paths sharing a hash are
        fetched once.

        Args:
            project_id: Project namespace.
            dest_root: Directory the HashMap keys are relative to.
            path_to_hash: Paths to materialize and their content hashes.
            allow_missing: Collect paths whose object is absent instead of
                failing.

        Returns:
            Paths whose object was missing (always empty unless
            ``allow_missing`` is set).

        Raises:
            ObjectNotFoundError: If an object is missing and
                ``allow_missing`` is not set.
            TransferError: On any other transfer failure.
        """
        targets: dict[str, list[str]] = {}
        for path, key in sorted(path_to_hash.items()):
            targets.setdefault(key, []).append(path)
        if not targets:
            return []

        keys = list(targets)
        missing: list[str] = []

        logger.debug("Downloading %d object(s) for %s", len(keys), project_id)
        with tempfile.TemporaryDirectory(prefix="decent-down-") as scratch, \
                self._progress("Downloading", None) as advance:
            for batch in chunked(keys, self.config.batch_size):
                presigned = self._presign(
                    project_id,
                    [PresignRequest(method="GET", key=key) for key in batch],
                )
                workers = min(self.config.download_pool_size, len(batch))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = {
                        key: pool.submit(
                            self._download_one,
                            presigned[key],
                            Path(scratch),
                            dest_root,
                            targets[key],
                            advance,
                        )
                        for key in batch
                    }
                for key, future in futures.items():
                    try:
                        future.result()
                    except ObjectNotFoundError:
                        if not allow_missing:
                            raise
                        missing.extend(targets[key])

        if missing:
            logger.warning("%d object(s) missing from storage", len(missing))
        logger.info("Downloaded %d file(s)", len(path_to_hash) - len(missing))
        return missing

    def _download_one(
        self,
        presigned: PresignResponse,
        scratch: Path,
        dest_root: Path,
        paths: list[str],
        advance: Callable[[int], None],
    ) -> None:
        key = presigned.key
        if not presigned.urls:
            raise TransferError(f"No download URL for object {key}")

        raw = scratch / f"{key}.part"
        try:
            response = self._get_session().get(
                presigned.urls[0],
                stream=True,
                timeout=(10, self.config.timeout),
            )
        except requests.RequestException as exc:
            raise TransferError(
                f"Failed to download object {key}: {exc}"
            ) from exc

        with response:
            if response.status_code == 404:
                raise ObjectNotFoundError(key, path=paths[0])
            check_storage_response(response, "download", key)
            try:
                with open(raw, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        fh.write(chunk)
                        advance(len(chunk))
            except requests.RequestException as exc:
                raise TransferError(
                    f"Failed to download object {key}: {exc}"
                ) from exc
            except OSError as exc:
                raise TransferError(
                    f"Failed to store object {key} locally: {exc}"
                ) from exc

        if raw.stat().st_size < 4096 and is_slow_down(raw.read_bytes()):
            raise TransferError(
                f"Storage provider asked to slow down while downloading "
                f"object {key}"
            )

        content = raw
        if is_compressed(raw):
            content = scratch / key
            try:
                decompress_file(raw, content)
            except (ZstdError, OSError) as exc:
                raise TransferError(
                    f"Failed to decompress object {key}: {exc}"
                ) from exc
            raw.unlink()

        *copies, last = paths
        placements = [(path, scratch / f"{key}.copy") for path in copies]
        placements.append((last, content))
        for path, source in placements:
            try:
                if source is not content:
                    shutil.copyfile(content, source)
                move_into_place(source, from_key(dest_root, path))
            except OSError as exc:
                raise TransferError(
                    f"Failed to write {path} from object {key}: {exc}",
                    remedy="Check that the path is not a directory and is "
                    "writable, then retry.",
                ) from exc
        logger.debug("[%s] written to %s", key, ", ".join(paths))
