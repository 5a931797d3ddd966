"""Download assets from the asset host and upload them to the object store.

Both stages run over the manifest with a fixed number of asyncio workers
draining one queue, so each asset is owned by exactly one worker per stage.
Failures are recorded on the asset and never abort the batch; the next
pipeline run retries whatever is still incomplete.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import posixpath
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

import aiohttp
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from filetype import guess

from .canonical import (
    apply_key_suffix,
    content_type_from_key,
    extension_from_content_type,
    has_image_extension,
    resolve_final_key,
)
from .config import DEFAULT_CACHE_CONTROL, StoreSettings
from .errors import TransferError
from .manifest import ManifestAsset

logger = logging.getLogger("assetmigrate")

T = TypeVar("T")

OUTCOME_OK = "ok"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
REASON_KEY_COLLISION = "key-collision"
REASON_UNEXPECTED = "unexpected"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_SUFFIX_LENGTH = 8


@dataclass(slots=True)
class TransferOptions:
    """Worker pool, retry and upload settings shared by both stages.

    ``suffix_length`` is set only when a ``--key-suffix`` mode is active.
    """

    downloads_dir: Path
    concurrency: int = 4
    max_attempts: int = 3
    backoff_sec: float = 0.3
    delay_sec: float = 0.0
    suffix_length: int | None = None
    cache_control: str = DEFAULT_CACHE_CONTROL


@dataclass(slots=True)
class TransferStats:
    """Per-stage outcome counts for the final summary line."""

    stage: str
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: Counter[str] = field(default_factory=Counter)

    def record(self, outcome: str, reason: str | None = None) -> None:
        if outcome == OUTCOME_OK:
            self.succeeded += 1
        elif outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.errors[reason or "unknown"] += 1


class RequestScheduler:
    """Ensure a minimum delay between request starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so requests are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


class ObjectStore(Protocol):
    """Anything that can store one object under a key."""

    def put_object(self, key: str, body: bytes, content_type: str, cache_control: str) -> None:
        ...


class S3ObjectStore:
    """``put_object`` against an S3-compatible endpoint (Cloudflare R2 by default)."""

    def __init__(self, settings: StoreSettings, client: Any = None) -> None:
        self.bucket = settings.bucket
        config = BotoConfig(
            connect_timeout=5,
            read_timeout=60,
            retries={"max_attempts": 3, "mode": "standard"},
        )
        self.client = client or boto3.client(
            "s3",
            region_name="auto",
            endpoint_url=settings.endpoint,
            aws_access_key_id=settings.access_key_id,
            aws_secret_access_key=settings.secret_access_key,
            config=config,
        )

    def put_object(self, key: str, body: bytes, content_type: str, cache_control: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                CacheControl=cache_control,
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"put_object failed for {key}: {exc}", reason="put-failed") from exc


async def run_pool(items: Iterable[T], concurrency: int, handler: Callable[[T], Awaitable[None]]) -> None:
    """Run ``handler`` over ``items`` with at most ``concurrency`` in flight.

    Workers claim items from a shared queue, so no item is handled twice.
    Returns once every worker has drained the queue.
    """
    queue: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    if queue.empty():
        return

    async def worker() -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await handler(item)

    worker_count = min(max(1, concurrency), queue.qsize())
    await asyncio.gather(*(worker() for _ in range(worker_count)))


async def fetch_bytes(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    url: str,
    options: TransferOptions,
) -> tuple[bytes, str | None]:
    """Fetch URL with retry/backoff. Return (body, content_type) or raise TransferError."""
    last_error = f"no attempts made for {url}"
    reason = "network"
    for attempt in range(options.max_attempts):
        try:
            await scheduler.wait_turn()
            async with session.get(url) as resp:
                if 200 <= resp.status < 300:
                    return await resp.read(), resp.headers.get("Content-Type")
                last_error = f"HTTP {resp.status} for {url}"
                reason = f"http-{resp.status}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_error = f"request failed for {url}: {exc!r}"
            reason = "network"
        if attempt + 1 < options.max_attempts:
            delay = options.backoff_sec * (2**attempt)
            logger.debug("Attempt %s failed (%s); retrying in %.2fs", attempt + 1, last_error, delay)
            await asyncio.sleep(delay)
    raise TransferError(f"{last_error} after {options.max_attempts} attempts", reason=reason)


def detect_image_type(data: bytes) -> str | None:
    """Sniff an image MIME type from the file signature."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        return kind.mime
    return None


def resolve_key_and_type(key_base: str, header_type: str | None, body: bytes) -> tuple[str, str | None]:
    """Pick the storage key and content type for downloaded bytes.

    The key extension comes from the ``Content-Type`` header when it maps to a
    known extension, otherwise from the sniffed bytes. The content type prefers
    an ``image/*`` header, then the sniffed type, then the key extension.
    """
    header = header_type.split(";")[0].strip().lower() if header_type else None
    sniffed = None if extension_from_content_type(header) else detect_image_type(body)
    final_key = resolve_final_key(key_base, header if sniffed is None else sniffed)
    if not has_image_extension(final_key):
        logger.warning("No known image extension for %s (Content-Type=%s); keeping key as-is", key_base, header_type)
    if header and header.startswith("image/"):
        return final_key, header
    return final_key, sniffed or content_type_from_key(final_key) or header


def check_key(key: str) -> str:
    """Reject storage keys that are not plain relative object paths."""
    segments = key.split("/")
    if "\x00" in key or any(segment in ("", ".", "..") for segment in segments):
        raise TransferError(f"unsafe storage key {key!r}", reason="unsafe-key")
    return key


def local_name(sha256: str, final_key: str) -> str:
    """Content-addressed location of downloaded bytes inside the downloads dir."""
    return f"{sha256[:2]}/{sha256}{posixpath.splitext(final_key)[1].lower()}"


def download_destination(downloads_dir: Path, name: str) -> Path:
    """Absolute path for ``name``, refusing anything outside ``downloads_dir``."""
    root = downloads_dir.resolve()
    try:
        destination = (root / name).resolve()
    except (OSError, ValueError) as exc:
        raise TransferError(f"cannot store {name!r}: {exc}", reason="unsafe-key") from exc
    if not destination.is_relative_to(root) or destination == root:
        raise TransferError(f"{name!r} escapes the downloads directory", reason="unsafe-key")
    return destination


async def download_asset(
    asset: ManifestAsset,
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    options: TransferOptions,
) -> tuple[str, str | None]:
    """Download one asset. Returns (outcome, failure reason)."""
    if asset.status.downloaded:
        if asset.download_path and Path(asset.download_path).exists():
            return OUTCOME_SKIPPED, None
        logger.info("Downloaded file missing for %s; fetching again", asset.canonical_url)
        asset.status.downloaded = False
    if not asset.key_base:
        asset.error = "Missing keyBase for download."
        asset.status.uploaded = False
        return OUTCOME_FAILED, "missing-key-base"

    try:
        body, header_type = await fetch_bytes(session, scheduler, asset.download_url, options)
        sha256 = hashlib.sha256(body).hexdigest()
        final_key, content_type = resolve_key_and_type(asset.key_base, header_type, body)
        if asset.needs_suffix:
            final_key = apply_key_suffix(final_key, sha256[: options.suffix_length or DEFAULT_SUFFIX_LENGTH])
        check_key(final_key)
        destination = download_destination(options.downloads_dir, local_name(sha256, final_key))
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
    except (TransferError, OSError) as exc:
        asset.error = str(exc)
        asset.status.downloaded = False
        asset.status.uploaded = False
        logger.warning("Download failed for %s: %s", asset.canonical_url, exc)
        return OUTCOME_FAILED, getattr(exc, "reason", "write-failed")

    if asset.status.uploaded and (asset.sha256 != sha256 or asset.final_key != final_key):
        logger.info("Content changed for %s; it will be uploaded again", asset.canonical_url)
        asset.status.uploaded = False
    asset.sha256 = sha256
    asset.bytes = len(body)
    asset.content_type = content_type
    asset.final_key = final_key
    asset.download_path = str(destination)
    asset.status.downloaded = True
    asset.error = None
    logger.debug("Downloaded %s -> %s (%s bytes)", asset.download_url, final_key, len(body))
    return OUTCOME_OK, None


def resolve_key_conflicts(assets: list[ManifestAsset], suffix_length: int | None) -> list[ManifestAsset]:
    """Keep distinct downloaded bytes from sharing one final key.

    Keys that differ in the plan can still meet after an extension is
    inferred (``blog/a`` served as PNG next to ``blog/a.png``). With a suffix
    mode each conflicting key gets its content hash appended. Otherwise every
    asset in the group is failed and its final key cleared. Returns the
    failed assets.
    """
    groups: dict[str, list[ManifestAsset]] = {}
    for asset in assets:
        if asset.status.downloaded and asset.final_key:
            groups.setdefault(asset.final_key, []).append(asset)

    failed: list[ManifestAsset] = []
    for key, group in sorted(groups.items()):
        if len({asset.sha256 for asset in group}) < 2:
            continue
        urls = ", ".join(sorted(asset.canonical_url for asset in group))
        if suffix_length:
            for asset in group:
                asset.final_key = apply_key_suffix(key, asset.sha256[:suffix_length])
                asset.status.uploaded = False
            logger.warning("Final key %s shared by %s; appended content suffixes", key, urls)
            continue
        for asset in group:
            asset.error = f"Key collision: {key} -> {urls}. Use --key-suffix sha8 to disambiguate."
            asset.final_key = None
            asset.status.downloaded = False
            asset.status.uploaded = False
            failed.append(asset)
        logger.error("Final key %s shared by %s", key, urls)
    return failed


async def download_assets(
    assets: list[ManifestAsset],
    session: aiohttp.ClientSession,
    options: TransferOptions,
) -> TransferStats:
    """Download every pending asset; mutates the manifest entries in place."""
    options.downloads_dir.mkdir(parents=True, exist_ok=True)
    scheduler = RequestScheduler(options.delay_sec)
    outcomes: dict[int, tuple[str, str | None]] = {}

    async def handle(asset: ManifestAsset) -> None:
        try:
            outcomes[id(asset)] = await download_asset(asset, session, scheduler, options)
        except Exception as exc:
            logger.exception("Unexpected error downloading %s", asset.canonical_url)
            asset.error = f"Unexpected error: {exc!r}"
            asset.status.downloaded = False
            asset.status.uploaded = False
            outcomes[id(asset)] = (OUTCOME_FAILED, REASON_UNEXPECTED)

    await run_pool(assets, options.concurrency, handle)
    for asset in resolve_key_conflicts(assets, options.suffix_length):
        outcomes[id(asset)] = (OUTCOME_FAILED, REASON_KEY_COLLISION)

    stats = TransferStats(stage="download")
    for outcome, reason in outcomes.values():
        stats.record(outcome, reason)
    logger.info("Download complete: ok=%s skipped=%s failed=%s", stats.succeeded, stats.skipped, stats.failed)
    return stats


async def upload_asset(asset: ManifestAsset, store: ObjectStore, options: TransferOptions) -> tuple[str, str | None]:
    """Upload one downloaded asset. Returns (outcome, failure reason)."""
    if not asset.status.downloaded or asset.status.uploaded:
        return OUTCOME_SKIPPED, None
    if not asset.final_key:
        asset.error = "Missing finalKey for upload."
        return OUTCOME_FAILED, "missing-final-key"
    if not asset.download_path or not Path(asset.download_path).exists():
        asset.error = f"Missing downloaded file at {asset.download_path}"
        return OUTCOME_FAILED, "missing-file"

    try:
        body = Path(asset.download_path).read_bytes()
        await asyncio.to_thread(
            store.put_object,
            asset.final_key,
            body,
            asset.content_type or DEFAULT_CONTENT_TYPE,
            options.cache_control,
        )
    except (TransferError, OSError) as exc:
        asset.error = str(exc)
        asset.status.uploaded = False
        logger.warning("Upload failed for %s: %s", asset.final_key, exc)
        return OUTCOME_FAILED, getattr(exc, "reason", "read-failed")

    asset.status.uploaded = True
    asset.error = None
    logger.debug("Uploaded %s", asset.final_key)
    return OUTCOME_OK, None


async def upload_assets(assets: list[ManifestAsset], store: ObjectStore, options: TransferOptions) -> TransferStats:
    """Upload every downloaded, not-yet-uploaded asset."""
    stats = TransferStats(stage="upload")

    async def handle(asset: ManifestAsset) -> None:
        try:
            outcome, reason = await upload_asset(asset, store, options)
        except Exception as exc:
            logger.exception("Unexpected error uploading %s", asset.final_key)
            asset.error = f"Unexpected error: {exc!r}"
            asset.status.uploaded = False
            outcome, reason = OUTCOME_FAILED, REASON_UNEXPECTED
        stats.record(outcome, reason)

    await run_pool(assets, options.concurrency, handle)
    logger.info("Upload complete: ok=%s skipped=%s failed=%s", stats.succeeded, stats.skipped, stats.failed)
    return stats
