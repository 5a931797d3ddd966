"""Pure helpers for recognizing, canonicalizing and keying asset-host URLs.

Nothing in this module performs I/O. Every function is a deterministic
function of its arguments, which is what lets the plan and mapping stages be
re-run on unchanged input and produce identical artifacts.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit

IMAGEKIT_HOST = "ik.imagekit.io"
IMAGEKIT_ACCOUNT = "tempoimmaterial"

TRANSFORM_SEGMENT_PREFIXES = ("tr:", "tr-", "tr~")
VOLATILE_QUERY_PARAMS = frozenset({"tr", "updatedAt"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif", ".svg"})
CONTENT_TYPE_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/svg+xml": "svg",
}
EXTENSION_TO_CONTENT_TYPE = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}
# Characters that terminate a URL token inside source text.
URL_TERMINATORS = "\\s\"'()<>`"


@dataclass(frozen=True, slots=True)
class AssetHost:
    """The third-party host and account whose URLs are being migrated."""

    host: str = IMAGEKIT_HOST
    account: str = IMAGEKIT_ACCOUNT

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/{self.account}"


DEFAULT_ASSET_HOST = AssetHost()


@dataclass(slots=True)
class CanonicalAsset:
    """Canonical identity of one logical image on the asset host."""

    input_url: str
    canonical_url: str
    download_url: str
    path_after_account: str
    removed_path_transform: bool = False
    had_transform_param: bool = False
    had_updated_at: bool = False
    remaining_query: list[tuple[str, str]] = field(default_factory=list)


@lru_cache(maxsize=None)
def url_pattern(asset_host: AssetHost) -> re.Pattern[str]:
    """Regex matching every reference to ``asset_host`` inside arbitrary text."""
    return re.compile(
        r"(?:https?:)?//"
        + re.escape(asset_host.host)
        + "/"
        + re.escape(asset_host.account)
        + f"/[^{URL_TERMINATORS}]+"
    )


def extract_urls(text: str, asset_host: AssetHost = DEFAULT_ASSET_HOST) -> list[str]:
    """Return every asset-host URL in ``text`` in order of appearance."""
    if not text:
        return []
    return url_pattern(asset_host).findall(text)


def normalize_url(raw_url: str) -> str | None:
    """Expand protocol-relative URLs; return None for non-http(s) input."""
    if not raw_url:
        return None
    if raw_url.startswith("//"):
        return f"https:{raw_url}"
    if raw_url.startswith(("http://", "https://")):
        return raw_url
    return None


def is_path_transform_segment(segment: str) -> bool:
    """True for path segments like ``tr:w-1500`` that only select a rendition."""
    return bool(segment) and segment.startswith(TRANSFORM_SEGMENT_PREFIXES)


def canonicalize(raw_url: str, asset_host: AssetHost = DEFAULT_ASSET_HOST) -> CanonicalAsset | None:
    """Canonicalize ``raw_url`` or return None when it is not an asset-host URL.

    Leading transform path segments (``tr:w-1500``) and the ``tr`` and
    ``updatedAt`` query parameters are dropped. Other query parameters are
    kept, in their original order, because the host may need them to serve
    the original bytes. Paths whose percent-escapes do not decode as UTF-8
    are rejected.
    """
    normalized = normalize_url(raw_url)
    if normalized is None:
        return None
    try:
        parts = urlsplit(normalized)
        hostname = parts.hostname
    except ValueError:
        return None

    if parts.scheme not in ("http", "https") or hostname != asset_host.host.lower():
        return None
    segments = [segment for segment in parts.path.split("/") if segment]
    if not segments or segments[0] != asset_host.account:
        return None

    rest = segments[1:]
    removed_path_transform = False
    while rest and is_path_transform_segment(rest[0]):
        rest.pop(0)
        removed_path_transform = True

    encoded_path = "/".join(rest)
    try:
        path_after_account = unquote(encoded_path, errors="strict")
    except UnicodeDecodeError:
        return None

    params = parse_qsl(parts.query, keep_blank_values=True)
    remaining = [(key, value) for key, value in params if key not in VOLATILE_QUERY_PARAMS]
    canonical_url = f"{parts.scheme}://{asset_host.host.lower()}/{asset_host.account}/{encoded_path}"
    if remaining:
        canonical_url = f"{canonical_url}?{urlencode(remaining)}"

    return CanonicalAsset(
        input_url=raw_url,
        canonical_url=canonical_url,
        download_url=canonical_url,
        path_after_account=path_after_account,
        removed_path_transform=removed_path_transform,
        had_transform_param=any(key == "tr" for key, _ in params),
        had_updated_at=any(key == "updatedAt" for key, _ in params),
        remaining_query=remaining,
    )


def derive_key_base(path_after_account: str, key_prefix: str | None = None) -> str | None:
    """Join the optional key prefix and the account-relative path."""
    if not path_after_account:
        return None
    prefix = re.sub(r"^[./]+", "", key_prefix or "").rstrip("/")
    combined = f"{prefix}/{path_after_account}" if prefix else path_after_account
    return combined.lstrip("/") or None


def has_image_extension(key: str | None) -> bool:
    """True when ``key`` ends in a known image extension."""
    if not key:
        return False
    return posixpath.splitext(key)[1].lower() in IMAGE_EXTENSIONS


def extension_from_content_type(content_type: str | None) -> str | None:
    """Extension (without the dot) for a known image MIME type."""
    if not content_type:
        return None
    normalized = content_type.split(";")[0].strip().lower()
    return CONTENT_TYPE_TO_EXTENSION.get(normalized)


def content_type_from_key(key: str | None) -> str | None:
    """MIME type implied by the extension of ``key``."""
    if not key:
        return None
    return EXTENSION_TO_CONTENT_TYPE.get(posixpath.splitext(key)[1].lower())


def resolve_final_key(key_base: str | None, content_type: str | None) -> str | None:
    """Append an extension inferred from ``content_type`` when the key lacks one."""
    if not key_base:
        return None
    if has_image_extension(key_base):
        return key_base
    extension = extension_from_content_type(content_type)
    if not extension:
        return key_base
    return f"{key_base}.{extension}"


def apply_key_suffix(key: str | None, suffix: str | None) -> str | None:
    """Insert ``-suffix`` before the key's extension (or at the end)."""
    if not key or not suffix:
        return key
    base, ext = posixpath.splitext(key)
    if not ext:
        return f"{key}-{suffix}"
    return f"{base}-{suffix}{ext}"


def normalize_path(value: str) -> str:
    """Return ``value`` with POSIX separators."""
    if not value:
        return ""
    return value.replace("\\", "/")


def is_content_file_path(file_path: str, allowed_segments: list[str] | tuple[str, ...]) -> bool:
    """True for files under ``content/`` or inside an allowed directory name."""
    normalized = normalize_path(file_path)
    if normalized.startswith("content/"):
        return True
    return any(f"/{segment}/" in normalized for segment in allowed_segments)


def has_allowed_url_prefix(path_after_account: str, allowed_prefixes: list[str] | tuple[str, ...]) -> bool:
    """True when the account-relative path starts with an allowed prefix."""
    if not path_after_account:
        return False
    return any(path_after_account.startswith(prefix) for prefix in allowed_prefixes)
