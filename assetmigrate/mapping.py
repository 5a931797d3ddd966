"""Build the old-URL to new-public-URL table from a scan and the manifest."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote

from .artifacts import ARTIFACT_VERSION, read_json
from .canonical import DEFAULT_ASSET_HOST, AssetHost, canonicalize
from .errors import ArtifactError
from .manifest import Manifest
from .scanner import ScanReport


@dataclass(slots=True)
class UrlMapping:
    """Old raw URL to new public URL, as written to ``mapping.json``."""

    generated_at: str
    base_url: str
    entries: dict[str, str] = field(default_factory=dict)
    version: int = ARTIFACT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "baseUrl": self.base_url,
            "entries": dict(self.entries),
        }


def public_url(base_url: str, key: str) -> str:
    """Public URL of an object key, percent-encoding everything but ``/``."""
    return f"{base_url.rstrip('/')}/{quote(key, safe='/')}"


def build_mapping(
    scan_report: ScanReport,
    manifest: Manifest,
    public_base_url: str,
    asset_host: AssetHost = DEFAULT_ASSET_HOST,
) -> UrlMapping:
    """Map every raw URL whose asset already has a final key.

    URLs whose asset has not been downloaded yet are left out; they cannot be
    rewritten until their key is known.
    """
    base_url = public_base_url.rstrip("/")
    entries: dict[str, str] = {}
    for entry in scan_report.urls:
        canonical = canonicalize(entry.url, asset_host)
        if canonical is None:
            continue
        asset = manifest.assets.get(canonical.canonical_url)
        if asset is None or not asset.final_key:
            continue
        entries[entry.url] = public_url(base_url, asset.final_key)
    return UrlMapping(generated_at=scan_report.generated_at, base_url=base_url, entries=entries)


def load_mapping_entries(path: Path) -> dict[str, str]:
    """Read ``mapping.json`` and return its entries, validating their shape."""
    data = read_json(path)
    entries = data.get("entries") if data else None
    if not isinstance(entries, dict):
        raise ArtifactError(f"Mapping JSON missing entries: {path}")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in entries.items()):
        raise ArtifactError(f"Mapping entries must map strings to strings: {path}")
    return entries
