"""Persisted cross-run record of per-asset migration progress.

The manifest is keyed by canonical URL. Merging a fresh plan refreshes the
fields that are re-derived every run (key base, variants, sources) and keeps
everything a previous download or upload recorded. Entries are never removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .artifacts import ARTIFACT_VERSION, read_json, utc_now, write_json
from .plan import Plan, PlanAsset

logger = logging.getLogger("assetmigrate")


@dataclass(slots=True)
class AssetStatus:
    """Progress flags; ``uploaded`` implies ``downloaded``."""

    downloaded: bool = False
    uploaded: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {"downloaded": self.downloaded, "uploaded": self.uploaded}


@dataclass(slots=True)
class ManifestAsset:
    """Everything known about one canonical asset across runs."""

    canonical_url: str
    download_url: str
    path_after_account: str = ""
    key_base: str | None = None
    has_extension: bool = False
    needs_suffix: bool = False
    final_key: str | None = None
    content_type: str | None = None
    sha256: str | None = None
    bytes: int | None = None
    status: AssetStatus = field(default_factory=AssetStatus)
    download_path: str | None = None
    variants: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonicalUrl": self.canonical_url,
            "downloadUrl": self.download_url,
            "pathAfterAccount": self.path_after_account,
            "keyBase": self.key_base,
            "finalKey": self.final_key,
            "contentType": self.content_type,
            "hasExtension": self.has_extension,
            "needsSuffix": self.needs_suffix,
            "sha256": self.sha256,
            "bytes": self.bytes,
            "status": self.status.to_dict(),
            "downloadPath": self.download_path,
            "variants": list(self.variants),
            "sources": list(self.sources),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, canonical_url: str, data: dict[str, Any]) -> ManifestAsset:
        status = data.get("status") or {}
        downloaded = bool(status.get("downloaded", False))
        raw_bytes = data.get("bytes")
        return cls(
            canonical_url=str(data.get("canonicalUrl") or canonical_url),
            download_url=str(data.get("downloadUrl") or canonical_url),
            path_after_account=str(data.get("pathAfterAccount") or ""),
            key_base=data.get("keyBase"),
            has_extension=bool(data.get("hasExtension", False)),
            needs_suffix=bool(data.get("needsSuffix", False)),
            final_key=data.get("finalKey"),
            content_type=data.get("contentType"),
            sha256=data.get("sha256"),
            bytes=int(raw_bytes) if raw_bytes is not None else None,
            # uploaded is only meaningful once the bytes are on disk
            status=AssetStatus(downloaded=downloaded, uploaded=downloaded and bool(status.get("uploaded", False))),
            download_path=data.get("downloadPath"),
            variants=list(data.get("variants") or []),
            sources=list(data.get("sources") or []),
            error=data.get("error"),
        )


@dataclass(slots=True)
class Manifest:
    """Per-asset progress keyed by canonical URL."""

    generated_at: str
    assets: dict[str, ManifestAsset] = field(default_factory=dict)
    version: int = ARTIFACT_VERSION

    def for_plan(self, plan: Plan) -> list[ManifestAsset]:
        """Manifest entries for the assets ``plan`` names, in plan order."""
        return [self.assets[asset.canonical_url] for asset in plan.assets if asset.canonical_url in self.assets]

    def counts(self) -> dict[str, int]:
        values = list(self.assets.values())
        return {
            "assets": len(values),
            "downloaded": sum(1 for asset in values if asset.status.downloaded),
            "uploaded": sum(1 for asset in values if asset.status.uploaded),
            "errors": sum(1 for asset in values if asset.error),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "assets": {url: asset.to_dict() for url, asset in self.assets.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        raw_assets = data.get("assets") or {}
        return cls(
            generated_at=str(data.get("generatedAt", "")),
            assets={
                url: ManifestAsset.from_dict(url, item)
                for url, item in raw_assets.items()
                if isinstance(item, dict)
            },
            version=int(data.get("version", ARTIFACT_VERSION)),
        )


def merge_manifest(existing: Manifest | None, plan: Plan, now: str | None = None) -> Manifest:
    """Fold ``plan`` into ``existing`` without discarding recorded progress."""
    manifest = existing if existing is not None else Manifest(generated_at="")
    manifest.generated_at = now or utc_now()

    added = 0
    for plan_asset in plan.assets:
        current = manifest.assets.get(plan_asset.canonical_url)
        if current is None:
            current = ManifestAsset(canonical_url=plan_asset.canonical_url, download_url=plan_asset.download_url)
            manifest.assets[plan_asset.canonical_url] = current
            added += 1
        _refresh_from_plan(current, plan_asset)

    logger.info("Merged plan into manifest: %s assets (%s new)", len(manifest.assets), added)
    return manifest


def _refresh_from_plan(asset: ManifestAsset, plan_asset: PlanAsset) -> None:
    """Overwrite the fields that are re-derived from every plan."""
    asset.download_url = plan_asset.download_url
    asset.path_after_account = plan_asset.path_after_account
    asset.key_base = plan_asset.key_base
    asset.has_extension = plan_asset.has_extension
    asset.needs_suffix = plan_asset.needs_suffix
    asset.variants = list(plan_asset.variants)
    asset.sources = list(plan_asset.sources)


def load_manifest(path: Path) -> Manifest | None:
    """Load ``manifest.json``; None when no previous run wrote one."""
    data = read_json(path, missing_ok=True)
    if data is None:
        return None
    return Manifest.from_dict(data)


def save_manifest(path: Path, manifest: Manifest) -> None:
    """Persist the manifest atomically."""
    write_json(path, manifest.to_dict())
    logger.debug("Wrote manifest %s", path)
