"""Group scanned references into canonical assets with storage keys."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .artifacts import ARTIFACT_VERSION
from .canonical import DEFAULT_ASSET_HOST, AssetHost, canonicalize, derive_key_base, has_image_extension
from .errors import ConfigError, KeyCollisionError
from .scanner import ScanReport

SUFFIX_MODE_PATTERN = re.compile(r"^sha(\d+)$")


@dataclass(slots=True)
class PlanAsset:
    """A canonical asset plus every raw variant and source file referencing it."""

    canonical_url: str
    download_url: str
    path_after_account: str
    key_base: str
    has_extension: bool
    needs_suffix: bool = False
    variants: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonicalUrl": self.canonical_url,
            "downloadUrl": self.download_url,
            "pathAfterAccount": self.path_after_account,
            "keyBase": self.key_base,
            "hasExtension": self.has_extension,
            "needsSuffix": self.needs_suffix,
            "variants": list(self.variants),
            "sources": list(self.sources),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanAsset:
        return cls(
            canonical_url=str(data["canonicalUrl"]),
            download_url=str(data.get("downloadUrl") or data["canonicalUrl"]),
            path_after_account=str(data.get("pathAfterAccount", "")),
            key_base=str(data["keyBase"]),
            has_extension=bool(data.get("hasExtension", False)),
            needs_suffix=bool(data.get("needsSuffix", False)),
            variants=list(data.get("variants", [])),
            sources=list(data.get("sources", [])),
        )


@dataclass(slots=True)
class Plan:
    """Canonical assets ordered by URL, plus the key settings they were built with."""

    generated_at: str
    key_prefix: str | None
    key_suffix_mode: str | None
    assets: list[PlanAsset]
    version: int = ARTIFACT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "keyPrefix": self.key_prefix,
            "keySuffixMode": self.key_suffix_mode,
            "assets": [asset.to_dict() for asset in self.assets],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        return cls(
            generated_at=str(data.get("generatedAt", "")),
            key_prefix=data.get("keyPrefix"),
            key_suffix_mode=data.get("keySuffixMode"),
            assets=[PlanAsset.from_dict(item) for item in data.get("assets", [])],
            version=int(data.get("version", ARTIFACT_VERSION)),
        )


def suffix_length(mode: str | None) -> int | None:
    """Number of sha256 hex characters used to disambiguate keys, e.g. ``sha8`` -> 8."""
    if not mode:
        return None
    match = SUFFIX_MODE_PATTERN.match(mode)
    if not match or not 4 <= int(match.group(1)) <= 64:
        raise ConfigError(f"unsupported --key-suffix mode {mode!r}; expected sha4..sha64, e.g. sha8")
    return int(match.group(1))


def build_plan(
    scan_report: ScanReport,
    key_prefix: str | None = None,
    key_suffix_mode: str | None = None,
    asset_host: AssetHost = DEFAULT_ASSET_HOST,
) -> Plan:
    """Build the migration plan from a scan report.

    The output depends only on the arguments: assets are ordered by canonical
    URL, their variants and sources are sorted, and ``generatedAt`` is carried
    over from the scan report. Two canonical assets sharing a key base raise
    :class:`KeyCollisionError` unless a suffix mode is configured, in which
    case both are flagged ``needs_suffix`` and resolved once their bytes are
    known.
    """
    suffix_length(key_suffix_mode)

    assets: dict[str, PlanAsset] = {}
    variants: dict[str, set[str]] = {}
    sources: dict[str, set[str]] = {}

    for entry in scan_report.urls:
        canonical = canonicalize(entry.url, asset_host)
        if canonical is None:
            continue
        key_base = derive_key_base(canonical.path_after_account, key_prefix)
        if not key_base:
            continue
        asset = assets.get(canonical.canonical_url)
        if asset is None:
            asset = PlanAsset(
                canonical_url=canonical.canonical_url,
                download_url=canonical.download_url,
                path_after_account=canonical.path_after_account,
                key_base=key_base,
                has_extension=has_image_extension(key_base),
            )
            assets[canonical.canonical_url] = asset
        variants.setdefault(asset.canonical_url, set()).add(entry.url)
        sources.setdefault(asset.canonical_url, set()).update(entry.files)

    by_key: dict[str, list[str]] = {}
    for canonical_url in sorted(assets):
        by_key.setdefault(assets[canonical_url].key_base, []).append(canonical_url)
    collisions = {key: urls for key, urls in by_key.items() if len(urls) > 1}

    if collisions and not key_suffix_mode:
        raise KeyCollisionError(collisions)
    for urls in collisions.values():
        for canonical_url in urls:
            assets[canonical_url].needs_suffix = True

    ordered: list[PlanAsset] = []
    for canonical_url in sorted(assets):
        asset = assets[canonical_url]
        asset.variants = sorted(variants[canonical_url])
        asset.sources = sorted(sources[canonical_url])
        ordered.append(asset)

    return Plan(
        generated_at=scan_report.generated_at,
        key_prefix=key_prefix or None,
        key_suffix_mode=key_suffix_mode or None,
        assets=ordered,
    )
