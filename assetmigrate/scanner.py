"""Repository scanning: find every asset-host URL in text-bearing files."""

from __future__ import annotations

import logging
import os
import subprocess
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator

from .artifacts import ARTIFACT_VERSION, utc_now
from .canonical import (
    DEFAULT_ASSET_HOST,
    AssetHost,
    canonicalize,
    extract_urls,
    has_allowed_url_prefix,
    is_content_file_path,
    normalize_path,
)

logger = logging.getLogger("assetmigrate")

SKIP_DIRS = frozenset({".git", "node_modules"})
REASON_OUTSIDE_SCOPE = "outside-scope"
REASON_INVALID_URL = "invalid-url"
REASON_READ_FAILED = "read-failed"


@dataclass(slots=True)
class UrlOccurrence:
    """One distinct raw URL and where it was found."""

    url: str
    count: int = 0
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "count": self.count, "files": list(self.files)}


@dataclass(slots=True)
class SkippedReference:
    """A reference the scan found but did not keep, with the reason."""

    file: str
    url: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "url": self.url, "reason": self.reason}


@dataclass(slots=True)
class ScanOptions:
    """Which files to read and which references count as in scope."""

    extensions: list[str]
    allowed_segments: list[str]
    allowed_prefixes: list[str]
    allow_all: bool = False
    include_content: bool = True
    include_tracked: bool = True
    extra_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ScanReport:
    """Result of one repository scan, as written to ``scan.json``."""

    generated_at: str
    allowlist: dict[str, Any]
    files_scanned: int
    urls: list[UrlOccurrence]
    skipped: list[SkippedReference]
    version: int = ARTIFACT_VERSION

    def skip_reasons(self) -> Counter[str]:
        return Counter(item.reason for item in self.skipped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "allowlist": self.allowlist,
            "filesScanned": self.files_scanned,
            "urls": [entry.to_dict() for entry in self.urls],
            "skipped": [item.to_dict() for item in self.skipped],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanReport:
        return cls(
            generated_at=str(data.get("generatedAt", "")),
            allowlist=dict(data.get("allowlist") or {}),
            files_scanned=int(data.get("filesScanned", 0)),
            urls=[
                UrlOccurrence(url=str(item["url"]), count=int(item.get("count", 0)), files=list(item.get("files", [])))
                for item in data.get("urls", [])
            ],
            skipped=[
                SkippedReference(file=str(item.get("file", "")), url=item.get("url"), reason=str(item.get("reason", "")))
                for item in data.get("skipped", [])
            ],
            version=int(data.get("version", ARTIFACT_VERSION)),
        )


def walk_directory(root: Path, extensions: Iterable[str]) -> Iterator[Path]:
    """Yield files under ``root`` with an allowed suffix, skipping VCS/dependency dirs."""
    extension_set = set(extensions)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            if os.path.splitext(name)[1] in extension_set:
                yield Path(dirpath) / name


def list_tracked_files(repo_root: Path) -> list[str]:
    """Return git-tracked paths, or an empty list outside a usable git checkout."""
    try:
        proc = subprocess.run(
            ["git", "ls-files"],
            cwd=repo_root,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        logger.debug("git ls-files unavailable in %s; scanning explicit roots only", repo_root)
        return []
    return [line for line in proc.stdout.splitlines() if line]


def list_target_files(repo_root: Path, roots: Iterable[str], extensions: Iterable[str]) -> list[str]:
    """Collect repo-relative POSIX paths of matching files under each existing root."""
    extension_list = list(extensions)
    base = repo_root.resolve()
    targets: set[str] = set()
    for root in roots:
        if not root:
            continue
        full_root = (base / root).resolve()
        if full_root.is_file():
            if full_root.suffix in extension_list:
                targets.add(normalize_path(os.path.relpath(full_root, base)))
            continue
        if not full_root.is_dir():
            logger.debug("Skip missing scan root: %s", full_root)
            continue
        for path in walk_directory(full_root, extension_list):
            targets.add(normalize_path(os.path.relpath(path, base)))
    return sorted(targets)


def collect_scan_files(repo_root: Path, options: ScanOptions) -> list[str]:
    """Tracked files plus files under the scan roots, deduplicated and sorted."""
    extension_set = set(options.extensions)
    files: set[str] = set()
    if options.include_tracked:
        for tracked in list_tracked_files(repo_root):
            normalized = normalize_path(tracked)
            if os.path.splitext(normalized)[1] in extension_set:
                files.add(normalized)

    roots: list[str] = []
    if options.include_content:
        roots.append("content")
    roots.extend(options.extra_paths)
    files.update(list_target_files(repo_root, roots, options.extensions))
    return sorted(files)


def scan_repository(
    repo_root: Path,
    options: ScanOptions,
    asset_host: AssetHost = DEFAULT_ASSET_HOST,
) -> ScanReport:
    """Scan ``repo_root`` and aggregate in-scope asset-host URLs by raw string."""
    all_files = collect_scan_files(repo_root, options)
    occurrences: dict[str, UrlOccurrence] = {}
    file_sets: dict[str, set[str]] = {}
    skipped: list[SkippedReference] = []

    for file_path in all_files:
        try:
            content = (repo_root / file_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read %s: %s", file_path, exc)
            skipped.append(SkippedReference(file=file_path, url=None, reason=REASON_READ_FAILED))
            continue

        for url in extract_urls(content, asset_host):
            canonical = canonicalize(url, asset_host)
            if canonical is None:
                skipped.append(SkippedReference(file=file_path, url=url, reason=REASON_INVALID_URL))
                continue

            allow_by_file = is_content_file_path(file_path, options.allowed_segments)
            allow_by_url = has_allowed_url_prefix(canonical.path_after_account, options.allowed_prefixes)
            if not (options.allow_all or allow_by_file or allow_by_url):
                skipped.append(SkippedReference(file=file_path, url=url, reason=REASON_OUTSIDE_SCOPE))
                continue

            entry = occurrences.setdefault(url, UrlOccurrence(url=url))
            entry.count += 1
            file_sets.setdefault(url, set()).add(file_path)

    for url, entry in occurrences.items():
        entry.files = sorted(file_sets[url])

    report = ScanReport(
        generated_at=utc_now(),
        allowlist={
            "segments": list(options.allowed_segments),
            "prefixes": list(options.allowed_prefixes),
            "allowAll": options.allow_all,
        },
        files_scanned=len(all_files),
        urls=[occurrences[url] for url in sorted(occurrences)],
        skipped=skipped,
    )
    logger.info(
        "Scanned %s files: %s distinct URLs, %s skipped references",
        report.files_scanned,
        len(report.urls),
        len(report.skipped),
    )
    return report
