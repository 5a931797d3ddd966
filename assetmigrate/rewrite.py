"""Rewrite asset-host URLs in content files using ``mapping.json``.

Without ``--write`` the run is a dry run: every file is processed in memory
and the same summary is reported, but nothing is written back.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .canonical import DEFAULT_ASSET_HOST, AssetHost, extract_urls, url_pattern
from .config import DEFAULT_OUTPUT_DIR, load_config
from .errors import MigrationError, VerificationError
from .mapping import load_mapping_entries
from .scanner import list_target_files

logger = logging.getLogger("assetmigrate")

DEFAULT_MAPPING = f"{DEFAULT_OUTPUT_DIR}/mapping.json"


@dataclass(slots=True)
class RewriteSummary:
    """Outcome of a rewrite run; identical in shape for dry and write runs."""

    wrote: bool
    files: list[tuple[str, int]] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(count for _, count in self.files)


def rewrite_text(text: str, entries: dict[str, str], asset_host: AssetHost = DEFAULT_ASSET_HOST) -> tuple[str, int]:
    """Replace every mapped URL token in ``text``. Return (new_text, replacements).

    Tokens are found with the same pattern the scanner uses, so a URL that is
    a prefix of a longer, unmapped URL is never partially rewritten.
    """
    count = 0

    def replace(match) -> str:
        nonlocal count
        old = match.group(0)
        new = entries.get(old)
        if new is None:
            return old
        count += 1
        return new

    updated = url_pattern(asset_host).sub(replace, text)
    remaining = sorted({url for url in extract_urls(updated, asset_host) if url in entries})
    if remaining:
        raise VerificationError(f"Replacement failed for {', '.join(remaining)}")
    return updated, count


def rewrite_files(
    repo_root: Path,
    files: Sequence[str],
    entries: dict[str, str],
    write: bool = False,
    asset_host: AssetHost = DEFAULT_ASSET_HOST,
) -> RewriteSummary:
    """Apply ``entries`` to each file; failures are isolated per file."""
    summary = RewriteSummary(wrote=write)
    for file_path in files:
        path = repo_root / file_path
        try:
            original = path.read_text(encoding="utf-8")
            updated, replacements = rewrite_text(original, entries, asset_host)
        except VerificationError as exc:
            logger.error("%s: %s", file_path, exc)
            summary.failures.append((file_path, str(exc)))
            continue
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Failed to read %s: %s", file_path, exc)
            summary.failures.append((file_path, f"read failed: {exc}"))
            continue

        if replacements == 0:
            continue
        if write:
            try:
                path.write_text(updated, encoding="utf-8")
            except OSError as exc:
                logger.error("Failed to write %s: %s", file_path, exc)
                summary.failures.append((file_path, f"write failed: {exc}"))
                continue
        summary.files.append((file_path, replacements))
    return summary


def log_summary(summary: RewriteSummary) -> None:
    """Log the per-file replacement counts and failures."""
    if not summary.files and not summary.failures:
        logger.info("No replacements needed.")
        return
    logger.info(
        "Summary: %s %s replacements across %s files (%s failed)",
        "Wrote" if summary.wrote else "Planned",
        summary.total,
        len(summary.files),
        len(summary.failures),
    )
    for file_path, count in summary.files:
        logger.info("%s (%s)", file_path, count)
    for file_path, message in summary.failures:
        logger.error("FAILED %s: %s", file_path, message)


def target_roots(paths: Sequence[str], include_src: bool) -> list[str]:
    """Roots to process: the given paths (default ``content``) plus ``src`` on request."""
    roots = list(paths) if paths else ["content"]
    if include_src:
        roots.append("src")
    return roots


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Rewrite asset-host URLs using a migration mapping")
    parser.add_argument("--mapping", default=DEFAULT_MAPPING, help="Path to mapping.json")
    parser.add_argument("--path", dest="paths", action="append", default=[], help="Root to rewrite (repeatable; default: content)")
    parser.add_argument("--include-src", action="store_true", help="Also rewrite files under src/")
    parser.add_argument("--write", action="store_true", help="Write changes (default is a dry run)")
    parser.add_argument("--root", type=Path, default=Path("."), help="Repository root")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML config file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    repo_root = args.root.resolve()
    mapping_path = Path(args.mapping)
    if not mapping_path.is_absolute():
        mapping_path = repo_root / mapping_path
    entries = load_mapping_entries(mapping_path)

    files = list_target_files(repo_root, target_roots(args.paths, args.include_src), config.extensions)
    summary = rewrite_files(repo_root, files, entries, write=args.write, asset_host=config.asset_host)
    log_summary(summary)
    return 1 if summary.failures else 0


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        code = run(args)
    except MigrationError as exc:
        logger.error("Fatal error - %s", exc)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main(sys.argv[1:])
