#!/usr/bin/env python3
"""Migrate asset-host images into an S3-compatible object store.

Stages, each persisting its artifact under the output directory:
A) Scan the repository for asset-host URLs            -> scan.json
B) Group them into canonical assets with storage keys -> plan.json
C) Merge the plan into the cross-run manifest         -> manifest.json
D) Optionally download and/or upload pending assets   -> manifest.json
E) Optionally emit the old -> new URL table           -> mapping.json

Scan, plan and merge always run. Every later stage re-checks the manifest, so
an interrupted run resumes where the last written manifest left off.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

import aiohttp

from .artifacts import write_json
from .config import Config, load_config, load_store_settings
from .errors import ConfigError, MigrationError
from .manifest import Manifest, load_manifest, merge_manifest, save_manifest
from .mapping import build_mapping
from .plan import Plan, build_plan, suffix_length
from .scanner import ScanOptions, ScanReport, scan_repository
from .transfer import ObjectStore, S3ObjectStore, TransferOptions, TransferStats, download_assets, upload_assets

logger = logging.getLogger("assetmigrate")


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Layer CLI options over the file/default configuration."""
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.concurrency is not None:
        if args.concurrency < 1:
            raise ConfigError("--concurrency must be at least 1")
        config.concurrency = args.concurrency
    if args.cache_control:
        config.cache_control = args.cache_control
    config.allowed_segments = [*config.allowed_segments, *args.allow_segment]
    config.allowed_prefixes = [*config.allowed_prefixes, *args.allow_prefix]
    return config


async def run_transfers(
    manifest: Manifest,
    plan: Plan,
    manifest_path: Path,
    config: Config,
    options: TransferOptions,
    download: bool,
    store: ObjectStore | None,
) -> list[TransferStats]:
    """Run the download and upload stages, persisting the manifest after each."""
    results: list[TransferStats] = []
    if download:
        connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))
        timeout = aiohttp.ClientTimeout(total=config.timeout_sec)
        headers = {"User-Agent": config.user_agent}
        async with aiohttp.ClientSession(connector=connector, timeout=timeout, headers=headers) as session:
            results.append(await download_assets(manifest.for_plan(plan), session, options))
        save_manifest(manifest_path, manifest)

    if store is not None:
        results.append(await upload_assets(list(manifest.assets.values()), store, options))
        save_manifest(manifest_path, manifest)
    return results


def log_summary(
    scan: ScanReport,
    plan: Plan,
    manifest: Manifest,
    transfers: list[TransferStats],
    args: argparse.Namespace,
) -> None:
    counts = manifest.counts()
    logger.info(
        "Summary: files=%s URLs=%s assets=%s skipped=%s downloaded=%s uploaded=%s",
        scan.files_scanned,
        len(scan.urls),
        len(plan.assets),
        len(scan.skipped),
        counts["downloaded"],
        counts["uploaded"],
    )
    reasons = scan.skip_reasons()
    if reasons:
        logger.info("Skipped references: %s", ", ".join(f"{k}={v}" for k, v in sorted(reasons.items())))
    for stats in transfers:
        logger.info(
            "%s: ok=%s skipped=%s failed=%s",
            stats.stage.capitalize(),
            stats.succeeded,
            stats.skipped,
            stats.failed,
        )
        if stats.errors:
            logger.warning(
                "%s failures: %s",
                stats.stage.capitalize(),
                ", ".join(f"{k}={v}" for k, v in sorted(stats.errors.items())),
            )
    if not args.download and not args.upload:
        logger.info("Scan/plan complete (no download or upload flags provided).")


def run(args: argparse.Namespace) -> int:
    """Execute all requested stages. Return process exit code."""
    config = apply_overrides(load_config(args.config), args)

    # Validate configuration before any I/O.
    suffix_chars = suffix_length(args.key_suffix)
    key_prefix = args.key_prefix or os.environ.get("R2_KEY_PREFIX") or None
    public_base_url = args.public_base_url or os.environ.get("R2_PUBLIC_BASE_URL")
    emit_mapping = args.emit_mapping or args.download or args.upload
    if emit_mapping and not public_base_url:
        raise ConfigError("R2_PUBLIC_BASE_URL (or --public-base-url) is required to emit mapping JSON.")
    store = S3ObjectStore(load_store_settings()) if args.upload else None

    repo_root = args.root.resolve()
    output_dir = Path(config.output_dir)
    if not output_dir.is_absolute():
        output_dir = repo_root / output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Starting migration with config: %s", config)

    options = ScanOptions(
        extensions=config.extensions,
        allowed_segments=config.allowed_segments,
        allowed_prefixes=config.allowed_prefixes,
        allow_all=args.allow_all,
        include_content=not args.no_content,
        extra_paths=args.extra_path,
    )
    scan = scan_repository(repo_root, options, config.asset_host)
    write_json(output_dir / "scan.json", scan.to_dict())

    plan = build_plan(scan, key_prefix=key_prefix, key_suffix_mode=args.key_suffix, asset_host=config.asset_host)
    write_json(output_dir / "plan.json", plan.to_dict())

    manifest_path = output_dir / "manifest.json"
    manifest = merge_manifest(load_manifest(manifest_path), plan)
    save_manifest(manifest_path, manifest)

    transfers: list[TransferStats] = []
    if args.download or store is not None:
        transfer_options = TransferOptions(
            downloads_dir=output_dir / "downloads",
            concurrency=config.concurrency,
            max_attempts=config.max_attempts,
            backoff_sec=config.backoff_sec,
            delay_sec=config.delay_sec,
            suffix_length=suffix_chars,
            cache_control=config.cache_control,
        )
        transfers = asyncio.run(
            run_transfers(manifest, plan, manifest_path, config, transfer_options, args.download, store)
        )

    if emit_mapping:
        mapping = build_mapping(scan, manifest, public_base_url, config.asset_host)
        write_json(output_dir / "mapping.json", mapping.to_dict())
        logger.info("Mapping: %s entries -> %s", len(mapping.entries), output_dir / "mapping.json")

    log_summary(scan, plan, manifest, transfers, args)
    return 0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Migrate asset-host images to an object store")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML config file")
    parser.add_argument("--root", type=Path, default=Path("."), help="Repository root to scan")
    parser.add_argument("--output-dir", default=None, help="Artifact directory (default: .image-migration)")
    parser.add_argument("--extra-path", action="append", default=[], help="Additional scan root (repeatable)")
    parser.add_argument("--allow-prefix", action="append", default=[], help="Allow URLs under this path prefix")
    parser.add_argument("--allow-segment", action="append", default=[], help="Allow files under this directory name")
    parser.add_argument("--allow-all", action="store_true", help="Disable the scope allow-list")
    parser.add_argument("--no-content", action="store_true", help="Do not add content/ as a scan root")
    parser.add_argument("--download", action="store_true", help="Download pending assets")
    parser.add_argument("--upload", action="store_true", help="Upload downloaded assets")
    parser.add_argument("--emit-mapping", action="store_true", help="Write mapping.json")
    parser.add_argument("--key-prefix", default=None, help="Storage key prefix (env R2_KEY_PREFIX)")
    parser.add_argument("--key-suffix", default=None, help="Disambiguate key collisions, e.g. sha8")
    parser.add_argument("--public-base-url", default=None, help="Public base URL (env R2_PUBLIC_BASE_URL)")
    parser.add_argument("--cache-control", default=None, help="Cache-Control header for uploads")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent transfers (default: 4)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


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
