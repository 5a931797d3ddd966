#!/usr/bin/env python3
"""Release gate: fail if any asset-host URL remains under the given paths."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .canonical import DEFAULT_ASSET_HOST, AssetHost, extract_urls
from .config import load_config
from .errors import ConfigError
from .rewrite import target_roots
from .scanner import list_target_files


@dataclass(slots=True)
class Offender:
    """A file that still references the asset host."""

    file: str
    count: int
    unreadable: bool = False


def find_offenders(
    repo_root: Path,
    files: Sequence[str],
    asset_host: AssetHost = DEFAULT_ASSET_HOST,
) -> list[Offender]:
    """Every file still referencing the asset host, with its URL count."""
    offenders: list[Offender] = []
    for rel in files:
        try:
            text = (repo_root / rel).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            offenders.append(Offender(file=rel, count=0, unreadable=True))
            continue
        urls = extract_urls(text, asset_host)
        if urls:
            offenders.append(Offender(file=rel, count=len(urls)))
    return offenders


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assert no asset-host URLs remain")
    parser.add_argument("--path", dest="paths", action="append", default=[], help="Root to check (repeatable; default: content)")
    parser.add_argument("--include-src", action="store_true", help="Also check files under src/")
    parser.add_argument("--root", type=Path, default=Path("."), help="Repository root")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML config file")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"[NG] {exc}")
        return 1

    repo_root = args.root.resolve()
    target = f"{config.host}/{config.account}"
    files = list_target_files(repo_root, target_roots(args.paths, args.include_src), config.extensions)
    offenders = find_offenders(repo_root, files, config.asset_host)

    unreadable = [o for o in offenders if o.unreadable]
    residual = [o for o in offenders if not o.unreadable]
    for offender in unreadable:
        print(f"[NG] unreadable file: {offender.file}")

    if residual:
        print(f"[NG] residual URL '{target}' found in {len(residual)} file(s)")
    else:
        print(f"[OK] no residual URL '{target}'")

    print(f"Checked: {len(files)}")
    print(f"NG: {len(offenders)}")
    print("Residual URL files:")
    for offender in sorted(residual, key=lambda o: o.file):
        print(f"- {offender.file} ({offender.count})")

    return 1 if offenders else 0


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    sys.exit(main())
