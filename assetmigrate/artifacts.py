"""JSON artifact persistence shared by every stage."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ArtifactError

ARTIFACT_VERSION = 1


def utc_now() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def dump_json(payload: Any) -> str:
    """Serialize an artifact exactly as it is written to disk."""
    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


def write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` atomically so readers never see a partial document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(dump_json(payload))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path, *, missing_ok: bool = False) -> dict[str, Any] | None:
    """Read a versioned JSON artifact. Return None for a missing file if allowed."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if missing_ok:
            return None
        raise ArtifactError(f"artifact not found: {path}") from None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ArtifactError(f"invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ArtifactError(f"{path} must contain a JSON object")
    version = data.get("version", ARTIFACT_VERSION)
    if version != ARTIFACT_VERSION:
        raise ArtifactError(f"{path} has unsupported version {version!r}")
    return data
