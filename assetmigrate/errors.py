"""Exception hierarchy shared by every pipeline stage."""

from __future__ import annotations


class MigrationError(Exception):
    """Base class for errors the CLIs report as fatal."""


class ConfigError(MigrationError):
    """Missing or invalid configuration; raised before any I/O."""


class ArtifactError(MigrationError):
    """A JSON artifact on disk is malformed or has an unknown version."""


class PlanError(MigrationError):
    """The plan cannot be built from the scan report."""


class KeyCollisionError(PlanError):
    """Distinct canonical assets resolve to the same storage key."""

    def __init__(self, collisions: dict[str, list[str]]) -> None:
        self.collisions = collisions
        detail = " | ".join(f"{key} -> {', '.join(urls)}" for key, urls in sorted(collisions.items()))
        super().__init__(f"Key collisions detected. Use --key-suffix sha8 to disambiguate. {detail}")


class TransferError(MigrationError):
    """A download or upload failed after exhausting its attempts.

    ``reason`` is a short code (``http-404``, ``network``, ``put-failed``...)
    used to group failures in the run summary.
    """

    def __init__(self, message: str, reason: str = "transfer-failed") -> None:
        super().__init__(message)
        self.reason = reason


class VerificationError(MigrationError):
    """A rewrite left an old URL behind."""
