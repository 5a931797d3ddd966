"""Runtime configuration for the migration CLIs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .canonical import AssetHost, IMAGEKIT_ACCOUNT, IMAGEKIT_HOST
from .errors import ConfigError

DEFAULT_OUTPUT_DIR = ".image-migration"
DEFAULT_EXTENSIONS = (".svelte", ".ts", ".js", ".json", ".md", ".css")
DEFAULT_ALLOWED_SEGMENTS = ("blog", "poems", "postcards", "studio", "career")
DEFAULT_CACHE_CONTROL = "public, max-age=3600"
STORE_ENV_VARS = ("R2_ENDPOINT", "R2_BUCKET", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY")


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from an optional YAML file."""

    host: str = IMAGEKIT_HOST
    account: str = IMAGEKIT_ACCOUNT
    output_dir: str = DEFAULT_OUTPUT_DIR
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    allowed_segments: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_SEGMENTS))
    allowed_prefixes: list[str] = field(default_factory=lambda: [f"{s}/" for s in DEFAULT_ALLOWED_SEGMENTS])
    concurrency: int = 4
    delay_sec: float = 0.0
    max_attempts: int = 3
    backoff_sec: float = 0.3
    timeout_sec: int = 30
    cache_control: str = DEFAULT_CACHE_CONTROL
    user_agent: str = "assetmigrate upload-images"

    @property
    def asset_host(self) -> AssetHost:
        return AssetHost(host=self.host, account=self.account)


@dataclass(slots=True)
class StoreSettings:
    """Object-store credentials taken from the environment."""

    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str


def load_config(config_path: Path | None) -> Config:
    """Load a YAML config file and apply defaults for missing keys."""
    if config_path is None:
        return Config()
    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must be a mapping")

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown config keys in {config_path}: {', '.join(unknown)}")

    defaults = Config()
    values: dict[str, Any] = {}
    for name in known:
        if name not in data:
            continue
        default = getattr(defaults, name)
        raw = data[name]
        try:
            if isinstance(default, list):
                if not isinstance(raw, list):
                    raise TypeError(f"expected a list, got {type(raw).__name__}")
                values[name] = [str(item) for item in raw]
            else:
                values[name] = type(default)(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid value for {name!r} in {config_path}: {exc}") from exc

    config = Config(**values)
    config.host = config.host.lower()
    config.account = config.account.strip("/")
    if config.concurrency < 1:
        raise ConfigError("concurrency must be at least 1")
    if config.max_attempts < 1:
        raise ConfigError("max_attempts must be at least 1")
    return config


def load_store_settings(env: Mapping[str, str] | None = None) -> StoreSettings:
    """Read object-store credentials, failing on the first missing variable."""
    env = os.environ if env is None else env
    for key in STORE_ENV_VARS:
        if not env.get(key):
            raise ConfigError(f"{key} is required to upload to the object store.")
    return StoreSettings(
        endpoint=env["R2_ENDPOINT"],
        bucket=env["R2_BUCKET"],
        access_key_id=env["R2_ACCESS_KEY_ID"],
        secret_access_key=env["R2_SECRET_ACCESS_KEY"],
    )
