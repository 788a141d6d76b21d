"""
Store configuration.

Each store directory holds ``knowhow.toml``:

    [store]
    version = 1
    created = "2026-01-01T00:00:00+00:00"
    search_limit = 10

    [legacy]                 # optional
    path = "~/old/knowledge.db"

    [provenance]
    name = "git"

    [embedding]
    name = "none"

    [semantic]
    name = "keywords"

Provider sections carry the provider name plus any constructor params.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "knowhow.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "knowhow.db"
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_STORE_DIRNAME = ".knowhow"

PROVIDER_DEFAULTS = {
    "provenance": "git",
    "embedding": "none",
    "semantic": "keywords",
}


@dataclass
class ProviderConfig:
    """A provider name and the keyword params it is constructed with."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_section(cls, section: dict, default: str) -> "ProviderConfig":
        params = dict(section)
        return cls(name=params.pop("name", default), params=params)

    def to_section(self) -> dict[str, Any]:
        return {"name": self.name, **self.params}


@dataclass
class StoreConfig:
    """Settings for one store directory."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    search_limit: int = DEFAULT_SEARCH_LIMIT

    # SQLite file holding the legacy tables; None means the store database
    legacy_path: Optional[Path] = None

    provenance: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(PROVIDER_DEFAULTS["provenance"]))
    embedding: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(PROVIDER_DEFAULTS["embedding"]))
    semantic: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(PROVIDER_DEFAULTS["semantic"]))

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """KNOWHOW_STORE_PATH if set, else ~/.knowhow."""
    env_path = os.environ.get("KNOWHOW_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIRNAME


def _check_search_limit(value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"store.search_limit must be a positive integer, got {value!r}")
    return value


def load_config(store_path: Path) -> StoreConfig:
    """
    Read ``knowhow.toml`` from a store directory.

    Raises:
        FileNotFoundError: no config file in the directory
        ValueError: unsupported version or invalid settings
    """
    store_path = Path(store_path)
    config_file = store_path / CONFIG_FILENAME
    if not config_file.exists():
        raise FileNotFoundError(f"No {CONFIG_FILENAME} in {store_path}")

    data = tomllib.loads(config_file.read_text(encoding="utf-8"))

    store = data.get("store", {})
    version = store.get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValueError(
            f"{config_file} has config version {version}; "
            f"this knowhow understands up to {CONFIG_VERSION}"
        )
    legacy = data.get("legacy", {}).get("path")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        search_limit=_check_search_limit(store.get("search_limit", DEFAULT_SEARCH_LIMIT)),
        legacy_path=Path(legacy).expanduser() if legacy else None,
        **{
            kind: ProviderConfig.from_section(data.get(kind, {}), default)
            for kind, default in PROVIDER_DEFAULTS.items()
        },
    )


def save_config(config: StoreConfig) -> None:
    """Write ``knowhow.toml``, creating the store directory as needed."""
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
            "search_limit": config.search_limit,
        },
    }
    if config.legacy_path is not None:
        data["legacy"] = {"path": str(config.legacy_path)}
    for kind in PROVIDER_DEFAULTS:
        data[kind] = getattr(config, kind).to_section()

    config.config_path.write_bytes(tomli_w.dumps(data).encode("utf-8"))


def load_or_create_config(store_path: Path) -> StoreConfig:
    """Load the store's config, writing a default one on first use."""
    store_path = Path(store_path)
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
