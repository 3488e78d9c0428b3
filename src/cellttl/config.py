"""Configuration loading and Pydantic models for cellttl."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """Table store backend configuration."""

    backend: str = "memory"
    sqlite_path: str = "./data/cellttl.db"
    project: str = ""
    instance: str = ""
    credentials_file: str = ""
    create_instance: bool = True
    zone: str = "us-central1-b"


class TTLConfig(BaseModel):
    """TTL index and reaper configuration."""

    shard_count: int = Field(default=3, ge=1)
    hash_seed: int = 0
    reaper_interval_ms: int = Field(default=5000, ge=0)
    min_jitter_ms: int | None = 2000
    max_jitter_ms: int | None = 30000
    scan_batch_size: int = Field(default=250, ge=1)
    delete_chunk_size: int = Field(default=100, ge=1)


class BulkConfig(BaseModel):
    """Bulk insert size limits."""

    insert_limit: int = Field(default=3500, ge=1)
    insert_limit_with_ttl: int = Field(default=1000, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "text"


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = False


class TableConfig(BaseModel):
    """Per-table configuration."""

    name: str
    column_family: str = "cf"
    default_column: str = "value"
    default_value: str = ""
    max_versions: int = Field(default=1, ge=1)
    max_age_seconds: int | None = None
    enable_count: bool = True

    @property
    def metadata_table(self) -> str:
        """Name of the table holding TTL schedules and the row counter."""
        return f"{self.name}_metadata"


class CellTTLConfig(BaseModel):
    """Top-level cellttl configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    ttl: TTLConfig = Field(default_factory=TTLConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    tables: list[TableConfig] = Field(default_factory=list)

    def table(self, name: str) -> TableConfig:
        """Return the configuration for a named table.

        Raises:
            KeyError: If no table with that name is configured.
        """
        for table in self.tables:
            if table.name == name:
                return table
        raise KeyError(f"Table not configured: {name}")


def _parse_store(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the store section from YAML data.

    Handles nested structure: store.sqlite.path -> sqlite_path,
    store.bigtable.project -> project, etc.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {"backend": data.get("backend", "memory")}

    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite_path"] = sqlite_section.get("path", "./data/cellttl.db")

    bigtable_section = data.get("bigtable")
    if isinstance(bigtable_section, dict):
        result["project"] = bigtable_section.get("project", "")
        result["instance"] = bigtable_section.get("instance", "")
        result["credentials_file"] = bigtable_section.get("credentials_file", "")
        result["create_instance"] = bigtable_section.get("create_instance", True)
        result["zone"] = bigtable_section.get("zone", "us-central1-b")

    return result


def _parse_ttl(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the ttl section from YAML data.

    Handles nested structure: ttl.reaper.interval_ms -> reaper_interval_ms.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {}
    for key in ("shard_count", "hash_seed", "scan_batch_size", "delete_chunk_size"):
        if key in data:
            result[key] = data[key]

    reaper_section = data.get("reaper")
    if isinstance(reaper_section, dict):
        if "interval_ms" in reaper_section:
            result["reaper_interval_ms"] = reaper_section["interval_ms"]
        if "min_jitter_ms" in reaper_section:
            result["min_jitter_ms"] = reaper_section["min_jitter_ms"]
        if "max_jitter_ms" in reaper_section:
            result["max_jitter_ms"] = reaper_section["max_jitter_ms"]

    return result


def _parse_bulk(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the bulk section from YAML data."""
    if data is None:
        return {}
    return {
        "insert_limit": data.get("insert_limit", 3500),
        "insert_limit_with_ttl": data.get("insert_limit_with_ttl", 1000),
    }


def _parse_logging(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the logging section from YAML data."""
    if data is None:
        return {}
    return {
        "level": data.get("level", "INFO"),
        "format": data.get("format", "text"),
    }


def _parse_tables(data: list[dict[str, Any]] | None) -> list[TableConfig]:
    """Parse the tables list from YAML data."""
    if not data:
        return []
    return [TableConfig(**entry) for entry in data]


def load_config(path: Path) -> CellTTLConfig:
    """Load a CellTTLConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated CellTTLConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return CellTTLConfig(
        store=StoreConfig(**_parse_store(raw.get("store"))),
        ttl=TTLConfig(**_parse_ttl(raw.get("ttl"))),
        bulk=BulkConfig(**_parse_bulk(raw.get("bulk"))),
        logging=LoggingConfig(**_parse_logging(raw.get("logging"))),
        metrics=MetricsConfig(**(raw.get("metrics") or {})),
        tables=_parse_tables(raw.get("tables")),
    )
