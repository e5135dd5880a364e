"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class InstanceSettings:
    """Where the local n8n instance lives and how to reach its moving parts.

    Everything here is injected explicitly. ``container`` may be left empty, in
    which case the CLI falls back to detecting it from ``docker ps``.
    """

    container: str
    # SQLAlchemy URL; sqlite URLs point at the host path of the volume's database file
    database_url: str
    # Only used for relational dumps/restores
    database_container: str
    database_user: str
    database_name: str
    health_url: str
    # Host path of the JSON config file holding ``encryptionKey``
    config_file: str
    env_file: str
    compose_file: str
    data_dir_in_container: str
    file_owner: str  # "uid:gid" applied to files written into the volume

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@dataclass(slots=True, frozen=True)
class HealthSettings:
    """Bounded polling of the health endpoint."""

    attempts: int
    delay_seconds: float
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class RetentionSettings:
    """How many backups to keep per bucket and how long export packages live."""

    daily: int
    weekly: int
    manual: int
    package_max_age_days: int


@dataclass(slots=True, frozen=True)
class RemoteSettings:
    """Secure-copy channel back to the source host."""

    source_host: str
    source_user: str
    source_migration_dir: str
    ssh_options: list[str]


@dataclass(slots=True, frozen=True)
class ImportSettings:
    mode: str  # "replace" | "merge"
    webhook_toggle_delay_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    work_dir: Path
    allowlist_file: Path
    instance: InstanceSettings
    health: HealthSettings
    retention: RetentionSettings
    remote: RemoteSettings
    importing: ImportSettings
    log_level: str
    log_json_enabled: bool

    @property
    def migration_dir(self) -> Path:
        return self.work_dir / "migration-temp"

    @property
    def import_dir(self) -> Path:
        return self.migration_dir / "import"

    @property
    def backup_dir(self) -> Path:
        return self.work_dir / "backups"


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _import_mode(value: str) -> str:
    v = (value or "").strip().lower()
    if v in {"replace", "merge"}:
        return v
    return "replace"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("N8N_ENV", default="dev").strip().lower()
    work_dir = Path(_decouple_config("N8N_DIR", default="/srv/n8n")).expanduser()

    def _csv(name: str, default: str) -> list[str]:
        raw = _decouple_config(name, default=default)
        return [part.strip() for part in raw.split(",") if part.strip()]

    instance_settings = InstanceSettings(
        container=_decouple_config("N8N_CONTAINER", default="").strip(),
        database_url=_decouple_config(
            "N8N_DATABASE_URL",
            default="sqlite:////var/lib/docker/volumes/n8n_data/_data/database.sqlite",
        ),
        database_container=_decouple_config("N8N_DB_CONTAINER", default=f"n8n-postgres-{environment}"),
        database_user=_decouple_config("N8N_DB_USER", default="n8n"),
        database_name=_decouple_config("N8N_DB_NAME", default="n8n"),
        health_url=_decouple_config("N8N_HEALTH_URL", default="http://localhost:5678/healthz"),
        config_file=_decouple_config(
            "N8N_CONFIG_FILE", default="/var/lib/docker/volumes/n8n_data/_data/config"
        ),
        env_file=_decouple_config("N8N_ENV_FILE", default=str(work_dir / ".env")),
        compose_file=_decouple_config("N8N_COMPOSE_FILE", default=str(work_dir / "docker-compose.yml")),
        data_dir_in_container=_decouple_config("N8N_CONTAINER_DATA_DIR", default="/home/node/.n8n"),
        file_owner=_decouple_config("N8N_FILE_OWNER", default="1000:1000"),
    )

    health_settings = HealthSettings(
        attempts=max(1, _int(_decouple_config("HEALTH_CHECK_ATTEMPTS", default="10"), default=10)),
        delay_seconds=_float(_decouple_config("HEALTH_CHECK_DELAY_SECONDS", default="5"), default=5.0),
        timeout_seconds=_float(_decouple_config("HEALTH_CHECK_TIMEOUT_SECONDS", default="5"), default=5.0),
    )

    retention_settings = RetentionSettings(
        daily=_int(_decouple_config("BACKUP_DAILY_RETENTION", default="14"), default=14),
        weekly=_int(_decouple_config("BACKUP_WEEKLY_RETENTION", default="8"), default=8),
        manual=_int(_decouple_config("BACKUP_MANUAL_RETENTION", default="10"), default=10),
        package_max_age_days=_int(_decouple_config("EXPORT_PACKAGE_MAX_AGE_DAYS", default="7"), default=7),
    )

    remote_settings = RemoteSettings(
        source_host=_decouple_config("SOURCE_HOST", default="").strip(),
        source_user=_decouple_config("SOURCE_USER", default="root").strip(),
        source_migration_dir=_decouple_config(
            "SOURCE_MIGRATION_DIR", default=str(work_dir / "migration-temp")
        ),
        ssh_options=_csv("SSH_OPTIONS", default="StrictHostKeyChecking=accept-new,ConnectTimeout=10"),
    )

    import_settings = ImportSettings(
        mode=_import_mode(_decouple_config("IMPORT_MODE", default="replace")),
        webhook_toggle_delay_seconds=_float(
            _decouple_config("WEBHOOK_TOGGLE_DELAY_SECONDS", default="1"), default=1.0
        ),
    )

    return Settings(
        environment=environment,
        work_dir=work_dir,
        allowlist_file=Path(
            _decouple_config("CREDENTIAL_ALLOWLIST_FILE", default=str(work_dir / "credential_allowlist.txt"))
        ).expanduser(),
        instance=instance_settings,
        health=health_settings,
        retention=retention_settings,
        remote=remote_settings,
        importing=import_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
