from datetime import datetime, timezone
from pathlib import Path

import pytest

from n8n_migrate.config import clear_settings_cache
from n8n_migrate.export import run_export

from fakes import FakeN8n, create_n8n_database, credential, workflow


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point every setting at tmp_path and reset the settings cache."""
    work_dir = tmp_path / "n8n"
    work_dir.mkdir()
    database = create_n8n_database(tmp_path / "volume" / "database.sqlite")
    monkeypatch.setenv("N8N_ENV", "test")
    monkeypatch.setenv("N8N_DIR", str(work_dir))
    monkeypatch.setenv("N8N_CONTAINER", "n8n-test")
    monkeypatch.setenv("N8N_DATABASE_URL", f"sqlite:///{database}")
    monkeypatch.setenv("N8N_CONFIG_FILE", str(tmp_path / "volume" / "config"))
    monkeypatch.setenv("N8N_ENV_FILE", str(work_dir / ".env"))
    monkeypatch.setenv("N8N_COMPOSE_FILE", str(work_dir / "docker-compose.yml"))
    monkeypatch.setenv("N8N_FILE_OWNER", "")
    monkeypatch.setenv("HEALTH_CHECK_ATTEMPTS", "2")
    monkeypatch.setenv("HEALTH_CHECK_DELAY_SECONDS", "0")
    monkeypatch.setenv("WEBHOOK_TOGGLE_DELAY_SECONDS", "0")
    monkeypatch.setenv("SOURCE_HOST", "")
    clear_settings_cache()
    try:
        yield {"work_dir": work_dir, "database": database, "tmp_path": tmp_path}
    finally:
        clear_settings_cache()


@pytest.fixture
def destination_db(tmp_path) -> Path:
    return create_n8n_database(tmp_path / "dest" / "database.sqlite")


@pytest.fixture
def source_n8n() -> FakeN8n:
    """Three workflows (two active, one a webhook owner) and five credentials."""
    return FakeN8n(
        workflows=[
            workflow("Order Sync", active=True, wf_id="id1", project="p1"),
            workflow("Lead Webhook", active=True, wf_id="id2", webhook=True),
            workflow("Nightly Report", active=False, wf_id="id3"),
        ],
        credentials=[
            credential("prod-db", "postgres"),
            credential("prod-api"),
            credential("dev-db", "postgres"),
            credential("dev-api"),
            credential("test-x"),
        ],
    )


@pytest.fixture
def export_package(tmp_path, source_n8n) -> Path:
    """A transfer package exported from ``source_n8n`` with the ``prod-*`` allowlist."""
    result = run_export(
        source_n8n,
        tmp_path / "source-migration",
        allowlist=["prod-*"],
        environment="dev",
        now=datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc),
    )
    return result.package_path
