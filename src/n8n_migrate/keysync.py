"""Encryption-key synchronization between the source and destination instances.

n8n decrypts stored credentials with the ``encryptionKey`` from its on-disk
config file. When a database moves between instances, every place the
destination reads its key from has to agree with the source before n8n is
restarted.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import time
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from .adapters import AutomationServerCLI, ProcessControl, apply_file_owner
from .config import HealthSettings
from .errors import KEY_PROPAGATION_INCOMPLETE, KeyNotFound, MigrationError, MigrationWarning
from .health import wait_for_healthy

logger = structlog.get_logger("keysync")

ENCRYPTION_KEY_VAR = "N8N_ENCRYPTION_KEY"
COMPOSE_ANCHOR_VAR = "N8N_BLOCK_ENV_ACCESS_IN_NODE"

_KEY_FALLBACK_RE = re.compile(r'"encryptionKey"\s*:\s*"([^"]*)"')
_COMPOSE_KEY_RE = re.compile(
    rf"^(?P<indent>[ \t]*)(?P<dash>-[ \t]*)?{ENCRYPTION_KEY_VAR}[ \t]*[:=].*$", re.MULTILINE
)
_COMPOSE_ANCHOR_RE = re.compile(
    rf"^(?P<indent>[ \t]*)(?P<dash>-[ \t]*)?{COMPOSE_ANCHOR_VAR}\b.*$", re.MULTILINE
)
_COMPOSE_ENV_BLOCK_RE = re.compile(r"^(?P<indent>[ \t]*)environment:[ \t]*$", re.MULTILINE)
_ENV_KEY_RE = re.compile(rf"^{ENCRYPTION_KEY_VAR}=.*$", re.MULTILINE)


@dataclass(slots=True)
class KeySyncResult:
    updated: list[Path] = field(default_factory=list)
    missing: list[Path] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)
    warnings: list[MigrationWarning] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing

    def as_dict(self) -> dict[str, Any]:
        return {
            "updated": [str(p) for p in self.updated],
            "missing": [str(p) for p in self.missing],
            "backups": [str(p) for p in self.backups],
        }


def parse_encryption_key(config_text: str) -> str:
    """Pull ``encryptionKey`` out of n8n's config file contents."""
    key: Optional[str] = None
    try:
        data = json.loads(config_text)
    except json.JSONDecodeError:
        match = _KEY_FALLBACK_RE.search(config_text)
        key = match.group(1) if match else None
    else:
        if isinstance(data, dict):
            raw = data.get("encryptionKey")
            key = str(raw) if raw else None
    if not key:
        raise KeyNotFound("Could not extract encryptionKey from the instance config file.")
    return key


def extract_key(cli: AutomationServerCLI) -> str:
    """Read the key the running source instance actually uses (its config file, not env)."""
    key = parse_encryption_key(cli.read_config())
    logger.info("encryption_key_extracted", length=len(key))
    return key


def read_key_file(path: Path) -> str:
    """Read a key saved next to a full-database snapshot (``encryption_key.txt``)."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise KeyNotFound(f"Key file not found: {path}") from exc
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    raise KeyNotFound(f"Key file {path} is empty.")


def update_compose_declaration(content: str, key: str) -> Optional[str]:
    """Set the key in a compose file; ``None`` when there is no environment block to put it in."""
    quoted = key.replace("'", "''")

    def _line(indent: str, dash: Optional[str]) -> str:
        if dash:
            return f"{indent}{dash}{ENCRYPTION_KEY_VAR}={key}"
        return f"{indent}{ENCRYPTION_KEY_VAR}: '{quoted}'"

    if _COMPOSE_KEY_RE.search(content):
        return _COMPOSE_KEY_RE.sub(lambda m: _line(m.group("indent"), m.group("dash")), content)

    anchor = _COMPOSE_ANCHOR_RE.search(content)
    if anchor:
        new_line = _line(anchor.group("indent"), anchor.group("dash"))
        return content[: anchor.end()] + "\n" + new_line + content[anchor.end() :]

    block = _COMPOSE_ENV_BLOCK_RE.search(content)
    if block:
        new_line = _line(block.group("indent") + "  ", None)
        return content[: block.end()] + "\n" + new_line + content[block.end() :]
    return None


def update_env_file(content: str, key: str) -> str:
    line = f"{ENCRYPTION_KEY_VAR}={key}"
    if _ENV_KEY_RE.search(content):
        return _ENV_KEY_RE.sub(lambda _m: line, content)
    if content and not content.endswith("\n"):
        return content + "\n" + line + "\n"
    return content + line + "\n"


def update_config_json(content: str, key: str) -> str:
    data: dict[str, Any] = {}
    if content.strip():
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise MigrationError(f"Instance config file is not valid JSON: {exc}") from exc
        if isinstance(parsed, dict):
            data = parsed
    data["encryptionKey"] = key
    return json.dumps(data, indent="\t") + "\n"


def _write_atomic(path: Path, content: str, *, mode: Optional[int] = None) -> None:
    temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.tmp.", text=True)
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        target_mode = mode if mode is not None else path.stat().st_mode & 0o777
        with suppress(OSError, NotImplementedError):
            Path(temp_path).chmod(target_mode)
        Path(temp_path).replace(path)
    except OSError:
        Path(temp_path).unlink(missing_ok=True)
        raise


def propagate_key(
    key: str,
    *,
    compose_file: Optional[Path],
    env_file: Optional[Path],
    config_file: Optional[Path],
    owner: str = "",
    now: Optional[datetime] = None,
) -> KeySyncResult:
    """Write ``key`` to the compose declaration, the env file and the config file, in that order.

    Each existing target is copied to ``<file>.backup.<timestamp>`` first.
    Missing targets are skipped with a ``KeyPropagationIncomplete`` warning.
    """
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    result = KeySyncResult()
    targets: list[tuple[str, Optional[Path], Callable[[str, str], Optional[str]], Optional[int]]] = [
        ("compose declaration", compose_file, update_compose_declaration, None),
        ("env file", env_file, update_env_file, 0o600),
        ("config file", config_file, update_config_json, 0o600),
    ]
    for label, path, updater, mode in targets:
        if path is None or not path.exists():
            missing = path or Path(label)
            result.missing.append(missing)
            message = f"Encryption key not written to {label}: {missing} does not exist"
            result.warnings.append(MigrationWarning(KEY_PROPAGATION_INCOMPLETE, message))
            logger.warning("key_target_missing", target=label, path=str(missing))
            continue
        updated = updater(path.read_text(encoding="utf-8"), key)
        if updated is None:
            result.missing.append(path)
            message = f"Encryption key not written to {label}: no environment block in {path}"
            result.warnings.append(MigrationWarning(KEY_PROPAGATION_INCOMPLETE, message))
            logger.warning("key_target_unplaceable", target=label, path=str(path))
            continue
        backup = path.with_name(f"{path.name}.backup.{stamp}")
        shutil.copy2(path, backup)
        result.backups.append(backup)
        _write_atomic(path, updated, mode=mode)
        if label == "config file":
            apply_file_owner(path, owner)
        result.updated.append(path)
        logger.info("key_target_updated", target=label, path=str(path), backup=str(backup))
    return result


def apply_key(
    process: ProcessControl,
    service_id: str,
    health_check: Callable[[], bool],
    health: HealthSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Restart the destination so the new key is read, and block until healthy."""
    process.stop(service_id)
    process.start(service_id)
    attempts = wait_for_healthy(health_check, attempts=health.attempts, delay=health.delay_seconds, sleep=sleep)
    logger.info("encryption_key_applied", service=service_id, attempts=attempts)
    return attempts
