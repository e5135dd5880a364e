"""Exception hierarchy and warning records for migration runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


class MigrationError(RuntimeError):
    """Raised when a migration step fails in a way the run cannot absorb."""


class SnapshotError(MigrationError):
    """Raised when a snapshot cannot be taken (owner process not stoppable, copy failed)."""


class SnapshotCorrupt(SnapshotError):
    """Raised when a freshly taken snapshot fails its consistency check."""


class ChecksumMismatch(MigrationError):
    """Raised when a transfer package does not match its checksum manifest."""

    def __init__(self, failures: Sequence[str]) -> None:
        self.failures = list(failures)
        super().__init__("Checksum verification failed:\n" + "\n".join(self.failures))


class PackageInvalid(MigrationError):
    """Raised when a transfer package is missing files or carries malformed content."""


class BackupFailed(MigrationError):
    """Raised when a backup cannot be created or does not pass verification."""


class HealthCheckTimeout(MigrationError):
    """Raised when the instance does not report healthy within the retry budget."""


class KeyNotFound(MigrationError):
    """Raised when no encryption key can be read from the instance configuration."""


class CommandFailed(MigrationError):
    """Raised when an external command exits non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"Command {' '.join(self.command)!r} exited with {returncode}{detail}")


PARTIAL_IMPORT_COUNT = "PartialImportCount"
ACTIVATION_TARGET_MISSING = "ActivationTargetMissing"
KEY_PROPAGATION_INCOMPLETE = "KeyPropagationIncomplete"
POST_IMPORT_STEP_FAILED = "PostImportStepFailed"


@dataclass(slots=True, frozen=True)
class MigrationWarning:
    code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}
