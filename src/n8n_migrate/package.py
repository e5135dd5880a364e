"""Transfer package layout: checksum manifest, deterministic archive, TSV maps."""

from __future__ import annotations

import csv
import hashlib
import json
import shutil
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Sequence
from zipfile import ZIP_DEFLATED, BadZipFile, ZipFile, ZipInfo

import structlog

from .errors import ChecksumMismatch, PackageInvalid
from .models import ActivationEntry, OwnerEntry

logger = structlog.get_logger("package")

WORKFLOWS_FILE = "workflows_sanitized.json"
CREDENTIALS_FILE = "credentials_selected.json"
ACTIVE_MAP_FILE = "workflows_active_map.tsv"
OWNER_MAP_FILE = "workflows_owner_map.tsv"
METADATA_FILE = "export_metadata.json"
CHECKSUMS_FILE = "checksums.txt"

PACKAGE_FILES: tuple[str, ...] = (
    WORKFLOWS_FILE,
    CREDENTIALS_FILE,
    ACTIVE_MAP_FILE,
    OWNER_MAP_FILE,
    METADATA_FILE,
)
REQUIRED_FILES: tuple[str, ...] = (WORKFLOWS_FILE, CREDENTIALS_FILE, ACTIVE_MAP_FILE, METADATA_FILE)


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksums(directory: Path, names: Iterable[str]) -> Path:
    """Write ``checksums.txt`` in ``sha256sum`` format for the given files."""
    lines = []
    for name in names:
        target = directory / name
        if not target.exists():
            continue
        lines.append(f"{compute_sha256(target)}  {name}")
    manifest = directory / CHECKSUMS_FILE
    manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest


def read_checksums(path: Path) -> dict[str, str]:
    entries: dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line:
            continue
        digest, _, name = line.partition(" ")
        name = name.strip().lstrip("*")
        if not digest or not name:
            raise PackageInvalid(f"Malformed checksum line in {path.name}: {raw!r}")
        entries[name] = digest.lower()
    return entries


def verify_checksums(directory: Path) -> list[str]:
    """Recompute every hash listed in the manifest.

    All-or-nothing: any missing file or mismatch raises ``ChecksumMismatch``
    with the full list of failures. Returns the verified file names.
    """
    manifest = directory / CHECKSUMS_FILE
    if not manifest.exists():
        raise ChecksumMismatch([f"{CHECKSUMS_FILE} not found in {directory}"])
    entries = read_checksums(manifest)
    if not entries:
        raise ChecksumMismatch([f"{CHECKSUMS_FILE} lists no files"])
    failures: list[str] = []
    for name, expected in entries.items():
        target = directory / name
        if not target.exists():
            failures.append(f"Missing file listed in manifest: {name}")
            continue
        actual = compute_sha256(target)
        if actual != expected:
            failures.append(f"Checksum mismatch for {name}: expected {expected}, got {actual}")
    if failures:
        raise ChecksumMismatch(failures)
    logger.info("checksums_verified", directory=str(directory), count=len(entries))
    return sorted(entries)


def load_json_list(path: Path) -> list[Any]:
    """Parse ``path`` and insist on a JSON array (empty arrays are fine)."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PackageInvalid(f"{path.name} is missing") from exc
    except json.JSONDecodeError as exc:
        raise PackageInvalid(f"{path.name} is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise PackageInvalid(f"{path.name} must contain a JSON array, got {type(data).__name__}")
    return data


METADATA_COUNT_FIELDS: tuple[str, ...] = (
    "workflow_count",
    "active_workflow_count",
    "credential_count",
    "total_credential_count",
)


def read_package_metadata(path: Path) -> dict[str, Any]:
    """Parse the export metadata object; count fields, when present, must be non-negative integers."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PackageInvalid(f"{path.name} is missing") from exc
    except json.JSONDecodeError as exc:
        raise PackageInvalid(f"{path.name} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PackageInvalid(f"{path.name} must contain a JSON object, got {type(data).__name__}")
    for key in METADATA_COUNT_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise PackageInvalid(f"{path.name}: {key} must be a non-negative integer, got {value!r}")
    return data


def package_directory_as_zip(source_dir: Path, destination: Path, names: Sequence[str] | None = None) -> Path:
    """Create a deterministic ZIP archive of ``source_dir`` at ``destination``.

    Timestamps are normalised and entries sorted so two archives of the same
    content are byte-identical. The archive is created with mode 0600.
    """
    source = source_dir.resolve()
    if not source.is_dir():
        raise PackageInvalid(f"ZIP source must be a directory (got {source}).")

    dest = destination.resolve()
    if dest.exists():
        raise PackageInvalid(f"Cannot overwrite existing archive {dest}; choose a new filename.")
    dest.parent.mkdir(parents=True, exist_ok=True)

    if names is None:
        files = sorted(p for p in source.rglob("*") if p.is_file())
    else:
        files = sorted(source / name for name in names if (source / name).is_file())

    with ZipFile(dest, mode="x", compression=ZIP_DEFLATED, compresslevel=9) as archive:
        for path in files:
            info = ZipInfo(path.relative_to(source).as_posix())
            info.compress_type = ZIP_DEFLATED
            info.date_time = (1980, 1, 1, 0, 0, 0)
            info.external_attr = 0o600 << 16
            with path.open("rb") as data, archive.open(info, "w") as zip_file:
                shutil.copyfileobj(data, zip_file, length=1 << 20)
    dest.chmod(0o600)
    return dest


def extract_package(archive: Path, destination: Path) -> Path:
    """Unpack a transfer package, refusing entries that escape ``destination``."""
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with ZipFile(archive) as zf:
            for member in zf.infolist():
                member_path = PurePosixPath(member.filename)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise PackageInvalid(f"Unsafe path in package: {member.filename}")
            zf.extractall(destination)
    except BadZipFile as exc:
        raise PackageInvalid(f"{archive.name} is not a valid zip archive: {exc}") from exc
    for extracted in destination.rglob("*"):
        if extracted.is_file():
            extracted.chmod(0o600)
    return destination


def write_activation_map(path: Path, entries: Iterable[ActivationEntry]) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t", lineterminator="\n")
        for entry in entries:
            writer.writerow([entry.name, "true" if entry.was_active else "false", entry.source_id])


def read_activation_map(path: Path) -> list[ActivationEntry]:
    if not path.exists():
        return []
    entries: list[ActivationEntry] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        for row in csv.reader(handle, delimiter="\t"):
            if not row or not row[0]:
                continue
            active = row[1].strip().lower() if len(row) > 1 else ""
            entries.append(
                ActivationEntry(
                    name=row[0],
                    was_active=active in {"true", "1", "t"},
                    source_id=row[2] if len(row) > 2 else "",
                )
            )
    return entries


def write_owner_map(path: Path, entries: Iterable[OwnerEntry]) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t", lineterminator="\n")
        for entry in entries:
            writer.writerow([entry.name, entry.project_id, entry.project_name])


def read_owner_map(path: Path) -> list[OwnerEntry]:
    if not path.exists():
        return []
    entries: list[OwnerEntry] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        for row in csv.reader(handle, delimiter="\t"):
            if not row or not row[0]:
                continue
            padded = row + [""] * (3 - len(row))
            entries.append(OwnerEntry(name=padded[0], project_id=padded[1], project_name=padded[2]))
    return entries
