from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Iterator

from .errors import FileSystemError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills-lock.json"
LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class InstalledSkillRecord:
    name: str
    version: str
    content_address: str
    installed_at: int  # epoch millis
    installed_path: str
    dependencies: tuple["InstalledSkillRecord", ...] = ()
    is_direct_dependency: bool = False


@dataclass(frozen=True)
class LockFile:
    schema_version: int
    generated_at: int  # epoch millis
    skills: tuple[InstalledSkillRecord, ...]
    install_location: str

    def records(self) -> Iterator[InstalledSkillRecord]:
        stack = list(reversed(self.skills))
        while stack:
            rec = stack.pop()
            yield rec
            stack.extend(reversed(rec.dependencies))

    def find(self, name: str, version: str | None = None) -> InstalledSkillRecord | None:
        for rec in self.records():
            if rec.name == name and (version is None or rec.version == version):
                return rec
        return None

    def installed_path(self, name: str, version: str) -> Path | None:
        rec = self.find(name, version)
        if rec is None or not rec.installed_path:
            return None
        return Path(rec.installed_path)


def now_ms() -> int:
    return int(time.time() * 1000)


def create_empty(install_location: str | Path) -> LockFile:
    return LockFile(
        schema_version=LOCKFILE_VERSION,
        generated_at=now_ms(),
        skills=(),
        install_location=str(install_location),
    )


def resolve_lock_file_path(install_location: str | Path) -> Path:
    """``~/.claude/skills`` -> ``~/.claude/skills-lock.json``."""
    return Path(install_location).expanduser().resolve().parent / LOCK_FILENAME


def _record_to_dict(rec: InstalledSkillRecord) -> dict[str, Any]:
    return {
        "name": rec.name,
        "version": rec.version,
        "contentAddress": rec.content_address,
        "installedAt": rec.installed_at,
        "installedPath": rec.installed_path,
        "isDirectDependency": rec.is_direct_dependency,
        "dependencies": [_record_to_dict(d) for d in rec.dependencies],
    }


def to_dict(lock: LockFile) -> dict[str, Any]:
    return {
        "schemaVersion": max(lock.schema_version, LOCKFILE_VERSION),
        "generatedAt": lock.generated_at,
        "installLocation": lock.install_location,
        "skills": [_record_to_dict(r) for r in lock.skills],
    }


def _parse_record(raw: Any) -> InstalledSkillRecord | None:
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    version = raw.get("version")
    if not isinstance(name, str) or not name or not isinstance(version, str) or not version:
        return None

    address = raw.get("contentAddress", raw.get("arweaveTxId"))
    installed_at = raw.get("installedAt")
    installed_path = raw.get("installedPath")

    deps: list[InstalledSkillRecord] = []
    deps_raw = raw.get("dependencies")
    if isinstance(deps_raw, list):
        for dep_raw in deps_raw:
            dep = _parse_record(dep_raw)
            if dep is not None:
                deps.append(dep)

    return InstalledSkillRecord(
        name=name,
        version=version,
        content_address=address if isinstance(address, str) else "",
        installed_at=installed_at if isinstance(installed_at, int) and not isinstance(installed_at, bool) else 0,
        installed_path=installed_path if isinstance(installed_path, str) else "",
        dependencies=tuple(deps),
        is_direct_dependency=raw.get("isDirectDependency") is True,
    )


def read(path: str | Path) -> LockFile:
    """
    Load a lock file. A missing or unparseable file yields an empty lock file;
    a newer schema version is read best-effort (unknown fields are ignored).
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return create_empty(path.parent)
    except OSError as e:
        raise FileSystemError(f"Failed to read lock file {path}: {e.strerror or e}", path=path) from e

    try:
        raw = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Lock file %s is not valid JSON; treating it as empty", path)
        return create_empty(path.parent)
    if not isinstance(raw, dict):
        logger.warning("Lock file %s is not a JSON object; treating it as empty", path)
        return create_empty(path.parent)

    version = raw.get("schemaVersion", raw.get("lockfileVersion"))
    if not isinstance(version, int) or isinstance(version, bool):
        logger.warning("Lock file %s has no usable schema version; assuming %d", path, LOCKFILE_VERSION)
        version = LOCKFILE_VERSION
    elif version > LOCKFILE_VERSION:
        logger.warning(
            "Lock file %s uses schema version %d (newest known is %d); unknown fields are ignored",
            path,
            version,
            LOCKFILE_VERSION,
        )

    skills: list[InstalledSkillRecord] = []
    skills_raw = raw.get("skills")
    if isinstance(skills_raw, list):
        for item in skills_raw:
            rec = _parse_record(item)
            if rec is None:
                logger.warning("Skipping invalid entry in lock file %s: %r", path, item)
                continue
            skills.append(rec)

    generated_at = raw.get("generatedAt")
    install_location = raw.get("installLocation")
    return LockFile(
        schema_version=version,
        generated_at=generated_at if isinstance(generated_at, int) else now_ms(),
        skills=tuple(skills),
        install_location=install_location if isinstance(install_location, str) else str(path.parent),
    )


def write(lock: LockFile, path: str | Path) -> None:
    """Serialize to a temp file in the target directory, fsync, then rename over ``path``."""
    path = Path(path)
    tmp: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as fh:
            tmp = Path(fh.name)
            json.dump(to_dict(lock), fh, indent=2, sort_keys=True)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException as e:
        if tmp is not None:
            try:
                tmp.unlink()
            except OSError:
                pass
        if not isinstance(e, OSError):
            raise
        if e.errno == errno.ENOSPC:
            hint = "free up disk space"
        else:
            hint = f"check permissions for {path.parent}"
        raise FileSystemError(f"Failed to write lock file {path}: {e.strerror or e}; {hint}", path=path) from e


def merge(lock: LockFile, new_records: Iterable[InstalledSkillRecord]) -> LockFile:
    """Insert each record as a top-level entry, replacing any entry with the same name wholesale."""
    merged = list(lock.skills)
    for rec in new_records:
        for i, existing in enumerate(merged):
            if existing.name == rec.name:
                merged[i] = rec
                break
        else:
            merged.append(rec)
    return replace(lock, skills=tuple(merged), generated_at=now_ms())


def update(path: str | Path, new_records: Iterable[InstalledSkillRecord]) -> LockFile:
    merged = merge(read(path), new_records)
    write(merged, path)
    return merged
