from __future__ import annotations

import errno
import hashlib
import io
import logging
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable

import yaml

from .config import global_install_root, local_install_root
from .errors import ConfirmationRequiredError, FileSystemError, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "SKILL.md"
DEFAULT_MAX_BUNDLE_BYTES = 10 * 1024 * 1024  # soft cap, warning only
DEFAULT_COMPRESSION_LEVEL = 6

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    ".DS_Store",
    "Thumbs.db",
}

# Hidden entries that are still shipped.
HIDDEN_ALLOWLIST = {".skillsrc"}

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)


@dataclass(frozen=True)
class PackProgress:
    current: int
    total: int
    path: str


@dataclass(frozen=True)
class BundleResult:
    data: bytes
    size: int
    file_count: int
    size_formatted: str
    exceeded_limit: bool
    sha256: str


@dataclass(frozen=True)
class UnpackResult:
    installed_path: Path
    file_count: int
    root_name: str
    version: str | None = None


def default_filter(rel_path: str) -> bool:
    """Return True if ``rel_path`` (relative, ``/``-separated) belongs in a bundle."""
    for part in PurePosixPath(rel_path).parts:
        if part in DEFAULT_EXCLUDE_NAMES:
            return False
        if part.startswith(".") and part not in HIDDEN_ALLOWLIST:
            return False
    return True


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _collect_files(root: Path, include: Callable[[str], bool]) -> list[str]:
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_dir = base.relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"
        # Prune in place so excluded trees are never walked.
        dirnames[:] = sorted(
            d for d in dirnames if include(prefix + d) and not (base / d).is_symlink()
        )
        for name in sorted(filenames):
            rel = prefix + name
            if (base / name).is_symlink() or not include(rel):
                continue
            files.append(rel)
    files.sort(key=str.lower)
    return files


def pack(
    source_dir: Path,
    *,
    compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    include: Callable[[str], bool] | None = None,
    progress: Callable[[PackProgress], None] | None = None,
    max_bytes: int = DEFAULT_MAX_BUNDLE_BYTES,
    top_level_dir: str | None = None,
) -> BundleResult:
    root = Path(source_dir).expanduser().resolve()
    if not root.exists():
        raise FileSystemError(f"Directory not found: {root}", path=root)
    if not root.is_dir():
        raise FileSystemError(f"Path is not a directory: {root}", path=root)
    if not isinstance(compression_level, int) or not 0 <= compression_level <= 9:
        raise ValidationError(
            f"Compression level must be between 0 and 9, got {compression_level!r}.",
            field="compression_level",
            value=compression_level,
        )

    prefix = ""
    if top_level_dir is not None:
        archive_root = top_level_dir.strip()
        if not archive_root or archive_root in {".", ".."} or "/" in archive_root or "\\" in archive_root:
            raise ValidationError(
                "Top-level archive folder name must be a single folder name (no path separators).",
                field="top_level_dir",
                value=top_level_dir,
            )
        prefix = archive_root + "/"

    try:
        files = _collect_files(root, include or default_filter)
    except OSError as e:
        raise FileSystemError(f"Could not read {root}: {e.strerror or e}", path=root) from e

    if compression_level == 0:
        compression, level = zipfile.ZIP_STORED, None
    else:
        compression, level = zipfile.ZIP_DEFLATED, compression_level

    buf = io.BytesIO()
    total = len(files)
    with zipfile.ZipFile(buf, "w", compression=compression, compresslevel=level, strict_timestamps=False) as zf:
        for i, rel in enumerate(files, start=1):
            try:
                zf.write(root / rel, arcname=prefix + rel)
            except OSError as e:
                raise FileSystemError(f"Could not read {rel}: {e.strerror or e}", path=root / rel) from e
            if progress is not None:
                progress(PackProgress(current=i, total=total, path=rel))

    data = buf.getvalue()
    size = len(data)
    exceeded = size > max_bytes
    if exceeded:
        logger.warning("Bundle for %s is %s, above the %s soft limit", root.name, format_size(size), format_size(max_bytes))

    return BundleResult(
        data=data,
        size=size,
        file_count=total,
        size_formatted=format_size(size),
        exceeded_limit=exceeded,
        sha256=hashlib.sha256(data).hexdigest(),
    )


def parse_frontmatter(text: str) -> dict[str, Any]:
    m = _FRONTMATTER_RE.match(text.lstrip("\ufeff"))
    if not m:
        raise ValidationError(f"{MANIFEST_FILENAME} has no YAML frontmatter.", field="manifest")
    try:
        data = yaml.safe_load(m.group(1))
    except yaml.YAMLError as e:
        raise ValidationError(f"{MANIFEST_FILENAME} frontmatter is malformed: {e}", field="manifest") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{MANIFEST_FILENAME} frontmatter must be a mapping.", field="manifest")
    return data


def _open_archive(data: bytes) -> zipfile.ZipFile:
    if not data:
        raise ValidationError("Bundle is empty.", field="bundle")
    try:
        zf = zipfile.ZipFile(io.BytesIO(data), "r")
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise ValidationError(f"Bundle is not a valid zip archive: {e}", field="bundle") from e
    try:
        bad = zf.testzip()
    except (zipfile.BadZipFile, OSError, EOFError) as e:
        zf.close()
        raise ValidationError(f"Bundle is corrupt: {e}", field="bundle") from e
    if bad is not None:
        zf.close()
        raise ValidationError(f"Bundle is corrupt: bad CRC for entry {bad!r}", field="bundle")
    for name in zf.namelist():
        parts = PurePosixPath(name.replace("\\", "/")).parts
        if name.startswith(("/", "\\")) or ".." in parts or (parts and ":" in parts[0]):
            zf.close()
            raise ValidationError(f"Bundle contains an invalid path entry: {name!r}", field="bundle", value=name)
    return zf


def _archive_prefix(names: list[str]) -> str:
    if MANIFEST_FILENAME in names:
        return ""
    tops = {n.split("/", 1)[0] for n in names if n}
    if len(tops) == 1:
        top = next(iter(tops))
        if f"{top}/{MANIFEST_FILENAME}" in names:
            return top + "/"
    raise ValidationError(f"Bundle missing {MANIFEST_FILENAME} file.", field="bundle")


def _read_manifest(zf: zipfile.ZipFile, prefix: str) -> dict[str, Any]:
    raw = zf.read(prefix + MANIFEST_FILENAME)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"{MANIFEST_FILENAME} is not valid UTF-8.", field="manifest") from e
    manifest = parse_frontmatter(text)
    name = manifest.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"{MANIFEST_FILENAME} frontmatter has no 'name' field.", field="name")
    return manifest


def detect_skill_name(data: bytes) -> str:
    with _open_archive(data) as zf:
        manifest = _read_manifest(zf, _archive_prefix(zf.namelist()))
    return str(manifest["name"]).strip()


def resolve_install_path(name: str, *, local: bool = False, target_dir: Path | None = None) -> Path:
    if target_dir is not None:
        return Path(target_dir).expanduser().resolve()
    root = local_install_root() if local else global_install_root()
    return root / name


def _fs_error(e: OSError, action: str, path: Path) -> FileSystemError:
    if e.errno == errno.ENOSPC:
        return FileSystemError(f"Insufficient disk space while {action} {path}", path=path)
    if e.errno in (errno.EACCES, errno.EPERM):
        return FileSystemError(f"Permission denied while {action} {path}", path=path)
    return FileSystemError(f"Failed while {action} {path}: {e.strerror or e}", path=path)


def _extract_members(zf: zipfile.ZipFile, prefix: str, dest: Path) -> int:
    count = 0
    base = dest.resolve()
    for info in zf.infolist():
        if not info.filename.startswith(prefix):
            continue
        rel = info.filename[len(prefix) :]
        if not rel:
            continue
        target = (dest / rel).resolve()
        if not str(target).startswith(str(base) + os.sep):
            raise ValidationError(f"Bundle contains an invalid path entry: {info.filename!r}", field="bundle")
        if info.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        with zf.open(info, "r") as src, target.open("wb") as out:
            shutil.copyfileobj(src, out)
        count += 1
    return count


def unpack(
    data: bytes,
    *,
    target_dir: Path | None = None,
    local: bool = False,
    force: bool = False,
    expected_name: str | None = None,
) -> UnpackResult:
    """
    Validate ``data`` as a skill bundle and extract it.

    Nothing touches the filesystem until the archive, its entries and its
    SKILL.md manifest have been validated. Extraction goes to a temporary
    sibling directory that is swapped into place, so a failure leaves any
    previous install untouched.
    """
    with _open_archive(data) as zf:
        prefix = _archive_prefix(zf.namelist())
        manifest = _read_manifest(zf, prefix)
        name = str(manifest["name"]).strip()
        version = manifest.get("version")
        if expected_name is not None and name != expected_name:
            raise ValidationError(
                f"Bundle contains skill {name!r} but {expected_name!r} was expected.",
                field="name",
                value=name,
            )

        dest = resolve_install_path(name, local=local, target_dir=target_dir)
        if dest.exists() and not force:
            raise ConfirmationRequiredError(
                f"{dest} already exists. Re-run with force to overwrite.",
                path=dest,
            )

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{dest.name}-", dir=dest.parent))
            os.chmod(staging, 0o755)
        except OSError as e:
            raise _fs_error(e, "preparing", dest) from e

        try:
            file_count = _extract_members(zf, prefix, staging)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise _fs_error(e, "extracting to", dest) from e
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    backup = dest.with_name(dest.name + ".skillvault-backup")
    had_existing = dest.exists()
    try:
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)
        if had_existing:
            dest.rename(backup)
        staging.rename(dest)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        if had_existing and backup.exists() and not dest.exists():
            backup.rename(dest)
        raise _fs_error(e, "installing", dest) from e
    finally:
        if backup.exists() and dest.exists():
            shutil.rmtree(backup, ignore_errors=True)

    logger.debug("Extracted %d files for %s into %s", file_count, name, dest)
    return UnpackResult(
        installed_path=dest,
        file_count=file_count,
        root_name=name,
        version=str(version) if version is not None else None,
    )
