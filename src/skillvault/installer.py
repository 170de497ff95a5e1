from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from . import lockfile
from .bundle import unpack
from .client import MetadataSource, parse_skill_spec
from .config import DEFAULT_CONCURRENCY, DEFAULT_MAX_DEPTH, global_install_root, local_install_root
from .errors import DependencyError, DependencyErrorKind, FileSystemError
from .lockfile import InstalledSkillRecord
from .resolver import DependencyNode, DependencyTree, ResolverOptions, resolve
from .transfer import BundleFetcher

logger = logging.getLogger(__name__)

INSTALL_META_FILENAME = ".skillvault-meta.json"


@dataclass(frozen=True)
class InstallProgressEvent:
    kind: str  # query-registry | resolve-dependencies | download-bundle | extract-bundle | update-lock-file | complete
    message: str
    current_item: str | None = None
    index: int | None = None
    total: int | None = None
    percent: int | None = None


@dataclass(frozen=True)
class InstallResult:
    installed_names: tuple[str, ...]
    dependency_count: int
    total_bytes: int
    elapsed_time: float  # seconds
    warnings: tuple[str, ...] = ()
    lock_path: Path | None = None


ProgressHandler = Callable[[InstallProgressEvent], None]


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_install_meta(skill_dir: Path) -> dict[str, Any] | None:
    meta_path = skill_dir / INSTALL_META_FILENAME
    if not meta_path.is_file():
        return None
    try:
        data = json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _write_install_meta(skill_dir: Path, node: DependencyNode) -> None:
    meta = {
        "name": node.name,
        "version": node.version,
        "content_address": node.content_address,
        "installed_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    try:
        _write_json_atomic(skill_dir / INSTALL_META_FILENAME, meta)
    except OSError as e:
        raise FileSystemError(f"Could not write install metadata in {skill_dir}: {e.strerror or e}", path=skill_dir) from e


def _is_current(skill_dir: Path, node: DependencyNode) -> bool:
    meta = _read_install_meta(skill_dir)
    if meta is None:
        return False
    return meta.get("version") == node.version and meta.get("content_address") == node.content_address


def build_record(node: DependencyNode, location: Path, installed_at: int, *, direct: bool) -> InstalledSkillRecord:
    if node.is_installed and node.install_path is not None:
        path = node.install_path
    else:
        path = location / node.name
    return InstalledSkillRecord(
        name=node.name,
        version=node.version,
        content_address=node.content_address,
        installed_at=installed_at,
        installed_path=str(path),
        dependencies=tuple(build_record(child, location, installed_at, direct=False) for child in node.dependencies),
        is_direct_dependency=direct,
    )


class Installer:
    """
    Resolve, download, unpack and lock a skill with all of its dependencies.

    Nodes are installed in dependency-first order. Any download or extraction
    failure aborts the run before the lock file is touched; files extracted for
    earlier nodes stay on disk. A failed lock-file write only produces a warning.
    """

    def __init__(
        self,
        *,
        registry: MetadataSource,
        transfer: BundleFetcher,
        max_depth: int = DEFAULT_MAX_DEPTH,
        concurrency: int = DEFAULT_CONCURRENCY,
        download_timeout_s: float | None = None,
    ) -> None:
        self.registry = registry
        self.transfer = transfer
        self.max_depth = max_depth
        self.concurrency = max(1, concurrency)
        self.download_timeout_s = download_timeout_s

    @staticmethod
    def resolve_install_location(*, local: bool = False, install_location: Path | None = None) -> Path:
        if install_location is not None:
            location = Path(install_location).expanduser().resolve()
        else:
            location = local_install_root() if local else global_install_root()
        try:
            location.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Could not create install location {location}: {e.strerror or e}", path=location) from e
        if not os.access(location, os.W_OK):
            raise FileSystemError(f"Permission denied writing to {location}", path=location)
        return location

    async def install(
        self,
        name: str,
        *,
        local: bool = False,
        force: bool = False,
        verbose: bool = False,
        no_lock: bool = False,
        install_location: Path | None = None,
        progress: ProgressHandler | None = None,
    ) -> InstallResult:
        log = logger.info if verbose else logger.debug
        started = time.perf_counter()

        def emit(event: InstallProgressEvent) -> None:
            if progress is not None:
                progress(event)

        ref = parse_skill_spec(name)
        location = self.resolve_install_location(local=local, install_location=install_location)
        lock_path = lockfile.resolve_lock_file_path(location)
        warnings: list[str] = []
        log("Installing %s into %s", ref, location)

        emit(InstallProgressEvent("query-registry", "Querying registry..."))
        metadata = await self.registry.get_metadata(ref.name, ref.exact_version)
        if metadata is None:
            raise DependencyError(
                f"Skill {ref.name!r} not found in registry",
                kind=DependencyErrorKind.NOT_FOUND,
                name=ref.name,
            )

        emit(InstallProgressEvent("resolve-dependencies", "Resolving dependencies..."))
        installed = None
        if not force:
            try:
                installed = lockfile.read(lock_path)
            except FileSystemError as e:
                logger.warning("Ignoring unreadable lock file: %s", e)
                warnings.append(f"Could not read lock file {lock_path}: {e}")
        tree = await resolve(
            ref.name,
            self.registry,
            ResolverOptions(max_depth=self.max_depth, skip_installed=not force, verbose=verbose),
            version=ref.exact_version,
            installed=installed,
            root_metadata=metadata,
        )

        installed_names, total_bytes = await self._install_nodes(tree, location, force=force, log=log, emit=emit)

        written_lock: Path | None = None
        if no_lock:
            log("Skipping lock file update")
        elif tree.root.is_installed:
            log("%s is already installed; lock file left unchanged", tree.root.key)
        else:
            emit(InstallProgressEvent("update-lock-file", "Updating lock file..."))
            record = build_record(tree.root, location, lockfile.now_ms(), direct=True)
            try:
                lockfile.update(lock_path, [record])
                written_lock = lock_path
            except FileSystemError as e:
                logger.warning("Failed to update lock file for %s: %s", tree.root.key, e)
                warnings.append(f"Failed to update lock file for {tree.root.key}: {e}")
                emit(InstallProgressEvent("update-lock-file", f"Warning: failed to update lock file for {tree.root.key}"))

        elapsed = time.perf_counter() - started
        emit(InstallProgressEvent("complete", "Installation complete"))
        log("Installed %d skills (%d bytes) in %.2fs", len(installed_names), total_bytes, elapsed)

        return InstallResult(
            installed_names=tuple(installed_names),
            dependency_count=tree.total_count - 1,
            total_bytes=total_bytes,
            elapsed_time=elapsed,
            warnings=tuple(warnings),
            lock_path=written_lock,
        )

    async def _install_nodes(
        self,
        tree: DependencyTree,
        location: Path,
        *,
        force: bool,
        log: Callable[..., None],
        emit: Callable[[InstallProgressEvent], None],
    ) -> tuple[list[str], int]:
        pending: list[DependencyNode] = []
        for node in tree.flat_list:
            if node.is_installed:
                continue
            if not force and _is_current(location / node.name, node):
                log("%s is already present in %s", node.key, location / node.name)
                continue
            pending.append(node)

        total = len(pending)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _download(index: int, node: DependencyNode) -> bytes:
            async with semaphore:
                item = node.key
                emit(InstallProgressEvent("download-bundle", f"Downloading {item}", item, index, total))

                def _on_progress(percent: int) -> None:
                    emit(InstallProgressEvent("download-bundle", f"Downloading {item}", item, index, total, percent))

                data = await self.transfer.download(
                    node.content_address,
                    timeout_s=self.download_timeout_s,
                    progress=_on_progress,
                )
                log("Downloaded %s (%d bytes)", item, len(data))
                return data

        # Downloads may finish in any order; extraction follows flat_list.
        tasks = [asyncio.ensure_future(_download(i, node)) for i, node in enumerate(pending, start=1)]
        installed_names: list[str] = []
        total_bytes = 0
        try:
            for index, (node, task) in enumerate(zip(pending, tasks), start=1):
                data = await task
                total_bytes += len(data)
                emit(InstallProgressEvent("extract-bundle", f"Installing {node.key}", node.key, index, total))
                target = location / node.name
                # A directory we installed earlier is replaced without asking.
                overwrite = force or _read_install_meta(target) is not None
                await asyncio.to_thread(unpack, data, target_dir=target, force=overwrite, expected_name=node.name)
                _write_install_meta(target, node)
                installed_names.append(node.key)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return installed_names, total_bytes
