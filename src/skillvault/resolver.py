"""Recursive dependency resolution over the metadata registry.

The resolver walks the graph depth-first, colouring each skill name as
in-progress while its dependencies are expanded and done once its subtree is
built. Meeting an in-progress name again is a cycle and fails immediately with
the full path; meeting a done name reuses the subtree that was already built,
so a shared dependency costs one metadata lookup no matter how many parents
reference it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Protocol

from .client import DependencyRef, Metadata, MetadataSource
from .config import DEFAULT_MAX_DEPTH
from .errors import DependencyError, DependencyErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolverOptions:
    max_depth: int = DEFAULT_MAX_DEPTH
    skip_installed: bool = True
    verbose: bool = False


@dataclass(frozen=True)
class DependencyNode:
    name: str
    version: str
    content_address: str
    dependencies: tuple["DependencyNode", ...] = ()
    depth: int = 0
    is_installed: bool = False
    install_path: Path | None = None

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def height(self) -> int:
        if not self.dependencies:
            return 0
        return 1 + max(child.height for child in self.dependencies)


@dataclass(frozen=True)
class DependencyTree:
    root: DependencyNode
    flat_list: tuple[DependencyNode, ...]  # dependency-first
    max_depth: int
    total_count: int
    installed_count: int


class InstalledIndex(Protocol):
    def installed_path(self, name: str, version: str) -> Path | None:
        ...


class _Color(Enum):
    IN_PROGRESS = 1
    DONE = 2


def _rebase(node: DependencyNode, depth: int) -> DependencyNode:
    if node.depth == depth:
        return node
    return replace(
        node,
        depth=depth,
        dependencies=tuple(_rebase(child, depth + 1) for child in node.dependencies),
    )


def _walk(node: DependencyNode):
    yield node
    for child in node.dependencies:
        yield from _walk(child)


def topological_order(root: DependencyNode) -> list[DependencyNode]:
    """Post-order, de-duplicated by ``name@version``: every node follows its dependencies."""
    seen: set[str] = set()
    out: list[DependencyNode] = []

    def _visit(node: DependencyNode) -> None:
        if node.key in seen:
            return
        seen.add(node.key)
        for child in node.dependencies:
            _visit(child)
        out.append(node)

    _visit(root)
    return out


class _Resolver:
    def __init__(
        self,
        source: MetadataSource,
        options: ResolverOptions,
        installed: InstalledIndex | None,
        prefetched: dict[str, Metadata] | None = None,
    ) -> None:
        self._source = source
        self._prefetched = dict(prefetched or {})
        self._options = options
        self._installed = installed
        self._colors: dict[str, _Color] = {}
        self._done: dict[str, DependencyNode] = {}
        self._log = logger.info if options.verbose else logger.debug

    def _depth_error(self, path: list[str]) -> DependencyError:
        return DependencyError(
            f"Dependency depth limit exceeded (max: {self._options.max_depth} levels). Path: {' -> '.join(path)}",
            kind=DependencyErrorKind.DEPTH_EXCEEDED,
            name=path[-1],
            path=path,
        )

    async def _fetch(self, ref: DependencyRef, path: list[str]) -> Metadata:
        seeded = self._prefetched.pop(ref.name, None)
        if seeded is not None:
            return seeded
        self._log("Fetching metadata for %r", str(ref))
        metadata = await self._source.get_metadata(ref.name, ref.exact_version)
        if metadata is None:
            full_path = path + [ref.name]
            required_by = f" (required by {' -> '.join(path)})" if path else ""
            raise DependencyError(
                f"Dependency {ref.name!r} not found in registry{required_by}",
                kind=DependencyErrorKind.NOT_FOUND,
                name=ref.name,
                path=full_path,
            )
        return metadata

    async def visit(self, ref: DependencyRef, depth: int, path: list[str]) -> DependencyNode:
        name = ref.name
        color = self._colors.get(name)
        if color is _Color.IN_PROGRESS:
            cycle = path + [name]
            raise DependencyError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                kind=DependencyErrorKind.CIRCULAR,
                name=name,
                path=cycle,
            )
        if color is _Color.DONE:
            cached = self._done[name]
            if depth + cached.height > self._options.max_depth:
                raise self._depth_error(path + [name])
            return _rebase(cached, depth)
        if depth > self._options.max_depth:
            raise self._depth_error(path + [name])

        self._colors[name] = _Color.IN_PROGRESS
        metadata = await self._fetch(ref, path)

        install_path = None
        if self._installed is not None:
            install_path = self._installed.installed_path(metadata.name, metadata.version)
        is_installed = install_path is not None

        children: list[DependencyNode] = []
        if is_installed and self._options.skip_installed:
            self._log("%s@%s already installed, not expanding its dependencies", metadata.name, metadata.version)
        else:
            if metadata.dependencies:
                self._log(
                    "%s@%s has %d dependencies: %s",
                    metadata.name,
                    metadata.version,
                    len(metadata.dependencies),
                    ", ".join(str(d) for d in metadata.dependencies),
                )
            child_path = path + [name]
            for dep in metadata.dependencies:
                children.append(await self.visit(dep, depth + 1, child_path))

        node = DependencyNode(
            name=metadata.name,
            version=metadata.version,
            content_address=metadata.content_address,
            dependencies=tuple(children),
            depth=depth,
            is_installed=is_installed,
            install_path=install_path,
        )
        self._colors[name] = _Color.DONE
        self._done[name] = node
        return node


async def resolve(
    root_name: str,
    source: MetadataSource,
    options: ResolverOptions | None = None,
    *,
    version: str | None = None,
    installed: InstalledIndex | None = None,
    root_metadata: Metadata | None = None,
) -> DependencyTree:
    """
    Build the full dependency tree for ``root_name``.

    ``root_metadata`` is used for the root instead of a registry lookup when
    the caller already holds it.

    Raises DependencyError (circular, depth_exceeded or not_found). Nothing is
    retried here; registry failures propagate unchanged.
    """
    opts = options or ResolverOptions()
    log = logger.info if opts.verbose else logger.debug
    log("Starting dependency resolution for %r", root_name)
    started = time.perf_counter()

    seed = {root_name: root_metadata} if root_metadata is not None else None
    resolver = _Resolver(source, opts, installed, seed)
    root = await resolver.visit(DependencyRef(name=root_name, version=version), 0, [])

    flat = topological_order(root)
    tree = DependencyTree(
        root=root,
        flat_list=tuple(flat),
        max_depth=max(node.depth for node in _walk(root)),
        total_count=len(flat),
        installed_count=sum(1 for node in flat if node.is_installed),
    )
    log(
        "Resolved %d skills (%d already installed) in %.2fs",
        tree.total_count,
        tree.installed_count,
        time.perf_counter() - started,
    )
    return tree
