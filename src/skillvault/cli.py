from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from . import lockfile
from ._version import __version__
from .bundle import DEFAULT_COMPRESSION_LEVEL, pack, unpack
from .client import RegistryClient
from .config import (
    Config,
    config_path,
    global_install_root,
    load_config,
    local_install_root,
    save_config,
    validate_gateway_url,
)
from .errors import (
    ConfirmationRequiredError,
    DependencyError,
    FileSystemError,
    NetworkError,
    SkillvaultError,
    ValidationError,
)
from .installer import Installer, InstallProgressEvent, InstallResult
from .transfer import ContentTransfer

EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # CLI flags override config file and environment.
    updates: dict[str, Any] = {}
    if getattr(args, "gateway_url", None):
        updates["gateway_url"] = validate_gateway_url(args.gateway_url)
    if getattr(args, "registry_url", None):
        updates["registry_url"] = args.registry_url
    if getattr(args, "timeout_s", None) is not None:
        updates["timeout_s"] = args.timeout_s
    return replace(base, **updates) if updates else base


def _install_location(args: argparse.Namespace) -> Path | None:
    if getattr(args, "install_location", None):
        return Path(args.install_location).expanduser()
    return None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillvault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, pack and unpack skills stored in a content-addressed archive.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLVAULT_CONFIG_PATH, SKILLVAULT_GATEWAY, SKILLVAULT_REGISTRY_URL, SKILLVAULT_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillvault {__version__}")
    p.add_argument("--config", help="Path to config file (overrides lookup)")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--gateway-url")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-depth", type=int)
    cfg_set.add_argument("--concurrency", type=int)

    # install
    install = sub.add_parser("install", aliases=["i"], help="Install a skill and its dependencies")
    install.add_argument("skill", help="Skill name, optionally name@version")
    install.add_argument("--local", action="store_true", help="Install into ./.claude/skills instead of ~/.claude/skills")
    install.add_argument("--install-location", help="Explicit install directory")
    install.add_argument("--force", action="store_true", help="Reinstall even if already installed")
    install.add_argument("--no-lock", action="store_true", help="Do not update skills-lock.json")
    install.add_argument("--gateway-url", help="Content gateway URL (HTTPS)")
    install.add_argument("--registry-url", help="Metadata registry URL")
    install.add_argument("--timeout-s", type=float, help="Per-download timeout in seconds, retries included")
    install.add_argument("-v", "--verbose", action="store_true")
    install.add_argument("--json", action="store_true", help="Output JSON")

    # pack
    pack_p = sub.add_parser("pack", help="Bundle a skill directory into a zip archive")
    pack_p.add_argument("path", nargs="?", default=".", help="Skill directory (default: .)")
    pack_p.add_argument("-o", "--output", help="Write the archive here (default: <dirname>.zip)")
    pack_p.add_argument("--level", type=int, default=DEFAULT_COMPRESSION_LEVEL, help="Compression level 0-9 (default: 6)")
    pack_p.add_argument("--top-level-dir", help="Store entries under this folder inside the archive")
    pack_p.add_argument("-v", "--verbose", action="store_true")
    pack_p.add_argument("--json", action="store_true", help="Output JSON")

    # unpack
    unpack_p = sub.add_parser("unpack", help="Install a skill from a local zip archive")
    unpack_p.add_argument("archive", help="Path to the bundle")
    unpack_p.add_argument("--local", action="store_true", help="Extract under ./.claude/skills")
    unpack_p.add_argument("--target", help="Exact destination directory")
    unpack_p.add_argument("--force", action="store_true", help="Overwrite an existing destination")
    unpack_p.add_argument("-v", "--verbose", action="store_true")
    unpack_p.add_argument("--json", action="store_true", help="Output JSON")

    # lock
    lock = sub.add_parser("lock", help="Inspect the lock file")
    lock_sub = lock.add_subparsers(dest="subcmd", required=True)
    lock_show = lock_sub.add_parser("show", help="List locked skills")
    lock_show.add_argument("--local", action="store_true", help="Use ./.claude/skills-lock.json")
    lock_show.add_argument("--install-location", help="Install directory whose lock file to show")
    lock_show.add_argument("--json", action="store_true", help="Output JSON")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path(args.config)))
        return 0

    if args.subcmd == "show":
        cfg = load_config(args.config)
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config(args.config)
        updates: dict[str, Any] = {}
        if args.gateway_url is not None:
            updates["gateway_url"] = validate_gateway_url(args.gateway_url)
        if args.registry_url is not None:
            updates["registry_url"] = args.registry_url.rstrip("/")
        if args.timeout_s is not None:
            updates["timeout_s"] = args.timeout_s
        if args.max_depth is not None:
            updates["max_depth"] = args.max_depth
        if args.concurrency is not None:
            updates["concurrency"] = args.concurrency
        path = save_config(replace(cfg, **updates), args.config)
        print(f"saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _progress_printer(event: InstallProgressEvent) -> None:
    if event.percent is not None:
        return
    if event.index is not None and event.total:
        print(f"[{event.index}/{event.total}] {event.message}", file=sys.stderr)
    else:
        print(event.message, file=sys.stderr)


async def _run_install(args: argparse.Namespace, cfg: Config) -> InstallResult:
    async with RegistryClient(base_url=cfg.registry_url, timeout_s=cfg.timeout_s) as registry:
        async with ContentTransfer(gateway_url=cfg.gateway_url, timeout_s=cfg.timeout_s) as transfer:
            installer = Installer(
                registry=registry,
                transfer=transfer,
                max_depth=cfg.max_depth,
                concurrency=cfg.concurrency,
            )
            return await installer.install(
                args.skill,
                local=args.local,
                force=args.force,
                verbose=args.verbose,
                no_lock=args.no_lock,
                install_location=_install_location(args),
                progress=None if args.json else _progress_printer,
            )


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(args.config), args)
    result = asyncio.run(_run_install(args, cfg))

    payload = {
        "installed": list(result.installed_names),
        "dependency_count": result.dependency_count,
        "total_bytes": result.total_bytes,
        "elapsed_time": round(result.elapsed_time, 3),
        "lock_path": str(result.lock_path) if result.lock_path else None,
        "warnings": list(result.warnings),
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if not result.installed_names:
        print(f"{args.skill} is already installed")
    for key in result.installed_names:
        print(f"installed: {key}")
    print(f"dependencies: {result.dependency_count}")
    print(f"downloaded: {result.total_bytes} bytes in {result.elapsed_time:.2f}s")
    if result.lock_path:
        print(f"lock: {result.lock_path}")
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return 0


def cmd_pack(args: argparse.Namespace) -> int:
    source = Path(args.path).expanduser().resolve()
    result = pack(source, compression_level=args.level, top_level_dir=args.top_level_dir)
    out = Path(args.output).expanduser() if args.output else Path.cwd() / f"{source.name}.zip"
    try:
        out.write_bytes(result.data)
    except OSError as e:
        raise FileSystemError(f"Could not write {out}: {e.strerror or e}", path=out) from e

    payload = {
        "output": str(out),
        "file_count": result.file_count,
        "size_bytes": result.size,
        "sha256": result.sha256,
        "exceeded_limit": result.exceeded_limit,
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    print(f"output: {out}")
    print(f"files: {result.file_count}")
    print(f"size: {result.size_formatted}")
    print(f"sha256: {result.sha256}")
    if result.exceeded_limit:
        print(f"warning: bundle is {result.size_formatted}, above the recommended limit", file=sys.stderr)
    return 0


def cmd_unpack(args: argparse.Namespace) -> int:
    archive = Path(args.archive).expanduser()
    try:
        data = archive.read_bytes()
    except OSError as e:
        raise FileSystemError(f"Could not read {archive}: {e.strerror or e}", path=archive) from e
    target = Path(args.target).expanduser() if args.target else None
    result = unpack(data, target_dir=target, local=args.local, force=args.force)

    payload = {
        "name": result.root_name,
        "version": result.version,
        "installed_path": str(result.installed_path),
        "file_count": result.file_count,
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    print(f"installed: {result.root_name}" + (f"@{result.version}" if result.version else ""))
    print(f"path: {result.installed_path}")
    print(f"files: {result.file_count}")
    return 0


def cmd_lock(args: argparse.Namespace) -> int:
    if args.subcmd != "show":
        raise AssertionError("unreachable")
    location = _install_location(args) or (local_install_root() if args.local else global_install_root())
    path = lockfile.resolve_lock_file_path(location)
    lock = lockfile.read(path)

    if args.json:
        print(json.dumps(lockfile.to_dict(lock), indent=2, sort_keys=True))
        return 0
    print(f"lock: {path}")
    rows = [["NAME", "VERSION", "DIRECT", "PATH"]]
    for rec in lock.records():
        rows.append([rec.name, rec.version, "yes" if rec.is_direct_dependency else "no", rec.installed_path])
    if len(rows) == 1:
        print("no skills installed")
        return 0
    _print_table(rows)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", False))
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "pack":
            return cmd_pack(args)
        if args.cmd == "unpack":
            return cmd_unpack(args)
        if args.cmd == "lock":
            return cmd_lock(args)
        raise AssertionError("unreachable")
    except ConfirmationRequiredError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR
    except (ValidationError, DependencyError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR
    except (NetworkError, FileSystemError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_SYSTEM_ERROR
    except SkillvaultError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USER_ERROR


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
