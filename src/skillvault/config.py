from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ValidationError

DEFAULT_GATEWAY_URL = "https://arweave.net"
DEFAULT_REGISTRY_URL = "https://registry.skillvault.dev"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_MAX_DEPTH = 10
DEFAULT_CONCURRENCY = 4

LOCAL_CONFIG_FILENAME = ".skillsrc"
SKILLS_DIRNAME = Path(".claude") / "skills"


@dataclass(frozen=True)
class Config:
    gateway_url: str = DEFAULT_GATEWAY_URL
    registry_url: str = DEFAULT_REGISTRY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S  # per download, retries included
    max_depth: int = DEFAULT_MAX_DEPTH
    concurrency: int = DEFAULT_CONCURRENCY


def validate_gateway_url(url: str, *, field: str = "gateway_url") -> str:
    value = (url or "").strip()
    if not value.startswith("https://"):
        raise ValidationError(
            f"Gateway URL must use HTTPS: {value!r}. Use an HTTPS gateway such as {DEFAULT_GATEWAY_URL}.",
            field=field,
            value=value,
        )
    return value.rstrip("/")


def local_install_root(cwd: Path | None = None) -> Path:
    return (cwd or Path.cwd()) / SKILLS_DIRNAME


def global_install_root() -> Path:
    return Path.home() / SKILLS_DIRNAME


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLVAULT_CONFIG_PATH"):
        return Path(env).expanduser()
    local = Path.cwd() / LOCAL_CONFIG_FILENAME
    if local.is_file():
        return local
    return user_config_path("skillvault") / "config.json"


def _apply_env(cfg: Config) -> Config:
    updates: dict[str, Any] = {}
    if gateway := os.getenv("SKILLVAULT_GATEWAY"):
        updates["gateway_url"] = gateway.strip()
    if registry := os.getenv("SKILLVAULT_REGISTRY_URL"):
        updates["registry_url"] = registry.strip()
    if timeout := os.getenv("SKILLVAULT_TIMEOUT_S"):
        try:
            updates["timeout_s"] = float(timeout)
        except ValueError as e:
            raise ValidationError(f"SKILLVAULT_TIMEOUT_S must be a number, got {timeout!r}", field="timeout_s") from e
    return replace(cfg, **updates) if updates else cfg


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    cfg = Config()
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Configuration file {path} contains malformed JSON: {e}", field="config") from e
        if isinstance(raw, dict):
            # Legacy .skillsrc files spell the gateway key without the suffix.
            if "gateway" in raw and "gateway_url" not in raw:
                raw["gateway_url"] = raw["gateway"]
            if "registry" in raw and "registry_url" not in raw:
                raw["registry_url"] = raw["registry"]
            allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
            filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
            cfg = Config(**filtered)  # type: ignore[arg-type]

    cfg = _apply_env(cfg)
    return replace(cfg, gateway_url=validate_gateway_url(cfg.gateway_url))


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path
