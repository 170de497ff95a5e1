from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .errors import NetworkError, NetworkErrorKind, ValidationError

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
# Range-like tokens are not forwarded to the registry; only exact versions are.
_EXACT_VERSION_RE = re.compile(r"^=?\s*(\d+(?:\.\d+)*(?:[-+][0-9A-Za-z.\-+]*)?)$")


@dataclass(frozen=True)
class DependencyRef:
    name: str
    version: str | None = None

    @property
    def exact_version(self) -> str | None:
        if not self.version:
            return None
        m = _EXACT_VERSION_RE.match(self.version.strip())
        return m.group(1) if m else None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


@dataclass(frozen=True)
class Metadata:
    name: str
    version: str
    content_address: str
    dependencies: tuple[DependencyRef, ...] = ()


class MetadataSource(Protocol):
    async def get_metadata(self, name: str, version: str | None = None) -> Metadata | None:
        ...


def parse_skill_spec(value: str) -> DependencyRef:
    """Split ``name`` or ``name@version`` into a :class:`DependencyRef`."""
    raw = (value or "").strip()
    name, sep, version = raw.partition("@")
    name = name.strip()
    version = version.strip()
    if not name or not _NAME_RE.match(name):
        raise ValidationError(
            f"Invalid skill name {value!r}. Use lowercase letters, numbers, '.', '_' and '-'.",
            field="name",
            value=value,
        )
    if sep and not version:
        raise ValidationError(f"Missing version after '@' in {value!r}.", field="version", value=value)
    return DependencyRef(name=name, version=version or None)


def _parse_dependency_entry(raw: Any) -> DependencyRef:
    if isinstance(raw, str):
        return parse_skill_spec(raw)
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        ref = parse_skill_spec(raw["name"])
        version = raw.get("version")
        if isinstance(version, str) and version.strip():
            return DependencyRef(name=ref.name, version=version.strip())
        return ref
    raise ValidationError(f"Invalid dependency entry: {raw!r}", field="dependencies", value=raw)


def _unwrap_success_envelope(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj["data"]
    if obj.get("success") is False and "error" in obj:
        raise ValidationError(f"Registry error: {obj.get('error')}", field="response")
    return obj


def parse_metadata(obj: Any) -> Metadata:
    """Validate one registry payload and convert it into :class:`Metadata`."""
    data = _unwrap_success_envelope(obj)
    if isinstance(data, dict) and isinstance(data.get("skill"), dict):
        data = data["skill"]
    if not isinstance(data, dict):
        raise ValidationError("Registry metadata must be a JSON object.", field="metadata", value=obj)

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Registry metadata is missing 'name'.", field="name", value=name)
    version = data.get("version")
    if not isinstance(version, str) or not version.strip():
        raise ValidationError(f"Registry metadata for {name!r} is missing 'version'.", field="version", value=version)

    address = data.get("contentAddress", data.get("arweaveTxId"))
    if not isinstance(address, str) or not address.strip():
        raise ValidationError(
            f"Registry metadata for {name}@{version} is missing 'contentAddress'.",
            field="contentAddress",
            value=address,
        )

    deps_raw = data.get("dependencies")
    if deps_raw is None:
        deps_raw = []
    if not isinstance(deps_raw, list):
        raise ValidationError(
            f"Registry metadata for {name}@{version} has non-list 'dependencies'.",
            field="dependencies",
            value=deps_raw,
        )
    deps = tuple(_parse_dependency_entry(d) for d in deps_raw)

    return Metadata(
        name=name.strip(),
        version=version.strip(),
        content_address=address.strip(),
        dependencies=deps,
    )


class RegistryClient:
    """
    Read-only metadata lookups against the skill registry HTTP API.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._http = http or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _metadata_url(self, name: str, version: str | None) -> str:
        path = f"/v1/skills/{quote(name, safe='')}"
        if version:
            path += f"/versions/{quote(version, safe='')}"
        return f"{self.base_url}{path}"

    async def get_metadata(self, name: str, version: str | None = None) -> Metadata | None:
        url = self._metadata_url(name, version)
        logger.debug("GET %s", url)
        try:
            resp = await self._http.get(url)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Registry request timed out: {url}", kind=NetworkErrorKind.TIMEOUT, url=url) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Registry request failed: {e}", url=url) from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            kind = (
                NetworkErrorKind.GATEWAY_UNAVAILABLE
                if resp.status_code in (502, 503, 504)
                else NetworkErrorKind.CONNECTION_FAILURE
            )
            raise NetworkError(
                f"Registry returned HTTP {resp.status_code} for {name}",
                kind=kind,
                url=url,
                status_code=resp.status_code,
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise ValidationError(f"Registry returned invalid JSON for {name}", field="response") from e
        return parse_metadata(payload)
