"""Client for an upstream Terraform provider registry (provider registry protocol).

Service discovery, provider listing, version/platform metadata, download
metadata and the SHA256SUMS + signature pair for a release.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

import httpx

from tfregistry.logging_config import get_logger

logger = get_logger(__name__)

DISCOVERY_PATH = "/.well-known/terraform.json"
LIST_PAGE_SIZE = 100


class UpstreamRegistryError(Exception):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PlatformRef:
    os: str
    arch: str


@dataclass
class ProviderVersionInfo:
    version: str
    protocols: list[str] = field(default_factory=list)
    platforms: list[PlatformRef] = field(default_factory=list)


@dataclass
class GPGPublicKey:
    key_id: str
    ascii_armor: str


@dataclass
class DownloadInfo:
    os: str
    arch: str
    filename: str
    download_url: str
    shasums_url: str
    shasums_signature_url: str
    shasum: str
    protocols: list[str] = field(default_factory=list)
    signing_keys: list[GPGPublicKey] = field(default_factory=list)


class UpstreamRegistryClient:
    """One client per sync run; use as an async context manager."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        download_timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._download_timeout = download_timeout
        self._client = httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport
        )
        self._providers_base: str | None = None

    async def __aenter__(self) -> "UpstreamRegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.get(url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamRegistryError(f"request to {url} failed: {type(e).__name__}") from e
        if resp.status_code != 200:
            raise UpstreamRegistryError(
                f"upstream returned {resp.status_code} for {url}", resp.status_code
            )
        return resp

    async def _get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        resp = await self._get(url, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamRegistryError(f"upstream returned invalid JSON for {url}") from None
        if not isinstance(data, dict):
            raise UpstreamRegistryError(f"unexpected response shape from {url}")
        return data

    async def discover(self) -> str:
        """Absolute base URL of the providers.v1 service."""
        if self._providers_base is None:
            data = await self._get_json(self.base_url + DISCOVERY_PATH)
            path = data.get("providers.v1")
            if not path:
                raise UpstreamRegistryError(f"{self.base_url} does not offer providers.v1")
            self._providers_base = urljoin(self.base_url + "/", path).rstrip("/") + "/"
        return self._providers_base

    async def list_providers(self, namespace: str | None = None) -> AsyncIterator[tuple[str, str]]:
        """Yield (namespace, type) pairs, following ``meta.next_offset``."""
        base = await self.discover()
        offset: int | None = 0
        while offset is not None:
            params: dict[str, Any] = {"offset": offset, "limit": LIST_PAGE_SIZE}
            if namespace:
                params["namespace"] = namespace
            data = await self._get_json(base.rstrip("/"), params=params)
            for item in data.get("providers", []):
                ns, name = item.get("namespace"), item.get("name")
                if ns and name:
                    yield ns, name
            next_offset = (data.get("meta") or {}).get("next_offset")
            offset = int(next_offset) if next_offset not in (None, "") else None

    async def list_versions(self, namespace: str, provider_type: str) -> list[ProviderVersionInfo]:
        base = await self.discover()
        data = await self._get_json(f"{base}{namespace}/{provider_type}/versions")
        return [
            ProviderVersionInfo(
                version=v["version"],
                protocols=list(v.get("protocols") or []),
                platforms=[PlatformRef(p["os"], p["arch"]) for p in v.get("platforms") or []],
            )
            for v in data.get("versions", [])
            if v.get("version")
        ]

    async def get_download(
        self, namespace: str, provider_type: str, version: str, os_: str, arch: str
    ) -> DownloadInfo:
        base = await self.discover()
        url = f"{base}{namespace}/{provider_type}/{version}/download/{os_}/{arch}"
        data = await self._get_json(url)
        try:
            keys = (data.get("signing_keys") or {}).get("gpg_public_keys") or []
            return DownloadInfo(
                os=data.get("os", os_),
                arch=data.get("arch", arch),
                filename=data["filename"],
                download_url=urljoin(url, data["download_url"]),
                shasums_url=urljoin(url, data["shasums_url"]),
                shasums_signature_url=urljoin(url, data["shasums_signature_url"]),
                shasum=data["shasum"].lower(),
                protocols=list(data.get("protocols") or []),
                signing_keys=[
                    GPGPublicKey(key_id=k.get("key_id", ""), ascii_armor=k["ascii_armor"])
                    for k in keys
                    if k.get("ascii_armor")
                ],
            )
        except KeyError as e:
            raise UpstreamRegistryError(f"download metadata missing {e.args[0]} at {url}") from None

    async def fetch_bytes(self, url: str) -> bytes:
        resp = await self._get(url)
        return resp.content

    @asynccontextmanager
    async def stream(self, url: str) -> AsyncIterator[httpx.Response]:
        """Open a streamed GET for a large artifact."""
        try:
            async with self._client.stream(
                "GET", url, timeout=self._download_timeout
            ) as resp:
                if resp.status_code != 200:
                    raise UpstreamRegistryError(
                        f"upstream returned {resp.status_code} for {url}", resp.status_code
                    )
                yield resp
        except httpx.HTTPError as e:
            raise UpstreamRegistryError(f"download from {url} failed: {type(e).__name__}") from e
