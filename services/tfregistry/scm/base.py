"""SCM connector base abstraction.

Defines the capability interface every source-control connector implements
(OAuth, repository browsing, archive download, webhook management and
delivery parsing) plus the value types shared by all connectors.
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx

from tfregistry.logging_config import get_logger
from tfregistry.scm.errors import RemoteError, SCMError, WebhookPayloadMalformed

logger = get_logger(__name__)

TAG_REF_PREFIX = "refs/tags/"
BRANCH_REF_PREFIX = "refs/heads/"

# Remote bodies copied into error messages are truncated to this many chars
_ERROR_BODY_LIMIT = 200


class ProviderKind(StrEnum):
    GITHUB = "github"
    GITLAB = "gitlab"
    AZURE_DEVOPS = "azuredevops"
    BITBUCKET_DC = "bitbucket_dc"


class ArchiveFormat(StrEnum):
    TARBALL = "tarball"
    ZIPBALL = "zipball"


@dataclass
class ConnectorSettings:
    """Everything a connector needs to talk to one configured provider."""

    kind: ProviderKind
    client_id: str = ""
    client_secret: str = ""
    callback_url: str = ""
    base_url: str = ""
    tenant_id: str = ""  # Azure DevOps (Entra ID tenant)
    organization: str = ""  # Azure DevOps organization
    request_timeout: float = 30.0
    archive_timeout: float = 300.0


@dataclass
class AccessToken:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: str = ""
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)

    def is_expired(self, leeway: timedelta = timedelta(seconds=60)) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(UTC) + leeway >= self.expires_at


@dataclass
class Pagination:
    page: int = 1
    page_size: int = 30

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.page_size


@dataclass
class SourceRepo:
    id: str
    owner: str
    name: str
    full_name: str
    description: str = ""
    html_url: str = ""
    clone_url: str = ""
    default_branch: str = ""
    private: bool = False


@dataclass
class RepoListResult:
    repos: list[SourceRepo]
    more_pages: bool = False


@dataclass
class GitBranch:
    name: str
    commit_sha: str
    protected: bool = False


@dataclass
class GitTag:
    name: str
    commit_sha: str
    message: str = ""


@dataclass
class GitCommit:
    sha: str
    message: str = ""
    author_name: str = ""
    author_email: str = ""
    committed_at: datetime | None = None
    url: str = ""


@dataclass
class WebhookSetup:
    callback_url: str
    secret: str
    events: list[str] = field(default_factory=lambda: ["push"])


@dataclass
class WebhookInfo:
    id: str
    url: str = ""
    events: list[str] = field(default_factory=list)
    active: bool = True


def is_zero_sha(sha: str) -> bool:
    """A ref update to the all-zero object id is a deletion."""
    return bool(sha) and set(sha) == {"0"}


@dataclass
class IncomingHook:
    """A parsed webhook delivery, normalized across providers."""

    id: str
    type: str
    ref: str = ""
    commit_sha: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def tag_name(self) -> str:
        if self.ref.startswith(TAG_REF_PREFIX):
            return self.ref[len(TAG_REF_PREFIX) :]
        return ""

    @property
    def branch(self) -> str:
        if self.ref.startswith(BRANCH_REF_PREFIX):
            return self.ref[len(BRANCH_REF_PREFIX) :]
        return ""

    def is_tag_event(self) -> bool:
        """True for a tag creation/move that points at a real commit."""
        return bool(self.tag_name) and bool(self.commit_sha) and not is_zero_sha(self.commit_sha)


class ArchiveStream:
    """Open streamed archive download. The caller must close it."""

    def __init__(
        self, client: httpx.AsyncClient, response: httpx.Response, fmt: ArchiveFormat
    ) -> None:
        self._client = client
        self._response = response
        self.format = fmt

    @property
    def content_length(self) -> int | None:
        value = self._response.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    async def aiter_bytes(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_bytes(chunk_size):
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()

    async def __aenter__(self) -> "ArchiveStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def load_json_payload(payload: bytes) -> dict[str, Any]:
    """Decode a webhook body, which must be a JSON object."""
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookPayloadMalformed(f"payload is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise WebhookPayloadMalformed("payload must be a JSON object")
    return data


def payload_str(value: Any, field_name: str) -> str:
    """A string field of a delivery body. Missing is empty, other types are malformed."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise WebhookPayloadMalformed(f"{field_name} must be a string")
    return value


def payload_list(value: Any, field_name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise WebhookPayloadMalformed(f"{field_name} must be a list")
    return value


def payload_dict(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise WebhookPayloadMalformed(f"{field_name} must be an object")
    return value


def pick_ref_update(updates: list[tuple[str, str]]) -> tuple[str, str]:
    """Choose the (ref, sha) a multi-ref push is reported as.

    The first tag moved to a real commit wins so that a branch pushed
    together with its tag still publishes; otherwise the first update.
    """
    for ref, sha in updates:
        if ref.startswith(TAG_REF_PREFIX) and sha and not is_zero_sha(sha):
            return ref, sha
    return updates[0] if updates else ("", "")


def hmac_sha256_matches(payload: bytes, signature_header: str, secret: str) -> bool:
    """Check a ``sha256=<hex>`` HMAC signature header."""
    if not secret or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256=") :])


def shared_token_matches(signature_header: str, secret: str) -> bool:
    """Check a static shared-token header (GitLab, Azure DevOps service hooks)."""
    if not secret or not signature_header:
        return False
    return hmac.compare_digest(signature_header.encode(), secret.encode())


def parse_expiry(expires_in: Any) -> datetime | None:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.now(UTC) + timedelta(seconds=seconds)


def parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class SCMConnector(ABC):
    """Abstract base class for all source-control connectors.

    Connectors are cheap to build and hold no per-user state; the access
    token is passed into every call. Tests may inject an httpx transport.
    """

    #: Request header carrying the delivery signature or shared token
    signature_header: str = ""

    def __init__(
        self,
        settings: ConnectorSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    @property
    @abstractmethod
    def kind(self) -> ProviderKind:
        """Provider kind this connector speaks to."""

    # --- OAuth ---

    @abstractmethod
    def authorization_endpoint(self, state: str, scopes: list[str] | None = None) -> str:
        """URL the user is redirected to for OAuth consent."""

    @abstractmethod
    async def complete_authorization(self, code: str) -> AccessToken:
        """Exchange an authorization code for a token."""

    @abstractmethod
    async def renew_token(self, refresh_token: str) -> AccessToken:
        """Refresh an expired token. Raises TokenRefreshFailed."""

    # --- Repository browsing ---

    @abstractmethod
    async def fetch_repositories(
        self, token: AccessToken, pagination: Pagination
    ) -> RepoListResult: ...

    @abstractmethod
    async def fetch_repository(self, token: AccessToken, owner: str, repo: str) -> SourceRepo: ...

    @abstractmethod
    async def search_repositories(
        self, token: AccessToken, term: str, pagination: Pagination
    ) -> RepoListResult: ...

    @abstractmethod
    async def fetch_branches(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitBranch]: ...

    @abstractmethod
    async def fetch_tags(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitTag]: ...

    @abstractmethod
    async def fetch_tag_by_name(
        self, token: AccessToken, owner: str, repo: str, tag: str
    ) -> GitTag:
        """Resolve a tag to the commit it currently points at. Raises TagNotFound."""

    @abstractmethod
    async def fetch_commit(
        self, token: AccessToken, owner: str, repo: str, sha: str
    ) -> GitCommit: ...

    @abstractmethod
    async def download_source_archive(
        self,
        token: AccessToken,
        owner: str,
        repo: str,
        ref: str,
        fmt: ArchiveFormat = ArchiveFormat.TARBALL,
    ) -> ArchiveStream:
        """Start streaming the repository tree at ``ref``.

        Connectors whose provider only serves one format return that format;
        check ``ArchiveStream.format``.
        """

    # --- Webhooks ---

    @abstractmethod
    async def register_webhook(
        self, token: AccessToken, owner: str, repo: str, setup: WebhookSetup
    ) -> WebhookInfo: ...

    @abstractmethod
    async def remove_webhook(
        self, token: AccessToken, owner: str, repo: str, hook_id: str
    ) -> None: ...

    @abstractmethod
    def parse_delivery(self, payload: bytes, headers: Mapping[str, str]) -> IncomingHook:
        """Normalize a webhook body. Raises WebhookPayloadMalformed."""

    @abstractmethod
    def verify_delivery_signature(
        self, payload: bytes, signature_header: str, shared_secret: str
    ) -> bool: ...

    # --- HTTP helpers ---

    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token.access_token}",
            "Accept": "application/json",
        }

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=timeout if timeout is not None else self.settings.request_timeout,
            follow_redirects=True,
        )

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        token: AccessToken | None = None,
        not_found: SCMError | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; map 404 to ``not_found`` and other errors to RemoteError."""
        headers = kwargs.pop("headers", None) or {}
        if token is not None:
            headers = {**self._auth_headers(token), **headers}
        async with self._client() as client:
            try:
                resp = await client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise RemoteError(0, operation, type(e).__name__) from e
        if resp.status_code == 404 and not_found is not None:
            raise not_found
        if resp.is_error:
            raise RemoteError(resp.status_code, operation, resp.text[:_ERROR_BODY_LIMIT])
        return resp

    async def _get_json(
        self,
        url: str,
        operation: str,
        token: AccessToken,
        not_found: SCMError | None = None,
        **kwargs: Any,
    ) -> Any:
        resp = await self._request("GET", url, operation, token, not_found, **kwargs)
        return resp.json()

    async def _open_archive(
        self,
        url: str,
        token: AccessToken,
        fmt: ArchiveFormat,
        not_found: SCMError | None = None,
        **kwargs: Any,
    ) -> ArchiveStream:
        client = self._client(self.settings.archive_timeout)
        try:
            request = client.build_request(
                "GET", url, headers=self._auth_headers(token) | {"Accept": "*/*"}, **kwargs
            )
            resp = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise RemoteError(0, "download archive", type(e).__name__) from e
        if resp.is_error:
            await resp.aread()
            await resp.aclose()
            await client.aclose()
            if resp.status_code == 404 and not_found is not None:
                raise not_found
            raise RemoteError(resp.status_code, "download archive", resp.text[:_ERROR_BODY_LIMIT])
        return ArchiveStream(client, resp, fmt)

    async def _token_request(self, url: str, data: dict[str, str], operation: str) -> httpx.Response:
        async with self._client() as client:
            try:
                return await client.post(url, data=data, headers={"Accept": "application/json"})
            except httpx.HTTPError as e:
                raise RemoteError(0, operation, type(e).__name__) from e

    @staticmethod
    def _token_from_response(data: dict[str, Any], default_scopes: list[str] | None = None) -> AccessToken:
        scope = data.get("scope") or ""
        scopes = scope.replace(",", " ").split() if isinstance(scope, str) else list(scope)
        return AccessToken(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token") or "",
            expires_at=parse_expiry(data.get("expires_in")),
            scopes=scopes or list(default_scopes or []),
        )
