"""GitLab (gitlab.com and self-managed) connector.

Projects are addressed by URL-encoded ``namespace/path``. Webhooks carry
the configured secret verbatim in ``X-Gitlab-Token``.
"""

from collections.abc import Mapping
from urllib.parse import quote, urlencode

import httpx

from tfregistry.logging_config import get_logger
from tfregistry.scm.base import (
    AccessToken,
    ArchiveFormat,
    ArchiveStream,
    GitBranch,
    GitCommit,
    GitTag,
    IncomingHook,
    Pagination,
    ProviderKind,
    RepoListResult,
    SCMConnector,
    SourceRepo,
    WebhookInfo,
    WebhookSetup,
    load_json_payload,
    parse_timestamp,
    payload_str,
    shared_token_matches,
)
from tfregistry.scm.errors import (
    CommitNotFound,
    OAuthExchangeFailed,
    RemoteError,
    RepoNotFound,
    TagNotFound,
    TokenRefreshFailed,
    WebhookNotFound,
    WebhookSetupFailed,
)

logger = get_logger(__name__)

DEFAULT_GITLAB_URL = "https://gitlab.com"
DEFAULT_SCOPES = ["api", "read_repository"]


def _project_path(owner: str, repo: str) -> str:
    """URL-encode the project path for GitLab API (e.g. 'group/sub/project')."""
    return quote(f"{owner}/{repo}", safe="")


def _repo_from_json(data: dict) -> SourceRepo:
    namespace = data.get("namespace") or {}
    return SourceRepo(
        id=str(data.get("id", "")),
        owner=namespace.get("full_path", ""),
        name=data.get("path", ""),
        full_name=data.get("path_with_namespace", ""),
        description=data.get("description") or "",
        html_url=data.get("web_url", ""),
        clone_url=data.get("http_url_to_repo", ""),
        default_branch=data.get("default_branch") or "",
        private=data.get("visibility", "private") != "public",
    )


class GitLabConnector(SCMConnector):
    signature_header = "X-Gitlab-Token"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GITLAB

    def _web_url(self) -> str:
        return (self.settings.base_url or DEFAULT_GITLAB_URL).rstrip("/")

    def _api_url(self) -> str:
        return f"{self._web_url()}/api/v4"

    def _project_url(self, owner: str, repo: str) -> str:
        return f"{self._api_url()}/projects/{_project_path(owner, repo)}"

    # --- OAuth ---

    def authorization_endpoint(self, state: str, scopes: list[str] | None = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.callback_url,
            "response_type": "code",
            "state": state,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        return f"{self._web_url()}/oauth/authorize?{urlencode(params)}"

    async def complete_authorization(self, code: str) -> AccessToken:
        resp = await self._token_request(
            f"{self._web_url()}/oauth/token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.settings.callback_url,
            },
            "oauth code exchange",
        )
        if not resp.is_success:
            raise OAuthExchangeFailed(f"GitLab code exchange failed with HTTP {resp.status_code}")
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    async def renew_token(self, refresh_token: str) -> AccessToken:
        if not refresh_token:
            raise TokenRefreshFailed("GitLab token has no refresh token")
        resp = await self._token_request(
            f"{self._web_url()}/oauth/token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "redirect_uri": self.settings.callback_url,
            },
            "oauth token refresh",
        )
        if not resp.is_success:
            raise TokenRefreshFailed(f"GitLab token refresh failed with HTTP {resp.status_code}")
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    # --- Repository browsing ---

    async def _list_projects(
        self, token: AccessToken, pagination: Pagination, **extra: str
    ) -> RepoListResult:
        resp = await self._request(
            "GET",
            f"{self._api_url()}/projects",
            "list projects",
            token,
            params={
                "membership": "true",
                "order_by": "last_activity_at",
                "page": pagination.page,
                "per_page": pagination.page_size,
                **extra,
            },
        )
        return RepoListResult(
            repos=[_repo_from_json(p) for p in resp.json()],
            more_pages=bool(resp.headers.get("x-next-page")),
        )

    async def fetch_repositories(
        self, token: AccessToken, pagination: Pagination
    ) -> RepoListResult:
        return await self._list_projects(token, pagination)

    async def search_repositories(
        self, token: AccessToken, term: str, pagination: Pagination
    ) -> RepoListResult:
        return await self._list_projects(token, pagination, search=term)

    async def fetch_repository(self, token: AccessToken, owner: str, repo: str) -> SourceRepo:
        data = await self._get_json(
            self._project_url(owner, repo),
            "get project",
            token,
            not_found=RepoNotFound(f"project {owner}/{repo} not found"),
        )
        return _repo_from_json(data)

    async def fetch_branches(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitBranch]:
        data = await self._get_json(
            f"{self._project_url(owner, repo)}/repository/branches",
            "list branches",
            token,
            not_found=RepoNotFound(f"project {owner}/{repo} not found"),
            params={"page": pagination.page, "per_page": pagination.page_size},
        )
        return [
            GitBranch(
                name=b["name"],
                commit_sha=(b.get("commit") or {}).get("id", ""),
                protected=bool(b.get("protected", False)),
            )
            for b in data
        ]

    async def fetch_tags(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitTag]:
        data = await self._get_json(
            f"{self._project_url(owner, repo)}/repository/tags",
            "list tags",
            token,
            not_found=RepoNotFound(f"project {owner}/{repo} not found"),
            params={"page": pagination.page, "per_page": pagination.page_size},
        )
        return [
            GitTag(
                name=t["name"],
                commit_sha=(t.get("commit") or {}).get("id", ""),
                message=t.get("message") or "",
            )
            for t in data
        ]

    async def fetch_tag_by_name(
        self, token: AccessToken, owner: str, repo: str, tag: str
    ) -> GitTag:
        data = await self._get_json(
            f"{self._project_url(owner, repo)}/repository/tags/{quote(tag, safe='')}",
            "get tag",
            token,
            not_found=TagNotFound(f"tag {tag} not found in {owner}/{repo}"),
        )
        # GitLab already dereferences annotated tags to the commit
        return GitTag(
            name=data.get("name", tag),
            commit_sha=(data.get("commit") or {}).get("id", ""),
            message=data.get("message") or "",
        )

    async def fetch_commit(
        self, token: AccessToken, owner: str, repo: str, sha: str
    ) -> GitCommit:
        data = await self._get_json(
            f"{self._project_url(owner, repo)}/repository/commits/{sha}",
            "get commit",
            token,
            not_found=CommitNotFound(f"commit {sha} not found in {owner}/{repo}"),
        )
        return GitCommit(
            sha=data.get("id", sha),
            message=data.get("message", ""),
            author_name=data.get("author_name", ""),
            author_email=data.get("author_email", ""),
            committed_at=parse_timestamp(data.get("committed_date")),
            url=data.get("web_url", ""),
        )

    async def download_source_archive(
        self,
        token: AccessToken,
        owner: str,
        repo: str,
        ref: str,
        fmt: ArchiveFormat = ArchiveFormat.TARBALL,
    ) -> ArchiveStream:
        suffix = "tar.gz" if fmt == ArchiveFormat.TARBALL else "zip"
        return await self._open_archive(
            f"{self._project_url(owner, repo)}/repository/archive.{suffix}",
            token,
            fmt,
            not_found=RepoNotFound(f"archive for {owner}/{repo}@{ref} not found"),
            params={"sha": ref},
        )

    # --- Webhooks ---

    async def register_webhook(
        self, token: AccessToken, owner: str, repo: str, setup: WebhookSetup
    ) -> WebhookInfo:
        body = {
            "url": setup.callback_url,
            "token": setup.secret,
            "push_events": "push" in setup.events,
            "tag_push_events": True,
            "enable_ssl_verification": True,
        }
        try:
            resp = await self._request(
                "POST", f"{self._project_url(owner, repo)}/hooks", "create webhook", token, json=body
            )
        except RemoteError as e:
            raise WebhookSetupFailed(str(e)) from e
        data = resp.json()
        logger.info("GitLab webhook created", project=f"{owner}/{repo}", hook_id=data.get("id"))
        events = [name for name in ("push", "tag_push") if data.get(f"{name}_events")]
        return WebhookInfo(id=str(data["id"]), url=data.get("url", setup.callback_url), events=events)

    async def remove_webhook(
        self, token: AccessToken, owner: str, repo: str, hook_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._project_url(owner, repo)}/hooks/{hook_id}",
            "delete webhook",
            token,
            not_found=WebhookNotFound(f"webhook {hook_id} not found on {owner}/{repo}"),
        )

    def parse_delivery(self, payload: bytes, headers: Mapping[str, str]) -> IncomingHook:
        h = httpx.Headers(headers)
        data = load_json_payload(payload)
        # Tag deletions carry checkout_sha=null and an all-zero "after"
        sha = payload_str(data.get("checkout_sha"), "checkout_sha") or payload_str(
            data.get("after"), "after"
        )
        return IncomingHook(
            id=h.get("x-gitlab-event-uuid", ""),
            type=payload_str(data.get("object_kind"), "object_kind") or h.get("x-gitlab-event", ""),
            ref=payload_str(data.get("ref"), "ref"),
            commit_sha=sha,
            payload=data,
        )

    def verify_delivery_signature(
        self, payload: bytes, signature_header: str, shared_secret: str
    ) -> bool:
        return shared_token_matches(signature_header, shared_secret)
