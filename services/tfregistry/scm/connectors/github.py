"""GitHub and GitHub Enterprise Server connector.

OAuth App web flow for user tokens, REST v3 for repository access.
Deliveries are signed with HMAC-SHA256 in ``X-Hub-Signature-256``.
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
    hmac_sha256_matches,
    load_json_payload,
    parse_timestamp,
    payload_str,
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

DEFAULT_GITHUB_URL = "https://github.com"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_SCOPES = ["repo", "admin:repo_hook"]


def _repo_from_json(data: dict) -> SourceRepo:
    return SourceRepo(
        id=str(data.get("id", "")),
        owner=(data.get("owner") or {}).get("login", ""),
        name=data.get("name", ""),
        full_name=data.get("full_name", ""),
        description=data.get("description") or "",
        html_url=data.get("html_url", ""),
        clone_url=data.get("clone_url", ""),
        default_branch=data.get("default_branch", ""),
        private=bool(data.get("private", False)),
    )


def _has_next_page(resp: httpx.Response) -> bool:
    return 'rel="next"' in resp.headers.get("link", "")


class GitHubConnector(SCMConnector):
    signature_header = "X-Hub-Signature-256"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GITHUB

    def _web_url(self) -> str:
        return (self.settings.base_url or DEFAULT_GITHUB_URL).rstrip("/")

    def _api_url(self) -> str:
        web = self._web_url()
        if web == DEFAULT_GITHUB_URL:
            return DEFAULT_GITHUB_API_URL
        return f"{web}/api/v3"

    def _repo_url(self, owner: str, repo: str) -> str:
        return f"{self._api_url()}/repos/{owner}/{repo}"

    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token.access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    # --- OAuth ---

    def authorization_endpoint(self, state: str, scopes: list[str] | None = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.callback_url,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
            "state": state,
        }
        return f"{self._web_url()}/login/oauth/authorize?{urlencode(params)}"

    async def complete_authorization(self, code: str) -> AccessToken:
        resp = await self._token_request(
            f"{self._web_url()}/login/oauth/access_token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": code,
                "redirect_uri": self.settings.callback_url,
            },
            "oauth code exchange",
        )
        data = resp.json() if resp.is_success else {}
        # GitHub reports OAuth errors with HTTP 200 and an "error" field
        if not data.get("access_token"):
            raise OAuthExchangeFailed(
                f"GitHub code exchange failed: {data.get('error', resp.status_code)}"
            )
        return self._token_from_response(data, DEFAULT_SCOPES)

    async def renew_token(self, refresh_token: str) -> AccessToken:
        if not refresh_token:
            raise TokenRefreshFailed("GitHub token has no refresh token")
        resp = await self._token_request(
            f"{self._web_url()}/login/oauth/access_token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "oauth token refresh",
        )
        data = resp.json() if resp.is_success else {}
        if not data.get("access_token"):
            raise TokenRefreshFailed(
                f"GitHub token refresh failed: {data.get('error', resp.status_code)}"
            )
        return self._token_from_response(data, DEFAULT_SCOPES)

    # --- Repository browsing ---

    async def fetch_repositories(
        self, token: AccessToken, pagination: Pagination
    ) -> RepoListResult:
        resp = await self._request(
            "GET",
            f"{self._api_url()}/user/repos",
            "list repositories",
            token,
            params={"page": pagination.page, "per_page": pagination.page_size, "sort": "updated"},
        )
        return RepoListResult(
            repos=[_repo_from_json(r) for r in resp.json()],
            more_pages=_has_next_page(resp),
        )

    async def fetch_repository(self, token: AccessToken, owner: str, repo: str) -> SourceRepo:
        data = await self._get_json(
            self._repo_url(owner, repo),
            "get repository",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
        )
        return _repo_from_json(data)

    async def search_repositories(
        self, token: AccessToken, term: str, pagination: Pagination
    ) -> RepoListResult:
        resp = await self._request(
            "GET",
            f"{self._api_url()}/search/repositories",
            "search repositories",
            token,
            params={
                "q": f"{term} in:name,description",
                "page": pagination.page,
                "per_page": pagination.page_size,
            },
        )
        return RepoListResult(
            repos=[_repo_from_json(r) for r in resp.json().get("items", [])],
            more_pages=_has_next_page(resp),
        )

    async def fetch_branches(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitBranch]:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/branches",
            "list branches",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params={"page": pagination.page, "per_page": pagination.page_size},
        )
        return [
            GitBranch(
                name=b["name"],
                commit_sha=(b.get("commit") or {}).get("sha", ""),
                protected=bool(b.get("protected", False)),
            )
            for b in data
        ]

    async def fetch_tags(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitTag]:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/tags",
            "list tags",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params={"page": pagination.page, "per_page": pagination.page_size},
        )
        return [GitTag(name=t["name"], commit_sha=(t.get("commit") or {}).get("sha", "")) for t in data]

    async def fetch_tag_by_name(
        self, token: AccessToken, owner: str, repo: str, tag: str
    ) -> GitTag:
        missing = TagNotFound(f"tag {tag} not found in {owner}/{repo}")
        ref = await self._get_json(
            f"{self._repo_url(owner, repo)}/git/ref/tags/{quote(tag, safe='')}",
            "get tag",
            token,
            not_found=missing,
        )
        obj = ref.get("object") or {}
        message = ""
        # Annotated tags point at a tag object; dereference to the commit
        if obj.get("type") == "tag":
            tag_obj = await self._get_json(
                f"{self._repo_url(owner, repo)}/git/tags/{obj['sha']}",
                "get tag object",
                token,
                not_found=missing,
            )
            message = tag_obj.get("message", "")
            obj = tag_obj.get("object") or {}
        return GitTag(name=tag, commit_sha=obj.get("sha", ""), message=message)

    async def fetch_commit(
        self, token: AccessToken, owner: str, repo: str, sha: str
    ) -> GitCommit:
        try:
            data = await self._get_json(
                f"{self._repo_url(owner, repo)}/commits/{sha}",
                "get commit",
                token,
                not_found=CommitNotFound(f"commit {sha} not found in {owner}/{repo}"),
            )
        except RemoteError as e:
            if e.status_code == 422:
                raise CommitNotFound(f"commit {sha} not found in {owner}/{repo}") from None
            raise
        commit = data.get("commit") or {}
        author = commit.get("author") or {}
        return GitCommit(
            sha=data.get("sha", sha),
            message=commit.get("message", ""),
            author_name=author.get("name", ""),
            author_email=author.get("email", ""),
            committed_at=parse_timestamp(author.get("date")),
            url=data.get("html_url", ""),
        )

    async def download_source_archive(
        self,
        token: AccessToken,
        owner: str,
        repo: str,
        ref: str,
        fmt: ArchiveFormat = ArchiveFormat.TARBALL,
    ) -> ArchiveStream:
        return await self._open_archive(
            f"{self._repo_url(owner, repo)}/{fmt.value}/{ref}",
            token,
            fmt,
            not_found=RepoNotFound(f"archive for {owner}/{repo}@{ref} not found"),
        )

    # --- Webhooks ---

    async def register_webhook(
        self, token: AccessToken, owner: str, repo: str, setup: WebhookSetup
    ) -> WebhookInfo:
        body = {
            "name": "web",
            "active": True,
            "events": setup.events,
            "config": {
                "url": setup.callback_url,
                "content_type": "json",
                "secret": setup.secret,
                "insecure_ssl": "0",
            },
        }
        try:
            resp = await self._request(
                "POST", f"{self._repo_url(owner, repo)}/hooks", "create webhook", token, json=body
            )
        except RemoteError as e:
            raise WebhookSetupFailed(str(e)) from e
        data = resp.json()
        logger.info("GitHub webhook created", repo=f"{owner}/{repo}", hook_id=data.get("id"))
        return WebhookInfo(
            id=str(data["id"]),
            url=(data.get("config") or {}).get("url", setup.callback_url),
            events=data.get("events", setup.events),
            active=bool(data.get("active", True)),
        )

    async def remove_webhook(
        self, token: AccessToken, owner: str, repo: str, hook_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._repo_url(owner, repo)}/hooks/{hook_id}",
            "delete webhook",
            token,
            not_found=WebhookNotFound(f"webhook {hook_id} not found on {owner}/{repo}"),
        )

    def parse_delivery(self, payload: bytes, headers: Mapping[str, str]) -> IncomingHook:
        h = httpx.Headers(headers)
        data = load_json_payload(payload)
        event_type = h.get("x-github-event", "")
        ref = payload_str(data.get("ref"), "ref")
        sha = ""
        if event_type == "push":
            sha = payload_str(data.get("after"), "after")
        elif event_type == "create" and data.get("ref_type") == "tag":
            ref = f"refs/tags/{ref}"
        return IncomingHook(
            id=h.get("x-github-delivery", ""),
            type=event_type,
            ref=ref,
            commit_sha=sha,
            payload=data,
        )

    def verify_delivery_signature(
        self, payload: bytes, signature_header: str, shared_secret: str
    ) -> bool:
        return hmac_sha256_matches(payload, signature_header, shared_secret)
