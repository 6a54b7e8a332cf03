"""Bitbucket Data Center connector.

Repositories are addressed as ``PROJECT_KEY/repo-slug``. Webhook deliveries
are signed with HMAC-SHA256 in ``X-Hub-Signature``.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
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
    payload_dict,
    payload_list,
    payload_str,
    pick_ref_update,
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

DEFAULT_SCOPES = ["PUBLIC_REPOS", "REPO_READ", "REPO_ADMIN"]
# Upper bound on repositories fetched for client-side search
SEARCH_LIMIT = 1000


def _link(links: dict, name: str, clone_name: str | None = None) -> str:
    for entry in links.get(name) or []:
        if clone_name is None or entry.get("name") == clone_name:
            return entry.get("href", "")
    return ""


def _repo_from_json(data: dict) -> SourceRepo:
    project = data.get("project") or {}
    links = data.get("links") or {}
    return SourceRepo(
        id=str(data.get("id", "")),
        owner=project.get("key", ""),
        name=data.get("slug", ""),
        full_name=f"{project.get('key', '')}/{data.get('slug', '')}",
        description=data.get("description") or "",
        html_url=_link(links, "self"),
        clone_url=_link(links, "clone", "http"),
        private=not data.get("public", False),
    )


def _from_millis(value) -> datetime | None:
    if not isinstance(value, int):
        return None
    return datetime.fromtimestamp(value / 1000, UTC)


class BitbucketDCConnector(SCMConnector):
    signature_header = "X-Hub-Signature"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.BITBUCKET_DC

    def _base(self) -> str:
        return self.settings.base_url.rstrip("/")

    def _api_url(self) -> str:
        return f"{self._base()}/rest/api/1.0"

    def _repo_url(self, project: str, repo: str) -> str:
        return f"{self._api_url()}/projects/{quote(project, safe='')}/repos/{quote(repo, safe='')}"

    @staticmethod
    def _paging(pagination: Pagination) -> dict[str, int]:
        return {"start": pagination.offset, "limit": pagination.page_size}

    # --- OAuth ---

    def authorization_endpoint(self, state: str, scopes: list[str] | None = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.callback_url,
            "response_type": "code",
            "state": state,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        return f"{self._base()}/rest/oauth2/latest/authorize?{urlencode(params)}"

    async def complete_authorization(self, code: str) -> AccessToken:
        resp = await self._token_request(
            f"{self._base()}/rest/oauth2/latest/token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.callback_url,
            },
            "oauth code exchange",
        )
        if not resp.is_success:
            raise OAuthExchangeFailed(
                f"Bitbucket code exchange failed with HTTP {resp.status_code}"
            )
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    async def renew_token(self, refresh_token: str) -> AccessToken:
        if not refresh_token:
            raise TokenRefreshFailed("Bitbucket token has no refresh token")
        resp = await self._token_request(
            f"{self._base()}/rest/oauth2/latest/token",
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "oauth token refresh",
        )
        if not resp.is_success:
            raise TokenRefreshFailed(f"Bitbucket token refresh failed with HTTP {resp.status_code}")
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    # --- Repository browsing ---

    async def fetch_repositories(
        self, token: AccessToken, pagination: Pagination
    ) -> RepoListResult:
        data = await self._get_json(
            f"{self._api_url()}/repos",
            "list repositories",
            token,
            params=self._paging(pagination),
        )
        return RepoListResult(
            repos=[_repo_from_json(r) for r in data.get("values", [])],
            more_pages=not data.get("isLastPage", True),
        )

    async def search_repositories(
        self, token: AccessToken, term: str, pagination: Pagination
    ) -> RepoListResult:
        data = await self._get_json(
            f"{self._api_url()}/repos",
            "list repositories",
            token,
            params={"start": 0, "limit": SEARCH_LIMIT},
        )
        needle = term.lower()
        matches = [
            repo
            for repo in (_repo_from_json(r) for r in data.get("values", []))
            if needle in repo.name.lower() or needle in repo.description.lower()
        ]
        start = pagination.offset
        end = start + pagination.page_size
        return RepoListResult(repos=matches[start:end], more_pages=len(matches) > end)

    async def fetch_repository(self, token: AccessToken, owner: str, repo: str) -> SourceRepo:
        missing = RepoNotFound(f"repository {owner}/{repo} not found")
        data = await self._get_json(self._repo_url(owner, repo), "get repository", token, missing)
        result = _repo_from_json(data)
        try:
            branch = await self._get_json(
                f"{self._repo_url(owner, repo)}/default-branch", "get default branch", token, missing
            )
            result.default_branch = branch.get("displayId", "")
        except (RemoteError, RepoNotFound):
            # Empty repositories have no default branch
            logger.debug("No default branch", repo=f"{owner}/{repo}")
        return result

    async def fetch_branches(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitBranch]:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/branches",
            "list branches",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params=self._paging(pagination),
        )
        return [
            GitBranch(name=b.get("displayId", ""), commit_sha=b.get("latestCommit", ""))
            for b in data.get("values", [])
        ]

    async def fetch_tags(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitTag]:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/tags",
            "list tags",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params=self._paging(pagination),
        )
        return [
            GitTag(name=t.get("displayId", ""), commit_sha=t.get("latestCommit", ""))
            for t in data.get("values", [])
        ]

    async def fetch_tag_by_name(
        self, token: AccessToken, owner: str, repo: str, tag: str
    ) -> GitTag:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/tags/{quote(tag, safe='')}",
            "get tag",
            token,
            not_found=TagNotFound(f"tag {tag} not found in {owner}/{repo}"),
        )
        # latestCommit is the peeled commit for annotated tags
        return GitTag(name=data.get("displayId", tag), commit_sha=data.get("latestCommit", ""))

    async def fetch_commit(
        self, token: AccessToken, owner: str, repo: str, sha: str
    ) -> GitCommit:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/commits/{sha}",
            "get commit",
            token,
            not_found=CommitNotFound(f"commit {sha} not found in {owner}/{repo}"),
        )
        author = data.get("author") or {}
        return GitCommit(
            sha=data.get("id", sha),
            message=data.get("message", ""),
            author_name=author.get("name", ""),
            author_email=author.get("emailAddress", ""),
            committed_at=_from_millis(data.get("committerTimestamp") or data.get("authorTimestamp")),
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
            f"{self._repo_url(owner, repo)}/archive",
            token,
            fmt,
            not_found=RepoNotFound(f"archive for {owner}/{repo}@{ref} not found"),
            params={"at": ref, "format": "tar.gz" if fmt == ArchiveFormat.TARBALL else "zip"},
        )

    # --- Webhooks ---

    async def register_webhook(
        self, token: AccessToken, owner: str, repo: str, setup: WebhookSetup
    ) -> WebhookInfo:
        body = {
            "name": "tfregistry",
            "url": setup.callback_url,
            "active": True,
            "events": ["repo:refs_changed"],
            "configuration": {"secret": setup.secret},
        }
        try:
            resp = await self._request(
                "POST", f"{self._repo_url(owner, repo)}/webhooks", "create webhook", token, json=body
            )
        except RemoteError as e:
            raise WebhookSetupFailed(str(e)) from e
        data = resp.json()
        logger.info("Bitbucket webhook created", repo=f"{owner}/{repo}", hook_id=data.get("id"))
        return WebhookInfo(
            id=str(data["id"]),
            url=data.get("url", setup.callback_url),
            events=data.get("events", ["repo:refs_changed"]),
            active=bool(data.get("active", True)),
        )

    async def remove_webhook(
        self, token: AccessToken, owner: str, repo: str, hook_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._repo_url(owner, repo)}/webhooks/{hook_id}",
            "delete webhook",
            token,
            not_found=WebhookNotFound(f"webhook {hook_id} not found on {owner}/{repo}"),
        )

    def parse_delivery(self, payload: bytes, headers: Mapping[str, str]) -> IncomingHook:
        h = httpx.Headers(headers)
        data = load_json_payload(payload)
        # One repo:refs_changed delivery carries every ref of the push
        updates = []
        for change in payload_list(data.get("changes"), "changes"):
            change = payload_dict(change, "changes[]")
            ref_id = payload_str(payload_dict(change.get("ref"), "changes[].ref").get("id"), "ref.id")
            updates.append(
                (
                    ref_id or payload_str(change.get("refId"), "refId"),
                    payload_str(change.get("toHash"), "toHash"),
                )
            )
        ref, sha = pick_ref_update(updates)
        return IncomingHook(
            id=h.get("x-request-id", ""),
            type=h.get("x-event-key", "") or payload_str(data.get("eventKey"), "eventKey"),
            ref=ref,
            commit_sha=sha,
            payload=data,
        )

    def verify_delivery_signature(
        self, payload: bytes, signature_header: str, shared_secret: str
    ) -> bool:
        return hmac_sha256_matches(payload, signature_header, shared_secret)
