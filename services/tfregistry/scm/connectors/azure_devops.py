"""Azure DevOps Services connector.

Users authenticate through Microsoft Entra ID (v2 endpoints of the
configured tenant). Repositories are addressed as ``project/repository``
inside the configured organization. Azure DevOps has no per-repository
webhooks; ``git.push`` service-hook subscriptions are used instead, with the
shared secret sent back as a static ``X-Vss-Signature`` header.
"""

import re
from collections.abc import Mapping
from urllib.parse import quote, urlencode

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
    payload_dict,
    payload_list,
    payload_str,
    pick_ref_update,
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
    WebhookPayloadMalformed,
    WebhookSetupFailed,
)

logger = get_logger(__name__)

DEFAULT_AZURE_DEVOPS_URL = "https://dev.azure.com"
ENTRA_AUTH_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"
ENTRA_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
# Well-known application id of the Azure DevOps resource
AZURE_DEVOPS_RESOURCE_ID = "499b84ac-1321-427f-aa17-267ca6975798"
DEFAULT_SCOPES = [f"{AZURE_DEVOPS_RESOURCE_ID}/.default", "offline_access"]
API_VERSION = "7.0"

_COMMIT_SHA_RE = re.compile(r"^[0-9a-fA-F]{40}$")


def _strip_ref(ref: str, prefix: str) -> str:
    return ref[len(prefix) :] if ref.startswith(prefix) else ref


def _repo_from_json(data: dict) -> SourceRepo:
    project = data.get("project") or {}
    project_name = project.get("name", "")
    return SourceRepo(
        id=data.get("id", ""),
        owner=project_name,
        name=data.get("name", ""),
        full_name=f"{project_name}/{data.get('name', '')}",
        description=project.get("description") or "",
        html_url=data.get("webUrl", ""),
        clone_url=data.get("remoteUrl", ""),
        default_branch=_strip_ref(data.get("defaultBranch") or "", "refs/heads/"),
        private=project.get("visibility", "private") != "public",
    )


def _page(items: list, pagination: Pagination) -> RepoListResult:
    start = pagination.offset
    end = start + pagination.page_size
    return RepoListResult(repos=items[start:end], more_pages=len(items) > end)


class AzureDevOpsConnector(SCMConnector):
    signature_header = "X-Vss-Signature"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.AZURE_DEVOPS

    @property
    def _tenant(self) -> str:
        return self.settings.tenant_id or "common"

    def _org_url(self) -> str:
        base = (self.settings.base_url or DEFAULT_AZURE_DEVOPS_URL).rstrip("/")
        return f"{base}/{quote(self.settings.organization, safe='')}"

    def _repo_url(self, project: str, repo: str) -> str:
        return (
            f"{self._org_url()}/{quote(project, safe='')}"
            f"/_apis/git/repositories/{quote(repo, safe='')}"
        )

    # --- OAuth ---

    def authorization_endpoint(self, state: str, scopes: list[str] | None = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.callback_url,
            "response_mode": "query",
            "scope": " ".join(scopes or DEFAULT_SCOPES),
            "state": state,
        }
        return f"{ENTRA_AUTH_URL.format(tenant=self._tenant)}?{urlencode(params)}"

    async def complete_authorization(self, code: str) -> AccessToken:
        resp = await self._token_request(
            ENTRA_TOKEN_URL.format(tenant=self._tenant),
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.callback_url,
                "scope": " ".join(DEFAULT_SCOPES),
            },
            "oauth code exchange",
        )
        if not resp.is_success:
            raise OAuthExchangeFailed(
                f"Entra ID code exchange failed with HTTP {resp.status_code}"
            )
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    async def renew_token(self, refresh_token: str) -> AccessToken:
        if not refresh_token:
            raise TokenRefreshFailed("Azure DevOps token has no refresh token")
        resp = await self._token_request(
            ENTRA_TOKEN_URL.format(tenant=self._tenant),
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(DEFAULT_SCOPES),
            },
            "oauth token refresh",
        )
        if not resp.is_success:
            raise TokenRefreshFailed(f"Entra ID token refresh failed with HTTP {resp.status_code}")
        return self._token_from_response(resp.json(), DEFAULT_SCOPES)

    # --- Repository browsing ---

    async def _all_repositories(self, token: AccessToken) -> list[SourceRepo]:
        data = await self._get_json(
            f"{self._org_url()}/_apis/git/repositories",
            "list repositories",
            token,
            params={"api-version": API_VERSION},
        )
        return [_repo_from_json(r) for r in data.get("value", [])]

    async def fetch_repositories(
        self, token: AccessToken, pagination: Pagination
    ) -> RepoListResult:
        # The org-level listing is unpaginated; page client-side
        return _page(await self._all_repositories(token), pagination)

    async def search_repositories(
        self, token: AccessToken, term: str, pagination: Pagination
    ) -> RepoListResult:
        needle = term.lower()
        matches = [
            r
            for r in await self._all_repositories(token)
            if needle in r.name.lower() or needle in r.description.lower()
        ]
        return _page(matches, pagination)

    async def fetch_repository(self, token: AccessToken, owner: str, repo: str) -> SourceRepo:
        data = await self._get_json(
            self._repo_url(owner, repo),
            "get repository",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params={"api-version": API_VERSION},
        )
        return _repo_from_json(data)

    async def _refs(self, token: AccessToken, owner: str, repo: str, ref_filter: str) -> list[dict]:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/refs",
            "list refs",
            token,
            not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
            params={"filter": ref_filter, "peelTags": "true", "api-version": API_VERSION},
        )
        return data.get("value", [])

    async def fetch_branches(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitBranch]:
        refs = await self._refs(token, owner, repo, "heads/")
        branches = [
            GitBranch(name=_strip_ref(r["name"], "refs/heads/"), commit_sha=r.get("objectId", ""))
            for r in refs
        ]
        start = pagination.offset
        return branches[start : start + pagination.page_size]

    @staticmethod
    def _tag_from_ref(ref: dict) -> GitTag:
        # Annotated tags expose the commit as peeledObjectId
        return GitTag(
            name=_strip_ref(ref["name"], "refs/tags/"),
            commit_sha=ref.get("peeledObjectId") or ref.get("objectId", ""),
        )

    async def fetch_tags(
        self, token: AccessToken, owner: str, repo: str, pagination: Pagination
    ) -> list[GitTag]:
        tags = [self._tag_from_ref(r) for r in await self._refs(token, owner, repo, "tags/")]
        start = pagination.offset
        return tags[start : start + pagination.page_size]

    async def fetch_tag_by_name(
        self, token: AccessToken, owner: str, repo: str, tag: str
    ) -> GitTag:
        # The refs filter is a prefix match, so v1.0 also returns v1.0.1
        for ref in await self._refs(token, owner, repo, f"tags/{tag}"):
            if ref.get("name") == f"refs/tags/{tag}":
                return self._tag_from_ref(ref)
        raise TagNotFound(f"tag {tag} not found in {owner}/{repo}")

    async def fetch_commit(
        self, token: AccessToken, owner: str, repo: str, sha: str
    ) -> GitCommit:
        data = await self._get_json(
            f"{self._repo_url(owner, repo)}/commits/{sha}",
            "get commit",
            token,
            not_found=CommitNotFound(f"commit {sha} not found in {owner}/{repo}"),
            params={"api-version": API_VERSION},
        )
        author = data.get("author") or {}
        return GitCommit(
            sha=data.get("commitId", sha),
            message=data.get("comment", ""),
            author_name=author.get("name", ""),
            author_email=author.get("email", ""),
            committed_at=parse_timestamp(author.get("date")),
            url=data.get("remoteUrl", ""),
        )

    async def download_source_archive(
        self,
        token: AccessToken,
        owner: str,
        repo: str,
        ref: str,
        fmt: ArchiveFormat = ArchiveFormat.TARBALL,
    ) -> ArchiveStream:
        # Only zip archives are served, whatever format was asked for
        version_type = "commit" if _COMMIT_SHA_RE.match(ref) else "branch"
        return await self._open_archive(
            f"{self._repo_url(owner, repo)}/items",
            token,
            ArchiveFormat.ZIPBALL,
            not_found=RepoNotFound(f"archive for {owner}/{repo}@{ref} not found"),
            params={
                "path": "/",
                "versionDescriptor.version": ref,
                "versionDescriptor.versionType": version_type,
                "$format": "zip",
                "download": "true",
                "api-version": API_VERSION,
            },
        )

    # --- Webhooks (service hook subscriptions) ---

    async def register_webhook(
        self, token: AccessToken, owner: str, repo: str, setup: WebhookSetup
    ) -> WebhookInfo:
        try:
            repository = await self._get_json(
                self._repo_url(owner, repo),
                "get repository",
                token,
                not_found=RepoNotFound(f"repository {owner}/{repo} not found"),
                params={"api-version": API_VERSION},
            )
            body = {
                "publisherId": "tfs",
                "eventType": "git.push",
                "resourceVersion": "1.0",
                "consumerId": "webHooks",
                "consumerActionId": "httpRequest",
                "publisherInputs": {
                    "projectId": (repository.get("project") or {}).get("id", ""),
                    "repository": repository.get("id", ""),
                },
                "consumerInputs": {
                    "url": setup.callback_url,
                    "httpHeaders": f"{self.signature_header}:{setup.secret}",
                },
            }
            resp = await self._request(
                "POST",
                f"{self._org_url()}/_apis/hooks/subscriptions",
                "create service hook",
                token,
                params={"api-version": API_VERSION},
                json=body,
            )
        except (RemoteError, RepoNotFound) as e:
            raise WebhookSetupFailed(str(e)) from e
        data = resp.json()
        logger.info("Azure DevOps service hook created", repo=f"{owner}/{repo}", hook_id=data.get("id"))
        return WebhookInfo(id=data["id"], url=setup.callback_url, events=["git.push"])

    async def remove_webhook(
        self, token: AccessToken, owner: str, repo: str, hook_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._org_url()}/_apis/hooks/subscriptions/{quote(hook_id, safe='')}",
            "delete service hook",
            token,
            not_found=WebhookNotFound(f"service hook {hook_id} not found"),
            params={"api-version": API_VERSION},
        )

    def parse_delivery(self, payload: bytes, headers: Mapping[str, str]) -> IncomingHook:
        data = load_json_payload(payload)
        event_type = payload_str(data.get("eventType"), "eventType")
        if not event_type:
            raise WebhookPayloadMalformed("service hook payload has no eventType")
        ref = sha = ""
        if event_type == "git.push":
            resource = payload_dict(data.get("resource"), "resource")
            updates = [
                (
                    payload_str(u.get("name"), "refUpdates[].name"),
                    payload_str(u.get("newObjectId"), "refUpdates[].newObjectId"),
                )
                for u in (
                    payload_dict(item, "refUpdates[]")
                    for item in payload_list(resource.get("refUpdates"), "refUpdates")
                )
            ]
            ref, sha = pick_ref_update(updates)
        return IncomingHook(
            id=payload_str(data.get("id"), "id"),
            type=event_type,
            ref=ref,
            commit_sha=sha,
            payload=data,
        )

    def verify_delivery_signature(
        self, payload: bytes, signature_header: str, shared_secret: str
    ) -> bool:
        return shared_token_matches(signature_header, shared_secret)
