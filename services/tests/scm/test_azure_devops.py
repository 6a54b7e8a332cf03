"""Tests for the Azure DevOps connector."""

import json

import httpx
import pytest

from tfregistry.scm.base import (
    AccessToken,
    ArchiveFormat,
    ConnectorSettings,
    Pagination,
    ProviderKind,
    WebhookSetup,
)
from tfregistry.scm.connectors.azure_devops import AzureDevOpsConnector
from tfregistry.scm.errors import (
    RepoNotFound,
    TagNotFound,
    WebhookPayloadMalformed,
    WebhookSetupFailed,
)

TOKEN = AccessToken("entra")
REPO_URL = "https://dev.azure.com/contoso/infra/_apis/git/repositories/vpc"


def _connector(handler) -> AzureDevOpsConnector:
    settings = ConnectorSettings(
        kind=ProviderKind.AZURE_DEVOPS,
        client_id="cid",
        client_secret="csecret",
        callback_url="https://registry.example.com/scm/callback",
        tenant_id="tenant-1",
        organization="contoso",
    )
    return AzureDevOpsConnector(settings, transport=httpx.MockTransport(handler))


def _repo(name: str, description: str = "") -> dict:
    return {
        "id": f"id-{name}",
        "name": name,
        "project": {"id": "p-1", "name": "infra", "description": description},
        "defaultBranch": "refs/heads/main",
    }


class TestOAuth:
    def test_authorize_url_uses_tenant(self):
        url = _connector(lambda r: httpx.Response(500)).authorization_endpoint("st8")
        assert url.startswith(
            "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/authorize?"
        )
        assert "offline_access" in url

    async def test_exchange_posts_to_tenant_token_url(self):
        def handler(request):
            assert str(request.url) == (
                "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
            )
            return httpx.Response(
                200, json={"access_token": "a", "refresh_token": "r", "expires_in": 3600}
            )

        token = await _connector(handler).complete_authorization("code")
        assert token.refresh_token == "r"


class TestRepositories:
    async def test_client_side_paging(self):
        def handler(request):
            assert str(request.url).startswith("https://dev.azure.com/contoso/_apis/git/repositories")
            return httpx.Response(200, json={"value": [_repo(f"r{i}") for i in range(5)]})

        result = await _connector(handler).fetch_repositories(TOKEN, Pagination(page=2, page_size=2))
        assert [r.name for r in result.repos] == ["r2", "r3"]
        assert result.more_pages

    async def test_search_matches_name_and_description(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"value": [_repo("network"), _repo("dns", "Core VPC tools"), _repo("iam")]},
            )

        result = await _connector(handler).search_repositories(TOKEN, "vpc", Pagination())
        assert [r.name for r in result.repos] == ["dns"]

    async def test_default_branch_is_stripped(self):
        def handler(request):
            return httpx.Response(200, json=_repo("vpc"))

        repo = await _connector(handler).fetch_repository(TOKEN, "infra", "vpc")
        assert repo.default_branch == "main"
        assert repo.owner == "infra"


class TestTags:
    async def test_exact_match_prefers_peeled_commit(self):
        def handler(request):
            assert str(request.url).startswith(f"{REPO_URL}/refs")
            assert request.url.params["filter"] == "tags/v1.0"
            assert request.url.params["peelTags"] == "true"
            return httpx.Response(
                200,
                json={
                    "value": [
                        {"name": "refs/tags/v1.0.1", "objectId": "1" * 40},
                        {"name": "refs/tags/v1.0", "objectId": "t" * 40, "peeledObjectId": "c" * 40},
                    ]
                },
            )

        tag = await _connector(handler).fetch_tag_by_name(TOKEN, "infra", "vpc", "v1.0")
        assert tag.name == "v1.0"
        assert tag.commit_sha == "c" * 40

    async def test_prefix_only_match_is_not_found(self):
        def handler(request):
            return httpx.Response(
                200, json={"value": [{"name": "refs/tags/v1.0.1", "objectId": "1" * 40}]}
            )

        with pytest.raises(TagNotFound):
            await _connector(handler).fetch_tag_by_name(TOKEN, "infra", "vpc", "v1.0")


class TestArchive:
    async def test_always_zip(self):
        def handler(request):
            assert request.url.path.endswith("/_apis/git/repositories/vpc/items")
            assert request.url.params["$format"] == "zip"
            assert request.url.params["versionDescriptor.versionType"] == "commit"
            return httpx.Response(200, content=b"PK")

        async with await _connector(handler).download_source_archive(
            TOKEN, "infra", "vpc", "a" * 40, ArchiveFormat.TARBALL
        ) as stream:
            assert stream.format == ArchiveFormat.ZIPBALL

    async def test_branch_ref_version_type(self):
        def handler(request):
            assert request.url.params["versionDescriptor.versionType"] == "branch"
            return httpx.Response(200, content=b"PK")

        async with await _connector(handler).download_source_archive(TOKEN, "infra", "vpc", "main"):
            pass


class TestServiceHooks:
    async def test_register_subscription(self):
        seen = {}

        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json=_repo("vpc"))
            seen["body"] = json.loads(request.content)
            assert request.url.path == "/contoso/_apis/hooks/subscriptions"
            return httpx.Response(200, json={"id": "sub-1"})

        info = await _connector(handler).register_webhook(
            TOKEN, "infra", "vpc", WebhookSetup(callback_url="https://cb", secret="hook-secret")
        )
        assert info.id == "sub-1"
        assert seen["body"]["eventType"] == "git.push"
        assert seen["body"]["publisherInputs"] == {"projectId": "p-1", "repository": "id-vpc"}
        assert seen["body"]["consumerInputs"]["httpHeaders"] == "X-Vss-Signature:hook-secret"

    async def test_missing_repository_fails_setup(self):
        with pytest.raises(WebhookSetupFailed):
            await _connector(lambda r: httpx.Response(404)).register_webhook(
                TOKEN, "infra", "vpc", WebhookSetup(callback_url="https://cb", secret="s")
            )


class TestDeliveries:
    def test_git_push(self):
        body = json.dumps(
            {
                "id": "evt-1",
                "eventType": "git.push",
                "resource": {
                    "refUpdates": [{"name": "refs/tags/v1.2.0", "newObjectId": "f" * 40}]
                },
            }
        ).encode()
        hook = _connector(lambda r: httpx.Response(500)).parse_delivery(body, {})
        assert hook.id == "evt-1"
        assert hook.tag_name == "v1.2.0"
        assert hook.is_tag_event()

    def test_push_with_branch_and_tag_reports_the_tag(self):
        body = json.dumps(
            {
                "id": "evt-2",
                "eventType": "git.push",
                "resource": {
                    "refUpdates": [
                        {"name": "refs/heads/main", "newObjectId": "a" * 40},
                        {"name": "refs/tags/v1.2.0", "newObjectId": "b" * 40},
                    ]
                },
            }
        ).encode()
        hook = _connector(lambda r: httpx.Response(500)).parse_delivery(body, {})
        assert hook.ref == "refs/tags/v1.2.0"
        assert hook.commit_sha == "b" * 40
        assert hook.is_tag_event()

    def test_branch_only_push(self):
        body = json.dumps(
            {
                "eventType": "git.push",
                "resource": {"refUpdates": [{"name": "refs/heads/main", "newObjectId": "a" * 40}]},
            }
        ).encode()
        hook = _connector(lambda r: httpx.Response(500)).parse_delivery(body, {})
        assert hook.branch == "main"
        assert not hook.is_tag_event()

    @pytest.mark.parametrize(
        "resource", [[], {"refUpdates": {"name": "x"}}, {"refUpdates": [{"name": ["refs/tags/v1"]}]}]
    )
    def test_malformed_ref_updates(self, resource):
        body = json.dumps({"eventType": "git.push", "resource": resource}).encode()
        with pytest.raises(WebhookPayloadMalformed):
            _connector(lambda r: httpx.Response(500)).parse_delivery(body, {})

    def test_missing_event_type(self):
        with pytest.raises(WebhookPayloadMalformed):
            _connector(lambda r: httpx.Response(500)).parse_delivery(b'{"id": "x"}', {})

    def test_shared_header_token(self):
        connector = _connector(lambda r: httpx.Response(500))
        assert connector.verify_delivery_signature(b"{}", "hook-secret", "hook-secret")
        assert not connector.verify_delivery_signature(b"{}", "", "hook-secret")


class TestErrors:
    async def test_missing_repository(self):
        with pytest.raises(RepoNotFound):
            await _connector(lambda r: httpx.Response(404)).fetch_repository(TOKEN, "infra", "vpc")
