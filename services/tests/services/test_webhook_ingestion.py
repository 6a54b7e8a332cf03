"""Tests for webhook authentication, recording and publish dispatch."""

import hashlib
import hmac
import json
import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tfregistry.scm.base import ConnectorSettings, ProviderKind
from tfregistry.scm.connectors.github import GitHubConnector
from tfregistry.scm.connectors.gitlab import GitLabConnector
from tfregistry.scm.errors import UnsupportedProvider
from tfregistry.services.webhook_ingestion import WebhookIngestor, WebhookRejected

SVC = "tfregistry.services.scm_service"
SECRET = "link-webhook-secret"

TAG_PUSH = json.dumps(
    {"ref": "refs/tags/v1.0.0", "after": "a" * 40, "repository": {"full_name": "acme/vpc"}}
).encode()


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _link(kind=ProviderKind.GITHUB, auto_publish=True, active=True):
    provider = SimpleNamespace(
        id=uuid.uuid4(), provider_type=str(kind), is_active=active, webhook_secret=""
    )
    return SimpleNamespace(
        id=uuid.uuid4(), webhook_secret=SECRET, auto_publish=auto_publish, provider=provider
    )


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.submit.return_value = True
    return d


@pytest.fixture
def ctx(dispatcher):
    @asynccontextmanager
    async def session():
        yield AsyncMock()

    return SimpleNamespace(
        session=session,
        dispatcher=dispatcher,
        connectors=None,
        cipher=None,
        settings=None,
    )


@pytest.fixture
def publisher():
    return AsyncMock()


def _github_headers(body: bytes, event: str = "push") -> dict[str, str]:
    return {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
        "X-Hub-Signature-256": _sign(body),
    }


@patch(f"{SVC}.update_webhook_event", new_callable=AsyncMock)
@patch(f"{SVC}.record_webhook_event", new_callable=AsyncMock)
@patch(f"{SVC}.find_event_by_delivery_id", new_callable=AsyncMock, return_value=None)
@patch(f"{SVC}.build_connector")
@patch(f"{SVC}.get_repo_link", new_callable=AsyncMock)
class TestWebhookIngestor:
    async def test_tag_push_is_recorded_and_dispatched(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, dispatcher, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        log_id = uuid.uuid4()
        mock_record.return_value = SimpleNamespace(id=log_id)

        receipt = await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, TAG_PUSH, _github_headers(TAG_PUSH)
        )

        assert receipt.log_id == log_id
        assert receipt.dispatched is True
        hook = mock_record.await_args.args[2]
        assert hook.tag_name == "v1.0.0"
        assert mock_record.await_args.args[4] == _sign(TAG_PUSH)

        work = dispatcher.submit.call_args.args[0]
        await work()
        publisher.process_tag_push.assert_awaited_once_with(log_id, link.id, hook)

    async def test_unknown_link(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        mock_link.return_value = None

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(uuid.uuid4(), SECRET, TAG_PUSH, {})
        assert exc.value.status_code == 404
        mock_record.assert_not_awaited()

    async def test_wrong_path_secret(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        mock_link.return_value = link

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(
                link.id, "guess", TAG_PUSH, _github_headers(TAG_PUSH)
            )
        assert exc.value.status_code == 401
        assert exc.value.detail == "invalid webhook secret"
        mock_record.assert_not_awaited()

    async def test_bad_signature(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        headers = _github_headers(TAG_PUSH)
        headers["X-Hub-Signature-256"] = _sign(TAG_PUSH, "someone-else")

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(link.id, SECRET, TAG_PUSH, headers)
        assert exc.value.status_code == 401
        assert exc.value.detail == "invalid webhook signature"
        mock_record.assert_not_awaited()

    async def test_provider_secret_signature_accepted(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        link.provider.webhook_secret = "org-hook-secret"
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())
        headers = _github_headers(TAG_PUSH)
        headers["X-Hub-Signature-256"] = _sign(TAG_PUSH, "org-hook-secret")

        receipt = await WebhookIngestor(ctx, publisher).ingest(link.id, SECRET, TAG_PUSH, headers)

        assert receipt.dispatched is True
        mock_record.assert_awaited_once()

    async def test_inactive_provider(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link(active=False)
        mock_link.return_value = link

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(link.id, SECRET, TAG_PUSH, {})
        assert exc.value.status_code == 404

    async def test_unsupported_provider(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.side_effect = UnsupportedProvider("svn")

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(link.id, SECRET, TAG_PUSH, {})
        assert exc.value.status_code == 400

    async def test_malformed_payload(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        body = b"not json"

        with pytest.raises(WebhookRejected) as exc:
            await WebhookIngestor(ctx, publisher).ingest(
                link.id, SECRET, body, _github_headers(body)
            )
        assert exc.value.status_code == 400

    async def test_branch_push_is_recorded_not_dispatched(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, dispatcher, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())
        body = json.dumps({"ref": "refs/heads/main", "after": "b" * 40}).encode()

        receipt = await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, body, _github_headers(body)
        )

        assert receipt.dispatched is False
        mock_record.assert_awaited_once()
        dispatcher.submit.assert_not_called()

    async def test_auto_publish_disabled(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, dispatcher, publisher
    ):
        link = _link(auto_publish=False)
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())

        receipt = await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, TAG_PUSH, _github_headers(TAG_PUSH)
        )

        assert receipt.dispatched is False
        dispatcher.submit.assert_not_called()

    async def test_tag_deletion_not_dispatched(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, dispatcher, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())
        body = json.dumps({"ref": "refs/tags/v1.0.0", "after": "0" * 40}).encode()

        receipt = await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, body, _github_headers(body)
        )

        assert receipt.dispatched is False
        dispatcher.submit.assert_not_called()

    async def test_full_queue_marks_log_failed(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, dispatcher, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        log_id = uuid.uuid4()
        mock_record.return_value = SimpleNamespace(id=log_id)
        dispatcher.submit.return_value = False

        receipt = await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, TAG_PUSH, _github_headers(TAG_PUSH)
        )

        assert receipt.dispatched is False
        args = mock_update.await_args
        assert args.args[1:3] == (log_id, "failed")
        assert args.kwargs["error"] == "publish queue is full"

    async def test_shared_token_signature_is_redacted(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link(kind=ProviderKind.GITLAB)
        mock_link.return_value = link
        mock_build.return_value = GitLabConnector(ConnectorSettings(kind=ProviderKind.GITLAB))
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())
        body = json.dumps(
            {"object_kind": "tag_push", "ref": "refs/tags/v2.0.0", "checkout_sha": "c" * 40}
        ).encode()

        await WebhookIngestor(ctx, publisher).ingest(
            link.id,
            SECRET,
            body,
            {"X-Gitlab-Token": SECRET, "X-Gitlab-Event-UUID": "evt-1"},
        )

        assert mock_record.await_args.args[4] == "[redacted]"

    async def test_duplicate_delivery_still_recorded(
        self, mock_link, mock_build, mock_dup, mock_record, mock_update, ctx, publisher
    ):
        link = _link()
        mock_link.return_value = link
        mock_build.return_value = GitHubConnector(ConnectorSettings(kind=ProviderKind.GITHUB))
        mock_dup.return_value = SimpleNamespace(id=uuid.uuid4())
        mock_record.return_value = SimpleNamespace(id=uuid.uuid4())

        await WebhookIngestor(ctx, publisher).ingest(
            link.id, SECRET, TAG_PUSH, _github_headers(TAG_PUSH)
        )

        mock_record.assert_awaited_once()
