"""SCM connector registry.

Maps provider kinds to connector factories. A registry is built once at
startup by :func:`init_connectors` and injected into the components that
need it.
"""

from collections.abc import Callable

import httpx

from tfregistry.logging_config import get_logger
from tfregistry.scm.base import ConnectorSettings, ProviderKind, SCMConnector
from tfregistry.scm.errors import UnsupportedProvider

logger = get_logger(__name__)

ConnectorFactory = Callable[[ConnectorSettings, httpx.AsyncBaseTransport | None], SCMConnector]


class ConnectorRegistry:
    """Factory map keyed by provider kind."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._factories: dict[str, ConnectorFactory] = {}
        self._transport = transport

    def register(self, kind: str, factory: ConnectorFactory) -> None:
        self._factories[str(kind)] = factory

    def kinds(self) -> list[str]:
        return sorted(self._factories)

    def build(self, settings: ConnectorSettings) -> SCMConnector:
        factory = self._factories.get(str(settings.kind))
        if factory is None:
            raise UnsupportedProvider(str(settings.kind))
        return factory(settings, self._transport)


def init_connectors(transport: httpx.AsyncBaseTransport | None = None) -> ConnectorRegistry:
    """Build a registry with every built-in connector.

    Called during application startup (lifespan handler).
    """
    from tfregistry.scm.connectors.azure_devops import AzureDevOpsConnector
    from tfregistry.scm.connectors.bitbucket_dc import BitbucketDCConnector
    from tfregistry.scm.connectors.github import GitHubConnector
    from tfregistry.scm.connectors.gitlab import GitLabConnector

    registry = ConnectorRegistry(transport)
    registry.register(ProviderKind.GITHUB, GitHubConnector)
    registry.register(ProviderKind.GITLAB, GitLabConnector)
    registry.register(ProviderKind.AZURE_DEVOPS, AzureDevOpsConnector)
    registry.register(ProviderKind.BITBUCKET_DC, BitbucketDCConnector)

    logger.info("SCM connectors registered", kinds=registry.kinds())
    return registry
