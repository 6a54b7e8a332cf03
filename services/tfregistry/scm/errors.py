"""SCM connector exceptions.

Messages are safe to persist on webhook log rows: they never contain
tokens, client secrets or webhook secrets.
"""


class SCMError(Exception):
    """Base class for source-control connector failures."""


class UnsupportedProvider(SCMError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"unsupported SCM provider type: {kind}")
        self.kind = kind


class RemoteError(SCMError):
    """Unexpected (usually transient) response from the remote SCM."""

    def __init__(self, status_code: int, operation: str, message: str = "") -> None:
        detail = f"{operation} failed with HTTP {status_code}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)
        self.status_code = status_code
        self.operation = operation


class OAuthExchangeFailed(SCMError):
    """Authorization code could not be exchanged for a token."""


class TokenRefreshFailed(SCMError):
    """Refresh token was rejected or the provider does not issue them."""


class RepoNotFound(SCMError):
    pass


class TagNotFound(SCMError):
    pass


class CommitNotFound(SCMError):
    pass


class WebhookSetupFailed(SCMError):
    pass


class WebhookNotFound(SCMError):
    pass


class WebhookPayloadMalformed(SCMError):
    pass
