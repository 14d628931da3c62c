"""Errors raised while reconciling provider events"""


class LedgerError(Exception):
    """Base class for reconciliation failures"""


class MalformedEventError(LedgerError, ValueError):
    """The event envelope itself cannot be normalized (missing id or type)"""


class ProviderFetchError(LedgerError):
    """A remote re-fetch from the payment provider failed.

    Retryable: the unit of work is rolled back and the provider redelivers.
    """

    def __init__(self, object_kind: str, object_id: str, cause: Exception):
        self.object_kind = object_kind
        self.object_id = object_id
        self.cause = cause
        super().__init__(f"Failed to retrieve {object_kind} {object_id}: {cause}")


class WebhookNotConfiguredError(LedgerError):
    """The webhook signing secret is not set, so no event can be verified"""
