"""
Error taxonomy for the ingestion pipeline.

- UntrustedSender: provider identity check failed, reject without side effects
- MalformedPayload: body matches no known provider shape
- PersistenceFailure: the store failed; surfaced as retryable to the webhook caller
- DeliveryFailure: outbound SMS failed; logged, never escalated

A recognized confirmation echo is not an error: the normalizer returns Skip.
"""


class AsideError(Exception):
    """Base class for pipeline errors."""


class UntrustedSender(AsideError):
    pass


class MalformedPayload(AsideError):
    def __init__(self, reason: str, raw_body: bytes | str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.raw_body = raw_body


class PersistenceFailure(AsideError):
    pass


class DeliveryFailure(AsideError):
    pass
