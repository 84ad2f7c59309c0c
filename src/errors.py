"""
Error taxonomy for the ingestion pipeline.

None of these ever reach the calling provider - the ingress always answers
200 and the outcome lives on the webhook_logs record.
"""


class IngestionError(Exception):
    """Base class for pipeline errors. `log_status` is the terminal status to record."""
    log_status = "error"


class SignatureInvalid(IngestionError):
    """Signature header missing or not matching. Non-fatal unless rejection is enabled."""


class PayloadUnparseable(IngestionError):
    """Neither the fast path nor the tree search found a required field."""


class DuplicateTransaction(IngestionError):
    """Transaction already applied - the expected path for redelivery."""
    log_status = "skipped"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} already processed")
        self.transaction_id = transaction_id


class DownstreamAuthFailure(IngestionError):
    """Provider OAuth/API call failed during an administrative lookup."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class StorageUnavailable(IngestionError):
    """Database write failed. Fatal for the current event; replay manually."""
