"""Service error hierarchy for token accounting and generation jobs.

This module defines the exception hierarchy for service-level errors:
- GenLedgerError: Base for all service errors
- Request errors (InvalidModel, InvalidRequest, InsufficientBalance, ...): Raised to the caller
- ProviderError: External provider failures, split into transient and permanent
- Reconciliation errors (ReconciliationConflict, RefundFailure): Logged, never raised into a void
"""


class GenLedgerError(Exception):
    """Base exception for all service errors."""

    pass


class InvalidModel(GenLedgerError):
    """Requested model is not in the model registry."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unknown model: {model}")


class InvalidRequest(GenLedgerError):
    """Request parameters are out of range (aspect ratio, output count, amount)."""

    pass


class InsufficientBalance(GenLedgerError):
    """Account balance does not cover the requested debit.

    Attributes:
        required: Tokens the operation needs
        available: Tokens the account holds
    """

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient balance: required {required}, available {available}")


class AccountNotFound(GenLedgerError):
    """No ledger account exists for the id."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class JobNotFound(GenLedgerError):
    """No generation job exists for the id."""

    def __init__(self, job_id: object):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ProviderError(GenLedgerError):
    """External provider rejected or failed a request.

    Attributes:
        provider: Provider name (kie, fal)
        status_code: HTTP status or provider error code, if known
    """

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Provider error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    pass


class PermanentProviderError(ProviderError):
    """Provider error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Content policy violations
    """

    pass


class JobTimeoutError(GenLedgerError):
    """Polling gave up before the provider reported a terminal state."""

    def __init__(self, external_task_id: str, attempts: int):
        self.external_task_id = external_task_id
        self.attempts = attempts
        super().__init__(f"Task {external_task_id} not terminal after {attempts} polls")


class ReconciliationConflict(GenLedgerError):
    """Terminal outcome arrived for a job that is already terminal."""

    pass


class RefundFailure(GenLedgerError):
    """Refund credit could not be written; the job stays queued for retry."""

    pass
