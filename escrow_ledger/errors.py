"""Ledger error taxonomy.

Every failure a caller can act on is one of these. Business-rule outcomes
(declined card, job already claimed) carry an end-user message; infrastructure
failures (processor outage, bad webhook signature) are for operators and are
never presented as a business rejection.

``retryable`` is True only where retrying the same call, with the same
idempotency key, can succeed.
"""

import random


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 500
    retryable = False

    def __init__(self, detail: str, **context: object) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict:
        body: dict = {"detail": self.detail, "error": self.code}
        if self.context:
            body["context"] = {k: _jsonable(v) for k, v in self.context.items()}
        return body


class InvalidRequest(LedgerError):
    """Malformed or missing caller data. Fix the caller."""

    code = "invalid_request"
    status_code = 422


class PaymentDeclined(LedgerError):
    """The processor refused the customer's instrument."""

    code = "payment_declined"
    status_code = 402


class PaymentProviderUnavailable(LedgerError):
    """Transient processor or network failure."""

    code = "payment_provider_unavailable"
    status_code = 503
    retryable = True


class InvalidStateTransition(LedgerError):
    code = "invalid_state_transition"
    status_code = 409


class JobAlreadyClaimed(LedgerError):
    code = "job_already_claimed"
    status_code = 409


class OnboardingIncomplete(LedgerError):
    """A payout destination is not able to receive transfers yet."""

    code = "onboarding_incomplete"
    status_code = 409


class PartialTransferFailure(LedgerError):
    """Capture succeeded but at least one release transfer did not.

    The escrow row is left in ``partially_released`` for an operator to finish.
    """

    code = "partial_transfer_failure"
    status_code = 502


class InvalidSignature(LedgerError):
    code = "invalid_signature"
    status_code = 400


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """Exponential backoff with 0-25% jitter, for retrying retryable errors.

    attempt is 0-indexed: 1.0-1.25s, 2.0-2.5s, 4.0-5.0s, ...
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


def _jsonable(value: object) -> object:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)
