"""
Error taxonomy for the verification and settlement pipeline.

Every failure carries an ``ErrorCode`` (what went wrong) and a
``Disposition`` (what the caller may do about it):

    - RETRYABLE: the payment is not valid *yet* (not found, not confirmed,
      ledger unreachable) or nothing left the treasury. Safe to retry later.
    - REJECTED: the payment itself is invalid. Retrying will not help.
    - UNCERTAIN: an outbound transfer may or may not have landed.
      Requires manual reconciliation before anything else happens.

Components raise ``BridgeError`` subclasses. The pipeline is the only
place they are turned into result payloads; nothing escapes it.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Machine-readable failure kinds reported to callers."""

    # Verification
    REFERENCE_NOT_FOUND = "REFERENCE_NOT_FOUND"
    ON_CHAIN_FAILURE = "ON_CHAIN_FAILURE"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    NO_QUALIFYING_TRANSFER = "NO_QUALIFYING_TRANSFER"
    ASSET_MISMATCH = "ASSET_MISMATCH"
    UNRESOLVED_PRECISION = "UNRESOLVED_PRECISION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    CAP_EXCEEDED = "CAP_EXCEEDED"
    UNSUPPORTED_ASSET = "UNSUPPORTED_ASSET"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"

    # Conversion
    RATE_UNAVAILABLE = "RATE_UNAVAILABLE"

    # Settlement
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"

    # Idempotency guard
    ALREADY_SETTLED = "ALREADY_SETTLED"
    SETTLEMENT_IN_PROGRESS = "SETTLEMENT_IN_PROGRESS"
    SETTLEMENT_UNCERTAIN = "SETTLEMENT_UNCERTAIN"

    # Startup / request framing
    CONFIGURATION_MISSING = "CONFIGURATION_MISSING"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Fault no component anticipated
    INTERNAL_ERROR = "INTERNAL_ERROR"


class Disposition(StrEnum):
    """How a caller should treat a failure."""

    RETRYABLE = "RETRYABLE"
    REJECTED = "REJECTED"
    UNCERTAIN = "UNCERTAIN"


_DEFAULT_DISPOSITION: dict[ErrorCode, Disposition] = {
    ErrorCode.REFERENCE_NOT_FOUND: Disposition.RETRYABLE,
    ErrorCode.NOT_CONFIRMED: Disposition.RETRYABLE,
    ErrorCode.LEDGER_UNAVAILABLE: Disposition.RETRYABLE,
    ErrorCode.RATE_UNAVAILABLE: Disposition.RETRYABLE,
    ErrorCode.SETTLEMENT_IN_PROGRESS: Disposition.RETRYABLE,
    ErrorCode.SUBMISSION_FAILED: Disposition.RETRYABLE,
    ErrorCode.CONFIRMATION_TIMEOUT: Disposition.UNCERTAIN,
    ErrorCode.SETTLEMENT_UNCERTAIN: Disposition.UNCERTAIN,
}


def default_disposition(code: ErrorCode) -> Disposition:
    """Disposition for an error code when the raiser does not override it.

    Anything not explicitly retryable or uncertain is a rejection.
    """
    return _DEFAULT_DISPOSITION.get(code, Disposition.REJECTED)


class BridgeError(Exception):
    """Base class for every typed pipeline failure.

    Args:
        code: The failure kind.
        detail: Human-readable message. Never contains secrets.
        disposition: Override for the default disposition of ``code``.
    """

    def __init__(
        self,
        code: ErrorCode,
        detail: str,
        *,
        disposition: Disposition | None = None,
    ) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.disposition = disposition or default_disposition(code)

    def to_dict(self) -> dict[str, str]:
        return {
            "errorCode": self.code.value,
            "message": self.detail,
            "disposition": self.disposition.value,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!s}, {self.detail!r})"


class VerificationError(BridgeError):
    """An inbound payment failed verification."""


class ConversionError(BridgeError):
    """No output amount could be derived for a verified payment."""


class SettlementError(BridgeError):
    """The outbound transfer failed or its outcome is unknown.

    Attributes:
        outbound_tx_id: Signature of the outbound transaction when one was
            produced, so an uncertain settlement can be reconciled.
    """

    def __init__(
        self,
        code: ErrorCode,
        detail: str,
        *,
        disposition: Disposition | None = None,
        outbound_tx_id: str | None = None,
    ) -> None:
        super().__init__(code, detail, disposition=disposition)
        self.outbound_tx_id = outbound_tx_id


class ConfigurationError(BridgeError):
    """Required configuration is absent or malformed. Fatal at startup."""

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorCode.CONFIGURATION_MISSING, detail)
