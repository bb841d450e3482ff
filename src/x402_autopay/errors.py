"""Error taxonomy for the payment engine and the facilitator client."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional


def _amount(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


class X402Error(Exception):
    """Base class for every error raised by this package.

    ``step`` is filled in by the engine with the state the fetch was in when
    the error surfaced.
    """

    default_code = "X402_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.code}] {self.message} (step: {self.step})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "step": self.step,
            "details": self.details,
        }


class ConfigError(X402Error):
    """Raised when the supplied configuration is invalid."""

    default_code = "CONFIG_ERROR"


class RecordStateError(X402Error):
    default_code = "RECORD_STATE_ERROR"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseError(X402Error):
    default_code = "PARSE_ERROR"


class MalformedRequirement(ParseError):
    default_code = "MALFORMED_REQUIREMENT"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        missing: Iterable[str] = (),
        invalid: Iterable[str] = (),
        index: Optional[int] = None,
    ) -> None:
        self.missing = sorted(missing)
        self.invalid = sorted(invalid)
        if message is None:
            parts = []
            if self.missing:
                parts.append(f"missing fields: {', '.join(self.missing)}")
            if self.invalid:
                parts.append(f"invalid fields: {', '.join(self.invalid)}")
            message = "payment requirement " + "; ".join(parts or ["is malformed"])
        details: Dict[str, Any] = {"missing": self.missing, "invalid": self.invalid}
        if index is not None:
            details["index"] = index
        super().__init__(message, details=details)


class InvalidAmount(ParseError):
    default_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str = "not a valid decimal amount") -> None:
        self.amount = amount
        super().__init__(
            f"Invalid payment amount {amount!r}: {reason}",
            details={"amount": None if amount is None else str(amount), "reason": reason},
        )


class InvalidAddress(ParseError):
    default_code = "INVALID_ADDRESS"

    def __init__(self, address: Any, network: str) -> None:
        self.address = address
        self.network = network
        super().__init__(
            f"Invalid payee address {address!r} for network {network}",
            details={"address": str(address), "network": network},
        )


class InvalidPaymentResponse(ParseError):
    """A 402 response whose payment terms could not be parsed."""

    default_code = "INVALID_PAYMENT_RESPONSE"

    def __init__(self, reason: ParseError) -> None:
        self.reason = reason
        details = {"reason": reason.code, **reason.details}
        super().__init__(f"Invalid payment response: {reason.message}", details=details)


# ---------------------------------------------------------------------------
# Selection, limits, funds
# ---------------------------------------------------------------------------


class SelectionError(X402Error):
    default_code = "SELECTION_ERROR"


class NoAcceptableRequirement(SelectionError):
    default_code = "NO_ACCEPTABLE_REQUIREMENT"

    def __init__(self, offered: int) -> None:
        self.offered = offered
        super().__init__(
            f"None of the {offered} offered payment requirements is acceptable",
            details={"offered": offered},
        )


class LimitError(X402Error):
    default_code = "LIMIT_ERROR"


class SpendingLimitExceeded(LimitError):
    default_code = "SPENDING_LIMIT_EXCEEDED"

    def __init__(
        self,
        *,
        limit: str,
        cap: Decimal,
        requested: Decimal,
        window_total: Decimal,
        network: str,
        asset: str,
    ) -> None:
        self.limit = limit
        self.cap = cap
        self.requested = requested
        self.window_total = window_total
        if limit == "per_transaction":
            message = f"Payment of {_amount(requested)} {asset} exceeds per-transaction cap of {_amount(cap)}"
        else:
            message = (
                f"Payment of {_amount(requested)} {asset} would exceed window total cap of "
                f"{_amount(cap)} (already spent {_amount(window_total)})"
            )
        super().__init__(
            message,
            details={
                "limit": limit,
                "cap": _amount(cap),
                "requested": _amount(requested),
                "windowTotal": _amount(window_total),
                "network": network,
                "asset": asset,
            },
        )


class FundsError(X402Error):
    default_code = "FUNDS_ERROR"


class InsufficientBalance(FundsError):
    default_code = "INSUFFICIENT_BALANCE"

    def __init__(self, *, requested: Decimal, balance: Decimal, network: str, asset: str) -> None:
        self.requested = requested
        self.balance = balance
        super().__init__(
            f"Insufficient {asset} balance on {network}: need {_amount(requested)}, have {_amount(balance)}",
            details={
                "requested": _amount(requested),
                "balance": _amount(balance),
                "network": network,
                "asset": asset,
            },
        )


# ---------------------------------------------------------------------------
# Payment execution and engine
# ---------------------------------------------------------------------------


class PaymentError(X402Error):
    default_code = "PAYMENT_ERROR"


class PaymentFailed(PaymentError):
    """Submission or confirmation failed.

    ``confirmation_timeout`` means the transaction was submitted but no receipt
    arrived in time: the outcome is unknown and the transaction may still
    confirm later.
    """

    default_code = "PAYMENT_FAILED"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        confirmation_timeout: bool = False,
        transaction_hash: Optional[str] = None,
        record: Any = None,
    ) -> None:
        self.transient = transient
        self.confirmation_timeout = confirmation_timeout
        self.transaction_hash = transaction_hash
        self.record = record
        details: Dict[str, Any] = {"transient": transient}
        if confirmation_timeout:
            details["confirmationTimeout"] = True
        if transaction_hash:
            details["transactionHash"] = transaction_hash
        super().__init__(message, details=details)


class EngineError(X402Error):
    default_code = "ENGINE_ERROR"


class Cancelled(EngineError):
    """The fetch was cancelled or ran out of time.

    Funds may already be committed when ``record`` is set; callers should check
    ``record.transaction_hash`` later.
    """

    default_code = "CANCELLED"

    def __init__(self, reason: str = "cancelled", *, record: Any = None) -> None:
        self.reason = reason
        self.record = record
        details: Dict[str, Any] = {"reason": reason}
        if record is not None:
            details["transactionHash"] = record.transaction_hash
        super().__init__(f"Fetch {reason}", details=details)

    def attach_record(self, record: Any) -> None:
        self.record = record
        self.details["transactionHash"] = record.transaction_hash


class RetriedRequestFailed(EngineError):
    """The payment confirmed but the request carrying its proof did not complete.

    Spending is already recorded; ``record`` holds the transaction to present
    again or to reconcile later.
    """

    default_code = "RETRIED_REQUEST_FAILED"

    def __init__(self, record: Any, cause: BaseException) -> None:
        self.record = record
        super().__init__(
            f"Request with proof of payment {record.transaction_hash} failed: {str(cause) or type(cause).__name__}",
            details={"transactionHash": record.transaction_hash},
        )


# ---------------------------------------------------------------------------
# Facilitator
# ---------------------------------------------------------------------------


class FacilitatorError(X402Error):
    default_code = "FACILITATOR_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class FacilitatorUnavailable(FacilitatorError):
    default_code = "FACILITATOR_UNAVAILABLE"


class InvalidQuoteRequest(FacilitatorError):
    default_code = "INVALID_QUOTE_REQUEST"


class AccessDenied(FacilitatorError):
    default_code = "ACCESS_DENIED"


class QuoteExpired(FacilitatorError):
    default_code = "QUOTE_EXPIRED"


class FacilitatorRequestError(FacilitatorError):
    """Any other structured error returned by the facilitator."""
