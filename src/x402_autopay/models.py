"""Dataclasses shared by the parser, executor, engine and facilitator client."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .constants import (
    EXACT_SCHEME,
    EXTRA_FACILITATOR,
    EXTRA_OPERATION,
    EXTRA_QUOTE_ID,
    EXTRA_SERVICE_ID,
    PAYMENT_REQUIRED_STATUS,
)
from .errors import RecordStateError

Primitive = Union[str, int, float, bool, None]
Extras = Dict[str, Primitive]


def _pick(payload: Mapping[str, Any], keys, default=None):
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def normalize_extras(raw: Optional[Mapping[str, Any]]) -> Extras:
    """Coerce an arbitrary mapping into a str -> primitive map."""
    extras: Extras = {}
    if not raw:
        return extras
    for key, value in raw.items():
        if isinstance(value, Decimal):
            extras[str(key)] = float(value)
        elif value is None or isinstance(value, (str, int, float, bool)):
            extras[str(key)] = value
        else:
            extras[str(key)] = json.dumps(value, separators=(",", ":"), sort_keys=True, default=float)
    return extras


@dataclass(frozen=True)
class PaymentRequirement:
    """One accepted way to pay for a resource.

    ``extras`` takes no part in equality or hashing.
    """

    scheme: str
    network: str
    asset: str
    amount: str
    pay_to: str
    nonce: Optional[str] = None
    expiry: Optional[int] = None
    extras: Extras = field(default_factory=dict, compare=False, hash=False)

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)

    @property
    def is_exact(self) -> bool:
        return self.scheme == EXACT_SCHEME

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expiry is None:
            return False
        now = time.time() if now is None else now
        return now > self.expiry

    @property
    def facilitator_url(self) -> Optional[str]:
        value = self.extras.get(EXTRA_FACILITATOR)
        return str(value) if value else None

    @property
    def service_id(self) -> Optional[str]:
        value = self.extras.get(EXTRA_SERVICE_ID)
        return str(value) if value else None

    @property
    def operation(self) -> Optional[str]:
        value = self.extras.get(EXTRA_OPERATION)
        return str(value) if value else None

    @property
    def quote_id(self) -> Optional[str]:
        value = self.extras.get(EXTRA_QUOTE_ID)
        return str(value) if value else None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "amount": self.amount,
            "payTo": self.pay_to,
        }
        if self.nonce is not None:
            payload["nonce"] = self.nonce
        if self.expiry is not None:
            payload["expiry"] = self.expiry
        if self.extras:
            payload["extras"] = dict(self.extras)
        return payload


@dataclass(frozen=True)
class PaymentRequiredResponse:
    version: int
    accepts: Tuple[PaymentRequirement, ...]
    message: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "version": self.version,
            "accepts": [req.to_payload() for req in self.accepts],
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class PaymentRecord:
    """Result of a payment attempt.

    Created ``pending`` when submission succeeds and moved to a terminal
    status exactly once.
    """

    request_id: str
    transaction_hash: str
    amount: str
    asset: str
    network: str
    pay_to: str
    status: PaymentStatus = PaymentStatus.PENDING
    block_number: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not PaymentStatus.PENDING

    def _transition(self, status: PaymentStatus) -> None:
        if self.is_terminal:
            raise RecordStateError(
                f"Payment record {self.request_id} is already {self.status.value}",
                details={"requestId": self.request_id, "status": self.status.value},
            )
        self.status = status

    def confirm(self, block_number: Optional[int] = None) -> None:
        self._transition(PaymentStatus.CONFIRMED)
        self.block_number = block_number

    def fail(self, reason: str) -> None:
        self._transition(PaymentStatus.FAILED)
        self.failure_reason = reason

    def expire(self) -> None:
        self._transition(PaymentStatus.EXPIRED)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "status": self.status.value,
            "amount": self.amount,
            "asset": self.asset,
            "network": self.network,
            "payTo": self.pay_to,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Receipt:
    transaction_hash: Optional[str]
    block_number: Optional[int]
    status: Optional[int]

    @property
    def succeeded(self) -> bool:
        return self.status is None or self.status == 1

    @classmethod
    def from_any(cls, raw: Any) -> "Receipt":
        if isinstance(raw, Receipt):
            return raw
        if isinstance(raw, Mapping):
            get = raw.get
        else:
            def get(key, default=None):
                return getattr(raw, key, default)

        tx = None
        for key in ("transactionHash", "transaction_hash", "hash"):
            tx = get(key)
            if tx is not None:
                break
        block = None
        for key in ("blockNumber", "block_number"):
            block = get(key)
            if block is not None:
                break
        status = get("status")
        return cls(
            transaction_hash=str(tx) if tx is not None else None,
            block_number=_to_int(block),
            status=_to_int(status),
        )


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


# ---------------------------------------------------------------------------
# Facilitator handshake
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FacilitatorQuote:
    quote_id: str
    amount: str
    asset: str
    network: str
    pay_to: str
    expires_at: int
    description: Optional[str] = None
    metadata: Extras = field(default_factory=dict, compare=False, hash=False)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def to_requirement(self) -> PaymentRequirement:
        return PaymentRequirement(
            scheme=EXACT_SCHEME,
            network=self.network,
            asset=self.asset,
            amount=self.amount,
            pay_to=self.pay_to,
            expiry=self.expires_at,
            extras={EXTRA_QUOTE_ID: self.quote_id},
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FacilitatorQuote":
        quote_id = _pick(payload, ["id", "quoteId", "quote_id"])
        amount = _pick(payload, ["amount"])
        asset = _pick(payload, ["asset", "token"])
        network = _pick(payload, ["network"])
        pay_to = _pick(payload, ["payTo", "pay_to", "recipient"])
        expires_at = _pick(payload, ["expiresAt", "expires_at", "expiry"])

        if not all([quote_id, amount, asset, network, pay_to, expires_at]):
            raise ValueError("quote response missing required fields")

        return cls(
            quote_id=str(quote_id),
            amount=str(amount),
            asset=str(asset),
            network=str(network),
            pay_to=str(pay_to),
            expires_at=int(expires_at),
            description=_pick(payload, ["description"]),
            metadata=normalize_extras(_pick(payload, ["metadata"])),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.quote_id,
            "amount": self.amount,
            "asset": self.asset,
            "network": self.network,
            "payTo": self.pay_to,
            "expiresAt": self.expires_at,
        }
        if self.description is not None:
            payload["description"] = self.description
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(frozen=True)
class PaymentProof:
    transaction_hash: str
    block_number: Optional[int]
    network: str
    amount: str
    asset: str
    timestamp: float

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentProof":
        return cls(
            transaction_hash=record.transaction_hash,
            block_number=record.block_number,
            network=record.network,
            amount=record.amount,
            asset=record.asset,
            timestamp=record.timestamp,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PaymentProof":
        block = _pick(payload, ["blockNumber", "block_number"])
        return cls(
            transaction_hash=str(_pick(payload, ["transactionHash", "transaction_hash"], "")),
            block_number=int(block) if block is not None else None,
            network=str(_pick(payload, ["network"], "")),
            amount=str(_pick(payload, ["amount"], "")),
            asset=str(_pick(payload, ["asset", "token"], "")),
            timestamp=float(_pick(payload, ["timestamp"], 0)),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "network": self.network,
            "amount": self.amount,
            "asset": self.asset,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    verification_id: Optional[str] = None
    error: Optional[str] = None
    payment: Optional[Dict[str, Any]] = None
    verified_at: float = field(default_factory=time.time, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "VerificationResult":
        verification_id = _pick(payload, ["verificationId", "verification_id", "id"])
        verified_at = _pick(payload, ["verifiedAt", "verified_at"])
        return cls(
            verified=bool(payload.get("verified", False)),
            verification_id=str(verification_id) if verification_id is not None else None,
            error=_pick(payload, ["error"]),
            payment=_pick(payload, ["payment"]),
            verified_at=float(verified_at) if verified_at is not None else time.time(),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"verified": self.verified, "verifiedAt": self.verified_at}
        if self.verification_id is not None:
            payload["verificationId"] = self.verification_id
        if self.error is not None:
            payload["error"] = self.error
        if self.payment is not None:
            payload["payment"] = self.payment
        return payload


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int


@dataclass(frozen=True)
class ServiceAccess:
    access_token: str
    expires_at: int
    permissions: Tuple[str, ...] = ()
    rate_limits: Optional[RateLimits] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ServiceAccess":
        token = _pick(payload, ["accessToken", "access_token"])
        expires_at = _pick(payload, ["expiresAt", "expires_at"])
        if not token or expires_at is None:
            raise ValueError("access response missing accessToken or expiresAt")
        limits = _pick(payload, ["rateLimits", "rate_limits"])
        rate_limits = None
        if isinstance(limits, Mapping):
            rate_limits = RateLimits(
                requests_per_minute=int(_pick(limits, ["requestsPerMinute", "requests_per_minute"], 0)),
                requests_per_hour=int(_pick(limits, ["requestsPerHour", "requests_per_hour"], 0)),
                requests_per_day=int(_pick(limits, ["requestsPerDay", "requests_per_day"], 0)),
            )
        return cls(
            access_token=str(token),
            expires_at=int(expires_at),
            permissions=tuple(str(p) for p in payload.get("permissions") or ()),
            rate_limits=rate_limits,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "accessToken": self.access_token,
            "expiresAt": self.expires_at,
            "permissions": list(self.permissions),
        }
        if self.rate_limits is not None:
            payload["rateLimits"] = {
                "requestsPerMinute": self.rate_limits.requests_per_minute,
                "requestsPerHour": self.rate_limits.requests_per_hour,
                "requestsPerDay": self.rate_limits.requests_per_day,
            }
        return payload


@dataclass(frozen=True)
class PaymentStatusReport:
    payment_id: str
    status: PaymentStatus
    details: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# HTTP exchange
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    content: Optional[bytes] = None
    json: Any = None

    def with_headers(self, extra: Mapping[str, str]) -> "ResourceRequest":
        headers = dict(self.headers)
        headers.update(extra)
        return replace(self, headers=headers)


@dataclass
class ResourceResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""
    payment: Optional[PaymentRecord] = None
    access: Optional[ServiceAccess] = None

    def __post_init__(self) -> None:
        self.headers = {str(k).lower(): str(v) for k, v in self.headers.items()}

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    @property
    def is_payment_required(self) -> bool:
        return self.status_code == PAYMENT_REQUIRED_STATUS


__all__: List[str] = [
    "Extras",
    "FacilitatorQuote",
    "PaymentProof",
    "PaymentRecord",
    "PaymentRequiredResponse",
    "PaymentRequirement",
    "PaymentStatus",
    "PaymentStatusReport",
    "RateLimits",
    "Receipt",
    "ResourceRequest",
    "ResourceResponse",
    "ServiceAccess",
    "VerificationResult",
    "normalize_extras",
]
