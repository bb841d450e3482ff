"""Facilitator client: quote, proof, verification and access over HTTP."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .backoff import BackoffPolicy, retry_async
from .errors import (
    AccessDenied,
    FacilitatorError,
    FacilitatorRequestError,
    FacilitatorUnavailable,
    InvalidQuoteRequest,
    QuoteExpired,
)
from .models import (
    FacilitatorQuote,
    PaymentProof,
    PaymentRecord,
    PaymentRequirement,
    PaymentStatus,
    PaymentStatusReport,
    ServiceAccess,
    VerificationResult,
)

logger = logging.getLogger(__name__)

__all__ = [
    "FacilitatorClient",
    "FacilitatorConfig",
    "FacilitatorHandshake",
    "HandshakeResult",
    "QuoteState",
]


@dataclass
class FacilitatorConfig:
    url: str
    api_key: Optional[str] = None
    timeout: float = 30.0
    http_client: Optional[httpx.AsyncClient] = None
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __repr__(self) -> str:
        return f"FacilitatorConfig(url={self.url!r}, api_key={'***' if self.api_key else None}, timeout={self.timeout})"


def _error_from_response(response: httpx.Response, *, quote_call: bool = False, access_call: bool = False) -> FacilitatorError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    code = payload.get("code")
    message = payload.get("message") or payload.get("error") or f"facilitator returned HTTP {response.status_code}"
    details = payload.get("details") if isinstance(payload.get("details"), dict) else None
    status = response.status_code
    kwargs = {"code": code, "details": details, "status_code": status}

    if status == 410 or code == QuoteExpired.default_code:
        return QuoteExpired(message, **kwargs)
    if code == AccessDenied.default_code or (access_call and status in (401, 403)):
        return AccessDenied(message, **kwargs)
    if status >= 500:
        return FacilitatorUnavailable(message, **kwargs)
    if quote_call and 400 <= status < 500:
        return InvalidQuoteRequest(message, **kwargs)
    return FacilitatorRequestError(message, **kwargs)


class FacilitatorClient:
    """Async client for the facilitator HTTP API.

    Quote, verification, status and health calls retry transport failures and
    5xx answers with the configured backoff. Proof submission is never retried
    blindly: an ambiguous failure is resolved with :meth:`verify_payment`
    first and the proof is resubmitted at most once.
    """

    def __init__(
        self,
        config: FacilitatorConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self._url = config.url.rstrip("/")
        self._client = config.http_client
        self._owns_client = config.http_client is None
        self._sleep = sleep
        self._rng = rng
        self._proofs: Dict[Tuple[str, str], VerificationResult] = {}
        self._proof_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._verifications: Dict[str, VerificationResult] = {}
        self._grants: Dict[Tuple[str, str], ServiceAccess] = {}

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        quote_call: bool = False,
        access_call: bool = False,
    ) -> Dict[str, Any]:
        client = self._get_async_client()
        try:
            response = await client.request(
                method,
                f"{self._url}{path}",
                headers=self._headers(),
                json=json,
                params=params,
                timeout=self.config.timeout,
            )
        except httpx.TransportError as exc:
            raise FacilitatorUnavailable(f"facilitator request {method} {path} failed: {exc}") from exc

        if not response.is_success:
            raise _error_from_response(response, quote_call=quote_call, access_call=access_call)
        try:
            payload = response.json()
        except ValueError as exc:
            raise FacilitatorRequestError(f"facilitator returned invalid JSON for {method} {path}") from exc
        if not isinstance(payload, dict):
            raise FacilitatorRequestError(f"facilitator returned a non-object body for {method} {path}")
        return payload

    async def _request_with_retry(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return await retry_async(
            lambda: self._request(method, path, **kwargs),
            policy=self.config.retry,
            is_retryable=lambda exc: isinstance(exc, FacilitatorUnavailable),
            sleep=self._sleep,
            rng=self._rng,
        )

    async def request_quote(
        self,
        service_id: str,
        operation: str,
        network: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> FacilitatorQuote:
        body: Dict[str, Any] = {"serviceId": service_id, "operation": operation}
        if network is not None:
            body["network"] = network
        if asset is not None:
            body["asset"] = asset
        payload = await self._request_with_retry("POST", "/quotes", json=body, quote_call=True)
        try:
            quote = FacilitatorQuote.from_payload(payload)
        except (TypeError, ValueError) as exc:
            raise FacilitatorRequestError(f"invalid quote response: {exc}") from exc
        logger.debug("Received quote %s for %s/%s", quote.quote_id, service_id, operation)
        return quote

    async def submit_proof(self, quote_id: str, proof: PaymentProof) -> VerificationResult:
        """Submit a payment proof; repeated submissions return the first result."""
        key = (quote_id, proof.transaction_hash)
        lock = self._proof_locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._proofs.get(key)
            if cached is not None:
                return cached

            try:
                payload = await self._request("POST", f"/quotes/{quote_id}/proof", json=proof.to_payload())
            except FacilitatorUnavailable as exc:
                logger.warning("Proof submission for quote %s was ambiguous (%s); checking payment", quote_id, exc)
                known = await self.verify_payment(proof.transaction_hash, proof.network)
                if known.verified:
                    result = known
                else:
                    payload = await self._request("POST", f"/quotes/{quote_id}/proof", json=proof.to_payload())
                    result = VerificationResult.from_payload(payload)
            else:
                result = VerificationResult.from_payload(payload)

            self._proofs[key] = result
            self._verifications[quote_id] = result
            return result

    async def get_access(self, quote_id: str, verification_id: str) -> ServiceAccess:
        verification = self._verifications.get(quote_id)
        if verification is not None and not verification.verified:
            raise AccessDenied(
                f"payment for quote {quote_id} was not verified",
                details={"quoteId": quote_id, "error": verification.error},
            )
        key = (quote_id, verification_id)
        cached = self._grants.get(key)
        if cached is not None:
            return cached

        payload = await self._request(
            "POST",
            f"/quotes/{quote_id}/access",
            json={"verificationId": verification_id},
            access_call=True,
        )
        try:
            access = ServiceAccess.from_payload(payload)
        except (TypeError, ValueError) as exc:
            raise FacilitatorRequestError(f"invalid access response: {exc}") from exc
        self._grants[key] = access
        return access

    async def verify_payment(self, transaction_hash: str, network: str) -> VerificationResult:
        payload = await self._request_with_retry(
            "GET",
            "/payments/verify",
            params={"transactionHash": transaction_hash, "network": network},
        )
        return VerificationResult.from_payload(payload)

    async def get_payment_status(self, payment_id: str) -> PaymentStatusReport:
        payload = await self._request_with_retry("GET", f"/payments/{payment_id}/status")
        try:
            status = PaymentStatus(str(payload.get("status", "")).lower())
        except ValueError as exc:
            raise FacilitatorRequestError(f"unknown payment status {payload.get('status')!r}") from exc
        details = payload.get("details")
        return PaymentStatusReport(
            payment_id=str(payload.get("paymentId") or payload.get("payment_id") or payment_id),
            status=status,
            details=details if isinstance(details, dict) else None,
        )

    async def health_check(self) -> Dict[str, Any]:
        return await self._request_with_retry("GET", "/health")


# ---------------------------------------------------------------------------
# Handshake state machine
# ---------------------------------------------------------------------------


class QuoteState(str, Enum):
    QUOTE_REQUESTED = "quote_requested"
    QUOTED = "quoted"
    PROOF_SUBMITTED = "proof_submitted"
    VERIFIED = "verified"
    ACCESS_GRANTED = "access_granted"


@dataclass(frozen=True)
class HandshakeResult:
    quote: FacilitatorQuote
    record: PaymentRecord
    verification: VerificationResult
    access: ServiceAccess


PayCallable = Callable[[PaymentRequirement], Awaitable[PaymentRecord]]


class FacilitatorHandshake:
    """Drive one quote -> payment -> proof -> access exchange.

    ``pay`` is called with the requirement derived from the quote and must
    return a confirmed :class:`PaymentRecord`. A quote that lapses before it is
    paid is replaced, at most ``max_quote_refreshes`` times.
    """

    def __init__(
        self,
        client: FacilitatorClient,
        *,
        clock: Callable[[], float] = time.time,
        max_quote_refreshes: int = 2,
    ) -> None:
        self.client = client
        self._clock = clock
        self.max_quote_refreshes = max_quote_refreshes
        self.state = QuoteState.QUOTE_REQUESTED
        self.history: List[QuoteState] = []

    def _enter(self, state: QuoteState) -> None:
        self.state = state
        self.history.append(state)

    async def run(
        self,
        service_id: str,
        operation: str,
        pay: PayCallable,
        *,
        network: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> HandshakeResult:
        quote: Optional[FacilitatorQuote] = None
        for _ in range(self.max_quote_refreshes + 1):
            self._enter(QuoteState.QUOTE_REQUESTED)
            candidate = await self.client.request_quote(service_id, operation, network, asset)
            self._enter(QuoteState.QUOTED)
            if candidate.is_expired(self._clock()):
                logger.info("Quote %s lapsed before payment; requesting a new one", candidate.quote_id)
                continue
            quote = candidate
            break
        if quote is None:
            raise QuoteExpired(
                f"every quote for {service_id}/{operation} expired before it could be paid",
                details={"serviceId": service_id, "operation": operation},
            )

        record = await pay(quote.to_requirement())

        self._enter(QuoteState.PROOF_SUBMITTED)
        verification = await self.client.submit_proof(quote.quote_id, PaymentProof.from_record(record))
        if not verification.verified:
            raise AccessDenied(
                f"facilitator rejected payment {record.transaction_hash}: {verification.error or 'not verified'}",
                details={"quoteId": quote.quote_id, "transactionHash": record.transaction_hash},
            )
        if not verification.verification_id:
            raise FacilitatorRequestError("verification response missing verificationId")
        self._enter(QuoteState.VERIFIED)

        access = await self.client.get_access(quote.quote_id, verification.verification_id)
        self._enter(QuoteState.ACCESS_GRANTED)
        return HandshakeResult(quote=quote, record=record, verification=verification, access=access)
