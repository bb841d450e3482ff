"""The 402 state machine: request, parse, select, pay, retry once."""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, TypeVar

import httpx

from .backoff import retry_async
from .config import EngineConfig
from .constants import (
    EXTRA_PAYMENT_ID,
    HEADER_PAYMENT_AMOUNT,
    HEADER_PAYMENT_ASSET,
    HEADER_PAYMENT_HASH,
    HEADER_PAYMENT_NETWORK,
    PAYMENT_REQUIRED_STATUS,
)
from .errors import (
    Cancelled,
    InvalidPaymentResponse,
    NoAcceptableRequirement,
    ParseError,
    PaymentFailed,
    RetriedRequestFailed,
    X402Error,
)
from .executor import PaymentExecutor
from .facilitator import FacilitatorClient, FacilitatorHandshake, HandshakeResult
from .http import HttpClient
from .limits import SpendingLimitTracker
from .models import PaymentRecord, PaymentRequirement, ResourceRequest, ResourceResponse, ServiceAccess
from .observer import FetchObserver, notify
from .parser import parse_payment_required
from .selector import select_requirement
from .wallet import Wallet

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["EngineState", "ProtocolEngine", "proof_headers"]

DEFAULT_OPERATION = "default"


class EngineState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    PAYMENT_REQUIRED = "payment_required"
    PARSING = "parsing"
    SELECTING = "selecting"
    PAYING = "paying"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


def proof_headers(record: PaymentRecord, access: Optional[ServiceAccess] = None) -> Dict[str, str]:
    """Headers attached to the request reissued after a confirmed payment."""
    headers = {
        HEADER_PAYMENT_HASH: record.transaction_hash,
        HEADER_PAYMENT_NETWORK: record.network,
        HEADER_PAYMENT_AMOUNT: record.amount,
        HEADER_PAYMENT_ASSET: record.asset,
    }
    if access is not None:
        headers["Authorization"] = f"Bearer {access.access_token}"
    return headers


def _min_timeout(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


class _SubmittedRecordTracker(FetchObserver):
    """Remembers the last submitted record of one fetch and forwards hooks."""

    def __init__(self, inner: Optional[FetchObserver]) -> None:
        self.inner = inner
        self.record: Optional[PaymentRecord] = None

    def payment_submitted(self, record: PaymentRecord) -> None:
        self.record = record
        notify(self.inner, "payment_submitted", record)

    def payment_confirmed(self, record: PaymentRecord) -> None:
        notify(self.inner, "payment_confirmed", record)


class _Fetch:
    """Per-call state: current step, deadline and cancellation signal."""

    def __init__(self, request: ResourceRequest, deadline: Optional[float], cancel_event: Optional[asyncio.Event]) -> None:
        self.request = request
        self.deadline = deadline
        self.cancel_event = cancel_event
        self.state = EngineState.IDLE

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled("cancelled")

    def step_timeout(self, step: Optional[float]) -> Optional[float]:
        """Timeout for one external call; raises once the deadline has passed."""
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise Cancelled("deadline")
        return _min_timeout(step, remaining)

    def bound_by_deadline(self, step: Optional[float]) -> bool:
        remaining = self.remaining()
        return remaining is not None and (step is None or remaining <= step)


class ProtocolEngine:
    """Fetch resources, paying 402 Payment Required responses automatically.

    ``http``, ``wallet`` and ``facilitator`` are borrowed, never closed. One
    engine may serve many concurrent :meth:`fetch` calls; they share the
    spending tracker.
    """

    def __init__(
        self,
        http: HttpClient,
        wallet: Wallet,
        *,
        config: Optional[EngineConfig] = None,
        tracker: Optional[SpendingLimitTracker] = None,
        executor: Optional[PaymentExecutor] = None,
        facilitator: Optional[FacilitatorClient] = None,
        observer: Optional[FetchObserver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.http = http
        self.wallet = wallet
        self.config = config or EngineConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        if executor is not None:
            self.executor = executor
            self.tracker = executor.tracker
        else:
            self.tracker = tracker or SpendingLimitTracker(self.config.spending_limits, clock=clock)
            self.executor = PaymentExecutor(
                self.tracker,
                confirmation_timeout=self.config.confirmation_timeout,
                confirmations=self.config.confirmations,
                call_timeout=self.config.wallet_timeout,
                clock=clock,
            )
        self.facilitator = facilitator
        self.observer = observer
        self._background: Set["asyncio.Future[Any]"] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResourceResponse:
        request = ResourceRequest("GET", url, headers=dict(headers or {}))
        return await self.fetch(request, timeout=timeout, cancel_event=cancel_event)

    async def post(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
        json: Any = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResourceResponse:
        request = ResourceRequest("POST", url, headers=dict(headers or {}), content=content, json=json)
        return await self.fetch(request, timeout=timeout, cancel_event=cancel_event)

    def current_spending(self, network: str, asset: str) -> Decimal:
        return self.tracker.current_window_total(network, asset, now=self._clock())

    def clear_spending_history(self, network: Optional[str] = None, asset: Optional[str] = None) -> None:
        self.tracker.clear(network, asset)

    async def wait_for_pending_payments(self) -> None:
        """Wait for payments left running by cancelled fetches."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def fetch(
        self,
        request: ResourceRequest,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResourceResponse:
        """Issue ``request``; on 402, pay and reissue it exactly once.

        ``timeout`` is the overall deadline for every step. Setting
        ``cancel_event`` while a payment is in flight returns
        :class:`Cancelled` at once; the payment keeps running and its record
        is attached to the error when it was already submitted.
        """
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        run = _Fetch(request, deadline, cancel_event)
        notify(self.observer, "request_started", request)
        try:
            response = await self._run(run)
        except X402Error as exc:
            if exc.step is None:
                exc.step = run.state.value
            run.state = EngineState.FAILED
            logger.warning(
                "%s %s failed while %s: [%s] %s",
                request.method,
                request.url,
                exc.step,
                exc.code,
                exc.message,
            )
            notify(self.observer, "request_failed", request, exc)
            raise
        run.state = EngineState.DONE
        notify(self.observer, "request_completed", request, response)
        return response

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run(self, run: _Fetch) -> ResourceResponse:
        run.state = EngineState.REQUESTING
        response = await self._send(run.request, run)
        if response.status_code != PAYMENT_REQUIRED_STATUS:
            return response

        run.state = EngineState.PAYMENT_REQUIRED
        run.state = EngineState.PARSING
        try:
            terms = parse_payment_required(response, default_network=self.config.default_network)
        except ParseError as exc:
            raise InvalidPaymentResponse(exc) from exc
        logger.debug("Parsed %d payment requirement(s) for %s", len(terms.accepts), run.request.url)
        notify(self.observer, "payment_required", run.request, terms)

        run.state = EngineState.SELECTING
        requirement = select_requirement(terms.accepts, self.config.preferred_network, now=self._clock())
        if requirement is None:
            raise NoAcceptableRequirement(len(terms.accepts))
        logger.debug("Selected %s %s on %s", requirement.amount, requirement.asset, requirement.network)
        notify(self.observer, "requirement_selected", requirement)

        run.state = EngineState.PAYING
        run.check_cancelled()
        request_id = str(requirement.extras.get(EXTRA_PAYMENT_ID) or uuid.uuid4().hex)
        tracker = _SubmittedRecordTracker(self.observer)
        access: Optional[ServiceAccess] = None
        if self.facilitator is not None and requirement.service_id:
            result = await self._await_payment(
                run,
                tracker,
                self._pay_via_facilitator(self.facilitator, requirement, run, request_id, tracker),
            )
            record, access = result.record, result.access
        else:
            record = await self._await_payment(run, tracker, self._pay(requirement, run, request_id, tracker))

        run.state = EngineState.RETRYING
        try:
            retried = await self._send(run.request.with_headers(proof_headers(record, access)), run)
        except Cancelled as exc:
            exc.attach_record(record)
            raise
        except (asyncio.TimeoutError, httpx.HTTPError, OSError) as exc:
            raise RetriedRequestFailed(record, exc) from exc
        logger.info(
            "Reissued %s %s with payment %s (status %d)",
            run.request.method,
            run.request.url,
            record.transaction_hash,
            retried.status_code,
        )
        retried.payment = record
        retried.access = access
        return retried

    async def _send(self, request: ResourceRequest, run: _Fetch) -> ResourceResponse:
        run.check_cancelled()
        step = self.config.request_timeout
        timeout = run.step_timeout(step)
        try:
            return await asyncio.wait_for(self.http.send(request, timeout=timeout), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            if run.bound_by_deadline(step):
                raise Cancelled("deadline") from None
            raise

    async def _pay(
        self,
        requirement: PaymentRequirement,
        run: _Fetch,
        request_id: str,
        observer: FetchObserver,
    ) -> PaymentRecord:
        """Run the executor, retrying transient failures with the configured backoff."""

        async def attempt() -> PaymentRecord:
            return await self.executor.pay(
                requirement,
                self.wallet,
                request_id=request_id,
                confirmation_timeout=self.config.confirmation_timeout,
                call_timeout=self.config.wallet_timeout,
                remaining=run.remaining,
                observer=observer,
            )

        async def sleep(delay: float) -> None:
            remaining = run.remaining()
            if remaining is not None and delay >= remaining:
                raise Cancelled("deadline")
            await self._sleep(delay)

        return await retry_async(
            attempt,
            policy=self.config.retry,
            is_retryable=lambda exc: isinstance(exc, PaymentFailed) and exc.transient,
            sleep=sleep,
            rng=self._rng,
        )

    async def _pay_via_facilitator(
        self,
        facilitator: FacilitatorClient,
        requirement: PaymentRequirement,
        run: _Fetch,
        request_id: str,
        observer: FetchObserver,
    ) -> HandshakeResult:
        handshake = FacilitatorHandshake(facilitator, clock=self._clock)

        async def pay(quoted: PaymentRequirement) -> PaymentRecord:
            return await self._pay(quoted, run, request_id, observer)

        result = await handshake.run(
            requirement.service_id or "",
            requirement.operation or DEFAULT_OPERATION,
            pay,
            network=requirement.network,
            asset=requirement.asset,
        )
        notify(self.observer, "access_granted", result.access)
        return result

    async def _await_payment(self, run: _Fetch, tracker: _SubmittedRecordTracker, payment: Awaitable[T]) -> T:
        """Await ``payment`` unless ``run.cancel_event`` fires first.

        On cancellation the payment task is left running in the background.
        """
        if run.cancel_event is None:
            return await payment

        task = asyncio.ensure_future(payment)
        waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return task.result()

        self._background.add(task)
        task.add_done_callback(self._background_done)
        logger.warning(
            "Fetch of %s cancelled while paying; payment continues in the background",
            run.request.url,
        )
        raise Cancelled("cancelled", record=tracker.record)

    def _background_done(self, task: "asyncio.Future[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background payment failed: %s", exc)
            return
        result = task.result()
        record = result.record if isinstance(result, HandshakeResult) else result
        logger.info("Background payment %s finished as %s", record.transaction_hash, record.status.value)
