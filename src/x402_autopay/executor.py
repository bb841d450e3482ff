"""Execute one payment: checks, submission, confirmation, ledger update."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional, Tuple

import httpx

from .constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_CONFIRMATIONS
from .errors import Cancelled, InsufficientBalance, InvalidAmount, PaymentFailed
from .limits import SpendingLimitTracker
from .models import PaymentRecord, PaymentRequirement, Receipt
from .observer import FetchObserver, notify
from .parser import parse_amount
from .wallet import Wallet, WalletError

logger = logging.getLogger(__name__)

__all__ = ["PaymentExecutor", "is_transient_submission_error"]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _bounded(
    step: Optional[float],
    remaining: Optional[Callable[[], Optional[float]]],
) -> Tuple[Optional[float], bool]:
    """Timeout for one wallet call and whether the overall deadline set it."""
    left = remaining() if remaining is not None else None
    if left is None:
        return step, False
    if left <= 0:
        raise Cancelled("deadline")
    if step is None or left <= step:
        return left, True
    return step, False


def is_transient_submission_error(exc: BaseException) -> bool:
    """Whether a failed submission certainly broadcast nothing.

    Timeouts are never transient here: the transaction may have reached the
    node before the call gave up.
    """
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return False
    if isinstance(exc, WalletError):
        return exc.transient
    return isinstance(exc, (httpx.TransportError, ConnectionError))


class PaymentExecutor:
    """Pays a single :class:`PaymentRequirement` from a wallet.

    Spending is reserved against the tracker before submission and recorded
    only once the transfer is confirmed. Every failure after the reservation
    releases it.
    """

    def __init__(
        self,
        tracker: SpendingLimitTracker,
        *,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        call_timeout: Optional[float] = 30.0,
        clock=time.time,
    ) -> None:
        self.tracker = tracker
        self.confirmation_timeout = confirmation_timeout
        self.confirmations = confirmations
        self.call_timeout = call_timeout
        self._clock = clock

    async def pay(
        self,
        requirement: PaymentRequirement,
        wallet: Wallet,
        *,
        request_id: Optional[str] = None,
        confirmation_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        remaining: Optional[Callable[[], Optional[float]]] = None,
        observer: Optional[FetchObserver] = None,
    ) -> PaymentRecord:
        """Pay ``requirement`` from ``wallet`` and return the confirmed record.

        ``remaining`` reports the seconds left before an overall deadline. Each
        wallet call is bounded by it at the moment the call starts, and a call
        cut short by the deadline raises :class:`Cancelled` instead of
        :class:`PaymentFailed`.
        """
        network, asset = requirement.network, requirement.asset
        amount = parse_amount(requirement.amount)
        if amount <= 0:
            raise InvalidAmount(requirement.amount, "amount must be greater than zero")

        call_step = self.call_timeout if call_timeout is None else call_timeout
        confirm_step = self.confirmation_timeout if confirmation_timeout is None else confirmation_timeout

        timeout, bound = _bounded(call_step, remaining)
        try:
            balance = await asyncio.wait_for(wallet.get_balance(network, asset), timeout)
        except (WalletError, httpx.HTTPError, OSError, asyncio.TimeoutError) as exc:
            failure = PaymentFailed(f"Balance query failed: {_describe(exc)}", transient=True)
            if bound and isinstance(exc, asyncio.TimeoutError):
                raise Cancelled("deadline") from failure
            raise failure from exc
        if balance < amount:
            raise InsufficientBalance(requested=amount, balance=balance, network=network, asset=asset)

        reservation = self.tracker.reserve(network, asset, amount, now=self._clock())
        try:
            timeout, bound = _bounded(call_step, remaining)
            try:
                tx_hash = await asyncio.wait_for(
                    wallet.send(network, requirement.pay_to, amount, asset),
                    timeout,
                )
            except Exception as exc:
                failure = PaymentFailed(
                    f"Payment submission failed: {_describe(exc)}",
                    transient=is_transient_submission_error(exc),
                )
                if bound and isinstance(exc, asyncio.TimeoutError):
                    raise Cancelled("deadline") from failure
                raise failure from exc

            record = PaymentRecord(
                request_id=request_id or uuid.uuid4().hex,
                transaction_hash=tx_hash,
                amount=requirement.amount,
                asset=asset,
                network=network,
                pay_to=requirement.pay_to,
                timestamp=self._clock(),
            )
            logger.info("Payment submitted: %s %s on %s (tx %s)", requirement.amount, asset, network, tx_hash)
            notify(observer, "payment_submitted", record)

            receipt = await self._confirm(wallet, record, confirm_step, remaining)
        except BaseException:
            self.tracker.release(reservation)
            raise

        self.tracker.commit(reservation, now=self._clock())
        record.confirm(receipt.block_number)
        logger.info("Payment confirmed: tx %s in block %s", tx_hash, receipt.block_number)
        notify(observer, "payment_confirmed", record)
        return record

    async def _confirm(
        self,
        wallet: Wallet,
        record: PaymentRecord,
        step: float,
        remaining: Optional[Callable[[], Optional[float]]],
    ) -> Receipt:
        """Wait for ``record`` to confirm; every failure leaves it expired or failed."""
        tx_hash = record.transaction_hash
        try:
            timeout, bound = _bounded(step, remaining)
        except Cancelled as exc:
            record.expire()
            exc.attach_record(record)
            raise

        try:
            raw_receipt = await asyncio.wait_for(
                wallet.wait_for_confirmation(record.network, tx_hash, self.confirmations, timeout),
                timeout,
            )
        except asyncio.TimeoutError:
            raw_receipt = None
        except Exception as exc:
            record.expire()
            raise PaymentFailed(
                f"Could not confirm transaction {tx_hash}: {_describe(exc)}",
                transaction_hash=tx_hash,
                record=record,
            ) from exc

        if raw_receipt is None:
            record.expire()
            logger.warning("No confirmation for %s within %.1fs", tx_hash, timeout)
            failure = PaymentFailed(
                f"Transaction {tx_hash} not confirmed within {timeout:g}s; outcome unknown",
                confirmation_timeout=True,
                transaction_hash=tx_hash,
                record=record,
            )
            if bound:
                raise Cancelled("deadline", record=record) from failure
            raise failure

        try:
            receipt = Receipt.from_any(raw_receipt)
        except (TypeError, ValueError) as exc:
            record.expire()
            raise PaymentFailed(
                f"Unreadable receipt for transaction {tx_hash}: {_describe(exc)}",
                transaction_hash=tx_hash,
                record=record,
            ) from exc
        if not receipt.succeeded:
            record.fail(f"transaction reverted (status {receipt.status})")
            raise PaymentFailed(
                f"Transaction {tx_hash} reverted",
                transaction_hash=tx_hash,
                record=record,
            )
        return receipt
