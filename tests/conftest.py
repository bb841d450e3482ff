import asyncio
import inspect
import json
from decimal import Decimal

import pytest

from x402_autopay.models import ResourceResponse

PAYEE = "0x" + "ab" * 20
NOW = 1_700_000_000


class FakeWallet:
    def __init__(self, balance="10"):
        self.default_balance = Decimal(balance)
        self.balances = {}
        self.sent = []
        self.send_errors = []
        self.balance_error = None
        self.receipt_status = 1
        self.confirm = True
        self.confirm_delay = 0.0
        self.confirm_calls = []
        self.confirm_error = None
        self.send_delay = 0.0

    def set_balance(self, network, asset, amount):
        self.balances[(network, asset)] = Decimal(amount)

    async def get_balance(self, network, asset):
        await asyncio.sleep(0)
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get((network, asset), self.default_balance)

    async def send(self, network, to, amount, asset=None):
        await asyncio.sleep(self.send_delay)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((network, to, amount, asset))
        return "0x%064x" % len(self.sent)

    async def wait_for_confirmation(self, network, tx_ref, confirmations, timeout):
        self.confirm_calls.append((tx_ref, confirmations, timeout))
        if self.confirm_error is not None:
            raise self.confirm_error
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if not self.confirm:
            return None
        return {"transactionHash": tx_ref, "blockNumber": 100 + len(self.sent), "status": self.receipt_status}

    async def get_receipt(self, tx_ref):
        return None


class FakeHttp:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    async def send(self, request, *, timeout=None):
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


def requirement_payload(**overrides):
    payload = {
        "scheme": "exact",
        "network": "testnet",
        "asset": "STT",
        "amount": "1",
        "payTo": PAYEE,
        "expiry": NOW + 60,
    }
    payload.update(overrides)
    return payload


def paywall(*requirements, paid_body=b'{"data": "premium"}', message=None):
    """Handler answering 402 until the request carries a payment hash."""
    body = {"version": 1, "accepts": list(requirements) or [requirement_payload()]}
    if message is not None:
        body["message"] = message
    encoded = json.dumps(body).encode()

    def handler(request):
        if "x-payment-hash" in {k.lower() for k in request.headers}:
            return ResourceResponse(200, {"content-type": "application/json"}, paid_body)
        return ResourceResponse(402, {"content-type": "application/json"}, encoded)

    return handler


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def clock():
    return lambda: NOW
