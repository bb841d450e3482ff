"""Wallet collaborator interface and a JSON-RPC backed EVM wallet."""

from __future__ import annotations

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

import httpx
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import to_checksum_address

from .constants import UnsupportedNetworkError, get_network, get_token

logger = logging.getLogger(__name__)

ERC20_BALANCE_OF_SELECTOR = "70a08231"
ERC20_TRANSFER_SELECTOR = "a9059cbb"
NATIVE_TRANSFER_GAS = 21_000
ERC20_TRANSFER_GAS = 100_000

__all__ = ["RpcWallet", "Wallet", "WalletError"]


class WalletError(RuntimeError):
    """Raised by wallet implementations.

    ``transient`` marks failures where nothing was broadcast and a retry may
    succeed (connection refused, rate limits, node hiccups).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@runtime_checkable
class Wallet(Protocol):
    async def get_balance(self, network: str, asset: str) -> Decimal:
        ...

    async def send(self, network: str, to: str, amount: Decimal, asset: Optional[str] = None) -> str:
        ...

    async def wait_for_confirmation(
        self,
        network: str,
        tx_ref: str,
        confirmations: int,
        timeout: float,
    ) -> Optional[Any]:
        ...

    async def get_receipt(self, tx_ref: str) -> Optional[Any]:
        ...


class RpcWallet:
    """EVM wallet that signs locally with ``eth-account`` and talks JSON-RPC.

    Supports native transfers and ERC-20 ``transfer`` for the tokens listed in
    the network registry. The private key never leaves this object and is
    never logged.
    """

    def __init__(
        self,
        private_key: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        rpc_urls: Optional[Dict[str, str]] = None,
        poll_interval: float = 1.5,
        request_timeout: float = 30.0,
        sleep=asyncio.sleep,
    ) -> None:
        self._account = Account.from_key(private_key)
        self._client = http_client
        self._owns_client = http_client is None
        self._rpc_urls = {k.lower(): v for k, v in (rpc_urls or {}).items()}
        self._poll_interval = poll_interval
        self._request_timeout = request_timeout
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._tx_networks: Dict[str, str] = {}

    @property
    def address(self) -> str:
        return self._account.address

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._request_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _chain(self, network: str) -> Tuple[int, str, str, int]:
        """Return ``(chain_id, rpc_url, native_symbol, native_decimals)``."""
        key = network.strip().lower()
        override = self._rpc_urls.get(key)
        try:
            info = get_network(key)
        except UnsupportedNetworkError:
            if key.startswith("eip155:") and override:
                return int(key.split(":", 1)[1]), override, "ETH", 18
            raise WalletError(f"Network {network} is not configured for this wallet") from None
        return info["chain_id"], override or info["rpc_url"], info["native_symbol"], info["native_decimals"]

    def _token(self, network: str, asset: Optional[str]) -> Optional[Dict[str, Any]]:
        if asset is None or network.strip().lower().startswith("eip155:"):
            return None
        try:
            token = get_token(network, asset)
        except UnsupportedNetworkError as exc:
            raise WalletError(str(exc)) from exc
        return dict(token) if token is not None else None

    async def _rpc(self, network: str, method: str, params: list) -> Any:
        _, rpc_url, _, _ = self._chain(network)
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        client = self._get_client()
        try:
            response = await client.post(rpc_url, json=payload, timeout=self._request_timeout)
        except httpx.TimeoutException as exc:
            raise WalletError(f"RPC call {method} timed out") from exc
        except httpx.TransportError as exc:
            raise WalletError(f"RPC call {method} failed: {exc}", transient=True) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise WalletError(f"RPC call {method} returned HTTP {response.status_code}", transient=True)
        if not response.is_success:
            raise WalletError(f"RPC call {method} returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise WalletError(f"RPC call {method} returned invalid JSON") from exc
        if "error" in data:
            error = data["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise WalletError(f"RPC call {method} failed: {message}")
        return data.get("result")

    async def get_balance(self, network: str, asset: str) -> Decimal:
        _, _, _, native_decimals = self._chain(network)
        token = self._token(network, asset)
        if token is None:
            result = await self._rpc(network, "eth_getBalance", [self.address, "latest"])
            decimals = native_decimals
        else:
            data = "0x" + ERC20_BALANCE_OF_SELECTOR + abi_encode(["address"], [self.address]).hex()
            result = await self._rpc(network, "eth_call", [{"to": token["address"], "data": data}, "latest"])
            decimals = token["decimals"]
        raw = int(result, 16) if result not in (None, "0x") else 0
        return Decimal(raw).scaleb(-decimals)

    @staticmethod
    def _to_base_units(amount: Decimal, decimals: int) -> int:
        scaled = Decimal(amount).scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise WalletError(f"Amount {amount} has more than {decimals} decimal places")
        return int(scaled)

    async def send(self, network: str, to: str, amount: Decimal, asset: Optional[str] = None) -> str:
        chain_id, _, _, native_decimals = self._chain(network)
        token = self._token(network, asset)
        recipient = to_checksum_address(to)

        if token is None:
            tx: Dict[str, Any] = {
                "to": recipient,
                "value": self._to_base_units(amount, native_decimals),
                "data": "0x",
                "gas": NATIVE_TRANSFER_GAS,
            }
        else:
            value = self._to_base_units(amount, token["decimals"])
            data = "0x" + ERC20_TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [recipient, value]).hex()
            tx = {
                "to": to_checksum_address(token["address"]),
                "value": 0,
                "data": data,
                "gas": ERC20_TRANSFER_GAS,
            }

        gas_price_hex = await self._rpc(network, "eth_gasPrice", [])
        if gas_price_hex is None:
            raise WalletError("RPC returned null gas price", transient=True)
        nonce_hex = await self._rpc(network, "eth_getTransactionCount", [self.address, "pending"])
        if nonce_hex is None:
            raise WalletError("RPC returned null nonce", transient=True)

        tx.update(chainId=chain_id, nonce=int(nonce_hex, 16), gasPrice=int(gas_price_hex, 16))
        signed = self._account.sign_transaction(tx)
        raw_tx = signed.raw_transaction.hex()
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx

        tx_hash = await self._rpc(network, "eth_sendRawTransaction", [raw_tx])
        if tx_hash is None:
            raise WalletError("RPC returned null for eth_sendRawTransaction")
        self._tx_networks[tx_hash] = network
        logger.info("Broadcast transaction %s on %s", tx_hash, network)
        return tx_hash

    async def wait_for_confirmation(
        self,
        network: str,
        tx_ref: str,
        confirmations: int,
        timeout: float,
    ) -> Optional[Dict[str, Any]]:
        """Poll for a receipt with ``confirmations`` blocks on top; ``None`` on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            receipt = await self._rpc(network, "eth_getTransactionReceipt", [tx_ref])
            if receipt and receipt.get("blockNumber") is not None:
                if confirmations <= 1:
                    return receipt
                head = await self._rpc(network, "eth_blockNumber", [])
                if head is not None and int(head, 16) - int(receipt["blockNumber"], 16) + 1 >= confirmations:
                    return receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await self._sleep(min(self._poll_interval, remaining))

    async def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        network = self._tx_networks.get(tx_ref)
        if network is None:
            return None
        return await self._rpc(network, "eth_getTransactionReceipt", [tx_ref])
