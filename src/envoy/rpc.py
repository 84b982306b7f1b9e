"""
Async JSON-RPC clients for the chain node.

JsonRpcClient handles transport and error classification; ChainClient
adds the typed reads the delegation engine needs. Every call goes
through the configured RetryPolicy.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional, Sequence

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from .errors import NetworkError, OnChainRevertError, RpcError, TransientNetworkError
from .retry import Poller, RetryPolicy, with_retry
from .units import from_quantity

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 502, 503, 504}


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def encode_call(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> str:
    return "0x" + (selector(signature) + abi_encode(list(arg_types), list(args))).hex()


class JsonRpcClient:
    """Thin JSON-RPC 2.0 wrapper around httpx.AsyncClient."""

    def __init__(
        self,
        url: str,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.retry = retry or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """Send one request with retries; return the ``result`` member."""
        return await with_retry(
            lambda: self._request_once(method, params or []),
            policy=self.retry,
            label=method,
        )

    async def _request_once(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method}: request timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method}: network error: {e}") from e

        if response.status_code in _TRANSIENT_STATUS:
            retry_after = float(response.headers.get("retry-after", "0") or 0)
            raise TransientNetworkError(
                f"{method}: HTTP {response.status_code}", retry_after=retry_after
            )
        if response.status_code >= 400:
            raise NetworkError(f"{method}: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError(f"{method}: invalid JSON response") from e

        error = body.get("error")
        if error:
            raise RpcError(int(error.get("code", -1)), str(error.get("message", "")), method=method)
        return body.get("result")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


class ChainClient(JsonRpcClient):
    """Typed chain reads and transaction submission."""

    async def chain_id(self) -> int:
        return from_quantity(await self.request("eth_chainId"))

    async def get_code(self, address: str) -> str:
        return await self.request("eth_getCode", [address, "latest"]) or "0x"

    async def is_deployed(self, address: str) -> bool:
        code = await self.get_code(address)
        return code not in ("0x", "0x0", "")

    async def get_balance(self, address: str) -> int:
        return from_quantity(await self.request("eth_getBalance", [address, "latest"]))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return from_quantity(await self.request("eth_getTransactionCount", [address, block]))

    async def gas_price(self) -> int:
        return from_quantity(await self.request("eth_gasPrice"))

    async def max_priority_fee(self) -> int:
        return from_quantity(await self.request("eth_maxPriorityFeePerGas"))

    async def estimate_gas(self, tx: dict) -> int:
        return from_quantity(await self.request("eth_estimateGas", [tx]))

    async def call(self, to: str, data: str) -> str:
        return await self.request("eth_call", [{"to": to, "data": data}, "latest"])

    async def call_uint(self, to: str, signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> int:
        raw = await self.call(to, encode_call(signature, arg_types, args))
        (value,) = abi_decode(["uint256"], bytes.fromhex(raw[2:]))
        return value

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.request("eth_sendRawTransaction", [raw_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])

    async def wait_for_receipt(self, tx_hash: str, poller: Optional[Poller] = None) -> dict:
        """Poll until the receipt exists; raise OnChainRevertError on status 0."""
        poller = poller or Poller()
        receipt = await poller.poll(lambda: self.get_transaction_receipt(tx_hash), label=f"receipt {tx_hash}")
        if from_quantity(receipt.get("status")) != 1:
            raise OnChainRevertError(tx_hash)
        return receipt

    # ERC-20 reads

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return await self.call_uint(
            token,
            "allowance(address,address)",
            ["address", "address"],
            [to_checksum_address(owner), to_checksum_address(spender)],
        )

    async def balance_of(self, token: str, owner: str) -> int:
        return await self.call_uint(token, "balanceOf(address)", ["address"], [to_checksum_address(owner)])

    # Caveat enforcer reads

    async def current_nonce(self, nonce_enforcer: str, delegation_manager: str, delegator: str) -> int:
        return await self.call_uint(
            nonce_enforcer,
            "currentNonce(address,address)",
            ["address", "address"],
            [to_checksum_address(delegation_manager), to_checksum_address(delegator)],
        )

    async def call_count(self, limited_calls_enforcer: str, delegation_manager: str, delegation_hash: str) -> int:
        return await self.call_uint(
            limited_calls_enforcer,
            "callCounts(address,bytes32)",
            ["address", "bytes32"],
            [to_checksum_address(delegation_manager), bytes.fromhex(delegation_hash[2:])],
        )

    async def fee_fields(self) -> dict:
        """EIP-1559 fee fields derived from the node's gas price."""
        price = await self.gas_price()
        try:
            tip = await self.max_priority_fee()
        except RpcError:
            tip = 0
        return {"maxFeePerGas": price * 2, "maxPriorityFeePerGas": min(tip, price * 2)}

