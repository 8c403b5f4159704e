"""
JSON-RPC connection to an EVM chain.

The client holds an httpx.AsyncClient, which is why provider state keeps it
out of its logical fields and rebuilds it on refresh.
"""

import itertools
from typing import Any, Dict, List, Optional

import httpx
from eth_utils import to_hex

from rrp_node.core.errors import (
    RpcError,
    RpcTimeoutError,
    TransactionRevertedError,
    TransactionSubmitError,
)
from rrp_node.protocol.abi import decode_revert_reason


def _to_int(value: Any, method: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16)
        except ValueError:
            pass
    raise RpcError(f"{method} returned a malformed quantity: {value!r}", method=method)


class JsonRpcClient:
    """
    Minimal async JSON-RPC client for the calls the coordinator makes.

    Timeouts are enforced here; callers see RpcTimeoutError and skip the
    affected scope for the cycle.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def request(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call and return its result field."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as exc:
            raise RpcTimeoutError(f"{method} timed out", method=method) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RpcError(f"{method} failed: {exc}", method=method) from exc

        if not isinstance(result, dict):
            raise RpcError(f"{method} returned a malformed response", method=method)

        if "error" in result:
            error = result["error"]
            if not isinstance(error, dict):
                raise RpcError(f"RPC error: {error!r}", method=method)
            raise RpcError(
                f"RPC error: {error.get('message', error)}",
                method=method,
                code=error.get("code"),
                data=error.get("data"),
            )

        return result.get("result")

    # ---------------------------
    # Reads
    # ---------------------------
    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        count = await self.request("eth_getTransactionCount", [address, block])
        return _to_int(count, "eth_getTransactionCount")

    async def get_balance(self, address: str, block: str = "latest") -> int:
        balance = await self.request("eth_getBalance", [address, block])
        return _to_int(balance, "eth_getBalance")

    async def get_gas_price(self) -> int:
        return _to_int(await self.request("eth_gasPrice", []), "eth_gasPrice")

    async def get_block(self, block: str = "latest", full_transactions: bool = False) -> Dict[str, Any]:
        result = await self.request("eth_getBlockByNumber", [block, full_transactions])
        if not isinstance(result, dict) or not result:
            raise RpcError(f"Block {block} not found", method="eth_getBlockByNumber")
        return result

    async def get_base_fee(self) -> Optional[int]:
        """Base fee of the latest block, None on chains without one."""
        block = await self.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        return _to_int(base_fee, "eth_getBlockByNumber") if base_fee is not None else None

    async def call(self, call_obj: Dict[str, Any], block: str = "latest") -> str:
        """eth_call; a revert surfaces as TransactionRevertedError."""
        try:
            return await self.request("eth_call", [call_obj, block])
        except RpcTimeoutError:
            raise
        except RpcError as exc:
            if not _is_revert(exc):
                raise
            reason = decode_revert_reason(exc.data) if isinstance(exc.data, str) else None
            raise TransactionRevertedError(
                f"Call reverted: {reason or exc.message}", reason=reason
            ) from exc

    async def estimate_gas(self, call_obj: Dict[str, Any]) -> int:
        try:
            return _to_int(await self.request("eth_estimateGas", [call_obj]), "eth_estimateGas")
        except RpcTimeoutError:
            raise
        except RpcError as exc:
            if not _is_revert(exc):
                raise
            reason = decode_revert_reason(exc.data) if isinstance(exc.data, str) else None
            raise TransactionRevertedError(
                f"Gas estimation reverted: {reason or exc.message}", reason=reason
            ) from exc

    # ---------------------------
    # Writes
    # ---------------------------
    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction and return its hash."""
        try:
            return await self.request("eth_sendRawTransaction", [to_hex(raw_transaction)])
        except RpcTimeoutError:
            raise
        except RpcError as exc:
            raise TransactionSubmitError(f"Broadcast rejected: {exc.message}") from exc


def _is_revert(error: RpcError) -> bool:
    # Geth and most clients use code 3 for reverts with data
    return error.code == 3 or "revert" in error.message.lower()
