"""
Tests for the transaction pipeline end to end, with a mocked chain.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from eth_abi import encode
from eth_utils import to_hex

from rrp_node.config import ChainOptions
from rrp_node.core.errors import ConfigurationError, RpcError
from rrp_node.core.execution.models import (
    ApiCallResponse,
    RegularRequest,
    RequestStatus,
)
from rrp_node.core.execution.pipeline import process_transactions
from rrp_node.core.execution.state import ProviderSettings, ProviderState
from rrp_node.protocol import abi


MNEMONIC = "test test test test test test test test test test test junk"
WALLET_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
SIGN = "rrp_node.core.execution.fulfillments.sign_transaction"


def _make_request(n: int = 1, status: RequestStatus = RequestStatus.AUTHORIZED) -> RegularRequest:
    return RegularRequest(
        id=f"0x{n:064x}",
        sponsor_address="0x1111111111111111111111111111111111111111",
        sponsor_index=1,
        designated_wallet=WALLET_1,
        status=status,
        block_number=100,
        log_index=n,
        template_id="0x" + "aa" * 32,
        fulfill_address="0x2222222222222222222222222222222222222222",
        fulfill_function_id="0x7c1de7e1",
        response=ApiCallResponse(status_code=0, data=b"\x01"),
    )


def _make_rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.is_closed = False
    rpc.get_transaction_count = AsyncMock(return_value=212)
    rpc.get_balance = AsyncMock(return_value=10**18)
    rpc.get_gas_price = AsyncMock(return_value=1000)
    rpc.get_base_fee = AsyncMock(return_value=1000)
    rpc.get_block = AsyncMock(return_value={"transactions": []})
    rpc.call = AsyncMock(return_value=to_hex(encode(["bool", "bytes"], [True, b""])))
    rpc.estimate_gas = AsyncMock(return_value=60_000)
    rpc.send_raw_transaction = AsyncMock(return_value="0x" + "ee" * 32)
    return rpc


def _make_state(requests, rpc, chain_options=None, mnemonic=MNEMONIC) -> ProviderState:
    settings = ProviderSettings(
        chain_id="31337",
        chain_type="evm",
        name="local",
        url="http://127.0.0.1:8545",
        contract_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        provider_id="0x" + "ab" * 32,
        chain_options=chain_options or ChainOptions(),
        mnemonic=mnemonic,
    )
    return ProviderState(settings=settings, coordinator_id="cycle-1", requests=requests, rpc=rpc)


def _assert_no_chain_calls(rpc: MagicMock):
    for name in (
        "get_transaction_count",
        "get_balance",
        "get_gas_price",
        "get_base_fee",
        "get_block",
        "call",
        "estimate_gas",
        "send_raw_transaction",
    ):
        getattr(rpc, name).assert_not_awaited()


@pytest.mark.asyncio
async def test_zero_requests_makes_no_chain_calls():
    rpc = _make_rpc()
    state = _make_state([], rpc)

    result = await process_transactions(state)

    assert result is state
    _assert_no_chain_calls(rpc)


@pytest.mark.asyncio
async def test_only_blocked_requests_makes_no_chain_calls():
    rpc = _make_rpc()
    state = _make_state([_make_request(1, RequestStatus.BLOCKED), _make_request(2, RequestStatus.FULFILLED)], rpc)

    result = await process_transactions(state)

    assert [r.nonce for r in result.requests] == [None, None]
    _assert_no_chain_calls(rpc)


@pytest.mark.asyncio
async def test_single_request_legacy_chain():
    rpc = _make_rpc()
    state = _make_state([_make_request()], rpc)

    with patch(SIGN, return_value=b"\x01") as sign:
        result = await process_transactions(state)

    sign.assert_called_once()
    tx = sign.call_args.args[1]
    assert abi.decode_call(tx.data)[0] is abi.FULFILL
    assert tx.to_dict()["nonce"] == 212
    assert tx.to_dict()["gasPrice"] == 1000
    assert tx.to_dict()["gas"] == 500_000
    assert "maxFeePerGas" not in tx.to_dict()

    request = result.requests[0]
    assert request.nonce == 212
    assert request.status == RequestStatus.SUBMITTED
    assert result.gas_target.gas_price == 1000


@pytest.mark.asyncio
async def test_configured_fulfillment_gas_limit_is_used():
    rpc = _make_rpc()
    state = _make_state([_make_request()], rpc, ChainOptions(fulfillment_gas_limit=300_000))

    with patch(SIGN, return_value=b"\x01") as sign:
        await process_transactions(state)

    assert sign.call_args.args[1].to_dict()["gas"] == 300_000


@pytest.mark.asyncio
async def test_single_request_eip1559_chain():
    rpc = _make_rpc()
    state = _make_state([_make_request()], rpc, ChainOptions(tx_type="eip1559"))

    with patch(SIGN, return_value=b"\x01") as sign:
        await process_transactions(state)

    params = sign.call_args.args[1].to_dict()
    assert params["maxFeePerGas"] == 1000 * 2 + 3_120_000_000
    assert params["maxPriorityFeePerGas"] == 3_120_000_000
    assert "gasPrice" not in params
    rpc.get_gas_price.assert_not_awaited()


@pytest.mark.asyncio
async def test_gas_price_failure_skips_submission():
    rpc = _make_rpc()
    rpc.get_gas_price = AsyncMock(side_effect=RpcError("eth_gasPrice failed"))
    state = _make_state([_make_request()], rpc)

    with patch(SIGN, return_value=b"\x01") as sign:
        result = await process_transactions(state)

    assert result.gas_target is None
    assert result.requests[0].status == RequestStatus.AUTHORIZED
    sign.assert_not_called()
    rpc.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_wallet_lookup_failure_skips_gas_and_submission():
    rpc = _make_rpc()
    rpc.get_transaction_count = AsyncMock(side_effect=RpcError("eth_getTransactionCount failed"))
    state = _make_state([_make_request()], rpc)

    result = await process_transactions(state)

    assert result.requests[0].nonce is None
    rpc.get_gas_price.assert_not_awaited()
    rpc.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_mnemonic_aborts_pipeline():
    rpc = _make_rpc()
    state = _make_state([_make_request()], rpc, mnemonic="")

    with pytest.raises(ConfigurationError):
        await process_transactions(state)

    rpc.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_input_state_is_not_modified():
    rpc = _make_rpc()
    state = _make_state([_make_request()], rpc)

    with patch(SIGN, return_value=b"\x01"):
        await process_transactions(state)

    assert state.requests[0].nonce is None
    assert state.requests[0].status == RequestStatus.AUTHORIZED
    assert state.gas_target is None
