"""
Tests for fulfillment submission.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from eth_abi import encode
from eth_account import Account
from eth_utils import to_hex

from rrp_node.config import ChainOptions
from rrp_node.core.errors import (
    RpcTimeoutError,
    TransactionRevertedError,
    TransactionSubmitError,
)
from rrp_node.core.execution.fulfillments import FulfillmentSubmitter, submit
from rrp_node.core.execution.models import (
    ApiCallResponse,
    DynamicGasTarget,
    LegacyGasTarget,
    RegularRequest,
    RequestError,
    RequestErrorCode,
    RequestStatus,
    WalletSnapshot,
    WithdrawalRequest,
)
from rrp_node.core.execution.state import ProviderSettings, ProviderState
from rrp_node.protocol import abi


MNEMONIC = "test test test test test test test test test test test junk"
WALLET_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
WALLET_2 = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
CLIENT = "0x2222222222222222222222222222222222222222"
DESTINATION = "0x3333333333333333333333333333333333333333"
SIGN = "rrp_node.core.execution.fulfillments.sign_transaction"

CALL_SUCCEEDS = to_hex(encode(["bool", "bytes"], [True, b""]))
CALL_FAILS = to_hex(encode(["bool", "bytes"], [False, b""]))


def _make_request(n: int, wallet: str = WALLET_1, sponsor_index: int = 1, nonce: int = 0, **overrides):
    values = dict(
        id=f"0x{n:064x}",
        sponsor_address="0x1111111111111111111111111111111111111111",
        sponsor_index=sponsor_index,
        designated_wallet=wallet,
        status=RequestStatus.AUTHORIZED,
        template_id="0x" + "aa" * 32,
        fulfill_address=CLIENT,
        fulfill_function_id="0x7c1de7e1",
        response=ApiCallResponse(status_code=0, data=b"\x01"),
        nonce=nonce,
    )
    values.update(overrides)
    return RegularRequest(**values)


def _make_withdrawal(n: int, nonce: int = 0) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=f"0x{n:064x}",
        sponsor_address="0x1111111111111111111111111111111111111111",
        sponsor_index=1,
        designated_wallet=WALLET_1,
        status=RequestStatus.AUTHORIZED,
        destination=DESTINATION,
        nonce=nonce,
    )


def _make_rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.is_closed = False
    rpc.call = AsyncMock(return_value=CALL_SUCCEEDS)
    rpc.estimate_gas = AsyncMock(return_value=50_000)
    rpc.send_raw_transaction = AsyncMock(return_value="0x" + "ee" * 32)
    return rpc


def _make_state(requests, rpc=None, gas_target=None, wallets=()) -> ProviderState:
    settings = ProviderSettings(
        chain_id="31337",
        chain_type="evm",
        name="local",
        url="http://127.0.0.1:8545",
        contract_address=CONTRACT,
        provider_id="0x" + "ab" * 32,
        chain_options=ChainOptions(),
        mnemonic=MNEMONIC,
    )
    return ProviderState(
        settings=settings,
        coordinator_id="cycle-1",
        requests=requests,
        gas_target=gas_target or LegacyGasTarget(gas_price=1000, gas_limit=500_000),
        wallets=wallets,
        rpc=rpc or _make_rpc(),
    )


def _signed_functions(sign: MagicMock):
    return [abi.decode_call(c.args[1].data)[0].name for c in sign.call_args_list]


# =============================================================================
# API call responses
# =============================================================================

class TestApiCallRequests:
    """fulfill / fail selection for regular and full requests."""

    @pytest.mark.asyncio
    async def test_resolved_request_is_fulfilled(self):
        rpc = _make_rpc()
        state = _make_state([_make_request(1, nonce=212)], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        request = result.requests[0]
        assert request.status == RequestStatus.SUBMITTED
        assert request.fulfillment.transaction_hash == "0x" + "ee" * 32
        assert _signed_functions(sign) == ["fulfill"]

        account, tx = sign.call_args.args
        assert account.address == WALLET_1
        assert tx.to_dict()["nonce"] == 212
        assert tx.to_dict()["gasPrice"] == 1000
        assert tx.to_dict()["gas"] == 500_000
        rpc.send_raw_transaction.assert_awaited_once_with(b"\x01")

    @pytest.mark.asyncio
    async def test_static_call_uses_designated_wallet(self):
        rpc = _make_rpc()
        state = _make_state([_make_request(1)], rpc)

        with patch(SIGN, return_value=b"\x01"):
            await submit(state)

        call_obj = rpc.call.await_args.args[0]
        assert call_obj["from"] == WALLET_1
        assert call_obj["to"] == CONTRACT

    @pytest.mark.asyncio
    async def test_rejected_callback_sends_fail_instead(self):
        rpc = _make_rpc()
        rpc.call = AsyncMock(return_value=CALL_FAILS)
        state = _make_state([_make_request(1)], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.SUBMITTED
        assert _signed_functions(sign) == ["fail"]

    @pytest.mark.asyncio
    async def test_api_error_sends_fail_without_static_call(self):
        rpc = _make_rpc()
        request = _make_request(
            1,
            response=None,
            error=RequestError(RequestErrorCode.API_CALL_FAILED, "upstream 500"),
        )
        state = _make_state([request], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.SUBMITTED
        assert _signed_functions(sign) == ["fail"]
        assert sign.call_args.args[1].metadata["reason"] == "upstream 500"
        rpc.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reverting_static_call_marks_errored(self):
        rpc = _make_rpc()
        rpc.call = AsyncMock(side_effect=TransactionRevertedError("Call reverted", reason="Incorrect fulfillment parameters"))
        state = _make_state([_make_request(1)], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        request = result.requests[0]
        assert request.status == RequestStatus.ERRORED
        assert request.error.code == RequestErrorCode.SIMULATION_REVERTED
        assert request.fulfillment is None
        sign.assert_not_called()
        rpc.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_broadcast_marks_errored(self):
        rpc = _make_rpc()
        rpc.send_raw_transaction = AsyncMock(side_effect=TransactionSubmitError("Broadcast rejected: nonce too low"))
        state = _make_state([_make_request(1)], rpc)

        with patch(SIGN, return_value=b"\x01"):
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.ERRORED
        assert result.requests[0].error.code == RequestErrorCode.SUBMISSION_FAILED

    @pytest.mark.asyncio
    async def test_broadcast_timeout_marks_errored(self):
        rpc = _make_rpc()
        rpc.send_raw_transaction = AsyncMock(side_effect=RpcTimeoutError("eth_sendRawTransaction timed out"))
        state = _make_state([_make_request(1)], rpc)

        with patch(SIGN, return_value=b"\x01"):
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.ERRORED

    @pytest.mark.asyncio
    async def test_wallet_not_derived_from_sponsor_index_is_rejected(self):
        rpc = _make_rpc()
        state = _make_state([_make_request(1, wallet=WALLET_2, sponsor_index=1)], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.ERRORED
        sign.assert_not_called()
        rpc.call.assert_not_awaited()


# =============================================================================
# Ordering and isolation
# =============================================================================

class TestOrdering:
    """Per-wallet order and failure isolation."""

    @pytest.mark.asyncio
    async def test_wallet_requests_are_sent_in_nonce_order(self):
        rpc = _make_rpc()
        requests = [_make_request(1, nonce=7), _make_request(2, nonce=5), _make_request(3, nonce=6)]
        state = _make_state(requests, rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            await submit(state)

        assert [c.args[1].nonce for c in sign.call_args_list] == [5, 6, 7]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_requests(self):
        rpc = _make_rpc()
        rpc.send_raw_transaction = AsyncMock(
            side_effect=[TransactionSubmitError("rejected"), "0x" + "02" * 32]
        )
        state = _make_state([_make_request(1, nonce=5), _make_request(2, nonce=6)], rpc)

        with patch(SIGN, return_value=b"\x01"):
            result = await submit(state)

        assert [r.status for r in result.requests] == [RequestStatus.ERRORED, RequestStatus.SUBMITTED]
        assert result.requests[1].fulfillment.transaction_hash == "0x" + "02" * 32

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_other_wallets(self):
        async def call(call_obj):
            if call_obj["from"] == WALLET_1:
                raise TransactionRevertedError("Call reverted")
            return CALL_SUCCEEDS

        rpc = _make_rpc()
        rpc.call = AsyncMock(side_effect=call)
        requests = [
            _make_request(1, wallet=WALLET_1, sponsor_index=1),
            _make_request(2, wallet=WALLET_2, sponsor_index=2),
        ]
        state = _make_state(requests, rpc)

        with patch(SIGN, return_value=b"\x01"):
            result = await submit(state)

        assert [r.status for r in result.requests] == [RequestStatus.ERRORED, RequestStatus.SUBMITTED]

    @pytest.mark.asyncio
    async def test_requests_without_nonce_are_untouched(self):
        rpc = _make_rpc()
        blocked = _make_request(1, status=RequestStatus.BLOCKED, nonce=None)
        unassigned = _make_request(2, nonce=None)
        state = _make_state([blocked, unassigned], rpc)

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        assert result.requests == (blocked, unassigned)
        sign.assert_not_called()

    @pytest.mark.asyncio
    async def test_input_state_is_unchanged(self):
        state = _make_state([_make_request(1)])

        with patch(SIGN, return_value=b"\x01"):
            await submit(state)

        assert state.requests[0].status == RequestStatus.AUTHORIZED

    def test_gas_target_is_required(self):
        state = _make_state([_make_request(1)])
        state = ProviderState(settings=state.settings, coordinator_id="cycle-1", requests=state.requests)

        with pytest.raises(ValueError):
            FulfillmentSubmitter(state)


# =============================================================================
# Withdrawals
# =============================================================================

class TestWithdrawals:
    """fulfillWithdrawal value and gas."""

    @pytest.mark.asyncio
    async def test_withdraws_balance_minus_fee(self):
        rpc = _make_rpc()
        state = _make_state(
            [_make_withdrawal(1, nonce=9)],
            rpc,
            wallets=(WalletSnapshot(WALLET_1, 9, 10**18),),
        )

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        tx = sign.call_args.args[1]
        assert result.requests[0].status == RequestStatus.SUBMITTED
        assert abi.decode_call(tx.data)[0] is abi.FULFILL_WITHDRAWAL
        assert tx.to_dict()["gas"] == 50_000
        assert tx.to_dict()["gasPrice"] == 1000
        assert tx.value == 10**18 - 50_000 * 1000
        rpc.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fee_uses_max_fee_per_gas_on_dynamic_chains(self):
        rpc = _make_rpc()
        gas = DynamicGasTarget(max_fee_per_gas=3005, max_priority_fee_per_gas=5, gas_limit=500_000)
        state = _make_state(
            [_make_withdrawal(1)],
            rpc,
            gas_target=gas,
            wallets=(WalletSnapshot(WALLET_1, 0, 10**18),),
        )

        with patch(SIGN, return_value=b"\x01") as sign:
            await submit(state)

        assert sign.call_args.args[1].value == 10**18 - 50_000 * 3005

    @pytest.mark.asyncio
    async def test_balance_below_fee_marks_errored(self):
        rpc = _make_rpc()
        state = _make_state(
            [_make_withdrawal(1)],
            rpc,
            wallets=(WalletSnapshot(WALLET_1, 0, 1000),),
        )

        with patch(SIGN, return_value=b"\x01") as sign:
            result = await submit(state)

        assert result.requests[0].status == RequestStatus.ERRORED
        assert result.requests[0].error.code == RequestErrorCode.INSUFFICIENT_FUNDS
        sign.assert_not_called()


# =============================================================================
# Signing
# =============================================================================

@pytest.mark.asyncio
async def test_broadcast_transaction_is_signed_by_designated_wallet():
    rpc = _make_rpc()
    state = _make_state([_make_request(1, nonce=212)], rpc)

    await submit(state)

    raw = rpc.send_raw_transaction.await_args.args[0]
    assert Account.recover_transaction(raw) == WALLET_1
