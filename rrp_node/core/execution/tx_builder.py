"""
Transaction builder for the calls a designated wallet makes.
"""

from typing import Optional

from eth_utils import to_checksum_address, to_hex

from rrp_node.protocol.abi import (
    FAIL,
    FULFILL,
    FULFILL_WITHDRAWAL,
    HexLike,
    to_bytes_value,
)

from .models import (
    ApiCallRequest,
    GasTarget,
    PreparedTransaction,
    WithdrawalRequest,
)


class TransactionBuilder:
    """
    Builds transactions against the request/response contract.

    Handles:
    - fulfill with an API response
    - fail for requests that could not be resolved
    - fulfillWithdrawal, which carries the withdrawn balance as value
    """

    @staticmethod
    def build_fulfill(
        chain_id: int,
        contract_address: str,
        provider_id: HexLike,
        request: ApiCallRequest,
        nonce: int,
        gas_target: GasTarget,
    ) -> PreparedTransaction:
        """
        Build a fulfill transaction.

        Args:
            chain_id: The chain ID
            contract_address: Request/response contract
            provider_id: bytes32 provider identifier
            request: Regular or full request with a resolved response
            nonce: Nonce assigned to the request
            gas_target: Fee fields and gas limit to use

        Returns:
            PreparedTransaction ready to be signed
        """
        if request.response is None:
            raise ValueError(f"Request {request.id} has no response to fulfill with")

        calldata = FULFILL.encode_call(
            [
                to_bytes_value(request.id),
                to_bytes_value(provider_id),
                request.response.status_code,
                request.response.data,
                to_checksum_address(request.fulfill_address),
                to_bytes_value(request.fulfill_function_id),
            ]
        )

        return PreparedTransaction(
            chain_id=chain_id,
            from_address=to_checksum_address(request.designated_wallet),
            to_address=to_checksum_address(contract_address),
            data=to_hex(calldata),
            nonce=nonce,
            gas_target=gas_target,
            request_id=request.id,
            metadata={"function": FULFILL.name},
        )

    @staticmethod
    def build_fail(
        chain_id: int,
        contract_address: str,
        provider_id: HexLike,
        request: ApiCallRequest,
        nonce: int,
        gas_target: GasTarget,
        reason: Optional[str] = None,
    ) -> PreparedTransaction:
        """Build a fail transaction. The reason is kept off-chain in metadata."""
        calldata = FAIL.encode_call(
            [
                to_bytes_value(request.id),
                to_bytes_value(provider_id),
                to_checksum_address(request.fulfill_address),
                to_bytes_value(request.fulfill_function_id),
            ]
        )

        return PreparedTransaction(
            chain_id=chain_id,
            from_address=to_checksum_address(request.designated_wallet),
            to_address=to_checksum_address(contract_address),
            data=to_hex(calldata),
            nonce=nonce,
            gas_target=gas_target,
            request_id=request.id,
            metadata={"function": FAIL.name, "reason": reason},
        )

    @staticmethod
    def build_fulfill_withdrawal(
        chain_id: int,
        contract_address: str,
        provider_id: HexLike,
        request: WithdrawalRequest,
        nonce: int,
        gas_target: GasTarget,
        value: int = 0,
    ) -> PreparedTransaction:
        """
        Build a fulfillWithdrawal transaction.

        The call is payable: value is what reaches the destination. Build it
        once with value 0 to estimate gas, then again with the final amount.
        """
        if value < 0:
            raise ValueError(f"Withdrawal value must be non-negative: {value}")

        calldata = FULFILL_WITHDRAWAL.encode_call(
            [
                to_bytes_value(request.id),
                to_bytes_value(provider_id),
                request.sponsor_index,
                to_checksum_address(request.destination),
            ]
        )

        return PreparedTransaction(
            chain_id=chain_id,
            from_address=to_checksum_address(request.designated_wallet),
            to_address=to_checksum_address(contract_address),
            data=to_hex(calldata),
            nonce=nonce,
            gas_target=gas_target,
            value=value,
            request_id=request.id,
            metadata={"function": FULFILL_WITHDRAWAL.name},
        )
