"""
In-memory model of the request/response contract.

Reproduces the contract's bookkeeping (sponsors, client endorsements,
templates, outstanding requests) and its fulfill/fail/fulfillWithdrawal
checks without any network access. Used to check that calldata built by
the off-chain submitter is accepted by the protocol, and that mismatched
calls are rejected the way the contract rejects them.

Usage:
    rrp = RequestResponseContract()
    sponsor_index = rrp.create_sponsor(admin)
    client = rrp.deploy_client()
    rrp.set_client_endorsement(admin, sponsor_index, client.address, True)
    request_id = client.make_full_request(...)
    result = rrp.execute(sender=designated_wallet, data=calldata)
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from eth_utils import to_checksum_address

from . import abi


class ContractRevert(Exception):
    """A call the contract would revert, with its revert string."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class Event:
    name: str
    address: str
    args: Dict[str, Any]


@dataclass
class CallResult:
    return_value: Tuple[Any, ...] = ()
    events: List[Event] = field(default_factory=list)


@dataclass(frozen=True)
class Template:
    provider_id: bytes
    endpoint_id: bytes
    sponsor_index: int
    designated_wallet: str
    fulfill_address: str
    fulfill_function_id: bytes
    parameters: bytes


@dataclass(frozen=True)
class _WithdrawalRecord:
    provider_id: bytes
    sponsor_index: int
    designated_wallet: str
    destination: str


def _random_address() -> str:
    return to_checksum_address("0x" + secrets.token_hex(20))


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class MockClient:
    """Client contract that records fulfillments delivered to it."""

    def __init__(self, rrp: "RequestResponseContract", address: Optional[str] = None):
        self.rrp = rrp
        self.address = to_checksum_address(address) if address else _random_address()
        self.fulfilled: Dict[bytes, Tuple[int, bytes]] = {}
        self.fulfill_function_id = abi.function_selector(abi.CLIENT_FULFILL_SIGNATURE)

    def make_request(
        self,
        template_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        fulfill_address: str,
        fulfill_function_id: bytes,
        parameters: bytes,
    ) -> bytes:
        return self.rrp.make_request(
            self.address,
            template_id,
            sponsor_index,
            designated_wallet,
            fulfill_address,
            fulfill_function_id,
            parameters,
        )

    def make_full_request(
        self,
        provider_id: bytes,
        endpoint_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        fulfill_address: str,
        fulfill_function_id: bytes,
        parameters: bytes,
    ) -> bytes:
        return self.rrp.make_full_request(
            self.address,
            provider_id,
            endpoint_id,
            sponsor_index,
            designated_wallet,
            fulfill_address,
            fulfill_function_id,
            parameters,
        )

    def callback(
        self, caller: str, function_id: bytes, request_id: bytes, status_code: int, data: bytes
    ) -> Event:
        if not _same_address(caller, self.rrp.address):
            raise ContractRevert("Caller not the request/response contract")
        if function_id != self.fulfill_function_id:
            raise ContractRevert("Unknown function")
        self.fulfilled[request_id] = (status_code, data)
        return Event(
            name=abi.REQUEST_FULFILLED.name,
            address=self.address,
            args={"requestId": request_id, "statusCode": status_code, "data": data},
        )


class RequestResponseContract:
    """State and rules of the request/response contract."""

    def __init__(self, address: Optional[str] = None):
        self.address = to_checksum_address(address) if address else _random_address()
        self.events: List[Event] = []
        self.balances: Dict[str, int] = {}
        self._sponsor_admins: Dict[int, str] = {}
        self._endorsements: Set[Tuple[int, str]] = set()
        self._templates: Dict[bytes, Template] = {}
        self._fulfillment_parameters: Dict[bytes, bytes] = {}
        self._withdrawals: Dict[bytes, _WithdrawalRecord] = {}
        self._clients: Dict[str, MockClient] = {}
        self._request_count = 1
        self._withdrawal_count = 1

    # ---------------------------
    # Setup
    # ---------------------------
    def deploy_client(self, address: Optional[str] = None) -> MockClient:
        client = MockClient(self, address)
        self._clients[client.address.lower()] = client
        return client

    def create_sponsor(self, admin: str) -> int:
        # Index 0 is the provider's own wallet, sponsors start at 1
        sponsor_index = len(self._sponsor_admins) + 1
        self._sponsor_admins[sponsor_index] = to_checksum_address(admin)
        return sponsor_index

    def set_client_endorsement(self, sender: str, sponsor_index: int, client_address: str, status: bool) -> None:
        admin = self._sponsor_admins.get(sponsor_index)
        if admin is None or not _same_address(admin, sender):
            raise ContractRevert("Caller not requester admin")
        key = (sponsor_index, client_address.lower())
        if status:
            self._endorsements.add(key)
        else:
            self._endorsements.discard(key)

    def is_endorsed(self, sponsor_index: int, client_address: str) -> bool:
        return (sponsor_index, client_address.lower()) in self._endorsements

    def create_template(
        self,
        provider_id: bytes,
        endpoint_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        fulfill_address: str,
        fulfill_function_id: bytes,
        parameters: bytes,
    ) -> bytes:
        template_id = abi.derive_template_id(provider_id, endpoint_id, parameters)
        self._templates[template_id] = Template(
            provider_id=provider_id,
            endpoint_id=endpoint_id,
            sponsor_index=sponsor_index,
            designated_wallet=designated_wallet,
            fulfill_address=fulfill_address,
            fulfill_function_id=fulfill_function_id,
            parameters=parameters,
        )
        return template_id

    # ---------------------------
    # Requests
    # ---------------------------
    def make_request(
        self,
        client_address: str,
        template_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        fulfill_address: str,
        fulfill_function_id: bytes,
        parameters: bytes,
    ) -> bytes:
        if not self.is_endorsed(sponsor_index, client_address):
            raise ContractRevert(abi.CLIENT_NOT_ENDORSED)
        template = self._templates.get(template_id)
        if template is None:
            raise ContractRevert("Template does not exist")

        request_id = abi.derive_request_id(self._request_count, client_address, template_id, parameters)
        self._fulfillment_parameters[request_id] = abi.derive_fulfillment_parameters_hash(
            template.provider_id, designated_wallet, fulfill_address, fulfill_function_id
        )
        self._emit(
            abi.CLIENT_REQUEST_CREATED.name,
            {
                "providerId": template.provider_id,
                "requestId": request_id,
                "noRequests": self._request_count,
                "clientAddress": to_checksum_address(client_address),
                "templateId": template_id,
                "sponsorIndex": sponsor_index,
                "designatedWallet": to_checksum_address(designated_wallet),
                "fulfillAddress": to_checksum_address(fulfill_address),
                "fulfillFunctionId": fulfill_function_id,
                "parameters": parameters,
            },
        )
        self._request_count += 1
        return request_id

    def make_full_request(
        self,
        client_address: str,
        provider_id: bytes,
        endpoint_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        fulfill_address: str,
        fulfill_function_id: bytes,
        parameters: bytes,
    ) -> bytes:
        if not self.is_endorsed(sponsor_index, client_address):
            raise ContractRevert(abi.CLIENT_NOT_ENDORSED)

        request_id = abi.derive_full_request_id(
            self._request_count, client_address, provider_id, endpoint_id, parameters
        )
        self._fulfillment_parameters[request_id] = abi.derive_fulfillment_parameters_hash(
            provider_id, designated_wallet, fulfill_address, fulfill_function_id
        )
        self._emit(
            abi.CLIENT_FULL_REQUEST_CREATED.name,
            {
                "providerId": provider_id,
                "requestId": request_id,
                "noRequests": self._request_count,
                "clientAddress": to_checksum_address(client_address),
                "endpointId": endpoint_id,
                "sponsorIndex": sponsor_index,
                "designatedWallet": to_checksum_address(designated_wallet),
                "fulfillAddress": to_checksum_address(fulfill_address),
                "fulfillFunctionId": fulfill_function_id,
                "parameters": parameters,
            },
        )
        self._request_count += 1
        return request_id

    def request_withdrawal(
        self,
        sender: str,
        provider_id: bytes,
        sponsor_index: int,
        designated_wallet: str,
        destination: str,
    ) -> bytes:
        admin = self._sponsor_admins.get(sponsor_index)
        if admin is None or not _same_address(admin, sender):
            raise ContractRevert("Caller not requester admin")
        withdrawal_request_id = abi.derive_withdrawal_request_id(
            self._withdrawal_count, provider_id, sponsor_index, designated_wallet, destination
        )
        self._withdrawals[withdrawal_request_id] = _WithdrawalRecord(
            provider_id=provider_id,
            sponsor_index=sponsor_index,
            designated_wallet=to_checksum_address(designated_wallet),
            destination=to_checksum_address(destination),
        )
        self._withdrawal_count += 1
        return withdrawal_request_id

    def is_outstanding(self, request_id: bytes) -> bool:
        return request_id in self._fulfillment_parameters

    # ---------------------------
    # Designated wallet calls
    # ---------------------------
    def fulfill(
        self,
        sender: str,
        request_id: bytes,
        provider_id: bytes,
        status_code: int,
        data: bytes,
        fulfill_address: str,
        fulfill_function_id: bytes,
    ) -> CallResult:
        self._check_fulfillment_parameters(
            sender, request_id, provider_id, fulfill_address, fulfill_function_id
        )
        del self._fulfillment_parameters[request_id]

        events: List[Event] = []
        # A low-level call to an address without code succeeds with no effect
        client = self._clients.get(fulfill_address.lower())
        call_success = True
        if client is not None:
            try:
                events.append(
                    client.callback(self.address, fulfill_function_id, request_id, status_code, data)
                )
            except ContractRevert:
                call_success = False

        events.append(
            self._emit(
                abi.CLIENT_REQUEST_FULFILLED.name,
                {
                    "providerId": provider_id,
                    "requestId": request_id,
                    "statusCode": status_code,
                    "data": data,
                },
            )
        )
        return CallResult(return_value=(call_success, b""), events=events)

    def fail(
        self,
        sender: str,
        request_id: bytes,
        provider_id: bytes,
        fulfill_address: str,
        fulfill_function_id: bytes,
    ) -> CallResult:
        self._check_fulfillment_parameters(
            sender, request_id, provider_id, fulfill_address, fulfill_function_id
        )
        del self._fulfillment_parameters[request_id]
        event = self._emit(
            abi.CLIENT_REQUEST_FAILED.name,
            {"providerId": provider_id, "requestId": request_id},
        )
        return CallResult(events=[event])

    def fulfill_withdrawal(
        self,
        sender: str,
        value: int,
        withdrawal_request_id: bytes,
        provider_id: bytes,
        sponsor_index: int,
        destination: str,
    ) -> CallResult:
        record = self._withdrawals.get(withdrawal_request_id)
        if (
            record is None
            or record.provider_id != provider_id
            or record.sponsor_index != sponsor_index
            or not _same_address(record.designated_wallet, sender)
            or not _same_address(record.destination, destination)
        ):
            raise ContractRevert("No such withdrawal request")
        del self._withdrawals[withdrawal_request_id]
        self.balances[record.destination.lower()] = self.balances.get(record.destination.lower(), 0) + value
        event = self._emit(
            abi.WITHDRAWAL_FULFILLED.name,
            {
                "providerId": provider_id,
                "sponsorIndex": sponsor_index,
                "withdrawalRequestId": withdrawal_request_id,
                "designatedWallet": record.designated_wallet,
                "destination": record.destination,
                "amount": value,
            },
        )
        return CallResult(events=[event])

    def execute(self, sender: str, data: abi.HexLike, value: int = 0) -> CallResult:
        """Dispatch raw calldata the way the deployed contract would."""
        fn, args = abi.decode_call(data)
        if fn is abi.FULFILL:
            return self.fulfill(sender, *args)
        if fn is abi.FAIL:
            return self.fail(sender, *args)
        if fn is abi.FULFILL_WITHDRAWAL:
            return self.fulfill_withdrawal(sender, value, *args)
        if fn is abi.MAKE_REQUEST:
            return CallResult(return_value=(self.make_request(sender, *args),))
        if fn is abi.MAKE_FULL_REQUEST:
            return CallResult(return_value=(self.make_full_request(sender, *args),))
        raise ContractRevert(f"Unsupported function {fn.name}")

    # ---------------------------
    # Internals
    # ---------------------------
    def _check_fulfillment_parameters(
        self,
        sender: str,
        request_id: bytes,
        provider_id: bytes,
        fulfill_address: str,
        fulfill_function_id: bytes,
    ) -> None:
        expected = self._fulfillment_parameters.get(request_id)
        presented = abi.derive_fulfillment_parameters_hash(
            provider_id, sender, fulfill_address, fulfill_function_id
        )
        if expected is None or expected != presented:
            raise ContractRevert(abi.INCORRECT_FULFILLMENT_PARAMETERS)

    def _emit(self, name: str, args: Dict[str, Any]) -> Event:
        event = Event(name=name, address=self.address, args=args)
        self.events.append(event)
        return event
