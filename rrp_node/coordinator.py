"""
Coordinator cycle.

One cycle visits every configured chain/provider pair concurrently:
fetch requests -> check authorizations -> call APIs -> process transactions.

Log scanning, authorization checks and API calls are collaborators supplied
by the caller. A pair that fails is logged and reported; the other pairs
carry on.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from rrp_node.config import ChainConfig, NodeConfig
from rrp_node.core.errors import classify_error
from rrp_node.core.execution import (
    ApiCallRequest,
    ApiCallResponse,
    FullRequest,
    ProviderSettings,
    ProviderState,
    RegularRequest,
    Request,
    RequestError,
    RequestErrorCode,
    RequestStatus,
    WithdrawalRequest,
    create_state,
    derive_provider_id_from_mnemonic,
    generate_coordinator_id,
    process_transactions,
    update,
    validate_mnemonic,
)


logger = structlog.stdlib.get_logger("coordinator")


class ApiCallError(Exception):
    """Raised by an ApiCaller when a request cannot be answered with data."""

    def __init__(self, message: str, code: RequestErrorCode = RequestErrorCode.API_CALL_FAILED):
        super().__init__(message)
        self.message = message
        self.code = code


class RequestSource(Protocol):
    """Turns the chain's request logs into typed requests."""

    async def fetch_requests(self, state: ProviderState) -> Sequence[Request]:
        ...


class AuthorizationChecker(Protocol):
    """Reads whether each request's client is endorsed by its sponsor."""

    async def check_authorizations(
        self, state: ProviderState, requests: Sequence[ApiCallRequest]
    ) -> Dict[str, bool]:
        """Map of request id to authorization status. Missing ids stay pending."""
        ...


class ApiCaller(Protocol):
    """Resolves a request's endpoint and parameters into a response."""

    async def call_api(self, request: ApiCallRequest) -> ApiCallResponse:
        """
        Raises:
            ApiCallError: the request should be answered with fail()
        """
        ...


@dataclass
class PairResult:
    """Outcome of one chain/provider pair in a cycle."""
    chain_id: str
    provider: str
    state: Optional[ProviderState] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _is_api_call(request: Request) -> bool:
    match request:
        case RegularRequest() | FullRequest():
            return True
    return False


def apply_authorizations(
    requests: Sequence[Request],
    authorizations: Dict[str, bool],
) -> List[Request]:
    """
    Move pending requests to authorized or blocked.

    Withdrawals are requested by the sponsor admin itself and need no
    endorsement check.
    """
    result = []
    for request in requests:
        if request.status != RequestStatus.PENDING:
            result.append(request)
            continue
        match request:
            case WithdrawalRequest():
                result.append(replace(request, status=RequestStatus.AUTHORIZED))
            case _ if request.id in authorizations:
                if authorizations[request.id]:
                    result.append(replace(request, status=RequestStatus.AUTHORIZED))
                else:
                    result.append(
                        replace(
                            request,
                            status=RequestStatus.BLOCKED,
                            error=RequestError(
                                code=RequestErrorCode.UNAUTHORIZED,
                                message="Client not endorsed by sponsor",
                            ),
                        )
                    )
            case _:
                result.append(request)
    return result


class Coordinator:
    """
    Runs coordinator cycles for every chain/provider pair of a node config.

    Example:
        coordinator = Coordinator(
            config=load_node_config(),
            mnemonic=settings.provider_mnemonic.get_secret_value(),
            request_source=LogScanner(),
            authorization_checker=EndorsementReader(),
            api_caller=HttpAdapter(),
        )
        results = await coordinator.run()
    """

    def __init__(
        self,
        config: NodeConfig,
        mnemonic: str,
        request_source: RequestSource,
        authorization_checker: AuthorizationChecker,
        api_caller: ApiCaller,
    ):
        validate_mnemonic(mnemonic)
        self.config = config
        self.mnemonic = mnemonic
        self.request_source = request_source
        self.authorization_checker = authorization_checker
        self.api_caller = api_caller
        self.provider_id = derive_provider_id_from_mnemonic(mnemonic)

    async def run(self) -> List[PairResult]:
        """Run one cycle over all pairs and return their outcomes in config order."""
        coordinator_id = generate_coordinator_id()
        pairs = [
            (chain, provider_name)
            for chain in self.config.chains
            for provider_name in chain.providers
        ]
        logger.info("coordinator_cycle_started", coordinator_id=coordinator_id, pairs=len(pairs))

        outcomes = await asyncio.gather(
            *(self.run_pair(coordinator_id, chain, name) for chain, name in pairs),
            return_exceptions=True,
        )

        results = []
        for (chain, provider_name), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                context = classify_error(outcome)
                logger.error(
                    "provider_cycle_failed",
                    coordinator_id=coordinator_id,
                    chain_id=chain.id,
                    provider=provider_name,
                    category=context.category.value,
                    error=str(outcome),
                )
                results.append(PairResult(chain.id, provider_name, error=str(outcome)))
            else:
                results.append(PairResult(chain.id, provider_name, state=outcome))

        logger.info(
            "coordinator_cycle_finished",
            coordinator_id=coordinator_id,
            failed=sum(1 for r in results if not r.ok),
        )
        return results

    async def run_pair(
        self, coordinator_id: str, chain: ChainConfig, provider_name: str
    ) -> ProviderState:
        provider_settings = ProviderSettings.from_chain_config(
            chain, provider_name, self.provider_id, self.mnemonic
        )
        state = create_state(provider_settings, coordinator_id)
        try:
            requests = await self.request_source.fetch_requests(state)
            logger.info("requests_fetched", count=len(requests), **state.log_context)
            if not requests:
                return state

            state = update(state, requests=requests)
            state = await self.authorize(state)
            state = await self.call_apis(state)
            return await process_transactions(state)
        finally:
            if state.rpc is not None:
                await state.rpc.close()

    async def authorize(self, state: ProviderState) -> ProviderState:
        pending = [r for r in state.requests if r.status == RequestStatus.PENDING and _is_api_call(r)]
        authorizations: Dict[str, bool] = {}
        if pending:
            authorizations = await self.authorization_checker.check_authorizations(state, pending)
        requests = apply_authorizations(state.requests, authorizations)
        logger.info(
            "authorizations_checked",
            checked=len(pending),
            blocked=sum(1 for r in requests if r.status == RequestStatus.BLOCKED),
            **state.log_context,
        )
        return update(state, requests=requests)

    async def call_apis(self, state: ProviderState) -> ProviderState:
        """Attach an API response or an error marker to every authorized API request."""
        positions = [
            position
            for position, request in enumerate(state.requests)
            if request.status == RequestStatus.AUTHORIZED
            and _is_api_call(request)
            and request.response is None
            and request.error is None
        ]
        if not positions:
            return state

        outcomes = await asyncio.gather(
            *(self.api_caller.call_api(state.requests[p]) for p in positions),
            return_exceptions=True,
        )

        requests = list(state.requests)
        for position, outcome in zip(positions, outcomes):
            request = requests[position]
            if isinstance(outcome, ApiCallResponse):
                requests[position] = replace(request, response=outcome)
            elif isinstance(outcome, ApiCallError):
                requests[position] = replace(
                    request, error=RequestError(code=outcome.code, message=outcome.message)
                )
            elif isinstance(outcome, Exception):
                logger.warning(
                    "api_call_failed",
                    request_id=request.id,
                    error=str(outcome),
                    **state.log_context,
                )
                requests[position] = replace(
                    request,
                    error=RequestError(code=RequestErrorCode.API_CALL_FAILED, message=str(outcome)),
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                raise TypeError(f"ApiCaller returned {type(outcome).__name__}, expected ApiCallResponse")
        return update(state, requests=requests)
