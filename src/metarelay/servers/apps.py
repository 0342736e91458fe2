"""
Meta-transaction Facilitator Server - Event-driven FastAPI wrapper.

Serves the facilitation endpoint and its auxiliary endpoints on top of the
intake and execution event buses.
"""

import logging
import math
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..adapters.bases import ChainGateway
from ..adapters.evm.adapter import EVMChainGateway
from ..adapters.evm.verifies import compute_domain_separator
from ..config import Settings, configure_logging
from ..engine.events import (
    BaseEvent,
    Dependencies,
    FacilitationRequestedEvent,
    RejectedEvent,
    SettledEvent,
    SignatureVerifiedEvent,
)
from ..engine.exceptions import (
    ConfigurationError,
    ExecutionReverted,
    MalformedRequest,
    RateLimited,
    RelayError,
    TransactionNotFound,
)
from ..engine.executors import EventChain
from ..facilitator.state import RelayState
from ..facilitator.submitter import TransactionSubmitter
from ..facilitator.validator import parse_address
from ..schemas.bases import SettlementStatus, SystemHealth
from ..schemas.https import (
    ErrorBody,
    ErrorResponse,
    FacilitationResponse,
    FaucetRequest,
    HealthResponse,
    NonceResponse,
)
from .flows import body_to_mapping, mint_from_faucet, setup_execution_bus, setup_intake_bus

logger = logging.getLogger(__name__)


_INTERNAL_ERROR = {
    "error": {
        "code": "internal_error",
        "category": "internal",
        "message": "Internal server error",
        "systemWide": False,
        "retryable": False,
        "details": {},
    }
}

_SETTLEMENT_STATUS_CODES = {
    SettlementStatus.CONFIRMED: 200,
    SettlementStatus.PENDING: 202,
    SettlementStatus.REVERTED: 500,
    SettlementStatus.FAILED: 500,
}


def error_response(error: RelayError, *, settlement: Optional[FacilitationResponse] = None) -> JSONResponse:
    """Render a ``RelayError`` as ``{"error": {...}}`` with its status code."""
    body = ErrorResponse(error=ErrorBody.model_validate(error.to_dict()), settlement=settlement)
    headers = None
    if isinstance(error, RateLimited):
        headers = {"Retry-After": str(max(1, math.ceil(error.retry_after)))}
    return JSONResponse(
        status_code=error.http_status,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


def build_gateway(settings: Settings) -> EVMChainGateway:
    """Create the web3 gateway described by ``settings``.

    Raises:
        ConfigurationError: If RPC URL, relay address or relayer key is missing.
    """
    settings.require_chain()
    return EVMChainGateway(
        relay_address=settings.relay_address,
        chain_id=settings.chain_id,
        rpc_url=settings.rpc_url.get_secret_value(),
        private_key=settings.relayer_private_key.get_secret_value(),
        request_timeout=settings.request_timeout_seconds,
        max_attempts=settings.rpc_max_attempts,
        backoff_seconds=settings.rpc_backoff_seconds,
        explorer_url=settings.explorer_url,
    )


class FacilitatorServer(FastAPI):
    """FastAPI server facilitating signed meta-transactions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[ChainGateway] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        **fastapi_kwargs
    ):
        """Initialize the facilitator server.

        Args:
            settings: Facilitator settings (default: ``Settings.from_env()``)
            gateway: Chain gateway (default: ``EVMChainGateway`` built from settings at startup)
            clock: Wall clock returning Unix seconds, injectable for tests
            **fastapi_kwargs: FastAPI arguments (title, version, etc.)
        """
        self.settings = settings or Settings.from_env()
        self.gateway: Optional[ChainGateway] = gateway
        self._clock = clock
        self.relay_state: Optional[RelayState] = None
        self.submitter: Optional[TransactionSubmitter] = None
        self.depends: Optional[Dependencies] = None
        self.intake_bus = setup_intake_bus()
        self.execution_bus = setup_execution_bus()

        fastapi_kwargs.setdefault("title", "metarelay facilitator")
        super().__init__(lifespan=self._lifespan, **fastapi_kwargs)

        self._setup_facilitate_endpoint()
        self._setup_nonce_endpoint()
        self._setup_transaction_endpoint()
        self._setup_health_endpoint()
        self._setup_faucet_endpoint()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.start_services()
        try:
            yield
        finally:
            await self.stop_services()

    async def start_services(self) -> None:
        """Build state, check the EIP-712 domain and start the submitter.

        Raises:
            ConfigurationError: If the relay's DOMAIN_SEPARATOR differs from
                the locally computed one.
        """
        if self.gateway is None:
            self.gateway = build_gateway(self.settings)
        gateway = self.gateway

        onchain = await gateway.domain_separator()
        local = compute_domain_separator(chain_id=gateway.chain_id, relay_address=gateway.relay_address)
        if bytes(onchain) != local:
            raise ConfigurationError(
                "EIP-712 domain mismatch: relay DOMAIN_SEPARATOR differs from the configured domain"
            )

        self.relay_state = RelayState.create(self.settings, gateway)
        self.submitter = TransactionSubmitter(gateway, queue_size=self.settings.submission_queue_size)
        await self.submitter.start()
        deps_kwargs = {"clock": self._clock} if self._clock else {}
        self.depends = Dependencies(
            settings=self.settings,
            gateway=gateway,
            state=self.relay_state,
            submitter=self.submitter,
            **deps_kwargs,
        )
        logger.info(
            "Facilitator started chain_id=%d relay=%s relayer=%s",
            gateway.chain_id, gateway.relay_address, gateway.relayer_address,
        )

    async def stop_services(self) -> None:
        if self.submitter is not None:
            await self.submitter.stop()
        if self.relay_state is not None:
            self.relay_state.clear()
        if self.gateway is not None:
            await self.gateway.close()
        logger.info("Facilitator stopped")

    # ------------------------------------------------------------------
    # Event extension points
    # ------------------------------------------------------------------

    def subscribe(self, event_class: type[BaseEvent], handler: Callable) -> None:
        """Register an execution-stage handler.

        Args:
            event_class: Event type to handle
            handler: Async function(event, deps) -> Optional[BaseEvent]
        """
        self.execution_bus.subscribe(event_class, handler)

    def add_hook(self, event_class: type[BaseEvent], hook: Callable) -> None:
        """Register a side-effect hook on both buses.

        Example:
            ```python
            async def audit(event, deps):
                audit_log.write(event.record.model_dump())

            app.add_hook(SettledEvent, audit)
            ```
        """
        self.intake_bus.hook(event_class, hook)
        self.execution_bus.hook(event_class, hook)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def facilitate(self, payload: Any) -> JSONResponse:
        """Run one facilitation request through both event chains."""
        deps = self.depends
        intake = EventChain(self.intake_bus, deps)
        event = await intake.run(
            FacilitationRequestedEvent(raw=body_to_mapping(payload), received_at=int(deps.clock()))
        )
        if isinstance(event, RejectedEvent):
            return error_response(event.error)
        if not isinstance(event, SignatureVerifiedEvent):
            logger.error("Intake chain ended with %r", event)
            return JSONResponse(status_code=500, content=_INTERNAL_ERROR)

        async with self.relay_state.locks.hold(event.request.requester):
            result = await EventChain(self.execution_bus, deps).run(event)

        if isinstance(result, RejectedEvent):
            return error_response(result.error)
        if not isinstance(result, SettledEvent):
            logger.error("Execution chain ended with %r", result)
            return JSONResponse(status_code=500, content=_INTERNAL_ERROR)

        response = result.response
        if response.status == SettlementStatus.REVERTED:
            return error_response(
                ExecutionReverted(
                    "Target call reverted on-chain",
                    settlement=response,
                    details={"transactionId": response.transaction_id},
                ),
                settlement=response,
            )
        return JSONResponse(
            status_code=_SETTLEMENT_STATUS_CODES[response.status],
            content=response.to_json_dict(),
        )

    def _setup_facilitate_endpoint(self, path: str = "/facilitate") -> None:
        @self.post(path)
        async def facilitate(request: Request):
            """Facilitate a signed meta-transaction."""
            try:
                payload = await request.json()
            except ValueError:
                return error_response(MalformedRequest("request body must be valid JSON", details={"field": "body"}))
            try:
                return await self.facilitate(payload)
            except Exception:
                logger.exception("Unhandled error while facilitating")
                return JSONResponse(status_code=500, content=_INTERNAL_ERROR)

    def _setup_nonce_endpoint(self) -> None:
        @self.get("/nonces/{address}")
        async def get_nonce(address: str):
            """Advisory next nonce of ``address``, read from the relay contract."""
            try:
                requester = parse_address(address, "address")
                nonce = await self.gateway.relay_nonce(requester)
            except RelayError as e:
                return error_response(e)
            return NonceResponse(address=requester, nonce=nonce).model_dump(mode="json")

    def _setup_transaction_endpoint(self) -> None:
        @self.get("/transactions/{tx_hash}")
        async def get_transaction(tx_hash: str):
            """Recorded settlement of ``tx_hash`` with a refreshed status."""
            settlements = self.relay_state.settlements
            entry = settlements.get(tx_hash)
            if entry is None:
                return error_response(
                    TransactionNotFound("Unknown transaction", details={"transactionId": tx_hash})
                )
            try:
                receipt = await self.gateway.get_receipt(tx_hash)
                response = settlements.refresh(
                    tx_hash, receipt, explorer_reference=self.gateway.explorer_reference(tx_hash)
                )
            except RelayError as e:
                return error_response(e)
            if receipt is not None and receipt.execution is not None:
                self.relay_state.nonces.advance(entry.request.requester, receipt.execution.nonce)
            return response.to_json_dict()

    def _setup_health_endpoint(self) -> None:
        @self.get("/health")
        async def health():
            """Service health; degraded while the relayer is underfunded."""
            underfunded = self.relay_state.health.underfunded
            body = HealthResponse(
                status=SystemHealth.DEGRADED if underfunded else SystemHealth.OK,
                relayer=self.gateway.relayer_address,
                relay_address=self.gateway.relay_address,
                chain_id=self.gateway.chain_id,
                reason=self.relay_state.health.reason,
            )
            return body.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _setup_faucet_endpoint(self, path: str = "/faucet") -> None:
        @self.post(path)
        async def faucet(request: Request):
            """Mint test payment tokens."""
            try:
                payload = await request.json()
                body = FaucetRequest.model_validate(payload)
            except ValueError:
                # pydantic's ValidationError is a ValueError
                return error_response(
                    MalformedRequest("faucet body must be {address, amount?}", details={"field": "body"})
                )
            client_id = request.client.host if request.client else "unknown"
            try:
                result = await mint_from_faucet(body.address, body.amount, client_id, self.depends)
            except RelayError as e:
                return error_response(e)
            return result.model_dump(mode="json", by_alias=True, exclude_none=True)


def create_app(settings: Optional[Settings] = None, gateway: Optional[ChainGateway] = None) -> FacilitatorServer:
    """Application factory."""
    return FacilitatorServer(settings=settings, gateway=gateway)


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
