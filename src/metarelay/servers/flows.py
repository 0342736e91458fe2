"""
Built-in event handlers for the meta-transaction facilitation workflow.

Implements the pipeline: validate → verify signature → nonce → rate limit →
quote → balance guard → submit → settle. Each handler wraps one component
and turns its ``RelayError`` into a terminal ``RejectedEvent``.
"""

import logging
from typing import Any, Mapping, Optional

from ..adapters.evm.verifies import verify_meta_transaction_signature
from ..engine.events import (
    Dependencies,
    EventBus,
    FacilitationRequestedEvent,
    FundsGuardedEvent,
    NonceCheckedEvent,
    QuoteReadyEvent,
    RateCheckedEvent,
    RejectedEvent,
    RequestValidatedEvent,
    SettledEvent,
    SignatureVerifiedEvent,
    SubmittedEvent,
)
from ..engine.exceptions import MalformedRequest, RateLimited, RelayError, RelayerUnderfunded, RequestExpired
from ..facilitator.validator import parse_address, parse_facilitation_request, parse_uint
from ..schemas.https import FacilitationRequestBody, FaucetResponse

logger = logging.getLogger(__name__)


# ==================== Intake Handlers ====================

async def handle_facilitation_requested(
    event: FacilitationRequestedEvent,
    deps: Dependencies
) -> RequestValidatedEvent | RejectedEvent:
    """Structural validation; no chain access."""
    try:
        request = parse_facilitation_request(
            event.raw,
            now=event.received_at,
            max_payload_bytes=deps.settings.max_payload_bytes,
        )
    except RelayError as e:
        return RejectedEvent(error=e, stage="validate")
    return RequestValidatedEvent(request=request)


async def handle_request_validated(
    event: RequestValidatedEvent,
    deps: Dependencies
) -> SignatureVerifiedEvent | RejectedEvent:
    """Recover the EIP-712 signer and compare it with the requester."""
    try:
        verify_meta_transaction_signature(
            event.request,
            chain_id=deps.gateway.chain_id,
            relay_address=deps.gateway.relay_address,
        )
    except RelayError as e:
        return RejectedEvent(error=e, stage="verify")
    return SignatureVerifiedEvent(request=event.request)


# ==================== Execution Handlers ====================

async def handle_signature_verified(
    event: SignatureVerifiedEvent,
    deps: Dependencies
) -> NonceCheckedEvent | RejectedEvent:
    """Check the nonce against the ledger. Runs under the requester lock."""
    request = event.request
    # the request may have waited on the lock past its deadline
    now = int(deps.clock())
    if request.deadline < now:
        return RejectedEvent(
            error=RequestExpired(
                "request deadline has passed",
                details={"deadline": request.deadline, "currentTime": now},
            ),
            stage="nonce",
        )
    try:
        await deps.state.nonces.check(request.requester, request.nonce)
    except RelayError as e:
        return RejectedEvent(error=e, stage="nonce")
    return NonceCheckedEvent(request=request)


async def handle_nonce_checked(
    event: NonceCheckedEvent,
    deps: Dependencies
) -> RateCheckedEvent | RejectedEvent:
    try:
        status = deps.state.request_limiter.hit(event.request.requester)
    except RelayError as e:
        return RejectedEvent(error=e, stage="rate_limit")
    return RateCheckedEvent(request=event.request, remaining=status.remaining)


async def handle_rate_checked(
    event: RateCheckedEvent,
    deps: Dependencies
) -> QuoteReadyEvent | RejectedEvent:
    try:
        quote = await deps.state.pricer.quote(event.request)
    except RelayError as e:
        return RejectedEvent(error=e, stage="quote")
    return QuoteReadyEvent(request=event.request, quote=quote)


async def handle_quote_ready(
    event: QuoteReadyEvent,
    deps: Dependencies
) -> FundsGuardedEvent | RejectedEvent:
    try:
        await deps.state.guard.check(event.request, event.quote)
    except RelayError as e:
        return RejectedEvent(error=e, stage="balance")
    return FundsGuardedEvent(request=event.request, quote=event.quote)


async def handle_funds_guarded(
    event: FundsGuardedEvent,
    deps: Dependencies
) -> SubmittedEvent | RejectedEvent:
    """Broadcast through the single-writer submitter and wait for the receipt."""
    settings = deps.settings
    request, quote = event.request, event.quote
    try:
        tx_hash = await deps.submitter.submit_execution(
            request,
            quote.total_charge,
            gas_limit=quote.gas_limit,
            gas_price=quote.effective_gas_price,
        )
    except RelayerUnderfunded as e:
        deps.state.health.mark_underfunded(e.message)
        return RejectedEvent(error=e, stage="submit")
    except RelayError as e:
        return RejectedEvent(error=e, stage="submit")

    logger.info("Submitted relay tx %s requester=%s nonce=%d", tx_hash, request.requester, request.nonce)
    try:
        receipt = await deps.gateway.wait_for_receipt(
            tx_hash,
            timeout=settings.receipt_timeout_seconds,
            poll_interval=settings.receipt_poll_interval,
            confirmations=settings.required_confirmations,
        )
    except RelayError as e:
        # broadcast already happened; report pending instead of failing
        logger.warning("Receipt of %s unavailable (%s); reporting pending", tx_hash, e.code)
        receipt = None
    return SubmittedEvent(request=request, quote=quote, tx_hash=tx_hash, receipt=receipt)


async def handle_submitted(
    event: SubmittedEvent,
    deps: Dependencies
) -> SettledEvent | RejectedEvent:
    request = event.request
    state = deps.state
    try:
        response, record = state.settlements.record(
            request,
            event.quote,
            event.tx_hash,
            event.receipt,
            explorer_reference=deps.gateway.explorer_reference(event.tx_hash),
        )
    except RelayError as e:
        state.nonces.invalidate(request.requester)
        return RejectedEvent(error=e, stage="settle")

    if event.receipt is not None and event.receipt.execution is not None:
        state.nonces.advance(request.requester, event.receipt.execution.nonce)
    else:
        # outcome unknown; re-read the nonce from chain next time
        state.nonces.invalidate(request.requester)
    return SettledEvent(response=response, record=record)


# ==================== Hooks ====================

async def log_rejection(event: RejectedEvent, deps: Dependencies) -> None:
    level = logging.ERROR if event.error.system_wide else logging.WARNING
    logger.log(level, "Request rejected at %s: %s", event.stage or "-", event.error.code)


# ==================== Faucet ====================

async def mint_from_faucet(
    raw_address: Any,
    raw_amount: Optional[Any],
    client_id: str,
    deps: Dependencies,
) -> FaucetResponse:
    """
    Mint test payment tokens to an address through the submitter.

    Raises:
        MalformedRequest: On a bad address or an amount outside (0, max].
        RateLimited: When the client or the recipient exhausted its window.
        RelayerBusy / RelayTransactionFailed: From the submitter.
    """
    settings = deps.settings
    address = parse_address(raw_address, "address")
    if raw_amount is None:
        amount = settings.faucet_default_amount
    else:
        amount = parse_uint(raw_amount, "amount")
    if amount == 0 or amount > settings.faucet_max_amount:
        raise MalformedRequest(
            "amount must be between 1 and the faucet maximum",
            details={"field": "amount", "maximum": str(settings.faucet_max_amount)},
        )

    state = deps.state
    checks = (
        (state.faucet_client_limiter, client_id),
        (state.faucet_recipient_limiter, address),
    )
    # neither window is charged unless both have room
    for limiter, key in checks:
        status = limiter.peek(key)
        if not status.allowed:
            raise RateLimited(
                "Rate limit exceeded",
                retry_after=status.retry_after_seconds,
                details={"limit": status.limit},
            )
    for limiter, key in checks:
        limiter.hit(key)

    tx_hash = await deps.submitter.submit_mint(address, amount)
    logger.info("Faucet minted %d to %s in %s", amount, address, tx_hash)
    return FaucetResponse(
        address=address,
        amount=str(amount),
        transaction_id=tx_hash,
        explorer_reference=deps.gateway.explorer_reference(tx_hash),
    )


# ==================== Event Bus Setup ====================

def setup_intake_bus() -> EventBus:
    """Validation and signature verification; runs without locks."""
    event_bus = EventBus()
    event_bus.subscribe(FacilitationRequestedEvent, handle_facilitation_requested)
    event_bus.subscribe(RequestValidatedEvent, handle_request_validated)
    event_bus.hook(RejectedEvent, log_rejection)
    return event_bus


def setup_execution_bus() -> EventBus:
    """Nonce check through settlement; runs under the per-requester lock."""
    event_bus = EventBus()
    event_bus.subscribe(SignatureVerifiedEvent, handle_signature_verified)
    event_bus.subscribe(NonceCheckedEvent, handle_nonce_checked)
    event_bus.subscribe(RateCheckedEvent, handle_rate_checked)
    event_bus.subscribe(QuoteReadyEvent, handle_quote_ready)
    event_bus.subscribe(FundsGuardedEvent, handle_funds_guarded)
    event_bus.subscribe(SubmittedEvent, handle_submitted)
    event_bus.hook(RejectedEvent, log_rejection)
    return event_bus


def body_to_mapping(payload: Any) -> Mapping[str, Any] | Any:
    """Project a decoded JSON body onto the facilitation fields."""
    if not isinstance(payload, dict):
        return payload
    return FacilitationRequestBody.model_validate(payload).model_dump()
