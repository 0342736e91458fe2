"""
Settlement Recorder

Turns a broadcast relay transaction and its receipt into the response
returned to the requester and a frozen ``PaymentRecord``. Makes no chain
calls; receipts are fetched by the caller.

Outcome rules:
    - no receipt, or fewer confirmations than required -> pending
    - target call succeeded                            -> confirmed (charged)
    - target call failed                               -> reverted (charged 0)
    - relay transaction itself reverted                -> failed (charged 0), kept in
                                                          the history, then
                                                          RelayTransactionFailed
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from ..adapters.evm.constants import ERROR_STRING_SELECTOR, PANIC_SELECTOR
from ..engine.exceptions import RelayTransactionFailed
from ..schemas.bases import (
    ExecutionReceipt,
    FacilitationRequest,
    GasQuote,
    PaymentRecord,
    SettlementStatus,
    TransactionStatus,
)
from ..schemas.https import ChargedAmount, FacilitationResponse

logger = logging.getLogger(__name__)


def decode_revert_reason(data: bytes) -> Optional[str]:
    """
    Decode Solidity revert data.

    Returns:
        The ``Error(string)`` message, ``Panic(0x..)`` for panics, the raw hex
        for custom errors, or None when there is no data.
    """
    if not data:
        return None
    selector, body = data[:4], data[4:]
    try:
        if selector == ERROR_STRING_SELECTOR:
            return decode(["string"], body)[0]
        if selector == PANIC_SELECTOR:
            return f"Panic(0x{decode(['uint256'], body)[0]:02x})"
    except DecodingError:
        pass  # malformed payload, fall through to raw hex
    return "0x" + data.hex()


@dataclass(frozen=True)
class SettlementEntry:
    """What the recorder keeps per transaction."""
    request: FacilitationRequest
    quote: GasQuote
    response: FacilitationResponse
    record: PaymentRecord


class SettlementRecorder:
    """
    Builds settlement responses and keeps a bounded history keyed by
    transaction id (oldest entries are evicted first).
    """

    def __init__(self, *, required_confirmations: int = 1, history_size: int = 10_000):
        self._required_confirmations = required_confirmations
        self._history_size = history_size
        self._history: "OrderedDict[str, SettlementEntry]" = OrderedDict()

    def record(
        self,
        request: FacilitationRequest,
        quote: GasQuote,
        tx_hash: str,
        receipt: Optional[ExecutionReceipt],
        *,
        explorer_reference: Optional[str] = None,
    ) -> Tuple[FacilitationResponse, PaymentRecord]:
        """
        Record the outcome of ``tx_hash``.

        Raises:
            RelayTransactionFailed: If the relay transaction reverted or its
                receipt carries no relay event. The failed entry is recorded
                first so the transaction id stays queryable.
        """
        response, record = self._store(request, quote, tx_hash, receipt, explorer_reference)
        if response.status == SettlementStatus.FAILED:
            raise RelayTransactionFailed(
                response.revert_reason or "Relay transaction reverted",
                details={"transactionId": tx_hash, "gasUsed": response.gas_used},
            )
        return response, record

    def _store(
        self,
        request: FacilitationRequest,
        quote: GasQuote,
        tx_hash: str,
        receipt: Optional[ExecutionReceipt],
        explorer_reference: Optional[str],
    ) -> Tuple[FacilitationResponse, PaymentRecord]:
        status, charged_base, charged_fee, revert_reason, gas_used = self._classify(request, quote, tx_hash, receipt)

        response = FacilitationResponse(
            success=status == SettlementStatus.CONFIRMED,
            status=status,
            transaction_id=tx_hash,
            explorer_reference=explorer_reference,
            gas_used=gas_used,
            charged_amount=ChargedAmount(
                base=str(charged_base),
                fee=str(charged_fee),
                total=str(charged_base + charged_fee),
            ),
            requester=request.requester,
            nonce=request.nonce,
            revert_reason=revert_reason,
        )
        record = PaymentRecord(
            requester=request.requester,
            nonce=request.nonce,
            amount_charged=charged_base + charged_fee if status == SettlementStatus.CONFIRMED else 0,
            base_component=charged_base if status == SettlementStatus.CONFIRMED else 0,
            fee_component=charged_fee if status == SettlementStatus.CONFIRMED else 0,
            outcome=status,
            transaction_id=tx_hash,
        )
        self._remember(tx_hash, SettlementEntry(request=request, quote=quote, response=response, record=record))
        logger.info(
            "Settlement %s requester=%s nonce=%d status=%s charged=%s",
            tx_hash, request.requester, request.nonce, status.value, response.charged_amount.total,
        )
        return response, record

    def _classify(
        self,
        request: FacilitationRequest,
        quote: GasQuote,
        tx_hash: str,
        receipt: Optional[ExecutionReceipt],
    ) -> Tuple[SettlementStatus, int, int, Optional[str], int]:
        if receipt is None or receipt.status == TransactionStatus.PENDING:
            # amounts a successful call will be charged
            return SettlementStatus.PENDING, quote.base_charge, quote.fee_charge, None, 0

        if receipt.status == TransactionStatus.FAILED:
            return SettlementStatus.FAILED, 0, 0, "Relay transaction reverted", receipt.gas_used

        execution = receipt.execution
        if execution is None:
            return SettlementStatus.FAILED, 0, 0, "Relay transaction emitted no execution event", receipt.gas_used

        if receipt.confirmations < self._required_confirmations:
            return SettlementStatus.PENDING, quote.base_charge, quote.fee_charge, None, receipt.gas_used

        if not execution.success:
            return (
                SettlementStatus.REVERTED,
                0,
                0,
                decode_revert_reason(execution.return_data),
                receipt.gas_used,
            )

        base = min(quote.base_charge, execution.charged)
        return SettlementStatus.CONFIRMED, base, execution.charged - base, None, receipt.gas_used

    def _remember(self, tx_hash: str, entry: SettlementEntry) -> None:
        self._history[tx_hash] = entry
        self._history.move_to_end(tx_hash)
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    def get(self, tx_hash: str) -> Optional[SettlementEntry]:
        return self._history.get(tx_hash)

    def refresh(
        self,
        tx_hash: str,
        receipt: Optional[ExecutionReceipt],
        *,
        explorer_reference: Optional[str] = None,
    ) -> Optional[FacilitationResponse]:
        """Re-record a known transaction with a newer receipt. None if unknown.

        A relay transaction that turned out to have failed is returned with
        status ``failed`` rather than raised.
        """
        entry = self._history.get(tx_hash)
        if entry is None:
            return None
        response, _ = self._store(entry.request, entry.quote, tx_hash, receipt, explorer_reference)
        return response

    def clear(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)
