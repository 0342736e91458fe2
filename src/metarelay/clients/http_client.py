"""
Facilitator HTTP Client

httpx client for a metarelay facilitator: reads nonces, signs meta-transaction
authorizations locally and posts them for execution.
"""

import time
from typing import Any, Dict, Optional, Union

import httpx
from eth_account import Account

from ..adapters.evm.signatures import sign_meta_transaction
from ..schemas.bases import PriorityTier
from ..schemas.https import FacilitationResponse, FaucetResponse, NonceResponse


class FacilitatorClientError(Exception):
    """
    Raised for any non-2xx facilitator response.

    Attributes:
        status_code: HTTP status.
        code: Server error code (e.g. 'nonce_mismatch'), or 'http_error' when
            the body carried none.
        body: Decoded response body.
    """

    def __init__(self, status_code: int, code: str, message: str, body: Optional[Dict[str, Any]] = None):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.body = body or {}

    @property
    def retry_after(self) -> Optional[float]:
        return (self.body.get("error") or {}).get("details", {}).get("retryAfter")

    @property
    def settlement(self) -> Optional[FacilitationResponse]:
        data = self.body.get("settlement")
        return FacilitationResponse.model_validate(data) if data else None


class FacilitatorClient(httpx.AsyncClient):
    """
    Extended httpx.AsyncClient speaking the facilitator API.

    Fully compatible with httpx.AsyncClient - supports all methods, properties,
    and can be used as an async context manager.

    Usage:
        ```python
        async with FacilitatorClient(base_url="http://localhost:8000") as client:
            result = await client.facilitate(
                private_key=key,
                target="0xTarget",
                payload=calldata,
                tier="standard",
            )
        ```
    """

    def __init__(
        self,
        *,
        chain_id: Optional[int] = None,
        relay_address: Optional[str] = None,
        deadline_seconds: int = 600,
        **kwargs
    ):
        """
        Args:
            chain_id: Chain of the relay; read from ``/health`` when omitted.
            relay_address: Relay contract; read from ``/health`` when omitted.
            deadline_seconds: Validity window of signed requests.
            **kwargs: All standard httpx.AsyncClient arguments (base_url, timeout, transport, etc.)
        """
        super().__init__(**kwargs)
        self._chain_id = chain_id
        self._relay_address = relay_address
        self._deadline_seconds = deadline_seconds

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def health(self) -> Dict[str, Any]:
        return await self._json(await self.get("/health"))

    async def get_nonce(self, address: str) -> int:
        """Advisory next relay nonce of ``address``."""
        data = await self._json(await self.get(f"/nonces/{address}"))
        return NonceResponse.model_validate(data).nonce

    async def get_transaction(self, tx_hash: str) -> FacilitationResponse:
        data = await self._json(await self.get(f"/transactions/{tx_hash}"))
        return FacilitationResponse.model_validate(data)

    async def request_faucet(self, address: str, amount: Optional[int] = None) -> FaucetResponse:
        body: Dict[str, Any] = {"address": address}
        if amount is not None:
            body["amount"] = str(amount)
        data = await self._json(await self.post("/faucet", json=body))
        return FaucetResponse.model_validate(data)

    async def facilitate(
        self,
        *,
        private_key: str,
        target: str,
        payload: Union[bytes, str],
        tier: Union[PriorityTier, str] = PriorityTier.STANDARD,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
    ) -> FacilitationResponse:
        """
        Sign a meta-transaction with ``private_key`` and submit it.

        Args:
            private_key: Requester key; never leaves this process.
            target: Target contract.
            payload: Calldata as bytes or 0x-hex.
            tier: Priority tier.
            nonce: Relay nonce; fetched from the facilitator when omitted.
            deadline: Unix deadline; now + ``deadline_seconds`` when omitted.

        Returns:
            FacilitationResponse. ``status`` is ``pending`` when the server
            answered 202.

        Raises:
            FacilitatorClientError: On any error response, including a
                reverted target call (``settlement`` carries the record).
        """
        requester = Account.from_key(private_key).address
        tier = PriorityTier(tier)
        if isinstance(payload, str):
            payload = bytes.fromhex(payload[2:] if payload.startswith("0x") else payload)
        if nonce is None:
            nonce = await self.get_nonce(requester)
        if deadline is None:
            deadline = int(time.time()) + self._deadline_seconds
        chain_id, relay_address = await self._relay_domain()

        signature = sign_meta_transaction(
            private_key=private_key,
            chain_id=chain_id,
            relay_address=relay_address,
            target=target,
            payload=payload,
            tier=tier.code,
            nonce=nonce,
            deadline=deadline,
        )
        body = {
            "requester": requester,
            "target": target,
            "payload": "0x" + payload.hex(),
            "tier": tier.value,
            "nonce": str(nonce),
            "deadline": str(deadline),
            "signature": "0x" + signature.hex(),
        }
        data = await self._json(await self.post("/facilitate", json=body))
        return FacilitationResponse.model_validate(data)

    # =========================================================================
    # Utility Methods
    # =========================================================================

    async def _relay_domain(self):
        if self._chain_id is None or self._relay_address is None:
            info = await self.health()
            self._chain_id = self._chain_id or info["chainId"]
            self._relay_address = self._relay_address or info["relayAddress"]
        return self._chain_id, self._relay_address

    async def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_success:
            return data
        error = data.get("error") if isinstance(data, dict) else None
        error = error or {}
        raise FacilitatorClientError(
            response.status_code,
            error.get("code", "http_error"),
            error.get("message", response.reason_phrase),
            data if isinstance(data, dict) else {},
        )
