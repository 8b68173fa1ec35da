"""Client for the fiat off-ramp provider's JSON-RPC API.

The provider sells the carved-out share of a payout for fiat. Placing an order
returns a Lightning invoice, which the forwarder pays over the normal rail.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SATS_CURRENCY = "SATS"


class OffRampError(RuntimeError):
    pass


def _element(result: Any, method: str) -> Dict[str, Any]:
    if not isinstance(result, dict):
        raise OffRampError(f"{method} returned invalid result")
    element = result.get("element")
    if not isinstance(element, dict):
        raise OffRampError(f"{method} result missing element")
    return element


class OffRampConnector:
    def __init__(
        self,
        base_uri: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_uri = base_uri if base_uri.endswith("/") else base_uri + "/"
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._session_token: Optional[str] = None
        self._ids = itertools.count(1)

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    async def _rpc(
        self,
        service: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        }
        headers = {"Content-Type": "application/json"}
        bearer = token or self._session_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        url = f"{self.base_uri}{service}"
        try:
            response = await self._client.post(url, json=request, headers=headers)
        except httpx.HTTPError as exc:
            raise OffRampError(f"{method} request failed: {exc}") from exc
        if response.status_code != 200:
            raise OffRampError(f"{method} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise OffRampError(f"{method} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise OffRampError(f"{method} returned invalid response")
        if payload.get("error"):
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise OffRampError(message or f"{method} error")
        return _element(payload.get("result"), method)

    async def refresh_session(self) -> str:
        element = await self._rpc("auth", "refreshSession", {"apiKey": self.api_key}, token=self.api_key)
        token = element.get("sessionToken")
        if not isinstance(token, str) or not token:
            raise OffRampError("refreshSession returned no sessionToken")
        self._session_token = token
        logger.debug("Off-ramp session refreshed")
        return token

    async def run_refresh_loop(self, interval_seconds: float) -> None:
        """Keep the session token current; failures are logged and retried next tick."""
        while True:
            try:
                await self.refresh_session()
            except OffRampError as exc:
                logger.warning("Off-ramp session refresh failed: %s", exc)
            await asyncio.sleep(interval_seconds)

    async def _active_payment_processor(self, account_token: str, recipient_id: str) -> str:
        element = await self._rpc(
            "recipients",
            "getRecipient",
            {"accountToken": account_token, "recipientId": recipient_id},
        )
        processors = element.get("paymentProcessors")
        if not isinstance(processors, list):
            raise OffRampError(f"recipient {recipient_id} has no payment processors")
        for processor in processors:
            if isinstance(processor, dict) and processor.get("isActive"):
                processor_id = processor.get("id")
                if isinstance(processor_id, str) and processor_id:
                    return processor_id
        raise OffRampError(f"recipient {recipient_id} has no active payment processor")

    async def create_order(
        self,
        account_token: str,
        recipient_id: str,
        amount_msat: int,
        reference_id: str,
    ) -> str:
        if amount_msat <= 0:
            raise OffRampError("order amount must be positive")
        processor_id = await self._active_payment_processor(account_token, recipient_id)
        element = await self._rpc(
            "orders",
            "createSellOrder",
            {
                "accountToken": account_token,
                "recipientId": recipient_id,
                "paymentProcessorId": processor_id,
                "amount": amount_msat // 1000,
                "currency": SATS_CURRENCY,
                "network": "lightning",
                "reference": reference_id,
            },
        )
        payment_request = element.get("paymentRequest")
        if not isinstance(payment_request, str) or not payment_request:
            raise OffRampError("createSellOrder returned no paymentRequest")
        logger.info(
            "Off-ramp order placed for %s sats (recipient=%s reference=%s)",
            amount_msat // 1000,
            recipient_id,
            reference_id,
        )
        return payment_request

    async def aclose(self) -> None:
        await self._client.aclose()
