"""Lightning payout rail: LNURL-pay resolution plus payment through an LND node."""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class RailError(RuntimeError):
    pass


class RecipientNotFound(RailError):
    pass


@dataclass(frozen=True)
class PayEndpoint:
    callback: str
    min_sendable_msat: Optional[int] = None
    max_sendable_msat: Optional[int] = None


@dataclass(frozen=True)
class PaymentResult:
    payment_id: Optional[str]
    confirmed: bool
    error: Optional[str] = None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _decode_hash(value: Any) -> Optional[str]:
    """LND REST encodes bytes fields as base64; payment ids are stored as hex."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return base64.b64decode(value, validate=True).hex()
    except (binascii.Error, ValueError):
        return None


class LightningRail:
    def __init__(
        self,
        lnurl_base_uri: str,
        lnd_rest_url: str,
        macaroon_hex: Optional[str] = None,
        tls_cert_path: Optional[Path] = None,
        timeout_seconds: float = 10.0,
        pay_timeout_seconds: float = 60.0,
        dry_run: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        lnd_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.lnurl_base_uri = lnurl_base_uri if lnurl_base_uri.endswith("/") else lnurl_base_uri + "/"
        self.lnd_rest_url = lnd_rest_url.rstrip("/")
        self.macaroon_hex = macaroon_hex
        self.pay_timeout_seconds = pay_timeout_seconds
        self.dry_run = dry_run
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        if lnd_client is None:
            verify: Any = True
            if tls_cert_path is not None:
                verify = ssl.create_default_context(cafile=str(Path(tls_cert_path).expanduser()))
            lnd_client = httpx.AsyncClient(timeout=httpx.Timeout(pay_timeout_seconds), verify=verify)
        self._lnd = lnd_client

        if not macaroon_hex:
            logger.info("Lightning rail running without macaroon (dry-run=%s)", dry_run)

    def _lnurlp_url(self, address: str) -> str:
        candidate = address.strip()
        if "@" in candidate:
            username, _, domain = candidate.partition("@")
            if not username or not domain:
                raise RecipientNotFound(f"invalid lightning address {address!r}")
            return f"https://{domain}/.well-known/lnurlp/{quote(username, safe='')}"
        return f"{self.lnurl_base_uri}.well-known/lnurlp/{quote(candidate, safe='')}"

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.get(url, params=params)
        except httpx.HTTPError as exc:
            raise RailError(f"LNURL request to {url} failed: {exc}") from exc
        if response.status_code == 404:
            raise RecipientNotFound(f"LNURL endpoint {url} not found")
        if response.status_code != 200:
            raise RailError(f"LNURL endpoint {url} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RailError(f"LNURL endpoint {url} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise RailError(f"LNURL endpoint {url} returned invalid response")
        if str(payload.get("status", "")).upper() == "ERROR":
            raise RailError(f"LNURL endpoint {url} error: {payload.get('reason') or 'unknown'}")
        return payload

    async def resolve_recipient(self, address: str) -> PayEndpoint:
        payload = await self._get_json(self._lnurlp_url(address))
        callback = payload.get("callback")
        if not isinstance(callback, str) or not callback:
            raise RecipientNotFound(f"no LNURL callback for {address}")
        return PayEndpoint(
            callback=callback,
            min_sendable_msat=_optional_int(payload.get("minSendable")),
            max_sendable_msat=_optional_int(payload.get("maxSendable")),
        )

    async def request_invoice(self, endpoint: PayEndpoint, amount_msat: int) -> str:
        if endpoint.min_sendable_msat is not None and amount_msat < endpoint.min_sendable_msat:
            raise RailError(f"{amount_msat} msat below minSendable {endpoint.min_sendable_msat}")
        if endpoint.max_sendable_msat is not None and amount_msat > endpoint.max_sendable_msat:
            raise RailError(f"{amount_msat} msat above maxSendable {endpoint.max_sendable_msat}")
        payload = await self._get_json(endpoint.callback, params={"amount": amount_msat})
        payment_request = payload.get("pr")
        if not isinstance(payment_request, str) or not payment_request:
            raise RailError("LNURL callback returned no payment request")
        return payment_request

    async def pay(self, payment_request: str) -> PaymentResult:
        if self.dry_run or not self.macaroon_hex:
            digest = hashlib.sha256(payment_request.encode("utf-8")).hexdigest()[:16]
            logger.info("Dry-run payment: would pay invoice %s...", digest)
            return PaymentResult(payment_id=None, confirmed=False, error="dry-run")

        url = f"{self.lnd_rest_url}/v1/channels/transactions"
        try:
            response = await self._lnd.post(
                url,
                json={"payment_request": payment_request},
                headers={"Grpc-Metadata-macaroon": self.macaroon_hex},
                timeout=self.pay_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            # The payment may still be in flight; it is not assumed successful.
            raise RailError(f"LND payment timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RailError(f"LND payment request failed: {exc}") from exc
        if response.status_code != 200:
            raise RailError(f"LND returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RailError("LND returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise RailError("LND returned invalid response")

        payment_error = payload.get("payment_error")
        if payment_error:
            logger.warning("LND payment failed: %s", payment_error)
            return PaymentResult(
                payment_id=_decode_hash(payload.get("payment_hash")),
                confirmed=False,
                error=str(payment_error),
            )

        payment_id = _decode_hash(payload.get("payment_hash"))
        preimage = payload.get("payment_preimage")
        if payment_id is None or not preimage:
            return PaymentResult(payment_id=payment_id, confirmed=False, error="missing payment hash or preimage")
        logger.info("Lightning payment confirmed (hash=%s)", payment_id)
        return PaymentResult(payment_id=payment_id, confirmed=True)

    async def pay_recipient(self, address: str, amount_msat: int) -> PaymentResult:
        if amount_msat <= 0:
            logger.info("Skipping zero-value payment to %s", address)
            return PaymentResult(payment_id=None, confirmed=True)
        endpoint = await self.resolve_recipient(address)
        payment_request = await self.request_invoice(endpoint, amount_msat)
        return await self.pay(payment_request)

    async def aclose(self) -> None:
        await self._http.aclose()
        await self._lnd.aclose()
