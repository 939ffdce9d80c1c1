"""
LNbits Lightning provider — invoices, payments, balance over the LNbits REST API.

Configured from BACKLINKMESH_LNBITS_URL / BACKLINKMESH_LNBITS_KEY, or from
.backlinkmesh/lightning.json:

    {"provider": "lnbits", "base_url": "https://legend.lnbits.com", "api_key": "..."}

Depends on: config, wallet/__init__
"""

import json
import os
import sys
from typing import Optional

import httpx

from backlinkmesh.config import (
    HOME_DIR_NAME,
    LIGHTNING_CONFIG_NAME,
    LNBITS_API_KEY,
    LNBITS_TIMEOUT,
    LNBITS_URL,
)
from backlinkmesh.wallet import (
    Invoice,
    PaymentError,
    PaymentProvider,
    PaymentResult,
    PaymentStatus,
    register_provider,
)


class LNbitsProvider(PaymentProvider):
    """Talks to one LNbits wallet with its API key."""

    name = "lnbits"

    def __init__(self, base_url: str, api_key: str, timeout: float = LNBITS_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        headers = {"X-Api-Key": self.api_key}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, self.base_url + path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise PaymentError(f"LNbits unreachable: {e}") from e
        if resp.status_code >= 400:
            detail = ""
            try:
                detail = resp.json().get("detail", "")
            except (ValueError, AttributeError):
                pass
            raise PaymentError(f"LNbits error: HTTP {resp.status_code} {detail}".rstrip())
        try:
            return resp.json()
        except ValueError as e:
            raise PaymentError("LNbits returned invalid JSON") from e

    async def create_invoice(self, amount_sats: int, memo: str = "") -> Invoice:
        if amount_sats <= 0:
            raise ValueError("Invoice amount must be positive")
        data = await self._request("POST", "/api/v1/payments", {
            "out": False,
            "amount": amount_sats,
            "memo": memo,
            "unit": "sat",
        })
        return Invoice(
            payment_request=data.get("payment_request") or data.get("bolt11", ""),
            payment_hash=data["payment_hash"],
            amount_sats=amount_sats,
            memo=memo,
        )

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        data = await self._request("POST", "/api/v1/payments", {
            "out": True,
            "bolt11": payment_request,
        })
        payment_hash = data["payment_hash"]
        # The pay response carries no preimage; the payment record does
        status = await self.check_payment(payment_hash)
        return PaymentResult(payment_hash=payment_hash, preimage=status.preimage or data.get("checking_id"))

    async def check_payment(self, payment_hash: str) -> PaymentStatus:
        data = await self._request("GET", f"/api/v1/payments/{payment_hash}")
        amount = data.get("amount")
        if amount is None and isinstance(data.get("details"), dict):
            amount = data["details"].get("amount")
        return PaymentStatus(
            paid=bool(data.get("paid")),
            preimage=data.get("preimage"),
            amount_sats=abs(int(amount)) // 1000 if amount is not None else None,
        )

    async def get_balance(self) -> int:
        data = await self._request("GET", "/api/v1/wallet")
        return int(data.get("balance", 0)) // 1000


def load_lightning_config(path: Optional[str] = None) -> Optional[dict]:
    """Read lightning.json, or None if absent or unreadable."""
    path = path or os.path.join(os.getcwd(), HOME_DIR_NAME, LIGHTNING_CONFIG_NAME)
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"[BacklinkMesh] Warning: could not read {path}: {e}", file=sys.stderr)
        return None
    return data if isinstance(data, dict) else None


def configure_lnbits(config_path: Optional[str] = None) -> Optional[LNbitsProvider]:
    """Build and register an LNbits provider from env or lightning.json.

    Returns None when Lightning is not configured.
    """
    base_url, api_key = LNBITS_URL, LNBITS_API_KEY
    if not (base_url and api_key):
        cfg = load_lightning_config(config_path) or {}
        if cfg.get("provider", "lnbits") != "lnbits":
            print(f"[BacklinkMesh] Unsupported Lightning provider: {cfg.get('provider')}", file=sys.stderr)
            return None
        base_url = cfg.get("base_url") or cfg.get("baseUrl") or ""
        api_key = cfg.get("api_key") or cfg.get("apiKey") or ""
    if not (base_url and api_key):
        return None
    provider = LNbitsProvider(base_url, api_key)
    register_provider(provider)
    return provider
