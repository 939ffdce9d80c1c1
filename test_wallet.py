#!/usr/bin/env python3
"""
Tests for the BacklinkMesh Lightning wallet.

Standalone async script, also collectable by pytest. LNbits is faked with an
httpx.MockTransport holding a tiny in-memory payment ledger.
"""

import asyncio
import json
import os
import sys
import tempfile

import httpx

from backlinkmesh.wallet import PaymentError, get_provider
from backlinkmesh.wallet.lnbits import LNbitsProvider, configure_lnbits, load_lightning_config

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

results: list[tuple[str, bool, str]] = []


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))
    assert passed, f"{name}: {detail}"


API_KEY = "admin-key"


def fake_lnbits() -> tuple[httpx.MockTransport, dict]:
    """An LNbits wallet that settles any invoice it issued itself."""
    ledger: dict[str, dict] = {}
    seen: dict = {"requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["requests"].append((request.method, request.url.path))
        if request.headers.get("X-Api-Key") != API_KEY:
            return httpx.Response(401, json={"detail": "Invalid API key"})
        path = request.url.path

        if request.method == "POST" and path == "/api/v1/payments":
            body = json.loads(request.content)
            if not body["out"]:
                payment_hash = f"hash{len(ledger) + 1}"
                ledger[payment_hash] = {
                    "bolt11": f"lnbc{body['amount']}n1{payment_hash}",
                    "amount": body["amount"] * 1000,
                    "paid": False,
                    "memo": body.get("memo", ""),
                }
                return httpx.Response(201, json={
                    "payment_hash": payment_hash,
                    "payment_request": ledger[payment_hash]["bolt11"],
                })
            for payment_hash, entry in ledger.items():
                if entry["bolt11"] == body["bolt11"]:
                    entry["paid"] = True
                    entry["preimage"] = "ff" * 32
                    return httpx.Response(201, json={"payment_hash": payment_hash, "checking_id": payment_hash})
            return httpx.Response(400, json={"detail": "Invoice not payable"})

        if request.method == "GET" and path.startswith("/api/v1/payments/"):
            entry = ledger.get(path.rsplit("/", 1)[-1])
            if entry is None:
                return httpx.Response(404, json={"detail": "Payment does not exist."})
            return httpx.Response(200, json={
                "paid": entry["paid"],
                "preimage": entry.get("preimage"),
                "details": {"amount": entry["amount"], "memo": entry["memo"]},
            })

        if request.method == "GET" and path == "/api/v1/wallet":
            return httpx.Response(200, json={"name": "test", "balance": 123_456_789})

        return httpx.Response(404, json={"detail": "Not found"})

    return httpx.MockTransport(handler), seen


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

async def test_invoice_lifecycle() -> None:
    transport, seen = fake_lnbits()
    wallet = LNbitsProvider("https://lnbits.test/", API_KEY, transport=transport)
    report("base url normalised", wallet.base_url == "https://lnbits.test")

    invoice = await wallet.create_invoice(2500, memo="BacklinkMesh link placement")
    report("invoice created", invoice.payment_request.startswith("lnbc2500") and invoice.amount_sats == 2500,
           invoice.payment_request)

    status = await wallet.check_payment(invoice.payment_hash)
    report("fresh invoice unpaid", status.paid is False)
    report("msat amount reported in sats", status.amount_sats == 2500, str(status.amount_sats))

    paid = await wallet.pay_invoice(invoice.payment_request)
    report("payment hash returned", paid.payment_hash == invoice.payment_hash)
    report("preimage read from payment record", paid.preimage == "ff" * 32, str(paid.preimage))

    status = await wallet.check_payment(invoice.payment_hash)
    report("invoice now paid", status.paid and status.preimage == "ff" * 32)
    report("lookup hit the payment record", ("GET", f"/api/v1/payments/{invoice.payment_hash}") in seen["requests"])


async def test_balance() -> None:
    transport, _ = fake_lnbits()
    wallet = LNbitsProvider("https://lnbits.test", API_KEY, transport=transport)
    balance = await wallet.get_balance()
    report("balance in whole sats", balance == 123_456, str(balance))


async def test_errors() -> None:
    transport, _ = fake_lnbits()
    wallet = LNbitsProvider("https://lnbits.test", API_KEY, transport=transport)

    try:
        await wallet.create_invoice(0)
        report("zero amount rejected", False, "no exception")
    except ValueError:
        report("zero amount rejected", True)

    try:
        await wallet.pay_invoice("lnbc-not-ours")
        report("refused payment raises", False, "no exception")
    except PaymentError as e:
        report("refused payment raises", "400" in str(e) and "not payable" in str(e), str(e))

    try:
        await wallet.check_payment("missing")
        report("unknown hash raises", False, "no exception")
    except PaymentError as e:
        report("unknown hash raises", "404" in str(e), str(e))

    wrong_key = LNbitsProvider("https://lnbits.test", "nope", transport=transport)
    try:
        await wrong_key.get_balance()
        report("bad key raises", False, "no exception")
    except PaymentError as e:
        report("bad key raises", "401" in str(e), str(e))

    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    down = LNbitsProvider("https://lnbits.test", API_KEY, transport=httpx.MockTransport(offline))
    try:
        await down.get_balance()
        report("unreachable raises", False, "no exception")
    except PaymentError as e:
        report("unreachable raises", "unreachable" in str(e), str(e))


def test_configuration() -> None:
    if os.environ.get("BACKLINKMESH_LNBITS_URL") and os.environ.get("BACKLINKMESH_LNBITS_KEY"):
        report("environment configures lnbits", configure_lnbits("/nonexistent.json") is not None)
        return

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "lightning.json")
        report("missing file is unconfigured", configure_lnbits(path) is None)

        with open(path, "w") as f:
            json.dump({"provider": "lnbits", "baseUrl": "https://lnbits.test/", "apiKey": API_KEY}, f)
        provider = configure_lnbits(path)
        report("file configures lnbits", provider is not None and provider.base_url == "https://lnbits.test")
        report("provider registered", get_provider("lnbits") is provider)

        with open(path, "w") as f:
            json.dump({"provider": "strike", "api_key": "x"}, f)
        report("unsupported provider ignored", configure_lnbits(path) is None)

        with open(path, "w") as f:
            f.write("{not json")
        report("unreadable file ignored", load_lightning_config(path) is None)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}BacklinkMesh Wallet Tests{RESET}\n")

    tests = [
        ("1. Invoice lifecycle", test_invoice_lifecycle),
        ("2. Balance", test_balance),
        ("3. Errors", test_errors),
        ("4. Configuration", test_configuration),
    ]

    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            outcome = test_fn()
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            results.append((label, False, f"EXCEPTION: {e}"))

    passed = sum(1 for _, ok, _ in results if ok)
    total = len(results)
    print(f"\n{'─' * 40}")
    if passed == total:
        print(f"{GREEN}{BOLD}All {total} checks passed.{RESET}")
    else:
        print(f"{RED}{BOLD}{total - passed}/{total} checks failed.{RESET}")

    sys.exit(0 if passed == total else 1)


if __name__ == "__main__":
    asyncio.run(main())
