#!/usr/bin/env python3
"""
Tests for the BacklinkMesh MCP tools.

Standalone async script, also collectable by pytest. Tool coroutines are
called directly with their pydantic inputs while two agent contexts take
turns on one in-process relay, walking a reciprocal link swap from site
registration to a verified placement.
"""

import asyncio
import functools
import json
import os
import sys
import tempfile

import httpx
from pydantic import ValidationError

from backlinkmesh.app import build_context, set_context
from backlinkmesh.identity import Credentials
from backlinkmesh.mcp import tools
from backlinkmesh.mcp.schemas import (
    AnnouncePlacementInput,
    DealIdInput,
    ListBidsInput,
    ListDealsInput,
    NegotiateAction,
    NegotiateInput,
    PayInput,
    PostBidInput,
    RegisterSiteInput,
    RespondToBidInput,
    SiteUrlInput,
    VerifyPlacementInput,
)
from backlinkmesh.models import DealStatus
from backlinkmesh.network import RelayPool
from backlinkmesh.relay import create_relay_app
from backlinkmesh.verify import FetchError, verify_backlink

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


def static_fetch(pages: dict[str, str]):
    async def fetch(url: str) -> tuple[str, str]:
        if url not in pages:
            raise FetchError("HTTP 404")
        return pages[url], url
    return fetch


async def call(tool, *args) -> dict:
    return json.loads(await tool(*args))


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

def test_input_schemas() -> None:
    site = RegisterSiteInput(url="  https://acme.com ", name="Acme", city="Austin", state="TX",
                             industry="plumbing")
    report("whitespace stripped", site.url == "https://acme.com")

    for label, kwargs in (
        ("unknown field rejected", {"nickname": "x"}),
        ("DA above 100 rejected", {"domain_authority": 101}),
        ("empty name rejected", {"name": ""}),
    ):
        base = {"url": "https://acme.com", "name": "Acme", "city": "Austin", "state": "TX",
                "industry": "plumbing"}
        base.update(kwargs)
        try:
            RegisterSiteInput(**base)
            report(label, False, "no exception")
        except ValidationError:
            report(label, True)

    try:
        PostBidInput(type="buying", industry="hvac")
        report("unknown bid type rejected", False, "no exception")
    except ValidationError:
        report("unknown bid type rejected", True)

    action = NegotiateInput(negotiation_id="n", action="accept").action
    report("action parsed to enum", action is NegotiateAction.ACCEPT)


# ---------------------------------------------------------------------------
# Reciprocal swap through the tools
# ---------------------------------------------------------------------------

async def test_reciprocal_swap() -> None:
    pool = RelayPool(["http://relay.test"], transport=httpx.ASGITransport(app=create_relay_app()))
    pages: dict[str, str] = {}
    with tempfile.TemporaryDirectory() as tmp:
        alice = build_context(Credentials.generate(), state_path=os.path.join(tmp, "alice.json"), pool=pool)
        bob = build_context(Credentials.generate(), state_path=os.path.join(tmp, "bob.json"), pool=pool)
        for ctx in (alice, bob):
            ctx.payment = None
            ctx.engine.payment = None
            ctx.engine.verifier = functools.partial(verify_backlink, fetch=static_fetch(pages))
        try:
            set_context(alice)
            out = await call(tools.get_identity)
            report("identity tool", out["identity"] == alice.identity and out["payment_provider"] is None)

            out = await call(tools.register_site, RegisterSiteInput(
                url="https://austin-hvac.com", name="Austin HVAC", city="Austin", state="tx", industry="HVAC"))
            report("site registered", out["success"] and out["site"]["state"] == "TX", str(out))

            out = await call(tools.register_site, RegisterSiteInput(
                url="ftp://austin-hvac.com", name="Bad", city="Austin", state="TX", industry="hvac"))
            report("bad site url reported", out["success"] is False and "http" in out["error"], str(out))

            set_context(bob)
            await call(tools.register_site, RegisterSiteInput(
                url="https://dallas-hvac.com", name="Dallas HVAC", city="Dallas", state="TX",
                industry="hvac", domain_authority=40))
            out = await call(tools.post_bid, PostBidInput(
                type="offering", industry="hvac", site="https://dallas-hvac.com",
                placement="partners page", domain_authority=40))
            report("offering posted", out["success"], str(out))
            bid_id = out["bid"]["bid_id"]

            set_context(alice)
            out = await call(tools.find_matches, SiteUrlInput(url="https://austin-hvac.com"))
            report("partner found", [m["site"]["url"] for m in out["matches"]] == ["https://dallas-hvac.com"],
                   str(out))
            out = await call(tools.find_matches, SiteUrlInput(url="https://unknown.com"))
            report("unknown site reported", out["success"] is False, str(out))

            out = await call(tools.list_bids, ListBidsInput(for_site="https://austin-hvac.com"))
            report("offering listed for site", [b["bid_id"] for b in out["bids"]] == [bid_id], str(out))

            out = await call(tools.respond_to_bid, RespondToBidInput(bid_id=bid_id, text="Swap links?"))
            report("negotiation opened", out["success"] and out["deal"]["status"] == "initiated", str(out))
            nid = out["deal"]["negotiation_id"]

            set_context(bob)
            out = await call(tools.poll)
            report("bob receives inquiry", [d["negotiation_id"] for d in out["updated"]] == [nid], str(out))
            out = await call(tools.negotiate, NegotiateInput(negotiation_id=nid, action="counter"))
            report("counter without sats reported", out["success"] is False, str(out))
            await call(tools.negotiate, NegotiateInput(negotiation_id=nid, action="counter", sats=0,
                                                       terms="Dofollow swap on partner pages"))

            set_context(alice)
            await call(tools.poll)
            await call(tools.negotiate, NegotiateInput(negotiation_id=nid, action="counter", sats=0,
                                                       terms="Dofollow swap on partner pages"))

            set_context(bob)
            await call(tools.poll)
            out = await call(tools.negotiate, NegotiateInput(negotiation_id=nid, action="accept"))
            report("bob accepts as seller", out["success"] and out["deal"]["role"] == "seller", str(out))

            set_context(alice)
            await call(tools.poll)
            out = await call(tools.pay, PayInput(negotiation_id=nid, link_url="https://austin-hvac.com/",
                                                 anchor="Austin HVAC"))
            report("reciprocal pay sends link details", out["success"] and out["deal"]["status"] == "placed",
                   str(out))

            set_context(bob)
            await call(tools.poll)
            out = await call(tools.confirm_payment, DealIdInput(negotiation_id=nid))
            report("nothing to confirm on a swap", out["success"] is False, str(out))
            pages["https://dallas-hvac.com/partners"] = (
                '<a href="https://austin-hvac.com/">Austin HVAC experts</a>')
            out = await call(tools.announce_placement, AnnouncePlacementInput(
                negotiation_id=nid, live_url="https://dallas-hvac.com/partners"))
            report("placement announced", out["success"] and out["deal"]["status"] == "verifying", str(out))

            set_context(alice)
            await call(tools.poll)
            out = await call(tools.verify_placement, VerifyPlacementInput(negotiation_id=nid))
            report("placement verified", out["success"] and out["deal"]["status"] == "completed"
                   and out["verification"]["verified"], str(out))

            set_context(bob)
            await call(tools.poll)
            out = await call(tools.list_deals, ListDealsInput(status=DealStatus.COMPLETED))
            report("bob sees completed deal", out["count"] == 1 and out["deals"][0]["negotiation_id"] == nid,
                   str(out))
            out = await call(tools.get_deal, DealIdInput(negotiation_id=nid))
            report("deal detail has full log", len(out["message_log"]) == 7, str(len(out["message_log"])))
            out = await call(tools.get_deal, DealIdInput(negotiation_id="missing"))
            report("unknown deal reported", out["success"] is False)
            out = await call(tools.wallet_balance)
            report("no wallet reported", out["success"] is False and "payment provider" in out["error"])
        finally:
            set_context(None)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}BacklinkMesh MCP Tool Tests{RESET}\n")

    tests = [
        ("1. Input schemas", test_input_schemas),
        ("2. Reciprocal swap", test_reciprocal_swap),
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
