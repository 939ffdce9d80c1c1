"""
Command-line interface.

    backlinkmesh identity
    backlinkmesh register --url https://acme.com --name Acme --city Austin --state TX --industry plumbing
    backlinkmesh match --url https://acme.com
    backlinkmesh watch --industry plumbing --type seeking
    backlinkmesh verify https://partner.com/links acme.com --dofollow
    backlinkmesh relay --port 8300

Results go to stdout as JSON (reports as text, ``watch`` as one JSON line
per bid). Errors print one line to stderr and exit with status 1. A failed
verification prints its report, adds a one-line summary on stderr, and
exits with status 2.

Depends on: app, bids, models, state, verify, negotiation, relay, wallet
"""

import argparse
import asyncio
import json
import sys
import time
from typing import Optional

import anyio

from backlinkmesh.config import DEFAULT_RELAY_PORT, BATCH_VERIFY_DELAY, RELAY_POLL_INTERVAL
from backlinkmesh.models import (
    BidRequirements,
    LinkConstraints,
    OfferRestrictions,
    SiteProfile,
    VerificationResult,
)
from backlinkmesh.network import PublishError
from backlinkmesh.verify import BatchCheck, FetchError, batch_verify, generate_report, verify_backlink
from backlinkmesh.wallet import PaymentError


def _print(data) -> None:
    print(json.dumps(data, indent=2))


def _constraints(args: argparse.Namespace) -> LinkConstraints:
    return LinkConstraints(
        require_dofollow=args.dofollow,
        required_anchor_substring=args.anchor,
        required_exact_href=args.exact,
    )


def load_batch_file(path: str) -> list[BatchCheck]:
    """Read a batch-verify file: a JSON list of checks.

    Each item needs page_url and target_domain, and may carry
    require_dofollow, anchor and exact_href.
    """
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of checks")
    checks = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("page_url") or not item.get("target_domain"):
            raise ValueError(f"{path}: check {i} needs page_url and target_domain")
        checks.append(BatchCheck(
            page_url=item["page_url"],
            target_domain=item["target_domain"],
            constraints=LinkConstraints(
                require_dofollow=bool(item.get("require_dofollow", False)),
                required_anchor_substring=item.get("anchor"),
                required_exact_href=item.get("exact_href"),
            ),
        ))
    return checks


# =============================================================================
# Commands
# =============================================================================

async def _cmd_identity(args) -> int:
    from backlinkmesh.app import get_context
    ctx = get_context()
    _print({
        "identity": ctx.identity,
        "relays": ctx.pool.relays,
        "payment_provider": ctx.payment.name if ctx.payment else None,
    })
    return 0


async def _cmd_register(args) -> int:
    from backlinkmesh.app import get_context, register_own_site
    from backlinkmesh.state import site_to_dict

    site = SiteProfile(
        url=args.url,
        name=args.name,
        city=args.city,
        state=args.state.upper(),
        industry=args.industry.lower(),
        domain_authority=args.da,
        link_pages=args.link_page or [],
        looking_for=args.looking_for or [],
    )
    results = await register_own_site(get_context(), site)
    _print({"site": site_to_dict(site), "relays": [r.relay_url for r in results if r.success]})
    return 0


async def _cmd_sites(args) -> int:
    from backlinkmesh.app import get_context
    from backlinkmesh.bids import query_sites
    from backlinkmesh.state import site_to_dict

    sites = await query_sites(get_context().pool, industry=args.industry, state=args.state)
    _print([site_to_dict(s) for s in sites])
    return 0


async def _cmd_match(args) -> int:
    from backlinkmesh.app import find_matches, get_context
    from backlinkmesh.state import site_to_dict

    matches = await find_matches(get_context(), args.url)
    _print([{"score": m.score, "site": site_to_dict(m.site)} for m in matches])
    return 0


async def _cmd_bids(args) -> int:
    from backlinkmesh.app import find_bids_for_site, get_context
    from backlinkmesh.bids import query_bids
    from backlinkmesh.state import bid_to_dict

    ctx = get_context()
    if args.for_site:
        bids = await find_bids_for_site(ctx, args.for_site)
    else:
        bids = await query_bids(ctx.pool, industry=args.industry, bid_type=args.type)
    _print([bid_to_dict(b) for b in bids])
    return 0


async def _cmd_watch(args) -> int:
    from backlinkmesh.app import get_context
    from backlinkmesh.bids import watch_bids
    from backlinkmesh.state import bid_to_dict

    async def _show(bid) -> None:
        print(json.dumps(bid_to_dict(bid)), flush=True)

    stop = asyncio.Event()
    if args.seconds:
        asyncio.get_running_loop().call_later(args.seconds, stop.set)
    since = args.since if args.since is not None else int(time.time())
    print("[BacklinkMesh] Watching for bids (Ctrl-C to stop)", file=sys.stderr)
    await watch_bids(get_context().pool, _show, industry=args.industry, bid_type=args.type,
                     since=since, interval=args.interval, stop=stop)
    return 0


async def _cmd_bid(args) -> int:
    from backlinkmesh.app import get_context, publish_bid
    from backlinkmesh.state import bid_to_dict

    if args.type == "seeking":
        fields = {
            "target_site": args.target_site,
            "requirements": BidRequirements(
                min_domain_authority=args.min_da,
                states=args.states or [],
                link_type=args.link_type,
            ),
        }
    else:
        fields = {
            "site": args.site,
            "placement": args.placement,
            "domain_authority": args.da,
            "restrictions": OfferRestrictions(no_competitors=args.no_competitors),
        }
    bid, results = await publish_bid(
        get_context(), args.type, args.industry, sats=args.sats, expiry_days=args.days,
        payment_terms=args.payment_terms, **fields,
    )
    _print({"bid": bid_to_dict(bid), "relays": [r.relay_url for r in results if r.success]})
    return 0


async def _cmd_respond(args) -> int:
    from backlinkmesh.app import deal_summary, get_context, respond_to_bid

    ctx = get_context()
    deal = await respond_to_bid(ctx, args.bid_id, args.text)
    _print(deal_summary(deal, ctx.identity))
    return 0


def _require(value: Optional[str], flag: str, kind: str) -> str:
    if not value:
        raise ValueError(f"{kind} requires {flag}")
    return value


async def _cmd_send(args) -> int:
    from backlinkmesh.app import deal_summary, get_context

    ctx = get_context()
    engine = ctx.engine
    kind = args.kind
    if kind == "inquiry":
        deal = await engine.start(_require(args.to, "--to", kind), regarding_bid_id=args.bid or "",
                                  text=args.text or "", negotiation_id=args.id)
    else:
        nid = _require(args.id, "--id", kind)
        if kind == "counter":
            if args.sats is None:
                raise ValueError("counter requires --sats")
            deal = await engine.counter(nid, args.sats, args.terms or "")
        elif kind == "accept":
            deal = await engine.accept(nid, args.invoice)
        elif kind == "paid":
            deal = await engine.announce_payment(nid, _require(args.url, "--url", kind), args.anchor or "")
        elif kind == "placed":
            deal = await engine.announce_placement(nid, _require(args.live_url, "--live-url", kind))
        else:
            deal = await engine.reject(nid, args.reason or "")
    _print(deal_summary(deal, ctx.identity))
    return 0


async def _cmd_poll(args) -> int:
    from backlinkmesh.app import deal_summary, get_context

    ctx = get_context()
    deals = await ctx.engine.poll()
    expired = ctx.engine.expire_stale()
    _print({"updated": [deal_summary(d, ctx.identity) for d in deals], "expired": expired})
    return 0


async def _cmd_deals(args) -> int:
    from backlinkmesh.app import deal_summary, get_context
    from backlinkmesh.state import deal_to_dict

    ctx = get_context()
    if args.id:
        _print(deal_to_dict(ctx.engine.get_deal(args.id)))
        return 0
    deals = ctx.engine.deals()
    if args.open:
        deals = [d for d in deals if not d.is_terminal]
    _print([deal_summary(d, ctx.identity) for d in deals])
    return 0


async def _cmd_pay(args) -> int:
    from backlinkmesh.app import deal_summary, get_context

    ctx = get_context()
    deal = await ctx.engine.pay(args.id, args.url, args.anchor or "")
    _print(deal_summary(deal, ctx.identity))
    return 0


async def _cmd_confirm(args) -> int:
    from backlinkmesh.app import deal_summary, get_context

    ctx = get_context()
    deal = await ctx.engine.confirm_payment(args.id)
    _print(deal_summary(deal, ctx.identity))
    return 0


async def _cmd_check(args) -> int:
    from backlinkmesh.app import deal_summary, get_context

    ctx = get_context()
    deal = await ctx.engine.verify_placement(args.id, True if args.dofollow else None)
    _print(deal_summary(deal, ctx.identity))
    if deal.verification_result:
        print(generate_report([deal.verification_result]))
    return 0


def _finish_verification(results: list[VerificationResult]) -> int:
    """Print the report; on any failure also say so on stderr and return 2."""
    print(generate_report(results))
    failed = [r for r in results if not r.verified]
    if not failed:
        return 0
    first = failed[0]
    print(f"Verification failed: {len(failed)} of {len(results)} checks "
          f"({first.page_url}: {first.reason or 'no matching link'})", file=sys.stderr)
    return 2


async def _cmd_verify(args) -> int:
    result = await verify_backlink(args.page_url, args.target_domain, _constraints(args))
    return _finish_verification([result])


async def _cmd_batch_verify(args) -> int:
    checks = load_batch_file(args.file)
    return _finish_verification(await batch_verify(checks, delay=args.delay))


async def _cmd_balance(args) -> int:
    from backlinkmesh.app import get_context

    ctx = get_context()
    if ctx.payment is None:
        raise PaymentError("No payment provider configured")
    _print({"provider": ctx.payment.name, "balance_sats": await ctx.payment.get_balance()})
    return 0


COMMANDS = {
    "identity": _cmd_identity,
    "register": _cmd_register,
    "sites": _cmd_sites,
    "match": _cmd_match,
    "bids": _cmd_bids,
    "bid": _cmd_bid,
    "watch": _cmd_watch,
    "respond": _cmd_respond,
    "send": _cmd_send,
    "poll": _cmd_poll,
    "deals": _cmd_deals,
    "pay": _cmd_pay,
    "confirm": _cmd_confirm,
    "check": _cmd_check,
    "verify": _cmd_verify,
    "batch-verify": _cmd_batch_verify,
    "balance": _cmd_balance,
}


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backlinkmesh", description="BacklinkMesh agent")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("identity", help="Show this agent's identity")

    p = sub.add_parser("register", help="Register a site you manage")
    p.add_argument("--url", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--city", required=True)
    p.add_argument("--state", required=True)
    p.add_argument("--industry", required=True)
    p.add_argument("--da", type=int, default=None, help="Domain authority 0-100")
    p.add_argument("--link-page", action="append", help="Page where partner links go (repeatable)")
    p.add_argument("--looking-for", action="append", help="Industry you want links from (repeatable)")

    p = sub.add_parser("sites", help="List registered sites")
    p.add_argument("--industry")
    p.add_argument("--state")

    p = sub.add_parser("match", help="Rank link partners for one of your sites")
    p.add_argument("--url", required=True)

    p = sub.add_parser("bids", help="List active bids")
    p.add_argument("--industry")
    p.add_argument("--type", choices=["seeking", "offering"])
    p.add_argument("--for-site", help="Only bids this site could take up")

    p = sub.add_parser("watch", help="Stream new active bids as JSON lines")
    p.add_argument("--industry")
    p.add_argument("--type", choices=["seeking", "offering"])
    p.add_argument("--since", type=int, default=None, help="Unix time to start from (default now)")
    p.add_argument("--interval", type=float, default=RELAY_POLL_INTERVAL, help="Seconds between relay polls")
    p.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")

    p = sub.add_parser("bid", help="Post a bid")
    p.add_argument("type", choices=["seeking", "offering"])
    p.add_argument("--industry", required=True)
    p.add_argument("--sats", type=int, default=0)
    p.add_argument("--days", type=float, default=None, help="Days until the bid expires (default 7)")
    p.add_argument("--payment-terms", default="")
    p.add_argument("--target-site", help="seeking: the site to be linked")
    p.add_argument("--min-da", type=int, default=0, help="seeking: minimum DA of the linking site")
    p.add_argument("--states", action="append", help="seeking: acceptable state (repeatable)")
    p.add_argument("--link-type", default="dofollow")
    p.add_argument("--site", help="offering: the site carrying the link")
    p.add_argument("--placement", help="offering: where on the page")
    p.add_argument("--da", type=int, default=None, help="offering: your site's DA")
    p.add_argument("--no-competitors", action="store_true")

    p = sub.add_parser("respond", help="Open a negotiation on a bid")
    p.add_argument("bid_id")
    p.add_argument("--text", default="")

    p = sub.add_parser("send", help="Send a negotiation message")
    p.add_argument("kind", choices=["inquiry", "counter", "accept", "paid", "placed", "reject"])
    p.add_argument("--id", help="Negotiation id (new one generated for inquiry if omitted)")
    p.add_argument("--to", help="inquiry: peer identity")
    p.add_argument("--bid", help="inquiry: bid this is about")
    p.add_argument("--text")
    p.add_argument("--sats", type=int)
    p.add_argument("--terms")
    p.add_argument("--invoice", help="accept: your own invoice instead of creating one")
    p.add_argument("--url", help="paid: URL the link must point at")
    p.add_argument("--anchor")
    p.add_argument("--live-url", help="placed: page carrying the link")
    p.add_argument("--reason")

    sub.add_parser("poll", help="Fetch and apply new negotiation messages")

    p = sub.add_parser("deals", help="List deals, or show one with --id")
    p.add_argument("--id")
    p.add_argument("--open", action="store_true", help="Hide completed and failed deals")

    p = sub.add_parser("pay", help="Pay for a deal as the buyer")
    p.add_argument("id")
    p.add_argument("--url", help="URL the link must point at (sends link details too)")
    p.add_argument("--anchor")

    p = sub.add_parser("confirm", help="As the seller, check the invoice was paid")
    p.add_argument("id")

    p = sub.add_parser("check", help="Verify the placement announced on a deal")
    p.add_argument("id")
    p.add_argument("--dofollow", action="store_true", help="Require dofollow regardless of terms")

    p = sub.add_parser("verify", help="Check a page for a link to a domain")
    p.add_argument("page_url")
    p.add_argument("target_domain")
    p.add_argument("--dofollow", action="store_true")
    p.add_argument("--anchor", help="Required anchor text substring")
    p.add_argument("--exact", help="Required exact link URL")

    p = sub.add_parser("batch-verify", help="Verify every check in a JSON file")
    p.add_argument("file")
    p.add_argument("--delay", type=float, default=BATCH_VERIFY_DELAY)

    sub.add_parser("balance", help="Lightning wallet balance")

    p = sub.add_parser("relay", help="Run a relay")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=DEFAULT_RELAY_PORT)
    p.add_argument("--store", help="JSON backup file for events")

    sub.add_parser("mcp", help="Serve MCP tools over stdio")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "relay":
        from backlinkmesh.relay import serve_relay
        serve_relay(args.host, args.port, args.store)
        return 0

    if args.command == "mcp":
        from backlinkmesh.app import run_mcp_stdio
        anyio.run(run_mcp_stdio)
        return 0

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except (ValueError, OSError, PublishError, PaymentError, FetchError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
