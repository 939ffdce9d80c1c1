"""
Application composition root — builds the agent context and the operations
the CLI and MCP tools share.

This is where environment and key-file lookup happen. Everything below this
module takes its collaborators explicitly.

Depends on: everything (this IS the composition root)
"""

import sys
from dataclasses import dataclass
from typing import Optional

from backlinkmesh.bids import (
    build_bid,
    matching_bids,
    post_bid,
    query_bids,
    query_sites,
    register_site,
)
from backlinkmesh.config import RELAYS
from backlinkmesh.identity import Credentials, load_or_create_credentials
from backlinkmesh.matching import rank
from backlinkmesh.models import Bid, Deal, MatchScore, SiteProfile
from backlinkmesh.negotiation import NegotiationEngine
from backlinkmesh.network import Messenger, RelayPool, RelayResult
from backlinkmesh.state import load_state, state_file_path, state_transaction
from backlinkmesh.wallet import PaymentProvider
from backlinkmesh.wallet.lnbits import configure_lnbits


@dataclass
class AgentContext:
    """Everything an agent needs to act on the network."""
    creds: Credentials
    pool: RelayPool
    messenger: Messenger
    engine: NegotiationEngine
    state_path: str
    payment: Optional[PaymentProvider] = None

    @property
    def identity(self) -> str:
        return self.creds.identity


def build_context(creds: Optional[Credentials] = None, relays: Optional[list[str]] = None,
                  state_path: Optional[str] = None,
                  payment: Optional[PaymentProvider] = None,
                  pool: Optional[RelayPool] = None) -> AgentContext:
    """Wire up an AgentContext, filling anything not given from configuration."""
    if creds is None:
        creds = load_or_create_credentials()
    if pool is None:
        pool = RelayPool(relays if relays is not None else RELAYS)
    if payment is None:
        payment = configure_lnbits()
    state_path = state_path or state_file_path()

    with state_transaction(state_path) as state:
        if state.identity != creds.identity:
            if state.identity:
                print(f"[BacklinkMesh] Warning: state file belonged to {state.identity[:16]}..., "
                      f"now used by {creds.identity[:16]}...", file=sys.stderr)
            state.identity = creds.identity

    messenger = Messenger(creds, pool)
    engine = NegotiationEngine(creds, messenger, payment=payment, state_path=state_path)
    return AgentContext(creds=creds, pool=pool, messenger=messenger, engine=engine,
                        state_path=state_path, payment=payment)


_context: Optional[AgentContext] = None


def get_context() -> AgentContext:
    """The process-wide context, built on first use."""
    global _context
    if _context is None:
        _context = build_context()
    return _context


def set_context(ctx: Optional[AgentContext]) -> None:
    global _context
    _context = ctx


# =============================================================================
# Shared operations
# =============================================================================

async def register_own_site(ctx: AgentContext, site: SiteProfile) -> list[RelayResult]:
    """Publish a site registration and remember it as ours."""
    results = await register_site(ctx.pool, ctx.creds, site)
    with state_transaction(ctx.state_path) as state:
        state.sites[site.url] = site
        if site.url not in state.own_sites:
            state.own_sites.append(site.url)
    return results


async def publish_bid(ctx: AgentContext, bid_type: str, industry: str, sats: int = 0,
                      expiry_days: Optional[float] = None, **fields) -> tuple[Bid, list[RelayResult]]:
    """Build, validate and post a bid, remembering it locally."""
    bid = build_bid(bid_type, industry, sats=sats, expiry_days=expiry_days, **fields)
    results = await post_bid(ctx.pool, ctx.creds, bid)
    with state_transaction(ctx.state_path) as state:
        state.posted_bids[bid.bid_id] = bid
    return bid, results


async def find_site(ctx: AgentContext, url: str) -> Optional[SiteProfile]:
    """A site profile from local state, falling back to the relays."""
    site = load_state(ctx.state_path).sites.get(url)
    if site is not None:
        return site
    for candidate in await query_sites(ctx.pool):
        if candidate.url == url:
            return candidate
    return None


async def find_matches(ctx: AgentContext, url: str) -> list[MatchScore]:
    """Rank every registered site as a link partner for ``url``.

    Raises:
        ValueError: ``url`` is not a known site.
    """
    requester = await find_site(ctx, url)
    if requester is None:
        raise ValueError(f"Unknown site: {url} (register it first)")
    candidates = await query_sites(ctx.pool)
    with state_transaction(ctx.state_path) as state:
        for site in candidates:
            if site.url not in state.own_sites:
                state.sites[site.url] = site
    return rank(requester, candidates)


async def find_bids_for_site(ctx: AgentContext, url: str) -> list[Bid]:
    """Active bids on the relays that ``url`` could take up."""
    site = await find_site(ctx, url)
    if site is None:
        raise ValueError(f"Unknown site: {url} (register it first)")
    return matching_bids(await query_bids(ctx.pool), site)


async def find_bid(ctx: AgentContext, bid_id: str) -> Optional[Bid]:
    for bid in await query_bids(ctx.pool):
        if bid.bid_id == bid_id:
            return bid
    return None


def deal_summary(deal: Deal, me: str) -> dict:
    """The parts of a deal worth showing at a glance."""
    if deal.buyer:
        role = "buyer" if deal.buyer == me else "seller"
    else:
        role = None
    pending = sum(1 for e in deal.message_log if not e.applied)
    return {
        "negotiation_id": deal.negotiation_id,
        "status": deal.status.value if deal.status else None,
        "peer": deal.peer_of(me),
        "role": role,
        "sats": deal.agreed_terms.sats,
        "terms": deal.agreed_terms.terms,
        "regarding_bid_id": deal.regarding_bid_id,
        "live_url": deal.agreed_terms.live_url,
        "failure_reason": deal.failure_reason,
        "pending_messages": pending,
        "updated_at": deal.updated_at,
    }


async def respond_to_bid(ctx: AgentContext, bid_id: str, text: str = "") -> Deal:
    """Open a negotiation with the author of an active bid."""
    bid = await find_bid(ctx, bid_id)
    if bid is None or not bid.author:
        raise ValueError(f"No active bid {bid_id}")
    return await ctx.engine.start(bid.author, regarding_bid_id=bid.bid_id, text=text,
                                  expires_at=bid.expiry)


# =============================================================================
# MCP over stdio
# =============================================================================

async def run_mcp_stdio() -> None:
    """Serve the agent's MCP tools over stdin/stdout."""
    from mcp.server.stdio import stdio_server

    from backlinkmesh.mcp import mcp
    import backlinkmesh.mcp.tools  # noqa: F401  registers the tools

    ctx = get_context()
    print(f"[BacklinkMesh] MCP agent {ctx.identity[:20]}... on {len(ctx.pool.relays)} relay(s)",
          file=sys.stderr)
    async with stdio_server() as (read_stream, write_stream):
        await mcp._mcp_server.run(
            read_stream,
            write_stream,
            mcp._mcp_server.create_initialization_options(),
        )
