"""
All MCP tool definitions for a BacklinkMesh agent.

Every tool returns a JSON string. Failures come back as
{"success": false, "error": ...} rather than raising.

Depends on: mcp/__init__, mcp/schemas, app, models, state, verify,
            negotiation, network, wallet
"""

import json

from backlinkmesh.app import (
    deal_summary,
    find_bids_for_site,
    find_matches as _find_matches,
    get_context,
    publish_bid,
    register_own_site,
    respond_to_bid as _respond_to_bid,
)
from backlinkmesh.bids import query_bids, query_sites
from backlinkmesh.mcp import mcp
from backlinkmesh.mcp.schemas import (
    AnnouncePlacementInput,
    DealIdInput,
    ListBidsInput,
    ListDealsInput,
    ListSitesInput,
    NegotiateAction,
    NegotiateInput,
    PayInput,
    PostBidInput,
    RegisterSiteInput,
    RespondToBidInput,
    SiteUrlInput,
    StartNegotiationInput,
    VerifyLinkInput,
    VerifyPlacementInput,
)
from backlinkmesh.models import (
    BidRequirements,
    BidType,
    LinkConstraints,
    OfferRestrictions,
    SiteProfile,
)
from backlinkmesh.network import PublishError
from backlinkmesh.state import bid_to_dict, deal_to_dict, site_to_dict, verification_to_dict
from backlinkmesh.verify import verify_backlink
from backlinkmesh.wallet import PaymentError


def _error(e: Exception) -> str:
    return json.dumps({"success": False, "error": str(e)})


def _published(results) -> list[str]:
    return [r.relay_url for r in results if r.success]


# =============================================================================
# Identity
# =============================================================================

@mcp.tool(
    name="backlinkmesh_get_identity",
    annotations={
        "title": "Get Agent Identity",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def get_identity() -> str:
    """Get this agent's identity string, relays and payment setup.

    Returns:
        JSON with the identity other agents use to message you.
    """
    ctx = get_context()
    return json.dumps({
        "identity": ctx.identity,
        "relays": ctx.pool.relays,
        "payment_provider": ctx.payment.name if ctx.payment else None,
    })


# =============================================================================
# Sites & matching
# =============================================================================

@mcp.tool(
    name="backlinkmesh_register_site",
    annotations={
        "title": "Register Site",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def register_site(params: RegisterSiteInput) -> str:
    """Publish a registration for a site you manage so other agents can match with it.

    Re-registering the same URL replaces the earlier registration.

    Args:
        params: Site URL, name, location, industry and optional DA / link pages.

    Returns:
        JSON with the relays that accepted the registration.
    """
    ctx = get_context()
    site = SiteProfile(
        url=params.url,
        name=params.name,
        city=params.city,
        state=params.state.upper(),
        industry=params.industry.lower(),
        domain_authority=params.domain_authority,
        link_pages=params.link_pages,
        looking_for=params.looking_for,
        country=params.country,
    )
    try:
        results = await register_own_site(ctx, site)
    except (ValueError, PublishError) as e:
        return _error(e)
    return json.dumps({"success": True, "site": site_to_dict(site), "relays": _published(results)})


@mcp.tool(
    name="backlinkmesh_list_sites",
    annotations={
        "title": "List Registered Sites",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def list_sites(params: ListSitesInput) -> str:
    """List sites registered on the relays, optionally by industry or state."""
    ctx = get_context()
    sites = await query_sites(ctx.pool, industry=params.industry, state=params.state)
    return json.dumps({"count": len(sites), "sites": [site_to_dict(s) for s in sites]})


@mcp.tool(
    name="backlinkmesh_find_matches",
    annotations={
        "title": "Find Link Partners",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def find_matches(params: SiteUrlInput) -> str:
    """Rank registered sites as link partners for one of your sites.

    Scores favour the same state, a different city, the same or a related
    industry, and higher domain authority. Weak matches are left out.

    Args:
        params: URL of your registered site.

    Returns:
        JSON list of {site, score}, best first.
    """
    ctx = get_context()
    try:
        matches = await _find_matches(ctx, params.url)
    except ValueError as e:
        return _error(e)
    return json.dumps({
        "count": len(matches),
        "matches": [{"score": m.score, "site": site_to_dict(m.site)} for m in matches],
    })


# =============================================================================
# Bids
# =============================================================================

@mcp.tool(
    name="backlinkmesh_post_bid",
    annotations={
        "title": "Post Bid",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def post_bid(params: PostBidInput) -> str:
    """Post a bid: 'seeking' to buy a link, 'offering' to sell placement on your site.

    Args:
        params: Bid type, industry, price and the type-specific details.

    Returns:
        JSON with the posted bid.
    """
    ctx = get_context()
    if params.type == BidType.SEEKING:
        fields = {
            "target_site": params.target_site,
            "requirements": BidRequirements(
                min_domain_authority=params.min_domain_authority,
                states=params.states,
                link_type=params.link_type,
            ),
        }
    else:
        fields = {
            "site": params.site,
            "placement": params.placement,
            "domain_authority": params.domain_authority,
            "restrictions": OfferRestrictions(no_competitors=params.no_competitors),
        }
    try:
        bid, results = await publish_bid(
            ctx, params.type, params.industry, sats=params.sats, expiry_days=params.expiry_days,
            payment_terms=params.payment_terms, **fields,
        )
    except (ValueError, PublishError) as e:
        return _error(e)
    return json.dumps({"success": True, "bid": bid_to_dict(bid), "relays": _published(results)})


@mcp.tool(
    name="backlinkmesh_list_bids",
    annotations={
        "title": "List Active Bids",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def list_bids(params: ListBidsInput) -> str:
    """List active bids. With for_site, only bids that site could take up."""
    ctx = get_context()
    try:
        if params.for_site:
            bids = await find_bids_for_site(ctx, params.for_site)
        else:
            bids = await query_bids(ctx.pool, industry=params.industry,
                                    bid_type=params.type.value if params.type else None)
    except ValueError as e:
        return _error(e)
    return json.dumps({"count": len(bids), "bids": [bid_to_dict(b) for b in bids]})


# =============================================================================
# Negotiation
# =============================================================================

@mcp.tool(
    name="backlinkmesh_respond_to_bid",
    annotations={
        "title": "Respond to Bid",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def respond_to_bid(params: RespondToBidInput) -> str:
    """Open a negotiation with the author of an active bid."""
    ctx = get_context()
    try:
        deal = await _respond_to_bid(ctx, params.bid_id, params.text)
    except (ValueError, PublishError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_start_negotiation",
    annotations={
        "title": "Start Negotiation",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def start_negotiation(params: StartNegotiationInput) -> str:
    """Open a negotiation with any agent by identity, e.g. a site owner from find_matches."""
    ctx = get_context()
    try:
        deal = await ctx.engine.start(params.peer, regarding_bid_id=params.regarding_bid_id,
                                      text=params.text)
    except (ValueError, PublishError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_negotiate",
    annotations={
        "title": "Counter, Accept or Reject",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def negotiate(params: NegotiateInput) -> str:
    """Move an open negotiation forward.

    Actions:
      - counter: propose a price in sats (0 for a reciprocal swap) and terms
      - accept: accept the last proposal. You become the seller; for a paid deal
        an invoice is created unless you pass payment_reference
      - reject: end the negotiation

    Args:
        params: negotiation_id, action and the fields for that action.

    Returns:
        JSON with the updated deal.
    """
    ctx = get_context()
    engine = ctx.engine
    try:
        if params.action == NegotiateAction.COUNTER:
            if params.sats is None:
                return _error(ValueError("counter requires sats"))
            deal = await engine.counter(params.negotiation_id, params.sats, params.terms)
        elif params.action == NegotiateAction.ACCEPT:
            deal = await engine.accept(params.negotiation_id, params.payment_reference)
        else:
            deal = await engine.reject(params.negotiation_id, params.reason)
    except (ValueError, PublishError, PaymentError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_pay",
    annotations={
        "title": "Pay for Deal",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def pay(params: PayInput) -> str:
    """As the buyer, pay the seller's invoice and send the link details.

    Reciprocal (0 sat) deals skip the payment and only send link details.
    """
    ctx = get_context()
    try:
        deal = await ctx.engine.pay(params.negotiation_id, params.link_url, params.anchor)
    except (ValueError, PublishError, PaymentError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_confirm_payment",
    annotations={
        "title": "Confirm Payment Received",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def confirm_payment(params: DealIdInput) -> str:
    """As the seller, check whether the buyer has paid your invoice."""
    ctx = get_context()
    try:
        deal = await ctx.engine.confirm_payment(params.negotiation_id)
    except (ValueError, PaymentError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_announce_placement",
    annotations={
        "title": "Announce Link Placement",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def announce_placement(params: AnnouncePlacementInput) -> str:
    """As the seller, tell the buyer which page now carries their link.

    Also used to retry after a failed verification once the link is fixed.
    """
    ctx = get_context()
    try:
        deal = await ctx.engine.announce_placement(params.negotiation_id, params.live_url, params.proof_ref)
    except (ValueError, PublishError) as e:
        return _error(e)
    return json.dumps({"success": True, "deal": deal_summary(deal, ctx.identity)})


@mcp.tool(
    name="backlinkmesh_verify_placement",
    annotations={
        "title": "Verify Placement",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def verify_placement(params: VerifyPlacementInput) -> str:
    """Fetch the announced page and check the link against the agreed terms.

    The deal completes if the link is there, otherwise it fails with the reason.
    """
    ctx = get_context()
    try:
        deal = await ctx.engine.verify_placement(params.negotiation_id, params.require_dofollow)
    except (ValueError, PublishError) as e:
        return _error(e)
    result = deal.verification_result
    return json.dumps({
        "success": True,
        "deal": deal_summary(deal, ctx.identity),
        "verification": verification_to_dict(result) if result else None,
    })


@mcp.tool(
    name="backlinkmesh_poll",
    annotations={
        "title": "Poll Messages",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def poll() -> str:
    """Fetch new negotiation messages and apply them to your deals.

    Returns:
        JSON with every deal that changed.
    """
    ctx = get_context()
    deals = await ctx.engine.poll()
    expired = ctx.engine.expire_stale()
    return json.dumps({
        "updated": [deal_summary(d, ctx.identity) for d in deals],
        "expired": expired,
    })


@mcp.tool(
    name="backlinkmesh_list_deals",
    annotations={
        "title": "List Deals",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def list_deals(params: ListDealsInput) -> str:
    """List your deals, optionally by status or only open ones."""
    ctx = get_context()
    deals = ctx.engine.deals()
    if params.status:
        deals = [d for d in deals if d.status == params.status]
    if params.open_only:
        deals = [d for d in deals if not d.is_terminal]
    return json.dumps({"count": len(deals), "deals": [deal_summary(d, ctx.identity) for d in deals]})


@mcp.tool(
    name="backlinkmesh_get_deal",
    annotations={
        "title": "Get Deal",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def get_deal(params: DealIdInput) -> str:
    """Full detail of one deal, including every message seen and whether it applied."""
    ctx = get_context()
    try:
        deal = ctx.engine.get_deal(params.negotiation_id)
    except ValueError as e:
        return _error(e)
    return json.dumps(deal_to_dict(deal))


# =============================================================================
# Verification & wallet
# =============================================================================

@mcp.tool(
    name="backlinkmesh_verify_link",
    annotations={
        "title": "Verify Any Link",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def verify_link(params: VerifyLinkInput) -> str:
    """Check whether a page links to a domain, outside any deal."""
    constraints = LinkConstraints(
        require_dofollow=params.require_dofollow,
        required_anchor_substring=params.anchor,
        required_exact_href=params.exact_href,
    )
    result = await verify_backlink(params.page_url, params.target_domain, constraints)
    return json.dumps(verification_to_dict(result))


@mcp.tool(
    name="backlinkmesh_wallet_balance",
    annotations={
        "title": "Wallet Balance",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def wallet_balance() -> str:
    """Lightning wallet balance in sats."""
    ctx = get_context()
    if ctx.payment is None:
        return _error(PaymentError("No payment provider configured"))
    try:
        balance = await ctx.payment.get_balance()
    except PaymentError as e:
        return _error(e)
    return json.dumps({"success": True, "provider": ctx.payment.name, "balance_sats": balance})
