"""
Bids and site registrations — shaping, validation, expiry, and their event
encoding for relays.

A bid past its expiry is inert: it stays on relays but is left out of every
query and match.

Depends on: config, models, identity, state, matching, network
"""

import asyncio
import json
import time
import uuid
from typing import Awaitable, Callable, Iterable, Optional

from backlinkmesh.config import (
    BID_TAG,
    DEFAULT_BID_EXPIRY_DAYS,
    KIND_LINK_BID,
    KIND_SITE_REGISTRATION,
    LABEL_NAMESPACE,
    LINK_TYPES,
    RELAY_POLL_INTERVAL,
    SITE_TAG,
)
from backlinkmesh.identity import Credentials, validate_url
from backlinkmesh.matching import is_related_industry
from backlinkmesh.models import Bid, BidRequirements, BidType, OfferRestrictions, SiteProfile
from backlinkmesh.network.events import Event, EventFilter, build_event
from backlinkmesh.network.relay import RelayPool, RelayResult
from backlinkmesh.state import bid_from_dict, bid_to_dict, site_from_dict, site_to_dict


def _check_da(value: Optional[int]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValueError(f"domain_authority must be an integer 0-100, got {value!r}")


# =============================================================================
# Bids
# =============================================================================

def is_active(bid: Bid, now: Optional[float] = None) -> bool:
    """A bid is live strictly before its expiry."""
    if now is None:
        now = time.time()
    return now < bid.expiry


def active_bids(bids: Iterable[Bid], now: Optional[float] = None) -> list[Bid]:
    if now is None:
        now = time.time()
    return [b for b in bids if is_active(b, now)]


def validate_bid(bid: Bid) -> None:
    """Raise ValueError if ``bid`` can't be posted."""
    if not isinstance(bid.type, BidType):
        raise ValueError(f"Bid type must be one of: seeking, offering (got {bid.type!r})")
    if not bid.industry or not bid.industry.strip():
        raise ValueError("Bid industry is required")
    if isinstance(bid.sats, bool) or not isinstance(bid.sats, int):
        raise ValueError("Bid sats must be an integer")
    if bid.sats < 0:
        raise ValueError("Bid sats must not be negative")
    if bid.type == BidType.SEEKING and bid.sats <= 0:
        raise ValueError("A seeking bid must offer a positive number of sats")
    if bid.expiry <= bid.created_at:
        raise ValueError("Bid expiry must be after its creation time")

    if bid.type == BidType.SEEKING:
        if bid.target_site:
            err = validate_url(bid.target_site)
            if err:
                raise ValueError(f"target_site: {err}")
        req = bid.requirements
        if req is not None:
            _check_da(req.min_domain_authority)
            if req.link_type not in LINK_TYPES:
                raise ValueError(f"link_type must be one of: {', '.join(LINK_TYPES)}")
    else:
        if bid.site:
            err = validate_url(bid.site)
            if err:
                raise ValueError(f"site: {err}")
        _check_da(bid.domain_authority)
        res = bid.restrictions
        if res is not None and res.max_links is not None and res.max_links < 1:
            raise ValueError("max_links must be at least 1")


def build_bid(bid_type, industry: str, sats: int = 0,
              expiry_days: Optional[float] = None, now: Optional[int] = None,
              bid_id: Optional[str] = None, **fields) -> Bid:
    """Shape and validate a new bid.

    ``bid_type`` may be a BidType or its string value. Extra keyword fields
    (target_site, requirements, site, placement, ...) are passed through.
    """
    try:
        bid_type = BidType(bid_type)
    except ValueError:
        raise ValueError(f"Bid type must be one of: seeking, offering (got {bid_type!r})") from None
    if expiry_days is None:
        expiry_days = DEFAULT_BID_EXPIRY_DAYS
    if now is None:
        now = int(time.time())
    if bid_type == BidType.SEEKING and fields.get("requirements") is None:
        fields["requirements"] = BidRequirements()
    if bid_type == BidType.OFFERING and fields.get("restrictions") is None:
        fields["restrictions"] = OfferRestrictions()
    bid = Bid(
        bid_id=bid_id or f"bid-{uuid.uuid4().hex[:12]}",
        type=bid_type,
        industry=(industry or "").strip().lower(),
        sats=sats,
        created_at=now,
        expiry=now + int(expiry_days * 86400),
        **fields,
    )
    validate_bid(bid)
    return bid


def bid_to_event(creds: Credentials, bid: Bid) -> Event:
    tags = [
        ["d", bid.bid_id],
        ["t", BID_TAG],
        ["t", bid.type.value],
        ["t", bid.industry],
        ["L", LABEL_NAMESPACE],
        ["l", "link-bid", LABEL_NAMESPACE],
        ["amount", str(bid.sats)],
        ["expiry", str(bid.expiry)],
    ]
    return build_event(creds, KIND_LINK_BID, json.dumps(bid_to_dict(bid)), tags, created_at=bid.created_at)


def bid_from_event(event: Event) -> Bid:
    """Decode a bid event. Raises ValueError if it isn't one."""
    if event.kind != KIND_LINK_BID:
        raise ValueError(f"Not a bid event (kind {event.kind})")
    try:
        bid = bid_from_dict(json.loads(event.content))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed bid: {e}") from e
    bid.author = event.pubkey
    bid.event_id = event.id
    bid.bid_id = event.first_tag("d") or bid.bid_id
    return bid


async def post_bid(pool: RelayPool, creds: Credentials, bid: Bid) -> list[RelayResult]:
    """Validate, then publish. Nothing is sent if validation fails."""
    validate_bid(bid)
    bid.author = creds.identity
    return await pool.publish(bid_to_event(creds, bid))


async def query_bids(pool: RelayPool, industry: Optional[str] = None,
                     bid_type: Optional[str] = None, now: Optional[float] = None) -> list[Bid]:
    """Active bids on the relays, newest first."""
    events = await pool.query(EventFilter(kinds=[KIND_LINK_BID], tags={"t": [BID_TAG]}))
    bids = []
    for event in events:
        try:
            bids.append(bid_from_event(event))
        except ValueError:
            continue
    if industry:
        bids = [b for b in bids if b.industry.lower() == industry.lower()]
    if bid_type:
        bids = [b for b in bids if b.type.value == bid_type]
    return active_bids(bids, now)


async def watch_bids(pool: RelayPool, on_bid: Callable[[Bid], Awaitable[None]],
                     industry: Optional[str] = None, bid_type: Optional[str] = None,
                     since: Optional[int] = None, interval: float = RELAY_POLL_INTERVAL,
                     stop: Optional[asyncio.Event] = None) -> None:
    """Deliver each new active bid to ``on_bid`` as relays see it, until ``stop`` is set.

    An edited bid is a new event, so it is delivered again.
    """

    async def _on_event(event: Event) -> None:
        try:
            bid = bid_from_event(event)
        except ValueError:
            return
        if industry and bid.industry.lower() != industry.lower():
            return
        if bid_type and bid.type.value != bid_type:
            return
        if is_active(bid):
            await on_bid(bid)

    flt = EventFilter(kinds=[KIND_LINK_BID], tags={"t": [BID_TAG]}, since=since)
    await pool.subscribe_live(flt, _on_event, interval=interval, stop=stop)


def bid_accepts_site(bid: Bid, site: SiteProfile) -> bool:
    """Would ``site`` satisfy a seeking bid's requirements as the linking site?"""
    if bid.type != BidType.SEEKING:
        return False
    req = bid.requirements or BidRequirements()
    if (site.domain_authority or 0) < req.min_domain_authority:
        return False
    if req.industries and site.industry not in req.industries:
        return False
    if req.states and site.state not in req.states:
        return False
    return True


def matching_bids(bids: Iterable[Bid], site: SiteProfile, now: Optional[float] = None) -> list[Bid]:
    """Active bids relevant to ``site``.

    Seeking bids whose requirements the site meets, and offering bids in the
    same or a related industry whose restrictions allow it.
    """
    matched = []
    for bid in active_bids(bids, now):
        if bid.target_site == site.url or bid.site == site.url:
            continue
        if bid.type == BidType.SEEKING:
            if bid_accepts_site(bid, site):
                matched.append(bid)
        else:
            res = bid.restrictions or OfferRestrictions()
            if res.no_competitors and site.industry == bid.industry:
                continue
            if res.industries:
                if site.industry in res.industries:
                    matched.append(bid)
            elif site.industry == bid.industry or is_related_industry(site.industry, bid.industry):
                matched.append(bid)
    return matched


# =============================================================================
# Sites
# =============================================================================

def validate_site(site: SiteProfile) -> None:
    """Raise ValueError if ``site`` can't be registered."""
    err = validate_url(site.url)
    if err:
        raise ValueError(f"url: {err}")
    for name in ("name", "city", "state", "industry"):
        if not (getattr(site, name) or "").strip():
            raise ValueError(f"Site {name} is required")
    _check_da(site.domain_authority)
    for page in site.link_pages:
        err = validate_url(page)
        if err:
            raise ValueError(f"link page {page}: {err}")


def site_to_event(creds: Credentials, site: SiteProfile, now: Optional[int] = None) -> Event:
    tags = [
        ["d", site.url],
        ["t", SITE_TAG],
        ["t", site.industry],
        ["L", LABEL_NAMESPACE],
        ["l", "site-registration", LABEL_NAMESPACE],
    ]
    data = site_to_dict(site)
    data.pop("owner", None)
    data.pop("registered_at", None)
    return build_event(creds, KIND_SITE_REGISTRATION, json.dumps(data), tags, created_at=now)


def site_from_event(event: Event) -> SiteProfile:
    """Decode a site registration. Raises ValueError if it isn't one."""
    if event.kind != KIND_SITE_REGISTRATION:
        raise ValueError(f"Not a site registration (kind {event.kind})")
    try:
        site = site_from_dict(json.loads(event.content))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed site registration: {e}") from e
    site.owner = event.pubkey
    site.registered_at = event.created_at
    return site


def latest_sites(sites: Iterable[SiteProfile]) -> list[SiteProfile]:
    """Keep only the newest registration per url, in first-seen order."""
    latest: dict[str, SiteProfile] = {}
    for site in sites:
        current = latest.get(site.url)
        if current is None or site.registered_at > current.registered_at:
            latest[site.url] = site
    return list(latest.values())


async def register_site(pool: RelayPool, creds: Credentials, site: SiteProfile) -> list[RelayResult]:
    """Validate, then publish a site registration."""
    validate_site(site)
    event = site_to_event(creds, site)
    site.owner = creds.identity
    site.registered_at = event.created_at
    return await pool.publish(event)


async def query_sites(pool: RelayPool, industry: Optional[str] = None,
                      state: Optional[str] = None) -> list[SiteProfile]:
    """Registered sites on the relays, one per url."""
    events = await pool.query(EventFilter(kinds=[KIND_SITE_REGISTRATION], tags={"t": [SITE_TAG]}))
    sites = []
    for event in events:
        try:
            sites.append(site_from_event(event))
        except ValueError:
            continue
    sites = latest_sites(sites)
    if industry:
        sites = [s for s in sites if s.industry.lower() == industry.lower()]
    if state:
        sites = [s for s in sites if s.state.upper() == state.upper()]
    return sites
