"""
State persistence — save/load JSON, atomic read-modify-write transactions.

Depends on: config, models, messages
"""

import fcntl
import json
import os
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

from backlinkmesh.config import HOME_DIR_NAME
from backlinkmesh.messages import message_to_dict, parse_message
from backlinkmesh.models import (
    AgentState,
    AgreedTerms,
    Bid,
    BidRequirements,
    BidType,
    Deal,
    DealStatus,
    Direction,
    LinkRecord,
    LogEntry,
    OfferRestrictions,
    SiteProfile,
    VerificationResult,
)


# =============================================================================
# State File Path
# =============================================================================

def state_file_path() -> str:
    """Return the state file path. BACKLINKMESH_STATE_FILE overrides the default."""
    override = os.environ.get("BACKLINKMESH_STATE_FILE")
    if override:
        os.makedirs(os.path.dirname(override) or ".", exist_ok=True)
        return override
    state_dir = os.path.join(os.getcwd(), HOME_DIR_NAME)
    os.makedirs(state_dir, exist_ok=True)
    return os.path.join(state_dir, "state.json")


# =============================================================================
# Serialization Helpers
# =============================================================================

def site_to_dict(site: SiteProfile) -> dict:
    """Serialize a SiteProfile to a dict."""
    return {
        "url": site.url,
        "name": site.name,
        "city": site.city,
        "state": site.state,
        "industry": site.industry,
        "domain_authority": site.domain_authority,
        "link_pages": site.link_pages,
        "looking_for": site.looking_for,
        "country": site.country,
        "owner": site.owner,
        "registered_at": site.registered_at,
    }


def site_from_dict(d: dict) -> SiteProfile:
    """Deserialize a SiteProfile. Raises KeyError/TypeError/ValueError on bad data."""
    da = d.get("domain_authority")
    return SiteProfile(
        url=str(d["url"]),
        name=str(d.get("name", "")),
        city=str(d.get("city", "")),
        state=str(d.get("state", "")),
        industry=str(d.get("industry", "")),
        domain_authority=int(da) if da is not None else None,
        link_pages=list(d.get("link_pages", [])),
        looking_for=list(d.get("looking_for", [])),
        country=str(d.get("country") or "US"),
        owner=d.get("owner"),
        registered_at=int(d.get("registered_at", 0)),
    )


def bid_to_dict(bid: Bid) -> dict:
    """Serialize a Bid to a dict."""
    data = {
        "bid_id": bid.bid_id,
        "type": bid.type.value,
        "industry": bid.industry,
        "sats": bid.sats,
        "created_at": bid.created_at,
        "expiry": bid.expiry,
        "payment_terms": bid.payment_terms,
        "author": bid.author,
    }
    if bid.type == BidType.SEEKING:
        req = bid.requirements or BidRequirements()
        data["target_site"] = bid.target_site
        data["requirements"] = {
            "min_domain_authority": req.min_domain_authority,
            "industries": req.industries,
            "states": req.states,
            "link_type": req.link_type,
            "placements": req.placements,
        }
    else:
        res = bid.restrictions or OfferRestrictions()
        data["site"] = bid.site
        data["placement"] = bid.placement
        data["domain_authority"] = bid.domain_authority
        data["restrictions"] = {
            "industries": res.industries,
            "no_competitors": res.no_competitors,
            "max_links": res.max_links,
        }
    return data


def bid_from_dict(d: dict) -> Bid:
    """Deserialize a Bid. Raises KeyError/TypeError/ValueError on bad data."""
    bid_type = BidType(d["type"])
    requirements = None
    restrictions = None
    if bid_type == BidType.SEEKING:
        rd = d.get("requirements") or {}
        requirements = BidRequirements(
            min_domain_authority=int(rd.get("min_domain_authority", 0)),
            industries=list(rd.get("industries", [])),
            states=list(rd.get("states", [])),
            link_type=str(rd.get("link_type") or "dofollow"),
            placements=list(rd.get("placements", [])),
        )
    else:
        rd = d.get("restrictions") or {}
        max_links = rd.get("max_links")
        restrictions = OfferRestrictions(
            industries=list(rd.get("industries", [])),
            no_competitors=bool(rd.get("no_competitors", False)),
            max_links=int(max_links) if max_links is not None else None,
        )
    da = d.get("domain_authority")
    return Bid(
        bid_id=str(d["bid_id"]),
        type=bid_type,
        industry=str(d.get("industry", "")),
        sats=int(d.get("sats", 0)),
        created_at=int(d.get("created_at", 0)),
        expiry=int(d.get("expiry", 0)),
        target_site=d.get("target_site"),
        requirements=requirements,
        site=d.get("site"),
        placement=d.get("placement"),
        domain_authority=int(da) if da is not None else None,
        restrictions=restrictions,
        payment_terms=str(d.get("payment_terms") or ""),
        author=d.get("author"),
        event_id=d.get("event_id"),
    )


def link_to_dict(link: LinkRecord) -> dict:
    return {
        "href": link.href,
        "resolved_href": link.resolved_href,
        "anchor_text": link.anchor_text,
        "rel": link.rel,
        "is_dofollow": link.is_dofollow,
        "is_sponsored": link.is_sponsored,
        "is_ugc": link.is_ugc,
    }


def link_from_dict(d: dict) -> LinkRecord:
    return LinkRecord(
        href=d["href"],
        resolved_href=d.get("resolved_href", d["href"]),
        anchor_text=d.get("anchor_text", ""),
        rel=d.get("rel", ""),
        is_dofollow=d.get("is_dofollow", True),
        is_sponsored=d.get("is_sponsored", False),
        is_ugc=d.get("is_ugc", False),
    )


def verification_to_dict(result: VerificationResult) -> dict:
    """Serialize a VerificationResult to a dict."""
    return {
        "verified": result.verified,
        "page_url": result.page_url,
        "target_domain": result.target_domain,
        "matched_links": [link_to_dict(link) for link in result.matched_links],
        "best_match": link_to_dict(result.best_match) if result.best_match else None,
        "reason": result.reason,
        "checked_at": result.checked_at,
    }


def verification_from_dict(d: dict) -> VerificationResult:
    best = d.get("best_match")
    return VerificationResult(
        verified=d["verified"],
        page_url=d["page_url"],
        target_domain=d["target_domain"],
        matched_links=[link_from_dict(ld) for ld in d.get("matched_links", [])],
        best_match=link_from_dict(best) if best else None,
        reason=d.get("reason"),
        checked_at=d.get("checked_at", ""),
    )


def deal_to_dict(deal: Deal) -> dict:
    """Serialize a Deal, including its full message log."""
    terms = deal.agreed_terms
    return {
        "negotiation_id": deal.negotiation_id,
        "initiator": deal.initiator,
        "counterparty": deal.counterparty,
        "status": deal.status.value if deal.status else None,
        "agreed_terms": {
            "sats": terms.sats,
            "terms": terms.terms,
            "payment_reference": terms.payment_reference,
            "target_url": terms.target_url,
            "anchor_text": terms.anchor_text,
            "require_dofollow": terms.require_dofollow,
            "live_url": terms.live_url,
        },
        "buyer": deal.buyer,
        "seller": deal.seller,
        "regarding_bid_id": deal.regarding_bid_id,
        "message_log": [
            {
                "message": message_to_dict(e.message),
                "direction": e.direction.value,
                "sender": e.sender,
                "recipient": e.recipient,
                "logged_at": e.logged_at,
                "applied": e.applied,
                "note": e.note,
            }
            for e in deal.message_log
        ],
        "verification_result": (
            verification_to_dict(deal.verification_result) if deal.verification_result else None
        ),
        "failure_reason": deal.failure_reason,
        "failed_at": deal.failed_at,
        "reverifiable": deal.reverifiable,
        "payment_proof": deal.payment_proof,
        "payment_hash": deal.payment_hash,
        "created_at": deal.created_at,
        "updated_at": deal.updated_at,
        "expires_at": deal.expires_at,
    }


def deal_from_dict(d: dict) -> Deal:
    """Deserialize a Deal."""
    td = d.get("agreed_terms", {})
    message_log = []
    for ed in d.get("message_log", []):
        message_log.append(LogEntry(
            message=parse_message(ed["message"]),
            direction=Direction(ed.get("direction", "inbound")),
            sender=ed.get("sender", ""),
            recipient=ed.get("recipient", ""),
            logged_at=ed.get("logged_at", ""),
            applied=ed.get("applied", False),
            note=ed.get("note"),
        ))
    vr = d.get("verification_result")
    return Deal(
        negotiation_id=d["negotiation_id"],
        initiator=d.get("initiator", ""),
        counterparty=d.get("counterparty", ""),
        status=DealStatus(d["status"]) if d.get("status") else None,
        agreed_terms=AgreedTerms(
            sats=td.get("sats", 0),
            terms=td.get("terms", ""),
            payment_reference=td.get("payment_reference", ""),
            target_url=td.get("target_url"),
            anchor_text=td.get("anchor_text"),
            require_dofollow=td.get("require_dofollow", False),
            live_url=td.get("live_url"),
        ),
        buyer=d.get("buyer"),
        seller=d.get("seller"),
        regarding_bid_id=d.get("regarding_bid_id"),
        message_log=message_log,
        verification_result=verification_from_dict(vr) if vr else None,
        failure_reason=d.get("failure_reason"),
        failed_at=d.get("failed_at"),
        reverifiable=d.get("reverifiable", False),
        payment_proof=d.get("payment_proof"),
        payment_hash=d.get("payment_hash"),
        created_at=d.get("created_at", ""),
        updated_at=d.get("updated_at", ""),
        expires_at=d.get("expires_at"),
    )


# =============================================================================
# Save State
# =============================================================================

def state_to_dict(state: AgentState) -> dict:
    return {
        "identity": state.identity,
        "created_at": state.created_at,
        "last_poll": state.last_poll,
        "own_sites": state.own_sites,
        "sites": {url: site_to_dict(s) for url, s in state.sites.items()},
        "posted_bids": {bid_id: bid_to_dict(b) for bid_id, b in state.posted_bids.items()},
        "deals": {nid: deal_to_dict(deal) for nid, deal in state.deals.items()},
    }


def save_state(state: AgentState, path: Optional[str] = None) -> None:
    """Persist state to disk via temp file + rename."""
    path = path or state_file_path()
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state_to_dict(state), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


# =============================================================================
# Load State
# =============================================================================

def load_state_from_file(path: str) -> Optional[AgentState]:
    """Load persisted state from a specific file path. Returns None on failure."""
    if not os.path.exists(path):
        return None

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"[BacklinkMesh] Warning: could not load state file {path}: {e}", file=sys.stderr)
        return None

    sites = {}
    for url, sd in data.get("sites", {}).items():
        try:
            sites[url] = site_from_dict(sd)
        except (KeyError, TypeError, ValueError) as e:
            print(f"[BacklinkMesh] Warning: dropping unreadable site {url}: {e}", file=sys.stderr)

    posted_bids = {}
    for bid_id, bd in data.get("posted_bids", {}).items():
        try:
            posted_bids[bid_id] = bid_from_dict(bd)
        except (KeyError, TypeError, ValueError) as e:
            print(f"[BacklinkMesh] Warning: dropping unreadable bid {bid_id}: {e}", file=sys.stderr)

    deals = {nid: deal_from_dict(dd) for nid, dd in data.get("deals", {}).items()}

    return AgentState(
        identity=data.get("identity"),
        sites=sites,
        own_sites=data.get("own_sites", []),
        posted_bids=posted_bids,
        deals=deals,
        last_poll=data.get("last_poll", 0),
        created_at=data.get("created_at", ""),
    )


def load_state(path: Optional[str] = None) -> AgentState:
    """Load state, or start fresh if there is none on disk."""
    state = load_state_from_file(path or state_file_path())
    return state if state is not None else AgentState()


# =============================================================================
# Transactions
# =============================================================================

@contextmanager
def state_transaction(path: Optional[str] = None) -> Iterator[AgentState]:
    """Atomic read-modify-write of the state file.

    Takes an exclusive lock on a sidecar ``.lock`` file, reloads state from
    disk inside the lock, yields it for mutation, and saves it on clean exit.
    If the block raises, nothing is written.

    Do not await inside the block: the lock is held by the whole process.
    """
    path = path or state_file_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    lock_path = path + ".lock"
    with open(lock_path, "a") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            state = load_state(path)
            yield state
            save_state(state, path)
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
