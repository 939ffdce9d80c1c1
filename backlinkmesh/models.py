"""
Data models — pure data classes with no business logic.

Depends on: messages
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from backlinkmesh.messages import NegotiationMessage


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================

class BidType(str, Enum):
    SEEKING = "seeking"      # wants a link, pays sats
    OFFERING = "offering"    # has a page, sells placements


class DealStatus(str, Enum):
    INITIATED = "initiated"
    PROPOSED = "proposed"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    PAID = "paid"
    PLACED = "placed"        # paid and link details delivered, awaiting placement
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (DealStatus.COMPLETED, DealStatus.FAILED)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# =============================================================================
# Sites
# =============================================================================

@dataclass
class SiteProfile:
    """A website an agent registers as available for link exchange."""
    url: str
    name: str
    city: str
    state: str
    industry: str
    domain_authority: Optional[int] = None   # 0-100, missing counts as 0
    link_pages: list[str] = field(default_factory=list)
    looking_for: list[str] = field(default_factory=list)
    country: str = "US"
    owner: Optional[str] = None              # identity of the publishing agent
    registered_at: int = 0                   # unix seconds


@dataclass
class MatchScore:
    """A candidate site paired with its compatibility score."""
    site: SiteProfile
    score: int


# =============================================================================
# Bids
# =============================================================================

@dataclass
class BidRequirements:
    """What a seeking bid demands of the linking site."""
    min_domain_authority: int = 0
    industries: list[str] = field(default_factory=list)
    states: list[str] = field(default_factory=list)
    link_type: str = "dofollow"
    placements: list[str] = field(default_factory=list)


@dataclass
class OfferRestrictions:
    """Limits an offering bid places on who may buy a link."""
    industries: list[str] = field(default_factory=list)
    no_competitors: bool = False
    max_links: Optional[int] = None


@dataclass
class Bid:
    """A posted request (seeking) or offer (offering) for a link placement."""
    bid_id: str
    type: BidType
    industry: str
    sats: int = 0
    created_at: int = 0          # unix seconds
    expiry: int = 0              # unix seconds, inert at or after this
    # Seeking
    target_site: Optional[str] = None
    requirements: Optional[BidRequirements] = None
    # Offering
    site: Optional[str] = None
    placement: Optional[str] = None
    domain_authority: Optional[int] = None
    restrictions: Optional[OfferRestrictions] = None
    payment_terms: str = ""
    author: Optional[str] = None
    event_id: Optional[str] = None


# =============================================================================
# Link Verification
# =============================================================================

@dataclass(frozen=True)
class LinkRecord:
    """One anchor extracted from a page."""
    href: str
    resolved_href: str
    anchor_text: str
    rel: str
    is_dofollow: bool
    is_sponsored: bool = False
    is_ugc: bool = False


@dataclass
class LinkConstraints:
    """Optional checks a verified link must satisfy."""
    require_dofollow: bool = False
    required_anchor_substring: Optional[str] = None
    required_exact_href: Optional[str] = None


@dataclass
class VerificationResult:
    """Outcome of checking one page for a backlink."""
    verified: bool
    page_url: str
    target_domain: str
    matched_links: list[LinkRecord] = field(default_factory=list)
    best_match: Optional[LinkRecord] = None
    reason: Optional[str] = None
    checked_at: str = field(default_factory=_now_iso)


# =============================================================================
# Deals
# =============================================================================

@dataclass
class AgreedTerms:
    """Terms accumulated over a negotiation."""
    sats: int = 0
    terms: str = ""
    payment_reference: str = ""      # invoice, empty for reciprocal deals
    target_url: Optional[str] = None
    anchor_text: Optional[str] = None
    require_dofollow: bool = False
    live_url: Optional[str] = None


@dataclass
class LogEntry:
    """A message seen on a deal, whether or not it changed the deal."""
    message: NegotiationMessage
    direction: Direction
    sender: str
    recipient: str
    logged_at: str = field(default_factory=_now_iso)
    applied: bool = False
    note: Optional[str] = None       # why it was not applied


@dataclass
class Deal:
    """One negotiation between two agents. Never deleted."""
    negotiation_id: str
    initiator: str
    counterparty: str
    # None until the opening inquiry has been applied
    status: Optional[DealStatus] = None
    agreed_terms: AgreedTerms = field(default_factory=AgreedTerms)
    buyer: Optional[str] = None
    seller: Optional[str] = None
    regarding_bid_id: Optional[str] = None
    message_log: list[LogEntry] = field(default_factory=list)
    verification_result: Optional[VerificationResult] = None
    failure_reason: Optional[str] = None
    failed_at: Optional[str] = None
    # True when the failure came from verification, so a new placement may retry it
    reverifiable: bool = False
    payment_proof: Optional[str] = None
    payment_hash: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    expires_at: Optional[int] = None  # unix seconds, from the bid

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def peer_of(self, identity: str) -> str:
        """The other party in this deal, from ``identity``'s point of view."""
        return self.counterparty if identity == self.initiator else self.initiator


# =============================================================================
# Agent State (top-level)
# =============================================================================

@dataclass
class AgentState:
    """Everything an agent persists between runs."""
    identity: Optional[str] = None
    sites: dict[str, SiteProfile] = field(default_factory=dict)       # url -> profile
    own_sites: list[str] = field(default_factory=list)                # urls we registered
    posted_bids: dict[str, Bid] = field(default_factory=dict)         # bid_id -> bid
    deals: dict[str, Deal] = field(default_factory=dict)              # negotiation_id -> deal
    last_poll: int = 0                                                # unix seconds
    created_at: str = field(default_factory=_now_iso)
