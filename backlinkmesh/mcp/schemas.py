"""
Pydantic input models for MCP tools.

Depends on: config, models
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from backlinkmesh.config import MAX_TEXT_LENGTH, MAX_URL_LENGTH
from backlinkmesh.models import BidType, DealStatus


class RegisterSiteInput(BaseModel):
    """Register a site this agent manages."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    url: str = Field(..., description="Site URL, e.g. https://acmeplumbing.com", max_length=MAX_URL_LENGTH)
    name: str = Field(..., description="Business name", min_length=1, max_length=200)
    city: str = Field(..., description="City the business serves", min_length=1, max_length=100)
    state: str = Field(..., description="State or region code, e.g. TX", min_length=1, max_length=50)
    industry: str = Field(..., description="Industry slug, e.g. plumbing", min_length=1, max_length=100)
    domain_authority: Optional[int] = Field(default=None, ge=0, le=100, description="Domain authority 0-100 if known")
    link_pages: list[str] = Field(default_factory=list, description="Pages where links to partners can go")
    looking_for: list[str] = Field(default_factory=list, description="Industries you want links from")
    country: str = Field(default="US", max_length=50)


class ListSitesInput(BaseModel):
    """Filter registered sites."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    industry: Optional[str] = Field(default=None, description="Only sites in this industry")
    state: Optional[str] = Field(default=None, description="Only sites in this state")


class SiteUrlInput(BaseModel):
    """Refer to one of this agent's sites."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    url: str = Field(..., description="URL of a registered site", max_length=MAX_URL_LENGTH)


class PostBidInput(BaseModel):
    """Post a seeking or offering bid."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    type: BidType = Field(..., description="'seeking' (you want a link) or 'offering' (you sell placement)")
    industry: str = Field(..., description="Industry slug", min_length=1, max_length=100)
    sats: int = Field(default=0, ge=0, description="Price in sats. Required (> 0) for seeking bids")
    expiry_days: float = Field(default=7, gt=0, le=90, description="Days until the bid goes inert")
    target_site: Optional[str] = Field(default=None, description="Seeking: the site you want linked", max_length=MAX_URL_LENGTH)
    min_domain_authority: int = Field(default=0, ge=0, le=100, description="Seeking: minimum DA of the linking site")
    states: list[str] = Field(default_factory=list, description="Seeking: acceptable states of the linking site")
    link_type: str = Field(default="dofollow", description="Seeking: dofollow, nofollow, sponsored or ugc")
    site: Optional[str] = Field(default=None, description="Offering: the site where the link goes", max_length=MAX_URL_LENGTH)
    placement: Optional[str] = Field(default=None, description="Offering: where on the page, e.g. 'partners page'")
    domain_authority: Optional[int] = Field(default=None, ge=0, le=100, description="Offering: your site's DA")
    no_competitors: bool = Field(default=False, description="Offering: refuse same-industry buyers")
    payment_terms: str = Field(default="", max_length=500)


class ListBidsInput(BaseModel):
    """Filter active bids."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    industry: Optional[str] = Field(default=None, description="Only bids in this industry")
    type: Optional[BidType] = Field(default=None, description="Only 'seeking' or 'offering' bids")
    for_site: Optional[str] = Field(default=None, description="Only bids one of your sites could take up")


class RespondToBidInput(BaseModel):
    """Open a negotiation with the author of a bid."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    bid_id: str = Field(..., description="The bid's id (bid-...)")
    text: str = Field(default="", description="Opening message", max_length=MAX_TEXT_LENGTH)


class StartNegotiationInput(BaseModel):
    """Open a negotiation directly with another agent."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    peer: str = Field(..., description="The other agent's identity (bm1...)")
    text: str = Field(default="", description="Opening message", max_length=MAX_TEXT_LENGTH)
    regarding_bid_id: str = Field(default="", description="Bid this is about, if any")


class NegotiateAction(str, Enum):
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"


class NegotiateInput(BaseModel):
    """Counter, accept or reject in an open negotiation."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    negotiation_id: str = Field(..., description="The deal's negotiation id")
    action: NegotiateAction = Field(..., description="counter, accept or reject")
    sats: Optional[int] = Field(default=None, ge=0, description="Counter: price in sats (0 for a reciprocal swap)")
    terms: str = Field(default="", description="Counter: terms in plain words", max_length=MAX_TEXT_LENGTH)
    reason: str = Field(default="", description="Reject: why", max_length=MAX_TEXT_LENGTH)
    payment_reference: Optional[str] = Field(default=None, description="Accept: your own invoice. Omit to have one created")


class PayInput(BaseModel):
    """Pay for a deal as the buyer and send link details."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    negotiation_id: str = Field(..., description="The deal's negotiation id")
    link_url: str = Field(..., description="URL the placed link must point at", max_length=MAX_URL_LENGTH)
    anchor: str = Field(default="", description="Anchor text the link should use", max_length=500)


class DealIdInput(BaseModel):
    """Refer to one deal."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    negotiation_id: str = Field(..., description="The deal's negotiation id")


class AnnouncePlacementInput(BaseModel):
    """Announce where the link was placed, as the seller."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    negotiation_id: str = Field(..., description="The deal's negotiation id")
    live_url: str = Field(..., description="Page URL where the link now lives", max_length=MAX_URL_LENGTH)
    proof_ref: str = Field(default="", description="Optional screenshot or archive reference", max_length=MAX_URL_LENGTH)


class VerifyPlacementInput(BaseModel):
    """Verify an announced placement."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    negotiation_id: str = Field(..., description="The deal's negotiation id")
    require_dofollow: Optional[bool] = Field(default=None, description="Override the dofollow requirement from the terms")


class VerifyLinkInput(BaseModel):
    """Check any page for a link to a domain."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    page_url: str = Field(..., description="Page to fetch", max_length=MAX_URL_LENGTH)
    target_domain: str = Field(..., description="Domain the link must point at, e.g. acmeplumbing.com")
    require_dofollow: bool = Field(default=False)
    anchor: Optional[str] = Field(default=None, description="Required anchor text substring")
    exact_href: Optional[str] = Field(default=None, description="Required exact link URL")


class ListDealsInput(BaseModel):
    """Filter deals."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    status: Optional[DealStatus] = Field(default=None, description="Only deals in this status")
    open_only: bool = Field(default=False, description="Hide completed and failed deals")
