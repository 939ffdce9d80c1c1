"""
Negotiation message schemas — the closed set of typed messages two agents
exchange while working a deal.

Every message carries the negotiation id it belongs to, its own message id and
an ISO-8601 UTC timestamp. Messages are immutable once built.

Depends on: (nothing)
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Union


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Payload pieces
# =============================================================================

@dataclass(frozen=True)
class LinkDetails:
    """Where the buyer wants the link to point, and the anchor text to use."""
    url: str
    anchor: str = ""


# =============================================================================
# Message variants
# =============================================================================

@dataclass(frozen=True)
class Inquiry:
    """First contact about a bid or a site."""
    negotiation_id: str
    regarding_bid_id: str
    text: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["inquiry"] = field(default="inquiry", init=False)


@dataclass(frozen=True)
class Counter:
    """A price (in sats) plus free-form terms."""
    negotiation_id: str
    sats: int
    terms: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["counter"] = field(default="counter", init=False)

    def __post_init__(self):
        if self.sats < 0:
            raise ValueError(f"Counter sats must be non-negative, got {self.sats}")


@dataclass(frozen=True)
class Accept:
    """Accept the last counter. The sender becomes the seller; the
    payment reference is the invoice the buyer should pay (empty for a
    reciprocal, unpaid exchange)."""
    negotiation_id: str
    payment_reference: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["accept"] = field(default="accept", init=False)


@dataclass(frozen=True)
class Paid:
    """Buyer confirms payment and says where the link should point."""
    negotiation_id: str
    proof: str
    link_details: LinkDetails
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["paid"] = field(default="paid", init=False)


@dataclass(frozen=True)
class Placed:
    """Seller announces the page where the link is now live."""
    negotiation_id: str
    live_url: str
    proof_ref: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["placed"] = field(default="placed", init=False)


@dataclass(frozen=True)
class Verified:
    """Buyer reports the outcome of its own link verification."""
    negotiation_id: str
    confirmed: bool
    notes: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["verified"] = field(default="verified", init=False)


@dataclass(frozen=True)
class Reject:
    """Walk away from the deal."""
    negotiation_id: str
    reason: str = ""
    message_id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now_iso)
    type: Literal["reject"] = field(default="reject", init=False)


NegotiationMessage = Union[Inquiry, Counter, Accept, Paid, Placed, Verified, Reject]

MESSAGE_TYPES = ("inquiry", "counter", "accept", "paid", "placed", "verified", "reject")


# =============================================================================
# Parsing
# =============================================================================

def _require(data: dict, key: str):
    if key not in data or data[key] is None:
        raise ValueError(f"Message field '{key}' is required")
    return data[key]


def _common(data: dict) -> dict:
    negotiation_id = _require(data, "negotiation_id")
    if not isinstance(negotiation_id, str) or not negotiation_id.strip():
        raise ValueError("negotiation_id must be a non-empty string")
    return {
        "negotiation_id": negotiation_id,
        "message_id": str(_require(data, "message_id")),
        "timestamp": str(_require(data, "timestamp")),
    }


def parse_message(data: dict) -> NegotiationMessage:
    """Parse a decrypted payload into a typed message.

    Raises:
        ValueError: unknown type, missing fields, or bad field types.
    """
    if not isinstance(data, dict):
        raise ValueError("Message payload must be a JSON object")

    msg_type = data.get("type")
    common = _common(data)

    if msg_type == "inquiry":
        return Inquiry(
            regarding_bid_id=str(data.get("regarding_bid_id") or ""),
            text=str(data.get("text") or ""),
            **common,
        )
    elif msg_type == "counter":
        sats = _require(data, "sats")
        if isinstance(sats, bool) or not isinstance(sats, int):
            raise ValueError(f"Counter sats must be an integer, got {sats!r}")
        return Counter(sats=sats, terms=str(data.get("terms") or ""), **common)
    elif msg_type == "accept":
        return Accept(payment_reference=str(data.get("payment_reference") or ""), **common)
    elif msg_type == "paid":
        details = _require(data, "link_details")
        if not isinstance(details, dict) or not details.get("url"):
            raise ValueError("Paid link_details must include a url")
        return Paid(
            proof=str(_require(data, "proof")),
            link_details=LinkDetails(url=str(details["url"]), anchor=str(details.get("anchor") or "")),
            **common,
        )
    elif msg_type == "placed":
        return Placed(
            live_url=str(_require(data, "live_url")),
            proof_ref=str(data.get("proof_ref") or ""),
            **common,
        )
    elif msg_type == "verified":
        confirmed = _require(data, "confirmed")
        if not isinstance(confirmed, bool):
            raise ValueError("Verified confirmed must be a boolean")
        return Verified(confirmed=confirmed, notes=str(data.get("notes") or ""), **common)
    elif msg_type == "reject":
        return Reject(reason=str(data.get("reason") or ""), **common)
    else:
        raise ValueError(f"Unknown message type: {msg_type}")


def message_to_dict(msg: NegotiationMessage) -> dict:
    """Serialize a typed message to a JSON-safe dict."""
    base = {
        "type": msg.type,
        "negotiation_id": msg.negotiation_id,
        "message_id": msg.message_id,
        "timestamp": msg.timestamp,
    }
    if isinstance(msg, Inquiry):
        base.update(regarding_bid_id=msg.regarding_bid_id, text=msg.text)
    elif isinstance(msg, Counter):
        base.update(sats=msg.sats, terms=msg.terms)
    elif isinstance(msg, Accept):
        base.update(payment_reference=msg.payment_reference)
    elif isinstance(msg, Paid):
        base.update(
            proof=msg.proof,
            link_details={"url": msg.link_details.url, "anchor": msg.link_details.anchor},
        )
    elif isinstance(msg, Placed):
        base.update(live_url=msg.live_url, proof_ref=msg.proof_ref)
    elif isinstance(msg, Verified):
        base.update(confirmed=msg.confirmed, notes=msg.notes)
    elif isinstance(msg, Reject):
        base.update(reason=msg.reason)
    else:
        raise ValueError(f"Unknown message type: {type(msg)}")
    return base


def message_time(msg: NegotiationMessage) -> datetime:
    """Parse a message timestamp for ordering. Unparseable stamps sort first."""
    try:
        ts = datetime.fromisoformat(msg.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
