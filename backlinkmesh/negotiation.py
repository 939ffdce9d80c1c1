"""
Negotiation — the deal state machine and the engine that drives it.

The state machine is a set of pure functions over a Deal. Every message seen
on a deal is logged. A message that is a valid move from the deal's current
status is applied; anything else (out of turn, duplicate, wrong sender) is
logged with applied=False and a note. After each successful transition the
unapplied log entries are retried in timestamp order, so messages that
arrive early take effect once the deal catches up. Until payment, a message
that arrives late but is older than something already applied rebuilds the
deal from the whole log, so both parties end up with the same terms and the
same seller (the earliest accept wins, ties broken by message id).

    INITIATED -> PROPOSED -> COUNTERED* -> ACCEPTED -> PAID -> PLACED
        -> VERIFYING -> COMPLETED | FAILED

FAILED is reachable from any non-terminal status. A deal that failed
verification re-enters VERIFYING on a new placement announcement.

NegotiationEngine runs the state machine against the persisted state file,
the messenger and the payment provider. Each mutation is an atomic
read-modify-write scoped to one negotiation id.

Depends on: config, models, messages, state, verify, wallet, network
"""

import bisect
import copy
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from backlinkmesh.config import DM_POLL_OVERLAP, INVOICE_MEMO_PREFIX
from backlinkmesh.identity import Credentials, validate_url
from backlinkmesh.messages import (
    Accept,
    Counter,
    Inquiry,
    LinkDetails,
    NegotiationMessage,
    Paid,
    Placed,
    Reject,
    Verified,
    message_time,
    message_to_dict,
    parse_message,
)
from backlinkmesh.models import (
    AgreedTerms,
    Deal,
    DealStatus,
    Direction,
    LinkConstraints,
    LogEntry,
    VerificationResult,
)
from backlinkmesh.network.dm import Messenger
from backlinkmesh.state import load_state, state_file_path, state_transaction
from backlinkmesh.verify import verify_backlink
from backlinkmesh.wallet import PaymentError, PaymentProvider

RECIPROCAL_PROOF = "reciprocal"

# Statuses in which a late, earlier message re-derives the deal from its log
NEGOTIATING = (
    None,
    DealStatus.INITIATED,
    DealStatus.PROPOSED,
    DealStatus.COUNTERED,
    DealStatus.ACCEPTED,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _log(deal: Deal, text: str) -> None:
    print(f"[BacklinkMesh] Deal {deal.negotiation_id[:12]}: {text}", file=sys.stderr)


# =============================================================================
# State machine
# =============================================================================

def new_deal(negotiation_id: str, initiator: str, counterparty: str,
             expires_at: Optional[int] = None) -> Deal:
    return Deal(
        negotiation_id=negotiation_id,
        initiator=initiator,
        counterparty=counterparty,
        expires_at=expires_at,
    )


def _wants_dofollow(terms: str) -> bool:
    text = terms.lower()
    return "dofollow" in text and "nofollow" not in text


def _last_applied(deal: Deal, kind: type) -> Optional[LogEntry]:
    for entry in reversed(deal.message_log):
        if entry.applied and isinstance(entry.message, kind):
            return entry
    return None


def _fail(deal: Deal, reason: str, at: Optional[str] = None, reverifiable: bool = False) -> None:
    deal.status = DealStatus.FAILED
    deal.failure_reason = reason
    deal.failed_at = at or _now_iso()
    deal.reverifiable = reverifiable


def _finish_verification(deal: Deal, confirmed: bool, reason: str, at: Optional[str] = None) -> None:
    if confirmed:
        deal.status = DealStatus.COMPLETED
        deal.failure_reason = None
        deal.reverifiable = False
    else:
        _fail(deal, reason or "link verification failed", at=at, reverifiable=True)


def _settle(deal: Deal, proof: str, payment_hash: Optional[str] = None) -> None:
    deal.status = DealStatus.PAID
    deal.payment_proof = proof
    if payment_hash:
        deal.payment_hash = payment_hash


def _try_apply(deal: Deal, entry: LogEntry) -> Optional[str]:
    """Apply ``entry`` if it is a valid move. Returns None if applied, else why not."""
    msg = entry.message
    sender = entry.sender
    status = deal.status
    label = status.value if status else "new"

    if isinstance(msg, Placed):
        if status == DealStatus.PLACED:
            if sender != deal.seller:
                return "placed may only come from the seller"
        elif status == DealStatus.FAILED and deal.reverifiable:
            if sender != deal.seller:
                return "placed may only come from the seller"
            if deal.failed_at and message_time(msg) < _parse_iso(deal.failed_at):
                return "placed predates the verification failure"
        else:
            return f"placed not allowed while {label}"
        deal.agreed_terms.live_url = msg.live_url
        deal.status = DealStatus.VERIFYING
        return None

    if deal.is_terminal:
        return f"deal already {label}"

    if isinstance(msg, Inquiry):
        if status is not None:
            return "negotiation already started"
        deal.initiator = sender
        deal.counterparty = entry.recipient
        deal.regarding_bid_id = msg.regarding_bid_id or None
        deal.status = DealStatus.INITIATED
        return None

    elif isinstance(msg, Counter):
        if status == DealStatus.INITIATED:
            deal.status = DealStatus.PROPOSED
        elif status in (DealStatus.PROPOSED, DealStatus.COUNTERED):
            deal.status = DealStatus.COUNTERED
        else:
            return f"counter not allowed while {label}"
        deal.agreed_terms.sats = msg.sats
        deal.agreed_terms.terms = msg.terms
        deal.agreed_terms.require_dofollow = _wants_dofollow(msg.terms)
        return None

    elif isinstance(msg, Accept):
        if status not in (DealStatus.PROPOSED, DealStatus.COUNTERED):
            return f"accept not allowed while {label}"
        deal.seller = sender
        deal.buyer = entry.recipient
        deal.agreed_terms.payment_reference = msg.payment_reference
        deal.status = DealStatus.ACCEPTED
        return None

    elif isinstance(msg, Paid):
        if sender != deal.buyer:
            return "paid may only come from the buyer"
        if status == DealStatus.ACCEPTED and deal.agreed_terms.sats == 0:
            # Reciprocal exchange, nothing to settle
            _settle(deal, msg.proof or RECIPROCAL_PROOF)
        elif status != DealStatus.PAID:
            return f"paid not allowed while {label}"
        deal.agreed_terms.target_url = msg.link_details.url
        deal.agreed_terms.anchor_text = msg.link_details.anchor or None
        if not deal.payment_proof:
            deal.payment_proof = msg.proof
        deal.status = DealStatus.PLACED
        return None

    elif isinstance(msg, Verified):
        if status != DealStatus.VERIFYING:
            return f"verified not allowed while {label}"
        if sender != deal.buyer:
            return "verified may only come from the buyer"
        placed = _last_applied(deal, Placed)
        if placed is not None and message_time(msg) < message_time(placed.message):
            return "verified predates the current placement"
        _finish_verification(deal, msg.confirmed, msg.notes, at=msg.timestamp)
        return None

    elif isinstance(msg, Reject):
        _fail(deal, msg.reason or "rejected by counterparty", at=msg.timestamp)
        return None

    raise ValueError(f"Unknown message type: {type(msg).__name__}")


def _replay(deal: Deal, quiet: bool = False) -> None:
    """Retry unapplied entries in timestamp order until nothing more applies."""
    progress = True
    while progress:
        progress = False
        for entry in deal.message_log:
            if entry.applied:
                continue
            note = _try_apply(deal, entry)
            if note is None:
                entry.applied = True
                entry.note = None
                if not quiet:
                    _log(deal, f"deferred {entry.message.type} applied, now {deal.status.value}")
                progress = True
                break
            entry.note = note


def _order_key(message: NegotiationMessage) -> tuple:
    return message_time(message), message.message_id


def _rebuild(deal: Deal) -> None:
    """Re-derive a deal still under negotiation from its log, in timestamp order."""
    deal.status = None
    deal.agreed_terms = AgreedTerms()
    deal.buyer = None
    deal.seller = None
    deal.failure_reason = None
    deal.failed_at = None
    deal.reverifiable = False
    for entry in deal.message_log:
        entry.applied = False
        entry.note = None
    _replay(deal, quiet=True)


def apply_message(deal: Deal, message: NegotiationMessage, sender: str, recipient: str,
                  direction: Direction) -> LogEntry:
    """Log ``message`` on ``deal`` and apply it if it is a valid move.

    A message id already in the log is ignored and its original entry returned.
    Never raises for protocol violations; check ``entry.applied``.
    """
    if message.negotiation_id != deal.negotiation_id:
        raise ValueError("message belongs to a different negotiation")
    for existing in deal.message_log:
        if existing.message.message_id == message.message_id:
            return existing

    entry = LogEntry(message=message, direction=direction, sender=sender, recipient=recipient)
    keys = [_order_key(e.message) for e in deal.message_log]
    index = bisect.bisect_right(keys, _order_key(message))
    deal.message_log.insert(index, entry)

    # Before payment a late message can still change the terms or who sells
    if deal.status in NEGOTIATING and any(e.applied for e in deal.message_log[index + 1:]):
        _rebuild(deal)
        deal.updated_at = _now_iso()
        _log(deal, f"late {message.type} reordered the log, now {deal.status.value if deal.status else 'new'}")
        return entry

    note = _try_apply(deal, entry)
    if note is None:
        entry.applied = True
        deal.updated_at = _now_iso()
        _replay(deal)
    else:
        entry.note = note
        _log(deal, f"{message.type} logged, not applied: {note}")
    return entry


def settle_payment(deal: Deal, actor: str, proof: str, payment_hash: Optional[str] = None) -> None:
    """Record that payment has settled (the buyer paid, or the seller saw it arrive).

    Raises:
        ValueError: deal is not awaiting payment or ``actor`` isn't a party.
    """
    if deal.status != DealStatus.ACCEPTED:
        raise ValueError(f"deal is {deal.status.value if deal.status else 'new'}, not awaiting payment")
    if actor not in (deal.buyer, deal.seller):
        raise ValueError("only the buyer or seller can settle payment")
    _settle(deal, proof, payment_hash)
    deal.updated_at = _now_iso()
    _replay(deal)


def record_verification(deal: Deal, result: VerificationResult) -> None:
    """Close out a deal in VERIFYING with a Link Verifier result.

    Raises:
        ValueError: deal is not in VERIFYING.
    """
    if deal.status != DealStatus.VERIFYING:
        raise ValueError(f"deal is {deal.status.value if deal.status else 'new'}, not verifying")
    deal.verification_result = result
    _finish_verification(deal, result.verified, result.reason or "", at=result.checked_at)
    deal.updated_at = _now_iso()
    _replay(deal)


def fail_deal(deal: Deal, reason: str) -> bool:
    """Fail a non-terminal deal. Returns False if it was already terminal."""
    if deal.is_terminal:
        return False
    _fail(deal, reason)
    deal.updated_at = _now_iso()
    return True


def expire_deal(deal: Deal, now: Optional[float] = None) -> bool:
    """Fail a non-terminal deal whose bid has expired. Returns True if it did."""
    if now is None:
        now = time.time()
    if deal.expires_at is None or now < deal.expires_at:
        return False
    return fail_deal(deal, "expired")


def target_domain(deal: Deal) -> Optional[str]:
    """Host the placed link must point at, from the buyer's link details."""
    url = deal.agreed_terms.target_url
    if not url:
        return None
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host or None


def placement_constraints(deal: Deal, require_dofollow: Optional[bool] = None) -> LinkConstraints:
    terms = deal.agreed_terms
    return LinkConstraints(
        require_dofollow=terms.require_dofollow if require_dofollow is None else require_dofollow,
        required_anchor_substring=terms.anchor_text or None,
    )


# =============================================================================
# Engine
# =============================================================================

class NegotiationEngine:
    """Drives deals over the messenger, persisting every step."""

    def __init__(self, creds: Credentials, messenger: Messenger,
                 payment: Optional[PaymentProvider] = None,
                 state_path: Optional[str] = None,
                 verifier=verify_backlink):
        self.creds = creds
        self.messenger = messenger
        self.payment = payment
        self.state_path = state_path or state_file_path()
        self.verifier = verifier

    @property
    def me(self) -> str:
        return self.creds.identity

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def deals(self) -> list[Deal]:
        return sorted(load_state(self.state_path).deals.values(), key=lambda d: d.created_at)

    def get_deal(self, negotiation_id: str) -> Deal:
        deal = load_state(self.state_path).deals.get(negotiation_id)
        if deal is None:
            raise ValueError(f"Unknown negotiation: {negotiation_id}")
        return deal

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _record(self, message: NegotiationMessage, sender: str, recipient: str,
                direction: Direction, expires_at: Optional[int] = None,
                result: Optional[VerificationResult] = None) -> tuple[Deal, LogEntry]:
        with state_transaction(self.state_path) as state:
            deal = state.deals.get(message.negotiation_id)
            if deal is None:
                deal = new_deal(message.negotiation_id, sender, recipient, expires_at)
                state.deals[deal.negotiation_id] = deal
            if result is not None:
                deal.verification_result = result
            entry = apply_message(deal, message, sender, recipient, direction)
        return deal, entry

    async def _send(self, message: NegotiationMessage, peer: str, expires_at: Optional[int] = None,
                    result: Optional[VerificationResult] = None) -> Deal:
        """Check ``message`` is a valid move, send it, then record it."""
        state = load_state(self.state_path)
        existing = state.deals.get(message.negotiation_id)
        preview = copy.deepcopy(existing) if existing else new_deal(message.negotiation_id, self.me, peer)
        entry = apply_message(preview, message, self.me, peer, Direction.OUTBOUND)
        if not entry.applied:
            raise ValueError(f"Cannot send {message.type}: {entry.note}")

        await self.messenger.send(peer, message_to_dict(message))
        deal, _ = self._record(message, self.me, peer, Direction.OUTBOUND, expires_at, result)
        return deal

    def _peer(self, deal: Deal) -> str:
        return deal.peer_of(self.me)

    # -------------------------------------------------------------------------
    # Outbound moves
    # -------------------------------------------------------------------------

    async def start(self, peer: str, regarding_bid_id: str = "", text: str = "",
                    negotiation_id: Optional[str] = None, expires_at: Optional[int] = None) -> Deal:
        """Open a negotiation with ``peer`` by sending an inquiry."""
        if peer == self.me:
            raise ValueError("Cannot negotiate with yourself")
        negotiation_id = negotiation_id or str(uuid.uuid4())
        msg = Inquiry(negotiation_id=negotiation_id, regarding_bid_id=regarding_bid_id, text=text)
        return await self._send(msg, peer, expires_at=expires_at)

    async def counter(self, negotiation_id: str, sats: int, terms: str = "") -> Deal:
        deal = self.get_deal(negotiation_id)
        msg = Counter(negotiation_id=negotiation_id, sats=sats, terms=terms)
        return await self._send(msg, self._peer(deal))

    async def accept(self, negotiation_id: str, payment_reference: Optional[str] = None) -> Deal:
        """Accept the current terms as the seller.

        For a paid deal with no explicit payment reference, an invoice for the
        agreed amount is created with the payment provider.
        """
        deal = self.get_deal(negotiation_id)
        payment_hash = None
        if payment_reference is None:
            payment_reference = ""
            sats = deal.agreed_terms.sats
            if sats > 0:
                if self.payment is None:
                    raise PaymentError("No payment provider configured to issue an invoice")
                invoice = await self.payment.create_invoice(sats, f"{INVOICE_MEMO_PREFIX} {negotiation_id}")
                payment_reference = invoice.payment_request
                payment_hash = invoice.payment_hash
        msg = Accept(negotiation_id=negotiation_id, payment_reference=payment_reference)
        deal = await self._send(msg, self._peer(deal))
        if payment_hash:
            with state_transaction(self.state_path) as state:
                deal = state.deals[negotiation_id]
                deal.payment_hash = payment_hash
        return deal

    async def pay(self, negotiation_id: str, link_url: Optional[str] = None, anchor: str = "") -> Deal:
        """Pay the seller's invoice as the buyer, then announce it if link details are given."""
        deal = self.get_deal(negotiation_id)
        if deal.buyer != self.me:
            raise ValueError("Only the buyer pays")
        if deal.status != DealStatus.ACCEPTED:
            raise ValueError(f"Deal is {deal.status.value if deal.status else 'new'}, not awaiting payment")

        if deal.agreed_terms.sats > 0:
            invoice = deal.agreed_terms.payment_reference
            if not invoice:
                raise PaymentError("Seller sent no invoice")
            if self.payment is None:
                raise PaymentError("No payment provider configured")
            result = await self.payment.pay_invoice(invoice)
            with state_transaction(self.state_path) as state:
                deal = state.deals[negotiation_id]
                settle_payment(deal, self.me, result.preimage or result.payment_hash, result.payment_hash)
            _log(deal, f"paid {deal.agreed_terms.sats} sats")

        if link_url:
            deal = await self.announce_payment(negotiation_id, link_url, anchor)
        return deal

    async def announce_payment(self, negotiation_id: str, link_url: str, anchor: str = "") -> Deal:
        """Tell the seller we paid and where the link should point."""
        err = validate_url(link_url)
        if err:
            raise ValueError(err)
        deal = self.get_deal(negotiation_id)
        proof = deal.payment_proof or RECIPROCAL_PROOF
        msg = Paid(negotiation_id=negotiation_id, proof=proof,
                   link_details=LinkDetails(url=link_url, anchor=anchor))
        return await self._send(msg, self._peer(deal))

    async def confirm_payment(self, negotiation_id: str) -> Deal:
        """As the seller, check whether our invoice has been paid.

        Settles the deal if it has; otherwise leaves it untouched.
        """
        deal = self.get_deal(negotiation_id)
        if deal.seller != self.me:
            raise ValueError("Only the seller confirms payment")
        if deal.status != DealStatus.ACCEPTED:
            raise ValueError(f"Deal is {deal.status.value if deal.status else 'new'}, not awaiting payment")
        if deal.agreed_terms.sats == 0:
            raise ValueError("Reciprocal deal, there is no payment to confirm")
        if not deal.payment_hash:
            raise PaymentError("No invoice on record for this deal")
        if self.payment is None:
            raise PaymentError("No payment provider configured")

        status = await self.payment.check_payment(deal.payment_hash)
        if not status.paid:
            _log(deal, "invoice not paid yet")
            return deal
        with state_transaction(self.state_path) as state:
            deal = state.deals[negotiation_id]
            if deal.status == DealStatus.ACCEPTED:
                settle_payment(deal, self.me, status.preimage or deal.payment_hash, deal.payment_hash)
        return deal

    async def announce_placement(self, negotiation_id: str, live_url: str, proof_ref: str = "") -> Deal:
        """As the seller, announce the page where the link now lives."""
        err = validate_url(live_url)
        if err:
            raise ValueError(err)
        deal = self.get_deal(negotiation_id)
        msg = Placed(negotiation_id=negotiation_id, live_url=live_url, proof_ref=proof_ref)
        return await self._send(msg, self._peer(deal))

    async def verify_placement(self, negotiation_id: str,
                               require_dofollow: Optional[bool] = None) -> Deal:
        """Run the Link Verifier against the announced placement.

        The buyer reports the outcome to the seller; anyone else just records it.
        """
        deal = self.get_deal(negotiation_id)
        if deal.status != DealStatus.VERIFYING:
            raise ValueError(f"Deal is {deal.status.value if deal.status else 'new'}, not verifying")
        domain = target_domain(deal)
        if not domain or not deal.agreed_terms.live_url:
            raise ValueError("Deal has no link details to verify")

        result = await self.verifier(
            deal.agreed_terms.live_url, domain, placement_constraints(deal, require_dofollow),
        )
        _log(deal, f"verification {'passed' if result.verified else 'failed: ' + str(result.reason)}")

        if deal.buyer == self.me:
            msg = Verified(negotiation_id=negotiation_id, confirmed=result.verified,
                           notes=result.reason or "link verified")
            return await self._send(msg, self._peer(deal), result=result)

        with state_transaction(self.state_path) as state:
            deal = state.deals[negotiation_id]
            record_verification(deal, result)
        return deal

    async def reject(self, negotiation_id: str, reason: str = "") -> Deal:
        deal = self.get_deal(negotiation_id)
        msg = Reject(negotiation_id=negotiation_id, reason=reason)
        return await self._send(msg, self._peer(deal))

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def poll(self, since: Optional[int] = None) -> list[Deal]:
        """Read new direct messages and apply them. Returns the deals touched.

        Reads from a little behind the last poll, so a message stamped by a
        slow clock or relayed late is still picked up. Messages already in a
        deal's log are skipped.
        """
        if since is None:
            last_poll = load_state(self.state_path).last_poll
            since = max(0, last_poll - DM_POLL_OVERLAP) if last_poll else None
        inbound = await self.messenger.read(since=since)

        touched: dict[str, Deal] = {}
        newest = since or 0
        for item in inbound:
            newest = max(newest, item.created_at)
            try:
                message = parse_message(item.payload)
            except ValueError as e:
                print(f"[BacklinkMesh] Skipping malformed message {item.event_id[:12]}...: {e}", file=sys.stderr)
                continue
            existing = load_state(self.state_path).deals.get(message.negotiation_id)
            if existing is not None and item.sender not in (existing.initiator, existing.counterparty):
                print(f"[BacklinkMesh] Ignoring message for {message.negotiation_id[:12]} "
                      f"from a non-party", file=sys.stderr)
                continue
            if existing is not None and any(
                e.message.message_id == message.message_id for e in existing.message_log
            ):
                continue
            deal, _ = self._record(message, item.sender, self.me, Direction.INBOUND)
            touched[deal.negotiation_id] = deal

        with state_transaction(self.state_path) as state:
            state.last_poll = max(state.last_poll, newest)
        return list(touched.values())

    def expire_stale(self, now: Optional[float] = None) -> list[str]:
        """Fail every open deal whose bid has expired. Returns their ids."""
        expired = []
        with state_transaction(self.state_path) as state:
            for deal in state.deals.values():
                if expire_deal(deal, now):
                    expired.append(deal.negotiation_id)
        return expired
