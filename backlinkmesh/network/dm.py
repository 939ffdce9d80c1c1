"""
Encrypted direct messages between agents, carried as relay events.

The payload is a JSON object encrypted for the recipient and published as a
kind-4 event tagged with the recipient's identity. Undecryptable or malformed
messages are skipped, never raised.

Depends on: config, identity, network/events, network/relay
"""

import asyncio
import json
import sys
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from backlinkmesh.config import DM_LOOKBACK_SECONDS, DM_RELAY_COUNT, KIND_ENCRYPTED_DM, RELAY_POLL_INTERVAL
from backlinkmesh.identity import Credentials, decrypt_from, encrypt_for, is_valid_identity
from backlinkmesh.network.events import Event, EventFilter, build_event
from backlinkmesh.network.relay import RelayPool, RelayResult


@dataclass
class InboundMessage:
    """A decrypted direct message."""
    sender: str
    payload: dict
    event_id: str
    created_at: int


class Messenger:
    """Send and receive encrypted payloads as ``creds``."""

    def __init__(self, creds: Credentials, pool: RelayPool, relay_count: int = DM_RELAY_COUNT):
        self.creds = creds
        self.pool = pool
        self.relay_count = relay_count

    @property
    def identity(self) -> str:
        return self.creds.identity

    async def send(self, recipient: str, payload: dict) -> list[RelayResult]:
        """Encrypt ``payload`` for ``recipient`` and publish it.

        Raises:
            ValueError: recipient is not a valid identity.
            PublishError: no relay accepted the message.
        """
        if not is_valid_identity(recipient):
            raise ValueError(f"Invalid recipient identity: {recipient[:24]}")
        ciphertext = encrypt_for(self.creds, recipient, json.dumps(payload))
        event = build_event(self.creds, KIND_ENCRYPTED_DM, ciphertext, tags=[["p", recipient]])
        relays = self.pool.relays[:self.relay_count]
        return await self.pool.publish(event, relays=relays)

    def decrypt_event(self, event: Event) -> Optional[InboundMessage]:
        """Decrypt one DM event addressed to us. None if it can't be read."""
        if event.kind != KIND_ENCRYPTED_DM or self.identity not in event.tag_values("p"):
            return None
        try:
            plaintext = decrypt_from(self.creds, event.pubkey, event.content)
            payload = json.loads(plaintext)
        except ValueError as e:
            print(f"[BacklinkMesh] Skipping unreadable message {event.id[:12]}...: {e}", file=sys.stderr)
            return None
        if not isinstance(payload, dict):
            return None
        return InboundMessage(
            sender=event.pubkey, payload=payload, event_id=event.id, created_at=event.created_at,
        )

    def inbox_filter(self, since: Optional[int] = None) -> EventFilter:
        if since is None:
            since = int(time.time()) - DM_LOOKBACK_SECONDS
        return EventFilter(kinds=[KIND_ENCRYPTED_DM], tags={"p": [self.identity]}, since=since)

    async def read(self, since: Optional[int] = None) -> list[InboundMessage]:
        """Fetch and decrypt messages addressed to us, oldest first.

        Defaults to the last seven days.
        """
        events = await self.pool.query(self.inbox_filter(since))
        messages = []
        for event in sorted(events, key=lambda e: (e.created_at, e.id)):
            msg = self.decrypt_event(event)
            if msg is not None:
                messages.append(msg)
        return messages

    async def watch(self, on_message: Callable[[InboundMessage], Awaitable[None]],
                    since: Optional[int] = None, interval: float = RELAY_POLL_INTERVAL,
                    stop: Optional[asyncio.Event] = None) -> None:
        """Deliver each new readable message to ``on_message`` until ``stop`` is set."""

        async def _on_event(event: Event) -> None:
            msg = self.decrypt_event(event)
            if msg is not None:
                await on_message(msg)

        flt = self.inbox_filter(since if since is not None else int(time.time()))
        await self.pool.subscribe_live(flt, _on_event, interval=interval, stop=stop)
