"""
Relay pool — publish and query signed events across a set of HTTP relays.

Each relay is tried independently. A publish succeeds if any relay accepts the
event; query results are merged, signature-checked and deduplicated.

Depends on: config, network/events
"""

import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from backlinkmesh.config import RELAY_POLL_INTERVAL, RELAY_TIMEOUT, RELAYS
from backlinkmesh.network.events import Event, EventFilter, newer


class PublishError(RuntimeError):
    """No relay accepted the event."""

    def __init__(self, message: str, results: Optional[list["RelayResult"]] = None):
        super().__init__(message)
        self.results = results or []


@dataclass
class RelayResult:
    """Outcome of one relay request."""
    relay_url: str
    success: bool
    error: Optional[str] = None
    response: Optional[dict] = None


def _prune_seen(seen: dict[str, int], since: int) -> dict[str, int]:
    """Drop ids that fell behind the window; the filter already excludes them."""
    return {event_id: ts for event_id, ts in seen.items() if ts >= since}


class RelayPool:
    """A fixed set of relay endpoints spoken to over HTTP."""

    def __init__(self, relays: Optional[list[str]] = None, timeout: float = RELAY_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.relays = [r.rstrip("/") for r in (RELAYS if relays is None else relays)]
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    async def _publish_one(self, client: httpx.AsyncClient, relay_url: str, event: Event) -> RelayResult:
        try:
            resp = await client.post(relay_url + "/events", json=event.to_dict())
            body = resp.json() if resp.content else {}
            if resp.status_code >= 400 or not body.get("success", False):
                error = body.get("error") or f"HTTP {resp.status_code}"
                return RelayResult(relay_url=relay_url, success=False, error=error, response=body)
            return RelayResult(relay_url=relay_url, success=True, response=body)
        except (httpx.HTTPError, ValueError) as e:
            return RelayResult(relay_url=relay_url, success=False, error=str(e) or type(e).__name__)

    async def publish(self, event: Event, relays: Optional[list[str]] = None) -> list[RelayResult]:
        """Publish to every relay (or the given subset).

        Returns one RelayResult per relay.

        Raises:
            PublishError: no relay accepted the event.
        """
        targets = self.relays if relays is None else relays
        if not targets:
            raise PublishError("No relays configured")
        async with self._client() as client:
            results = await asyncio.gather(*(self._publish_one(client, url, event) for url in targets))
        results = list(results)
        for r in results:
            if not r.success:
                print(f"[BacklinkMesh] Relay {r.relay_url} rejected event {event.id[:12]}...: {r.error}",
                      file=sys.stderr)
        if not any(r.success for r in results):
            raise PublishError(f"Event {event.id[:12]}... was rejected by all {len(results)} relay(s)", results)
        return results

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def _query_one(self, client: httpx.AsyncClient, relay_url: str,
                         flt: EventFilter) -> list[Event]:
        try:
            resp = await client.post(relay_url + "/query", json=flt.to_dict())
            resp.raise_for_status()
            raw_events = resp.json().get("events", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            print(f"[BacklinkMesh] Query to {relay_url} failed: {e}", file=sys.stderr)
            return []

        events = []
        for raw in raw_events:
            try:
                event = Event.from_dict(raw)
            except ValueError:
                continue
            if event.verify() and flt.matches(event):
                events.append(event)
        return events

    async def query(self, flt: EventFilter) -> list[Event]:
        """Query every relay and merge. Newest first, one copy per event id.

        Replaceable events are collapsed to the newest per (author, kind, d).
        Unreachable relays and bad events are skipped.
        """
        if not self.relays:
            return []
        async with self._client() as client:
            per_relay = await asyncio.gather(*(self._query_one(client, url, flt) for url in self.relays))

        by_id: dict[str, Event] = {}
        latest: dict[tuple, Event] = {}
        for events in per_relay:
            for event in events:
                key = event.replace_key()
                if key is not None:
                    current = latest.get(key)
                    if current is None or newer(event, current):
                        latest[key] = event
                else:
                    by_id[event.id] = event
        for event in latest.values():
            by_id[event.id] = event

        merged = sorted(by_id.values(), key=lambda e: (-e.created_at, e.id))
        if flt.limit is not None:
            merged = merged[:flt.limit]
        return merged

    async def subscribe_live(self, flt: EventFilter, on_event: Callable[[Event], Awaitable[None]],
                             interval: float = RELAY_POLL_INTERVAL,
                             stop: Optional[asyncio.Event] = None) -> None:
        """Poll for new events matching ``flt`` until ``stop`` is set.

        Each event is delivered once. The ``since`` window advances with the
        newest event seen, and only ids still inside the window are remembered.
        """
        seen: dict[str, int] = {}
        since = flt.since if flt.since is not None else int(time.time())
        while stop is None or not stop.is_set():
            window = EventFilter(
                ids=flt.ids, authors=flt.authors, kinds=flt.kinds, tags=flt.tags,
                since=since, until=flt.until, limit=flt.limit,
            )
            events = await self.query(window)
            for event in sorted(events, key=lambda e: e.created_at):
                if event.id in seen:
                    continue
                seen[event.id] = event.created_at
                since = max(since, event.created_at)
                await on_event(event)
            seen = _prune_seen(seen, since)
            if stop is None:
                await asyncio.sleep(interval)
            else:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
