"""
BacklinkMesh Relay — a small self-hostable event relay.

Agents publish signed events (site registrations, bids, encrypted direct
messages) and query them back with filters. Any agent can run one; the
network is just whatever set of relays agents agree to use.

Storage is in-memory with optional JSON file backup. No database needed.
Parameterized-replaceable kinds keep only the newest event per
(author, kind, d-tag).

Run standalone with: backlinkmesh relay --port 8300
"""

import collections
import fcntl
import json
import sys
import time
from pathlib import Path
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from backlinkmesh.config import (
    MAX_QUERY_LIMIT,
    PROTOCOL_VERSION,
    RELAY_MAX_EVENTS,
    RELAY_MAX_FUTURE_SKEW,
    RELAY_RATE_LIMIT,
    RELAY_RATE_WINDOW,
)
from backlinkmesh.network.events import Event, EventFilter, newer


# =============================================================================
# Storage
# =============================================================================

class RelayStore:
    """Event storage with replace-by-key and an optional flock'd JSON backup."""

    def __init__(self, path: Optional[str] = None, max_events: int = RELAY_MAX_EVENTS):
        self.path = path
        self.max_events = max_events
        self._events: dict[str, Event] = {}
        self._replaceable: dict[tuple, str] = {}   # replace key -> event id
        if path:
            self._load()

    def __len__(self) -> int:
        return len(self._events)

    def _load(self) -> None:
        try:
            with open(self.path) as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                data = json.load(f)
                fcntl.flock(f, fcntl.LOCK_UN)
        except (FileNotFoundError, json.JSONDecodeError):
            return
        for raw in data if isinstance(data, list) else []:
            try:
                event = Event.from_dict(raw)
            except ValueError:
                continue
            if event.verify():
                self._insert(event)

    def _save(self) -> None:
        if not self.path:
            return
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                json.dump([e.to_dict() for e in self._events.values()], f)
                fcntl.flock(f, fcntl.LOCK_UN)
        except OSError as e:
            print(f"[BacklinkMesh Relay] Failed to write backup: {e}", file=sys.stderr)

    def _insert(self, event: Event) -> tuple[bool, str]:
        if event.id in self._events:
            return False, "duplicate"
        key = event.replace_key()
        if key is not None:
            current_id = self._replaceable.get(key)
            if current_id is not None:
                current = self._events[current_id]
                if not newer(event, current):
                    return False, "replaced: have newer event"
                del self._events[current_id]
            self._replaceable[key] = event.id
        self._events[event.id] = event
        return True, ""

    def _evict(self) -> None:
        """Drop the oldest events once over capacity."""
        overflow = len(self._events) - self.max_events
        if overflow <= 0:
            return
        oldest = sorted(self._events.values(), key=lambda e: (e.created_at, e.id))[:overflow]
        for event in oldest:
            del self._events[event.id]
            key = event.replace_key()
            if key is not None and self._replaceable.get(key) == event.id:
                del self._replaceable[key]

    def add(self, event: Event) -> tuple[bool, str]:
        """Store an already-verified event. Returns (stored, reason)."""
        stored, reason = self._insert(event)
        if stored:
            self._evict()
            self._save()
        return stored, reason

    def query(self, flt: EventFilter) -> list[Event]:
        """Matching events, newest first, capped at the filter limit."""
        limit = MAX_QUERY_LIMIT if flt.limit is None else flt.limit
        matched = [e for e in self._events.values() if flt.matches(e)]
        matched.sort(key=lambda e: (-e.created_at, e.id))
        return matched[:limit]


# =============================================================================
# HTTP endpoints
# =============================================================================

def create_relay_app(store: Optional[RelayStore] = None) -> Starlette:
    """Create the relay ASGI app around ``store`` (in-memory if omitted)."""
    store = store if store is not None else RelayStore()
    rate_buckets: dict[str, collections.deque] = {}

    def rate_limited(client_ip: str) -> bool:
        now = time.time()
        cutoff = now - RELAY_RATE_WINDOW
        bucket = rate_buckets.setdefault(client_ip, collections.deque())
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= RELAY_RATE_LIMIT:
            return True
        bucket.append(now)
        # Evict idle IPs when the table grows too large
        if len(rate_buckets) > 1000:
            for ip in [ip for ip, dq in rate_buckets.items() if not dq]:
                del rate_buckets[ip]
        return False

    async def handle_publish(request: Request) -> JSONResponse:
        """Accept a signed event."""
        client_ip = request.client.host if request.client else "unknown"
        if rate_limited(client_ip):
            return JSONResponse({"success": False, "error": "Rate limit exceeded"}, status_code=429)

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "Invalid JSON"}, status_code=400)

        try:
            event = Event.from_dict(body)
        except ValueError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)

        if not event.verify():
            return JSONResponse({"success": False, "error": "Invalid id or signature"}, status_code=400)

        if event.created_at > int(time.time()) + RELAY_MAX_FUTURE_SKEW:
            return JSONResponse({"success": False, "error": "Event is dated in the future"}, status_code=400)

        stored, reason = store.add(event)
        return JSONResponse({"success": True, "id": event.id, "stored": stored, "message": reason})

    async def handle_query(request: Request) -> JSONResponse:
        """Return events matching a filter."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        try:
            flt = EventFilter.from_dict(body)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        return JSONResponse({"events": [e.to_dict() for e in store.query(flt)]})

    async def handle_well_known(request: Request) -> JSONResponse:
        """Discovery endpoint identifying this as a BacklinkMesh relay."""
        return JSONResponse({
            "backlinkmesh": True,
            "relay": True,
            "protocol_version": PROTOCOL_VERSION,
            "events_stored": len(store),
        })

    app = Starlette(routes=[
        Route("/events", handle_publish, methods=["POST"]),
        Route("/query", handle_query, methods=["POST"]),
        Route("/.well-known/backlinkmesh.json", handle_well_known, methods=["GET"]),
    ])
    app.state.store = store
    return app


def serve_relay(host: str = "127.0.0.1", port: int = 8300, store_path: Optional[str] = None) -> None:
    """Run a relay with uvicorn until interrupted."""
    import uvicorn

    store = RelayStore(store_path)
    print(f"[BacklinkMesh Relay] Listening on http://{host}:{port} "
          f"({len(store)} event(s) loaded)", file=sys.stderr)
    uvicorn.run(create_relay_app(store), host=host, port=port, log_level="warning")
