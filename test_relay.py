#!/usr/bin/env python3
"""
Tests for the BacklinkMesh relay and relay pool.

Standalone async script, also collectable by pytest. Relays run in-process
behind httpx.ASGITransport; a small routing transport lets one pool talk to
several relays at once, or to relays that are down.
"""

import asyncio
import os
import sys
import tempfile
import time

import httpx

from backlinkmesh.config import KIND_ENCRYPTED_DM, KIND_SITE_REGISTRATION, SITE_TAG
from backlinkmesh.identity import Credentials
from backlinkmesh.network import Event, EventFilter, Messenger, PublishError, RelayPool, build_event
from backlinkmesh.network.relay import _prune_seen
from backlinkmesh.relay import RelayStore, create_relay_app

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

results: list[tuple[str, bool, str]] = []


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))
    assert passed, f"{name}: {detail}"


class RelayRouter(httpx.AsyncBaseTransport):
    """Route requests to in-process relays by host. Unknown hosts are unreachable."""

    def __init__(self, apps: dict):
        self.transports = {host: httpx.ASGITransport(app=app) for host, app in apps.items()}

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self.transports.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError("relay unreachable", request=request)
        return await transport.handle_async_request(request)


def single_relay() -> tuple[RelayPool, RelayStore]:
    store = RelayStore()
    router = RelayRouter({"relay-a.test": create_relay_app(store)})
    return RelayPool(["http://relay-a.test"], transport=router), store


def site_event(creds: Credentials, url: str, created_at: int, name: str = "Acme") -> Event:
    return build_event(creds, KIND_SITE_REGISTRATION, f'{{"name": "{name}"}}',
                       tags=[["d", url], ["t", SITE_TAG]], created_at=created_at)


# ---------------------------------------------------------------------------
# Relay server
# ---------------------------------------------------------------------------

async def test_publish_and_query() -> None:
    pool, store = single_relay()
    creds = Credentials.generate()
    event = site_event(creds, "https://acme.com", int(time.time()))

    out = await pool.publish(event)
    report("publish accepted", len(out) == 1 and out[0].success, str(out))
    report("stored on relay", len(store) == 1)

    got = await pool.query(EventFilter(kinds=[KIND_SITE_REGISTRATION]))
    report("query returns event", [e.id for e in got] == [event.id])
    report("returned event still verifies", got[0].verify())


async def test_replaceable_keeps_newest() -> None:
    pool, store = single_relay()
    creds = Credentials.generate()
    old = site_event(creds, "https://acme.com", 1000, name="Old")
    new = site_event(creds, "https://acme.com", 2000, name="New")
    other = site_event(creds, "https://other.com", 1500)

    await pool.publish(old)
    await pool.publish(new)
    await pool.publish(other)
    out = await pool.publish(old)
    report("older replacement not stored", out[0].response.get("stored") is False, str(out[0].response))

    got = await pool.query(EventFilter(authors=[creds.identity]))
    report("one event per d-tag", len(got) == 2 and len(store) == 2, str([e.content for e in got]))
    report("newest version wins", new.id in {e.id for e in got} and old.id not in {e.id for e in got})
    report("newest first", [e.created_at for e in got] == [2000, 1500])

    someone_else = Credentials.generate()
    await pool.publish(site_event(someone_else, "https://acme.com", 500))
    got = await pool.query(EventFilter(kinds=[KIND_SITE_REGISTRATION], tags={"d": ["https://acme.com"]}))
    report("replacement is per author", len(got) == 2, str(len(got)))


async def test_rejections() -> None:
    store = RelayStore()
    app = create_relay_app(store)
    creds = Credentials.generate()
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay.test") as client:
        event = site_event(creds, "https://acme.com", int(time.time()))
        first = (await client.post("/events", json=event.to_dict())).json()
        again = (await client.post("/events", json=event.to_dict())).json()
        report("duplicate acknowledged", again["success"] and again["stored"] is False
               and again["message"] == "duplicate", str(again))
        report("first copy stored", first["stored"] is True)

        future = site_event(creds, "https://late.com", int(time.time()) + 3600)
        resp = await client.post("/events", json=future.to_dict())
        report("future-dated rejected", resp.status_code == 400, resp.text)

        forged = dict(event.to_dict(), content='{"name": "Forged"}')
        resp = await client.post("/events", json=forged)
        report("bad signature rejected", resp.status_code == 400, resp.text)

        resp = await client.post("/events", json={"id": "x"})
        report("malformed event rejected", resp.status_code == 400, resp.text)

        resp = await client.post("/query", json={"bogus": 1})
        report("unknown filter field rejected", resp.status_code == 400, resp.text)

        info = (await client.get("/.well-known/backlinkmesh.json")).json()
        report("well-known identifies relay", info["backlinkmesh"] is True and info["events_stored"] == 1,
               str(info))


def test_filter_semantics() -> None:
    a = Credentials.generate()
    b = Credentials.generate()
    e1 = build_event(a, 30079, "{}", tags=[["d", "bid-1"], ["t", "plumbing"]], created_at=100)
    e2 = build_event(b, 30079, "{}", tags=[["d", "bid-2"], ["t", "hvac"]], created_at=200)

    flt = EventFilter(tags={"t": ["plumbing", "hvac"]})
    report("values within a field are OR'd", flt.matches(e1) and flt.matches(e2))
    flt = EventFilter(authors=[a.identity], tags={"t": ["hvac"]})
    report("fields are AND'd", not flt.matches(e1) and not flt.matches(e2))
    flt = EventFilter(since=150, until=250)
    report("time window inclusive", flt.matches(e2) and not flt.matches(e1))

    wire = EventFilter(kinds=[30079], tags={"t": ["hvac"]}, since=5, limit=10).to_dict()
    report("tags travel as #name", wire == {"kinds": [30079], "#t": ["hvac"], "since": 5, "limit": 10}, str(wire))
    parsed = EventFilter.from_dict({"limit": 10 ** 6})
    report("limit clamped", parsed.limit == 500, str(parsed.limit))
    try:
        EventFilter.from_dict({"kinds": [True]})
        report("boolean kind rejected", False, "no exception")
    except ValueError:
        report("boolean kind rejected", True)


# ---------------------------------------------------------------------------
# Relay pool
# ---------------------------------------------------------------------------

async def test_pool_across_relays() -> None:
    store_a, store_b = RelayStore(), RelayStore()
    router = RelayRouter({
        "relay-a.test": create_relay_app(store_a),
        "relay-b.test": create_relay_app(store_b),
    })
    pool = RelayPool(["http://relay-a.test", "http://relay-b.test", "http://relay-down.test"],
                     transport=router)
    creds = Credentials.generate()
    now = int(time.time())

    shared = site_event(creds, "https://shared.com", now)
    out = await pool.publish(shared)
    report("partial failure still publishes", sum(1 for r in out if r.success) == 2, str(out))
    report("down relay reported", any(not r.success and "down" in r.relay_url for r in out))

    only_a = site_event(creds, "https://a-only.com", now - 10)
    only_b = site_event(creds, "https://b-only.com", now - 20)
    await pool.publish(only_a, relays=["http://relay-a.test"])
    await pool.publish(only_b, relays=["http://relay-b.test"])

    got = await pool.query(EventFilter(authors=[creds.identity]))
    report("results merged across relays", [e.id for e in got] == [shared.id, only_a.id, only_b.id],
           str([e.first_tag("d") for e in got]))

    edited = site_event(creds, "https://shared.com", now + 5, name="Edited")
    await pool.publish(edited, relays=["http://relay-a.test"])
    got = await pool.query(EventFilter(tags={"d": ["https://shared.com"]}))
    report("replaceable collapsed across relays", [e.id for e in got] == [edited.id],
           str([e.content for e in got]))

    dead = RelayPool(["http://down-1.test", "http://down-2.test"], transport=router)
    try:
        await dead.publish(shared)
        report("all relays down raises", False, "no exception")
    except PublishError as e:
        report("all relays down raises", len(e.results) == 2, str(e.results))
    report("query of dead relays is empty", await dead.query(EventFilter()) == [])


# ---------------------------------------------------------------------------
# Direct messages
# ---------------------------------------------------------------------------

async def test_messenger() -> None:
    pool, _ = single_relay()
    alice = Messenger(Credentials.generate(), pool)
    bob = Messenger(Credentials.generate(), pool)
    eve = Messenger(Credentials.generate(), pool)

    await alice.send(bob.identity, {"type": "inquiry", "text": "hello"})
    await alice.send(bob.identity, {"type": "counter", "sats": 100})

    inbox = await bob.read()
    report("recipient reads both", sorted(m.payload.get("type") for m in inbox) == ["counter", "inquiry"],
           str([m.payload for m in inbox]))
    report("sender attributed", all(m.sender == alice.identity for m in inbox))
    report("others see nothing", await eve.read() == [])

    junk = build_event(alice.creds, KIND_ENCRYPTED_DM, "bm90IGVuY3J5cHRlZCBhdCBhbGwgYWJjZGVm",
                       tags=[["p", bob.identity]])
    await pool.publish(junk)
    empty = build_event(eve.creds, KIND_ENCRYPTED_DM, "", tags=[["p", bob.identity]])
    await pool.publish(empty)
    inbox = await bob.read()
    report("unreadable messages skipped", len(inbox) == 2, str(len(inbox)))

    try:
        await alice.send("bm1nonsense", {"type": "inquiry"})
        report("bad recipient rejected", False, "no exception")
    except ValueError:
        report("bad recipient rejected", True)


# ---------------------------------------------------------------------------
# Live subscriptions
# ---------------------------------------------------------------------------

async def eventually(condition, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


async def test_live_subscription() -> None:
    pool, _ = single_relay()
    creds = Credentials.generate()
    now = int(time.time())
    first = site_event(creds, "https://a.com", now - 5)
    second = site_event(creds, "https://b.com", now - 5)
    await pool.publish(first)
    await pool.publish(second)

    delivered: list[str] = []

    async def on_event(event: Event) -> None:
        delivered.append(event.id)

    stop = asyncio.Event()
    task = asyncio.create_task(pool.subscribe_live(
        EventFilter(kinds=[KIND_SITE_REGISTRATION], since=now - 10), on_event, interval=0.05, stop=stop))
    report("backlog delivered", await eventually(lambda: len(delivered) >= 2), str(delivered))

    third = site_event(creds, "https://c.com", int(time.time()))
    await pool.publish(third)
    report("new event delivered", await eventually(lambda: len(delivered) >= 3), str(delivered))

    # several more polls re-read the same window
    await asyncio.sleep(0.3)
    stop.set()
    await asyncio.wait_for(task, timeout=2)
    report("each event delivered exactly once", len(delivered) == 3 and len(set(delivered)) == 3,
           str(delivered))
    report("backlog before newer events", set(delivered[:2]) == {first.id, second.id}
           and delivered[2] == third.id)
    report("stop ends the subscription", task.done())

    seen = {"old": now - 20, "edge": now, "new": now + 1}
    report("ids behind the window forgotten", _prune_seen(seen, now) == {"edge": now, "new": now + 1})


async def test_messenger_watch() -> None:
    pool, _ = single_relay()
    alice = Messenger(Credentials.generate(), pool)
    bob = Messenger(Credentials.generate(), pool)
    received = []

    async def on_message(msg) -> None:
        received.append(msg)

    stop = asyncio.Event()
    task = asyncio.create_task(bob.watch(on_message, since=int(time.time()) - 60, interval=0.05, stop=stop))
    await alice.send(bob.identity, {"type": "inquiry", "text": "hello"})
    await pool.publish(build_event(alice.creds, KIND_ENCRYPTED_DM, "bm90IGVuY3J5cHRlZCBhdCBhbGwgYWJjZGVm",
                                   tags=[["p", bob.identity]]))
    await alice.send(bob.identity, {"type": "counter", "sats": 100})
    report("watched messages arrive", await eventually(lambda: len(received) >= 2), str(received))

    await asyncio.sleep(0.2)
    stop.set()
    await asyncio.wait_for(task, timeout=2)
    report("unreadable event skipped, nothing repeated", len(received) == 2,
           str([m.payload for m in received]))
    report("payloads decrypted", sorted(m.payload["type"] for m in received) == ["counter", "inquiry"])
    report("sender attributed", all(m.sender == alice.identity for m in received))


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def test_store_persistence_and_eviction() -> None:
    creds = Credentials.generate()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "relay", "events.json")
        store = RelayStore(path)
        store.add(site_event(creds, "https://acme.com", 100))
        store.add(site_event(creds, "https://other.com", 200))
        report("backup written", os.path.exists(path))

        reloaded = RelayStore(path)
        report("backup reloads", len(reloaded) == 2)
        got = reloaded.query(EventFilter(tags={"d": ["https://acme.com"]}))
        report("reloaded events queryable", len(got) == 1 and got[0].created_at == 100)

    small = RelayStore(max_events=2)
    for i, url in enumerate(["https://one.com", "https://two.com", "https://three.com"]):
        small.add(site_event(creds, url, 100 + i))
    kept = {e.first_tag("d") for e in small.query(EventFilter())}
    report("oldest evicted over capacity", kept == {"https://two.com", "https://three.com"}, str(kept))


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}BacklinkMesh Relay Tests{RESET}\n")

    tests = [
        ("1. Publish and query", test_publish_and_query),
        ("2. Replaceable events", test_replaceable_keeps_newest),
        ("3. Relay rejections", test_rejections),
        ("4. Filter semantics", test_filter_semantics),
        ("5. Pool across relays", test_pool_across_relays),
        ("6. Direct messages", test_messenger),
        ("7. Live subscription", test_live_subscription),
        ("8. Watching the inbox", test_messenger_watch),
        ("9. Storage", test_store_persistence_and_eviction),
    ]

    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            outcome = test_fn()
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            results.append((label, False, f"EXCEPTION: {e}"))

    passed = sum(1 for _, ok, _ in results if ok)
    total = len(results)
    print(f"\n{'─' * 40}")
    if passed == total:
        print(f"{GREEN}{BOLD}All {total} checks passed.{RESET}")
    else:
        print(f"{RED}{BOLD}{total - passed}/{total} checks failed.{RESET}")

    sys.exit(0 if passed == total else 1)


if __name__ == "__main__":
    asyncio.run(main())
