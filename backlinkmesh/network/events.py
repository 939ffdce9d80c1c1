"""
Signed events and filters — the envelope every relay stores and serves.

An event is {id, pubkey, created_at, kind, tags, content, sig}. The id is the
sha256 of the canonical serialization; the signature is Ed25519 over the id.
Filters select events by ids, authors, kinds, single-letter tags and a time
window: values within one field are OR'd, fields are AND'd.

Depends on: config, identity
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from backlinkmesh.config import MAX_CONTENT_LENGTH, MAX_QUERY_LIMIT, REPLACEABLE_KIND_RANGE
from backlinkmesh.identity import Credentials, sign_event, verify_event


@dataclass(frozen=True)
class Event:
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list
    content: str
    sig: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Event":
        """Shape-check and build an Event. Does not verify the signature.

        Raises:
            ValueError: missing or mistyped fields.
        """
        if not isinstance(d, dict):
            raise ValueError("Event must be a JSON object")
        try:
            tags = d["tags"]
            if not isinstance(tags, list) or not all(
                isinstance(t, list) and t and all(isinstance(v, str) for v in t) for t in tags
            ):
                raise ValueError("Event tags must be a list of non-empty string lists")
            created_at = d["created_at"]
            kind = d["kind"]
            if isinstance(created_at, bool) or not isinstance(created_at, int):
                raise ValueError("Event created_at must be an integer")
            if isinstance(kind, bool) or not isinstance(kind, int):
                raise ValueError("Event kind must be an integer")
            content = d["content"]
            if not isinstance(content, str):
                raise ValueError("Event content must be a string")
            if len(content) > MAX_CONTENT_LENGTH:
                raise ValueError("Event content too large")
            return cls(
                id=str(d["id"]),
                pubkey=str(d["pubkey"]),
                created_at=created_at,
                kind=kind,
                tags=tags,
                content=content,
                sig=str(d["sig"]),
            )
        except KeyError as e:
            raise ValueError(f"Event missing field {e}") from e

    def verify(self) -> bool:
        return verify_event(self.to_dict())

    def tag_values(self, name: str) -> list[str]:
        """All first values of tags named ``name``."""
        return [t[1] for t in self.tags if len(t) > 1 and t[0] == name]

    def first_tag(self, name: str) -> Optional[str]:
        values = self.tag_values(name)
        return values[0] if values else None

    @property
    def is_replaceable(self) -> bool:
        return self.kind in REPLACEABLE_KIND_RANGE

    def replace_key(self) -> Optional[tuple[str, int, str]]:
        """(pubkey, kind, d-tag) for replaceable kinds, else None."""
        if not self.is_replaceable:
            return None
        return (self.pubkey, self.kind, self.first_tag("d") or "")


def build_event(creds: Credentials, kind: int, content: str, tags: Optional[list] = None,
                created_at: Optional[int] = None) -> Event:
    """Sign a new event as ``creds``."""
    if created_at is None:
        created_at = int(time.time())
    signed = sign_event(creds, created_at, kind, tags or [], content)
    return Event.from_dict(signed)


def newer(a: Event, b: Event) -> bool:
    """True if ``a`` supersedes ``b``: later created_at, ties broken by lower id."""
    if a.created_at != b.created_at:
        return a.created_at > b.created_at
    return a.id < b.id


# =============================================================================
# Filters
# =============================================================================

@dataclass
class EventFilter:
    ids: list[str] = field(default_factory=list)
    authors: list[str] = field(default_factory=list)
    kinds: list[int] = field(default_factory=list)
    tags: dict[str, list[str]] = field(default_factory=dict)   # "t" -> values
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def matches(self, event: Event) -> bool:
        if self.ids and event.id not in self.ids:
            return False
        if self.authors and event.pubkey not in self.authors:
            return False
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, wanted in self.tags.items():
            if wanted and not set(event.tag_values(name)) & set(wanted):
                return False
        return True

    def to_dict(self) -> dict:
        data: dict = {}
        if self.ids:
            data["ids"] = self.ids
        if self.authors:
            data["authors"] = self.authors
        if self.kinds:
            data["kinds"] = self.kinds
        for name, values in self.tags.items():
            data[f"#{name}"] = values
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        return data

    @classmethod
    def from_dict(cls, d: dict) -> "EventFilter":
        """Parse a wire filter.

        Raises:
            ValueError: unknown or mistyped fields.
        """
        if not isinstance(d, dict):
            raise ValueError("Filter must be a JSON object")
        flt = cls()
        for key, value in d.items():
            if key in ("ids", "authors"):
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    raise ValueError(f"Filter {key} must be a list of strings")
                setattr(flt, key, value)
            elif key == "kinds":
                if not isinstance(value, list) or not all(
                    isinstance(v, int) and not isinstance(v, bool) for v in value
                ):
                    raise ValueError("Filter kinds must be a list of integers")
                flt.kinds = value
            elif key.startswith("#") and len(key) == 2:
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    raise ValueError(f"Filter {key} must be a list of strings")
                flt.tags[key[1]] = value
            elif key in ("since", "until", "limit"):
                if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                    raise ValueError(f"Filter {key} must be an integer")
                setattr(flt, key, value)
            else:
                raise ValueError(f"Unknown filter field: {key}")
        if flt.limit is not None:
            flt.limit = max(0, min(flt.limit, MAX_QUERY_LIMIT))
        return flt
