"""
Link verifier — fetch a page, extract its anchors, and check that a backlink
to a target domain is present and meets the agreed constraints.

Verification never raises: every failure comes back as a VerificationResult
with verified=False and a reason.

Depends on: config, models
"""

import asyncio
import html
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin, urlparse

import httpx

from backlinkmesh.config import (
    BATCH_VERIFY_DELAY,
    BATCH_VERIFY_MIN_DELAY,
    FETCH_TIMEOUT,
    FETCH_USER_AGENT,
)
from backlinkmesh.models import LinkConstraints, LinkRecord, VerificationResult

FetchFn = Callable[[str], Awaitable[tuple[str, str]]]


class FetchError(RuntimeError):
    """The page could not be retrieved (non-2xx final status)."""


# =============================================================================
# Page fetch
# =============================================================================

async def fetch_page(url: str, timeout: float = FETCH_TIMEOUT,
                     transport: Optional[httpx.AsyncBaseTransport] = None) -> tuple[str, str]:
    """Fetch a page following redirects. Returns (body, final_url).

    Raises:
        FetchError: the final response was not 2xx.
        httpx.HTTPError: network failure or timeout.
    """
    headers = {
        "User-Agent": FETCH_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml",
    }
    async with httpx.AsyncClient(
        timeout=timeout, follow_redirects=True, headers=headers, transport=transport,
    ) as client:
        resp = await client.get(url)
        if not resp.is_success:
            raise FetchError(f"HTTP {resp.status_code}")
        return resp.text, str(resp.url)


# =============================================================================
# Link extraction
# =============================================================================

# An anchor's body stops at its closing tag; an unclosed anchor never swallows the next one.
_ANCHOR_RE = re.compile(r"<a\b([^>]*)>((?:(?!<a\b).)*?)</a\s*>", re.IGNORECASE | re.DOTALL)
_BASE_RE = re.compile(r"<base\b([^>]*)>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def _attr(attrs: str, name: str) -> Optional[str]:
    """Value of attribute ``name`` (double, single or unquoted), or None."""
    m = re.search(
        r"(?:^|\s)" + name + r"\s*=\s*(?:\"([^\"]*)\"|'([^']*)'|([^\s>\"']+))",
        attrs,
        re.IGNORECASE,
    )
    if not m:
        return None
    value = next(g for g in m.groups() if g is not None)
    return html.unescape(value).strip()


def _clean_text(fragment: str) -> str:
    text = html.unescape(_TAG_RE.sub(" ", fragment))
    return _WS_RE.sub(" ", text).strip()


def find_base_url(body: str, page_url: str) -> str:
    """The document's <base href> resolved against ``page_url``, else ``page_url``."""
    m = _BASE_RE.search(body)
    if m:
        href = _attr(m.group(1), "href")
        if href:
            try:
                return urljoin(page_url, href)
            except ValueError:
                pass
    return page_url


def extract_links(body: str, base_url: str = "") -> list[LinkRecord]:
    """Pull every <a href> out of ``body``, in document order.

    Best-effort text matching, not a DOM parse. Anchors without an href are
    skipped, as are anchors whose closing tag never appears.
    """
    links = []
    for m in _ANCHOR_RE.finditer(body):
        attrs, inner = m.group(1), m.group(2)
        href = _attr(attrs, "href")
        if not href:
            continue
        rel_tokens = (_attr(attrs, "rel") or "").lower().split()
        try:
            resolved = urljoin(base_url, href) if base_url else href
        except ValueError:
            resolved = href
        links.append(LinkRecord(
            href=href,
            resolved_href=resolved,
            anchor_text=_clean_text(inner),
            rel=" ".join(rel_tokens),
            is_dofollow="nofollow" not in rel_tokens,
            is_sponsored="sponsored" in rel_tokens,
            is_ugc="ugc" in rel_tokens,
        ))
    return links


def _normalize_domain(target_domain: str) -> str:
    domain = target_domain.strip().lower()
    if "://" in domain:
        domain = urlparse(domain).hostname or domain
    return domain


def links_to_domain(links: list[LinkRecord], target_domain: str) -> list[LinkRecord]:
    """Links whose resolved host contains ``target_domain``.

    Falls back to a raw-href substring test when the href can't be parsed.
    """
    domain = _normalize_domain(target_domain)
    matched = []
    for link in links:
        try:
            host = urlparse(link.resolved_href).hostname or ""
        except ValueError:
            if domain in link.href.lower():
                matched.append(link)
            continue
        if domain in host:
            matched.append(link)
    return matched


# =============================================================================
# Verification
# =============================================================================

def check_links(page_url: str, target_domain: str, links: list[LinkRecord],
                constraints: Optional[LinkConstraints] = None) -> VerificationResult:
    """Apply the domain filter and constraints to already-extracted links."""
    constraints = constraints or LinkConstraints()
    matched = links_to_domain(links, target_domain)

    def fail(reason: str) -> VerificationResult:
        return VerificationResult(
            verified=False, page_url=page_url, target_domain=target_domain,
            matched_links=matched, reason=reason,
        )

    if not matched:
        return fail("no links found to target domain")

    candidates = matched
    if constraints.require_dofollow:
        candidates = [link for link in candidates if link.is_dofollow]
        if not candidates:
            return fail("links found but all nofollow")

    anchor = constraints.required_anchor_substring
    if anchor:
        needle = anchor.lower()
        candidates = [link for link in candidates if needle in link.anchor_text.lower()]
        if not candidates:
            return fail(f'links found but anchor text "{anchor}" not matched')

    exact = constraints.required_exact_href
    if exact:
        candidates = [link for link in candidates if exact in (link.href, link.resolved_href)]
        if not candidates:
            return fail(f'links found but exact href "{exact}" not matched')

    return VerificationResult(
        verified=True, page_url=page_url, target_domain=target_domain,
        matched_links=matched, best_match=candidates[0],
    )


async def verify_backlink(page_url: str, target_domain: str,
                          constraints: Optional[LinkConstraints] = None,
                          fetch: FetchFn = fetch_page) -> VerificationResult:
    """Fetch ``page_url`` and check it links to ``target_domain``."""
    try:
        body, final_url = await fetch(page_url)
    except Exception as e:
        detail = str(e) or type(e).__name__
        return VerificationResult(
            verified=False, page_url=page_url, target_domain=target_domain,
            reason=f"failed to fetch page: {detail}",
        )

    base_url = find_base_url(body, final_url or page_url)
    links = extract_links(body, base_url)
    return check_links(page_url, target_domain, links, constraints)


@dataclass
class BatchCheck:
    """One item in a batch verification run."""
    page_url: str
    target_domain: str
    constraints: Optional[LinkConstraints] = None


async def batch_verify(checks: list[BatchCheck], delay: float = BATCH_VERIFY_DELAY,
                       fetch: FetchFn = fetch_page) -> list[VerificationResult]:
    """Verify each check in order, one at a time, pausing between requests."""
    delay = max(delay, BATCH_VERIFY_MIN_DELAY)
    results = []
    for i, check in enumerate(checks):
        if i > 0:
            await asyncio.sleep(delay)
        result = await verify_backlink(check.page_url, check.target_domain, check.constraints, fetch=fetch)
        if not result.verified:
            print(f"[BacklinkMesh] Verification failed for {check.page_url}: {result.reason}", file=sys.stderr)
        results.append(result)
    return results


# =============================================================================
# Reporting
# =============================================================================

def generate_report(results: list[VerificationResult]) -> str:
    """Human-readable summary of a set of verification results."""
    verified = [r for r in results if r.verified]
    failed = [r for r in results if not r.verified]
    rule = "=" * 60
    thin = "-" * 60

    lines = [
        rule,
        "           BACKLINK VERIFICATION REPORT",
        rule,
        "",
        f"Total Checked: {len(results)}",
        f"Verified: {len(verified)}",
        f"Failed: {len(failed)}",
        "",
    ]

    if verified:
        lines += [thin, "VERIFIED LINKS:", thin]
        for r in verified:
            lines.append(f"[OK] {r.page_url}")
            lines.append(f"  -> {r.target_domain}")
            if r.best_match:
                lines.append(f'  Anchor: "{r.best_match.anchor_text}"')
                lines.append(f"  Type: {'dofollow' if r.best_match.is_dofollow else 'nofollow'}")
            lines.append("")

    if failed:
        lines += [thin, "FAILED VERIFICATIONS:", thin]
        for r in failed:
            lines.append(f"[FAIL] {r.page_url}")
            lines.append(f"  -> {r.target_domain}")
            lines.append(f"  Reason: {r.reason}")
            if r.matched_links:
                lines.append(f"  Found: {', '.join(link.href for link in r.matched_links)}")
            lines.append("")

    lines.append(rule)
    lines.append(f"Report generated: {datetime.now(timezone.utc).isoformat()}")
    return "\n".join(lines) + "\n"
