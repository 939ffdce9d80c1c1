#!/usr/bin/env python3
"""
Tests for the BacklinkMesh matching engine.

Standalone script, also collectable by pytest. Pure functions, no I/O.
"""

import sys

from backlinkmesh.matching import is_related_industry, rank, score
from backlinkmesh.models import SiteProfile

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


def site(url: str, state: str = "CA", city: str = "LA", industry: str = "plumbing",
         da=None) -> SiteProfile:
    return SiteProfile(url=url, name=url, city=city, state=state, industry=industry,
                       domain_authority=da)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_score_literal_pair() -> None:
    requester = site("https://la-plumbing.com", da=0)
    candidate = site("https://sd-plumbing.com", city="SD", da=35)
    got = score(candidate, requester)
    report("CA/LA plumbing vs CA/SD plumbing DA35 scores 90", got == 90, f"got {got}")


def test_score_components() -> None:
    requester = site("https://a.com")

    got = score(site("https://b.com", state="TX", city="Austin", industry="bakery"), requester)
    report("different city only scores 20", got == 20, f"got {got}")

    got = score(site("https://c.com", city="LA", industry="bakery"), requester)
    report("same state and city scores 30", got == 30, f"got {got}")

    got = score(site("https://d.com", state="TX", city="Austin", industry="hvac"), requester)
    report("related industry adds 20", got == 40, f"got {got}")

    got = score(site("https://e.com", state="TX", city="LA", industry="bakery", da=45), requester)
    report("DA 45 adds 25 cumulatively", got == 25, f"got {got}")

    got = score(site("https://f.com", state="TX", city="LA", industry="bakery", da=None), requester)
    report("missing DA counts as zero", got == 0, f"got {got}")


def test_related_industry_both_directions() -> None:
    report("plumbing ~ hvac", is_related_industry("plumbing", "hvac"))
    report("hvac ~ plumbing", is_related_industry("hvac", "plumbing"))
    # gutters only appears on roofing's list
    report("gutters ~ roofing via reverse lookup", is_related_industry("gutters", "roofing"))
    report("plumbing !~ dental", not is_related_industry("plumbing", "dental"))


def test_rank_excludes_self_and_weak() -> None:
    requester = site("https://me.com")
    candidates = [
        site("https://me.com", city="SD", da=90),                        # self
        site("https://weak.com", city="LA", industry="bakery"),           # 30, dropped
        site("https://good.com", city="SD", da=35),                       # 90
        site("https://ok.com", state="NV", city="Vegas", industry="hvac"),  # 40
    ]
    ranked = rank(requester, candidates)
    urls = [m.site.url for m in ranked]
    report("own url never ranked", "https://me.com" not in urls, str(urls))
    report("score of exactly 30 dropped", "https://weak.com" not in urls, str(urls))
    report("best first", urls == ["https://good.com", "https://ok.com"], str(urls))
    report("all kept scores above 30", all(m.score > 30 for m in ranked))


def test_rank_ties_keep_input_order() -> None:
    requester = site("https://me.com")
    first = site("https://first.com", city="SD")
    second = site("https://second.com", city="SF")
    ranked = rank(requester, [first, second])
    report("equal scores keep input order",
           [m.site.url for m in ranked] == ["https://first.com", "https://second.com"])


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def main() -> None:
    print(f"\n{BOLD}BacklinkMesh Matching Tests{RESET}\n")

    tests = [
        ("1. Literal score", test_score_literal_pair),
        ("2. Score components", test_score_components),
        ("3. Related industries", test_related_industry_both_directions),
        ("4. Rank filtering", test_rank_excludes_self_and_weak),
        ("5. Rank stability", test_rank_ties_keep_input_order),
    ]

    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            test_fn()
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
    main()
