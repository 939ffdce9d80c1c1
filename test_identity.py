#!/usr/bin/env python3
"""
Tests for BacklinkMesh cryptographic identity.

Standalone script, also collectable by pytest. Covers identity strings,
key files, event signatures and direct-message encryption.
"""

import os
import stat
import sys
import tempfile

from backlinkmesh.identity import (
    Credentials,
    decode_identity,
    decrypt_from,
    encode_identity,
    encrypt_for,
    is_valid_identity,
    load_or_create_credentials,
    sign_event,
    split_identity,
    verify_event,
)

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


def swap_char(text: str, index: int) -> str:
    replacement = "a" if text[index] != "a" else "b"
    return text[:index] + replacement + text[index + 1:]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_identity_strings() -> None:
    creds = Credentials.generate()
    report("identity prefixed", creds.identity.startswith("bm1"), creds.identity)
    report("identity is lowercase", creds.identity == creds.identity.lower())

    raw = decode_identity(creds.identity)
    ed_pub, x_pub = split_identity(creds.identity)
    report("decodes to 64 bytes", len(raw) == 64)
    report("signing key half", ed_pub.hex() == creds.public_key_hex)
    report("encryption key half", x_pub.hex() == creds.encryption_public_hex)
    report("re-encodes identically", encode_identity(raw) == creds.identity)

    report("same seed, same identity",
           Credentials.from_private_key_hex(creds.private_key_hex).identity == creds.identity)
    report("encryption key differs from signing key", creds.encryption_public_hex != creds.public_key_hex)

    report("corrupted identity rejected", not is_valid_identity(swap_char(creds.identity, 12)))
    report("wrong prefix rejected", not is_valid_identity("xx1" + creds.identity[3:]))
    report("truncated identity rejected", not is_valid_identity(creds.identity[:-8]))
    report("non-string rejected", not is_valid_identity(None))


def test_private_key_hidden() -> None:
    creds = Credentials.generate()
    report("repr hides private key", creds.private_key_hex not in repr(creds), repr(creds))
    try:
        Credentials.from_private_key_hex("zz")
        report("bad key hex rejected", False, "no exception")
    except ValueError:
        report("bad key hex rejected", True)


def test_key_file() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        key_path = os.path.join(tmp, ".backlinkmesh", "identity.key")
        saved_env = os.environ.pop("BACKLINKMESH_PRIVATE_KEY", None)
        try:
            first = load_or_create_credentials(key_path)
            report("key file created", os.path.exists(key_path))
            mode = stat.S_IMODE(os.stat(key_path).st_mode)
            report("key file is owner-only", mode == 0o600, oct(mode))

            second = load_or_create_credentials(key_path)
            report("key file reloads same identity", second.identity == first.identity)

            other = Credentials.generate()
            os.environ["BACKLINKMESH_PRIVATE_KEY"] = other.private_key_hex
            from_env = load_or_create_credentials(key_path)
            report("environment key wins", from_env.identity == other.identity)
        finally:
            os.environ.pop("BACKLINKMESH_PRIVATE_KEY", None)
            if saved_env is not None:
                os.environ["BACKLINKMESH_PRIVATE_KEY"] = saved_env


def test_event_signatures() -> None:
    creds = Credentials.generate()
    event = sign_event(creds, 1700000000, 30078, [["d", "https://acme.com"]], '{"name": "Acme"}')
    report("signed event verifies", verify_event(event))
    report("id is sha256 hex", len(event["id"]) == 64 and int(event["id"], 16) >= 0)

    tampered = dict(event, content='{"name": "Evil"}')
    report("tampered content fails", not verify_event(tampered))

    retagged = dict(event, tags=[["d", "https://evil.com"]])
    report("tampered tags fail", not verify_event(retagged))

    imposter = Credentials.generate()
    stolen = dict(event, pubkey=imposter.identity)
    report("swapped author fails", not verify_event(stolen))

    bad_sig = dict(event, sig=swap_char(event["sig"], 0))
    report("bad signature fails", not verify_event(bad_sig))

    report("missing field fails", not verify_event({k: v for k, v in event.items() if k != "sig"}))

    unicode_event = sign_event(creds, 1700000000, 4, [], "Café ☕ links")
    report("non-ascii content verifies", verify_event(unicode_event))


def test_encryption() -> None:
    alice = Credentials.generate()
    bob = Credentials.generate()
    eve = Credentials.generate()

    payload = encrypt_for(alice, bob.identity, '{"type": "inquiry"}')
    report("ciphertext hides plaintext", "inquiry" not in payload)
    report("recipient decrypts", decrypt_from(bob, alice.identity, payload) == '{"type": "inquiry"}')
    report("sender can re-read own message", decrypt_from(alice, bob.identity, payload) == '{"type": "inquiry"}')

    again = encrypt_for(alice, bob.identity, '{"type": "inquiry"}')
    report("fresh nonce each time", again != payload)

    for label, fn in (
        ("third party cannot decrypt", lambda: decrypt_from(eve, alice.identity, payload)),
        ("tampered ciphertext rejected", lambda: decrypt_from(bob, alice.identity, swap_char(payload, 30))),
        ("garbage payload rejected", lambda: decrypt_from(bob, alice.identity, "not base64!")),
        ("short payload rejected", lambda: decrypt_from(bob, alice.identity, "AAAA")),
    ):
        try:
            fn()
            report(label, False, "no exception")
        except ValueError:
            report(label, True)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def main() -> None:
    print(f"\n{BOLD}BacklinkMesh Identity Tests{RESET}\n")

    tests = [
        ("1. Identity strings", test_identity_strings),
        ("2. Private key handling", test_private_key_hidden),
        ("3. Key file", test_key_file),
        ("4. Event signatures", test_event_signatures),
        ("5. Encryption", test_encryption),
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
