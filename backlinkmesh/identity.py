"""
Cryptographic identity — Ed25519 signing key, derived X25519 encryption key,
compact identity strings, event signing, payload encryption.
Input validation (trust boundary concerns).

Depends on: config
"""

import base64
import hashlib
import hmac
import json
import os
import sys
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from backlinkmesh.config import (
    HOME_DIR_NAME,
    KEY_FILE_NAME,
    MAX_URL_LENGTH,
)

IDENTITY_PREFIX = "bm1"
_CHECKSUM_LEN = 4
_X25519_DOMAIN = b"backlinkmesh-x25519-v1"
_DM_KDF_INFO = b"backlinkmesh-dm-v1"
_NONCE_LEN = 12


# =============================================================================
# Identity strings
# =============================================================================

def encode_identity(raw: bytes) -> str:
    """Encode a 64-byte identity (ed25519 pub || x25519 pub) as a compact string."""
    if len(raw) != 64:
        raise ValueError(f"Identity must be 64 bytes, got {len(raw)}")
    checksum = hashlib.sha256(raw).digest()[:_CHECKSUM_LEN]
    body = base64.b32encode(raw + checksum).decode("ascii").rstrip("=").lower()
    return IDENTITY_PREFIX + body


def decode_identity(identity: str) -> bytes:
    """Decode a compact identity string back to its 64 raw bytes.

    Raises:
        ValueError: wrong prefix, bad encoding, or checksum mismatch.
    """
    if not isinstance(identity, str) or not identity.startswith(IDENTITY_PREFIX):
        raise ValueError("Identity must start with " + IDENTITY_PREFIX)
    body = identity[len(IDENTITY_PREFIX):].upper()
    body += "=" * (-len(body) % 8)
    try:
        data = base64.b32decode(body)
    except (ValueError, base64.binascii.Error) as e:
        raise ValueError(f"Identity is not valid base32: {e}") from e
    if len(data) != 64 + _CHECKSUM_LEN:
        raise ValueError("Identity has the wrong length")
    raw, checksum = data[:64], data[64:]
    if not hmac.compare_digest(hashlib.sha256(raw).digest()[:_CHECKSUM_LEN], checksum):
        raise ValueError("Identity checksum mismatch")
    return raw


def is_valid_identity(identity: str) -> bool:
    try:
        decode_identity(identity)
        return True
    except ValueError:
        return False


def split_identity(identity: str) -> tuple[bytes, bytes]:
    """Return (ed25519_public_bytes, x25519_public_bytes) for an identity string."""
    raw = decode_identity(identity)
    return raw[:32], raw[32:]


# =============================================================================
# Credentials
# =============================================================================

def generate_private_key_hex() -> str:
    """Generate a fresh Ed25519 private key. Returns the 32-byte seed as hex."""
    private_key = Ed25519PrivateKey.generate()
    return private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()).hex()


def _derive_x25519(private_key_hex: str) -> X25519PrivateKey:
    """Derive the encryption key from the signing key with domain separation."""
    seed = hashlib.sha256(bytes.fromhex(private_key_hex) + _X25519_DOMAIN).digest()
    return X25519PrivateKey.from_private_bytes(seed)


@dataclass(frozen=True)
class Credentials:
    """An agent's key material. Passed explicitly to anything that signs or decrypts."""
    private_key_hex: str
    public_key_hex: str
    encryption_public_hex: str
    identity: str

    @classmethod
    def from_private_key_hex(cls, private_key_hex: str) -> "Credentials":
        private_key_hex = private_key_hex.strip().lower()
        try:
            signing = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex))
        except ValueError as e:
            raise ValueError(f"Invalid private key: {e}") from e
        ed_pub = signing.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        x_pub = _derive_x25519(private_key_hex).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return cls(
            private_key_hex=private_key_hex,
            public_key_hex=ed_pub.hex(),
            encryption_public_hex=x_pub.hex(),
            identity=encode_identity(ed_pub + x_pub),
        )

    @classmethod
    def generate(cls) -> "Credentials":
        return cls.from_private_key_hex(generate_private_key_hex())

    def signing_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(bytes.fromhex(self.private_key_hex))

    def encryption_key(self) -> X25519PrivateKey:
        return _derive_x25519(self.private_key_hex)

    def __repr__(self) -> str:
        return f"Credentials(identity={self.identity!r})"


def load_or_create_credentials(key_path: Optional[str] = None) -> Credentials:
    """Load the agent's credentials, creating a key file on first run.

    BACKLINKMESH_PRIVATE_KEY (hex) wins if set. Otherwise the key lives at
    .backlinkmesh/identity.key in the current working directory.
    """
    env_key = os.environ.get("BACKLINKMESH_PRIVATE_KEY", "").strip()
    if env_key:
        creds = Credentials.from_private_key_hex(env_key)
        print(f"[BacklinkMesh] Identity loaded from environment: {creds.identity}", file=sys.stderr)
        return creds

    if key_path is None:
        key_path = os.path.join(os.getcwd(), HOME_DIR_NAME, KEY_FILE_NAME)

    if os.path.exists(key_path):
        with open(key_path, "r") as f:
            creds = Credentials.from_private_key_hex(f.read())
        print(f"[BacklinkMesh] Identity loaded: {key_path}", file=sys.stderr)
        return creds

    creds = Credentials.generate()
    key_dir = os.path.dirname(key_path)
    try:
        if key_dir:
            os.makedirs(key_dir, exist_ok=True)
        with open(key_path, "w") as f:
            f.write(creds.private_key_hex + "\n")
        os.chmod(key_path, 0o600)
    except OSError as e:
        print(f"[BacklinkMesh] FATAL: cannot create key file at {key_path}: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"[BacklinkMesh] New identity created: {key_path}", file=sys.stderr)
    print(f"[BacklinkMesh] Identity: {creds.identity}", file=sys.stderr)
    return creds


# =============================================================================
# Event signing & verification
# =============================================================================

def compute_event_id(pubkey: str, created_at: int, kind: int, tags: list, content: str) -> str:
    """sha256 over the canonical JSON array [0, pubkey, created_at, kind, tags, content]."""
    canonical = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sign_event(creds: Credentials, created_at: int, kind: int, tags: list, content: str) -> dict:
    """Build and sign an event dict. Returns {id, pubkey, created_at, kind, tags, content, sig}."""
    event_id = compute_event_id(creds.identity, created_at, kind, tags, content)
    sig = creds.signing_key().sign(bytes.fromhex(event_id)).hex()
    return {
        "id": event_id,
        "pubkey": creds.identity,
        "created_at": created_at,
        "kind": kind,
        "tags": tags,
        "content": content,
        "sig": sig,
    }


def verify_event(event: dict) -> bool:
    """Check an event's id matches its fields and its signature matches its pubkey."""
    try:
        expected = compute_event_id(
            event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"],
        )
        if not hmac.compare_digest(expected, event["id"]):
            return False
        ed_pub, _ = split_identity(event["pubkey"])
        Ed25519PublicKey.from_public_bytes(ed_pub).verify(
            bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]),
        )
        return True
    except (KeyError, TypeError, ValueError, InvalidSignature):
        return False


# =============================================================================
# Payload encryption
# =============================================================================

def _shared_key(creds: Credentials, peer_identity: str) -> bytes:
    _, peer_x = split_identity(peer_identity)
    shared = creds.encryption_key().exchange(X25519PublicKey.from_public_bytes(peer_x))
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_DM_KDF_INFO).derive(shared)


def encrypt_for(creds: Credentials, recipient_identity: str, plaintext: str) -> str:
    """Encrypt a payload so only ``recipient_identity`` (and we) can read it.

    Returns base64(nonce || ciphertext).
    """
    key = _shared_key(creds, recipient_identity)
    nonce = os.urandom(_NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_from(creds: Credentials, sender_identity: str, payload: str) -> str:
    """Decrypt a payload produced by ``encrypt_for`` between us and ``sender_identity``.

    Raises:
        ValueError: malformed payload, wrong key, or tampered ciphertext.
    """
    try:
        data = base64.b64decode(payload, validate=True)
    except (ValueError, base64.binascii.Error) as e:
        raise ValueError(f"Payload is not valid base64: {e}") from e
    if len(data) <= _NONCE_LEN:
        raise ValueError("Payload too short")
    key = _shared_key(creds, sender_identity)
    try:
        plaintext = AESGCM(key).decrypt(data[:_NONCE_LEN], data[_NONCE_LEN:], None)
    except InvalidTag as e:
        raise ValueError("Payload could not be decrypted") from e
    return plaintext.decode("utf-8")


# =============================================================================
# Input Validation
# =============================================================================

def validate_url(url: str) -> Optional[str]:
    """Validate that a URL uses http or https scheme. Returns error string or None."""
    if not url:
        return "URL is required."
    if len(url) > MAX_URL_LENGTH:
        return f"URL exceeds maximum length ({MAX_URL_LENGTH} chars)."
    try:
        parsed = urlparse(url)
    except ValueError:
        return "Invalid URL."
    if parsed.scheme not in ("http", "https"):
        return f"URL scheme must be http or https, got '{parsed.scheme}'."
    if not parsed.hostname:
        return "URL has no hostname."
    return None


def truncate_field(value: str, max_len: int) -> str:
    """Truncate a string to max_len."""
    return value[:max_len] if len(value) > max_len else value
