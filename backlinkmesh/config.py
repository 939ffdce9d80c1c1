"""
Configuration constants and environment variables.

This is a leaf module with no internal dependencies.
"""

import os

# =============================================================================
# Protocol
# =============================================================================

PROTOCOL_VERSION = "0.1"
DEFAULT_RELAY_PORT = 8300

# Event kinds. 30078/30079 are parameterized-replaceable (keyed by their "d" tag).
KIND_ENCRYPTED_DM = 4
KIND_SITE_REGISTRATION = 30078
KIND_LINK_BID = 30079

REPLACEABLE_KIND_RANGE = range(30000, 40000)

# Tags used to label protocol events on shared relays
SITE_TAG = "backlinkmesh-site"
BID_TAG = "backlinkmesh-bid"
LABEL_NAMESPACE = "backlinkmesh"

# =============================================================================
# Relays
# =============================================================================

_RELAYS_DEFAULT = "http://127.0.0.1:8300"
_relays_env = os.environ.get("BACKLINKMESH_RELAYS", _RELAYS_DEFAULT).strip()
RELAYS: list[str] = [u.strip().rstrip("/") for u in _relays_env.split(",") if u.strip()] if _relays_env else []

# Direct messages only go to the first few relays
DM_RELAY_COUNT = int(os.environ.get("BACKLINKMESH_DM_RELAY_COUNT", "3"))

RELAY_TIMEOUT = 15.0                 # seconds per relay request
RELAY_POLL_INTERVAL = 5.0            # seconds between live-subscription polls
DM_LOOKBACK_SECONDS = 7 * 86400      # default window for reading DMs
DM_POLL_OVERLAP = 15 * 60            # poll re-reads this far behind its cursor

# =============================================================================
# Limits
# =============================================================================

MAX_URL_LENGTH = 2048
MAX_CONTENT_LENGTH = 65536   # 64 KB
MAX_TEXT_LENGTH = 4000
MAX_QUERY_LIMIT = 500

RELAY_MAX_EVENTS = int(os.environ.get("BACKLINKMESH_RELAY_MAX_EVENTS", "50000"))
RELAY_MAX_FUTURE_SKEW = 900  # reject events dated more than 15 min ahead
RELAY_RATE_LIMIT = 120       # event publishes per window per client IP
RELAY_RATE_WINDOW = 60       # seconds

# =============================================================================
# Matching
# =============================================================================

MIN_MATCH_SCORE = 30          # candidates scoring <= this are dropped
SCORE_SAME_STATE = 30
SCORE_DIFFERENT_CITY = 20
SCORE_SAME_INDUSTRY = 25
SCORE_RELATED_INDUSTRY = 20
SCORE_DA_30 = 15
SCORE_DA_40 = 10

# Related industries for matching. Lookups check both directions.
RELATED_INDUSTRIES: dict[str, list[str]] = {
    "plumbing": ["hvac", "electrical", "construction", "roofing", "home-services"],
    "hvac": ["plumbing", "electrical", "construction", "home-services"],
    "roofing": ["construction", "plumbing", "gutters", "siding"],
    "electrical": ["plumbing", "hvac", "construction", "solar"],
    "construction": ["roofing", "plumbing", "hvac", "electrical", "concrete"],
    "landscaping": ["tree-service", "lawn-care", "irrigation", "hardscaping"],
    "real-estate": ["mortgage", "home-inspection", "title", "moving"],
    "dental": ["orthodontics", "oral-surgery", "healthcare"],
    "legal": ["accounting", "financial", "insurance"],
    "restaurant": ["catering", "food-service", "hospitality"],
}

# =============================================================================
# Bids
# =============================================================================

DEFAULT_BID_EXPIRY_DAYS = 7
BID_TYPES = ("seeking", "offering")
LINK_TYPES = ("dofollow", "nofollow", "sponsored", "ugc")

# =============================================================================
# Link Verification
# =============================================================================

FETCH_TIMEOUT = float(os.environ.get("BACKLINKMESH_FETCH_TIMEOUT", "10"))
FETCH_USER_AGENT = "BacklinkMesh-LinkVerifier/0.1 (+agent backlink verification)"
BATCH_VERIFY_DELAY = 0.5      # seconds between requests in a batch
BATCH_VERIFY_MIN_DELAY = 0.5  # never go below this, third-party rate limits

# =============================================================================
# Lightning (LNbits)
# =============================================================================

LNBITS_URL = os.environ.get("BACKLINKMESH_LNBITS_URL", "").strip().rstrip("/")
LNBITS_API_KEY = os.environ.get("BACKLINKMESH_LNBITS_KEY", "").strip()
LNBITS_TIMEOUT = 30.0
INVOICE_MEMO_PREFIX = "BacklinkMesh link placement"

# =============================================================================
# Local files
# =============================================================================

HOME_DIR_NAME = ".backlinkmesh"
KEY_FILE_NAME = "identity.key"
LIGHTNING_CONFIG_NAME = "lightning.json"

