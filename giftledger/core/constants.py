"""Fixed vocabularies shared by the ledger, gateway and delivery engines."""

CARD_NUMBER_PREFIX = "LOGIF"
CARD_NUMBER_SEGMENTS = 3
CARD_NUMBER_SEGMENT_LENGTH = 4
# No I or O
CARD_NUMBER_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVWXYZ"

REDEMPTION_CODE_LENGTH = 16
# No I, O, 0 or 1
REDEMPTION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

PIN_LENGTH = 4

API_KEY_PREFIX = "lgf_"
API_KEY_LIVE_PREFIX = "lgf_live_"
API_KEY_TEST_PREFIX = "lgf_test_"
API_KEY_RANDOM_LENGTH = 56
API_KEY_VISIBLE_CHARS = 8

WEBHOOK_SECRET_PREFIX = "whsec_"
WEBHOOK_SECRET_LENGTH = 32
WEBHOOK_USER_AGENT = "GiftLedger-Webhooks/1.0"
WEBHOOK_RESPONSE_BODY_LIMIT = 1000

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

CARD_TYPES = frozenset({"physical", "digital"})

CARD_STATUSES = frozenset({"active", "inactive", "suspended", "expired", "cancelled"})

# Allowed status transitions; expired and cancelled are terminal.
CARD_STATUS_TRANSITIONS = {
    "inactive": frozenset({"active", "cancelled"}),
    "active": frozenset({"suspended", "cancelled", "expired"}),
    "suspended": frozenset({"active", "cancelled"}),
    "expired": frozenset(),
    "cancelled": frozenset(),
}

TRANSACTION_TYPES = frozenset(
    {"load", "redeem", "transfer_in", "transfer_out", "adjust", "refund"}
)

REDEMPTION_METHODS = frozenset({"code", "card_number", "track_data", "qr", "manual"})

MERCHANT_ROLES = ("owner", "admin", "staff")
ELEVATED_ROLES = frozenset({"owner", "admin"})

API_PERMISSIONS = (
    "cards:create",
    "cards:read",
    "cards:update",
    "cards:redeem",
    "cards:load",
    "cards:transfer",
    "cards:bulk",
    "transactions:read",
    "customers:create",
    "customers:read",
    "customers:update",
    "merchants:read",
    "merchants:update",
    "webhooks:manage",
    "reports:read",
)

WEBHOOK_EVENTS = (
    "card.created",
    "card.activated",
    "card.suspended",
    "card.expired",
    "card.cancelled",
    "card.loaded",
    "card.redeemed",
    "card.transferred",
    "card.adjusted",
    "card.refunded",
    "transaction.completed",
    "customer.created",
    "customer.updated",
    "import.completed",
    "import.failed",
)

# Status -> event emitted when a card enters it
CARD_STATUS_EVENTS = {
    "active": "card.activated",
    "suspended": "card.suspended",
    "cancelled": "card.cancelled",
    "expired": "card.expired",
}
