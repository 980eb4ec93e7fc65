"""
Secret and identifier generation plus one-way hashing.

Redemption codes, PINs and track data are keyed with the server-side
hash pepper so a leaked table cannot be brute-forced offline. API keys are
long random strings and are stored as plain SHA-256.
"""
import hashlib
import hmac
import re
import secrets
import string

from giftledger.config import get_settings
from giftledger.core.constants import (
    API_KEY_LIVE_PREFIX,
    API_KEY_RANDOM_LENGTH,
    API_KEY_TEST_PREFIX,
    API_KEY_VISIBLE_CHARS,
    CARD_NUMBER_ALPHABET,
    CARD_NUMBER_PREFIX,
    CARD_NUMBER_SEGMENT_LENGTH,
    CARD_NUMBER_SEGMENTS,
    PIN_LENGTH,
    REDEMPTION_CODE_ALPHABET,
    REDEMPTION_CODE_LENGTH,
    WEBHOOK_SECRET_LENGTH,
    WEBHOOK_SECRET_PREFIX,
)

_ALPHANUMERIC = string.ascii_letters + string.digits

_CARD_NUMBER_PATTERN = re.compile(
    rf"^{CARD_NUMBER_PREFIX}"
    + rf"(-[0-9A-HJ-NP-Z]{{{CARD_NUMBER_SEGMENT_LENGTH}}})" * CARD_NUMBER_SEGMENTS
    + "$"
)


def _random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_card_number() -> str:
    """Generate a public card number such as ``LOGIF-7K2M-Q9XD-4H8N``."""
    segments = [CARD_NUMBER_PREFIX]
    for _ in range(CARD_NUMBER_SEGMENTS):
        segments.append(_random_string(CARD_NUMBER_ALPHABET, CARD_NUMBER_SEGMENT_LENGTH))
    return "-".join(segments)


def is_valid_card_number(card_number: str) -> bool:
    return bool(_CARD_NUMBER_PATTERN.match(card_number))


def generate_redemption_code(length: int = REDEMPTION_CODE_LENGTH) -> str:
    return _random_string(REDEMPTION_CODE_ALPHABET, length)


def generate_pin(length: int = PIN_LENGTH) -> str:
    return _random_string(string.digits, length)


def generate_webhook_secret() -> str:
    return WEBHOOK_SECRET_PREFIX + _random_string(_ALPHANUMERIC, WEBHOOK_SECRET_LENGTH)


def generate_api_key(environment: str = "live") -> tuple[str, str]:
    """
    Generate a new API key.

    Args:
        environment: ``live`` or ``test``

    Returns:
        tuple[str, str]: The plaintext key and its visible prefix
    """
    prefix = API_KEY_TEST_PREFIX if environment == "test" else API_KEY_LIVE_PREFIX
    key = prefix + _random_string(_ALPHANUMERIC, API_KEY_RANDOM_LENGTH)
    return key, key[: len(prefix) + API_KEY_VISIBLE_CHARS]


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_secret(value: str) -> str:
    """Keyed hash for redemption codes, PINs and track data."""
    pepper = get_settings().hash_pepper.encode("utf-8")
    return hmac.new(pepper, value.encode("utf-8"), hashlib.sha256).hexdigest()


def normalize_redemption_code(code: str) -> str:
    """Upper-case and strip separators so ``abcd-efgh`` matches ``ABCDEFGH``."""
    return re.sub(r"[\s-]", "", code).upper()


def sign_payload(secret: str, timestamp: int, payload: str) -> str:
    """HMAC-SHA256 hex signature over ``"{timestamp}.{payload}"``."""
    message = f"{timestamp}.{payload}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
