"""
Affiliate identifiers: affiliate codes, referral codes and link tracking ids.
"""
import re
import secrets
import string
import time

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_affiliate_code() -> str:
    """AFF<epoch milliseconds><4 random characters>."""
    return f"AFF{int(time.time() * 1000)}{_random_code(4)}"


def generate_referral_code(name: str) -> str:
    """First four letters/digits of the name plus four random characters, uppercase."""
    name_code = re.sub(r"[^A-Za-z0-9]", "", name or "")[:4].upper()
    return f"{name_code}{_random_code(4)}"


def generate_tracking_id() -> str:
    """16 hex characters identifying one generated link."""
    return secrets.token_hex(8)


def build_tracking_url(target_url: str, referral_code: str, tracking_id: str) -> str:
    """Append ref/track parameters to a landing page URL."""
    separator = "&" if "?" in target_url else "?"
    return f"{target_url}{separator}ref={referral_code}&track={tracking_id}"
