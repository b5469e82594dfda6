"""Deterministic validators for sensitive token kinds.

Every function here is a stateless pure predicate over a single token. All
built-in patterns are compiled once at import time with the third-party
``regex`` package; user patterns go through :func:`compile_pattern`, which
caches compiled objects so repeated classification never rebuilds them.

The NAME/ADDRESS helpers are heuristics only and are never reported as
checksum-validated.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Sequence, Tuple

import regex as re

from .errors import ValidationError


SEPARATORS_RE = re.compile(r"[\s\-]")
DIGITS_RE = re.compile(r"^[0-9]+$")
EMAIL_RE = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.I)
PHONE_CHARS_RE = re.compile(r"^\+?[0-9\s().\-]+$")
IBAN_SHAPE_RE = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{11,30}$")
SSN_RE = re.compile(r"^([0-9]{3})-([0-9]{2})-([0-9]{4})$")
PASSPORT_US_RE = re.compile(r"^(?:[0-9]{9}|[A-Z][0-9]{8})$")
BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
ZIP_RE = re.compile(r"^[0-9]{5}(?:-[0-9]{4})?$")
HOUSE_NUMBER_RE = re.compile(r"^[0-9]{1,6}[A-Z]?$")
NAME_RE = re.compile(r"^\p{Lu}\p{Ll}{2,}(?:[-'’]\p{Lu}\p{Ll}+)?$")

# Tokens shorter than this are not treated as JWTs ("a.b.c", "www.ex.com").
JWT_MIN_LENGTH = 30

PAN_MIN_DIGITS = 13
PAN_MAX_DIGITS = 19

API_KEY_FAMILIES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("AWS access key", re.compile(r"^(?:AKIA|ASIA)[A-Z0-9]{16}$")),
    ("Google API key", re.compile(r"^AIza[0-9A-Za-z_\-]{35}$")),
    ("GitHub token", re.compile(r"^gh[pousr]_[A-Za-z0-9]{36}$")),
    ("Stripe key", re.compile(r"^(?:sk|pk|rk)_(?:live|test)_[A-Za-z0-9]{24,99}$")),
    ("Slack token", re.compile(r"^xox[abpr]-[A-Za-z0-9\-]{10,72}$")),
)

# ISO 13616 lengths for the countries seen most often; others only need the
# generic 15-34 shape.
IBAN_LENGTHS = {
    "AT": 20, "BE": 16, "CH": 21, "CZ": 24, "DE": 22, "DK": 18, "ES": 24,
    "FI": 18, "FR": 27, "GB": 22, "IE": 22, "IT": 27, "LU": 20, "NL": 18,
    "NO": 15, "PL": 28, "PT": 25, "SE": 24,
}

STREET_SUFFIXES = frozenset(
    {
        "street", "st", "avenue", "ave", "road", "rd", "lane", "ln", "boulevard",
        "blvd", "drive", "dr", "court", "ct", "place", "pl", "terrace", "way",
        "parkway", "pkwy", "highway", "hwy", "circle", "cir", "square", "sq",
        "suite", "ste", "apt",
    }
)
DIRECTIONALS = frozenset({"n", "s", "e", "w", "ne", "nw", "se", "sw", "north", "south", "east", "west"})
US_STATES = frozenset(
    {
        "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL",
        "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT",
        "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI",
        "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
    }
)

# Function words are never names.
STOPWORDS = frozenset(
    {
        "the", "and", "for", "with", "from", "this", "that", "these", "those", "are",
        "was", "were", "has", "have", "had", "not", "but", "you", "your", "our",
        "their", "its", "his", "her", "she", "they", "them", "who", "what", "when",
        "where", "which", "why", "how", "all", "any", "can", "will", "may", "per",
        "via", "into", "onto", "upon", "about", "please", "thanks", "dear",
    }
)
# Capitalized dictionary words that OCR often yields at the start of a line or
# in form labels. They still classify as NAME but score lower.
COMMON_WORDS = frozenset(
    {
        "invoice", "total", "date", "account", "number", "page", "name", "address",
        "phone", "email", "customer", "order", "payment", "amount", "balance",
        "subject", "from", "sent", "received", "description", "quantity", "price",
        "summary", "report", "details", "reference", "document", "statement",
        "signature", "today", "monday", "tuesday", "wednesday", "thursday",
        "friday", "saturday", "sunday", "january", "february", "march", "april",
        "june", "july", "august", "september", "october", "november", "december",
        "note", "notes", "important", "confidential", "internal", "welcome",
        "hello", "regards", "best", "sincerely", "street", "city", "state",
        "country", "company", "department", "office", "bank", "card", "visa",
    }
)
GIVEN_NAMES = frozenset(
    {
        "james", "john", "robert", "michael", "william", "david", "richard", "joseph",
        "thomas", "charles", "mary", "patricia", "jennifer", "linda", "elizabeth",
        "barbara", "susan", "jessica", "sarah", "karen", "alice", "emma", "olivia",
        "sophia", "liam", "noah", "lucas", "maria", "anna", "laura", "daniel",
        "peter", "paul", "mark", "george", "emily", "hannah", "chris", "kevin",
    }
)


@lru_cache(maxsize=256)
def compile_pattern(pattern: str, case_sensitive: bool = False) -> "re.Pattern[str]":
    """Compile a user pattern once; malformed expressions raise ``ValidationError``."""
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise ValidationError(f"Invalid regular expression {pattern!r}: {exc}", field="pattern") from exc


def strip_separators(token: str) -> str:
    return SEPARATORS_RE.sub("", token or "")


def luhn_checksum(digits: str) -> bool:
    """Return True when ``digits`` passes the Luhn mod-10 check."""
    if not digits or not DIGITS_RE.match(digits):
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = ord(ch) - 48
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def is_valid_pan(token: str) -> bool:
    digits = strip_separators(token)
    if not DIGITS_RE.match(digits):
        return False
    if not PAN_MIN_DIGITS <= len(digits) <= PAN_MAX_DIGITS:
        return False
    return luhn_checksum(digits)


def normalize_iban(token: str) -> str:
    return "".join((token or "").split()).upper()


def iban_remainder(iban: str) -> int:
    """MOD-97 remainder of an already-normalized IBAN (rearranged, A=10..Z=35)."""
    rearranged = iban[4:] + iban[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97


def is_valid_iban(token: str) -> bool:
    iban = normalize_iban(token)
    if not IBAN_SHAPE_RE.match(iban):
        return False
    expected = IBAN_LENGTHS.get(iban[:2])
    if expected is not None and len(iban) != expected:
        return False
    return iban_remainder(iban) == 1


def parse_ssn(token: str) -> Optional[Tuple[str, str, str]]:
    m = SSN_RE.match((token or "").strip())
    if not m:
        return None
    return m.group(1), m.group(2), m.group(3)


def is_valid_ssn(token: str) -> bool:
    groups = parse_ssn(token)
    if groups is None:
        return False
    area, group, serial = groups
    if area in {"000", "666"} or area.startswith("9"):
        return False
    if group == "00" or serial == "0000":
        return False
    return True


def is_us_passport(token: str) -> bool:
    return PASSPORT_US_RE.match((token or "").strip()) is not None


def is_jwt(token: str) -> bool:
    raw = (token or "").strip()
    if len(raw) <= JWT_MIN_LENGTH:
        return False
    parts = raw.split(".")
    if len(parts) != 3:
        return False
    return all(part and BASE64URL_RE.match(part) for part in parts)


def match_api_key(token: str) -> Optional[str]:
    """Return the API key family name matching ``token``, if any."""
    raw = (token or "").strip()
    for family, pattern in API_KEY_FAMILIES:
        if pattern.match(raw):
            return family
    return None


def is_email(token: str) -> bool:
    return EMAIL_RE.match((token or "").strip()) is not None


def looks_like_phone(token: str) -> bool:
    raw = (token or "").strip()
    if not raw or not PHONE_CHARS_RE.match(raw):
        return False
    digits = re.sub(r"\D", "", raw)
    return 10 <= len(digits) <= 15


@dataclass(frozen=True)
class HeuristicCue:
    """Why a heuristic fired; ``strength`` is a small score adjustment."""

    reason: str
    strength: float = 0.0


def name_cue(token: str) -> Optional[HeuristicCue]:
    raw = (token or "").strip().rstrip(",.;:")
    if not NAME_RE.match(raw):
        return None
    lowered = raw.lower()
    if lowered in STOPWORDS:
        return None
    if lowered in GIVEN_NAMES:
        return HeuristicCue("Known given name", 0.1)
    if lowered in COMMON_WORDS:
        return HeuristicCue("Capitalized common word", -0.25)
    return HeuristicCue("Likely proper name")


def _is_street_word(token: str) -> bool:
    return token.strip(",.").lower() in STREET_SUFFIXES


def address_cue(
    token: str,
    previous: Sequence[str] = (),
    following: Sequence[str] = (),
) -> Optional[HeuristicCue]:
    """Heuristic address component check using neighbouring tokens."""
    raw = (token or "").strip()
    if not raw:
        return None
    bare = raw.rstrip(",.")
    if _is_street_word(bare):
        return HeuristicCue("Street type indicator")
    if ZIP_RE.match(bare):
        prev = previous[-1].strip(",") if previous else ""
        if prev.upper() in US_STATES:
            return HeuristicCue("ZIP code after state", 0.05)
        if "-" in bare:
            return HeuristicCue("ZIP+4 shape", 0.05)
        return None
    if bare in US_STATES and raw == bare:
        before = previous[-1] if previous else ""
        after = following[0] if following else ""
        if before.endswith(",") or ZIP_RE.match(after.strip(",")):
            return HeuristicCue("State abbreviation")
        return None
    if bare.lower() in DIRECTIONALS and following and any(
        _is_street_word(t) for t in following[:3]
    ):
        return HeuristicCue("Street directional")
    if NAME_RE.match(bare) and previous and any(_is_street_word(t) for t in following[:2]):
        before = [t.strip(",") for t in previous[-2:]]
        if any(HOUSE_NUMBER_RE.match(t) or t.lower() in DIRECTIONALS for t in before):
            return HeuristicCue("Street name")
    if HOUSE_NUMBER_RE.match(bare) and following:
        window = following[:3]
        if any(_is_street_word(t) for t in window) or (
            len(window) >= 2 and NAME_RE.match(window[0].strip(",")) and _is_street_word(window[1])
        ):
            return HeuristicCue("House number before street")
    return None


__all__ = [
    "JWT_MIN_LENGTH",
    "HeuristicCue",
    "compile_pattern",
    "strip_separators",
    "luhn_checksum",
    "is_valid_pan",
    "normalize_iban",
    "iban_remainder",
    "is_valid_iban",
    "parse_ssn",
    "is_valid_ssn",
    "is_us_passport",
    "is_jwt",
    "match_api_key",
    "is_email",
    "looks_like_phone",
    "name_cue",
    "address_cue",
]
