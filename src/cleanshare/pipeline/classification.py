"""Token classifier: pick the best matching detection kind for one OCR token."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Tuple

from cleanshare import validators as v
from cleanshare.models import CustomPattern, DetectionKind


@dataclass(frozen=True)
class TokenContext:
    """Neighbouring tokens on the same page, nearest first in ``following``."""

    previous: Tuple[str, ...] = ()
    following: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Classification:
    kind: DetectionKind
    reason: str
    # Only set for custom patterns; built-in kinds use the scorer's table.
    certainty: Optional[float] = None
    source: str = "builtin"
    # None lets the scorer derive the adjustment from the token itself.
    adjustment: Optional[float] = None


Rule = Callable[[str, TokenContext], Optional[Classification]]


def _email(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_email(token):
        return Classification(DetectionKind.EMAIL, "Matches email pattern")
    return None


def _jwt(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_jwt(token):
        return Classification(DetectionKind.JWT, "Three base64url segments (JWT)")
    return None


def _api_key(token: str, ctx: TokenContext) -> Optional[Classification]:
    family = v.match_api_key(token)
    if family:
        return Classification(DetectionKind.API_KEY, f"Looks like a {family}")
    return None


def _iban(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_valid_iban(token):
        return Classification(DetectionKind.IBAN, "Valid IBAN checksum (MOD-97)")
    return None


def _ssn(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_valid_ssn(token):
        return Classification(DetectionKind.SSN, "Valid US SSN format")
    return None


def _pan(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_valid_pan(token):
        return Classification(DetectionKind.PAN, "Luhn valid primary account number")
    return None


def _passport(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.is_us_passport(token):
        return Classification(DetectionKind.PASSPORT, "US passport number shape")
    return None


def _phone(token: str, ctx: TokenContext) -> Optional[Classification]:
    if v.looks_like_phone(token):
        return Classification(DetectionKind.PHONE, "Potential phone number")
    return None


def _address(token: str, ctx: TokenContext) -> Optional[Classification]:
    cue = v.address_cue(token, ctx.previous, ctx.following)
    if cue:
        return Classification(DetectionKind.ADDRESS, cue.reason, adjustment=cue.strength)
    return None


def _name(token: str, ctx: TokenContext) -> Optional[Classification]:
    cue = v.name_cue(token)
    if cue:
        return Classification(DetectionKind.NAME, cue.reason, adjustment=cue.strength)
    return None


# Structural and checksummed kinds first, heuristics last.
BUILTIN_RULES: Tuple[Rule, ...] = (
    _email,
    _jwt,
    _api_key,
    _iban,
    _ssn,
    _pan,
    _passport,
    _phone,
    _address,
    _name,
)


def classify_builtin(token: str, context: Optional[TokenContext] = None) -> Optional[Classification]:
    raw = (token or "").strip()
    if not raw:
        return None
    ctx = context or TokenContext()
    for rule in BUILTIN_RULES:
        found = rule(raw, ctx)
        if found is not None:
            return found
    return None


def classify(
    token: str,
    custom_patterns: Optional[Iterable[CustomPattern]] = None,
    context: Optional[TokenContext] = None,
) -> Optional[Classification]:
    """Classify one token; return ``None`` when nothing matches.

    Built-in validators run first in precedence order. Custom patterns run
    afterwards and the first one that fully matches the token overrides the
    built-in kind and certainty. Malformed input never raises.
    """
    if not isinstance(token, str):
        return None
    found = classify_builtin(token, context)
    raw = token.strip()
    if raw:
        for pattern in custom_patterns or ():
            if pattern.fullmatch(raw):
                reason = pattern.description or f"Matches custom pattern {pattern.name or pattern.id}"
                return Classification(
                    pattern.kind,
                    reason,
                    certainty=pattern.confidence,
                    source=pattern.id,
                    adjustment=0.0,
                )
    return found


def context_for(tokens: Sequence[str], index: int, window: int = 3) -> TokenContext:
    return TokenContext(
        previous=tuple(tokens[max(0, index - window) : index]),
        following=tuple(tokens[index + 1 : index + 1 + window]),
    )


__all__ = ["TokenContext", "Classification", "classify", "classify_builtin", "context_for"]
