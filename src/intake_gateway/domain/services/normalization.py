"""Field Normalization Rules.

Pure functions that turn raw vendor values into canonical intake values, plus
the alias lookup used by every normalizer strategy. All functions degrade to
the placeholder sentinel rather than raising, so one malformed field never
fails a whole submission.

Security Impact:
    - Sentinels are distinguishable values, never empty strings, so identity
      resolution can recognize "no real data" and skip it
    - No function logs the values it transforms
"""

import json
import re
import time
from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional

from intake_gateway.domain.canonical import (
    DEFAULT_GENDER,
    PLACEHOLDER_DOB,
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_NAME,
    PLACEHOLDER_PHONE,
    CanonicalIntake,
    IntakeIdentity,
    placeholder_email_for,
)

TRUTHY_VALUES = {"true", "yes", "1", "y", "on"}
EMPTY_VALUES = {"", "none", "null", "n/a", "na", "-", "undefined"}

_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


def _norm_key(key: str) -> str:
    return re.sub(r"[\s_\-]", "", key).lower()


def stringify(value: Any) -> str:
    """Render a raw answer value as display text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value).strip()


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (dict, list)):
        return len(value) == 0
    return stringify(value).lower() in EMPTY_VALUES


def first_value(payload: Mapping[str, Any], aliases: Iterable[str]) -> Optional[Any]:
    """Return the value of the first alias present with a non-empty value.

    Exact key matches are tried first in alias priority order, then a second
    pass ignores case and separators ("First Name" matches "first-name").

    Parameters:
        payload: Flat raw payload
        aliases: Accepted raw keys, highest priority first

    Returns:
        The raw value, or None if no alias carries data
    """
    aliases = list(aliases)
    for alias in aliases:
        if alias in payload and not is_empty(payload[alias]):
            return payload[alias]

    index: Dict[str, str] = {}
    for key in payload:
        index.setdefault(_norm_key(key), key)
    for alias in aliases:
        key = index.get(_norm_key(alias))
        if key is not None and not is_empty(payload[key]):
            return payload[key]
    return None


def first_key(payload: Mapping[str, Any], aliases: Iterable[str]) -> Optional[str]:
    """Return the raw key that first_value() would read, or None."""
    aliases = list(aliases)
    for alias in aliases:
        if alias in payload and not is_empty(payload[alias]):
            return alias
    index: Dict[str, str] = {}
    for key in payload:
        index.setdefault(_norm_key(key), key)
    for alias in aliases:
        key = index.get(_norm_key(alias))
        if key is not None and not is_empty(payload[key]):
            return key
    return None


def is_truthy_flag(value: Any) -> bool:
    """Interpret a vendor completion flag (True, "true", "Yes", "1", ...)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return stringify(value).lower() in TRUTHY_VALUES


def capitalize_name(value: Any) -> str:
    """Trim and title-case a name, keeping hyphenated parts capitalized."""
    text = stringify(value)
    if not text or text.lower() in EMPTY_VALUES:
        return PLACEHOLDER_NAME
    words = []
    for word in text.split():
        words.append("-".join(part[:1].upper() + part[1:].lower() for part in word.split("-")))
    return " ".join(words)


def normalize_email(value: Any) -> str:
    text = stringify(value).lower()
    if not text or "@" not in text:
        return PLACEHOLDER_EMAIL
    return text


def sanitize_phone(value: Any) -> str:
    """Digits only, with a leading US country code stripped from 11-digit numbers."""
    digits = re.sub(r"\D", "", stringify(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits or PLACEHOLDER_PHONE


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_date(value: Any) -> str:
    """Normalize a date of birth to YYYY-MM-DD.

    Accepted forms:
        - ISO (YYYY-MM-DD, optionally followed by a time part)
        - Slash-delimited M/D/YYYY
        - Eight concatenated digits MMDDYYYY (separators ignored), or
          YYYYMMDD when the month/day reading is impossible

    Returns:
        str: ISO date, or the placeholder date when the value is unusable
    """
    text = stringify(value)
    if not text:
        return PLACEHOLDER_DOB

    match = _ISO_DATE.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3))) or PLACEHOLDER_DOB

    match = _SLASH_DATE.match(text)
    if match:
        return _safe_date(int(match.group(3)), int(match.group(1)), int(match.group(2))) or PLACEHOLDER_DOB

    digits = re.sub(r"\D", "", text)
    if len(digits) == 8:
        parsed = _safe_date(int(digits[4:]), int(digits[:2]), int(digits[2:4]))
        if parsed is None:
            parsed = _safe_date(int(digits[:4]), int(digits[4:6]), int(digits[6:]))
        return parsed or PLACEHOLDER_DOB

    return PLACEHOLDER_DOB


def normalize_gender(value: Any) -> str:
    """Collapse free-text gender to 'f' or 'm' (default 'm' when unknown)."""
    text = stringify(value).lower()
    if text.startswith("f") or text.startswith("w"):
        return "f"
    if text.startswith("m"):
        return "m"
    return DEFAULT_GENDER


def normalize_code(value: Any) -> Optional[str]:
    """Strip and uppercase a promo/referral code; empty markers yield None."""
    text = stringify(value)
    if not text or text.lower() in EMPTY_VALUES:
        return None
    return text.upper()


def fallback_intake(source: str, request_id: str) -> CanonicalIntake:
    """Minimal canonical record used when a normalizer fails.

    Identity values are obviously fake so they never match a real patient.
    """
    return CanonicalIntake(
        submission_id=f"fallback-{request_id}",
        source=source,
        identity=IntakeIdentity(
            first_name=PLACEHOLDER_NAME,
            last_name="Lead",
            email=placeholder_email_for(source, f"{int(time.time() * 1000)}-{request_id}"),
            phone=PLACEHOLDER_PHONE,
            dob=PLACEHOLDER_DOB,
        ),
        is_complete=False,
        is_fallback=True,
    )
