from __future__ import annotations

import re
from datetime import UTC, datetime

UK_POSTCODE_PATTERN = re.compile(r"^[A-Z]{1,2}[0-9][0-9A-Z]?\s?[0-9][A-Z]{2}$")


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def today_utc_iso() -> str:
    return datetime.now(UTC).date().isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_location_text(text: str) -> str:
    return normalize_whitespace(text).lower()


def normalize_postcode(postcode: str) -> str:
    return normalize_whitespace(postcode).upper()


def compact_postcode(postcode: str) -> str:
    return "".join(postcode.split()).upper()


def is_uk_postcode(text: str) -> bool:
    return UK_POSTCODE_PATTERN.match(normalize_postcode(text)) is not None

