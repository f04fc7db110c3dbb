"""US / remote classification of free-text job locations.

All matching runs on the uppercased text. Codes and city names only match as whole
tokens, bounded by the separator class below, so "CA" never fires inside "CANADA".
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

US_STATE_CODES = frozenset(
    {
        "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN",
        "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV",
        "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN",
        "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
        # territories
        "PR", "GU", "VI", "AS", "MP",
    }
)

US_KEYWORDS = (
    "UNITED STATES",
    "USA",
    "U.S.",
    "AMER - US",
    "USCA",
    "US-REMOTE",
    "US REMOTE",
    "REMOTE US",
    "REMOTE - US",
    "SF-HQ",
    "US-NATIONAL",
    "WASHINGTON DC",
    "ANYWHERE IN THE UNITED STATES",
)

US_REMOTE_PHRASES = (
    "REMOTE US",
    "REMOTE - US",
    "REMOTE-US",
    "REMOTE (US",
    "REMOTE, US",
    "US REMOTE",
    "US-REMOTE",
    "REMOTE - UNITED STATES",
    "REMOTE, UNITED STATES",
    "REMOTE (UNITED STATES",
    "REMOTE IN THE US",
    "ANYWHERE IN THE UNITED STATES",
)

MAJOR_US_CITIES = (
    "SAN FRANCISCO", "NYC", "NEW YORK CITY", "NEW YORK", "LOS ANGELES", "CHICAGO", "HOUSTON",
    "PHOENIX", "PHILADELPHIA", "SAN ANTONIO", "SAN DIEGO", "DALLAS", "SAN JOSE", "AUSTIN",
    "JACKSONVILLE", "FORT WORTH", "COLUMBUS", "CHARLOTTE", "INDIANAPOLIS", "SEATTLE",
    "DENVER", "BOSTON", "EL PASO", "NASHVILLE", "DETROIT", "OKLAHOMA CITY", "PORTLAND",
    "LAS VEGAS", "MEMPHIS", "LOUISVILLE", "BALTIMORE", "MILWAUKEE", "ALBUQUERQUE", "TUCSON",
    "FRESNO", "SACRAMENTO", "MESA", "KANSAS CITY", "ATLANTA", "OMAHA", "COLORADO SPRINGS",
    "RALEIGH", "LONG BEACH", "VIRGINIA BEACH", "MIAMI", "OAKLAND", "MINNEAPOLIS", "TULSA",
    "BAKERSFIELD", "WICHITA", "ARLINGTON", "PALO ALTO", "MOUNTAIN VIEW", "SUNNYVALE",
    "MENLO PARK", "PITTSBURGH", "SALT LAKE CITY",
)

DC_VARIANTS = ("WASHINGTON D.C.", "WASHINGTON, D.C.", "WASHINGTON DC", "WASHINGTON, DC")

# comma, slash, whitespace, bullet, hyphen, pipe, plus ; ( ) . :
_SEPARATORS = r"[\s,/•·|;()\-.:]"
_TOKEN_SPLIT_RE = re.compile(f"{_SEPARATORS}+")


def _whole_phrase_re(phrases: Iterable[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(phrase) for phrase in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"(?:^|{_SEPARATORS})(?:{alternatives})(?={_SEPARATORS}|$)")


def _keyword_re(phrases: Iterable[str]) -> re.Pattern[str]:
    # A keyword that already ends in a separator ("U.S.") also matches as a prefix ("U.S.A.").
    alternatives = "|".join(re.escape(phrase) for phrase in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"(?:^|{_SEPARATORS})(?:{alternatives})(?:(?<={_SEPARATORS})|(?={_SEPARATORS}|$))")


_KEYWORD_RE = _keyword_re(US_KEYWORDS)
_CITY_RE = _whole_phrase_re(MAJOR_US_CITIES)


@dataclass(slots=True)
class LocationClassification:
    is_us: bool
    is_remote: bool
    state_codes: list[str] = field(default_factory=list)


def _normalize(text: str | None) -> str:
    if not text:
        return ""
    return str(text).upper().strip()


def _tokens(normalized: str) -> set[str]:
    return {token for token in _TOKEN_SPLIT_RE.split(normalized) if token}


def is_us_location(text: str | None) -> bool:
    normalized = _normalize(text)
    if not normalized:
        return False
    if _KEYWORD_RE.search(normalized):
        return True
    if _CITY_RE.search(normalized):
        return True
    tokens = _tokens(normalized)
    return "US" in tokens or bool(tokens & US_STATE_CODES)


def is_remote_location(text: str | None, non_us_locations: Iterable[str] = ()) -> bool:
    normalized = _normalize(text)
    if "REMOTE" not in normalized:
        return False
    if any(phrase in normalized for phrase in US_REMOTE_PHRASES):
        return True
    return not any(country.upper() in normalized for country in non_us_locations if country)


def extract_state_codes(text: str | None) -> list[str]:
    normalized = _normalize(text)
    if not normalized:
        return []
    codes = _tokens(normalized) & US_STATE_CODES
    if any(variant in normalized for variant in DC_VARIANTS):
        codes.add("DC")
    return sorted(codes)


def classify_location(
    text: str | None,
    *,
    explicit_remote: bool | None = None,
    non_us_locations: Iterable[str] = (),
) -> LocationClassification:
    remote = explicit_remote is True or is_remote_location(text, non_us_locations)
    return LocationClassification(
        is_us=is_us_location(text),
        is_remote=remote,
        state_codes=extract_state_codes(text),
    )


def should_keep_location(
    text: str | None,
    *,
    explicit_remote: bool | None = None,
    non_us_locations: Iterable[str] = (),
    keep_empty: bool = True,
) -> bool:
    if explicit_remote is True:
        return True
    if not _normalize(text):
        return keep_empty
    return is_us_location(text) or is_remote_location(text, non_us_locations)
