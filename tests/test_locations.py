import pytest

from feedwatch.core.config import DEFAULT_NON_US_LOCATIONS
from feedwatch.jobs.locations import (
    classify_location,
    extract_state_codes,
    is_remote_location,
    is_us_location,
    should_keep_location,
)


@pytest.mark.parametrize(
    "text",
    ["San Francisco, CA", "New York", "Remote - Austin", "Seattle/Bellevue", "Boston (Hybrid)", "NYC"],
)
def test_major_us_city_as_whole_token_is_us(text: str) -> None:
    assert is_us_location(text)


@pytest.mark.parametrize("text", ["Mesagne, Italy", "Denverton Hall", "Bostonians Club", "Jerusalem"])
def test_city_or_keyword_inside_longer_word_is_not_us(text: str) -> None:
    assert not is_us_location(text)


def test_state_code_does_not_fire_inside_country_name() -> None:
    assert not is_us_location("Toronto, Canada")
    assert extract_state_codes("Toronto, Canada") == []


def test_state_codes_are_sorted_and_dc_variants_added() -> None:
    assert extract_state_codes("NY / CA / TX") == ["CA", "NY", "TX"]
    assert extract_state_codes("Washington, D.C.") == ["DC"]


def test_remote_with_us_phrase_beats_non_us_list() -> None:
    assert is_remote_location("Remote - US", DEFAULT_NON_US_LOCATIONS)
    assert not is_remote_location("Remote - Canada", DEFAULT_NON_US_LOCATIONS)
    assert is_remote_location("Remote", DEFAULT_NON_US_LOCATIONS)
    assert not is_remote_location("Chicago, IL", DEFAULT_NON_US_LOCATIONS)


def test_keep_policy_scenarios() -> None:
    non_us = DEFAULT_NON_US_LOCATIONS
    assert should_keep_location("San Francisco, CA", non_us_locations=non_us)
    assert not should_keep_location("London, United Kingdom", non_us_locations=non_us)
    assert should_keep_location("Remote - US", non_us_locations=non_us)


def test_explicit_remote_flag_keeps_any_location() -> None:
    assert should_keep_location("London, United Kingdom", explicit_remote=True, non_us_locations=DEFAULT_NON_US_LOCATIONS)


def test_empty_location_follows_configured_default() -> None:
    assert should_keep_location("", keep_empty=True)
    assert should_keep_location(None, keep_empty=True)
    assert not should_keep_location("   ", keep_empty=False)
    assert should_keep_location("", explicit_remote=True, keep_empty=False)


def test_classify_location_reports_flags_and_codes() -> None:
    result = classify_location("Remote - US / Denver, CO", non_us_locations=DEFAULT_NON_US_LOCATIONS)
    assert result.is_us
    assert result.is_remote
    assert result.state_codes == ["CO"]

    explicit = classify_location("Berlin", explicit_remote=True)
    assert explicit.is_remote
    assert not explicit.is_us


@pytest.mark.parametrize("text", ["Lehi, Utah, U.S.A.", "U.S.A.", "Remote (U.S.)", "Austin, Texas, U.S."])
def test_dotted_us_keyword_matches_inside_longer_abbreviation(text: str) -> None:
    assert is_us_location(text)


def test_dotted_usa_location_is_kept_with_non_us_list() -> None:
    assert should_keep_location("Salt Lake, Utah, U.S.A.", non_us_locations=["CANADA"])
    assert should_keep_location("Lehi, Utah, U.S.A.", non_us_locations=DEFAULT_NON_US_LOCATIONS)
