"""Tests for search filter parsing and matching."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chat_recall.errors import MetadataFilterParseError
from chat_recall.search import SearchFilters, parse_search_filters, parse_timestamp


def test_parse_search_filters_supports_lists_and_dates() -> None:
    parsed = parse_search_filters(
        "source in (support, 'logistics') and role=user, after=2024-03-01, "
        "before=2024-04-30T23:59:59Z"
    )

    assert parsed.sources == ("support", "logistics")
    assert parsed.roles == ("user",)
    assert parsed.start == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert parsed.end == datetime(2024, 4, 30, 23, 59, 59, tzinfo=timezone.utc)


def test_parse_search_filters_empty_input_means_no_restriction() -> None:
    assert parse_search_filters(None).is_empty
    assert parse_search_filters("   ").is_empty


def test_chat_is_an_alias_for_source() -> None:
    assert parse_search_filters("chat=abc").sources == ("abc",)


@pytest.mark.parametrize(
    "raw",
    [
        "owner=finance",
        "role",
        "role=",
        "after=yesterday",
        "after in (2024-01-01, 2024-02-01)",
        "after=2024-05-01, before=2024-01-01",
        "source in ()",
    ],
)
def test_parse_search_filters_rejects_invalid_input(raw: str) -> None:
    with pytest.raises(MetadataFilterParseError):
        parse_search_filters(raw)


def test_matches_applies_every_condition() -> None:
    filters = SearchFilters(
        start=datetime(2024, 3, 1, tzinfo=timezone.utc),
        end=datetime(2024, 3, 31, tzinfo=timezone.utc),
        sources=("support",),
        roles=("user",),
    )
    metadata = {
        "source": "support",
        "role": "user",
        "category": "billing",
        "created_at": "2024-03-01T00:00:00+00:00",
    }

    assert filters.matches(metadata)
    assert not filters.matches({**metadata, "role": "assistant"})
    assert not filters.matches({**metadata, "source": "logistics"})
    assert not filters.matches({**metadata, "created_at": "2024-04-01T00:00:00"})
    assert not filters.matches({key: v for key, v in metadata.items() if key != "created_at"})


def test_empty_filters_match_everything() -> None:
    assert SearchFilters().matches({})


def test_parse_timestamp_treats_naive_values_as_utc() -> None:
    assert parse_timestamp("2024-03-01T10:00:00") == datetime(
        2024, 3, 1, 10, tzinfo=timezone.utc
    )
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def test_cache_token_is_order_independent() -> None:
    first = SearchFilters(sources=("a", "b"))
    second = SearchFilters(sources=("b", "a"))

    assert first.cache_token() == second.cache_token()
    assert first.cache_token() != SearchFilters(roles=("a",)).cache_token()
