"""Tests for raw record normalization at the collector boundary."""
from __future__ import annotations

from datetime import datetime

import pytest

from harvester.data.records import (
    RawFollowRecord,
    RawPostRecord,
    normalize_follow_record,
    normalize_handle,
    normalize_post_record,
    normalize_records,
    parse_count,
    parse_list,
    parse_timestamp,
)
from harvester.errors import InvalidRecord


@pytest.mark.unit
class TestParseCount:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (42, 42),
            ("1,234", 1234),
            ("1.2K", 1200),
            ("90.5K Followers", 90500),
            ("3M", 3_000_000),
            ("1.2B", 1_200_000_000),
            ("2b views", 2_000_000_000),
            ("", None),
            ("n/a", None),
            (None, None),
        ],
    )
    def test_parses_compact_counts(self, raw, expected):
        assert parse_count(raw) == expected

    def test_booleans_are_not_counts(self):
        assert parse_count(True) is None


@pytest.mark.unit
def test_normalize_handle_strips_at_and_lowercases():
    assert normalize_handle(" @Alice_X ") == "alice_x"
    assert normalize_handle("@") is None
    assert normalize_handle(None) is None


@pytest.mark.unit
def test_parse_timestamp_accepts_iso_and_platform_format():
    assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0, 0)
    assert parse_timestamp("2024-03-01T18:00:00+08:00") == datetime(2024, 3, 1, 10, 0, 0)
    assert parse_timestamp("Wed Oct 10 20:19:24 +0000 2018") == datetime(2018, 10, 10, 20, 19, 24)
    assert parse_timestamp("yesterday") is None


@pytest.mark.unit
def test_parse_list_accepts_lists_and_strings():
    assert parse_list(["a", " b ", ""]) == ["a", "b"]
    assert parse_list("#one, #two  #three") == ["#one", "#two", "#three"]
    assert parse_list(None) == []


@pytest.mark.unit
class TestPostNormalization:
    def test_export_column_names(self):
        record = normalize_post_record(
            {
                "ID": "1001",
                "Author Username": "@Alice",
                "Text": " hello ",
                "Type": "Reply",
                "View Count": "1.5K",
                "Favorite Count": "12",
                "Created At": "2024-03-01T10:00:00Z",
                "Tweet URL": "https://twitter.com/alice/status/1001",
                "Hashtags": "#a #b",
            }
        )
        assert record.post_id == "1001"
        assert record.author_handle == "alice"
        assert record.text == "hello"
        assert record.is_reply
        assert record.view_count == 1500
        assert record.favorite_count == 12
        assert record.reply_count == 0
        assert record.published_at == datetime(2024, 3, 1, 10, 0, 0)
        assert record.hashtags == ["#a", "#b"]

    def test_snake_case_names(self):
        record = normalize_post_record({"tweet_id": "7", "type": "Tweet", "retweet_count": 3})
        assert record.post_id == "7"
        assert record.post_type == "post"
        assert record.repost_count == 3

    def test_unparsable_counter_becomes_zero(self):
        record = normalize_post_record({"id": "7", "view_count": "lots"})
        assert record.view_count == 0

    def test_missing_id_is_invalid(self):
        with pytest.raises(InvalidRecord) as excinfo:
            normalize_post_record({"Text": "no id"})
        assert excinfo.value.reason == "missing post id"


@pytest.mark.unit
class TestFollowNormalization:
    def test_profile_fields(self):
        record = normalize_follow_record(
            {
                "User ID": "99",
                "Username": "Bob",
                "Name": "Bob B",
                "Verified": "true",
                "Followers Count": "2,000",
                "Avatar URL": "https://img/bob.png",
                "Profile Banner URL": "https://img/bob-banner.png",
            }
        )
        assert record == RawFollowRecord(
            handle="bob",
            external_id="99",
            display_name="Bob B",
            verified=True,
            followers_count=2000,
            avatar_url="https://img/bob.png",
            banner_url="https://img/bob-banner.png",
        )

    def test_unparsable_profile_count_stays_unknown(self):
        record = normalize_follow_record({"username": "bob", "followers_count": "?"})
        assert record.followers_count is None

    def test_missing_handle_is_invalid(self):
        with pytest.raises(InvalidRecord):
            normalize_follow_record({"User ID": "99"})


@pytest.mark.unit
def test_normalize_records_splits_valid_and_rejected_in_order():
    raw = [{"id": "1"}, {"Text": "x"}, {"id": "2"}, {}, {"id": "3"}]
    valid, rejected = normalize_records("posts", raw)
    assert [record.post_id for record in valid] == ["1", "2", "3"]
    assert len(rejected) == 2


@pytest.mark.unit
def test_normalize_records_passes_typed_records_through():
    typed = RawPostRecord(post_id="5")
    valid, rejected = normalize_records("replies", [typed])
    assert valid == [typed]
    assert rejected == []


@pytest.mark.unit
def test_normalize_records_rejects_unknown_type():
    with pytest.raises(ValueError):
        normalize_records("likes", [])
