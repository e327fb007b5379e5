"""Tests for the Pocket CSV provider."""

from datetime import datetime, timezone

import pytest

from pants.providers.pocket import PocketValidationError, parse_pocket_csv, validate_pocket_csv

POCKET_CSV = """title,url,time_added,tags,status
Gemini embeddings,https://example.com/gemini,1700000000,ai|search,unread
"Title, with comma",http://example.com/comma,,,archive
Not a link,ftp://example.com/file,1700000000,,unread
Missing url,,1700000000,,unread
title,url,time_added,tags,status
Iso date,https://example.com/iso,2024-03-01T10:00:00Z,"a, b",unread
"""


class TestValidate:
    def test_accepts_pocket_export(self):
        validate_pocket_csv(POCKET_CSV)

    def test_rejects_empty(self):
        with pytest.raises(PocketValidationError, match="empty"):
            validate_pocket_csv("")
        with pytest.raises(PocketValidationError):
            validate_pocket_csv("title,url\n")

    def test_rejects_missing_columns(self):
        with pytest.raises(PocketValidationError, match="missing URL and Title"):
            validate_pocket_csv("name,link\nfoo,https://example.com\n")

    def test_rejects_without_urls(self):
        with pytest.raises(PocketValidationError, match="No valid URLs"):
            validate_pocket_csv("title,url\nfoo,bar\n")

    def test_is_a_value_error(self):
        assert issubclass(PocketValidationError, ValueError)


class TestParse:
    def test_keeps_only_http_rows(self):
        items = parse_pocket_csv(POCKET_CSV)
        assert [i.url for i in items] == [
            "https://example.com/gemini",
            "http://example.com/comma",
            "https://example.com/iso",
        ]

    def test_fields(self):
        first, second, third = parse_pocket_csv(POCKET_CSV)
        assert first.title == "Gemini embeddings"
        assert first.tags == frozenset({"ai", "search"})
        assert first.time_added == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert second.title == "Title, with comma"
        assert second.tags == frozenset()
        assert second.time_added is None
        assert third.tags == frozenset({"a", "b"})
        assert third.time_added == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_header_case_and_column_order(self):
        items = parse_pocket_csv("URL,Title\nhttps://example.com/x,X\n")
        assert items[0].url == "https://example.com/x"
        assert items[0].title == "X"

    def test_bad_time_is_ignored(self):
        items = parse_pocket_csv("title,url,time_added\nx,https://example.com,yesterday\n")
        assert items[0].time_added is None

    def test_empty_input(self):
        assert parse_pocket_csv("") == []
