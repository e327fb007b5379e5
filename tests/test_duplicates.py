"""Tests for duplicates.py"""

import sqlite3
from unittest.mock import patch

import pytest

from pants.core.duplicates import DuplicateDetector, dedupe_user_archives
from pants.core.models import ImportItem


def _items(*urls):
    return [ImportItem(url=u, title=f"Title {i}") for i, u in enumerate(urls)]


def _archive(db, url, user_id="alice"):
    return db.create_archive(user_id=user_id, url=url, title="x", text="body")


class TestPartition:
    def test_splits_existing_from_new(self, db):
        _archive(db, "https://example.com/old")
        items = _items("https://example.com/old", "https://example.com/new")

        result = DuplicateDetector(db).partition(items, "alice")

        assert [i.url for i in result.duplicate] == ["https://example.com/old"]
        assert [i.url for i in result.new] == ["https://example.com/new"]

    def test_other_users_archives_do_not_count(self, db):
        _archive(db, "https://example.com/old", user_id="bob")
        result = DuplicateDetector(db).partition(_items("https://example.com/old"), "alice")
        assert len(result.new) == 1
        assert result.duplicate == []

    def test_partition_is_exhaustive_and_disjoint(self, db):
        urls = [f"https://example.com/{n}" for n in range(250)]
        for url in urls[::3]:
            _archive(db, url)
        items = _items(*urls)

        result = DuplicateDetector(db, batch_size=100).partition(items, "alice")

        assert len(result.new) + len(result.duplicate) == len(items)
        assert set(map(id, result.new)).isdisjoint(map(id, result.duplicate))
        assert sorted(i.url for i in result.new + result.duplicate) == sorted(urls)
        assert len(result.duplicate) == len(urls[::3])

    def test_queries_in_bounded_batches(self, db):
        detector = DuplicateDetector(db, batch_size=10)
        with patch.object(db, "find_existing_urls", wraps=db.find_existing_urls) as spy:
            detector.partition(_items(*[f"https://e.com/{n}" for n in range(25)]), "alice")
        assert [len(call.args[1]) for call in spy.call_args_list] == [10, 10, 5]

    def test_failing_batch_is_treated_as_new(self, db):
        _archive(db, "https://example.com/0")
        _archive(db, "https://example.com/15")
        original = db.find_existing_urls
        calls = {"n": 0}

        def flaky(user_id, urls):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return original(user_id, urls)

        items = _items(*[f"https://example.com/{n}" for n in range(20)])
        with patch.object(db, "find_existing_urls", side_effect=flaky):
            result = DuplicateDetector(db, batch_size=10).partition(items, "alice")

        assert [i.url for i in result.duplicate] == ["https://example.com/15"]
        assert len(result.new) == 19

    def test_repeated_url_in_input_counts_once(self, db):
        items = _items("https://example.com/a", "http://www.example.com/a/", "https://example.com/b")
        result = DuplicateDetector(db).partition(items, "alice")
        assert [i.url for i in result.new] == ["https://example.com/a", "https://example.com/b"]
        assert [i.url for i in result.duplicate] == ["http://www.example.com/a/"]

    def test_invalid_batch_size(self, db):
        with pytest.raises(ValueError):
            DuplicateDetector(db, batch_size=0)


class TestDedupeUserArchives:
    def test_no_duplicates(self, db):
        _archive(db, "https://example.com/a")
        result = dedupe_user_archives(db, "alice")
        assert result["duplicatesRemoved"] == 0
        assert result["finalCount"] == 1

    def test_keeps_oldest_per_canonical_url(self, db):
        first = _archive(db, "https://example.com/a")
        other = _archive(db, "https://example.com/b")
        later = _archive(db, "https://example.com/a-copy")
        rows = db.list_archive_urls("alice")
        # Rows archived before canonicalization changed can collide
        rows[2]["url_canonical"] = rows[0]["url_canonical"]

        with patch.object(db, "list_archive_urls", return_value=rows):
            result = dedupe_user_archives(db, "alice")

        assert result["originalCount"] == 3
        assert result["duplicatesRemoved"] == 1
        assert result["finalCount"] == 2
        assert db.get_archive(first.id) is not None
        assert db.get_archive(other.id) is not None
        assert db.get_archive(later.id) is None
