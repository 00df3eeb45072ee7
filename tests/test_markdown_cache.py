#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Markdown cache tests: key stability, freshness window, best-effort failures."""

import sqlite3
from datetime import datetime, timedelta, timezone

STAMP = datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc)


# =========================================================================
# CACHE KEYS
# =========================================================================
class TestCacheKey:

    def test_same_name_and_mtime_same_key(self):
        from rfpstudio.rfx.markdown_cache import cache_key
        assert cache_key("acme.pdf", STAMP) == cache_key("acme.pdf", STAMP)
        assert len(cache_key("acme.pdf", STAMP)) == 64

    def test_naive_and_aware_times_agree(self):
        from rfpstudio.rfx.markdown_cache import cache_key
        assert cache_key("acme.pdf", STAMP.replace(tzinfo=None)) == cache_key("acme.pdf", STAMP)

    def test_name_or_mtime_change_changes_key(self):
        from rfpstudio.rfx.markdown_cache import cache_key
        base = cache_key("acme.pdf", STAMP)
        assert cache_key("acme-v2.pdf", STAMP) != base
        assert cache_key("acme.pdf", STAMP + timedelta(seconds=1)) != base

    def test_missing_mtime_hashes_current_time(self, monkeypatch):
        from rfpstudio.rfx import markdown_cache
        monkeypatch.setattr(markdown_cache, "_utcnow", lambda: STAMP)
        assert markdown_cache.cache_key("acme.pdf") == markdown_cache.cache_key("acme.pdf", STAMP)
        monkeypatch.setattr(markdown_cache, "_utcnow", lambda: STAMP + timedelta(minutes=5))
        assert markdown_cache.cache_key("acme.pdf") != markdown_cache.cache_key("acme.pdf", STAMP)


# =========================================================================
# GET / PUT
# =========================================================================
class TestCacheEntries:

    def test_put_then_get(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        assert markdown_cache.put(proposal["id"], "k1", "# Acme\n\nBody", "acme.txt",
                                  db_path=tmp_db, now=STAMP)
        hit = markdown_cache.get(proposal["id"], "k1", db_path=tmp_db,
                                 now=STAMP + timedelta(hours=1))
        assert hit is not None
        assert hit.body == "# Acme\n\nBody"
        assert hit.from_cache is True
        assert hit.cache_key == "k1"

    def test_put_accepts_extracted_text(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        from rfpstudio.rfx.content_extractor import extract_bytes
        extracted = extract_bytes(b"plain body", "acme.txt")
        markdown_cache.put(proposal["id"], "k2", extracted, "acme.txt", db_path=tmp_db)
        hit = markdown_cache.get(proposal["id"], "k2", db_path=tmp_db)
        assert hit.body == extracted.body

    def test_miss(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        assert markdown_cache.get(proposal["id"], "nope", db_path=tmp_db) is None

    def test_entries_are_per_proposal(self, tmp_db, proposal, owner):
        from rfpstudio.proposal.proposal_service import create_proposal
        from rfpstudio.rfx import markdown_cache
        other = create_proposal(owner, "alice", "Second", db_path=tmp_db)
        markdown_cache.put(proposal["id"], "shared", "text", "a.txt", db_path=tmp_db)
        assert markdown_cache.get(other["id"], "shared", db_path=tmp_db) is None

    def test_entry_expires_after_24_hours(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        markdown_cache.put(proposal["id"], "k", "text", "a.txt", db_path=tmp_db, now=STAMP)
        fresh = STAMP + timedelta(hours=23, minutes=59)
        stale = STAMP + timedelta(hours=24)
        assert markdown_cache.get(proposal["id"], "k", db_path=tmp_db, now=fresh) is not None
        assert markdown_cache.get(proposal["id"], "k", db_path=tmp_db, now=stale) is None

    def test_corrupt_timestamp_is_a_miss(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        markdown_cache.put(proposal["id"], "k", "text", "a.txt", db_path=tmp_db)
        conn = sqlite3.connect(str(tmp_db))
        conn.execute("UPDATE markdown_cache SET cached_at = 'yesterday-ish'")
        conn.commit()
        conn.close()
        assert markdown_cache.get(proposal["id"], "k", db_path=tmp_db) is None

    def test_unreadable_database_is_a_miss(self, tmp_path):
        from rfpstudio.rfx import markdown_cache
        missing_schema = tmp_path / "empty.db"
        assert markdown_cache.get("p", "k", db_path=missing_schema) is None
        assert markdown_cache.put("p", "k", "text", "a.txt", db_path=missing_schema) is False

    def test_purge_expired(self, tmp_db, proposal):
        from rfpstudio.rfx import markdown_cache
        markdown_cache.put(proposal["id"], "old", "t", "a.txt", db_path=tmp_db,
                           now=STAMP - timedelta(days=2))
        markdown_cache.put(proposal["id"], "new", "t", "b.txt", db_path=tmp_db, now=STAMP)
        removed = markdown_cache.purge_expired(db_path=tmp_db, now=STAMP + timedelta(hours=1))
        assert removed == 1
        assert markdown_cache.get(proposal["id"], "new", db_path=tmp_db,
                                  now=STAMP + timedelta(hours=1)) is not None

    def test_entries_cascade_with_proposal(self, tmp_db, proposal, owner):
        from rfpstudio.proposal.proposal_service import create_proposal, delete_proposal
        from rfpstudio.rfx import markdown_cache
        create_proposal(owner, "alice", "Keeper", db_path=tmp_db)
        markdown_cache.put(proposal["id"], "k", "t", "a.txt", db_path=tmp_db)
        delete_proposal(owner, proposal["id"], db_path=tmp_db)
        conn = sqlite3.connect(str(tmp_db))
        count = conn.execute("SELECT COUNT(*) FROM markdown_cache").fetchone()[0]
        conn.close()
        assert count == 0
