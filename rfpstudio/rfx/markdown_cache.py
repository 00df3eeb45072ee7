#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Markdown cache: per-proposal extracted text with a 24-hour freshness window.

Entries live in the markdown_cache table keyed by (proposal_id, cache_key).
Cache key = SHA-256(original filename + source modification time). When the
modification time is unavailable the current wall-clock time is hashed
instead, so such uploads never hit the cache.

Caching is an optimization: get() treats a missing row, a corrupt row and a
stale row the same way (None), and put() reports failure instead of raising.
"""

import hashlib
import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from rfpstudio.rfx.content_extractor import ExtractedText

logger = logging.getLogger("rfpstudio.rfx.cache")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))

CACHE_TTL_HOURS = 24


def _conn(db_path=None):
    c = sqlite3.connect(str(db_path or DB_PATH))
    c.row_factory = sqlite3.Row
    c.execute("PRAGMA journal_mode=WAL")
    c.execute("PRAGMA foreign_keys=ON")
    return c


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def cache_key(original_name: str, modified_at: Optional[datetime] = None) -> str:
    """Stable hash of (filename, mtime); degrades to (filename, now) without an mtime."""
    if modified_at is not None:
        stamp = _as_utc(modified_at).isoformat()
    else:
        stamp = _utcnow().isoformat()
        logger.info("No modification time for %s; cache key will not be reproducible",
                    original_name)
    h = hashlib.sha256()
    h.update(original_name.encode("utf-8"))
    h.update(b"\x00")
    h.update(stamp.encode("utf-8"))
    return h.hexdigest()


def get(proposal_id: str, key: str, db_path=None,
        now: Optional[datetime] = None) -> Optional[ExtractedText]:
    """Return the cached text if present and younger than the freshness window."""
    try:
        conn = _conn(db_path)
        try:
            row = conn.execute(
                "SELECT content, original_name, cached_at FROM markdown_cache "
                "WHERE proposal_id = ? AND cache_key = ?",
                (proposal_id, key),
            ).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        logger.info("Cache read failed for %s/%s: %s", proposal_id, key[:12], exc)
        return None

    if row is None:
        return None

    try:
        cached_at = _as_utc(datetime.fromisoformat(row["cached_at"]))
    except (TypeError, ValueError) as exc:
        logger.info("Corrupt cache metadata for %s/%s: %s", proposal_id, key[:12], exc)
        return None

    age = _as_utc(now or _utcnow()) - cached_at
    if age >= timedelta(hours=CACHE_TTL_HOURS):
        logger.info("Cache entry %s/%s expired (age %s)", proposal_id, key[:12], age)
        return None

    content = row["content"]
    if not isinstance(content, str):
        return None
    return ExtractedText(
        filename=row["original_name"] or "",
        raw_text=content,
        body=content,
        extractor="cache",
        cache_key=key,
        from_cache=True,
    )


def put(proposal_id: str, key: str, text, original_name: str,
        db_path=None, now: Optional[datetime] = None) -> bool:
    """Store extracted text. Best-effort: returns False instead of raising."""
    content = text.body if isinstance(text, ExtractedText) else str(text)
    cached_at = _as_utc(now or _utcnow()).isoformat()
    try:
        conn = _conn(db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO markdown_cache
                    (proposal_id, cache_key, content, original_name,
                     content_length, cached_at)
                VALUES (?,?,?,?,?,?)
            """, (proposal_id, key, content, original_name, len(content), cached_at))
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        logger.warning("Cache write failed for %s (%s): %s", original_name, proposal_id, exc)
        return False
    logger.info("Cached markdown for %s", original_name)
    return True


def purge_expired(db_path=None, now: Optional[datetime] = None) -> int:
    """Delete entries older than the freshness window. Returns rows removed."""
    cutoff = (_as_utc(now or _utcnow()) - timedelta(hours=CACHE_TTL_HOURS)).isoformat()
    conn = _conn(db_path)
    try:
        cur = conn.execute("DELETE FROM markdown_cache WHERE cached_at <= ?", (cutoff,))
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()
