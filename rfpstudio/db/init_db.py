#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Initialize the RFP Studio database with all required tables.

Creates tables for:
  - Proposals (work items, subtask checklist, uploaded documents, artifacts)
  - Markdown cache (per-proposal extracted text, 24-hour freshness)
  - System (append-only audit trail)

Every child table cascades on proposal deletion. Proposal rows carry a
version column used for optimistic concurrency.

Usage:
    python -m rfpstudio.db.init_db [--json] [--db-path PATH]
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))


SCHEMA_SQL = """
-- ============================================================
-- PROPOSALS
-- ============================================================

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL COLLATE NOCASE,
    summary TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    sort_order INTEGER NOT NULL DEFAULT 1,
    analysis TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(owner_id, name)
);

CREATE INDEX IF NOT EXISTS idx_proposals_owner ON proposals(owner_id);

-- Fixed checklist mirroring the pipeline stages
CREATE TABLE IF NOT EXISTS proposal_subtasks (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
    task_key TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'completed')),
    position INTEGER NOT NULL,
    metadata TEXT,
    completed_at TEXT,
    UNIQUE(proposal_id, task_key)
);

CREATE INDEX IF NOT EXISTS idx_subtasks_proposal ON proposal_subtasks(proposal_id);

-- Uploaded documents (raw upload is deleted after processing)
CREATE TABLE IF NOT EXISTS proposal_documents (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
    filename TEXT NOT NULL,
    doc_kind TEXT NOT NULL DEFAULT 'rfp'
        CHECK(doc_kind IN ('rfp', 'organization')),
    media_type TEXT,
    file_size_bytes INTEGER,
    cache_key TEXT,
    from_cache INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL,
    uploaded_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_documents_proposal ON proposal_documents(proposal_id);

-- Generated artifact files
CREATE TABLE IF NOT EXISTS proposal_artifacts (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    display_name TEXT,
    artifact_type TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size_bytes INTEGER,
    position INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(proposal_id, name)
);

CREATE INDEX IF NOT EXISTS idx_artifacts_proposal ON proposal_artifacts(proposal_id);

-- ============================================================
-- MARKDOWN CACHE
-- ============================================================

CREATE TABLE IF NOT EXISTS markdown_cache (
    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
    cache_key TEXT NOT NULL,
    content TEXT NOT NULL,
    original_name TEXT,
    content_length INTEGER,
    cached_at TEXT NOT NULL,
    PRIMARY KEY (proposal_id, cache_key)
);

CREATE INDEX IF NOT EXISTS idx_mdcache_time ON markdown_cache(cached_at);

-- ============================================================
-- SYSTEM
-- ============================================================

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_trail (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    actor TEXT,
    action TEXT NOT NULL,
    project_id TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_trail(event_type);
CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_trail(project_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_trail(timestamp);
"""


def init_db(db_path=None):
    """Initialize the RFP Studio database."""
    path = db_path or str(DB_PATH)
    db_dir = Path(path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.commit()

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table'"
    )
    table_count = cursor.fetchone()[0]

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    index_count = cursor.fetchone()[0]

    conn.close()

    return {
        "status": "initialized",
        "db_path": str(path),
        "tables": table_count,
        "indexes": index_count,
        "initialized_at": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize RFP Studio database")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--db-path", help="Override database path")
    args = parser.parse_args()

    result = init_db(db_path=args.db_path)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print("RFP Studio database initialized:")
        print(f"  Path:    {result['db_path']}")
        print(f"  Tables:  {result['tables']}")
        print(f"  Indexes: {result['indexes']}")
        print(f"  Time:    {result['initialized_at']}")
