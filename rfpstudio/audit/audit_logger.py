#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Audit Logger — append-only audit trail writer for RFP Studio.

Logs proposal lifecycle and pipeline actions to the audit_trail table.
No UPDATE/DELETE operations. A failed write never fails the caller.

Usage:
    python -m rfpstudio.audit.audit_logger \
        --event-type "proposal.document_processed" \
        --actor "user-123" \
        --action "Processed RFP upload acme-rfp.txt" \
        --project-id "PROP-123" \
        --json
"""

import argparse
import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger("rfpstudio.audit")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))


def log_event(event_type: str, actor: str, action: str,
              project_id: str = "", metadata: dict = None,
              db_path=None) -> dict:
    """Append an event to the audit trail. Returns the entry."""
    entry = {
        "id": str(uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "actor": actor,
        "action": action,
        "project_id": project_id,
        "metadata": json.dumps(metadata or {}, default=str),
    }

    path = Path(db_path or DB_PATH)
    if path.exists():
        conn = None
        try:
            conn = sqlite3.connect(str(path))
            conn.execute(
                """INSERT INTO audit_trail
                   (id, timestamp, event_type, actor, action, project_id, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (entry["id"], entry["timestamp"], entry["event_type"],
                 entry["actor"], entry["action"], entry["project_id"],
                 entry["metadata"]),
            )
            conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Audit write skipped for %s: %s", event_type, exc)
        finally:
            if conn is not None:
                conn.close()

    return entry


def list_events(project_id: str = "", limit: int = 100, db_path=None) -> list:
    """Most recent audit entries, optionally for one proposal."""
    conn = sqlite3.connect(str(db_path or DB_PATH))
    conn.row_factory = sqlite3.Row
    try:
        if project_id:
            rows = conn.execute(
                "SELECT * FROM audit_trail WHERE project_id = ? "
                "ORDER BY timestamp DESC LIMIT ?", (project_id, limit)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM audit_trail ORDER BY timestamp DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Audit Logger")
    parser.add_argument("--event-type", required=True)
    parser.add_argument("--actor", required=True)
    parser.add_argument("--action", required=True)
    parser.add_argument("--project-id", default="")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    result = log_event(args.event_type, args.actor, args.action, args.project_id)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"Logged: [{result['event_type']}] {result['action']}")


if __name__ == "__main__":
    main()
