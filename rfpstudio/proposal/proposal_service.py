#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Proposal service: work-item records, subtask checklist, documents, artifacts.

One row per proposal plus child rows per subtask/document/artifact, all
cascading on delete. Every proposal carries a version; writers that change a
proposal go through bump_version() inside their transaction, which rejects a
stale version with StaleProposalError.

Usage:
    python -m rfpstudio.proposal.proposal_service list --owner user-1 [--json]
    python -m rfpstudio.proposal.proposal_service create --owner user-1 --username alice --name "DoD Cloud"
"""

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rfpstudio.audit.audit_logger import log_event

logger = logging.getLogger("rfpstudio.proposal.service")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))

DEFAULT_PROPOSAL_COUNT = 1

SUBTASK_DEFINITIONS = [
    {
        "key": "upload_rfp",
        "title": "Upload RFP Document",
        "description": "Upload the client RFP and generate structured artifacts.",
    },
    {
        "key": "org_details",
        "title": "Upload Organization Details",
        "description": "Attach your organization profile and reusable assets.",
    },
    {
        "key": "solution_outline",
        "title": "Draft Solution Outline",
        "description": "Outline the solution approach and key differentiators.",
    },
    {
        "key": "review_finalize",
        "title": "Review & Finalize",
        "description": "Review generated content and prepare submission package.",
    },
]
SUBTASK_KEYS = tuple(d["key"] for d in SUBTASK_DEFINITIONS)

LAST_PROPOSAL_MESSAGE = (
    "At least one proposal task is required. "
    "Create another proposal before deleting this one."
)


class ProposalNotFoundError(LookupError):
    """Raised when a proposal does not exist or belongs to another owner."""


class ProposalValidationError(ValueError):
    """Raised for invalid proposal input or a missing prerequisite."""


class LastProposalError(ProposalValidationError):
    """Raised when deleting the owner's only remaining proposal."""

    def __init__(self, message: str = LAST_PROPOSAL_MESSAGE):
        super().__init__(message)


class StaleProposalError(RuntimeError):
    """Raised when a proposal changed underneath a read-modify-write."""


def _conn(db_path=None):
    c = sqlite3.connect(str(db_path or DB_PATH))
    c.row_factory = sqlite3.Row
    c.execute("PRAGMA journal_mode=WAL")
    c.execute("PRAGMA foreign_keys=ON")
    return c


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_json(text, default=None):
    if not text:
        return default
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return default


# ── row hydration ──────────────────────────────────────────────────────────────

def _hydrate(conn, row) -> dict:
    proposal = dict(row)
    proposal["analysis"] = _safe_json(proposal.get("analysis"))
    pid = proposal["id"]

    subtasks = []
    for r in conn.execute(
        "SELECT * FROM proposal_subtasks WHERE proposal_id = ? ORDER BY position", (pid,)
    ).fetchall():
        s = dict(r)
        s["key"] = s.pop("task_key")
        s["metadata"] = _safe_json(s.get("metadata"), {})
        subtasks.append(s)
    proposal["subtasks"] = subtasks

    proposal["documents"] = [
        dict(r, from_cache=bool(r["from_cache"])) for r in conn.execute(
            "SELECT * FROM proposal_documents WHERE proposal_id = ? ORDER BY position", (pid,)
        ).fetchall()
    ]
    proposal["artifacts"] = [
        dict(r) for r in conn.execute(
            "SELECT * FROM proposal_artifacts WHERE proposal_id = ? ORDER BY position", (pid,)
        ).fetchall()
    ]
    return proposal


def load_proposal(conn, proposal_id: str, owner_id: Optional[str] = None) -> dict:
    """Hydrated proposal from an open connection. Raises ProposalNotFoundError."""
    if owner_id is None:
        row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM proposals WHERE id = ? AND owner_id = ?", (proposal_id, owner_id)
        ).fetchone()
    if row is None:
        raise ProposalNotFoundError(f"Proposal not found: {proposal_id}")
    return _hydrate(conn, row)


# ── transaction helpers (caller commits) ───────────────────────────────────────

UNCHANGED = object()


def bump_version(conn, proposal_id: str, expected_version: int,
                 analysis=UNCHANGED, now: Optional[str] = None) -> int:
    """Advance the proposal version if it still equals expected_version."""
    now = now or _now()
    if analysis is UNCHANGED:
        cur = conn.execute(
            "UPDATE proposals SET version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ?",
            (now, proposal_id, expected_version),
        )
    else:
        cur = conn.execute(
            "UPDATE proposals SET version = version + 1, updated_at = ?, analysis = ? "
            "WHERE id = ? AND version = ?",
            (now, json.dumps(analysis) if analysis is not None else None,
             proposal_id, expected_version),
        )
    if cur.rowcount != 1:
        raise StaleProposalError(
            f"Proposal {proposal_id} was modified concurrently; please retry."
        )
    return expected_version + 1


def add_document(conn, proposal_id: str, filename: str, doc_kind: str = "rfp",
                 media_type: str = "", file_size_bytes: int = 0,
                 cache_key: str = "", from_cache: bool = False,
                 now: Optional[str] = None) -> str:
    doc_id = str(uuid.uuid4())
    position = conn.execute(
        "SELECT COALESCE(MAX(position), 0) + 1 FROM proposal_documents WHERE proposal_id = ?",
        (proposal_id,),
    ).fetchone()[0]
    conn.execute("""
        INSERT INTO proposal_documents
            (id, proposal_id, filename, doc_kind, media_type, file_size_bytes,
             cache_key, from_cache, position, uploaded_at)
        VALUES (?,?,?,?,?,?,?,?,?,?)
    """, (doc_id, proposal_id, filename, doc_kind, media_type, file_size_bytes,
          cache_key, 1 if from_cache else 0, position, now or _now()))
    return doc_id


def upsert_artifact(conn, proposal_id: str, name: str, display_name: str,
                    artifact_type: str, file_path: str, file_size_bytes: int,
                    now: Optional[str] = None) -> str:
    """Insert an artifact entry, or refresh the existing one with the same name."""
    now = now or _now()
    row = conn.execute(
        "SELECT id FROM proposal_artifacts WHERE proposal_id = ? AND name = ?",
        (proposal_id, name),
    ).fetchone()
    if row:
        conn.execute("""
            UPDATE proposal_artifacts
               SET display_name = ?, artifact_type = ?, file_path = ?,
                   file_size_bytes = ?, updated_at = ?
             WHERE id = ?
        """, (display_name, artifact_type, file_path, file_size_bytes, now, row["id"]))
        return row["id"]

    art_id = str(uuid.uuid4())
    position = conn.execute(
        "SELECT COALESCE(MAX(position), 0) + 1 FROM proposal_artifacts WHERE proposal_id = ?",
        (proposal_id,),
    ).fetchone()[0]
    conn.execute("""
        INSERT INTO proposal_artifacts
            (id, proposal_id, name, display_name, artifact_type, file_path,
             file_size_bytes, position, created_at, updated_at)
        VALUES (?,?,?,?,?,?,?,?,?,?)
    """, (art_id, proposal_id, name, display_name, artifact_type, file_path,
          file_size_bytes, position, now, now))
    return art_id


def mark_subtask_completed(conn, proposal_id: str, task_key: str,
                           now: Optional[str] = None) -> bool:
    """pending -> completed. Returns False when it was already completed."""
    if task_key not in SUBTASK_KEYS:
        raise ProposalValidationError(f"Unknown subtask: {task_key}")
    cur = conn.execute(
        "UPDATE proposal_subtasks SET status = 'completed', completed_at = ? "
        "WHERE proposal_id = ? AND task_key = ? AND status = 'pending'",
        (now or _now(), proposal_id, task_key),
    )
    return cur.rowcount == 1


def _insert_proposal(conn, owner_id: str, name: str, summary: str,
                     sort_order: int, now: str) -> str:
    pid = str(uuid.uuid4())
    conn.execute("""
        INSERT INTO proposals
            (id, owner_id, name, summary, status, sort_order, version,
             created_at, updated_at)
        VALUES (?,?,?,?,?,?,?,?,?)
    """, (pid, owner_id, name, summary, "draft", sort_order, 1, now, now))
    for position, definition in enumerate(SUBTASK_DEFINITIONS, 1):
        conn.execute("""
            INSERT INTO proposal_subtasks
                (id, proposal_id, task_key, title, description, status,
                 position, metadata)
            VALUES (?,?,?,?,?,?,?,?)
        """, (str(uuid.uuid4()), pid, definition["key"], definition["title"],
              definition["description"], "pending", position, "{}"))
    return pid


# ── public API ─────────────────────────────────────────────────────────────────

def list_proposals(owner_id: str, db_path=None) -> list:
    """All proposals of an owner, oldest first."""
    conn = _conn(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM proposals WHERE owner_id = ? ORDER BY created_at, sort_order",
            (owner_id,),
        ).fetchall()
        return [_hydrate(conn, r) for r in rows]
    finally:
        conn.close()


def get_proposal(proposal_id: str, owner_id: Optional[str] = None, db_path=None) -> dict:
    conn = _conn(db_path)
    try:
        return load_proposal(conn, proposal_id, owner_id)
    finally:
        conn.close()


def ensure_seed_proposals(owner_id: str, username: str, db_path=None) -> list:
    """Give an owner with no proposals the default seeded one(s)."""
    existing = list_proposals(owner_id, db_path=db_path)
    if existing:
        return existing

    conn = _conn(db_path)
    try:
        now = _now()
        for index in range(1, DEFAULT_PROPOSAL_COUNT + 1):
            _insert_proposal(conn, owner_id, f"Proposal {index}",
                             f"{username}'s proposal {index}", index, now)
        conn.commit()
    except sqlite3.IntegrityError:
        # another request seeded first
        conn.rollback()
    finally:
        conn.close()
    logger.info("Seeded proposals for owner %s", owner_id)
    return list_proposals(owner_id, db_path=db_path)


def create_proposal(owner_id: str, username: str, name: str, db_path=None) -> dict:
    requested = (name or "").strip()
    if not requested:
        raise ProposalValidationError("Proposal name is required.")

    conn = _conn(db_path)
    try:
        existing = conn.execute(
            "SELECT name FROM proposals WHERE owner_id = ?", (owner_id,)
        ).fetchall()
        if any(r["name"].lower() == requested.lower() for r in existing):
            raise ProposalValidationError(
                "A proposal with this name already exists. Choose a different name."
            )
        try:
            pid = _insert_proposal(conn, owner_id, requested, f"{username}'s {requested}",
                                   len(existing) + 1, _now())
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ProposalValidationError(
                "A proposal with this name already exists. Choose a different name."
            ) from exc
        log_event("proposal.created", owner_id, f"Created proposal {requested}",
                  project_id=pid, db_path=db_path)
        return load_proposal(conn, pid)
    finally:
        conn.close()


def delete_proposal(owner_id: str, proposal_id: str, db_path=None, store=None) -> dict:
    """Delete a proposal (cascade) and its artifact directory. Never the last one."""
    conn = _conn(db_path)
    try:
        load_proposal(conn, proposal_id, owner_id)
        count = conn.execute(
            "SELECT COUNT(*) FROM proposals WHERE owner_id = ?", (owner_id,)
        ).fetchone()[0]
        if count <= 1:
            raise LastProposalError()
        conn.execute("DELETE FROM proposals WHERE id = ? AND owner_id = ?",
                     (proposal_id, owner_id))
        conn.commit()
    finally:
        conn.close()

    if store is not None:
        store.delete_proposal(proposal_id)
    log_event("proposal.deleted", owner_id, f"Deleted proposal {proposal_id}",
              project_id=proposal_id, db_path=db_path)
    return {"status": "deleted", "proposal_id": proposal_id}


def complete_subtask(owner_id: str, proposal_id: str, task_key: str, db_path=None) -> dict:
    conn = _conn(db_path)
    try:
        proposal = load_proposal(conn, proposal_id, owner_id)
        changed = mark_subtask_completed(conn, proposal_id, task_key)
        if changed:
            bump_version(conn, proposal_id, proposal["version"])
        conn.commit()
        return load_proposal(conn, proposal_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="RFP Studio proposal records")
    sub = parser.add_subparsers(dest="command", required=True)
    p_list = sub.add_parser("list")
    p_list.add_argument("--owner", required=True)
    p_create = sub.add_parser("create")
    p_create.add_argument("--owner", required=True)
    p_create.add_argument("--username", required=True)
    p_create.add_argument("--name", required=True)
    for p in (p_list, p_create):
        p.add_argument("--json", action="store_true")
    args = parser.parse_args()

    if args.command == "list":
        result = list_proposals(args.owner)
    else:
        result = create_proposal(args.owner, args.username, args.name)

    if args.json:
        print(json.dumps(result, indent=2))
    elif args.command == "list":
        for p in result:
            done = sum(1 for s in p["subtasks"] if s["status"] == "completed")
            print(f"{p['id']}  {p['name']:<30} {done}/{len(p['subtasks'])} subtasks")
    else:
        print(f"Created proposal {result['id']} ({result['name']})")
