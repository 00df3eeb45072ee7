#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Document pipeline: upload -> extract -> cache -> analyze -> assemble -> persist.

Every entry point runs under a per-proposal lock and follows the same shape:

  1. load the proposal (ProposalNotFoundError if missing)
  2. do the slow work, staging every output file under a run id
  3. commit all record changes in one transaction guarded by the proposal
     version (StaleProposalError on mismatch)
  4. promote the staged files into place

Any exception before the commit aborts the run with the record untouched;
staged files of the failed run are discarded. Steps after the commit (promote,
audit) are logged on failure and never fail the run. The raw upload is
deleted in every case.
"""

import json
import logging
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from rfpstudio.audit.audit_logger import log_event
from rfpstudio.proposal import proposal_service
from rfpstudio.proposal.artifact_store import ArtifactNotFoundError, ArtifactStore
from rfpstudio.proposal.proposal_service import ProposalValidationError
from rfpstudio.rfx import markdown_cache
from rfpstudio.rfx.analysis_engine import AnalysisConfig, AnalysisEngine, LLMUnavailableError
from rfpstudio.rfx.artifact_assembler import assemble, render_requirements_markdown
from rfpstudio.rfx.content_extractor import Document, ExtractedText, extract
from rfpstudio.rfx.document_renderer import render_template, validate_variables, write_response_docx
from rfpstudio.rfx.prompts import build_mapping_prompt, build_organization_prompt

logger = logging.getLogger("rfpstudio.proposal.pipeline")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))

RFP_SOURCE = "rfp-source.md"
RFP_REQUIREMENTS = "rfp-requirements.md"
RFP_TEMPLATE = "rfp-template.j2"
RFP_VARIABLES = "rfp-variables.json"
ORG_SOURCE = "org-source.md"
ORG_ANALYSIS = "org-analysis.md"
REQUIREMENTS_MAPPING = "requirements-mapping.json"

# name -> (display name, artifact type)
ARTIFACT_TYPES = {
    RFP_SOURCE: ("RFP Source (Markdown)", "source_markdown"),
    RFP_REQUIREMENTS: ("Requirements Summary", "requirements"),
    RFP_TEMPLATE: ("Response Template", "template"),
    RFP_VARIABLES: ("Template Variables", "variables"),
    ORG_SOURCE: ("Organization Source (Markdown)", "organization_source"),
    ORG_ANALYSIS: ("Organization Analysis", "organization_analysis"),
    REQUIREMENTS_MAPPING: ("Requirements Mapping", "requirements_mapping"),
}
RESPONSE_DOCUMENT = ("RFP Response Document", "response_document")
BINARY_ARTIFACT_TYPES = {"response_document"}

ORG_TITLE_PREFIX = "Organization Document"


# ── per-proposal locks ─────────────────────────────────────────────────────────

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def proposal_lock(proposal_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(proposal_id)
        if lock is None:
            lock = _locks[proposal_id] = threading.Lock()
        return lock


def forget_lock(proposal_id: str) -> None:
    with _locks_guard:
        _locks.pop(proposal_id, None)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _remove_upload(file_path) -> None:
    if not file_path:
        return
    try:
        Path(file_path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not delete raw upload %s: %s", file_path, exc)


class DocumentPipeline:
    """Orchestrates document processing for one record store + artifact store."""

    def __init__(self, rfp_engine: AnalysisEngine, org_engine: Optional[AnalysisEngine] = None,
                 store: Optional[ArtifactStore] = None, db_path=None, extractors=None):
        self.rfp_engine = rfp_engine
        self.org_engine = org_engine or rfp_engine
        self.store = store or ArtifactStore()
        self.db_path = db_path
        self.extractors = extractors

    @classmethod
    def from_router(cls, router, store: Optional[ArtifactStore] = None,
                    db_path=None) -> "DocumentPipeline":
        return cls(
            rfp_engine=AnalysisEngine(router, AnalysisConfig.from_router(router, "rfp_analysis")),
            org_engine=AnalysisEngine(router, AnalysisConfig.from_router(router, "organization_analysis")),
            store=store,
            db_path=db_path,
        )

    def _conn(self):
        c = sqlite3.connect(str(self.db_path or DB_PATH))
        c.row_factory = sqlite3.Row
        c.execute("PRAGMA journal_mode=WAL")
        c.execute("PRAGMA foreign_keys=ON")
        return c

    # ── helpers ────────────────────────────────────────────────────────────────

    def _extract_with_cache(self, proposal_id: str, document: Document,
                            title_prefix: str = "RFP Document") -> ExtractedText:
        key = markdown_cache.cache_key(document.original_name, document.modified_at)
        cached = markdown_cache.get(proposal_id, key, db_path=self.db_path)
        if cached is not None:
            logger.info("Using cached markdown for %s", document.original_name)
            cached.filename = document.original_name
            return cached

        extracted = extract(document, title_prefix=title_prefix, extractors=self.extractors)
        extracted.cache_key = key
        markdown_cache.put(proposal_id, key, extracted, document.original_name,
                           db_path=self.db_path)
        return extracted

    def _stage(self, proposal_id: str, run_id: str, staged: dict, name: str, content) -> None:
        self.store.stage(proposal_id, run_id, name, content)
        staged[name] = self.store.staged_size(proposal_id, run_id, name)

    def _commit(self, proposal: dict, staged: dict, analysis=proposal_service.UNCHANGED,
                document: Optional[dict] = None, subtask: Optional[str] = None,
                types: Optional[dict] = None) -> None:
        """Record every change of one run in a single versioned transaction."""
        pid = proposal["id"]
        now = _now()
        types = types or {}
        conn = self._conn()
        try:
            proposal_service.bump_version(conn, pid, proposal["version"],
                                          analysis=analysis, now=now)
            if document:
                proposal_service.add_document(conn, pid, now=now, **document)
            for name, size in staged.items():
                display_name, artifact_type = types.get(name) or ARTIFACT_TYPES[name]
                proposal_service.upsert_artifact(
                    conn, pid, name, display_name, artifact_type,
                    str(self.store.path_for(pid, name)), size, now=now,
                )
            if subtask:
                proposal_service.mark_subtask_completed(conn, pid, subtask, now=now)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _artifact_record(self, proposal: dict, name: str) -> dict:
        for artifact in proposal["artifacts"]:
            if artifact["name"] == name:
                return artifact
        raise ArtifactNotFoundError(f"Artifact '{name}' not found")

    def _audit(self, pid: str, owner_id: str, event: str, action: str, metadata: dict) -> None:
        try:
            log_event(event, owner_id or "system", action, project_id=pid,
                      metadata=metadata, db_path=self.db_path)
        except Exception:
            logger.warning("Audit of %s for proposal %s failed", event, pid, exc_info=True)

    def _promote(self, pid: str, run_id: str) -> None:
        """Move a committed run's files into place. Retried once; never raises."""
        for attempt in (1, 2):
            try:
                self.store.promote(pid, run_id)
                return
            except OSError as exc:
                logger.warning("Promote of run %s for proposal %s failed (attempt %d): %s",
                               run_id, pid, attempt, exc)
        logger.error("Committed run %s for proposal %s left in staging", run_id, pid)

    def _finish(self, pid: str, owner_id: str, run_id: str, event: str, action: str,
                metadata: dict) -> dict:
        """Post-commit steps of a run. The record is committed, so these never fail it."""
        self._promote(pid, run_id)
        self._audit(pid, owner_id, event, action, metadata)
        return proposal_service.get_proposal(pid, db_path=self.db_path)

    # ── RFP upload ─────────────────────────────────────────────────────────────

    def process_document(self, owner_id: str, proposal_id: str, file_path, original_name: str,
                         media_type: str = "", modified_at: Optional[datetime] = None) -> dict:
        """Process one uploaded RFP. Returns {proposal, analysis, artifacts, from_cache}."""
        run_id = uuid.uuid4().hex
        try:
            with proposal_lock(proposal_id):
                proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
                document = Document.from_path(file_path, original_name, media_type, modified_at)
                extracted = self._extract_with_cache(proposal_id, document)

                staged = {}
                self._stage(proposal_id, run_id, staged, RFP_SOURCE, extracted.body)

                analysis = self.rfp_engine.analyze(extracted.body, original_name, proposal["name"])
                docs = assemble(analysis)
                self._stage(proposal_id, run_id, staged, RFP_REQUIREMENTS, docs["requirements"])
                self._stage(proposal_id, run_id, staged, RFP_TEMPLATE, docs["template"])
                self._stage(proposal_id, run_id, staged, RFP_VARIABLES, docs["variables"])

                self._commit(
                    proposal, staged, analysis=analysis,
                    document={
                        "filename": original_name,
                        "doc_kind": "rfp",
                        "media_type": document.media_type,
                        "file_size_bytes": document.size_bytes,
                        "cache_key": extracted.cache_key,
                        "from_cache": extracted.from_cache,
                    },
                    subtask="upload_rfp",
                )
                updated = self._finish(
                    proposal_id, owner_id, run_id, "proposal.document_processed",
                    f"Processed RFP upload {original_name}",
                    {"model": analysis["metadata"].get("modelUsed"),
                     "from_cache": extracted.from_cache},
                )
            logger.info("Processed %s for proposal %s (model=%s, cache=%s)",
                        original_name, proposal_id, analysis["metadata"].get("modelUsed"),
                        extracted.from_cache)
            return {
                "proposal": updated,
                "analysis": analysis,
                "artifacts": updated["artifacts"],
                "from_cache": extracted.from_cache,
            }
        except Exception:
            logger.error("Processing %s for proposal %s failed", original_name, proposal_id,
                         exc_info=True)
            self.store.discard(proposal_id, run_id)
            raise
        finally:
            _remove_upload(file_path)

    # ── organization upload ────────────────────────────────────────────────────

    def process_organization_document(self, owner_id: str, proposal_id: str, file_path,
                                      original_name: str, media_type: str = "",
                                      modified_at: Optional[datetime] = None) -> dict:
        """Analyze an organization profile against the proposal's RFP analysis."""
        run_id = uuid.uuid4().hex
        try:
            with proposal_lock(proposal_id):
                proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
                if not proposal.get("analysis"):
                    raise ProposalValidationError(
                        "Upload and process an RFP before adding organization details."
                    )
                document = Document.from_path(file_path, original_name, media_type, modified_at)
                extracted = self._extract_with_cache(proposal_id, document,
                                                     title_prefix=ORG_TITLE_PREFIX)

                staged = {}
                self._stage(proposal_id, run_id, staged, ORG_SOURCE, extracted.body)

                org_text, model_name = self.org_engine.generate_text(
                    build_organization_prompt(self.org_engine.truncate(extracted.body))
                )
                self._stage(proposal_id, run_id, staged, ORG_ANALYSIS, org_text)

                mapping = self._requirements_mapping(proposal, org_text)
                if mapping is not None:
                    self._stage(proposal_id, run_id, staged, REQUIREMENTS_MAPPING,
                                json.dumps(mapping, indent=2, ensure_ascii=False) + "\n")

                self._commit(
                    proposal, staged,
                    document={
                        "filename": original_name,
                        "doc_kind": "organization",
                        "media_type": document.media_type,
                        "file_size_bytes": document.size_bytes,
                        "cache_key": extracted.cache_key,
                        "from_cache": extracted.from_cache,
                    },
                    subtask="org_details",
                )
                updated = self._finish(
                    proposal_id, owner_id, run_id, "proposal.organization_processed",
                    f"Processed organization upload {original_name}",
                    {"model": model_name, "mapping": mapping is not None},
                )
            return {
                "proposal": updated,
                "organization_analysis": org_text,
                "mapping": mapping,
                "artifacts": updated["artifacts"],
                "from_cache": extracted.from_cache,
            }
        except Exception:
            logger.error("Organization processing %s for proposal %s failed",
                         original_name, proposal_id, exc_info=True)
            self.store.discard(proposal_id, run_id)
            raise
        finally:
            _remove_upload(file_path)

    def _requirements_mapping(self, proposal: dict, org_text: str) -> Optional[dict]:
        """Best-effort requirement -> capability mapping. None when unavailable."""
        pid = proposal["id"]
        if self.store.exists(pid, RFP_REQUIREMENTS):
            requirements_text = self.store.read(pid, RFP_REQUIREMENTS)["content"]
        else:
            requirements_text = render_requirements_markdown(proposal["analysis"])
        try:
            return self.org_engine.generate_json(build_mapping_prompt(requirements_text, org_text))
        except LLMUnavailableError as exc:
            logger.warning("Requirements mapping skipped for %s: %s", pid, exc)
            return None

    # ── refresh ────────────────────────────────────────────────────────────────

    def refresh_analysis(self, owner_id: str, proposal_id: str) -> dict:
        """Re-run the analysis on the stored source markdown and regenerate artifacts."""
        run_id = uuid.uuid4().hex
        try:
            with proposal_lock(proposal_id):
                proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
                if not any(a["name"] == RFP_SOURCE for a in proposal["artifacts"]):
                    raise ProposalValidationError(
                        "No RFP has been processed for this proposal yet."
                    )
                source = self.store.read(proposal_id, RFP_SOURCE)["content"]
                filename = ((proposal.get("analysis") or {}).get("metadata") or {}).get(
                    "fileName") or RFP_SOURCE

                analysis = self.rfp_engine.analyze(source, filename, proposal["name"])
                docs = assemble(analysis)
                staged = {}
                self._stage(proposal_id, run_id, staged, RFP_REQUIREMENTS, docs["requirements"])
                self._stage(proposal_id, run_id, staged, RFP_TEMPLATE, docs["template"])
                self._stage(proposal_id, run_id, staged, RFP_VARIABLES, docs["variables"])

                self._commit(proposal, staged, analysis=analysis)
                updated = self._finish(
                    proposal_id, owner_id, run_id, "proposal.refreshed",
                    f"Refreshed analysis of {filename}",
                    {"model": analysis["metadata"].get("modelUsed")},
                )
            return {"proposal": updated, "analysis": analysis, "artifacts": updated["artifacts"]}
        except Exception:
            logger.error("Refresh for proposal %s failed", proposal_id, exc_info=True)
            self.store.discard(proposal_id, run_id)
            raise

    # ── response document ──────────────────────────────────────────────────────

    def generate_response_document(self, owner_id: str, proposal_id: str,
                                   variables: dict) -> dict:
        """Render the response template with completed variables into a .docx."""
        if not isinstance(variables, dict) or not variables:
            raise ProposalValidationError("Variables are required")

        run_id = uuid.uuid4().hex
        try:
            with proposal_lock(proposal_id):
                proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
                if not any(a["name"] == RFP_TEMPLATE for a in proposal["artifacts"]):
                    raise ProposalValidationError(
                        "Template file not found. Please upload and process an RFP first."
                    )
                validate_variables(variables)

                template = self.store.read(proposal_id, RFP_TEMPLATE)["content"]
                rendered = render_template(template, variables)

                generated_at = datetime.now(timezone.utc)
                name = f"rfp-response-{int(generated_at.timestamp() * 1000)}.docx"
                write_response_docx(rendered, self.store.staging_path(proposal_id, run_id, name),
                                    generated_at=generated_at)
                staged = {name: self.store.staged_size(proposal_id, run_id, name)}

                self._commit(proposal, staged, subtask="review_finalize",
                             types={name: RESPONSE_DOCUMENT})
                updated = self._finish(
                    proposal_id, owner_id, run_id, "proposal.document_generated",
                    f"Generated response document {name}", {"file": name},
                )
            artifact = self._artifact_record(updated, name)
            return {"proposal": updated, "artifact": artifact, "file_name": name,
                    "path": artifact["file_path"]}
        except Exception:
            logger.error("Document generation for proposal %s failed", proposal_id, exc_info=True)
            self.store.discard(proposal_id, run_id)
            raise

    # ── artifact access ────────────────────────────────────────────────────────

    def get_artifact_content(self, proposal_id: str, artifact_name: str,
                             owner_id: Optional[str] = None) -> dict:
        """{content, size, modified_at} of a text artifact attached to the proposal."""
        proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
        record = self._artifact_record(proposal, artifact_name)
        if record["artifact_type"] in BINARY_ARTIFACT_TYPES:
            raise ProposalValidationError(
                f"Artifact '{artifact_name}' is binary; download it instead."
            )
        return self.store.read(proposal_id, artifact_name)

    def update_artifact_content(self, proposal_id: str, artifact_name: str, new_content: str,
                                owner_id: Optional[str] = None) -> dict:
        """Overwrite a generated text artifact after manual editing. Returns {size, updated_at}."""
        if not isinstance(new_content, str):
            raise ProposalValidationError("Content must be a string.")
        with proposal_lock(proposal_id):
            proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
            record = self._artifact_record(proposal, artifact_name)
            if record["artifact_type"] in BINARY_ARTIFACT_TYPES:
                raise ProposalValidationError(f"Artifact '{artifact_name}' is binary.")
            if artifact_name.endswith(".json"):
                try:
                    json.loads(new_content)
                except ValueError as exc:
                    raise ProposalValidationError(f"Invalid JSON: {exc}") from exc

            result = self.store.write(proposal_id, artifact_name, new_content)
            conn = self._conn()
            try:
                proposal_service.bump_version(conn, proposal_id, proposal["version"],
                                              now=result["updated_at"])
                conn.execute(
                    "UPDATE proposal_artifacts SET file_size_bytes = ?, updated_at = ? "
                    "WHERE id = ?",
                    (result["size"], result["updated_at"], record["id"]),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        self._audit(proposal_id, owner_id, "proposal.artifact_updated",
                    f"Edited {artifact_name}", {"size": result["size"]})
        return result

    def artifact_path(self, proposal_id: str, artifact_name: str,
                      owner_id: Optional[str] = None) -> Path:
        """Filesystem path of an artifact attached to the proposal (for downloads)."""
        proposal = proposal_service.get_proposal(proposal_id, owner_id, db_path=self.db_path)
        self._artifact_record(proposal, artifact_name)
        path = self.store.path_for(proposal_id, artifact_name)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact '{artifact_name}' not found")
        return path

    def delete_proposal(self, owner_id: str, proposal_id: str) -> dict:
        with proposal_lock(proposal_id):
            result = proposal_service.delete_proposal(owner_id, proposal_id,
                                                      db_path=self.db_path, store=self.store)
        forget_lock(proposal_id)
        return result
