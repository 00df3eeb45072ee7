#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Shared test fixtures for the RFP Studio test suite."""

import json
import os
import sys
from pathlib import Path

import pytest

# Add project root to path
BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))


def _patch_db_path(db_path):
    """Patch DB_PATH in all modules that cache it at import time."""
    p = Path(db_path)
    modules_to_patch = [
        "rfpstudio.rfx.markdown_cache",
        "rfpstudio.proposal.proposal_service",
        "rfpstudio.proposal.document_pipeline",
        "rfpstudio.audit.audit_logger",
        "rfpstudio.dashboard.app",
    ]
    for mod_name in modules_to_patch:
        if mod_name in sys.modules:
            mod = sys.modules[mod_name]
            if hasattr(mod, "DB_PATH"):
                mod.DB_PATH = p


ACME_RFP = """# Request for Proposal: Acme Field Service Portal

Issued by Acme Corporation. Proposals are due 2026-03-31.

Acme requires a web portal for scheduling field technicians, a mobile
application for work orders, SOC 2 compliance and monthly status reports.
"""

ACME_ANALYSIS = {
    "overview": {
        "title": "Acme Field Service Portal",
        "organization": "Acme Corporation",
        "dueDate": "2026-03-31",
        "projectSummary": "Web portal and mobile app for field service scheduling.",
    },
    "requirements": {
        "functional": ["Technician scheduling portal", "Mobile work orders"],
        "technical": ["Cloud hosted", "REST API"],
        "compliance": ["SOC 2 Type II"],
        "deliverables": ["Monthly status reports"],
    },
    "evaluation": {
        "criteria": ["Technical approach", "Price"],
        "weights": "60/40",
        "timeline": "Award in Q2 2026",
    },
    "constraints": {
        "budget": "$250,000",
        "timeline": "6 months",
        "resources": "Not specified in RFP",
        "other": ["US-based staff only"],
    },
    "questions": ["Which CRM is in use today?"],
    "opportunities": ["Offline mode for technicians"],
}

MAPPING = {
    "mappings": [
        {"requirement": "Technician scheduling portal", "capability": "FieldOps suite",
         "coverage": "full"},
    ],
    "gaps": ["SOC 2 Type II"],
}


class StubService:
    """Text-generation service double with the router's invoke_model surface.

    script maps model name -> list of outcomes consumed in order. An outcome
    is a string (returned as content) or an exception instance (raised).
    Unscripted models answer with `default`.
    """

    def __init__(self, script=None, default=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.calls = []

    def invoke_model(self, model_name, request):
        from rfpstudio.llm.provider import LLMResponse
        self.calls.append((model_name, request))
        outcomes = self.script.get(model_name)
        outcome = outcomes.pop(0) if outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise RuntimeError(f"{model_name} unavailable")
        return LLMResponse(content=outcome, model_id=model_name, provider="stub")

    @property
    def models_called(self):
        return [m for m, _ in self.calls]


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary RFP Studio database with full schema."""
    db_path = tmp_path / "test_rfpstudio.db"

    from rfpstudio.db.init_db import init_db
    init_db(str(db_path))

    os.environ["RFPSTUDIO_DB_PATH"] = str(db_path)
    _patch_db_path(db_path)
    yield db_path
    if "RFPSTUDIO_DB_PATH" in os.environ:
        del os.environ["RFPSTUDIO_DB_PATH"]


@pytest.fixture
def store(tmp_path):
    from rfpstudio.proposal.artifact_store import ArtifactStore
    return ArtifactStore(tmp_path / "generated")


@pytest.fixture
def owner():
    return "user-1"


@pytest.fixture
def proposal(tmp_db, owner):
    """The seeded first proposal of the test owner."""
    from rfpstudio.proposal.proposal_service import ensure_seed_proposals
    return ensure_seed_proposals(owner, "alice", db_path=tmp_db)[0]


@pytest.fixture
def analysis_json():
    return json.dumps(ACME_ANALYSIS)


@pytest.fixture
def stub_service(analysis_json):
    """Every model answers with the Acme analysis JSON."""
    return StubService(default=analysis_json)


def make_engine(service, models=("model-a", "model-b", "model-c"), **kwargs):
    from rfpstudio.rfx.analysis_engine import AnalysisConfig, AnalysisEngine
    return AnalysisEngine(service, AnalysisConfig(models=list(models), **kwargs))


@pytest.fixture
def pipeline(tmp_db, store, stub_service):
    from rfpstudio.proposal.document_pipeline import DocumentPipeline
    engine = make_engine(stub_service)
    return DocumentPipeline(engine, store=store, db_path=tmp_db)


@pytest.fixture
def rfp_upload(tmp_path):
    """Write the Acme RFP to a fresh upload file; returns its path."""
    def _write(name="acme-rfp.txt", content=ACME_RFP):
        uploads = tmp_path / "uploads"
        uploads.mkdir(exist_ok=True)
        path = uploads / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write
