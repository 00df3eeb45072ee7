#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Document pipeline tests: end-to-end RFP processing, caching, failure isolation,
organization uploads, refresh, response generation and artifact edits."""

import json
from datetime import datetime, timezone

import pytest

from conftest import MAPPING, StubService, make_engine

STAMP = datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc)
RFP_ARTIFACTS = ["rfp-source.md", "rfp-requirements.md", "rfp-template.j2", "rfp-variables.json"]


class CountingExtractor:
    name = "counting"

    def __init__(self):
        self.calls = 0

    def can_handle(self, media_type, suffix):
        return True

    def extract(self, data, filename):
        self.calls += 1
        return data.decode("utf-8")


def _status(proposal):
    return {s["key"]: s["status"] for s in proposal["subtasks"]}


def _process(pipeline, owner, proposal, rfp_upload, **kwargs):
    path = rfp_upload()
    return pipeline.process_document(owner, proposal["id"], path, "acme-rfp.txt",
                                     media_type="text/plain", **kwargs)


# =========================================================================
# RFP PROCESSING
# =========================================================================
class TestProcessDocument:

    def test_acme_end_to_end(self, pipeline, owner, proposal, rfp_upload, store):
        path = rfp_upload()
        result = pipeline.process_document(owner, proposal["id"], path, "acme-rfp.txt",
                                           media_type="text/plain", modified_at=STAMP)
        updated = result["proposal"]

        assert sorted(a["name"] for a in result["artifacts"]) == sorted(RFP_ARTIFACTS)
        assert _status(updated)["upload_rfp"] == "completed"
        assert updated["version"] == proposal["version"] + 1
        assert updated["analysis"]["overview"]["title"] == "Acme Field Service Portal"
        assert result["analysis"]["metadata"]["modelUsed"] == "model-a"
        assert result["from_cache"] is False

        assert len(updated["documents"]) == 1
        doc = updated["documents"][0]
        assert doc["filename"] == "acme-rfp.txt"
        assert doc["doc_kind"] == "rfp"
        assert doc["file_size_bytes"] > 0

        assert not path.exists()
        for name in RFP_ARTIFACTS:
            assert store.exists(proposal["id"], name)
        source = store.read(proposal["id"], "rfp-source.md")["content"]
        assert source.startswith("# Request for Proposal: Acme Field Service Portal")
        staging = store.proposal_dir(proposal["id"]) / ".staging"
        assert not staging.exists() or not any(staging.iterdir())

    def test_short_sso_rfp(self, pipeline, owner, proposal, rfp_upload, store):
        text = "Organization: Acme Corp. Due date: 2025-01-01. Requirement: must support SSO."
        path = rfp_upload(name="sso.txt", content=text)
        result = pipeline.process_document(owner, proposal["id"], path, "sso.txt")
        assert len(result["artifacts"]) == 4
        assert _status(result["proposal"])["upload_rfp"] == "completed"
        assert store.read(proposal["id"], "rfp-source.md")["content"] == (
            f"# RFP Document: sso.txt\n\n{text}")

    def test_artifact_records_carry_sizes(self, pipeline, owner, proposal, rfp_upload, store):
        result = _process(pipeline, owner, proposal, rfp_upload)
        for artifact in result["artifacts"]:
            on_disk = store.path_for(proposal["id"], artifact["name"]).stat().st_size
            assert artifact["file_size_bytes"] == on_disk

    def test_second_upload_within_window_hits_cache(self, tmp_db, store, stub_service, owner,
                                                    proposal, rfp_upload):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        extractor = CountingExtractor()
        pipeline = DocumentPipeline(make_engine(stub_service), store=store, db_path=tmp_db,
                                    extractors=[extractor])

        first = _process(pipeline, owner, proposal, rfp_upload, modified_at=STAMP)
        second = _process(pipeline, owner, proposal, rfp_upload, modified_at=STAMP)

        assert extractor.calls == 1
        assert first["from_cache"] is False
        assert second["from_cache"] is True
        assert [d["from_cache"] for d in second["proposal"]["documents"]] == [False, True]

    def test_changed_mtime_misses_cache(self, tmp_db, store, stub_service, owner,
                                        proposal, rfp_upload):
        from datetime import timedelta
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        extractor = CountingExtractor()
        pipeline = DocumentPipeline(make_engine(stub_service), store=store, db_path=tmp_db,
                                    extractors=[extractor])
        _process(pipeline, owner, proposal, rfp_upload, modified_at=STAMP)
        _process(pipeline, owner, proposal, rfp_upload, modified_at=STAMP + timedelta(minutes=1))
        assert extractor.calls == 2

    def test_fallback_model_recorded(self, tmp_db, store, analysis_json, owner,
                                     proposal, rfp_upload):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        service = StubService(script={
            "model-a": [RuntimeError("quota")],
            "model-b": [RuntimeError("quota")],
            "model-c": [analysis_json],
        })
        pipeline = DocumentPipeline(make_engine(service), store=store, db_path=tmp_db)
        result = _process(pipeline, owner, proposal, rfp_upload)
        assert result["analysis"]["metadata"]["modelUsed"] == "model-c"

    def test_all_models_failing_leaves_record_untouched(self, tmp_db, store, owner,
                                                        proposal, rfp_upload):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        from rfpstudio.proposal.proposal_service import get_proposal
        from rfpstudio.rfx.analysis_engine import AllModelsFailedError

        pipeline = DocumentPipeline(make_engine(StubService()), store=store, db_path=tmp_db)
        path = rfp_upload()
        with pytest.raises(AllModelsFailedError):
            pipeline.process_document(owner, proposal["id"], path, "acme-rfp.txt")

        after = get_proposal(proposal["id"], db_path=tmp_db)
        assert after["version"] == proposal["version"]
        assert after["artifacts"] == []
        assert after["documents"] == []
        assert _status(after)["upload_rfp"] == "pending"
        assert not path.exists()
        assert not store.exists(proposal["id"], "rfp-source.md")

    def test_failed_rerun_keeps_previous_artifacts(self, pipeline, owner, proposal,
                                                   rfp_upload, store):
        _process(pipeline, owner, proposal, rfp_upload)
        before = store.read(proposal["id"], "rfp-requirements.md")["content"]

        pipeline.rfp_engine = make_engine(StubService())
        with pytest.raises(Exception):
            _process(pipeline, owner, proposal, rfp_upload)
        assert store.read(proposal["id"], "rfp-requirements.md")["content"] == before

    def test_degraded_answer_still_produces_artifacts(self, tmp_db, store, owner,
                                                      proposal, rfp_upload):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        service = StubService(default="The RFP wants a portal; no JSON today.")
        pipeline = DocumentPipeline(make_engine(service), store=store, db_path=tmp_db)
        result = _process(pipeline, owner, proposal, rfp_upload)
        assert result["analysis"]["degraded"] is True
        requirements = store.read(proposal["id"], "rfp-requirements.md")["content"]
        assert "## Full Analysis Text" in requirements

    def test_unknown_proposal(self, pipeline, owner, rfp_upload):
        from rfpstudio.proposal.proposal_service import ProposalNotFoundError
        path = rfp_upload()
        with pytest.raises(ProposalNotFoundError):
            pipeline.process_document(owner, "no-such-proposal", path, "acme-rfp.txt")
        assert not path.exists()

    def test_processing_is_audited(self, pipeline, owner, proposal, rfp_upload, tmp_db):
        from rfpstudio.audit.audit_logger import list_events
        _process(pipeline, owner, proposal, rfp_upload)
        events = list_events(proposal["id"], db_path=tmp_db)
        assert events[0]["event_type"] == "proposal.document_processed"
        assert json.loads(events[0]["metadata"])["model"] == "model-a"

    def test_audit_failure_does_not_fail_run(self, pipeline, owner, proposal, rfp_upload,
                                             monkeypatch):
        import rfpstudio.proposal.document_pipeline as document_pipeline

        def broken_log_event(*args, **kwargs):
            raise OSError("audit volume unavailable")

        monkeypatch.setattr(document_pipeline, "log_event", broken_log_event)
        result = _process(pipeline, owner, proposal, rfp_upload)
        assert result["proposal"]["version"] == proposal["version"] + 1
        assert len(result["artifacts"]) == 4

    def test_audit_writer_tolerates_unopenable_db(self, tmp_path):
        from rfpstudio.audit.audit_logger import log_event
        unopenable = tmp_path / "audit-dir"
        unopenable.mkdir()
        entry = log_event("proposal.created", "user-1", "Created", db_path=unopenable)
        assert entry["event_type"] == "proposal.created"

    def test_promote_is_retried_after_commit(self, pipeline, owner, proposal, rfp_upload,
                                             store, monkeypatch):
        original = store.promote
        attempts = []

        def flaky_promote(proposal_id, run_id):
            attempts.append(run_id)
            if len(attempts) == 1:
                raise OSError("device busy")
            return original(proposal_id, run_id)

        monkeypatch.setattr(store, "promote", flaky_promote)
        result = _process(pipeline, owner, proposal, rfp_upload)
        assert len(attempts) == 2
        assert len(result["artifacts"]) == 4
        for name in RFP_ARTIFACTS:
            assert store.exists(proposal["id"], name)

    def test_promote_failure_keeps_committed_run(self, pipeline, owner, proposal, rfp_upload,
                                                 store, monkeypatch):
        def failing_promote(proposal_id, run_id):
            raise OSError("read-only file system")

        monkeypatch.setattr(store, "promote", failing_promote)
        result = _process(pipeline, owner, proposal, rfp_upload)
        assert _status(result["proposal"])["upload_rfp"] == "completed"
        staging = store.proposal_dir(proposal["id"]) / ".staging"
        assert len(list(next(staging.iterdir()).iterdir())) == 4


# =========================================================================
# ORGANIZATION UPLOAD
# =========================================================================
class TestOrganizationDocument:

    def _org_upload(self, tmp_path):
        path = tmp_path / "org-profile.md"
        path.write_text("FieldOps Inc builds scheduling portals.", encoding="utf-8")
        return path

    def test_requires_rfp_first(self, pipeline, owner, proposal, tmp_path):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        path = self._org_upload(tmp_path)
        with pytest.raises(ProposalValidationError, match="RFP"):
            pipeline.process_organization_document(owner, proposal["id"], path, "org.md")
        assert not path.exists()

    def test_org_analysis_and_mapping(self, tmp_db, store, analysis_json, owner, proposal,
                                      rfp_upload, tmp_path):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        service = StubService(script={"model-a": [
            analysis_json, "Organization strengths: portals.", json.dumps(MAPPING),
        ]})
        pipeline = DocumentPipeline(make_engine(service), store=store, db_path=tmp_db)
        _process(pipeline, owner, proposal, rfp_upload)

        result = pipeline.process_organization_document(
            owner, proposal["id"], self._org_upload(tmp_path), "org-profile.md")
        names = {a["name"] for a in result["artifacts"]}
        assert {"org-source.md", "org-analysis.md", "requirements-mapping.json"} <= names
        assert result["organization_analysis"] == "Organization strengths: portals."
        assert result["mapping"] == MAPPING
        assert _status(result["proposal"])["org_details"] == "completed"
        assert store.read(proposal["id"], "org-source.md")["content"].startswith(
            "# Organization Document: org-profile.md")
        kinds = [d["doc_kind"] for d in result["proposal"]["documents"]]
        assert kinds == ["rfp", "organization"]

    def test_mapping_failure_is_tolerated(self, tmp_db, store, analysis_json, owner, proposal,
                                          rfp_upload, tmp_path):
        from rfpstudio.proposal.document_pipeline import DocumentPipeline
        service = StubService(script={"model-a": [analysis_json, "Org text"]})
        pipeline = DocumentPipeline(make_engine(service), store=store, db_path=tmp_db)
        _process(pipeline, owner, proposal, rfp_upload)

        result = pipeline.process_organization_document(
            owner, proposal["id"], self._org_upload(tmp_path), "org-profile.md")
        assert result["mapping"] is None
        assert "requirements-mapping.json" not in {a["name"] for a in result["artifacts"]}
        assert _status(result["proposal"])["org_details"] == "completed"


# =========================================================================
# REFRESH
# =========================================================================
class TestRefresh:

    def test_refresh_without_rfp(self, pipeline, owner, proposal):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        with pytest.raises(ProposalValidationError):
            pipeline.refresh_analysis(owner, proposal["id"])

    def test_refresh_regenerates(self, pipeline, owner, proposal, rfp_upload, stub_service):
        first = _process(pipeline, owner, proposal, rfp_upload)
        calls_before = len(stub_service.calls)
        result = pipeline.refresh_analysis(owner, proposal["id"])
        assert len(stub_service.calls) == calls_before + 1
        assert result["proposal"]["version"] == first["proposal"]["version"] + 1
        assert result["analysis"]["metadata"]["fileName"] == "acme-rfp.txt"
        assert len(result["artifacts"]) == len(RFP_ARTIFACTS)


# =========================================================================
# RESPONSE DOCUMENT
# =========================================================================
class TestGenerateResponse:

    def test_generate_docx(self, pipeline, owner, proposal, rfp_upload, store):
        _process(pipeline, owner, proposal, rfp_upload)
        variables = json.loads(store.read(proposal["id"], "rfp-variables.json")["content"])
        variables["executiveSummary"] = "FieldOps will deliver the portal in six months."

        result = pipeline.generate_response_document(owner, proposal["id"], variables)
        assert result["file_name"].startswith("rfp-response-")
        assert result["file_name"].endswith(".docx")
        assert result["artifact"]["artifact_type"] == "response_document"
        assert store.exists(proposal["id"], result["file_name"])
        assert _status(result["proposal"])["review_finalize"] == "completed"

        from docx import Document
        doc = Document(str(store.path_for(proposal["id"], result["file_name"])))
        text = "\n".join(p.text for p in doc.paragraphs)
        assert "FieldOps will deliver the portal in six months." in text

    def test_missing_variable_blocks_generation(self, pipeline, owner, proposal,
                                                rfp_upload, store):
        from rfpstudio.rfx.document_renderer import MissingVariablesError
        _process(pipeline, owner, proposal, rfp_upload)
        variables = json.loads(store.read(proposal["id"], "rfp-variables.json")["content"])
        variables["budget"]["total"] = ""
        with pytest.raises(MissingVariablesError) as exc_info:
            pipeline.generate_response_document(owner, proposal["id"], variables)
        assert exc_info.value.first["path"] == "budget.total"

    def test_empty_variables(self, pipeline, owner, proposal):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        with pytest.raises(ProposalValidationError, match="Variables are required"):
            pipeline.generate_response_document(owner, proposal["id"], {})

    def test_template_required(self, pipeline, owner, proposal):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        with pytest.raises(ProposalValidationError, match="Template file not found"):
            pipeline.generate_response_document(owner, proposal["id"], {"a": "b"})

    def test_docx_is_not_readable_as_text(self, pipeline, owner, proposal, rfp_upload, store):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        _process(pipeline, owner, proposal, rfp_upload)
        variables = json.loads(store.read(proposal["id"], "rfp-variables.json")["content"])
        result = pipeline.generate_response_document(owner, proposal["id"], variables)
        with pytest.raises(ProposalValidationError):
            pipeline.get_artifact_content(proposal["id"], result["file_name"])
        assert pipeline.artifact_path(proposal["id"], result["file_name"]).is_file()


# =========================================================================
# ARTIFACT ACCESS AND EDITING
# =========================================================================
class TestArtifactEditing:

    def test_read_artifact(self, pipeline, owner, proposal, rfp_upload):
        _process(pipeline, owner, proposal, rfp_upload)
        content = pipeline.get_artifact_content(proposal["id"], "rfp-requirements.md", owner)
        assert content["content"].startswith("# Requirements Analysis:")
        assert content["size"] > 0

    def test_edit_artifact(self, pipeline, owner, proposal, rfp_upload, store, tmp_db):
        from rfpstudio.proposal.proposal_service import get_proposal
        first = _process(pipeline, owner, proposal, rfp_upload)
        result = pipeline.update_artifact_content(proposal["id"], "rfp-requirements.md",
                                                  "# Edited\n", owner_id=owner)
        assert result["size"] == len("# Edited\n")
        assert store.read(proposal["id"], "rfp-requirements.md")["content"] == "# Edited\n"
        after = get_proposal(proposal["id"], db_path=tmp_db)
        assert after["version"] == first["proposal"]["version"] + 1
        record = next(a for a in after["artifacts"] if a["name"] == "rfp-requirements.md")
        assert record["file_size_bytes"] == result["size"]

    def test_invalid_json_edit_rejected(self, pipeline, owner, proposal, rfp_upload, store):
        from rfpstudio.proposal.proposal_service import ProposalValidationError
        _process(pipeline, owner, proposal, rfp_upload)
        before = store.read(proposal["id"], "rfp-variables.json")["content"]
        with pytest.raises(ProposalValidationError, match="Invalid JSON"):
            pipeline.update_artifact_content(proposal["id"], "rfp-variables.json", "{oops")
        assert store.read(proposal["id"], "rfp-variables.json")["content"] == before

    def test_unknown_artifact(self, pipeline, owner, proposal):
        from rfpstudio.proposal.artifact_store import ArtifactNotFoundError
        with pytest.raises(ArtifactNotFoundError):
            pipeline.get_artifact_content(proposal["id"], "rfp-requirements.md")

    def test_path_traversal_rejected(self, pipeline, owner, proposal, rfp_upload):
        _process(pipeline, owner, proposal, rfp_upload)
        with pytest.raises(ValueError):
            pipeline.store.path_for(proposal["id"], "../../etc/passwd")


# =========================================================================
# DELETE
# =========================================================================
class TestPipelineDelete:

    def test_delete_removes_artifacts(self, pipeline, owner, proposal, rfp_upload, store, tmp_db):
        from rfpstudio.proposal.proposal_service import create_proposal
        _process(pipeline, owner, proposal, rfp_upload)
        create_proposal(owner, "alice", "Second", db_path=tmp_db)
        pipeline.delete_proposal(owner, proposal["id"])
        assert not store.proposal_dir(proposal["id"]).exists()

    def test_last_proposal_protected(self, pipeline, owner, proposal):
        from rfpstudio.proposal.proposal_service import LastProposalError
        with pytest.raises(LastProposalError):
            pipeline.delete_proposal(owner, proposal["id"])

    def test_delete_drops_proposal_lock(self, pipeline, owner, proposal, tmp_db):
        from rfpstudio.proposal import document_pipeline
        from rfpstudio.proposal.proposal_service import create_proposal
        create_proposal(owner, "alice", "Second", db_path=tmp_db)
        document_pipeline.proposal_lock(proposal["id"])
        pipeline.delete_proposal(owner, proposal["id"])
        assert proposal["id"] not in document_pipeline._locks
