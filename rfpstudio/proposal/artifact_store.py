#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Artifact store: per-proposal generated files under RFPSTUDIO_OUTPUT_DIR.

Layout:
    <base_dir>/<proposal_id>/<artifact name>
    <base_dir>/<proposal_id>/.staging/<run_id>/<artifact name>

A processing run stages every file first and promotes them with os.replace
only after the record transaction commits, so a failed run never overwrites
the files of the previous successful run.
"""

import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Union

logger = logging.getLogger("rfpstudio.proposal.artifacts")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
OUTPUT_DIR = Path(os.environ.get(
    "RFPSTUDIO_OUTPUT_DIR", str(BASE_DIR / "data" / "generated")
))

STAGING_DIR = ".staging"
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ArtifactNotFoundError(LookupError):
    """Raised when a proposal has no artifact of the requested name."""


def validate_name(name: str) -> str:
    """Reject names with path separators, traversal, or a leading dot."""
    if not isinstance(name, str) or not _SAFE_NAME.match(name) or ".." in name:
        raise ValueError(f"Invalid artifact name: {name!r}")
    return name


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ArtifactStore:
    """Filesystem storage for generated artifacts, one directory per proposal."""

    def __init__(self, base_dir=None):
        self.base_dir = Path(base_dir or OUTPUT_DIR)

    def proposal_dir(self, proposal_id: str) -> Path:
        return self.base_dir / validate_name(proposal_id)

    def path_for(self, proposal_id: str, name: str) -> Path:
        return self.proposal_dir(proposal_id) / validate_name(name)

    def _run_dir(self, proposal_id: str, run_id: str) -> Path:
        return self.proposal_dir(proposal_id) / STAGING_DIR / validate_name(run_id)

    # ── staged writes ──────────────────────────────────────────────────────────

    def staging_path(self, proposal_id: str, run_id: str, name: str) -> Path:
        run_dir = self._run_dir(proposal_id, run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir / validate_name(name)

    def stage(self, proposal_id: str, run_id: str, name: str,
              content: Union[str, bytes]) -> Path:
        """Write one file into the run's staging directory."""
        path = self.staging_path(proposal_id, run_id, name)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    def staged_size(self, proposal_id: str, run_id: str, name: str) -> int:
        return (self._run_dir(proposal_id, run_id) / validate_name(name)).stat().st_size

    def promote(self, proposal_id: str, run_id: str) -> List[Path]:
        """Move every staged file of a run into the proposal directory."""
        run_dir = self._run_dir(proposal_id, run_id)
        promoted = []
        if not run_dir.is_dir():
            return promoted
        target_dir = self.proposal_dir(proposal_id)
        for staged in sorted(run_dir.iterdir()):
            target = target_dir / staged.name
            os.replace(staged, target)
            promoted.append(target)
        shutil.rmtree(run_dir, ignore_errors=True)
        logger.info("Promoted %d artifact(s) for proposal %s", len(promoted), proposal_id)
        return promoted

    def discard(self, proposal_id: str, run_id: str) -> None:
        """Drop a failed run's staging directory."""
        try:
            run_dir = self._run_dir(proposal_id, run_id)
        except ValueError:
            return
        shutil.rmtree(run_dir, ignore_errors=True)

    # ── direct access ──────────────────────────────────────────────────────────

    def exists(self, proposal_id: str, name: str) -> bool:
        return self.path_for(proposal_id, name).is_file()

    def read(self, proposal_id: str, name: str) -> dict:
        """Return {content, size, modified_at} for a text artifact."""
        path = self.path_for(proposal_id, name)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact '{name}' not found")
        content = path.read_text(encoding="utf-8")
        st = path.stat()
        return {"content": content, "size": st.st_size, "modified_at": _iso(st.st_mtime)}

    def write(self, proposal_id: str, name: str, content: str) -> dict:
        """Overwrite an existing text artifact. Returns {size, updated_at}."""
        path = self.path_for(proposal_id, name)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact '{name}' not found")
        tmp = path.with_name(f".{name}.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
        st = path.stat()
        return {"size": st.st_size, "updated_at": _iso(st.st_mtime)}

    def delete_proposal(self, proposal_id: str) -> None:
        shutil.rmtree(self.proposal_dir(proposal_id), ignore_errors=True)
