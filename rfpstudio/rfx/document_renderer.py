#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Document renderer: completed variables + response template -> Word document.

  find_missing_variables()  walk the nested variables mapping for empty values
  render_template()         Jinja2 render of the response template
  write_response_docx()     python-docx output, markdown headings -> Word headings
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import jinja2
from docx import Document

DOCUMENT_TITLE = "RFP Response Document"


class MissingVariablesError(ValueError):
    """Raised when the variables mapping still has empty required values."""

    def __init__(self, missing: list):
        self.missing = list(missing)
        first = self.missing[0]
        section = first["section"].replace("_", " ").upper()
        super().__init__(
            f'Missing required variable: "{first["displayName"]}" in {section} section'
        )

    @property
    def first(self) -> dict:
        return self.missing[0]

    @property
    def total(self) -> int:
        return len(self.missing)


def _display_name(key: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), key.replace("_", " "))


def find_missing_variables(variables: dict) -> list:
    """Every leaf that is "", None, or an empty list, in document order."""
    missing = []

    def _walk(obj: dict, prefix: str = ""):
        for key, value in obj.items():
            path = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                _walk(value, path)
            elif value is None or value == "" or (isinstance(value, list) and not value):
                missing.append({
                    "path": path,
                    "section": prefix or key,
                    "field": key,
                    "displayName": _display_name(key),
                })

    _walk(variables)
    return missing


def validate_variables(variables: dict) -> None:
    missing = find_missing_variables(variables)
    if missing:
        raise MissingVariablesError(missing)


def render_template(template_text: str, variables: dict) -> str:
    env = jinja2.Environment(
        undefined=jinja2.ChainableUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    return env.from_string(template_text).render(**variables)


def _heading(line: str):
    m = re.match(r"^(#{1,6})\s+(.*)$", line.strip())
    if not m:
        return None
    return len(m.group(1)), m.group(2).strip()


def write_response_docx(rendered: str, output_path, generated_at: Optional[datetime] = None) -> Path:
    """Write the rendered response as a .docx file. Returns the path."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    generated_at = generated_at or datetime.now(timezone.utc)

    doc = Document()
    doc.add_heading(DOCUMENT_TITLE, level=0)
    stamp = doc.add_paragraph()
    run = stamp.add_run(f"Generated on: {generated_at.strftime('%B %d %Y, %I:%M:%S %p')}")
    run.italic = True
    doc.add_paragraph("")

    for block in rendered.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        body = []
        for line in block.splitlines():
            heading = _heading(line)
            if heading:
                if body:
                    doc.add_paragraph("\n".join(body))
                    body = []
                level, text = heading
                doc.add_heading(text, level=level)
            elif line.strip():
                body.append(line.rstrip())
        if body:
            doc.add_paragraph("\n".join(body))

    doc.save(str(output_path))
    return output_path
