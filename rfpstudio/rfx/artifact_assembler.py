#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Artifact assembler: one Analysis -> requirements doc, response template, variables doc.

All three documents come from the same Analysis in one assemble() call and
nothing here touches disk, network or the clock, so assembling the same
Analysis twice yields identical output.

The response template is Jinja2 syntax rendered later by document_renderer
against the (user-completed) variables document.
"""

import copy
import json

from rfpstudio.rfx.analysis_engine import REQUIREMENT_KEYS

TO_BE_FILLED = "{{{{ TO_BE_FILLED: {} }}}}"

REQUIREMENT_SECTIONS = (
    ("functional", "Functional Requirements"),
    ("technical", "Technical Requirements"),
    ("compliance", "Compliance Requirements"),
    ("deliverables", "Expected Deliverables"),
)

RESPONSE_PLACEHOLDERS = {
    "functional": "Response to functional requirement",
    "technical": "Response to technical requirement",
    "compliance": "Compliance response",
    "deliverables": "Deliverable details",
}


def placeholder(hint: str) -> str:
    return TO_BE_FILLED.format(hint)


def _numbered(items) -> list:
    return [f"{i}. {item}" for i, item in enumerate(items, 1)]


def _section(title: str, items) -> list:
    """Numbered-list section, or nothing at all when the list is empty."""
    if not items:
        return []
    return [f"## {title}", ""] + _numbered(items) + [""]


# ── requirements document ──────────────────────────────────────────────────────

def render_requirements_markdown(analysis: dict) -> str:
    metadata = analysis.get("metadata", {})
    overview = analysis.get("overview", {})
    requirements = analysis.get("requirements", {})
    evaluation = analysis.get("evaluation", {})
    constraints = analysis.get("constraints", {})

    lines = [
        f"# Requirements Analysis: {overview.get('title', '')}",
        "",
        f"**Generated:** {metadata.get('analysisDate', '')}",
        f"**Source:** {metadata.get('fileName', '')}",
        f"**Organization:** {overview.get('organization', '')}",
        f"**Due Date:** {overview.get('dueDate', '')}",
        "",
        "## Project Overview",
        "",
        str(overview.get("projectSummary", "")),
        "",
    ]

    for key, title in REQUIREMENT_SECTIONS:
        lines += _section(title, requirements.get(key) or [])

    lines += _section("Evaluation Criteria", evaluation.get("criteria") or [])

    constraint_lines = []
    for key, label in (("budget", "Budget"), ("timeline", "Timeline"),
                       ("resources", "Resources")):
        if constraints.get(key):
            constraint_lines.append(f"**{label}:** {constraints[key]}")
    other = constraints.get("other") or []
    if other:
        constraint_lines.append("**Other Constraints:**")
        constraint_lines += [f"- {c}" for c in other]
    if constraint_lines:
        lines += ["## Project Constraints", ""] + constraint_lines + [""]

    lines += _section("Key Questions to Address", analysis.get("questions") or [])
    lines += _section("Opportunities for Differentiation", analysis.get("opportunities") or [])

    if analysis.get("fullText"):
        lines += ["## Full Analysis Text", "", analysis["fullText"], ""]

    return "\n".join(lines).rstrip("\n") + "\n"


# ── response template ──────────────────────────────────────────────────────────

RESPONSE_TEMPLATE = """# {{ metadata.proposalName }} - Response to {{ overview.title }}

**Prepared for:** {{ overview.organization }}
**Due Date:** {{ overview.dueDate }}
**Generated:** {{ metadata.analysisDate[:10] }}

---

## Executive Summary

{{ executiveSummary }}

## Understanding of Requirements

### Project Overview
{{ overview.projectSummary }}

### Functional Requirements Response
{% for requirement in requirements.functional %}
- **{{ requirement }}**: {{ responses.functional[loop.index0] }}
{% endfor %}

### Technical Requirements Response
{% for requirement in requirements.technical %}
- **{{ requirement }}**: {{ responses.technical[loop.index0] }}
{% endfor %}

### Compliance & Regulatory
{% for requirement in requirements.compliance %}
- **{{ requirement }}**: {{ responses.compliance[loop.index0] }}
{% endfor %}

## Proposed Solution

### Solution Overview
{{ solution.overview }}

### Technical Approach
{{ solution.technicalApproach }}

### Implementation Timeline
{% for milestone in solution.timeline %}
- **{{ milestone.phase }}**: {{ milestone.description }} ({{ milestone.duration }})
{% endfor %}

## Deliverables

{% for deliverable in requirements.deliverables %}
- **{{ deliverable }}**: {{ responses.deliverables[loop.index0] }}
{% endfor %}

## Team & Qualifications

### Key Personnel
{% for person in team.keyPersonnel %}
- **{{ person.name }}** ({{ person.role }}): {{ person.qualifications }}
{% endfor %}

### Company Qualifications
{{ company.qualifications }}

### Relevant Experience
{% for project in company.relevantProjects %}
- **{{ project.name }}**: {{ project.description }} ({{ project.year }})
{% endfor %}

## Budget & Pricing

### Cost Summary
{% for item in budget['items'] %}
- {{ item.category }}: {{ item.cost }}
{% endfor %}

**Total Project Cost**: {{ budget.total }}

## Risk Management

{% for risk in riskManagement %}
- **Risk**: {{ risk.description }}
- **Mitigation**: {{ risk.mitigation }}
{% endfor %}

## Why Choose Us

{{ differentiators }}

---

*This response was drafted from an AI-assisted analysis. Review and replace every section with actual company information before submission.*
"""


def render_response_template(analysis: dict) -> str:
    """Structural scaffolding; every requirement list gets one slot per entry at render time."""
    return RESPONSE_TEMPLATE


# ── variables document ─────────────────────────────────────────────────────────

def build_variables(analysis: dict) -> dict:
    """Known Analysis fields verbatim plus TO_BE_FILLED placeholders for the rest."""
    requirements = analysis.get("requirements", {})
    return {
        "metadata": copy.deepcopy(analysis.get("metadata", {})),
        "overview": copy.deepcopy(analysis.get("overview", {})),
        "requirements": copy.deepcopy(requirements),
        "evaluation": copy.deepcopy(analysis.get("evaluation", {})),
        "constraints": copy.deepcopy(analysis.get("constraints", {})),

        "executiveSummary": placeholder("Brief executive summary highlighting key value proposition"),

        "solution": {
            "overview": placeholder("High-level solution description"),
            "technicalApproach": placeholder("Detailed technical approach"),
            "timeline": [{
                "phase": placeholder("Phase 1 name"),
                "description": placeholder("Phase 1 description"),
                "duration": placeholder("Duration estimate"),
            }],
        },

        "team": {
            "keyPersonnel": [{
                "name": placeholder("Team member name"),
                "role": placeholder("Role/title"),
                "qualifications": placeholder("Relevant qualifications"),
            }],
        },

        "company": {
            "qualifications": placeholder("Company qualifications and certifications"),
            "relevantProjects": [{
                "name": placeholder("Project name"),
                "description": placeholder("Project description"),
                "year": placeholder("Year completed"),
            }],
        },

        "budget": {
            "items": [{
                "category": placeholder("Budget category"),
                "cost": placeholder("Cost estimate"),
            }],
            "total": placeholder("Total project cost"),
        },

        "responses": {
            key: [placeholder(RESPONSE_PLACEHOLDERS[key])
                  for _ in (requirements.get(key) or [])]
            for key in REQUIREMENT_KEYS
        },

        "riskManagement": [{
            "description": placeholder("Identified risk"),
            "mitigation": placeholder("Mitigation strategy"),
        }],

        "differentiators": placeholder("Key differentiators and unique value proposition"),
    }


def assemble(analysis: dict) -> dict:
    """Analysis -> {"requirements", "template", "variables"} document texts."""
    return {
        "requirements": render_requirements_markdown(analysis),
        "template": render_response_template(analysis),
        "variables": json.dumps(build_variables(analysis), indent=2, ensure_ascii=False) + "\n",
    }
