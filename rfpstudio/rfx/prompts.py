#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Instruction prompts sent to the text-generation service.

Prompt wording is configuration, not contract: the engine only relies on the
JSON shape described by ANALYSIS_SCHEMA.
"""

import json

NOT_SPECIFIED = "Not specified in RFP"

ANALYSIS_SCHEMA = {
    "metadata": {
        "fileName": "",
        "analysisDate": "",
        "proposalName": "",
        "modelUsed": "",
    },
    "overview": {
        "title": "RFP title or project name",
        "organization": "Requesting organization name",
        "dueDate": "Proposal submission deadline",
        "projectSummary": "Brief description of what they want",
    },
    "requirements": {
        "functional": ["List of functional requirements"],
        "technical": ["List of technical requirements"],
        "compliance": ["Compliance and regulatory requirements"],
        "deliverables": ["Expected deliverables"],
    },
    "evaluation": {
        "criteria": ["How proposals will be evaluated"],
        "weights": "Scoring weights if specified",
        "timeline": "Project timeline expectations",
    },
    "constraints": {
        "budget": "Budget information if available",
        "timeline": "Timeline constraints",
        "resources": "Resource constraints",
        "other": ["Any other constraints"],
    },
    "questions": ["Key questions that need to be addressed in our proposal"],
    "opportunities": ["Areas where we can differentiate our proposal"],
}

MAPPING_SCHEMA = {
    "mappings": [{
        "requirement_id": "1",
        "requirement_text": "[exact requirement text]",
        "match_status": "FULL_MATCH|PARTIAL_MATCH|NO_MATCH|POTENTIAL_MATCH",
        "confidence_score": "[0-100]",
        "organization_evidence": "[specific evidence from organization document]",
        "gap_analysis": "[what is missing if not a full match]",
        "recommendations": "[how to address gaps]",
    }],
    "summary": {
        "total_requirements": "[number]",
        "full_matches": "[number]",
        "partial_matches": "[number]",
        "no_matches": "[number]",
        "potential_matches": "[number]",
        "overall_score": "[0-100]",
        "key_strengths": ["strength1", "strength2"],
        "critical_gaps": ["gap1", "gap2"],
    },
}


def build_analysis_prompt(document_text: str, filename: str, proposal_name: str,
                          model_name: str, analysis_date: str) -> str:
    schema = json.loads(json.dumps(ANALYSIS_SCHEMA))
    schema["metadata"] = {
        "fileName": filename,
        "analysisDate": analysis_date,
        "proposalName": proposal_name,
        "modelUsed": model_name,
    }
    return f"""You are an expert RFP (Request for Proposal) analyst. Analyze the following RFP document and extract structured information to help create a winning proposal response.

CRITICAL INSTRUCTIONS:
- Do NOT invent information that is not in the document
- If information is unclear or missing, write exactly "{NOT_SPECIFIED}"
- Focus on factual extraction only
- Be precise and comprehensive

DOCUMENT TO ANALYZE:
{document_text}

Respond with a single JSON object in exactly this shape:

{json.dumps(schema, indent=2)}

Only include information that is explicitly stated or clearly implied in the RFP. Mark uncertain information as "{NOT_SPECIFIED}".
"""


def build_organization_prompt(document_text: str) -> str:
    return f"""Analyze the following organization document systematically. Extract ONLY factual information explicitly stated in the document.

CRITICAL: Be factual and precise. Do not invent anything.

ORGANIZATION DOCUMENT:
{document_text}

OUTPUT FORMAT (strict markdown):

# Organization Analysis

## 1. COMPANY PROFILE
- **Company Name**: [exact name from document]
- **Founded**: [if specified]
- **Size**: [number of employees if stated]
- **Headquarters**: [location if stated]
- **Business Description**: [factual summary from document]

## 2. CORE COMPETENCIES & SERVICES
## 3. TECHNICAL CAPABILITIES
## 4. EXPERIENCE & TRACK RECORD
## 5. TEAM EXPERTISE
## 6. CERTIFICATIONS & QUALIFICATIONS
## 7. DIFFERENTIATORS & VALUE PROPOSITIONS

Under each section list items exactly as stated in the document. Omit items the document does not mention.
"""


def build_mapping_prompt(requirements_text: str, organization_text: str) -> str:
    return f"""You are an expert business analyst. Compare the RFP requirements with the organization capabilities and map how well the organization meets each requirement.

Respond with a single JSON object in this shape:

{json.dumps(MAPPING_SCHEMA, indent=2)}

RFP Requirements:
{requirements_text}

Organization Capabilities:
{organization_text}
"""
