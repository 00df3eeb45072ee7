# CUI // SP-PROPIN
"""RFX document-to-artifact engine for RFP Studio.

Modules:
    content_extractor   — uploaded file -> normalized markdown (pypdf, python-docx, placeholders)
    markdown_cache      — per-proposal extraction cache with 24-hour freshness (SQLite)
    prompts             — instruction prompts sent to the text-generation service
    analysis_engine     — ordered model fallback, JSON parse, degraded analysis
    artifact_assembler  — requirements markdown, response template, variables document
    document_renderer   — variable validation, Jinja2 render, Word (.docx) output
"""
