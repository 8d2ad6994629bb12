"""Prompt text for the template designer and the per-turn comparison messages."""

from __future__ import annotations

import json

from .models import Document, TemplateMetadata

SYSTEM_PROMPT = """\
You are a document template designer. You receive images of a reference
document and rebuild it as a reusable, parameterized multi-page template
written in a restricted HTML dialect laid out with flexbox.

## Markup dialect

Supported elements: <div>, <span>, <p>, <img> and inline <svg>.
Any <div> with two or more children must use display: flex.

Not supported (your edit is rejected before rendering):
- <table>, <ul>, <ol>, <li>, <a>, <input>, <button> and other form controls.
  Build tables and lists from flex <div> rows.
- display: grid or display: table, position: fixed or sticky.
- calc() and var(); use literal values.
- HSL colors; use hex (#ffffff) or rgb/rgba.
- Embedded data:image payloads. Every image must be an <img> whose src is a
  placeholder token, and it must carry width and height ATTRIBUTES, e.g.
  <img src="{{PRODUCT_IMAGE}}" width="200" height="150" style="object-fit: cover" />

Page sizes in px: A4 794x1123, LETTER 816x1056, LEGAL 816x1344.
The header and footer bands take their height from the document; the page
body fills the rest. A page may override the header or footer content.

## Placeholders

Every piece of variable content is a token in SCREAMING_SNAKE_CASE:
{{PRODUCT_NAME}}, {{DESCRIPTION}}. A default may follow a colon:
{{SUBTITLE:Data sheet}}. Image tokens end in _IMAGE, _PHOTO, _PICTURE, _IMG,
_LOGO, _ICON, _CHART, _GRAPH or _DIAGRAM. Built-in variables:
{{pageNumber}}, {{totalPages}}, {{date}}, {{dateFormatted}}.
During design, declared fields render as bracketed names such as [TITLE] and
image tokens render as grey boxes.

## Tools

- replace_document(pages, patches): replace every page, and/or apply a batch
  of exact search/replace edits.
- patch_page(page, search, replace): replace exact text on one page (1-based).
  The search text must match the current body character for character,
  whitespace included, and occur exactly once. Copy it from the current
  document JSON you are given each turn.
- write_metadata(id, name, page_size, header, footer, fields, asset_slots):
  declare the template id and name, the page setup, every field token and
  every image slot.
- mark_complete(summary): finish. Only accepted after the latest render
  succeeded, at least two versions were rendered, and metadata was written.

Every successful page edit is validated and rendered. You will see the
reference next to your latest render and should refine layout, font sizes,
colors, spacing and missing elements until they match. Prefer patch_page
for small fixes and replace_document for structural changes.
"""


def first_turn_text(page_count: int, instruction: str = "") -> str:
    lines = [
        f"Rebuild this reference document ({page_count} page{'s' if page_count != 1 else ''}) as a template.",
        "Write the pages with replace_document and declare fields and image slots with write_metadata.",
        "I will render your pages and show you the comparison for refinement.",
    ]
    if instruction:
        lines.insert(1, f"Instructions: {instruction}")
    return "\n".join(lines)


def continue_text(feedback: str, version: int | None) -> str:
    basis = f"The latest render is version {version}." if version else "Nothing has been rendered yet."
    return (
        "Continue refining the existing template.\n"
        f"Feedback: {feedback or '(none given)'}\n"
        f"{basis} Apply the feedback, re-render, and call mark_complete when it matches."
    )


def comparison_text(version: int) -> str:
    return (
        f"COMPARISON - version {version} rendered successfully.\n"
        "The reference page images come first, followed by every page of your "
        f"version {version}.\n"
        "Compare layout and positioning, font sizes and colors, spacing and "
        "margins, and look for missing elements.\n"
        "Use patch_page for small fixes, replace_document for major changes. "
        "Call mark_complete when it matches well."
    )


def render_error_text(error: str, last_good_version: int | None) -> str:
    basis = (
        f"The attached render is the LAST SUCCESSFUL version ({last_good_version}), not your failed edit."
        if last_good_version
        else "No version has rendered successfully yet."
    )
    return (
        "ERROR - the last render FAILED.\n"
        f"{error}\n\n"
        "DO NOT call mark_complete; the document is broken. Fix this error first "
        "with patch_page or replace_document.\n"
        f"{basis}"
    )


def document_context(document: Document, metadata: TemplateMetadata | None) -> str:
    """Current pages and metadata as JSON, so patches can quote exact text."""
    payload = {
        "document": document.model_dump(mode="json"),
        "metadata": metadata.model_dump(mode="json") if metadata else None,
    }
    return "Current document JSON:\n" + json.dumps(payload, indent=2)
