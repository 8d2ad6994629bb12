"""Exact-match search/replace edits on a single page body.

Edits never touch the caller's document: a successful patch returns a new
``Document``; a rejected patch returns none and a diagnostic message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import Document, PatchOperation

logger = logging.getLogger(__name__)

BODY_PREVIEW_CHARS = 300


@dataclass
class PatchOutcome:
    """Result of one search/replace attempt."""
    page: int
    applied: bool
    message: str
    document: Document | None = None


def _not_found_message(page: int, body: str, search: str) -> str:
    parts = [f"Search text not found verbatim on page {page}."]
    first_line = search.strip().splitlines()[0].strip() if search.strip() else ""
    if first_line and first_line in body:
        parts.append(
            "The first line of the search text does exist, so the mismatch is "
            "probably whitespace, indentation or a later line."
        )
    preview = body[:BODY_PREVIEW_CHARS]
    suffix = "..." if len(body) > BODY_PREVIEW_CHARS else ""
    parts.append(f"Current page body starts with:\n{preview}{suffix}")
    return "\n".join(parts)


def apply_patch(document: Document, page: int, search: str, replace: str) -> PatchOutcome:
    """Replace the single occurrence of *search* in page *page* (1-based).

    Rejected when the page does not exist, when *search* is empty or absent,
    or when it occurs more than once.
    """
    total = len(document.pages)
    if page < 1 or page > total:
        return PatchOutcome(
            page=page,
            applied=False,
            message=f"Page {page} does not exist; the document has {total} page(s).",
        )
    if not search:
        return PatchOutcome(page=page, applied=False, message="Search text must not be empty.")

    body = document.pages[page - 1].body
    count = body.count(search)
    if count == 0:
        logger.warning("Patch rejected: search text not found on page %d", page)
        return PatchOutcome(page=page, applied=False, message=_not_found_message(page, body, search))
    if count > 1:
        logger.warning("Patch rejected: search text occurs %d times on page %d", count, page)
        return PatchOutcome(
            page=page,
            applied=False,
            message=(
                f"Search text occurs {count} times on page {page}; include more "
                "surrounding context so it matches exactly once."
            ),
        )

    updated = document.model_copy(deep=True)
    updated.pages[page - 1].body = body.replace(search, replace, 1)
    return PatchOutcome(page=page, applied=True, message=f"Patched page {page}.", document=updated)


def apply_batch(document: Document, patches: list[PatchOperation]) -> tuple[Document, list[PatchOutcome]]:
    """Apply *patches* in order, each against the result of the previous ones.

    Rejected operations are skipped; the returned document carries every
    applied edit and is *document* itself when nothing applied.
    """
    current = document
    outcomes: list[PatchOutcome] = []
    for op in patches:
        outcome = apply_patch(current, op.page, op.search, op.replace)
        if outcome.applied and outcome.document is not None:
            current = outcome.document
        outcomes.append(outcome)
    return current, outcomes


def format_batch(outcomes: list[PatchOutcome]) -> str:
    """One line per operation: ``[n] page p applied|rejected: message``."""
    lines = []
    for i, outcome in enumerate(outcomes, start=1):
        status = "applied" if outcome.applied else "rejected"
        lines.append(f"[{i}] page {outcome.page} {status}: {outcome.message}")
    return "\n".join(lines)
