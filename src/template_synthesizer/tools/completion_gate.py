"""Preconditions for the terminal ``mark_complete`` transition."""

from __future__ import annotations

from dataclasses import dataclass

from ..models import TemplateMetadata
from .version_store import VersionStore

MIN_VERSIONS = 2


@dataclass
class GateDecision:
    admitted: bool
    reason: str = ""


def check_completion(store: VersionStore, metadata: TemplateMetadata | None) -> GateDecision:
    """Admit completion only after a successful latest render, two stored
    versions and written metadata.  Rejections explain what is missing."""
    reasons: list[str] = []
    if not store.last_render_succeeded:
        if store.last_render_error:
            reasons.append(
                "the most recent render failed; fix the error and render successfully first "
                f"(last error: {store.last_render_error})"
            )
        else:
            reasons.append("nothing has been rendered yet")
    if len(store.versions) < MIN_VERSIONS:
        reasons.append(
            f"at least {MIN_VERSIONS} rendered versions are required to compare against the "
            f"reference ({len(store.versions)} so far)"
        )
    if metadata is None:
        reasons.append("template metadata has not been written; call write_metadata first")

    if reasons:
        return GateDecision(admitted=False, reason="mark_complete rejected: " + "; ".join(reasons) + ".")
    return GateDecision(admitted=True)
