"""Per-run mutable state and its lifecycle.

One ``RunState`` is created per synthesis run and handed to every component
call; nothing here is module-level, so independent runs never share state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from .models import Document, IllegalTransitionError, SynthesisResult, TemplateMetadata, Version
from .tools.version_store import VersionStore


class RunPhase(str, Enum):
    EMPTY = "empty"
    DRAFTING = "drafting"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    RENDERING = "rendering"
    RENDER_FAILED = "render_failed"
    RENDERED = "rendered"
    COMPARING = "comparing"
    COMPLETING = "completing"
    DONE = "done"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({RunPhase.DONE, RunPhase.INCOMPLETE, RunPhase.FAILED})

# INCOMPLETE and FAILED are reachable from every non-terminal phase.
_TRANSITIONS: dict[RunPhase, frozenset[RunPhase]] = {
    RunPhase.EMPTY: frozenset({RunPhase.DRAFTING}),
    RunPhase.DRAFTING: frozenset({RunPhase.DRAFTING, RunPhase.VALIDATING, RunPhase.COMPLETING}),
    RunPhase.VALIDATING: frozenset({RunPhase.VALIDATION_FAILED, RunPhase.RENDERING}),
    RunPhase.VALIDATION_FAILED: frozenset({RunPhase.DRAFTING}),
    RunPhase.RENDERING: frozenset({RunPhase.RENDER_FAILED, RunPhase.RENDERED}),
    RunPhase.RENDER_FAILED: frozenset({RunPhase.DRAFTING}),
    RunPhase.RENDERED: frozenset({RunPhase.COMPARING}),
    RunPhase.COMPARING: frozenset({RunPhase.DRAFTING, RunPhase.COMPLETING}),
    RunPhase.COMPLETING: frozenset({RunPhase.DONE, RunPhase.DRAFTING}),
}


@dataclass
class RunState:
    """Everything one synthesis run owns."""
    document: Document = field(default_factory=Document)
    metadata: TemplateMetadata | None = None
    store: VersionStore = field(default_factory=VersionStore)
    history: list[dict[str, Any]] = field(default_factory=list)
    turn: int = 0
    run_date: date = field(default_factory=date.today)
    phase: RunPhase = RunPhase.EMPTY

    @property
    def versions(self) -> list[Version]:
        return self.store.versions

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    # -- lifecycle ---------------------------------------------------------

    def advance(self, target: RunPhase) -> None:
        """Move to *target* or raise ``IllegalTransitionError``."""
        if self.phase in TERMINAL_PHASES:
            raise IllegalTransitionError(f"run already {self.phase.value}; cannot move to {target.value}")
        if target in (RunPhase.INCOMPLETE, RunPhase.FAILED) or target in _TRANSITIONS[self.phase]:
            self.phase = target
            return
        raise IllegalTransitionError(f"{self.phase.value} -> {target.value} is not a valid transition")

    def enter_drafting(self) -> None:
        """Walk from wherever the last tool left off back to ``drafting``."""
        if self.phase == RunPhase.RENDERED:
            self.advance(RunPhase.COMPARING)
        if self.phase != RunPhase.DRAFTING:
            self.advance(RunPhase.DRAFTING)

    def begin_completion(self) -> None:
        if self.phase == RunPhase.RENDERED:
            self.advance(RunPhase.COMPARING)
        if self.phase not in (RunPhase.DRAFTING, RunPhase.COMPARING):
            self.advance(RunPhase.DRAFTING)
        self.advance(RunPhase.COMPLETING)

    # -- continuation ------------------------------------------------------

    @classmethod
    def from_result(cls, prior: SynthesisResult, *, max_versions: int | None = None) -> RunState:
        """Rebuild state from a prior run so it can continue with feedback.

        Version numbering resumes after the prior allocation counter, and a
        render that failed at the end of the prior run stays failed.
        """
        store = VersionStore(
            versions=list(prior.versions),
            counter=max(prior.version_counter, prior.versions[-1].number if prior.versions else 0),
            last_render_succeeded=prior.last_render_succeeded and bool(prior.versions),
            last_render_error=prior.last_render_error,
            max_versions=max_versions,
        )
        return cls(
            document=prior.document.model_copy(deep=True),
            metadata=prior.metadata.model_copy(deep=True) if prior.metadata else None,
            store=store,
            history=list(prior.history),
            phase=RunPhase.DRAFTING if prior.document.pages else RunPhase.EMPTY,
        )
