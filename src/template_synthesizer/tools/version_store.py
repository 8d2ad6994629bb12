"""Immutable, monotonically numbered render versions.

Numbers are allocated before a render is attempted and handed back when it
fails, so stored versions never have gaps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from ..models import RenderOutput, SynthesisError, Version

logger = logging.getLogger(__name__)


@dataclass
class VersionStore:
    """Stored versions plus the outcome of the most recent render attempt."""
    versions: list[Version] = field(default_factory=list)
    counter: int = 0
    last_render_succeeded: bool = False
    last_render_error: str | None = None
    max_versions: int | None = None

    @property
    def latest(self) -> Version | None:
        return self.versions[-1] if self.versions else None

    @property
    def is_full(self) -> bool:
        return self.max_versions is not None and len(self.versions) >= self.max_versions

    def allocate(self) -> int:
        self.counter += 1
        return self.counter

    def rollback(self, number: int, error: str) -> None:
        """Hand back *number* after a failed render and record *error*."""
        if number == self.counter:
            self.counter -= 1
        self.last_render_succeeded = False
        self.last_render_error = error
        logger.info("Render of version %d failed; counter rolled back to %d", number, self.counter)

    def commit(self, number: int, output: RenderOutput) -> Version:
        version = Version(
            number=number,
            page_rasters=tuple(output.page_rasters),
            combined_artifact=output.combined_artifact,
        )
        self.versions.append(version)
        self.last_render_succeeded = True
        self.last_render_error = None
        logger.info("Stored version %d (%d page(s))", number, len(version.page_rasters))
        return version

    def record(self, render: Callable[[], RenderOutput]) -> Version:
        """Allocate a number, run *render*, and commit or roll back.

        Any ``SynthesisError`` from *render* is re-raised after the rollback.
        """
        number = self.allocate()
        try:
            output = render()
        except SynthesisError as exc:
            self.rollback(number, str(exc))
            raise
        return self.commit(number, output)
