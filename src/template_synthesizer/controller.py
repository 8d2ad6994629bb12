"""Synthesizer — the bounded propose / validate / render / compare loop.

Each turn:
1. Build the comparison payload (reference pages, then the latest version's
   pages and the current document JSON after turn 1)
2. Ask the reasoning service for its next move
3. Dispatch every tool call it emits and append the results to history
4. Stop when ``mark_complete`` is admitted, the turn budget runs out, or an
   unrecoverable error escapes a component
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from .agents.template_designer import (
    AutogenReasoningService,
    ReasoningService,
    ToolCallRequest,
    parse_tool_call,
)
from .logging_config import RichCallbacks, SynthesisCallbacks
from .models import (
    Document,
    EventType,
    ImagePreprocessError,
    MarkComplete,
    PatchPage,
    ProgressEvent,
    ProjectConfig,
    RenderError,
    RenderOutput,
    ReplaceDocument,
    RunStatus,
    SynthesisError,
    SynthesisResult,
    ToolCall,
    WriteMetadata,
)
from .prompts import comparison_text, continue_text, document_context, first_turn_text, render_error_text
from .state import RunPhase, RunState
from .tools.completion_gate import check_completion
from .tools.image_preprocessor import PreparedImage, prepare_image, prepare_image_file
from .tools.markup_validator import format_issues, validate_document, validate_markup
from .tools.patcher import apply_batch, apply_patch, format_batch
from .tools.placeholders import SPECIAL_VARIABLES, find_tokens
from .tools.renderer import PlaywrightEngine, RenderEngine, render_document
from .tools.version_store import VersionStore

logger = logging.getLogger(__name__)

_ARG_PREVIEW_CHARS = 120


class Synthesizer:
    """Drives one synthesis run over a ``RunState`` it owns exclusively."""

    def __init__(
        self,
        config: ProjectConfig,
        *,
        service: ReasoningService | None = None,
        engine: RenderEngine | None = None,
        callbacks: SynthesisCallbacks | None = None,
        state: RunState | None = None,
        config_dir: Path | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.config_dir = config_dir or Path(".")
        self.callbacks = callbacks or RichCallbacks()
        self.engine = engine or PlaywrightEngine(timeout=config.render_timeout)
        self.cancel_event = cancel_event
        self._service = service

        self.resumed = state is not None
        self.state = state or RunState(
            document=Document(page_size=config.default_page_size),
            store=VersionStore(max_versions=config.max_versions),
        )
        self.state.store.max_versions = config.max_versions

        self.references: list[PreparedImage] = []
        self.final_render: RenderOutput | None = None
        self.summary: str = ""

    @property
    def service(self) -> ReasoningService:
        if self._service is None:
            self._service = AutogenReasoningService(self.config)
        return self._service

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def run(self, reference_images: list[str | Path | bytes] | None = None) -> SynthesisResult:
        """Run the loop to completion. Never raises; failures become the result."""
        try:
            self.references = self._load_references(reference_images)
            return self._loop()
        except SynthesisError as e:
            logger.error("Synthesis failed: %s", e)
            return self._finish(RunStatus.FAILED, str(e))
        except Exception as e:
            logger.exception("Synthesis failed")
            return self._finish(RunStatus.FAILED, f"Unexpected error: {e}")

    def _loop(self) -> SynthesisResult:
        max_turns = self.config.max_turns
        for turn in range(1, max_turns + 1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                return self._finish(
                    RunStatus.INCOMPLETE,
                    f"Cancelled before turn {turn}; {len(self.state.versions)} version(s) stored.",
                )

            self.state.turn = turn
            if self.state.phase == RunPhase.RENDERED:
                self.state.advance(RunPhase.COMPARING)
            logger.info("Turn %d/%d (phase=%s)", turn, max_turns, self.state.phase.value)
            self._emit(EventType.STATUS, f"Turn {turn}/{max_turns}")

            self.state.history.append(self._turn_message(turn))
            reply = self.service.respond(self.state.history)
            self.state.history.append(reply.message)
            if reply.text:
                self._emit(EventType.REASONING, reply.text)

            if not reply.tool_calls:
                logger.info("Turn %d: no tool calls", turn)
                continue

            for call in reply.tool_calls:
                if self.state.phase == RunPhase.DONE:
                    result = "Skipped: the template was already marked complete."
                else:
                    result = self._dispatch(call)
                self.state.history.append({"role": "tool", "tool_call_id": call.call_id, "content": result})

            if self.state.phase == RunPhase.DONE:
                return self._finish(
                    RunStatus.COMPLETED,
                    self.summary or f"Template completed after {turn} turn(s).",
                )

        message = (
            f"Turn budget of {max_turns} exhausted without an admitted mark_complete; "
            f"{len(self.state.versions)} version(s) stored."
        )
        if self.state.store.last_render_error:
            message += f" Last render error: {self.state.store.last_render_error}"
        return self._finish(RunStatus.INCOMPLETE, message)

    def _finish(self, status: RunStatus, message: str) -> SynthesisResult:
        if not self.state.finished:
            if status == RunStatus.FAILED:
                self.state.advance(RunPhase.FAILED)
            elif status == RunStatus.INCOMPLETE:
                self.state.advance(RunPhase.INCOMPLETE)
        logger.info("Run finished: %s (%s)", status.value, message)
        self._emit(EventType.STATUS, message)
        return SynthesisResult(
            success=status == RunStatus.COMPLETED,
            status=status,
            message=message,
            metadata=self.state.metadata,
            document=self.state.document,
            versions=list(self.state.versions),
            final_render=self.final_render,
            history=self.state.history,
            turns_used=self.state.turn,
            version_counter=self.state.store.counter,
            last_render_succeeded=self.state.store.last_render_succeeded,
            last_render_error=self.state.store.last_render_error,
        )

    # -----------------------------------------------------------------------
    # Context assembly
    # -----------------------------------------------------------------------

    def _load_references(self, sources: list[str | Path | bytes] | None) -> list[PreparedImage]:
        sources = sources if sources is not None else list(self.config.reference_images)
        if not sources:
            raise ImagePreprocessError("No reference images given")
        prepared = []
        for src in sources:
            if isinstance(src, bytes):
                prepared.append(prepare_image(
                    src,
                    max_dimension=self.config.image_max_dimension,
                    max_bytes=self.config.image_max_bytes,
                ))
            else:
                path = Path(src)
                if not path.is_absolute():
                    path = self.config_dir / path
                prepared.append(prepare_image_file(
                    path,
                    max_dimension=self.config.image_max_dimension,
                    max_bytes=self.config.image_max_bytes,
                ))
        logger.info("Loaded %d reference page image(s)", len(prepared))
        return prepared

    def _prepare_raster(self, raster: bytes) -> PreparedImage:
        return prepare_image(
            raster,
            max_dimension=self.config.image_max_dimension,
            max_bytes=self.config.image_max_bytes,
        )

    def _user_message(self, text: str, images: list[tuple[str, PreparedImage]]) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for label, image in images:
            content.append({"type": "text", "text": label})
            content.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
        return {"role": "user", "content": content}

    def _reference_images(self) -> list[tuple[str, PreparedImage]]:
        total = len(self.references)
        return [(f"Reference page {i} of {total}:", img) for i, img in enumerate(self.references, start=1)]

    def _turn_message(self, turn: int) -> dict[str, Any]:
        """Payload for *turn*: references only on a fresh first turn, then
        references plus every page of the latest successful version."""
        if turn == 1 and not self.resumed:
            return self._user_message(
                first_turn_text(len(self.references), self.config.instruction),
                self._reference_images(),
            )

        store = self.state.store
        latest = store.latest
        if turn == 1:
            text = continue_text(self.config.feedback, latest.number if latest else None)
            if not store.last_render_succeeded and store.last_render_error:
                text += "\n\n" + render_error_text(store.last_render_error, latest.number if latest else None)
        elif not store.last_render_succeeded and store.last_render_error:
            text = render_error_text(store.last_render_error, latest.number if latest else None)
        elif latest is not None:
            text = comparison_text(latest.number)
        else:
            text = "Nothing has rendered yet. Write the pages with replace_document."

        images = self._reference_images()
        if latest is not None:
            total = len(latest.page_rasters)
            images += [
                (f"Version {latest.number}, page {i} of {total}:", self._prepare_raster(raster))
                for i, raster in enumerate(latest.page_rasters, start=1)
            ]
        text = f"{text}\n\n{document_context(self.state.document, self.state.metadata)}"
        return self._user_message(text, images)

    # -----------------------------------------------------------------------
    # Tool dispatch
    # -----------------------------------------------------------------------

    def _dispatch(self, call: ToolCallRequest) -> str:
        preview = call.arguments[:_ARG_PREVIEW_CHARS] + ("..." if len(call.arguments) > _ARG_PREVIEW_CHARS else "")
        logger.info("Tool call: %s", call.name)
        self._emit(EventType.TOOL_CALL, preview, tool=call.name)
        try:
            tool = parse_tool_call(call)
        except ValueError as e:
            logger.warning("Rejected %s call: %s", call.name, e)
            result = f"Invalid {call.name} call; nothing changed.\n{e}"
        else:
            result = self._apply(tool)
        self._emit(EventType.TOOL_RESULT, result, tool=call.name)
        return result

    def _apply(self, tool: ToolCall) -> str:
        if isinstance(tool, ReplaceDocument):
            return self._replace_document(tool)
        if isinstance(tool, PatchPage):
            return self._patch_page(tool)
        if isinstance(tool, WriteMetadata):
            return self._write_metadata(tool)
        if isinstance(tool, MarkComplete):
            return self._mark_complete(tool)
        raise TypeError(f"Unhandled tool call: {type(tool).__name__}")

    def _version_budget_message(self) -> str | None:
        if self.state.store.is_full:
            return (
                f"Version budget of {self.config.max_versions} reached; the edit was not applied. "
                "Call mark_complete if the template is ready."
            )
        return None

    def _replace_document(self, tool: ReplaceDocument) -> str:
        budget = self._version_budget_message()
        if budget is not None:
            return budget
        if tool.pages is None and not tool.patches:
            return "Nothing to do: provide pages and/or patches."
        if tool.pages is not None and not tool.pages:
            return "pages must contain at least one page; the document was not changed."

        document = self.state.document
        lines: list[str] = []
        if tool.pages is not None:
            document = document.model_copy(update={"pages": [p.model_copy() for p in tool.pages]})
            lines.append(f"Replaced the document with {len(tool.pages)} page(s).")
        if tool.patches:
            document, outcomes = apply_batch(document, tool.patches)
            lines.append(format_batch(outcomes))
            if tool.pages is None and not any(o.applied for o in outcomes):
                lines.append("No patch applied; the document was not changed.")
                return "\n".join(lines)
        return self._commit_and_render(document, lines)

    def _patch_page(self, tool: PatchPage) -> str:
        budget = self._version_budget_message()
        if budget is not None:
            return budget
        outcome = apply_patch(self.state.document, tool.page, tool.search, tool.replace)
        if not outcome.applied or outcome.document is None:
            return outcome.message
        return self._commit_and_render(outcome.document, [outcome.message])

    def _commit_and_render(self, document: Document, lines: list[str]) -> str:
        """Adopt *document*, validate it, and render it as the next version.

        An invalid document is still adopted so the next turn sees what failed.
        """
        state = self.state
        state.enter_drafting()
        state.document = document
        state.advance(RunPhase.VALIDATING)

        issues = validate_document(document)
        if issues:
            state.advance(RunPhase.VALIDATION_FAILED)
            logger.warning("Validation failed with %d issue(s)", len(issues))
            for issue in issues:
                logger.warning("  %s", issue)
            lines.append(format_issues(issues))
            state.advance(RunPhase.DRAFTING)
            return "\n".join(lines)

        state.advance(RunPhase.RENDERING)
        try:
            version = state.store.record(lambda: self._render(document))
        except RenderError as e:
            state.advance(RunPhase.RENDER_FAILED)
            logger.warning("Render failed: %s", e)
            lines.append(f"Render failed; no version was stored.\n{e}")
            return "\n".join(lines)

        state.advance(RunPhase.RENDERED)
        artifacts = [f"v{version.number}/page-{i}.png" for i in range(1, len(version.page_rasters) + 1)]
        if version.combined_artifact is not None:
            artifacts.append(f"v{version.number}/combined.pdf")
        self._emit(EventType.VERSION, f"Version {version.number}", version=version.number, artifacts=artifacts)
        lines.append(
            f"Rendered version {version.number} ({len(version.page_rasters)} page(s)). "
            "The comparison follows next turn."
        )
        return "\n".join(lines)

    def _render(self, document: Document) -> RenderOutput:
        return render_document(
            document,
            self.state.metadata,
            self.engine,
            run_date=self.state.run_date,
            scale=self.config.render_scale,
            suffixes=self.config.asset_suffixes,
        )

    def _write_metadata(self, tool: WriteMetadata) -> str:
        state = self.state
        state.enter_drafting()
        metadata = tool.to_metadata()
        state.metadata = metadata
        state.document = state.document.model_copy(
            update={"page_size": tool.page_size, "header": tool.header, "footer": tool.footer},
        )

        summary = (
            f"Metadata saved: {metadata.id} ({metadata.name}), {len(metadata.fields)} field(s), "
            f"{len(metadata.asset_slots)} asset slot(s), page size {tool.page_size.value}."
        )
        logger.info(summary)
        self._emit(EventType.METADATA, summary)

        declared = {f.name for f in metadata.fields} | {s.name for s in metadata.asset_slots}
        used: set[str] = set()
        for page in state.document.pages:
            used.update(find_tokens(page.body))
        used.difference_update(SPECIAL_VARIABLES)
        lines = [summary]
        undeclared = sorted(used - declared)
        unused = sorted(declared - used)
        if undeclared:
            lines.append(f"Tokens used in pages but not declared: {', '.join(undeclared)}")
        if unused:
            lines.append(f"Declared but not used in any page body: {', '.join(unused)}")
        band_issues = []
        for name, band in (("header", tool.header), ("footer", tool.footer)):
            if band is not None:
                band_issues.extend(validate_markup(band.content, name))
        if band_issues:
            logger.warning("Header/footer failed validation with %d issue(s)", len(band_issues))
            lines.append(format_issues(band_issues))
        return "\n".join(lines)

    def _mark_complete(self, tool: MarkComplete) -> str:
        state = self.state
        state.begin_completion()
        decision = check_completion(state.store, state.metadata)
        if not decision.admitted:
            logger.info("Completion rejected: %s", decision.reason)
            state.advance(RunPhase.DRAFTING)
            return decision.reason

        issues = validate_document(state.document)
        if issues:
            logger.warning("Completion rejected: committed document has %d validation issue(s)", len(issues))
            state.advance(RunPhase.DRAFTING)
            return (
                "mark_complete rejected: the current document does not pass validation. "
                "Fix these issues first.\n" + format_issues(issues)
            )

        try:
            self.final_render = self._render(state.document)
        except RenderError as e:
            state.store.last_render_succeeded = False
            state.store.last_render_error = str(e)
            state.advance(RunPhase.DRAFTING)
            logger.warning("Final render failed: %s", e)
            return f"mark_complete rejected: the final render of the committed document failed.\n{e}"

        state.advance(RunPhase.DONE)
        self.summary = tool.summary
        logger.info("Completion admitted after %d version(s)", len(state.versions))
        return "Template marked complete."

    # -----------------------------------------------------------------------
    # Progress events
    # -----------------------------------------------------------------------

    def _emit(self, event_type: EventType, message: str = "", **fields: Any) -> None:
        event = ProgressEvent(type=event_type, message=message, turn=self.state.turn or None, **fields)
        try:
            self.callbacks.on_event(event)
        except Exception:
            logger.warning("Progress callback failed for %s event", event_type.value, exc_info=True)
