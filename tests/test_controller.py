"""Tests for controller.py — the propose / render / compare loop with scripted replies."""

from __future__ import annotations

import threading

import pytest

from template_synthesizer.controller import Synthesizer
from template_synthesizer.logging_config import EventRecorder
from template_synthesizer.models import (
    EngineUnavailableError,
    EventType,
    ProjectConfig,
    ReasoningServiceError,
    RunStatus,
)
from template_synthesizer.state import RunPhase, RunState
from template_synthesizer.tools.placeholders import placeholder_data_url

SIMPLE_BODY = (
    '<div style="flex-direction: column; padding: 40px">'
    '<span style="font-size: 28px; color: #111827">{{TITLE}}</span>'
    "<p>{{BODY}}</p>"
    '<img src="{{LOGO_IMAGE}}" width="80" height="40">'
    "</div>"
)

METADATA_ARGS = {
    "id": "simple-document",
    "name": "Simple Document",
    "page_size": "A4",
    "fields": [
        {"name": "TITLE", "type": "string", "description": "Main heading"},
        {"name": "BODY", "type": "string", "description": "Paragraph text"},
    ],
    "asset_slots": [{"name": "LOGO_IMAGE", "kind": "logo", "description": "Brand logo"}],
}

TITLE_PATCH = {
    "page": 1,
    "search": '<span style="font-size: 28px; color: #111827">',
    "replace": '<span style="font-size: 32px; color: #111827">',
}

BROKEN_BODY = "<div><span>{{TITLE}}</div>"


def _replace(body: str = SIMPLE_BODY) -> tuple[str, dict]:
    return ("replace_document", {"pages": [{"body": body}]})


def _image_count(message: dict) -> int:
    return sum(1 for part in message["content"] if part.get("type") == "image_url")


def _text(message: dict) -> str:
    return "\n".join(part["text"] for part in message["content"] if part.get("type") == "text")


def _tool_results(history: list[dict]) -> dict[str, str]:
    return {m["tool_call_id"]: m["content"] for m in history if m.get("role") == "tool"}


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def make_synth(project_config, fake_engine, recorder, tmp_path):
    def factory(service, config: ProjectConfig | None = None, **kwargs) -> Synthesizer:
        kwargs.setdefault("engine", fake_engine)
        kwargs.setdefault("callbacks", recorder)
        return Synthesizer(config or project_config, service=service, config_dir=tmp_path, **kwargs)
    return factory


SUCCESS_SCRIPT = [
    [_replace(), ("write_metadata", METADATA_ARGS)],
    [("patch_page", TITLE_PATCH)],
    [("mark_complete", {"summary": "Simple document template"})],
]


class TestSuccessfulRun:
    def test_completes_with_two_versions(self, make_synth, scripted_service):
        service = scripted_service(SUCCESS_SCRIPT)
        synth = make_synth(service)
        result = synth.run()

        assert result.success
        assert result.status == RunStatus.COMPLETED
        assert result.message == "Simple document template"
        assert [v.number for v in result.versions] == [1, 2]
        assert result.turns_used == 3
        assert result.version_counter == 2
        assert [f.name for f in result.metadata.fields] == ["TITLE", "BODY"]
        assert [s.name for s in result.metadata.asset_slots] == ["LOGO_IMAGE"]
        assert result.final_render is not None
        assert result.final_render.combined_artifact.startswith(b"%PDF")
        assert 'font-size: 32px' in result.document.pages[0].body
        assert synth.state.phase == RunPhase.DONE

    def test_final_render_matches_last_version(self, make_synth, scripted_service):
        result = make_synth(scripted_service(SUCCESS_SCRIPT)).run()
        last = result.versions[-1]
        assert result.final_render.page_rasters == list(last.page_rasters)
        assert result.final_render.combined_artifact == last.combined_artifact

    def test_first_turn_sends_references_only(self, make_synth, scripted_service):
        service = scripted_service(SUCCESS_SCRIPT)
        make_synth(service).run()

        first = service.received[0][-1]
        assert first["role"] == "user"
        assert _image_count(first) == 1
        assert "Rebuild this reference document (1 page)" in _text(first)
        assert "Current document JSON" not in _text(first)

    def test_later_turns_compare_latest_version(self, make_synth, scripted_service):
        service = scripted_service(SUCCESS_SCRIPT)
        make_synth(service).run()

        second = service.received[1][-1]
        assert "COMPARISON - version 1" in _text(second)
        assert "Version 1, page 1 of 1:" in _text(second)
        assert "Current document JSON" in _text(second)
        assert _image_count(second) == 2

        third = service.received[2][-1]
        assert "COMPARISON - version 2" in _text(third)

    def test_tool_results_are_in_history(self, make_synth, scripted_service):
        service = scripted_service(SUCCESS_SCRIPT)
        result = make_synth(service).run()

        results = _tool_results(result.history)
        assert results["call_1_0"].startswith("Replaced the document with 1 page(s).")
        assert "Rendered version 1 (1 page(s))" in results["call_1_0"]
        assert results["call_1_1"].startswith("Metadata saved: simple-document (Simple Document)")
        assert "Rendered version 2" in results["call_2_0"]
        assert results["call_3_0"] == "Template marked complete."

    def test_stand_ins_follow_metadata(self, make_synth, scripted_service, fake_engine):
        service = scripted_service(SUCCESS_SCRIPT)
        make_synth(service).run()

        before_metadata, after_metadata = fake_engine.calls[0][0], fake_engine.calls[1][0]
        assert "{{TITLE}}" in before_metadata
        assert "[TITLE]" in after_metadata
        assert "[BODY]" in after_metadata
        assert placeholder_data_url() in after_metadata
        # final render of the committed document
        assert len(fake_engine.calls) == 3

    def test_events(self, make_synth, scripted_service, recorder):
        make_synth(scripted_service(SUCCESS_SCRIPT)).run()

        versions = recorder.of_type(EventType.VERSION)
        assert [e.version for e in versions] == [1, 2]
        assert versions[0].artifacts == ["v1/page-1.png", "v1/combined.pdf"]
        assert len(recorder.of_type(EventType.METADATA)) == 1
        assert recorder.events[0].message == "Turn 1/6"
        assert recorder.events[-1].type == EventType.STATUS

    def test_calls_after_completion_are_skipped(self, make_synth, scripted_service):
        script = SUCCESS_SCRIPT[:2] + [[("mark_complete", {}), ("patch_page", TITLE_PATCH)]]
        result = make_synth(scripted_service(script)).run()

        assert result.success
        assert result.message == "Template completed after 3 turn(s)."
        assert _tool_results(result.history)["call_3_1"].startswith("Skipped")
        assert len(result.versions) == 2

    def test_reference_bytes(self, make_synth, scripted_service, png_factory):
        service = scripted_service(SUCCESS_SCRIPT)
        config = ProjectConfig(reference_images=[], max_turns=6)
        result = make_synth(service, config=config).run(reference_images=[png_factory(), png_factory()])
        assert result.success
        assert _image_count(service.received[0][-1]) == 2


class TestFailedRender:
    def test_budget_exhausted_without_versions(self, make_synth, scripted_service, fake_engine):
        script = [
            [_replace(BROKEN_BODY), ("mark_complete", {})],
            [_replace(BROKEN_BODY)],
        ]
        config = ProjectConfig(reference_images=["reference-1.png"], max_turns=3)
        service = scripted_service(script)
        result = make_synth(service, config=config).run()

        assert not result.success
        assert result.status == RunStatus.INCOMPLETE
        assert result.versions == []
        assert result.version_counter == 0
        assert result.final_render is None
        assert "Turn budget of 3 exhausted" in result.message
        assert "Last render error: page 1: malformed markup" in result.message
        assert fake_engine.calls == []

        results = _tool_results(result.history)
        assert "Render failed; no version was stored." in results["call_1_0"]
        assert "most recent render failed" in results["call_1_1"]

        second = service.received[1][-1]
        assert "DO NOT call mark_complete" in _text(second)
        assert "No version has rendered successfully yet." in _text(second)
        assert _image_count(second) == 1

    def test_error_turn_shows_last_good_version(self, make_synth, scripted_service):
        script = [[_replace()], [_replace(BROKEN_BODY)], []]
        service = scripted_service(script)
        result = make_synth(service).run()

        third = service.received[2][-1]
        assert "LAST SUCCESSFUL version (1)" in _text(third)
        assert _image_count(third) == 2
        # the broken document is kept so it can be patched
        assert result.document.pages[0].body == BROKEN_BODY
        assert [v.number for v in result.versions] == [1]

    def test_version_numbers_skip_nothing_after_failures(self, make_synth, scripted_service):
        script = [[_replace()], [_replace(BROKEN_BODY)], [_replace(BROKEN_BODY)], [_replace()]]
        result = make_synth(scripted_service(script)).run()
        assert [v.number for v in result.versions] == [1, 2]

    def test_engine_render_error_is_recoverable(self, make_synth, scripted_service, fake_engine):
        fake_engine.fail_with = "Chromium failed to render the page: timeout"
        result = make_synth(scripted_service([[_replace()]])).run()
        assert result.status == RunStatus.INCOMPLETE
        assert "timeout" in _tool_results(result.history)["call_1_0"]

    def test_engine_unavailable_fails_run(self, make_synth, scripted_service):
        class NoBrowser:
            def rasterize(self, html_pages, width, height, scale=1.0):
                raise EngineUnavailableError("Could not launch Chromium")

        synth = make_synth(scripted_service([[_replace()]]), engine=NoBrowser())
        result = synth.run()
        assert result.status == RunStatus.FAILED
        assert "Could not launch Chromium" in result.message
        assert synth.state.phase == RunPhase.FAILED


class TestToolRejections:
    def test_gate_requires_two_versions(self, make_synth, scripted_service):
        script = [[_replace(), ("write_metadata", METADATA_ARGS), ("mark_complete", {})]]
        config = ProjectConfig(reference_images=["reference-1.png"], max_turns=2)
        synth = make_synth(scripted_service(script), config=config)
        result = synth.run()

        reason = _tool_results(result.history)["call_1_2"]
        assert reason.startswith("mark_complete rejected:")
        assert "(1 so far)" in reason
        assert result.status == RunStatus.INCOMPLETE
        assert result.final_render is None

    def test_gate_requires_metadata(self, make_synth, scripted_service):
        script = [[_replace()], [("patch_page", TITLE_PATCH)], [("mark_complete", {})]]
        result = make_synth(scripted_service(script)).run()
        assert "call write_metadata first" in _tool_results(result.history)["call_3_0"]
        assert not result.success

    def test_patch_not_found_leaves_state(self, make_synth, scripted_service):
        script = [[_replace()], [("patch_page", {"page": 1, "search": "<h1>", "replace": "<h2>"})]]
        synth = make_synth(scripted_service(script))
        result = synth.run()

        message = _tool_results(result.history)["call_2_0"]
        assert message.startswith("Search text not found verbatim on page 1.")
        assert result.document.pages[0].body == SIMPLE_BODY
        assert len(result.versions) == 1
        assert result.version_counter == 1

    def test_patch_without_pages(self, make_synth, scripted_service):
        result = make_synth(scripted_service([[("patch_page", TITLE_PATCH)]])).run()
        assert _tool_results(result.history)["call_1_0"] == "Page 1 does not exist; the document has 0 page(s)."

    def test_validation_blocks_render(self, make_synth, scripted_service, fake_engine):
        body = "<table><tr><td>{{TITLE}}</td></tr></table>"
        synth = make_synth(scripted_service([[_replace(body)]]))
        result = synth.run()

        message = _tool_results(result.history)["call_1_0"]
        assert "Validation failed with 3 issue(s); nothing was rendered:" in message
        assert fake_engine.calls == []
        assert result.versions == []
        assert result.document.pages[0].body == body

    def test_invalid_arguments(self, make_synth, scripted_service):
        script = [[("patch_page", "not json"), ("delete_everything", {}), ("replace_document", {"pages": "x"})]]
        synth = make_synth(scripted_service(script))
        result = synth.run()

        results = _tool_results(result.history)
        assert results["call_1_0"].startswith("Invalid patch_page call; nothing changed.")
        assert results["call_1_1"].startswith("Invalid delete_everything call")
        assert results["call_1_2"].startswith("Invalid replace_document call")
        assert result.document.pages == []

    def test_empty_replace(self, make_synth, scripted_service):
        script = [[("replace_document", {}), ("replace_document", {"pages": []})]]
        results = _tool_results(make_synth(scripted_service(script)).run().history)
        assert results["call_1_0"].startswith("Nothing to do")
        assert results["call_1_1"].startswith("pages must contain at least one page")

    def test_version_budget(self, make_synth, scripted_service):
        config = ProjectConfig(reference_images=["reference-1.png"], max_turns=4, max_versions=2)
        script = [[_replace()], [("patch_page", TITLE_PATCH)], [_replace()]]
        result = make_synth(scripted_service(script), config=config).run()

        assert _tool_results(result.history)["call_3_0"].startswith("Version budget of 2 reached")
        assert len(result.versions) == 2

    def test_gate_rejects_document_that_failed_validation(self, make_synth, scripted_service, fake_engine):
        body = "<table><tr><td>{{TITLE}}</td></tr></table>"
        script = SUCCESS_SCRIPT[:2] + [[_replace(body)], [("mark_complete", {})]]
        synth = make_synth(scripted_service(script))
        result = synth.run()

        reason = _tool_results(result.history)["call_4_0"]
        assert reason.startswith("mark_complete rejected: the current document does not pass validation.")
        assert "page 1:" in reason
        assert not result.success
        assert result.final_render is None
        assert len(fake_engine.calls) == 2

    def test_invalid_header_reported_and_blocks_completion(self, make_synth, scripted_service, fake_engine):
        metadata = dict(METADATA_ARGS, header={"height": 40, "content": "<ul><li>{{TITLE}}</li></ul>"})
        script = SUCCESS_SCRIPT[:2] + [[("write_metadata", metadata)], [("mark_complete", {})]]
        result = make_synth(scripted_service(script)).run()

        results = _tool_results(result.history)
        assert "Validation failed" in results["call_3_0"]
        assert "- header:" in results["call_3_0"]
        assert "- header:" in results["call_4_0"]
        assert results["call_4_0"].startswith("mark_complete rejected:")
        assert not result.success
        assert result.final_render is None
        assert len(fake_engine.calls) == 2

    def test_metadata_token_report(self, make_synth, scripted_service):
        metadata = dict(METADATA_ARGS, fields=[{"name": "TITLE"}, {"name": "SUBTITLE"}])
        script = [[_replace(), ("write_metadata", metadata)]]
        result = make_synth(scripted_service(script)).run()

        message = _tool_results(result.history)["call_1_1"]
        assert "Tokens used in pages but not declared: BODY" in message
        assert "Declared but not used in any page body: SUBTITLE" in message


class TestContinueMode:
    def test_continues_numbering_with_feedback(self, make_synth, scripted_service, reference_png):
        first = make_synth(scripted_service(SUCCESS_SCRIPT)).run()
        assert first.success

        config = ProjectConfig(
            reference_images=[reference_png.name], max_turns=4, feedback="Make the title larger",
        )
        patch = dict(TITLE_PATCH, search='font-size: 32px', replace='font-size: 40px')
        service = scripted_service([[("patch_page", patch)], [("mark_complete", {"summary": "Larger title"})]])
        state = RunState.from_result(first, max_versions=config.max_versions)
        result = make_synth(service, config=config, state=state).run()

        assert result.success
        assert [v.number for v in result.versions] == [1, 2, 3]
        assert "font-size: 40px" in result.document.pages[0].body
        opening = service.received[0][-1]
        assert "Feedback: Make the title larger" in _text(opening)
        assert "Version 2, page 1 of 1:" in _text(opening)
        assert len(result.history) > len(first.history)

    def test_failed_render_survives_resume(self, make_synth, scripted_service, reference_png):
        config = ProjectConfig(reference_images=[reference_png.name], max_turns=3, feedback="Fix the title")
        first = make_synth(scripted_service(SUCCESS_SCRIPT[:2] + [[_replace(BROKEN_BODY)]]), config=config).run()
        assert first.status == RunStatus.INCOMPLETE
        assert not first.last_render_succeeded
        assert first.last_render_error.startswith("page 1: malformed markup")

        state = RunState.from_result(first)
        service = scripted_service([[("mark_complete", {})]])
        result = make_synth(service, config=config.model_copy(update={"max_turns": 1}), state=state).run()

        assert "most recent render failed" in _tool_results(result.history)["call_1_0"]
        assert not result.success
        opening = _text(service.received[0][-1])
        assert "Feedback: Fix the title" in opening
        assert "ERROR - the last render FAILED." in opening
        assert "LAST SUCCESSFUL version (2)" in opening


class TestAbnormalEnds:
    def test_cancelled_before_start(self, make_synth, scripted_service):
        event = threading.Event()
        event.set()
        service = scripted_service(SUCCESS_SCRIPT)
        result = make_synth(service, cancel_event=event).run()

        assert result.status == RunStatus.INCOMPLETE
        assert result.message == "Cancelled before turn 1; 0 version(s) stored."
        assert service.received == []

    def test_cancelled_mid_run(self, make_synth, scripted_service):
        event = threading.Event()

        class CancelOnVersion:
            def on_event(self, e):
                if e.type == EventType.VERSION:
                    event.set()

        result = make_synth(scripted_service(SUCCESS_SCRIPT), callbacks=CancelOnVersion(), cancel_event=event).run()
        assert result.message == "Cancelled before turn 2; 1 version(s) stored."
        assert [v.number for v in result.versions] == [1]

    def test_callback_errors_do_not_stop_run(self, make_synth, scripted_service):
        class Exploding:
            def on_event(self, e):
                raise RuntimeError("display gone")

        result = make_synth(scripted_service(SUCCESS_SCRIPT), callbacks=Exploding()).run()
        assert result.success

    def test_reasoning_service_error(self, make_synth):
        class Down:
            def respond(self, messages):
                raise ReasoningServiceError("Reasoning service call failed: 503")

        synth = make_synth(Down())
        result = synth.run()
        assert result.status == RunStatus.FAILED
        assert "503" in result.message
        assert synth.state.phase == RunPhase.FAILED

    def test_unexpected_error(self, make_synth):
        class Buggy:
            def respond(self, messages):
                raise KeyError("choices")

        result = make_synth(Buggy()).run()
        assert result.status == RunStatus.FAILED
        assert result.message.startswith("Unexpected error:")

    def test_missing_references(self, make_synth, scripted_service):
        result = make_synth(scripted_service([]), config=ProjectConfig()).run()
        assert result.status == RunStatus.FAILED
        assert "No reference images" in result.message

    def test_reference_file_not_found(self, make_synth, scripted_service):
        config = ProjectConfig(reference_images=["missing.png"])
        result = make_synth(scripted_service([]), config=config).run()
        assert result.status == RunStatus.FAILED
        assert "not found" in result.message

    def test_no_tool_calls_runs_out_budget(self, make_synth, scripted_service):
        config = ProjectConfig(reference_images=["reference-1.png"], max_turns=2)
        result = make_synth(scripted_service([]), config=config).run()
        assert result.status == RunStatus.INCOMPLETE
        assert result.turns_used == 2
        assert result.message == (
            "Turn budget of 2 exhausted without an admitted mark_complete; 0 version(s) stored."
        )
