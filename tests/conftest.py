"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import io
import json
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from template_synthesizer.agents.template_designer import ReasoningTurn, ToolCallRequest
from template_synthesizer.models import Document, Page, ProjectConfig, RenderError

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SAMPLE_CONFIG = FIXTURES_DIR / "sample_config.yaml"

SIMPLE_BODY = (
    '<div style="flex-direction: column; padding: 40px">'
    '<span style="font-size: 28px; color: #111827">{{TITLE}}</span>'
    "<p>{{BODY}}</p>"
    '<img src="{{LOGO_IMAGE}}" width="80" height="40">'
    "</div>"
)


def make_png(width: int = 32, height: int = 32, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeEngine:
    """Deterministic rasterizer: one small PNG per page, colored by the page HTML."""

    def __init__(self, fail_with: str | None = None) -> None:
        self.fail_with = fail_with
        self.calls: list[list[str]] = []

    def rasterize(self, html_pages: list[str], width: int, height: int, scale: float = 1.0) -> list[bytes]:
        self.calls.append(list(html_pages))
        if self.fail_with:
            raise RenderError(self.fail_with)
        rasters = []
        for html in html_pages:
            digest = hashlib.sha256(html.encode("utf-8")).digest()
            rasters.append(make_png(24, 34, (digest[0], digest[1], digest[2])))
        return rasters


class ScriptedService:
    """Reasoning service that replays a fixed list of turns.

    Each turn is a list of ``(tool_name, arguments)`` pairs; arguments may be a
    dict (JSON-encoded here) or a raw string.  Once the script runs out every
    reply is plain text with no tool calls.
    """

    def __init__(self, turns: list[list[tuple[str, Any]]]) -> None:
        self.turns = list(turns)
        self.received: list[list[dict[str, Any]]] = []

    def respond(self, messages: list[dict[str, Any]]) -> ReasoningTurn:
        self.received.append(list(messages))
        if not self.turns:
            text = "No further changes."
            return ReasoningTurn(text=text, message={"role": "assistant", "content": text})

        calls = []
        for i, (name, args) in enumerate(self.turns.pop(0)):
            arguments = args if isinstance(args, str) else json.dumps(args)
            calls.append(ToolCallRequest(call_id=f"call_{len(self.received)}_{i}", name=name, arguments=arguments))
        message = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": c.call_id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                for c in calls
            ],
        }
        return ReasoningTurn(text="", tool_calls=calls, message=message)


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path() -> Path:
    return SAMPLE_CONFIG


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def reference_png(tmp_path) -> Path:
    path = tmp_path / "reference-1.png"
    path.write_bytes(make_png(120, 170, (240, 240, 240)))
    return path


@pytest.fixture
def project_config(reference_png) -> ProjectConfig:
    return ProjectConfig(
        project_name="Test Template",
        reference_images=[reference_png.name],
        max_turns=6,
    )


@pytest.fixture
def simple_document() -> Document:
    return Document(pages=[Page(body=SIMPLE_BODY)])


@pytest.fixture
def two_page_document() -> Document:
    return Document(pages=[
        Page(body='<div style="flex-direction: column"><span>{{TITLE}}</span></div>'),
        Page(body='<div><span>Page {{pageNumber}} of {{totalPages}}</span></div>'),
    ])


@pytest.fixture
def png_factory():
    return make_png


@pytest.fixture
def scripted_service():
    """Factory: ``scripted_service([[("patch_page", {...})], ...])``."""
    return ScriptedService
