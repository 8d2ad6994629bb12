"""TemplateDesigner agent — proposes and refines pages through tool calls.

The agent never executes tools itself.  Each turn the controller hands it the
full conversation history, the agent answers with text and/or tool calls, and
the controller dispatches those calls and appends the results.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import autogen

from ..config import build_role_llm_config
from ..models import TOOL_CALL_ADAPTER, TOOL_MODELS, ProjectConfig, ReasoningServiceError, ToolCall
from ..prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Turn representation
# ---------------------------------------------------------------------------

@dataclass
class ToolCallRequest:
    """One tool call as emitted by the model, arguments still raw JSON."""
    call_id: str
    name: str
    arguments: str


@dataclass
class ReasoningTurn:
    """Normalized reply of one reasoning-service call."""
    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    message: dict[str, Any] = field(default_factory=dict)


class ReasoningService(Protocol):
    """Anything that can answer a message history with text and tool calls."""

    def respond(self, messages: list[dict[str, Any]]) -> ReasoningTurn: ...


# ---------------------------------------------------------------------------
# Tool schemas and argument parsing
# ---------------------------------------------------------------------------

def tool_schemas() -> list[dict[str, Any]]:
    """OpenAI-style function schemas generated from the tool-call models."""
    schemas = []
    for name, model_cls in TOOL_MODELS.items():
        params = model_cls.model_json_schema()
        params.get("properties", {}).pop("tool", None)
        if "required" in params:
            params["required"] = [r for r in params["required"] if r != "tool"]
        schemas.append({
            "type": "function",
            "function": {
                "name": name,
                "description": (model_cls.__doc__ or name).strip(),
                "parameters": params,
            },
        })
    return schemas


def parse_tool_call(request: ToolCallRequest) -> ToolCall:
    """Validate *request* into one of the tool-call variants.

    Raises:
        ValueError: unknown tool name, non-JSON arguments, or arguments that
            do not match the tool's model (pydantic ``ValidationError``).
    """
    if request.name not in TOOL_MODELS:
        raise ValueError(f"Unknown tool {request.name!r}. Available tools: {', '.join(TOOL_MODELS)}")
    try:
        args = json.loads(request.arguments or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Arguments for {request.name} are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise ValueError(f"Arguments for {request.name} must be a JSON object")
    args["tool"] = request.name
    return TOOL_CALL_ADAPTER.validate_python(args)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return ""


def parse_reply(reply: Any) -> ReasoningTurn:
    """Normalize an AG2 ``generate_reply`` result into a ``ReasoningTurn``."""
    if reply is None:
        raise ReasoningServiceError("The reasoning service returned no reply")
    if isinstance(reply, str):
        return ReasoningTurn(text=reply, message={"role": "assistant", "content": reply})
    if not isinstance(reply, dict):
        raise ReasoningServiceError(f"Unexpected reply type from reasoning service: {type(reply).__name__}")

    text = _content_text(reply.get("content"))
    calls: list[ToolCallRequest] = []
    for i, tc in enumerate(reply.get("tool_calls") or []):
        fn = tc.get("function") or {}
        arguments = fn.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {})
        calls.append(ToolCallRequest(call_id=tc.get("id") or f"call_{i}", name=fn.get("name", ""), arguments=arguments))

    message: dict[str, Any] = {"role": "assistant", "content": text or None}
    if calls:
        message["tool_calls"] = [
            {"id": c.call_id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
            for c in calls
        ]
    return ReasoningTurn(text=text, tool_calls=calls, message=message)


# ---------------------------------------------------------------------------
# Agent factory and service adapter
# ---------------------------------------------------------------------------

def make_template_designer(config: ProjectConfig) -> autogen.AssistantAgent:
    """Create the TemplateDesigner agent with the four tool schemas attached."""
    agent = autogen.AssistantAgent(
        name="TemplateDesigner",
        system_message=SYSTEM_PROMPT,
        llm_config=build_role_llm_config("designer", config),
    )
    for schema in tool_schemas():
        agent.update_tool_signature(schema, is_remove=False)
    return agent


class AutogenReasoningService:
    """``ReasoningService`` backed by an AG2 ``AssistantAgent``."""

    def __init__(self, config: ProjectConfig, agent: autogen.AssistantAgent | None = None) -> None:
        self.agent = agent or make_template_designer(config)

    def respond(self, messages: list[dict[str, Any]]) -> ReasoningTurn:
        try:
            reply = self.agent.generate_reply(messages=messages)
        except Exception as e:
            raise ReasoningServiceError(f"Reasoning service call failed: {e}") from e
        turn = parse_reply(reply)
        logger.debug("Designer reply: %s (%d tool call(s))", turn.text[:200], len(turn.tool_calls))
        return turn
