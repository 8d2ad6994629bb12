"""Configuration loader and LLM config builder.

Reads project settings from a YAML config file with ``${ENV_VAR}``
interpolation and turns the model settings into AG2 ``llm_config`` dicts.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import AzureConfig, ModelEndpointOverride, ProjectConfig

load_dotenv()

# ---------------------------------------------------------------------------
# YAML loading with ${ENV_VAR} interpolation
# ---------------------------------------------------------------------------

_ENV_RE = re.compile(r"\$\{([^}]+)\}")


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${ENV_VAR}`` references in strings."""
    if isinstance(value, str):
        return _ENV_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


def apply_azure_fallbacks(config: ProjectConfig) -> ProjectConfig:
    """Fill empty azure credentials from ``AZURE_OPENAI_*`` and strip the endpoint's trailing slash."""
    if not config.azure.api_key:
        config.azure.api_key = os.getenv("AZURE_OPENAI_API_KEY", "")
    if not config.azure.api_version:
        config.azure.api_version = os.getenv("AZURE_OPENAI_API_VERSION", "")
    if not config.azure.endpoint:
        config.azure.endpoint = os.getenv("AZURE_OPENAI_ENDPOINT", "")
    config.azure.endpoint = config.azure.endpoint.rstrip("/")
    return config


def load_config(config_path: str | Path) -> ProjectConfig:
    """Load a ``ProjectConfig`` from a YAML file.

    Relative ``reference_images``, ``output_dir`` and ``resume_from`` paths
    are kept as written; callers resolve them against the config directory.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    config = ProjectConfig.model_validate(_resolve_env_vars(raw))
    return apply_azure_fallbacks(config)


# ---------------------------------------------------------------------------
# LLM config builder
# ---------------------------------------------------------------------------

def _is_azure_openai_endpoint(endpoint: str) -> bool:
    """Return True for Azure OpenAI endpoints, False for Azure AI Model Inference."""
    lower = endpoint.lower()
    return "openai.azure.com" in lower or "cognitiveservices.azure.com" in lower


def _build_single_entry(
    model: str,
    azure: AzureConfig,
    override: ModelEndpointOverride | None = None,
) -> dict[str, Any]:
    """Build one AG2 ``config_list`` entry for *model*.

    An override with ``api_type`` is used as-is with its endpoint as
    ``base_url``.  Azure OpenAI endpoints get deployment-based routing;
    any other endpoint is treated as OpenAI-compatible.
    """
    api_key = azure.api_key
    api_version = azure.api_version
    endpoint = azure.endpoint
    forced_api_type: str | None = None

    if override:
        endpoint = override.endpoint.rstrip("/")
        api_key = override.api_key or api_key
        api_version = override.api_version or api_version
        forced_api_type = override.api_type

    entry: dict[str, Any] = {"model": model, "api_key": api_key}

    if forced_api_type:
        entry["api_type"] = forced_api_type
        if endpoint:
            entry["base_url"] = endpoint
    elif endpoint and _is_azure_openai_endpoint(endpoint):
        entry.update({
            "api_type": "azure",
            "azure_endpoint": endpoint,
            "api_version": api_version,
            "azure_deployment": model,
        })
    elif endpoint:
        entry["base_url"] = endpoint
    return entry


def build_role_llm_config(role: str, config: ProjectConfig) -> dict[str, Any]:
    """Return an AG2 ``llm_config`` dict for *role*.

    ``designer`` maps to ``models.designer``; unknown roles and unset role
    models fall back to ``models.default``.  A matching entry in
    ``models.overrides`` takes precedence over ``config.azure``.
    """
    models = config.models
    role_map: dict[str, str | None] = {
        "designer": models.designer,
        "template_designer": models.designer,
    }
    chosen = role_map.get(role.lower()) or models.default
    entry = _build_single_entry(chosen, config.azure, override=models.overrides.get(chosen))
    return {
        "config_list": [entry],
        "timeout": config.timeout,
        "seed": config.seed,
    }
