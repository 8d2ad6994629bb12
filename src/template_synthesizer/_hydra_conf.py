"""Hydra structured config dataclasses.

These mirror the Pydantic ``ProjectConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ProjectConfig`` via
``cli._to_project_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from hydra.core.config_store import ConfigStore

from .models import DEFAULT_ASSET_SUFFIXES


@dataclass
class AzureConf:
    api_key: str = "${oc.env:AZURE_OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:AZURE_OPENAI_API_VERSION,''}"
    endpoint: str = "${oc.env:AZURE_OPENAI_ENDPOINT,''}"


@dataclass
class ModelEndpointOverrideConf:
    endpoint: str = ""
    api_key: str | None = None
    api_version: str | None = None
    api_type: str | None = None


@dataclass
class ModelConf:
    default: str = "gpt-5.2"
    designer: str | None = None
    overrides: dict[str, ModelEndpointOverrideConf] = field(default_factory=dict)


@dataclass
class SynthConf:
    # --- Dispatch + CLI-only fields ---
    mode: str = "run"                     # run | validate | render
    verbose: bool = False
    quiet: bool = False
    show_reasoning: bool = False
    document_file: str | None = None
    metadata_file: str | None = None

    # --- ProjectConfig fields (1:1 mapping) ---
    project_name: str = "template-synthesis"
    reference_images: list[str] = field(default_factory=list)
    instruction: str = ""
    feedback: str = ""
    resume_from: str | None = None
    output_dir: str = "output/"

    max_turns: int = 15
    max_versions: int | None = None
    default_page_size: str = "A4"

    image_max_dimension: int = 1568
    image_max_bytes: int = 3_500_000
    render_scale: float = 1.0
    render_timeout: int = 60
    asset_suffixes: list[str] = field(default_factory=lambda: list(DEFAULT_ASSET_SUFFIXES))

    azure: AzureConf = field(default_factory=AzureConf)
    models: ModelConf = field(default_factory=ModelConf)

    timeout: int = 120
    seed: int = 42


# Keys present in SynthConf that are NOT part of ProjectConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "verbose", "quiet", "show_reasoning", "document_file", "metadata_file",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="synth_schema", node=SynthConf)
