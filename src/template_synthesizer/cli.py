"""CLI entry point using Hydra.

Usage examples:
  tsynth --config-dir examples/invoice --config-name config mode=run
  tsynth --config-dir examples/invoice --config-name config mode=run resume_from=output/ feedback="Larger logo"
  tsynth mode=validate document_file=output/document.json
  tsynth mode=render document_file=document.json metadata_file=metadata.json output_dir=preview/
"""

from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf
from pydantic import ValidationError

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_azure_fallbacks
from .logging_config import RichCallbacks, console, setup_logging
from .models import Document, ProjectConfig, SynthesisError, TemplateMetadata

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → Pydantic ProjectConfig bridge
# ---------------------------------------------------------------------------


def _to_project_config(cfg: DictConfig) -> ProjectConfig:
    """Convert a Hydra *DictConfig* to a Pydantic ``ProjectConfig``.

    CLI-only keys (``mode``, ``verbose``, etc.) are stripped before validation.
    Azure credential env-var fallbacks are applied afterwards.
    """
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ProjectConfig.model_validate(container)
    return apply_azure_fallbacks(config)


def _get_config_dir() -> Path:
    """Extract ``--config-dir`` from *sys.argv* (before Hydra consumes it).

    Falls back to the current working directory.
    """
    for i, arg in enumerate(sys.argv):
        if arg == "--config-dir" and i + 1 < len(sys.argv):
            return Path(sys.argv[i + 1])
        if arg.startswith("--config-dir="):
            return Path(arg.split("=", 1)[1])
    return Path.cwd()


def _resolve(path: str, base: Path) -> Path:
    p = Path(path)
    return p if p.is_absolute() else base / p


def _load_document(path: str) -> Document:
    """Read a ``Document`` JSON file, exiting with a message when it is missing or malformed."""
    p = Path(path)
    if not p.exists():
        console.print(f"[red]Document file not found: {p}[/]")
        sys.exit(1)
    raw = json.loads(p.read_text(encoding="utf-8"))
    # A run's result.json carries the document under "document"
    if isinstance(raw, dict) and "pages" not in raw and "document" in raw:
        raw = raw["document"]
    try:
        return Document.model_validate(raw)
    except ValidationError as e:
        console.print(f"[red]Invalid document file {p}:[/]\n{e}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _run_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    config_dir = _get_config_dir()

    from .controller import Synthesizer
    from .state import RunState
    from .tools.artifacts import load_snapshot, write_result

    state = None
    if config.resume_from:
        snapshot = _resolve(config.resume_from, config_dir)
        prior = load_snapshot(snapshot)
        state = RunState.from_result(prior, max_versions=config.max_versions)
        console.print(f"[bold]Continuing from {snapshot} ({len(prior.versions)} version(s))...[/]")
    else:
        console.print("[bold]Starting template synthesis...[/]")

    callbacks = RichCallbacks(show_reasoning=cfg.get("show_reasoning", False))
    synthesizer = Synthesizer(config, callbacks=callbacks, state=state, config_dir=config_dir)
    result = synthesizer.run()

    output_dir = _resolve(config.output_dir, config_dir)
    write_result(result, output_dir, project_name=config.project_name)

    if result.success:
        console.print("\n[bold green]Template completed![/]")
        if result.metadata:
            console.print(f"  Template: {result.metadata.id} ({result.metadata.name})")
            console.print(f"  Fields: {len(result.metadata.fields)}, asset slots: {len(result.metadata.asset_slots)}")
        console.print(f"  Versions: {len(result.versions)}")
        console.print(f"  Output: {output_dir}")
    else:
        console.print(f"\n[bold red]Synthesis {result.status.value}.[/]")
        console.print(f"  [red]{result.message}[/]", markup=False)
        console.print(f"  Output: {output_dir}")
        sys.exit(1)


def _validate_mode(cfg: DictConfig) -> None:
    from .tools.markup_validator import validate_document

    document_file = cfg.get("document_file")
    if not document_file:
        console.print("[red]document_file is required for validate mode[/]")
        sys.exit(1)

    document = _load_document(document_file)
    issues = validate_document(document)
    if not issues:
        console.print(f"[green]Valid: {len(document.pages)} page(s), no issues.[/]")
        return

    console.print(f"[red]Validation failed ({len(issues)} issue(s)):[/]")
    for issue in issues:
        console.print(f"  {issue}", markup=False)
    sys.exit(1)


def _render_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)

    from .tools.artifacts import write_render
    from .tools.markup_validator import validate_document
    from .tools.renderer import PlaywrightEngine, render_document

    document_file = cfg.get("document_file")
    if not document_file:
        console.print("[red]document_file is required for render mode[/]")
        sys.exit(1)

    document = _load_document(document_file)
    issues = validate_document(document)
    if issues:
        console.print(f"[red]Validation failed ({len(issues)} issue(s)); nothing was rendered:[/]")
        for issue in issues:
            console.print(f"  {issue}", markup=False)
        sys.exit(1)

    metadata = None
    metadata_file = cfg.get("metadata_file")
    if metadata_file:
        metadata = TemplateMetadata.model_validate_json(Path(metadata_file).read_text(encoding="utf-8"))

    engine = PlaywrightEngine(timeout=config.render_timeout)
    try:
        output = render_document(
            document,
            metadata,
            engine,
            run_date=date.today(),
            scale=config.render_scale,
            suffixes=config.asset_suffixes,
        )
    except SynthesisError as e:
        console.print("[red]Render failed:[/]")
        console.print(str(e), markup=False)
        sys.exit(1)

    out = Path(config.output_dir)
    record = write_render(out, "render", output.page_rasters, output.combined_artifact)
    console.print(f"[green]Rendered {len(record.page_files)} page(s) to {out / 'render'}[/]")


_MODE_DISPATCH: dict[str, Any] = {
    "run": _run_mode,
    "validate": _validate_mode,
    "render": _render_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "run")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
