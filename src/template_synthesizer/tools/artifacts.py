"""Writing run results to disk and reading them back for continuation.

Layout under the output directory::

    result.json                 RunManifest
    history.json                conversation history
    versions/v<N>/page-<i>.png  page rasters of version N
    versions/v<N>/combined.pdf
    final/page-<i>.png          render of the committed document
    final/combined.pdf
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..models import RenderOutput, RenderRecord, RunManifest, SynthesisResult, Version, VersionRecord

logger = logging.getLogger(__name__)

MANIFEST_FILE = "result.json"
HISTORY_FILE = "history.json"


def write_render(out: Path, rel_dir: str, rasters: list[bytes] | tuple[bytes, ...], combined: bytes | None) -> RenderRecord:
    """Write page PNGs and the combined PDF under ``out/rel_dir``; paths in the record are relative to *out*."""
    target = out / rel_dir
    target.mkdir(parents=True, exist_ok=True)
    page_files = []
    for i, raster in enumerate(rasters, start=1):
        rel = f"{rel_dir}/page-{i}.png"
        (out / rel).write_bytes(raster)
        page_files.append(rel)
    combined_file = None
    if combined is not None:
        combined_file = f"{rel_dir}/combined.pdf"
        (out / combined_file).write_bytes(combined)
    return RenderRecord(page_files=page_files, combined_file=combined_file)


def write_result(result: SynthesisResult, output_dir: str | Path, project_name: str = "template-synthesis") -> RunManifest:
    """Persist *result* under *output_dir* and return the manifest written."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    records = []
    for version in result.versions:
        rec = write_render(out, f"versions/v{version.number}", version.page_rasters, version.combined_artifact)
        records.append(VersionRecord(number=version.number, **rec.model_dump()))

    final = None
    if result.final_render is not None:
        final = write_render(out, "final", result.final_render.page_rasters, result.final_render.combined_artifact)

    (out / HISTORY_FILE).write_text(json.dumps(result.history, indent=2), encoding="utf-8")

    manifest = RunManifest(
        project_name=project_name,
        status=result.status,
        success=result.success,
        message=result.message,
        metadata=result.metadata,
        document=result.document,
        versions=records,
        final_render=final,
        history_file=HISTORY_FILE,
        turns_used=result.turns_used,
        version_counter=result.version_counter,
        last_render_succeeded=result.last_render_succeeded,
        last_render_error=result.last_render_error,
    )
    (out / MANIFEST_FILE).write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
    logger.info("Wrote %s (%d version(s))", out / MANIFEST_FILE, len(records))
    return manifest


def _read_render(out: Path, record: RenderRecord) -> tuple[list[bytes], bytes | None]:
    rasters = [(out / rel).read_bytes() for rel in record.page_files]
    combined = (out / record.combined_file).read_bytes() if record.combined_file else None
    return rasters, combined


def load_snapshot(snapshot_dir: str | Path) -> SynthesisResult:
    """Read a directory written by ``write_result`` back into a ``SynthesisResult``.

    Raises:
        FileNotFoundError: if the directory has no ``result.json``.
    """
    out = Path(snapshot_dir)
    manifest_path = out / MANIFEST_FILE
    if not manifest_path.exists():
        raise FileNotFoundError(f"No {MANIFEST_FILE} in snapshot directory: {out}")
    manifest = RunManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))

    versions = []
    for record in manifest.versions:
        rasters, combined = _read_render(out, record)
        versions.append(Version(number=record.number, page_rasters=tuple(rasters), combined_artifact=combined))

    final_render = None
    if manifest.final_render is not None:
        rasters, combined = _read_render(out, manifest.final_render)
        final_render = RenderOutput(page_rasters=rasters, combined_artifact=combined)

    history_path = out / manifest.history_file
    history = json.loads(history_path.read_text(encoding="utf-8")) if history_path.exists() else []

    return SynthesisResult(
        success=manifest.success,
        status=manifest.status,
        message=manifest.message,
        metadata=manifest.metadata,
        document=manifest.document,
        versions=versions,
        final_render=final_render,
        history=history,
        turns_used=manifest.turns_used,
        version_counter=manifest.version_counter,
        last_render_succeeded=manifest.last_render_succeeded,
        last_render_error=manifest.last_render_error,
    )
