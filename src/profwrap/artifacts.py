"""
On-disk layout of one output directory.

Each enabled collector writes one artifact named after its kind. After the run
the directory also gets a `profwrap-manifest.json` (validated against the packaged
JSON schema) and a human-readable `PROFWRAP.md`. Files the tool does not own,
such as a project `README.md` in the same directory, are never touched.
"""

from __future__ import annotations

import hashlib
import json
import logging
import platform
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

from .model import ARTIFACT_NAMES, DESCRIPTIONS, KINDS, CollectionPlan, RunOutcome

logger = logging.getLogger(__name__)

MANIFEST_NAME = "profwrap-manifest.json"
README_NAME = "PROFWRAP.md"
SCHEMA_VERSION = "1.0.0"

_OWNED_NAMES = {*ARTIFACT_NAMES.values(), MANIFEST_NAME, README_NAME}


def utc_now_iso() -> str:
    """Return the current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def clean_stale_artifacts(output_dir: Path) -> list[Path]:
    """Delete artifacts left by a previous run so readers never mix runs.

    Only files this tool writes are touched. Returns the removed paths.
    """
    removed: list[Path] = []
    for name in sorted(_OWNED_NAMES):
        p = output_dir / name
        if not p.is_file():
            continue
        try:
            p.unlink()
        except OSError as e:
            logger.warning("Cannot delete stale artifact %s: %s", p, e)
            continue
        removed.append(p)
    if removed:
        logger.info("Removed %d stale artifact(s) from %s", len(removed), output_dir)
    return removed


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def _artifact_entries(plan: CollectionPlan) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for kind in plan.enabled_in_order(KINDS):
        p = plan.artifact_path(kind)
        if not p.is_file():
            continue
        entries.append({"kind": kind, "file": p.name, "bytes": p.stat().st_size, "sha256": sha256_file(p)})
    return entries


def build_manifest(plan: CollectionPlan, outcome: RunOutcome) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "tool": "profwrap",
        "timestamp_utc": utc_now_iso(),
        "host": {
            "platform": platform.platform(),
            "machine": platform.machine(),
            "python": platform.python_version(),
        },
        "plan": plan.to_dict(),
        "run": outcome.to_dict(),
        "artifacts": _artifact_entries(plan),
    }


def default_schema_path() -> Path:
    return Path(__file__).resolve().parent / "schemas" / "manifest.schema.json"


def validate_manifest(manifest: dict[str, Any], *, schema_path: Path | None = None) -> None:
    schema_path = default_schema_path() if schema_path is None else schema_path
    schema = json.loads(schema_path.read_text())
    Draft202012Validator(schema).validate(manifest)


def write_json(path: Path, obj: Any) -> None:
    """Write JSON with stable formatting (indent + sorted keys)."""
    path.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n")


def write_readme(output_dir: Path, manifest: dict[str, Any]) -> Path:
    run = manifest["run"]
    md = MdUtils(file_name=str((output_dir / README_NAME).with_suffix("")), title="Profiling Artifacts")
    md.new_paragraph("This directory contains profiles collected while supervising one program run.")
    md.new_header(level=1, title="Command")
    md.new_paragraph(f"`{' '.join(run['command'])}`")
    md.new_paragraph(f"Exit code: {run['exit_code']}")
    md.new_header(level=1, title="Outputs")
    outputs = [f"`{a['file']}`: {DESCRIPTIONS[a['kind']]}" for a in manifest["artifacts"]]
    outputs.append(f"`{MANIFEST_NAME}`: run metadata and per-collector results")
    md.new_list(outputs)
    failures = [r for r in run["results"] if not r["ok"]]
    if failures:
        md.new_header(level=1, title="Collector failures")
        md.new_list([f"{r['kind']} ({r['operation']}): {r['error']}" for r in failures])
    md.create_md_file()
    return output_dir / README_NAME


def write_run_report(plan: CollectionPlan, outcome: RunOutcome) -> Path | None:
    """Write manifest + README for an enabled plan. Problems are logged, not raised."""
    if plan.output_dir is None or not plan.enabled:
        return None
    manifest_path = plan.output_dir / MANIFEST_NAME
    try:
        manifest = build_manifest(plan, outcome)
        validate_manifest(manifest)
        write_json(manifest_path, manifest)
        write_readme(plan.output_dir, manifest)
    except Exception as e:
        logger.warning("Failed to write run report in %s: %s", plan.output_dir, e)
        return None
    return manifest_path
