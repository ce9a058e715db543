from __future__ import annotations

import json
from pathlib import Path
from typing import Optional


def compact_text(value: Optional[str], max_chars: int = 220) -> str:
    if not value:
        return ""
    collapsed = " ".join(value.split())
    if len(collapsed) <= max_chars:
        return collapsed
    return collapsed[: max_chars - 3] + "..."


def render_state_report(state_path: Path) -> str:
    if not state_path.exists():
        return f"state file not found: {state_path}"

    payload = json.loads(state_path.read_text(encoding="utf-8"))
    summary = payload.get("summary", {})
    updated = payload.get("updated_at", "unknown")
    runs = payload.get("runs", [])
    if not isinstance(runs, list):
        runs = []

    run_rows: list[str] = []
    failed_rows: list[str] = []
    for item in runs:
        if not isinstance(item, dict):
            continue
        run_id = str(item.get("id", "unknown"))
        status = str(item.get("status", "unknown"))
        group = str(item.get("group", ""))
        stages = item.get("stages") or []
        stage_count = len(stages) if isinstance(stages, list) else 0
        sha = item.get("commit_sha")
        suffix = f" commit={str(sha)[:12]}" if sha else ""
        run_rows.append(f"- {run_id} [{status}] group={group} stages={stage_count}{suffix}")

        if status == "failed":
            where = item.get("failed_stage") or item.get("failure_kind") or "unknown"
            cause = item.get("failure_cause")
            detail = compact_text(item.get("error")) or "(no error recorded)"
            cause_text = f" cause={cause}" if cause else ""
            failed_rows.append(f"- {run_id} at {where}{cause_text}: {detail}")

    lines: list[str] = []
    lines.append(f"state: {state_path}")
    lines.append(f"updated_at: {updated}")
    lines.append(
        "summary: "
        f"pending={summary.get('pending', 0)} "
        f"running={summary.get('running', 0)} "
        f"succeeded={summary.get('succeeded', 0)} "
        f"failed={summary.get('failed', 0)} "
        f"cancelled={summary.get('cancelled', 0)}"
    )
    lines.append("")
    lines.append("runs:")
    if run_rows:
        lines.extend(run_rows[-20:])
        if len(run_rows) > 20:
            lines.append(f"- ... {len(run_rows) - 20} earlier")
    else:
        lines.append("- none")
    lines.append("")
    lines.append("failures:")
    if failed_rows:
        lines.extend(failed_rows[-20:])
    else:
        lines.append("- none")
    return "\n".join(lines)
