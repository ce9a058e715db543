from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from .models import TriggerEvent

ADMITTED_PR_ACTIONS = {"synchronize", "opened", "reopened", "labeled"}
ACTION_ALIASES = {"synchronized": "synchronize"}


def normalize_action(action: Optional[str]) -> Optional[str]:
    if action is None:
        return None
    raw = action.strip().lower()
    return ACTION_ALIASES.get(raw, raw)


def gate_admits(event: TriggerEvent, allow_label: str = "allow-autogen") -> bool:
    if event.kind == "manual":
        return True
    if event.kind != "pull_request":
        return False
    if normalize_action(event.action) not in ADMITTED_PR_ACTIONS:
        return False
    return allow_label in event.labels


def strip_heads(ref: str) -> str:
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def manual_event(ref: str, *, workflow: str = "Autogen") -> TriggerEvent:
    return TriggerEvent(
        kind="manual",
        ref=ref,
        workflow=workflow,
        head_ref=strip_heads(ref),
    )


def event_from_payload(event_name: str, payload: dict[str, Any], *, workflow: str = "Autogen") -> TriggerEvent:
    name = event_name.strip().lower()
    if name in {"workflow_dispatch", "manual"}:
        ref = str(payload.get("ref") or "refs/heads/main")
        return manual_event(ref, workflow=workflow)

    if name != "pull_request":
        return TriggerEvent(kind="other", ref=str(payload.get("ref") or ""), workflow=workflow)

    pull_request = payload.get("pull_request")
    if not isinstance(pull_request, dict):
        raise ValueError("pull_request event payload is missing 'pull_request'.")
    raw_number = pull_request.get("number", payload.get("number"))
    if not isinstance(raw_number, int):
        raise ValueError("pull_request event payload is missing a numeric 'number'.")
    labels = pull_request.get("labels") or []
    label_names = frozenset(
        str(label.get("name"))
        for label in labels
        if isinstance(label, dict) and label.get("name")
    )
    head = pull_request.get("head") or {}
    head_ref = head.get("ref") if isinstance(head, dict) else None
    return TriggerEvent(
        kind="pull_request",
        ref=f"refs/pull/{raw_number}/merge",
        workflow=workflow,
        action=normalize_action(str(payload.get("action") or "")) or None,
        labels=label_names,
        head_ref=str(head_ref) if head_ref else None,
        pr_number=raw_number,
    )


def load_event(event_name: str, event_path: Path, *, workflow: str = "Autogen") -> TriggerEvent:
    payload = json.loads(event_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid event payload: {event_path}")
    return event_from_payload(event_name, payload, workflow=workflow)


def load_inbox_event(path: Path, *, workflow: str = "Autogen") -> TriggerEvent:
    """Read an inbox file of the form ``{"event_name": ..., "payload": {...}}``."""
    envelope = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(envelope, dict) or "event_name" not in envelope:
        raise ValueError(f"Invalid inbox event file: {path}")
    payload = envelope.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid inbox event payload: {path}")
    return event_from_payload(str(envelope["event_name"]), payload, workflow=workflow)
