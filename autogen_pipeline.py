#!/usr/bin/env python3
"""Compatibility entrypoint for the modular autogen pipeline."""

from __future__ import annotations

import importlib
import sys


def _import_with_fallback(primary: str, fallback: str):
    try:
        return importlib.import_module(primary)
    except ModuleNotFoundError:
        # Fallback for checkouts where this file lives under scripts/
        # and the package is available as scripts/autogen_ci/.
        return importlib.import_module(fallback)


_engine = _import_with_fallback("scripts.autogen_ci.engine", "autogen_ci.engine")
_coordinator = _import_with_fallback("scripts.autogen_ci.coordinator", "autogen_ci.coordinator")
_models = _import_with_fallback("scripts.autogen_ci.models", "autogen_ci.models")
_trigger = _import_with_fallback("scripts.autogen_ci.trigger", "autogen_ci.trigger")

main = _engine.main

group_key = _coordinator.group_key
compose_project_name = _coordinator.compose_project_name

gate_admits = _trigger.gate_admits
event_from_payload = _trigger.event_from_payload
manual_event = _trigger.manual_event

TriggerEvent = _models.TriggerEvent
PipelineRun = _models.PipelineRun
Stage = _models.Stage
StageResult = _models.StageResult


__all__ = [
    "PipelineRun",
    "Stage",
    "StageResult",
    "TriggerEvent",
    "compose_project_name",
    "event_from_payload",
    "gate_admits",
    "group_key",
    "main",
    "manual_event",
]


if __name__ == "__main__":
    sys.exit(main())
