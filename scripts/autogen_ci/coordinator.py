from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .models import PipelineRun, TriggerEvent

if TYPE_CHECKING:
    from .state import EventSink


def group_key(event: TriggerEvent) -> str:
    pr = "" if event.pr_number is None else str(event.pr_number)
    return f"{event.workflow}-{event.ref}-{pr}"


def compose_project_name(key: str) -> str:
    lowered = key.lower()
    lowered = re.sub(r"[^a-z0-9_-]+", "-", lowered)
    lowered = lowered.strip("-_")
    return lowered or "autogen"


@dataclass
class GroupSlot:
    run: PipelineRun
    cancel: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


class ConcurrencyCoordinator:
    """Serializes runs per concurrency group; a newer run preempts the older one.

    ``groups`` maps a group key to the slot of the newest run in that group.
    The caller owns the map so several coordinators (or tests) can share or
    inspect it.
    """

    def __init__(self, groups: dict[str, GroupSlot], *, events: EventSink) -> None:
        self.groups = groups
        self.events = events
        self._lock = threading.Lock()

    def acquire(self, run: PipelineRun) -> GroupSlot:
        slot = GroupSlot(run=run)
        with self._lock:
            previous = self.groups.get(run.group_key)
            self.groups[run.group_key] = slot

        if previous is not None and not previous.done.is_set():
            previous.cancel.set()
            previous.run.transition("cancelled")
            self.events.emit(
                "run_preempted",
                f"{previous.run.run_id} superseded by {run.run_id} in group {run.group_key}.",
                run_id=previous.run.run_id,
                superseded_by=run.run_id,
                group=run.group_key,
            )
            # The older run finishes its own cleanup before the slot is handed over.
            previous.done.wait()
        return slot

    def release(self, slot: GroupSlot) -> None:
        slot.done.set()
        with self._lock:
            if self.groups.get(slot.run.group_key) is slot:
                del self.groups[slot.run.group_key]

    def cancel_all(self) -> list[GroupSlot]:
        with self._lock:
            slots = list(self.groups.values())
        for slot in slots:
            slot.cancel.set()
            slot.run.transition("cancelled")
        return slots
