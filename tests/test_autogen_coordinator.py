from __future__ import annotations

import threading
import time
import unittest

from autogen_pipeline import PipelineRun, TriggerEvent, compose_project_name, group_key
from scripts.autogen_ci.coordinator import ConcurrencyCoordinator, GroupSlot


class StubEvents:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict[str, object]]] = []

    def emit(self, event_type: str, message: str, **extra: object) -> None:
        self.rows.append((event_type, message, extra))


def pr_event(number: int = 5) -> TriggerEvent:
    return TriggerEvent(
        kind="pull_request",
        ref=f"refs/pull/{number}/merge",
        action="labeled",
        labels=frozenset({"allow-autogen"}),
        head_ref="feature",
        pr_number=number,
    )


def make_run(run_id: str, event: TriggerEvent) -> PipelineRun:
    return PipelineRun(run_id=run_id, group_key=group_key(event), event=event)


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class GroupKeyTests(unittest.TestCase):
    def test_group_key_is_deterministic(self) -> None:
        self.assertEqual(group_key(pr_event(5)), group_key(pr_event(5)))
        self.assertEqual(group_key(pr_event(5)), "Autogen-refs/pull/5/merge-5")

    def test_group_key_differs_per_pull_request(self) -> None:
        self.assertNotEqual(group_key(pr_event(5)), group_key(pr_event(6)))

    def test_manual_group_key_has_empty_pr_suffix(self) -> None:
        event = TriggerEvent(kind="manual", ref="refs/heads/main")
        self.assertEqual(group_key(event), "Autogen-refs/heads/main-")

    def test_compose_project_name_is_sanitized(self) -> None:
        self.assertEqual(
            compose_project_name("Autogen-refs/pull/5/merge-5"),
            "autogen-refs-pull-5-merge-5",
        )
        self.assertEqual(compose_project_name("///"), "autogen")


class ConcurrencyCoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.groups: dict[str, GroupSlot] = {}
        self.events = StubEvents()
        self.coordinator = ConcurrencyCoordinator(self.groups, events=self.events)  # type: ignore[arg-type]

    def test_acquire_without_previous_run_returns_immediately(self) -> None:
        run = make_run("A", pr_event())
        slot = self.coordinator.acquire(run)
        self.assertIs(self.groups[run.group_key], slot)
        self.assertFalse(slot.cancel.is_set())
        self.coordinator.release(slot)
        self.assertNotIn(run.group_key, self.groups)

    def test_newer_run_cancels_older_and_waits_for_its_release(self) -> None:
        run_a = make_run("A", pr_event())
        run_b = make_run("B", pr_event())
        slot_a = self.coordinator.acquire(run_a)
        run_a.transition("running")

        acquired: list[GroupSlot] = []
        thread = threading.Thread(target=lambda: acquired.append(self.coordinator.acquire(run_b)))
        thread.start()

        self.assertTrue(wait_until(slot_a.cancel.is_set))
        self.assertEqual(run_a.status, "cancelled")
        # B must not be able to start while A still holds the slot.
        time.sleep(0.05)
        self.assertEqual(acquired, [])
        self.assertEqual(run_b.status, "pending")

        self.coordinator.release(slot_a)
        thread.join(timeout=5)
        self.assertFalse(thread.is_alive())
        self.assertIs(self.groups[run_b.group_key], acquired[0])
        self.assertEqual(self.events.rows[0][0], "run_preempted")

    def test_distinct_groups_do_not_preempt_each_other(self) -> None:
        slot_a = self.coordinator.acquire(make_run("A", pr_event(1)))
        slot_b = self.coordinator.acquire(make_run("B", pr_event(2)))
        self.assertFalse(slot_a.cancel.is_set())
        self.assertFalse(slot_b.cancel.is_set())
        self.assertEqual(len(self.groups), 2)

    def test_release_of_superseded_slot_keeps_newer_slot(self) -> None:
        run_a = make_run("A", pr_event())
        run_b = make_run("B", pr_event())
        slot_a = self.coordinator.acquire(run_a)
        thread = threading.Thread(target=self.coordinator.acquire, args=(run_b,))
        thread.start()
        self.assertTrue(wait_until(slot_a.cancel.is_set))
        self.coordinator.release(slot_a)
        thread.join(timeout=5)
        self.assertIs(self.groups[run_a.group_key].run, run_b)

    def test_run_superseded_while_waiting_never_starts(self) -> None:
        run_a = make_run("A", pr_event())
        run_b = make_run("B", pr_event())
        run_c = make_run("C", pr_event())
        slot_a = self.coordinator.acquire(run_a)
        b_slots: list[GroupSlot] = []
        c_slots: list[GroupSlot] = []

        def waiter_b() -> None:
            slot = self.coordinator.acquire(run_b)
            b_slots.append(slot)
            self.coordinator.release(slot)

        thread_b = threading.Thread(target=waiter_b)
        thread_b.start()
        self.assertTrue(wait_until(slot_a.cancel.is_set))
        self.assertTrue(wait_until(lambda: self.groups[run_a.group_key].run is run_b))

        thread_c = threading.Thread(target=lambda: c_slots.append(self.coordinator.acquire(run_c)))
        thread_c.start()
        self.assertTrue(wait_until(lambda: run_b.status == "cancelled"))

        self.coordinator.release(slot_a)
        thread_b.join(timeout=5)
        thread_c.join(timeout=5)
        self.assertTrue(b_slots[0].cancel.is_set())
        self.assertEqual(run_c.status, "pending")
        self.assertIs(self.groups[run_c.group_key], c_slots[0])

    def test_cancelled_run_is_not_overwritten_by_later_transition(self) -> None:
        run = make_run("A", pr_event())
        self.assertTrue(run.transition("cancelled"))
        self.assertFalse(run.transition("succeeded"))
        self.assertEqual(run.status, "cancelled")

    def test_cancel_all_signals_every_slot(self) -> None:
        slot_a = self.coordinator.acquire(make_run("A", pr_event(1)))
        slot_b = self.coordinator.acquire(make_run("B", pr_event(2)))
        self.coordinator.cancel_all()
        self.assertTrue(slot_a.cancel.is_set())
        self.assertTrue(slot_b.cancel.is_set())


if __name__ == "__main__":
    unittest.main()
