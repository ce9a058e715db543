"""Wake the dedicated build host through the EC2 control plane.

The host moves through ``asleep -> waking -> ready`` or ends in
``unreachable``. Polling waits on the owning run's cancellation event, so a
superseded run stops waiting immediately.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import RunCancelled, RunnerUnavailable
from .models import RemoteRunnerHandle, RunnerCredentials
from .state import safe_error_text

if TYPE_CHECKING:
    from .state import EventSink

DEFAULT_WAKE_TIMEOUT_SECONDS = 600


def make_ec2_client(credentials: RunnerCredentials) -> Any:
    return boto3.client(
        "ec2",
        region_name=credentials.region,
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
    )


def classify_instance_status(status: Optional[dict[str, Any]]) -> str:
    if not status:
        return "unreachable"
    state_name = str((status.get("InstanceState") or {}).get("Name") or "")
    if state_name in {"stopped", "stopping"}:
        return "asleep"
    if state_name == "pending":
        return "waking"
    if state_name == "running":
        instance_ok = (status.get("InstanceStatus") or {}).get("Status") == "ok"
        system_ok = (status.get("SystemStatus") or {}).get("Status") == "ok"
        return "ready" if instance_ok and system_ok else "waking"
    return "unreachable"


class RemoteRunnerWaker:
    def __init__(
        self,
        *,
        client: Any,
        events: EventSink,
        timeout_seconds: int = DEFAULT_WAKE_TIMEOUT_SECONDS,
        poll_interval_seconds: float = 10.0,
        stop_on_unavailable: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.events = events
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.stop_on_unavailable = stop_on_unavailable
        self.clock = clock

    def probe(self, handle: RemoteRunnerHandle) -> tuple[str, Optional[str]]:
        """Return the raw EC2 state name and the derived lifecycle state."""
        response = self.client.describe_instance_status(
            InstanceIds=[handle.instance_id],
            IncludeAllInstances=True,
        )
        statuses = response.get("InstanceStatuses") or []
        status = statuses[0] if statuses else None
        raw = str(((status or {}).get("InstanceState") or {}).get("Name") or "") or None
        return classify_instance_status(status), raw

    def _start(self, handle: RemoteRunnerHandle) -> None:
        self.client.start_instances(InstanceIds=[handle.instance_id])
        handle.started_by_waker = True
        handle.state = "waking"
        self.events.emit(
            "runner_waking",
            f"start requested for runner {handle.instance_id}.",
            instance_id=handle.instance_id,
        )

    def _give_up(self, handle: RemoteRunnerHandle, reason: str) -> RunnerUnavailable:
        handle.state = "unreachable"
        if self.stop_on_unavailable and handle.started_by_waker:
            try:
                self.client.stop_instances(InstanceIds=[handle.instance_id])
                self.events.emit(
                    "runner_stopped",
                    f"stopped runner {handle.instance_id} after failed wake.",
                    instance_id=handle.instance_id,
                )
            except (BotoCoreError, ClientError) as exc:
                self.events.emit(
                    "runner_stop_warning",
                    f"could not stop runner {handle.instance_id}: {safe_error_text(exc)}",
                    instance_id=handle.instance_id,
                )
        self.events.emit(
            "runner_unavailable",
            f"runner {handle.instance_id} unavailable: {reason}",
            instance_id=handle.instance_id,
        )
        return RunnerUnavailable(reason)

    def ensure_ready(
        self,
        handle: RemoteRunnerHandle,
        cancel: Optional[threading.Event] = None,
    ) -> RemoteRunnerHandle:
        if handle.state == "ready":
            return handle
        deadline = self.clock() + self.timeout_seconds
        last_error: Optional[str] = None
        announced: Optional[str] = None

        while True:
            if cancel is not None and cancel.is_set():
                raise RunCancelled(f"wake of runner {handle.instance_id} cancelled")
            try:
                state, raw = self.probe(handle)
                last_error = None
            except (BotoCoreError, ClientError) as exc:
                state, raw = handle.state, None
                last_error = safe_error_text(exc)

            if last_error is None:
                if state == "ready":
                    handle.state = "ready"
                    self.events.emit(
                        "runner_ready",
                        f"runner {handle.instance_id} is ready.",
                        instance_id=handle.instance_id,
                    )
                    return handle
                if state == "unreachable":
                    raise self._give_up(handle, f"instance state is '{raw or 'unknown'}'")
                if state == "asleep" and raw == "stopped":
                    try:
                        self._start(handle)
                    except (BotoCoreError, ClientError) as exc:
                        raise self._give_up(handle, f"start failed: {safe_error_text(exc)}") from exc
                elif state == "waking":
                    handle.state = "waking"
                if announced != raw:
                    announced = raw
                    self.events.emit(
                        "runner_state",
                        f"runner {handle.instance_id} state={raw} ({handle.state}).",
                        instance_id=handle.instance_id,
                        raw_state=raw,
                        state=handle.state,
                    )

            remaining = deadline - self.clock()
            if remaining <= 0:
                reason = f"not ready after {self.timeout_seconds}s"
                if last_error:
                    reason = f"{reason}; last error: {last_error}"
                raise self._give_up(handle, reason)

            wait_for = min(self.poll_interval_seconds, remaining)
            if cancel is not None:
                cancel.wait(wait_for)
            else:
                time.sleep(wait_for)
