from __future__ import annotations

import itertools
import threading
import unittest
from typing import Any
from unittest import mock

from botocore.exceptions import ClientError

from scripts.autogen_ci.config import load_credentials
from scripts.autogen_ci.errors import RunCancelled, RunnerUnavailable
from scripts.autogen_ci.models import RemoteRunnerHandle, RunnerCredentials
from scripts.autogen_ci.runner_waker import (
    RemoteRunnerWaker,
    classify_instance_status,
    make_ec2_client,
)


class StubEvents:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict[str, object]]] = []

    def emit(self, event_type: str, message: str, **extra: object) -> None:
        self.rows.append((event_type, message, extra))


def status(name: str, instance: str = "ok", system: str = "ok") -> dict[str, Any]:
    return {
        "InstanceStatuses": [
            {
                "InstanceId": "i-0abc",
                "InstanceState": {"Name": name},
                "InstanceStatus": {"Status": instance},
                "SystemStatus": {"Status": system},
            }
        ]
    }


class FakeEC2:
    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.start_calls = 0
        self.stop_calls = 0

    def describe_instance_status(self, **kwargs: Any) -> dict[str, Any]:
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def start_instances(self, **kwargs: Any) -> dict[str, Any]:
        self.start_calls += 1
        return {}

    def stop_instances(self, **kwargs: Any) -> dict[str, Any]:
        self.stop_calls += 1
        return {}


def make_waker(client: FakeEC2, *, stop_on_unavailable: bool = False) -> RemoteRunnerWaker:
    ticks = itertools.count(0, 100)
    return RemoteRunnerWaker(
        client=client,
        events=StubEvents(),  # type: ignore[arg-type]
        timeout_seconds=600,
        poll_interval_seconds=0,
        stop_on_unavailable=stop_on_unavailable,
        clock=lambda: float(next(ticks)),
    )


class ClassifyInstanceStatusTests(unittest.TestCase):
    def test_lifecycle_states(self) -> None:
        self.assertEqual(classify_instance_status(status("stopped")["InstanceStatuses"][0]), "asleep")
        self.assertEqual(classify_instance_status(status("pending")["InstanceStatuses"][0]), "waking")
        self.assertEqual(
            classify_instance_status(status("running", instance="initializing")["InstanceStatuses"][0]),
            "waking",
        )
        self.assertEqual(classify_instance_status(status("running")["InstanceStatuses"][0]), "ready")
        self.assertEqual(classify_instance_status(status("terminated")["InstanceStatuses"][0]), "unreachable")
        self.assertEqual(classify_instance_status(None), "unreachable")


class RemoteRunnerWakerTests(unittest.TestCase):
    def test_ready_host_is_a_noop(self) -> None:
        client = FakeEC2([status("running")])
        handle = make_waker(client).ensure_ready(RemoteRunnerHandle(instance_id="i-0abc"), threading.Event())
        self.assertEqual(handle.state, "ready")
        self.assertEqual(client.start_calls, 0)

    def test_handle_already_ready_skips_control_plane(self) -> None:
        client = FakeEC2([RuntimeError("must not be called")])
        handle = RemoteRunnerHandle(instance_id="i-0abc", state="ready")
        self.assertIs(make_waker(client).ensure_ready(handle), handle)

    def test_sleeping_host_is_started_and_awaited(self) -> None:
        client = FakeEC2(
            [
                status("stopped"),
                status("pending", instance="initializing", system="initializing"),
                status("running", instance="initializing"),
                status("running"),
            ]
        )
        handle = make_waker(client).ensure_ready(RemoteRunnerHandle(instance_id="i-0abc"), threading.Event())
        self.assertEqual(handle.state, "ready")
        self.assertTrue(handle.started_by_waker)
        self.assertEqual(client.start_calls, 1)

    def test_timeout_raises_runner_unavailable(self) -> None:
        client = FakeEC2([status("stopped"), status("pending", instance="initializing")])
        handle = RemoteRunnerHandle(instance_id="i-0abc")
        with self.assertRaises(RunnerUnavailable) as ctx:
            make_waker(client).ensure_ready(handle, threading.Event())
        self.assertIn("600s", str(ctx.exception))
        self.assertEqual(handle.state, "unreachable")
        self.assertEqual(client.stop_calls, 0)

    def test_timeout_stops_instance_started_by_waker_when_configured(self) -> None:
        client = FakeEC2([status("stopped"), status("pending", instance="initializing")])
        with self.assertRaises(RunnerUnavailable):
            make_waker(client, stop_on_unavailable=True).ensure_ready(
                RemoteRunnerHandle(instance_id="i-0abc"), threading.Event()
            )
        self.assertEqual(client.stop_calls, 1)

    def test_terminated_instance_fails_without_start(self) -> None:
        client = FakeEC2([status("terminated")])
        with self.assertRaises(RunnerUnavailable):
            make_waker(client).ensure_ready(RemoteRunnerHandle(instance_id="i-0abc"), threading.Event())
        self.assertEqual(client.start_calls, 0)

    def test_transient_control_plane_error_is_retried(self) -> None:
        throttled = ClientError(
            {"Error": {"Code": "RequestLimitExceeded", "Message": "slow down"}},
            "DescribeInstanceStatus",
        )
        client = FakeEC2([throttled, status("running")])
        handle = make_waker(client).ensure_ready(RemoteRunnerHandle(instance_id="i-0abc"), threading.Event())
        self.assertEqual(handle.state, "ready")

    def test_cancelled_wait_raises_run_cancelled(self) -> None:
        client = FakeEC2([status("pending", instance="initializing")])
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(RunCancelled):
            make_waker(client).ensure_ready(RemoteRunnerHandle(instance_id="i-0abc"), cancel)


class RunnerCredentialsTests(unittest.TestCase):
    def test_credentials_come_from_environment_and_hide_secrets(self) -> None:
        credentials = load_credentials(
            {
                "AWS_INSTANCE_ID": "i-0abc",
                "AWS_DEFAULT_REGION": "eu-west-1",
                "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
                "AWS_SECRET_ACCESS_KEY": "very-secret",
            }
        )
        assert credentials is not None
        self.assertEqual(credentials.region, "eu-west-1")
        self.assertNotIn("very-secret", repr(credentials))
        self.assertNotIn("AKIAEXAMPLE", repr(credentials))

    def test_missing_instance_id_means_no_runner(self) -> None:
        self.assertIsNone(load_credentials({"AWS_DEFAULT_REGION": "eu-west-1"}))

    def test_make_ec2_client_passes_credentials(self) -> None:
        credentials = RunnerCredentials(
            instance_id="i-0abc",
            region="eu-west-1",
            access_key_id="AKIAEXAMPLE",
            secret_access_key="very-secret",
        )
        with mock.patch("scripts.autogen_ci.runner_waker.boto3.client") as client_mock:
            make_ec2_client(credentials)
        client_mock.assert_called_once_with(
            "ec2",
            region_name="eu-west-1",
            aws_access_key_id="AKIAEXAMPLE",
            aws_secret_access_key="very-secret",
        )


if __name__ == "__main__":
    unittest.main()
