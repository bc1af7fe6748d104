from __future__ import annotations

from http.client import BadStatusLine, IncompleteRead
import json
from pathlib import Path
import sys
import tempfile
import unittest
from urllib.error import HTTPError, URLError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from release_guard.domain.deployment_record import DeploymentRecord
from release_guard.domain.deployment_state_machine import DeploymentStatus
from release_guard.services.deployment_persistence import JsonDocumentPersistence
from release_guard.services.deployment_store import DeploymentRecordStore
from release_guard.services.health_prober import HealthProber, classify_health_response

HEALTH_URL = "http://127.0.0.1:8000/health"


class FakeResponse:
    def __init__(self, status: int, body: bytes) -> None:
        self.status = status
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class ScriptedOpener:
    """Returns (or raises) the queued outcomes in order, repeating the last one."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, request, timeout=None):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def json_response(payload, status: int = 200) -> FakeResponse:
    return FakeResponse(status, json.dumps(payload).encode("utf-8"))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ClassifyHealthResponseTests(unittest.TestCase):
    def test_ok_and_healthy_tokens_are_accepted(self) -> None:
        self.assertEqual(classify_health_response(200, b'{"status": "ok"}'), (True, "ok", None))
        self.assertEqual(
            classify_health_response(200, b'{"status": "healthy", "database": "connected"}'),
            (True, "ok", "connected"),
        )

    def test_non_2xx_is_unhealthy(self) -> None:
        self.assertEqual(classify_health_response(503, b'{"status": "ok"}'), (False, "http_status", None))

    def test_malformed_bodies_are_unhealthy(self) -> None:
        self.assertEqual(classify_health_response(200, b"<html>"), (False, "invalid_json", None))
        self.assertEqual(classify_health_response(200, b'["ok"]'), (False, "invalid_json", None))
        self.assertEqual(classify_health_response(200, b'{"status": "degraded"}'), (False, "unrecognized_status", None))


class HealthProberTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = DeploymentRecordStore(JsonDocumentPersistence(Path(self._tmp.name) / "deployments.json"))
        self.record = self.store.append(
            DeploymentRecord(revision="abc1234", ref="refs/heads/main", initiated_by="alice")
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _prober(self, opener, clock: FakeClock | None = None) -> HealthProber:
        clock = clock or FakeClock()
        return HealthProber(
            self.store,
            url=HEALTH_URL,
            timeout_seconds=2,
            opener=opener,
            sleep=clock.sleep,
            monotonic=clock.monotonic,
        )

    def test_healthy_response_promotes_record_to_current(self) -> None:
        prober = self._prober(ScriptedOpener(json_response({"status": "ok"})))

        self.assertTrue(prober.check(self.record.id))

        stored = self.store.get(self.record.id)
        self.assertEqual(stored.status, DeploymentStatus.SUCCESS)
        self.assertTrue(stored.health_check_passed)
        self.assertEqual(self.store.current().id, self.record.id)

    def test_timeout_marks_record_failed(self) -> None:
        prober = self._prober(ScriptedOpener(URLError(TimeoutError("timed out"))))

        self.assertFalse(prober.check(self.record.id))

        stored = self.store.get(self.record.id)
        self.assertEqual(stored.status, DeploymentStatus.FAILED)
        self.assertFalse(stored.health_check_passed)

    def test_socket_timeout_without_urlerror_is_unhealthy(self) -> None:
        result = self._prober(ScriptedOpener(TimeoutError("timed out"))).probe()

        self.assertFalse(result.healthy)
        self.assertEqual(result.reason, "transport_error")

    def test_malformed_response_marks_record_failed(self) -> None:
        prober = self._prober(ScriptedOpener(BadStatusLine("NOT-HTTP garbage")))

        self.assertFalse(prober.check(self.record.id))

        stored = self.store.get(self.record.id)
        self.assertEqual(stored.status, DeploymentStatus.FAILED)
        self.assertFalse(stored.health_check_passed)

    def test_truncated_response_is_transport_error(self) -> None:
        result = self._prober(ScriptedOpener(IncompleteRead(b"{\"sta"))).probe()

        self.assertFalse(result.healthy)
        self.assertEqual(result.reason, "transport_error")

    def test_http_error_reports_status_code(self) -> None:
        error = HTTPError(HEALTH_URL, 500, "Internal Server Error", hdrs=None, fp=None)

        result = self._prober(ScriptedOpener(error)).probe()

        self.assertFalse(result.healthy)
        self.assertEqual(result.reason, "http_status")
        self.assertEqual(result.status_code, 500)

    def test_repeated_checks_are_idempotent(self) -> None:
        prober = self._prober(ScriptedOpener(json_response({"status": "ok"})))

        prober.check(self.record.id)
        first = self.store.get(self.record.id)
        prober.check(self.record.id)
        second = self.store.get(self.record.id)

        self.assertEqual(first.to_dict(), second.to_dict())

    def test_unknown_deployment_still_returns_probe_result(self) -> None:
        prober = self._prober(ScriptedOpener(json_response({"status": "ok"})))

        self.assertTrue(prober.check("deploy-missing"))
        self.assertEqual(self.store.get(self.record.id).status, DeploymentStatus.PENDING)

    def test_rolled_back_record_is_not_revived_by_probe(self) -> None:
        self.store.update_status(self.record.id, DeploymentStatus.ROLLED_BACK)
        prober = self._prober(ScriptedOpener(json_response({"status": "ok"})))

        self.assertTrue(prober.check(self.record.id))
        self.assertEqual(self.store.get(self.record.id).status, DeploymentStatus.ROLLED_BACK)

    def test_wait_until_ready_polls_until_healthy(self) -> None:
        clock = FakeClock()
        opener = ScriptedOpener(
            URLError(ConnectionRefusedError("refused")),
            json_response({"status": "starting"}),
            json_response({"status": "ok"}),
        )
        prober = self._prober(opener, clock)

        self.assertTrue(prober.wait_until_ready(10, 1))
        self.assertEqual(opener.calls, 3)
        self.assertEqual(clock.sleeps, [1, 1])
        self.assertEqual(self.store.get(self.record.id).status, DeploymentStatus.PENDING)

    def test_wait_until_ready_gives_up_after_window(self) -> None:
        clock = FakeClock()
        opener = ScriptedOpener(json_response({"status": "down"}, status=503))
        prober = self._prober(opener, clock)

        self.assertFalse(prober.wait_until_ready(3, 1))
        self.assertEqual(opener.calls, 4)
        self.assertEqual(sum(clock.sleeps), 3)


if __name__ == "__main__":
    unittest.main()
