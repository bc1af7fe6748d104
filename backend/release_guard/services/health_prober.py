from __future__ import annotations

from dataclasses import dataclass
from http.client import HTTPException
import json
import logging
import time
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from release_guard.domain.deployment_state_machine import (
    DeploymentNotFoundError,
    DeploymentStatus,
    TransitionRuleError,
)
from release_guard.services.deployment_store import DeploymentRecordStore
from release_guard.services.observability import emit_structured_log

HEALTHY_STATUS_TOKENS = {"ok", "healthy"}
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ProbeResult:
    healthy: bool
    reason: str
    status_code: int | None = None
    latency_ms: float = 0.0
    database: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "reason": self.reason,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 2),
            "database": self.database,
            "error": self.error,
        }


def classify_health_response(status_code: int, body: bytes) -> tuple[bool, str, str | None]:
    if not 200 <= status_code < 300:
        return False, "http_status", None
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False, "invalid_json", None
    if not isinstance(payload, dict):
        return False, "invalid_json", None

    database = payload.get("database")
    database = database if isinstance(database, str) else None
    if payload.get("status") not in HEALTHY_STATUS_TOKENS:
        return False, "unrecognized_status", database
    return True, "ok", database


class HealthProber:
    """Liveness probe that gates promotion of a deployment to success."""

    def __init__(
        self,
        store: DeploymentRecordStore,
        *,
        url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        opener: Callable[..., Any] = urlopen,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._opener = opener
        self._sleep = sleep
        self._monotonic = monotonic

    def probe(self) -> ProbeResult:
        request = Request(self.url, method="GET", headers={"Accept": "application/json"})
        started = time.perf_counter()
        try:
            with self._opener(request, timeout=self.timeout_seconds) as response:
                status_code = int(response.status)
                body = response.read()
        except HTTPError as exc:
            return ProbeResult(
                healthy=False,
                reason="http_status",
                status_code=int(exc.code),
                latency_ms=(time.perf_counter() - started) * 1000,
                error=f"http_error:{exc.code}",
            )
        except (URLError, HTTPException, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            return ProbeResult(
                healthy=False,
                reason="transport_error",
                latency_ms=(time.perf_counter() - started) * 1000,
                error=f"url_error:{reason}",
            )

        healthy, reason, database = classify_health_response(status_code, body)
        return ProbeResult(
            healthy=healthy,
            reason=reason,
            status_code=status_code,
            latency_ms=(time.perf_counter() - started) * 1000,
            database=database,
        )

    def check(self, deployment_id: str) -> bool:
        result = self.probe()
        emit_structured_log(
            component="health_prober",
            event="health_check_passed" if result.healthy else "health_check_failed",
            level=logging.INFO if result.healthy else logging.WARNING,
            deployment_id=deployment_id,
            url=self.url,
            database_connected=result.database == "connected",
            **result.to_dict(),
        )

        target = DeploymentStatus.SUCCESS if result.healthy else DeploymentStatus.FAILED
        try:
            self.store.update_status(deployment_id, target, health_check_passed=result.healthy)
        except (DeploymentNotFoundError, TransitionRuleError) as exc:
            emit_structured_log(
                component="health_prober",
                event="health_check_status_not_recorded",
                level=logging.WARNING,
                deployment_id=deployment_id,
                target_status=target.value,
                error=str(exc),
            )
        return result.healthy

    def wait_until_ready(self, window_seconds: float, interval_seconds: float) -> bool:
        """Poll the endpoint without side effects until it answers healthy or the window closes."""
        deadline = self._monotonic() + max(0.0, window_seconds)
        attempts = 0
        while True:
            attempts += 1
            result = self.probe()
            if result.healthy:
                emit_structured_log(component="health_prober", event="readiness_reached", attempts=attempts)
                return True
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                emit_structured_log(
                    component="health_prober",
                    event="readiness_window_elapsed",
                    level=logging.WARNING,
                    attempts=attempts,
                    last_reason=result.reason,
                )
                return False
            self._sleep(min(max(interval_seconds, 0.0), remaining))
