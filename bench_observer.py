"""
Progress observer interface for the benchmark engine.

The engine never renders anything itself. It emits events to an observer
passed into `BenchRunner.run()`, and any renderer (terminal UI, plain log,
no-op) subclasses `BenchObserver` and overrides only the hooks it needs.

● Run:
    - `on_run_started(endpoints)`            : endpoints in execution order.
    - `on_run_completed(result)`             : final BenchmarkResult.
● Endpoint:
    - `on_endpoint_started(endpoint, planned_requests)`
    - `on_request_completed(endpoint, outcome, completed, planned_requests)`
    - `on_endpoint_completed(endpoint, result)`

Hooks are called from the engine's event loop and must not block. An exception
raised by a hook is logged by the engine and never aborts the run.
"""

from __future__ import annotations
import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from bench_config import EndpointConfig
    from bench_runner import BenchmarkResult, EndpointResult, RequestOutcome


class BenchObserver:
    """No-op observer. Subclass and override the hooks you care about."""

    # ---------- run -------------------------------------------------------- #
    def on_run_started(self, endpoints: List["EndpointConfig"]) -> None: ...

    def on_run_completed(self, result: "BenchmarkResult") -> None: ...

    # ---------- endpoint --------------------------------------------------- #
    def on_endpoint_started(self, endpoint: "EndpointConfig", planned_requests: int) -> None: ...

    def on_request_completed(
        self,
        endpoint: "EndpointConfig",
        outcome: "RequestOutcome",
        completed: int,
        planned_requests: int,
    ) -> None: ...

    def on_endpoint_completed(self, endpoint: "EndpointConfig", result: "EndpointResult") -> None: ...


class LoggingObserver(BenchObserver):
    """
    Reports progress as log lines. Per-request progress is rate limited to one
    line per `update_interval_s` for each endpoint; the last request of an
    endpoint is always reported, at the latest when the endpoint completes.
    `request_progress=False` keeps only endpoint and run lines.
    """

    def __init__(
        self,
        update_interval_s: float = 0.1,
        log: Optional[logging.Logger] = None,
        request_progress: bool = True,
    ) -> None:
        self.update_interval_s = update_interval_s
        self.request_progress = request_progress
        self.log = log or logging.getLogger("ApiBench.progress")
        self._last_update: Dict[str, float] = {}
        self._successes: Dict[str, int] = {}
        # Latest rate-limited progress line per endpoint, flushed when the endpoint completes
        self._suppressed: Dict[str, str] = {}
        self._total_endpoints = 0
        self._completed_endpoints = 0

    def on_run_started(self, endpoints):
        self._total_endpoints = len(endpoints)
        self._completed_endpoints = 0
        self.log.info(f"Starting benchmark with {len(endpoints)} endpoints")

    def on_endpoint_started(self, endpoint, planned_requests):
        self._last_update.pop(endpoint.name, None)
        self._suppressed.pop(endpoint.name, None)
        self._successes[endpoint.name] = 0
        self.log.info(f"Testing endpoint: {endpoint.name} ({endpoint.method} {endpoint.url})")

    def on_request_completed(self, endpoint, outcome, completed, planned_requests):
        if outcome.success:
            self._successes[endpoint.name] = self._successes.get(endpoint.name, 0) + 1
        if not self.request_progress:
            return
        now = time.monotonic()
        is_last = completed >= planned_requests
        last = self._last_update.get(endpoint.name)
        status = f"{outcome.status_code}" if outcome.status_code is not None else (outcome.error or "error")
        line = (
            f"[{endpoint.name}] {completed} done, {self._successes[endpoint.name]} successful "
            f"(last: {status[:50]}, {outcome.response_time:.1f} ms)"
        )
        if not is_last and last is not None and now - last < self.update_interval_s:
            self._suppressed[endpoint.name] = line
            return
        self._last_update[endpoint.name] = now
        self._suppressed.pop(endpoint.name, None)
        self.log.info(line)

    def on_endpoint_completed(self, endpoint, result):
        pending = self._suppressed.pop(endpoint.name, None)
        if pending is not None:
            self.log.info(pending)
        self._completed_endpoints += 1
        self.log.info(
            f"[{endpoint.name}] Completed {result.total_requests} requests "
            f"({result.successful_requests} successful, {result.failed_requests} failed) "
            f"- endpoint {self._completed_endpoints}/{self._total_endpoints}"
        )

    def on_run_completed(self, result):
        self.log.info(
            f"Benchmark completed: {result.summary.total_requests} requests "
            f"in {result.summary.total_duration / 1000:.2f}s"
        )
