# bench_runner.py

import asyncio
import aiohttp
import json
import math
import time
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Union, Iterable
import logging
import re
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bench_config import (
    BenchmarkConfig,
    EndpointConfig,
    EndpointPolicy,
    VariableExtraction,
    DEFAULT_SAFETY_CAP,
    DEFAULT_TIMEOUT_MS,
    resolve_policy,
    validate_config,
)
from bench_observer import BenchObserver

# --- Logging Setup ---
logger = logging.getLogger("ApiBench")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "BenchRunner", "VariableEnvironment", "RequestExecutor", "EndpointScheduler",
    "RequestOutcome", "EndpointResult", "BenchmarkSummary", "BenchmarkResult",
    "resolve_dependencies", "extract_variables", "summarize_endpoint", "summarize_run",
]

DEFAULT_SUCCESS_STATUSES = range(200, 400)

# ---------------------------
# Result Models
# ---------------------------

class _ResultModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestOutcome(_ResultModel):
    """Timed result of one HTTP exchange. Failures are data, never exceptions."""
    success: bool
    response_time: float = Field(0.0, description="Elapsed ms from dispatch to response or transport failure")
    status_code: Optional[int] = None
    error: Optional[str] = None
    request_size_bytes: int = 0
    response_size_bytes: int = 0
    # Parsed response, kept only for variable extraction
    data: Any = Field(None, exclude=True)
    headers: Dict[str, str] = Field(default_factory=dict, exclude=True)


class EndpointResult(_ResultModel):
    name: str
    url: str
    method: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    success_rate: float = Field(0.0, ge=0.0, le=1.0)
    average_response_time: float = 0.0
    min_response_time: float = 0.0
    max_response_time: float = 0.0
    p50_response_time: float = 0.0
    p90_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0
    requests_per_second: float = 0.0
    duration_ms: float = 0.0
    errors: List[str] = Field(default_factory=list)
    total_request_size_kb: float = Field(0.0, alias="totalRequestSizeKB")
    average_request_size_kb: float = Field(0.0, alias="averageRequestSizeKB")
    total_response_size_kb: float = Field(0.0, alias="totalResponseSizeKB")
    average_response_size_kb: float = Field(0.0, alias="averageResponseSizeKB")


class BenchmarkSummary(_ResultModel):
    total_duration: float = Field(0.0, description="Run wall time in ms")
    total_requests: int = 0
    total_successful: int = 0
    total_failed: int = 0
    overall_requests_per_second: float = 0.0
    average_response_time: float = 0.0


class BenchmarkResult(_ResultModel):
    config: BenchmarkConfig
    results: List[EndpointResult]
    summary: BenchmarkSummary
    timestamp: str

# ---------------------------
# Variable Environment
# ---------------------------

# --- Sentinel Object for Missing Keys ---
_MISSING = object()

_TEMPLATE_PATTERN = re.compile(r"\{\{([^{}]+?)\}\}")

_SENSITIVE_NAME_PATTERN = re.compile(r"token|auth|key|secret|password|credential|bearer|jwt|session", re.IGNORECASE)


def get_value_by_path(data: Any, path: str) -> Any:
    """
    Walks a parsed JSON value along a dot separated path ('user.id', 'items.0.id').
    Numeric segments index into lists. Returns the sentinel _MISSING when any
    segment is absent, so a present-but-null value stays distinguishable.
    """
    if not path:
        return _MISSING
    current = data
    for segment in path.split('.'):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def coerce_to_text(value: Any) -> str:
    """String form of a bound value as it appears inside a substituted template."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def sanitize_for_logging(value: Any, variable_name: str, max_length: int = 100) -> str:
    if _SENSITIVE_NAME_PATTERN.search(variable_name):
        return "********"
    text = coerce_to_text(value)
    if len(text) > max_length:
        return f"{text[:max_length]}... [truncated {len(text) - max_length} chars]"
    return text


class VariableEnvironment:
    """
    Run-scoped name -> value store (str, int/float, bool, or parsed JSON).
    Created empty at run start, written by extraction, read by substitution.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})
        self._extracted_endpoints = set()
        self.lock = asyncio.Lock()

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    async def claim_extraction(self, endpoint_name: str) -> bool:
        """
        Atomic check-and-set: returns True for exactly one caller per endpoint per run.
        Only the first successful response of an endpoint feeds extraction.
        """
        async with self.lock:
            if endpoint_name in self._extracted_endpoints:
                return False
            self._extracted_endpoints.add(endpoint_name)
            return True

    def substitute(self, data: Any) -> Any:
        """
        Recursively replaces {{name}} markers in strings, dict values and list items.
        Unbound names are left verbatim. Non-string leaves are returned untouched.
        """
        if isinstance(data, str):
            return self._substitute_text(data)
        elif isinstance(data, dict):
            return {key: self.substitute(val) for key, val in data.items()}
        elif isinstance(data, list):
            return [self.substitute(item) for item in data]
        return data

    def _substitute_text(self, text: str) -> str:
        if "{{" not in text:
            return text

        def replace(match):
            name = match.group(1).strip()
            if name not in self._values:
                logger.debug(f"Variable '{{{{{name}}}}}' has no binding yet. Leaving marker in place.")
                return match.group(0)
            return coerce_to_text(self._values[name])

        return _TEMPLATE_PATTERN.sub(replace, text)


def extract_variables(
    rules: Iterable[VariableExtraction],
    response_data: Any,
    response_headers: Dict[str, str],
    variables: VariableEnvironment,
) -> Dict[str, Any]:
    """
    Applies extraction rules to one response and binds what was found.
    A missing path or header is logged as a warning and skipped. Returns the new bindings.
    """
    bound = {}
    # Case-insensitive lookup dictionary for headers
    ci_headers = {k.lower(): v for k, v in (response_headers or {}).items()}

    for rule in rules:
        if rule.from_ == 'headers':
            value = ci_headers.get(rule.path.lower(), _MISSING)
        else:
            value = get_value_by_path(response_data, rule.path)

        if value is _MISSING:
            logger.warning(f"Extraction skipped: '{rule.path}' not found in response {rule.from_} for variable '{rule.name}'.")
            continue

        variables.set(rule.name, value)
        bound[rule.name] = value
        logger.info(f"Extracted variable: {rule.name} = {sanitize_for_logging(value, rule.name)}")
    return bound

# ---------------------------
# Dependency Resolution
# ---------------------------

def resolve_dependencies(endpoints: List[EndpointConfig]) -> List[EndpointConfig]:
    """
    Orders endpoints so every dependency runs before its dependents, keeping the
    original relative order otherwise. Repeated passes move every endpoint whose
    dependencies are already resolved. A pass that moves nothing means a cycle:
    the rest is appended in original order and a warning is logged.
    """
    resolved: List[EndpointConfig] = []
    resolved_names = set()
    remaining = list(endpoints)

    while remaining:
        still_waiting = []
        for endpoint in remaining:
            if all(dep in resolved_names for dep in endpoint.dependencies):
                resolved.append(endpoint)
                resolved_names.add(endpoint.name)
            else:
                still_waiting.append(endpoint)

        if len(still_waiting) == len(remaining):
            names = ", ".join(f"'{e.name}'" for e in still_waiting)
            logger.warning(f"Possible circular dependencies detected between {names}. Processing remaining endpoints in original order.")
            resolved.extend(still_waiting)
            break
        remaining = still_waiting

    return resolved

# ---------------------------
# Request Executor
# ---------------------------

def _payload_size(obj: Any) -> int:
    """Approximate wire size in bytes of a body or header mapping."""
    if obj is None:
        return 0
    if isinstance(obj, (bytes, bytearray)):
        return len(obj)
    if isinstance(obj, str):
        return len(obj.encode('utf-8'))
    try:
        return len(json.dumps(obj, default=str).encode('utf-8'))
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not measure payload size: {e}")
        return 0


def _mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ('********' if k.lower() in ('authorization', 'cookie') and v else v) for k, v in headers.items()}


class RequestExecutor:
    """Performs one HTTP exchange through an aiohttp session and reduces it to a RequestOutcome."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        variables: VariableEnvironment,
        *,
        success_statuses: Iterable[int] = DEFAULT_SUCCESS_STATUSES,
    ):
        self.session = session
        self.variables = variables
        self.success_statuses = success_statuses

    def _prepare_body(self, body: Any, headers: Dict[str, str]):
        """Returns (json_payload, data_payload); sets a default JSON Content-Type."""
        if body is None:
            return None, None
        content_type_key = next((k for k in headers if k.lower() == 'content-type'), None)
        if content_type_key is None:
            headers['Content-Type'] = 'application/json'
            content_type_key = 'Content-Type'
        is_json_content_type = 'json' in headers[content_type_key].lower()

        if isinstance(body, str):
            if is_json_content_type:
                try:
                    return json.loads(body), None
                except json.JSONDecodeError:
                    logger.debug("Content-Type is JSON, but body is not valid JSON. Sending as raw string data.")
            return None, body.encode('utf-8', errors='replace')
        # dict/list and JSON scalars
        return body, None

    @staticmethod
    def _parse_body(raw: bytes, charset: Optional[str]) -> Any:
        if not raw:
            return None
        try:
            text = raw.decode(charset or 'utf-8', errors='replace')
        except LookupError:
            logger.debug(f"Unknown response charset '{charset}', decoding as utf-8")
            text = raw.decode('utf-8', errors='replace')
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, Any]] = None,
        body: Any = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> RequestOutcome:
        """
        Resolves templates in url/headers/body, sends the request and measures the
        time from dispatch to full response (or transport failure). Every fault is
        captured in the returned outcome.
        """
        request_size = 0
        request_start_time = time.perf_counter()
        try:
            final_url = self.variables.substitute(url)
            final_headers = {k: coerce_to_text(v) for k, v in self.variables.substitute(headers or {}).items()}
            final_body = self.variables.substitute(body)
            json_payload, data_payload = self._prepare_body(final_body, final_headers)
            request_size = _payload_size(json_payload if data_payload is None else data_payload) + _payload_size(final_headers)

            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Request: {method} {final_url} Headers: {_mask_headers(final_headers)}")

            request_start_time = time.perf_counter()
            async with self.session.request(
                method,
                final_url,
                headers=final_headers,
                json=json_payload,
                data=data_payload,
                timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000.0),
            ) as resp:
                raw = await resp.read()
                response_status = resp.status
                reason = resp.reason or ""
                response_headers = {k: v for k, v in resp.headers.items()}
                charset = resp.charset
            elapsed_ms = (time.perf_counter() - request_start_time) * 1000.0

        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - request_start_time) * 1000.0
            logger.debug(f"{method} {url}: timed out after {elapsed_ms:.2f} ms")
            return RequestOutcome(
                success=False,
                response_time=elapsed_ms,
                error=f"Request timed out after {timeout_ms} ms",
                request_size_bytes=request_size,
            )
        except aiohttp.ClientError as client_err:
            elapsed_ms = (time.perf_counter() - request_start_time) * 1000.0
            logger.debug(f"{method} {url}: {type(client_err).__name__}: {client_err} ({elapsed_ms:.2f} ms)")
            return RequestOutcome(
                success=False,
                response_time=elapsed_ms,
                error=f"{type(client_err).__name__}: {client_err}",
                request_size_bytes=request_size,
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - request_start_time) * 1000.0
            logger.error(f"{method} {url}: Unexpected error during request execution: {e}")
            return RequestOutcome(
                success=False,
                response_time=elapsed_ms,
                error=f"{type(e).__name__}: {e}",
                request_size_bytes=request_size,
            )

        success = response_status in self.success_statuses
        logger.debug(f"Received: {response_status} {method} {final_url} ({elapsed_ms:.2f} ms)")
        return RequestOutcome(
            success=success,
            response_time=elapsed_ms,
            status_code=response_status,
            error=None if success else f"HTTP {response_status} {reason}".strip(),
            request_size_bytes=request_size,
            response_size_bytes=len(raw) + _payload_size(response_headers),
            data=self._parse_body(raw, charset),
            headers=response_headers,
        )

# ---------------------------
# Endpoint Scheduler
# ---------------------------

def _notify(observer: Optional[BenchObserver], hook: str, *args) -> None:
    if observer is None:
        return
    try:
        getattr(observer, hook)(*args)
    except Exception as cb_err:
        logger.error(f"Error during observer callback {hook}: {cb_err}")


def _percentile(sorted_values: List[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = math.floor(len(sorted_values) * fraction)
    return sorted_values[min(index, len(sorted_values) - 1)]


def summarize_endpoint(endpoint: EndpointConfig, outcomes: List[RequestOutcome], elapsed_ms: float) -> EndpointResult:
    """Folds the outcomes of one endpoint into its statistics."""
    total = len(outcomes)
    successful = sum(1 for o in outcomes if o.success)
    # Synthetic failures carry zero latency and are left out of timing stats
    latencies = sorted(o.response_time for o in outcomes if o.response_time > 0)
    request_bytes = sum(o.request_size_bytes for o in outcomes)
    response_bytes = sum(o.response_size_bytes for o in outcomes)

    return EndpointResult(
        name=endpoint.name,
        url=endpoint.url,
        method=endpoint.method,
        total_requests=total,
        successful_requests=successful,
        failed_requests=total - successful,
        success_rate=successful / total if total > 0 else 0.0,
        average_response_time=sum(latencies) / len(latencies) if latencies else 0.0,
        min_response_time=latencies[0] if latencies else 0.0,
        max_response_time=latencies[-1] if latencies else 0.0,
        p50_response_time=_percentile(latencies, 0.50),
        p90_response_time=_percentile(latencies, 0.90),
        p95_response_time=_percentile(latencies, 0.95),
        p99_response_time=_percentile(latencies, 0.99),
        requests_per_second=total / (elapsed_ms / 1000.0) if elapsed_ms > 0 else 0.0,
        duration_ms=elapsed_ms,
        errors=list(dict.fromkeys(o.error for o in outcomes if o.error)),
        total_request_size_kb=round(request_bytes / 1024, 6),
        average_request_size_kb=round(request_bytes / 1024 / total, 6) if total else 0.0,
        total_response_size_kb=round(response_bytes / 1024, 6),
        average_response_size_kb=round(response_bytes / 1024 / total, 6) if total else 0.0,
    )


class _EndpointRunState:
    """Shared state of the workers of one endpoint run."""

    def __init__(self, policy: EndpointPolicy):
        self.policy = policy
        self.started_at = time.monotonic()
        self.started = 0
        self.outcomes: List[RequestOutcome] = []
        self.outcomes_lock = asyncio.Lock()
        self.spacing_lock = asyncio.Lock()
        self.last_request_start: Optional[float] = None

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0

    def should_continue(self) -> bool:
        if self.policy.duration_mode:
            return self.started < self.policy.safety_cap and self.elapsed_ms() < self.policy.duration_ms
        return self.started < self.policy.max_requests

    def reserve(self) -> bool:
        # No await between check and increment, so this is atomic for asyncio tasks
        if not self.should_continue():
            return False
        self.started += 1
        return True


class EndpointScheduler:
    """Drives repeated concurrent executions of one endpoint under its EndpointPolicy."""

    def __init__(
        self,
        executor: RequestExecutor,
        variables: VariableEnvironment,
        observer: Optional[BenchObserver] = None,
    ):
        self.executor = executor
        self.variables = variables
        self.observer = observer

    async def run(self, endpoint: EndpointConfig, policy: EndpointPolicy) -> EndpointResult:
        state = _EndpointRunState(policy)
        worker_count = policy.worker_count
        if policy.request_delay_ms > 0:
            logger.info(f"[{endpoint.name}] Using request delay: {policy.request_delay_ms}ms")
        logger.debug(
            f"[{endpoint.name}] Starting {worker_count} workers "
            f"({'duration ' + str(policy.duration_ms) + 'ms' if policy.duration_mode else str(policy.max_requests) + ' requests'})"
        )

        workers = [asyncio.create_task(self._worker(endpoint, state, worker_id=i)) for i in range(worker_count)]
        await asyncio.gather(*workers)

        result = summarize_endpoint(endpoint, state.outcomes, state.elapsed_ms())
        if policy.duration_mode and state.started >= policy.safety_cap:
            logger.warning(f"[{endpoint.name}] Safety cap of {policy.safety_cap} requests reached before duration elapsed.")
        return result

    async def _wait_for_spacing(self, state: _EndpointRunState) -> None:
        """Enforces the minimum spacing between request starts across all workers of the endpoint."""
        delay_s = state.policy.request_delay_ms / 1000.0
        if delay_s <= 0:
            return
        async with state.spacing_lock:
            now = time.monotonic()
            if state.last_request_start is not None:
                wait_s = state.last_request_start + delay_s - now
                if wait_s > 0:
                    await asyncio.sleep(wait_s)
            state.last_request_start = time.monotonic()

    async def _worker(self, endpoint: EndpointConfig, state: _EndpointRunState, worker_id: int) -> None:
        policy = state.policy
        while state.reserve():
            await self._wait_for_spacing(state)
            if policy.duration_mode and state.elapsed_ms() >= policy.duration_ms:
                # Duration ran out while waiting for a start slot
                state.started -= 1
                break

            try:
                outcome = await self.executor.execute(
                    endpoint.method,
                    endpoint.url,
                    endpoint.headers,
                    endpoint.body,
                    policy.timeout_ms,
                )
            except Exception as e:
                logger.error(f"[{endpoint.name}] Worker {worker_id}: unexpected error from executor: {e}", exc_info=True)
                outcome = RequestOutcome(success=False, response_time=0.0, error=str(e) or type(e).__name__)

            async with state.outcomes_lock:
                state.outcomes.append(outcome)
                completed = len(state.outcomes)

            if outcome.success and endpoint.variables and await self.variables.claim_extraction(endpoint.name):
                extract_variables(endpoint.variables, outcome.data, outcome.headers, self.variables)

            _notify(self.observer, "on_request_completed", endpoint, outcome, completed, policy.planned_requests)

            if policy.throttle_ms > 0:
                await asyncio.sleep(policy.throttle_ms / 1000.0)

# ---------------------------
# Run Orchestrator
# ---------------------------

def summarize_run(results: List[EndpointResult], total_duration_ms: float) -> BenchmarkSummary:
    total_requests = sum(r.total_requests for r in results)
    summary = BenchmarkSummary(
        total_duration=total_duration_ms,
        total_requests=total_requests,
        total_successful=sum(r.successful_requests for r in results),
        total_failed=sum(r.failed_requests for r in results),
    )
    if total_requests > 0:
        if total_duration_ms > 0:
            summary.overall_requests_per_second = total_requests / (total_duration_ms / 1000.0)
        summary.average_response_time = sum(r.average_response_time * r.total_requests for r in results) / total_requests
    return summary


class BenchRunner:
    """Runs every endpoint of a benchmark configuration, one endpoint at a time, in dependency order."""

    def __init__(
        self,
        *,
        request_delay_ms: int = 0,
        success_statuses: Iterable[int] = DEFAULT_SUCCESS_STATUSES,
        safety_cap: int = DEFAULT_SAFETY_CAP,
        debug: bool = False,
    ):
        self.request_delay_ms = max(0, request_delay_ms)
        self.success_statuses = success_statuses
        self.safety_cap = safety_cap
        self.debug = debug
        self.configure_logging(debug)

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)

    def create_connector(self, max_concurrency: int) -> aiohttp.BaseConnector:
        connector_limit = max(100, max_concurrency * 2)
        connector_limit_per_host = max(50, max_concurrency)
        logger.debug(f"Creating TCPConnector: limit={connector_limit}, limit_per_host={connector_limit_per_host}")
        return aiohttp.TCPConnector(limit=connector_limit, limit_per_host=connector_limit_per_host)

    def create_session(self, connector: aiohttp.BaseConnector) -> aiohttp.ClientSession:
        # No cookie jar: chaining happens only through extracted variables
        return aiohttp.ClientSession(
            connector=connector,
            cookie_jar=aiohttp.DummyCookieJar(),
            connector_owner=False,
        )

    async def run(
        self,
        config: Union[BenchmarkConfig, Dict[str, Any]],
        observer: Optional[BenchObserver] = None,
        *,
        initial_variables: Optional[Dict[str, Any]] = None,
    ) -> BenchmarkResult:
        """
        Executes a benchmark. Raises ConfigValidationError for a bad configuration and
        re-raises unexpected internal faults; request and extraction failures end up in the result.
        """
        config = validate_config(config)
        ordered = resolve_dependencies(config.endpoints)
        policies = {
            e.name: resolve_policy(e, config.global_, min_request_delay_ms=self.request_delay_ms, safety_cap=self.safety_cap)
            for e in ordered
        }
        variables = VariableEnvironment(initial_variables)
        results: List[EndpointResult] = []

        logger.info(f"Starting benchmark{' ' + repr(config.name) if config.name else ''} with {len(ordered)} endpoints")
        _notify(observer, "on_run_started", ordered)
        start_time = time.monotonic()

        connector = None
        session = None
        try:
            connector = self.create_connector(max(p.concurrency for p in policies.values()))
            session = self.create_session(connector)
            executor = RequestExecutor(session, variables, success_statuses=self.success_statuses)
            scheduler = EndpointScheduler(executor, variables, observer)

            for endpoint in ordered:
                policy = policies[endpoint.name]
                logger.info(f"Testing endpoint: {endpoint.name}")
                _notify(observer, "on_endpoint_started", endpoint, policy.planned_requests)
                try:
                    endpoint_result = await scheduler.run(endpoint, policy)
                except Exception as e:
                    logger.error(f"Error in {endpoint.name}: {e}", exc_info=self.debug)
                    raise
                results.append(endpoint_result)
                if logger.isEnabledFor(logging.DEBUG):
                    bound = {k: sanitize_for_logging(v, k) for k, v in variables.snapshot().items()}
                    logger.debug(f"Variables after {endpoint.name}: {bound}")
                _notify(observer, "on_endpoint_completed", endpoint, endpoint_result)
        finally:
            if session is not None and not session.closed:
                await session.close()
            if connector is not None and not connector.closed:
                await connector.close()

        total_duration_ms = (time.monotonic() - start_time) * 1000.0
        result = BenchmarkResult(
            config=config,
            results=results,
            summary=summarize_run(results, total_duration_ms),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        _notify(observer, "on_run_completed", result)
        return result
