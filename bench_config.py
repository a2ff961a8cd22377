# bench_config.py

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

logger = logging.getLogger("ApiBench.config")

__all__ = [
    "ConfigValidationError", "VariableExtraction", "EndpointConfig", "GlobalConfig",
    "BenchmarkConfig", "EndpointPolicy", "resolve_policy", "validate_config",
    "load_config", "example_config", "write_example_config",
]

ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]

DEFAULT_MAX_REQUESTS = 10
DEFAULT_CONCURRENCY = 1
DEFAULT_TIMEOUT_MS = 15000
DEFAULT_SAFETY_CAP = 10000

_TEMPLATE_MARKER = re.compile(r"\{\{[^}]+\}\}")


class ConfigValidationError(ValueError):
    """Structural or semantic defect in a benchmark configuration. Fatal, raised before a run."""


# ---------------------------
# Configuration Models
# ---------------------------

class _CamelModel(BaseModel):
    # JSON keys are camelCase ("maxRequests"), attributes stay snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class VariableExtraction(_CamelModel):
    name: str = Field(..., min_length=1, description="Variable name, referenced later as {{name}}")
    path: str = Field(..., min_length=1, description="Dot path into the response body, or a header name")
    from_: Literal['response', 'headers'] = Field(..., alias="from", description="Where to read the value from")

    @field_validator('name', 'path')
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class EndpointConfig(_CamelModel):
    name: str = Field(..., description="Unique endpoint name, used as dependency key")
    url: str = Field(..., description="Absolute URL. Can contain {{variables}}.")
    method: str = Field(..., description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers. Can contain {{variables}}.")
    body: Optional[Any] = Field(None, description="Request body (JSON value or raw string). Can contain {{variables}}.")
    max_requests: Optional[StrictInt] = Field(None, gt=0)
    throttle: Optional[StrictInt] = Field(None, ge=0, description="Delay (ms) after each request of a worker")
    request_delay: Optional[StrictInt] = Field(None, ge=0, description="Minimum spacing (ms) between request starts")
    variables: List[VariableExtraction] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @field_validator('name')
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("must have a non-empty \"name\" string")
        return v

    @field_validator('headers', mode='before')
    def coerce_header_values(cls, v):
        # YAML/JSON scalars (X-Count: 5, X-Debug: true) become their text form
        if not isinstance(v, dict):
            return v
        coerced = {}
        for key, value in v.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            elif isinstance(value, (int, float)):
                value = str(value)
            coerced[key] = value
        return coerced

    @field_validator('method')
    def validate_method(cls, v):
        method_upper = v.upper()
        if method_upper not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {', '.join(ALLOWED_METHODS)}, got '{v}'")
        return method_upper

    @field_validator('url')
    def validate_url(cls, v):
        probe = urlparse(_TEMPLATE_MARKER.sub("placeholder", v))
        if not probe.scheme or not probe.netloc:
            raise ValueError(f"URL \"{v}\" is not valid (variables like {{{{var}}}} are allowed)")
        return v


class GlobalConfig(_CamelModel):
    max_requests: Optional[StrictInt] = Field(None, gt=0)
    duration: Optional[StrictInt] = Field(None, gt=0, description="Run each endpoint for this many ms instead of a request count")
    throttle: Optional[StrictInt] = Field(None, ge=0)
    concurrent: Optional[StrictInt] = Field(None, gt=0, description="Maximum in-flight requests per endpoint")
    timeout: Optional[StrictInt] = Field(None, gt=0, description="Per request timeout in ms")
    request_delay: Optional[StrictInt] = Field(None, ge=0)


class BenchmarkConfig(_CamelModel):
    name: Optional[str] = None
    endpoints: List[EndpointConfig] = Field(..., min_length=1)
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")

    @model_validator(mode='after')
    def check_names_and_dependencies(self) -> 'BenchmarkConfig':
        names = set()
        for endpoint in self.endpoints:
            if endpoint.name in names:
                raise ValueError(f"Duplicate endpoint name: \"{endpoint.name}\"")
            names.add(endpoint.name)

        for endpoint in self.endpoints:
            for dep in endpoint.dependencies:
                if dep not in names:
                    raise ValueError(f"Endpoint \"{endpoint.name}\" depends on \"{dep}\" which doesn't exist")
                if dep == endpoint.name:
                    raise ValueError(f"Endpoint \"{endpoint.name}\" cannot depend on itself")
        return self


# ---------------------------
# Normalized Execution Policy
# ---------------------------

class EndpointPolicy(BaseModel):
    """Effective per-endpoint execution policy, with every default already applied."""
    max_requests: int = DEFAULT_MAX_REQUESTS
    duration_ms: Optional[int] = None
    throttle_ms: int = 0
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    request_delay_ms: int = 0
    safety_cap: int = DEFAULT_SAFETY_CAP

    model_config = ConfigDict(frozen=True)

    @property
    def duration_mode(self) -> bool:
        return self.duration_ms is not None and self.duration_ms > 0

    @property
    def worker_count(self) -> int:
        if self.duration_mode:
            return self.concurrency
        return min(self.concurrency, self.max_requests)

    @property
    def planned_requests(self) -> int:
        # Duration mode has no fixed plan; observers get the safety cap as an upper bound
        return self.safety_cap if self.duration_mode else self.max_requests


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_policy(
    endpoint: EndpointConfig,
    global_config: Optional[GlobalConfig] = None,
    *,
    min_request_delay_ms: int = 0,
    safety_cap: int = DEFAULT_SAFETY_CAP,
) -> EndpointPolicy:
    """
    Folds endpoint overrides, global settings and defaults into one EndpointPolicy.
    Explicit endpoint values (including 0) win over global ones.
    """
    g = global_config or GlobalConfig()
    request_delay = _first_set(endpoint.request_delay, g.request_delay, 0)
    return EndpointPolicy(
        max_requests=_first_set(endpoint.max_requests, g.max_requests, DEFAULT_MAX_REQUESTS),
        duration_ms=g.duration,
        throttle_ms=_first_set(endpoint.throttle, g.throttle, 0),
        concurrency=_first_set(g.concurrent, DEFAULT_CONCURRENCY),
        timeout_ms=_first_set(g.timeout, DEFAULT_TIMEOUT_MS),
        request_delay_ms=max(request_delay, min_request_delay_ms, 0),
        safety_cap=safety_cap,
    )


# ---------------------------
# Validation & Loading
# ---------------------------

def _describe_location(loc) -> str:
    parts = []
    for i, item in enumerate(loc):
        if isinstance(item, int) and i > 0 and loc[i - 1] == "endpoints":
            parts[-1] = f"Endpoint {item + 1}"
        elif isinstance(item, int) and i > 0 and loc[i - 1] == "variables":
            parts[-1] = f"variable {item + 1}"
        else:
            parts.append(str(item))
    return ", ".join(parts)


def _first_violation(err: ValidationError) -> str:
    first = err.errors()[0]
    if first.get("type") == "value_error" and "error" in first.get("ctx", {}):
        msg = str(first["ctx"]["error"])
    else:
        msg = first.get("msg", str(err))
    where = _describe_location(first.get("loc", ()))
    return f"{where}: {msg}" if where else msg


def validate_config(raw: Any) -> BenchmarkConfig:
    """
    Validates a loosely typed configuration object (as parsed from JSON/YAML) and returns
    a BenchmarkConfig. Raises ConfigValidationError describing the first violation found.
    """
    if isinstance(raw, BenchmarkConfig):
        return raw
    if not isinstance(raw, dict):
        raise ConfigValidationError("Configuration must be a valid object")
    endpoints = raw.get("endpoints")
    if not isinstance(endpoints, list):
        raise ConfigValidationError('Configuration must have an "endpoints" array')
    if not endpoints:
        raise ConfigValidationError("At least one endpoint is required")
    if "global" in raw and raw["global"] is not None and not isinstance(raw["global"], dict):
        raise ConfigValidationError("Global config must be an object")

    try:
        config = BenchmarkConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigValidationError(_first_violation(e)) from e

    logger.debug(f"Configuration validated: {len(config.endpoints)} endpoints")
    return config


def load_config(path: Union[str, Path]) -> BenchmarkConfig:
    """Loads and validates a configuration file. `.yaml`/`.yml` files are read as YAML, anything else as JSON."""
    cfg_path = Path(path)
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(f"Configuration file not found: {cfg_path}") from e

    try:
        if cfg_path.suffix.lower() in (".yaml", ".yml"):
            raw = YAML(typ="safe").load(text)
        else:
            raw = json.loads(text)
    except (json.JSONDecodeError, YAMLError) as e:
        raise ConfigValidationError(f"Invalid configuration file {cfg_path}: {e}") from e

    return validate_config(raw)


def example_config() -> Dict[str, Any]:
    return {
        "name": "Example API Benchmark",
        "global": {
            "maxRequests": 100,
            "concurrent": 10,
            "timeout": 5000,
        },
        "endpoints": [
            {
                "name": "Login",
                "url": "https://api.example.com/auth/login",
                "method": "POST",
                "headers": {"Content-Type": "application/json"},
                "body": {"username": "testuser", "password": "testpass"},
                "variables": [
                    {"name": "authToken", "path": "token", "from": "response"},
                ],
            },
            {
                "name": "Get User Profile",
                "url": "https://api.example.com/user/profile",
                "method": "GET",
                "headers": {"Authorization": "Bearer {{authToken}}"},
                "dependencies": ["Login"],
            },
        ],
    }


def write_example_config(path: Union[str, Path]) -> Path:
    out = Path(path)
    out.write_text(json.dumps(example_config(), indent=2), encoding="utf-8")
    return out
