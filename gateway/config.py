"""Configuration loader for the unified chat gateway.

Reads a JSON config file containing backend definitions, the model-prefix
routing table, and transport settings. API keys are resolved from
environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class ConfigurationError(Exception):
    """Raised when the gateway cannot be configured to serve requests."""


# Request parameters each backend kind sends upstream unless overridden.
DEFAULT_PARAMS: Dict[str, Dict[str, Any]] = {
    "groq": {
        "temperature": 0.6,
        "max_completion_tokens": 4096,
        "top_p": 1,
    },
    "cerebras": {
        "temperature": 1,
        "top_p": 1,
        "max_completion_tokens": 32768,
        "reasoning_effort": "medium",
    },
    "openrouter": {},
}


@dataclass
class BackendConfig:
    """Configuration for a single text-generation backend."""

    name: str
    kind: str
    base_url: str
    api_key_env: str
    default_model: str
    display_name: str = ""
    models: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class GatewayConfig:
    """Top-level gateway configuration.

    ``backends`` keeps file order, which is also the round-robin order.
    ``routes`` maps model-name prefixes to backend names, in file order.
    """

    backends: Dict[str, BackendConfig] = field(default_factory=dict)
    routes: Dict[str, str] = field(default_factory=dict)
    request_timeout: float = 60.0
    log_file: str = "logs/gateway.log"


def _load_backend(name: str, raw: Dict[str, Any]) -> BackendConfig:
    try:
        kind = raw.get("kind", name)
        default_model = raw["default_model"]
        return BackendConfig(
            name=name,
            kind=kind,
            base_url=raw["base_url"],
            api_key_env=raw["api_key_env"],
            default_model=default_model,
            display_name=raw.get("display_name", name),
            models=list(raw.get("models", [default_model])),
            params=dict(raw.get("params", DEFAULT_PARAMS.get(kind, {}))),
        )
    except KeyError as exc:
        raise ValueError(
            "Backend '{}' is missing required field {}".format(name, exc)
        ) from exc


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            raw: Dict[str, Any] = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError("Config file {} is not valid JSON: {}".format(path, exc))

    backends: Dict[str, BackendConfig] = {}
    for name, backend_raw in raw.get("backends", {}).items():
        backends[name] = _load_backend(name, backend_raw)

    routes: Dict[str, str] = {}
    for prefix, backend_name in raw.get("routes", {}).items():
        if backend_name not in backends:
            raise ValueError(
                "Route '{}' points to unknown backend '{}'".format(prefix, backend_name)
            )
        routes[prefix] = backend_name

    return GatewayConfig(
        backends=backends,
        routes=routes,
        request_timeout=float(raw.get("request_timeout", 60.0)),
        log_file=raw.get("log_file", "logs/gateway.log"),
    )
