"""Routing: select the backend that serves a chat completion request.

A requested model is matched against the routing table's prefixes in table
order; the first match wins and the model is passed through unchanged. When
no model is given or nothing matches, backends are handed out round robin.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple

from gateway.backends import Backend
from gateway.config import ConfigurationError, GatewayConfig

_logger = logging.getLogger("gateway")


@dataclass
class RouteResult:
    """Resolved route for a request.

    ``model`` is None for round-robin selections; the backend then applies
    its own default model.
    """

    backend: Backend
    model: Optional[str] = None


@dataclass
class RouterState:
    """Round-robin cursor shared by every request served by one router."""

    size: int
    cursor: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def advance(self) -> int:
        """Return the current cursor and move it to the next backend."""
        with self._lock:
            current = self.cursor
            self.cursor = (self.cursor + 1) % self.size
            return current


class Router:
    """Maps requests to backends.

    The backend set is fixed for the lifetime of a router; a changed set of
    backends needs a new Router (and so a fresh cursor).
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        routes: Optional[Mapping[str, Backend]] = None,
    ) -> None:
        if not backends:
            raise ConfigurationError("No backends available for routing")
        self._backends: Tuple[Backend, ...] = tuple(backends)
        self._routes: Tuple[Tuple[str, Backend], ...] = tuple((routes or {}).items())
        self.state = RouterState(size=len(self._backends))

    @classmethod
    def from_config(cls, config: GatewayConfig, backends: Sequence[Backend]) -> "Router":
        """Build a router whose prefix table comes from ``config.routes``.

        Routes pointing at a backend that was not offered are dropped.
        """
        by_name = {backend.name: backend for backend in backends}
        routes: Dict[str, Backend] = {}
        for prefix, backend_name in config.routes.items():
            backend = by_name.get(backend_name)
            if backend is None:
                _logger.warning(
                    "Route %s dropped: backend %s is not available",
                    prefix,
                    backend_name,
                )
                continue
            routes[prefix] = backend
        return cls(backends, routes)

    @property
    def backends(self) -> Tuple[Backend, ...]:
        return self._backends

    def select(self, requested_model: Optional[str] = None) -> RouteResult:
        """Pick the backend for ``requested_model``.

        Args:
            requested_model: The client's model identifier, if any.

        Returns:
            A RouteResult. Prefix matches keep the requested model and leave
            the round-robin cursor untouched.
        """
        if requested_model:
            for prefix, backend in self._routes:
                if requested_model.startswith(prefix):
                    return RouteResult(backend=backend, model=requested_model)

        backend = self._backends[self.state.advance()]
        return RouteResult(backend=backend, model=None)
