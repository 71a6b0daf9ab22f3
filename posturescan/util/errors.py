"""Error taxonomy for the scan engine.

Probes translate library exceptions (ssl, socket, aiohttp, dnspython) into
these at their boundary, so the orchestrator only ever reasons about one set
of failure kinds. The connection and timeout errors also subclass the
matching builtins so generic handlers still catch them.
"""


class ScanError(Exception):
    """Base class for every error raised by the scan engine."""


class ScanConnectionError(ScanError, ConnectionError):
    """TCP connect or TLS handshake failed."""


class ScanTimeoutError(ScanError, TimeoutError):
    """A bounded network operation exceeded its deadline."""


class FetchError(ScanError):
    """HTTP request failed (distinct from a TLS failure)."""


class ValidationError(ScanError, ValueError):
    """Malformed domain input - rejected before it reaches the engine."""


class InsufficientCreditsError(ScanError):
    """User balance does not cover the scan cost. A business rule, not a fault."""


class OrchestrationError(ScanError):
    """Catch-all for unexpected faults inside orchestration."""
