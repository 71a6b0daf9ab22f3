"""Load engine settings from .env and the process environment.

Single source of truth for timeouts, resolver choice and the state DB path.
Every setting has a default, so an empty environment is a valid one.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any
from dotenv import load_dotenv


@dataclass
class EngineSettings:
    """Runtime configuration for the scan engine.

    Timeouts are in seconds. Credit costs are deliberately absent - they are
    a fixed table in util.types, not a tunable.
    """
    tls_timeout: float = 30.0
    protocol_probe_timeout: float = 5.0
    hsts_timeout: float = 10.0
    http_timeout: float = 30.0
    dns_timeout: float = 5.0
    dnssec_resolvers: List[str] = field(default_factory=lambda: ['8.8.8.8', '1.1.1.1'])
    user_agent: str = 'SecurityPosture-HeadersScanner/1.0'

    state_db: Path = Path('state/posture.db')
    default_credits: int = 100
    max_concurrent_scans: int = 4
    log_level: str = 'INFO'

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dict for logging."""
        return {
            'tls_timeout': self.tls_timeout,
            'protocol_probe_timeout': self.protocol_probe_timeout,
            'hsts_timeout': self.hsts_timeout,
            'http_timeout': self.http_timeout,
            'dns_timeout': self.dns_timeout,
            'dnssec_resolvers': list(self.dnssec_resolvers),
            'user_agent': self.user_agent,
            'state_db': str(self.state_db),
            'default_credits': self.default_credits,
            'max_concurrent_scans': self.max_concurrent_scans,
            'log_level': self.log_level,
        }


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings(env_file: Optional[Path] = None) -> EngineSettings:
    """Load settings from a .env file (if present) plus the environment.

    Real environment variables win over .env values, which is python-dotenv's
    default behaviour. Crashes early on malformed numbers.
    """
    env_file = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    resolvers_raw = os.getenv("DNSSEC_RESOLVERS", "8.8.8.8,1.1.1.1")
    resolvers = [r.strip() for r in resolvers_raw.split(",") if r.strip()]

    return EngineSettings(
        tls_timeout=_float("TLS_TIMEOUT", 30.0),
        protocol_probe_timeout=_float("PROTOCOL_PROBE_TIMEOUT", 5.0),
        hsts_timeout=_float("HSTS_TIMEOUT", 10.0),
        http_timeout=_float("HTTP_TIMEOUT", 30.0),
        dns_timeout=_float("DNS_TIMEOUT", 5.0),
        dnssec_resolvers=resolvers or ['8.8.8.8', '1.1.1.1'],
        user_agent=os.getenv("USER_AGENT") or 'SecurityPosture-HeadersScanner/1.0',
        state_db=Path(os.getenv("STATE_DB", "state/posture.db")),
        default_credits=_int("DEFAULT_CREDITS", 100),
        max_concurrent_scans=max(1, _int("MAX_CONCURRENT_SCANS", 4)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
