"""Core data types and enums used across the scan engine.

These types make scan results explicit and consistent.
No magic strings floating around - every status, scan type and severity
has a defined meaning, and every result object knows how to serialize itself
for the scan record store.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Protocol
from datetime import datetime, timedelta


class ScanStatus(Enum):
    """Lifecycle of a scan record.

    PENDING -> RUNNING -> COMPLETED | FAILED. CANCELLED is set externally.
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ScanType(Enum):
    """Scan tier - decides which analyzers run and what the scan costs."""
    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    PREMIUM = "PREMIUM"


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Static per-type cost table - never configurable
SCAN_TYPE_CREDITS: Dict[ScanType, int] = {
    ScanType.BASIC: 1,
    ScanType.ADVANCED: 3,
    ScanType.PREMIUM: 5,
}

_ONE_DAY = timedelta(days=1)


def _jsonable_factory(items: List[Tuple[str, Any]]) -> Dict[str, Any]:
    """dict_factory for asdict() that flattens enums and datetimes."""
    out = {}
    for key, value in items:
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


def to_jsonable(obj: Any) -> Dict[str, Any]:
    """Convert a result dataclass into a JSON-safe dict."""
    return asdict(obj, dict_factory=_jsonable_factory)


# ===== SSL / TLS =====

@dataclass
class SSLCertificate:
    """Leaf certificate details extracted from the primary handshake."""
    subject: str
    issuer: str
    serial_number: str
    valid_from: datetime
    valid_to: datetime
    fingerprint: str
    signature_algorithm: str
    key_size: int
    common_name: str
    subject_alternative_names: List[str] = field(default_factory=list)

    def days_until_expiry(self, now: datetime) -> int:
        """Whole days until expiry, floored (negative once expired)."""
        return (self.valid_to - now) // _ONE_DAY


@dataclass
class SSLProtocol:
    name: str
    version: str
    enabled: bool
    secure: bool


@dataclass
class SSLCipherSuite:
    name: str
    strength: int  # bits
    key_exchange: str
    authentication: str
    encryption: str
    mac: str


@dataclass
class SSLVulnerability:
    name: str
    severity: Severity
    description: str
    recommendation: str
    cve: Optional[str] = None


@dataclass
class SSLResult:
    """Outcome of the TLS prober for one host:port."""
    grade: str
    score: int
    certificate: SSLCertificate
    protocols: List[SSLProtocol] = field(default_factory=list)
    cipher_suites: List[SSLCipherSuite] = field(default_factory=list)
    vulnerabilities: List[SSLVulnerability] = field(default_factory=list)
    chain_issues: List[str] = field(default_factory=list)
    ocsp_stapling: bool = False
    hsts: bool = False
    hsts_max_age: Optional[int] = None
    hsts_include_subdomains: Optional[bool] = None
    hsts_preload: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ===== HTTP security headers =====

@dataclass
class HeaderInfo:
    present: bool
    score: float
    recommendation: str
    value: Optional[str] = None


@dataclass
class HeadersResult:
    """Header analyzer output: overall score plus one entry per known header."""
    score: int
    headers: Dict[str, HeaderInfo] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ===== DNS / email authentication =====

@dataclass
class DNSRecord:
    type: str  # 'A', 'AAAA', 'MX', 'TXT', 'NS', 'CAA'
    name: str
    value: str
    ttl: int
    priority: Optional[int] = None


@dataclass
class SPFStatus:
    present: bool = False
    valid: bool = False
    record: Optional[str] = None
    mechanisms: List[str] = field(default_factory=list)


@dataclass
class DMARCStatus:
    present: bool = False
    valid: bool = False
    record: Optional[str] = None
    policy: str = ""
    percentage: Optional[int] = None
    reporting_emails: List[str] = field(default_factory=list)


@dataclass
class DKIMStatus:
    """DKIM indicators. Heuristic only - no key verification is done."""
    present: bool = False
    valid: bool = False
    selectors: List[str] = field(default_factory=list)
    keys: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class EmailSecurity:
    spf: SPFStatus = field(default_factory=SPFStatus)
    dmarc: DMARCStatus = field(default_factory=DMARCStatus)
    dkim: DKIMStatus = field(default_factory=DKIMStatus)


@dataclass
class DNSResult:
    records: List[DNSRecord] = field(default_factory=list)
    email_security: EmailSecurity = field(default_factory=EmailSecurity)
    dnssec: bool = False
    nameservers: List[str] = field(default_factory=list)
    mx: List[DNSRecord] = field(default_factory=list)
    caa: List[DNSRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ===== Orchestration =====

@dataclass
class ScanResult:
    """The three component results of a completed scan."""
    ssl: SSLResult
    headers: HeadersResult
    dns: DNSResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ssl': self.ssl.to_dict(),
            'headers': self.headers.to_dict(),
            'dns': self.dns.to_dict(),
        }


@dataclass
class OrchestratorResult:
    success: bool
    credits_used: int
    scan_result: Optional[ScanResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'scan_result': self.scan_result.to_dict() if self.scan_result else None,
            'error': self.error,
            'credits_used': self.credits_used,
        }


@dataclass
class Scan:
    """A persisted scan record.

    security_score and ssl_grade are only meaningful once COMPLETED;
    error_message only once FAILED.
    """
    id: str
    user_id: str
    domain: str
    status: ScanStatus
    scan_type: ScanType
    credits_used: int = 0
    security_score: Optional[int] = None
    ssl_grade: Optional[str] = None
    ssl_details: Optional[Dict[str, Any]] = None
    header_details: Optional[Dict[str, Any]] = None
    dns_details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class CreditDeduction:
    success: bool
    new_balance: int


class ScanStore(Protocol):
    """Scan record store collaborator."""

    def get_scan(self, scan_id: str) -> Optional[Scan]: ...

    def update_scan(self, scan_id: str, **fields: Any) -> Scan: ...


class CreditLedger(Protocol):
    """Credit ledger collaborator.

    deduct_credits must be an atomic check-then-deduct and must report an
    insufficient balance with success=False rather than raising.
    """

    def deduct_credits(self, user_id: str, amount: int, description: str) -> CreditDeduction: ...
