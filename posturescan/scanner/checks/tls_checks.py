"""TLS rules - certificate parsing, cipher decomposition, vulnerabilities, score.

Everything here is pure: it takes what the TLS probe saw on the wire and turns
it into SSLResult pieces. The vulnerability list is declarative (rules over
observed data), not the result of active exploit probes.
"""

import hashlib
import logging
import re
from datetime import datetime
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from posturescan.util.errors import ScanConnectionError
from posturescan.util.time import ensure_utc
from posturescan.util.types import (
    SSLCertificate, SSLCipherSuite, SSLProtocol, SSLVulnerability, Severity,
)
from posturescan.scanner.scoring.model import grade_for_score

logger = logging.getLogger(__name__)

# Newest first - this is also the order protocols appear in results
PROTOCOLS_TO_TEST = ['TLSv1.3', 'TLSv1.2', 'TLSv1.1', 'TLSv1.0', 'SSLv3']

WEAK_PROTOCOLS = {'SSLv2', 'SSLv3', 'TLSv1.0', 'TLSv1.1'}
SECURE_PROTOCOLS = {'TLSv1.2', 'TLSv1.3'}

WEAK_CIPHERS = ['RC4', 'DES', '3DES', 'MD5', 'SHA1', 'NULL', 'EXPORT', 'ANON']

# Checked in order: longer names before their substrings (3DES before DES)
CIPHER_STRENGTH = [
    ('AES256', 256),
    ('AES128', 128),
    ('CHACHA20', 256),
    ('CAMELLIA256', 256),
    ('CAMELLIA128', 128),
    ('ARIA256', 256),
    ('ARIA128', 128),
    ('3DES', 112),
    ('DES', 56),
    ('RC4', 40),
    ('NULL', 0),
]

EXPIRY_WARNING_DAYS = 30
MIN_KEY_SIZE = 2048

SEVERITY_PENALTY = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}


# ===== Protocol names =====

def normalize_protocol_name(version: Optional[str]) -> Optional[str]:
    """Map ssl.SSLObject.version() output to our protocol names.

    Python reports TLS 1.0 as 'TLSv1'.
    """
    if version == 'TLSv1':
        return 'TLSv1.0'
    return version


# ===== Cipher suites =====

def _canonical_cipher_name(name: str) -> str:
    """Fold IANA/OpenSSL spellings so substring rules see one form.

    TLS_AES_256_GCM_SHA384 -> TLS_AES256_GCM_SHA384, DES-CBC3-SHA -> 3DES-SHA
    """
    canonical = name.upper()
    canonical = re.sub(r'(AES|CAMELLIA|ARIA)[_-](128|256)', r'\1\2', canonical)
    canonical = canonical.replace('DES-CBC3', '3DES').replace('3DES_EDE', '3DES')
    return canonical


def cipher_strength(name: str) -> Tuple[str, int]:
    """Return (bulk encryption, strength in bits) for a cipher name."""
    canonical = _canonical_cipher_name(name)
    for algorithm, bits in CIPHER_STRENGTH:
        if algorithm in canonical:
            return algorithm, bits
    return 'Unknown', 0


def _key_exchange(canonical: str) -> str:
    if 'ECDHE' in canonical:
        return 'ECDHE'
    if 'DHE' in canonical:
        return 'DHE'
    if 'ECDH' in canonical:
        return 'ECDH'
    if 'DH' in canonical:
        return 'DH'
    if 'RSA' in canonical:
        return 'RSA'
    if canonical.startswith('TLS_'):
        # TLS 1.3 suites don't name the key exchange - it's always ephemeral
        return 'ECDHE'
    return 'Unknown'


def _authentication(canonical: str) -> str:
    if 'ECDSA' in canonical:
        return 'ECDSA'
    if 'RSA' in canonical:
        return 'RSA'
    if 'DSS' in canonical:
        return 'DSS'
    return 'Unknown'


def _mac(canonical: str) -> str:
    if 'SHA384' in canonical:
        return 'SHA384'
    if 'SHA256' in canonical:
        return 'SHA256'
    if 'SHA1' in canonical or canonical.endswith('-SHA') or canonical.endswith('_SHA'):
        return 'SHA1'
    if 'MD5' in canonical:
        return 'MD5'
    if 'POLY1305' in canonical:
        return 'POLY1305'
    return 'Unknown'


def parse_cipher_suite(name: str) -> SSLCipherSuite:
    """Decompose a negotiated cipher name into its components."""
    canonical = _canonical_cipher_name(name)
    encryption, strength = cipher_strength(name)
    return SSLCipherSuite(
        name=name,
        strength=strength,
        key_exchange=_key_exchange(canonical),
        authentication=_authentication(canonical),
        encryption=encryption,
        mac=_mac(canonical),
    )


def is_weak_cipher(cipher: SSLCipherSuite) -> bool:
    name = cipher.name.upper()
    return any(weak in name for weak in WEAK_CIPHERS)


# ===== Certificates =====

def _name_attribute(name: x509.Name, oid) -> Optional[str]:
    attributes = name.get_attributes_for_oid(oid)
    if attributes:
        return str(attributes[0].value)
    return None


def _key_size(public_key) -> int:
    """Key size in bits.

    Prefer the key's own metadata; otherwise estimate from the modulus or
    raw key length.
    """
    size = getattr(public_key, 'key_size', None)
    if size:
        return int(size)

    try:
        return public_key.public_numbers().n.bit_length()
    except AttributeError:
        pass

    try:
        raw = public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return len(raw) * 8
    except (ValueError, TypeError):
        return 0


def _subject_alternative_names(cert: x509.Certificate) -> List[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []

    names = list(ext.value.get_values_for_type(x509.DNSName))
    names.extend(str(ip) for ip in ext.value.get_values_for_type(x509.IPAddress))
    return [n for n in names if n]


def _validity(cert: x509.Certificate) -> Tuple[datetime, datetime]:
    # cryptography >= 42 exposes aware datetimes; older releases only naive UTC
    not_before = getattr(cert, 'not_valid_before_utc', None) or cert.not_valid_before
    not_after = getattr(cert, 'not_valid_after_utc', None) or cert.not_valid_after
    return ensure_utc(not_before), ensure_utc(not_after)


def parse_certificate(der: Optional[bytes]) -> SSLCertificate:
    """Extract the fields we report from a DER-encoded leaf certificate."""
    if not der:
        raise ScanConnectionError("Server did not present a certificate")

    cert = x509.load_der_x509_certificate(der)
    subject_cn = _name_attribute(cert.subject, NameOID.COMMON_NAME) or 'Unknown'
    issuer_cn = _name_attribute(cert.issuer, NameOID.COMMON_NAME) or 'Unknown'
    valid_from, valid_to = _validity(cert)

    digest = hashlib.sha256(der).hexdigest().upper()
    fingerprint = ':'.join(digest[i:i + 2] for i in range(0, len(digest), 2))

    oid = cert.signature_algorithm_oid
    signature_algorithm = getattr(oid, '_name', None) or oid.dotted_string

    return SSLCertificate(
        subject=subject_cn,
        issuer=issuer_cn,
        serial_number=format(cert.serial_number, 'X'),
        valid_from=valid_from,
        valid_to=valid_to,
        fingerprint=fingerprint,
        signature_algorithm=signature_algorithm,
        key_size=_key_size(cert.public_key()),
        common_name=subject_cn,
        subject_alternative_names=_subject_alternative_names(cert),
    )


# ===== HSTS =====

def parse_max_age(value: str) -> Optional[int]:
    match = re.search(r'max-age=(\d+)', value, re.IGNORECASE)
    return int(match.group(1)) if match else None


def parse_hsts(value: Optional[str]) -> dict:
    """Parse a Strict-Transport-Security header into SSLResult HSTS fields."""
    if value is None:
        return {'hsts': False}
    return {
        'hsts': True,
        'hsts_max_age': parse_max_age(value),
        'hsts_include_subdomains': 'includesubdomains' in value.lower(),
        'hsts_preload': 'preload' in value.lower(),
    }


# ===== Vulnerabilities and score =====

def detect_vulnerabilities(protocols: List[SSLProtocol],
                           cipher_suites: List[SSLCipherSuite],
                           certificate: SSLCertificate,
                           now: datetime) -> List[SSLVulnerability]:
    """Derive vulnerabilities from observed configuration."""
    vulnerabilities = []

    weak_enabled = [p.name for p in protocols if p.enabled and p.name in WEAK_PROTOCOLS]
    if weak_enabled:
        vulnerabilities.append(SSLVulnerability(
            name='Weak SSL/TLS Protocols',
            severity=Severity.HIGH,
            description=f"Weak protocols enabled: {', '.join(weak_enabled)}",
            recommendation='Disable SSLv2, SSLv3, TLSv1.0, and TLSv1.1. Use only TLSv1.2 and TLSv1.3.',
        ))

    weak_ciphers = [c.name for c in cipher_suites if is_weak_cipher(c)]
    if weak_ciphers:
        vulnerabilities.append(SSLVulnerability(
            name='Weak Cipher Suites',
            severity=Severity.MEDIUM,
            description=f"Weak ciphers detected: {', '.join(weak_ciphers)}",
            recommendation='Remove weak cipher suites and use strong, modern encryption algorithms.',
        ))

    days = certificate.days_until_expiry(now)
    if days < 0:
        vulnerabilities.append(SSLVulnerability(
            name='Expired Certificate',
            severity=Severity.CRITICAL,
            description=f"Certificate expired {abs(days)} days ago",
            recommendation='Renew the SSL certificate immediately.',
        ))
    elif days <= EXPIRY_WARNING_DAYS:
        vulnerabilities.append(SSLVulnerability(
            name='Certificate Expiring Soon',
            severity=Severity.MEDIUM,
            description=f"Certificate expires in {days} days",
            recommendation='Renew the SSL certificate before it expires.',
        ))

    if certificate.key_size < MIN_KEY_SIZE:
        vulnerabilities.append(SSLVulnerability(
            name='Weak Key Size',
            severity=Severity.HIGH,
            description=f"Key size is {certificate.key_size} bits, which is below recommended minimum",
            recommendation='Use at least 2048-bit RSA keys or 256-bit ECC keys.',
        ))

    return vulnerabilities


def calculate_score(certificate: SSLCertificate,
                    protocols: List[SSLProtocol],
                    cipher_suites: List[SSLCipherSuite],
                    vulnerabilities: List[SSLVulnerability],
                    now: datetime) -> int:
    """Score starts at 100; configuration penalties then vulnerability penalties.

    A weak setting is therefore charged twice - once as configuration and once
    through the vulnerability it produces.
    """
    score = 100

    enabled = [p for p in protocols if p.enabled]
    if not any(p.name in SECURE_PROTOCOLS for p in enabled):
        score -= 30
    if any(p.name in WEAK_PROTOCOLS for p in enabled):
        score -= 20

    days = certificate.days_until_expiry(now)
    if days < 0:
        score -= 40
    elif days <= EXPIRY_WARNING_DAYS:
        score -= 15

    if certificate.key_size < MIN_KEY_SIZE:
        score -= 20

    if any(is_weak_cipher(c) for c in cipher_suites):
        score -= 15

    for vuln in vulnerabilities:
        score -= SEVERITY_PENALTY.get(vuln.severity, 0)

    return max(0, min(100, score))


def calculate_grade(score: int) -> str:
    return grade_for_score(score)
