"""Shared fixtures: generated certificates, fake probes, stub analyzers, temp state DB."""

import ipaddress
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import NameOID

from posturescan.util.errors import ScanTimeoutError
from posturescan.util.time import now_utc
from posturescan.util.types import (
    DKIMStatus, DMARCStatus, DNSRecord, DNSResult, EmailSecurity, HeadersResult,
    SPFStatus, SSLCertificate, SSLProtocol, SSLResult,
)
from posturescan.scanner.checks.tls_checks import PROTOCOLS_TO_TEST, SECURE_PROTOCOLS
from posturescan.scanner.probes.http_probe import HeadResponse
from posturescan.state.state_manager import StateManager


def _self_signed(key, common_name: str, days_valid: int, sans: Optional[List[str]]) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = now_utc()
    alt_names = [x509.DNSName(n) for n in (sans if sans is not None else [common_name, f'www.{common_name}'])]
    alt_names.append(x509.IPAddress(ipaddress.ip_address('192.0.2.10')))

    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(0x1A2B3C)
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .sign(key, hashes.SHA256())
    )


def make_certificate_der(common_name: str = 'example.com',
                         days_valid: int = 300,
                         key_size: int = 2048,
                         sans: Optional[List[str]] = None,
                         use_ec: bool = False) -> bytes:
    """Self-signed certificate, DER-encoded."""
    if use_ec:
        key = ec.generate_private_key(ec.SECP256R1())
    else:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return _self_signed(key, common_name, days_valid, sans).public_bytes(Encoding.DER)


def write_server_credentials(directory: Path) -> Tuple[Path, Path]:
    """Self-signed RSA certificate and key as PEM files, for a local TLS server."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    cert = _self_signed(key, 'localhost', 300, ['localhost'])

    cert_file = directory / 'server.crt'
    key_file = directory / 'server.key'
    cert_file.write_bytes(cert.public_bytes(Encoding.PEM))
    key_file.write_bytes(key.private_bytes(Encoding.PEM, PrivateFormat.TraditionalOpenSSL, NoEncryption()))
    return cert_file, key_file


def make_certificate(days_until_expiry: int = 300, key_size: int = 2048) -> SSLCertificate:
    now = now_utc()
    return SSLCertificate(
        subject='example.com',
        issuer='Test CA',
        serial_number='1A2B3C',
        valid_from=now - timedelta(days=60),
        valid_to=now + timedelta(days=days_until_expiry, hours=1),
        fingerprint='AA:BB',
        signature_algorithm='sha256WithRSAEncryption',
        key_size=key_size,
        common_name='example.com',
        subject_alternative_names=['example.com'],
    )


def make_protocols(*enabled: str) -> List[SSLProtocol]:
    return [
        SSLProtocol(name=p, version=p, enabled=p in enabled, secure=p in SECURE_PROTOCOLS)
        for p in PROTOCOLS_TO_TEST
    ]


def make_ssl_result(score: int = 90, grade: str = 'A+') -> SSLResult:
    return SSLResult(
        grade=grade,
        score=score,
        certificate=make_certificate(),
        protocols=make_protocols('TLSv1.2', 'TLSv1.3'),
    )


def make_dns_result(spf=True, dmarc=True, dkim=True, dnssec=True, caa=True) -> DNSResult:
    caa_records = [DNSRecord(type='CAA', name='example.com', value='0 issue "letsencrypt.org"', ttl=300)] if caa else []
    return DNSResult(
        records=list(caa_records),
        email_security=EmailSecurity(
            spf=SPFStatus(present=True, valid=True, record='v=spf1 -all') if spf else SPFStatus(),
            dmarc=DMARCStatus(present=True, valid=True, record='v=DMARC1; p=reject', policy='reject')
            if dmarc else DMARCStatus(),
            dkim=DKIMStatus(present=True, valid=True) if dkim else DKIMStatus(),
        ),
        dnssec=dnssec,
        caa=caa_records,
    )


class FakeHTTPProbe:
    """Stands in for the HTTPProbe class: call it like the constructor, use it
    as an async context manager, get a canned response (or error) from head()."""

    def __init__(self, response: Optional[HeadResponse] = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.init_kwargs = {}
        self.requested = []

    def __call__(self, *args, **kwargs):
        self.init_kwargs = kwargs
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def head(self, fqdn, scheme='https', path='/'):
        self.requested.append(fqdn)
        if self.error:
            raise self.error
        return self.response


def head_response(headers: dict, status: int = 200) -> HeadResponse:
    return HeadResponse(
        status=status,
        url='https://example.com/',
        headers={name.lower(): value for name, value in headers.items()},
    )


STRONG_HEADERS = {
    'Strict-Transport-Security': 'max-age=31536000; includeSubDomains; preload',
    'Content-Security-Policy': "default-src 'self'",
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Permissions-Policy': 'camera=(), microphone=(), geolocation=()',
    'X-XSS-Protection': '1; mode=block',
    'Expect-CT': 'max-age=86400, enforce',
    'Cross-Origin-Embedder-Policy': 'require-corp',
    'Cross-Origin-Opener-Policy': 'same-origin',
    'Cross-Origin-Resource-Policy': 'same-site',
}


def stub_analyzers(ssl=None, headers=None, dns=None):
    """Mock analyzers. Pass a result to succeed or an exception to fail."""
    def outcome(value):
        if isinstance(value, BaseException):
            return AsyncMock(side_effect=value)
        return AsyncMock(return_value=value)

    ssl_analyzer = Mock()
    ssl_analyzer.probe = outcome(ssl if ssl is not None else make_ssl_result())
    header_analyzer = Mock()
    header_analyzer.analyze = outcome(headers if headers is not None else HeadersResult(score=80))
    dns_analyzer = Mock()
    dns_analyzer.scan_domain = outcome(dns if dns is not None else make_dns_result())
    return ssl_analyzer, header_analyzer, dns_analyzer


@pytest.fixture
def state(tmp_path):
    """Fresh SQLite state DB with one funded user."""
    manager = StateManager(tmp_path / 'state.db')
    manager.create_user('user-1', credits=10)
    return manager


def record(rdtype, value, name='example.com', priority=None):
    return DNSRecord(type=rdtype, name=name, value=value, ttl=300, priority=priority)


DNS_ZONE = {
    ('example.com', 'A'): [record('A', '93.184.216.34')],
    ('example.com', 'AAAA'): [record('AAAA', '2606:2800:220:1::1')],
    ('example.com', 'MX'): [record('MX', 'mail.example.com', priority=10)],
    ('example.com', 'TXT'): [
        record('TXT', 'v=spf1 include:_spf.example.net -all'),
        record('TXT', 'v=DKIM1; k=rsa; p=MIGfMA0GCSqGSIb3DQEB'),
    ],
    ('example.com', 'NS'): [record('NS', 'ns1.example.com'), record('NS', 'ns2.example.com')],
    ('example.com', 'CAA'): [record('CAA', '0 issue "letsencrypt.org"')],
    ('_dmarc.example.com', 'TXT'): [
        record('TXT', 'v=DMARC1; p=reject; rua=mailto:d@example.com', name='_dmarc.example.com'),
    ],
}


def fake_dns_probe(zone=DNS_ZONE, failing=(), ds=True):
    async def resolve(name, rdtype):
        if (name, rdtype) in failing:
            raise ScanTimeoutError(f"{rdtype} lookup for {name} timed out")
        return list(zone.get((name, rdtype), []))

    probe = Mock()
    probe.resolve = AsyncMock(side_effect=resolve)
    if isinstance(ds, BaseException):
        probe.has_ds = AsyncMock(side_effect=ds)
    else:
        probe.has_ds = AsyncMock(return_value=ds)
    return probe

