"""SSL/TLS analyzer - one host:port in, one SSLResult out.

Pipeline:
1. Primary handshake (certificate, negotiated protocol and cipher, chain verdict)
2. Protocol support matrix, one pinned handshake per version
3. HSTS from a HEAD request that ignores certificate errors
4. Vulnerabilities and score from the rules in checks.tls_checks

Only the primary handshake can fail the analyzer. A refused protocol or a
failed HSTS request is an observation, not an error.
"""

import logging
from typing import List, Optional

from posturescan.util.config import EngineSettings
from posturescan.util.errors import ScanError
from posturescan.util.time import now_utc, duration_ms
from posturescan.util.types import SSLResult
from posturescan.scanner.checks import tls_checks
from posturescan.scanner.probes.http_probe import HTTPProbe
from posturescan.scanner.probes.tls_probe import TLSHandshake, TLSProbe

logger = logging.getLogger(__name__)


def chain_issues_for(handshake: TLSHandshake) -> List[str]:
    if handshake.authorized:
        return []
    return [f"Certificate verification failed: {handshake.authorization_error or 'unknown error'}"]


class SSLAnalyzer:
    """Runs the TLS probes for a domain and scores what they saw."""

    def __init__(self, settings: Optional[EngineSettings] = None,
                 tls_probe: Optional[TLSProbe] = None):
        self.settings = settings or EngineSettings()
        self.tls_probe = tls_probe or TLSProbe(
            timeout=self.settings.tls_timeout,
            protocol_timeout=self.settings.protocol_probe_timeout,
        )

    async def check_hsts(self, domain: str) -> dict:
        """HSTS fields for SSLResult; any failure means no HSTS."""
        try:
            async with HTTPProbe(timeout=self.settings.hsts_timeout,
                                 user_agent=self.settings.user_agent,
                                 verify_ssl=False) as probe:
                response = await probe.head(domain)
        except ScanError as e:
            logger.debug(f"HSTS check for {domain} failed: {e}")
            return tls_checks.parse_hsts(None)

        return tls_checks.parse_hsts(response.headers.get('strict-transport-security'))

    async def probe(self, domain: str, port: int = 443) -> SSLResult:
        """Probe domain:port.

        Raises "SSL scan failed: ..." if the primary handshake or certificate
        parsing fails, keeping the probe's error class (ScanConnectionError,
        ScanTimeoutError).
        """
        start = now_utc()
        try:
            handshake = await self.tls_probe.handshake(domain, port)
            certificate = tls_checks.parse_certificate(handshake.certificate_der)
        except ScanError as e:
            raise type(e)(f"SSL scan failed: {e}") from e
        except ValueError as e:
            # cryptography rejects malformed DER with ValueError
            raise ScanError(f"SSL scan failed: unreadable certificate: {e}") from e

        protocols = await self.tls_probe.probe_protocols(domain, port)
        cipher_suites = [tls_checks.parse_cipher_suite(handshake.cipher)] if handshake.cipher else []
        hsts = await self.check_hsts(domain)

        now = now_utc()
        vulnerabilities = tls_checks.detect_vulnerabilities(protocols, cipher_suites, certificate, now)
        score = tls_checks.calculate_score(certificate, protocols, cipher_suites, vulnerabilities, now)

        result = SSLResult(
            grade=tls_checks.calculate_grade(score),
            score=score,
            certificate=certificate,
            protocols=protocols,
            cipher_suites=cipher_suites,
            vulnerabilities=vulnerabilities,
            chain_issues=chain_issues_for(handshake),
            ocsp_stapling=False,
            **hsts
        )

        logger.info(
            f"SSL {domain}:{port} grade={result.grade} score={score} "
            f"protocol={handshake.protocol} ({duration_ms(start):.0f}ms)"
        )
        return result
