"""Scoring model - grades, the DNS score and the weighted composite.

Clear rules:
- Grades are a pure function of score (fixed thresholds)
- Only components that actually ran and succeeded count toward the composite
- Skipped or failed components drop out of numerator AND denominator,
  they are never treated as zero
"""

import logging
from typing import Dict, Optional

from posturescan.util.types import (
    DNSResult, HeaderInfo, HeadersResult, SSLCertificate, SSLResult,
    SSLVulnerability, Severity,
)
from posturescan.util.time import now_utc
from posturescan.scanner.checks.header_checks import HEADER_RULES, round_half_up

logger = logging.getLogger(__name__)

COMPONENT_WEIGHTS: Dict[str, float] = {
    'ssl': 0.40,
    'headers': 0.35,
    'dns': 0.25,
}

GRADE_THRESHOLDS = [
    (90, 'A+'),
    (80, 'A'),
    (70, 'B'),
    (60, 'C'),
    (50, 'D'),
]


def grade_for_score(score: float) -> str:
    """Letter grade for a 0-100 score."""
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return 'F'


def calculate_dns_score(dns_result: DNSResult) -> int:
    """DNS hygiene score: base 60, email auth, DNSSEC and CAA bonuses."""
    score = 60
    email = dns_result.email_security

    # Email authentication (30 points total)
    if email.spf.present and email.spf.valid:
        score += 10
    if email.dmarc.present and email.dmarc.valid:
        score += 10
    if email.dkim.present and email.dkim.valid:
        score += 10

    if dns_result.dnssec:
        score += 20

    if dns_result.caa:
        score += 10

    return max(0, min(100, score))


def composite_score(ssl: Optional[SSLResult] = None,
                    headers: Optional[HeadersResult] = None,
                    dns: Optional[DNSResult] = None) -> int:
    """Weighted average over the components that are present.

    Pass None for a component that was skipped or failed. Returns 0 when
    nothing is left to score.
    """
    component_scores = {}
    if ssl is not None:
        component_scores['ssl'] = ssl.score
    if headers is not None:
        component_scores['headers'] = headers.score
    if dns is not None:
        component_scores['dns'] = calculate_dns_score(dns)

    total_weight = sum(COMPONENT_WEIGHTS[name] for name in component_scores)
    if total_weight == 0:
        return 0

    weighted = sum(score * COMPONENT_WEIGHTS[name] for name, score in component_scores.items())
    normalized = round_half_up(weighted / total_weight)

    logger.debug(f"Composite over {sorted(component_scores)}: {normalized}")
    return max(0, min(100, normalized))


# ===== Default (all-worst-case) component results =====
# Substituted for an analyzer that failed or was skipped. Each one describes
# the degradation itself so a COMPLETED scan never silently looks healthy.

def default_ssl_result() -> SSLResult:
    now = now_utc()
    return SSLResult(
        grade='F',
        score=0,
        certificate=SSLCertificate(
            subject='Unknown',
            issuer='Unknown',
            serial_number='Unknown',
            valid_from=now,
            valid_to=now,
            fingerprint='Unknown',
            signature_algorithm='Unknown',
            key_size=0,
            common_name='Unknown',
            subject_alternative_names=[],
        ),
        protocols=[],
        cipher_suites=[],
        vulnerabilities=[SSLVulnerability(
            name='SSL Scan Failed',
            severity=Severity.CRITICAL,
            description='SSL scan could not be completed',
            recommendation='Check domain accessibility and SSL configuration',
        )],
        chain_issues=['SSL scan failed'],
        ocsp_stapling=False,
        hsts=False,
    )


def default_headers_result() -> HeadersResult:
    return HeadersResult(
        score=0,
        headers={
            rule.name: HeaderInfo(
                present=False,
                score=0,
                recommendation='Header scan failed - unable to retrieve security headers',
            )
            for rule in HEADER_RULES
        },
    )


def default_dns_result() -> DNSResult:
    return DNSResult()
