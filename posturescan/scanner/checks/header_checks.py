"""HTTP security header rules.

One entry per known header: its maximum score, the score for a bare
presence, a validator that grades the configured value, and a recommendation
builder. The table is fixed - adding a header means adding a HeaderRule here.

Missing headers score 0. The overall score is the achieved total as a
percentage of the sum of maximums, so the table's total can change without
rescaling anything else.
"""

import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from posturescan.util.types import HeaderInfo

ONE_YEAR_SECONDS = 31536000


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (round() is banker's)."""
    return int(math.floor(value + 0.5))


def _max_age(value: str) -> int:
    match = re.search(r'max-age=(\d+)', value, re.IGNORECASE)
    return int(match.group(1)) if match else 0


@dataclass(frozen=True)
class HeaderRule:
    name: str  # lowercase header name
    max_score: int
    score_present: float
    validate: Optional[Callable[[str], float]]
    recommend: Callable[[bool, Optional[str]], str]

    def evaluate(self, value: Optional[str]) -> HeaderInfo:
        present = value is not None
        if not present:
            score = 0
        elif self.validate and value:
            score = self.validate(value)
        else:
            score = self.score_present

        return HeaderInfo(
            present=present,
            value=value,
            score=score,
            recommendation=self.recommend(present, value),
        )


# ===== Strict-Transport-Security =====

def _hsts_score(value: str) -> float:
    lowered = value.lower()
    score = 15
    if _max_age(value) >= ONE_YEAR_SECONDS:
        score += 3
    if 'includesubdomains' in lowered:
        score += 1
    if 'preload' in lowered:
        score += 1
    return score


def _hsts_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add Strict-Transport-Security header with max-age=31536000; includeSubDomains; preload'
    if not value:
        return 'Configure HSTS with proper max-age and directives'

    lowered = value.lower()
    issues = []
    if _max_age(value) < ONE_YEAR_SECONDS:
        issues.append('increase max-age to at least 31536000 (1 year)')
    if 'includesubdomains' not in lowered:
        issues.append('add includeSubDomains directive')
    if 'preload' not in lowered:
        issues.append('consider adding preload directive')

    return f"Improve HSTS: {', '.join(issues)}" if issues else 'HSTS is properly configured'


# ===== Content-Security-Policy =====

def _csp_score(value: str) -> float:
    score = 10

    if "'unsafe-inline'" in value:
        score -= 5
    if "'unsafe-eval'" in value:
        score -= 3
    if '*' in value:
        score -= 2

    if 'default-src' in value:
        score += 2
    if 'script-src' in value:
        score += 2
    if 'object-src' in value:
        score += 1
    if 'base-uri' in value:
        score += 1
    if 'frame-ancestors' in value:
        score += 2

    return max(5, min(20, score))


def _csp_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add Content-Security-Policy header to prevent XSS and other injection attacks'
    if not value:
        return 'Configure CSP with appropriate directives'

    issues = []
    if "'unsafe-inline'" in value:
        issues.append("remove 'unsafe-inline'")
    if "'unsafe-eval'" in value:
        issues.append("remove 'unsafe-eval'")
    if '*' in value:
        issues.append('avoid wildcard (*) sources')
    if 'default-src' not in value:
        issues.append('add default-src directive')
    if 'script-src' not in value:
        issues.append('add script-src directive')
    if 'frame-ancestors' not in value:
        issues.append('add frame-ancestors directive')

    return f"Improve CSP: {', '.join(issues)}" if issues else 'CSP is well configured'


# ===== X-Frame-Options =====

def _xfo_score(value: str) -> float:
    upper = value.strip().upper()
    if upper == 'DENY':
        return 15
    if upper == 'SAMEORIGIN':
        return 12
    if upper.startswith('ALLOW-FROM'):
        return 8
    return 5


def _xfo_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add X-Frame-Options header to prevent clickjacking attacks'
    if not value:
        return 'Configure X-Frame-Options properly'

    upper = value.strip().upper()
    if upper == 'DENY':
        return 'X-Frame-Options is optimally configured'
    if upper == 'SAMEORIGIN':
        return 'Consider using DENY for better security if framing is not needed'
    return 'Use DENY or SAMEORIGIN instead of ALLOW-FROM'


# ===== X-Content-Type-Options =====

def _xcto_score(value: str) -> float:
    return 10 if value.strip().lower() == 'nosniff' else 5


def _xcto_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add X-Content-Type-Options: nosniff header to prevent MIME type sniffing'
    if not value or value.strip().lower() != 'nosniff':
        return 'Set X-Content-Type-Options to "nosniff"'
    return 'X-Content-Type-Options is properly configured'


# ===== Referrer-Policy =====

REFERRER_POLICIES = {
    'no-referrer', 'no-referrer-when-downgrade', 'origin', 'origin-when-cross-origin',
    'same-origin', 'strict-origin', 'strict-origin-when-cross-origin', 'unsafe-url',
}
BEST_REFERRER_POLICIES = {'no-referrer', 'strict-origin-when-cross-origin'}


def _referrer_score(value: str) -> float:
    lowered = value.strip().lower()
    if lowered in BEST_REFERRER_POLICIES:
        return 10
    if lowered in ('strict-origin', 'origin-when-cross-origin'):
        return 8
    if lowered in REFERRER_POLICIES:
        return 6
    return 3


def _referrer_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add Referrer-Policy header to control referrer information'
    if not value:
        return 'Configure Referrer-Policy properly'
    if value.strip().lower() in BEST_REFERRER_POLICIES:
        return 'Referrer-Policy is optimally configured'
    return 'Consider using "strict-origin-when-cross-origin" or "no-referrer" for better privacy'


# ===== Permissions-Policy =====

RESTRICTED_PERMISSIONS = [
    'camera=', 'microphone=', 'geolocation=', 'payment=', 'usb=', 'magnetometer=', 'gyroscope=',
]


def _permissions_score(value: str) -> float:
    restricted = sum(1 for permission in RESTRICTED_PERMISSIONS if permission in value)
    return min(10, round(8 + 0.2 * restricted, 1))


def _permissions_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add Permissions-Policy header to control browser features and APIs'
    return 'Consider restricting unnecessary permissions like camera, microphone, geolocation'


# ===== X-XSS-Protection =====

def _xxss_score(value: str) -> float:
    normalized = value.strip().lower()
    if normalized == '1; mode=block':
        return 5
    if normalized == '1':
        return 3
    if normalized == '0':
        return 1
    return 2


def _xxss_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Add X-XSS-Protection: 1; mode=block header (legacy browsers)'
    if value and value.strip().lower() == '1; mode=block':
        return 'X-XSS-Protection is properly configured'
    return 'Set X-XSS-Protection to "1; mode=block" or consider removing for modern CSP'


# ===== Expect-CT =====

def _expect_ct_score(value: str) -> float:
    score = 3
    if _max_age(value) > 0:
        score += 1
    if 'enforce' in value.lower():
        score += 1
    return score


def _expect_ct_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Consider adding Expect-CT header for Certificate Transparency'
    if not value or 'enforce' not in value.lower():
        return 'Consider adding "enforce" directive to Expect-CT'
    return 'Expect-CT is properly configured'


# ===== Cross-Origin-* =====

def _token_scorer(table: Dict[str, float], fallback: float) -> Callable[[str], float]:
    def score(value: str) -> float:
        return table.get(value.strip().lower(), fallback)
    return score


def _coep_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Consider adding Cross-Origin-Embedder-Policy for enhanced security'
    if value and value.strip().lower() == 'require-corp':
        return 'COEP is optimally configured'
    return 'Consider using "require-corp" for stronger protection'


def _coop_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Consider adding Cross-Origin-Opener-Policy for process isolation'
    if value and value.strip().lower() == 'same-origin':
        return 'COOP is optimally configured'
    return 'Consider using "same-origin" for better isolation'


def _corp_recommendation(present: bool, value: Optional[str]) -> str:
    if not present:
        return 'Consider adding Cross-Origin-Resource-Policy to prevent unwanted embedding'
    if value and value.strip().lower() in ('same-site', 'same-origin'):
        return 'CORP is properly configured'
    return 'Consider using "same-site" or "same-origin" for better protection'


HEADER_RULES = (
    HeaderRule('strict-transport-security', 20, 15, _hsts_score, _hsts_recommendation),
    HeaderRule('content-security-policy', 20, 10, _csp_score, _csp_recommendation),
    HeaderRule('x-frame-options', 15, 10, _xfo_score, _xfo_recommendation),
    HeaderRule('x-content-type-options', 10, 10, _xcto_score, _xcto_recommendation),
    HeaderRule('referrer-policy', 10, 6, _referrer_score, _referrer_recommendation),
    HeaderRule('permissions-policy', 10, 8, _permissions_score, _permissions_recommendation),
    HeaderRule('x-xss-protection', 5, 3, _xxss_score, _xxss_recommendation),
    HeaderRule('expect-ct', 5, 3, _expect_ct_score, _expect_ct_recommendation),
    HeaderRule('cross-origin-embedder-policy', 5, 4,
               _token_scorer({'require-corp': 5, 'credentialless': 4}, 3), _coep_recommendation),
    HeaderRule('cross-origin-opener-policy', 5, 4,
               _token_scorer({'same-origin': 5, 'same-origin-allow-popups': 4}, 3), _coop_recommendation),
    HeaderRule('cross-origin-resource-policy', 5, 3,
               _token_scorer({'same-site': 5, 'same-origin': 4, 'cross-origin': 3}, 2), _corp_recommendation),
)

MAX_TOTAL_SCORE = sum(rule.max_score for rule in HEADER_RULES)


def analyze_headers(response_headers: Mapping[str, str]) -> Dict[str, HeaderInfo]:
    """Evaluate every known header against a response's headers.

    Header names are matched case-insensitively.
    """
    lowered = {name.lower(): value for name, value in response_headers.items()}
    return {rule.name: rule.evaluate(lowered.get(rule.name)) for rule in HEADER_RULES}


def overall_score(analysis: Mapping[str, HeaderInfo]) -> int:
    achieved = sum(info.score for info in analysis.values())
    return round_half_up((achieved / MAX_TOTAL_SCORE) * 100)
