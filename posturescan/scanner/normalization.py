"""Domain input cleaning and validation.

Scan targets arrive however users type them:

    "https://Example.COM/login"  vs  "example.com"  vs  "  EXAMPLE.com  "

All three mean the same target. Cleaning turns them into one canonical form
before anything touches the network or the scan record store, so one domain
never ends up as several scan records.

PIPELINE:
1. Trim whitespace and lowercase
2. Strip an http:// or https:// prefix
3. Drop everything from the first '/' (paths, queries)
4. Drop a trailing dot and a :port suffix
5. Punycode internationalized names ("münchen.de" -> "xn--mnchen-3ya.de")
6. Validate the result as a multi-label DNS name

Validation is purely syntactic. A domain that passes may still not resolve;
that is the analyzers' problem, not ours.

REFERENCES:
- RFC 1035: DNS name format rules
- RFC 3492: Punycode (IDN encoding)
"""

import re
import logging
from typing import Iterable, List

from posturescan.util.errors import ValidationError

logger = logging.getLogger(__name__)

# One or more labels followed by a final label; each label 1-63 chars,
# alphanumeric at both ends, hyphens allowed inside
DOMAIN_PATTERN = re.compile(
    r'^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+'
    r'[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$'
)

MAX_DOMAIN_LENGTH = 253


def clean_domain(domain: str) -> str:
    """Reduce user input to a bare, lowercase host name.

    Examples:
        clean_domain("  HTTPS://Example.com/path ") -> "example.com"
        clean_domain("example.com.")               -> "example.com"
        clean_domain("example.com:8443")           -> "example.com"
    """
    cleaned = domain.strip().lower()
    cleaned = re.sub(r'^https?://', '', cleaned)
    cleaned = cleaned.split('/')[0]
    cleaned = cleaned.split(':')[0]
    cleaned = cleaned.rstrip('.')

    try:
        cleaned = cleaned.encode('idna').decode('ascii')
    except UnicodeError:
        logger.debug(f"Punycode conversion failed for {cleaned!r}")

    return cleaned


def is_valid_domain(domain: str) -> bool:
    """True if domain is a syntactically valid multi-label DNS name.

    Args:
        domain: Already-cleaned domain (see clean_domain)
    """
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    return DOMAIN_PATTERN.match(domain) is not None


def validate_domain(domain: str) -> str:
    """Clean and validate in one step.

    Returns:
        The cleaned domain

    Raises:
        ValidationError: if the input doesn't clean up into a valid domain
    """
    if not isinstance(domain, str):
        raise ValidationError(f"Domain must be a string, got {type(domain).__name__}")

    cleaned = clean_domain(domain)
    if not is_valid_domain(cleaned):
        raise ValidationError(f"Invalid domain: {domain!r}")
    return cleaned


def normalize_domains(domains: Iterable[str]) -> List[str]:
    """Validate a batch, dropping duplicates but keeping input order.

    Raises:
        ValidationError: on the first invalid entry
    """
    seen = set()
    normalized = []
    for domain in domains:
        cleaned = validate_domain(domain)
        if cleaned not in seen:
            seen.add(cleaned)
            normalized.append(cleaned)
        else:
            logger.info(f"Duplicate domain dropped: {cleaned}")
    return normalized
