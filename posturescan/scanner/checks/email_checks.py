"""
Email Authentication Checks
===========================
Turns raw TXT record strings into SPF / DMARC / DKIM status:
- SPF: any apex TXT containing v=spf1
- DMARC: any _dmarc.<domain> TXT containing v=dmarc1
- DKIM: heuristic indicators on apex TXT records (dkim, k=rsa, p=)

The DKIM check is an approximation. It looks for key-like material in TXT
records; it does not fetch selector records or verify any signature.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from posturescan.util.types import DKIMStatus, DMARCStatus, SPFStatus

DKIM_INDICATORS = ('dkim', 'k=rsa', 'p=')


@dataclass
class SPFRecord:
    """Terms of one v=spf1 record, in record order."""
    raw_value: str
    mechanisms: List[str] = field(default_factory=list)
    all_mechanism: Optional[str] = None  # qualifier kept: -all, ~all, ...
    includes: List[str] = field(default_factory=list)
    redirects: List[str] = field(default_factory=list)

    @property
    def has_all(self) -> bool:
        return self.all_mechanism is not None


@dataclass
class DMARCRecord:
    """Tags of one v=DMARC1 record that the engine reports on."""
    raw_value: str
    p: Optional[str] = None
    sp: Optional[str] = None
    rua: List[str] = field(default_factory=list)
    ruf: List[str] = field(default_factory=list)
    pct: Optional[int] = None


def parse_spf(spf_record: str) -> SPFRecord:
    record = SPFRecord(raw_value=spf_record)

    terms = spf_record.split()
    if terms and terms[0].lower() == 'v=spf1':
        terms = terms[1:]

    for term in terms:
        record.mechanisms.append(term)
        bare = term.lstrip('+-~?')
        name, _, target = bare.partition(':') if ':' in bare else bare.partition('=')

        if name == 'include':
            record.includes.append(target)
        elif name == 'redirect':
            record.redirects.append(target)
        elif name.lower() == 'all':
            record.all_mechanism = term

    return record


def _uri_list(value: Optional[str]) -> List[str]:
    return [uri.strip() for uri in value.split(',')] if value else []


def parse_dmarc(dmarc_record: str) -> DMARCRecord:
    tags: Dict[str, str] = {}
    for chunk in dmarc_record.split(';'):
        key, sep, value = chunk.partition('=')
        if sep:
            tags[key.strip().lower()] = value.strip()

    pct = tags.get('pct', '')
    return DMARCRecord(
        raw_value=dmarc_record,
        p=tags.get('p'),
        sp=tags.get('sp'),
        rua=_uri_list(tags.get('rua')),
        ruf=_uri_list(tags.get('ruf')),
        pct=int(pct) if pct.isdigit() else None,
    )


def evaluate_spf(txt_values: Iterable[str]) -> SPFStatus:
    for value in txt_values:
        if 'v=spf1' in value.lower():
            record = parse_spf(value)
            return SPFStatus(present=True, valid=True, record=value, mechanisms=record.mechanisms)
    return SPFStatus()


def evaluate_dmarc(txt_values: Iterable[str]) -> DMARCStatus:
    for value in txt_values:
        if 'v=dmarc1' in value.lower():
            record = parse_dmarc(value)
            emails = [uri[len('mailto:'):] if uri.lower().startswith('mailto:') else uri
                      for uri in record.rua]
            return DMARCStatus(
                present=True,
                valid=True,
                record=value,
                policy=record.p or '',
                percentage=record.pct,
                reporting_emails=emails,
            )
    return DMARCStatus()


def evaluate_dkim(txt_values: Iterable[str]) -> DKIMStatus:
    """Heuristic DKIM detection - see module docstring."""
    matches = [v for v in txt_values if any(marker in v.lower() for marker in DKIM_INDICATORS)]
    if not matches:
        return DKIMStatus()

    return DKIMStatus(
        present=True,
        valid=True,
        selectors=[],
        keys=[{'record': value, 'valid': True} for value in matches],
    )
