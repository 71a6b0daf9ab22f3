"""DNS / email-security analyzer.

All lookups for a domain run concurrently and fail independently: a failed
lookup contributes nothing, it never fails the analysis. Worst case is an
empty DNSResult.
"""

import logging
from typing import Dict, List, Optional

from posturescan.util.concurrency import gather_settled
from posturescan.util.config import EngineSettings
from posturescan.util.types import DNSRecord, DNSResult, EmailSecurity
from posturescan.scanner.checks.email_checks import evaluate_dkim, evaluate_dmarc, evaluate_spf
from posturescan.scanner.probes.dns_probe import DNSProbe, RECORD_TYPES

logger = logging.getLogger(__name__)


class DNSAnalyzer:
    """Collects records, email authentication status, DNSSEC and CAA."""

    def __init__(self, settings: Optional[EngineSettings] = None,
                 dns_probe: Optional[DNSProbe] = None):
        self.settings = settings or EngineSettings()
        self.dns_probe = dns_probe or DNSProbe(
            timeout=self.settings.dns_timeout,
            dnssec_resolvers=self.settings.dnssec_resolvers,
        )

    async def scan_domain(self, domain: str) -> DNSResult:
        """Analyze one domain. Never raises for lookup failures."""
        dmarc_name = f"_dmarc.{domain}"

        lookups = {rdtype: self.dns_probe.resolve(domain, rdtype) for rdtype in RECORD_TYPES}
        lookups['DMARC'] = self.dns_probe.resolve(dmarc_name, 'TXT')
        lookups['DS'] = self.dns_probe.has_ds(domain)

        settled = await gather_settled(lookups)

        answers: Dict[str, List[DNSRecord]] = {}
        for name, outcome in settled.items():
            if name == 'DS':
                continue
            if outcome.ok:
                answers[name] = outcome.value
            else:
                logger.debug(f"DNS {name} lookup for {domain} skipped: {outcome.error}")
                answers[name] = []

        ds = settled['DS']
        dnssec = bool(ds.value) if ds.ok else False

        apex_txt = [record.value for record in answers['TXT']]
        dmarc_txt = [record.value for record in answers['DMARC']]

        records: List[DNSRecord] = []
        for rdtype in RECORD_TYPES:
            records.extend(answers[rdtype])
        records.extend(record for record in answers['DMARC'] if 'v=dmarc1' in record.value.lower())

        result = DNSResult(
            records=records,
            email_security=EmailSecurity(
                spf=evaluate_spf(apex_txt),
                dmarc=evaluate_dmarc(dmarc_txt),
                dkim=evaluate_dkim(apex_txt),
            ),
            dnssec=dnssec,
            nameservers=[record.value for record in answers['NS']],
            mx=answers['MX'],
            caa=answers['CAA'],
        )

        email = result.email_security
        logger.info(
            f"DNS {domain}: {len(records)} records, spf={email.spf.present} "
            f"dmarc={email.dmarc.present} dkim={email.dkim.present} "
            f"dnssec={dnssec} caa={len(result.caa)}"
        )
        return result

    async def scan_domains(self, domains: List[str]) -> List[DNSResult]:
        """Analyze several domains; only successful analyses are returned."""
        settled = await gather_settled({domain: self.scan_domain(domain) for domain in domains})

        results = []
        for domain, outcome in settled.items():
            if outcome.ok:
                results.append(outcome.value)
            else:
                logger.warning(f"DNS analysis for {domain} failed: {outcome.error}")
        return results
