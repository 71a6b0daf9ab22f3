"""DNS probe - typed record lookups and a DS presence check.

Uses dnspython's async resolver. Every lookup stands alone: an empty answer
is just an empty list, and a real failure (timeout, SERVFAIL, no nameservers)
is raised as a ScanError so the caller can decide to ignore it.
"""

import logging
from typing import List, Optional, Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver

from posturescan.util.errors import ScanConnectionError, ScanTimeoutError
from posturescan.util.types import DNSRecord

logger = logging.getLogger(__name__)

RECORD_TYPES = ('A', 'AAAA', 'MX', 'TXT', 'NS', 'CAA')
PUBLIC_RESOLVERS = ('8.8.8.8', '1.1.1.1')


def _name(dns_name) -> str:
    return dns_name.to_text(omit_final_dot=True)


def _text(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode('utf-8', errors='replace')
    return str(raw)


def render_rdata(rdtype: str, rdata) -> DNSRecord:
    """Turn one dnspython rdata into our record shape (name/ttl filled later)."""
    priority = None
    if rdtype in ('A', 'AAAA'):
        value = rdata.address
    elif rdtype == 'MX':
        value = _name(rdata.exchange)
        priority = rdata.preference
    elif rdtype == 'TXT':
        # Long TXT records arrive as several character-strings
        value = ''.join(_text(s) for s in rdata.strings)
    elif rdtype == 'NS':
        value = _name(rdata.target)
    elif rdtype == 'CAA':
        value = f'{rdata.flags} {_text(rdata.tag)} "{_text(rdata.value)}"'
    else:
        value = rdata.to_text()

    return DNSRecord(type=rdtype, name='', value=value, ttl=0, priority=priority)


class DNSProbe:
    """Async DNS lookups for one domain at a time.

    The system resolver handles ordinary lookups. DS queries go to public
    resolvers so the answer doesn't depend on the local resolver's DNSSEC
    support.
    """

    def __init__(self, timeout: float = 5.0,
                 dnssec_resolvers: Sequence[str] = PUBLIC_RESOLVERS,
                 resolver: Optional[dns.asyncresolver.Resolver] = None,
                 dnssec_resolver: Optional[dns.asyncresolver.Resolver] = None):
        """Initialize with lookup timeout and the resolvers used for DS checks."""
        self.timeout = timeout
        self.dnssec_resolvers = list(dnssec_resolvers)
        self._resolver = resolver
        self._dnssec_resolver = dnssec_resolver

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            try:
                self._resolver = dns.asyncresolver.Resolver()
            except dns.resolver.NoResolverConfiguration:
                # No resolv.conf (containers) - fall back to the public resolvers
                self._resolver = dns.asyncresolver.Resolver(configure=False)
                self._resolver.nameservers = list(self.dnssec_resolvers)
            self._resolver.timeout = self.timeout
            self._resolver.lifetime = self.timeout
        return self._resolver

    @property
    def dnssec_resolver(self) -> dns.asyncresolver.Resolver:
        if self._dnssec_resolver is None:
            self._dnssec_resolver = dns.asyncresolver.Resolver(configure=False)
            self._dnssec_resolver.nameservers = list(self.dnssec_resolvers)
            self._dnssec_resolver.timeout = self.timeout
            self._dnssec_resolver.lifetime = self.timeout
        return self._dnssec_resolver

    async def resolve(self, name: str, rdtype: str) -> List[DNSRecord]:
        """Look up one record type.

        Returns [] when the name or type simply has no records.

        Raises:
            ScanTimeoutError: no resolver answered in time
            ScanConnectionError: any other resolution failure
        """
        try:
            answer = await self.resolver.resolve(name, rdtype, lifetime=self.timeout)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.exception.Timeout as e:
            raise ScanTimeoutError(f"{rdtype} lookup for {name} timed out") from e
        except dns.exception.DNSException as e:
            raise ScanConnectionError(f"{rdtype} lookup for {name} failed: {type(e).__name__}: {e}") from e

        rrset = answer.rrset
        if rrset is None:
            return []

        records = []
        for rdata in rrset:
            record = render_rdata(rdtype, rdata)
            record.name = _name(rrset.name)
            record.ttl = rrset.ttl
            records.append(record)

        logger.debug(f"{rdtype} {name}: {len(records)} record(s)")
        return records

    async def has_ds(self, name: str) -> bool:
        """True if the parent zone publishes a DS record for name.

        DS presence is a signal that DNSSEC is set up; no chain validation
        is done. Any lookup failure counts as absent.
        """
        try:
            answer = await self.dnssec_resolver.resolve(name, 'DS', lifetime=self.timeout)
        except dns.exception.DNSException as e:
            logger.debug(f"DS lookup for {name}: {type(e).__name__}")
            return False

        return answer.rrset is not None and len(answer.rrset) > 0
