"""TLS probe - raw handshakes for certificate, cipher and protocol support.

No HTTP here, just the TLS layer. Two kinds of handshake:
- the primary handshake, which grabs the leaf certificate and the negotiated
  protocol/cipher and records whether the chain verified
- one pinned-version handshake per protocol for the support matrix

Chain problems never stop the scan - invalid-chain hosts are exactly the
ones we want to look at.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import List, Optional

from posturescan.util.errors import ScanConnectionError, ScanTimeoutError
from posturescan.util.types import SSLProtocol
from posturescan.scanner.checks.tls_checks import (
    PROTOCOLS_TO_TEST, SECURE_PROTOCOLS, normalize_protocol_name,
)

logger = logging.getLogger(__name__)

TLS_VERSIONS = {
    'SSLv3': getattr(ssl.TLSVersion, 'SSLv3', None),
    'TLSv1.0': getattr(ssl.TLSVersion, 'TLSv1', None),
    'TLSv1.1': getattr(ssl.TLSVersion, 'TLSv1_1', None),
    'TLSv1.2': getattr(ssl.TLSVersion, 'TLSv1_2', None),
    'TLSv1.3': getattr(ssl.TLSVersion, 'TLSv1_3', None),
}


@dataclass
class TLSHandshake:
    """What the primary handshake saw."""
    certificate_der: Optional[bytes]
    protocol: str
    cipher: Optional[str]
    cipher_bits: Optional[int]
    authorized: bool
    authorization_error: Optional[str] = None


def _accept_legacy(context: ssl.SSLContext) -> ssl.SSLContext:
    """Let a context negotiate every version and cipher this OpenSSL build has.

    Old versions and weak suites need the lowest security level or OpenSSL
    refuses to offer them at all.
    """
    try:
        context.set_ciphers('ALL:@SECLEVEL=0')
    except ssl.SSLError:
        pass
    context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
    return context


def _verifying_context() -> ssl.SSLContext:
    return _accept_legacy(ssl.create_default_context())


def _unverified_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return _accept_legacy(context)


def _pinned_context(version: ssl.TLSVersion) -> ssl.SSLContext:
    """Context that only speaks one protocol version."""
    context = _unverified_context()
    context.minimum_version = version
    context.maximum_version = version
    return context


async def _close(writer: asyncio.StreamWriter):
    writer.close()
    try:
        await writer.wait_closed()
    except (OSError, asyncio.TimeoutError):
        # Peers often drop the connection without a close_notify
        pass


class TLSProbe:
    """Async TLS handshakes against host:port.

    Much faster than going through an HTTP client when we only need TLS info.
    """

    def __init__(self, timeout: float = 30.0, protocol_timeout: float = 5.0):
        """Initialize TLS probe with primary and per-protocol timeouts."""
        self.timeout = timeout
        self.protocol_timeout = protocol_timeout

    async def _open(self, fqdn: str, port: int, context: ssl.SSLContext, timeout: float):
        return await asyncio.wait_for(
            asyncio.open_connection(fqdn, port, ssl=context, server_hostname=fqdn),
            timeout=timeout
        )

    async def handshake(self, fqdn: str, port: int = 443) -> TLSHandshake:
        """Perform the primary handshake.

        Tries a verifying handshake first. If that fails at the TLS layer
        (chain verification or anything else) the reason is kept and the
        handshake is redone without verification. Both attempts accept
        legacy protocol versions and weak ciphers so misconfigured hosts
        can still be graded.

        Raises ScanTimeoutError or ScanConnectionError if no TLS session
        could be established at all.
        """
        authorized = True
        authorization_error = None

        try:
            try:
                reader, writer = await self._open(fqdn, port, _verifying_context(), self.timeout)
            except ssl.SSLError as e:
                authorized = False
                authorization_error = getattr(e, 'verify_message', None) or str(e)
                logger.debug(f"Verifying handshake failed for {fqdn}:{port}: {authorization_error}")
                reader, writer = await self._open(fqdn, port, _unverified_context(), self.timeout)
        except asyncio.TimeoutError as e:
            raise ScanTimeoutError(f"TLS handshake with {fqdn}:{port} timed out after {self.timeout}s") from e
        except ssl.SSLError as e:
            raise ScanConnectionError(f"TLS handshake with {fqdn}:{port} failed: {e}") from e
        except OSError as e:
            raise ScanConnectionError(f"Cannot connect to {fqdn}:{port}: {e}") from e

        try:
            ssl_obj = writer.get_extra_info('ssl_object')
            if ssl_obj is None:
                raise ScanConnectionError(f"No TLS session established with {fqdn}:{port}")

            cipher = ssl_obj.cipher()
            return TLSHandshake(
                certificate_der=ssl_obj.getpeercert(binary_form=True),
                protocol=normalize_protocol_name(ssl_obj.version()) or 'unknown',
                cipher=cipher[0] if cipher else None,
                cipher_bits=cipher[2] if cipher and len(cipher) > 2 else None,
                authorized=authorized,
                authorization_error=authorization_error,
            )
        finally:
            await _close(writer)

    async def supports_protocol(self, fqdn: str, port: int, protocol: str) -> bool:
        """True if the server completes a handshake pinned to one version.

        Any failure - refusal, timeout, a version this OpenSSL build can't
        speak - counts as not enabled.
        """
        version = TLS_VERSIONS.get(protocol)
        if version is None:
            return False

        try:
            context = _pinned_context(version)
        except (ValueError, ssl.SSLError) as e:
            logger.debug(f"Local TLS stack cannot offer {protocol}: {e}")
            return False

        try:
            reader, writer = await self._open(fqdn, port, context, self.protocol_timeout)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"{protocol} not accepted by {fqdn}:{port}: {type(e).__name__}")
            return False

        await _close(writer)
        return True

    async def probe_protocols(self, fqdn: str, port: int = 443) -> List[SSLProtocol]:
        """Probe every protocol version concurrently.

        Each probe has its own timeout; one failing never cancels another.
        """
        supported = await asyncio.gather(
            *(self.supports_protocol(fqdn, port, protocol) for protocol in PROTOCOLS_TO_TEST)
        )
        return [
            SSLProtocol(
                name=protocol,
                version=protocol,
                enabled=enabled,
                secure=protocol in SECURE_PROTOCOLS,
            )
            for protocol, enabled in zip(PROTOCOLS_TO_TEST, supported)
        ]
