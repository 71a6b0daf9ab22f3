"""
Tests for the network probes with sockets, sessions and resolvers patched out
"""

import asyncio
import ssl
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import aiohttp
import dns.exception
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.resolver
import pytest

from posturescan.util.errors import FetchError, ScanConnectionError, ScanTimeoutError
from posturescan.scanner.probes.dns_probe import DNSProbe, render_rdata
from posturescan.scanner.probes.http_probe import HTTPProbe
from posturescan.scanner.probes.tls_probe import TLSProbe
from conftest import write_server_credentials

OPEN_CONNECTION = 'posturescan.scanner.probes.tls_probe.asyncio.open_connection'


def fake_tls_connection(version='TLSv1.3', cipher=('TLS_AES_256_GCM_SHA384', 'TLSv1.3', 256), der=b'DER'):
    ssl_obj = Mock()
    ssl_obj.version.return_value = version
    ssl_obj.cipher.return_value = cipher
    ssl_obj.getpeercert.return_value = der

    writer = Mock()
    writer.get_extra_info.return_value = ssl_obj
    writer.wait_closed = AsyncMock()
    return Mock(), writer


def verification_error(message='self-signed certificate'):
    error = ssl.SSLCertVerificationError(1, f'certificate verify failed: {message}')
    error.verify_message = message
    return error


class TestTLSProbe:

    def test_handshake_success(self):
        reader, writer = fake_tls_connection()
        with patch(OPEN_CONNECTION, new=AsyncMock(return_value=(reader, writer))):
            handshake = asyncio.run(TLSProbe().handshake('example.com'))

        assert handshake.authorized is True
        assert handshake.authorization_error is None
        assert handshake.protocol == 'TLSv1.3'
        assert handshake.cipher == 'TLS_AES_256_GCM_SHA384'
        assert handshake.cipher_bits == 256
        assert handshake.certificate_der == b'DER'
        writer.close.assert_called_once()

    def test_tlsv1_renamed(self):
        reader, writer = fake_tls_connection(version='TLSv1')
        with patch(OPEN_CONNECTION, new=AsyncMock(return_value=(reader, writer))):
            handshake = asyncio.run(TLSProbe().handshake('example.com'))
        assert handshake.protocol == 'TLSv1.0'

    def test_invalid_chain_still_scanned(self):
        reader, writer = fake_tls_connection()
        mock_open = AsyncMock(side_effect=[verification_error(), (reader, writer)])

        with patch(OPEN_CONNECTION, new=mock_open):
            handshake = asyncio.run(TLSProbe().handshake('self-signed.example'))

        assert handshake.authorized is False
        assert handshake.authorization_error == 'self-signed certificate'
        assert mock_open.call_count == 2
        retry_context = mock_open.call_args_list[1].kwargs['ssl']
        assert retry_context.verify_mode == ssl.CERT_NONE

    def test_timeout(self):
        with patch(OPEN_CONNECTION, new=AsyncMock(side_effect=asyncio.TimeoutError())):
            with pytest.raises(ScanTimeoutError):
                asyncio.run(TLSProbe(timeout=1).handshake('slow.example'))

    def test_connection_refused(self):
        with patch(OPEN_CONNECTION, new=AsyncMock(side_effect=ConnectionRefusedError('refused'))):
            with pytest.raises(ScanConnectionError) as exc_info:
                asyncio.run(TLSProbe().handshake('down.example'))

        assert isinstance(exc_info.value, ConnectionError)

    def test_tls_alert(self):
        with patch(OPEN_CONNECTION, new=AsyncMock(side_effect=ssl.SSLError('handshake failure'))):
            with pytest.raises(ScanConnectionError):
                asyncio.run(TLSProbe().handshake('broken.example'))

    def test_handshake_failure_retried_with_legacy_context(self):
        reader, writer = fake_tls_connection(version='TLSv1.2', cipher=('AES128-SHA', 'TLSv1.2', 128))
        alert = ssl.SSLError(1, '[SSL: SSLV3_ALERT_HANDSHAKE_FAILURE] sslv3 alert handshake failure')
        mock_open = AsyncMock(side_effect=[alert, (reader, writer)])

        with patch(OPEN_CONNECTION, new=mock_open):
            handshake = asyncio.run(TLSProbe().handshake('legacy.example'))

        assert handshake.cipher == 'AES128-SHA'
        assert handshake.authorized is False
        assert 'handshake failure' in handshake.authorization_error
        first_context = mock_open.call_args_list[0].kwargs['ssl']
        retry_context = mock_open.call_args_list[1].kwargs['ssl']
        assert first_context.verify_mode == ssl.CERT_REQUIRED
        assert first_context.minimum_version == ssl.TLSVersion.MINIMUM_SUPPORTED
        assert retry_context.verify_mode == ssl.CERT_NONE
        assert retry_context.minimum_version == ssl.TLSVersion.MINIMUM_SUPPORTED

    def test_supports_protocol(self):
        reader, writer = fake_tls_connection(version='TLSv1.2')
        with patch(OPEN_CONNECTION, new=AsyncMock(return_value=(reader, writer))) as mock_open:
            assert asyncio.run(TLSProbe().supports_protocol('example.com', 443, 'TLSv1.2')) is True

        context = mock_open.call_args.kwargs['ssl']
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2
        assert context.maximum_version == ssl.TLSVersion.TLSv1_2

    @pytest.mark.parametrize('error', [asyncio.TimeoutError(), ssl.SSLError('no protocols'), OSError('reset')])
    def test_protocol_refused(self, error):
        with patch(OPEN_CONNECTION, new=AsyncMock(side_effect=error)):
            assert asyncio.run(TLSProbe().supports_protocol('example.com', 443, 'TLSv1.2')) is False

    def test_unknown_protocol(self):
        assert asyncio.run(TLSProbe().supports_protocol('example.com', 443, 'SSLv2')) is False

    def test_protocol_matrix(self):
        supported = {'TLSv1.2', 'TLSv1.3'}
        fake = AsyncMock(side_effect=lambda fqdn, port, protocol: protocol in supported)

        with patch.object(TLSProbe, 'supports_protocol', new=fake):
            protocols = asyncio.run(TLSProbe().probe_protocols('example.com'))

        assert [p.name for p in protocols] == ['TLSv1.3', 'TLSv1.2', 'TLSv1.1', 'TLSv1.0', 'SSLv3']
        assert {p.name for p in protocols if p.enabled} == supported
        assert {p.name for p in protocols if p.secure} == supported
        assert fake.call_count == 5


class TestTLSProbeLocalServer:
    """Real handshakes against a TLS server on 127.0.0.1"""

    def serve_and_probe(self, server_context):
        async def on_connect(reader, writer):
            writer.close()

        async def run():
            server = await asyncio.start_server(on_connect, '127.0.0.1', 0, ssl=server_context)
            port = server.sockets[0].getsockname()[1]
            probe = TLSProbe(timeout=5, protocol_timeout=5)
            try:
                handshake = await probe.handshake('127.0.0.1', port)
                tls12 = await probe.supports_protocol('127.0.0.1', port, 'TLSv1.2')
            finally:
                server.close()
                await server.wait_closed()
            return handshake, tls12

        return asyncio.run(run())

    def test_rsa_key_exchange_only_server(self, tmp_path):
        cert_file, key_file = write_server_credentials(tmp_path)
        server_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        server_context.load_cert_chain(cert_file, key_file)
        server_context.maximum_version = ssl.TLSVersion.TLSv1_2
        server_context.set_ciphers('AES128-SHA:@SECLEVEL=0')

        handshake, tls12 = self.serve_and_probe(server_context)

        assert tls12 is True
        assert handshake.protocol == 'TLSv1.2'
        assert handshake.cipher == 'AES128-SHA'
        assert handshake.authorized is False
        assert handshake.authorization_error
        assert handshake.certificate_der


def fake_head_session(response=None, error=None):
    session = Mock()
    if error is not None:
        session.head = Mock(side_effect=error)
    else:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        session.head = Mock(return_value=context)
    return session


def fake_response(headers):
    response = Mock()
    response.status = 200
    response.url = 'https://example.com/'
    response.headers.items.return_value = headers
    return response


class TestHTTPProbe:

    def test_head_lowercases_and_folds_headers(self):
        probe = HTTPProbe()
        probe.session = fake_head_session(fake_response([
            ('Strict-Transport-Security', 'max-age=31536000'),
            ('Set-Cookie', 'a=1'),
            ('Set-Cookie', 'b=2'),
        ]))

        response = asyncio.run(probe.head('example.com'))

        assert response.status == 200
        assert response.headers['strict-transport-security'] == 'max-age=31536000'
        assert response.headers['set-cookie'] == 'a=1, b=2'
        probe.session.head.assert_called_once_with('https://example.com/', allow_redirects=True)

    def test_unverified_mode(self):
        probe = HTTPProbe(verify_ssl=False)
        probe.session = fake_head_session(fake_response([]))

        asyncio.run(probe.head('example.com'))

        assert probe.session.head.call_args.kwargs['ssl'] is False

    def test_timeout(self):
        probe = HTTPProbe()
        probe.session = fake_head_session(error=asyncio.TimeoutError())

        with pytest.raises(ScanTimeoutError, match='Request timeout'):
            asyncio.run(probe.head('example.com'))

    def test_client_error(self):
        probe = HTTPProbe()
        probe.session = fake_head_session(error=aiohttp.ClientError('connection refused'))

        with pytest.raises(FetchError, match='connection refused'):
            asyncio.run(probe.head('example.com'))

    def test_requires_context_manager(self):
        with pytest.raises(RuntimeError):
            asyncio.run(HTTPProbe().head('example.com'))

    def test_session_lifecycle(self):
        async def run():
            async with HTTPProbe(timeout=5, user_agent='test-agent') as probe:
                session = probe.session
                assert session.headers['User-Agent'] == 'test-agent'
            return session

        session = asyncio.run(run())
        assert session.closed


def rdata(rdtype, text):
    return dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.from_text(rdtype), text)


class FakeRRset(list):
    def __init__(self, name, ttl, items):
        super().__init__(items)
        self.name = dns.name.from_text(name)
        self.ttl = ttl


def fake_answer(name, items, ttl=300):
    answer = Mock()
    answer.rrset = FakeRRset(name, ttl, items)
    return answer


class TestDNSProbe:

    def probe_with(self, **resolve_kwargs):
        resolver = Mock()
        resolver.resolve = AsyncMock(**resolve_kwargs)
        return DNSProbe(timeout=2, resolver=resolver, dnssec_resolver=resolver), resolver

    def test_render_records(self):
        assert render_rdata('A', rdata('A', '93.184.216.34')).value == '93.184.216.34'

        mx = render_rdata('MX', rdata('MX', '10 mail.example.com.'))
        assert mx.value == 'mail.example.com'
        assert mx.priority == 10

        assert render_rdata('NS', rdata('NS', 'ns1.example.com.')).value == 'ns1.example.com'
        assert render_rdata('TXT', rdata('TXT', '"v=spf1 " "-all"')).value == 'v=spf1 -all'
        assert render_rdata('CAA', rdata('CAA', '0 issue "letsencrypt.org"')).value == '0 issue "letsencrypt.org"'

    def test_resolve(self):
        probe, resolver = self.probe_with(return_value=fake_answer(
            'example.com.', [rdata('MX', '10 mail.example.com.'), rdata('MX', '20 backup.example.com.')], ttl=600
        ))

        records = asyncio.run(probe.resolve('example.com', 'MX'))

        assert [(r.value, r.priority) for r in records] == [('mail.example.com', 10), ('backup.example.com', 20)]
        assert all(r.name == 'example.com' and r.ttl == 600 and r.type == 'MX' for r in records)
        resolver.resolve.assert_awaited_once_with('example.com', 'MX', lifetime=2)

    @pytest.mark.parametrize('error', [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
    def test_no_records(self, error):
        probe, _ = self.probe_with(side_effect=error)
        assert asyncio.run(probe.resolve('example.com', 'CAA')) == []

    def test_timeout(self):
        probe, _ = self.probe_with(side_effect=dns.exception.Timeout())
        with pytest.raises(ScanTimeoutError):
            asyncio.run(probe.resolve('example.com', 'A'))

    def test_other_failure(self):
        probe, _ = self.probe_with(side_effect=dns.exception.DNSException('servfail'))
        with pytest.raises(ScanConnectionError):
            asyncio.run(probe.resolve('example.com', 'A'))

    def test_has_ds(self):
        probe, resolver = self.probe_with(return_value=fake_answer(
            'example.com.', [rdata('DS', '12345 13 2 ' + 'AB' * 32)]
        ))

        assert asyncio.run(probe.has_ds('example.com')) is True
        assert resolver.resolve.call_args.args == ('example.com', 'DS')

    def test_has_ds_failure_means_absent(self):
        probe, _ = self.probe_with(side_effect=dns.resolver.NoAnswer())
        assert asyncio.run(probe.has_ds('example.com')) is False

    def test_dnssec_resolver_is_bounded(self):
        probe = DNSProbe(timeout=3, dnssec_resolvers=['9.9.9.9'])

        assert probe.dnssec_resolvers == ['9.9.9.9']
        assert probe.dnssec_resolver.timeout == 3
        assert probe.dnssec_resolver.lifetime == 3
