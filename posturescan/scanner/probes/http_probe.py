"""HTTP probe - one HEAD request, response headers back.

Only headers matter to us, so we never download a body. Redirects are
followed and the final response's headers are what get returned.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from posturescan.util.errors import FetchError, ScanTimeoutError
from posturescan.util.time import now_utc, duration_ms

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'SecurityPosture-HeadersScanner/1.0'


@dataclass
class HeadResponse:
    status: int
    url: str
    headers: Dict[str, str] = field(default_factory=dict)  # lowercase names
    duration_ms: float = 0.0


class HTTPProbe:
    """Async HEAD client.

    Use as an async context manager so the aiohttp session is always closed:

        async with HTTPProbe(timeout=30) as probe:
            response = await probe.head('example.com')
    """

    def __init__(self, timeout: float = 30.0, user_agent: str = DEFAULT_USER_AGENT,
                 verify_ssl: bool = True):
        """Initialize HTTP probe with timeout, User-Agent and TLS verification flag."""
        self.timeout = timeout
        self.user_agent = user_agent
        self.verify_ssl = verify_ssl
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Set up aiohttp session."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        connector = aiohttp.TCPConnector(limit=10, limit_per_host=2)
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers={'User-Agent': self.user_agent}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up session."""
        if self.session:
            await self.session.close()

    async def head(self, fqdn: str, scheme: str = 'https', path: str = '/') -> HeadResponse:
        """Send HEAD to scheme://fqdn/path.

        Raises:
            ScanTimeoutError: the request did not finish within the timeout
            FetchError: anything else that stopped us getting a response
        """
        if self.session is None:
            raise RuntimeError("HTTPProbe must be used as an async context manager")

        start = now_utc()
        url = f"{scheme}://{fqdn}{path}"
        kwargs = {'allow_redirects': True}
        if not self.verify_ssl:
            kwargs['ssl'] = False

        try:
            async with self.session.head(url, **kwargs) as resp:
                headers: Dict[str, str] = {}
                for name, value in resp.headers.items():
                    key = name.lower()
                    # Repeated headers are folded the way browsers expose them
                    headers[key] = f"{headers[key]}, {value}" if key in headers else value

                return HeadResponse(
                    status=resp.status,
                    url=str(resp.url),
                    headers=headers,
                    duration_ms=duration_ms(start),
                )

        except asyncio.TimeoutError as e:
            logger.debug(f"HEAD timeout for {url}")
            raise ScanTimeoutError('Request timeout') from e

        except aiohttp.ClientError as e:
            logger.debug(f"HEAD failed for {url}: {type(e).__name__}: {e}")
            raise FetchError(f"{type(e).__name__}: {e}") from e
