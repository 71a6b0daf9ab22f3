"""Security header analyzer - HEAD the site, grade the headers."""

import logging
from typing import Optional

from posturescan.util.config import EngineSettings
from posturescan.util.errors import FetchError, ScanTimeoutError
from posturescan.util.types import HeadersResult
from posturescan.scanner.checks.header_checks import analyze_headers, overall_score
from posturescan.scanner.probes.http_probe import HTTPProbe

logger = logging.getLogger(__name__)


class HeaderAnalyzer:

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    def _probe(self) -> HTTPProbe:
        return HTTPProbe(timeout=self.settings.http_timeout, user_agent=self.settings.user_agent)

    async def analyze(self, domain: str) -> HeadersResult:
        """Fetch https://domain/ with HEAD and score its security headers.

        Raises:
            ScanTimeoutError: 'Request timeout'
            FetchError: 'Headers scan failed: ...' for any other fetch failure
        """
        try:
            async with self._probe() as probe:
                response = await probe.head(domain)
        except ScanTimeoutError:
            raise
        except FetchError as e:
            raise FetchError(f"Headers scan failed: {e}") from e

        analysis = analyze_headers(response.headers)
        score = overall_score(analysis)
        present = sum(1 for info in analysis.values() if info.present)

        logger.info(f"Headers {domain}: {present}/{len(analysis)} present, score={score}")
        return HeadersResult(score=score, headers=analysis)
