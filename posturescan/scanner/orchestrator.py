"""Scan orchestrator - credit accounting, concurrent analyzers, final state.

One call runs one scan record through PENDING -> RUNNING -> COMPLETED|FAILED:

1. Deduct the scan type's cost (atomic, delegated to the credit ledger)
2. Mark the scan RUNNING
3. Run TLS + Headers (+ DNS for ADVANCED/PREMIUM) concurrently, wait for all
4. Decide total failure vs partial success
5. Substitute defaults for failed components, compute the composite score
6. Persist COMPLETED or FAILED

orchestrate_scan() never raises. Whatever goes wrong ends up as a FAILED
scan record and a success=False result.
"""

import logging
from typing import Any, Awaitable, Dict, Optional, Union

from posturescan.util.concurrency import Settled, gather_settled
from posturescan.util.config import EngineSettings
from posturescan.util.errors import InsufficientCreditsError
from posturescan.util.time import now_utc, duration_ms
from posturescan.util.types import (
    CreditLedger, OrchestratorResult, ScanResult, ScanStatus, ScanStore,
    ScanType, SCAN_TYPE_CREDITS,
)
from posturescan.scanner.analyzers.dns_analyzer import DNSAnalyzer
from posturescan.scanner.analyzers.header_analyzer import HeaderAnalyzer
from posturescan.scanner.analyzers.ssl_analyzer import SSLAnalyzer
from posturescan.scanner.scoring.model import (
    composite_score, default_dns_result, default_headers_result, default_ssl_result,
)

logger = logging.getLogger(__name__)

SCANNER_NAMES = {
    'ssl': 'SSL',
    'headers': 'Headers',
    'dns': 'DNS',
}

INSUFFICIENT_CREDITS_MESSAGE = 'Insufficient credits to perform scan'
TOTAL_FAILURE_MESSAGE = 'Critical scanners failed to complete'

# A FAILED record carries no score, grade or result blobs, even when it ran before.
FAILED_RESULT_FIELDS = {
    'security_score': None,
    'ssl_grade': None,
    'ssl_details': None,
    'header_details': None,
    'dns_details': None,
}


def runs_dns(scan_type: ScanType) -> bool:
    return scan_type in (ScanType.ADVANCED, ScanType.PREMIUM)


def is_total_failure(settled: Dict[str, Settled], scan_type: ScanType) -> bool:
    """TLS+Headers both failed, or (PREMIUM only) TLS+DNS both failed."""
    ssl_failed = not settled['ssl'].ok
    headers_failed = not settled['headers'].ok
    dns_failed = 'dns' in settled and not settled['dns'].ok

    if ssl_failed and headers_failed:
        return True
    if scan_type == ScanType.PREMIUM and ssl_failed and dns_failed:
        return True
    return False


def failure_reasons(settled: Dict[str, Settled]) -> str:
    return '; '.join(
        f"{SCANNER_NAMES[name]} scanner failed: {outcome.error}"
        for name, outcome in settled.items() if not outcome.ok
    )


class ScanOrchestrator:
    """Runs scans against a scan record store and a credit ledger.

    Analyzers are injectable so tests (and callers with their own probes)
    can swap them out.
    """

    def __init__(self, store: ScanStore, ledger: CreditLedger,
                 settings: Optional[EngineSettings] = None,
                 ssl_analyzer: Optional[SSLAnalyzer] = None,
                 header_analyzer: Optional[HeaderAnalyzer] = None,
                 dns_analyzer: Optional[DNSAnalyzer] = None):
        self.store = store
        self.ledger = ledger
        self.settings = settings or EngineSettings()
        self.ssl_analyzer = ssl_analyzer or SSLAnalyzer(self.settings)
        self.header_analyzer = header_analyzer or HeaderAnalyzer(self.settings)
        self.dns_analyzer = dns_analyzer or DNSAnalyzer(self.settings)

    def _deduct(self, user_id: str, amount: int, scan_type: ScanType, domain: str) -> bool:
        """True if the ledger took the credits."""
        try:
            deduction = self.ledger.deduct_credits(
                user_id, amount, f"{scan_type.value} security scan for {domain}"
            )
        except InsufficientCreditsError:
            return False

        if deduction.success:
            logger.info(f"Deducted {amount} credit(s) from {user_id}, balance now {deduction.new_balance}")
        return deduction.success

    def _mark_failed(self, scan_id: str, message: str):
        self.store.update_scan(scan_id, status=ScanStatus.FAILED, error_message=message, **FAILED_RESULT_FIELDS)

    def _analyzer_tasks(self, domain: str, scan_type: ScanType) -> Dict[str, Awaitable[Any]]:
        tasks = {
            'ssl': self.ssl_analyzer.probe(domain),
            'headers': self.header_analyzer.analyze(domain),
        }
        if runs_dns(scan_type):
            tasks['dns'] = self.dns_analyzer.scan_domain(domain)
        return tasks

    async def orchestrate_scan(self, scan_id: str, domain: str, user_id: str,
                               scan_type: Union[ScanType, str]) -> OrchestratorResult:
        """Run one scan to a terminal state. Never raises."""
        start = now_utc()
        credits_used = 0

        try:
            scan_type = ScanType(scan_type)
            cost = SCAN_TYPE_CREDITS[scan_type]
            logger.info(f"Scan {scan_id}: {scan_type.value} scan of {domain} for {user_id} ({cost} credits)")

            if not self._deduct(user_id, cost, scan_type, domain):
                logger.warning(f"Scan {scan_id}: insufficient credits for {user_id}")
                self._mark_failed(scan_id, INSUFFICIENT_CREDITS_MESSAGE)
                return OrchestratorResult(success=False, credits_used=0, error=INSUFFICIENT_CREDITS_MESSAGE)

            credits_used = cost
            self.store.update_scan(scan_id, status=ScanStatus.RUNNING, credits_used=cost)

            settled = await gather_settled(self._analyzer_tasks(domain, scan_type))

            for name, outcome in settled.items():
                if outcome.ok:
                    logger.info(f"Scan {scan_id}: {SCANNER_NAMES[name]} scanner finished")
                else:
                    logger.warning(f"Scan {scan_id}: {SCANNER_NAMES[name]} scanner failed: {outcome.error}")

            if is_total_failure(settled, scan_type):
                message = f"{TOTAL_FAILURE_MESSAGE}: {failure_reasons(settled)}"
                logger.error(f"Scan {scan_id}: total failure - {message}")
                self._mark_failed(scan_id, message)
                return OrchestratorResult(success=False, credits_used=cost, error=message)

            ssl_result = settled['ssl'].value if settled['ssl'].ok else None
            headers_result = settled['headers'].value if settled['headers'].ok else None
            dns_outcome = settled.get('dns')
            dns_result = dns_outcome.value if dns_outcome is not None and dns_outcome.ok else None

            score = composite_score(ssl=ssl_result, headers=headers_result, dns=dns_result)

            scan_result = ScanResult(
                ssl=ssl_result or default_ssl_result(),
                headers=headers_result or default_headers_result(),
                dns=dns_result or default_dns_result(),
            )

            self.store.update_scan(
                scan_id,
                status=ScanStatus.COMPLETED,
                security_score=score,
                ssl_grade=ssl_result.grade if ssl_result else None,
                ssl_details=scan_result.ssl.to_dict(),
                header_details=scan_result.headers.to_dict(),
                dns_details=scan_result.dns.to_dict(),
                error_message=None,
            )

            logger.info(
                f"Scan {scan_id}: COMPLETED {domain} score={score} "
                f"ssl_grade={ssl_result.grade if ssl_result else None} ({duration_ms(start):.0f}ms)"
            )
            return OrchestratorResult(success=True, credits_used=cost, scan_result=scan_result)

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Scan {scan_id}: orchestration failed: {message}", exc_info=True)
            try:
                self._mark_failed(scan_id, message)
            except Exception as store_error:
                logger.error(f"Scan {scan_id}: could not record failure: {store_error}")
            return OrchestratorResult(success=False, credits_used=credits_used, error=message)

    async def validate_and_orchestrate_scan(self, scan_id: str, domain: str, user_id: str,
                                            scan_type: Union[ScanType, str]) -> OrchestratorResult:
        """Check the scan record belongs to user_id and is PENDING, then run it.

        Rejections have no side effects and cost nothing. Never raises.
        """
        try:
            scan = self.store.get_scan(scan_id)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Scan {scan_id}: could not load scan record: {message}", exc_info=True)
            return OrchestratorResult(success=False, credits_used=0, error=message)

        if scan is None:
            return OrchestratorResult(success=False, credits_used=0, error='Scan not found')

        if scan.status != ScanStatus.PENDING:
            return OrchestratorResult(
                success=False, credits_used=0,
                error=f"Scan is not in pending state. Current status: {scan.status.value}"
            )

        if scan.user_id != user_id:
            return OrchestratorResult(
                success=False, credits_used=0, error='Unauthorized: Scan does not belong to user'
            )

        return await self.orchestrate_scan(scan_id, domain, user_id, scan_type)


async def orchestrate_scan(scan_id: str, domain: str, user_id: str,
                           scan_type: Union[ScanType, str],
                           store: ScanStore, ledger: CreditLedger,
                           settings: Optional[EngineSettings] = None) -> OrchestratorResult:
    """Convenience wrapper: build a ScanOrchestrator with default analyzers and run one scan."""
    return await ScanOrchestrator(store, ledger, settings).orchestrate_scan(
        scan_id, domain, user_id, scan_type
    )


async def validate_and_orchestrate_scan(scan_id: str, domain: str, user_id: str,
                                        scan_type: Union[ScanType, str],
                                        store: ScanStore, ledger: CreditLedger,
                                        settings: Optional[EngineSettings] = None) -> OrchestratorResult:
    return await ScanOrchestrator(store, ledger, settings).validate_and_orchestrate_scan(
        scan_id, domain, user_id, scan_type
    )
