"""Command-line entrypoint: scan one or more domains end to end.

FLOW:
1. Load settings (.env + environment) and set up logging
2. Clean/validate every domain (bad input exits with code 2, nothing scanned)
3. Open the SQLite state DB, seed the user with DEFAULT_CREDITS if new
4. Create a PENDING scan per domain and run them with bounded concurrency
5. Print a summary table, or the full results as JSON with --json

Exit codes: 0 all scans succeeded, 1 at least one failed, 2 invalid input.
"""

import argparse
import asyncio
import json
import sys
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from posturescan import __version__
from posturescan.util.concurrency import ConcurrencyController
from posturescan.util.config import EngineSettings, load_settings
from posturescan.util.errors import ValidationError
from posturescan.util.log import setup_logging
from posturescan.util.types import OrchestratorResult, Scan, ScanType
from posturescan.scanner.normalization import normalize_domains
from posturescan.scanner.orchestrator import ScanOrchestrator
from posturescan.state.state_manager import StateManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SCAN_FAILED = 1
EXIT_INVALID_INPUT = 2


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog='posturescan',
        description='Scan domains for TLS, HTTP security header and DNS/email security posture.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Scan types and costs:\n"
            "  BASIC     TLS + headers           1 credit\n"
            "  ADVANCED  TLS + headers + DNS     3 credits\n"
            "  PREMIUM   TLS + headers + DNS     5 credits\n"
        ),
    )
    ap.add_argument('domains', nargs='+', metavar='DOMAIN', help='domain(s) or URL(s) to scan')
    ap.add_argument('--type', dest='scan_type', default='BASIC',
                    choices=[t.value for t in ScanType], type=str.upper,
                    help='scan type (default: BASIC)')
    ap.add_argument('--user', default='local', help='user id to charge credits to (default: local)')
    ap.add_argument('--db', type=Path, default=None, help='state DB path (default: STATE_DB setting)')
    ap.add_argument('--json', action='store_true', help='print full results as JSON')
    ap.add_argument('--log-file', type=Path, default=None, help='also write logs to this file')
    ap.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return ap


async def run_scans(domains: List[str], scan_type: ScanType, user_id: str,
                    state: StateManager, settings: EngineSettings) -> List[Tuple[Scan, OrchestratorResult]]:
    """Create and run one scan per domain, at most max_concurrent_scans at a time."""
    orchestrator = ScanOrchestrator(state, state, settings)
    controller = ConcurrencyController(max_workers=settings.max_concurrent_scans)

    async def run_one(domain: str) -> Tuple[Scan, OrchestratorResult]:
        scan = state.create_scan(user_id, domain, scan_type)
        async with controller.acquire():
            result = await orchestrator.validate_and_orchestrate_scan(scan.id, domain, user_id, scan_type)
        return state.get_scan(scan.id), result

    return await asyncio.gather(*(run_one(domain) for domain in domains))


def print_summary(outcomes: List[Tuple[Scan, OrchestratorResult]], balance: Optional[int]):
    print()
    print(f"{'DOMAIN':<40} {'STATUS':<10} {'SCORE':>5} {'SSL':>4} {'CREDITS':>7}")
    print("-" * 70)
    for scan, result in outcomes:
        score = '-' if scan.security_score is None else str(scan.security_score)
        grade = scan.ssl_grade or '-'
        print(f"{scan.domain:<40} {scan.status.value:<10} {score:>5} {grade:>4} {result.credits_used:>7}")
        if result.error:
            print(f"  ✗ {result.error}")
    print("-" * 70)
    print(f"Remaining credits: {balance}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    setup_logging(log_file=args.log_file, level=settings.log_level,
                  stream=sys.stderr if args.json else None)

    try:
        domains = normalize_domains(args.domains)
    except ValidationError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    scan_type = ScanType(args.scan_type)
    state = StateManager(args.db or settings.state_db)
    state.create_user(args.user, settings.default_credits)

    logger.info(f"Scanning {len(domains)} domain(s), type={scan_type.value}, user={args.user}")

    try:
        outcomes = asyncio.run(run_scans(domains, scan_type, args.user, state, settings))
    except KeyboardInterrupt:
        print("\n✗ Scan interrupted by user", file=sys.stderr)
        return 130

    balance = state.get_balance(args.user)
    if args.json:
        payload = {
            'scans': [
                {'scan': scan.to_dict(), 'result': result.to_dict()}
                for scan, result in outcomes
            ],
            'balance': balance,
        }
        print(json.dumps(payload, indent=2))
    else:
        print_summary(outcomes, balance)

    return EXIT_OK if all(result.success for _, result in outcomes) else EXIT_SCAN_FAILED


if __name__ == "__main__":
    sys.exit(main())
