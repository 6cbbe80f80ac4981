"""Batch entry point for the scheduled ledger sweeps"""

import argparse
import json
import sys
from typing import Callable, Dict, List

from quota_ledger.config import settings
from quota_ledger.infrastructure.observability.logging import setup_logging
from quota_ledger.operations import LedgerOperations, OperationResult

JOBS: Dict[str, Callable[[LedgerOperations], OperationResult]] = {
    "liquidation": LedgerOperations.run_liquidation_sweep,
    "fgc": LedgerOperations.run_fgc_sweep,
    "referrals": LedgerOperations.release_pending_referral_bonuses,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quota-ledger-jobs", description="Run quota ledger batch sweeps")
    parser.add_argument(
        "job",
        choices=sorted(JOBS) + ["all"],
        help="Sweep to run; 'all' runs liquidation, fgc and referrals in that order",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Root log level (default: %(default)s)")
    return parser


def main(argv: List[str] | None = None, operations: LedgerOperations | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, stream=sys.stderr)

    ops = operations or LedgerOperations()
    names = ["liquidation", "fgc", "referrals"] if args.job == "all" else [args.job]

    exit_code = 0
    for name in names:
        result = JOBS[name](ops)
        print(json.dumps({"job": name, **result.as_dict()}))
        if not result.success:
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
