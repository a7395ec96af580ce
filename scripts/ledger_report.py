from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys

# Allow running as: `python3 scripts/ledger_report.py` from repo root.
_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from paperledger.analytics.performance import present_report
from paperledger.common.config import LedgerConfig
from paperledger.common.logging import init_structured_logging
from paperledger.ledger.errors import LedgerError
from paperledger.ledger.facade import Ledger


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Print ledger balance, recent trades and performance as JSON.")
    p.add_argument("--database-url", default=None, help="Overrides LEDGER_DATABASE_URL.")
    p.add_argument("--trades", type=int, default=10, help="Number of recent trades to include.")
    p.add_argument("--snapshot", action="store_true", help="Record a snapshot before reporting.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    init_structured_logging(service="paperledger-report")
    log = logging.getLogger("paperledger.scripts.ledger_report")

    cfg = LedgerConfig.from_env()
    if args.database_url:
        cfg = dataclasses.replace(cfg, database_url=args.database_url)

    try:
        with Ledger.from_config(cfg) as ledger:
            if args.snapshot:
                ledger.record_snapshot_now()
            out = {
                "config": cfg.to_dict(),
                "balance": ledger.get_balance().to_dict(),
                "recent_trades": [t.to_dict() for t in ledger.get_trade_history(limit=args.trades)],
                "performance": present_report(ledger.get_performance_report()),
            }
    except LedgerError as e:
        log.error("ledger report failed: %s: %s", type(e).__name__, e)
        return 1

    print(json.dumps(out, default=str, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
