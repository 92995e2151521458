#!/usr/bin/env python3
"""
Commission Retry Script

Drains the commission retry queue. Fulfillment queues an order here when its
affiliate commission could not be credited; entitlements were already granted
and are unaffected. Each queued order is credited at most once.

Run periodically (cron) or by hand after an outage.

Usage:
    python retry_commissions.py
    python retry_commissions.py --limit 500
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Add parent directory to path to import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from repositories.ledger import SupabaseLedgerStore
from services.commission_service import CommissionEngine
from services.notification_service import OutboxNotificationDispatcher


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Retry affiliate commission credits that failed during fulfillment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Drain up to 100 queued orders
  python retry_commissions.py

  # Larger pass after an outage
  python retry_commissions.py --limit 1000
        """
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of queued orders to retry (default: 100)"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        engine = CommissionEngine(SupabaseLedgerStore(), OutboxNotificationDispatcher())
        summary = engine.retry_pending(limit=args.limit)

        print("=" * 50)
        print("COMMISSION RETRY SUMMARY")
        print("=" * 50)
        print(f"Queued orders attempted:   {summary.attempted}")
        print(f"Resolved:                  {summary.resolved}")
        print(f"Still failing:             {summary.failed}")
        print(f"Dropped (uncreditable):    {summary.dropped}")
        print("=" * 50)

        return 1 if summary.failed > 0 else 0

    except KeyboardInterrupt:
        print("\n\nRetry interrupted by user")
        return 130

    except Exception as e:
        print(f"\nFATAL ERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
