"""
Reconcile Pending M-Pesa Transactions
Cron Job: run when the in-process scheduler is disabled (MPESA_DISABLE_SCHEDULER)

Queries the gateway for STK push transactions still PENDING after the grace
period and closes them:
1. ResultCode 0 -> completed
2. Known final failure code -> failed
3. Older than MPESA_PENDING_EXPIRY_MINUTES with no answer -> expired

Usage:
    python scripts/reconcile_pending_mpesa.py [--dry-run] [--limit N]
"""

import argparse
import os
import sys

from dotenv import load_dotenv
from pymongo import MongoClient

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.environment import MpesaConfig
from services.mpesa_service import MpesaService
from utils.mpesa_reconciliation import DEFAULT_BATCH_SIZE, MpesaReconciler
from utils.notification_dispatcher import NotificationDispatcher
from utils.transaction_store import MpesaTransactionStore


def reconcile_pending_mpesa(dry_run=False, limit=DEFAULT_BATCH_SIZE):
    """Run one sweep against MONGO_URI; returns the sweep summary"""
    mongo_uri = os.environ.get('MONGO_URI', 'mongodb://localhost:27017/fanclash')
    client = MongoClient(mongo_uri)
    try:
        db = client.get_database()
        config = MpesaConfig.from_env()
        if not config.is_configured():
            print('❌ M-Pesa credentials incomplete, nothing to do')
            return None

        # In-app notifications only; this process exits before a push worker would run
        dispatcher = NotificationDispatcher(db)
        reconciler = MpesaReconciler(
            MpesaTransactionStore(db),
            MpesaService(config),
            pending_expiry_minutes=config.pending_expiry_minutes,
            dispatcher=dispatcher,
        )
        summary = reconciler.sweep(dry_run=dry_run, limit=limit)
        dispatcher.drain()

        prefix = '[DRY RUN] ' if dry_run else ''
        print(f"✅ {prefix}Scanned {summary['scanned']} pending transactions")
        print(f"   completed: {summary['completed']}, failed: {summary['failed']}, "
              f"expired: {summary['expired']}, still pending: {summary['still_pending']}, "
              f"errors: {summary['errors']}")
        return summary
    finally:
        client.close()


if __name__ == '__main__':
    load_dotenv()

    parser = argparse.ArgumentParser(description='Reconcile pending M-Pesa STK push transactions')
    parser.add_argument('--dry-run', action='store_true', help='report changes without writing them')
    parser.add_argument('--limit', type=int, default=DEFAULT_BATCH_SIZE, help='maximum transactions to examine')
    args = parser.parse_args()

    try:
        reconcile_pending_mpesa(dry_run=args.dry_run, limit=args.limit)
    except Exception as e:
        print(f'❌ Error reconciling M-Pesa transactions: {str(e)}')
        sys.exit(1)
