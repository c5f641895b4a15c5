"""
M-Pesa Reconciliation Sweep

Closes STK push transactions whose callback never arrived:
1. PENDING transactions older than the grace period are queried on the gateway
2. ResultCode 0 -> completed, a known final failure code -> failed
3. Anything still unresolved past the expiry window -> expired

All transitions go through the store's open-only update, so a callback that
lands while the sweep is running wins and the sweep's write is a no-op.
"""
import logging
from datetime import datetime, timedelta

from models import STATUS_COMPLETED, STATUS_EXPIRED, STATUS_FAILED
from services.mpesa_service import MpesaError
from utils.callback_reconciler import notify_payment_outcome

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MINUTES = 2
DEFAULT_BATCH_SIZE = 100
EXPIRED_DESC = 'Expired without callback'

# Gateway outcome codes that will never turn into a success
FINAL_FAILURE_CODES = {
    1: 'Insufficient funds',
    17: 'Financial limit reached',
    20: 'Transaction expired',
    26: 'System timeout',
    32: 'Access denied',
    1001: 'Subscriber busy',
    1019: 'Transaction expired',
    1025: 'Unable to send prompt',
    1032: 'Request cancelled by user',
    1037: 'User could not be reached',
    2001: 'Wrong PIN',
}


class MpesaReconciler:
    """Periodic pass over stale pending STK push transactions"""

    def __init__(self, store, mpesa_service, pending_expiry_minutes=30,
                 grace_minutes=DEFAULT_GRACE_MINUTES, dispatcher=None, clock=None):
        self.store = store
        self.mpesa_service = mpesa_service
        self.pending_expiry = timedelta(minutes=pending_expiry_minutes)
        self.grace = timedelta(minutes=grace_minutes)
        self.dispatcher = dispatcher
        self._clock = clock or datetime.utcnow

    def sweep(self, dry_run=False, limit=DEFAULT_BATCH_SIZE):
        """
        Run one reconciliation pass.

        Args:
            dry_run: report what would change without writing
            limit: maximum transactions examined in this pass

        Returns:
            dict: scanned, completed, failed, expired, still_pending, errors
        """
        now = self._clock()
        summary = {
            'scanned': 0,
            'completed': 0,
            'failed': 0,
            'expired': 0,
            'still_pending': 0,
            'errors': 0,
            'dry_run': dry_run,
            'started_at': now.isoformat() + 'Z',
        }

        candidates = self.store.find_stale_pending(now - self.grace, limit=limit)
        logger.info(f"Reconciliation sweep: {len(candidates)} pending transactions past grace period")

        for transaction in candidates:
            summary['scanned'] += 1
            try:
                outcome = self._reconcile_one(transaction, now, dry_run)
            except Exception as e:
                # One bad record must not stop the pass
                logger.error(f"Reconciliation failed for {transaction.get('checkout_request_id')}: {e}")
                outcome = 'errors'
            summary[outcome] += 1

        logger.info(
            f"Reconciliation sweep done: {summary['completed']} completed, {summary['failed']} failed, "
            f"{summary['expired']} expired, {summary['still_pending']} still pending, {summary['errors']} errors"
        )
        return summary

    def _reconcile_one(self, transaction, now, dry_run):
        checkout_id = transaction['checkout_request_id']
        merchant_id = transaction['merchant_request_id']
        is_stale = transaction['created_at'] < now - self.pending_expiry

        result_code, result_desc, query_failed = None, None, False
        if transaction.get('is_simulated'):
            # Simulated ids are unknown to the gateway
            query_failed = True
        else:
            try:
                query = self.mpesa_service.query_stk_status(checkout_id)
                result_code, result_desc = query.result_code, query.result_desc
            except MpesaError as e:
                logger.warning(f"STK query failed for {checkout_id}: {e}")
                query_failed = True

        if result_code == 0:
            new_status = STATUS_COMPLETED
        elif result_code in FINAL_FAILURE_CODES:
            new_status = STATUS_FAILED
            result_desc = result_desc or FINAL_FAILURE_CODES[result_code]
        elif is_stale:
            new_status = STATUS_EXPIRED
            result_desc = EXPIRED_DESC
        else:
            if not dry_run:
                self.store.touch_reconciliation(checkout_id)
            return 'errors' if query_failed else 'still_pending'

        logger.info(f"Reconciliation: {checkout_id} -> {new_status} (ResultCode {result_code})")
        if dry_run:
            return new_status

        updated = self.store.update_status(
            checkout_id, merchant_id, new_status,
            result_code=result_code,
            result_desc=result_desc,
            extra={'resolved_by': 'reconciliation', 'last_reconciled_at': now},
        )
        if not updated:
            # A callback closed it between the scan and the write
            return 'still_pending'

        notify_payment_outcome(self.dispatcher, updated)
        return new_status
