"""
Payment status lookups for client polling

The mobile client never sees the gateway callback, so it polls these until
the transaction leaves 'pending'. When a user_id is given, another user's
transaction is treated exactly like an unknown id.
"""
from models import STATUS_COMPLETED, STATUS_PENDING
from services.mpesa_service import MpesaValidationError


def status_snapshot(transaction):
    """Client-facing view of a stored transaction"""
    updated_at = transaction.get('updated_at')
    return {
        'success': transaction.get('status') == STATUS_COMPLETED,
        'status': transaction.get('status'),
        'result_code': transaction.get('result_code'),
        'result_desc': transaction.get('result_desc'),
        'amount': transaction.get('amount'),
        'checkout_request_id': transaction.get('checkout_request_id'),
        'merchant_request_id': transaction.get('merchant_request_id'),
        'mpesa_receipt_number': transaction.get('mpesa_receipt_number'),
        'updated_at': updated_at.isoformat() + 'Z' if updated_at else None,
    }


def _visible_to(transaction, user_id):
    return user_id is None or transaction.get('user_id') == str(user_id)


class PaymentStatusService:

    def __init__(self, store):
        self.store = store

    def check_by_checkout_id(self, checkout_request_id, user_id=None):
        """
        Snapshot for one checkout id.

        An id that was never recorded reads as still pending, exactly like a
        transaction whose callback has not arrived yet.
        """
        if not checkout_request_id or not str(checkout_request_id).strip():
            raise MpesaValidationError('checkout_request_id is required')

        transaction = self.store.find_by_checkout_id(str(checkout_request_id).strip())
        if not transaction or not _visible_to(transaction, user_id):
            return {'success': False, 'status': STATUS_PENDING}
        return status_snapshot(transaction)

    def check_by_either_id(self, checkout_request_id=None, merchant_request_id=None, user_id=None):
        """
        Snapshot narrowed by whichever ids are given.

        Returns:
            The snapshot, or None when nothing matches
        """
        checkout_request_id = (checkout_request_id or '').strip()
        merchant_request_id = (merchant_request_id or '').strip()
        if not checkout_request_id and not merchant_request_id:
            raise MpesaValidationError('checkout_request_id or merchant_request_id is required')

        transaction = self.store.find_by_ids(checkout_request_id, merchant_request_id)
        if not transaction or not _visible_to(transaction, user_id):
            return None
        return status_snapshot(transaction)
