"""
M-Pesa Transaction Store

ALL reads and writes of payment records go through this module so every
status transition follows the same rule: an update only applies while the
record is still open, and a terminal record is never touched again.

Collections:
- mpesa_transactions: one document per STK push attempt
- b2c_transactions: one document per B2C payout
- mpesa_callbacks: append-only log of every gateway delivery
"""
import logging
from datetime import datetime
from decimal import Decimal

from pymongo import DESCENDING, ReturnDocument

from models import OPEN_STATUSES, STATUS_PENDING, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
DEFAULT_LIST_LIMIT = 50


def _amount_for_storage(amount):
    if isinstance(amount, Decimal):
        return float(amount)
    return amount


def _transition_fields(new_status, result_code=None, result_desc=None, extra=None, now=None):
    now = now or datetime.utcnow()
    fields = {
        'status': new_status,
        'updated_at': now,
    }
    if result_code is not None:
        fields['result_code'] = result_code
    if result_desc is not None:
        fields['result_desc'] = result_desc
    if new_status in TERMINAL_STATUSES:
        fields['completed_at'] = now
    if extra:
        fields.update(extra)
    return fields


class MpesaTransactionStore:
    """Persistence for STK push attempts, B2C payouts and the callback log"""

    def __init__(self, db):
        self.db = db
        self.transactions = db.mpesa_transactions
        self.b2c = db.b2c_transactions
        self.callbacks = db.mpesa_callbacks

    # ==================== STK PUSH RECORDS ====================

    def insert(self, transaction):
        """
        Insert a new transaction document.

        Returns:
            The inserted ObjectId
        """
        now = datetime.utcnow()
        doc = dict(transaction)
        doc['amount'] = _amount_for_storage(doc.get('amount'))
        doc.setdefault('status', STATUS_PENDING)
        doc.setdefault('created_at', now)
        doc.setdefault('updated_at', now)
        result = self.transactions.insert_one(doc)
        return result.inserted_id

    def insert_pending(self, user_id, phone_number, amount, stk_response,
                       account_reference=None, transaction_desc=None, is_simulated=False):
        """Record a push request the gateway has accepted"""
        doc = {
            'user_id': str(user_id),
            'phone_number': phone_number,
            'amount': amount,
            'account_reference': account_reference,
            'transaction_desc': transaction_desc,
            'merchant_request_id': stk_response.merchant_request_id,
            'checkout_request_id': stk_response.checkout_request_id,
            'response_code': stk_response.response_code,
            'response_description': stk_response.response_description,
            'customer_message': stk_response.customer_message,
            'status': STATUS_PENDING,
            'result_code': None,
            'result_desc': None,
            'completed_at': None,
        }
        if is_simulated:
            doc['is_simulated'] = True
        return self.insert(doc)

    def find_by_checkout_id(self, checkout_request_id):
        return self.transactions.find_one({'checkout_request_id': checkout_request_id})

    def find_by_merchant_id(self, merchant_request_id):
        return self.transactions.find_one({'merchant_request_id': merchant_request_id})

    def find_by_ids(self, checkout_request_id=None, merchant_request_id=None):
        """Lookup narrowed by whichever identifiers are given; None if neither is"""
        query = {}
        if checkout_request_id:
            query['checkout_request_id'] = checkout_request_id
        if merchant_request_id:
            query['merchant_request_id'] = merchant_request_id
        if not query:
            return None
        return self.transactions.find_one(query)

    def update_status(self, checkout_request_id, merchant_request_id, new_status,
                      result_code=None, result_desc=None, extra=None):
        """
        Move an open transaction to new_status.

        The filter matches both correlation ids together and only open
        statuses, so a second delivery of the same outcome is a no-op.

        Returns:
            The updated document, or None when nothing open matched
        """
        return self.transactions.find_one_and_update(
            {
                'checkout_request_id': checkout_request_id,
                'merchant_request_id': merchant_request_id,
                'status': {'$in': OPEN_STATUSES},
            },
            {'$set': _transition_fields(new_status, result_code, result_desc, extra)},
            return_document=ReturnDocument.AFTER,
        )

    def touch_reconciliation(self, checkout_request_id):
        """Bookkeeping for a sweep attempt that left the record pending"""
        self.transactions.update_one(
            {'checkout_request_id': checkout_request_id},
            {
                '$set': {'last_reconciled_at': datetime.utcnow()},
                '$inc': {'reconciliation_attempts': 1},
            },
        )

    def list_for_user(self, user_id, status=None, limit=DEFAULT_LIST_LIMIT):
        query = {'user_id': str(user_id)}
        if status:
            query['status'] = status
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return list(self.transactions.find(query).sort('created_at', DESCENDING).limit(limit))

    def get_stats(self, user_id=None):
        """
        Counts by status plus the completed total.

        Returns:
            dict with total, successful, failed, pending, expired, total_amount
        """
        pipeline = []
        if user_id is not None:
            pipeline.append({'$match': {'user_id': str(user_id)}})
        pipeline.append({
            '$group': {
                '_id': '$status',
                'count': {'$sum': 1},
                'amount': {'$sum': '$amount'},
            }
        })

        by_status = {row['_id']: row for row in self.transactions.aggregate(pipeline)}

        def count(status):
            return by_status.get(status, {}).get('count', 0)

        return {
            'total': sum(row['count'] for row in by_status.values()),
            'successful': count('completed'),
            'failed': count('failed'),
            'pending': count('pending') + count('initiated'),
            'expired': count('expired'),
            'total_amount': float(by_status.get('completed', {}).get('amount', 0) or 0),
        }

    def find_stale_pending(self, older_than, limit=100):
        """Pending transactions created before older_than, oldest first"""
        return list(
            self.transactions.find({
                'status': {'$in': OPEN_STATUSES},
                'created_at': {'$lt': older_than},
            }).sort('created_at', 1).limit(limit)
        )

    # ==================== B2C RECORDS ====================

    def insert_b2c(self, initiated_by, phone_number, amount, command_id, remarks,
                   b2c_response, occasion=None, recipient_user_id=None):
        now = datetime.utcnow()
        doc = {
            'initiated_by': str(initiated_by),
            'recipient_user_id': str(recipient_user_id) if recipient_user_id else None,
            'phone_number': phone_number,
            'amount': _amount_for_storage(amount),
            'command_id': command_id,
            'remarks': remarks,
            'occasion': occasion,
            'conversation_id': b2c_response.conversation_id,
            'originator_conversation_id': b2c_response.originator_conversation_id,
            'response_code': b2c_response.response_code,
            'response_description': b2c_response.response_description,
            'status': STATUS_PENDING,
            'result_code': None,
            'result_desc': None,
            'created_at': now,
            'updated_at': now,
            'completed_at': None,
        }
        return self.b2c.insert_one(doc).inserted_id

    def find_b2c(self, conversation_id=None, originator_conversation_id=None):
        query = {}
        if conversation_id:
            query['conversation_id'] = conversation_id
        if originator_conversation_id:
            query['originator_conversation_id'] = originator_conversation_id
        if not query:
            return None
        return self.b2c.find_one(query)

    def update_b2c_status(self, conversation_id, originator_conversation_id, new_status,
                          result_code=None, result_desc=None, extra=None):
        """Same open-only rule as update_status, keyed by whichever conversation ids are present"""
        query = {'status': {'$in': OPEN_STATUSES}}
        if conversation_id:
            query['conversation_id'] = conversation_id
        if originator_conversation_id:
            query['originator_conversation_id'] = originator_conversation_id
        if len(query) == 1:
            return None

        return self.b2c.find_one_and_update(
            query,
            {'$set': _transition_fields(new_status, result_code, result_desc, extra)},
            return_document=ReturnDocument.AFTER,
        )

    def list_b2c(self, limit=DEFAULT_LIST_LIMIT):
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return list(self.b2c.find({}).sort('created_at', DESCENDING).limit(limit))

    # ==================== CALLBACK LOG ====================

    def log_callback(self, kind, payload, outcome, merchant_request_id=None,
                     checkout_request_id=None, conversation_id=None, result_code=None):
        """Append a gateway delivery to mpesa_callbacks; logging failures never propagate"""
        try:
            self.callbacks.insert_one({
                'kind': kind,
                'merchant_request_id': merchant_request_id,
                'checkout_request_id': checkout_request_id,
                'conversation_id': conversation_id,
                'result_code': result_code,
                'outcome': outcome,
                'payload': payload,
                'received_at': datetime.utcnow(),
            })
        except Exception as e:
            logger.error(f"Failed to log {kind} callback ({outcome}): {e}")
