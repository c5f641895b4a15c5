"""
Unit Tests for the M-Pesa transaction store
Status transitions, lookups, listing and stats against mongomock
"""

import unittest
from datetime import datetime, timedelta
from decimal import Decimal

import mongomock
from bson import ObjectId

from models import DatabaseInitializer
from services.mpesa_models import B2CResponse, StkPushResponse
from utils.transaction_store import MpesaTransactionStore


def stk_response(suffix='1'):
    return StkPushResponse(
        merchant_request_id=f'MR-{suffix}',
        checkout_request_id=f'ws_CO_{suffix}',
        response_code='0',
        response_description='Success. Request accepted for processing',
        customer_message='Success. Request accepted for processing',
    )


class TestStkRecords(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.store = MpesaTransactionStore(self.db)
        self.user_id = str(ObjectId())

    def insert(self, suffix='1', amount=Decimal('100'), user_id=None):
        return self.store.insert_pending(user_id or self.user_id, '254712345678', amount, stk_response(suffix))

    def test_insert_pending_record(self):
        self.insert()

        doc = self.store.find_by_checkout_id('ws_CO_1')
        self.assertEqual(doc['status'], 'pending')
        self.assertEqual(doc['amount'], 100.0)
        self.assertEqual(doc['merchant_request_id'], 'MR-1')
        self.assertEqual(doc['user_id'], self.user_id)
        self.assertIsNone(doc['result_code'])
        self.assertIsNone(doc['completed_at'])
        self.assertIsInstance(doc['created_at'], datetime)

    def test_lookups(self):
        self.insert('1')
        self.insert('2')

        self.assertEqual(self.store.find_by_merchant_id('MR-2')['checkout_request_id'], 'ws_CO_2')
        self.assertEqual(self.store.find_by_ids(checkout_request_id='ws_CO_1')['merchant_request_id'], 'MR-1')
        self.assertIsNone(self.store.find_by_ids('ws_CO_1', 'MR-2'))
        self.assertIsNone(self.store.find_by_ids())
        self.assertIsNone(self.store.find_by_checkout_id('ws_CO_missing'))

    def test_update_to_terminal_sets_completed_at(self):
        self.insert()

        updated = self.store.update_status('ws_CO_1', 'MR-1', 'completed', result_code=0, result_desc='Processed')

        self.assertEqual(updated['status'], 'completed')
        self.assertEqual(updated['result_code'], 0)
        self.assertEqual(updated['result_desc'], 'Processed')
        self.assertIsNotNone(updated['completed_at'])
        self.assertGreaterEqual(updated['updated_at'], updated['created_at'])

    def test_update_requires_both_ids(self):
        self.insert('1')
        self.insert('2')

        self.assertIsNone(self.store.update_status('ws_CO_1', 'MR-2', 'completed', result_code=0))
        self.assertEqual(self.store.find_by_checkout_id('ws_CO_1')['status'], 'pending')
        self.assertEqual(self.store.find_by_checkout_id('ws_CO_2')['status'], 'pending')

    def test_terminal_record_is_never_updated_again(self):
        self.insert()
        self.store.update_status('ws_CO_1', 'MR-1', 'completed', result_code=0, result_desc='Processed')

        again = self.store.update_status('ws_CO_1', 'MR-1', 'failed', result_code=1032, result_desc='Cancelled')

        self.assertIsNone(again)
        doc = self.store.find_by_checkout_id('ws_CO_1')
        self.assertEqual(doc['status'], 'completed')
        self.assertEqual(doc['result_code'], 0)

    def test_extra_fields_are_stored(self):
        self.insert()
        self.store.update_status('ws_CO_1', 'MR-1', 'completed', result_code=0,
                                 extra={'mpesa_receipt_number': 'NLJ7RT61SV'})
        self.assertEqual(self.store.find_by_checkout_id('ws_CO_1')['mpesa_receipt_number'], 'NLJ7RT61SV')

    def test_list_for_user_newest_first(self):
        base = datetime.utcnow() - timedelta(hours=1)
        for i in range(5):
            self.store.insert({
                'user_id': self.user_id,
                'checkout_request_id': f'ws_CO_{i}',
                'merchant_request_id': f'MR-{i}',
                'amount': 10 * (i + 1),
                'status': 'completed' if i % 2 else 'pending',
                'created_at': base + timedelta(minutes=i),
            })
        self.insert('other', user_id=str(ObjectId()))

        listed = self.store.list_for_user(self.user_id)
        self.assertEqual([t['checkout_request_id'] for t in listed],
                         ['ws_CO_4', 'ws_CO_3', 'ws_CO_2', 'ws_CO_1', 'ws_CO_0'])

        completed = self.store.list_for_user(self.user_id, status='completed')
        self.assertEqual(len(completed), 2)

        self.assertEqual(len(self.store.list_for_user(self.user_id, limit=2)), 2)
        self.assertEqual(len(self.store.list_for_user(self.user_id, limit=1000)), 5)

    def test_stats(self):
        self.insert('1', Decimal('100'))
        self.insert('2', Decimal('250'))
        self.insert('3', Decimal('40'))
        self.insert('4', Decimal('60'))
        self.insert('5', Decimal('999'), user_id=str(ObjectId()))
        self.store.update_status('ws_CO_1', 'MR-1', 'completed', result_code=0)
        self.store.update_status('ws_CO_2', 'MR-2', 'completed', result_code=0)
        self.store.update_status('ws_CO_3', 'MR-3', 'failed', result_code=1032)

        stats = self.store.get_stats(self.user_id)

        self.assertEqual(stats['total'], 4)
        self.assertEqual(stats['successful'], 2)
        self.assertEqual(stats['failed'], 1)
        self.assertEqual(stats['pending'], 1)
        self.assertEqual(stats['expired'], 0)
        self.assertEqual(stats['total_amount'], 350.0)

    def test_stats_for_user_without_transactions(self):
        stats = self.store.get_stats(self.user_id)
        self.assertEqual(stats['total'], 0)
        self.assertEqual(stats['total_amount'], 0.0)

    def test_find_stale_pending(self):
        now = datetime.utcnow()
        for i, age in enumerate([1, 5, 40]):
            self.store.insert({
                'user_id': self.user_id,
                'checkout_request_id': f'ws_CO_{i}',
                'merchant_request_id': f'MR-{i}',
                'amount': 10,
                'status': 'pending',
                'created_at': now - timedelta(minutes=age),
            })
        self.store.insert({
            'user_id': self.user_id,
            'checkout_request_id': 'ws_CO_done',
            'merchant_request_id': 'MR-done',
            'amount': 10,
            'status': 'completed',
            'created_at': now - timedelta(minutes=60),
        })

        stale = self.store.find_stale_pending(now - timedelta(minutes=2))
        self.assertEqual([t['checkout_request_id'] for t in stale], ['ws_CO_2', 'ws_CO_1'])

    def test_touch_reconciliation(self):
        self.insert()
        self.store.touch_reconciliation('ws_CO_1')
        self.store.touch_reconciliation('ws_CO_1')

        doc = self.store.find_by_checkout_id('ws_CO_1')
        self.assertEqual(doc['reconciliation_attempts'], 2)
        self.assertEqual(doc['status'], 'pending')


class TestB2CRecords(unittest.TestCase):

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.store = MpesaTransactionStore(self.db)
        self.response = B2CResponse(
            conversation_id='AG_1',
            originator_conversation_id='OC-1',
            response_code='0',
            response_description='Accept the service request successfully.',
        )

    def test_insert_and_update(self):
        admin_id = ObjectId()
        self.store.insert_b2c(admin_id, '254712345678', Decimal('500'), 'BusinessPayment', 'Winnings', self.response)

        doc = self.store.find_b2c('AG_1')
        self.assertEqual(doc['status'], 'pending')
        self.assertEqual(doc['initiated_by'], str(admin_id))
        self.assertEqual(doc['amount'], 500.0)

        updated = self.store.update_b2c_status('AG_1', 'OC-1', 'completed', result_code=0, result_desc='ok')
        self.assertEqual(updated['status'], 'completed')
        self.assertIsNotNone(updated['completed_at'])
        self.assertIsNone(self.store.update_b2c_status('AG_1', 'OC-1', 'failed', result_code=1))

    def test_update_without_ids_does_nothing(self):
        self.store.insert_b2c(ObjectId(), '254712345678', 500, 'BusinessPayment', 'x', self.response)
        self.assertIsNone(self.store.update_b2c_status('', '', 'failed'))
        self.assertEqual(self.store.find_b2c('AG_1')['status'], 'pending')


class TestCallbackLog(unittest.TestCase):

    def test_log_callback(self):
        db = mongomock.MongoClient().db
        store = MpesaTransactionStore(db)

        store.log_callback('stk', {'Body': {}}, 'unmatched', 'MR-1', 'ws_CO_1', result_code=0)

        entry = db.mpesa_callbacks.find_one({'checkout_request_id': 'ws_CO_1'})
        self.assertEqual(entry['kind'], 'stk')
        self.assertEqual(entry['outcome'], 'unmatched')
        self.assertEqual(entry['payload'], {'Body': {}})


class TestDatabaseInitializer(unittest.TestCase):

    def test_initialize_is_idempotent(self):
        db = mongomock.MongoClient().db
        initializer = DatabaseInitializer(db)

        first = initializer.initialize_collections()
        second = initializer.initialize_collections()

        self.assertIn('mpesa_transactions', first['created'])
        self.assertIn('mpesa_transactions.checkout_request_id_unique', first['indexes_created'])
        self.assertEqual(first['errors'], [])
        self.assertEqual(second['created'], [])
        self.assertEqual(second['indexes_created'], [])
        self.assertIn('mpesa_transactions', second['existing'])

        stats = initializer.get_all_collections_stats()
        self.assertEqual(stats['mpesa_transactions']['count'], 0)


if __name__ == '__main__':
    unittest.main()
