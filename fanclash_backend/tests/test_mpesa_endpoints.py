"""
Endpoint Tests for the M-Pesa blueprint
Drives the full initiate -> callback -> poll flow through a Flask test client
"""

import unittest
from functools import wraps
from types import SimpleNamespace
from unittest import mock

import mongomock
from bson import ObjectId
from flask import Flask

from blueprints.mpesa import init_mpesa_blueprint
from config.environment import MpesaConfig
from services.mpesa_service import MpesaService
from utils.serialization import serialize_doc


def make_response(status_code=200, payload=None, text=None):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload if payload is not None else {}
    response.text = text if text is not None else str(payload)
    return response


AUTH_OK = {'access_token': 'token-abc', 'expires_in': '3599'}
STK_OK = {
    'MerchantRequestID': '29115-34620561-1',
    'CheckoutRequestID': 'ws_CO_191220191020363925',
    'ResponseCode': '0',
    'ResponseDescription': 'Success. Request accepted for processing',
    'CustomerMessage': 'Success. Request accepted for processing',
}
B2C_OK = {
    'ConversationID': 'AG_20191219_00005797af5d7d75f652',
    'OriginatorConversationID': '16740-34861180-1',
    'ResponseCode': '0',
    'ResponseDescription': 'Accept the service request successfully.',
}


class MpesaEndpointTestCase(unittest.TestCase):

    config_overrides = {}

    def setUp(self):
        self.db = mongomock.MongoClient().db
        self.mongo = SimpleNamespace(db=self.db)
        self.user = {'_id': ObjectId(), 'email': 'fan@example.com', 'role': 'user'}
        self.admin = {'_id': ObjectId(), 'email': 'admin@example.com', 'role': 'admin'}
        self.current_user = self.user

        values = dict(
            consumer_key='consumer-key',
            consumer_secret='consumer-secret',
            short_code='174379',
            passkey='test-passkey',
            callback_url='https://api.example.com/api/mpesa/callback',
            b2c_result_url='https://api.example.com/api/mpesa/b2c/result',
            b2c_queue_timeout_url='https://api.example.com/api/mpesa/b2c/timeout',
            initiator_name='testapi',
            security_credential='credential',
        )
        values.update(self.config_overrides)
        self.config = MpesaConfig(**values)

        self.session = mock.Mock()
        self.session.get.return_value = make_response(200, AUTH_OK)
        self.session.post.return_value = make_response(200, STK_OK)
        self.mpesa_service = MpesaService(self.config, session=self.session)
        self.dispatcher = mock.Mock()

        app = Flask(__name__)
        app.register_blueprint(init_mpesa_blueprint(
            self.mongo, self.token_required, serialize_doc, self.mpesa_service, dispatcher=self.dispatcher
        ))
        self.client = app.test_client()

    def token_required(self, f):
        @wraps(f)
        def decorated(*args, **kwargs):
            return f(self.current_user, *args, **kwargs)
        return decorated

    def callback_payload(self, result_code, result_desc, items=None):
        callback = {
            'MerchantRequestID': STK_OK['MerchantRequestID'],
            'CheckoutRequestID': STK_OK['CheckoutRequestID'],
            'ResultCode': result_code,
            'ResultDesc': result_desc,
        }
        if items:
            callback['CallbackMetadata'] = {'Item': items}
        return {'Body': {'stkCallback': callback}}


class TestPaymentFlow(MpesaEndpointTestCase):

    def test_initiate_persists_pending_transaction(self):
        response = self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertEqual(data['checkout_request_id'], STK_OK['CheckoutRequestID'])
        self.assertEqual(data['merchant_request_id'], STK_OK['MerchantRequestID'])
        self.assertTrue(data['persisted'])

        self.assertEqual(self.session.post.call_args[1]['json']['PhoneNumber'], '254712345678')

        doc = self.db.mpesa_transactions.find_one({'checkout_request_id': STK_OK['CheckoutRequestID']})
        self.assertEqual(doc['status'], 'pending')
        self.assertEqual(doc['phone_number'], '254712345678')
        self.assertEqual(doc['amount'], 100.0)
        self.assertEqual(doc['user_id'], str(self.user['_id']))

    def test_poll_before_callback_reports_pending_with_amount(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        response = self.client.post('/api/mpesa/status/check',
                                    json={'checkout_request_id': STK_OK['CheckoutRequestID']})

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertFalse(data['success'])
        self.assertEqual(data['status'], 'pending')
        self.assertEqual(data['amount'], 100.0)
        self.assertEqual(data['merchant_request_id'], STK_OK['MerchantRequestID'])

    def test_poll_unknown_id_reports_pending(self):
        response = self.client.post('/api/mpesa/status/check', json={'checkout_request_id': 'ws_CO_typo'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['data'], {'success': False, 'status': 'pending'})

    def test_success_callback_completes_payment(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        response = self.client.post('/api/mpesa/callback', json=self.callback_payload(0, 'Processed', [
            {'Name': 'Amount', 'Value': 100},
            {'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
        ]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'ResultCode': 0, 'ResultDesc': 'Success'})

        status = self.client.get('/api/mpesa/status', query_string={
            'checkout_request_id': STK_OK['CheckoutRequestID']
        }).get_json()['data']
        self.assertTrue(status['success'])
        self.assertEqual(status['status'], 'completed')
        self.assertEqual(status['result_code'], 0)
        self.assertEqual(status['mpesa_receipt_number'], 'NLJ7RT61SV')
        self.dispatcher.enqueue.assert_called_once()

    def test_cancelled_callback_fails_payment(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        self.client.post('/api/mpesa/callback', json=self.callback_payload(1032, 'Request cancelled by user'))

        doc = self.db.mpesa_transactions.find_one({'checkout_request_id': STK_OK['CheckoutRequestID']})
        self.assertEqual(doc['status'], 'failed')
        self.assertEqual(doc['result_code'], 1032)
        self.assertEqual(doc['result_desc'], 'Request cancelled by user')
        self.assertIsNotNone(doc['completed_at'])

    def test_callback_with_missing_ids_gets_rejection_ack(self):
        payload = self.callback_payload(0, 'Processed')
        payload['Body']['stkCallback']['MerchantRequestID'] = ''

        response = self.client.post('/api/mpesa/callback', json=payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['ResultCode'], 1)

    def test_callback_with_garbage_body_is_acknowledged(self):
        response = self.client.post('/api/mpesa/callback', data='not json', content_type='text/plain')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'ResultCode': 0, 'ResultDesc': 'Success'})

    def test_status_by_merchant_id_and_not_found(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        found = self.client.get('/api/mpesa/status', query_string={
            'merchant_request_id': STK_OK['MerchantRequestID']
        })
        missing = self.client.get('/api/mpesa/status', query_string={'checkout_request_id': 'ws_CO_none'})
        no_ids = self.client.get('/api/mpesa/status')

        self.assertEqual(found.status_code, 200)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(no_ids.status_code, 400)

    def test_other_users_cannot_poll_transaction(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})
        self.current_user = {'_id': ObjectId(), 'role': 'user'}

        response = self.client.get('/api/mpesa/status', query_string={
            'checkout_request_id': STK_OK['CheckoutRequestID']
        })
        self.assertEqual(response.status_code, 404)

        self.current_user = self.admin
        response = self.client.get('/api/mpesa/status', query_string={
            'checkout_request_id': STK_OK['CheckoutRequestID']
        })
        self.assertEqual(response.status_code, 200)


class TestInitiationErrors(MpesaEndpointTestCase):

    def test_invalid_amount_is_rejected_before_gateway(self):
        for amount in ['0', '-1', 'abc', None]:
            response = self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': amount})
            self.assertEqual(response.status_code, 400)
            self.assertIn('amount', response.get_json()['errors'])

        self.session.get.assert_not_called()
        self.session.post.assert_not_called()
        self.assertEqual(self.db.mpesa_transactions.count_documents({}), 0)

    def test_missing_phone(self):
        response = self.client.post('/api/mpesa/stk-push', json={'amount': '100'})

        self.assertEqual(response.status_code, 400)
        self.session.post.assert_not_called()

    def test_gateway_failure_writes_no_record(self):
        self.session.post.return_value = make_response(500, {'errorMessage': 'System busy'}, text='System busy')

        response = self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        self.assertEqual(response.status_code, 500)
        body = response.get_json()
        self.assertFalse(body['success'])
        self.assertEqual(body['gateway'], {
            'message': 'M-Pesa stk_push failed: 500',
            'status_code': 500,
            'body': 'System busy',
        })
        self.assertEqual(self.db.mpesa_transactions.count_documents({}), 0)

    def test_persistence_failure_still_returns_ids(self):
        with mock.patch('utils.transaction_store.MpesaTransactionStore.insert_pending',
                        side_effect=RuntimeError('database unreachable')):
            response = self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertEqual(data['checkout_request_id'], STK_OK['CheckoutRequestID'])
        self.assertFalse(data['persisted'])


    def test_non_object_bodies_are_client_errors(self):
        for path in ['/api/mpesa/stk-push', '/api/mpesa/status/check', '/api/mpesa/simulate']:
            response = self.client.post(path, json=['ws_CO_191220191020363925'])
            self.assertEqual(response.status_code, 400, path)
            self.assertFalse(response.get_json()['success'])

        self.session.post.assert_not_called()
        self.assertEqual(self.db.mpesa_transactions.count_documents({}), 0)


class TestUnconfigured(MpesaEndpointTestCase):

    config_overrides = {'passkey': ''}

    def test_stk_push_answers_503(self):
        response = self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})

        self.assertEqual(response.status_code, 503)
        self.session.post.assert_not_called()

    def test_health_reports_unconfigured(self):
        body = self.client.get('/api/mpesa/health').get_json()

        self.assertEqual(body['status'], 'ok')
        self.assertEqual(body['features'], ['c2b', 'b2c'])
        self.assertFalse(body['configured'])


class TestCallbackSecret(MpesaEndpointTestCase):

    config_overrides = {'callback_secret': 's3cret'}

    def test_wrong_or_missing_token_is_forbidden(self):
        payload = self.callback_payload(0, 'Processed')

        self.assertEqual(self.client.post('/api/mpesa/callback', json=payload).status_code, 403)
        self.assertEqual(self.client.post('/api/mpesa/callback?token=nope', json=payload).status_code, 403)
        self.assertEqual(self.client.post('/api/mpesa/b2c/result?token=nope', json={}).status_code, 403)
        self.assertEqual(self.client.post('/api/mpesa/b2c/timeout', json={}).status_code, 403)
        self.assertEqual(self.db.mpesa_callbacks.count_documents({}), 0)

    def test_correct_token_is_accepted(self):
        response = self.client.post('/api/mpesa/callback?token=s3cret', json=self.callback_payload(0, 'Processed'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['ResultCode'], 0)


class TestCallbackUrlRedaction(MpesaEndpointTestCase):

    config_overrides = {
        'callback_secret': 's3cr3t-shared',
        'callback_url': 'https://api.example.com/api/mpesa/callback?token=s3cr3t-shared',
        'b2c_result_url': 'https://api.example.com/api/mpesa/b2c/result?token=s3cr3t-shared',
        'b2c_queue_timeout_url': 'https://api.example.com/api/mpesa/b2c/timeout?token=s3cr3t-shared',
    }

    def test_connectivity_does_not_reveal_callback_secret(self):
        response = self.client.get('/api/mpesa/connectivity')

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('s3cr3t-shared', response.get_data(as_text=True))
        config = response.get_json()['data']['config']
        self.assertEqual(config['callback_url'], 'https://api.example.com/api/mpesa/callback')
        self.assertTrue(config['callback_secret_set'])


class TestHistoryAndStats(MpesaEndpointTestCase):

    def test_transactions_and_stats(self):
        self.client.post('/api/mpesa/stk-push', json={'phone_number': '0712345678', 'amount': '100'})
        self.client.post('/api/mpesa/callback', json=self.callback_payload(0, 'Processed'))
        self.client.post('/api/mpesa/simulate', json={'phone_number': '0712345678', 'amount': '50'})

        listed = self.client.get('/api/mpesa/transactions').get_json()['data']
        self.assertEqual(listed['count'], 2)
        self.assertNotIn('_id', listed['transactions'][0])
        self.assertIn('id', listed['transactions'][0])

        pending_only = self.client.get('/api/mpesa/transactions', query_string={'status': 'pending'}).get_json()
        self.assertEqual(pending_only['data']['count'], 1)

        stats = self.client.get('/api/mpesa/stats').get_json()['data']
        self.assertEqual(stats['total'], 2)
        self.assertEqual(stats['successful'], 1)
        self.assertEqual(stats['pending'], 1)
        self.assertEqual(stats['total_amount'], 100.0)

    def test_invalid_limit(self):
        response = self.client.get('/api/mpesa/transactions', query_string={'limit': 'many'})
        self.assertEqual(response.status_code, 400)

    def test_unknown_status_filter(self):
        response = self.client.get('/api/mpesa/transactions', query_string={'status': 'refunded'})

        self.assertEqual(response.status_code, 400)
        self.assertIn('status', response.get_json()['errors'])


class TestSimulation(MpesaEndpointTestCase):

    def test_simulate_records_pending_transaction(self):
        response = self.client.post('/api/mpesa/simulate', json={'phone_number': '0712345678', 'amount': '10'})

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertTrue(data['merchant_request_id'].startswith('SIM-'))
        self.assertEqual(data['status'], 'pending')
        doc = self.db.mpesa_transactions.find_one({'checkout_request_id': data['checkout_request_id']})
        self.assertTrue(doc['is_simulated'])
        self.session.post.assert_not_called()

    def test_simulate_with_result_code_applies_callback(self):
        response = self.client.post('/api/mpesa/simulate', json={'amount': '10', 'result_code': 0})

        data = response.get_json()['data']
        self.assertEqual(data['status'], 'completed')


class TestSimulationInProduction(MpesaEndpointTestCase):

    config_overrides = {'environment': 'production'}

    def test_simulate_is_forbidden(self):
        response = self.client.post('/api/mpesa/simulate', json={'amount': '10'})
        self.assertEqual(response.status_code, 403)


class TestB2CEndpoints(MpesaEndpointTestCase):

    def setUp(self):
        super().setUp()
        self.session.post.return_value = make_response(200, B2C_OK)

    def test_requires_admin(self):
        response = self.client.post('/api/mpesa/b2c/send', json={
            'phone_number': '0712345678', 'amount': '500', 'command_id': 'BusinessPayment'
        })

        self.assertEqual(response.status_code, 403)
        self.session.post.assert_not_called()

    def test_admin_payout_result_and_listing(self):
        self.current_user = self.admin
        recipient = str(ObjectId())

        response = self.client.post('/api/mpesa/b2c/send', json={
            'phone_number': '0712345678',
            'amount': '500',
            'command_id': 'BusinessPayment',
            'remarks': 'Bet winnings',
            'recipient_user_id': recipient,
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['data']['conversation_id'], B2C_OK['ConversationID'])
        doc = self.db.b2c_transactions.find_one({'conversation_id': B2C_OK['ConversationID']})
        self.assertEqual(doc['status'], 'pending')
        self.assertEqual(doc['phone_number'], '254712345678')

        ack = self.client.post('/api/mpesa/b2c/result', json={'Result': {
            'ResultType': 0,
            'ResultCode': 0,
            'ResultDesc': 'The service request is processed successfully.',
            'OriginatorConversationID': B2C_OK['OriginatorConversationID'],
            'ConversationID': B2C_OK['ConversationID'],
            'TransactionID': 'NLJ41HAY6Q',
        }}).get_json()
        self.assertEqual(ack, {'ResultCode': 0, 'ResultDesc': 'Success'})

        listing = self.client.get('/api/mpesa/b2c/status').get_json()['data']
        self.assertEqual(listing['count'], 1)
        self.assertEqual(listing['transactions'][0]['status'], 'completed')

    def test_validation(self):
        self.current_user = self.admin

        bad_command = self.client.post('/api/mpesa/b2c/send', json={
            'phone_number': '0712345678', 'amount': '500', 'command_id': 'Refund'
        })
        too_small = self.client.post('/api/mpesa/b2c/send', json={
            'phone_number': '0712345678', 'amount': '5', 'command_id': 'BusinessPayment'
        })

        self.assertEqual(bad_command.status_code, 400)
        self.assertEqual(too_small.status_code, 400)
        self.session.post.assert_not_called()

    def test_timeout_callback(self):
        self.current_user = self.admin
        self.client.post('/api/mpesa/b2c/send', json={
            'phone_number': '0712345678', 'amount': '500', 'command_id': 'BusinessPayment'
        })

        response = self.client.post('/api/mpesa/b2c/timeout', json={'Result': {
            'ConversationID': B2C_OK['ConversationID'],
            'OriginatorConversationID': B2C_OK['OriginatorConversationID'],
        }})

        self.assertEqual(response.status_code, 200)
        doc = self.db.b2c_transactions.find_one({'conversation_id': B2C_OK['ConversationID']})
        self.assertEqual(doc['status'], 'failed')
        self.assertEqual(doc['result_desc'], 'Queue timeout')


    def test_timeout_with_non_object_body_is_acknowledged(self):
        for body in [[{'ConversationID': 'x'}], 'x']:
            response = self.client.post('/api/mpesa/b2c/timeout', json=body)
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json(), {'ResultCode': 0, 'ResultDesc': 'Success'})

        response = self.client.post('/api/mpesa/b2c/result', json=[1, 2])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['ResultCode'], 0)

    def test_send_with_non_object_body(self):
        self.current_user = self.admin

        response = self.client.post('/api/mpesa/b2c/send', json=['0712345678'])

        self.assertEqual(response.status_code, 400)
        self.session.post.assert_not_called()


class TestAdminOperations(MpesaEndpointTestCase):

    def test_reconcile_requires_admin(self):
        self.assertEqual(self.client.post('/api/mpesa/reconcile').status_code, 403)

    def test_reconcile_dry_run(self):
        self.current_user = self.admin

        response = self.client.post('/api/mpesa/reconcile', json={'dry_run': True})

        self.assertEqual(response.status_code, 200)
        summary = response.get_json()['data']
        self.assertTrue(summary['dry_run'])
        self.assertEqual(summary['scanned'], 0)

    def test_connectivity(self):
        body = self.client.get('/api/mpesa/connectivity').get_json()

        self.assertTrue(body['data']['connectivity']['connected'])
        self.assertNotIn('test-passkey', str(body))


if __name__ == '__main__':
    unittest.main()
