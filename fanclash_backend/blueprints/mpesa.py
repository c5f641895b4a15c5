"""
M-Pesa Blueprint - STK push payments, gateway callbacks, status polling and B2C payouts
Security: JWT on client endpoints, admin role on payouts, optional shared secret on callbacks
Features: idempotent callbacks, reconciliation sweep, payment notifications, sandbox simulation
"""
from flask import Blueprint, request, jsonify
from datetime import datetime
import hmac
import uuid

from models import TRANSACTION_STATUSES
from services.mpesa_models import B2C_COMMAND_IDS, StkPushResponse
from services.mpesa_service import (
    MpesaConfigurationError,
    MpesaGatewayError,
    MpesaValidationError,
    format_phone_number,
    parse_amount,
)
from utils.auth import admin_required
from utils.callback_reconciler import CallbackReconciler
from utils.mpesa_reconciliation import MpesaReconciler
from utils.payment_status import PaymentStatusService
from utils.transaction_store import DEFAULT_LIST_LIMIT, MpesaTransactionStore


def init_mpesa_blueprint(mongo, token_required, serialize_doc, mpesa_service, dispatcher=None, limiter=None):
    """Initialize the M-Pesa blueprint with database, gateway client and notification dispatcher"""
    mpesa_bp = Blueprint('mpesa', __name__, url_prefix='/api/mpesa')

    config = mpesa_service.config
    store = MpesaTransactionStore(mongo.db)
    reconciler = CallbackReconciler(store, dispatcher)
    status_service = PaymentStatusService(store)
    sweeper = MpesaReconciler(
        store, mpesa_service,
        pending_expiry_minutes=config.pending_expiry_minutes,
        dispatcher=dispatcher,
    )

    # ==================== HELPER FUNCTIONS ====================

    def rate_limited(limit_value):
        if limiter is None:
            return lambda f: f
        return limiter.limit(limit_value)

    def error_response(message, status_code, errors=None):
        return jsonify({
            'success': False,
            'message': message,
            'errors': errors or {'general': [message]}
        }), status_code

    def json_body():
        """Request JSON as a dict; None when the body is not a JSON object"""
        data = request.get_json(silent=True)
        if data is None:
            return {}
        return data if isinstance(data, dict) else None

    def invalid_body_response():
        return error_response('Request body must be a JSON object', 400)

    def gateway_error_response(e):
        print(f'ERROR: M-Pesa gateway error: {str(e)} (status {e.status_code})')
        return jsonify({
            'success': False,
            'message': 'Payment gateway error',
            'errors': {'general': [str(e)]},
            'gateway': e.to_dict()
        }), 500

    def not_configured_response():
        print('WARNING: M-Pesa request rejected, service not configured')
        return error_response('M-Pesa service is not configured', 503)

    def callback_authorized():
        """Shared-secret check for gateway callbacks; open when no secret is configured"""
        if not config.callback_secret:
            return True
        token = request.args.get('token', '')
        return hmac.compare_digest(token.encode('utf-8'), config.callback_secret.encode('utf-8'))

    def scoped_user_id(current_user):
        # Admins may look up any transaction
        if current_user.get('role') == 'admin':
            return None
        return str(current_user['_id'])

    # ==================== HEALTH ====================

    @mpesa_bp.route('/health', methods=['GET'])
    def mpesa_health():
        return jsonify({
            'status': 'ok',
            'service': 'mpesa',
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'features': ['c2b', 'b2c'],
            'environment': config.environment,
            'configured': config.is_configured()
        })

    @mpesa_bp.route('/connectivity', methods=['GET'])
    @token_required
    def mpesa_connectivity(current_user):
        """Try a token fetch against the gateway and report the redacted configuration"""
        try:
            report = mpesa_service.check_connectivity()
            return jsonify({
                'success': True,
                'data': {
                    'connectivity': report,
                    'config': config.get_config_info()
                },
                'message': 'Connected to M-Pesa' if report['connected'] else 'Cannot reach M-Pesa'
            })
        except Exception as e:
            print(f'ERROR: Connectivity check failed: {str(e)}')
            return error_response('Connectivity check failed', 500, {'general': [str(e)]})

    # ==================== C2B: STK PUSH ====================

    @mpesa_bp.route('/stk-push', methods=['POST'])
    @token_required
    @rate_limited('10 per minute')
    def initiate_stk_push(current_user):
        """
        Send an STK push prompt to the payer's phone and record the pending transaction

        Body: phone_number, amount, account_reference (optional), transaction_desc (optional)
        """
        try:
            data = json_body()
            if data is None:
                return invalid_body_response()
            phone_number = str(data.get('phone_number') or '').strip()
            account_reference = data.get('account_reference')
            transaction_desc = data.get('transaction_desc')

            try:
                amount = parse_amount(data.get('amount'))
            except MpesaValidationError as e:
                return error_response(str(e), 400, {'amount': [str(e)]})
            if not phone_number:
                return error_response('Phone number is required', 400, {'phone_number': ['This field is required']})

            if not config.is_configured():
                return not_configured_response()

            user_id = str(current_user['_id'])
            print(f'INFO: STK push requested by user {user_id}: KSh {amount}')

            stk_response = mpesa_service.initiate_stk_push(
                phone_number, amount, account_reference, transaction_desc
            )

            persisted = True
            try:
                store.insert_pending(
                    user_id,
                    format_phone_number(phone_number),
                    amount,
                    stk_response,
                    account_reference=account_reference or 'FanClash',
                    transaction_desc=transaction_desc or 'Payment for services',
                )
            except Exception as db_error:
                # The push already went out; the client still gets the ids to poll with
                persisted = False
                print(f'ERROR: STK push {stk_response.checkout_request_id} accepted but not recorded: {str(db_error)}')

            print(f'SUCCESS: STK push sent: {stk_response.checkout_request_id}')
            return jsonify({
                'success': True,
                'message': stk_response.customer_message or 'STK push sent',
                'data': {
                    'merchant_request_id': stk_response.merchant_request_id,
                    'checkout_request_id': stk_response.checkout_request_id,
                    'response_code': stk_response.response_code,
                    'response_description': stk_response.response_description,
                    'customer_message': stk_response.customer_message,
                    'persisted': persisted
                }
            })

        except MpesaValidationError as e:
            return error_response(str(e), 400)
        except MpesaConfigurationError as e:
            print(f'ERROR: M-Pesa configuration error: {str(e)}')
            return error_response(str(e), 503)
        except MpesaGatewayError as e:
            return gateway_error_response(e)
        except Exception as e:
            print(f'ERROR: STK push failed: {str(e)}')
            return error_response('Failed to initiate payment', 500, {'general': [str(e)]})

    @mpesa_bp.route('/callback', methods=['POST'])
    def stk_callback():
        """Gateway callback for STK push results; always answered with HTTP 200 and an acknowledgement"""
        if not callback_authorized():
            print(f'WARNING: STK callback with bad token from {request.remote_addr}')
            return jsonify({'success': False, 'message': 'Unauthorized'}), 403

        payload = request.get_json(silent=True)
        ack = reconciler.handle_stk_callback(payload)
        return jsonify(ack), 200

    # ==================== STATUS POLLING ====================

    @mpesa_bp.route('/status/check', methods=['POST'])
    @token_required
    def check_status(current_user):
        """
        Poll by checkout id. An unknown id reads as pending.

        Body: checkout_request_id
        """
        try:
            data = json_body()
            if data is None:
                return invalid_body_response()
            snapshot = status_service.check_by_checkout_id(
                data.get('checkout_request_id'), scoped_user_id(current_user)
            )
            return jsonify({
                'success': True,
                'data': snapshot,
                'message': f"Payment {snapshot['status']}"
            })
        except MpesaValidationError as e:
            return error_response(str(e), 400, {'checkout_request_id': [str(e)]})
        except Exception as e:
            print(f'ERROR: Status check failed: {str(e)}')
            return error_response('Failed to check payment status', 500, {'general': [str(e)]})

    @mpesa_bp.route('/status', methods=['GET'])
    @token_required
    def get_status(current_user):
        """Poll by checkout_request_id and/or merchant_request_id query parameters"""
        try:
            snapshot = status_service.check_by_either_id(
                request.args.get('checkout_request_id'),
                request.args.get('merchant_request_id'),
                scoped_user_id(current_user)
            )
            if snapshot is None:
                return error_response('Transaction not found', 404)
            return jsonify({
                'success': True,
                'data': snapshot,
                'message': f"Payment {snapshot['status']}"
            })
        except MpesaValidationError as e:
            return error_response(str(e), 400)
        except Exception as e:
            print(f'ERROR: Status lookup failed: {str(e)}')
            return error_response('Failed to check payment status', 500, {'general': [str(e)]})

    # ==================== HISTORY & STATS ====================

    @mpesa_bp.route('/transactions', methods=['GET'])
    @token_required
    def list_transactions(current_user):
        """The caller's transactions, newest first; optional status filter and limit (max 100)"""
        try:
            try:
                limit = int(request.args.get('limit', DEFAULT_LIST_LIMIT))
            except ValueError:
                return error_response('limit must be an integer', 400, {'limit': ['Invalid value']})

            status = request.args.get('status')
            if status and status not in TRANSACTION_STATUSES:
                return error_response(
                    f'Invalid status. Must be one of: {", ".join(TRANSACTION_STATUSES)}', 400,
                    {'status': ['Invalid value']}
                )

            transactions = store.list_for_user(
                current_user['_id'],
                status=status,
                limit=limit
            )
            return jsonify({
                'success': True,
                'data': {
                    'transactions': [serialize_doc(t) for t in transactions],
                    'count': len(transactions)
                },
                'message': 'Transactions retrieved successfully'
            })
        except Exception as e:
            print(f'ERROR: Failed to list transactions: {str(e)}')
            return error_response('Failed to retrieve transactions', 500, {'general': [str(e)]})

    @mpesa_bp.route('/stats', methods=['GET'])
    @token_required
    def transaction_stats(current_user):
        try:
            return jsonify({
                'success': True,
                'data': store.get_stats(current_user['_id']),
                'message': 'Stats retrieved successfully'
            })
        except Exception as e:
            print(f'ERROR: Failed to compute stats: {str(e)}')
            return error_response('Failed to retrieve stats', 500, {'general': [str(e)]})

    # ==================== SANDBOX SIMULATION ====================

    @mpesa_bp.route('/simulate', methods=['POST'])
    @token_required
    def simulate_payment(current_user):
        """
        Sandbox only: record a synthetic pending payment without calling the gateway.
        If result_code is supplied the matching callback is applied straight away.

        Body: phone_number, amount, result_code (optional)
        """
        if config.is_production():
            return error_response('Simulation is disabled in production', 403)

        try:
            data = json_body()
            if data is None:
                return invalid_body_response()
            try:
                amount = parse_amount(data.get('amount', 1))
            except MpesaValidationError as e:
                return error_response(str(e), 400, {'amount': [str(e)]})

            suffix = uuid.uuid4().hex[:12].upper()
            sim_response = StkPushResponse(
                merchant_request_id=f'SIM-{suffix}',
                checkout_request_id=f'SIM-ws_CO_{suffix}',
                response_code='0',
                response_description='Success. Request accepted for processing',
                customer_message='Simulation successful'
            )
            phone_number = format_phone_number(str(data.get('phone_number') or '254700000000'))
            store.insert_pending(
                str(current_user['_id']), phone_number, amount, sim_response,
                account_reference='FanClash', transaction_desc='Simulated payment', is_simulated=True
            )
            print(f'INFO: Simulated STK push {sim_response.checkout_request_id}')

            status = 'pending'
            if data.get('result_code') is not None:
                result_code = int(data['result_code'])
                metadata = {'Item': [
                    {'Name': 'Amount', 'Value': float(amount)},
                    {'Name': 'MpesaReceiptNumber', 'Value': f'SIM{suffix[:7]}'},
                    {'Name': 'PhoneNumber', 'Value': phone_number},
                ]} if result_code == 0 else None
                stk_callback = {
                    'MerchantRequestID': sim_response.merchant_request_id,
                    'CheckoutRequestID': sim_response.checkout_request_id,
                    'ResultCode': result_code,
                    'ResultDesc': 'Simulated success' if result_code == 0 else 'Simulated failure',
                }
                if metadata:
                    stk_callback['CallbackMetadata'] = metadata
                reconciler.handle_stk_callback({'Body': {'stkCallback': stk_callback}})
                status = store.find_by_checkout_id(sim_response.checkout_request_id)['status']

            return jsonify({
                'success': True,
                'message': 'Simulation successful',
                'data': {
                    'merchant_request_id': sim_response.merchant_request_id,
                    'checkout_request_id': sim_response.checkout_request_id,
                    'status': status
                }
            })
        except ValueError as e:
            return error_response(f'Invalid simulation input: {str(e)}', 400)
        except Exception as e:
            print(f'ERROR: Simulation failed: {str(e)}')
            return error_response('Simulation failed', 500, {'general': [str(e)]})

    # ==================== RECONCILIATION ====================

    @mpesa_bp.route('/reconcile', methods=['POST'])
    @token_required
    @admin_required
    def run_reconciliation(current_user):
        """Run the pending-transaction sweep on demand"""
        try:
            data = json_body()
            if data is None:
                return invalid_body_response()
            dry_run = bool(data.get('dry_run', False))
            print(f'INFO: Manual reconciliation by admin {current_user["_id"]} (dry_run={dry_run})')
            summary = sweeper.sweep(dry_run=dry_run)
            return jsonify({
                'success': True,
                'data': summary,
                'message': 'Reconciliation completed'
            })
        except Exception as e:
            print(f'ERROR: Reconciliation failed: {str(e)}')
            return error_response('Reconciliation failed', 500, {'general': [str(e)]})

    # ==================== B2C ====================

    @mpesa_bp.route('/b2c/send', methods=['POST'])
    @token_required
    @admin_required
    def send_b2c(current_user):
        """
        Pay out to a customer's phone

        Body: phone_number, amount, command_id, remarks, occasion (optional), recipient_user_id (optional)
        """
        try:
            data = json_body()
            if data is None:
                return invalid_body_response()
            phone_number = str(data.get('phone_number') or '').strip()
            command_id = data.get('command_id') or 'BusinessPayment'
            remarks = data.get('remarks') or 'Payout'
            occasion = data.get('occasion')

            if command_id not in B2C_COMMAND_IDS:
                return error_response(
                    f'Invalid command_id. Must be: {", ".join(B2C_COMMAND_IDS)}', 400,
                    {'command_id': ['Invalid value']}
                )
            if not phone_number:
                return error_response('Phone number is required', 400, {'phone_number': ['This field is required']})
            amount = parse_amount(data.get('amount'))

            if not (config.initiator_name and config.security_credential and config.b2c_result_url):
                return not_configured_response()

            b2c_response = mpesa_service.send_b2c_payment(phone_number, amount, command_id, remarks, occasion)

            persisted = True
            try:
                store.insert_b2c(
                    current_user['_id'], format_phone_number(phone_number), amount, command_id, remarks,
                    b2c_response, occasion=occasion, recipient_user_id=data.get('recipient_user_id')
                )
            except Exception as db_error:
                persisted = False
                print(f'ERROR: B2C {b2c_response.conversation_id} accepted but not recorded: {str(db_error)}')

            print(f'SUCCESS: B2C payment initiated: {b2c_response.conversation_id}')
            return jsonify({
                'success': True,
                'message': 'B2C payment initiated',
                'data': {
                    'conversation_id': b2c_response.conversation_id,
                    'originator_conversation_id': b2c_response.originator_conversation_id,
                    'response_code': b2c_response.response_code,
                    'response_description': b2c_response.response_description,
                    'persisted': persisted
                }
            })

        except MpesaValidationError as e:
            return error_response(str(e), 400)
        except MpesaConfigurationError as e:
            print(f'ERROR: M-Pesa configuration error: {str(e)}')
            return error_response(str(e), 503)
        except MpesaGatewayError as e:
            return gateway_error_response(e)
        except Exception as e:
            print(f'ERROR: B2C payment failed: {str(e)}')
            return error_response('Failed to send B2C payment', 500, {'general': [str(e)]})

    @mpesa_bp.route('/b2c/result', methods=['POST'])
    def b2c_result():
        if not callback_authorized():
            print(f'WARNING: B2C result with bad token from {request.remote_addr}')
            return jsonify({'success': False, 'message': 'Unauthorized'}), 403

        ack = reconciler.handle_b2c_result(request.get_json(silent=True))
        return jsonify(ack), 200

    @mpesa_bp.route('/b2c/timeout', methods=['POST'])
    def b2c_timeout():
        if not callback_authorized():
            print(f'WARNING: B2C timeout with bad token from {request.remote_addr}')
            return jsonify({'success': False, 'message': 'Unauthorized'}), 403

        ack = reconciler.handle_b2c_timeout(request.get_json(silent=True))
        return jsonify(ack), 200

    @mpesa_bp.route('/b2c/status', methods=['GET'])
    @token_required
    @admin_required
    def b2c_status(current_user):
        """Recent B2C payouts, newest first"""
        try:
            try:
                limit = int(request.args.get('limit', DEFAULT_LIST_LIMIT))
            except ValueError:
                return error_response('limit must be an integer', 400, {'limit': ['Invalid value']})

            payouts = store.list_b2c(limit)
            return jsonify({
                'success': True,
                'data': {
                    'transactions': [serialize_doc(p) for p in payouts],
                    'count': len(payouts),
                    'environment': config.environment
                },
                'message': 'B2C transactions retrieved successfully'
            })
        except Exception as e:
            print(f'ERROR: Failed to list B2C transactions: {str(e)}')
            return error_response('Failed to retrieve B2C transactions', 500, {'general': [str(e)]})

    return mpesa_bp
