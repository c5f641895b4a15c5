"""
Callback Reconciler - applies gateway outcome notifications to stored transactions

STK push:   pending -> completed (ResultCode 0) | failed (any other code)
B2C result: pending -> completed | failed
B2C queue timeout: pending -> failed

A terminal record is never changed again; repeated or late deliveries are
logged and acknowledged. The gateway gets its acknowledgement no matter what
happened internally, otherwise it keeps redelivering.
"""
import logging

from pydantic import ValidationError

from models import STATUS_COMPLETED, STATUS_EXPIRED, STATUS_FAILED
from services.mpesa_models import (
    ACK_SUCCESS,
    B2CResultEnvelope,
    B2CTimeoutNotice,
    StkCallbackEnvelope,
    ack_rejected,
)

logger = logging.getLogger(__name__)

QUEUE_TIMEOUT_DESC = 'Queue timeout'
AMOUNT_TOLERANCE = 0.01


def _as_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def notify_payment_outcome(dispatcher, transaction):
    """Queue the user-facing notification for a transaction that just reached a terminal state"""
    if dispatcher is None or not transaction or not transaction.get('user_id'):
        return False

    status = transaction.get('status')
    amount = transaction.get('amount')
    data = {
        'checkout_request_id': transaction.get('checkout_request_id'),
        'status': status,
        'amount': amount,
    }

    if status == STATUS_COMPLETED:
        receipt = transaction.get('mpesa_receipt_number')
        title = 'Payment received'
        body = f'Your payment of KSh {amount} was received.'
        if receipt:
            body = f'{body} M-Pesa receipt {receipt}.'
            data['mpesa_receipt_number'] = receipt
    elif status == STATUS_EXPIRED:
        title = 'Payment expired'
        body = f'Your payment of KSh {amount} was not confirmed in time.'
    else:
        title = 'Payment failed'
        body = transaction.get('result_desc') or f'Your payment of KSh {amount} did not go through.'

    return dispatcher.enqueue(transaction['user_id'], 'payment', title, body, data)


class CallbackReconciler:
    """Matches gateway callbacks to stored transactions and transitions them"""

    def __init__(self, store, dispatcher=None):
        self.store = store
        self.dispatcher = dispatcher

    # ==================== STK PUSH ====================

    def handle_stk_callback(self, payload):
        """
        Apply an STK push callback body.

        Returns:
            The acknowledgement body to send back with HTTP 200
        """
        try:
            callback = StkCallbackEnvelope.model_validate(payload or {}).body.stk_callback
        except ValidationError as e:
            logger.error(f"Malformed STK callback: {e.errors(include_url=False)}")
            self.store.log_callback('stk', payload, 'malformed')
            return ACK_SUCCESS

        merchant_id = callback.merchant_request_id
        checkout_id = callback.checkout_request_id

        logger.info(
            f"STK callback: {checkout_id} / {merchant_id} - "
            f"ResultCode {callback.result_code}: {callback.result_desc}"
        )

        if not merchant_id or not checkout_id:
            logger.warning("STK callback missing correlation ids, rejected")
            self.store.log_callback('stk', payload, 'rejected', merchant_id, checkout_id,
                                    result_code=callback.result_code)
            return ack_rejected('Missing MerchantRequestID or CheckoutRequestID')

        new_status = STATUS_COMPLETED if callback.result_code == 0 else STATUS_FAILED
        extra = {'resolved_by': 'callback'}
        metadata = {}
        if callback.result_code == 0:
            metadata = callback.metadata_dict()
            extra.update({
                'mpesa_receipt_number': metadata.get('MpesaReceiptNumber'),
                'paid_amount': _as_float(metadata.get('Amount')),
                'paid_phone_number': str(metadata['PhoneNumber']) if metadata.get('PhoneNumber') else None,
                'callback_metadata': metadata,
            })

        try:
            updated = self.store.update_status(
                checkout_id, merchant_id, new_status,
                result_code=callback.result_code,
                result_desc=callback.result_desc,
                extra=extra,
            )

            if updated:
                outcome = 'applied'
                logger.info(f"Transaction {checkout_id} -> {new_status}")
                if metadata:
                    self._check_paid_amount(updated, metadata)
                notify_payment_outcome(self.dispatcher, updated)
            else:
                existing = self.store.find_by_ids(checkout_id, merchant_id)
                if existing:
                    outcome = 'duplicate'
                    logger.info(
                        f"Transaction {checkout_id} already {existing.get('status')}, callback ignored"
                    )
                else:
                    outcome = 'unmatched'
                    logger.warning(f"No transaction for callback {checkout_id} / {merchant_id}")
        except Exception as e:
            outcome = 'error'
            logger.error(f"Failed to apply STK callback {checkout_id}: {e}")

        self.store.log_callback('stk', payload, outcome, merchant_id, checkout_id,
                                result_code=callback.result_code)
        return ACK_SUCCESS

    def _check_paid_amount(self, transaction, metadata):
        paid = _as_float(metadata.get('Amount'))
        requested = _as_float(transaction.get('amount'))
        if paid is None or requested is None:
            return
        if abs(paid - requested) > AMOUNT_TOLERANCE:
            logger.warning(
                f"Amount mismatch on {transaction.get('checkout_request_id')}: "
                f"requested {requested}, paid {paid}"
            )

    # ==================== B2C ====================

    def handle_b2c_result(self, payload):
        """Apply a B2C result notification; always acknowledges"""
        try:
            result = B2CResultEnvelope.model_validate(payload or {}).result
        except ValidationError as e:
            logger.error(f"Malformed B2C result: {e.errors(include_url=False)}")
            self.store.log_callback('b2c_result', payload, 'malformed')
            return ACK_SUCCESS

        conversation_id = result.conversation_id
        logger.info(f"B2C result: {conversation_id} - ResultCode {result.result_code}: {result.result_desc}")

        if not conversation_id and not result.originator_conversation_id:
            logger.warning("B2C result missing conversation ids")
            self.store.log_callback('b2c_result', payload, 'rejected', result_code=result.result_code)
            return ACK_SUCCESS

        new_status = STATUS_COMPLETED if result.result_code == 0 else STATUS_FAILED
        extra = {
            'mpesa_transaction_id': result.transaction_id,
            'result_parameters': result.parameters_dict(),
        }
        outcome = self._apply_b2c(conversation_id, result.originator_conversation_id, new_status,
                                  result.result_code, result.result_desc, extra)

        self.store.log_callback('b2c_result', payload, outcome, conversation_id=conversation_id,
                                result_code=result.result_code)
        return ACK_SUCCESS

    def handle_b2c_timeout(self, payload):
        """The gateway gave up on a queued B2C request; the payout is marked failed"""
        # Sent either wrapped in Result or flat
        body = payload or {}
        if isinstance(body, dict) and isinstance(body.get('Result'), dict):
            body = body['Result']
        try:
            notice = B2CTimeoutNotice.model_validate(body)
        except ValidationError as e:
            logger.error(f"Malformed B2C timeout: {e.errors(include_url=False)}")
            self.store.log_callback('b2c_timeout', payload, 'malformed')
            return ACK_SUCCESS

        conversation_id = notice.conversation_id
        originator_id = notice.originator_conversation_id

        logger.warning(f"B2C queue timeout: {conversation_id or originator_id or 'unknown'}")

        if not conversation_id and not originator_id:
            self.store.log_callback('b2c_timeout', payload, 'rejected')
            return ACK_SUCCESS

        outcome = self._apply_b2c(conversation_id, originator_id, STATUS_FAILED, None, QUEUE_TIMEOUT_DESC)
        self.store.log_callback('b2c_timeout', payload, outcome, conversation_id=conversation_id)
        return ACK_SUCCESS

    def _apply_b2c(self, conversation_id, originator_id, new_status, result_code, result_desc, extra=None):
        try:
            updated = self.store.update_b2c_status(
                conversation_id, originator_id, new_status,
                result_code=result_code, result_desc=result_desc, extra=extra,
            )
            if updated:
                logger.info(f"B2C {conversation_id or originator_id} -> {new_status}")
                self._notify_b2c(updated)
                return 'applied'
            if self.store.find_b2c(conversation_id, originator_id):
                return 'duplicate'
            logger.warning(f"No B2C transaction for {conversation_id} / {originator_id}")
            return 'unmatched'
        except Exception as e:
            logger.error(f"Failed to apply B2C outcome for {conversation_id}: {e}")
            return 'error'

    def _notify_b2c(self, transaction):
        if self.dispatcher is None or not transaction.get('recipient_user_id'):
            return
        amount = transaction.get('amount')
        if transaction.get('status') == STATUS_COMPLETED:
            title, body = 'Payout sent', f'KSh {amount} has been sent to your M-Pesa.'
        else:
            title, body = 'Payout failed', transaction.get('result_desc') or f'Payout of KSh {amount} failed.'
        self.dispatcher.enqueue(
            transaction['recipient_user_id'], 'payout', title, body,
            {'conversation_id': transaction.get('conversation_id'), 'status': transaction.get('status')},
        )
