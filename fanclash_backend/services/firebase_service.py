"""
Firebase Push Notification Service
Uses the credential manager for proper Firebase initialization
"""
import logging
from typing import Optional, Dict, Any, List

from firebase_admin import messaging

from config.credentials import get_credential_manager

logger = logging.getLogger(__name__)


def _stringify_data(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # FCM data payloads only carry string values
    return {str(k): '' if v is None else str(v) for k, v in (data or {}).items()}


class FirebaseService:
    """Service for sending push notifications via Firebase Cloud Messaging"""

    def __init__(self, credential_manager=None):
        manager = credential_manager or get_credential_manager()
        self.is_available = manager.is_firebase_available()
        if not self.is_available:
            logger.warning("Firebase is not available. Push notifications will be disabled.")

    def send_push_notification(
        self,
        fcm_token: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send a push notification to a single device

        Returns:
            bool: True if sent successfully, False otherwise
        """
        if not self.is_available:
            logger.warning("Firebase not available, skipping push notification")
            return False

        try:
            message = messaging.Message(
                notification=messaging.Notification(title=title, body=body),
                data=_stringify_data(data),
                token=fcm_token
            )
            response = messaging.send(message)
            logger.info(f"Push notification sent successfully: {response}")
            return True

        except Exception as e:
            logger.error(f"Failed to send push notification: {e}")
            return False

    def send_push_notifications_batch(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send push notifications to multiple devices

        Returns:
            dict: success_count, failure_count and the tokens FCM reported as unregistered
        """
        if not tokens:
            return {'success_count': 0, 'failure_count': 0, 'invalid_tokens': []}

        if not self.is_available:
            logger.warning("Firebase not available, skipping batch push notifications")
            return {'success_count': 0, 'failure_count': len(tokens), 'invalid_tokens': []}

        try:
            messages = [
                messaging.Message(
                    notification=messaging.Notification(title=title, body=body),
                    data=_stringify_data(data),
                    token=token
                )
                for token in tokens
            ]
            response = messaging.send_each(messages)

            invalid_tokens = [
                token for token, resp in zip(tokens, response.responses)
                if not resp.success and isinstance(resp.exception, messaging.UnregisteredError)
            ]
            logger.info(
                f"Batch push notifications sent: {response.success_count} success, "
                f"{response.failure_count} failures"
            )
            return {
                'success_count': response.success_count,
                'failure_count': response.failure_count,
                'invalid_tokens': invalid_tokens,
            }

        except Exception as e:
            logger.error(f"Failed to send batch push notifications: {e}")
            return {
                'success_count': 0,
                'failure_count': len(tokens),
                'invalid_tokens': [],
                'error': str(e)
            }

    def send_to_user(self, db, user_id: str, title: str, body: str,
                     data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Push to every device registered for a user in fcm_tokens, dropping unregistered tokens"""
        tokens = [doc['fcm_token'] for doc in db.fcm_tokens.find({'user_id': str(user_id)}, {'fcm_token': 1})]
        if not tokens:
            logger.info(f"No FCM tokens registered for user {user_id}")
            return {'success_count': 0, 'failure_count': 0, 'invalid_tokens': []}

        result = self.send_push_notifications_batch(tokens, title, body, data)
        if result['invalid_tokens']:
            db.fcm_tokens.delete_many({'fcm_token': {'$in': result['invalid_tokens']}})
            logger.info(f"Removed {len(result['invalid_tokens'])} unregistered FCM tokens for user {user_id}")
        return result
