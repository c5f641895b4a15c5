"""
Credential management for Firebase
Push notifications are optional: the app keeps working without credentials
"""
import json
import logging
import os
import threading

import firebase_admin
from firebase_admin import credentials

logger = logging.getLogger(__name__)


class CredentialManager:
    """Initializes the Firebase Admin SDK from the first credential source found"""

    def __init__(self):
        self.firebase_app = None
        self._initialize_firebase()

    def _initialize_firebase(self):
        """Initialize Firebase Admin SDK"""
        try:
            # Check if Firebase is already initialized
            if firebase_admin._apps:
                logger.info("Firebase already initialized")
                self.firebase_app = firebase_admin.get_app()
                return

            firebase_key_path = os.environ.get('FIREBASE_KEY_PATH')

            if firebase_key_path and os.path.exists(firebase_key_path):
                # Secret File (production)
                logger.info(f"Initializing Firebase with Secret File: {firebase_key_path}")
                cred = credentials.Certificate(firebase_key_path)
                self.firebase_app = firebase_admin.initialize_app(cred)

            elif os.environ.get('FIREBASE_CREDENTIALS_JSON'):
                firebase_creds = json.loads(os.environ.get('FIREBASE_CREDENTIALS_JSON'))
                logger.info("Initializing Firebase with environment variable JSON")
                cred = credentials.Certificate(firebase_creds)
                self.firebase_app = firebase_admin.initialize_app(cred)

            elif os.path.exists('firebase-service-account.json'):
                # Local file (development)
                logger.info("Initializing Firebase with local file: firebase-service-account.json")
                cred = credentials.Certificate('firebase-service-account.json')
                self.firebase_app = firebase_admin.initialize_app(cred)

            else:
                logger.warning("No Firebase credentials found. Push notifications will not work.")

        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            # Don't raise - payments still work without push notifications

    def get_firebase_app(self):
        return self.firebase_app

    def is_firebase_available(self):
        """Check if Firebase is properly initialized"""
        return self.firebase_app is not None


_credential_manager = None
_credential_lock = threading.Lock()


def get_credential_manager():
    """Lazily build the process-wide credential manager"""
    global _credential_manager
    with _credential_lock:
        if _credential_manager is None:
            _credential_manager = CredentialManager()
        return _credential_manager
