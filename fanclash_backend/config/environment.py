"""
Environment Configuration for M-Pesa Services

Centralized access to the environment variables used by:
- Daraja API credentials (OAuth consumer key/secret)
- STK push (shortcode, passkey, callback URL)
- B2C payouts (initiator, security credential, result/timeout URLs)
- Reconciliation sweep timing
"""

import os
from urllib.parse import urlsplit, urlunsplit

# Daraja base URLs
MPESA_BASE_URLS = {
    'sandbox': 'https://sandbox.safaricom.co.ke',
    'production': 'https://api.safaricom.co.ke',
}

MPESA_AUTH_PATH = '/oauth/v1/generate?grant_type=client_credentials'
MPESA_STK_PUSH_PATH = '/mpesa/stkpush/v1/processrequest'
MPESA_STK_QUERY_PATH = '/mpesa/stkpushquery/v1/query'
MPESA_B2C_PATH = '/mpesa/b2c/v1/paymentrequest'

DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_PENDING_EXPIRY_MINUTES = 30
DEFAULT_RECONCILIATION_INTERVAL_MINUTES = 5


def _int_env(name, default):
    raw = os.environ.get(name, '')
    try:
        return int(raw) if raw else default
    except ValueError:
        print(f'WARNING: {name}={raw!r} is not an integer, using {default}')
        return default


def _without_query(url):
    """Drop the query string and fragment; callback URLs carry the shared secret there"""
    if not url:
        return url
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '', ''))


class MpesaConfig:
    """Daraja credentials and endpoints for one environment (sandbox or production)"""

    def __init__(self, consumer_key='', consumer_secret='', short_code='', passkey='',
                 callback_url='', b2c_result_url='', b2c_queue_timeout_url='',
                 initiator_name='', security_credential='', environment='sandbox',
                 callback_secret='', request_timeout=DEFAULT_REQUEST_TIMEOUT,
                 pending_expiry_minutes=DEFAULT_PENDING_EXPIRY_MINUTES,
                 reconciliation_interval_minutes=DEFAULT_RECONCILIATION_INTERVAL_MINUTES):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.short_code = str(short_code)
        self.passkey = passkey
        self.callback_url = callback_url
        self.b2c_result_url = b2c_result_url
        self.b2c_queue_timeout_url = b2c_queue_timeout_url
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self.environment = (environment or 'sandbox').lower()
        self.callback_secret = callback_secret
        self.request_timeout = request_timeout
        self.pending_expiry_minutes = pending_expiry_minutes
        self.reconciliation_interval_minutes = reconciliation_interval_minutes

        if self.environment not in MPESA_BASE_URLS:
            print(f'WARNING: Unknown MPESA_ENVIRONMENT {self.environment!r}, falling back to sandbox')
            self.environment = 'sandbox'

    @classmethod
    def from_env(cls):
        """Build the config from MPESA_* environment variables"""
        return cls(
            consumer_key=os.environ.get('MPESA_CONSUMER_KEY', ''),
            consumer_secret=os.environ.get('MPESA_CONSUMER_SECRET', ''),
            short_code=os.environ.get('MPESA_SHORT_CODE', ''),
            passkey=os.environ.get('MPESA_PASSKEY', ''),
            callback_url=os.environ.get('MPESA_CALLBACK_URL', ''),
            b2c_result_url=os.environ.get('MPESA_B2C_RESULT_URL', ''),
            b2c_queue_timeout_url=os.environ.get('MPESA_B2C_QUEUE_TIMEOUT_URL', ''),
            initiator_name=os.environ.get('MPESA_INITIATOR_NAME', ''),
            security_credential=os.environ.get('MPESA_SECURITY_CREDENTIAL', ''),
            environment=os.environ.get('MPESA_ENVIRONMENT', 'sandbox'),
            callback_secret=os.environ.get('MPESA_CALLBACK_SECRET', ''),
            request_timeout=_int_env('MPESA_REQUEST_TIMEOUT', DEFAULT_REQUEST_TIMEOUT),
            pending_expiry_minutes=_int_env('MPESA_PENDING_EXPIRY_MINUTES', DEFAULT_PENDING_EXPIRY_MINUTES),
            reconciliation_interval_minutes=_int_env(
                'MPESA_RECONCILIATION_INTERVAL_MINUTES', DEFAULT_RECONCILIATION_INTERVAL_MINUTES
            ),
        )

    def is_production(self):
        return self.environment == 'production'

    def is_configured(self):
        """STK push needs at least OAuth credentials, shortcode, passkey and a callback URL"""
        return all([
            self.consumer_key,
            self.consumer_secret,
            self.short_code,
            self.passkey,
            self.callback_url,
        ])

    @property
    def base_url(self):
        return MPESA_BASE_URLS[self.environment]

    def get_mpesa_urls(self):
        """
        Returns:
            dict with 'auth', 'stk_push', 'stk_query' and 'b2c' URLs
        """
        return {
            'auth': f'{self.base_url}{MPESA_AUTH_PATH}',
            'stk_push': f'{self.base_url}{MPESA_STK_PUSH_PATH}',
            'stk_query': f'{self.base_url}{MPESA_STK_QUERY_PATH}',
            'b2c': f'{self.base_url}{MPESA_B2C_PATH}',
        }

    def get_config_info(self):
        """Redacted summary, safe to return from an API"""
        return {
            'environment': self.environment,
            'is_production': self.is_production(),
            'business_shortcode': self.short_code,
            'initiator_name': self.initiator_name,
            'callback_url': _without_query(self.callback_url),
            'b2c_result_url': _without_query(self.b2c_result_url),
            'b2c_timeout_url': _without_query(self.b2c_queue_timeout_url),
            'consumer_key_set': bool(self.consumer_key),
            'consumer_secret_set': bool(self.consumer_secret),
            'passkey_set': bool(self.passkey),
            'callback_secret_set': bool(self.callback_secret),
            'security_credential_length': len(self.security_credential),
        }
