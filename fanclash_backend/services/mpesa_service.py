"""
M-Pesa Daraja Gateway Client
Handles OAuth token caching, STK push (C2B), STK status query and B2C payouts

Every call is a single outbound HTTP request with a bounded timeout.
Retries are the caller's decision: a failed call raises MpesaGatewayError
and nothing is retried here.
"""
import base64
import logging
import re
import threading
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests
from pydantic import ValidationError

from services.mpesa_models import (
    AuthResponse,
    B2C_COMMAND_IDS,
    B2CRequest,
    B2CResponse,
    StkPushRequest,
    StkPushResponse,
    StkQueryRequest,
    StkQueryResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_REFERENCE = 'FanClash'
DEFAULT_TRANSACTION_DESC = 'Payment for services'
MIN_B2C_AMOUNT = Decimal('10')
MIN_PRODUCTION_CREDENTIAL_LENGTH = 100

_PHONE_SEPARATORS = re.compile(r'[\s\-+]')
_PHONE_254 = re.compile(r'^254\d{9}$')
_PHONE_07 = re.compile(r'^07\d{8}$')
_PHONE_7 = re.compile(r'^7\d{8}$')


# ==================== ERRORS ====================

class MpesaError(Exception):
    """Base class for payment gateway failures"""


class MpesaValidationError(MpesaError, ValueError):
    """Bad input, rejected before any network call"""


class MpesaConfigurationError(MpesaError):
    """Missing or unsafe gateway configuration"""


class MpesaGatewayError(MpesaError):
    """Non-2xx response, network failure or unparseable gateway body"""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def to_dict(self):
        return {
            'message': str(self),
            'status_code': self.status_code,
            'body': self.body,
        }


# ==================== HELPERS ====================

def format_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan MSISDN to 2547XXXXXXXX.

    254XXXXXXXXX passes through, 07XXXXXXXX and 7XXXXXXXX get the 254 prefix.
    Spaces, dashes and a leading + are ignored when matching. Any other shape
    is returned exactly as given and left for the gateway to reject.
    """
    if phone is None:
        return phone
    cleaned = _PHONE_SEPARATORS.sub('', phone.strip())

    if _PHONE_254.match(cleaned):
        return cleaned
    if _PHONE_07.match(cleaned):
        return f'254{cleaned[1:]}'
    if _PHONE_7.match(cleaned):
        return f'254{cleaned}'

    logger.warning(f"Unexpected phone format: {phone}")
    return phone


def parse_amount(amount) -> Decimal:
    """Parse a positive decimal amount or raise MpesaValidationError"""
    if amount is None or (isinstance(amount, str) and not amount.strip()):
        raise MpesaValidationError('Amount is required')
    if isinstance(amount, bool):
        raise MpesaValidationError(f'Invalid amount: {amount}')
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise MpesaValidationError(f'Invalid amount: {amount}')

    if not value.is_finite():
        raise MpesaValidationError(f'Invalid amount: {amount}')
    if value <= 0:
        raise MpesaValidationError('Amount must be greater than 0')
    return value


def format_amount(value: Decimal) -> str:
    """'100.00' -> '100', '99.50' -> '99.5'"""
    if value == value.to_integral_value():
        return str(value.quantize(Decimal('1')))
    return format(value.normalize(), 'f')


# ==================== TOKEN CACHE ====================

class AccessTokenCache:
    """
    Process-wide OAuth token holder shared by every MpesaService instance.

    The cached (token, expiry) pair is an immutable tuple swapped in one
    assignment, so readers never take a lock. Two requests missing the cache
    at the same time may both fetch a token; the last writer wins.
    """

    TOKEN_LIFETIME = timedelta(hours=1)
    REFRESH_MARGIN = timedelta(minutes=5)

    def __init__(self):
        self._entry = None
        self._write_lock = threading.Lock()

    def get(self, now: Optional[datetime] = None) -> Optional[str]:
        entry = self._entry
        if entry is None:
            return None
        token, expires_at = entry
        now = now or datetime.utcnow()
        if expires_at > now + self.REFRESH_MARGIN:
            return token
        return None

    def store(self, token: str, now: Optional[datetime] = None) -> datetime:
        expires_at = (now or datetime.utcnow()) + self.TOKEN_LIFETIME
        with self._write_lock:
            self._entry = (token, expires_at)
        return expires_at


# ==================== SERVICE ====================

class MpesaService:
    """Daraja API client for one configured shortcode"""

    def __init__(self, config, token_cache: Optional[AccessTokenCache] = None,
                 session: Optional[requests.Session] = None, clock=None):
        self.config = config
        self.token_cache = token_cache if token_cache is not None else AccessTokenCache()
        self.session = session or requests.Session()
        self._clock = clock or datetime.utcnow

        logger.info(f"M-Pesa service initialized in {'PRODUCTION' if config.is_production() else 'SANDBOX'} mode")

    format_phone_number = staticmethod(format_phone_number)

    def _now(self) -> datetime:
        return self._clock()

    def generate_timestamp(self) -> str:
        return self._now().strftime('%Y%m%d%H%M%S')

    def generate_password(self, timestamp: str) -> str:
        raw = f'{self.config.short_code}{self.config.passkey}{timestamp}'
        return base64.b64encode(raw.encode('utf-8')).decode('utf-8')

    # ---------- OAuth ----------

    def get_access_token(self) -> str:
        """Return a cached bearer token or fetch a fresh one"""
        cached = self.token_cache.get(self._now())
        if cached:
            logger.debug("Using cached access token")
            return cached

        logger.info("Requesting new M-Pesa access token")
        auth_string = f'{self.config.consumer_key}:{self.config.consumer_secret}'
        encoded_auth = base64.b64encode(auth_string.encode('utf-8')).decode('utf-8')
        url = self.config.get_mpesa_urls()['auth']

        try:
            response = self.session.get(
                url,
                headers={'Authorization': f'Basic {encoded_auth}'},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            logger.error(f"M-Pesa auth request failed: {e}")
            raise MpesaGatewayError(f'M-Pesa auth request failed: {e}') from e

        if not response.ok:
            logger.error(f"Failed to get access token: {response.status_code} - {response.text}")
            raise MpesaGatewayError(
                f'M-Pesa auth failed: {response.status_code}',
                status_code=response.status_code,
                body=response.text,
            )

        auth = self._parse(response, AuthResponse, 'auth')
        expires_at = self.token_cache.store(auth.access_token, self._now())
        logger.info(
            f"Access token obtained ({auth.access_token[:6]}..., gateway expires_in={auth.expires_in}, "
            f"cached until {expires_at.isoformat()})"
        )
        return auth.access_token

    # ---------- HTTP plumbing ----------

    def _parse(self, response, model, context):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"M-Pesa [{context}] malformed response: {response.text[:300]}")
            raise MpesaGatewayError(
                f'M-Pesa {context} returned a malformed response',
                status_code=response.status_code,
                body=response.text,
            ) from e

    def _post(self, url, request_model, response_model, context):
        access_token = self.get_access_token()
        payload = request_model.model_dump(by_alias=True, exclude_none=True)

        try:
            response = self.session.post(
                url,
                json=payload,
                headers={
                    'Authorization': f'Bearer {access_token}',
                    'Content-Type': 'application/json',
                },
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            logger.error(f"M-Pesa [{context}] network error: {e}")
            raise MpesaGatewayError(f'M-Pesa {context} request failed: {e}') from e

        if not response.ok:
            logger.error(f"M-Pesa [{context}] failed: {response.status_code} - {response.text}")
            raise MpesaGatewayError(
                f'M-Pesa {context} failed: {response.status_code}',
                status_code=response.status_code,
                body=response.text,
            )

        return self._parse(response, response_model, context)

    # ---------- C2B ----------

    def initiate_stk_push(self, phone_number: str, amount, account_reference: Optional[str] = None,
                          transaction_desc: Optional[str] = None) -> StkPushResponse:
        """
        Send an STK push prompt to the payer's phone.

        Returns the gateway's correlation ids and response fields unchanged.
        Persisting the pending transaction is the caller's job.
        """
        value = parse_amount(amount)
        if not phone_number or not str(phone_number).strip():
            raise MpesaValidationError('Phone number is required')

        logger.info(f"C2B: STK push for {phone_number} - KSh {value}")

        formatted_phone = format_phone_number(str(phone_number))
        timestamp = self.generate_timestamp()

        stk_request = StkPushRequest(
            business_short_code=self.config.short_code,
            password=self.generate_password(timestamp),
            timestamp=timestamp,
            transaction_type='CustomerPayBillOnline',
            amount=format_amount(value),
            party_a=formatted_phone,
            party_b=self.config.short_code,
            phone_number=formatted_phone,
            callback_url=self.config.callback_url,
            account_reference=account_reference or DEFAULT_ACCOUNT_REFERENCE,
            transaction_desc=transaction_desc or DEFAULT_TRANSACTION_DESC,
        )

        stk_response = self._post(
            self.config.get_mpesa_urls()['stk_push'], stk_request, StkPushResponse, 'stk_push'
        )
        logger.info(f"C2B initiated: {stk_response.merchant_request_id} / {stk_response.checkout_request_id}")
        return stk_response

    def query_stk_status(self, checkout_request_id: str) -> StkQueryResponse:
        """Ask the gateway for the outcome of an STK push (used by the reconciliation sweep)"""
        if not checkout_request_id:
            raise MpesaValidationError('checkout_request_id is required')

        timestamp = self.generate_timestamp()
        query = StkQueryRequest(
            business_short_code=self.config.short_code,
            password=self.generate_password(timestamp),
            timestamp=timestamp,
            checkout_request_id=checkout_request_id,
        )
        return self._post(self.config.get_mpesa_urls()['stk_query'], query, StkQueryResponse, 'stk_query')

    # ---------- B2C ----------

    def send_b2c_payment(self, phone_number: str, amount, command_id: str, remarks: str,
                         occasion: Optional[str] = None) -> B2CResponse:
        """Pay out from the business shortcode to a customer's phone"""
        if command_id not in B2C_COMMAND_IDS:
            raise MpesaValidationError(f'Invalid command_id. Must be: {", ".join(B2C_COMMAND_IDS)}')
        value = parse_amount(amount)
        if value < MIN_B2C_AMOUNT:
            raise MpesaValidationError(f'Minimum B2C amount is KSh {MIN_B2C_AMOUNT}')
        if not phone_number or not str(phone_number).strip():
            raise MpesaValidationError('Phone number is required')

        if self.config.is_production():
            logger.warning("B2C in PRODUCTION - real money will be sent")
            if len(self.config.security_credential) < MIN_PRODUCTION_CREDENTIAL_LENGTH:
                logger.error(
                    f"Production security credential is too short "
                    f"({len(self.config.security_credential)} chars, expected an encrypted RSA blob)"
                )
                raise MpesaConfigurationError('Invalid production security credential')

        formatted_phone = format_phone_number(str(phone_number))
        logger.info(f"B2C: Sending to {formatted_phone} - KSh {value} ({command_id})")

        b2c_request = B2CRequest(
            initiator_name=self.config.initiator_name,
            security_credential=self.config.security_credential,
            command_id=command_id,
            amount=format_amount(value),
            party_a=self.config.short_code,
            party_b=formatted_phone,
            remarks=remarks or 'Payout',
            queue_timeout_url=self.config.b2c_queue_timeout_url,
            result_url=self.config.b2c_result_url,
            occasion=occasion,
        )

        b2c_response = self._post(self.config.get_mpesa_urls()['b2c'], b2c_request, B2CResponse, 'b2c')

        if b2c_response.response_code != '0':
            logger.error(f"M-Pesa rejected B2C request: {b2c_response.response_description}")
            raise MpesaGatewayError(
                f'M-Pesa error: {b2c_response.response_description}',
                body=b2c_response.model_dump(by_alias=True),
            )

        logger.info(f"B2C initiated: {b2c_response.conversation_id}")
        return b2c_response

    # ---------- Diagnostics ----------

    def check_connectivity(self):
        """Try to fetch a token; never raises"""
        try:
            self.get_access_token()
            connected = True
        except MpesaError as e:
            logger.warning(f"M-Pesa connectivity check failed: {e}")
            connected = False

        return {
            'connected': connected,
            'environment': self.config.environment,
            'business_shortcode': self.config.short_code,
            'can_send_b2c': connected and bool(self.config.initiator_name and self.config.security_credential),
        }
