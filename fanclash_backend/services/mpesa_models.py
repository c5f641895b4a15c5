"""
M-Pesa Daraja Payload Models
Typed request/response structures for every gateway operation

Outbound requests serialize with the gateway's field names (by_alias=True).
Inbound payloads (responses and callbacks) are validated at the boundary so
handlers never reach into free-form dicts.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _GatewayModel(BaseModel):
    """Base for gateway shapes: accept both field names and aliases, keep unknown keys out."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')


# ==================== OAUTH ====================

class AuthResponse(_GatewayModel):
    access_token: str = Field(min_length=1)
    expires_in: Optional[str] = None

    @field_validator('expires_in', mode='before')
    @classmethod
    def coerce_expires_in(cls, v):
        # Sandbox returns a string, some proxies return an int
        return None if v is None else str(v)


# ==================== STK PUSH (C2B) ====================

class StkPushRequest(_GatewayModel):
    business_short_code: str = Field(alias='BusinessShortCode')
    password: str = Field(alias='Password')
    timestamp: str = Field(alias='Timestamp', pattern=r'^\d{14}$')
    transaction_type: str = Field(alias='TransactionType', default='CustomerPayBillOnline')
    amount: str = Field(alias='Amount')
    party_a: str = Field(alias='PartyA')
    party_b: str = Field(alias='PartyB')
    phone_number: str = Field(alias='PhoneNumber')
    callback_url: str = Field(alias='CallBackURL')
    account_reference: str = Field(alias='AccountReference')
    transaction_desc: str = Field(alias='TransactionDesc')


class StkPushResponse(_GatewayModel):
    merchant_request_id: str = Field(alias='MerchantRequestID', min_length=1)
    checkout_request_id: str = Field(alias='CheckoutRequestID', min_length=1)
    response_code: str = Field(alias='ResponseCode')
    response_description: str = Field(alias='ResponseDescription', default='')
    customer_message: str = Field(alias='CustomerMessage', default='')

    @field_validator('response_code', mode='before')
    @classmethod
    def coerce_code(cls, v):
        return str(v)


class StkQueryRequest(_GatewayModel):
    business_short_code: str = Field(alias='BusinessShortCode')
    password: str = Field(alias='Password')
    timestamp: str = Field(alias='Timestamp', pattern=r'^\d{14}$')
    checkout_request_id: str = Field(alias='CheckoutRequestID', min_length=1)


class StkQueryResponse(_GatewayModel):
    response_code: Optional[str] = Field(alias='ResponseCode', default=None)
    response_description: Optional[str] = Field(alias='ResponseDescription', default=None)
    merchant_request_id: Optional[str] = Field(alias='MerchantRequestID', default=None)
    checkout_request_id: Optional[str] = Field(alias='CheckoutRequestID', default=None)
    result_code: Optional[int] = Field(alias='ResultCode', default=None)
    result_desc: Optional[str] = Field(alias='ResultDesc', default=None)

    @field_validator('response_code', mode='before')
    @classmethod
    def coerce_response_code(cls, v):
        return None if v is None else str(v)

    @field_validator('result_code', mode='before')
    @classmethod
    def coerce_result_code(cls, v):
        if v is None or v == '':
            return None
        return int(v)


# ==================== B2C ====================

B2C_COMMAND_IDS = ('BusinessPayment', 'SalaryPayment', 'PromotionPayment')


class B2CRequest(_GatewayModel):
    initiator_name: str = Field(alias='InitiatorName')
    security_credential: str = Field(alias='SecurityCredential')
    command_id: str = Field(alias='CommandID')
    amount: str = Field(alias='Amount')
    party_a: str = Field(alias='PartyA')
    party_b: str = Field(alias='PartyB')
    remarks: str = Field(alias='Remarks')
    queue_timeout_url: str = Field(alias='QueueTimeOutURL')
    result_url: str = Field(alias='ResultURL')
    occasion: Optional[str] = Field(alias='Occasion', default=None)

    @field_validator('command_id')
    @classmethod
    def known_command(cls, v):
        if v not in B2C_COMMAND_IDS:
            raise ValueError(f'CommandID must be one of: {", ".join(B2C_COMMAND_IDS)}')
        return v


class B2CResponse(_GatewayModel):
    conversation_id: str = Field(alias='ConversationID', min_length=1)
    originator_conversation_id: str = Field(alias='OriginatorConversationID', min_length=1)
    response_code: str = Field(alias='ResponseCode')
    response_description: str = Field(alias='ResponseDescription', default='')

    @field_validator('response_code', mode='before')
    @classmethod
    def coerce_code(cls, v):
        return str(v)


# ==================== CALLBACKS ====================

class CallbackItem(_GatewayModel):
    name: str = Field(alias='Name')
    value: Any = Field(alias='Value', default=None)


class CallbackMetadata(_GatewayModel):
    items: List[CallbackItem] = Field(alias='Item', default_factory=list)


class StkCallback(_GatewayModel):
    merchant_request_id: str = Field(alias='MerchantRequestID', default='')
    checkout_request_id: str = Field(alias='CheckoutRequestID', default='')
    result_code: int = Field(alias='ResultCode')
    result_desc: str = Field(alias='ResultDesc', default='')
    callback_metadata: Optional[CallbackMetadata] = Field(alias='CallbackMetadata', default=None)

    @field_validator('merchant_request_id', 'checkout_request_id', mode='before')
    @classmethod
    def strip_ids(cls, v):
        if v is None:
            return ''
        return str(v).strip()

    def metadata_dict(self) -> Dict[str, Any]:
        """Flatten the {Name, Value} item list into a plain dict."""
        if not self.callback_metadata:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}


class StkCallbackBody(_GatewayModel):
    stk_callback: StkCallback = Field(alias='stkCallback')


class StkCallbackEnvelope(_GatewayModel):
    body: StkCallbackBody = Field(alias='Body')


class B2CResultParameter(_GatewayModel):
    key: str = Field(alias='Key')
    value: Any = Field(alias='Value', default=None)


class B2CResultParameters(_GatewayModel):
    items: List[B2CResultParameter] = Field(alias='ResultParameter', default_factory=list)


class B2CResult(_GatewayModel):
    result_type: Optional[int] = Field(alias='ResultType', default=None)
    result_code: int = Field(alias='ResultCode')
    result_desc: str = Field(alias='ResultDesc', default='')
    originator_conversation_id: str = Field(alias='OriginatorConversationID', default='')
    conversation_id: str = Field(alias='ConversationID', default='')
    transaction_id: Optional[str] = Field(alias='TransactionID', default=None)
    result_parameters: Optional[B2CResultParameters] = Field(alias='ResultParameters', default=None)

    @field_validator('result_parameters', mode='before')
    @classmethod
    def single_parameter_as_list(cls, v):
        # Daraja sends a bare object instead of a one-element list
        if isinstance(v, dict) and isinstance(v.get('ResultParameter'), dict):
            return {'ResultParameter': [v['ResultParameter']]}
        return v

    def parameters_dict(self) -> Dict[str, Any]:
        if not self.result_parameters:
            return {}
        return {p.key: p.value for p in self.result_parameters.items}


class B2CResultEnvelope(_GatewayModel):
    result: B2CResult = Field(alias='Result')


class B2CTimeoutNotice(_GatewayModel):
    """Queue timeout body; only the conversation ids matter"""
    originator_conversation_id: str = Field(alias='OriginatorConversationID', default='')
    conversation_id: str = Field(alias='ConversationID', default='')

    @field_validator('originator_conversation_id', 'conversation_id', mode='before')
    @classmethod
    def strip_ids(cls, v):
        if v is None:
            return ''
        return str(v).strip()


# Fixed gateway acknowledgements
ACK_SUCCESS = {'ResultCode': 0, 'ResultDesc': 'Success'}


def ack_rejected(description: str) -> Dict[str, Any]:
    return {'ResultCode': 1, 'ResultDesc': description}
