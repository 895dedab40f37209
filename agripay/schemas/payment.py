from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StkPushRequest(CamelModel):
    phone: str = Field(..., description="07XXXXXXXX, +2547XXXXXXXX or 2547XXXXXXXX")
    amount: int = Field(..., description="whole KES")
    reference: Optional[str] = Field(None, description="account reference shown on the handset")
    description: Optional[str] = None


class StkPushResponse(CamelModel):
    checkout_id: str
    merchant_request_id: Optional[str] = None
    customer_message: Optional[str] = None
    intent_id: int
    phone: str
    amount: int


class StatusRequest(CamelModel):
    checkout_id: str


class StatusResponse(CamelModel):
    status: str
    result_desc: Optional[str] = None


class PaymentIntentView(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    checkout_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    phone: str
    amount: int
    currency: str
    status: str
    reference: Optional[str] = None
    description: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    result_desc: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ValidatePhoneRequest(CamelModel):
    phone: str


class ValidatePhoneResponse(CamelModel):
    valid: bool
    formatted: Optional[str] = None


class ConfigCheckResponse(CamelModel):
    configured: bool
    settings: Dict[str, bool]
    token_acquired: bool = False


class ErrorResponse(BaseModel):
    message: str
