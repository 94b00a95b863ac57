from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Optional, List, Any, Union
from datetime import datetime


# --- Staff users ---
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    role: str
    is_active: bool
    created_at: datetime


# --- Tokens ---
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TokenData(BaseModel):
    sub: str | None = None  # user id as string


# --- STK push ---
class CartItemIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    name: str
    price: Union[str, float, int]
    quantity: int = Field(default=1, ge=1)


class InitiatePaymentRequest(BaseModel):
    phoneNumber: str = Field(..., description="Payer phone, any of 07.., +2547.., 2547..")
    amount: float = Field(..., description="Cart subtotal, rounded to whole shillings")
    tableNumber: str
    items: List[CartItemIn] = Field(default_factory=list)

    @field_validator("tableNumber", mode="before")
    @classmethod
    def table_to_str(cls, v: Any) -> str:
        return str(v) if v is not None else v


class InitiatePaymentResponse(BaseModel):
    success: bool = True
    message: str
    checkoutRequestId: str
    merchantRequestId: str


class QueryStatusRequest(BaseModel):
    checkoutRequestId: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    success: bool
    message: str
    status: str
    transactionId: Optional[str] = None


# --- Daraja callback ---
class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    Item: List[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: Union[int, str]
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[StkCallbackMetadata] = None

    def metadata_value(self, name: str) -> Any:
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None

    @property
    def succeeded(self) -> bool:
        return str(self.ResultCode) == "0"


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackPayload(BaseModel):
    Body: StkCallbackBody


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Callback received successfully"


# --- Admin views ---
class TransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    checkout_request_id: str
    merchant_request_id: str
    phone_number: str
    amount: int
    table_number: Optional[str] = None
    items: Optional[List[dict]] = None
    status: str
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    result_code: Optional[str] = None
    result_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderItemView(BaseModel):
    id: Optional[int] = None
    name: str
    price: str
    quantity: int


class CustomerView(BaseModel):
    name: str
    phone: Optional[str] = None


class OrderView(BaseModel):
    """Order as the dashboard and receipt screens consume it."""
    id: int
    items: List[OrderItemView]
    customer: CustomerView
    status: str
    total: str
    subtotal: str
    createdAt: str
    tableNumber: Optional[str] = None
    transactionId: Optional[int] = None


class OrderStatusUpdate(BaseModel):
    status: str
