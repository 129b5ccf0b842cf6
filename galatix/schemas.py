"""
Request bodies.

PATCH bodies are plain optional-field models: a field is applied when it was
present in the JSON body (even as null) and left alone when it was absent.
`changes()` is the one place that makes that distinction.
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ValidationError

Category = Literal["ticket", "sponsorship", "raffle", "donation"]
PaymentMethod = Literal["card", "check"]
Role = Literal["edit", "view"]


def changes(patch: BaseModel) -> Dict[str, object]:
    fields = patch.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")
    return fields


# ----------------------------
# Storefront
# ----------------------------
class AttendeeInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    dietary_restrictions: Optional[str] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    # pre-collected seat details for this line, in seat order
    attendees: List[AttendeeInfo] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    items: List[CartItem]
    customer_email: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    donation_cents: int = Field(default=0, ge=0)
    payment_method: PaymentMethod = "card"


# ----------------------------
# Admin: partial updates
# ----------------------------
class OrderUpdate(BaseModel):
    notes: Optional[str] = None


class AttendeeUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    table_id: Optional[str] = None


class TableCreate(BaseModel):
    name: str = Field(min_length=1)
    capacity: int = Field(default=8, ge=0)
    is_reserved: bool = False
    notes: Optional[str] = None


class TableUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    capacity: Optional[int] = Field(default=None, ge=0)
    is_reserved: Optional[bool] = None
    notes: Optional[str] = None


class TableBulkCreate(BaseModel):
    count: int = Field(ge=1, le=500)
    prefix: str = "Table"
    capacity: int = Field(default=8, ge=0)


class AssignRequest(BaseModel):
    attendee_ids: List[str]


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Category
    price_cents: int = Field(ge=0)
    quantity_available: Optional[int] = Field(default=None, ge=0)
    table_size: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True
    sort_order: int = 0


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[Category] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    quantity_available: Optional[int] = Field(default=None, ge=0)
    table_size: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


# ----------------------------
# Auth / users
# ----------------------------
class Credentials(BaseModel):
    email: str
    password: str


class ForgotRequest(BaseModel):
    email: str


class ResetRequest(BaseModel):
    token: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str
    role: Role = "view"


class UserUpdate(BaseModel):
    role: Optional[Role] = None
    password: Optional[str] = None


# ----------------------------
# Mock gateway
# ----------------------------
class MockEmit(BaseModel):
    kind: Literal["succeeded", "failed", "canceled"] = "succeeded"
