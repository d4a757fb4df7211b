from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ShippingMethod = Literal["standard", "express", "overnight", "pickup"]
PaymentMethod = Literal["card", "paypal", "bank_transfer", "wallet", "cash_on_delivery"]
NoteKind = Literal["customer", "vendor", "internal"]
ReturnAction = Literal["approve", "reject", "mark_received", "refund"]


class CommandModel(BaseModel):
    """Accepts snake_case and camelCase keys; unknown keys are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class AddressModel(CommandModel):
    line1: str = Field(min_length=1, max_length=256)
    line2: str | None = Field(default=None, max_length=256)
    city: str = Field(min_length=1, max_length=128)
    state: str | None = Field(default=None, max_length=128)
    postal_code: str = Field(min_length=1, max_length=32)
    country: str = Field(min_length=2, max_length=64)
    recipient: str | None = Field(default=None, max_length=128)
    phone: str | None = Field(default=None, max_length=32)


class OrderItemInput(CommandModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=1000)
    variant: str | None = Field(default=None, description="variant name from the product's own variant list")
    customizations: dict[str, Any] | None = None


class ShippingSelection(CommandModel):
    method: ShippingMethod = "standard"
    address: AddressModel | None = None

    @model_validator(mode="after")
    def _address_required_unless_pickup(self) -> "ShippingSelection":
        if self.method != "pickup" and self.address is None:
            raise ValueError("shipping address is required unless method is pickup")
        return self


class BillingSelection(CommandModel):
    same_as_shipping: bool = True
    address: AddressModel | None = None

    @model_validator(mode="after")
    def _address_required_when_separate(self) -> "BillingSelection":
        if not self.same_as_shipping and self.address is None:
            raise ValueError("billing address is required when not same as shipping")
        return self


class OrderNotesInput(CommandModel):
    customer: str | None = Field(default=None, max_length=2000)
    vendor: str | None = Field(default=None, max_length=2000)


class CreateOrderCommand(CommandModel):
    items: list[OrderItemInput] = Field(min_length=1, max_length=100)
    shipping: ShippingSelection
    billing: BillingSelection | None = None
    payment_method: PaymentMethod
    notes: OrderNotesInput | str | None = None
    coupon_code: str | None = Field(default=None, max_length=64)
    source: Literal["web", "mobile", "api"] = "web"
    cart_id: str | None = None

    @field_validator("coupon_code")
    @classmethod
    def _normalize_coupon(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None


class CancelOrderCommand(CommandModel):
    reason: str | None = Field(default=None, max_length=1000)


class UpdateStatusCommand(CommandModel):
    status: str = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=2000)
    location: str | None = Field(default=None, max_length=256)
    tracking_number: str | None = Field(default=None, max_length=128)
    tracking_url: str | None = Field(default=None, max_length=512)
    carrier: str | None = Field(default=None, max_length=64)


class ConfirmPaymentCommand(CommandModel):
    payment_method: PaymentMethod
    payment_data: dict[str, Any] | None = None


class ShipOrderCommand(CommandModel):
    tracking_number: str = Field(min_length=1, max_length=128)
    carrier: str = Field(min_length=1, max_length=64)
    tracking_url: str | None = Field(default=None, max_length=512)
    notes: str | None = Field(default=None, max_length=2000)


class DeliverOrderCommand(CommandModel):
    notes: str | None = Field(default=None, max_length=2000)
    location: str | None = Field(default=None, max_length=256)


class VendorStatusCommand(CommandModel):
    status: Literal["processing", "ready", "shipped", "delivered"]
    notes: str | None = Field(default=None, max_length=2000)
    tracking_number: str | None = Field(default=None, max_length=128)
    tracking_url: str | None = Field(default=None, max_length=512)
    carrier: str | None = Field(default=None, max_length=64)
    vendor_id: str | None = Field(default=None, description="admin only: which vendor sub-order to update")


class ReturnItemInput(CommandModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=256)
    # Order line position; without it the product's lines fill in order.
    line: int | None = Field(default=None, ge=0)


class ReturnRequestCommand(CommandModel):
    items: list[ReturnItemInput] = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=256)
    description: str | None = Field(default=None, max_length=2000)


class ProcessReturnCommand(CommandModel):
    action: ReturnAction
    notes: str | None = Field(default=None, max_length=2000)


class RefundCommand(CommandModel):
    reason: str = Field(min_length=1, max_length=1000)
    amount: Decimal | None = Field(default=None, gt=0)


class AddNoteCommand(CommandModel):
    note: str = Field(min_length=1, max_length=2000)
    type: NoteKind = "internal"


class SendMessageCommand(CommandModel):
    message: str = Field(min_length=1, max_length=2000)
    type: Literal["customer", "vendor", "internal"] = Field(
        default="customer",
        description="audience: customer (from vendor/admin), vendor (from customer/admin), internal (admin)",
    )


class BulkStatusCommand(CommandModel):
    order_ids: list[str] = Field(min_length=1, max_length=100)
    status: str = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=2000)
