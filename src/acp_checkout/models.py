#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Wire and storage models for the checkout server.

Request models reject unknown fields so a client typo surfaces as a
validation error instead of being silently ignored. The session document is
the JSON stored alongside each checkout row; responses add the row's scalar
columns to it.
"""

from typing import List, Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator

from acp_checkout.enums import CheckoutStatus
from acp_checkout.enums import OrderStatus
from acp_checkout.enums import RefundType

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _RequestModel(BaseModel):
  model_config = ConfigDict(extra="forbid")


class Address(_RequestModel):
  name: Optional[str] = None
  line_one: str = Field(min_length=1)
  line_two: Optional[str] = None
  city: str = Field(min_length=1)
  state: Optional[str] = None
  country: str = Field(pattern=r"^[A-Za-z]{2}$")
  postal_code: str = Field(min_length=1)

  @field_validator("country")
  @classmethod
  def _upper_country(cls, value: str) -> str:
    return value.upper()


class Buyer(_RequestModel):
  first_name: str = Field(min_length=1)
  last_name: Optional[str] = None
  email: str = Field(pattern=_EMAIL_PATTERN)
  phone_number: Optional[str] = None


class Item(_RequestModel):
  id: str = Field(min_length=1)
  quantity: int = Field(ge=1, le=999)


class CreateCheckoutSessionRequest(_RequestModel):
  items: List[Item] = Field(min_length=1)
  buyer: Optional[Buyer] = None
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None
  discount_codes: List[str] = Field(default_factory=list)


class UpdateCheckoutSessionRequest(_RequestModel):
  """Partial update; only fields present in the body are applied.

  An explicit `null` clears an optional field. `version`, when given, is the
  session version the client last saw and the update is rejected if the
  session has moved on since.
  """

  items: Optional[List[Item]] = Field(default=None, min_length=1)
  buyer: Optional[Buyer] = None
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None
  discount_codes: Optional[List[str]] = None
  shipping_selection: Optional[str] = None
  version: Optional[int] = Field(default=None, ge=1)


class PaymentData(_RequestModel):
  token: str = Field(min_length=1)
  provider: str = "stripe"
  billing_address: Optional[Address] = None


class CompleteCheckoutSessionRequest(_RequestModel):
  payment_data: PaymentData
  buyer: Optional[Buyer] = None


class CancelCheckoutSessionRequest(_RequestModel):
  reason: Optional[str] = None


class LineItem(BaseModel):
  id: str
  catalog_ref: str
  title: str
  quantity: int
  unit_price: int
  subtotal: int
  requires_shipping: bool = True


class ShippingOption(BaseModel):
  id: str
  title: str
  amount: int


class AppliedDiscount(BaseModel):
  code: str
  amount: int


class Totals(BaseModel):
  """Session totals in minor currency units."""

  subtotal: int = 0
  shipping: int = 0
  tax: int = 0
  discount: int = 0
  total: int = 0

  @model_validator(mode="after")
  def _check_total(self) -> "Totals":
    expected = self.subtotal + self.shipping + self.tax - self.discount
    if self.total != expected:
      raise ValueError(f"total {self.total} does not add up to {expected}")
    return self

  @classmethod
  def compute(
      cls, subtotal: int, shipping: int, tax: int, discount: int
  ) -> "Totals":
    return cls(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        discount=discount,
        total=subtotal + shipping + tax - discount,
    )


class OrderSummary(BaseModel):
  id: str
  permalink_url: str


class CheckoutSessionDocument(BaseModel):
  """The JSON document persisted with each checkout session row."""

  currency: str
  line_items: List[LineItem] = Field(default_factory=list)
  buyer: Optional[Buyer] = None
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None
  shipping_options: List[ShippingOption] = Field(default_factory=list)
  shipping_selection: Optional[str] = None
  discount_codes: List[str] = Field(default_factory=list)
  applied_discounts: List[AppliedDiscount] = Field(default_factory=list)
  totals: Totals = Field(default_factory=Totals)
  order: Optional[OrderSummary] = None

  @property
  def requires_shipping(self) -> bool:
    return any(item.requires_shipping for item in self.line_items)


class CheckoutSessionResponse(CheckoutSessionDocument):
  """Caller-visible checkout session representation."""

  model_config = ConfigDict(frozen=True)

  id: str
  status: CheckoutStatus
  order_id: Optional[str] = None
  version: int
  created_at: str
  updated_at: str
  expires_at: str


class Refund(BaseModel):
  type: RefundType = RefundType.ORIGINAL_PAYMENT
  amount: int


class OrderResponse(BaseModel):
  """An order materialized from a completed checkout session."""

  model_config = ConfigDict(frozen=True)

  id: str
  checkout_session_id: str
  status: OrderStatus
  permalink_url: str
  currency: str
  line_items: List[LineItem]
  totals: Totals
  refunds: List[Refund] = Field(default_factory=list)
  created_at: str
  updated_at: str
