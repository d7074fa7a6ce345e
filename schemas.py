"""
Database Schemas for the Solar Store & Installation Booking App

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Product -> collection "product"
"""
import math
from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationError as PydanticValidationError, field_validator, model_validator

import config
from errors import ValidationError, validation_message

Role = Literal["customer", "admin", "superadmin"]
ADMIN_ROLES = ("admin", "superadmin")

ProductCategory = Literal["Solar Panel", "Battery", "Controller", "Cable", "Other"]
BUNDLE_CATEGORIES = ("Solar Panel", "Battery", "Controller", "Cable")

CourseLevel = Literal["beginner", "intermediate", "advanced"]

OrderType = Literal["product", "service", "course"]
OrderStatus = Literal["pending", "processing", "confirmed", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "completed", "failed"]
PAYMENT_METHODS = ("cash", "mobile_money", "bank_transfer")
StockOperation = Literal["set", "add", "subtract"]

SERVICE_NAME = "Solar Installation"
SERVICE_SLOTS = ("panel", "battery", "controller", "cable")


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Stored naive in UTC so values read back from MongoDB compare cleanly
Timestamp = Annotated[datetime, AfterValidator(_naive_utc)]


def validate_as(schema, data: Any):
    """Validate ``data`` against a model or TypeAdapter, raising the app's ValidationError."""
    try:
        if isinstance(schema, TypeAdapter):
            return schema.validate_python(data)
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(validation_message(exc))


# Accounts

class User(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    hashed_password: str
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[Timestamp] = None
    role: Role = "customer"

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()


# Products: specifications are a tagged union keyed by category.
# Keys outside a category's variant are dropped on validation.

class BaseSpecs(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    manufacturer: str
    model: str
    warranty: str


class PanelSpecs(BaseSpecs):
    wattage: float = Field(..., gt=0)
    voltage: float = Field(..., gt=0)
    dimensions: str


class BatterySpecs(BaseSpecs):
    voltage: float = Field(..., gt=0)
    capacity: float = Field(..., gt=0)
    type: str


class ControllerSpecs(BaseSpecs):
    voltage: float = Field(..., gt=0)
    max_current: float = Field(..., gt=0)
    features: str


class CableSpecs(BaseSpecs):
    length: float = Field(..., gt=0)
    gauge: str
    material: str


class _ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=500)
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=0)
    low_stock_threshold: int = Field(default_factory=lambda: config.LOW_STOCK_THRESHOLD, ge=0)
    images: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Please add a product name")
        return v


class SolarPanel(_ProductBase):
    category: Literal["Solar Panel"]
    specifications: PanelSpecs


class Battery(_ProductBase):
    category: Literal["Battery"]
    specifications: BatterySpecs


class Controller(_ProductBase):
    category: Literal["Controller"]
    specifications: ControllerSpecs


class Cable(_ProductBase):
    category: Literal["Cable"]
    specifications: CableSpecs


class OtherProduct(_ProductBase):
    category: Literal["Other"]
    specifications: BaseSpecs


Product = Annotated[
    Union[SolarPanel, Battery, Controller, Cable, OtherProduct],
    Field(discriminator="category"),
]
product_adapter = TypeAdapter(Product)


# Courses

class Course(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    level: CourseLevel
    category: str
    price: float = Field(..., ge=0)
    start_date: Timestamp
    end_date: Timestamp
    max_students: int = Field(..., ge=0)
    course_material: Optional[str] = None

    @model_validator(mode="after")
    def _check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


# Installation services

class ServiceSlot(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)


class ServiceProducts(BaseModel):
    panel: ServiceSlot
    battery: ServiceSlot
    controller: ServiceSlot
    cable: ServiceSlot


class Service(BaseModel):
    # name and total_cost are not accepted from callers
    description: str
    products: ServiceProducts
    labor_cost: float = Field(..., ge=0)
    installation_date: Timestamp
    estimated_duration: str


# Orders

class ClientInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    user: Optional[str] = None


class LineItem(BaseModel):
    product: Optional[str] = None
    service: Optional[str] = None
    course: Optional[str] = None
    name: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _one_reference(self):
        refs = [r for r in (self.product, self.service, self.course) if r is not None]
        if len(refs) != 1:
            raise ValueError("a line item references exactly one of product, service or course")
        return self


class PreferredDates(BaseModel):
    start_date: Timestamp
    end_date: Timestamp

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class Order(BaseModel):
    order_type: OrderType
    client: ClientInfo
    items: List[LineItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    preferred_dates: Optional[PreferredDates] = None
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: Optional[str] = None

    @model_validator(mode="after")
    def _check_consistency(self):
        expected = sum(i.price * i.quantity for i in self.items)
        if not math.isclose(self.total_amount, expected, abs_tol=1e-9):
            raise ValueError("total_amount must equal the sum of line item price x quantity")
        if self.order_type == "service" and self.preferred_dates is None:
            raise ValueError("preferred_dates are required for service orders")
        return self


# Request payloads shared by the stores

class ContactIn(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    location: Optional[str] = None


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class ProductOrderRequest(ContactIn):
    items: List[OrderItemIn] = Field(default_factory=list)
    client: Optional[ContactIn] = None

    def contact(self) -> ContactIn:
        if self.client is None:
            return self
        merged = self.model_dump(include={"name", "email", "phone", "location"})
        merged.update({k: v for k, v in self.client.model_dump().items() if v})
        return ContactIn(**merged)


class CourseOrderRequest(ContactIn):
    course_id: str


class ServiceRequest(ContactIn):
    start_date: Optional[Timestamp] = None
    end_date: Optional[Timestamp] = None


class StockAdjustment(BaseModel):
    quantity: int = Field(..., ge=0)
    operation: StockOperation
