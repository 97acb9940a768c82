"""
Database Schemas for the Marketplace

Each document model maps to a MongoDB collection named after the lowercase
class name (user, product, order). The *Public models are the shapes the API
returns; from_doc builds them from raw documents.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, PlainSerializer

from database import as_utc, to_decimal

PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x300?text=No+Image"

CENT = Decimal("0.01")

# Largest stock level or order quantity; keeps every $inc inside a 64-bit int
MAX_UNITS = 1_000_000_000

# Decimals go over the wire as numbers rounded to cents
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(v.quantize(CENT)), return_type=float, when_used="json"),
]


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Category(str, Enum):
    ELECTRONICS = "Electronics"
    CLOTHING = "Clothing"
    HOME_GARDEN = "Home & Garden"
    SPORTS = "Sports"
    BOOKS = "Books"
    TOYS = "Toys"
    FOOD_BEVERAGES = "Food & Beverages"
    HEALTH_BEAUTY = "Health & Beauty"
    AUTOMOTIVE = "Automotive"
    OTHER = "Other"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Identity(BaseModel):
    """The authenticated caller, passed explicitly into every store operation."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    username: str
    name: str
    role: Role = Role.USER
    is_verified: bool = False

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Identity":
        return cls(
            id=str(doc["_id"]),
            email=doc["email"],
            username=doc["username"],
            name=doc["name"],
            role=doc.get("role", Role.USER.value),
            is_verified=doc.get("is_verified", False),
        )


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = ""
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str
    email: EmailStr
    username: str
    username_key: str
    password_hash: str
    role: Role = Role.USER
    is_verified: bool = False
    password_changed_at: Optional[datetime] = None


class UserPublic(BaseModel):
    id: str
    name: str
    email: str
    username: str
    role: Role
    is_verified: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "UserPublic":
        return cls(
            id=str(doc["_id"]),
            name=doc["name"],
            email=doc["email"],
            username=doc["username"],
            role=doc.get("role", Role.USER.value),
            is_verified=doc.get("is_verified", False),
            created_at=as_utc(doc.get("created_at")),
        )


class Seller(BaseModel):
    id: str
    name: str
    username: str


class ProductPublic(BaseModel):
    id: str
    owner_id: str
    name: str
    description: str
    price: Money
    stock: int
    category: Category
    image_url: str = PLACEHOLDER_IMAGE
    is_active: bool = True
    seller: Optional[Seller] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any], seller: Optional[Dict[str, Any]] = None) -> "ProductPublic":
        return cls(
            id=str(doc["_id"]),
            owner_id=doc["owner_id"],
            name=doc["name"],
            description=doc["description"],
            price=to_decimal(doc["price"]),
            stock=doc["stock"],
            category=doc["category"],
            image_url=doc.get("image_url") or PLACEHOLDER_IMAGE,
            is_active=doc.get("is_active", True),
            seller=Seller(id=str(seller["_id"]), name=seller["name"], username=seller["username"]) if seller else None,
            created_at=as_utc(doc.get("created_at")),
            updated_at=as_utc(doc.get("updated_at")),
        )


class OrderItem(BaseModel):
    """A priced line item. price is captured at reservation time and never rewritten."""

    product_id: str
    name: str
    image_url: str = PLACEHOLDER_IMAGE
    quantity: int = Field(..., ge=1)
    price: Money

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class OrderPublic(BaseModel):
    id: str
    user_id: str
    items: List[OrderItem]
    total: Money
    status: OrderStatus
    shipping_address: Address
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "OrderPublic":
        return cls(
            id=str(doc["_id"]),
            user_id=doc["user_id"],
            items=[
                OrderItem(
                    product_id=i["product_id"],
                    name=i["name"],
                    image_url=i.get("image_url") or PLACEHOLDER_IMAGE,
                    quantity=i["quantity"],
                    price=to_decimal(i["price"]),
                )
                for i in doc["items"]
            ],
            total=to_decimal(doc["total"]),
            status=doc["status"],
            shipping_address=Address(**doc["shipping_address"]),
            created_at=as_utc(doc.get("created_at")),
            updated_at=as_utc(doc.get("updated_at")),
        )


class ProductCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    price: Decimal = Field(..., ge=0, decimal_places=2)
    category: Category
    stock: int = Field(0, ge=0, le=MAX_UNITS)
    image_url: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    category: Optional[Category] = None
    stock: Optional[int] = Field(None, ge=0, le=MAX_UNITS)
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class OrderLine(BaseModel):
    """One requested (product, quantity) pair; quantity is range-checked by the order engine."""

    product: str
    quantity: int


class OrderCreate(BaseModel):
    items: List[OrderLine]
    shipping_address: Address


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
