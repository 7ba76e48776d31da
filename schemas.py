"""
Schemas for the Pickles Shop API

Each record model mirrors one node of the key-tree store (e.g. Product ->
``products/{id}``). Request payloads are validated by the *Create/*Update
models before any store call is made.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Annotated, Dict, List, Literal, Optional, Union

USERNAME_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
PRODUCT_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"

DeliveryMethod = Literal["normal", "express"]
PaymentMethod = Literal["cod", "points"]
PointsChoice = Literal["none", "partial", "all"]
OrderStatus = Literal["pending", "shipped", "delivered", "rejected"]
LargeOrderStatus = Literal["pending", "processing", "shipping", "completed", "rejected"]
Rank = Literal["member", "admin"]

# ------------ Auth & User ------------
class UserCreate(BaseModel):
    username: str = Field(..., pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=1)
    confirm_password: str

class UserLogin(BaseModel):
    username: str
    password: str

class PasswordChange(BaseModel):
    old_password: str
    new_password: str
    confirm_password: str

class UserPublic(BaseModel):
    id: str
    email: str
    approved: bool = False
    points: int = 0
    rank: Rank = "member"

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: str
    user: UserPublic

# ------------ Products ------------
class ProductCreate(BaseModel):
    id: Optional[str] = Field(None, pattern=PRODUCT_ID_PATTERN, description="Defaults to a slug of the name")
    name: str = Field(..., min_length=1)
    category: str = ""
    description: str = ""
    image: Optional[str] = None
    price: float = Field(..., ge=0, allow_inf_nan=False)
    discountPrice: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    stock: int = Field(0, ge=0)
    kit: Optional[List[str]] = None

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    discountPrice: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    stock: Optional[int] = Field(None, ge=0)
    kit: Optional[List[str]] = None

class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)

# ------------ Promotions & Branches ------------
class Promotions(BaseModel):
    free_shipping: bool = False
    discount_percentage: int = Field(0, ge=0, le=100)
    points_boost: int = Field(0, ge=0, le=1000)

class BranchCreate(BaseModel):
    name: str = Field(..., min_length=1)

# ------------ Cart ------------
class CartItemSet(BaseModel):
    product_id: str = Field(..., pattern=PRODUCT_ID_PATTERN)
    quantity: int = Field(1, ge=1)

class CartQuantity(BaseModel):
    quantity: int

# ------------ Checkout ------------
class CheckoutRequest(BaseModel):
    items: Optional[Dict[str, int]] = Field(None, description="product id -> quantity; defaults to the stored cart")
    deliveryMethod: DeliveryMethod = "normal"
    paymentMethod: PaymentMethod = "cod"
    usePoints: PointsChoice = "none"
    pointsToUse: int = 0
    branch: Optional[str] = None

class OrderItem(BaseModel):
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    total: float

class Order(BaseModel):
    userUid: str
    userEmail: str = ""
    items: Dict[str, OrderItem]
    subtotal: float
    discount: float
    shippingFee: float
    pointsUsed: int
    pointsEarned: int
    total: int
    deliveryMethod: DeliveryMethod
    paymentMethod: PaymentMethod
    branch: str
    status: OrderStatus = "pending"
    timestamp: str
    shippingBranch: Optional[str] = None
    shippedAt: Optional[str] = None
    rejectionReason: Optional[str] = None

class OrderTransition(BaseModel):
    status: OrderStatus
    branch: Optional[str] = None
    reason: Optional[str] = None

# ------------ Large orders ------------
class LargeOrderCreate(BaseModel):
    minecraftName: str = ""
    contactInfo: str = ""
    address: str = ""
    details: str = ""
    requestedPrice: Optional[float] = Field(None, allow_inf_nan=False)

class LargeOrder(BaseModel):
    userUid: str
    userEmail: str = ""
    minecraftName: str
    contactInfo: str
    address: str
    details: str
    requestedPrice: float
    status: LargeOrderStatus = "pending"
    finalPrice: Optional[float] = None
    rejectionReason: Optional[str] = None
    timestamp: str

class LargeOrderTransition(BaseModel):
    status: Optional[LargeOrderStatus] = None
    finalPrice: Optional[float] = Field(None, allow_inf_nan=False)
    reason: Optional[str] = None

# ------------ Tracking ------------
class Progress(BaseModel):
    percent: int
    label: str

class RegularOrderView(Order):
    kind: Literal["regular"] = "regular"
    id: str
    progress: Progress

class LargeOrderView(LargeOrder):
    kind: Literal["large"] = "large"
    id: str
    progress: Progress

TrackedOrder = Annotated[Union[RegularOrderView, LargeOrderView], Field(discriminator="kind")]
