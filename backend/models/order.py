from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field

from models.common import DeliveryAddress, PaymentMethod, ShopOrderStatus


# ── Requêtes ──────────────────────────────────────────────────────────────────
class CartItem(BaseModel):
    shop_id:  str
    item_id:  str
    price:    Optional[float] = None   # indicatif côté client, recalculé serveur
    quantity: int = Field(ge=1, le=99)
    selected_options: List[str] = []


class OrderCreate(BaseModel):
    cart_items:       List[CartItem]
    delivery_address: DeliveryAddress
    payment_method:   PaymentMethod


class StatusUpdate(BaseModel):
    new_status: ShopOrderStatus
    reason:     Optional[str] = None   # obligatoire si new_status == cancelled


class CancelRequest(BaseModel):
    reason: str = ""


class ItemsUpdate(BaseModel):
    items: List[CartItem]


class OtpVerify(BaseModel):
    otp: str


class CourierAssignment(BaseModel):
    courier_id: Optional[str] = None   # None → retirer le livreur


# ── Documents ─────────────────────────────────────────────────────────────────
class LineItem(BaseModel):
    item_id:  str
    name:     str       # instantané au moment de la commande
    price:    float     # instantané, options incluses
    quantity: int
    selected_options: List[str] = []


class ShopOrder(BaseModel):
    shop_order_id: str
    order_id:      str
    shop_id:       str
    owner_id:      str
    items:         List[LineItem]
    subtotal:      float
    status:        ShopOrderStatus = ShopOrderStatus.PENDING
    courier_id:    Optional[str] = None
    # Annulation
    cancel_reason: Optional[str] = None
    cancelled_by:  Optional[str] = None
    # Flux OTP legacy
    otp:            Optional[str]      = None
    otp_expires_at: Optional[datetime] = None
    # Règlement
    platform_income:   Optional[float] = None
    merchant_earnings: Optional[float] = None
    # Cycle de vie
    preparing_started_at:   Optional[datetime] = None
    ready_for_delivery_at:  Optional[datetime] = None
    assigned_at:            Optional[datetime] = None
    picked_up_at:           Optional[datetime] = None
    arrived_at_customer_at: Optional[datetime] = None
    delivered_at:           Optional[datetime] = None
    cancelled_at:           Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class Order(BaseModel):
    order_id:         str
    order_code:       str          # FRN-482913
    customer_id:      str
    payment_method:   PaymentMethod
    delivery_address: DeliveryAddress
    subtotal:         float        # Σ sous-totaux
    delivery_fee:     float
    total_amount:     float        # subtotal + delivery_fee, calculé serveur
    shop_order_ids:   List[str]
    payment_captured: bool = False
    payment_status:   str = "unpaid"   # "unpaid" | "paid" | "failed" | "refunded"
    payment_ref:      Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AssignmentPayload(BaseModel):
    assignment_id:      str
    order_id:           str
    order_code:         str
    shop_order_id:      str
    shop_id:            str
    shop_name:          str
    pickup_location:    Optional[dict] = None
    delivery_address:   dict
    distance_km:        Optional[float] = None
    visibility_delay_seconds: int
    items:              List[dict]
    delivery_fee:       float
    subtotal:           float
    status:             ShopOrderStatus
    created_at:         datetime
