from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class PaymentMethod(str, Enum):
    COD           = "cod"             # paiement à la livraison
    ONLINE_CARD   = "online_card"
    ONLINE_WALLET = "online_wallet"


ONLINE_METHODS = {PaymentMethod.ONLINE_CARD.value, PaymentMethod.ONLINE_WALLET.value}


class ShopOrderStatus(str, Enum):
    PENDING          = "pending"
    PREPARING        = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"   # prête, en attente ou en cours de livraison
    DELIVERED        = "delivered"
    CANCELLED        = "cancelled"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    MERCHANT = "merchant"   # propriétaire d'un ou plusieurs commerces
    COURIER  = "courier"
    ADMIN    = "admin"


class GeoPin(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class DeliveryAddress(BaseModel):
    text: str = Field(min_length=1)   # "12 rue des Lilas, bâtiment B"
    lat:  float = Field(ge=-90, le=90)
    lng:  float = Field(ge=-180, le=180)
    notes: Optional[str] = None       # instructions livreur
