from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel

from models.common import GeoPin


class TimeSlot(BaseModel):
    open:  str   # "HH:MM"
    close: str   # "HH:MM" ; close < open → ouvert jusqu'au lendemain


class TemporaryClosure(BaseModel):
    is_closed:    bool = False
    reason:       Optional[str]      = None
    closed_until: Optional[datetime] = None   # réouverture automatique par le balayage


class Shop(BaseModel):
    shop_id:     str
    owner_id:    str
    name:        str
    cafeteria:   Optional[str] = None      # zone de retrait (table cafeteria_settings)
    location:    Optional[GeoPin] = None
    is_approved: bool = False
    temporary_closure: TemporaryClosure = TemporaryClosure()
    # "monday" … "sunday" → créneaux ; absent → pas de contrôle d'horaires
    opening_hours: Optional[Dict[str, List[TimeSlot]]] = None
    timezone:    str = "UTC"
    # Ledgers embarqués (voir models.wallet)
    payments:    List[dict] = []
    payouts:     List[dict] = []
    pending_payout_ref: Optional[str] = None
    bank_account: Optional[str] = None   # IBAN / compte connecté
    created_at:  datetime


class ItemOption(BaseModel):
    name:  str
    price: float = 0.0   # supplément


class Item(BaseModel):
    item_id:   str
    shop_id:   str
    name:      str
    price:     float
    options:   List[ItemOption] = []
    is_available: bool = True
    unavailable_until: Optional[datetime] = None


class CafeteriaSetting(BaseModel):
    name:     str
    is_open:  bool = True
    location: Optional[GeoPin] = None
    address:  Optional[str] = None


class SystemSettings(BaseModel):
    is_system_open:   bool = True
    maintenance_mode: bool = False
    commission_percentage: float = 0.0
    base_delivery_fee:     float = 0.0
    price_per_km:          float = 5.0
    cafeteria_settings:    List[CafeteriaSetting] = []
    # Anneau GeoJSON [[lng, lat], ...] ; absent → pas de restriction de zone
    delivery_zone: Optional[List[List[float]]] = None


class SystemSettingsUpdate(BaseModel):
    is_system_open:   Optional[bool] = None
    maintenance_mode: Optional[bool] = None
    commission_percentage: Optional[float] = None
    base_delivery_fee:     Optional[float] = None
    price_per_km:          Optional[float] = None
    cafeteria_settings:    Optional[List[CafeteriaSetting]] = None
    delivery_zone: Optional[List[List[float]]] = None
