from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, field_validator
from models.common import UserRole, GeoPin


class User(BaseModel):
    """Compte géré par le service d'auth ; on n'y ajoute que l'état wallet livreur."""
    user_id:   str
    name:      str
    phone:     Optional[str] = None   # E.164, pour les SMS
    email:     Optional[str] = None
    role:      UserRole      = UserRole.CUSTOMER
    is_active: bool          = True
    fcm_token: Optional[str] = None
    # Livreur
    current_location:    Optional[GeoPin]   = None
    location_updated_at: Optional[datetime] = None
    job_credit:          float              = 0.0   # fonds avancés aux commerçants (espèces)
    job_credit_ledger:   List[dict]         = []
    payouts:             List[dict]         = []
    pending_payout_ref:  Optional[str]      = None
    bank_account:        Optional[str]      = None
    created_at: datetime
    updated_at: datetime


class LocationUpdate(BaseModel):
    lat: float
    lng: float

    @field_validator("lat")
    @classmethod
    def lat_in_range(cls, v: float) -> float:
        if not -90 <= v <= 90:
            raise ValueError("Latitude hors limites")
        return v

    @field_validator("lng")
    @classmethod
    def lng_in_range(cls, v: float) -> float:
        if not -180 <= v <= 180:
            raise ValueError("Longitude hors limites")
        return v
