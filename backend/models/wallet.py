from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class PayoutStatus(str, Enum):
    PENDING    = "pending"
    IN_TRANSIT = "in_transit"
    PAID       = "paid"
    CANCELED   = "canceled"
    FAILED     = "failed"
    ON_HOLD    = "on_hold"


PENDING_PAYOUT_STATUSES = {PayoutStatus.PENDING.value, PayoutStatus.IN_TRANSIT.value}


class PayoutType(str, Enum):
    MANUAL    = "manual"      # demande de retrait
    AUTOMATIC = "automatic"   # crédit de frais de livraison


class PayoutSource(str, Enum):
    WALLET     = "wallet"
    JOB_CREDIT = "job_credit"


class PayoutRequestStatus(str, Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID     = "paid"
    FAILED   = "failed"     # virement refusé par la passerelle, le montant redevient disponible


class RequesterType(str, Enum):
    SHOP    = "shop"
    COURIER = "courier"


# Statut de la demande → statut de l'écriture embarquée dans le ledger
LEDGER_STATUS_FOR_REQUEST = {
    PayoutRequestStatus.APPROVED: PayoutStatus.IN_TRANSIT,
    PayoutRequestStatus.PAID:     PayoutStatus.PAID,
    PayoutRequestStatus.REJECTED: PayoutStatus.FAILED,
    PayoutRequestStatus.FAILED:   PayoutStatus.FAILED,
}


class PaymentEntry(BaseModel):
    """Ledger `payments` du commerce : un crédit net par commande."""
    dedup_key:     str             # "{order_id}:pickup"
    charge_id:     str             # "ORDER-..." (en ligne) ou "COD-..." (espèces)
    order_id:      str
    shop_order_id: str
    amount:        float           # net de commission
    wallet_credit: bool = True
    created_at:    datetime


class PayoutEntry(BaseModel):
    """Ledger `payouts` (commerce ou livreur), append-only sauf le statut."""
    payout_id:  str
    dedup_key:  Optional[str] = None   # "{order_id}:delivery_fee" pour les crédits automatiques
    amount:     float
    currency:   str = "eur"
    status:     PayoutStatus = PayoutStatus.PENDING
    method:     str = "bank_transfer"
    type:       PayoutType = PayoutType.MANUAL
    source:     PayoutSource = PayoutSource.WALLET
    order_id:   Optional[str] = None
    gateway_payout_id: Optional[str] = None
    arrival_date: Optional[datetime] = None
    created_at: datetime


class JobCreditEntry(BaseModel):
    """Mouvement de crédit de course (débit au retrait espèces, recharge)."""
    entry_id:   str
    dedup_key:  str            # "{order_id}:cod_pickup" ou "topup:{session_id}"
    amount:     float          # signé : négatif pour un débit
    kind:       str            # "cod_pickup" | "topup"
    order_id:   Optional[str] = None
    created_at: datetime


class WithdrawalRequest(BaseModel):
    amount: float = Field(gt=0)


class TopUpRequest(BaseModel):
    amount: float = Field(gt=0)


class PayoutResolution(BaseModel):
    status: str   # "approved" | "rejected" | "paid" ("completed" accepté)
    note:   Optional[str] = None


class PayoutRequestRecord(BaseModel):
    request_id:     str
    payout_ref:     str            # = payout_id de l'écriture embarquée
    requester_type: RequesterType
    requester_id:   str            # shop_id ou user_id
    user_id:        str            # compte qui a fait la demande
    amount:         float
    status:         PayoutRequestStatus = PayoutRequestStatus.PENDING
    gateway_payout_id: Optional[str] = None
    created_at:     datetime
    updated_at:     datetime
