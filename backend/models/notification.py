from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel


class NotificationChannel(str, Enum):
    SMS    = "sms"
    PUSH   = "push"
    IN_APP = "in_app"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"
    READ    = "read"


class EventName(str, Enum):
    ORDER_PLACED               = "order_placed"
    ORDER_STATUS_UPDATED       = "order_status_updated"
    ORDER_CANCELLED            = "order_cancelled"
    ORDER_ITEMS_UPDATED        = "order_items_updated"
    DELIVERY_ASSIGNMENT        = "delivery_assignment"
    DELIVERY_ASSIGNMENT_REMOVED = "delivery_assignment_removed"
    DELIVERY_ASSIGNMENT_TAKEN  = "delivery_assignment_taken"
    COURIER_ARRIVED            = "courier_arrived"
    DELIVERY_OTP               = "delivery_otp"
    PICKUP_CONFIRMED           = "pickup_confirmed"
    ORDER_DELIVERED            = "order_delivered"
    WALLET_CREDITED            = "wallet_credited"
    JOB_CREDIT_DEBITED         = "job_credit_debited"
    JOB_CREDIT_TOPPED_UP       = "job_credit_topped_up"
    PAYOUT_REQUESTED           = "payout_requested"
    PAYOUT_UPDATED             = "payout_updated"
    PAYMENT_UPDATED            = "payment_updated"


class Notification(BaseModel):
    notif_id:   str
    user_id:    str
    channel:    NotificationChannel
    event:      str
    title:      str
    body:       str
    status:     NotificationStatus = NotificationStatus.PENDING
    metadata:   Dict[str, Any] = {}
    # Lien contextuel (ex: order_id, payout_ref)
    ref_type:   Optional[str] = None   # "order", "payout"
    ref_id:     Optional[str] = None
    # Timestamps
    created_at: datetime
    sent_at:    Optional[datetime] = None
    read_at:    Optional[datetime] = None
