"""
Service OTP : code de remise (flux legacy), stocké sur la sous-commande avec expiration,
envoi au client par SMS Twilio et par son canal utilisateur.
"""
import hmac
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from config import settings
from core.exceptions import conflict_exception
from core.security import generate_otp
from database import db
from services import order_store
from services.notification_service import send_sms

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo rend des datetimes naïfs (UTC)
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def otp_is_valid(shop_order: dict, now: Optional[datetime] = None) -> bool:
    expires_at = _aware(shop_order.get("otp_expires_at"))
    now = now or datetime.now(timezone.utc)
    return bool(shop_order.get("otp")) and expires_at is not None and expires_at > now


async def issue_delivery_otp(shop_order: dict) -> tuple[str, datetime, bool]:
    """
    Retourne (code, expiration, réutilisé). Un code encore valide est réutilisé,
    sinon un nouveau est généré et enregistré.
    """
    now = datetime.now(timezone.utc)
    if otp_is_valid(shop_order, now):
        return shop_order["otp"], _aware(shop_order["otp_expires_at"]), True

    otp_code = generate_otp(settings.OTP_LENGTH)
    expires_at = now + timedelta(minutes=settings.OTP_EXPIRE_MINUTES)
    written = await order_store.update_if(
        shop_order["shop_order_id"],
        {"status": shop_order["status"]},
        {"otp": otp_code, "otp_expires_at": expires_at},
    )
    if not written:
        raise conflict_exception("La commande a changé entre-temps")
    if settings.DEBUG:
        logger.debug(f"[DEBUG] OTP livraison {shop_order['shop_order_id']} : {otp_code}")
    return otp_code, expires_at, False


def check_delivery_otp(shop_order: dict, otp_code: str) -> Optional[str]:
    """None si le code est bon, sinon le motif du refus."""
    if not shop_order.get("otp"):
        return "Aucun code de livraison émis"
    if not otp_is_valid(shop_order):
        return "Code de livraison expiré"
    if not hmac.compare_digest(str(shop_order["otp"]), str(otp_code).strip()):
        return "Code de livraison invalide"
    return None


async def send_otp_sms(customer_id: str, order_code: str, otp_code: str) -> bool:
    user = await db.users.find_one({"user_id": customer_id}, {"_id": 0, "phone": 1})
    phone = (user or {}).get("phone")
    if not phone:
        return False
    body = (
        f"Votre code de livraison FoodRun pour la commande {order_code} : {otp_code}. "
        f"Valable {settings.OTP_EXPIRE_MINUTES} minutes. Ne le donnez qu'à votre livreur."
    )
    return await send_sms(phone, body)
