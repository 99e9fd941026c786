"""
Service notification : bus d'événements en mémoire (websocket), notifications in-app,
push FCM et SMS Twilio.

Le cœur métier ne connaît que `publish(channel, event_name, payload)` : l'appel met
l'événement en file et rend la main immédiatement. Un échec de diffusion ne remonte
jamais jusqu'à la transaction qui l'a émis.

Canaux : "user:<user_id>", "order:<order_id>", "couriers", "admins".
"""
import asyncio
import logging
import os
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from config import settings
from database import db
from models.notification import EventName, NotificationChannel, NotificationStatus

logger = logging.getLogger(__name__)

COURIERS_CHANNEL = "couriers"
ADMINS_CHANNEL = "admins"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def order_channel(order_id: str) -> str:
    return f"order:{order_id}"


def _notif_id() -> str:
    return f"ntf_{uuid.uuid4().hex[:12]}"


# Événements qui laissent une trace in-app (et un push) quand ils visent un utilisateur
EVENT_TITLES = {
    EventName.ORDER_PLACED:              "Nouvelle commande",
    EventName.ORDER_STATUS_UPDATED:      "Commande mise à jour",
    EventName.ORDER_CANCELLED:           "Commande annulée",
    EventName.DELIVERY_ASSIGNMENT_TAKEN: "Livreur assigné",
    EventName.COURIER_ARRIVED:           "Votre livreur est arrivé",
    EventName.DELIVERY_OTP:              "Code de livraison",
    EventName.PICKUP_CONFIRMED:          "Commande récupérée",
    EventName.ORDER_DELIVERED:           "Commande livrée",
    EventName.WALLET_CREDITED:           "Wallet crédité",
    EventName.JOB_CREDIT_DEBITED:        "Crédit de course débité",
    EventName.JOB_CREDIT_TOPPED_UP:      "Crédit de course rechargé",
    EventName.PAYOUT_UPDATED:            "Retrait mis à jour",
}
_TITLES_BY_VALUE = {k.value: v for k, v in EVENT_TITLES.items()}


def _body_for(event_name: str, payload: dict) -> str:
    if payload.get("message"):
        return str(payload["message"])
    code = payload.get("order_code")
    status = payload.get("status")
    if code and status:
        return f"Commande {code} : {status}"
    if payload.get("amount") is not None:
        return f"Montant : {payload['amount']}"
    return _TITLES_BY_VALUE.get(event_name, event_name)


class EventNotifier:
    """
    Bus pub/sub du processus. Cycle de vie explicite : start() dans le lifespan
    FastAPI, stop() à l'arrêt. Avant start() ou après stop(), publish() ignore
    l'événement (avec un warning).
    """

    def __init__(self, maxsize: Optional[int] = None, push_enabled: Optional[bool] = None, persist: bool = True):
        self._maxsize = maxsize or settings.NOTIFIER_QUEUE_SIZE
        self._push_enabled = settings.PUSH_ENABLED if push_enabled is None else push_enabled
        self._persist = persist
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._subscribers: dict[str, set] = defaultdict(set)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        if self._push_enabled:
            _init_firebase()
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("EventNotifier démarré")

    async def stop(self, timeout: float = 5.0) -> None:
        if not self._task:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"EventNotifier : {self._queue.qsize()} événement(s) abandonné(s) à l'arrêt")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._queue = None
        logger.info("EventNotifier arrêté")

    def publish(self, channel: str, event_name: str, payload: dict) -> None:
        """Met l'événement en file ; ne lève jamais."""
        if self._queue is None:
            logger.warning(f"EventNotifier inactif, {event_name} sur {channel} ignoré")
            return
        event = {
            "channel":      channel,
            "event":        getattr(event_name, "value", event_name),
            "payload":      payload,
            "published_at": datetime.now(timezone.utc),
        }
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"File d'événements pleine, {event['event']} sur {channel} ignoré")

    def subscribe(self, *channels: str) -> asyncio.Queue:
        """Retourne une file qui recevra les événements des canaux donnés."""
        inbox: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        for channel in channels:
            self._subscribers[channel].add(inbox)
        return inbox

    def join(self, inbox: asyncio.Queue, channel: str) -> None:
        self._subscribers[channel].add(inbox)

    def unsubscribe(self, inbox: asyncio.Queue) -> None:
        for channel in list(self._subscribers):
            self._subscribers[channel].discard(inbox)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    async def flush(self) -> None:
        """Attend que tous les événements en file aient été distribués."""
        if self._queue is not None:
            await self._queue.join()

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as e:
                logger.warning(f"Diffusion de {event['event']} échouée : {e}")
            finally:
                self._queue.task_done()

    async def _deliver(self, event: dict) -> None:
        for inbox in list(self._subscribers.get(event["channel"], ())):
            try:
                inbox.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Abonné saturé sur {event['channel']}, événement ignoré")

        channel = event["channel"]
        if self._persist and channel.startswith("user:") and event["event"] in _TITLES_BY_VALUE:
            payload = event["payload"] or {}
            await _store_and_send(
                user_id=channel.split(":", 1)[1],
                event_name=event["event"],
                title=_TITLES_BY_VALUE[event["event"]],
                body=_body_for(event["event"], payload),
                ref_type="order" if payload.get("order_id") else None,
                ref_id=payload.get("order_id"),
                push=self._push_enabled,
            )


def safe_publish(notifier, channel: str, event_name, payload: dict) -> None:
    """Appel de publish() protégé : un notifier défaillant n'annule rien."""
    if notifier is None:
        return
    try:
        notifier.publish(channel, getattr(event_name, "value", event_name), payload)
    except Exception as e:
        logger.warning(f"Publication {event_name} sur {channel} échouée : {e}")


# ── Push / in-app ─────────────────────────────────────────────────────────────
_firebase_ready = False


def _init_firebase() -> None:
    global _firebase_ready
    if _firebase_ready:
        return
    try:
        import firebase_admin
        from firebase_admin import credentials

        if firebase_admin._apps:
            _firebase_ready = True
            return
        cred_path = settings.FIREBASE_CREDENTIALS_PATH
        if os.path.exists(cred_path):
            firebase_admin.initialize_app(credentials.Certificate(cred_path))
        else:
            # credentials par défaut (Cloud Run / Railway)
            firebase_admin.initialize_app()
        _firebase_ready = True
    except Exception as e:
        logger.error(f"Erreur initialisation Firebase Admin: {e}")


async def _store_and_send(
    user_id: str,
    event_name: str,
    title: str,
    body: str,
    ref_type: Optional[str] = None,
    ref_id: Optional[str] = None,
    push: bool = False,
):
    """Stocke la notification en base et tente l'envoi push."""
    now = datetime.now(timezone.utc)
    notif = {
        "notif_id":   _notif_id(),
        "user_id":    user_id,
        "channel":    NotificationChannel.IN_APP.value,
        "event":      event_name,
        "title":      title,
        "body":       body,
        "status":     NotificationStatus.SENT.value,
        "metadata":   {},
        "ref_type":   ref_type,
        "ref_id":     ref_id,
        "created_at": now,
        "sent_at":    now,
        "read_at":    None,
    }
    await db.notifications.insert_one(notif)

    if not push or not _firebase_ready:
        return

    user = await db.users.find_one({"user_id": user_id}, {"fcm_token": 1})
    fcm_token = user.get("fcm_token") if user else None
    if not fcm_token:
        return

    try:
        from firebase_admin import messaging

        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={
                "event":    event_name,
                "ref_type": ref_type or "",
                "ref_id":   ref_id or "",
            },
            token=fcm_token,
        )
        await asyncio.to_thread(messaging.send, message)
        logger.info(f"Push FCM envoyé à {user_id}")
    except Exception as e:
        logger.warning(f"Échec envoi Push FCM à {user_id}: {e}")


async def send_sms(phone: str, body: str) -> bool:
    """Envoi SMS via Twilio (best-effort, ne lève pas d'exception)."""
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_SMS_NUMBER:
        logger.warning("Twilio non configuré, SMS non envoyé")
        return False
    try:
        from twilio.rest import Client

        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        await asyncio.to_thread(
            client.messages.create, body=body, from_=settings.TWILIO_SMS_NUMBER, to=phone,
        )
        return True
    except Exception as e:
        logger.warning(f"SMS non envoyé à {phone} : {e}")
        return False
