"""
Router deliveries : courses pour les livreurs (pool, prise en charge, retrait, remise).
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from core.dependencies import get_notifier, require_courier
from models.order import OtpVerify
from models.user import LocationUpdate
from services import assignment_service, order_service, order_store, settlement_service

router = APIRouter()


@router.get("/available", summary="Courses disponibles (livreurs)")
async def available_assignments(
    lat: Optional[float] = Query(None, description="Latitude du livreur"),
    lng: Optional[float] = Query(None, description="Longitude du livreur"),
    limit: int = Query(100, le=200),
    current_user: dict = Depends(require_courier),
):
    """Triées par distance au point de retrait ; chaque course porte son délai de visibilité."""
    assignments = await assignment_service.list_available_assignments(current_user, lat, lng, limit)
    return {"assignments": assignments, "total": len(assignments)}


@router.get("/mine", summary="Mes courses en cours")
async def my_assignments(current_user: dict = Depends(require_courier)):
    jobs = await order_store.list_shop_orders(
        {"courier_id": current_user["user_id"], "status": {"$in": assignment_service.CLAIMABLE_STATUSES}},
    )
    for job in jobs:
        job.pop("otp", None)
    return {"assignments": jobs}


@router.get("/summary", summary="Résumé financier du livreur")
async def financial_summary(current_user: dict = Depends(require_courier)):
    return await order_service.courier_financial_summary(current_user["user_id"])


@router.get("/today", summary="Courses livrées sur une journée")
async def deliveries_of_day(
    day: Optional[date] = Query(None, alias="date", description="AAAA-MM-JJ, aujourd'hui par défaut"),
    current_user: dict = Depends(require_courier),
):
    return await order_service.deliveries_for_day(current_user["user_id"], day)


@router.post("/{order_id}/{shop_order_id}/accept", summary="Prendre une course")
async def accept(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    claimed, job = await assignment_service.try_claim(order_id, shop_order_id, current_user, notifier)
    if not claimed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Course déjà prise")
    job.pop("otp", None)
    return job


@router.post("/{order_id}/{shop_order_id}/release", summary="Se désister d'une course")
async def release(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await assignment_service.release_assignment(order_id, shop_order_id, current_user, notifier)


@router.post("/{order_id}/{shop_order_id}/pickup", summary="Confirmer la récupération au commerce")
async def pickup(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await settlement_service.confirm_pickup(order_id, shop_order_id, current_user, notifier)


@router.post("/{order_id}/{shop_order_id}/arrived", summary="Signaler l'arrivée chez le client")
async def arrived(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await order_service.confirm_arrival(order_id, shop_order_id, current_user, notifier)


@router.post("/{order_id}/{shop_order_id}/otp", summary="Envoyer le code de remise au client")
async def send_otp(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await order_service.send_delivery_otp(order_id, shop_order_id, current_user, notifier)


@router.post("/{order_id}/{shop_order_id}/otp/verify", summary="Vérifier le code de remise")
async def verify_otp(
    order_id: str,
    shop_order_id: str,
    body: OtpVerify,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await order_service.verify_delivery_otp(order_id, shop_order_id, current_user, body.otp, notifier)


@router.post("/{order_id}/{shop_order_id}/deliver", summary="Confirmer la livraison")
async def deliver(
    order_id: str,
    shop_order_id: str,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await settlement_service.confirm_delivery(order_id, shop_order_id, current_user, notifier)


@router.put("/location", summary="Mettre à jour ma position GPS")
async def update_location(body: LocationUpdate, current_user: dict = Depends(require_courier)):
    return await assignment_service.update_courier_location(current_user["user_id"], body.lat, body.lng)
