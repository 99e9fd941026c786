"""
Router wallets : soldes commerçant/livreur, demandes de retrait, recharge du crédit de course.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_notifier, require_courier, require_merchant
from core.exceptions import forbidden_exception, not_found_exception
from database import db
from models.common import UserRole
from models.wallet import RequesterType, TopUpRequest, WithdrawalRequest
from services import wallet_service

router = APIRouter()


async def _owned_shop(shop_id: str, current_user: dict) -> dict:
    shop = await db.shops.find_one({"shop_id": shop_id}, {"_id": 0, "shop_id": 1, "owner_id": 1})
    if not shop:
        raise not_found_exception("Commerce")
    if current_user["role"] != UserRole.ADMIN.value and shop.get("owner_id") != current_user["user_id"]:
        raise forbidden_exception()
    return shop


@router.get("/shops/{shop_id}", summary="Wallet d'un commerce")
async def shop_wallet(shop_id: str, current_user: dict = Depends(require_merchant)):
    await _owned_shop(shop_id, current_user)
    return await wallet_service.get_shop_wallet(shop_id)


@router.post("/shops/{shop_id}/withdraw", summary="Demander un retrait (commerce)")
async def shop_withdraw(
    shop_id: str,
    body: WithdrawalRequest,
    current_user: dict = Depends(require_merchant),
    notifier=Depends(get_notifier),
):
    await _owned_shop(shop_id, current_user)
    return await wallet_service.request_withdrawal(
        RequesterType.SHOP, shop_id, current_user["user_id"], body.amount, notifier,
    )


@router.get("/couriers/me", summary="Mon wallet livreur")
async def courier_wallet(current_user: dict = Depends(require_courier)):
    return await wallet_service.get_courier_wallet(current_user["user_id"])


@router.post("/couriers/me/withdraw", summary="Demander un retrait (livreur)")
async def courier_withdraw(
    body: WithdrawalRequest,
    current_user: dict = Depends(require_courier),
    notifier=Depends(get_notifier),
):
    return await wallet_service.request_withdrawal(
        RequesterType.COURIER, current_user["user_id"], current_user["user_id"], body.amount, notifier,
    )


@router.post("/couriers/me/topup", summary="Recharger mon crédit de course")
async def courier_topup(body: TopUpRequest, current_user: dict = Depends(require_courier)):
    """Ouvre une session de paiement ; le crédit est ajouté à réception du webhook."""
    return await wallet_service.start_job_credit_topup(current_user["user_id"], body.amount)
