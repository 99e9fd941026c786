"""
Arithmétique monétaire : arrondi à 2 décimales (half-up), taux de commission,
partage plateforme / commerçant et solde disponible d'un wallet.
Tous les calculs passent par Decimal ; les montants stockés restent des float.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional, Union

Number = Union[int, float, Decimal, str, None]

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


def to_decimal(value: Number) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def quantize(value: Number) -> Decimal:
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def round2(value: Number) -> float:
    """Arrondi monétaire : 10.005 → 10.01 (et non 10.0 comme round())."""
    return float(quantize(value))


def money_sum(values: Iterable[Number]) -> float:
    total = Decimal("0")
    for v in values:
        total += to_decimal(v)
    return float(total.quantize(_CENT, rounding=ROUND_HALF_UP))


def clamp_percentage(percentage: Number) -> Decimal:
    pct = to_decimal(percentage)
    if pct < 0:
        return Decimal("0")
    if pct > _HUNDRED:
        return _HUNDRED
    return pct


def commission_rate(percentage: Number) -> Decimal:
    """clamp(pourcentage, 0, 100) / 100 ; valeur absente → 0."""
    return clamp_percentage(percentage) / _HUNDRED


def split_commission(subtotal: Number, rate: Decimal) -> tuple[float, float]:
    """
    Retourne (platform_income, merchant_net).
    La part commerçant est le complément exact de la part plateforme,
    donc platform_income + merchant_net == subtotal au centime près.
    """
    sub = quantize(subtotal)
    platform = (sub * rate).quantize(_CENT, rounding=ROUND_HALF_UP)
    return float(platform), float(sub - platform)


def available_balance(
    total_earnings: Number,
    completed_payouts: Number,
    pending_payouts: Number,
) -> float:
    """available = max(0, max(0, gains − retraits payés) − retraits en attente)."""
    zero = Decimal("0")
    after_paid = max(zero, quantize(total_earnings) - quantize(completed_payouts))
    return float(max(zero, after_paid - quantize(pending_payouts)))


def parse_amount(value: Number) -> Optional[float]:
    """Montant strictement positif arrondi au centime, sinon None."""
    amount = quantize(value)
    if amount <= 0:
        return None
    return float(amount)
