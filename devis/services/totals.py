"""
Moteur de calcul des totaux d'un devis.

Fonctions pures: aucune I/O, aucun état. Les montants sont manipulés en
``Decimal`` construits depuis la représentation courte du float, ce qui évite
la dérive binaire (``29.997`` reste ``29.997`` et s'arrondit à ``30.00``).
Les entrées hors bornes (négatives, NaN, infinies) sont ramenées à zéro:
le moteur ne lève jamais d'exception pour une valeur numérique.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from devis.models.quote import Totals, VatBreakdownEntry

if TYPE_CHECKING:  # pragma: no cover
    from devis.models.quote import Conditions, LineItem

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("999999.99")


# ---------- Helpers Decimal ---------- #

def to_decimal(value: Any) -> Decimal:
    """Decimal exact depuis la représentation courte du float; invalide ou non fini -> 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    if not d.is_finite():
        return ZERO
    return d


def _non_negative(value: Any) -> Decimal:
    return max(ZERO, to_decimal(value))


def quantize_cents(d: Decimal) -> Decimal:
    # demi-centime arrondi en s'éloignant de zéro
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def _out(d: Decimal) -> float:
    return float(quantize_cents(d))


# ---------- API ---------- #

def round_amount(amount: Any) -> float:
    """Arrondit un montant à 2 décimales. Idempotent."""
    return _out(to_decimal(amount))


def line_total_ht(quantity: Any, unit_price: Any) -> float:
    """Total HT d'une prestation: ``round(quantité × prix unitaire)``."""
    return _out(_non_negative(quantity) * _non_negative(unit_price))


def line_vat(total_ht: Any, vat_rate: Any) -> float:
    """TVA d'une prestation, calculée sur son total HT déjà arrondi."""
    return _out(_non_negative(total_ht) * _non_negative(vat_rate) / HUNDRED)


def _group_by_rate(line_items: Iterable["LineItem"]) -> Dict[Decimal, List[Decimal]]:
    """{taux: [base HT, TVA]} sommés sans arrondi intermédiaire."""
    groups: Dict[Decimal, List[Decimal]] = {}
    for ln in line_items:
        rate = _non_negative(ln.vat_rate)
        acc = groups.setdefault(rate, [ZERO, ZERO])
        acc[0] += to_decimal(ln.total_ht)
        acc[1] += to_decimal(line_vat(ln.total_ht, rate))
    return groups


def compute_totals(line_items: Iterable["LineItem"], deposit_percent: Optional[Any] = None) -> Totals:
    """
    Totaux du devis.

    - total HT: somme à pleine précision, arrondie une seule fois
    - TVA: regroupée par taux, chaque groupe arrondi indépendamment
    - TTC: ``round(HT + TVA)``
    - acompte: seulement si ``deposit_percent > 0`` et qu'il y a au moins une ligne
      (plafonné à 100 %)
    """
    items = list(line_items)
    if not items:
        return Totals()

    total_ht = quantize_cents(sum((to_decimal(ln.total_ht) for ln in items), ZERO))
    groups = _group_by_rate(items)
    total_vat = quantize_cents(sum((quantize_cents(vat) for _, vat in groups.values()), ZERO))
    total_ttc = quantize_cents(total_ht + total_vat)

    totals = Totals(total_ht=float(total_ht), total_vat=float(total_vat), total_ttc=float(total_ttc))

    pct = min(to_decimal(deposit_percent), HUNDRED)
    if pct > 0:
        deposit_ht = quantize_cents(total_ht * pct / HUNDRED)
        deposit_vat = quantize_cents(total_vat * pct / HUNDRED)
        deposit_ttc = quantize_cents(deposit_ht + deposit_vat)
        totals.deposit_ht = float(deposit_ht)
        totals.deposit_vat = float(deposit_vat)
        totals.deposit_ttc = float(deposit_ttc)
        totals.remaining_due = float(quantize_cents(total_ttc - deposit_ttc))
    return totals


def totals_for_conditions(line_items: Iterable["LineItem"], conditions: Optional["Conditions"]) -> Totals:
    return compute_totals(line_items, conditions.deposit_percent if conditions else None)


def vat_breakdown(line_items: Iterable["LineItem"]) -> List[VatBreakdownEntry]:
    """Récapitulatif TVA par taux, trié par taux croissant."""
    groups = _group_by_rate(line_items)
    return [
        VatBreakdownEntry(rate=float(rate), base_ht=_out(base), vat_amount=_out(vat))
        for rate, (base, vat) in sorted(groups.items())
    ]


def is_valid_amount(amount: Any) -> bool:
    """Borne métier d'un prix unitaire (0,01 € à 999 999,99 €)."""
    if amount is None or isinstance(amount, bool):
        return False
    try:
        d = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return False
    return d.is_finite() and MIN_AMOUNT <= d <= MAX_AMOUNT
