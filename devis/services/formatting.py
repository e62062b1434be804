from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from devis.services.totals import quantize_cents, to_decimal

NNBSP = "\u202f"  # espace fine insécable (séparateur de milliers fr-FR)
NBSP = "\u00a0"


def format_currency(amount: Any) -> str:
    """1234.5 -> '1 234,50 €' (affichage uniquement, jamais relu)."""
    d = quantize_cents(to_decimal(amount))
    sign = "-" if d < 0 else ""
    body = f"{abs(d):,.2f}".replace(",", NNBSP).replace(".", ",")
    return f"{sign}{body}{NBSP}€"


def format_percentage(value: Any) -> str:
    """20 -> '20 %', 5.5 -> '5,5 %'."""
    d = quantize_cents(to_decimal(value))
    body = f"{d:.2f}".rstrip("0").rstrip(".").replace(".", ",")
    return f"{body}{NNBSP}%"


def format_date(d: Optional[date | datetime]) -> str:
    if d is None:
        return ""
    return d.strftime("%d/%m/%Y")


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB"]
    value, i = float(size), 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"
