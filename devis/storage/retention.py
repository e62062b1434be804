from __future__ import annotations

import calendar
from datetime import datetime
from typing import List, Sequence

from devis.models.quote import Quote

RETENTION_KEEP = 50
RETENTION_MONTHS = 6


def months_before(now: datetime, months: int) -> datetime:
    """Même jour ``months`` mois plus tôt, ramené au dernier jour du mois si besoin (31/08 -> 28/02)."""
    y, m = divmod(now.month - 1 - months, 12)
    year, month = now.year + y, m + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def sort_by_recency(quotes: Sequence[Quote]) -> List[Quote]:
    # tri stable: à date égale l'ordre d'origine est conservé
    return sorted(quotes, key=lambda q: q.updated_at, reverse=True)


def select_retained(
    quotes: Sequence[Quote],
    now: datetime,
    keep: int = RETENTION_KEEP,
    months: int = RETENTION_MONTHS,
) -> List[Quote]:
    """Garde les ``keep`` plus récents et tous ceux modifiés depuis moins de ``months`` mois."""
    cutoff = months_before(now, months)
    return [q for idx, q in enumerate(sort_by_recency(quotes)) if idx < keep or q.updated_at > cutoff]
