"""
Tests pour la politique de conservation des devis.
"""
from datetime import datetime, timedelta

import pytest

from devis.storage.retention import months_before, select_retained, sort_by_recency

from conftest import NOW, make_quote

OLD = NOW - timedelta(days=365)


def _quotes(count, updated_at, start=0):
    return [make_quote(updated_at=updated_at - timedelta(minutes=i), number=f"DEVIS-2025-{start + i:04d}")
            for i in range(count)]


@pytest.mark.parametrize("now, months, expected", [
    (datetime(2025, 8, 31, 12), 6, datetime(2025, 2, 28, 12)),
    (datetime(2024, 8, 31), 6, datetime(2024, 2, 29)),
    (datetime(2025, 3, 15), 6, datetime(2024, 9, 15)),
    (datetime(2025, 1, 10), 12, datetime(2024, 1, 10)),
    (datetime(2025, 5, 31), 1, datetime(2025, 4, 30)),
])
def test_months_before(now, months, expected):
    """Test le recul en mois calendaires, ramené à la fin de mois."""
    assert months_before(now, months) == expected


def test_sort_by_recency_is_stable():
    """Test le tri décroissant, à date égale l'ordre d'origine est gardé."""
    a, b = make_quote(number="A"), make_quote(number="B")
    c = make_quote(updated_at=NOW + timedelta(days=1), number="C")
    assert [q.number for q in sort_by_recency([a, b, c])] == ["C", "A", "B"]


def test_keeps_all_recent_quotes():
    """Test 60 devis récents + 10 anciens: les 60 récents sont gardés."""
    quotes = _quotes(60, NOW) + _quotes(10, OLD, start=60)
    kept = select_retained(quotes, NOW)
    assert len(kept) == 60
    assert all(q.updated_at > OLD for q in kept)


def test_keeps_fifty_when_all_old():
    """Test moins de 50 devis anciens: tout est gardé."""
    assert len(select_retained(_quotes(30, OLD), NOW)) == 30


def test_keeps_top_fifty_union_recent():
    """Test 55 anciens + 5 récents: 50 gardés, les 5 récents en tête."""
    quotes = _quotes(55, OLD) + _quotes(5, NOW, start=55)
    kept = select_retained(quotes, NOW)
    assert len(kept) == 50
    assert [q.number for q in kept[:5]] == [f"DEVIS-2025-{i:04d}" for i in range(55, 60)]


def test_cutoff_is_exclusive():
    """Test qu'un devis modifié pile à la limite n'est pas récent."""
    cutoff = months_before(NOW, 6)
    quotes = _quotes(50, NOW) + [make_quote(updated_at=cutoff, number="LIMITE")]
    kept = select_retained(quotes, NOW)
    assert "LIMITE" not in [q.number for q in kept]


def test_retention_is_idempotent():
    """Test qu'un second passage ne supprime rien de plus."""
    quotes = _quotes(20, NOW) + _quotes(70, OLD, start=20)
    once = select_retained(quotes, NOW)
    twice = select_retained(once, NOW)
    assert [q.id for q in once] == [q.id for q in twice]
