"""
Tests pour le service des devis (validation, cycle de vie, recherche).
"""
from datetime import timedelta

import pytest

from devis.exceptions import QuoteNotFoundError, QuoteValidationError
from devis.models.party import Company
from devis.models.quote import Conditions, Deposit, QuoteFormData
from devis.services.autosave import DraftAutosaver
from devis.services.quote_service import QuoteService, display_status, is_expired, validate_form
from devis.services.totals import compute_totals

from conftest import NOW, line, make_client, make_company, make_form, make_quote


def _codes(form):
    return {(i.field, i.code) for i in validate_form(form)}


# --- Validation ---

def test_valid_form_has_no_issue():
    """Test qu'un formulaire complet passe la validation."""
    assert validate_form(make_form()) == []


def test_empty_form_reports_required_fields():
    """Test les champs obligatoires d'un formulaire vide."""
    codes = _codes(QuoteFormData())
    assert ("company.name", "required") in codes
    assert ("company.siret", "invalid_siret") in codes
    assert ("client.postal_code", "invalid_postal_code") in codes
    assert ("line_items", "required") in codes


@pytest.mark.parametrize("overrides, expected", [
    ({"company": make_company(siret="123")}, ("company.siret", "invalid_siret")),
    ({"company": make_company(email="pas-un-email")}, ("company.email", "invalid_email")),
    ({"company": make_company(phone="12")}, ("company.phone", "invalid_phone")),
    ({"client": make_client(postal_code="7500")}, ("client.postal_code", "invalid_postal_code")),
    ({"client": make_client(siret="ABCDEFGHIJKLMN")}, ("client.siret", "invalid_siret")),
    ({"line_items": [line(0)]}, ("line_items[0].unit_price_ht", "invalid_amount")),
    ({"line_items": [line(1000000)]}, ("line_items[0].unit_price_ht", "invalid_amount")),
    ({"line_items": [line(10, designation=" ")]}, ("line_items[0].designation", "required")),
    ({"line_items": [line(10)] * 51}, ("line_items", "too_many")),
    ({"conditions": Conditions(validity_days=0)}, ("conditions.validity_days", "invalid_validity")),
    ({"conditions": Conditions(deposit=Deposit(percentage=120))}, ("conditions.deposit", "invalid_deposit")),
    ({"comments": "x" * 1001}, ("comments", "too_long")),
])
def test_invalid_fields(overrides, expected):
    """Test chaque règle de validation individuellement."""
    assert expected in _codes(make_form(**overrides))


def test_phone_and_siret_accept_spaces():
    """Test que les espaces de saisie sont tolérés."""
    form = make_form(company=make_company(phone="06 12 34 56 78", siret="123 456 789 01234"))
    assert validate_form(form) == []


# --- Création ---

def test_create_quote(service, store):
    """Test la création: numéro, totaux, dates, statut et version."""
    store.save_draft(make_form())
    quote = service.create_quote(make_form())

    assert quote.number == "DEVIS-2025-0001"
    assert quote.status == "DRAFT"
    assert quote.version == 1
    assert quote.created_at == NOW
    assert quote.valid_until == NOW + timedelta(days=30)
    assert quote.totals.total_ttc == 415.0
    assert store.get_quote(quote.id) == quote
    assert store.get_draft() is None


def test_create_quote_invalid_persists_nothing(service, store):
    """Test qu'un devis invalide n'est ni numéroté ni enregistré."""
    with pytest.raises(QuoteValidationError) as exc:
        service.create_quote(make_form(line_items=[]))
    assert exc.value.issues
    assert store.list_quotes() == []
    assert store.load().last_sequence_number == 0


def test_create_quote_with_deposit(service):
    """Test le calcul de l'acompte à l'enregistrement."""
    form = make_form(line_items=[line(99.99)], conditions=Conditions(deposit=Deposit(percentage=30)))
    quote = service.create_quote(form)
    assert quote.totals.deposit_ttc == 36.0
    assert quote.totals.remaining_due == 83.99
    assert quote.conditions.deposit.amount_ht == 30.0


def test_create_quote_cancels_autosave(service, store, timer_factory, timers):
    """Test que l'enregistrement annule la sauvegarde automatique en attente."""
    autosaver = DraftAutosaver(store, timer_factory=timer_factory)
    autosaver.touch(make_form(subject="en cours"))
    service.create_quote(make_form(), autosaver=autosaver)

    timers[0].fn()
    assert store.get_draft() is None
    assert not autosaver.pending


# --- Mise à jour, statut, copie ---

def test_update_quote_bumps_version(service, clock):
    """Test la nouvelle version d'un devis modifié."""
    quote = service.create_quote(make_form())
    clock.advance(days=2)
    updated = service.update_quote(quote.id, make_form(line_items=[line(10)]))

    assert updated.version == 2
    assert updated.number == quote.number
    assert updated.created_at == quote.created_at
    assert updated.updated_at == NOW + timedelta(days=2)
    assert updated.totals.total_ht == 10.0


def test_update_unknown_quote(service):
    """Test la modification d'un devis inexistant."""
    with pytest.raises(QuoteNotFoundError):
        service.update_quote("inconnu", make_form())


def test_status_transitions(service):
    """Test DRAFT -> SENT -> ACCEPTED."""
    quote = service.create_quote(make_form())
    assert service.change_status(quote.id, "SENT").status == "SENT"
    accepted = service.change_status(quote.id, "ACCEPTED")
    assert accepted.status == "ACCEPTED"
    assert accepted.version == 1
    assert service.change_status(quote.id, "ACCEPTED").status == "ACCEPTED"


@pytest.mark.parametrize("path", [["ACCEPTED"], ["SENT", "DRAFT"], ["EXPIRED"], ["SENT", "REJECTED", "ACCEPTED"]])
def test_illegal_status_transitions(service, path):
    """Test le refus des transitions interdites."""
    quote = service.create_quote(make_form())
    with pytest.raises(QuoteValidationError) as exc:
        for status in path:
            service.change_status(quote.id, status)
    assert exc.value.issues[0].code == "invalid_transition"


def test_duplicate_quote(service):
    """Test la copie d'un devis: nouvel id, nouveau numéro, brouillon v1."""
    quote = service.create_quote(make_form())
    service.change_status(quote.id, "SENT")
    copy = service.duplicate_quote(quote.id)

    assert copy.id != quote.id
    assert copy.number == "DEVIS-2025-0002"
    assert copy.status == "DRAFT"
    assert copy.version == 1
    assert copy.totals == quote.totals
    assert len(service.list_quotes()) == 2


def test_get_and_delete(service):
    """Test lecture et suppression."""
    quote = service.create_quote(make_form())
    assert service.get_quote(quote.id).number == quote.number
    assert service.delete_quote(quote.id) is True
    assert service.delete_quote(quote.id) is False
    with pytest.raises(QuoteNotFoundError):
        service.get_quote(quote.id)


# --- Formulaire ---

def test_new_form_uses_defaults(service, store):
    """Test le formulaire pré-rempli avec les valeurs par défaut."""
    store.save_default_company(Company(name="Atelier"))
    form = service.new_form()
    assert form.company.name == "Atelier"
    assert form.conditions.payment_methods == ["Virement bancaire", "Chèque"]
    assert form.line_items == []


def test_new_form_restores_draft(service, store):
    """Test la reprise du brouillon en cours."""
    store.save_draft(QuoteFormData(subject="Repris"))
    assert service.new_form().subject == "Repris"


def test_new_line_item():
    """Test la prestation vide par défaut."""
    item = QuoteService.new_line_item(designation="Conseil", unit="DAY")
    assert (item.quantity, item.unit, item.unit_price_ht, item.vat_rate) == (1.0, "DAY", 0.0, 20.0)
    assert item.designation == "Conseil"


# --- Statut affiché, recherche, statistiques ---

def test_expired_is_derived():
    """Test que EXPIRED n'est qu'un statut d'affichage."""
    quote = make_quote(status="SENT")
    later = quote.valid_until + timedelta(seconds=1)
    assert display_status(quote, quote.valid_until) == "SENT"
    assert is_expired(quote, later)
    assert display_status(quote, later) == "EXPIRED"
    assert display_status(quote.model_copy(update={"status": "DRAFT"}), later) == "DRAFT"


def _seed(store):
    quotes = [
        make_quote(number="DEVIS-2025-0001", client=make_client(name="Bernard"), subject="Toiture",
                   updated_at=NOW - timedelta(days=3)),
        make_quote(number="DEVIS-2025-0002", client=make_client(name="alice"), subject="Cuisine", status="SENT",
                   updated_at=NOW - timedelta(days=2), line_items=[line(300)]),
        make_quote(number="DEVIS-2025-0003", client=make_client(name="Chloé"), subject="Salle de bain",
                   status="ACCEPTED", updated_at=NOW - timedelta(days=1), line_items=[line(200)]),
        make_quote(number="DEVIS-2024-0004", client=make_client(name="Denis"), status="SENT",
                   updated_at=NOW - timedelta(days=90)),
    ]
    quotes = [q.model_copy(update={"totals": compute_totals(q.line_items)}) for q in quotes]
    store.save(quotes=quotes)
    return quotes


def test_search_query_and_status(service, store):
    """Test la recherche texte et le filtre par statut affiché."""
    _seed(store)
    assert [q.number for q in service.search("CUISINE")] == ["DEVIS-2025-0002"]
    assert [q.number for q in service.search("2025")] == ["DEVIS-2025-0003", "DEVIS-2025-0002", "DEVIS-2025-0001"]
    assert [q.number for q in service.search("dupont")][:1] == ["DEVIS-2025-0003"]
    assert [q.number for q in service.search(status="EXPIRED")] == ["DEVIS-2024-0004"]
    assert [q.number for q in service.search(status="SENT")] == ["DEVIS-2025-0002"]


def test_search_sorting(service, store):
    """Test les différents tris."""
    _seed(store)
    by_client = [q.client.name for q in service.search(sort_by="client", descending=False)]
    assert by_client == ["alice", "Bernard", "Chloé", "Denis"]
    by_amount = [q.totals.total_ttc for q in service.search(sort_by="amount")]
    assert by_amount == [360.0, 240.0, 120.0, 120.0]
    with pytest.raises(ValueError):
        service.search(sort_by="couleur")


def test_stats(service, store):
    """Test les statistiques de l'historique."""
    _seed(store)
    stats = service.stats()
    assert (stats.total, stats.drafts, stats.sent, stats.accepted, stats.expired) == (4, 1, 1, 1, 1)
    assert stats.revenue == 240.0
    assert stats.acceptance_rate == 33.3


def test_stats_empty(service):
    """Test les statistiques sans devis."""
    stats = service.stats()
    assert stats.total == 0
    assert stats.acceptance_rate == 0.0
