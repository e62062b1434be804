from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from devis.exceptions import QuoteNotFoundError, QuoteValidationError, ValidationIssue
from devis.models.common import gen_id
from devis.models.party import Company
from devis.models.quote import (
    Conditions,
    LineItem,
    Quote,
    QuoteFormData,
    QuoteStats,
    QuoteStatus,
    default_conditions,
)
from devis.services.totals import is_valid_amount, round_amount, totals_for_conditions
from devis.storage.document_store import DocumentStore

if TYPE_CHECKING:  # pragma: no cover
    from devis.services.autosave import DraftAutosaver

logger = logging.getLogger(__name__)

# ---------- Règles de validation ---------- #

SIRET_LENGTH = 14
POSTAL_CODE_RE = re.compile(r"^\d{5}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^(?:(?:\+33|0)[1-9](?:[0-9]{8}))$")
MAX_LINE_ITEMS = 50
MAX_COMMENTS_LENGTH = 1000
DEFAULT_VALIDITY_DAYS = 30

# Le statut EXPIRED n'est jamais écrit: il est dérivé à l'affichage
ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "DRAFT": {"SENT"},
    "SENT": {"ACCEPTED", "REJECTED"},
    "ACCEPTED": set(),
    "REJECTED": set(),
    "EXPIRED": set(),
}


def is_expired(quote: Quote, now: datetime) -> bool:
    return quote.status == "SENT" and quote.valid_until < now


def display_status(quote: Quote, now: datetime) -> QuoteStatus:
    return "EXPIRED" if is_expired(quote, now) else quote.status


def _blank(s: Optional[str]) -> bool:
    return not (s or "").strip()


def _compact(s: Optional[str]) -> str:
    return re.sub(r"\s+", "", s or "")


def validate_form(form: QuoteFormData) -> List[ValidationIssue]:
    """Liste des problèmes bloquants avant enregistrement (vide si le devis est valide)."""
    issues: List[ValidationIssue] = []

    def add(field: str, message: str, code: str) -> None:
        issues.append(ValidationIssue(field=field, message=message, code=code))

    for prefix, party in (("company", form.company), ("client", form.client)):
        if _blank(party.name):
            add(f"{prefix}.name", "Nom obligatoire", "required")
        if _blank(party.address):
            add(f"{prefix}.address", "Adresse obligatoire", "required")
        if not POSTAL_CODE_RE.match((party.postal_code or "").strip()):
            add(f"{prefix}.postal_code", "Code postal invalide (5 chiffres)", "invalid_postal_code")
        if _blank(party.city):
            add(f"{prefix}.city", "Ville obligatoire", "required")
        if party.email and not EMAIL_RE.match(party.email.strip()):
            add(f"{prefix}.email", "Email invalide", "invalid_email")
        if party.phone and not PHONE_RE.match(_compact(party.phone)):
            add(f"{prefix}.phone", "Téléphone invalide", "invalid_phone")

    siret = _compact(form.company.siret)
    if len(siret) != SIRET_LENGTH or not siret.isdigit():
        add("company.siret", f"SIRET invalide ({SIRET_LENGTH} chiffres)", "invalid_siret")
    client_siret = _compact(form.client.siret)
    if client_siret and (len(client_siret) != SIRET_LENGTH or not client_siret.isdigit()):
        add("client.siret", f"SIRET invalide ({SIRET_LENGTH} chiffres)", "invalid_siret")

    if not form.line_items:
        add("line_items", "Ajoutez au moins une prestation", "required")
    elif len(form.line_items) > MAX_LINE_ITEMS:
        add("line_items", f"{MAX_LINE_ITEMS} prestations maximum", "too_many")
    for idx, ln in enumerate(form.line_items):
        if _blank(ln.designation):
            add(f"line_items[{idx}].designation", "Désignation obligatoire", "required")
        if ln.quantity <= 0:
            add(f"line_items[{idx}].quantity", "Quantité invalide", "invalid_quantity")
        if not is_valid_amount(ln.unit_price_ht):
            add(f"line_items[{idx}].unit_price_ht", "Prix unitaire hors bornes (0,01 € à 999 999,99 €)", "invalid_amount")

    if form.conditions.validity_days <= 0:
        add("conditions.validity_days", "Durée de validité invalide", "invalid_validity")
    pct = form.conditions.deposit_percent
    if pct is not None and not 0 <= pct <= 100:
        add("conditions.deposit", "Pourcentage d'acompte invalide", "invalid_deposit")

    if len(form.comments or "") > MAX_COMMENTS_LENGTH:
        add("comments", f"{MAX_COMMENTS_LENGTH} caractères maximum", "too_long")
    return issues


class QuoteService:
    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or store.clock

    # ----- Formulaire ----- #

    def new_form(self) -> QuoteFormData:
        """Brouillon en cours s'il existe, sinon formulaire pré-rempli avec les valeurs par défaut."""
        draft = self.store.get_draft()
        if draft is not None:
            return draft
        doc = self.store.load()
        return QuoteFormData(
            company=(doc.default_company or Company()).model_copy(deep=True),
            conditions=(doc.default_conditions or default_conditions()).model_copy(deep=True),
        )

    @staticmethod
    def new_line_item(**overrides: Any) -> LineItem:
        return LineItem(**{"quantity": 1.0, "unit": "HOUR", "unit_price_ht": 0.0, "vat_rate": 20.0, **overrides})

    # ----- Construction ----- #

    def _build(self, form: QuoteFormData, *, quote_id: str, number: str, created_at: datetime,
               status: QuoteStatus = "DRAFT", version: int = 1) -> Quote:
        conditions: Conditions = form.conditions.model_copy(deep=True)
        totals = totals_for_conditions(form.line_items, conditions)
        if conditions.deposit is not None:
            conditions.deposit.amount_ht = totals.deposit_ht or 0.0
        validity = conditions.validity_days or DEFAULT_VALIDITY_DAYS
        return Quote(
            id=quote_id,
            number=number,
            status=status,
            created_at=created_at,
            valid_until=created_at + timedelta(days=validity),
            updated_at=self.clock(),
            company=form.company.model_copy(deep=True),
            client=form.client.model_copy(deep=True),
            line_items=[ln.model_copy(deep=True) for ln in form.line_items],
            conditions=conditions,
            totals=totals,
            subject=form.subject,
            comments=form.comments,
            version=version,
        )

    @staticmethod
    def _check(form: QuoteFormData) -> None:
        issues = validate_form(form)
        if issues:
            raise QuoteValidationError(issues)

    # ----- CRUD ----- #

    def create_quote(self, form: QuoteFormData, autosaver: Optional["DraftAutosaver"] = None) -> Quote:
        """Valide, numérote, calcule et enregistre; le brouillon est ensuite effacé."""
        self._check(form)
        if autosaver is not None:
            autosaver.cancel()
        now = self.clock()
        quote = self._build(form, quote_id=gen_id(), number=self.store.next_quote_number(), created_at=now)
        self.store.upsert_quote(quote)
        self.store.clear_draft()
        logger.info("Devis %s enregistré", quote.number)
        return quote

    def update_quote(self, quote_id: str, form: QuoteFormData, autosaver: Optional["DraftAutosaver"] = None) -> Quote:
        existing = self.get_quote(quote_id)
        self._check(form)
        if autosaver is not None:
            autosaver.cancel()
        quote = self._build(
            form,
            quote_id=existing.id,
            number=existing.number,
            created_at=existing.created_at,
            status=existing.status,
            version=existing.version + 1,
        )
        self.store.upsert_quote(quote)
        return quote

    def change_status(self, quote_id: str, status: QuoteStatus) -> Quote:
        quote = self.get_quote(quote_id)
        if status == quote.status:
            return quote
        if status not in ALLOWED_TRANSITIONS.get(quote.status, set()):
            raise QuoteValidationError([
                ValidationIssue(field="status", message=f"Transition {quote.status} → {status} interdite", code="invalid_transition")
            ])
        updated = quote.model_copy(update={"status": status, "updated_at": self.clock()})
        self.store.upsert_quote(updated)
        return updated

    def duplicate_quote(self, quote_id: str) -> Quote:
        source = self.get_quote(quote_id)
        copy = self._build(source.to_form(), quote_id=gen_id(), number=self.store.next_quote_number(), created_at=self.clock())
        self.store.upsert_quote(copy)
        return copy

    def get_quote(self, quote_id: str) -> Quote:
        quote = self.store.get_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(quote_id)
        return quote

    def delete_quote(self, quote_id: str) -> bool:
        return self.store.delete_quote(quote_id)

    def list_quotes(self) -> List[Quote]:
        return self.store.list_quotes()

    # ----- Recherche / statistiques ----- #

    def display_status(self, quote: Quote) -> QuoteStatus:
        return display_status(quote, self.clock())

    def search(self, query: str = "", status: Optional[QuoteStatus] = None,
               sort_by: str = "date", descending: bool = True) -> List[Quote]:
        now = self.clock()
        term = (query or "").strip().casefold()
        out: List[Quote] = []
        for q in self.store.list_quotes():
            if status and display_status(q, now) != status:
                continue
            if term and not any(term in (v or "").casefold() for v in (q.number, q.client.name, q.subject, q.company.name)):
                continue
            out.append(q)

        keys: Dict[str, Callable[[Quote], Any]] = {
            "date": lambda q: q.updated_at,
            "number": lambda q: q.number,
            "client": lambda q: q.client.name.casefold(),
            "amount": lambda q: q.totals.total_ttc,
        }
        if sort_by not in keys:
            raise ValueError(f"unknown sort key: {sort_by}")
        return sorted(out, key=keys[sort_by], reverse=descending)

    def stats(self) -> QuoteStats:
        now = self.clock()
        stats = QuoteStats()
        revenue = 0.0
        for q in self.store.list_quotes():
            stats.total += 1
            st = display_status(q, now)
            if st == "DRAFT":
                stats.drafts += 1
            elif st == "SENT":
                stats.sent += 1
            elif st == "ACCEPTED":
                stats.accepted += 1
                revenue += q.totals.total_ttc
            elif st == "REJECTED":
                stats.rejected += 1
            elif st == "EXPIRED":
                stats.expired += 1
        stats.revenue = round_amount(revenue)
        # taux calculé sur les devis sortis du brouillon
        issued = stats.total - stats.drafts
        stats.acceptance_rate = round(stats.accepted * 100 / issued, 1) if issued else 0.0
        return stats
