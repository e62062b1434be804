from __future__ import annotations
from pydantic import Field, computed_field, field_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from .common import DevisModel, gen_id
from .party import Client, Company

QuoteStatus = Literal["DRAFT", "SENT", "ACCEPTED", "REJECTED", "EXPIRED"]
Unit = Literal["HOUR", "DAY", "FLAT", "UNIT"]

VAT_RATES = (0.0, 5.5, 10.0, 20.0)  # taux principaux en France

UNIT_LABELS: Dict[str, str] = {"HOUR": "Heure", "DAY": "Jour", "FLAT": "Forfait", "UNIT": "Unité"}
STATUS_LABELS: Dict[str, str] = {
    "DRAFT": "Brouillon",
    "SENT": "Envoyé",
    "ACCEPTED": "Accepté",
    "REJECTED": "Refusé",
    "EXPIRED": "Expiré",
}


class LineItem(DevisModel):
    id: str = Field(default_factory=gen_id)
    designation: str = ""
    quantity: float = 1.0
    unit: Unit = "HOUR"
    unit_price_ht: float = 0.0
    vat_rate: float = 20.0

    @field_validator("unit", mode="before")
    @classmethod
    def _unit_from_label(cls, v: Any) -> Any:
        for code, label in UNIT_LABELS.items():
            if v == label:
                return code
        return v

    @field_validator("vat_rate", mode="before")
    @classmethod
    def _known_vat_rate(cls, v: Any) -> float:
        try:
            rate = float(v)
        except (TypeError, ValueError):
            raise ValueError(f"taux de TVA invalide: {v!r}") from None
        if rate not in VAT_RATES:
            raise ValueError(f"taux de TVA inconnu: {v}")
        return rate

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_ht(self) -> float:
        # toujours dérivé: jamais désynchronisé de quantity / unit_price_ht
        from devis.services.totals import line_total_ht
        return line_total_ht(self.quantity, self.unit_price_ht)


class VatBreakdownEntry(DevisModel):
    rate: float
    base_ht: float = 0.0
    vat_amount: float = 0.0


class Totals(DevisModel):
    total_ht: float = 0.0
    total_vat: float = 0.0
    total_ttc: float = 0.0
    # renseignés uniquement si un acompte est demandé
    deposit_ht: Optional[float] = None
    deposit_vat: Optional[float] = None
    deposit_ttc: Optional[float] = None
    remaining_due: Optional[float] = None

    @property
    def has_deposit(self) -> bool:
        return self.deposit_ttc is not None


class Deposit(DevisModel):
    percentage: float = 0.0
    amount_ht: float = 0.0


class Conditions(DevisModel):
    validity_days: int = 30
    execution_delay: str = ""
    payment_terms: str = ""
    payment_methods: List[str] = Field(default_factory=list)
    deposit: Optional[Deposit] = None

    # Propriété intellectuelle
    copyright_assignment: Optional[bool] = None
    moral_rights_kept: Optional[bool] = None
    commercial_use: Optional[bool] = None
    exploitation_territory: Optional[str] = None
    exploitation_duration: Optional[str] = None

    # Clauses de protection
    confidentiality_clause: Optional[bool] = None
    non_compete_clause: Optional[bool] = None
    non_compete_months: Optional[int] = None

    # Responsabilité et garanties
    liability_limitation: Optional[bool] = None
    professional_warranty: Optional[str] = None
    rc_insurance: Optional[bool] = None

    # Conditions spécifiques
    withdrawal_right: Optional[bool] = None
    force_majeure: Optional[bool] = None
    delivery_conformity: Optional[str] = None

    # RGPD
    data_processing: Optional[bool] = None
    retention_duration: Optional[str] = None

    # Litiges
    governing_law: Optional[str] = None
    competent_court: Optional[str] = None

    @property
    def deposit_percent(self) -> Optional[float]:
        return self.deposit.percentage if self.deposit else None


DEFAULT_LEGAL_CLAUSES: Dict[str, Any] = {
    "copyright_assignment": False,
    "moral_rights_kept": True,
    "commercial_use": True,
    "exploitation_territory": "France",
    "exploitation_duration": "Illimitée",
    "confidentiality_clause": True,
    "non_compete_clause": False,
    "non_compete_months": 12,
    "liability_limitation": True,
    "professional_warranty": "1 an",
    "rc_insurance": True,
    "withdrawal_right": True,
    "force_majeure": False,
    "delivery_conformity": "30 jours",
    "data_processing": True,
    "retention_duration": "3 ans",
    "governing_law": "Droit français",
    "competent_court": "Tribunaux français",
}


def default_conditions() -> Conditions:
    return Conditions(
        validity_days=30,
        execution_delay="2 semaines",
        payment_terms="Paiement à 30 jours",
        payment_methods=["Virement bancaire", "Chèque"],
    )


class QuoteFormData(DevisModel):
    """Saisie en cours (brouillon). Tout est optionnel: rien n'est validé avant l'enregistrement."""
    company: Company = Field(default_factory=Company)
    client: Client = Field(default_factory=Client)
    line_items: List[LineItem] = Field(default_factory=list)
    conditions: Conditions = Field(default_factory=Conditions)
    subject: Optional[str] = None
    comments: Optional[str] = None


class Quote(DevisModel):
    id: str = Field(default_factory=gen_id)
    number: str
    status: QuoteStatus = "DRAFT"

    created_at: datetime = Field(default_factory=datetime.now)
    valid_until: datetime
    updated_at: datetime = Field(default_factory=datetime.now)

    company: Company
    client: Client
    line_items: List[LineItem] = Field(default_factory=list)
    conditions: Conditions = Field(default_factory=Conditions)
    totals: Totals = Field(default_factory=Totals)

    subject: Optional[str] = None
    comments: Optional[str] = None

    version: int = 1

    @field_validator("created_at", "valid_until", "updated_at", mode="after")
    @classmethod
    def _naive_local(cls, v: datetime) -> datetime:
        # dates avec décalage (import) ramenées en heure locale naïve, comme datetime.now()
        if v.tzinfo is not None:
            return v.astimezone().replace(tzinfo=None)
        return v

    def to_form(self) -> QuoteFormData:
        return QuoteFormData(
            company=self.company.model_copy(deep=True),
            client=self.client.model_copy(deep=True),
            line_items=[ln.model_copy(deep=True) for ln in self.line_items],
            conditions=self.conditions.model_copy(deep=True),
            subject=self.subject,
            comments=self.comments,
        )


class QuoteStats(DevisModel):
    total: int = 0
    drafts: int = 0
    sent: int = 0
    accepted: int = 0
    rejected: int = 0
    expired: int = 0
    revenue: float = 0.0
    acceptance_rate: float = 0.0
