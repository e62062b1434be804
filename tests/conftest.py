# Standard Library
from datetime import datetime, timedelta
from typing import Any, Callable, List

# Third-Party Libraries
import pytest

# First-Party Libraries
from devis.models.party import Client, Company
from devis.models.quote import Conditions, LineItem, Quote, QuoteFormData
from devis.services.quote_service import QuoteService
from devis.storage.backends import MemoryBackend
from devis.storage.document_store import DocumentStore

NOW = datetime(2025, 3, 15, 10, 0, 0)


class FixedClock:
    """Horloge contrôlée par le test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Minuteur manuel: rien ne se déclenche tant que le test n'appelle pas fire()."""

    def __init__(self, delay: float, fn: Callable[[], None]):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if self.started and not self.cancelled:
            self.fn()


# --- Fixtures de Base ---

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend: MemoryBackend, clock: FixedClock) -> DocumentStore:
    return DocumentStore(backend, clock=clock)


@pytest.fixture
def service(store: DocumentStore) -> QuoteService:
    return QuoteService(store)


@pytest.fixture
def timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers: List[FakeTimer]) -> Callable[[float, Callable[[], None]], FakeTimer]:
    def factory(delay: float, fn: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(delay, fn)
        timers.append(t)
        return t
    return factory


# --- Données ---

def line(total_ht: float, vat_rate: float = 20.0, designation: str = "Prestation") -> LineItem:
    """Ligne d'une unité au prix ``total_ht``."""
    return LineItem(designation=designation, quantity=1, unit="FLAT", unit_price_ht=total_ht, vat_rate=vat_rate)


def make_company(**overrides: Any) -> Company:
    data = {
        "name": "Atelier Dupont",
        "address": "12 rue des Lilas",
        "postal_code": "75011",
        "city": "Paris",
        "siret": "12345678901234",
        "email": "contact@atelier-dupont.fr",
        "phone": "0612345678",
        "activity": "Menuiserie",
    }
    data.update(overrides)
    return Company(**data)


def make_client(**overrides: Any) -> Client:
    data = {"name": "Marie Martin", "address": "3 place du Marché", "postal_code": "69002", "city": "Lyon"}
    data.update(overrides)
    return Client(**data)


def make_form(**overrides: Any) -> QuoteFormData:
    data = {
        "company": make_company(),
        "client": make_client(),
        "line_items": [line(100.0), line(200.0), line(50.0, vat_rate=10.0)],
        "conditions": Conditions(validity_days=30, execution_delay="2 semaines"),
        "subject": "Rénovation cuisine",
    }
    data.update(overrides)
    return QuoteFormData(**data)


def make_quote(updated_at: datetime = NOW, **overrides: Any) -> Quote:
    data = {
        "number": "DEVIS-2025-0001",
        "created_at": updated_at,
        "updated_at": updated_at,
        "valid_until": updated_at + timedelta(days=30),
        "company": make_company(),
        "client": make_client(),
        "line_items": [line(100.0)],
    }
    data.update(overrides)
    return Quote(**data)
