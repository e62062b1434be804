"""
Tests pour le rendu HTML du devis (le PDF lui-même dépend d'outils externes).
"""
import sys

import pytest

from devis.config import Settings
from devis.models.quote import Conditions, Deposit
from devis.services.formatting import NBSP, NNBSP
from devis.services.pdf_service import QuotePdfService, _clean_path, _slug, find_wkhtmltopdf, legal_mentions
from devis.services.totals import compute_totals

from conftest import line, make_company, make_quote


@pytest.fixture
def pdf_service(store, tmp_path):
    return QuotePdfService(store, Settings(data_dir=tmp_path))


def _quote(items, pct=None, **overrides):
    conditions = Conditions(deposit=Deposit(percentage=pct)) if pct else Conditions()
    return make_quote(line_items=items, conditions=conditions, totals=compute_totals(items, pct), **overrides)


def test_render_html_contains_parties_and_totals(pdf_service):
    """Test les informations principales du devis imprimé."""
    html = pdf_service.render_html(_quote([line(1000, designation="Pose parquet")], subject="Séjour"))

    assert "DEVIS-2025-0001" in html
    assert "Atelier Dupont" in html
    assert "Marie Martin" in html
    assert "Pose parquet" in html
    assert "Séjour" in html
    assert f"1{NNBSP}200,00{NBSP}€" in html
    assert "15/03/2025" in html


def test_render_html_vat_recap_only_with_several_rates(pdf_service):
    """Test le récapitulatif TVA, affiché seulement s'il y a plusieurs taux."""
    assert "Récapitulatif TVA" not in pdf_service.render_html(_quote([line(100), line(50)]))
    assert "Récapitulatif TVA" in pdf_service.render_html(_quote([line(100), line(50, vat_rate=10)]))


def test_render_html_deposit(pdf_service):
    """Test l'affichage de l'acompte et du reste à payer."""
    with_deposit = pdf_service.render_html(_quote([line(99.99)], pct=30))
    assert "Acompte" in with_deposit
    assert f"36,00{NBSP}€" in with_deposit
    assert f"83,99{NBSP}€" in with_deposit
    assert "Reste à payer" not in pdf_service.render_html(_quote([line(99.99)]))


def test_render_html_escapes_user_input(pdf_service):
    """Test l'échappement des saisies."""
    html = pdf_service.render_html(_quote([line(10, designation="<script>alert(1)</script>")]))
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_render_html_includes_custom_notices(pdf_service, store):
    """Test les mentions personnalisées en pied de page."""
    store.save_custom_legal_notices(["Assurance décennale n° 1234"])
    assert "Assurance décennale n° 1234" in pdf_service.render_html(_quote([line(10)]))


def test_legal_mentions_depend_on_legal_form():
    """Test la mention 293 B réservée aux auto-entrepreneurs."""
    quote = make_quote()
    assert any("293 B" in m for m in legal_mentions(quote))

    sas = make_quote(company=make_company(legal_form="SAS"))
    mentions = legal_mentions(sas, ["", "  ", "Perso"])
    assert not any("293 B" in m for m in mentions)
    assert mentions[-1] == "Perso"
    assert "30 jours" in mentions[0]


def test_slug_and_clean_path():
    """Test les noms de fichiers et chemins saisis."""
    assert _slug("DEVIS/2025:1") == "DEVIS_2025_1"
    assert _slug("") == "devis"
    assert _clean_path(' "/usr/local/bin/wkhtmltopdf" ') == "/usr/local/bin/wkhtmltopdf"
    assert _clean_path("") == ""


def test_find_wkhtmltopdf_prefers_settings(tmp_path, monkeypatch):
    """Test la priorité au chemin configuré, puis au PATH."""
    exe = tmp_path / "wkhtmltopdf"
    exe.write_text("")
    assert find_wkhtmltopdf(Settings(data_dir=tmp_path, wkhtmltopdf_path=str(exe))) == str(exe)

    monkeypatch.setattr("devis.services.pdf_service.which", lambda name: None)
    assert find_wkhtmltopdf(Settings(data_dir=tmp_path, wkhtmltopdf_path=str(tmp_path / "absent"))) is None


def test_export_pdf_without_any_engine(pdf_service, tmp_path, monkeypatch):
    """Test l'erreur claire quand aucun moteur PDF n'est disponible."""
    monkeypatch.setattr("devis.services.pdf_service.find_wkhtmltopdf", lambda settings: None)
    monkeypatch.setitem(sys.modules, "weasyprint", None)
    with pytest.raises(RuntimeError):
        pdf_service.export_pdf(_quote([line(10)]), out_dir=tmp_path / "out")
