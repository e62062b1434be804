from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional

from PySide6.QtWidgets import (
    QApplication, QMainWindow, QWidget, QTabWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QPushButton, QFileDialog, QMessageBox, QTableWidget, QLineEdit,
    QTableWidgetItem, QHeaderView, QComboBox, QDialog, QProgressBar
)
from PySide6.QtCore import QTimer

from devis.config import Settings, load_settings
from devis.exceptions import QuoteValidationError
from devis.models.quote import STATUS_LABELS, Quote
from devis.services.autosave import DraftAutosaver
from devis.services.formatting import format_currency, format_date, format_file_size
from devis.services.pdf_service import QuotePdfService
from devis.services.quote_service import QuoteService
from devis.storage.document_store import DocumentStore
from devis_ui.widgets.quote_editor import QuoteEditor

logger = logging.getLogger(__name__)

EXTERNAL_POLL_MS = 3000


class _GuiTimer:
    """Minuteur à un coup exécuté dans le fil de l'interface (sauvegarde automatique)."""
    def __init__(self, delay: float, fn):
        self._timer = QTimer()
        self._timer.setSingleShot(True)
        self._timer.setInterval(int(delay * 1000))
        self._timer.timeout.connect(fn)

    def start(self):
        self._timer.start()

    def cancel(self):
        self._timer.stop()


class MainWindow(QMainWindow):
    def __init__(self, settings: Optional[Settings] = None):
        super().__init__()
        self.setWindowTitle("Devis - Auto-entrepreneur")
        self.resize(1280, 800)
        self.settings = settings or load_settings()
        self.store = DocumentStore.from_settings(self.settings)
        self.quote_service = QuoteService(self.store)
        self.pdf_service = QuotePdfService(self.store, self.settings)
        self.autosaver = DraftAutosaver(self.store, delay=self.settings.autosave_delay_s, timer_factory=_GuiTimer)

        self.tabs = QTabWidget()
        self.setCentralWidget(self.tabs)
        self.tabs.addTab(self._quotes_tab(), "Devis")
        self.tabs.addTab(self._settings_tab(), "Paramètres")

        self._poll = QTimer(self)
        self._poll.timeout.connect(self._check_external_changes)
        self._poll.start(EXTERNAL_POLL_MS)

    # ==================== DEVIS ====================
    def _quotes_tab(self):
        w = QWidget()
        root = QVBoxLayout(w)

        bar = QHBoxLayout()
        btn_new = QPushButton("Nouveau")
        btn_edit = QPushButton("Modifier")
        btn_dup = QPushButton("Dupliquer")
        btn_pdf = QPushButton("Exporter PDF")
        btn_del = QPushButton("Supprimer")
        self.cb_next_status = QComboBox()
        for code in ("SENT", "ACCEPTED", "REJECTED"):
            self.cb_next_status.addItem(STATUS_LABELS[code], code)
        btn_status = QPushButton("Changer le statut")
        for b in (btn_new, btn_edit, btn_dup, btn_pdf, btn_del):
            bar.addWidget(b)
        bar.addStretch(1); bar.addWidget(self.cb_next_status); bar.addWidget(btn_status)
        root.addLayout(bar)

        filters = QHBoxLayout()
        self.ed_search = QLineEdit(); self.ed_search.setPlaceholderText("Rechercher (numéro, client, objet, entreprise)")
        self.cb_filter = QComboBox()
        self.cb_filter.addItem("Tous les statuts", None)
        for code, label in STATUS_LABELS.items():
            self.cb_filter.addItem(label, code)
        filters.addWidget(self.ed_search, 1); filters.addWidget(self.cb_filter)
        root.addLayout(filters)

        self.tbl_quotes = QTableWidget(0, 8)
        self.tbl_quotes.setHorizontalHeaderLabels(["Numéro", "Client", "Objet", "Date", "Validité", "Total TTC", "Statut", "ID"])
        self.tbl_quotes.horizontalHeader().setSectionResizeMode(QHeaderView.Stretch)
        self.tbl_quotes.setSelectionBehavior(self.tbl_quotes.SelectionBehavior.SelectRows)
        self.tbl_quotes.setEditTriggers(self.tbl_quotes.EditTrigger.NoEditTriggers)
        self.tbl_quotes.setColumnHidden(7, True)
        root.addWidget(self.tbl_quotes, 1)

        usage = QHBoxLayout()
        self.lab_storage = QLabel()
        self.pb_storage = QProgressBar(); self.pb_storage.setRange(0, 100)
        usage.addWidget(self.lab_storage); usage.addWidget(self.pb_storage, 1)
        root.addLayout(usage)

        btn_new.clicked.connect(self._quote_new)
        btn_edit.clicked.connect(self._quote_edit)
        btn_dup.clicked.connect(self._quote_duplicate)
        btn_pdf.clicked.connect(self._quote_export_pdf)
        btn_del.clicked.connect(self._quote_delete)
        btn_status.clicked.connect(self._quote_change_status)
        self.ed_search.textChanged.connect(self._refresh_quotes)
        self.cb_filter.currentIndexChanged.connect(self._refresh_quotes)

        self._refresh_quotes()
        return w

    def _refresh_quotes(self, *_):
        quotes = self.quote_service.search(self.ed_search.text(), status=self.cb_filter.currentData())
        self.tbl_quotes.setRowCount(0)
        for q in quotes:
            r = self.tbl_quotes.rowCount(); self.tbl_quotes.insertRow(r)
            status = self.quote_service.display_status(q)
            label = f"{STATUS_LABELS.get(status, status)} (v{q.version})"
            self.tbl_quotes.setItem(r, 0, QTableWidgetItem(q.number))
            self.tbl_quotes.setItem(r, 1, QTableWidgetItem(q.client.name))
            self.tbl_quotes.setItem(r, 2, QTableWidgetItem(q.subject or ""))
            self.tbl_quotes.setItem(r, 3, QTableWidgetItem(format_date(q.created_at)))
            self.tbl_quotes.setItem(r, 4, QTableWidgetItem(format_date(q.valid_until)))
            self.tbl_quotes.setItem(r, 5, QTableWidgetItem(format_currency(q.totals.total_ttc)))
            self.tbl_quotes.setItem(r, 6, QTableWidgetItem(label))
            self.tbl_quotes.setItem(r, 7, QTableWidgetItem(q.id))
        self.tbl_quotes.resizeRowsToContents()
        self._refresh_storage()

    def _check_external_changes(self):
        # écritures faites par une autre instance: simple rafraîchissement, pas de fusion
        if self.store.poll_external_changes() is not None:
            self._refresh_quotes()

    def _refresh_storage(self):
        u = self.store.storage_usage()
        self.lab_storage.setText(f"Stockage: {format_file_size(u.used_bytes)} ({u.percentage}%)"
                                 + ("  - espace presque plein" if u.near_capacity else ""))
        self.pb_storage.setValue(min(100, u.percentage))

    def _selected_quote(self) -> Optional[Quote]:
        row = self.tbl_quotes.currentRow()
        if row < 0: return None
        return self.store.get_quote(self.tbl_quotes.item(row, 7).text())

    def _quote_new(self):
        dlg = QuoteEditor(self, service=self.quote_service, autosaver=self.autosaver)
        if dlg.exec() == QDialog.Accepted and dlg.saved_quote:
            QMessageBox.information(self, "Devis", f"Devis {dlg.saved_quote.number} sauvegardé !")
        self._refresh_quotes()

    def _quote_edit(self):
        q = self._selected_quote()
        if not q:
            QMessageBox.information(self, "Devis", "Sélectionne un devis."); return
        dlg = QuoteEditor(self, service=self.quote_service, quote=q)
        dlg.exec()
        self._refresh_quotes()

    def _quote_duplicate(self):
        q = self._selected_quote()
        if not q:
            QMessageBox.information(self, "Devis", "Sélectionne un devis."); return
        copy = self.quote_service.duplicate_quote(q.id)
        QMessageBox.information(self, "Devis", f"Copie créée : {copy.number}")
        self._refresh_quotes()

    def _quote_change_status(self):
        q = self._selected_quote()
        if not q:
            QMessageBox.information(self, "Devis", "Sélectionne un devis."); return
        try:
            self.quote_service.change_status(q.id, self.cb_next_status.currentData())
        except QuoteValidationError as e:
            QMessageBox.warning(self, "Statut", "\n".join(i.message for i in e.issues))
        self._refresh_quotes()

    def _quote_export_pdf(self):
        q = self._selected_quote()
        if not q:
            QMessageBox.information(self, "PDF", "Sélectionne un devis."); return
        try:
            path = self.pdf_service.export_pdf(q)
            QMessageBox.information(self, "PDF", f"PDF généré :\n{path}")
        except (RuntimeError, OSError) as e:
            logger.error("Export PDF %s impossible: %s", q.number, e)
            QMessageBox.warning(self, "PDF", str(e))

    def _quote_delete(self):
        q = self._selected_quote()
        if not q:
            QMessageBox.information(self, "Devis", "Sélectionne un devis."); return
        if QMessageBox.question(self, "Suppression", f"Êtes-vous sûr de vouloir supprimer le devis {q.number} ?") == QMessageBox.Yes:
            self.quote_service.delete_quote(q.id)
            self._refresh_quotes()

    # ==================== PARAMÈTRES / DONNÉES ====================
    def _settings_tab(self):
        w = QWidget(); lay = QVBoxLayout(w)
        lay.addWidget(QLabel(f"Données: {self.settings.data_dir}"))
        btn_export = QPushButton("Exporter les données…")
        btn_import = QPushButton("Importer des données…")
        btn_clean = QPushButton("Nettoyer les anciens devis")
        btn_reset = QPushButton("Effacer toutes les données")
        for b in (btn_export, btn_import, btn_clean, btn_reset):
            lay.addWidget(b)
        lay.addStretch(1)

        btn_export.clicked.connect(self._data_export)
        btn_import.clicked.connect(self._data_import)
        btn_clean.clicked.connect(self._data_clean)
        btn_reset.clicked.connect(self._data_reset)
        return w

    def _data_export(self):
        path, _ = QFileDialog.getSaveFileName(self, "Exporter", str(self.settings.data_dir / "devis-export.json"), "JSON (*.json)")
        if not path: return
        Path(path).write_text(self.store.export_snapshot(), encoding="utf-8")
        QMessageBox.information(self, "Export", f"Données exportées :\n{path}")

    def _data_import(self):
        path, _ = QFileDialog.getOpenFileName(self, "Importer", str(self.settings.data_dir), "JSON (*.json)")
        if not path: return
        if self.store.import_snapshot(Path(path).read_text(encoding="utf-8")):
            QMessageBox.information(self, "Import", "Données importées.")
        else:
            QMessageBox.warning(self, "Import", "Fichier invalide: aucune donnée n'a été modifiée.")
        self._refresh_quotes()

    def _data_clean(self):
        removed = self.store.retention_sweep()
        QMessageBox.information(self, "Nettoyage", f"{removed} devis supprimé(s).")
        self._refresh_quotes()

    def _data_reset(self):
        if QMessageBox.question(self, "Effacer", "Effacer toutes les données ?") == QMessageBox.Yes:
            self.autosaver.cancel()
            self.store.reset()
            self._refresh_quotes()

    def closeEvent(self, event):
        self._poll.stop()
        self.autosaver.flush()
        super().closeEvent(event)


def main() -> int:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = QApplication(sys.argv)
    win = MainWindow(settings)
    win.show()
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
