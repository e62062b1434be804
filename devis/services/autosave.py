from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from devis.exceptions import StorageFullError
from devis.models.quote import QuoteFormData
from devis.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_DELAY_S = 2.0

TimerFactory = Callable[[float, Callable[[], None]], Any]


class DraftAutosaver:
    """
    Sauvegarde différée du brouillon (debounce): chaque modification annule
    l'écriture en attente et en programme une nouvelle ``delay`` secondes plus tard.
    Le minuteur doit exposer ``start()`` et ``cancel()`` (``threading.Timer`` par défaut,
    minuteur Qt dans l'interface). L'écriture se fait sous verrou: ``cancel()`` attend
    la fin d'une écriture déjà lancée.
    """

    def __init__(
        self,
        store: DocumentStore,
        delay: float = DEFAULT_DELAY_S,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self.store = store
        self.delay = delay
        self._timer_factory = timer_factory or self._thread_timer
        self._lock = threading.Lock()
        self._timer: Any = None
        self._pending: Optional[QuoteFormData] = None
        self._generation = 0

    @staticmethod
    def _thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
        t = threading.Timer(delay, fn)
        t.daemon = True
        return t

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def touch(self, form: QuoteFormData) -> None:
        with self._lock:
            self._cancel_timer()
            self._pending = form.model_copy(deep=True)
            gen = self._generation
            timer = self._timer_factory(self.delay, lambda: self._fire(gen))
            self._timer = timer
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._pending = None

    def flush(self) -> bool:
        """Écrit immédiatement le brouillon en attente; retourne False s'il n'y en avait pas."""
        with self._lock:
            self._cancel_timer()
            form, self._pending = self._pending, None
            if form is None:
                return False
            self.store.save_draft(form)
        return True

    def _cancel_timer(self) -> None:
        # un minuteur déjà parti ne doit plus rien écrire
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, gen: int) -> None:
        # verrou gardé pendant l'écriture: cancel() attend la fin d'une écriture en cours
        with self._lock:
            if gen != self._generation:
                return
            form, self._pending = self._pending, None
            self._timer = None
            if form is None:
                return
            try:
                self.store.save_draft(form)
            except StorageFullError as e:
                logger.error("Sauvegarde automatique du brouillon impossible: %s", e)
