from __future__ import annotations

import errno
import glob
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from devis.exceptions import QuotaExceededError

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    """Contrat minimal d'un stockage clé/valeur (chaînes UTF-8)."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


class MemoryBackend:
    """Stockage en mémoire, avec capacité optionnelle (octets UTF-8, toutes clés confondues)."""

    def __init__(self, capacity_bytes: Optional[int] = None) -> None:
        self.capacity_bytes = capacity_bytes
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.capacity_bytes is not None:
                others = sum(_size(v) for k, v in self._data.items() if k != key)
                if others + _size(value) > self.capacity_bytes:
                    raise QuotaExceededError(errno.ENOSPC, f"quota dépassé pour la clé {key!r}")
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class FileBackend:
    """
    Un fichier JSON par clé dans ``directory``.
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas (réduction du bruit et des .bak)
    - Écriture atomique (fichier temporaire + os.replace)
    """

    def __init__(
        self,
        directory: Union[str, Path],
        *,
        capacity_bytes: Optional[int] = None,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.directory = Path(directory)
        self.capacity_bytes = capacity_bytes
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        self._lock = threading.Lock()
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    # ---------------- I/O bas niveau ---------------- #

    def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            # Fichier illisible → sauvegarde pour analyse, le lecteur repart sur les défauts
            backup = path.with_suffix(".corrupt.json")
            try:
                shutil.copy2(path, backup)
            except OSError as e:
                logger.warning("Copie de %s impossible: %s", path, e)
            return None

    def _rotate_backups(self, path: Path) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(path.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        for old in files[: max(0, len(files) - self.backup_keep)]:
            Path(old).unlink(missing_ok=True)

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        if self.capacity_bytes is not None and _size(value) > self.capacity_bytes:
            raise QuotaExceededError(errno.ENOSPC, f"quota dépassé pour la clé {key!r}")

        with self._lock:
            # si contenu identique → ne rien faire
            if path.exists():
                try:
                    if path.read_text(encoding="utf-8") == value:
                        return
                except (OSError, UnicodeDecodeError):
                    pass

            if self.backup_enabled and path.exists():
                ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                try:
                    shutil.copy2(path, path.with_suffix(f".{ts}.bak.json"))
                except OSError as e:
                    logger.warning("Backup de %s impossible: %s", path, e)
                self._rotate_backups(path)

            fd, tmp = tempfile.mkstemp(dir=str(self.directory), prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp, path)
            except OSError as e:
                Path(tmp).unlink(missing_ok=True)
                if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                    raise QuotaExceededError(e.errno, str(e)) from e
                raise

    def remove(self, key: str) -> None:
        with self._lock:
            self.path_for(key).unlink(missing_ok=True)

    def mtime(self, key: str) -> Optional[float]:
        try:
            return self.path_for(key).stat().st_mtime
        except FileNotFoundError:
            return None
