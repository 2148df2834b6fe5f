from __future__ import annotations

import glob
import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from invoicing.errors import Conflict, NotFound

log = logging.getLogger(__name__)

Record = Dict[str, Any]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return str(o)
    return str(o)


class JsonRepository:
    """
    Repo JSON générique avec clé primaire configurable.
    - Jeton de version optimiste (``version_key``) : update() refuse un jeton périmé
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas (réduction du bruit et des .bak)
    - Écriture atomique (fichier temporaire + os.replace)
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        version_key: Optional[str] = "version",
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.version_key = version_key
        self._lock = threading.RLock()
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_raw([])

    @property
    def lock(self) -> threading.RLock:
        """Verrou des lectures-écritures composées (numérotation, etc.)."""
        return self._lock

    # ---------------- I/O bas niveau ---------------- #

    def _read_raw(self) -> List[Record]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            # Fichier corrompu → mise de côté et repart sur liste vide
            backup = self.filepath.with_suffix(".corrupt.json")
            log.warning("Corrupted %s store %s, copied to %s", self.entity_name, self.filepath, backup)
            try:
                shutil.copy2(self.filepath, backup)
            except OSError as e:
                log.error("Could not keep corrupted file %s: %s", self.filepath, e)
            return []

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        for old in files[: max(0, len(files) - self.backup_keep)]:
            try:
                Path(old).unlink(missing_ok=True)
            except OSError as e:
                log.debug("Could not remove backup %s: %s", old, e)

    def _write_raw(self, data: Iterable[Mapping[str, Any]]) -> None:
        new_dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)
        with self._lock:
            if self.filepath.exists():
                try:
                    if self.filepath.read_text(encoding="utf-8") == new_dump:
                        return
                except OSError:
                    pass

                if self.backup_enabled:
                    ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                    backup = self.filepath.with_suffix(f".{ts}.bak.json")
                    try:
                        shutil.copy2(self.filepath, backup)
                    except OSError as e:
                        log.warning("Backup of %s failed: %s", self.filepath, e)
                    self._rotate_backups()

            fd, tmp = tempfile.mkstemp(dir=str(self.filepath.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(new_dump)
                os.replace(tmp, self.filepath)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
            log.debug("Wrote %s store %s", self.entity_name, self.filepath)

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _to_dict(item: Union[BaseModel, Mapping[str, Any]]) -> Record:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        return dict(item)

    def _index_of(self, data: List[Record], obj_id: Any) -> int:
        for idx, d in enumerate(data):
            if str(d.get(self.key)) == str(obj_id):
                return idx
        return -1

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Record]:
        return self._read_raw()

    def get_by_id(self, obj_id: Any) -> Optional[Record]:
        data = self._read_raw()
        idx = self._index_of(data, obj_id)
        return data[idx] if idx >= 0 else None

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Record:
        record = self._to_dict(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        with self._lock:
            data = self._read_raw()
            if self._index_of(data, record[k]) >= 0:
                raise ValueError(f"{self.entity_name} with {k}={record[k]} already exists")
            if self.version_key and not record.get(self.version_key):
                record[self.version_key] = 1
            data.append(record)
            self._write_raw(data)
        return record

    def update(
        self,
        item: Union[BaseModel, Mapping[str, Any]],
        expected_version: Optional[int] = None,
        *,
        bump_version: bool = True,
    ) -> Record:
        """
        Remplace l'enregistrement de même clé.
        ``expected_version`` fourni et différent de la version stockée → Conflict.
        ``bump_version=False`` : compteurs de suivi, la version reste inchangée.
        """
        record = self._to_dict(item)
        k = self.key
        obj_id = record.get(k)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{k}'")
        with self._lock:
            data = self._read_raw()
            idx = self._index_of(data, obj_id)
            if idx < 0:
                raise NotFound(self.entity_name, obj_id)
            existing = data[idx]
            if self.version_key:
                current = int(existing.get(self.version_key) or 1)
                if expected_version is not None and int(expected_version) != current:
                    raise Conflict(expected_version, current, self.entity_name)
                record[self.version_key] = current + 1 if bump_version else current
            merged = {**existing, **record}
            data[idx] = merged
            self._write_raw(data)
        return merged

    def delete(self, obj_id: Any) -> bool:
        with self._lock:
            data = self._read_raw()
            new_data = [d for d in data if str(d.get(self.key)) != str(obj_id)]
            changed = len(new_data) != len(data)
            if changed:
                self._write_raw(new_data)
        return changed

    # ---------------- Recherches ---------------- #

    def find(self, predicate: Callable[[Record], bool]) -> List[Record]:
        return [r for r in self._read_raw() if predicate(r)]

    def find_one(self, predicate: Callable[[Record], bool]) -> Optional[Record]:
        for r in self._read_raw():
            if predicate(r):
                return r
        return None
