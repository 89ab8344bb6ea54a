"""
app/dictionary/dictionary_store.py

YAML persistence for the canonical dictionary document.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from functools import lru_cache
from pathlib import Path

import yaml

from app.config import get_dictionary_settings
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.errors import DictionaryError

logger = logging.getLogger(__name__)


def load_dictionary_file(path: Path) -> CanonicalDictionary:
    if not path.exists():
        raise DictionaryError(f"Canonical dictionary file not found: {path}")
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise DictionaryError(f"Canonical dictionary file is not valid YAML: {path}") from exc
    if document is None:
        raise DictionaryError(f"Canonical dictionary file is empty: {path}")
    return CanonicalDictionary.from_document(document)


def dump_dictionary(dictionary: CanonicalDictionary) -> str:
    return yaml.safe_dump(
        dictionary.to_document(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def write_dictionary_file(path: Path, dictionary: CanonicalDictionary) -> None:
    """
    Write atomically: a crash mid-write leaves the previous document intact.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dump_dictionary(dictionary)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(temp_name, path)
    except OSError as exc:
        Path(temp_name).unlink(missing_ok=True)
        raise DictionaryError(f"Failed to write canonical dictionary: {path}") from exc


class DictionaryStore:
    """
    Holds the active dictionary snapshot for one document path.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._current: CanonicalDictionary | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, refresh: bool = False) -> CanonicalDictionary:
        with self._lock:
            if self._current is None or refresh:
                self._current = load_dictionary_file(self._path)
                logger.info(
                    "Loaded canonical dictionary version=%s fields=%d from %s",
                    self._current.version,
                    len(self._current.fields),
                    self._path,
                )
            return self._current

    def save(self, dictionary: CanonicalDictionary) -> CanonicalDictionary:
        with self._lock:
            write_dictionary_file(self._path, dictionary)
            self._current = dictionary
        logger.info("Saved canonical dictionary version=%s to %s", dictionary.version, self._path)
        return dictionary

    def restore(self, snapshot_path: Path) -> CanonicalDictionary:
        """
        Replace the active document with a previously saved snapshot.
        """

        snapshot = load_dictionary_file(snapshot_path)
        return self.save(snapshot)


@lru_cache(maxsize=1)
def get_dictionary_store() -> DictionaryStore:
    return DictionaryStore(get_dictionary_settings().path)
