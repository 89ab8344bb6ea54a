"""
app/dictionary package marker.
"""

from app.dictionary.canonical_dictionary import (
    IDENTITY_FIELD,
    CanonicalDictionary,
    FieldDefinition,
    PendingSuggestion,
    normalize_header,
)
from app.dictionary.dictionary_store import DictionaryStore, get_dictionary_store

__all__ = [
    "IDENTITY_FIELD",
    "CanonicalDictionary",
    "DictionaryStore",
    "get_dictionary_store",
    "FieldDefinition",
    "PendingSuggestion",
    "normalize_header",
]
