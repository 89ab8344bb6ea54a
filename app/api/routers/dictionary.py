"""
Read-only view of the active canonical dictionary.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.dictionary.dictionary_store import DictionaryStore, get_dictionary_store
from app.schemas.dictionary import DictionaryFieldResponse, DictionaryResponse

router = APIRouter(tags=["dictionary"])


@router.get("/dictionary", response_model=DictionaryResponse)
def get_dictionary(store: DictionaryStore = Depends(get_dictionary_store)) -> DictionaryResponse:
    dictionary = store.load()
    return DictionaryResponse(
        version=dictionary.version,
        last_updated=dictionary.last_updated,
        fields=[
            DictionaryFieldResponse(
                name=definition.name,
                required=definition.required,
                field_type=definition.field_type,
                target=definition.target,
                synonyms=list(definition.synonyms),
                confidence_threshold=definition.threshold,
            )
            for definition in dictionary.fields
        ],
        pending_fields=[pending.to_document() for pending in dictionary.pending_fields],
        business_units={name: list(keywords) for name, keywords in dictionary.business_units},
    )
