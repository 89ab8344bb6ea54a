"""
app/mappers package marker.
"""

from app.mappers.field_transformer import FieldTransformer
from app.mappers.header_mapper import HeaderMapper, heuristic_header_mapping
from app.mappers.identity import is_valid_identity_key, normalize_identity_key
from app.mappers.status_normalizer import StatusNormalizer, keyword_stage

__all__ = [
    "FieldTransformer",
    "HeaderMapper",
    "StatusNormalizer",
    "heuristic_header_mapping",
    "is_valid_identity_key",
    "keyword_stage",
    "normalize_identity_key",
]
