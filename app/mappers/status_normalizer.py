"""
app/mappers/status_normalizer.py

Free-text status to stage-code normalization.

Lookup order: session cache, keyword heuristic, then (only for model-backed
oracles) the oracle's answer validated against the fixed vocabulary.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.domain.stages import OTHER_STAGE, STAGES, is_valid_stage
from oracle.errors import OracleError

if TYPE_CHECKING:
    from oracle.client import ClassificationOracle

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^A-Z0-9]")

# Ordered; first match wins. Each rule is (all-of keywords, none-of keywords, stage code).
_KEYWORD_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...], str], ...] = (
    (("out for deliver",), (), "OFD"),
    (("empty", "return"), (), "RET"),
    (("deliver",), ("await", "pending", "schedul"), "DEL"),
    (("pod signed",), (), "DEL"),
    (("gate", "out"), (), "CGO"),
    (("gated", "out"), (), "CGO"),
    (("outgate",), (), "CGO"),
    (("gate", "in"), (), "CGI"),
    (("ingate",), (), "CGI"),
    (("strip",), (), "STRP"),
    (("devan",), (), "STRP"),
    (("avail",), (), "AVL"),
    (("releas",), (), "REL"),
    (("custom",), (), "CUS"),
    (("hold",), (), "CUS"),
    (("inspect",), (), "INSP"),
    (("disch",), (), "DIS"),
    (("unload",), (), "DIS"),
    (("arriv",), (), "ARR"),
    (("transship",), (), "TS1"),
    (("transit",), (), "DEP"),
    (("t/s",), (), "TS1"),
    (("depart",), (), "DEP"),
    (("sail",), (), "DEP"),
    (("on board",), (), "LOA"),
    (("load",), (), "LOA"),
    (("stuff",), (), "STUF"),
    (("empty", "pick"), (), "CEP"),
    (("book",), (), "BOOK"),
)


def keyword_stage(text: str | None) -> str | None:
    """
    Deterministic keyword classification. Unknown text maps to ``O``.
    """

    if text is None:
        return None
    lowered = " ".join(str(text).lower().split())
    if not lowered:
        return None
    for keywords, excluded, code in _KEYWORD_RULES:
        if all(keyword in lowered for keyword in keywords) and not any(word in lowered for word in excluded):
            return code
    return OTHER_STAGE


def clean_oracle_stage(answer: str | None) -> str | None:
    """
    Uppercase, keep the first token, drop non-alphanumerics, then validate.
    """

    if not answer:
        return None
    tokens = str(answer).strip().upper().split()
    if not tokens:
        return None
    candidate = _NON_ALPHANUMERIC.sub("", tokens[0])
    return candidate if is_valid_stage(candidate) else None


@dataclass(frozen=True)
class StatusResolution:
    code: str | None
    source: str


class StatusNormalizer:
    """
    Session-scoped status classifier. One instance per batch.
    """

    def __init__(self, oracle: "ClassificationOracle | None" = None) -> None:
        self._oracle = oracle
        self._cache: dict[str, StatusResolution] = {}
        self._lock = threading.Lock()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def normalize(self, text: str | None) -> StatusResolution:
        if text is None or not str(text).strip():
            return StatusResolution(code=None, source="empty")

        key = " ".join(str(text).lower().split())
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        resolution = StatusResolution(code=keyword_stage(key), source="heuristic")
        if self._oracle is not None and self._oracle.consults_model:
            resolution = self._ask_oracle(str(text), fallback=resolution)

        with self._lock:
            self._cache[key] = resolution
        return resolution

    def _ask_oracle(self, text: str, *, fallback: StatusResolution) -> StatusResolution:
        vocabulary = {code: stage.name for code, stage in STAGES.items()}
        try:
            answer = self._oracle.classify_status(text, vocabulary)
        except OracleError as exc:
            logger.warning("Status oracle failed for %r, keeping heuristic %s: %s", text, fallback.code, exc)
            return fallback

        code = clean_oracle_stage(answer)
        if code is None:
            logger.info("Rejected oracle stage %r for status %r; keeping %s", answer, text, fallback.code)
            return fallback
        return StatusResolution(code=code, source="oracle")
