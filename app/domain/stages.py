"""
app/domain/stages.py

Fixed lifecycle stage vocabulary for containers.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TransitStage:
    code: str
    name: str
    sequence: int


_STAGE_DEFINITIONS: tuple[tuple[str, str], ...] = (
    ("BOOK", "Booked"),
    ("CEP", "Container Empty Pickup"),
    ("CGI", "Gated In"),
    ("STUF", "Stuffed"),
    ("LOA", "Loaded"),
    ("DEP", "Departed"),
    ("TS1", "Transshipment Arrival"),
    ("TSD", "Transshipment Discharge"),
    ("TSL", "Transshipment Loaded"),
    ("TS1D", "Transshipment Departure"),
    ("ARR", "Arrived"),
    ("DIS", "Discharged"),
    ("INSP", "Inspection"),
    ("CUS", "Customs Hold"),
    ("REL", "Released"),
    ("AVL", "Available for Pickup"),
    ("CGO", "Gated Out"),
    ("OFD", "Out for Delivery"),
    ("DEL", "Delivered"),
    ("STRP", "Stripped"),
    ("RET", "Empty Returned"),
    ("O", "Other"),
)

STAGES: dict[str, TransitStage] = {
    code: TransitStage(code=code, name=name, sequence=(index + 1) * 10)
    for index, (code, name) in enumerate(_STAGE_DEFINITIONS)
}

STAGE_CODES: frozenset[str] = frozenset(STAGES)

TERMINAL_STAGES: frozenset[str] = frozenset({"REL", "AVL", "CGO", "DEL", "RET"})

# Stages that already imply the container left the terminal; a gate-out date
# must not pull them back to CGO.
POST_GATE_OUT_STAGES: frozenset[str] = frozenset({"OFD", "DEL", "STRP", "RET"})

DELIVERED_STAGES: frozenset[str] = frozenset({"DEL", "RET"})

OTHER_STAGE = "O"
CUSTOMS_HOLD_STAGE = "CUS"


def stage_sequence(code: str | None) -> int | None:
    if code is None:
        return None
    stage = STAGES.get(code)
    return stage.sequence if stage is not None else None


def is_valid_stage(code: str | None) -> bool:
    return code is not None and code in STAGE_CODES
