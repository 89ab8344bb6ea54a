"""
app/mappers/lifecycle.py

Stage derivation from dates and operational health scoring.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.domain.stages import POST_GATE_OUT_STAGES


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to naive datetimes (SQLite returns them naive).
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def apply_date_overrides(
    stage: str | None,
    *,
    delivery_date: datetime | None = None,
    empty_return_date: datetime | None = None,
    gate_out_date: datetime | None = None,
) -> str | None:
    """
    Authoritative dates beat free-text status.

    Delivery date forces DEL, then empty return forces RET, then gate-out
    forces CGO unless the stage already implies the container left.
    """

    if delivery_date is not None:
        return "DEL"
    if empty_return_date is not None:
        return "RET"
    if gate_out_date is not None and stage not in POST_GATE_OUT_STAGES:
        return "CGO"
    return stage


_OPERATIONAL_STATUS: tuple[tuple[frozenset[str], str], ...] = (
    (frozenset({"DEL"}), "Delivered"),
    (frozenset({"RET"}), "Completed"),
    (frozenset({"CGO"}), "Gated Out"),
    (frozenset({"OFD"}), "Out for Delivery"),
    (frozenset({"STRP"}), "Empty Return"),
    (frozenset({"REL", "AVL"}), "Available for Pickup"),
    (frozenset({"DIS", "INSP"}), "Discharged"),
    (frozenset({"ARR"}), "Arrived at Port"),
    (frozenset({"CUS"}), "Customs Hold"),
    (frozenset({"BOOK", "CEP", "CGI", "STUF", "LOA"}), "Booked"),
    (frozenset({"DEP", "TS1", "TSD", "TSL", "TS1D"}), "In Transit"),
)


@dataclass(frozen=True)
class HealthAssessment:
    health_score: int
    attention_category: str
    operational_status: str
    days_in_transit: int | None


def operational_status(
    stage: str | None,
    *,
    delivered: bool = False,
    returned: bool = False,
    arrived: bool = False,
) -> str:
    if stage == "DEL" or delivered:
        return "Delivered"
    if stage == "RET" or returned:
        return "Completed"
    for stages, label in _OPERATIONAL_STATUS:
        if stage in stages:
            return label
    if arrived:
        return "Arrived at Port"
    return "In Transit"


def assess_health(
    *,
    stage: str | None,
    last_free_day: datetime | None,
    delivery_date: datetime | None,
    empty_return_date: datetime | None,
    departure_date: datetime | None,
    arrival_date: datetime | None,
    now: datetime,
) -> HealthAssessment:
    """
    Score starts at 100; the first matching last-free-day branch applies.
    """

    now = ensure_utc(now)
    last_free_day = ensure_utc(last_free_day)
    delivery_date = ensure_utc(delivery_date)
    departure_date = ensure_utc(departure_date)
    finished = delivery_date is not None or empty_return_date is not None

    score = 100
    if last_free_day is not None:
        if now > last_free_day and not finished:
            score -= 50
        elif last_free_day - now < timedelta(days=2) and not finished:
            score -= 20
    elif not finished:
        score -= 10

    if finished:
        attention = "Resolved"
    elif score < 60:
        attention = "Critical"
    elif score < 90:
        attention = "Warning"
    else:
        attention = "Routine"

    days_in_transit: int | None = None
    if departure_date is not None:
        end = delivery_date or now
        days_in_transit = math.ceil(abs((end - departure_date).total_seconds()) / 86400)

    return HealthAssessment(
        health_score=score,
        attention_category=attention,
        operational_status=operational_status(
            stage,
            delivered=delivery_date is not None,
            returned=empty_return_date is not None,
            arrived=arrival_date is not None,
        ),
        days_in_transit=days_in_transit,
    )
