"""Translate PIMS vocabulary (ids, statuses, visit types, species) into case fields."""
from __future__ import annotations
import re
from datetime import datetime
from typing import Optional

from .models import CaseStatus

PIMS_SOURCE_PREFIX = "pims:"

_WHITESPACE = re.compile(r"\s+")
_STATUS_SEPARATORS = re.compile(r"[_\s]+")

APPOINTMENT_STATUS_MAP = {
    "scheduled": CaseStatus.DRAFT,
    "confirmed": CaseStatus.DRAFT,
    "checked-in": CaseStatus.ONGOING,
    "in-progress": CaseStatus.ONGOING,
    "completed": CaseStatus.COMPLETED,
    "discharged": CaseStatus.COMPLETED,
    "cancelled": CaseStatus.REVIEWED,
    "canceled": CaseStatus.REVIEWED,
    "no-show": CaseStatus.REVIEWED,
}

# first match wins, so more specific words come first
APPOINTMENT_TYPE_KEYWORDS = (
    ("emergency", ("emergency", "urgent", "er ", "critical", "trauma")),
    ("surgery", ("surgery", "surgical", "spay", "neuter", "castration", "procedure")),
    ("dental", ("dental", "dentistry", "teeth", "tooth")),
    ("vaccination", ("vaccin", "vaccine", "booster", "shots")),
    ("follow_up", ("follow", "recheck", "re-check", "progress exam", "suture removal")),
    ("checkup", ("checkup", "check-up", "check up", "wellness", "annual", "exam", "consult", "appointment")),
)

URGENT_CASE_TYPES = frozenset({"emergency"})


def build_external_id(provider: str, appointment_id: str) -> str:
    """``pims-appt-<provider>-<id>``; the natural key of an ingested appointment."""
    return f"pims-appt-{_WHITESPACE.sub('-', provider.strip().lower())}-{appointment_id}"


def build_source(provider: str) -> str:
    return f"{PIMS_SOURCE_PREFIX}{provider.strip().lower()}"


def map_appointment_status(status: Optional[str]) -> CaseStatus:
    if not status:
        return CaseStatus.DRAFT
    normalized = _STATUS_SEPARATORS.sub("-", status.strip().lower())
    return APPOINTMENT_STATUS_MAP.get(normalized, CaseStatus.DRAFT)


def map_appointment_type(appointment_type: Optional[str]) -> Optional[str]:
    if not appointment_type:
        return None
    normalized = f"{appointment_type.strip().lower()} "
    if normalized.strip() == "block":
        return None
    for case_type, keywords in APPOINTMENT_TYPE_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return case_type
    return "other"


def is_urgent_type(case_type: Optional[str]) -> bool:
    return case_type in URGENT_CASE_TYPES


def normalize_species(species: Optional[str]) -> str:
    if not species:
        return "unknown"
    normalized = species.lower()
    if "dog" in normalized or "canine" in normalized:
        return "dog"
    if "cat" in normalized or "feline" in normalized:
        return "cat"
    if "bird" in normalized or "avian" in normalized:
        return "bird"
    if "rabbit" in normalized or "bunny" in normalized:
        return "rabbit"
    return "other"


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)
