"""Field-level reducers for ``Case.metadata``.

Each phase owns a slice of the metadata document. The reducers here take
the current document and return a new one with only that slice replaced,
so an inbound refresh never wipes what enrichment wrote and vice versa.
Keys this package does not know about are carried through untouched.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional

from .mapping import map_appointment_type, normalize_species
from .models import (
    CaseMetadata,
    ClinicalEntity,
    ExtractedEntities,
    OwnerEntity,
    PatientEntity,
    PimsAppointment,
    PimsConsultation,
    ReconciliationInfo,
)

STRUCTURED_DATA_CONFIDENCE = {"overall": 0.9, "patient": 0.95, "clinical": 0.85}
SOFT_DELETE_REASON = "removed_from_pims"


def _split_items(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [item for item in value.split("; ") if item]


def _merge_model(current: Any, incoming: Any) -> Any:
    """Recursively overlay the non-null fields of ``incoming`` on ``current``."""
    if current is None:
        return incoming
    if incoming is None:
        return current
    updates = {}
    for field in incoming.model_fields_set:
        value = getattr(incoming, field)
        if value is None:
            continue
        existing = getattr(current, field, None)
        if hasattr(value, "model_fields_set") and existing is not None:
            value = _merge_model(existing, value)
        elif isinstance(value, dict) and isinstance(existing, dict):
            value = {**existing, **value}
        updates[field] = value
    return current.model_copy(update=updates)


def merge_entities(
    current: Optional[ExtractedEntities], incoming: Optional[ExtractedEntities]
) -> Optional[ExtractedEntities]:
    return _merge_model(current, incoming)


def appointment_entities(appointment: PimsAppointment, now: datetime) -> ExtractedEntities:
    return ExtractedEntities(
        patient=PatientEntity(
            name=appointment.patient.name or "Unknown",
            species=normalize_species(appointment.patient.species),
            breed=appointment.patient.breed,
            owner=OwnerEntity(
                name=appointment.client.name or "Unknown",
                phone=appointment.client.phone,
                email=appointment.client.email,
            ),
        ),
        clinical=ClinicalEntity(visit_reason=appointment.reason),
        case_type=map_appointment_type(appointment.type) or "unknown",
        confidence=dict(STRUCTURED_DATA_CONFIDENCE),
        extracted_at=now,
    )


def apply_appointment(
    metadata: Optional[CaseMetadata],
    appointment: PimsAppointment,
    *,
    provider: str,
    now: datetime,
) -> CaseMetadata:
    metadata = metadata or CaseMetadata()
    return metadata.model_copy(
        update={
            "pims_appointment": appointment,
            "entities": merge_entities(metadata.entities, appointment_entities(appointment, now)),
            "synced_at": now,
            "sync_source": provider,
        }
    )


def apply_consultation(
    metadata: Optional[CaseMetadata],
    consultation: PimsConsultation,
    *,
    now: datetime,
) -> CaseMetadata:
    metadata = metadata or CaseMetadata()
    current_clinical = metadata.entities.clinical if metadata.entities else ClinicalEntity()
    clinical = current_clinical.model_copy(
        update={
            "clinical_notes": consultation.notes,
            "visit_reason": consultation.reason or current_clinical.visit_reason,
            "products_services_provided": _split_items(consultation.products_services),
            "products_services_declined": _split_items(consultation.declined_products_services),
        }
    )
    entities = (metadata.entities or ExtractedEntities()).model_copy(update={"clinical": clinical})
    return metadata.model_copy(
        update={
            "pims_consultation": consultation,
            "entities": entities,
            "discharge_summary": consultation.discharge_summary,
            "enriched_at": now,
        }
    )


def mark_soft_deleted(metadata: Optional[CaseMetadata], *, now: datetime, reason: str = SOFT_DELETE_REASON) -> CaseMetadata:
    metadata = metadata or CaseMetadata()
    return metadata.model_copy(
        update={"reconciliation": ReconciliationInfo(soft_deleted=True, reason=reason, deleted_at=now)}
    )


def mark_restored(metadata: CaseMetadata, *, now: datetime) -> CaseMetadata:
    """Clear the soft-delete marker, keeping when and why it was set."""
    current = metadata.reconciliation or ReconciliationInfo()
    return metadata.model_copy(
        update={"reconciliation": current.model_copy(update={"soft_deleted": False, "restored_at": now})}
    )


def is_soft_deleted(metadata: Optional[CaseMetadata]) -> bool:
    return bool(metadata and metadata.reconciliation and metadata.reconciliation.soft_deleted)


def appointment_changed(existing: Optional[PimsAppointment], incoming: PimsAppointment) -> bool:
    """Only the fields a clinic acts on count as a change."""
    if existing is None:
        return True
    return (
        existing.status != incoming.status
        or existing.consultation_id != incoming.consultation_id
        or existing.reason != incoming.reason
        or existing.patient.name != incoming.patient.name
        or existing.client.phone != incoming.client.phone
    )
