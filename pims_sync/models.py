from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_CAMEL = {"populate_by_name": True, "extra": "allow"}


class CaseStatus(str, Enum):
    DRAFT = "draft"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    REVIEWED = "reviewed"  # closed / archived


ARCHIVED_STATUS = CaseStatus.REVIEWED


class Credentials(BaseModel):
    username: str
    password: str


# Remote (PIMS-side) shapes -------------------------------------------------

class PimsPatient(BaseModel):
    id: str | None = None
    name: str | None = None
    species: str | None = None
    breed: str | None = None


class PimsClient(BaseModel):
    id: str | None = None
    name: str | None = None
    phone: str | None = None
    email: str | None = None


class PimsProviderRef(BaseModel):
    id: str | None = None
    name: str | None = None


class PimsAppointment(BaseModel):
    model_config = _CAMEL

    id: str
    consultation_id: str | None = Field(default=None, alias="consultationId")
    start_time: datetime | None = Field(default=None, alias="startTime")
    duration: int | None = None  # minutes
    date: str | None = None  # YYYY-MM-DD, clinic local
    patient: PimsPatient = Field(default_factory=PimsPatient)
    client: PimsClient = Field(default_factory=PimsClient)
    provider: PimsProviderRef = Field(default_factory=PimsProviderRef)
    type: str | None = None
    status: str = "scheduled"
    reason: str | None = None
    notes: str | None = None

    @property
    def is_block(self) -> bool:
        return (self.type or "").lower() == "block"


class PimsConsultation(BaseModel):
    model_config = _CAMEL

    id: str
    notes: str | None = None
    discharge_summary: str | None = Field(default=None, alias="dischargeSummary")
    products_services: str | None = Field(default=None, alias="productsServices")
    declined_products_services: str | None = Field(default=None, alias="declinedProductsServices")
    status: str = "unknown"
    reason: str | None = None
    date: str | None = None

    @property
    def has_clinical_content(self) -> bool:
        return bool(self.notes or self.discharge_summary)


# Case metadata sub-documents -----------------------------------------------

class OwnerEntity(BaseModel):
    model_config = _CAMEL

    name: str | None = None
    phone: str | None = None
    email: str | None = None


class PatientEntity(BaseModel):
    model_config = _CAMEL

    name: str | None = None
    species: str | None = None
    breed: str | None = None
    owner: OwnerEntity = Field(default_factory=OwnerEntity)


class ClinicalEntity(BaseModel):
    model_config = _CAMEL

    visit_reason: str | None = Field(default=None, alias="visitReason")
    clinical_notes: str | None = Field(default=None, alias="clinicalNotes")
    products_services_provided: list[str] | None = Field(default=None, alias="productsServicesProvided")
    products_services_declined: list[str] | None = Field(default=None, alias="productsServicesDeclined")


class ExtractedEntities(BaseModel):
    model_config = _CAMEL

    patient: PatientEntity = Field(default_factory=PatientEntity)
    clinical: ClinicalEntity = Field(default_factory=ClinicalEntity)
    case_type: str | None = Field(default=None, alias="caseType")
    confidence: dict[str, float] = Field(default_factory=dict)
    extracted_at: datetime | None = Field(default=None, alias="extractedAt")


class ReconciliationInfo(BaseModel):
    model_config = _CAMEL

    soft_deleted: bool = Field(default=False, alias="softDeleted")
    reason: str | None = None
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")
    restored_at: datetime | None = Field(default=None, alias="restoredAt")


class CaseMetadata(BaseModel):
    """Schemaless sidecar on a case; the keys the engine owns are typed."""

    model_config = _CAMEL

    pims_appointment: PimsAppointment | None = Field(default=None, alias="pimsAppointment")
    pims_consultation: PimsConsultation | None = Field(default=None, alias="pimsConsultation")
    entities: ExtractedEntities | None = None
    discharge_summary: str | None = Field(default=None, alias="dischargeSummary")
    enriched_at: datetime | None = Field(default=None, alias="enrichedAt")
    synced_at: datetime | None = Field(default=None, alias="syncedAt")
    sync_source: str | None = Field(default=None, alias="syncSource")
    reconciliation: ReconciliationInfo | None = None


class Case(BaseModel):
    id: str
    clinic_id: str
    external_id: str | None = None
    status: CaseStatus = CaseStatus.DRAFT
    type: str | None = None
    scheduled_at: datetime | None = None
    metadata: CaseMetadata = Field(default_factory=CaseMetadata)
    source: str | None = None
    is_urgent: bool = False
    visibility: str = "private"
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Sync run results ----------------------------------------------------------

class SyncType(str, Enum):
    INBOUND = "inbound"
    CASES = "cases"
    RECONCILIATION = "reconciliation"


class SyncStats(BaseModel):
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0


class SyncError(BaseModel):
    message: str
    context: dict[str, Any] | None = None


class SyncResult(BaseModel):
    success: bool
    sync_id: str
    stats: SyncStats
    duration_ms: int
    errors: list[SyncError] | None = None


class ReconciliationResult(SyncResult):
    deleted_cases: list[str] | None = None


class FullSyncResult(BaseModel):
    inbound: SyncResult | None = None
    cases: SyncResult | None = None
    reconciliation: ReconciliationResult | None = None
    total_duration_ms: int = 0
    success: bool = True


class BidirectionalSyncResult(FullSyncResult):
    backward_inbound: SyncResult | None = None
    forward_inbound: SyncResult | None = None


class ProgressUpdate(BaseModel):
    sync_id: str
    total_items: int
    processed_items: int
    progress_percentage: int


class SyncAuditRecord(BaseModel):
    id: str  # sync id
    clinic_id: str
    sync_type: SyncType
    status: str = "in_progress"  # in_progress | completed | failed
    appointments_found: int = 0
    cases_created: int = 0
    cases_updated: int = 0
    cases_skipped: int = 0
    cases_deleted: int = 0
    cases_failed: int = 0
    error_message: str | None = None
    total_items: int = 0
    processed_items: int = 0
    progress_percentage: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


# Appointment management ----------------------------------------------------

class PatientMatch(BaseModel):
    id: str
    name: str
    client_id: str = ""
    client_name: str = ""
    species: str = ""
    breed: str | None = None
    age: str | None = None
    sex: str | None = None
    weight: str | None = None


class PatientSearchResult(BaseModel):
    patients: list[PatientMatch] = Field(default_factory=list)
    total_count: int = 0


class CreateAppointmentInput(BaseModel):
    patient_id: str
    patient_name: str | None = None
    date: str  # YYYY-MM-DD
    start_time: str  # HH:MM
    end_time: str | None = None
    reason: str | None = None
    provider_id: str | None = None
    room_id: str | None = None
    note: str | None = None


class CancelAppointmentInput(BaseModel):
    appointment_id: str
    action: str = "cancel"  # "cancel" keeps the record, "delete" removes it
    reason: str = "Cancelled via phone"


class OperationError(BaseModel):
    code: str
    message: str
    details: Any = None


class AppointmentOperationResult(BaseModel):
    success: bool
    appointment_id: str | None = None
    message: str | None = None
    error: OperationError | None = None


class AppointmentDetails(BaseModel):
    id: str
    patient_id: str | None = None
    patient_name: str | None = None
    client_name: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    status: str | None = None
    reason: str | None = None
    provider: str | None = None
