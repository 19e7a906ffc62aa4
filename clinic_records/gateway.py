import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from clinic_records.backend import BackendError, ErrorKind, SupabaseClient
from clinic_records.models import (
    Appointment,
    AppointmentCreate,
    AppointmentUpdate,
    FileUpload,
    MedicalHistory,
    MedicalHistoryCreate,
    Patient,
    PatientCreate,
    PatientFile,
    PatientUpdate,
)

logger = logging.getLogger(__name__)

PATIENTS = "patients"
MEDICAL_HISTORY = "medical_history"
APPOINTMENTS = "appointments"
PATIENT_FILES = "patient_files"

FAILURES = (BackendError, ValidationError)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _records(model, rows, label):
    """Validate listed rows one at a time, skipping the ones that do not fit."""
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise BackendError(ErrorKind.BACKEND, f"expected a list of {label} rows")
    records = []
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.warning("Skipping malformed %s row %s: %s", label, row_id, e)
    return records


def _with_patient_name(row):
    if not isinstance(row, dict):
        return row
    joined = row.pop(PATIENTS, None)
    name = joined.get("name") if isinstance(joined, dict) else None
    return {**row, "patient_name": name}


class RecordGateway:
    """
    Domain operations over the patients, medical history, appointments and
    patient files collections plus the patient files bucket.

    No operation raises: remote failures are logged and turned into an
    empty list, ``None`` or ``False``.
    """

    def __init__(
        self,
        client: SupabaseClient,
        bucket: str = "patient-files",
        signed_url_expires_in: int = 3600,
    ):
        self.client = client
        self.bucket = bucket
        self.signed_url_expires_in = signed_url_expires_in

    # Patients

    async def get_patients(self) -> List[Patient]:
        try:
            rows = await self.client.select(PATIENTS, order="created_at", ascending=False)
            return _records(Patient, rows, "patient")
        except FAILURES as e:
            logger.error("Error fetching patients: %s", e)
            return []

    async def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        try:
            row = await self.client.select(PATIENTS, filters={"id": patient_id}, single=True)
            return Patient.model_validate(row)
        except FAILURES as e:
            logger.error("Error fetching patient %s: %s", patient_id, e)
            return None

    async def create_patient(self, patient: PatientCreate) -> Optional[Patient]:
        try:
            row = await self.client.insert(
                PATIENTS, patient.model_dump(mode="json", exclude_none=True)
            )
            return Patient.model_validate(row)
        except FAILURES as e:
            logger.error("Error creating patient: %s", e)
            return None

    async def update_patient(
        self, patient_id: str, updates: PatientUpdate
    ) -> Optional[Patient]:
        values = updates.model_dump(mode="json", exclude_unset=True)
        values["updated_at"] = _now()
        try:
            row = await self.client.update(PATIENTS, values, {"id": patient_id})
            return Patient.model_validate(row)
        except FAILURES as e:
            logger.error("Error updating patient %s: %s", patient_id, e)
            return None

    async def delete_patient(self, patient_id: str) -> bool:
        try:
            await self.client.delete(PATIENTS, {"id": patient_id})
        except BackendError as e:
            logger.error("Error deleting patient %s: %s", patient_id, e)
            return False
        return True

    # Medical history

    async def get_medical_history(self, patient_id: str) -> List[MedicalHistory]:
        try:
            rows = await self.client.select(
                MEDICAL_HISTORY,
                filters={"patient_id": patient_id},
                order="date",
                ascending=False,
            )
            return _records(MedicalHistory, rows, "medical history")
        except FAILURES as e:
            logger.error("Error fetching medical history for %s: %s", patient_id, e)
            return []

    async def add_medical_history(
        self, history: MedicalHistoryCreate
    ) -> Optional[MedicalHistory]:
        """
        Insert a history entry, then bump the patient's treatment counter.

        The bump is a separate call: if it fails the entry is kept and the
        counter falls behind.
        """
        try:
            row = await self.client.insert(
                MEDICAL_HISTORY, history.model_dump(mode="json", exclude_none=True)
            )
            entry = MedicalHistory.model_validate(row)
        except FAILURES as e:
            logger.error("Error adding medical history: %s", e)
            return None

        try:
            await self.client.rpc(
                "increment_patient_treatments", {"patient_id": history.patient_id}
            )
        except BackendError as e:
            logger.warning(
                "Treatments counter not incremented for patient %s: %s",
                history.patient_id, e,
            )
        return entry

    # Appointments

    async def get_appointments(self) -> List[Appointment]:
        try:
            rows = await self.client.select(
                APPOINTMENTS,
                columns="*,patients!inner(name)",
                order="date",
                ascending=True,
            )
            if isinstance(rows, list):
                rows = [_with_patient_name(row) for row in rows]
            return _records(Appointment, rows, "appointment")
        except FAILURES as e:
            logger.error("Error fetching appointments: %s", e)
            return []

    async def create_appointment(
        self, appointment: AppointmentCreate
    ) -> Optional[Appointment]:
        try:
            row = await self.client.insert(
                APPOINTMENTS, appointment.model_dump(mode="json", exclude_none=True)
            )
            return Appointment.model_validate(row)
        except FAILURES as e:
            logger.error("Error creating appointment: %s", e)
            return None

    async def update_appointment(
        self, appointment_id: str, updates: AppointmentUpdate
    ) -> Optional[Appointment]:
        values = updates.model_dump(mode="json", exclude_unset=True)
        values["updated_at"] = _now()
        try:
            row = await self.client.update(APPOINTMENTS, values, {"id": appointment_id})
            return Appointment.model_validate(row)
        except FAILURES as e:
            logger.error("Error updating appointment %s: %s", appointment_id, e)
            return None

    async def delete_appointment(self, appointment_id: str) -> bool:
        try:
            await self.client.delete(APPOINTMENTS, {"id": appointment_id})
        except BackendError as e:
            logger.error("Error deleting appointment %s: %s", appointment_id, e)
            return False
        return True

    # Patient files

    async def get_patient_files(self, patient_id: str) -> List[PatientFile]:
        try:
            rows = await self.client.select(
                PATIENT_FILES,
                filters={"patient_id": patient_id},
                order="upload_date",
                ascending=False,
            )
            return _records(PatientFile, rows, "patient file")
        except FAILURES as e:
            logger.error("Error fetching files for patient %s: %s", patient_id, e)
            return []

    async def upload_patient_file(
        self, patient_id: str, upload: FileUpload
    ) -> Optional[PatientFile]:
        """
        Store the bytes under ``{patient_id}/{epoch_ms}-{name}`` and record
        the metadata row. Nothing is recorded when the upload fails; when
        the metadata insert fails the stored object is left behind.
        """
        key = f"{patient_id}/{int(time.time() * 1000)}-{upload.name}"
        try:
            storage_path = await self.client.upload(
                self.bucket, key, upload.content, upload.type
            )
        except BackendError as e:
            logger.error("Error uploading file %s: %s", upload.name, e)
            return None

        metadata = {
            "patient_id": patient_id,
            "name": upload.name,
            "type": upload.type,
            "size": upload.size,
            "storage_path": storage_path,
        }
        try:
            row = await self.client.insert(PATIENT_FILES, metadata)
            return PatientFile.model_validate(row)
        except FAILURES as e:
            logger.error("Error saving file metadata for %s: %s", storage_path, e)
            logger.warning("Stored object %s has no metadata row", storage_path)
            return None

    async def delete_patient_file(self, file_id: str) -> bool:
        """
        Remove the stored object, then the metadata row. A failed object
        removal is logged and the row is deleted anyway.
        """
        try:
            row = await self.client.select(
                PATIENT_FILES, columns="storage_path", filters={"id": file_id}, single=True
            )
            storage_path = row["storage_path"]
        except (BackendError, KeyError, TypeError) as e:
            logger.error("Error fetching file info for %s: %s", file_id, e)
            return False

        try:
            await self.client.remove(self.bucket, [storage_path])
        except BackendError as e:
            logger.warning("Error deleting %s from storage: %s", storage_path, e)

        try:
            await self.client.delete(PATIENT_FILES, {"id": file_id})
        except BackendError as e:
            logger.error("Error deleting file metadata for %s: %s", file_id, e)
            return False
        return True

    async def get_file_url(self, storage_path: str) -> Optional[str]:
        try:
            return await self.client.create_signed_url(
                self.bucket, storage_path, self.signed_url_expires_in
            )
        except BackendError as e:
            logger.error("Error creating signed URL for %s: %s", storage_path, e)
            return None
