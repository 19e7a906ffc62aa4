import datetime as dt
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class Gender(str, Enum):
    MASCULINO = "Masculino"
    FEMENINO = "Femenino"
    OTRO = "Otro"


class PatientStatus(str, Enum):
    ACTIVO = "Activo"
    SEGUIMIENTO = "Seguimiento"
    ALTA = "Alta"


class AppointmentStatus(str, Enum):
    CONFIRMADA = "confirmada"
    PENDIENTE = "pendiente"
    CANCELADA = "cancelada"


# Patients

class PatientBase(SQLModel):
    name: str
    cedula: str  # national id
    phone: str
    email: str
    address: Optional[str] = None
    birth_date: Optional[dt.date] = None
    gender: Optional[Gender] = None
    treatments: int = 0  # bumped by the backend when history is added
    status: PatientStatus = PatientStatus.ACTIVO
    notes: Optional[str] = None


class Patient(PatientBase):
    id: str
    created_at: dt.datetime
    updated_at: dt.datetime


class PatientCreate(PatientBase):
    pass


class PatientUpdate(SQLModel):
    name: Optional[str] = None
    cedula: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    birth_date: Optional[dt.date] = None
    gender: Optional[Gender] = None
    treatments: Optional[int] = None
    status: Optional[PatientStatus] = None
    notes: Optional[str] = None


# Medical history

class MedicalHistoryBase(SQLModel):
    patient_id: str
    date: dt.date
    treatment: str
    notes: Optional[str] = None
    evolution: Optional[str] = None


class MedicalHistory(MedicalHistoryBase):
    id: str
    created_at: dt.datetime
    updated_at: dt.datetime


class MedicalHistoryCreate(MedicalHistoryBase):
    pass


# Appointments

class AppointmentBase(SQLModel):
    patient_id: str
    date: dt.date
    time: dt.time
    duration: int = Field(description="Length in minutes")
    type: str
    notes: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDIENTE


class Appointment(AppointmentBase):
    id: str
    created_at: dt.datetime
    updated_at: dt.datetime
    # Only filled in by the appointment listing, which joins the patient.
    patient_name: Optional[str] = None


class AppointmentCreate(AppointmentBase):
    pass


class AppointmentUpdate(SQLModel):
    patient_id: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    duration: Optional[int] = None
    type: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[AppointmentStatus] = None


# Files

class PatientFile(SQLModel):
    id: str
    patient_id: str
    name: str
    type: str  # MIME type
    size: int
    storage_path: str
    upload_date: dt.datetime


class FileUpload(SQLModel):
    """An uploaded file as handed over by the caller."""

    name: str
    type: str = "application/octet-stream"
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)
