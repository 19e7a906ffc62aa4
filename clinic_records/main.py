import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, File, HTTPException, Response, UploadFile

from clinic_records.config import Settings, configure_logging
from clinic_records.database import create_gateway, get_gateway
from clinic_records.gateway import RecordGateway
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


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    app.state.gateway = create_gateway(settings)
    logger.info("Record gateway connected to %s", settings.supabase_url)
    yield
    await app.state.gateway.client.aclose()
    logger.info("App shutting down.")


app = FastAPI(lifespan=lifespan)


def _found(record, detail: str):
    if record is None:
        raise HTTPException(status_code=404, detail=detail)
    return record


def _created(record, detail: str):
    if record is None:
        raise HTTPException(status_code=502, detail=detail)
    return record


# Patients

@app.get("/patients", response_model=List[Patient])
async def list_patients(gateway: RecordGateway = Depends(get_gateway)):
    return await gateway.get_patients()


@app.post("/patients", response_model=Patient, status_code=201)
async def create_patient(
    patient: PatientCreate, gateway: RecordGateway = Depends(get_gateway)
):
    return _created(await gateway.create_patient(patient), "Patient could not be created.")


@app.get("/patients/{patient_id}", response_model=Patient)
async def read_patient(patient_id: str, gateway: RecordGateway = Depends(get_gateway)):
    return _found(await gateway.get_patient_by_id(patient_id), "Patient not found.")


@app.patch("/patients/{patient_id}", response_model=Patient)
async def update_patient(
    patient_id: str,
    updates: PatientUpdate,
    gateway: RecordGateway = Depends(get_gateway),
):
    return _found(await gateway.update_patient(patient_id, updates), "Patient not found.")


@app.delete("/patients/{patient_id}", status_code=204)
async def delete_patient(patient_id: str, gateway: RecordGateway = Depends(get_gateway)):
    if not await gateway.delete_patient(patient_id):
        raise HTTPException(status_code=404, detail="Patient could not be deleted.")
    return Response(status_code=204)


# Medical history

@app.get("/patients/{patient_id}/history", response_model=List[MedicalHistory])
async def list_medical_history(
    patient_id: str, gateway: RecordGateway = Depends(get_gateway)
):
    return await gateway.get_medical_history(patient_id)


@app.post("/history", response_model=MedicalHistory, status_code=201)
async def add_medical_history(
    history: MedicalHistoryCreate, gateway: RecordGateway = Depends(get_gateway)
):
    """
    Add a history entry; the patient's treatment counter is bumped as well.
    """
    return _created(
        await gateway.add_medical_history(history), "Medical history could not be added."
    )


# Appointments

@app.get("/appointments", response_model=List[Appointment])
async def list_appointments(gateway: RecordGateway = Depends(get_gateway)):
    return await gateway.get_appointments()


@app.post("/appointments", response_model=Appointment, status_code=201)
async def create_appointment(
    appointment: AppointmentCreate, gateway: RecordGateway = Depends(get_gateway)
):
    return _created(
        await gateway.create_appointment(appointment), "Appointment could not be created."
    )


@app.patch("/appointments/{appointment_id}", response_model=Appointment)
async def update_appointment(
    appointment_id: str,
    updates: AppointmentUpdate,
    gateway: RecordGateway = Depends(get_gateway),
):
    return _found(
        await gateway.update_appointment(appointment_id, updates), "Appointment not found."
    )


@app.delete("/appointments/{appointment_id}", status_code=204)
async def delete_appointment(
    appointment_id: str, gateway: RecordGateway = Depends(get_gateway)
):
    if not await gateway.delete_appointment(appointment_id):
        raise HTTPException(status_code=404, detail="Appointment could not be deleted.")
    return Response(status_code=204)


# Files

@app.get("/patients/{patient_id}/files", response_model=List[PatientFile])
async def list_patient_files(
    patient_id: str, gateway: RecordGateway = Depends(get_gateway)
):
    return await gateway.get_patient_files(patient_id)


@app.post("/patients/{patient_id}/files", response_model=PatientFile, status_code=201)
async def upload_patient_file(
    patient_id: str,
    file: UploadFile = File(...),
    gateway: RecordGateway = Depends(get_gateway),
):
    upload = FileUpload(
        name=file.filename or "upload",
        type=file.content_type or "application/octet-stream",
        content=await file.read(),
    )
    return _created(
        await gateway.upload_patient_file(patient_id, upload), "File could not be uploaded."
    )


@app.delete("/files/{file_id}", status_code=204)
async def delete_patient_file(file_id: str, gateway: RecordGateway = Depends(get_gateway)):
    if not await gateway.delete_patient_file(file_id):
        raise HTTPException(status_code=404, detail="File could not be deleted.")
    return Response(status_code=204)


@app.get("/files/url", response_model=dict)
async def read_file_url(path: str, gateway: RecordGateway = Depends(get_gateway)):
    """
    Return a signed URL for a stored file, valid for a limited time.
    """
    url = _found(await gateway.get_file_url(path), "File URL could not be created.")
    return {"url": url}
