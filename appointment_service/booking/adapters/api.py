import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from booking.common.config import Settings, get_settings
from booking.common.dto import (
    AppointmentListResponse,
    AppointmentResponse,
    BookAppointmentRequest,
    CancelAppointmentRequest,
    DoctorListResponse,
    MessageResponse,
    RescheduleAppointmentRequest,
)
from booking.domain.doctor_registry import DoctorRegistry
from booking.domain.exceptions import (
    AppointmentNotFoundException,
    InvalidDoctorException,
    MissingFieldException,
    SlotTakenException,
    StoreException,
)
from booking.domain.services.appointment_service import AppointmentService
from booking.infrastructure.database.dynamodb_appointment_repository import (
    DynamoDBAppointmentRepository,
)
from booking.infrastructure.database.memory_appointment_repository import (
    InMemoryAppointmentRepository,
)
from booking.ports.appointment_repository import AppointmentRepositoryPort

router = APIRouter()

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error."


@lru_cache
def get_doctor_registry() -> DoctorRegistry:
    return DoctorRegistry(get_settings().doctor_names)


@lru_cache
def get_appointment_repository() -> AppointmentRepositoryPort:
    settings = get_settings()
    if settings.appointment_store == "memory":
        logger.info("Using in-memory appointment store")
        return InMemoryAppointmentRepository()
    return DynamoDBAppointmentRepository(
        table_name=settings.appointments_table,
        endpoint_url=settings.aws_endpoint_url,
        connect_timeout=settings.store_connect_timeout,
        read_timeout=settings.store_read_timeout,
    )


def get_appointment_service(
    repository: AppointmentRepositoryPort = Depends(get_appointment_repository),
    doctor_registry: DoctorRegistry = Depends(get_doctor_registry),
    settings: Settings = Depends(get_settings),
):
    return AppointmentService(
        repository,
        doctor_registry,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
    )


def _internal_error(action: str, error: StoreException) -> HTTPException:
    logger.error(f"Store failure while {action}: {error!r}")
    return HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post(
    "/appointments", status_code=201, response_model=AppointmentResponse
)
async def book_appointment(
    request: Optional[BookAppointmentRequest] = None,
    service: AppointmentService = Depends(get_appointment_service),
):
    logger.info("Received request to create appointment")
    # a missing body is treated like a body with every field absent
    request = request or BookAppointmentRequest()
    try:
        appointment = await service.book(
            request.first_name,
            request.last_name,
            request.email,
            request.time_slot,
            request.doctor_name,
        )
    except MissingFieldException:
        raise HTTPException(status_code=400, detail="All fields are required.")
    except InvalidDoctorException:
        raise HTTPException(status_code=400, detail="Invalid doctor name.")
    except SlotTakenException:
        raise HTTPException(
            status_code=400,
            detail="Time slot is already booked for this doctor.",
        )
    except StoreException as e:
        raise _internal_error("creating appointment", e)
    logger.info(f"Successfully created appointment: {appointment.id}")
    return AppointmentResponse(
        message="Appointment booked successfully.", appointment=appointment
    )


@router.get(
    "/appointments/doctor/{doctor_name}",
    response_model=AppointmentListResponse,
)
async def get_doctor_appointments(
    doctor_name: str,
    service: AppointmentService = Depends(get_appointment_service),
):
    logger.info(
        f"Received request to get appointments for doctor: {doctor_name}"
    )
    try:
        appointments = await service.list_by_doctor(doctor_name)
    except InvalidDoctorException:
        raise HTTPException(status_code=400, detail="Invalid doctor name.")
    except StoreException as e:
        raise _internal_error("listing doctor appointments", e)
    logger.info(f"Retrieved appointments for doctor: {doctor_name}")
    return AppointmentListResponse(appointments=appointments)


@router.get("/appointments/{email}", response_model=AppointmentListResponse)
async def get_patient_appointments(
    email: str,
    service: AppointmentService = Depends(get_appointment_service),
):
    logger.info(f"Received request to get appointments for patient: {email}")
    try:
        appointments = await service.list_by_patient(email)
    except AppointmentNotFoundException:
        raise HTTPException(status_code=404, detail="No appointments found.")
    except StoreException as e:
        raise _internal_error("listing patient appointments", e)
    return AppointmentListResponse(appointments=appointments)


@router.delete("/appointments", response_model=MessageResponse)
async def cancel_appointment(
    request: Optional[CancelAppointmentRequest] = None,
    service: AppointmentService = Depends(get_appointment_service),
):
    logger.info("Received request to cancel appointment")
    request = request or CancelAppointmentRequest()
    try:
        appointment = await service.cancel(request.email, request.time_slot)
    except MissingFieldException:
        raise HTTPException(status_code=400, detail="All fields are required.")
    except AppointmentNotFoundException:
        raise HTTPException(status_code=404, detail="Appointment not found.")
    except StoreException as e:
        raise _internal_error("cancelling appointment", e)
    logger.info(f"Successfully cancelled appointment: {appointment.id}")
    return MessageResponse(message="Appointment cancelled successfully.")


@router.put("/appointments", response_model=AppointmentResponse)
async def reschedule_appointment(
    request: Optional[RescheduleAppointmentRequest] = None,
    service: AppointmentService = Depends(get_appointment_service),
):
    logger.info("Received request to update appointment")
    request = request or RescheduleAppointmentRequest()
    try:
        appointment = await service.reschedule(
            request.email, request.original_time_slot, request.new_time_slot
        )
    except MissingFieldException:
        raise HTTPException(status_code=400, detail="All fields are required.")
    except AppointmentNotFoundException:
        raise HTTPException(
            status_code=404, detail="Original appointment not found."
        )
    except SlotTakenException:
        raise HTTPException(
            status_code=400,
            detail="New time slot is already booked for this doctor.",
        )
    except StoreException as e:
        raise _internal_error("rescheduling appointment", e)
    logger.info(f"Successfully updated appointment: {appointment.id}")
    return AppointmentResponse(
        message="Appointment updated successfully.", appointment=appointment
    )


@router.get("/doctors", response_model=DoctorListResponse)
async def list_doctors(
    doctor_registry: DoctorRegistry = Depends(get_doctor_registry),
):
    return DoctorListResponse(doctors=list(doctor_registry.names))
