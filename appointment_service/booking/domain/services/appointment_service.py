import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, TypeVar

from booking.common.dto import Appointment, Patient
from booking.domain.doctor_registry import DoctorRegistry
from booking.domain.exceptions import (
    AppointmentNotFoundException,
    InvalidDoctorException,
    MissingFieldException,
    TransientStoreException,
)
from booking.ports.appointment_repository import AppointmentRepositoryPort

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require(**fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise MissingFieldException(", ".join(missing))


class AppointmentService:
    def __init__(
        self,
        repository: AppointmentRepositoryPort,
        doctor_registry: DoctorRegistry,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.1,
    ):
        self.repository = repository
        self.doctor_registry = doctor_registry
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _with_retries(
        self, description: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except TransientStoreException:
                if attempt >= self.retry_attempts:
                    logger.error(
                        f"Giving up {description} after {attempt} attempts"
                    )
                    raise
                delay = self.retry_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f"Transient store failure {description}, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.retry_attempts})"
                )
                await asyncio.sleep(delay)
                attempt += 1

    def _check_doctor(self, doctor_name: str) -> None:
        if not self.doctor_registry.is_valid(doctor_name):
            logger.warning(f"Invalid doctor name: {doctor_name}")
            raise InvalidDoctorException(doctor_name)

    async def book(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        time_slot: Optional[str],
        doctor_name: Optional[str],
    ) -> Appointment:
        _require(
            first_name=first_name,
            last_name=last_name,
            email=email,
            time_slot=time_slot,
            doctor_name=doctor_name,
        )
        self._check_doctor(doctor_name)

        # One id per booking attempt, so a retried reserve recognises itself
        appointment = Appointment(
            id=str(uuid.uuid4()),
            patient=Patient(
                first_name=first_name, last_name=last_name, email=email
            ),
            time_slot=time_slot,
            doctor_name=doctor_name,
        )
        logger.info(
            f"Booking {doctor_name} at {time_slot} for {email}: {appointment.id}"
        )
        return await self._with_retries(
            "booking appointment",
            lambda: self.repository.reserve(appointment),
        )

    async def list_by_patient(self, email: Optional[str]) -> List[Appointment]:
        _require(email=email)
        appointments = await self._with_retries(
            "listing patient appointments",
            lambda: self.repository.find_by_patient(email),
        )
        # an empty result is reported as not found, unlike list_by_doctor
        if not appointments:
            raise AppointmentNotFoundException(email)
        return appointments

    async def list_by_doctor(
        self, doctor_name: Optional[str]
    ) -> List[Appointment]:
        _require(doctor_name=doctor_name)
        self._check_doctor(doctor_name)
        return await self._with_retries(
            "listing doctor appointments",
            lambda: self.repository.find_by_doctor(doctor_name),
        )

    async def cancel(
        self, email: Optional[str], time_slot: Optional[str]
    ) -> Appointment:
        _require(email=email, time_slot=time_slot)
        # One token per call, so a retry after a lost commit gets its outcome
        request_token = str(uuid.uuid4())
        released = await self._with_retries(
            "cancelling appointment",
            lambda: self.repository.release(
                email, time_slot, request_token=request_token
            ),
        )
        if released is None:
            logger.warning(f"No appointment to cancel: {email} at {time_slot}")
            raise AppointmentNotFoundException(email)
        return released

    async def reschedule(
        self,
        email: Optional[str],
        original_time_slot: Optional[str],
        new_time_slot: Optional[str],
    ) -> Appointment:
        _require(
            email=email,
            original_time_slot=original_time_slot,
            new_time_slot=new_time_slot,
        )
        request_token = str(uuid.uuid4())
        return await self._with_retries(
            "rescheduling appointment",
            lambda: self.repository.transfer_slot(
                email,
                original_time_slot,
                new_time_slot,
                request_token=request_token,
            ),
        )
