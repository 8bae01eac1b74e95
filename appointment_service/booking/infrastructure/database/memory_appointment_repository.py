import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from booking.common.dto import Appointment
from booking.domain.exceptions import (
    AppointmentNotFoundException,
    SlotTakenException,
)
from booking.ports.appointment_repository import AppointmentRepositoryPort

logger = logging.getLogger(__name__)

SlotKey = Tuple[str, str]

MAX_REMEMBERED_REQUESTS = 1024


class InMemoryAppointmentRepository(AppointmentRepositoryPort):
    """Process-local store for development and tests.

    Writes to a (doctor_name, time_slot) pair hold that pair's lock; a
    transfer holds both pairs' locks, always taken in sorted order. A lock
    lives only while some operation is using or waiting for it.
    """

    def __init__(self) -> None:
        self._appointments: Dict[SlotKey, Appointment] = {}
        self._locks: Dict[SlotKey, asyncio.Lock] = {}
        self._lock_users: Dict[SlotKey, int] = {}
        self._completed: "OrderedDict[str, Appointment]" = OrderedDict()

    @asynccontextmanager
    async def _slot_lock(self, key: SlotKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _read(self, key: SlotKey) -> Optional[Appointment]:
        return self._appointments.get(key)

    def _remember(self, request_token: Optional[str], result: Appointment) -> None:
        if request_token is None:
            return
        self._completed[request_token] = result
        if len(self._completed) > MAX_REMEMBERED_REQUESTS:
            self._completed.popitem(last=False)

    def _find_for_patient(
        self, patient_email: str, time_slot: str
    ) -> Optional[Appointment]:
        matches = sorted(
            (
                a
                for a in self._appointments.values()
                if a.patient.email == patient_email and a.time_slot == time_slot
            ),
            key=lambda a: a.doctor_name,
        )
        return matches[0] if matches else None

    async def find_by_doctor_and_slot(
        self, doctor_name: str, time_slot: str
    ) -> Optional[Appointment]:
        return self._appointments.get((doctor_name, time_slot))

    async def reserve(self, appointment: Appointment) -> Appointment:
        key = (appointment.doctor_name, appointment.time_slot)
        async with self._slot_lock(key):
            existing = await self._read(key)
            if existing is not None:
                if existing.id == appointment.id:
                    return existing
                logger.warning(
                    f"Slot already booked: {appointment.doctor_name} at {appointment.time_slot}"
                )
                raise SlotTakenException
            self._appointments[key] = appointment
        logger.info(f"Appointment created successfully: {appointment.id}")
        return appointment

    async def release(
        self,
        patient_email: str,
        time_slot: str,
        request_token: Optional[str] = None,
    ) -> Optional[Appointment]:
        if request_token in self._completed:
            return self._completed[request_token]
        found = self._find_for_patient(patient_email, time_slot)
        if found is None:
            return None
        key = (found.doctor_name, found.time_slot)
        async with self._slot_lock(key):
            current = await self._read(key)
            if current is None or current.id != found.id:
                return None
            del self._appointments[key]
            self._remember(request_token, current)
        logger.info(f"Appointment deleted successfully: {found.id}")
        return current

    async def transfer_slot(
        self,
        patient_email: str,
        from_time_slot: str,
        to_time_slot: str,
        request_token: Optional[str] = None,
    ) -> Appointment:
        if request_token in self._completed:
            return self._completed[request_token]
        found = self._find_for_patient(patient_email, from_time_slot)
        if found is None:
            raise AppointmentNotFoundException
        if from_time_slot == to_time_slot:
            return found

        source = (found.doctor_name, from_time_slot)
        target = (found.doctor_name, to_time_slot)
        first, second = sorted((source, target))
        async with self._slot_lock(first), self._slot_lock(second):
            current = await self._read(source)
            if current is None or current.id != found.id:
                raise AppointmentNotFoundException
            if await self._read(target) is not None:
                logger.warning(
                    f"Slot already booked: {found.doctor_name} at {to_time_slot}"
                )
                raise SlotTakenException
            moved = current.model_copy(update={"time_slot": to_time_slot})
            del self._appointments[source]
            self._appointments[target] = moved
            self._remember(request_token, moved)
        logger.info(f"Appointment updated successfully: {moved.id}")
        return moved

    async def find_by_patient(self, patient_email: str) -> List[Appointment]:
        return sorted(
            (
                a
                for a in self._appointments.values()
                if a.patient.email == patient_email
            ),
            key=lambda a: (a.time_slot, a.doctor_name),
        )

    async def find_by_doctor(self, doctor_name: str) -> List[Appointment]:
        return sorted(
            (
                a
                for a in self._appointments.values()
                if a.doctor_name == doctor_name
            ),
            key=lambda a: a.time_slot,
        )
