from abc import ABC, abstractmethod
from typing import List, Optional

from booking.common.dto import Appointment


class AppointmentRepositoryPort(ABC):
    @abstractmethod
    async def find_by_doctor_and_slot(
        self, doctor_name: str, time_slot: str
    ) -> Optional[Appointment]:
        pass

    @abstractmethod
    async def reserve(self, appointment: Appointment) -> Appointment:
        pass

    @abstractmethod
    async def release(
        self,
        patient_email: str,
        time_slot: str,
        request_token: Optional[str] = None,
    ) -> Optional[Appointment]:
        pass

    @abstractmethod
    async def transfer_slot(
        self,
        patient_email: str,
        from_time_slot: str,
        to_time_slot: str,
        request_token: Optional[str] = None,
    ) -> Appointment:
        pass

    @abstractmethod
    async def find_by_patient(self, patient_email: str) -> List[Appointment]:
        pass

    @abstractmethod
    async def find_by_doctor(self, doctor_name: str) -> List[Appointment]:
        pass
