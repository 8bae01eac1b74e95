from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Patient(CamelModel):
    first_name: str
    last_name: str
    email: str


class Appointment(CamelModel):
    id: str
    patient: Patient
    time_slot: str
    doctor_name: str


class BookAppointmentRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    time_slot: Optional[str] = None
    doctor_name: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "firstName": "Jane",
                    "lastName": "Doe",
                    "email": "jane@x.com",
                    "timeSlot": "2024-01-01T09:00",
                    "doctorName": "Dr. Smith",
                }
            ]
        },
    )


class CancelAppointmentRequest(CamelModel):
    email: Optional[str] = None
    time_slot: Optional[str] = None


class RescheduleAppointmentRequest(CamelModel):
    email: Optional[str] = None
    original_time_slot: Optional[str] = None
    new_time_slot: Optional[str] = None


class AppointmentResponse(BaseModel):
    message: str
    appointment: Appointment


class AppointmentListResponse(BaseModel):
    appointments: List[Appointment]


class DoctorListResponse(BaseModel):
    doctors: List[str]


class MessageResponse(BaseModel):
    message: str
