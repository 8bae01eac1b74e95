import logging
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from fastapi.concurrency import run_in_threadpool

from booking.common.dto import Appointment, Patient
from booking.domain.exceptions import (
    AppointmentNotFoundException,
    SlotTakenException,
    StoreException,
    TransientStoreException,
)
from booking.ports.appointment_repository import AppointmentRepositoryPort

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "InternalServerError",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ThrottlingException",
    "TransactionConflictException",
    "TransactionInProgressException",
}

TRANSIENT_CANCELLATION_CODES = {
    "ProvisionedThroughputExceeded",
    "ThrottlingError",
    "TransactionConflict",
}

CALLER_HANDLED_ERROR_CODES = {
    "IdempotentParameterMismatchException",
    "TransactionCanceledException",
}

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailed"

# outcome of a cancel or move, kept long enough to answer client retries
REQUEST_RECORD_TTL_SECONDS = 24 * 60 * 60


class DynamoDBAppointmentRepository(AppointmentRepositoryPort):
    """Appointments stored in a single DynamoDB table keyed by ``pk``/``sk``.

    Every appointment is written as two items in the same transaction:

    * the reservation, ``DOCTOR#<doctor>`` / ``SLOT#<slot>``, whose key is the
      uniqueness constraint for a doctor's slot;
    * the patient copy, ``PATIENT#<email>`` / ``SLOT#<slot>#DOCTOR#<doctor>``,
      so lookups by patient are consistent reads of the base table.

    Cancels and moves carrying a request token also write
    ``REQUEST#<token>`` / ``RESULT`` with the outcome, so a retry of a
    committed call returns that outcome instead of finding nothing.
    """

    def __init__(
        self,
        table_name: str = "appointments",
        endpoint_url: Optional[str] = None,
        connect_timeout: float = 2.0,
        read_timeout: float = 5.0,
        dynamodb=None,
    ):
        if dynamodb is None:
            # botocore retries are disabled, AppointmentService owns retries
            dynamodb = boto3.resource(
                "dynamodb",
                endpoint_url=endpoint_url,
                config=Config(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"total_max_attempts": 1, "mode": "standard"},
                ),
            )
        self.table = dynamodb.Table(table_name)
        self.client = self.table.meta.client
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @staticmethod
    def _reservation_key(doctor_name: str, time_slot: str) -> Dict[str, str]:
        return {"pk": f"DOCTOR#{doctor_name}", "sk": f"SLOT#{time_slot}"}

    @staticmethod
    def _patient_key(
        patient_email: str, time_slot: str, doctor_name: str
    ) -> Dict[str, str]:
        return {
            "pk": f"PATIENT#{patient_email}",
            "sk": f"SLOT#{time_slot}#DOCTOR#{doctor_name}",
        }

    @staticmethod
    def _attributes(appointment: Appointment) -> Dict[str, str]:
        return {
            "id": appointment.id,
            "first_name": appointment.patient.first_name,
            "last_name": appointment.patient.last_name,
            "patient_email": appointment.patient.email,
            "time_slot": appointment.time_slot,
            "doctor_name": appointment.doctor_name,
        }

    @staticmethod
    def _to_appointment(item: Dict[str, Any]) -> Appointment:
        return Appointment(
            id=item["id"],
            patient=Patient(
                first_name=item["first_name"],
                last_name=item["last_name"],
                email=item["patient_email"],
            ),
            time_slot=item["time_slot"],
            doctor_name=item["doctor_name"],
        )

    def _serialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._serializer.serialize(v) for k, v in item.items()}

    def _deserialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._deserializer.deserialize(v) for k, v in item.items()}

    def _reservation_put(self, appointment: Appointment) -> Dict[str, Any]:
        return {
            "Put": {
                "TableName": self.table.name,
                "Item": self._serialize(
                    {
                        **self._reservation_key(
                            appointment.doctor_name, appointment.time_slot
                        ),
                        **self._attributes(appointment),
                    }
                ),
                "ConditionExpression": "attribute_not_exists(pk)",
                "ReturnValuesOnConditionCheckFailure": "ALL_OLD",
            }
        }

    def _patient_put(self, appointment: Appointment) -> Dict[str, Any]:
        return {
            "Put": {
                "TableName": self.table.name,
                "Item": self._serialize(
                    {
                        **self._patient_key(
                            appointment.patient.email,
                            appointment.time_slot,
                            appointment.doctor_name,
                        ),
                        **self._attributes(appointment),
                    }
                ),
            }
        }

    def _deletes(self, appointment: Appointment) -> List[Dict[str, Any]]:
        # Both deletes only apply while the items still belong to this id
        condition = {
            "ConditionExpression": "#id = :id",
            "ExpressionAttributeNames": {"#id": "id"},
            "ExpressionAttributeValues": {":id": {"S": appointment.id}},
        }
        keys = [
            self._reservation_key(
                appointment.doctor_name, appointment.time_slot
            ),
            self._patient_key(
                appointment.patient.email,
                appointment.time_slot,
                appointment.doctor_name,
            ),
        ]
        return [
            {
                "Delete": {
                    "TableName": self.table.name,
                    "Key": self._serialize(key),
                    **condition,
                }
            }
            for key in keys
        ]

    @staticmethod
    def _request_key(request_token: str) -> Dict[str, str]:
        return {"pk": f"REQUEST#{request_token}", "sk": "RESULT"}

    def _request_record_put(
        self, request_token: str, appointment: Appointment
    ) -> Dict[str, Any]:
        return {
            "Put": {
                "TableName": self.table.name,
                "Item": self._serialize(
                    {
                        **self._request_key(request_token),
                        **self._attributes(appointment),
                        "expires_at": int(time.time())
                        + REQUEST_RECORD_TTL_SECONDS,
                    }
                ),
                "ConditionExpression": "attribute_not_exists(pk)",
            }
        }

    async def _completed_request(
        self, request_token: Optional[str]
    ) -> Optional[Appointment]:
        if request_token is None:
            return None
        response = await self._execute(
            self.table.get_item,
            f"looking up request {request_token}",
            Key=self._request_key(request_token),
            ConsistentRead=True,
        )
        if "Item" in response:
            logger.info(
                f"Request already completed by an earlier attempt: {request_token}"
            )
            return self._to_appointment(response["Item"])
        return None

    async def _transact(
        self,
        description: str,
        transact_items: List[Dict[str, Any]],
        request_token: Optional[str],
    ) -> None:
        kwargs: Dict[str, Any] = {"TransactItems": transact_items}
        if request_token is not None:
            kwargs["ClientRequestToken"] = request_token
        await self._execute(
            self.client.transact_write_items, description, **kwargs
        )

    async def _execute(
        self, operation: Callable[..., Dict[str, Any]], description: str, **kwargs
    ) -> Dict[str, Any]:
        try:
            return await run_in_threadpool(operation, **kwargs)
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code in CALLER_HANDLED_ERROR_CODES:
                raise
            if code in TRANSIENT_ERROR_CODES:
                logger.warning(f"Transient error while {description}: {code}")
                raise TransientStoreException(code) from e
            logger.error(
                f"Error {description}: {e.response['Error'].get('Message', code)}"
            )
            raise StoreException(code) from e
        except (
            ConnectTimeoutError,
            ReadTimeoutError,
            EndpointConnectionError,
        ) as e:
            logger.warning(f"Store unreachable while {description}: {e}")
            raise TransientStoreException(str(e)) from e
        except BotoCoreError as e:
            logger.error(f"Error {description}: {e}")
            raise StoreException(str(e)) from e

    @staticmethod
    def _cancellation_codes(error: ClientError) -> List[Optional[str]]:
        return [
            reason.get("Code")
            for reason in error.response.get("CancellationReasons", [])
        ]

    @staticmethod
    def _condition_failed(codes: List[Optional[str]], index: int) -> bool:
        return len(codes) > index and codes[index] == CONDITIONAL_CHECK_FAILED

    @staticmethod
    def _cancellation_failure(
        codes: List[Optional[str]], description: str
    ) -> StoreException:
        if any(code in TRANSIENT_CANCELLATION_CODES for code in codes):
            logger.warning(
                f"Transaction contention while {description}: {codes}"
            )
            return TransientStoreException(f"transaction cancelled: {codes}")
        logger.error(f"Transaction cancelled while {description}: {codes}")
        return StoreException(f"transaction cancelled: {codes}")

    async def _query_all(
        self, description: str, **kwargs
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        kwargs["ConsistentRead"] = True
        while True:
            response = await self._execute(self.table.query, description, **kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    async def _find_patient_appointment(
        self, patient_email: str, time_slot: str
    ) -> Optional[Appointment]:
        items = await self._query_all(
            f"looking up appointment of {patient_email} at {time_slot}",
            KeyConditionExpression="pk = :pk AND begins_with(sk, :prefix)",
            ExpressionAttributeValues={
                ":pk": f"PATIENT#{patient_email}",
                ":prefix": f"SLOT#{time_slot}#DOCTOR#",
            },
        )
        # the prefix is only a hint, slot tokens may themselves contain '#'
        matches = sorted(
            (item for item in items if item["time_slot"] == time_slot),
            key=lambda item: item["doctor_name"],
        )
        if not matches:
            return None
        return self._to_appointment(matches[0])

    async def find_by_doctor_and_slot(
        self, doctor_name: str, time_slot: str
    ) -> Optional[Appointment]:
        response = await self._execute(
            self.table.get_item,
            f"retrieving slot {time_slot} of {doctor_name}",
            Key=self._reservation_key(doctor_name, time_slot),
            ConsistentRead=True,
        )
        if "Item" in response:
            return self._to_appointment(response["Item"])
        return None

    async def reserve(self, appointment: Appointment) -> Appointment:
        description = (
            f"reserving {appointment.time_slot} with {appointment.doctor_name}"
        )
        logger.info(f"Attempting to create appointment: {appointment.id}")
        try:
            await self._execute(
                self.client.transact_write_items,
                description,
                TransactItems=[
                    self._reservation_put(appointment),
                    self._patient_put(appointment),
                ],
            )
        except ClientError as e:
            codes = self._cancellation_codes(e)
            if not self._condition_failed(codes, 0):
                raise self._cancellation_failure(codes, description) from e
            existing = e.response["CancellationReasons"][0].get("Item")
            if existing and self._deserialize(existing).get("id") == appointment.id:
                logger.info(
                    f"Appointment already created by an earlier attempt: {appointment.id}"
                )
                return appointment
            logger.warning(
                f"Slot already booked: {appointment.doctor_name} at {appointment.time_slot}"
            )
            raise SlotTakenException from e
        logger.info(f"Appointment created successfully: {appointment.id}")
        return appointment

    async def _outcome_of_earlier_attempt(
        self,
        error: ClientError,
        codes: List[Optional[str]],
        record_index: int,
        request_token: Optional[str],
    ) -> Optional[Appointment]:
        if request_token is None:
            return None
        code = error.response["Error"]["Code"]
        if code == "IdempotentParameterMismatchException" or self._condition_failed(
            codes, record_index
        ):
            return await self._completed_request(request_token)
        return None

    async def release(
        self,
        patient_email: str,
        time_slot: str,
        request_token: Optional[str] = None,
    ) -> Optional[Appointment]:
        earlier = await self._completed_request(request_token)
        if earlier is not None:
            return earlier
        appointment = await self._find_patient_appointment(
            patient_email, time_slot
        )
        if appointment is None:
            logger.info(
                f"Appointment not found: {patient_email} at {time_slot}"
            )
            return await self._completed_request(request_token)
        description = f"cancelling appointment {appointment.id}"
        transact_items = self._deletes(appointment)
        if request_token is not None:
            transact_items.append(
                self._request_record_put(request_token, appointment)
            )
        try:
            await self._transact(description, transact_items, request_token)
        except ClientError as e:
            codes = self._cancellation_codes(e)
            earlier = await self._outcome_of_earlier_attempt(
                e, codes, 2, request_token
            )
            if earlier is not None:
                return earlier
            if self._condition_failed(codes, 0) or self._condition_failed(
                codes, 1
            ):
                logger.info(
                    f"Appointment changed concurrently, nothing released: {appointment.id}"
                )
                return None
            raise self._cancellation_failure(codes, description) from e
        logger.info(f"Appointment deleted successfully: {appointment.id}")
        return appointment

    async def transfer_slot(
        self,
        patient_email: str,
        from_time_slot: str,
        to_time_slot: str,
        request_token: Optional[str] = None,
    ) -> Appointment:
        earlier = await self._completed_request(request_token)
        if earlier is not None:
            return earlier
        appointment = await self._find_patient_appointment(
            patient_email, from_time_slot
        )
        if appointment is None:
            earlier = await self._completed_request(request_token)
            if earlier is not None:
                return earlier
            logger.info(
                f"Appointment not found: {patient_email} at {from_time_slot}"
            )
            raise AppointmentNotFoundException
        if from_time_slot == to_time_slot:
            return appointment

        moved = appointment.model_copy(update={"time_slot": to_time_slot})
        description = f"moving appointment {appointment.id} to {to_time_slot}"
        transact_items = [
            *self._deletes(appointment),
            self._reservation_put(moved),
            self._patient_put(moved),
        ]
        if request_token is not None:
            transact_items.append(self._request_record_put(request_token, moved))
        try:
            await self._transact(description, transact_items, request_token)
        except ClientError as e:
            codes = self._cancellation_codes(e)
            earlier = await self._outcome_of_earlier_attempt(
                e, codes, 4, request_token
            )
            if earlier is not None:
                return earlier
            if self._condition_failed(codes, 0) or self._condition_failed(
                codes, 1
            ):
                logger.info(
                    f"Appointment changed concurrently: {appointment.id}"
                )
                raise AppointmentNotFoundException from e
            if self._condition_failed(codes, 2):
                logger.warning(
                    f"Slot already booked: {moved.doctor_name} at {to_time_slot}"
                )
                raise SlotTakenException from e
            raise self._cancellation_failure(codes, description) from e
        logger.info(f"Appointment updated successfully: {appointment.id}")
        return moved
