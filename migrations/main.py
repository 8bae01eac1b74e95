# migrations/main.py
import logging
import os

import boto3
from botocore.exceptions import ClientError

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

APPOINTMENTS_TABLE = os.getenv("APPOINTMENTS_TABLE", "appointments")


def _resource():
    return boto3.resource(
        "dynamodb", endpoint_url=os.getenv("AWS_ENDPOINT_URL")
    )


def create_tables(dynamodb=None, table_name: str = APPOINTMENTS_TABLE):
    dynamodb = dynamodb or _resource()

    # Appointments table. Reservation items (DOCTOR#/SLOT#) and patient
    # items (PATIENT#/SLOT#...#DOCTOR#) share the pk/sk key schema.
    try:
        table = dynamodb.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            ProvisionedThroughput={
                "ReadCapacityUnits": 5,
                "WriteCapacityUnits": 5,
            },
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceInUseException":
            logger.info(f"Table already exists: {table_name}")
            return
        raise

    # Wait for table to be created
    try:
        table.meta.client.get_waiter("table_exists").wait(TableName=table_name)
        logger.info(f"Table created successfully: {table_name}")
        # request records written by cancels and moves expire on their own
        table.meta.client.update_time_to_live(
            TableName=table_name,
            TimeToLiveSpecification={
                "Enabled": True,
                "AttributeName": "expires_at",
            },
        )
    except ClientError as e:
        logger.error(f"Error creating table {table_name}: {e}")
        raise


def delete_tables(dynamodb=None, table_name: str = APPOINTMENTS_TABLE):
    dynamodb = dynamodb or _resource()

    try:
        table = dynamodb.Table(table_name)
        table.delete()
        logger.info(f"Table deleted successfully: {table_name}")
    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceNotFoundException":
            logger.info(f"Table does not exist: {table_name}")
        else:
            logger.error(f"Error deleting table {table_name}: {e}")
            raise


if __name__ == "__main__":
    logger.info("Starting migration process...")

    # Uncomment the next line if you want to delete the existing table first
    # delete_tables()

    create_tables()
    logger.info("Migration process completed")
