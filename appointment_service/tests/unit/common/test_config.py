import pytest
from pydantic import ValidationError

from booking.common.config import Settings

ENV_NAMES = (
    "DOCTORS",
    "APPOINTMENT_STORE",
    "APPOINTMENTS_TABLE",
    "AWS_ENDPOINT_URL",
    "STORE_CONNECT_TIMEOUT",
    "STORE_READ_TIMEOUT",
    "STORE_RETRY_ATTEMPTS",
    "STORE_RETRY_BACKOFF_SECONDS",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.doctor_names == ("Dr. Smith", "Dr. Johnson", "Dr. Williams")
    assert settings.appointment_store == "dynamodb"
    assert settings.appointments_table == "appointments"
    assert settings.aws_endpoint_url is None
    assert settings.store_retry_attempts == 3
    assert settings.log_level == "INFO"


def test_doctors_are_read_as_comma_separated_list(monkeypatch):
    monkeypatch.setenv("DOCTORS", " Dr. House , Dr. Grey,,")

    assert Settings(_env_file=None).doctor_names == ("Dr. House", "Dr. Grey")


def test_overrides(monkeypatch):
    monkeypatch.setenv("APPOINTMENT_STORE", "Memory")
    monkeypatch.setenv("AWS_ENDPOINT_URL", "http://localhost:4566")
    monkeypatch.setenv("STORE_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("STORE_READ_TIMEOUT", "1.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.appointment_store == "memory"
    assert settings.aws_endpoint_url == "http://localhost:4566"
    assert settings.store_retry_attempts == 5
    assert settings.store_read_timeout == 1.5
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "name, value",
    [
        ("STORE_RETRY_ATTEMPTS", "abc"),
        ("STORE_RETRY_ATTEMPTS", "0"),
        ("STORE_READ_TIMEOUT", "-1"),
        ("APPOINTMENT_STORE", "postgres"),
    ],
)
def test_invalid_values_are_rejected_per_field(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError) as excinfo:
        Settings(_env_file=None)

    assert excinfo.value.errors()[0]["loc"] == (name.lower(),)
