"""Shared fixtures for the intake gateway test suite."""

import base64
import json

import pytest
from cryptography.fernet import Fernet

from intake_gateway.adapters.collaborators import FileDeadLetterQueue
from intake_gateway.adapters.storage import InMemoryStorageAdapter
from intake_gateway.domain.guardrails import RetryPolicy
from intake_gateway.domain.models import CredentialKind, SourceConfig, Tenant
from intake_gateway.infrastructure.encryption import EncryptionService

WELLMEDR_SECRET = "wm-shared-secret-123"
OVERTIME_SECRET = "ot-shared-secret-456"
HEYFLOW_SECRET = "hf-shared-secret-789"
EONMEDS_USERNAME = "eonmeds_intake"
EONMEDS_PASSWORD = "correct-horse-battery"


def basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def cipher():
    """Encryption service with a throwaway key."""
    return EncryptionService(key=Fernet.generate_key())


@pytest.fixture
def storage():
    """Empty in-memory storage adapter."""
    return InMemoryStorageAdapter()


@pytest.fixture
def no_wait():
    """Retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, sleep=lambda seconds: None)


@pytest.fixture
def tenants(storage, cipher):
    """Three clinics: two statically bound, one reached through Basic auth."""
    wellmedr = storage.save_tenant(Tenant(id=1, subdomain="wellmedr", name="Wellmedr"))
    overtime = storage.save_tenant(Tenant(id=2, subdomain="ot", name="Overtime Men's Health"))
    eonmeds = storage.save_tenant(Tenant(
        id=3,
        subdomain="eonmeds",
        name="EONMeds",
        inbound_username=cipher.encrypt(EONMEDS_USERNAME),
        inbound_password=cipher.encrypt(EONMEDS_PASSWORD),
        patient_number_prefix="EON",
    ))
    return {"wellmedr": wellmedr, "ot": overtime, "eonmeds": eonmeds}


@pytest.fixture
def sources():
    """Source bindings used across pipeline and API tests."""
    return {
        "wellmedr": SourceConfig(
            name="wellmedr",
            tenant_subdomain="wellmedr",
            expected_tenant_id=1,
            secret=WELLMEDR_SECRET,
        ),
        "overtime": SourceConfig(
            name="overtime",
            tenant_subdomain="ot",
            secret=OVERTIME_SECRET,
        ),
        "heyflow": SourceConfig(
            name="heyflow",
            secret=HEYFLOW_SECRET,
            auth_kinds=list(CredentialKind),
        ),
    }


@pytest.fixture
def dead_letter_queue(tmp_path):
    return FileDeadLetterQueue(str(tmp_path / "dead_letters.jsonl"))
