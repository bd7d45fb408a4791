"""Tests for the account bootstrap script."""

import pytest

from gatehide.service.errors import WeakPasswordError
from gatehide.storage.models import Namespace
from scripts.bootstrap_admin import bootstrap_identity, validate_password

from tests.conftest import ADMIN_PASSWORD


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Sup3r-Secret-Pass", True),
        ("alllowercaseletters", False),
        ("Short1!", False),
        ("lowercase-and-123", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


async def test_creates_admin(runtime, memory_store):
    result = await bootstrap_identity(
        "root@example.com", "Sup3r-Secret-Pass", name="Root", runtime=runtime
    )

    assert result["status"] == "created"
    assert result["namespace"] == "admin"
    identity = memory_store.get_identity(Namespace.ADMIN, result["identity_id"])
    assert identity.name == "Root"
    login = await runtime.auth.login("root@example.com", "Sup3r-Secret-Pass")
    assert login.namespace is Namespace.ADMIN


async def test_existing_email_is_left_alone(runtime, test_admin):
    result = await bootstrap_identity("OPS@example.com", "Sup3r-Secret-Pass", runtime=runtime)

    assert result["status"] == "exists"
    assert result["identity_id"] == test_admin.id
    await runtime.auth.login("ops@example.com", ADMIN_PASSWORD)


async def test_email_taken_by_user_counts_as_existing(runtime, test_user):
    result = await bootstrap_identity("player@example.com", "Sup3r-Secret-Pass", runtime=runtime)
    assert result["status"] == "exists"
    assert result["namespace"] == "user"


async def test_dry_run_writes_nothing(runtime, memory_store):
    result = await bootstrap_identity(
        "root@example.com", "Sup3r-Secret-Pass", dry_run=True, runtime=runtime
    )
    assert result["status"] == "dry_run"
    assert memory_store.get_identity_by_email(Namespace.ADMIN, "root@example.com") is None


async def test_seed_standard_user(runtime):
    result = await bootstrap_identity(
        "player2@example.com", "Sup3r-Secret-Pass", namespace="user", runtime=runtime
    )
    assert result["namespace"] == "user"
    assert result["identity_id"] == 1


async def test_weak_password_surfaces_service_error(runtime):
    with pytest.raises(WeakPasswordError):
        await bootstrap_identity("root@example.com", "abc", runtime=runtime)
