from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from quotagate.client import QuotaClient, QuotaClientError, QuotaExhaustedError
from quotagate.config import ServiceConfig
from quotagate.models import SystemSettings
from quotagate.security import CredentialManager
from quotagate.service import create_app
from quotagate.store import MemoryStore


@pytest.fixture()
def http() -> Iterator[TestClient]:
    credentials = CredentialManager(signing_secret="client-secret", admin_secret="client-admin", bcrypt_rounds=4)
    app = create_app(
        ServiceConfig(),
        store=MemoryStore(settings=SystemSettings(default_quota=2)),
        credentials=credentials,
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def client(http: TestClient) -> QuotaClient:
    quota_client = QuotaClient(http=http)
    quota_client.register("writer@example.com", "correct horse", name="Writer")
    return quota_client


def test_register_and_login_store_the_token(http: TestClient, client: QuotaClient) -> None:
    assert client.token
    assert client.me()["email"] == "writer@example.com"

    other = QuotaClient(http=http)
    user = other.login("writer@example.com", "correct horse")
    assert user["name"] == "Writer"
    assert other.get_quota() == 2


def test_charge_keeps_the_unit_when_work_succeeds(client: QuotaClient) -> None:
    with client.charge() as remaining:
        assert remaining == 1

    assert client.get_quota() == 1


def test_charge_refunds_when_work_fails(client: QuotaClient) -> None:
    with pytest.raises(RuntimeError):
        with client.charge():
            raise RuntimeError("model call failed")

    assert client.get_quota() == 2


def test_summary_calls_are_free(client: QuotaClient) -> None:
    for _ in range(5):
        with client.charge("summary") as remaining:
            assert remaining == 2

    with pytest.raises(RuntimeError):
        with client.charge("summary"):
            raise RuntimeError("summary failed")

    assert client.get_quota() == 2


def test_exhaustion_is_raised_before_the_block_runs(client: QuotaClient) -> None:
    client.pre_consume()
    client.pre_consume()
    ran = []

    with pytest.raises(QuotaExhaustedError) as excinfo:
        with client.charge():
            ran.append(True)

    assert ran == []
    assert excinfo.value.status_code == 403
    assert client.get_quota() == 0
    assert client.refund() == 1


def test_errors_carry_the_service_message(http: TestClient) -> None:
    anonymous = QuotaClient(http=http)

    with pytest.raises(QuotaClientError) as missing_token:
        anonymous.get_quota()
    assert missing_token.value.status_code == 401

    with pytest.raises(QuotaClientError) as bad_login:
        anonymous.login("nobody@example.com", "whatever")
    assert bad_login.value.status_code == 401
    assert str(bad_login.value) == "Invalid email or password"

    anonymous.token = "forged"
    with pytest.raises(QuotaClientError) as forged:
        anonymous.get_quota()
    assert forged.value.status_code == 401
    assert not isinstance(forged.value, QuotaExhaustedError)
