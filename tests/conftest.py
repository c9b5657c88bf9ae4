import typing as t

import httpx
import pytest

from festgate.admission import AdmissionController
from festgate.auth import ADMIN, SCANNER, Actor, create_access_token
from festgate.gateway import MockPay
from festgate.infra.sql import Database, make_database
from festgate.model import otp
from festgate.model.orm import Registration
from festgate.model.store import RegistrationStore
from festgate.notifier import OutboxNotifier
from festgate.referral import FriendReferralGate
from festgate.workflow import PaymentWorkflow


@pytest.fixture
async def db(tmp_path) -> t.AsyncIterator[Database]:
    database = make_database(f"sqlite:///{tmp_path / 'festgate.db'}")
    yield database
    await database.dispose()


@pytest.fixture
async def store(db: Database) -> RegistrationStore:
    s = RegistrationStore(db)
    await s.create_schema()
    return s


@pytest.fixture
def otps(db: Database, store: RegistrationStore):
    # tables come from the store's schema
    return otp.new_store(db=db, backend="pg")


@pytest.fixture
def gateway() -> MockPay:
    return MockPay(secret="test-secret")


@pytest.fixture
def outbox() -> OutboxNotifier:
    return OutboxNotifier()


@pytest.fixture
def workflow(store, gateway, outbox) -> PaymentWorkflow:
    return PaymentWorkflow(store, gateway, outbox)


@pytest.fixture
def referrals(store, otps, outbox) -> FriendReferralGate:
    return FriendReferralGate(store, otps, outbox)


@pytest.fixture
def gate(store) -> AdmissionController:
    return AdmissionController(store)


@pytest.fixture
def admin() -> Actor:
    return Actor(username="admin", role=ADMIN)


@pytest.fixture
def scanner() -> Actor:
    return Actor(username="scanner-1", role=SCANNER)


def registration_data(**overrides: t.Any) -> dict[str, t.Any]:
    data: dict[str, t.Any] = {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9876543210",
        "college": "PSG Tech",
        "year": "2nd Year",
        "ticketQuantity": 1,
        "groupMembers": [],
    }
    data.update(overrides)
    return data


def member(n: int) -> dict[str, str]:
    return {
        "name": f"Member {n}",
        "email": f"member{n}@example.com",
        "college": "PSG Tech",
        "year": "1st Year",
    }


@pytest.fixture
def make_registration(workflow):
    async def _make(**overrides: t.Any) -> Registration:
        return await workflow.create_registration(
            registration_data(**overrides))
    return _make


@pytest.fixture
def paid_registration(workflow, admin):
    """Registration taken through manual proof and admin approval."""
    async def _paid(**overrides: t.Any) -> Registration:
        reg = await workflow.create_registration(
            registration_data(**overrides))
        await workflow.submit_manual_payment(reg.id, "UTR123456",
                                             "data:image/png;base64,AAAA")
        return await workflow.approve(reg.id, admin)
    return _paid


# ----------------------------
# HTTP
# ----------------------------
@pytest.fixture
async def client(store, otps, gateway, outbox) -> t.AsyncIterator[
        httpx.AsyncClient]:
    from festgate import server

    app = server.app
    app.dependency_overrides[server.get_store] = lambda: store
    app.dependency_overrides[server.get_otps] = lambda: otps
    app.dependency_overrides[server.get_gateway] = lambda: gateway
    app.dependency_overrides[server.get_notifier] = lambda: outbox
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(admin) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(admin)}"}


@pytest.fixture
def scanner_headers(scanner) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(scanner)}"}
