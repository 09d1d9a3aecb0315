import json
import os
from decimal import Decimal
from typing import Callable, Generator, List

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("LOG_DIR", "./test-logs")

from camrent.config import Settings, reset_settings_cache  # noqa: E402

reset_settings_cache()

from camrent.auth import hash_password, issue_access_token  # noqa: E402
from camrent.database import Base, SessionLocal, engine  # noqa: E402
from camrent.models import InventoryItem, Profile, RoleEnum, User, UserRole  # noqa: E402
from camrent.mpesa import MpesaClient, get_mpesa_client  # noqa: E402
from services.accounts.app import app as accounts_app  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.inventory.app import app as inventory_app  # noqa: E402
from services.payments.app import app as payments_app  # noqa: E402
from services.reports.app import app as reports_app  # noqa: E402


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def accounts_client() -> Generator[TestClient, None, None]:
    with TestClient(accounts_app) as client:
        yield client


@pytest.fixture()
def inventory_client() -> Generator[TestClient, None, None]:
    with TestClient(inventory_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def payments_client() -> Generator[TestClient, None, None]:
    with TestClient(payments_app) as client:
        yield client


@pytest.fixture()
def reports_client() -> Generator[TestClient, None, None]:
    with TestClient(reports_app) as client:
        yield client


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    """Insert a user holding ``roles``, optionally with a profile."""

    counter = {"n": 0}

    def _make(email: str | None = None, roles=(RoleEnum.CUSTOMER,), full_name: str | None = "Test Person") -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            hashed_password=hash_password("Passw0rd!"),
        )
        for role in roles:
            user.roles.append(UserRole(role=role))
        if full_name:
            user.profile = Profile(
                full_name=full_name,
                phone_number=f"07120000{counter['n']:02d}",
                id_number=f"ID{counter['n']:05d}",
            )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_item(db_session) -> Callable[..., InventoryItem]:
    def _make(name: str = "Canon EOS R5", price: str = "1000.00", total: int = 2, available: int | None = None, **extra):
        item = InventoryItem(
            name=name,
            price_per_day=Decimal(price),
            total_quantity=total,
            available_quantity=total if available is None else available,
            **extra,
        )
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make


def auth_header(user: User) -> dict[str, str]:
    token = issue_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers_for() -> Callable[[User], dict[str, str]]:
    return auth_header


class GatewayRecorder:
    """Fake Daraja endpoints served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.stk_status = 200
        self.stk_body = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            return httpx.Response(self.stk_status, json=self.stk_body)
        return httpx.Response(404, json={"errorMessage": "Not found"})

    @property
    def stk_payloads(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("processrequest")]


def gateway_settings() -> Settings:
    return Settings(
        mpesa_base_url="https://sandbox.example.test",
        mpesa_consumer_key="key",
        mpesa_consumer_secret="secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        mpesa_callback_url="https://camrent.example.test/payments/callback?token=callback-token",
    )


@pytest.fixture()
def gateway() -> GatewayRecorder:
    return GatewayRecorder()


@pytest.fixture()
def mpesa_client(gateway) -> MpesaClient:
    return MpesaClient(gateway_settings(), transport=httpx.MockTransport(gateway.handler))


@pytest.fixture()
def fake_gateway(gateway, mpesa_client) -> Generator[GatewayRecorder, None, None]:
    payments_app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    yield gateway
    payments_app.dependency_overrides.pop(get_mpesa_client, None)
