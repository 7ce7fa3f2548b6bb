"""Pytest fixtures for testing"""

from datetime import timedelta
from typing import Callable, Generator, List

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from mock_bank.server import app as mock_bank_app
from payja_gateway.api.dependencies import get_partner_registry, get_session_factory, get_sms_client
from payja_gateway.api.main import create_app
from payja_gateway.domain.models import Customer, LoanRecord, LoanStatus
from payja_gateway.infrastructure.clients.partners import PartnerRegistry
from payja_gateway.infrastructure.database.models import Base, BankPartner
from payja_gateway.infrastructure.database.models import Customer as CustomerRow
from payja_gateway.infrastructure.database.session import get_db

from tests.helpers import NOW, PHONE, FakeSmsClient, TestingSessionLocal, engine


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sms() -> FakeSmsClient:
    return FakeSmsClient()


@pytest.fixture
def bank_transport() -> httpx.AsyncBaseTransport:
    """Partner HTTP calls served in-process by the mock bank"""
    return httpx.ASGITransport(app=mock_bank_app)


@pytest.fixture
def partner_transport(bank_transport) -> httpx.AsyncBaseTransport:
    """Override in a test module to swap partner behaviour"""
    return bank_transport


@pytest.fixture
def client(db: Session, sms: FakeSmsClient, partner_transport) -> TestClient:
    """Create FastAPI test client with test database, fake SMS and in-process partners"""
    app = create_app(create_tables=False)

    def override_get_db():
        request_db = TestingSessionLocal()
        try:
            yield request_db
        finally:
            request_db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_sms_client] = lambda: sms
    app.dependency_overrides[get_partner_registry] = lambda: PartnerRegistry.with_operators(transport=partner_transport)
    return TestClient(app)


@pytest.fixture
def add_partner(db: Session) -> Callable[..., BankPartner]:
    def _add(code: str = "GHW", name: str = "Banco GHW", priority: int = 1, **extra) -> BankPartner:
        partner = BankPartner(
            code=code,
            name=name,
            kind=extra.pop("kind", "BANK"),
            api_url=extra.pop("api_url", f"http://{code.lower()}.bank.test"),
            priority=priority,
            **extra,
        )
        db.add(partner)
        db.commit()
        return partner

    return _add


@pytest.fixture
def registered_customer(db: Session) -> CustomerRow:
    """Verified customer whose bank is the mock bank"""
    row = CustomerRow(
        phone_number=PHONE,
        nuit="123456789",
        name="Joao Silva",
        national_id="110100123456A",
        verified=True,
        profession="Funcionario Privado",
        salary=25000,
        salary_bank="Banco GHW",
        bank_code="GHW",
        credit_limit=40000,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def customer() -> Customer:
    return Customer(
        phone_number=PHONE,
        name="Joao Silva",
        nuit="123456789",
        verified=True,
        profession="Funcionario Privado",
        salary=25000,
        credit_limit=40000,
    )


@pytest.fixture
def completed_loans() -> List[LoanRecord]:
    """Three repaid loans spread over the last year"""
    return [
        LoanRecord(
            loan_id=f"old-{i}",
            amount=5000,
            term_months=3,
            status=LoanStatus.COMPLETED,
            created_at=NOW - timedelta(days=90 * (i + 1)),
        )
        for i in range(3)
    ]
