"""Integration tests for API endpoints"""

import uuid
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from payja_gateway.infrastructure.clients.gateway import PartnerGateway
from payja_gateway.infrastructure.database.models import BankPartner, Loan
from payja_gateway.infrastructure.database.models import Customer as CustomerRow
from tests.helpers import PHONE

REGISTRATION_INPUTS = [
    "1",  # Iniciar registro
    "123456789",  # NUIT
    "Joao Silva",
    "110100123456A",  # BI
    "15/03/2020",
    "15/03/2030",
    "2",  # Funcionario Privado
    "25000",
    "1",  # BCI
]


def start(client: TestClient, flow: str = "REGISTRATION", phone: str = PHONE) -> dict:
    response = client.post("/session", json={"phoneNumber": phone, "flow": flow})
    assert response.status_code == 200
    return response.json()


def send(client: TestClient, session_id: str, user_input: str, request_id: Optional[str] = None, fresh: bool = True):
    """Each keystroke carries its own request id unless fresh=False"""
    if request_id is None and fresh:
        request_id = uuid.uuid4().hex
    body = {"sessionId": session_id, "userInput": user_input}
    if request_id is not None:
        body["requestId"] = request_id
    return client.post("/continue", json=body)


def reply(client: TestClient, session_id: str, user_input: str, request_id: Optional[str] = None, fresh: bool = True) -> str:
    response = send(client, session_id, user_input, request_id, fresh)
    assert response.status_code == 200, response.text
    return response.json()["message"]


def register_until_confirm(client: TestClient, sms) -> str:
    session_id = start(client)["sessionId"]
    message = ""
    for user_input in REGISTRATION_INPUTS:
        message = reply(client, session_id, user_input)
    assert "Codigo SMS enviado" in message

    message = reply(client, session_id, sms.last_code(PHONE))
    assert message.startswith("CON CONFIRME SEUS DADOS")
    return session_id


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "payja_ussd_requests_total" in response.text


def test_request_id_header_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert response.headers["X-Request-ID"] == "abc-123"


def test_start_session_shows_welcome(client: TestClient):
    data = start(client)

    assert data["sessionId"]
    assert data["message"].startswith("CON BEM-VINDO AO REGISTRO PayJA")


def test_start_session_invalid_phone(client: TestClient):
    response = client.post("/session", json={"phoneNumber": "123456789"})
    assert response.status_code == 422


def test_start_session_resumes_active_session(client: TestClient):
    first = start(client)
    reply(client, first["sessionId"], "1")

    second = start(client)

    assert second["sessionId"] == first["sessionId"]
    assert "NUIT" in second["message"]


def test_full_registration_through_partner_bank(client: TestClient, sms, add_partner, db):
    """Known customer at the mock bank is registered with the bank's limit"""
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = register_until_confirm(client, sms)

    message = reply(client, session_id, "1")

    assert message.startswith("END REGISTRO APROVADO")
    assert "Banco: Banco GHW" in message
    assert "40000 MZN" in message

    db.expire_all()
    row = db.query(CustomerRow).filter_by(phone_number=PHONE).one()
    assert row.verified is True
    assert row.bank_code == "GHW"
    assert row.salary_bank == "Banco GHW"
    assert row.credit_limit == 40000
    assert row.profession == "Funcionario Privado"

    # Approval SMS delivered after the response
    assert "Registro aprovado" in sms.sent[-1][1]


def test_registration_rejects_wrong_code(client: TestClient, sms):
    session_id = start(client)["sessionId"]
    for user_input in REGISTRATION_INPUTS:
        reply(client, session_id, user_input)

    wrong = "000000" if sms.last_code(PHONE) != "000000" else "111111"
    message = reply(client, session_id, wrong)

    assert message.startswith("CON Codigo incorreto ou expirado.")


def test_registration_sms_failure_ends_session(client: TestClient, sms):
    session_id = start(client)["sessionId"]
    sms.fail = True
    message = ""
    for user_input in REGISTRATION_INPUTS:
        message = reply(client, session_id, user_input)

    assert message.startswith("END Nao foi possivel enviar o codigo SMS")


def test_registration_unknown_customer_not_eligible(client: TestClient, sms, add_partner, db):
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = start(client)["sessionId"]
    inputs = list(REGISTRATION_INPUTS)
    inputs[1] = "555555555"
    for user_input in inputs:
        reply(client, session_id, user_input)
    reply(client, session_id, sms.last_code(PHONE))

    message = reply(client, session_id, "1")

    assert message.startswith("END Registro nao aprovado")
    db.expire_all()
    assert db.query(CustomerRow).count() == 0


def test_registration_without_partners_reports_unavailable(client: TestClient, sms):
    session_id = register_until_confirm(client, sms)

    message = reply(client, session_id, "1")

    assert message.startswith("END Nenhum banco parceiro disponivel")


def test_registered_customer_dialing_again(client: TestClient, registered_customer):
    data = start(client)

    assert data["message"].startswith("END Ola Joao Silva!")
    assert "ja esta registrado" in data["message"]


def test_double_confirm_runs_sweep_once(client: TestClient, sms, add_partner, db):
    """Gateway retrying the final keystroke gets the stored answer"""
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = register_until_confirm(client, sms)

    first = reply(client, session_id, "1", fresh=False)
    second = reply(client, session_id, "1", fresh=False)

    assert first == second
    db.expire_all()
    assert db.query(CustomerRow).count() == 1
    partner = db.query(BankPartner).filter_by(code="GHW").one()
    assert partner.total_requests == 1


def test_request_id_replay_returns_cached_response(client: TestClient):
    session_id = start(client)["sessionId"]

    first = reply(client, session_id, "1", request_id="req-1")
    replayed = reply(client, session_id, "1", request_id="req-1")
    # New request id: processed as fresh input at the NUIT prompt
    fresh = reply(client, session_id, "1", request_id="req-2")

    assert first == replayed
    assert "NUIT" in first
    assert fresh.startswith("CON NUIT invalido")


def test_invalid_input_keeps_state(client: TestClient):
    session_id = start(client)["sessionId"]
    reply(client, session_id, "1")

    message = reply(client, session_id, "12345")

    assert message.startswith("CON NUIT invalido. Deve ter 9 digitos.")
    assert reply(client, session_id, "123456789").startswith("CON Digite seu nome completo")


def test_continue_unknown_session(client: TestClient):
    response = send(client, "does-not-exist", "1")
    assert response.status_code == 404


def test_continue_finished_session(client: TestClient):
    session_id = start(client)["sessionId"]
    assert reply(client, session_id, "2") == "END Registro cancelado."

    # Same final input is a replay, anything else is refused
    assert reply(client, session_id, "2") == "END Registro cancelado."
    assert send(client, session_id, "1").status_code == 410


def test_unregistered_caller_on_loan_menu(client: TestClient):
    data = start(client, flow="LOAN_REQUEST")

    assert data["message"].startswith("END Voce nao esta registrado.")
    assert "*899#" in data["message"]


def test_loan_request_approved_and_disbursed(client: TestClient, sms, add_partner, registered_customer, db):
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]

    assert reply(client, session_id, "1").startswith("CON Digite o valor desejado")
    assert reply(client, session_id, "10000").startswith("CON Escolha o prazo")
    confirm = reply(client, session_id, "1")
    assert "Total a pagar: 11500 MZN" in confirm

    message = reply(client, session_id, "1")

    assert message.startswith("END EMPRESTIMO APROVADO!")
    assert "Ref: DES-" in message

    db.expire_all()
    loan = db.query(Loan).filter_by(customer_phone=PHONE).one()
    assert loan.status == "DISBURSED"
    assert loan.disbursement_reference.startswith("DES-")
    assert loan.scoring.decision == "APPROVED"
    assert "aprovado e desembolsado" in sms.sent[-1][1]


def test_failed_loan_pipeline_does_not_block_customer(
    client: TestClient, add_partner, registered_customer, db, monkeypatch
):
    add_partner("GHW", "Banco GHW", priority=1)

    async def broken_disburse(self, *args, **kwargs):
        raise RuntimeError("partner exploded")

    monkeypatch.setattr(PartnerGateway, "disburse", broken_disburse)
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]
    for user_input in ["1", "10000", "1"]:
        reply(client, session_id, user_input)

    assert reply(client, session_id, "1") == "END Erro ao processar. Tente novamente mais tarde."

    db.expire_all()
    failed = db.query(Loan).filter_by(customer_phone=PHONE).one()
    assert failed.status == "REJECTED"
    assert failed.rejected_reason == "Processing failed: RuntimeError"

    monkeypatch.undo()
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]
    for user_input in ["1", "10000", "1"]:
        reply(client, session_id, user_input)

    assert reply(client, session_id, "1").startswith("END EMPRESTIMO APROVADO!")


def test_loan_confirm_repeating_term_key_without_request_ids(client: TestClient, add_partner, registered_customer, db):
    """Choosing term 1 and then confirming with 1 are two keystrokes"""
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]

    reply(client, session_id, "1", fresh=False)
    reply(client, session_id, "10000", fresh=False)
    confirm = reply(client, session_id, "1", fresh=False)
    assert confirm.startswith("CON CONFIRMAR EMPRESTIMO")

    message = reply(client, session_id, "1", fresh=False)

    assert message.startswith("END EMPRESTIMO APROVADO!")
    db.expire_all()
    assert db.query(Loan).filter_by(customer_phone=PHONE).one().status == "DISBURSED"


def test_loan_amount_above_limit(client: TestClient, registered_customer):
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]
    reply(client, session_id, "1")

    message = reply(client, session_id, "50000")

    assert message.startswith("CON Valor excede seu limite de 40000 MZN.")


def test_public_employee_with_active_loan_rejected(client: TestClient, registered_customer, add_partner, db):
    add_partner("GHW", "Banco GHW", priority=1)
    registered_customer.profession = "Funcionario Publico"
    db.add(Loan(customer_phone=PHONE, amount=5000, term_months=3, status="ACTIVE"))
    db.commit()

    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]
    for user_input in ["1", "5000", "1"]:
        reply(client, session_id, user_input)
    message = reply(client, session_id, "1")

    assert message.startswith("END EMPRESTIMO NAO APROVADO")
    assert "ativo" in message

    db.expire_all()
    new_loan = db.query(Loan).filter(Loan.customer_phone == PHONE, Loan.status == "REJECTED").one()
    assert new_loan.scoring.final_score is None


def test_loan_status_screen(client: TestClient, registered_customer, db):
    db.add(Loan(customer_phone=PHONE, amount=5000, term_months=3, status="COMPLETED"))
    db.commit()
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]

    message = reply(client, session_id, "2")

    assert message.startswith("END SEUS EMPRESTIMOS:")
    assert "5000 MZN - 3m - COMPLETED" in message


def test_loan_history_endpoint(client: TestClient, sms, add_partner, registered_customer):
    add_partner("GHW", "Banco GHW", priority=1)
    session_id = start(client, flow="LOAN_REQUEST")["sessionId"]
    for user_input in ["1", "8000", "2", "1"]:
        reply(client, session_id, user_input)

    response = client.get("/v1/loans/history", params={"phone_number": "841234567"})

    assert response.status_code == 200
    data = response.json()
    assert data["phone_number"] == PHONE
    assert len(data["loans"]) == 1
    loan = data["loans"][0]
    assert loan["amount"] == 8000
    assert loan["term_months"] == 6
    assert loan["decision"] == "APPROVED"
    assert loan["final_score"] is not None


def test_loan_history_invalid_phone(client: TestClient):
    response = client.get("/v1/loans/history", params={"phone_number": "abc"})
    assert response.status_code == 422


def test_loan_plan_endpoint(client: TestClient, registered_customer, db):
    loan = Loan(customer_phone=PHONE, amount=1000, term_months=3, status="DISBURSED")
    db.add(loan)
    db.commit()

    response = client.get(f"/v1/loans/{loan.id}/plan")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1150.0
    assert data["interest_rate"] == 15.0
    assert [i["amount"] for i in data["installments"]] == [383.33, 383.33, 383.34]


def test_loan_plan_unknown_loan(client: TestClient):
    assert client.get("/v1/loans/missing/plan").status_code == 404


def test_partner_listing_and_connection_test(client: TestClient, add_partner):
    add_partner("GHW", "Banco GHW", priority=1)
    add_partner("BCI", "BCI", priority=2, active=False)

    response = client.post("/v1/partners/GHW/test")
    assert response.status_code == 200
    assert response.json()["success"] is True

    partners = client.get("/v1/partners").json()["partners"]
    assert [p["code"] for p in partners] == ["GHW", "BCI"]
    assert partners[0]["last_health_status"] == "UP"
    assert partners[1]["active"] is False


def test_partner_connection_unknown_code(client: TestClient):
    assert client.post("/v1/partners/NOPE/test").status_code == 404


@pytest.mark.parametrize("phone", ["841234567", "+258861234567"])
def test_wallet_balance_operator_unreachable(client: TestClient, phone):
    """The in-process mock bank does not implement operator APIs"""
    response = client.get(f"/v1/wallets/{phone}/balance")

    assert response.status_code == 200
    data = response.json()
    assert data["active"] is False


def test_wallet_balance_unknown_operator(client: TestClient):
    assert client.get("/v1/wallets/891234567/balance").status_code == 404
