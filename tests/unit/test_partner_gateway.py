"""Unit tests for partner adapters and the gateway's sweep and retry logic"""

import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from payja_gateway.domain.exceptions import PartnerUnavailableError, UnknownPartnerError
from payja_gateway.domain.models import (
    BalanceResult,
    DisbursementResult,
    EligibilityIdentity,
    EligibilityResult,
    PartnerKind,
)
from payja_gateway.infrastructure.clients.gateway import PartnerGateway
from payja_gateway.infrastructure.clients.partners import (
    BankPartnerAdapter,
    MpesaAdapter,
    PartnerAdapter,
    PartnerRegistry,
)
from tests.helpers import PHONE

IDENTITY = EligibilityIdentity(phone_number=PHONE, nuit="123456789", name="Joao Silva", national_id="110100123456A")


class ScriptedPartner(PartnerAdapter):
    """Answers after a delay with a fixed verdict, or fails"""

    kind = PartnerKind.BANK

    def __init__(self, code: str, delay: float = 0.0, eligible: bool = True, fail: bool = False, limit: float = 30000):
        super().__init__(code, f"Banco {code}", f"http://{code.lower()}.test", timeout=1.0)
        self.delay = delay
        self.eligible = eligible
        self.fail = fail
        self.limit = limit
        self.calls = 0
        self.cancelled = False

    async def check_eligibility(self, identity: EligibilityIdentity) -> EligibilityResult:
        self.calls += 1
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.fail:
            raise PartnerUnavailableError(self.code, "HTTP 503")
        return EligibilityResult(self.code, self.name, eligible=self.eligible, max_amount=self.limit)

    async def disburse(self, reference, amount, destination, nuit=None) -> DisbursementResult:
        raise NotImplementedError

    async def balance(self, phone: str) -> BalanceResult:
        raise NotImplementedError


@pytest.fixture
def gateway() -> PartnerGateway:
    return PartnerGateway(PartnerRegistry(), timeout=1.0, max_attempts=3, backoff_base=0)


async def test_sweep_prefers_priority_over_speed(gateway):
    slow_first = ScriptedPartner("A", delay=0.05)
    fast_second = ScriptedPartner("B", delay=0.0)

    outcome = await gateway.eligibility_sweep([slow_first, fast_second], IDENTITY)

    assert outcome.winner.partner_code == "A"
    assert [a.partner_code for a in outcome.attempts] == ["A"]


async def test_sweep_skips_ineligible_and_failing_partners(gateway):
    partners = [
        ScriptedPartner("A", fail=True),
        ScriptedPartner("B", eligible=False),
        ScriptedPartner("C", limit=25000),
    ]

    outcome = await gateway.eligibility_sweep(partners, IDENTITY)

    assert outcome.winner.partner_code == "C"
    assert outcome.winner.max_amount == 25000
    assert [(a.partner_code, a.responded) for a in outcome.attempts] == [("A", False), ("B", True), ("C", True)]
    assert not outcome.all_failed


async def test_sweep_survives_adapter_bug(gateway):
    class MalformedPartner(ScriptedPartner):
        async def check_eligibility(self, identity: EligibilityIdentity) -> EligibilityResult:
            raise TypeError("unexpected payload shape")

    outcome = await gateway.eligibility_sweep([MalformedPartner("BAD"), ScriptedPartner("GOOD")], IDENTITY)

    assert outcome.winner.partner_code == "GOOD"
    broken = outcome.attempts[0]
    assert broken.partner_code == "BAD"
    assert not broken.responded
    assert "TypeError" in broken.error


async def test_sweep_cancels_lower_priority_calls_after_winner(gateway):
    winner = ScriptedPartner("A")
    straggler = ScriptedPartner("B", delay=0.5)

    outcome = await gateway.eligibility_sweep([winner, straggler], IDENTITY)

    assert outcome.winner.partner_code == "A"
    assert straggler.cancelled


async def test_sweep_calls_partners_concurrently(gateway):
    partners = [ScriptedPartner(code, delay=0.2, eligible=False) for code in "ABC"]

    loop = asyncio.get_running_loop()
    started = loop.time()
    outcome = await gateway.eligibility_sweep(partners, IDENTITY)

    assert loop.time() - started < 0.5
    assert outcome.winner is None
    assert len(outcome.attempts) == 3


async def test_sweep_timeout_counts_as_failure():
    gateway = PartnerGateway(PartnerRegistry(), timeout=0.05)
    outcome = await gateway.eligibility_sweep([ScriptedPartner("A", delay=1.0)], IDENTITY)

    assert outcome.winner is None
    assert outcome.attempts[0].error == "timeout"
    assert outcome.all_failed


async def test_sweep_all_failed(gateway):
    outcome = await gateway.eligibility_sweep([ScriptedPartner("A", fail=True), ScriptedPartner("B", fail=True)], IDENTITY)

    assert outcome.winner is None
    assert outcome.all_failed


async def test_sweep_without_partners(gateway):
    outcome = await gateway.eligibility_sweep([], IDENTITY)

    assert outcome.winner is None
    assert outcome.all_failed


def _bank(handler) -> BankPartnerAdapter:
    return BankPartnerAdapter("GHW", "Banco GHW", "http://ghw.test", api_key="secret", transport=httpx.MockTransport(handler))


async def test_bank_adapter_eligibility_payload():
    seen: List[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/api/validacao/verificar"
        assert request.headers["x-api-key"] == "secret"
        return httpx.Response(200, json={"sucesso": True, "elegivel": True, "limite_aprovado": 40000})

    result = await _bank(handler).check_eligibility(IDENTITY)

    assert result.eligible
    assert result.max_amount == 40000
    assert seen[0]["telefone"] == "841234567"
    assert seen[0]["nuit"] == "123456789"


async def test_bank_adapter_not_eligible_reason():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sucesso": True, "elegivel": False, "motivo": "Conta bancaria bloqueada"})

    result = await _bank(handler).check_eligibility(IDENTITY)

    assert not result.eligible
    assert result.reason == "Conta bancaria bloqueada"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"erro": "down"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["unexpected"]),
    ],
)
async def test_bank_adapter_maps_failures(response):
    with pytest.raises(PartnerUnavailableError):
        await _bank(lambda request: response).check_eligibility(IDENTITY)


async def test_bank_adapter_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PartnerUnavailableError, match="network error"):
        await _bank(handler).check_eligibility(IDENTITY)


async def test_disburse_retries_then_succeeds(gateway):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(502)
        return httpx.Response(200, json={"sucesso": True, "desembolso": {"id": "DES-1", "valor": 5000}})

    result = await gateway.disburse(_bank(handler), "loan-1", 5000, PHONE, nuit="123456789")

    assert result.success
    assert result.transaction_id == "DES-1"
    assert result.attempts == 3


async def test_disburse_gives_up_after_max_attempts(gateway):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500)

    result = await gateway.disburse(_bank(handler), "loan-1", 5000, PHONE)

    assert not result.success
    assert result.attempts == 3
    assert calls["count"] == 3
    assert "HTTP 500" in result.error


async def test_disburse_refusal_is_not_retried(gateway):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"sucesso": False, "erro": "Saldo insuficiente para desembolso"})

    result = await gateway.disburse(_bank(handler), "loan-1", 5000, PHONE)

    assert not result.success
    assert result.error == "Saldo insuficiente para desembolso"
    assert calls["count"] == 1


async def test_disburse_backoff_is_exponential(monkeypatch):
    delays: List[float] = []

    async def fake_sleep(seconds: float, result: Optional[object] = None):
        delays.append(seconds)

    monkeypatch.setattr("payja_gateway.infrastructure.clients.gateway.asyncio.sleep", fake_sleep)
    gateway = PartnerGateway(PartnerRegistry(), max_attempts=4, backoff_base=0.5)

    await gateway.disburse(_bank(lambda request: httpx.Response(503)), "loan-1", 5000, PHONE)

    assert delays == [0.5, 1.0, 2.0]


async def test_mpesa_disbursement():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["input_CustomerMSISDN"] == "258841234567"
        return httpx.Response(201, json={"output_ResponseCode": "INS-0", "output_TransactionID": "MP123"})

    adapter = MpesaAdapter("MPESA", "M-Pesa", "http://mpesa.test", transport=httpx.MockTransport(handler))
    result = await adapter.disburse("loan-1", 1000, PHONE)

    assert result.success
    assert result.transaction_id == "MP123"


async def test_mobile_money_never_eligible():
    adapter = MpesaAdapter("MPESA", "M-Pesa", "http://mpesa.test")
    result = await adapter.check_eligibility(IDENTITY)
    assert not result.eligible


def test_registry_routes_phone_to_operator():
    registry = PartnerRegistry.with_operators()

    assert registry.for_phone("+258841234567").code == "MPESA"
    assert registry.for_phone("+258861234567").code == "EMOLA"
    assert registry.for_phone("+258821234567").code == "MKESH"
    with pytest.raises(UnknownPartnerError):
        registry.for_phone("+258891234567")


async def test_wallet_balance_inactive_when_operator_down():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    registry = PartnerRegistry.with_operators(transport=httpx.MockTransport(handler))
    balance = await PartnerGateway(registry).wallet_balance(PHONE)

    assert balance.operator == "MPESA"
    assert not balance.active
