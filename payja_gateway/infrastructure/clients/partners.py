"""HTTP adapters for partner banks and mobile money operators"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import PartnerUnavailableError, UnknownPartnerError
from payja_gateway.domain.models import (
    BalanceResult,
    DisbursementResult,
    EligibilityIdentity,
    EligibilityResult,
    PartnerKind,
)
from payja_gateway.domain.validators import detect_operator, national_number

logger = logging.getLogger(__name__)


def _msisdn(phone: str) -> str:
    """Operators expect 258XXXXXXXXX without the plus sign"""
    return "258" + national_number(phone)


def _to_float(value: Any) -> Optional[float]:
    """Parse amounts such as 15000, "15000.00" or "15000.00 MZN" """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).split()[0].replace(",", ""))
    except (ValueError, IndexError):
        return None


class PartnerAdapter(ABC):
    """Capabilities every partner exposes to the gateway"""

    kind: PartnerKind
    health_path = "/api/health"

    def __init__(
        self,
        code: str,
        name: str,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.code = code
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.partner_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call the partner and return its JSON object.

        Raises:
            PartnerUnavailableError: On timeout, HTTP errors, network errors, or
            a body that is not a JSON object
        """
        async with self._client() as client:
            try:
                response = await client.request(method, path, json=payload)
                response.raise_for_status()
                data = response.json()
            except httpx.TimeoutException as e:
                raise PartnerUnavailableError(self.code, f"timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise PartnerUnavailableError(self.code, f"HTTP {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise PartnerUnavailableError(self.code, f"network error: {e}") from e
            except ValueError as e:
                raise PartnerUnavailableError(self.code, f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PartnerUnavailableError(self.code, "unexpected response payload")
        return data

    @abstractmethod
    async def check_eligibility(self, identity: EligibilityIdentity) -> EligibilityResult:
        ...

    @abstractmethod
    async def disburse(
        self,
        reference: str,
        amount: float,
        destination: str,
        nuit: Optional[str] = None,
    ) -> DisbursementResult:
        ...

    @abstractmethod
    async def balance(self, phone: str) -> BalanceResult:
        ...

    async def test_connection(self) -> Dict[str, Any]:
        """Hit the health endpoint; returns the partner's own status payload"""
        return await self._request("GET", self.health_path)


class BankPartnerAdapter(PartnerAdapter):
    """Bank API with Portuguese payloads (validacao / desembolso)"""

    kind = PartnerKind.BANK
    eligibility_path = "/api/validacao/verificar"
    disbursement_path = "/api/desembolso/executar"

    async def check_eligibility(self, identity: EligibilityIdentity) -> EligibilityResult:
        payload = {
            "nuit": identity.nuit,
            "nome": identity.name,
            "telefone": national_number(identity.phone_number),
            "bi": identity.national_id,
        }
        if identity.requested_amount is not None:
            payload["valor_solicitado"] = identity.requested_amount

        data = await self._request("POST", self.eligibility_path, payload)

        eligible = bool(data.get("elegivel", data.get("eligible", False)))
        if not eligible:
            return EligibilityResult(
                partner_code=self.code,
                partner_name=self.name,
                eligible=False,
                max_amount=_to_float(data.get("limite_aprovado")),
                reason=data.get("motivo") or data.get("reason") or "Cliente nao elegivel",
            )

        return EligibilityResult(
            partner_code=self.code,
            partner_name=self.name,
            eligible=True,
            max_amount=_to_float(data.get("limite_aprovado", data.get("maxAmount"))),
            interest_rate=_to_float(data.get("taxa_juros", data.get("interestRate"))),
            max_term=data.get("prazo_maximo") or data.get("maxTerm"),
        )

    async def disburse(
        self,
        reference: str,
        amount: float,
        destination: str,
        nuit: Optional[str] = None,
    ) -> DisbursementResult:
        data = await self._request(
            "POST",
            self.disbursement_path,
            {
                "nuit": nuit,
                "valor": amount,
                "numero_emola": national_number(destination),
                "referencia_payja": reference,
                "descricao": "Desembolso de emprestimo PayJA",
            },
        )

        if not data.get("sucesso", data.get("success", False)):
            return DisbursementResult(
                partner_code=self.code,
                success=False,
                amount=amount,
                error=data.get("erro") or data.get("mensagem") or "Desembolso recusado",
            )

        desembolso = data.get("desembolso") or {}
        return DisbursementResult(
            partner_code=self.code,
            success=True,
            transaction_id=str(desembolso.get("id") or data.get("transactionId") or reference),
            amount=_to_float(desembolso.get("valor")) or amount,
        )

    async def balance(self, phone: str) -> BalanceResult:
        raise UnknownPartnerError(f"{self.code} does not expose wallet balances")


class MobileMoneyAdapter(PartnerAdapter):
    """Operators only move money; they never answer eligibility checks"""

    kind = PartnerKind.MOBILE_MONEY
    health_path = "/health"

    async def check_eligibility(self, identity: EligibilityIdentity) -> EligibilityResult:
        return EligibilityResult(
            partner_code=self.code,
            partner_name=self.name,
            eligible=False,
            reason="Operador nao suporta validacao de elegibilidade",
        )


class MpesaAdapter(MobileMoneyAdapter):
    async def disburse(self, reference, amount, destination, nuit=None) -> DisbursementResult:
        data = await self._request(
            "POST",
            "/ipg/v1x/b2cPayment",
            {
                "input_Amount": amount,
                "input_CustomerMSISDN": _msisdn(destination),
                "input_TransactionReference": reference,
                "input_ThirdPartyReference": f"LOAN-{reference}",
            },
        )
        if data.get("output_ResponseCode") != "INS-0":
            return DisbursementResult(
                partner_code=self.code,
                success=False,
                amount=amount,
                error=data.get("output_ResponseDesc") or "M-Pesa recusou a transferencia",
            )
        return DisbursementResult(
            partner_code=self.code,
            success=True,
            transaction_id=data.get("output_TransactionID"),
            amount=amount,
        )

    async def balance(self, phone: str) -> BalanceResult:
        data = await self._request("POST", "/ipg/v1x/queryBalance", {"input_CustomerMSISDN": _msisdn(phone)})
        return BalanceResult(
            operator=self.code,
            active=data.get("output_ResponseCode") == "INS-0",
            balance=_to_float(data.get("output_Balance")) or 0.0,
            account_name=data.get("output_CustomerName"),
        )


class EmolaAdapter(MobileMoneyAdapter):
    async def disburse(self, reference, amount, destination, nuit=None) -> DisbursementResult:
        data = await self._request(
            "POST",
            "/transfer/business-to-customer",
            {
                "phoneNumber": _msisdn(destination),
                "amount": amount,
                "currency": "MZN",
                "reference": reference,
                "description": f"Desembolso emprestimo {reference}",
            },
        )
        if data.get("status") != "SUCCESS":
            return DisbursementResult(
                partner_code=self.code,
                success=False,
                amount=amount,
                error=data.get("message") or "e-Mola recusou a transferencia",
            )
        return DisbursementResult(
            partner_code=self.code,
            success=True,
            transaction_id=data.get("transactionId"),
            amount=amount,
        )

    async def balance(self, phone: str) -> BalanceResult:
        data = await self._request("POST", "/account/balance", {"phoneNumber": _msisdn(phone)})
        return BalanceResult(
            operator=self.code,
            active=data.get("status") == "ACTIVE",
            balance=_to_float(data.get("balance")) or 0.0,
            account_name=data.get("accountHolder"),
        )


class MkeshAdapter(MobileMoneyAdapter):
    async def disburse(self, reference, amount, destination, nuit=None) -> DisbursementResult:
        data = await self._request(
            "POST",
            "/v1/disburse",
            {
                "msisdn": _msisdn(destination),
                "amount": amount,
                "transactionRef": reference,
                "narration": f"Emprestimo PayJA #{reference}",
            },
        )
        if not data.get("txnId"):
            return DisbursementResult(
                partner_code=self.code,
                success=False,
                amount=amount,
                error=data.get("message") or "mKesh recusou a transferencia",
            )
        return DisbursementResult(
            partner_code=self.code,
            success=True,
            transaction_id=data["txnId"],
            amount=amount,
        )

    async def balance(self, phone: str) -> BalanceResult:
        data = await self._request("POST", "/v1/balance", {"msisdn": _msisdn(phone)})
        return BalanceResult(
            operator=self.code,
            active=data.get("accountStatus") == "ACTIVE",
            balance=_to_float(data.get("availableBalance")) or 0.0,
            account_name=data.get("customerName"),
        )


class PartnerRegistry:
    """Adapters keyed by partner code"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport
        self._adapters: Dict[str, PartnerAdapter] = {}

    @classmethod
    def with_operators(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "PartnerRegistry":
        registry = cls(transport=transport)
        registry.register(MpesaAdapter("MPESA", "M-Pesa", settings.mpesa_api_url, transport=transport))
        registry.register(EmolaAdapter("EMOLA", "e-Mola", settings.emola_api_url, transport=transport))
        registry.register(MkeshAdapter("MKESH", "mKesh", settings.mkesh_api_url, transport=transport))
        return registry

    def register(self, adapter: PartnerAdapter) -> None:
        self._adapters[adapter.code] = adapter

    def get(self, code: str) -> PartnerAdapter:
        try:
            return self._adapters[code]
        except KeyError:
            raise UnknownPartnerError(f"No adapter registered for partner {code}")

    def bank(
        self,
        code: str,
        name: str,
        api_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PartnerAdapter:
        """Adapter for a configured bank row; registered adapters take precedence"""
        if code in self._adapters:
            return self._adapters[code]
        return BankPartnerAdapter(code, name, api_url, api_key=api_key, timeout=timeout, transport=self.transport)

    def for_phone(self, phone: str) -> PartnerAdapter:
        """Mobile money operator serving a phone number, by prefix"""
        operator = detect_operator(phone)
        if operator is None:
            raise UnknownPartnerError(f"No mobile money operator for {phone}")
        return self.get(operator)
