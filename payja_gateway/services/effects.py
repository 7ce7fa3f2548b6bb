"""Executes the commands flows emit: SMS codes, partner sweeps, credit decisions"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import UnknownPartnerError
from payja_gateway.domain.flow import (
    Command,
    FinalizeRegistration,
    FlowContext,
    LoanOutcome,
    ProcessLoan,
    RegistrationOutcome,
    SendVerificationCode,
    VerifyCode,
)
from payja_gateway.domain.models import (
    CandidateLoan,
    Customer,
    Decision,
    DisbursementResult,
    EligibilityIdentity,
    LoanStatus,
)
from payja_gateway.domain.scoring import make_credit_decision
from payja_gateway.infrastructure.clients.gateway import PartnerGateway
from payja_gateway.infrastructure.clients.partners import PartnerAdapter, PartnerRegistry
from payja_gateway.infrastructure.database.models import BankPartner
from payja_gateway.infrastructure.database.repositories import (
    CustomerRepository,
    LoanRepository,
    PartnerRepository,
)
from payja_gateway.infrastructure.observability.logging import log_decision
from payja_gateway.infrastructure.observability.metrics import record_decision
from payja_gateway.services.verification import VerificationService

logger = logging.getLogger(__name__)


def adapter_for(registry: PartnerRegistry, partner: BankPartner) -> PartnerAdapter:
    return registry.bank(
        partner.code,
        partner.name,
        partner.api_url,
        api_key=partner.api_key,
        timeout=partner.timeout_seconds,
    )


class CommandExecutor:
    """Performs the I/O a flow asked for and returns the result its resume() expects"""

    def __init__(
        self,
        db: Session,
        gateway: PartnerGateway,
        verification: VerificationService,
    ):
        self.db = db
        self.gateway = gateway
        self.verification = verification
        self.customers = CustomerRepository(db)
        self.loans = LoanRepository(db)
        self.partners = PartnerRepository(db)

    async def execute(self, command: Command, ctx: FlowContext) -> Any:
        if isinstance(command, SendVerificationCode):
            return await self.verification.send_code(command.phone_number, ctx.now)
        if isinstance(command, VerifyCode):
            return self.verification.verify(command.phone_number, command.code, ctx.now)
        if isinstance(command, FinalizeRegistration):
            return await self.finalize_registration(command)
        if isinstance(command, ProcessLoan):
            return await self.process_loan(command, ctx)
        raise ValueError(f"Unknown command {command!r}")

    async def finalize_registration(self, command: FinalizeRegistration) -> RegistrationOutcome:
        """
        Sweep the active partners for the first one that knows the customer.

        The customer row is only written for a winner, and is left uncommitted
        so it lands together with the session's final state.
        """
        fields = command.fields
        rows = self.partners.active_banks()
        adapters = [adapter_for(self.gateway.registry, row) for row in rows]
        identity = EligibilityIdentity(
            phone_number=command.phone_number,
            nuit=fields.nuit,
            name=fields.name,
            national_id=fields.national_id,
        )

        sweep = await self.gateway.eligibility_sweep(adapters, identity)
        for attempt in sweep.attempts:
            self.partners.record_attempt(attempt.partner_code, attempt.responded)

        winner = sweep.winner
        if winner is None:
            return RegistrationOutcome(sweep=sweep, registered=False)

        limit = winner.max_amount if winner.max_amount is not None else settings.default_bank_limit
        self.customers.upsert_verified(
            command.phone_number,
            fields,
            bank_code=winner.partner_code,
            salary_bank=winner.partner_name,
            credit_limit=limit,
        )
        return RegistrationOutcome(
            sweep=sweep,
            registered=True,
            bank_name=winner.partner_name,
            bank_code=winner.partner_code,
            credit_limit=limit,
        )

    async def process_loan(self, command: ProcessLoan, ctx: FlowContext) -> LoanOutcome:
        """
        Loan pipeline: PENDING -> ANALYZING -> decision -> disbursement.

        The scoring record and the decided status commit together. A loan is
        only marked DISBURSED after the partner confirms the transfer. If the
        pipeline raises, the loan is closed as REJECTED with the failure as its
        reason before the error propagates.
        """
        customer = self.customers.snapshot(command.phone_number)
        if customer is None:
            raise ValueError(f"Loan requested for unknown customer {command.phone_number}")

        loan_id = self.loans.create(command.phone_number, command.amount, command.term_months, ctx.now).id
        try:
            return await self._decide_and_disburse(command, ctx, customer, loan_id)
        except Exception as e:
            logger.exception("Loan pipeline failed", extra={"loan_id": loan_id})
            self.loans.mark_failed(loan_id, f"Processing failed: {type(e).__name__}")
            raise

    async def _decide_and_disburse(
        self, command: ProcessLoan, ctx: FlowContext, customer: Customer, loan_id: str
    ) -> LoanOutcome:
        self.loans.set_status(loan_id, LoanStatus.ANALYZING)

        bank_limit = await self._bank_limit(customer, command.amount)
        history = self.loans.history(command.phone_number)
        candidate = CandidateLoan(amount=command.amount, term_months=command.term_months, loan_id=loan_id)
        result = make_credit_decision(
            customer,
            candidate,
            history,
            ctx.now,
            bank_limit=bank_limit,
            default_salary=settings.default_salary,
        )
        self.loans.apply_decision(loan_id, command.phone_number, result, ctx.now)

        record_decision(result.decision.value, command.amount)
        log_decision(loan_id, command.phone_number, result.decision.value, result.final_score, result.max_amount, result.reason)

        disbursement = None
        if result.decision == Decision.APPROVED:
            disbursement = await self._disburse(customer, loan_id, command.amount)
            if disbursement.success:
                self.loans.mark_disbursed(loan_id, disbursement.transaction_id)

        return LoanOutcome(loan_id=loan_id, scoring=result, disbursement=disbursement)

    async def _bank_limit(self, customer: Customer, amount: float) -> float:
        """Limit reported by the customer's bank, or the configured default"""
        partner = self.partners.get_by_code(customer.bank_code) if customer.bank_code else None
        if partner is None or not partner.active:
            return settings.default_bank_limit

        identity = EligibilityIdentity(
            phone_number=customer.phone_number,
            nuit=customer.nuit,
            name=customer.name,
            national_id=customer.national_id,
            requested_amount=amount,
        )
        result, attempt = await self.gateway.check_eligibility(adapter_for(self.gateway.registry, partner), identity)
        self.partners.record_attempt(attempt.partner_code, attempt.responded)
        if result is None or result.max_amount is None:
            return settings.default_bank_limit
        return result.max_amount

    async def _disburse(self, customer: Customer, loan_id: str, amount: float) -> DisbursementResult:
        """Pay out through the customer's bank, falling back to their mobile wallet operator"""
        adapter: Optional[PartnerAdapter] = None
        partner = self.partners.get_by_code(customer.bank_code) if customer.bank_code else None
        if partner is not None and partner.active:
            adapter = adapter_for(self.gateway.registry, partner)
        else:
            try:
                adapter = self.gateway.registry.for_phone(customer.phone_number)
            except UnknownPartnerError as e:
                logger.error(f"No disbursement channel: {e}", extra={"loan_id": loan_id})
                return DisbursementResult(partner_code="NONE", success=False, amount=amount, error=str(e), attempts=0)

        result = await self.gateway.disburse(adapter, loan_id, amount, customer.phone_number, nuit=customer.nuit)
        self.partners.record_attempt(adapter.code, result.success)
        return result
