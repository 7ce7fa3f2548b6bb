"""LOAN_REQUEST flow: amount and term capture, decision and disbursement outcome"""

from typing import Any, Dict

from payja_gateway.domain import validators
from payja_gateway.domain.exceptions import InputValidationError
from payja_gateway.domain.flow import (
    ERROR_STATE,
    Command,
    FlowContext,
    LoanOutcome,
    LoanRequestFields,
    ProcessLoan,
    Transition,
    UssdFlow,
)
from payja_gateway.domain.installments import simulate, total_repayable
from payja_gateway.domain.models import Decision, Flow, SessionStatus
from payja_gateway.domain.validators import format_amount

CHECK_CUSTOMER = "CHECK_CUSTOMER"
REQUEST_AMOUNT = "REQUEST_AMOUNT"
REQUEST_TERM = "REQUEST_TERM"
CONFIRM_LOAN = "CONFIRM_LOAN"
PROCESSING = "PROCESSING"
# Terminal states
LOAN_COMPLETE = "LOAN_COMPLETE"
STATUS = "STATUS"
SIMULATION = "SIMULATION"
NOT_REGISTERED = "NOT_REGISTERED"
NO_LIMIT = "NO_LIMIT"
CANCELLED = "CANCELLED"
EXIT = "EXIT"
ERROR = ERROR_STATE

TERMS: Dict[str, int] = {
    "1": 3,
    "2": 6,
    "3": 12,
    "4": 18,
    "5": 24,
}

TERM_PROMPT = "Escolha o prazo:\n\n" + "\n".join(f"{k}. {v} meses" for k, v in TERMS.items())

STATUS_LOAN_COUNT = 3


def _menu(ctx: FlowContext, limit: float) -> str:
    name = ctx.customer.name if ctx.customer and ctx.customer.name else ""
    return (
        f"PayJA - Ola {name}\n"
        f"Limite disponivel: {format_amount(limit)} MZN\n\n"
        "1. Solicitar emprestimo\n2. Ver status\n3. Simular emprestimo\n0. Sair"
    )


def _amount_prompt(limit: float) -> str:
    return f"Digite o valor desejado (MZN):\n\nMaximo: {format_amount(limit)} MZN"


def _confirm_prompt(fields: LoanRequestFields) -> str:
    total = total_repayable(fields.amount, fields.term_months)
    return (
        "CONFIRMAR EMPRESTIMO:\n\n"
        f"Valor: {format_amount(fields.amount)} MZN\n"
        f"Prazo: {fields.term_months} meses\n"
        f"Total a pagar: {format_amount(total)} MZN\n\n"
        "1. Confirmar\n0. Cancelar"
    )


def _status_screen(ctx: FlowContext) -> str:
    if not ctx.recent_loans:
        return "Voce nao possui emprestimos."
    lines = ["SEUS EMPRESTIMOS:\n"]
    for loan in ctx.recent_loans[:STATUS_LOAN_COUNT]:
        lines.append(f"{format_amount(loan.amount)} MZN - {loan.term_months}m - {loan.status.value}")
    return "\n".join(lines)


def _simulation_screen(limit: float) -> str:
    lines = [f"SIMULACAO ({format_amount(limit)} MZN):\n"]
    for term, monthly, total in simulate(limit):
        lines.append(f"{term} meses: {format_amount(monthly)}/mes (total {format_amount(total)})")
    return "\n".join(lines)


class LoanRequestFlow(UssdFlow[LoanRequestFields]):
    flow = Flow.LOAN_REQUEST
    fields_type = LoanRequestFields

    def start(self, ctx: FlowContext) -> Transition:
        customer = ctx.customer
        if customer is None or not customer.verified:
            return Transition(
                next_state=NOT_REGISTERED,
                message="Voce nao esta registrado.\n\nDisque *899# para se registrar.",
                status=SessionStatus.COMPLETED,
            )
        if customer.credit_limit <= 0:
            return Transition(
                next_state=NO_LIMIT,
                message="Limite de credito indisponivel.\n\nContate suporte: 800-PAYJA",
                status=SessionStatus.COMPLETED,
            )
        return Transition(
            next_state=CHECK_CUSTOMER,
            message=_menu(ctx, customer.credit_limit),
            updates={"credit_limit": customer.credit_limit},
        )

    def prompt(self, state: str, fields: LoanRequestFields, ctx: FlowContext) -> str:
        limit = fields.credit_limit or 0
        if state == CHECK_CUSTOMER:
            return _menu(ctx, limit)
        if state == REQUEST_AMOUNT:
            return _amount_prompt(limit)
        if state == REQUEST_TERM:
            return TERM_PROMPT
        if state == CONFIRM_LOAN:
            return _confirm_prompt(fields)
        raise ValueError(f"No prompt for state {state}")

    def advance(self, state: str, fields: LoanRequestFields, user_input: str, ctx: FlowContext) -> Transition:
        try:
            if state == CHECK_CUSTOMER:
                return self._menu_choice(fields, user_input, ctx)
            if state == REQUEST_AMOUNT:
                amount = validators.validate_amount(user_input, fields.credit_limit or 0)
                return Transition(next_state=REQUEST_TERM, message=TERM_PROMPT, updates={"amount": amount})
            if state == REQUEST_TERM:
                choice = user_input.strip()
                if choice not in TERMS:
                    raise InputValidationError("Opcao invalida. Escolha 1-5.")
                term = TERMS[choice]
                return Transition(
                    next_state=CONFIRM_LOAN,
                    message=_confirm_prompt(LoanRequestFields(amount=fields.amount, term_months=term)),
                    updates={"term_months": term},
                )
            if state == CONFIRM_LOAN:
                choice = user_input.strip()
                if choice == "0":
                    return Transition(
                        next_state=CANCELLED,
                        message="Pedido de emprestimo cancelado.",
                        status=SessionStatus.COMPLETED,
                    )
                if choice != "1":
                    raise InputValidationError("Opcao invalida. Escolha 1 ou 0.")
                return Transition(
                    next_state=PROCESSING,
                    message="A processar o seu pedido...",
                    command=ProcessLoan(ctx.phone_number, fields.amount, fields.term_months),
                )
        except InputValidationError as e:
            return self.reprompt(state, fields, ctx, str(e))

        raise ValueError(f"Loan flow cannot accept input in state {state}")

    def _menu_choice(self, fields: LoanRequestFields, user_input: str, ctx: FlowContext) -> Transition:
        choice = user_input.strip()
        limit = fields.credit_limit or 0
        if choice == "1":
            return Transition(next_state=REQUEST_AMOUNT, message=_amount_prompt(limit))
        if choice == "2":
            return Transition(next_state=STATUS, message=_status_screen(ctx), status=SessionStatus.COMPLETED)
        if choice == "3":
            return Transition(
                next_state=SIMULATION,
                message=_simulation_screen(limit),
                status=SessionStatus.COMPLETED,
            )
        if choice == "0":
            return Transition(next_state=EXIT, message="Obrigado por usar PayJA.", status=SessionStatus.COMPLETED)
        raise InputValidationError("Opcao invalida. Escolha 0-3.")

    def resume(
        self,
        state: str,
        fields: LoanRequestFields,
        command: Command,
        result: Any,
        ctx: FlowContext,
    ) -> Transition:
        if not isinstance(command, ProcessLoan):
            raise ValueError(f"Unexpected command {command!r} for loan flow")
        return self._outcome(fields, result)

    def _outcome(self, fields: LoanRequestFields, outcome: LoanOutcome) -> Transition:
        scoring = outcome.scoring
        amount = format_amount(fields.amount)
        updates: Dict[str, Any] = {
            "loan_id": outcome.loan_id,
            "decision": scoring.decision.value,
            "max_amount": scoring.max_amount,
            "reason": scoring.reason,
        }

        if scoring.decision == Decision.APPROVED:
            disbursement = outcome.disbursement
            if disbursement is not None and disbursement.success:
                updates["disbursed"] = True
                updates["transaction_id"] = disbursement.transaction_id
                message = (
                    f"EMPRESTIMO APROVADO!\n\nValor: {amount} MZN\nPrazo: {fields.term_months} meses\n\n"
                    f"Transferido para a sua conta.\nRef: {disbursement.transaction_id}"
                )
                sms = (
                    f"PayJA - Emprestimo de {amount} MZN aprovado e desembolsado. "
                    f"Ref: {disbursement.transaction_id}"
                )
            else:
                updates["disbursed"] = False
                message = (
                    f"EMPRESTIMO APROVADO!\n\nValor: {amount} MZN\n\n"
                    "O desembolso esta pendente. Recebera um SMS quando for concluido."
                )
                sms = f"PayJA - Emprestimo de {amount} MZN aprovado. Desembolso pendente."
        elif scoring.decision == Decision.MANUAL_REVIEW:
            message = (
                f"PEDIDO EM ANALISE\n\nValor: {amount} MZN\n\n"
                "O seu pedido sera revisto. Recebera um SMS com a resposta."
            )
            sms = f"PayJA - O seu pedido de {amount} MZN esta em analise."
        else:
            message = f"EMPRESTIMO NAO APROVADO\n\n{scoring.reason}"
            sms = f"PayJA - Pedido de {amount} MZN nao aprovado. {scoring.reason}"

        return Transition(
            next_state=LOAN_COMPLETE,
            message=message,
            updates=updates,
            status=SessionStatus.COMPLETED,
            notifications=(sms,),
        )
