"""REGISTRATION flow: collects identity data, verifies the phone and runs the partner sweep"""

from typing import Any, Callable, Dict, Tuple

from payja_gateway.domain import validators
from payja_gateway.domain.exceptions import InputValidationError
from payja_gateway.domain.flow import (
    ERROR_STATE,
    Command,
    FinalizeRegistration,
    FlowContext,
    RegistrationFields,
    RegistrationOutcome,
    SendVerificationCode,
    Transition,
    UssdFlow,
    VerifyCode,
    load_fields,
    merge_fields,
)
from payja_gateway.domain.models import Flow, SessionStatus
from payja_gateway.domain.validators import format_amount

WELCOME = "WELCOME"
NUIT = "NUIT"
NAME = "NAME"
NATIONAL_ID = "NATIONAL_ID"
ID_ISSUE_DATE = "ID_ISSUE_DATE"
ID_EXPIRY_DATE = "ID_EXPIRY_DATE"
PROFESSION = "PROFESSION"
SALARY = "SALARY"
BANK = "BANK"
VERIFY_CODE = "VERIFY_CODE"
CONFIRM = "CONFIRM"
FINALIZE = "FINALIZE"
# Terminal states
REGISTERED = "REGISTERED"
NOT_ELIGIBLE = "NOT_ELIGIBLE"
PARTNER_UNAVAILABLE = "PARTNER_UNAVAILABLE"
ALREADY_REGISTERED = "ALREADY_REGISTERED"
CANCELLED = "CANCELLED"
ERROR = ERROR_STATE

PROFESSIONS: Dict[str, str] = {
    "1": "Funcionario Publico",
    "2": "Funcionario Privado",
    "3": "Empresario",
    "4": "Trabalhador Independente",
    "5": "Estudante",
    "6": "Outro",
}

SALARY_BANKS: Dict[str, str] = {
    "1": "BCI",
    "2": "Standard Bank",
    "3": "Millennium BIM",
    "4": "Absa",
    "5": "Banco Terra",
    "6": "Outro",
}

PROMPTS: Dict[str, str] = {
    WELCOME: "BEM-VINDO AO REGISTRO PayJA\n\n1. Iniciar registro\n2. Cancelar\n3. Concluir registro (com codigo SMS)",
    NUIT: "Digite seu NUIT (9 digitos):",
    NAME: "Digite seu nome completo:",
    NATIONAL_ID: "Digite o numero do seu BI:",
    ID_ISSUE_DATE: "Data de emissao do BI (DD/MM/AAAA):\n\nEx: 15/03/2020",
    ID_EXPIRY_DATE: "Data de expiracao do BI (DD/MM/AAAA):\n\nEx: 15/03/2030",
    PROFESSION: "Profissao:\n\n" + "\n".join(f"{k}. {v}" for k, v in PROFESSIONS.items()),
    SALARY: "Digite seu salario mensal (MZN):\n\nEx: 15000",
    BANK: "Banco onde recebe salario:\n\n" + "\n".join(f"{k}. {v}" for k, v in SALARY_BANKS.items()),
    VERIFY_CODE: "Digite o codigo SMS de 6 digitos:",
}

# Plain text-entry steps: state -> (field, validator, next state)
TEXT_STEPS: Dict[str, Tuple[str, Callable[[str], Any], str]] = {
    NUIT: ("nuit", validators.validate_nuit, NAME),
    NAME: ("name", validators.validate_name, NATIONAL_ID),
    NATIONAL_ID: ("national_id", validators.validate_national_id, ID_ISSUE_DATE),
    ID_ISSUE_DATE: ("id_issue_date", validators.validate_date, ID_EXPIRY_DATE),
    ID_EXPIRY_DATE: ("id_expiry_date", validators.validate_date, PROFESSION),
    PROFESSION: ("profession", lambda v: validators.validate_menu_choice(v, PROFESSIONS), SALARY),
    SALARY: ("salary", validators.validate_salary, BANK),
}


def _summary(fields: RegistrationFields) -> str:
    salary = format_amount(fields.salary) if fields.salary is not None else "N/A"
    return (
        "CONFIRME SEUS DADOS:\n\n"
        f"Nome: {fields.name}\n"
        f"NUIT: {fields.nuit}\n"
        f"BI: {fields.national_id or 'N/A'}\n"
        f"Profissao: {fields.profession or 'N/A'}\n"
        f"Salario: {salary} MZN\n"
        f"Banco: {fields.salary_bank or 'N/A'}\n\n"
        "1. Confirmar\n2. Cancelar"
    )


class RegistrationFlow(UssdFlow[RegistrationFields]):
    flow = Flow.REGISTRATION
    fields_type = RegistrationFields

    def start(self, ctx: FlowContext) -> Transition:
        customer = ctx.customer
        if customer is not None and customer.verified:
            return Transition(
                next_state=ALREADY_REGISTERED,
                message=f"Ola {customer.name or ''}!\n\nVoce ja esta registrado.\nAcesse *898# para emprestimos.",
                status=SessionStatus.COMPLETED,
            )
        return Transition(next_state=WELCOME, message=PROMPTS[WELCOME])

    def prompt(self, state: str, fields: RegistrationFields, ctx: FlowContext) -> str:
        if state == CONFIRM:
            return _summary(fields)
        return PROMPTS[state]

    def advance(self, state: str, fields: RegistrationFields, user_input: str, ctx: FlowContext) -> Transition:
        try:
            if state == WELCOME:
                return self._welcome(user_input)
            if state in TEXT_STEPS:
                key, validate, next_state = TEXT_STEPS[state]
                value = validate(user_input)
                return Transition(next_state=next_state, message=PROMPTS[next_state], updates={key: value})
            if state == BANK:
                bank = validators.validate_menu_choice(user_input, SALARY_BANKS)
                return Transition(
                    next_state=VERIFY_CODE,
                    message=PROMPTS[VERIFY_CODE],
                    updates={"salary_bank": bank},
                    command=SendVerificationCode(ctx.phone_number),
                )
            if state == VERIFY_CODE:
                code = validators.validate_code(user_input)
                return Transition(
                    next_state=VERIFY_CODE,
                    message=PROMPTS[VERIFY_CODE],
                    command=VerifyCode(ctx.phone_number, code),
                )
            if state == CONFIRM:
                return self._confirm(fields, user_input, ctx)
        except InputValidationError as e:
            return self.reprompt(state, fields, ctx, str(e))

        raise ValueError(f"Registration flow cannot accept input in state {state}")

    def _welcome(self, user_input: str) -> Transition:
        choice = user_input.strip()
        if choice == "1":
            return Transition(next_state=NUIT, message=PROMPTS[NUIT])
        if choice == "2":
            return Transition(next_state=CANCELLED, message="Registro cancelado.", status=SessionStatus.COMPLETED)
        if choice == "3":
            return Transition(next_state=VERIFY_CODE, message=PROMPTS[VERIFY_CODE])
        raise InputValidationError("Opcao invalida.")

    def _confirm(self, fields: RegistrationFields, user_input: str, ctx: FlowContext) -> Transition:
        choice = user_input.strip()
        if choice == "2":
            return Transition(next_state=CANCELLED, message="Registro cancelado.", status=SessionStatus.COMPLETED)
        if choice != "1":
            raise InputValidationError("Opcao invalida. Escolha 1 ou 2.")
        return Transition(
            next_state=FINALIZE,
            message="A validar os seus dados...",
            command=FinalizeRegistration(ctx.phone_number, fields),
        )

    def resume(
        self,
        state: str,
        fields: RegistrationFields,
        command: Command,
        result: Any,
        ctx: FlowContext,
    ) -> Transition:
        if isinstance(command, SendVerificationCode):
            if not result:
                return Transition(
                    next_state=ERROR,
                    message="Nao foi possivel enviar o codigo SMS.\n\nTente novamente mais tarde.",
                    status=SessionStatus.ERROR,
                )
            return Transition(
                next_state=VERIFY_CODE,
                message=f"Codigo SMS enviado para {ctx.phone_number}\n\nDigite o codigo de 6 digitos:",
                updates={"code_sent": True},
            )

        if isinstance(command, VerifyCode):
            return self._after_verification(fields, bool(result), ctx)

        if isinstance(command, FinalizeRegistration):
            return self._after_finalize(fields, result, ctx)

        raise ValueError(f"Unexpected command {command!r} for registration flow")

    def _after_verification(self, fields: RegistrationFields, valid: bool, ctx: FlowContext) -> Transition:
        if not valid:
            return self.reprompt(VERIFY_CODE, fields, ctx, "Codigo incorreto ou expirado.")

        updates: Dict[str, Any] = {}
        if not fields.has_identity and ctx.resumable_fields:
            previous = load_fields(RegistrationFields, ctx.resumable_fields)
            if previous.has_identity:
                # Only keys this session never collected
                updates = {
                    key: value
                    for key, value in ctx.resumable_fields.items()
                    if hasattr(fields, key) and getattr(fields, key) is None and value is not None
                }

        merged = merge_fields(fields, updates)
        if not merged.has_identity:
            return Transition(
                next_state=CANCELLED,
                message="Nao encontrei seus dados de registro.\n\nPor favor, inicie um novo registro com opcao 1.",
                status=SessionStatus.COMPLETED,
            )
        return Transition(next_state=CONFIRM, message=_summary(merged), updates=updates)

    def _after_finalize(self, fields: RegistrationFields, outcome: RegistrationOutcome, ctx: FlowContext) -> Transition:
        if outcome.registered:
            limit = format_amount(outcome.credit_limit)
            return Transition(
                next_state=REGISTERED,
                message=(
                    f"REGISTRO APROVADO!\n\nOla {fields.name}!\n\nBanco: {outcome.bank_name}\n"
                    f"Limite aprovado: {limit} MZN\n\nDisque *898# para solicitar emprestimos."
                ),
                updates={
                    "salary_bank": outcome.bank_name,
                    "bank_code": outcome.bank_code,
                    "credit_limit": outcome.credit_limit,
                },
                status=SessionStatus.COMPLETED,
                notifications=(
                    f"PayJA - Registro aprovado!\n\nOla {fields.name}!\nBanco: {outcome.bank_name}\n"
                    f"Limite aprovado: {limit} MZN\n\nDisque *898# para continuar.",
                ),
            )

        if outcome.sweep.all_failed:
            return Transition(
                next_state=PARTNER_UNAVAILABLE,
                message="Nenhum banco parceiro disponivel no momento.\n\nTente novamente mais tarde.",
                status=SessionStatus.COMPLETED,
                notifications=(
                    "PayJA - Nao foi possivel concluir o seu registro agora. Nenhum banco parceiro respondeu. "
                    "Tente novamente mais tarde.",
                ),
            )

        return Transition(
            next_state=NOT_ELIGIBLE,
            message=(
                "Registro nao aprovado\n\nNao encontramos seus dados em nenhum banco parceiro.\n\n"
                "Contate suporte para mais informacoes."
            ),
            status=SessionStatus.COMPLETED,
            notifications=(
                "PayJA - Registro nao aprovado.\n\nNao encontramos seus dados em nenhum banco parceiro.\n\n"
                "Contate suporte: 800-PAYJA",
            ),
        )
