"""Input validators for USSD fields.

Every validator either returns the normalized value or raises
InputValidationError with the line shown to the user above the prompt.
"""

import re
from datetime import date, datetime
from typing import Dict, Optional

from payja_gateway.domain.exceptions import InputValidationError

COUNTRY_CODE = "258"

NUIT_PATTERN = re.compile(r"^\d{9}$")
DATE_PATTERN = re.compile(r"^\d{2}/\d{2}/\d{4}$")
CODE_PATTERN = re.compile(r"^\d{6}$")

MIN_NAME_LENGTH = 3
MIN_NATIONAL_ID_LENGTH = 9
MIN_SALARY = 1000

# Mobile money operator by national prefix
OPERATOR_PREFIXES: Dict[str, str] = {
    "84": "MPESA",
    "85": "MPESA",
    "86": "EMOLA",
    "87": "EMOLA",
    "82": "MKESH",
    "83": "MKESH",
}


def normalize_phone(raw: str) -> str:
    """Normalize a Mozambican MSISDN to E.164 (+258XXXXXXXXX)."""
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) == 9 and digits.startswith("8"):
        digits = COUNTRY_CODE + digits
    if not digits.startswith(COUNTRY_CODE) or len(digits) != 12:
        raise InputValidationError("Numero de telefone invalido.")
    return "+" + digits


def national_number(phone: str) -> str:
    """Strip the country code from an E.164 number"""
    digits = re.sub(r"\D", "", phone)
    return digits[len(COUNTRY_CODE):] if digits.startswith(COUNTRY_CODE) else digits


def detect_operator(phone: str) -> Optional[str]:
    return OPERATOR_PREFIXES.get(national_number(phone)[:2])


def validate_nuit(value: str) -> str:
    value = value.strip()
    if not NUIT_PATTERN.match(value):
        raise InputValidationError("NUIT invalido. Deve ter 9 digitos.")
    return value


def validate_name(value: str) -> str:
    value = " ".join(value.split())
    if len(value) < MIN_NAME_LENGTH:
        raise InputValidationError("Nome muito curto.")
    return value


def validate_national_id(value: str) -> str:
    value = value.strip().upper()
    if len(value) < MIN_NATIONAL_ID_LENGTH:
        raise InputValidationError("BI invalido.")
    return value


def parse_date(value: str) -> date:
    """Parse DD/MM/YYYY, rejecting impossible calendar dates"""
    value = value.strip()
    if not DATE_PATTERN.match(value):
        raise InputValidationError("Data invalida. Use DD/MM/AAAA.")
    try:
        return datetime.strptime(value, "%d/%m/%Y").date()
    except ValueError:
        raise InputValidationError("Data invalida. Use DD/MM/AAAA.")


def validate_date(value: str) -> str:
    parse_date(value)
    return value.strip()


def validate_menu_choice(value: str, options: Dict[str, str]) -> str:
    """Return the option label for a menu key"""
    choice = value.strip()
    if choice not in options:
        keys = sorted(options)
        raise InputValidationError(f"Opcao invalida. Escolha {keys[0]}-{keys[-1]}.")
    return options[choice]


def parse_number(value: str) -> float:
    text = value.strip().replace(" ", "").replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        raise InputValidationError("Valor invalido.")
    if number != number or number in (float("inf"), float("-inf")):
        raise InputValidationError("Valor invalido.")
    return number


def validate_salary(value: str) -> float:
    salary = parse_number(value)
    if salary < MIN_SALARY:
        raise InputValidationError(f"Salario invalido. Minimo {MIN_SALARY} MZN.")
    return salary


def validate_amount(value: str, limit: float) -> float:
    """Requested amount must be positive and within the customer's limit"""
    amount = parse_number(value)
    if amount <= 0:
        raise InputValidationError("Valor invalido. Deve ser maior que zero.")
    if amount > limit:
        raise InputValidationError(f"Valor excede seu limite de {format_amount(limit)} MZN.")
    return amount


def validate_code(value: str) -> str:
    value = value.strip()
    if not CODE_PATTERN.match(value):
        raise InputValidationError("Codigo invalido. Deve ter 6 digitos.")
    return value


def format_amount(amount: float) -> str:
    """Render money without decimals when whole"""
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"
