"""Partner health, connection tests and wallet balances"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from payja_gateway.api.dependencies import get_partner_gateway
from payja_gateway.api.v1.schemas import (
    ConnectionTestResponse,
    PartnerListResponse,
    PartnerSchema,
    WalletBalanceResponse,
)
from payja_gateway.domain.exceptions import InputValidationError, UnknownPartnerError
from payja_gateway.domain.validators import normalize_phone
from payja_gateway.infrastructure.clients.gateway import PartnerGateway
from payja_gateway.infrastructure.database.repositories import PartnerRepository
from payja_gateway.infrastructure.database.session import get_db
from payja_gateway.services.effects import adapter_for
from payja_gateway.utils.date_utils import utcnow

router = APIRouter()


@router.get("/partners", response_model=PartnerListResponse)
def list_partners(db: Session = Depends(get_db)):
    """Configured partners in sweep order with their request counters"""
    partners = PartnerRepository(db).list_all()
    return PartnerListResponse(
        partners=[
            PartnerSchema(
                code=p.code,
                name=p.name,
                kind=p.kind,
                priority=p.priority,
                active=p.active,
                total_requests=p.total_requests or 0,
                successful_requests=p.successful_requests or 0,
                failed_requests=p.failed_requests or 0,
                success_rate=round(p.successful_requests / p.total_requests * 100, 1) if p.total_requests else None,
                last_health_status=p.last_health_status,
                last_health_check=p.last_health_check.isoformat() if p.last_health_check else None,
            )
            for p in partners
        ]
    )


@router.post("/partners/{code}/test", response_model=ConnectionTestResponse)
async def test_partner_connection(
    code: str,
    db: Session = Depends(get_db),
    gateway: PartnerGateway = Depends(get_partner_gateway),
):
    """Call the partner's health endpoint and store the result"""
    repo = PartnerRepository(db)
    partner = repo.get_by_code(code)
    if partner is not None:
        adapter = adapter_for(gateway.registry, partner)
    else:
        try:
            adapter = gateway.registry.get(code)
        except UnknownPartnerError as e:
            raise HTTPException(status_code=404, detail=str(e))

    success, message = await gateway.test_connection(adapter)
    repo.record_health(code, success, utcnow())
    return ConnectionTestResponse(code=code, success=success, message=message)


@router.get("/wallets/{phone_number}/balance", response_model=WalletBalanceResponse)
async def get_wallet_balance(
    phone_number: str,
    gateway: PartnerGateway = Depends(get_partner_gateway),
):
    """Balance held with the mobile money operator serving this number"""
    try:
        phone = normalize_phone(phone_number)
        result = await gateway.wallet_balance(phone)
    except InputValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except UnknownPartnerError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return WalletBalanceResponse(
        phone_number=phone,
        operator=result.operator,
        active=result.active,
        balance=result.balance,
        account_name=result.account_name,
    )
