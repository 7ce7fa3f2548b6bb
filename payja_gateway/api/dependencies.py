"""Dependency injection for FastAPI endpoints"""

from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from payja_gateway.infrastructure.clients.gateway import PartnerGateway
from payja_gateway.infrastructure.clients.partners import PartnerRegistry
from payja_gateway.infrastructure.clients.sms import SmsClient
from payja_gateway.infrastructure.database.session import SessionLocal, get_db
from payja_gateway.services.effects import CommandExecutor
from payja_gateway.services.notifications import NotificationDispatcher
from payja_gateway.services.session_controller import SessionController
from payja_gateway.services.verification import VerificationService


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request (background tasks)"""
    return SessionLocal


def get_partner_registry() -> PartnerRegistry:
    """Provide partner adapters with the mobile money operators registered"""
    return PartnerRegistry.with_operators()


def get_partner_gateway(registry: PartnerRegistry = Depends(get_partner_registry)) -> PartnerGateway:
    return PartnerGateway(registry)


def get_sms_client() -> SmsClient:
    """Provide SMS provider client instance"""
    return SmsClient()


def get_notification_dispatcher(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    sms_client: SmsClient = Depends(get_sms_client),
) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, sms_client)


def get_session_controller(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PartnerGateway = Depends(get_partner_gateway),
    sms_client: SmsClient = Depends(get_sms_client),
) -> SessionController:
    executor = CommandExecutor(db, gateway, VerificationService(db, sms_client))
    return SessionController(db, executor, request_id=get_request_id(request))
