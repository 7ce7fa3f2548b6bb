"""
USSD session controller.

Owns the request lifecycle around the pure flows: load or create the
session, detect replays, take the per-session lease, run advance/resume
with any command in between, then persist the new state and the rendered
response in one write.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import (
    SessionBusyError,
    SessionClosedError,
    SessionExpiredError,
    SessionNotFoundError,
)
from payja_gateway.domain.flow import (
    ERROR_STATE,
    GENERIC_ERROR_MESSAGE,
    CONTINUE,
    FlowContext,
    Transition,
    UssdFlow,
    dump_fields,
    merge_fields,
)
from payja_gateway.domain.loan_flow import LoanRequestFlow
from payja_gateway.domain.models import Flow, SessionStatus
from payja_gateway.domain.registration_flow import VERIFY_CODE, RegistrationFlow
from payja_gateway.domain.validators import normalize_phone
from payja_gateway.infrastructure.database.models import UssdSession
from payja_gateway.infrastructure.database.repositories import (
    CustomerRepository,
    LoanRepository,
    SessionRepository,
)
from payja_gateway.infrastructure.observability.logging import log_transition
from payja_gateway.infrastructure.observability.metrics import record_ussd_request
from payja_gateway.services.effects import CommandExecutor
from payja_gateway.services.notifications import enqueue_notifications
from payja_gateway.utils.date_utils import is_past, seconds_from, utcnow

logger = logging.getLogger(__name__)

FLOWS: Dict[Flow, UssdFlow] = {
    Flow.REGISTRATION: RegistrationFlow(),
    Flow.LOAN_REQUEST: LoanRequestFlow(),
}

RECENT_LOANS_IN_CONTEXT = 3


@dataclass
class UssdReply:
    session_id: str
    message: str
    notification_ids: List[str] = field(default_factory=list)


class SessionController:
    def __init__(
        self,
        db: Session,
        executor: CommandExecutor,
        clock: Callable[[], datetime] = utcnow,
        request_id: str = "unknown",
    ):
        self.db = db
        self.executor = executor
        self.clock = clock
        self.request_id = request_id
        self.sessions = SessionRepository(db)
        self.customers = CustomerRepository(db)
        self.loans = LoanRepository(db)

    async def start(self, phone_number: str, flow: Flow = Flow.REGISTRATION) -> UssdReply:
        """
        Open a session, or resume the caller's ACTIVE one for the same flow.

        Raises:
            InputValidationError: phone number cannot be normalized
        """
        phone = normalize_phone(phone_number)
        now = self.clock()

        existing = self.sessions.find_active(phone, flow)
        if existing is not None:
            if not is_past(existing.expires_at, now) or self._locked(existing, now):
                return self._resume(existing, now)
            self.sessions.expire(existing)

        flow_impl = FLOWS[flow]
        ctx = self._context(phone, now, flow)
        started = time.time()
        transition = flow_impl.start(ctx)
        response = transition.render()
        fields = merge_fields(flow_impl.load({}), transition.updates)

        try:
            session = self.sessions.create(
                phone,
                flow,
                transition.next_state,
                dump_fields(fields),
                transition.status,
                response,
                now,
                settings.session_ttl_seconds,
            )
        except IntegrityError:
            # Another request opened the session first
            self.db.rollback()
            existing = self.sessions.find_active(phone, flow)
            if existing is None:
                raise
            return self._resume(existing, now)

        record_ussd_request(flow.value, "end" if transition.is_terminal else "continue")
        log_transition(
            self.request_id,
            session.id,
            flow.value,
            None,
            transition.next_state,
            transition.status.value,
            (time.time() - started) * 1000,
        )
        return UssdReply(session_id=session.id, message=response)

    async def continue_session(self, session_id: str, user_input: str, request_id: Optional[str] = None) -> UssdReply:
        """
        Feed one keystroke to the session's flow.

        Raises:
            SessionNotFoundError: unknown id
            SessionExpiredError: past its inactivity deadline
            SessionClosedError: already finished and the input is not a replay
            SessionBusyError: another request kept the lease past the wait budget
        """
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        arrived_version = session.version
        for _ in range(settings.session_wait_attempts + 1):
            now = self.clock()

            cached = self._replay(session, user_input, request_id, now, arrived_version)
            if cached is not None:
                record_ussd_request(session.flow, "replay")
                return UssdReply(session_id=session.id, message=cached)

            if session.status == SessionStatus.EXPIRED.value:
                raise SessionExpiredError(f"Session {session_id} expired")
            if session.status != SessionStatus.ACTIVE.value:
                raise SessionClosedError(f"Session {session_id} is {session.status}")

            if not self._locked(session, now):
                if is_past(session.expires_at, now):
                    if self.sessions.expire(session):
                        record_ussd_request(session.flow, "expired")
                        raise SessionExpiredError(f"Session {session_id} expired")
                    continue

                claimed = self.sessions.claim(session, now, settings.session_lock_seconds)
                if claimed is not None:
                    return await self._step(session, claimed, user_input, request_id, now)

            await asyncio.sleep(settings.session_wait_interval)
            session = self.sessions.reload(session)

        raise SessionBusyError(f"Session {session_id} is busy")

    async def _step(
        self,
        session: UssdSession,
        claimed_version: int,
        user_input: str,
        request_id: Optional[str],
        now: datetime,
    ) -> UssdReply:
        flow = Flow(session.flow)
        flow_impl = FLOWS[flow]
        from_state = session.state
        fields = flow_impl.load(session.fields)
        ctx = self._context(session.phone_number, now, flow, session)
        started = time.time()
        outcome = None

        try:
            transition = flow_impl.advance(from_state, fields, user_input, ctx)
            updates = dict(transition.updates)

            if transition.command is not None:
                self.sessions.stage(session, claimed_version, transition.next_state)
                result = await self.executor.execute(transition.command, ctx)
                staged = merge_fields(fields, updates)
                transition = flow_impl.resume(transition.next_state, staged, transition.command, result, ctx)
                updates.update(transition.updates)
        except Exception:
            logger.exception(
                "USSD step failed",
                extra={"session_id": session.id, "flow": flow.value, "state": from_state},
            )
            self.db.rollback()
            transition = Transition(next_state=ERROR_STATE, message=GENERIC_ERROR_MESSAGE, status=SessionStatus.ERROR)
            updates = {}
            outcome = "error"

        response = transition.render()
        notification_ids = []
        if transition.notifications:
            notification_ids = enqueue_notifications(
                self.db,
                session.phone_number,
                transition.notifications,
                kind=transition.next_state.lower(),
            )

        finished = self.clock()
        saved = self.sessions.save(
            session,
            claimed_version,
            state=transition.next_state,
            fields=dump_fields(merge_fields(fields, updates)),
            status=transition.status.value,
            last_activity_at=finished,
            expires_at=seconds_from(finished, settings.session_ttl_seconds),
            last_input=user_input.strip(),
            last_request_id=request_id,
            last_input_at=finished,
            last_response=response,
        )
        if not saved:
            raise SessionBusyError(f"Session {session.id} was taken over while processing")

        if outcome is None:
            outcome = "end" if transition.is_terminal else "continue"
        record_ussd_request(flow.value, outcome)
        log_transition(
            self.request_id,
            session.id,
            flow.value,
            from_state,
            transition.next_state,
            transition.status.value,
            (time.time() - started) * 1000,
        )
        return UssdReply(session_id=session.id, message=response, notification_ids=notification_ids)

    def _replay(
        self,
        session: UssdSession,
        user_input: str,
        request_id: Optional[str],
        now: datetime,
        arrived_version: int,
    ) -> Optional[str]:
        """
        Cached response when this request repeats the last one, else None.

        Without request ids an ACTIVE session only replays a duplicate that was
        in flight: the same input was applied by another request while this one
        waited for the lease. A repeat sent after the previous reply is a new
        keystroke.
        """
        if session.last_response is None or session.last_input is None:
            return None

        if request_id is not None and request_id == session.last_request_id:
            return session.last_response

        if user_input.strip() != session.last_input:
            return None

        # A finished session answers any repeat of its final input
        if session.status != SessionStatus.ACTIVE.value:
            return session.last_response

        if request_id is not None and session.last_request_id is not None:
            return None

        if session.version == arrived_version:
            return None

        if session.last_input_at is not None:
            elapsed = (now - session.last_input_at).total_seconds()
            if elapsed <= settings.replay_window_seconds:
                return session.last_response
        return None

    def _resume(self, session: UssdSession, now: datetime) -> UssdReply:
        """Re-render the screen the caller last saw"""
        message = session.last_response
        if not message:
            flow_impl = FLOWS[Flow(session.flow)]
            fields = flow_impl.load(session.fields)
            ctx = self._context(session.phone_number, now, Flow(session.flow), session)
            message = f"{CONTINUE} {flow_impl.prompt(session.state, fields, ctx)}"
        record_ussd_request(session.flow, "resume")
        return UssdReply(session_id=session.id, message=message)

    def _locked(self, session: UssdSession, now: datetime) -> bool:
        return session.locked_until is not None and not is_past(session.locked_until, now)

    def _context(
        self,
        phone_number: str,
        now: datetime,
        flow: Flow,
        session: Optional[UssdSession] = None,
    ) -> FlowContext:
        customer = self.customers.snapshot(phone_number)
        recent = ()
        resumable = None
        if flow == Flow.LOAN_REQUEST and customer is not None:
            recent = tuple(self.loans.history(phone_number)[:RECENT_LOANS_IN_CONTEXT])
        if flow == Flow.REGISTRATION and session is not None and session.state == VERIFY_CODE:
            resumable = self.sessions.latest_registration_data(phone_number, exclude_id=session.id)
        return FlowContext(
            phone_number=phone_number,
            now=now,
            customer=customer,
            recent_loans=recent,
            resumable_fields=resumable,
        )
