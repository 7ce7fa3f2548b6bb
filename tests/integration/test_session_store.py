"""Session persistence: leases, versions, expiry and concurrent requests"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import SessionBusyError, SessionExpiredError
from payja_gateway.domain.flow import FinalizeRegistration, RegistrationOutcome
from payja_gateway.domain.models import EligibilityResult, Flow, PartnerAttempt, SessionStatus, SweepOutcome
from payja_gateway.domain.registration_flow import CONFIRM, ERROR, REGISTERED, WELCOME
from payja_gateway.infrastructure.database.models import UssdSession
from payja_gateway.infrastructure.database.repositories import SessionRepository
from payja_gateway.services.session_controller import SessionController
from tests.helpers import NOW, PHONE, TestingSessionLocal

CONFIRM_FIELDS = {
    "nuit": "123456789",
    "name": "Joao Silva",
    "national_id": "110100123456A",
    "profession": "Funcionario Privado",
    "salary": 25000,
    "salary_bank": "BCI",
    "code_sent": True,
}


def _session(repo: SessionRepository, state: str = CONFIRM, fields=None) -> UssdSession:
    return repo.create(
        PHONE,
        Flow.REGISTRATION,
        state,
        fields or CONFIRM_FIELDS,
        SessionStatus.ACTIVE,
        "CON CONFIRME SEUS DADOS",
        NOW,
        settings.session_ttl_seconds,
    )


class SlowExecutor:
    """Stands in for partner I/O; counts how often the sweep really ran"""

    def __init__(self, delay: float = 0.1):
        self.delay = delay
        self.calls = 0

    async def execute(self, command, ctx):
        assert isinstance(command, FinalizeRegistration)
        self.calls += 1
        await asyncio.sleep(self.delay)
        winner = EligibilityResult("GHW", "Banco GHW", eligible=True, max_amount=40000)
        return RegistrationOutcome(
            sweep=SweepOutcome(winner=winner, attempts=[PartnerAttempt("GHW", responded=True, eligible=True)]),
            registered=True,
            bank_name="Banco GHW",
            bank_code="GHW",
            credit_limit=40000,
        )


def test_claim_bumps_version_and_sets_lease(db):
    repo = SessionRepository(db)
    session = _session(repo)

    claimed = repo.claim(session, NOW, 30)

    assert claimed == 1
    assert session.version == 1
    assert session.locked_until == NOW + timedelta(seconds=30)


def test_second_claim_fails_while_lease_held(db):
    repo = SessionRepository(db)
    session = _session(repo)
    other_db = TestingSessionLocal()
    try:
        other = SessionRepository(other_db)
        stale = other.get(session.id)

        assert repo.claim(session, NOW, 30) == 1
        other_db.refresh(stale)
        assert other.claim(stale, NOW + timedelta(seconds=1), 30) is None
        # Lease ran out: the next claimant may take over
        assert other.claim(stale, NOW + timedelta(seconds=31), 30) == 2
    finally:
        other_db.close()


def test_stale_version_cannot_save(db):
    repo = SessionRepository(db)
    session = _session(repo)
    claimed = repo.claim(session, NOW, 30)

    assert repo.save(session, claimed, state="NAME") is True
    assert session.version == claimed + 1
    assert session.locked_until is None
    assert repo.save(session, claimed, state="NATIONAL_ID") is False
    db.refresh(session)
    assert session.state == "NAME"


def test_expire_marks_session(db):
    repo = SessionRepository(db)
    session = _session(repo)

    assert repo.expire(session) is True
    assert session.status == SessionStatus.EXPIRED.value
    assert repo.find_active(PHONE, Flow.REGISTRATION) is None


def test_one_active_session_per_phone_and_flow(db):
    repo = SessionRepository(db)
    _session(repo)

    with pytest.raises(IntegrityError):
        _session(repo)
    db.rollback()


def test_finished_sessions_do_not_block_new_ones(db):
    repo = SessionRepository(db)
    first = _session(repo)
    repo.expire(first)

    second = _session(repo)

    assert second.id != first.id


def test_latest_registration_data_skips_incomplete_sessions(db):
    repo = SessionRepository(db)
    done = _session(repo)
    repo.expire(done)
    current = _session(repo, state="VERIFY_CODE", fields={"code_sent": True})

    data = repo.latest_registration_data(PHONE, exclude_id=current.id)

    assert data["nuit"] == "123456789"


async def test_expired_session_rejected(db):
    repo = SessionRepository(db)
    session = _session(repo)
    controller = SessionController(db, SlowExecutor(), clock=lambda: NOW + timedelta(seconds=settings.session_ttl_seconds + 1))

    with pytest.raises(SessionExpiredError):
        await controller.continue_session(session.id, "1")

    db.refresh(session)
    assert session.status == SessionStatus.EXPIRED.value


async def test_busy_session_gives_up(db, monkeypatch):
    monkeypatch.setattr(settings, "session_wait_attempts", 2)
    monkeypatch.setattr(settings, "session_wait_interval", 0.01)
    repo = SessionRepository(db)
    session = _session(repo)
    repo.claim(session, NOW, 600)
    controller = SessionController(db, SlowExecutor(), clock=lambda: NOW + timedelta(seconds=1))

    with pytest.raises(SessionBusyError):
        await controller.continue_session(session.id, "1")


async def test_repeated_key_after_reply_is_a_new_keystroke(db):
    session = _session(SessionRepository(db), state=WELCOME)
    controller = SessionController(db, SlowExecutor(), clock=lambda: NOW + timedelta(seconds=1))

    first = await controller.continue_session(session.id, "1")
    second = await controller.continue_session(session.id, "1")

    assert first.message == "CON Digite seu NUIT (9 digitos):"
    assert second.message.startswith("CON NUIT invalido")


async def test_concurrent_confirms_run_the_sweep_once(db, monkeypatch):
    """Two copies of the same keystroke: one runs, the other waits and replays"""
    monkeypatch.setattr(settings, "session_wait_interval", 0.02)
    session = _session(SessionRepository(db))
    executor = SlowExecutor(delay=0.1)

    first_db, second_db = TestingSessionLocal(), TestingSessionLocal()
    try:
        clock = lambda: NOW + timedelta(seconds=1)
        first = SessionController(first_db, executor, clock=clock)
        second = SessionController(second_db, executor, clock=clock)
        replies = await asyncio.gather(
            first.continue_session(session.id, "1"),
            second.continue_session(session.id, "1"),
        )
    finally:
        first_db.close()
        second_db.close()

    assert executor.calls == 1
    assert replies[0].message == replies[1].message
    assert replies[0].message.startswith("END REGISTRO APROVADO")

    db.expire_all()
    stored = db.get(UssdSession, session.id)
    assert stored.state == REGISTERED
    assert stored.status == SessionStatus.COMPLETED.value
    assert stored.locked_until is None


async def test_step_failure_ends_in_error_state(db):
    class BrokenExecutor:
        async def execute(self, command, ctx):
            raise RuntimeError("partner exploded")

    session = _session(SessionRepository(db))
    controller = SessionController(db, BrokenExecutor(), clock=lambda: NOW)

    result = await controller.continue_session(session.id, "1")

    assert result.message == "END Erro ao processar. Tente novamente mais tarde."
    db.refresh(session)
    assert session.status == SessionStatus.ERROR.value
    assert session.state == ERROR
    assert session.locked_until is None
