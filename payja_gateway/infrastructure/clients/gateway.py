"""Partner gateway: concurrent eligibility sweeps and disbursement with retry"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from payja_gateway.config import settings
from payja_gateway.domain.exceptions import PartnerUnavailableError
from payja_gateway.domain.models import (
    BalanceResult,
    DisbursementResult,
    EligibilityIdentity,
    EligibilityResult,
    PartnerAttempt,
    SweepOutcome,
)
from payja_gateway.infrastructure.clients.partners import PartnerAdapter, PartnerRegistry
from payja_gateway.infrastructure.observability.metrics import (
    disbursement_failure_counter,
    record_partner_call,
)

logger = logging.getLogger(__name__)


class PartnerGateway:
    """Typed, time-bounded calls to partner adapters"""

    def __init__(
        self,
        registry: PartnerRegistry,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.registry = registry
        self.timeout = timeout or settings.partner_timeout_seconds
        self.max_attempts = max_attempts or settings.disbursement_max_attempts
        self.backoff_base = settings.disbursement_backoff_base if backoff_base is None else backoff_base

    async def check_eligibility(
        self,
        adapter: PartnerAdapter,
        identity: EligibilityIdentity,
    ) -> Tuple[Optional[EligibilityResult], PartnerAttempt]:
        """
        One eligibility call bounded by the adapter's timeout.

        Never raises for partner failures: a timeout or error comes back as an
        attempt with responded=False and no result.
        """
        timeout = min(adapter.timeout, self.timeout)
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(adapter.check_eligibility(identity), timeout=timeout)
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start
            record_partner_call(adapter.code, "timeout", elapsed)
            logger.warning("Partner eligibility timed out", extra={"partner": adapter.code, "timeout": timeout})
            return None, PartnerAttempt(adapter.code, responded=False, error="timeout", duration_ms=elapsed * 1000)
        except PartnerUnavailableError as e:
            elapsed = time.monotonic() - start
            record_partner_call(adapter.code, "error", elapsed)
            logger.warning(f"Partner eligibility failed: {e}", extra={"partner": adapter.code})
            return None, PartnerAttempt(adapter.code, responded=False, error=str(e), duration_ms=elapsed * 1000)
        except Exception as e:
            elapsed = time.monotonic() - start
            record_partner_call(adapter.code, "error", elapsed)
            logger.exception("Partner eligibility raised", extra={"partner": adapter.code})
            return None, PartnerAttempt(
                adapter.code, responded=False, error=f"{type(e).__name__}: {e}", duration_ms=elapsed * 1000
            )

        elapsed = time.monotonic() - start
        record_partner_call(adapter.code, "eligible" if result.eligible else "not_eligible", elapsed)
        attempt = PartnerAttempt(
            adapter.code,
            responded=True,
            eligible=result.eligible,
            error=None if result.eligible else result.reason,
            duration_ms=elapsed * 1000,
        )
        return result, attempt

    async def eligibility_sweep(
        self,
        adapters: Sequence[PartnerAdapter],
        identity: EligibilityIdentity,
    ) -> SweepOutcome:
        """
        Ask every partner at once and pick the first eligible one in the given
        priority order.

        Results are consumed in order, so a fast answer from a low-priority
        partner never beats a slower higher-priority one. Once a winner is
        known the calls still in flight are cancelled and left out of the
        attempts.
        """
        tasks = [asyncio.create_task(self.check_eligibility(adapter, identity)) for adapter in adapters]
        attempts: List[PartnerAttempt] = []
        winner: Optional[EligibilityResult] = None

        try:
            for task in tasks:
                result, attempt = await task
                attempts.append(attempt)
                if result is not None and result.eligible:
                    winner = result
                    break
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info(
            "Eligibility sweep finished",
            extra={
                "partners": [a.partner_code for a in attempts],
                "winner": winner.partner_code if winner else None,
            },
        )
        return SweepOutcome(winner=winner, attempts=attempts)

    async def disburse(
        self,
        adapter: PartnerAdapter,
        reference: str,
        amount: float,
        destination: str,
        nuit: Optional[str] = None,
    ) -> DisbursementResult:
        """
        Send money with retry logic.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ... (base * 2^(attempt-1))
        - Retries on timeouts and partner errors only; an explicit refusal
          from the partner is final
        - Gives up after max_attempts and returns an unsuccessful result
        """
        attempt = 0
        while True:
            attempt += 1
            start = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    adapter.disburse(reference, amount, destination, nuit=nuit),
                    timeout=min(adapter.timeout, self.timeout),
                )
                record_partner_call(adapter.code, "disbursed" if result.success else "refused", time.monotonic() - start)
                if not result.success:
                    disbursement_failure_counter.inc()
                return replace(result, attempts=attempt)

            except (PartnerUnavailableError, asyncio.TimeoutError) as e:
                disbursement_failure_counter.inc()
                record_partner_call(adapter.code, "error", time.monotonic() - start)
                error = str(e) or "timeout"
                logger.warning(
                    f"Disbursement attempt {attempt} failed: {error}",
                    extra={"partner": adapter.code, "reference": reference},
                )

                if attempt >= self.max_attempts:
                    return DisbursementResult(
                        partner_code=adapter.code,
                        success=False,
                        amount=amount,
                        error=error,
                        attempts=attempt,
                    )

                backoff = self.backoff_base * (2 ** (attempt - 1))
                await asyncio.sleep(backoff)

    async def wallet_balance(self, phone: str) -> BalanceResult:
        """Balance from the operator serving the number; inactive when it cannot answer"""
        adapter = self.registry.for_phone(phone)
        try:
            return await asyncio.wait_for(adapter.balance(phone), timeout=min(adapter.timeout, self.timeout))
        except (PartnerUnavailableError, asyncio.TimeoutError) as e:
            logger.warning(f"Balance query failed: {e}", extra={"partner": adapter.code})
            return BalanceResult(operator=adapter.code, active=False)

    async def test_connection(self, adapter: PartnerAdapter) -> Tuple[bool, str]:
        try:
            await asyncio.wait_for(adapter.test_connection(), timeout=min(adapter.timeout, self.timeout))
        except (PartnerUnavailableError, asyncio.TimeoutError) as e:
            return False, str(e) or "timeout"
        return True, "Conexao estabelecida com sucesso"
