"""
Wallet solvency prechecks.

A failed balance lookup is an answer ("cannot confirm solvency"), not a fault:
``precheck`` never raises for oracle-side problems, and
``precheck_and_record`` writes exactly one BalanceCheck row per call.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from ..chains import Chain, GAS_RESERVES
from ..errors import OracleError, TransportError
from ..models import BalanceCheck, BalanceCheckStatus
from ..repositories import BalanceCheckRepository
from ..schemas import PrecheckRecord, PrecheckResult, Shortfall
from ..utils import utcnow
from .oracle import BalanceOracle

logger = logging.getLogger(__name__)

TOKEN_SHORTFALL_PRECISION = Decimal("0.000001")


class BalanceVerifier:

    def __init__(self, oracle: BalanceOracle, balance_checks: BalanceCheckRepository,
                 timeout: float = 10.0):
        self.oracle = oracle
        self.balance_checks = balance_checks
        self.timeout = timeout

    @property
    def provider_name(self) -> str:
        return getattr(self.oracle, "name", type(self.oracle).__name__)

    async def precheck(self, address: str, chain: Chain, amount_usd: Decimal,
                       timeout: Optional[float] = None) -> PrecheckResult:
        amount_usd = Decimal(str(amount_usd))
        logger.info("Precheck: %s on %s for $%s", address, chain.value, amount_usd)
        try:
            balances = await asyncio.wait_for(
                self.oracle.get_balances(address, chain),
                timeout=timeout or self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Precheck timed out for %s on %s", address, chain.value)
            return PrecheckResult(can_pay=False, required_amount=amount_usd, error="Balance lookup timed out")
        except (OracleError, TransportError) as e:
            logger.warning("Precheck failed for %s on %s: %s", address, chain.value, e.message)
            return PrecheckResult(can_pay=False, required_amount=amount_usd, error=e.message)
        except Exception as e:
            logger.exception("Precheck crashed for %s on %s", address, chain.value)
            return PrecheckResult(can_pay=False, required_amount=amount_usd, error=str(e) or "Balance lookup failed")

        gas_reserve = GAS_RESERVES[chain]
        has_enough_token = balances.stable_balance >= amount_usd
        has_enough_gas = balances.native_balance >= gas_reserve
        can_pay = has_enough_token and has_enough_gas

        result = PrecheckResult(
            can_pay=can_pay,
            stable_balance=balances.stable_balance,
            native_balance=balances.native_balance,
            estimated_gas=gas_reserve,
            required_amount=amount_usd,
        )
        if not can_pay:
            token_gap = "0" if has_enough_token else str(
                (amount_usd - balances.stable_balance).quantize(TOKEN_SHORTFALL_PRECISION)
            )
            native_gap = "0" if has_enough_gas else str(gas_reserve - balances.native_balance)
            result.shortfall = Shortfall(token=token_gap, native=native_gap)

        logger.info("Precheck result for %s: can_pay=%s", address, can_pay)
        return result

    async def precheck_and_record(self, user_id: str, address: str, chain: Chain,
                                  amount_usd: Decimal, metadata: Optional[dict] = None) -> PrecheckRecord:
        amount_usd = Decimal(str(amount_usd))
        logger.info("Performing balance check for user: %s, wallet: %s, amount: $%s", user_id, address, amount_usd)

        check_metadata = dict(metadata or {})
        try:
            result = await self.precheck(address, chain, amount_usd)
            if result.error:
                status = BalanceCheckStatus.ERROR
            elif result.can_pay:
                status = BalanceCheckStatus.SUFFICIENT
            else:
                status = BalanceCheckStatus.INSUFFICIENT
            check_metadata["precheck_details"] = result.model_dump(mode="json")
            error_message = result.error
        except Exception as e:
            logger.exception("Balance check failed for user %s", user_id)
            result = PrecheckResult(can_pay=False, required_amount=amount_usd, error=str(e))
            status = BalanceCheckStatus.ERROR
            error_message = str(e) or "Unknown error during balance check"

        check = await self.balance_checks.add(BalanceCheck(
            user_id=user_id,
            wallet_address=address,
            chain=chain.value,
            requested_amount=amount_usd,
            actual_balance=result.stable_balance,
            status=status,
            provider=self.provider_name,
            error_message=error_message,
            check_metadata=check_metadata,
        ))
        return PrecheckRecord(result=result, balance_check_id=check.id, status=status)

    async def recent_sufficient_check(self, user_id: str, address: str, chain: Chain,
                                      amount_usd: Decimal, within_minutes: int = 5) -> Optional[BalanceCheck]:
        since = utcnow() - timedelta(minutes=within_minutes)
        return await self.balance_checks.latest_sufficient(
            user_id, address, chain.value, Decimal(str(amount_usd)), since,
        )
