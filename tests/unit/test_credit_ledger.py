import asyncio
from dataclasses import dataclass

import pytest

from app.domain.errors import PersistenceError
from app.domain.ledger import CreditLedger
from app.domain.models import LedgerOutcome
from app.repositories.stub import InMemoryTaskRepository
from tests.unit.engine_fixtures import OWNER, build_engine, create_pending, put_task


@pytest.mark.unit
def test_deduct_once_under_concurrent_callers() -> None:
    async def _run() -> None:
        engine = build_engine(balance=5)
        task = await create_pending(engine)

        outcomes = await asyncio.gather(*(engine.ledger.deduct(task) for _ in range(10)))

        assert outcomes.count(LedgerOutcome.OK) == 1
        assert outcomes.count(LedgerOutcome.ALREADY_DEDUCTED) == 9
        assert engine.repository.balances[OWNER] == 4
        assert engine.repository.tasks[task.task_id].credit_deducted is True

    asyncio.run(_run())


@pytest.mark.unit
def test_refund_once_under_concurrent_callers() -> None:
    async def _run() -> None:
        engine = build_engine(balance=5)
        task = await create_pending(engine)
        await engine.ledger.deduct(task)

        outcomes = await asyncio.gather(*(engine.ledger.refund(task) for _ in range(10)))

        assert outcomes.count(LedgerOutcome.OK) == 1
        assert outcomes.count(LedgerOutcome.ALREADY_REFUNDED) == 9
        assert engine.repository.balances[OWNER] == 5

    asyncio.run(_run())


@pytest.mark.unit
def test_refund_without_deduction_is_a_no_op() -> None:
    async def _run() -> None:
        engine = build_engine(balance=3)
        task = await create_pending(engine)

        assert await engine.ledger.refund(task) == LedgerOutcome.NOT_DEDUCTED
        assert engine.repository.balances[OWNER] == 3
        assert engine.repository.tasks[task.task_id].credit_refunded is False

    asyncio.run(_run())


@pytest.mark.unit
def test_deduct_with_stale_snapshot_reports_already_deducted() -> None:
    async def _run() -> None:
        engine = build_engine(balance=3)
        task = await create_pending(engine)
        put_task(engine.repository, task, credit_deducted=True)

        assert await engine.ledger.deduct(task) == LedgerOutcome.ALREADY_DEDUCTED
        assert engine.repository.balances[OWNER] == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_insufficient_balance_releases_the_latch() -> None:
    async def _run() -> None:
        engine = build_engine(balance=0)
        task = await create_pending(engine)

        assert await engine.ledger.deduct(task) == LedgerOutcome.INSUFFICIENT_BALANCE
        assert engine.repository.balances[OWNER] == 0
        assert engine.repository.tasks[task.task_id].credit_deducted is False
        assert await engine.ledger.refund(task) == LedgerOutcome.NOT_DEDUCTED

    asyncio.run(_run())


@pytest.mark.unit
def test_missing_account_is_insufficient() -> None:
    async def _run() -> None:
        engine = build_engine(balance=None)
        task = await create_pending(engine)

        assert await engine.ledger.has_sufficient_balance(owner_id=OWNER) is False
        assert await engine.ledger.deduct(task) == LedgerOutcome.INSUFFICIENT_BALANCE

    asyncio.run(_run())


@dataclass
class _BrokenBalanceRepository(InMemoryTaskRepository):
    balance_writes: int = 0

    async def adjust_balance(self, *, owner_id: str, delta: int) -> int | None:
        self.balance_writes += 1
        raise PersistenceError("balance table unavailable")


@pytest.mark.unit
def test_balance_write_falls_back_to_privileged_path() -> None:
    async def _run() -> None:
        primary = _BrokenBalanceRepository()
        admin = InMemoryTaskRepository(tasks=primary.tasks, balances={OWNER: 2})
        ledger = CreditLedger(repository=primary, fallback_repository=admin)
        engine = build_engine(balance=None, repository=primary)
        task = await create_pending(engine)

        assert await ledger.deduct(task) == LedgerOutcome.OK
        assert primary.balance_writes == 1
        assert admin.balances[OWNER] == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_failed_balance_write_releases_latch_and_raises() -> None:
    async def _run() -> None:
        repository = _BrokenBalanceRepository(balances={OWNER: 2})
        ledger = CreditLedger(repository=repository)
        engine = build_engine(balance=None, repository=repository)
        task = await create_pending(engine)

        with pytest.raises(PersistenceError):
            await ledger.deduct(task)
        assert repository.tasks[task.task_id].credit_deducted is False

    asyncio.run(_run())


@pytest.mark.unit
def test_refund_to_missing_account_is_reported_not_ok(caplog: pytest.LogCaptureFixture) -> None:
    async def _run() -> None:
        engine = build_engine(balance=5)
        task = await create_pending(engine)
        await engine.ledger.deduct(task)
        del engine.repository.balances[OWNER]

        with caplog.at_level("ERROR", logger="runtime"):
            outcome = await engine.ledger.refund(task)

        assert outcome == LedgerOutcome.ACCOUNT_MISSING
        assert OWNER not in engine.repository.balances
        assert engine.repository.tasks[task.task_id].credit_refunded is True
        assert await engine.ledger.refund(task) == LedgerOutcome.ALREADY_REFUNDED
        anomalies = [record for record in caplog.records if record.getMessage() == "credit refund anomaly"]
        assert [record.outcome for record in anomalies] == ["account_missing"]

    asyncio.run(_run())
