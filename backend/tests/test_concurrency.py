"""
Concurrency tests: racing approvals, optimistic retries, lock isolation and
day-level operations racing single-document ones.
"""
import asyncio
import pytest

from services.errors import ConflictError, AuthorizationError
from services.document_store import InMemoryDocumentStore
from services.locks import LockManager
from services.workflow_engine import TransitionExecutor, ALL_DAY_FLAGS

DAY = "2026-03-04"
RACE_TIMEOUT = 5  # seconds


class FlakyStore(InMemoryDocumentStore):
    """Loses the first ``failures`` compare-and-swaps to a simulated writer."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.cas_calls = 0

    async def compare_and_swap(self, collection, doc_id, expected_version, new_document):
        self.cas_calls += 1
        if self.failures > 0:
            self.failures -= 1
            # another process writes an unrelated field in between
            current = await self.get(collection, doc_id)
            current["note"] = f"touched {self.cas_calls}"
            current["version"] += 1
            await super().compare_and_swap(collection, doc_id, expected_version, current)
            return False
        return await super().compare_and_swap(collection, doc_id, expected_version, new_document)


def make_executor(store, locks=None, max_attempts=5):
    return TransitionExecutor(store, locks or LockManager(), dispatcher=None, max_attempts=max_attempts, retry_delay=0, chat_targets={})


async def make_log(executor, stage):
    doc = await executor.create_document("SECURITY_LOG", "guard1", {"date": DAY, "plate": "12A345"})
    if stage == "pending_supervisor":
        return doc
    result = await executor.approve("SECURITY_LOG", doc["id"], "security_head", "sup")
    if stage == "pending_factory":
        return result.document
    result = await executor.approve("SECURITY_LOG", doc["id"], "factory_manager", "fm")
    return result.document


async def race(*operations):
    return await asyncio.wait_for(asyncio.gather(*operations), timeout=RACE_TIMEOUT)


class TestRacingApprovals:
    """Two ingress channels hitting the same document."""

    @pytest.mark.asyncio
    async def test_no_double_advance_across_processes(self):
        """Separate lock managers stand in for separate processes sharing one store."""
        store = InMemoryDocumentStore()
        console = make_executor(store)
        bot = make_executor(store)
        doc = await console.create_document("PAYMENT_ORDER", "sara", {})

        results = await asyncio.gather(
            console.approve("PAYMENT_ORDER", doc["id"], "admin", "root", expected_status="pending"),
            bot.approve("PAYMENT_ORDER", doc["id"], "ceo", "boss", expected_status="pending"),
        )

        assert sum(r.changed for r in results) == 1
        stored = await store.get("PAYMENT_ORDER", doc["id"])
        assert stored["status"] == "finance_approved"
        assert len(stored["approval_stamps"]) == 1
        assert stored["version"] == 2

    @pytest.mark.asyncio
    async def test_exit_permit_ceo_and_admin_race(self):
        """Test a CEO tap and an admin tap on a pending_ceo exit permit advance it once."""
        store = InMemoryDocumentStore()
        bot = make_executor(store)
        console = make_executor(store)
        permit = await bot.create_document("EXIT_PERMIT", "ali", {"goods": "steel coils"})
        assert permit["status"] == "pending_ceo"

        results = await race(
            bot.approve("EXIT_PERMIT", permit["id"], "ceo", "boss", expected_status="pending_ceo"),
            console.approve("EXIT_PERMIT", permit["id"], "admin", "root", expected_status="pending_ceo"),
        )

        assert sum(r.changed for r in results) == 1
        assert all(r.status == "pending_factory" for r in results)
        stored = await store.get("EXIT_PERMIT", permit["id"])
        assert stored["status"] == "pending_factory"
        assert len(stored["approval_stamps"]) == 1
        assert stored["version"] == 2

    @pytest.mark.asyncio
    async def test_same_step_twice(self):
        """Test the losing approver of one step is refused or gets a no-op."""
        store = InMemoryDocumentStore()
        a = make_executor(store)
        b = make_executor(store)
        doc = await a.create_document("PAYMENT_ORDER", "sara", {})

        results = await asyncio.gather(
            a.approve("PAYMENT_ORDER", doc["id"], "financial", "reza"),
            b.approve("PAYMENT_ORDER", doc["id"], "financial", "nima"),
            return_exceptions=True,
        )

        advanced = [r for r in results if not isinstance(r, Exception) and r.changed]
        assert len(advanced) == 1
        for r in results:
            assert not isinstance(r, Exception) or isinstance(r, AuthorizationError)
        stored = await store.get("PAYMENT_ORDER", doc["id"])
        assert stored["status"] == "finance_approved"

    @pytest.mark.asyncio
    async def test_many_racing_approvals_one_advance(self):
        """Test five simultaneous approvals of one step advance the document once."""
        store = InMemoryDocumentStore()
        executors = [make_executor(store) for _ in range(5)]
        doc = await executors[0].create_document("WAREHOUSE_DISPATCH", "keeper", {})

        results = await asyncio.gather(*(
            e.approve("WAREHOUSE_DISPATCH", doc["id"], "ceo", f"ceo{i}", expected_status="pending")
            for i, e in enumerate(executors)
        ))

        assert sum(r.changed for r in results) == 1
        assert all(r.status == "approved" for r in results)

    @pytest.mark.asyncio
    async def test_approve_and_reject_race(self):
        """Test an approve and a reject racing on one document apply exactly one."""
        store = InMemoryDocumentStore()
        a = make_executor(store)
        b = make_executor(store)
        doc = await a.create_document("WAREHOUSE_DISPATCH", "keeper", {})

        results = await asyncio.gather(
            a.approve("WAREHOUSE_DISPATCH", doc["id"], "ceo", "boss"),
            b.reject("WAREHOUSE_DISPATCH", doc["id"], "admin", "root", "cancelled"),
        )

        assert sum(r.changed for r in results) == 1
        stored = await store.get("WAREHOUSE_DISPATCH", doc["id"])
        assert stored["status"] in ("approved", "rejected")
        assert stored["version"] == 2


class TestDayRaces:
    """Day-level batches racing single-document operations on the same day."""

    @pytest.mark.asyncio
    async def test_archive_and_edit_race(self):
        """Test archiving a day while one of its logs is edited always ends with the day reopened."""
        store = InMemoryDocumentStore()
        executor = make_executor(store)
        first = await make_log(executor, "factory_checked")
        second = await make_log(executor, "factory_checked")
        await executor.submit_factory_batch(DAY, "factory_manager", "fm")

        await race(
            executor.archive_day(DAY, "ceo", "boss"),
            executor.edit("SECURITY_LOG", first["id"], "guard1", {"plate": "99B999"}),
        )

        # whichever runs first, the edit leaves no signed level behind
        for log in (first, second):
            assert (await store.get("SECURITY_LOG", log["id"]))["status"] == "pending_supervisor"
        day = await executor.get_day(DAY)
        assert not any(day[f] for f in ALL_DAY_FLAGS)

    @pytest.mark.asyncio
    async def test_factory_batch_and_edit_race(self):
        """Test a factory batch racing an edit never leaves a moved log without its flag."""
        store = InMemoryDocumentStore()
        executor = make_executor(store)
        checked = await make_log(executor, "factory_checked")
        pending = await make_log(executor, "pending_supervisor")

        result, _ = await race(
            executor.submit_factory_batch(DAY, "factory_manager", "fm"),
            executor.edit("SECURITY_LOG", pending["id"], "guard1", {"plate": "11C111"}),
        )

        status = (await store.get("SECURITY_LOG", checked["id"]))["status"]
        day = await executor.get_day(DAY)
        if status == "pending_ceo":
            # batch ran after the edit
            assert result.moved and day["factory_daily_approved"] is True
        else:
            # batch ran first, then the edit reverted its work
            assert status == "pending_supervisor"
            assert day["factory_daily_approved"] is False

    @pytest.mark.asyncio
    async def test_factory_batch_with_approve_and_reject(self):
        """Test single approvals and rejections on the batch's day keep the day consistent."""
        store = InMemoryDocumentStore()
        executor = make_executor(store)
        checked = await make_log(executor, "factory_checked")
        waiting = await make_log(executor, "pending_factory")
        doomed = await make_log(executor, "pending_supervisor")

        await race(
            executor.submit_factory_batch(DAY, "factory_manager", "fm"),
            executor.approve("SECURITY_LOG", waiting["id"], "factory_manager", "fm", expected_status="pending_factory"),
            executor.reject("SECURITY_LOG", doomed["id"], "security_head", "sup", "duplicate entry"),
        )

        assert (await store.get("SECURITY_LOG", checked["id"]))["status"] == "pending_ceo"
        assert (await store.get("SECURITY_LOG", waiting["id"]))["status"] in ("factory_checked", "pending_ceo")
        assert (await store.get("SECURITY_LOG", doomed["id"]))["status"] == "rejected"
        assert (await executor.get_day(DAY))["factory_daily_approved"] is True

    @pytest.mark.asyncio
    async def test_edit_and_approve_same_log(self):
        """Test an approve racing an edit of the same log never survives the edit."""
        store = InMemoryDocumentStore()
        executor = make_executor(store)
        log = await make_log(executor, "pending_factory")

        _, approved = await race(
            executor.edit("SECURITY_LOG", log["id"], "guard1", {"plate": "22D222"}),
            executor.approve("SECURITY_LOG", log["id"], "factory_manager", "fm", expected_status="pending_factory"),
        )

        stored = await store.get("SECURITY_LOG", log["id"])
        assert stored["status"] == "pending_supervisor"
        assert stored["plate"] == "22D222"
        assert approved.status in ("factory_checked", "pending_supervisor")


class TestOptimisticRetry:
    """Compare-and-swap losses are re-read and re-applied."""

    @pytest.mark.asyncio
    async def test_reapplies_on_conflict(self):
        """Test a lost write is retried on top of the concurrent writer's change."""
        store = FlakyStore(failures=2)
        executor = make_executor(store)
        doc = await executor.create_document("PAYMENT_ORDER", "sara", {})

        result = await executor.approve("PAYMENT_ORDER", doc["id"], "financial", "reza")

        assert result.changed
        assert result.status == "finance_approved"
        # the concurrent writer's change survives
        assert result.document["note"] == "touched 2"
        assert store.cas_calls >= 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test a document that keeps changing raises a retryable ConflictError."""
        store = FlakyStore(failures=100)
        executor = make_executor(store, max_attempts=3)
        doc = await executor.create_document("PAYMENT_ORDER", "sara", {})
        store.cas_calls = 0

        with pytest.raises(ConflictError) as exc:
            await executor.approve("PAYMENT_ORDER", doc["id"], "financial", "reza")

        assert exc.value.retryable is True
        assert exc.value.details["attempts"] == 3
        assert store.cas_calls == 3
        stored = await store.get("PAYMENT_ORDER", doc["id"])
        assert stored["status"] == "pending"


class TestLockIsolation:
    """Per-document and per-day locks."""

    @pytest.mark.asyncio
    async def test_distinct_ids_do_not_block(self):
        """Test a held lock on one document does not delay another."""
        store = InMemoryDocumentStore()
        locks = LockManager()
        executor = make_executor(store, locks)
        a = await executor.create_document("PAYMENT_ORDER", "sara", {})
        b = await executor.create_document("PAYMENT_ORDER", "sara", {})

        async with locks.document_lock("PAYMENT_ORDER", a["id"]):
            result = await asyncio.wait_for(
                executor.approve("PAYMENT_ORDER", b["id"], "financial", "reza"), timeout=1
            )
        assert result.changed

    @pytest.mark.asyncio
    async def test_same_id_waits(self):
        """Test an approve waits while its document lock is held."""
        store = InMemoryDocumentStore()
        locks = LockManager()
        executor = make_executor(store, locks)
        doc = await executor.create_document("PAYMENT_ORDER", "sara", {})

        async with locks.document_lock("PAYMENT_ORDER", doc["id"]):
            task = asyncio.ensure_future(executor.approve("PAYMENT_ORDER", doc["id"], "financial", "reza"))
            await asyncio.sleep(0.01)
            assert not task.done()
        result = await task
        assert result.changed

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        """Test nested day and document locks are all released on exit."""
        locks = LockManager()
        async with locks.day_locks(["2026-03-05", "2026-03-04"]):
            assert locks.is_locked("day", "2026-03-04")
            assert locks.is_locked("day", "2026-03-05")
            async with locks.document_lock("SECURITY_LOG", "x"):
                assert locks.active_count == 3
        assert locks.active_count == 0

    @pytest.mark.asyncio
    async def test_batch_waits_for_day_lock(self):
        """Test a batch waits while its day lock is held."""
        store = InMemoryDocumentStore()
        locks = LockManager()
        executor = make_executor(store, locks)

        async with locks.day_lock("2026-03-04"):
            task = asyncio.ensure_future(executor.submit_factory_batch("2026-03-04", "factory_manager", "fm"))
            await asyncio.sleep(0.01)
            assert not task.done()
        result = await task
        assert result.moved == []
