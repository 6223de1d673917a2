import sqlite3
import threading
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import ANY, MagicMock, patch

from smartcompras.domain.contracts import (
    KIND_EXPENSE,
    KIND_FUEL_STOCK,
    STATUS_DIRECTOR_APPROVED,
    STATUS_MANAGER_APPROVED,
    STATUS_PENDING,
    ApprovalVote,
    DepartmentAllocation,
    ExpensePayload,
    FuelStockPayload,
    Requisition,
    RequisitionFilter,
)
from smartcompras.errors import NotFoundError, StoreUnavailableError, TransitionError
from smartcompras.db import psycopg2
from smartcompras.infrastructure.ledger_store import LedgerStore
from smartcompras.infrastructure.repositories.requisition_repository import RequisitionRepository, escape_like
from tests.helpers.temp_db import TempDbSandbox
from tests.requisition_utils import DEPT_A, DEPT_B, DIRECTOR_ID, single_quote, split_60_40, two_quotes


def _expense(descricao="Compra de notebooks", requester_id=1, created_at=None, quotes=None, allocations=None):
    requisition = Requisition(
        kind=KIND_EXPENSE,
        descricao=descricao,
        requester_id=requester_id,
        director_id=DIRECTOR_ID,
        payload=ExpensePayload(quotes=tuple(quotes or single_quote())),
        allocations=tuple(allocations or split_60_40()),
    )
    if created_at is not None:
        requisition = replace(requisition, created_at=created_at)
    return requisition


def _fuel(descricao="Diesel para o patio", department_id=DEPT_B):
    return Requisition(
        kind=KIND_FUEL_STOCK,
        descricao=descricao,
        requester_id=1,
        director_id=DIRECTOR_ID,
        payload=FuelStockPayload(modelo="Tanque 5000L", marca="Ipiranga", quantity_liters=3000, fuel_type="diesel"),
        allocations=(DepartmentAllocation(department_id=department_id, percentage=100.0),),
    )


def _vote(approver_id, role="manager", departments=(), decision="approved", quote_id=None):
    return ApprovalVote(
        approver_id=approver_id,
        role=role,
        decision=decision,
        department_ids=tuple(departments),
        quote_id=quote_id,
    )


def _count(db_path: str, table: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
    finally:
        conn.close()


class LedgerStoreTestCase(unittest.TestCase):
    timeout_seconds = 2.0

    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="ledger_store")
        self.store = LedgerStore(self._temp_db.db_path, timeout_seconds=self.timeout_seconds)
        self.store.ensure_schema()

    def tearDown(self) -> None:
        self._temp_db.cleanup()


class LedgerStoreCreateTest(LedgerStoreTestCase):
    def test_create_persists_quotes_items_allocations_and_event(self) -> None:
        outcome = self.store.create(_expense(quotes=two_quotes()))
        requisition = outcome.requisition

        self.assertIsNotNone(requisition.id)
        self.assertIsNone(outcome.from_status)
        self.assertEqual(outcome.to_status, STATUS_PENDING)
        self.assertIsNotNone(outcome.status_event_id)

        loaded = self.store.get(requisition.id)
        self.assertEqual(loaded.status, STATUS_PENDING)
        self.assertEqual(len(loaded.payload.quotes), 2)
        self.assertTrue(all(quote.id for quote in loaded.payload.quotes))
        self.assertEqual([len(quote.items) for quote in loaded.payload.quotes], [1, 2])
        self.assertEqual(loaded.payload.quotes[1].total, 950.0)
        self.assertEqual(loaded.department_ids, (DEPT_A, DEPT_B))
        self.assertFalse(loaded.printed)

        history = self.store.history(requisition.id)
        self.assertEqual([(row["from_status"], row["to_status"]) for row in history], [(None, STATUS_PENDING)])

    def test_fuel_payload_round_trips_through_json_column(self) -> None:
        requisition = self.store.create(_fuel()).requisition
        loaded = self.store.get(requisition.id)
        self.assertEqual(loaded.payload, requisition.payload)
        self.assertEqual(loaded.payload.quantity_liters, 3000)

    def test_failed_create_leaves_no_partial_record(self) -> None:
        with patch.object(self.store.allocations, "insert_allocations", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.store.create(_expense())

        for table in ("requisitions", "supplier_quotes", "line_items", "department_allocations", "status_events"):
            self.assertEqual(_count(self._temp_db.db_path, table), 0, table)

    def test_cancelled_create_leaves_no_partial_record(self) -> None:
        with patch.object(self.store.status_events, "insert", side_effect=KeyboardInterrupt()):
            with self.assertRaises(KeyboardInterrupt):
                self.store.create(_expense())

        self.assertEqual(_count(self._temp_db.db_path, "requisitions"), 0)
        self.assertEqual(_count(self._temp_db.db_path, "line_items"), 0)

    def test_database_constraint_rolls_back_whole_create(self) -> None:
        duplicated = [
            DepartmentAllocation(department_id=DEPT_A, percentage=50.0),
            DepartmentAllocation(department_id=DEPT_A, percentage=50.0),
        ]
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.create(_expense(allocations=duplicated))
        self.assertEqual(_count(self._temp_db.db_path, "requisitions"), 0)

    def test_get_unknown_id(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.store.get(404)
        self.assertEqual(ctx.exception.http_status, 404)
        self.assertEqual(ctx.exception.payload["requisition_id"], 404)


class LedgerStoreVoteTest(LedgerStoreTestCase):
    def test_append_vote_persists_vote_status_and_event(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id

        first = self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
        self.assertFalse(first.changed)
        self.assertIsNone(first.status_event_id)

        second = self.store.append_vote(requisition_id, _vote(102, departments=[DEPT_B]))
        self.assertEqual((second.from_status, second.to_status), (STATUS_PENDING, STATUS_MANAGER_APPROVED))
        self.assertIsNotNone(second.status_event_id)

        final = self.store.append_vote(requisition_id, _vote(DIRECTOR_ID, role="director"))
        approved = final.requisition
        self.assertEqual(approved.status, STATUS_DIRECTOR_APPROVED)
        self.assertTrue(approved.rateada)
        self.assertIsNotNone(approved.approved_at)
        self.assertTrue(approved.verification_code)
        self.assertEqual(approved.selected_quote_id, approved.payload.quotes[0].id)
        self.assertEqual([a.allocated_amount for a in approved.allocations], [600.0, 400.0])
        self.assertEqual([vote.approver_id for vote in approved.votes], [101, 102, DIRECTOR_ID])

        history = self.store.history(requisition_id)
        self.assertEqual(
            [row["to_status"] for row in history],
            [STATUS_PENDING, STATUS_MANAGER_APPROVED, STATUS_DIRECTOR_APPROVED],
        )

    def test_rejected_vote_is_not_persisted(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        with self.assertRaises(TransitionError):
            self.store.append_vote(requisition_id, _vote(DIRECTOR_ID, role="director"))
        self.assertEqual(_count(self._temp_db.db_path, "approval_votes"), 0)
        self.assertEqual(self.store.get(requisition_id).status, STATUS_PENDING)

    def test_vote_on_unknown_requisition(self) -> None:
        with self.assertRaises(NotFoundError):
            self.store.append_vote(55, _vote(101, departments=[DEPT_A]))

    def test_mark_printed_requires_director_approval(self) -> None:
        requisition_id = self.store.create(_fuel()).requisition.id
        with self.assertRaises(TransitionError) as ctx:
            self.store.mark_printed(requisition_id)
        self.assertEqual(ctx.exception.code, "not_printable")
        self.assertFalse(self.store.get(requisition_id).printed)

        self.store.append_vote(requisition_id, _vote(102, departments=[DEPT_B]))
        self.store.append_vote(requisition_id, _vote(DIRECTOR_ID, role="director"))
        self.assertTrue(self.store.mark_printed(requisition_id).printed)
        self.assertTrue(self.store.mark_printed(requisition_id).printed)

    def test_find_by_verification_code(self) -> None:
        store = LedgerStore(self._temp_db.db_path, verification_code_factory=lambda: "ABC123DEF456")
        requisition_id = store.create(_fuel()).requisition.id
        store.append_vote(requisition_id, _vote(102, departments=[DEPT_B]))
        store.append_vote(requisition_id, _vote(DIRECTOR_ID, role="director"))

        found = store.find_by_verification_code("abc123def456")
        self.assertEqual(found.id, requisition_id)

        with self.assertRaises(NotFoundError) as ctx:
            store.find_by_verification_code("nope")
        self.assertEqual(ctx.exception.code, "verification_code_not_found")

    def test_status_event_outbox(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        pending = self.store.pending_status_events()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["entity_id"], requisition_id)

        self.store.mark_event_delivered(pending[0]["id"])
        self.assertEqual(self.store.pending_status_events(), [])


class LedgerStoreConcurrencyTest(LedgerStoreTestCase):
    def test_concurrent_manager_votes_are_serialized(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        barrier = threading.Barrier(2)
        errors = []

        def _cast(approver_id, department_id):
            barrier.wait()
            try:
                self.store.append_vote(requisition_id, _vote(approver_id, departments=[department_id]))
            except (TransitionError, StoreUnavailableError) as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=_cast, args=(101, DEPT_A)),
            threading.Thread(target=_cast, args=(102, DEPT_B)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        requisition = self.store.get(requisition_id)
        self.assertEqual(requisition.status, STATUS_MANAGER_APPROVED)
        self.assertEqual(len(requisition.votes), 2)
        history = self.store.history(requisition_id)
        self.assertEqual([row["to_status"] for row in history], [STATUS_PENDING, STATUS_MANAGER_APPROVED])

    def test_same_vote_raced_twice_is_accepted_once(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        barrier = threading.Barrier(4)
        results = []

        def _cast():
            barrier.wait()
            try:
                self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
                results.append("ok")
            except TransitionError as exc:
                results.append(exc.code)

        threads = [threading.Thread(target=_cast) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(results), ["duplicate_vote", "duplicate_vote", "duplicate_vote", "ok"])
        self.assertEqual(_count(self._temp_db.db_path, "approval_votes"), 1)

    def test_lock_map_is_emptied_after_writes(self) -> None:
        ids = [self.store.create(_expense()).requisition.id for _ in range(3)]
        for requisition_id in ids:
            self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
        with self.assertRaises(TransitionError):
            self.store.mark_printed(ids[0])
        self.assertEqual(self.store._locks, {})

    def test_votes_and_prints_lock_the_row_inside_the_transaction(self) -> None:
        requisition_id = self.store.create(_fuel()).requisition.id
        with patch.object(self.store.requisitions, "lock_for_update") as lock_row:
            self.store.append_vote(requisition_id, _vote(102, departments=[DEPT_B]))
            self.store.append_vote(requisition_id, _vote(DIRECTOR_ID, role="director"))
            self.store.mark_printed(requisition_id)
        self.assertEqual(lock_row.call_count, 3)
        lock_row.assert_called_with(ANY, requisition_id)

    def test_row_lock_uses_select_for_update_on_postgres(self) -> None:
        postgres = MagicMock(backend="postgres")
        RequisitionRepository().lock_for_update(postgres, 7)
        sql, params = postgres.execute.call_args.args
        self.assertIn("FOR UPDATE", sql)
        self.assertEqual(params, (7,))

        sqlite_db = MagicMock(backend="sqlite")
        RequisitionRepository().lock_for_update(sqlite_db, 7)
        sqlite_db.execute.assert_not_called()

    def test_unique_constraint_race_maps_to_duplicate_vote(self) -> None:
        errors = [sqlite3.IntegrityError("UNIQUE constraint failed")]
        if psycopg2 is not None:
            errors.append(psycopg2.IntegrityError("duplicate key value violates unique constraint"))
        requisition_id = self.store.create(_expense()).requisition.id
        for error in errors:
            with self.subTest(error=type(error).__module__):
                with patch.object(self.store.votes, "insert", side_effect=error):
                    with self.assertRaises(TransitionError) as ctx:
                        self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
                self.assertEqual(ctx.exception.code, "duplicate_vote")
        self.assertEqual(self.store.get(requisition_id).votes, ())


class LikeEscapingTest(unittest.TestCase):
    def test_wildcards_are_escaped(self) -> None:
        self.assertEqual(escape_like("10%_off"), "10\\%\\_off")
        self.assertEqual(escape_like("a\\b"), "a\\\\b")
        self.assertEqual(escape_like("notebook"), "notebook")


class LedgerStoreTimeoutTest(LedgerStoreTestCase):
    timeout_seconds = 0.1

    def test_lock_wait_is_bounded(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        with self.store._requisition_lock(requisition_id):
            with self.assertRaises(StoreUnavailableError) as ctx:
                self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
        self.assertEqual(ctx.exception.http_status, 503)
        self.assertEqual(ctx.exception.payload["requisition_id"], requisition_id)

    def test_busy_database_maps_to_store_unavailable(self) -> None:
        requisition_id = self.store.create(_expense()).requisition.id
        blocker = sqlite3.connect(self._temp_db.db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with self.assertRaises(StoreUnavailableError):
                self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        self.assertEqual(self.store.get(requisition_id).votes, ())
        self.store.append_vote(requisition_id, _vote(101, departments=[DEPT_A]))
        self.assertEqual(len(self.store.get(requisition_id).votes), 1)


class LedgerStoreListTest(LedgerStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        jan = datetime(2026, 1, 10, 15, 30, tzinfo=timezone.utc)
        feb = datetime(2026, 2, 5, 8, 0, tzinfo=timezone.utc)
        mar = datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)
        self.jan_id = self.store.create(_expense("Cadeiras de escritorio", requester_id=1, created_at=jan)).requisition.id
        self.feb_id = self.store.create(_expense("Notebooks do comercial", requester_id=2, created_at=feb)).requisition.id
        self.mar_id = self.store.create(
            replace(_fuel("Diesel do patio", department_id=30), created_at=mar)
        ).requisition.id

    def _ids(self, filters=RequisitionFilter(), page=1, page_size=20):
        items, total = self.store.list(filters, page, page_size)
        return [item.id for item in items], total

    def test_lists_newest_first_with_total(self) -> None:
        self.assertEqual(self._ids(), ([self.mar_id, self.feb_id, self.jan_id], 3))

    def test_pagination(self) -> None:
        self.assertEqual(self._ids(page=1, page_size=2), ([self.mar_id, self.feb_id], 3))
        self.assertEqual(self._ids(page=2, page_size=2), ([self.jan_id], 3))
        self.assertEqual(self._ids(page=3, page_size=2), ([], 3))

    def test_filters(self) -> None:
        self.assertEqual(self._ids(RequisitionFilter(kind=KIND_FUEL_STOCK)), ([self.mar_id], 1))
        self.assertEqual(self._ids(RequisitionFilter(search="NOTEBOOK")), ([self.feb_id], 1))
        self.assertEqual(self._ids(RequisitionFilter(requester_id=1)), ([self.mar_id, self.jan_id], 2))
        self.assertEqual(self._ids(RequisitionFilter(department_ids=(DEPT_A,))), ([self.feb_id, self.jan_id], 2))
        self.assertEqual(self._ids(RequisitionFilter(department_ids=())), ([], 0))
        self.assertEqual(self._ids(RequisitionFilter(director_id=DIRECTOR_ID))[1], 3)
        self.assertEqual(self._ids(RequisitionFilter(director_id=1)), ([], 0))

    def test_status_filter(self) -> None:
        self.store.append_vote(self.jan_id, _vote(103, departments=[DEPT_A, DEPT_B]))
        self.assertEqual(self._ids(RequisitionFilter(status=STATUS_MANAGER_APPROVED)), ([self.jan_id], 1))
        self.assertEqual(self._ids(RequisitionFilter(status=STATUS_PENDING))[1], 2)

    def test_date_range_is_inclusive_by_day(self) -> None:
        feb_day = datetime(2026, 2, 5, tzinfo=timezone.utc)
        self.assertEqual(
            self._ids(RequisitionFilter(created_from=feb_day, created_to=feb_day)),
            ([self.feb_id], 1),
        )
        self.assertEqual(
            self._ids(RequisitionFilter(created_to=datetime(2026, 3, 1, tzinfo=timezone.utc))),
            ([self.mar_id, self.feb_id, self.jan_id], 3),
        )
        self.assertEqual(
            self._ids(RequisitionFilter(created_from=datetime(2026, 1, 11, tzinfo=timezone.utc))),
            ([self.mar_id, self.feb_id], 2),
        )


if __name__ == "__main__":
    unittest.main()
