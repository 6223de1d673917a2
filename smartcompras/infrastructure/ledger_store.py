from __future__ import annotations

import contextlib
import json
import logging
import secrets
import sqlite3
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Tuple

from smartcompras.db import Database, _connect_database, init_schema, psycopg2
from smartcompras.domain.contracts import (
    KIND_EXPENSE,
    KIND_FLEET,
    KIND_FUEL_STOCK,
    STATUS_DIRECTOR_APPROVED,
    ApprovalVote,
    DepartmentAllocation,
    DepartmentCost,
    ExpensePayload,
    FleetPayload,
    FuelStockPayload,
    LineItem,
    Requisition,
    RequisitionFilter,
    RequisitionPayload,
    SupplierQuote,
    TransitionOutcome,
    utc_now,
)
from smartcompras.errors import NotFoundError, StoreUnavailableError, TransitionError
from smartcompras.infrastructure.repositories import (
    AllocationRepository,
    QuoteRepository,
    RequisitionRepository,
    StatusEventRepository,
    VoteRepository,
)
from smartcompras.infrastructure.repositories.base import from_db_timestamp, to_db_timestamp
from smartcompras.requisitions.approval_flow import apply_vote, ensure_printable


LOGGER = logging.getLogger("smartcompras.ledger")

_UNAVAILABLE_MARKERS = ("database is locked", "database is busy", "unable to open database")


def _unavailable_errors() -> Tuple[type, ...]:
    errors: Tuple[type, ...] = (sqlite3.OperationalError,)
    if psycopg2 is not None:
        errors = errors + (psycopg2.OperationalError,)
    return errors


def _integrity_errors() -> Tuple[type, ...]:
    errors: Tuple[type, ...] = (sqlite3.IntegrityError,)
    if psycopg2 is not None:
        errors = errors + (psycopg2.IntegrityError,)
    return errors


def _is_unavailable(exc: BaseException) -> bool:
    if psycopg2 is not None and isinstance(exc, psycopg2.OperationalError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)


def default_verification_code() -> str:
    return secrets.token_hex(6).upper()


class _HeldLock:
    """Per-requisition lock, dropped from the map once nobody holds or waits on it."""

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class LedgerStore:
    """Durable record of requisitions, their votes and status events.

    Every write runs under a per-requisition lock and a single database
    transaction; both waits are bounded by ``timeout_seconds``. The thread
    lock only covers this process, so votes and prints also lock the
    requisition row inside the transaction (``SELECT ... FOR UPDATE`` on
    Postgres, ``BEGIN IMMEDIATE`` on SQLite).
    """

    def __init__(
        self,
        db_path: str,
        *,
        timeout_seconds: float = 5.0,
        verification_code_factory: Callable[[], str] | None = None,
    ) -> None:
        self.db_path = db_path
        self.timeout_seconds = float(timeout_seconds)
        self._verification_code_factory = verification_code_factory or default_verification_code
        self._locks: Dict[int, _HeldLock] = {}
        self._locks_guard = threading.Lock()

        self.requisitions = RequisitionRepository()
        self.quotes = QuoteRepository()
        self.allocations = AllocationRepository()
        self.votes = VoteRepository()
        self.status_events = StatusEventRepository()

    @contextlib.contextmanager
    def _connection(self):
        try:
            db = _connect_database(self.db_path, timeout=self.timeout_seconds)
        except _unavailable_errors() as exc:
            raise StoreUnavailableError(details=str(exc)) from exc
        try:
            yield db
        except _unavailable_errors() as exc:
            if not _is_unavailable(exc):
                raise
            raise StoreUnavailableError(details=str(exc)) from exc
        finally:
            db.close()

    @contextlib.contextmanager
    def _write(self):
        with self._connection() as db:
            with db.transaction():
                yield db

    @contextlib.contextmanager
    def _requisition_lock(self, requisition_id: int):
        key = int(requisition_id)
        with self._locks_guard:
            held = self._locks.get(key)
            if held is None:
                held = self._locks[key] = _HeldLock()
            held.holders += 1
        try:
            if not held.lock.acquire(timeout=self.timeout_seconds):
                LOGGER.warning(
                    "requisition_lock_timeout",
                    extra={"requisition_id": requisition_id, "timeout_seconds": self.timeout_seconds},
                )
                raise StoreUnavailableError(payload={"requisition_id": requisition_id})
            try:
                yield
            finally:
                held.lock.release()
        finally:
            with self._locks_guard:
                held.holders -= 1
                if held.holders == 0:
                    del self._locks[key]

    def ensure_schema(self) -> None:
        with self._connection() as db:
            init_schema(db)

    def create(self, requisition: Requisition, *, actor_id: int | None = None) -> TransitionOutcome:
        """Persist a new requisition with its quotes, items and rateio in one transaction."""
        now = requisition.created_at or utc_now()
        created_at = to_db_timestamp(now)
        payload_json = "{}"
        if not isinstance(requisition.payload, ExpensePayload):
            payload_json = json.dumps(requisition.payload.to_dict(), ensure_ascii=True)

        with self._write() as db:
            requisition_id = self.requisitions.insert(
                db,
                {
                    "kind": requisition.kind,
                    "descricao": requisition.descricao.strip(),
                    "status": requisition.status,
                    "requester_id": requisition.requester_id,
                    "director_id": requisition.director_id,
                    "payload_json": payload_json,
                    "created_at": created_at,
                },
            )
            if isinstance(requisition.payload, ExpensePayload):
                self.quotes.insert_quotes(db, requisition_id, requisition.payload.quotes)
            self.allocations.insert_allocations(db, requisition_id, requisition.allocations)
            status_event_id = self.status_events.insert(
                db,
                requisition_id=requisition_id,
                kind=requisition.kind,
                from_status=None,
                to_status=requisition.status,
                actor_user_id=actor_id if actor_id is not None else requisition.requester_id,
                occurred_at=created_at,
            )
            stored = self._load(db, requisition_id)

        LOGGER.info(
            "requisition_created",
            extra={"requisition_id": requisition_id, "kind": requisition.kind, "status": stored.status},
        )
        return TransitionOutcome(
            requisition=stored,
            from_status=None,
            to_status=stored.status,
            status_event_id=status_event_id,
        )

    def append_vote(self, requisition_id: int, vote: ApprovalVote) -> TransitionOutcome:
        with self._requisition_lock(requisition_id):
            with self._write() as db:
                current = self._load_for_update(db, requisition_id)
                updated = apply_vote(current, vote)
                recorded = updated.votes[-1]
                try:
                    self.votes.insert(db, requisition_id, recorded)
                except _integrity_errors() as exc:
                    raise TransitionError(
                        code="duplicate_vote",
                        payload={"requisition_id": requisition_id, "approver_id": vote.approver_id},
                    ) from exc

                if updated.status == STATUS_DIRECTOR_APPROVED:
                    updated = replace(updated, verification_code=self._verification_code_factory())
                    self.allocations.update_amounts(db, requisition_id, updated.allocations)

                now = to_db_timestamp(recorded.timestamp)
                self.requisitions.update_state(
                    db,
                    requisition_id,
                    {
                        "status": updated.status,
                        "selected_quote_id": updated.selected_quote_id,
                        "rateada": updated.rateada,
                        "verification_code": updated.verification_code,
                        "approved_at": to_db_timestamp(updated.approved_at),
                        "rejected_at": to_db_timestamp(updated.rejected_at),
                        "rejected_by": updated.rejected_by,
                    },
                    updated_at=now,
                )

                status_event_id = None
                if updated.status != current.status:
                    status_event_id = self.status_events.insert(
                        db,
                        requisition_id=requisition_id,
                        kind=current.kind,
                        from_status=current.status,
                        to_status=updated.status,
                        actor_user_id=recorded.approver_id,
                        occurred_at=now,
                        reason=recorded.reason,
                    )
                stored = self._load(db, requisition_id)

        LOGGER.info(
            "requisition_vote_recorded",
            extra={
                "requisition_id": requisition_id,
                "approver_id": recorded.approver_id,
                "role": recorded.role,
                "decision": recorded.decision,
                "from_status": current.status,
                "to_status": stored.status,
            },
        )
        return TransitionOutcome(
            requisition=stored,
            from_status=current.status,
            to_status=stored.status,
            status_event_id=status_event_id,
        )

    def mark_printed(self, requisition_id: int) -> Requisition:
        with self._requisition_lock(requisition_id):
            with self._write() as db:
                current = self._load_for_update(db, requisition_id)
                ensure_printable(current)
                self.requisitions.mark_printed(db, requisition_id, updated_at=to_db_timestamp(utc_now()))
                return self._load(db, requisition_id)

    def get(self, requisition_id: int) -> Requisition:
        with self._connection() as db:
            return self._load(db, requisition_id)

    def list(self, filters: RequisitionFilter, page: int, page_size: int) -> Tuple[List[Requisition], int]:
        offset = max(0, (int(page) - 1) * int(page_size))
        with self._connection() as db:
            rows, total = self.requisitions.list_page(db, filters, limit=int(page_size), offset=offset)
            items = [self._hydrate(db, row) for row in rows]
        return items, total

    def department_costs(self, filters: RequisitionFilter) -> List[DepartmentCost]:
        with self._connection() as db:
            rows = self.allocations.totals_by_department(db, filters)
        return [
            DepartmentCost(
                department_id=int(row["department_id"]),
                requisition_count=int(row["requisition_count"]),
                total_amount=round(float(row["total_amount"] or 0), 2),
            )
            for row in rows
        ]

    def find_by_verification_code(self, code: str) -> Requisition:
        normalized = str(code or "").strip().upper()
        with self._connection() as db:
            row = self.requisitions.get_by_verification_code(db, normalized) if normalized else None
            if row is None:
                raise NotFoundError(
                    code="verification_code_not_found",
                    payload={"verification_code": normalized},
                )
            return self._hydrate(db, row)

    def history(self, requisition_id: int) -> List[dict]:
        with self._connection() as db:
            if self.requisitions.get_by_id(db, requisition_id) is None:
                raise NotFoundError(payload={"requisition_id": requisition_id})
            return self.status_events.list_for_requisition(db, requisition_id)

    def pending_status_events(self, *, limit: int = 100) -> List[dict]:
        with self._connection() as db:
            return self.status_events.list_undelivered(db, limit=limit)

    def mark_event_delivered(self, event_id: int) -> None:
        with self._write() as db:
            self.status_events.mark_delivered(db, event_id, delivered_at=to_db_timestamp(utc_now()))

    def _load_for_update(self, db: Database, requisition_id: int) -> Requisition:
        self.requisitions.lock_for_update(db, requisition_id)
        return self._load(db, requisition_id)

    def _load(self, db: Database, requisition_id: int) -> Requisition:
        row = self.requisitions.get_by_id(db, requisition_id)
        if row is None:
            raise NotFoundError(payload={"requisition_id": requisition_id})
        return self._hydrate(db, row)

    def _hydrate(self, db: Database, row: dict) -> Requisition:
        requisition_id = int(row["id"])
        allocations = tuple(
            DepartmentAllocation(
                department_id=int(item["department_id"]),
                percentage=float(item["percentage"]),
                allocated_amount=None if item["allocated_amount"] is None else float(item["allocated_amount"]),
            )
            for item in self.allocations.list_for_requisition(db, requisition_id)
        )
        votes = tuple(
            ApprovalVote(
                approver_id=int(item["approver_id"]),
                role=item["role"],
                decision=item["decision"],
                timestamp=from_db_timestamp(item["voted_at"]),
                department_ids=tuple(int(value) for value in json.loads(item["department_ids"] or "[]")),
                quote_id=None if item["quote_id"] is None else int(item["quote_id"]),
                reason=item["reason"],
            )
            for item in self.votes.list_for_requisition(db, requisition_id)
        )
        return Requisition(
            id=requisition_id,
            kind=row["kind"],
            descricao=row["descricao"],
            requester_id=int(row["requester_id"]),
            director_id=int(row["director_id"]),
            payload=self._payload(db, row),
            allocations=allocations,
            status=row["status"],
            created_at=from_db_timestamp(row["created_at"]),
            votes=votes,
            printed=bool(row["printed"]),
            selected_quote_id=None if row["selected_quote_id"] is None else int(row["selected_quote_id"]),
            rateada=bool(row["rateada"]),
            approved_at=from_db_timestamp(row["approved_at"]),
            rejected_at=from_db_timestamp(row["rejected_at"]),
            rejected_by=None if row["rejected_by"] is None else int(row["rejected_by"]),
            verification_code=row["verification_code"],
        )

    def _payload(self, db: Database, row: dict) -> RequisitionPayload:
        kind = row["kind"]
        if kind == KIND_EXPENSE:
            requisition_id = int(row["id"])
            items_by_quote: Dict[int, List[LineItem]] = {}
            for item in self.quotes.list_items_for_requisition(db, requisition_id):
                items_by_quote.setdefault(int(item["quote_id"]), []).append(
                    LineItem(
                        id=int(item["id"]),
                        description=item["description"],
                        quantity=float(item["quantity"]),
                        unit_price=float(item["unit_price"]),
                    )
                )
            quotes = tuple(
                SupplierQuote(
                    id=int(quote["id"]),
                    supplier_name=quote["supplier_name"],
                    items=tuple(items_by_quote.get(int(quote["id"]), [])),
                    declared_total=float(quote["total_amount"]),
                )
                for quote in self.quotes.list_for_requisition(db, requisition_id)
            )
            return ExpensePayload(quotes=quotes)

        data = json.loads(row["payload_json"] or "{}")
        if kind == KIND_FUEL_STOCK:
            return FuelStockPayload(
                chassi=data.get("chassi"),
                placa=data.get("placa"),
                modelo=data.get("modelo") or "",
                marca=data.get("marca") or "",
                quantity_liters=float(data.get("quantidade_litros") or 0),
                fuel_type=data.get("tipo_combustivel"),
            )
        if kind == KIND_FLEET:
            return FleetPayload(
                vehicle_id=int(data.get("veiculo_id") or 0),
                placa=data.get("placa") or "",
                modelo=data.get("modelo") or "",
                marca=data.get("marca") or "",
                ano=data.get("ano"),
                odometer_km=float(data.get("km_veiculo") or 0),
                quantity_liters=float(data.get("quantidade_litros") or 0),
                fuel_type=data.get("tipo_combustivel") or "",
                full_tank=bool(data.get("tanque_cheio")),
            )
        raise ValueError(f"unknown requisition kind: {kind}")
