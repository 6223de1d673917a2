from __future__ import annotations

import logging
import math
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Sequence, TypeVar

from smartcompras.core.notifications import NotificationSink, Notifier, RequisitionStatusChanged
from smartcompras.domain.contracts import (
    DECISIONS,
    KIND_EXPENSE,
    KIND_FLEET,
    KIND_FUEL_STOCK,
    REQUISITION_KINDS,
    REQUISITION_STATUSES,
    ROLE_ADMIN,
    ROLE_DIRECTOR,
    ROLE_MANAGER,
    ROLE_REQUESTER,
    Actor,
    ApprovalVote,
    DepartmentAllocation,
    DepartmentCost,
    ExpensePayload,
    FleetPayload,
    FuelStockPayload,
    Page,
    Requisition,
    RequisitionFilter,
    RequisitionPayload,
    SupplierQuote,
    TransitionOutcome,
    utc_now,
)
from smartcompras.errors import ForbiddenError, StoreUnavailableError, ValidationError
from smartcompras.infrastructure.ledger_store import LedgerStore
from smartcompras.infrastructure.repositories.base import from_db_timestamp
from smartcompras.observability import (
    observe_requisition_transition,
    observe_store_retry,
    observe_store_unavailable,
)
from smartcompras.policies import CREATE_ROLES, VOTE_ROLES, require_roles
from smartcompras.requisitions.allocation import DEFAULT_EPSILON, validate_allocations, validate_quotes


LOGGER = logging.getLogger("smartcompras.requisitions")

T = TypeVar("T")


def _invalid(code: str, field: str, **payload) -> ValidationError:
    return ValidationError(code=code, message_key=code, payload={"field": field, **payload})


def _finite(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


class RequisitionService:
    """Entry point for every requisition operation.

    Store calls that fail with ``StoreUnavailableError`` are retried with
    exponential backoff; every other error reaches the caller unchanged.
    """

    def __init__(
        self,
        store: LedgerStore,
        sink: NotificationSink | None = None,
        *,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 200,
        allocation_epsilon: float = DEFAULT_EPSILON,
        default_page_size: int = 20,
        max_page_size: int = 100,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.notifier = Notifier(sink)
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff_ms = max(0, int(retry_backoff_ms))
        self.allocation_epsilon = float(allocation_epsilon)
        self.default_page_size = max(1, int(default_page_size))
        self.max_page_size = max(self.default_page_size, int(max_page_size))
        self._sleep = sleep

    def _with_store_retry(self, operation: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn()
            except StoreUnavailableError:
                if attempt >= self.retry_attempts:
                    observe_store_unavailable()
                    LOGGER.error(
                        "store_unavailable",
                        extra={"operation": operation, "attempts": attempt},
                    )
                    raise
                backoff_seconds = (self.retry_backoff_ms / 1000.0) * (2 ** (attempt - 1))
                observe_store_retry(backoff_seconds)
                LOGGER.warning(
                    "store_retry",
                    extra={"operation": operation, "attempt": attempt, "backoff_seconds": backoff_seconds},
                )
                self._sleep(backoff_seconds)
        raise StoreUnavailableError(payload={"operation": operation})

    def _publish(self, outcome: TransitionOutcome, actor_id: int) -> None:
        requisition = outcome.requisition
        if outcome.status_event_id is None:
            return
        observe_requisition_transition(requisition.kind, outcome.from_status, outcome.to_status)
        event = RequisitionStatusChanged(
            requisition_id=int(requisition.id),
            kind=requisition.kind,
            from_status=outcome.from_status,
            to_status=outcome.to_status,
            actor_id=actor_id,
            status_event_id=outcome.status_event_id,
        )
        self._deliver(event)

    def _deliver(self, event: RequisitionStatusChanged) -> bool:
        if not self.notifier.notify(event):
            return False
        try:
            self._with_store_retry(
                "mark_event_delivered",
                lambda: self.store.mark_event_delivered(int(event.status_event_id)),
            )
        except StoreUnavailableError:
            # Transition already committed; the event is redelivered later.
            LOGGER.warning(
                "notification_mark_delivered_failed",
                extra={"status_event_id": event.status_event_id, "requisition_id": event.requisition_id},
            )
            return False
        return True

    def _validate_header(self, descricao: str, director_id: int) -> str:
        normalized = str(descricao or "").strip()
        if not normalized:
            raise _invalid("description_required", "descricao")
        if not isinstance(director_id, int) or isinstance(director_id, bool) or director_id <= 0:
            raise _invalid("director_required", "director_id")
        return normalized

    def _single_department(self, department_id: int | None) -> tuple[DepartmentAllocation, ...]:
        if department_id is None:
            raise _invalid("department_required", "id_departamento")
        if isinstance(department_id, bool) or not isinstance(department_id, int) or department_id <= 0:
            raise _invalid("field_invalid", "id_departamento")
        return (DepartmentAllocation(department_id=department_id, percentage=100.0),)

    def _create(
        self,
        actor: Actor,
        *,
        kind: str,
        descricao: str,
        director_id: int,
        payload: RequisitionPayload,
        allocations: Sequence[DepartmentAllocation],
    ) -> Requisition:
        requisition = Requisition(
            kind=kind,
            descricao=descricao,
            requester_id=actor.user_id,
            director_id=director_id,
            payload=payload,
            allocations=tuple(allocations),
            created_at=utc_now(),
        )
        outcome = self._with_store_retry(
            "create",
            lambda: self.store.create(requisition, actor_id=actor.user_id),
        )
        self._publish(outcome, actor.user_id)
        return outcome.requisition

    def create_expense_requisition(
        self,
        actor: Actor,
        *,
        descricao: str,
        director_id: int,
        quotes: Sequence[SupplierQuote],
        allocations: Sequence[DepartmentAllocation],
    ) -> Requisition:
        require_roles(actor, *CREATE_ROLES)
        normalized = self._validate_header(descricao, director_id)
        validate_quotes(quotes, epsilon=self.allocation_epsilon)
        validate_allocations(allocations, required=True, epsilon=self.allocation_epsilon)
        return self._create(
            actor,
            kind=KIND_EXPENSE,
            descricao=normalized,
            director_id=director_id,
            payload=ExpensePayload(quotes=tuple(quotes)),
            allocations=allocations,
        )

    def create_fuel_stock_requisition(
        self,
        actor: Actor,
        *,
        descricao: str,
        director_id: int,
        payload: FuelStockPayload,
        department_id: int | None,
    ) -> Requisition:
        require_roles(actor, *CREATE_ROLES)
        normalized = self._validate_header(descricao, director_id)
        if not str(payload.modelo or "").strip():
            raise _invalid("field_invalid", "modelo")
        if not str(payload.marca or "").strip():
            raise _invalid("field_invalid", "marca")
        if (_finite(payload.quantity_liters) or 0) <= 0:
            raise _invalid("quantity_invalid", "quantidade_litros")
        allocations = self._single_department(department_id)
        validate_allocations(allocations, required=True, epsilon=self.allocation_epsilon)
        return self._create(
            actor,
            kind=KIND_FUEL_STOCK,
            descricao=normalized,
            director_id=director_id,
            payload=payload,
            allocations=allocations,
        )

    def create_fleet_requisition(
        self,
        actor: Actor,
        *,
        descricao: str,
        director_id: int,
        payload: FleetPayload,
        department_id: int | None,
    ) -> Requisition:
        require_roles(actor, *CREATE_ROLES)
        normalized = self._validate_header(descricao, director_id)
        if int(payload.vehicle_id or 0) <= 0:
            raise _invalid("field_invalid", "veiculo_id")
        if not str(payload.placa or "").strip():
            raise _invalid("field_invalid", "placa")
        if not str(payload.fuel_type or "").strip():
            raise _invalid("field_invalid", "tipo_combustivel")
        odometer = _finite(payload.odometer_km)
        if odometer is None or odometer < 0:
            raise _invalid("field_invalid", "km_veiculo")
        if (_finite(payload.quantity_liters) or 0) <= 0:
            raise _invalid("quantity_invalid", "quantidade_litros")
        allocations = self._single_department(department_id)
        validate_allocations(allocations, required=True, epsilon=self.allocation_epsilon)
        return self._create(
            actor,
            kind=KIND_FLEET,
            descricao=normalized,
            director_id=director_id,
            payload=payload,
            allocations=allocations,
        )

    def submit_vote(
        self,
        actor: Actor,
        requisition_id: int,
        *,
        decision: str,
        quote_id: int | None = None,
        reason: str | None = None,
    ) -> Requisition:
        role = require_roles(actor, *VOTE_ROLES)
        normalized_decision = str(decision or "").strip().lower()
        if normalized_decision not in DECISIONS:
            raise _invalid("decision_invalid", "decision", requisition_id=requisition_id)
        vote = ApprovalVote(
            approver_id=actor.user_id,
            role=role,
            decision=normalized_decision,
            department_ids=tuple(sorted(actor.department_ids)) if role == ROLE_MANAGER else (),
            quote_id=quote_id,
            reason=(str(reason).strip() or None) if reason is not None else None,
        )
        outcome = self._with_store_retry("append_vote", lambda: self.store.append_vote(requisition_id, vote))
        self._publish(outcome, actor.user_id)
        return outcome.requisition

    def _scope_filter(self, actor: Actor, filters: RequisitionFilter) -> RequisitionFilter:
        role = actor.role
        if role == ROLE_ADMIN:
            return filters
        if role == ROLE_REQUESTER:
            return replace(filters, requester_id=actor.user_id)
        if role == ROLE_MANAGER:
            return replace(filters, department_ids=tuple(sorted(actor.department_ids)))
        if role == ROLE_DIRECTOR:
            return replace(filters, director_id=actor.user_id)
        raise ForbiddenError(payload={"role": role})

    def _can_view(self, actor: Actor, requisition: Requisition) -> bool:
        if actor.role == ROLE_ADMIN:
            return True
        if actor.role == ROLE_REQUESTER:
            return requisition.requester_id == actor.user_id
        if actor.role == ROLE_MANAGER:
            return bool(set(actor.department_ids) & set(requisition.department_ids))
        if actor.role == ROLE_DIRECTOR:
            return requisition.director_id == actor.user_id
        return False

    def list_requisitions(
        self,
        actor: Actor,
        *,
        kind: str | None = None,
        status: str | None = None,
        search: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page:
        if kind and kind not in REQUISITION_KINDS:
            raise _invalid("kind_invalid", "kind")
        if status and status not in REQUISITION_STATUSES:
            raise _invalid("field_invalid", "status")
        page = max(1, int(page or 1))
        size = int(page_size or self.default_page_size)
        size = max(1, min(size, self.max_page_size))
        filters = self._scope_filter(
            actor,
            RequisitionFilter(
                kind=kind or None,
                status=status or None,
                search=(search or "").strip() or None,
                created_from=created_from,
                created_to=created_to,
            ),
        )
        items, total = self._with_store_retry("list", lambda: self.store.list(filters, page, size))
        return Page(items=tuple(items), total=total, page=page, page_size=size)

    def get_requisition(self, actor: Actor, requisition_id: int) -> Requisition:
        requisition = self._with_store_retry("get", lambda: self.store.get(requisition_id))
        if not self._can_view(actor, requisition):
            raise ForbiddenError(payload={"requisition_id": requisition_id})
        return requisition

    def requisition_history(self, actor: Actor, requisition_id: int) -> List[dict]:
        self.get_requisition(actor, requisition_id)
        return self._with_store_retry("history", lambda: self.store.history(requisition_id))

    def print_requisition(self, actor: Actor, requisition_id: int) -> Requisition:
        """Flag an approved requisition as printed; reprinting keeps the flag set."""
        requisition = self.get_requisition(actor, requisition_id)
        if actor.role not in {ROLE_REQUESTER, ROLE_DIRECTOR, ROLE_ADMIN}:
            raise ForbiddenError(payload={"requisition_id": requisition.id})
        printed = self._with_store_retry("mark_printed", lambda: self.store.mark_printed(requisition_id))
        LOGGER.info(
            "requisition_printed",
            extra={"requisition_id": requisition_id, "actor_id": actor.user_id},
        )
        return printed

    def verify_requisition(self, actor: Actor, code: str) -> Requisition:
        requisition = self._with_store_retry(
            "find_by_verification_code",
            lambda: self.store.find_by_verification_code(code),
        )
        LOGGER.info(
            "requisition_verified",
            extra={"requisition_id": requisition.id, "actor_id": actor.user_id},
        )
        return requisition

    def department_cost_report(
        self,
        actor: Actor,
        *,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> List[DepartmentCost]:
        """Approved spend per department, from the rateio fixed at director approval.

        Directors only see requisitions addressed to them.
        """
        role = require_roles(actor, ROLE_ADMIN, ROLE_DIRECTOR)
        if created_from is not None and created_to is not None and created_from > created_to:
            raise _invalid("field_invalid", "date_to")
        filters = RequisitionFilter(
            created_from=created_from,
            created_to=created_to,
            director_id=actor.user_id if role == ROLE_DIRECTOR else None,
        )
        return self._with_store_retry("department_costs", lambda: self.store.department_costs(filters))

    def redeliver_notifications(self, actor: Actor, *, limit: int = 100) -> int:
        """Re-send status events the sink has not accepted yet. Returns how many went out."""
        require_roles(actor, ROLE_ADMIN)
        rows = self._with_store_retry("pending_status_events", lambda: self.store.pending_status_events(limit=limit))
        delivered = 0
        for row in rows:
            event = RequisitionStatusChanged(
                requisition_id=int(row["entity_id"]),
                kind=row["kind"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                actor_id=int(row["actor_user_id"] or 0),
                status_event_id=int(row["id"]),
                occurred_at=from_db_timestamp(row["occurred_at"]),
            )
            if self._deliver(event):
                delivered += 1
        LOGGER.info(
            "notifications_redelivered",
            extra={"pending": len(rows), "delivered": delivered},
        )
        return delivered
