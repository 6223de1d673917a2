from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Tuple, Union


KIND_EXPENSE = "expense"
KIND_FUEL_STOCK = "fuel_stock"
KIND_FLEET = "fleet"
REQUISITION_KINDS: FrozenSet[str] = frozenset({KIND_EXPENSE, KIND_FUEL_STOCK, KIND_FLEET})

STATUS_PENDING = "pending"
STATUS_MANAGER_APPROVED = "manager_approved"
STATUS_DIRECTOR_APPROVED = "director_approved"
STATUS_REJECTED = "rejected"
REQUISITION_STATUSES: FrozenSet[str] = frozenset(
    {STATUS_PENDING, STATUS_MANAGER_APPROVED, STATUS_DIRECTOR_APPROVED, STATUS_REJECTED}
)
TERMINAL_STATUSES: FrozenSet[str] = frozenset({STATUS_DIRECTOR_APPROVED, STATUS_REJECTED})

ROLE_REQUESTER = "requester"
ROLE_MANAGER = "manager"
ROLE_DIRECTOR = "director"
ROLE_ADMIN = "admin"

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"
DECISIONS: FrozenSet[str] = frozenset({DECISION_APPROVED, DECISION_REJECTED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Caller identity as handed over by the authentication collaborator."""

    user_id: int
    role: str
    department_ids: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: float
    unit_price: float
    id: int | None = None

    @property
    def total(self) -> float:
        return float(self.quantity) * float(self.unit_price)


@dataclass(frozen=True)
class SupplierQuote:
    supplier_name: str
    items: Tuple[LineItem, ...]
    declared_total: float | None = None
    id: int | None = None

    @property
    def total(self) -> float:
        return round(sum(item.total for item in self.items), 2)


@dataclass(frozen=True)
class DepartmentAllocation:
    department_id: int
    percentage: float
    allocated_amount: float | None = None


@dataclass(frozen=True)
class ApprovalVote:
    approver_id: int
    role: str
    decision: str
    timestamp: datetime = field(default_factory=utc_now)
    department_ids: Tuple[int, ...] = ()
    quote_id: int | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.decision == DECISION_APPROVED


@dataclass(frozen=True)
class ExpensePayload:
    quotes: Tuple[SupplierQuote, ...]

    kind = KIND_EXPENSE

    def quote_by_id(self, quote_id: int | None) -> SupplierQuote | None:
        for quote in self.quotes:
            if quote.id is not None and quote.id == quote_id:
                return quote
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fornecedores": [
                {
                    "id": quote.id,
                    "nome": quote.supplier_name,
                    "valor_total": quote.total,
                    "itens": [
                        {
                            "id": item.id,
                            "descricao_item": item.description,
                            "qtde": item.quantity,
                            "valor_unitario": item.unit_price,
                        }
                        for item in quote.items
                    ],
                }
                for quote in self.quotes
            ]
        }


@dataclass(frozen=True)
class FuelStockPayload:
    modelo: str
    marca: str
    quantity_liters: float
    chassi: str | None = None
    placa: str | None = None
    fuel_type: str | None = None

    kind = KIND_FUEL_STOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chassi": self.chassi,
            "placa": self.placa,
            "modelo": self.modelo,
            "marca": self.marca,
            "quantidade_litros": self.quantity_liters,
            "tipo_combustivel": self.fuel_type,
        }


@dataclass(frozen=True)
class FleetPayload:
    vehicle_id: int
    placa: str
    modelo: str
    marca: str
    odometer_km: float
    quantity_liters: float
    fuel_type: str
    ano: int | None = None
    full_tank: bool = False

    kind = KIND_FLEET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "veiculo_id": self.vehicle_id,
            "placa": self.placa,
            "modelo": self.modelo,
            "marca": self.marca,
            "ano": self.ano,
            "km_veiculo": self.odometer_km,
            "quantidade_litros": self.quantity_liters,
            "tipo_combustivel": self.fuel_type,
            "tanque_cheio": self.full_tank,
        }


RequisitionPayload = Union[ExpensePayload, FuelStockPayload, FleetPayload]


@dataclass(frozen=True)
class Requisition:
    kind: str
    descricao: str
    requester_id: int
    director_id: int
    payload: RequisitionPayload
    allocations: Tuple[DepartmentAllocation, ...]
    status: str = STATUS_PENDING
    created_at: datetime = field(default_factory=utc_now)
    votes: Tuple[ApprovalVote, ...] = ()
    printed: bool = False
    selected_quote_id: int | None = None
    rateada: bool = False
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejected_by: int | None = None
    verification_code: str | None = None
    id: int | None = None

    @property
    def department_ids(self) -> Tuple[int, ...]:
        return tuple(sorted({allocation.department_id for allocation in self.allocations}))

    @property
    def covered_department_ids(self) -> FrozenSet[int]:
        covered: set[int] = set()
        for vote in self.votes:
            if vote.role == ROLE_MANAGER and vote.approved:
                covered.update(vote.department_ids)
        return frozenset(covered)

    @property
    def all_managers_approved(self) -> bool:
        required = set(self.department_ids)
        return bool(required) and required.issubset(self.covered_department_ids)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total(self) -> float | None:
        if not isinstance(self.payload, ExpensePayload):
            return None
        selected = self.payload.quote_by_id(self.selected_quote_id)
        if selected is not None:
            return selected.total
        if len(self.payload.quotes) == 1:
            return self.payload.quotes[0].total
        return None


@dataclass(frozen=True)
class RequisitionFilter:
    kind: str | None = None
    status: str | None = None
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    requester_id: int | None = None
    director_id: int | None = None
    department_ids: Tuple[int, ...] | None = None


@dataclass(frozen=True)
class Page:
    items: Tuple[Requisition, ...]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class DepartmentCost:
    """Approved spend charged to one department over a period."""

    department_id: int
    requisition_count: int
    total_amount: float


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a committed ledger write: creation or vote."""

    requisition: Requisition
    from_status: str | None
    to_status: str
    status_event_id: int | None = None

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status
