from __future__ import annotations

import math
from typing import Dict, Iterable, List, Sequence

from smartcompras.domain.contracts import DepartmentAllocation, SupplierQuote
from smartcompras.errors import ValidationError


DEFAULT_EPSILON = 0.01
FULL_ALLOCATION = 100.0


def _as_number(value) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _fail(code: str, **payload) -> ValidationError:
    return ValidationError(code=code, message_key=code, payload=payload)


def percentage_total(allocations: Iterable[DepartmentAllocation]) -> float:
    return sum(float(allocation.percentage) for allocation in allocations)


def validate_allocations(
    allocations: Sequence[DepartmentAllocation],
    *,
    required: bool = True,
    epsilon: float = DEFAULT_EPSILON,
) -> None:
    """Check a rateio before it is persisted.

    Raises ``ValidationError`` with ``empty_allocation``, ``invalid_percentage``,
    ``duplicate_department`` or ``percentage_mismatch``. An empty list is
    accepted only when the requisition kind does not require rateio.
    """
    if not allocations:
        if required:
            raise _fail("empty_allocation", field="departamentos")
        return

    seen: set[int] = set()
    for index, allocation in enumerate(allocations):
        percentage = _as_number(allocation.percentage)
        if percentage is None or percentage <= 0 or percentage > FULL_ALLOCATION:
            raise _fail(
                "invalid_percentage",
                field=f"departamentos[{index}].percentual_rateio",
                department_id=allocation.department_id,
            )
        if allocation.department_id in seen:
            raise _fail(
                "duplicate_department",
                field=f"departamentos[{index}].id_departamento",
                department_id=allocation.department_id,
            )
        seen.add(allocation.department_id)

    total = percentage_total(allocations)
    if abs(total - FULL_ALLOCATION) > epsilon:
        raise _fail("percentage_mismatch", field="departamentos", percentage_total=round(total, 4))


def validate_quotes(quotes: Sequence[SupplierQuote], *, epsilon: float = DEFAULT_EPSILON) -> None:
    if not quotes:
        raise _fail("suppliers_required", field="fornecedores")

    for quote_index, quote in enumerate(quotes):
        prefix = f"fornecedores[{quote_index}]"
        if not str(quote.supplier_name or "").strip():
            raise _fail("supplier_name_required", field=f"{prefix}.nome")
        if not quote.items:
            raise _fail("items_required", field=f"{prefix}.itens")
        for item_index, item in enumerate(quote.items):
            item_field = f"{prefix}.itens[{item_index}]"
            if not str(item.description or "").strip():
                raise _fail("items_required", field=f"{item_field}.descricao_item")
            quantity = _as_number(item.quantity)
            if quantity is None or quantity <= 0:
                raise _fail("quantity_invalid", field=f"{item_field}.qtde")
            unit_price = _as_number(item.unit_price)
            if unit_price is None or unit_price < 0:
                raise _fail("unit_price_invalid", field=f"{item_field}.valor_unitario")

        if quote.declared_total is not None:
            declared = _as_number(quote.declared_total)
            if declared is None or abs(declared - quote.total) > epsilon:
                raise _fail(
                    "quote_total_mismatch",
                    field=f"{prefix}.valor_total",
                    expected_total=quote.total,
                )


def compute_department_costs(
    allocations: Sequence[DepartmentAllocation],
    total: float,
) -> List[DepartmentAllocation]:
    """Split ``total`` across the rateio, rounded to cents.

    The rounding remainder goes to the largest share so the amounts always add
    up to the rounded total.
    """
    if not allocations:
        return []

    rounded_total = round(float(total), 2)
    amounts: Dict[int, float] = {}
    for index, allocation in enumerate(allocations):
        amounts[index] = round(float(allocation.percentage) / FULL_ALLOCATION * rounded_total, 2)

    remainder = round(rounded_total - sum(amounts.values()), 2)
    if remainder:
        largest = max(range(len(allocations)), key=lambda idx: float(allocations[idx].percentage))
        amounts[largest] = round(amounts[largest] + remainder, 2)

    return [
        DepartmentAllocation(
            department_id=allocation.department_id,
            percentage=allocation.percentage,
            allocated_amount=amounts[index],
        )
        for index, allocation in enumerate(allocations)
    ]
