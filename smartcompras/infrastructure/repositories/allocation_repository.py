from __future__ import annotations

from datetime import timedelta
from typing import Any, Iterable, List

from smartcompras.domain.contracts import STATUS_DIRECTOR_APPROVED, DepartmentAllocation, RequisitionFilter
from smartcompras.infrastructure.repositories.base import BaseRepository, to_db_timestamp


class AllocationRepository(BaseRepository):
    def insert_allocations(self, db, requisition_id: int, allocations: Iterable[DepartmentAllocation]) -> None:
        for allocation in allocations:
            db.execute(
                """
                INSERT INTO department_allocations (requisition_id, department_id, percentage, allocated_amount)
                VALUES (?, ?, ?, ?)
                """,
                (requisition_id, int(allocation.department_id), float(allocation.percentage), allocation.allocated_amount),
            )

    def update_amounts(self, db, requisition_id: int, allocations: Iterable[DepartmentAllocation]) -> None:
        for allocation in allocations:
            db.execute(
                """
                UPDATE department_allocations
                SET allocated_amount = ?
                WHERE requisition_id = ? AND department_id = ?
                """,
                (allocation.allocated_amount, requisition_id, int(allocation.department_id)),
            )

    def list_for_requisition(self, db, requisition_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT department_id, percentage, allocated_amount
            FROM department_allocations
            WHERE requisition_id = ?
            ORDER BY id ASC
            """,
            (requisition_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def totals_by_department(self, db, filters: RequisitionFilter) -> List[dict]:
        """Sum rateio amounts of director-approved requisitions per department.

        Only ``created_from``, ``created_to`` and ``director_id`` of ``filters`` apply.
        """
        clauses = ["r.status = ?", "da.allocated_amount IS NOT NULL"]
        params: List[Any] = [STATUS_DIRECTOR_APPROVED]
        if filters.created_from is not None:
            clauses.append("r.created_at >= ?")
            params.append(to_db_timestamp(filters.created_from))
        if filters.created_to is not None:
            clauses.append("r.created_at < ?")
            params.append(to_db_timestamp(filters.created_to + timedelta(days=1)))
        if filters.director_id is not None:
            clauses.append("r.director_id = ?")
            params.append(filters.director_id)
        rows = db.execute(
            f"""
            SELECT da.department_id,
                   COUNT(DISTINCT da.requisition_id) AS requisition_count,
                   SUM(da.allocated_amount) AS total_amount
            FROM department_allocations da
            JOIN requisitions r ON r.id = da.requisition_id
            WHERE {' AND '.join(clauses)}
            GROUP BY da.department_id
            ORDER BY total_amount DESC, da.department_id ASC
            """,
            tuple(params),
        ).fetchall()
        return self.rows_to_dicts(rows)
