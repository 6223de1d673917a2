from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Tuple

from smartcompras.domain.contracts import RequisitionFilter
from smartcompras.infrastructure.repositories.base import BaseRepository, to_db_timestamp


def escape_like(term: str) -> str:
    """Make ``%`` and ``_`` in a search term match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class RequisitionRepository(BaseRepository):
    def insert(self, db, row: dict) -> int:
        cursor = db.execute(
            """
            INSERT INTO requisitions (
                kind, descricao, status, requester_id, director_id, payload_json,
                printed, selected_quote_id, rateada, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 0, NULL, 0, ?, ?)
            RETURNING id
            """,
            (
                row["kind"],
                row["descricao"],
                row["status"],
                row["requester_id"],
                row["director_id"],
                row["payload_json"],
                row["created_at"],
                row["created_at"],
            ),
        )
        return self.inserted_id(cursor)

    def get_by_id(self, db, requisition_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM requisitions
            WHERE id = ?
            LIMIT 1
            """,
            (requisition_id,),
        ).fetchone()
        return dict(row) if row else None

    def lock_for_update(self, db, requisition_id: int) -> None:
        """Hold the row lock until the surrounding transaction ends."""
        if db.backend != "postgres":
            # SQLite writers already hold the database lock from BEGIN IMMEDIATE.
            return
        db.execute("SELECT id FROM requisitions WHERE id = ? FOR UPDATE", (requisition_id,)).fetchone()

    def get_by_verification_code(self, db, code: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM requisitions
            WHERE verification_code = ?
            LIMIT 1
            """,
            (code,),
        ).fetchone()
        return dict(row) if row else None

    def update_state(self, db, requisition_id: int, state: dict, *, updated_at: str) -> None:
        db.execute(
            """
            UPDATE requisitions
            SET status = ?,
                selected_quote_id = ?,
                rateada = ?,
                verification_code = ?,
                approved_at = ?,
                rejected_at = ?,
                rejected_by = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                state["status"],
                state["selected_quote_id"],
                1 if state["rateada"] else 0,
                state["verification_code"],
                state["approved_at"],
                state["rejected_at"],
                state["rejected_by"],
                updated_at,
                requisition_id,
            ),
        )

    def mark_printed(self, db, requisition_id: int, *, updated_at: str) -> None:
        db.execute(
            """
            UPDATE requisitions
            SET printed = 1, updated_at = ?
            WHERE id = ?
            """,
            (updated_at, requisition_id),
        )

    def _filter_clause(self, filters: RequisitionFilter) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.kind:
            clauses.append("r.kind = ?")
            params.append(filters.kind)
        if filters.status:
            clauses.append("r.status = ?")
            params.append(filters.status)
        if filters.search:
            clauses.append("LOWER(r.descricao) LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(filters.search.strip().lower())}%")
        if filters.created_from is not None:
            clauses.append("r.created_at >= ?")
            params.append(to_db_timestamp(filters.created_from))
        if filters.created_to is not None:
            # Inclusive upper day: compare against the start of the next day.
            clauses.append("r.created_at < ?")
            params.append(to_db_timestamp(filters.created_to + timedelta(days=1)))
        if filters.requester_id is not None:
            clauses.append("r.requester_id = ?")
            params.append(filters.requester_id)
        if filters.director_id is not None:
            clauses.append("r.director_id = ?")
            params.append(filters.director_id)
        if filters.department_ids is not None:
            department_ids = list(filters.department_ids)
            if not department_ids:
                clauses.append("1 = 0")
            else:
                clauses.append(
                    f"""
                    EXISTS (
                        SELECT 1
                        FROM department_allocations da
                        WHERE da.requisition_id = r.id
                          AND da.department_id IN ({self.placeholders(department_ids)})
                    )
                    """
                )
                params.extend(department_ids)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_page(self, db, filters: RequisitionFilter, *, limit: int, offset: int) -> Tuple[List[dict], int]:
        where, params = self._filter_clause(filters)
        total_row = db.execute(
            f"SELECT COUNT(*) AS total FROM requisitions r {where}",
            tuple(params),
        ).fetchone()
        total = int(total_row["total"] if total_row else 0)
        rows = db.execute(
            f"""
            SELECT r.*
            FROM requisitions r
            {where}
            ORDER BY r.created_at DESC, r.id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        ).fetchall()
        return self.rows_to_dicts(rows), total
