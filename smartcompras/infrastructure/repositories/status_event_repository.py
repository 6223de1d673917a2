from __future__ import annotations

from typing import List

from smartcompras.infrastructure.repositories.base import BaseRepository


class StatusEventRepository(BaseRepository):
    def insert(
        self,
        db,
        *,
        requisition_id: int,
        kind: str,
        from_status: str | None,
        to_status: str,
        actor_user_id: int | None,
        occurred_at: str,
        reason: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO status_events (
                entity, entity_id, kind, from_status, to_status, reason, actor_user_id, occurred_at
            )
            VALUES ('requisition', ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (requisition_id, kind, from_status, to_status, reason, actor_user_id, occurred_at),
        )
        return self.inserted_id(cursor)

    def list_for_requisition(self, db, requisition_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT id, from_status, to_status, reason, actor_user_id, occurred_at, delivered_at
            FROM status_events
            WHERE entity = 'requisition' AND entity_id = ?
            ORDER BY id ASC
            """,
            (requisition_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def get_by_id(self, db, event_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM status_events
            WHERE id = ?
            LIMIT 1
            """,
            (event_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_undelivered(self, db, *, limit: int = 100) -> List[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM status_events
            WHERE entity = 'requisition' AND delivered_at IS NULL
            ORDER BY id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def mark_delivered(self, db, event_id: int, *, delivered_at: str) -> None:
        db.execute(
            """
            UPDATE status_events
            SET delivered_at = ?
            WHERE id = ? AND delivered_at IS NULL
            """,
            (delivered_at, event_id),
        )
