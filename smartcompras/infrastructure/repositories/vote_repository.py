from __future__ import annotations

import json
from typing import List

from smartcompras.domain.contracts import ApprovalVote
from smartcompras.infrastructure.repositories.base import BaseRepository, to_db_timestamp


class VoteRepository(BaseRepository):
    def insert(self, db, requisition_id: int, vote: ApprovalVote) -> int:
        cursor = db.execute(
            """
            INSERT INTO approval_votes (
                requisition_id, approver_id, role, decision, department_ids, quote_id, reason, voted_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                requisition_id,
                vote.approver_id,
                vote.role,
                vote.decision,
                json.dumps(list(vote.department_ids)),
                vote.quote_id,
                vote.reason,
                to_db_timestamp(vote.timestamp),
            ),
        )
        return self.inserted_id(cursor)

    def list_for_requisition(self, db, requisition_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT approver_id, role, decision, department_ids, quote_id, reason, voted_at
            FROM approval_votes
            WHERE requisition_id = ?
            ORDER BY id ASC
            """,
            (requisition_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)
