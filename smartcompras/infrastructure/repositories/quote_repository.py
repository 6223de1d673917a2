from __future__ import annotations

from typing import Iterable, List

from smartcompras.domain.contracts import SupplierQuote
from smartcompras.infrastructure.repositories.base import BaseRepository


class QuoteRepository(BaseRepository):
    def insert_quotes(self, db, requisition_id: int, quotes: Iterable[SupplierQuote]) -> List[int]:
        quote_ids: List[int] = []
        for position, quote in enumerate(quotes):
            cursor = db.execute(
                """
                INSERT INTO supplier_quotes (requisition_id, supplier_name, total_amount, position)
                VALUES (?, ?, ?, ?)
                RETURNING id
                """,
                (requisition_id, quote.supplier_name.strip(), quote.total, position),
            )
            quote_id = self.inserted_id(cursor)
            for item_position, item in enumerate(quote.items):
                db.execute(
                    """
                    INSERT INTO line_items (quote_id, description, quantity, unit_price, position)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (quote_id, item.description.strip(), float(item.quantity), float(item.unit_price), item_position),
                )
            quote_ids.append(quote_id)
        return quote_ids

    def list_for_requisition(self, db, requisition_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT id, supplier_name, total_amount
            FROM supplier_quotes
            WHERE requisition_id = ?
            ORDER BY position ASC, id ASC
            """,
            (requisition_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_items_for_requisition(self, db, requisition_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT li.id, li.quote_id, li.description, li.quantity, li.unit_price
            FROM line_items li
            JOIN supplier_quotes sq ON sq.id = li.quote_id
            WHERE sq.requisition_id = ?
            ORDER BY li.quote_id ASC, li.position ASC, li.id ASC
            """,
            (requisition_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)
