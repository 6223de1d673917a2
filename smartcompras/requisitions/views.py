from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Sequence

from smartcompras.domain.contracts import STATUS_DIRECTOR_APPROVED, DepartmentCost, Requisition
from smartcompras.requisitions.approval_flow import build_process_steps, flow_meta, stage_for_status
from smartcompras.ui_strings import kind_label, status_label


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _departments(requisition: Requisition) -> List[Dict[str, object]]:
    covered = requisition.covered_department_ids
    return [
        {
            "id_departamento": allocation.department_id,
            "percentual_rateio": allocation.percentage,
            "valor_rateado": allocation.allocated_amount,
            "aprovado": allocation.department_id in covered,
        }
        for allocation in requisition.allocations
    ]


def requisition_view(requisition: Requisition) -> Dict[str, object]:
    """Serialize a requisition for the API, with flow and rateio details."""
    return {
        "id": requisition.id,
        "kind": requisition.kind,
        "kind_label": kind_label(requisition.kind),
        "descricao": requisition.descricao,
        "status": requisition.status,
        "status_label": status_label(requisition.status),
        "requester_id": requisition.requester_id,
        "director_id": requisition.director_id,
        "created_at": _iso(requisition.created_at),
        "printed": requisition.printed,
        "rateada": requisition.rateada,
        "selected_quote_id": requisition.selected_quote_id,
        "total": requisition.total,
        "todos_gerentes_aprovaram": requisition.all_managers_approved,
        "departamentos": _departments(requisition),
        "payload": requisition.payload.to_dict(),
        "votos": [
            {
                "approver_id": vote.approver_id,
                "role": vote.role,
                "decision": vote.decision,
                "department_ids": list(vote.department_ids),
                "quote_id": vote.quote_id,
                "reason": vote.reason,
                "timestamp": _iso(vote.timestamp),
            }
            for vote in requisition.votes
        ],
        "data_aprovacao": _iso(requisition.approved_at),
        "data_recusa": _iso(requisition.rejected_at),
        "usuario_recusador": requisition.rejected_by,
        "verification_code": requisition.verification_code,
        "flow": flow_meta(requisition.status),
        "process_steps": build_process_steps(stage_for_status(requisition.status)),
    }


def verification_view(requisition: Requisition) -> Dict[str, object]:
    return {
        "id": requisition.id,
        "kind": requisition.kind,
        "kind_label": kind_label(requisition.kind),
        "descricao": requisition.descricao,
        "status": requisition.status,
        "authentic": requisition.status == STATUS_DIRECTOR_APPROVED,
        "data_aprovacao": _iso(requisition.approved_at),
        "total": requisition.total,
        "director_id": requisition.director_id,
        "departamentos": _departments(requisition),
        "verification_code": requisition.verification_code,
    }


def department_costs_view(lines: Sequence[DepartmentCost]) -> Dict[str, object]:
    return {
        "data": [
            {
                "id_departamento": line.department_id,
                "quantidade_requisicoes": line.requisition_count,
                "valor_gasto": line.total_amount,
            }
            for line in lines
        ],
        "valor_total": round(sum(line.total_amount for line in lines), 2),
    }
