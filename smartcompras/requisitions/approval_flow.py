from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Sequence

from smartcompras.domain.contracts import (
    DECISION_APPROVED,
    DECISION_REJECTED,
    ROLE_DIRECTOR,
    ROLE_MANAGER,
    STATUS_DIRECTOR_APPROVED,
    STATUS_MANAGER_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    ApprovalVote,
    ExpensePayload,
    Requisition,
)
from smartcompras.errors import TransitionError, ValidationError
from smartcompras.requisitions.allocation import compute_department_costs


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": "solicitacao", "label": "Solicitacao"},
    {"key": "gerentes", "label": "Gerentes"},
    {"key": "diretor", "label": "Diretor"},
    {"key": "impressao", "label": "Impressao"},
]


ACTION_LABELS: Dict[str, str] = {
    "manager_vote": "Aprovar ou reprovar (gerente)",
    "director_vote": "Aprovar ou reprovar (diretor)",
    "print": "Imprimir requisicao",
    "verify": "Verificar autenticidade",
    "view_history": "Ver historico",
}


FLOW_POLICY: Dict[str, Dict[str, object]] = {
    STATUS_PENDING: {
        "allowed_actions": ["manager_vote", "view_history"],
        "primary_action": "manager_vote",
    },
    STATUS_MANAGER_APPROVED: {
        "allowed_actions": ["director_vote", "view_history"],
        "primary_action": "director_vote",
    },
    STATUS_DIRECTOR_APPROVED: {
        "allowed_actions": ["print", "verify", "view_history"],
        "primary_action": "print",
    },
    STATUS_REJECTED: {
        "allowed_actions": ["view_history"],
        "primary_action": "view_history",
    },
}


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "primary_action": None}


def status_policy(status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return FLOW_POLICY.get(str(status), _fallback_policy())


def allowed_actions(status: str | None) -> List[str]:
    actions = status_policy(status).get("allowed_actions") or []
    if not isinstance(actions, list):
        return []
    return [str(action) for action in actions]


def primary_action(status: str | None) -> str | None:
    action = status_policy(status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_allowed(status: str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(status))


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(status: str | None) -> Dict[str, object]:
    return {
        "status": status,
        "allowed_actions": allowed_actions(status),
        "primary_action": primary_action(status),
        "action_labels": {action: action_label(action) for action in allowed_actions(status)},
    }


def stage_for_status(status: str | None) -> str:
    mapping = {
        STATUS_PENDING: "gerentes",
        STATUS_MANAGER_APPROVED: "diretor",
        STATUS_DIRECTOR_APPROVED: "impressao",
        STATUS_REJECTED: "solicitacao",
    }
    return mapping.get(str(status or "").strip(), "solicitacao")


def build_process_steps(current_stage: str) -> List[Dict[str, object]]:
    current_idx = 0
    for idx, item in enumerate(PROCESS_STAGES):
        if item["key"] == current_stage:
            current_idx = idx
            break
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append({"key": stage["key"], "label": stage["label"], "state": state})
    return steps


def derive_status(votes: Iterable[ApprovalVote], department_ids: Sequence[int]) -> str:
    """Replay a vote history in arrival order and return the aggregate status."""
    required = set(department_ids)
    covered: set[int] = set()
    status = STATUS_PENDING
    for vote in votes:
        if vote.decision == DECISION_REJECTED:
            return STATUS_REJECTED
        if vote.role == ROLE_MANAGER and status == STATUS_PENDING:
            covered.update(vote.department_ids)
            if required and required.issubset(covered):
                status = STATUS_MANAGER_APPROVED
        elif vote.role == ROLE_DIRECTOR and status == STATUS_MANAGER_APPROVED:
            status = STATUS_DIRECTOR_APPROVED
    return status


def _transition_error(code: str, requisition: Requisition, **payload) -> TransitionError:
    return TransitionError(
        code=code,
        message_key=code,
        payload={"requisition_id": requisition.id, "status": requisition.status, **payload},
    )


def _resolve_quote_id(requisition: Requisition, vote: ApprovalVote) -> int | None:
    payload = requisition.payload
    if not isinstance(payload, ExpensePayload) or vote.decision != DECISION_APPROVED:
        return requisition.selected_quote_id

    if vote.role == ROLE_DIRECTOR:
        if vote.quote_id is not None and vote.quote_id != requisition.selected_quote_id:
            raise _transition_error(
                "quote_mismatch",
                requisition,
                quote_id=vote.quote_id,
                selected_quote_id=requisition.selected_quote_id,
            )
        return requisition.selected_quote_id

    quote_id = vote.quote_id
    if quote_id is None:
        if requisition.selected_quote_id is not None:
            return requisition.selected_quote_id
        if len(payload.quotes) == 1:
            return payload.quotes[0].id
        raise ValidationError(
            code="quote_required",
            message_key="quote_required",
            payload={"requisition_id": requisition.id, "field": "quote_id"},
        )
    if payload.quote_by_id(quote_id) is None:
        raise _transition_error("quote_mismatch", requisition, quote_id=quote_id)
    if requisition.selected_quote_id is not None and quote_id != requisition.selected_quote_id:
        # First approving manager fixes the quote for the remaining ones.
        raise _transition_error(
            "quote_mismatch",
            requisition,
            quote_id=quote_id,
            selected_quote_id=requisition.selected_quote_id,
        )
    return quote_id


def _manager_vote(requisition: Requisition, vote: ApprovalVote) -> ApprovalVote:
    if requisition.status != STATUS_PENDING:
        raise _transition_error("invalid_role", requisition, role=vote.role)

    claimed = set(vote.department_ids) & set(requisition.department_ids)
    if not claimed:
        raise _transition_error("invalid_role", requisition, role=vote.role)

    uncovered = claimed - requisition.covered_department_ids
    if not uncovered:
        raise _transition_error(
            "invalid_role",
            requisition,
            role=vote.role,
            department_ids=sorted(claimed),
        )
    return replace(vote, department_ids=tuple(sorted(uncovered)))


def _director_vote(requisition: Requisition, vote: ApprovalVote) -> ApprovalVote:
    if requisition.status != STATUS_MANAGER_APPROVED:
        raise _transition_error("invalid_role", requisition, role=vote.role)
    if requisition.director_id and vote.approver_id != requisition.director_id:
        raise _transition_error("invalid_role", requisition, role=vote.role, approver_id=vote.approver_id)
    return replace(vote, department_ids=())


def apply_vote(requisition: Requisition, vote: ApprovalVote) -> Requisition:
    """Record ``vote`` on ``requisition`` and return the updated requisition.

    Pure: the caller persists the result. Raises ``TransitionError`` with
    ``already_decided``, ``duplicate_vote``, ``invalid_role`` or
    ``quote_mismatch`` when the vote is not legal in the current state.
    """
    if requisition.is_terminal:
        raise _transition_error("already_decided", requisition)
    if vote.decision not in {DECISION_APPROVED, DECISION_REJECTED}:
        raise ValidationError(
            code="decision_invalid",
            message_key="decision_invalid",
            payload={"requisition_id": requisition.id, "field": "decision"},
        )

    for previous in requisition.votes:
        if previous.role == vote.role and previous.approver_id == vote.approver_id:
            raise _transition_error("duplicate_vote", requisition, approver_id=vote.approver_id)

    if vote.role == ROLE_MANAGER:
        recorded = _manager_vote(requisition, vote)
    elif vote.role == ROLE_DIRECTOR:
        recorded = _director_vote(requisition, vote)
    else:
        raise _transition_error("invalid_role", requisition, role=vote.role)

    selected_quote_id = _resolve_quote_id(requisition, recorded)
    if selected_quote_id is not None and recorded.quote_id is None and recorded.approved:
        recorded = replace(recorded, quote_id=selected_quote_id)

    votes = requisition.votes + (recorded,)
    status = derive_status(votes, requisition.department_ids)
    updated = replace(requisition, votes=votes, status=status, selected_quote_id=selected_quote_id)

    if status == STATUS_REJECTED:
        return replace(updated, rejected_at=recorded.timestamp, rejected_by=recorded.approver_id)
    if status == STATUS_DIRECTOR_APPROVED:
        return _finalize_approval(updated, recorded)
    return updated


def _finalize_approval(requisition: Requisition, vote: ApprovalVote) -> Requisition:
    total = requisition.total
    allocations = requisition.allocations
    rateada = False
    if total is not None:
        allocations = tuple(compute_department_costs(requisition.allocations, total))
        rateada = True
    return replace(
        requisition,
        allocations=allocations,
        rateada=rateada,
        approved_at=vote.timestamp,
    )


def ensure_printable(requisition: Requisition) -> None:
    if not action_allowed(requisition.status, "print"):
        raise _transition_error("not_printable", requisition)
