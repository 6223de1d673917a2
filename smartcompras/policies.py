from __future__ import annotations

from typing import FrozenSet, Iterable, Set

from flask import request

from smartcompras.domain.contracts import ROLE_ADMIN, ROLE_DIRECTOR, ROLE_MANAGER, ROLE_REQUESTER, Actor
from smartcompras.errors import AuthRequiredError, ForbiddenError


VALID_ROLES: Set[str] = {ROLE_REQUESTER, ROLE_MANAGER, ROLE_DIRECTOR, ROLE_ADMIN}

CREATE_ROLES: FrozenSet[str] = frozenset({ROLE_REQUESTER, ROLE_ADMIN})
VOTE_ROLES: FrozenSet[str] = frozenset({ROLE_MANAGER, ROLE_DIRECTOR})

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
USER_DEPARTMENTS_HEADER = "X-User-Departments"


def normalize_role(role: str | None, default: str = "") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role)
        if normalized:
            allowed.add(normalized)
    return allowed


def has_any_role(actor: Actor, allowed_roles: Iterable[str]) -> bool:
    allowed = normalize_allowed_roles(allowed_roles)
    return not allowed or normalize_role(actor.role) in allowed


def require_roles(actor: Actor, *allowed_roles: str) -> str:
    if has_any_role(actor, allowed_roles):
        return normalize_role(actor.role)
    raise ForbiddenError(
        code="permission_denied",
        message_key="permission_denied",
        payload={"role": actor.role},
    )


def _parse_department_ids(raw: str | None) -> FrozenSet[int]:
    department_ids: Set[int] = set()
    for chunk in str(raw or "").split(","):
        value = chunk.strip()
        if not value:
            continue
        try:
            department_ids.add(int(value))
        except ValueError as exc:
            raise AuthRequiredError(payload={"header": USER_DEPARTMENTS_HEADER}) from exc
    return frozenset(department_ids)


def current_actor() -> Actor:
    """Build the caller identity from the headers set by the auth gateway."""
    raw_user_id = str(request.headers.get(USER_ID_HEADER) or "").strip()
    role = normalize_role(request.headers.get(USER_ROLE_HEADER))
    if not raw_user_id or not role:
        raise AuthRequiredError()
    try:
        user_id = int(raw_user_id)
    except ValueError as exc:
        raise AuthRequiredError(payload={"header": USER_ID_HEADER}) from exc
    return Actor(
        user_id=user_id,
        role=role,
        department_ids=_parse_department_ids(request.headers.get(USER_DEPARTMENTS_HEADER)),
    )
