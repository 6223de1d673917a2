from __future__ import annotations

from typing import Any, Dict

from smartcompras.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        # Domain codes double as catalogue keys unless told otherwise.
        self.message_key = (message_key or (code if code else self.default_message_key)).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "field_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    """Creation-time input rejected (rateio, quote totals, required fields)."""

    default_code = "validation_error"


class TransitionError(UserActionError):
    """Vote rejected by the approval flow for the requisition's current state."""

    default_code = "transition_error"
    default_message_key = "invalid_role"
    default_http_status = 409


class ForbiddenError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403


class AuthRequiredError(ForbiddenError):
    default_code = "auth_required"
    default_message_key = "auth_required"
    default_http_status = 401


class NotFoundError(UserActionError):
    default_code = "requisition_not_found"
    default_message_key = "requisition_not_found"
    default_http_status = 404


class StoreUnavailableError(AppError):
    """Ledger lock or connection not obtained in time; safe to retry."""

    default_code = "store_unavailable"
    default_message_key = "store_unavailable"
    default_http_status = 503
    default_critical = False


class SystemError(AppError):
    """Unexpected failure, logged with traceback and masked for the caller."""
