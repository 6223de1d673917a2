from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import List

from flask import Blueprint, current_app, jsonify, request

from smartcompras.domain.contracts import (
    KIND_EXPENSE,
    KIND_FLEET,
    KIND_FUEL_STOCK,
    DepartmentAllocation,
    FleetPayload,
    FuelStockPayload,
    LineItem,
    SupplierQuote,
)
from smartcompras.errors import ValidationError
from smartcompras.policies import CREATE_ROLES, current_actor, require_roles
from smartcompras.requisitions.views import department_costs_view, requisition_view, verification_view
from smartcompras.ui_strings import success_message


requisitions_bp = Blueprint("requisitions", __name__)

SERVICE_EXTENSION_KEY = "smartcompras.requisition_service"


def _service():
    return current_app.extensions[SERVICE_EXTENSION_KEY]


def _invalid(code: str, field: str) -> ValidationError:
    return ValidationError(code=code, message_key=code, payload={"field": field})


def _parse_optional_int(value) -> int | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_optional_float(value) -> float | None:
    """Accept numbers and pt-BR or en-US decimal strings; NaN and infinities count as missing."""
    if value in (None, "") or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    text = str(value).strip()
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _parse_date(raw_value: str | None, field: str) -> datetime | None:
    value = str(raw_value or "").strip()
    if not value:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise _invalid("field_invalid", field)


def _required_int(payload: dict, field: str, code: str = "field_invalid") -> int:
    value = _parse_optional_int(payload.get(field))
    if value is None:
        raise _invalid(code, field)
    return value


def _parse_quotes(raw_quotes) -> List[SupplierQuote]:
    if not isinstance(raw_quotes, list):
        return []
    quotes: List[SupplierQuote] = []
    for raw_quote in raw_quotes:
        if not isinstance(raw_quote, dict):
            continue
        raw_items = raw_quote.get("itens") if isinstance(raw_quote.get("itens"), list) else []
        items = tuple(
            LineItem(
                description=str(item.get("descricao_item") or "").strip(),
                quantity=_parse_optional_float(item.get("qtde")),
                unit_price=_parse_optional_float(item.get("valor_unitario")),
            )
            for item in raw_items
            if isinstance(item, dict)
        )
        quotes.append(
            SupplierQuote(
                supplier_name=str(raw_quote.get("nome") or "").strip(),
                items=items,
                declared_total=_parse_optional_float(raw_quote.get("valor_total")),
            )
        )
    return quotes


def _parse_allocations(raw_allocations) -> List[DepartmentAllocation]:
    if not isinstance(raw_allocations, list):
        return []
    allocations: List[DepartmentAllocation] = []
    for index, raw in enumerate(raw_allocations):
        if not isinstance(raw, dict):
            raise _invalid("field_invalid", f"departamentos[{index}]")
        department_id = _parse_optional_int(raw.get("id_departamento"))
        if department_id is None:
            raise _invalid("field_invalid", f"departamentos[{index}].id_departamento")
        allocations.append(
            DepartmentAllocation(
                department_id=department_id,
                percentage=_parse_optional_float(raw.get("percentual_rateio")),
            )
        )
    return allocations


def _parse_fuel_stock(payload: dict) -> FuelStockPayload:
    quantity = _parse_optional_float(payload.get("quantidade_litros"))
    if quantity is None:
        raise _invalid("quantity_invalid", "quantidade_litros")
    return FuelStockPayload(
        chassi=(str(payload.get("chassi") or "").strip() or None),
        placa=(str(payload.get("placa") or "").strip() or None),
        modelo=str(payload.get("modelo") or "").strip(),
        marca=str(payload.get("marca") or "").strip(),
        quantity_liters=quantity,
        fuel_type=(str(payload.get("tipo_combustivel") or "").strip() or None),
    )


def _parse_fleet(payload: dict) -> FleetPayload:
    quantity = _parse_optional_float(payload.get("quantidade_litros"))
    if quantity is None:
        raise _invalid("quantity_invalid", "quantidade_litros")
    odometer = _parse_optional_float(payload.get("km_veiculo"))
    if odometer is None:
        raise _invalid("field_invalid", "km_veiculo")
    return FleetPayload(
        vehicle_id=_required_int(payload, "veiculo_id"),
        placa=str(payload.get("placa") or "").strip(),
        modelo=str(payload.get("modelo") or "").strip(),
        marca=str(payload.get("marca") or "").strip(),
        ano=_parse_optional_int(payload.get("ano")),
        odometer_km=odometer,
        quantity_liters=quantity,
        fuel_type=str(payload.get("tipo_combustivel") or "").strip(),
        full_tank=bool(payload.get("tanque_cheio")),
    )


@requisitions_bp.route("/api/requisitions", methods=["POST"])
def create_requisition():
    actor = current_actor()
    require_roles(actor, *CREATE_ROLES)
    body = request.get_json(silent=True) or {}
    kind = str(body.get("kind") or "").strip().lower()
    payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
    descricao = str(payload.get("descricao") or "").strip()
    director_id = _parse_optional_int(payload.get("director_id", payload.get("id_diretor")))
    if director_id is None:
        raise _invalid("director_required", "director_id")

    service = _service()
    if kind == KIND_EXPENSE:
        requisition = service.create_expense_requisition(
            actor,
            descricao=descricao,
            director_id=director_id,
            quotes=_parse_quotes(payload.get("fornecedores")),
            allocations=_parse_allocations(payload.get("departamentos")),
        )
    elif kind == KIND_FUEL_STOCK:
        requisition = service.create_fuel_stock_requisition(
            actor,
            descricao=descricao,
            director_id=director_id,
            payload=_parse_fuel_stock(payload),
            department_id=_parse_optional_int(payload.get("id_departamento")),
        )
    elif kind == KIND_FLEET:
        requisition = service.create_fleet_requisition(
            actor,
            descricao=descricao,
            director_id=director_id,
            payload=_parse_fleet(payload),
            department_id=_parse_optional_int(payload.get("id_departamento")),
        )
    else:
        raise _invalid("kind_invalid", "kind")

    return (
        jsonify(
            {
                "id": requisition.id,
                "status": requisition.status,
                "message": success_message("requisition_created"),
            }
        ),
        201,
    )


@requisitions_bp.route("/api/requisitions/<int:requisition_id>/vote", methods=["POST"])
def vote_requisition(requisition_id: int):
    actor = current_actor()
    body = request.get_json(silent=True) or {}
    quote_id = None
    if body.get("quote_id") not in (None, ""):
        quote_id = _parse_optional_int(body.get("quote_id"))
        if quote_id is None:
            raise _invalid("field_invalid", "quote_id")
    requisition = _service().submit_vote(
        actor,
        requisition_id,
        decision=str(body.get("decision") or ""),
        quote_id=quote_id,
        reason=body.get("reason"),
    )
    return jsonify(
        {
            "id": requisition.id,
            "status": requisition.status,
            "todos_gerentes_aprovaram": requisition.all_managers_approved,
            "message": success_message("vote_recorded"),
        }
    )


@requisitions_bp.route("/api/requisitions", methods=["GET"])
def list_requisitions():
    actor = current_actor()
    args = request.args
    page_size_raw = args.get("page_size") or args.get("pageSize")
    page = _service().list_requisitions(
        actor,
        kind=(args.get("kind") or "").strip().lower() or None,
        status=(args.get("status") or "").strip().lower() or None,
        search=args.get("search"),
        created_from=_parse_date(args.get("date_from"), "date_from"),
        created_to=_parse_date(args.get("date_to"), "date_to"),
        page=_parse_optional_int(args.get("page")) or 1,
        page_size=_parse_optional_int(page_size_raw),
    )
    return jsonify(
        {
            "data": [requisition_view(item) for item in page.items],
            "total": page.total,
            "page": page.page,
            "pageSize": page.page_size,
            "totalPages": page.total_pages,
        }
    )


@requisitions_bp.route("/api/requisitions/<int:requisition_id>", methods=["GET"])
def get_requisition(requisition_id: int):
    actor = current_actor()
    service = _service()
    view = requisition_view(service.get_requisition(actor, requisition_id))
    if request.args.get("include") == "history":
        view["history"] = service.requisition_history(actor, requisition_id)
    return jsonify(view)


@requisitions_bp.route("/api/requisitions/<int:requisition_id>/print", methods=["POST"])
def print_requisition(requisition_id: int):
    actor = current_actor()
    requisition = _service().print_requisition(actor, requisition_id)
    return jsonify(
        {
            "id": requisition.id,
            "printed": requisition.printed,
            "verification_code": requisition.verification_code,
            "message": success_message("requisition_printed"),
        }
    )


@requisitions_bp.route("/api/verify/<string:code>", methods=["GET"])
def verify_requisition(code: str):
    actor = current_actor()
    requisition = _service().verify_requisition(actor, code)
    payload = verification_view(requisition)
    payload["message"] = success_message("requisition_verified")
    return jsonify(payload)


@requisitions_bp.route("/api/reports/department-costs", methods=["GET"])
def department_costs_report():
    actor = current_actor()
    lines = _service().department_cost_report(
        actor,
        created_from=_parse_date(request.args.get("date_from"), "date_from"),
        created_to=_parse_date(request.args.get("date_to"), "date_to"),
    )
    return jsonify(department_costs_view(lines))
