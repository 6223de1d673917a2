from __future__ import annotations

from typing import Dict, List


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "requisicao": [
        {
            "key": "pending",
            "label": "Pendente",
            "description": "Aguardando a aprovacao dos gerentes dos departamentos do rateio.",
        },
        {
            "key": "manager_approved",
            "label": "Aprovada pelos gerentes",
            "description": "Todos os gerentes aprovaram. Aguardando a aprovacao do diretor.",
        },
        {
            "key": "director_approved",
            "label": "Aprovada",
            "description": "Aprovada pelo diretor e liberada para impressao.",
        },
        {
            "key": "rejected",
            "label": "Reprovada",
            "description": "Reprovada por um aprovador. Nenhuma decisao adicional e aceita.",
        },
    ],
}


KIND_LABELS: Dict[str, str] = {
    "expense": "Despesas",
    "fuel_stock": "Combustivel estoque",
    "fleet": "Combustivel frota",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "requisition_created": "Solicitacao enviada com sucesso para aprovacao do gerente.",
        "vote_recorded": "Decisao registrada com sucesso.",
        "requisition_printed": "Requisicao marcada como impressa.",
        "requisition_verified": "Requisicao autentica e aprovada.",
    },
    "error": {
        "already_decided": "Esta requisicao ja foi decidida e nao aceita novas decisoes.",
        "auth_required": "Autenticacao necessaria.",
        "decision_invalid": "Decisao informada e invalida.",
        "department_required": "Informe o departamento da requisicao.",
        "description_required": "Descricao obrigatoria para continuar.",
        "director_required": "Informe o diretor aprovador.",
        "duplicate_department": "O mesmo departamento foi informado mais de uma vez no rateio.",
        "duplicate_vote": "Voce ja respondeu a esta solicitacao.",
        "empty_allocation": "Informe ao menos um departamento para o rateio.",
        "field_invalid": "Campo informado e invalido.",
        "invalid_percentage": "Percentual de rateio invalido.",
        "invalid_role": "Voce nao pode decidir esta requisicao nesta etapa.",
        "items_required": "Informe itens validos para continuar.",
        "kind_invalid": "Tipo de requisicao invalido.",
        "not_printable": "A requisicao so pode ser impressa apos a aprovacao do diretor.",
        "percentage_mismatch": "A soma dos percentuais de rateio deve ser igual a 100%.",
        "permission_denied": "Voce nao possui permissao para executar esta acao.",
        "quantity_invalid": "Quantidade invalida.",
        "quote_mismatch": "Aprove a mesma cota escolhida pelos demais gerentes ou reprove a requisicao.",
        "quote_required": "Informe a cota aprovada.",
        "quote_total_mismatch": "O total informado para o fornecedor nao confere com a soma dos itens.",
        "requisition_not_found": "Requisicao nao encontrada.",
        "store_unavailable": "Nao conseguimos registrar a operacao agora. Tente novamente em instantes.",
        "supplier_name_required": "Informe o fornecedor.",
        "suppliers_required": "Informe ao menos um fornecedor com itens.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "unit_price_invalid": "Valor unitario invalido.",
        "verification_code_not_found": "Codigo de verificacao nao encontrado.",
    },
}


def build_status_labels() -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for group_items in STATUS_GROUPS.values():
        for item in group_items:
            labels[item["key"]] = item["label"]
    return labels


STATUS_LABELS = build_status_labels()


def status_label(status: str | None) -> str:
    key = str(status or "").strip()
    return STATUS_LABELS.get(key, key)


def kind_label(kind: str | None) -> str:
    key = str(kind or "").strip()
    return KIND_LABELS.get(key, key)


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
