"""Closed catalog of tools offered to the completion service."""

import json
from dataclasses import dataclass
from typing import Callable, Type

from pydantic import BaseModel, ValidationError

from atende.logging_config import get_logger
from atende.services.tools import conversation_tools, product_tools, sales_tools
from atende.services.tools.base import ToolContext, ToolName, ToolResult

logger = get_logger("tools.registry")


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[BaseModel, ToolContext], ToolResult]

    def definition(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": _clean_schema(self.args_model.model_json_schema()),
            },
        }


def _clean_schema(schema: dict) -> dict:
    schema = {key: value for key, value in schema.items() if key != "title"}
    properties = {}
    for name, prop in schema.get("properties", {}).items():
        prop = {key: value for key, value in prop.items() if key != "title"}
        # Optional[str] renders as anyOf [str, null]; keep the plain type
        if "anyOf" in prop:
            types = [item for item in prop.pop("anyOf") if item.get("type") != "null"]
            if len(types) == 1:
                prop.update(types[0])
        prop.pop("default", None)
        properties[name] = prop
    schema["properties"] = properties
    return schema


TOOLS: dict[ToolName, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            ToolName.SEARCH_PRODUCT,
            "Busca produtos no catálogo da loja. Use sempre que o cliente perguntar por um produto, preço ou disponibilidade.",
            product_tools.SearchProductArgs,
            product_tools.search_product,
        ),
        ToolSpec(
            ToolName.TRANSFER_TO_HUMAN,
            "Transfere o atendimento para um atendente humano quando o cliente pedir ou quando a IA não puder resolver.",
            conversation_tools.TransferArgs,
            conversation_tools.transfer_to_human,
        ),
        ToolSpec(
            ToolName.REQUEST_VERIFICATION,
            "Pede à equipe que verifique uma informação (estoque, prazo, detalhe) que não está disponível.",
            conversation_tools.VerificationArgs,
            conversation_tools.request_verification,
        ),
        ToolSpec(
            ToolName.REGISTER_INTEREST,
            "Registra o interesse do cliente em um produto que ele ainda não comprou.",
            sales_tools.RegisterInterestArgs,
            sales_tools.register_interest,
        ),
        ToolSpec(
            ToolName.PROCESS_SALE,
            "Registra uma venda confirmada pelo cliente e gera as instruções de pagamento via PIX.",
            sales_tools.ProcessSaleArgs,
            sales_tools.process_sale,
        ),
        ToolSpec(
            ToolName.REQUEST_QUOTE,
            "Encaminha um pedido de orçamento para a equipe.",
            sales_tools.RequestQuoteArgs,
            sales_tools.request_quote,
        ),
        ToolSpec(
            ToolName.CAPTURE_LEAD,
            "Salva nome e contato do cliente quando ele os informar.",
            conversation_tools.CaptureLeadArgs,
            conversation_tools.capture_lead,
        ),
        ToolSpec(
            ToolName.SEND_DOCUMENT,
            "Envia ao cliente um documento cadastrado (catálogo, cardápio, tabela de preços).",
            product_tools.SendDocumentArgs,
            product_tools.send_document,
        ),
        ToolSpec(
            ToolName.COLLECT_DELIVERY,
            "Registra a forma de entrega do pedido pendente e informa os dados de pagamento.",
            sales_tools.CollectDeliveryArgs,
            sales_tools.collect_delivery,
        ),
        ToolSpec(
            ToolName.CLOSE_CONVERSATION,
            "Encerra a conversa quando o cliente se despedir e não houver mais nada pendente.",
            conversation_tools.CloseArgs,
            conversation_tools.close_conversation,
        ),
    )
}

_missing = set(ToolName) - set(TOOLS)
if _missing:
    raise RuntimeError(f"Tools without a handler: {sorted(name.value for name in _missing)}")


def tool_definitions() -> list[dict]:
    return [TOOLS[name].definition() for name in ToolName]


def _parse_arguments(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("tool arguments must be a JSON object")
    return parsed


def execute_tool(name: str, raw_arguments, ctx: ToolContext) -> ToolResult:
    """Run one tool call in its own transaction.

    Never raises: unknown tools, bad arguments and handler errors all come
    back as failed results for the model to handle. Side effects are
    committed before the tool's webhook events are released.
    """
    try:
        tool = ToolName(name)
    except ValueError:
        logger.warning("Unknown tool requested", extra={"context": {"tool": name}})
        return ToolResult.failure(f"Ferramenta desconhecida: {name}")

    spec = TOOLS[tool]
    try:
        args = spec.args_model.model_validate(_parse_arguments(raw_arguments))
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Invalid tool arguments",
            extra={"context": {"tool": name, "error": str(exc)[:300]}},
        )
        return ToolResult.failure(f"Argumentos inválidos para {name}.")

    ctx.discard_events()
    try:
        result = spec.handler(args, ctx)
        ctx.db.commit()
    except Exception as exc:
        ctx.db.rollback()
        ctx.discard_events()
        logger.error(
            "Tool execution failed",
            extra={
                "context": {
                    "tool": name,
                    "conversation_id": str(ctx.conversation.id),
                    "error": str(exc),
                }
            },
        )
        return ToolResult.failure(f"Erro ao executar {name}. Peça desculpas e ofereça ajuda de um atendente.")

    ctx.flush_events()
    return result
