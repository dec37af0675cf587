from typing import Literal, Optional

from pydantic import BaseModel, Field

from atende.logging_config import get_logger
from atende.services import audit_service
from atende.services.audit_service import AuditAction
from atende.services.crm_service import DealStage, advance_deal
from atende.services.state_machine import ConversationStatus, apply_transition
from atende.services.tools.base import ToolContext, ToolResult
from atende.schemas.webhook import WebhookEvent

logger = get_logger("tools.conversation")

_AI_STATES = (ConversationStatus.AI_HANDLING, ConversationStatus.WAITING_RESPONSE)


class TransferArgs(BaseModel):
    motivo: Literal["solicitacao_cliente", "reclamacao", "negociacao", "duvida_complexa", "outro"] = Field(
        description="Motivo da transferência"
    )
    resumo: str = Field(description="Resumo curto do atendimento até aqui para o atendente humano")


class VerificationArgs(BaseModel):
    assunto: str = Field(description="O que precisa ser verificado pela equipe")
    produtoMencionado: Optional[str] = Field(default=None, description="Produto envolvido, se houver")
    urgencia: Literal["baixa", "media", "alta"] = Field(default="media", description="Urgência da verificação")


class CloseArgs(BaseModel):
    nomeCliente: Optional[str] = Field(default=None, description="Nome do cliente, se conhecido")
    resumoConversa: Optional[str] = Field(default=None, description="Resumo do que foi resolvido")


class CaptureLeadArgs(BaseModel):
    nome: str = Field(description="Nome do cliente")
    email: Optional[str] = Field(default=None, description="E-mail do cliente")
    interesse: Optional[str] = Field(default=None, description="Em que o cliente está interessado")


def _event_data(ctx: ToolContext, **extra) -> dict:
    return {
        "conversationId": str(ctx.conversation.id),
        "customerPhone": ctx.customer_phone,
        "customerName": ctx.conversation.customer_name,
        **extra,
    }


def transfer_to_human(args: TransferArgs, ctx: ToolContext) -> ToolResult:
    moved = apply_transition(ctx.db, ctx.conversation.id, ConversationStatus.HUMAN_HANDLING, expected=_AI_STATES)
    if not moved:
        return ToolResult.success("A conversa já não está com a IA.", transferred=False)

    audit_service.record(
        ctx.db,
        company_id=ctx.company_id,
        action=AuditAction.AI_TRANSFER_TO_HUMAN,
        entity_id=ctx.conversation.id,
        changes={"reason": args.motivo, "summary": args.resumo},
    )
    ctx.emit(WebhookEvent.HUMAN_TRANSFER, _event_data(ctx, reason=args.motivo, summary=args.resumo))
    logger.info(
        "Conversation transferred to human",
        extra={"context": {"conversation_id": str(ctx.conversation.id), "reason": args.motivo}},
    )
    return ToolResult.success(
        "Conversa transferida. Avise o cliente que um atendente vai continuar em breve.",
        transferred=True,
    )


def request_verification(args: VerificationArgs, ctx: ToolContext) -> ToolResult:
    moved = apply_transition(
        ctx.db,
        ctx.conversation.id,
        ConversationStatus.WAITING_RESPONSE,
        expected=(ConversationStatus.AI_HANDLING,),
    )
    audit_service.record(
        ctx.db,
        company_id=ctx.company_id,
        action=AuditAction.AI_REQUESTED_VERIFICATION,
        entity_id=ctx.conversation.id,
        changes={"subject": args.assunto, "product": args.produtoMencionado, "urgency": args.urgencia},
    )
    ctx.emit(
        WebhookEvent.VERIFICATION_REQUESTED,
        _event_data(ctx, subject=args.assunto, product=args.produtoMencionado, urgency=args.urgencia),
    )
    return ToolResult.success(
        "Verificação solicitada à equipe. Diga ao cliente que vamos confirmar e retornar em breve.",
        statusChanged=moved,
    )


def close_conversation(args: CloseArgs, ctx: ToolContext) -> ToolResult:
    moved = apply_transition(ctx.db, ctx.conversation.id, ConversationStatus.CLOSED, expected=_AI_STATES)
    if not moved:
        return ToolResult.success("A conversa já foi encerrada ou está com um atendente.", closed=False)

    if args.nomeCliente and not ctx.conversation.customer_name:
        ctx.conversation.customer_name = args.nomeCliente
    audit_service.record(
        ctx.db,
        company_id=ctx.company_id,
        action=AuditAction.AI_CONVERSATION_CLOSED,
        entity_id=ctx.conversation.id,
        changes={"summary": args.resumoConversa},
    )
    ctx.emit(WebhookEvent.CONVERSATION_CLOSED, _event_data(ctx, summary=args.resumoConversa, closedBy="AI"))
    return ToolResult.success("Conversa encerrada. Despeça-se do cliente de forma cordial.", closed=True)


def capture_lead(args: CaptureLeadArgs, ctx: ToolContext) -> ToolResult:
    ctx.conversation.customer_name = args.nome
    note = " | ".join(part for part in (args.email, args.interesse) if part)
    advance_deal(
        ctx.db,
        company_id=ctx.company_id,
        customer_phone=ctx.customer_phone,
        stage=DealStage.LEAD,
        customer_name=args.nome,
        title=f"Lead - {args.nome}",
        note=note or None,
    )
    ctx.emit(
        WebhookEvent.LEAD_CAPTURED,
        _event_data(ctx, customerName=args.nome, email=args.email, interest=args.interesse),
    )
    return ToolResult.success(f"Dados de {args.nome} registrados.")
