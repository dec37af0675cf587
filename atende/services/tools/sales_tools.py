from datetime import timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field

from atende.database import utcnow
from atende.logging_config import get_logger
from atende.models import CustomerInterest, Order, Product
from atende.schemas.webhook import WebhookEvent
from atende.services.crm_service import DealStage, advance_deal
from atende.services.tools.base import ToolContext, ToolResult
from atende.services.tools.formatting import format_brl, pix_instructions

logger = get_logger("tools.sales")

ORDER_MERGE_WINDOW = timedelta(minutes=30)


class RegisterInterestArgs(BaseModel):
    produto: str = Field(description="Produto de interesse")
    detalhes: Optional[str] = Field(default=None, description="Tamanho, cor, quantidade ou outra preferência")


class ProcessSaleArgs(BaseModel):
    produto: str = Field(description="Nome do produto vendido")
    preco: float = Field(ge=0, description="Preço unitário informado ao cliente")
    quantidade: int = Field(default=1, ge=1, description="Quantidade")
    tamanho: Optional[str] = Field(default=None, description="Tamanho escolhido")
    cor: Optional[str] = Field(default=None, description="Cor escolhida")


class RequestQuoteArgs(BaseModel):
    produto: str = Field(description="Produto ou serviço para orçamento")
    quantidade: Optional[int] = Field(default=None, ge=1, description="Quantidade desejada")
    detalhes: Optional[str] = Field(default=None, description="Detalhes do pedido de orçamento")


class CollectDeliveryArgs(BaseModel):
    tipoEntrega: Literal["RETIRADA", "ENTREGA"] = Field(
        default="RETIRADA", description="Forma de entrega; no momento só há retirada na loja"
    )


def register_interest(args: RegisterInterestArgs, ctx: ToolContext) -> ToolResult:
    interest = CustomerInterest(
        company_id=ctx.company_id,
        conversation_id=ctx.conversation.id,
        customer_phone=ctx.customer_phone,
        customer_name=ctx.conversation.customer_name,
        product_name=args.produto,
        details=args.detalhes,
    )
    ctx.db.add(interest)
    advance_deal(
        ctx.db,
        company_id=ctx.company_id,
        customer_phone=ctx.customer_phone,
        stage=DealStage.INTERESTED,
        customer_name=ctx.conversation.customer_name,
        title=f"Interesse - {args.produto}",
        note=f"Interesse: {args.produto}" + (f" ({args.detalhes})" if args.detalhes else ""),
    )
    ctx.emit(
        WebhookEvent.CUSTOMER_INTEREST,
        {
            "conversationId": str(ctx.conversation.id),
            "customerPhone": ctx.customer_phone,
            "product": args.produto,
            "details": args.detalhes,
        },
    )
    return ToolResult.success(f"Interesse em '{args.produto}' registrado.", produto=args.produto)


def _catalog_price(ctx: ToolContext, name: str) -> Optional[float]:
    product = (
        ctx.db.query(Product)
        .filter(
            Product.company_id == ctx.company_id,
            Product.is_active.is_(True),
            Product.name.ilike(f"%{name}%"),
        )
        .order_by(Product.name)
        .first()
    )
    return float(product.price) if product and product.price else None


def _pending_order(ctx: ToolContext) -> Optional[Order]:
    return (
        ctx.db.query(Order)
        .filter(
            Order.company_id == ctx.company_id,
            Order.customer_phone == ctx.customer_phone,
            Order.status == "AWAITING_PAYMENT",
            Order.delivery_type.is_(None),
            Order.created_at >= utcnow() - ORDER_MERGE_WINDOW,
        )
        .order_by(Order.created_at.desc())
        .first()
    )


def process_sale(args: ProcessSaleArgs, ctx: ToolContext) -> ToolResult:
    company = ctx.company
    if not company.pix_key:
        return ToolResult.failure(
            "A loja não tem chave PIX configurada; transfira para um atendente concluir a venda."
        )

    unit_price = _catalog_price(ctx, args.produto) or args.preco
    subtotal = round(unit_price * args.quantidade, 2)
    variant = ", ".join(part for part in (args.tamanho, args.cor) if part)
    line = f"{args.quantidade}x {args.produto}" + (f" ({variant})" if variant else "")

    order = _pending_order(ctx)
    if order is None:
        order = Order(
            company_id=ctx.company_id,
            conversation_id=ctx.conversation.id,
            customer_phone=ctx.customer_phone,
            customer_name=ctx.conversation.customer_name,
            items=line,
            quantity=args.quantidade,
            total_amount=subtotal,
        )
        ctx.db.add(order)
    else:
        order.items = f"{order.items}\n{line}"
        order.quantity = (order.quantity or 0) + args.quantidade
        order.total_amount = round((order.total_amount or 0.0) + subtotal, 2)
        order.updated_at = utcnow()
    ctx.db.flush()

    advance_deal(
        ctx.db,
        company_id=ctx.company_id,
        customer_phone=ctx.customer_phone,
        stage=DealStage.CLOSED_WON,
        customer_name=ctx.conversation.customer_name,
        title=f"Venda - {args.produto}",
        value=order.total_amount,
    )
    ctx.emit(
        WebhookEvent.SALE_COMPLETED,
        {
            "orderId": str(order.id),
            "conversationId": str(ctx.conversation.id),
            "customerPhone": ctx.customer_phone,
            "items": order.items,
            "total": order.total_amount,
        },
    )
    logger.info(
        "Sale registered",
        extra={"context": {"order_id": str(order.id), "total": order.total_amount}},
    )
    return ToolResult.success(
        f"Pedido registrado: {line} por {format_brl(subtotal)}.\n{pix_instructions(company, order.total_amount)}",
        pedidoId=str(order.id),
        total=format_brl(order.total_amount),
    )


def request_quote(args: RequestQuoteArgs, ctx: ToolContext) -> ToolResult:
    ctx.emit(
        WebhookEvent.QUOTE_REQUESTED,
        {
            "conversationId": str(ctx.conversation.id),
            "customerPhone": ctx.customer_phone,
            "product": args.produto,
            "quantity": args.quantidade,
            "details": args.detalhes,
        },
    )
    return ToolResult.success("Pedido de orçamento enviado à equipe. Informe ao cliente que retornaremos com os valores.")


def collect_delivery(args: CollectDeliveryArgs, ctx: ToolContext) -> ToolResult:
    if args.tipoEntrega != "RETIRADA":
        return ToolResult.failure("No momento só trabalhamos com retirada na loja.")

    orders = (
        ctx.db.query(Order)
        .filter(
            Order.company_id == ctx.company_id,
            Order.customer_phone == ctx.customer_phone,
            Order.status == "AWAITING_PAYMENT",
            Order.delivery_type.is_(None),
        )
        .all()
    )
    if not orders:
        return ToolResult.failure("Não há pedido aguardando pagamento para este cliente.")

    total = 0.0
    for order in orders:
        order.delivery_type = "PICKUP"
        order.updated_at = utcnow()
        total += order.total_amount or 0.0

    if not ctx.company.pix_key:
        return ToolResult.success("Retirada registrada. Um atendente vai enviar os dados de pagamento.", pedidos=len(orders))
    return ToolResult.success(
        f"Retirada na loja registrada.\n{pix_instructions(ctx.company, total)}",
        pedidos=len(orders),
        total=format_brl(total),
    )
