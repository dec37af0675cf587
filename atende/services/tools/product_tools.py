from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_

from atende.logging_config import get_logger
from atende.models import Product, TrainingSource
from atende.services.agent_router import normalize_text
from atende.services.tools.base import Attachment, ToolContext, ToolResult, VerificationFollowUp
from atende.services.tools.formatting import format_brl

logger = get_logger("tools.products")

MAX_PRODUCTS = 5
MIN_WORD_LENGTH = 3
TRAINING_SNIPPET_CHARS = 500


class SearchProductArgs(BaseModel):
    termo: str = Field(description="Nome ou tipo do produto que o cliente procura, sem a cor")
    cor: Optional[str] = Field(default=None, description="Cor desejada, se o cliente mencionou")


class SendDocumentArgs(BaseModel):
    tipoDocumento: str = Field(description="Tipo do documento pedido (catálogo, cardápio, tabela de preços...)")
    motivoEnvio: Optional[str] = Field(default=None, description="Por que o documento está sendo enviado")


def _text_filter(term: str):
    pattern = f"%{term}%"
    return or_(
        Product.name.ilike(pattern),
        Product.description.ilike(pattern),
        Product.category.ilike(pattern),
    )


def find_products(ctx: ToolContext, term: str, color: Optional[str] = None) -> List[Product]:
    base = ctx.db.query(Product).filter(Product.company_id == ctx.company_id, Product.is_active.is_(True))
    products = base.filter(_text_filter(term)).order_by(Product.name).all()
    if not products:
        words = [word for word in term.split() if len(word) >= MIN_WORD_LENGTH]
        if words:
            products = base.filter(or_(*[_text_filter(word) for word in words])).order_by(Product.name).all()

    if color:
        wanted = normalize_text(color)

        def has_color(product: Product) -> bool:
            haystack = normalize_text(f"{product.name} {product.description or ''}")
            return wanted in haystack

        # stable sort keeps name order inside each group
        products = sorted(products, key=lambda product: not has_color(product))
    return products[:MAX_PRODUCTS]


def _is_out_of_stock(product: Product) -> bool:
    return bool(product.stock_enabled) and (product.stock_quantity or 0) <= 0


def _describe(product: Product) -> dict:
    item = {"nome": product.name, "preco": format_brl(product.price or 0.0)}
    if product.description:
        item["descricao"] = product.description
    if product.sizes:
        item["tamanhos"] = ", ".join(str(size) for size in product.sizes)
    if product.stock_enabled:
        item["estoque"] = product.stock_quantity if product.stock_quantity > 0 else "esgotado"
    return item


def _training_fallback(ctx: ToolContext, term: str) -> Optional[TrainingSource]:
    if ctx.agent_id is None:
        return None
    pattern = f"%{term}%"
    return (
        ctx.db.query(TrainingSource)
        .filter(
            TrainingSource.agent_id == ctx.agent_id,
            TrainingSource.type.in_(["PRODUCT", "FAQ", "QA"]),
            or_(TrainingSource.title.ilike(pattern), TrainingSource.content.ilike(pattern)),
        )
        .first()
    )


def search_product(args: SearchProductArgs, ctx: ToolContext) -> ToolResult:
    term = args.termo.strip()
    products = find_products(ctx, term, args.cor)
    logger.info(
        "Product search",
        extra={"context": {"term": term, "color": args.cor, "found": len(products)}},
    )

    if products:
        items = [_describe(product) for product in products]
        result = ToolResult.success(
            f"Encontrei {len(products)} produto(s) para '{term}'.",
            produtos=items,
        )
        with_image = next((product for product in products if product.image_url), None)
        if with_image:
            result.attachment = Attachment(kind="image", url=with_image.image_url, title=with_image.name)
        if all(_is_out_of_stock(product) for product in products):
            result.message += " Nenhum está em estoque no momento; vou confirmar com a equipe."
            result.data["needsStockVerification"] = True
            result.follow_up = VerificationFollowUp(
                subject=f"Confirmar estoque de {term}" + (f" na cor {args.cor}" if args.cor else ""),
                product=products[0].name,
            )
        return result

    source = _training_fallback(ctx, term)
    if source:
        return ToolResult.success(
            f"Não há '{term}' no catálogo, mas há esta informação cadastrada.",
            informacao=f"{source.title}: {source.content[:TRAINING_SNIPPET_CHARS]}",
        )

    product_label = f"{term} {args.cor}" if args.cor else term
    return ToolResult(
        ok=True,
        message=(
            f"Não encontrei '{product_label}' no catálogo. A equipe vai verificar a disponibilidade; "
            "não diga ao cliente que não temos o produto."
        ),
        data={"needsVerification": True, "searchTerm": product_label},
        follow_up=VerificationFollowUp(subject=f"Cliente procura: {product_label}", product=product_label),
    )


def _document_score(source: TrainingSource, wanted_words: List[str]) -> int:
    haystack = normalize_text(f"{source.title} {source.file_name or ''} {source.content[:200] if source.content else ''}")
    return sum(1 for word in wanted_words if word in haystack)


def send_document(args: SendDocumentArgs, ctx: ToolContext) -> ToolResult:
    if ctx.agent_id is None:
        return ToolResult.failure("Nenhum documento disponível para este atendimento.")

    documents = (
        ctx.db.query(TrainingSource)
        .filter(TrainingSource.agent_id == ctx.agent_id, TrainingSource.file_url.isnot(None))
        .order_by(TrainingSource.created_at)
        .all()
    )
    wanted = [word for word in normalize_text(args.tipoDocumento).split() if len(word) >= MIN_WORD_LENGTH]
    best, best_score = None, 0
    for document in documents:
        score = _document_score(document, wanted)
        if score > best_score:
            best, best_score = document, score

    if best is None:
        return ToolResult.failure(
            f"Não encontrei o documento '{args.tipoDocumento}'.",
            disponiveis=[document.title for document in documents],
        )

    result = ToolResult.success(f"Documento '{best.title}' localizado.", documento=best.title)
    result.attachment = Attachment(
        kind="file",
        url=best.file_url,
        file_name=best.file_name or best.title,
        title=best.title,
    )
    return result
