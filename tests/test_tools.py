import json
from datetime import timedelta
from unittest.mock import Mock

import pytest

from atende.database import utcnow
from atende.models import AuditLog, Conversation, CustomerInterest, Deal, Order, Product, TrainingSource
from atende.schemas.webhook import WebhookEvent
from atende.services.tools import TOOLS, ToolContext, ToolName, ToolSpec, execute_tool, tool_definitions
from atende.services.tools.base import Attachment, ToolResult
from atende.services.tools.formatting import format_brl


@pytest.fixture
def sink():
    return Mock()


@pytest.fixture
def ctx(db, seed, make_conversation, sink):
    conversation = make_conversation()
    return ToolContext(db=db, company=seed.company, conversation=conversation, agent_id=seed.agent.id, sink=sink)


@pytest.fixture
def catalog(db, seed):
    products = [
        Product(company_id=seed.company.id, name="Camiseta Azul", description="Algodão", price=59.9,
                image_url="https://cdn.example.com/azul.jpg", sizes=["P", "M", "G"]),
        Product(company_id=seed.company.id, name="Camiseta Preta", description="Algodão", price=59.9),
        Product(company_id=seed.company.id, name="Boné", category="Acessórios", price=39.0,
                stock_enabled=True, stock_quantity=0),
    ]
    db.add_all(products)
    db.commit()
    return products


def _call(name: ToolName, ctx, **arguments):
    return execute_tool(name.value, json.dumps(arguments), ctx)


class TestCatalog:
    def test_every_tool_has_a_handler(self):
        assert set(TOOLS) == set(ToolName)

    def test_definitions_use_wire_names(self):
        names = [definition["function"]["name"] for definition in tool_definitions()]
        assert names[0] == "buscarProduto"
        assert len(names) == 10

    def test_optional_arguments_are_plain_types(self):
        parameters = TOOLS[ToolName.SEARCH_PRODUCT].definition()["function"]["parameters"]
        assert parameters["properties"]["cor"]["type"] == "string"
        assert parameters["required"] == ["termo"]


class TestFormatting:
    def test_brl(self):
        assert format_brl(1234.5) == "R$ 1.234,50"
        assert format_brl(59.9) == "R$ 59,90"


class TestModelView:
    def test_attachment_url_hidden(self):
        result = ToolResult.success("ok")
        result.attachment = Attachment(kind="image", url="https://secret.example.com/x.jpg", title="Camiseta")
        view = json.dumps(result.for_model())
        assert "secret.example.com" not in view
        assert "Camiseta" in view


class TestExecuteTool:
    def test_unknown_tool(self, ctx):
        result = execute_tool("apagarTudo", "{}", ctx)
        assert result.ok is False

    def test_invalid_json(self, ctx):
        result = execute_tool(ToolName.SEARCH_PRODUCT.value, "{not json", ctx)
        assert result.ok is False

    def test_missing_required_argument(self, ctx):
        assert _call(ToolName.SEARCH_PRODUCT, ctx).ok is False

    def test_handler_error_rolls_back_and_drops_events(self, ctx, sink, monkeypatch):
        def broken(args, tool_ctx):
            tool_ctx.emit(WebhookEvent.QUOTE_REQUESTED, {})
            raise RuntimeError("db exploded")

        original = TOOLS[ToolName.REQUEST_QUOTE]
        monkeypatch.setitem(TOOLS, ToolName.REQUEST_QUOTE, ToolSpec(original.name, original.description, original.args_model, broken))

        result = _call(ToolName.REQUEST_QUOTE, ctx, produto="Uniformes")

        assert result.ok is False
        sink.assert_not_called()


class TestSearchProduct:
    def test_finds_products_with_color_first(self, ctx, catalog):
        result = _call(ToolName.SEARCH_PRODUCT, ctx, termo="camiseta", cor="azul")

        assert result.ok is True
        assert [item["nome"] for item in result.data["produtos"]] == ["Camiseta Azul", "Camiseta Preta"]
        assert result.data["produtos"][0]["preco"] == "R$ 59,90"
        assert result.attachment.url == "https://cdn.example.com/azul.jpg"
        assert result.follow_up is None

    def test_word_fallback(self, ctx, catalog):
        result = _call(ToolName.SEARCH_PRODUCT, ctx, termo="camiseta estampada")
        assert len(result.data["produtos"]) == 2

    def test_out_of_stock_requests_verification(self, ctx, catalog):
        result = _call(ToolName.SEARCH_PRODUCT, ctx, termo="boné")

        assert result.data["needsStockVerification"] is True
        assert result.follow_up.product == "Boné"

    def test_not_found_never_denies(self, ctx, catalog):
        result = _call(ToolName.SEARCH_PRODUCT, ctx, termo="jaqueta", cor="verde")

        assert result.ok is True
        assert result.data["needsVerification"] is True
        assert result.follow_up.subject == "Cliente procura: jaqueta verde"

    def test_training_fallback(self, db, ctx, seed):
        db.add(TrainingSource(agent_id=seed.agent.id, title="Jaquetas", content="Jaquetas chegam em maio.", type="PRODUCT"))
        db.commit()

        result = _call(ToolName.SEARCH_PRODUCT, ctx, termo="jaqueta")

        assert "Jaquetas chegam em maio." in result.data["informacao"]
        assert result.follow_up is None


class TestConversationTools:
    def test_transfer_to_human(self, db, ctx, sink):
        result = _call(ToolName.TRANSFER_TO_HUMAN, ctx, motivo="reclamacao", resumo="Produto com defeito")

        assert result.data["transferred"] is True
        assert db.get(Conversation, ctx.conversation.id).status == "HUMAN_HANDLING"
        assert db.query(AuditLog).filter(AuditLog.action == "AI_TRANSFER_TO_HUMAN").count() == 1
        company_id, event, data = sink.call_args.args
        assert event == WebhookEvent.HUMAN_TRANSFER
        assert data["reason"] == "reclamacao"

    def test_transfer_twice_is_noop(self, ctx, sink):
        _call(ToolName.TRANSFER_TO_HUMAN, ctx, motivo="outro", resumo="x")
        result = _call(ToolName.TRANSFER_TO_HUMAN, ctx, motivo="outro", resumo="x")

        assert result.data["transferred"] is False
        assert sink.call_count == 1

    def test_request_verification(self, db, ctx, sink):
        result = _call(ToolName.REQUEST_VERIFICATION, ctx, assunto="Estoque do boné")

        assert result.data["statusChanged"] is True
        assert db.get(Conversation, ctx.conversation.id).status == "WAITING_RESPONSE"
        assert sink.call_args.args[1] == WebhookEvent.VERIFICATION_REQUESTED

    def test_close_conversation(self, db, ctx, sink):
        result = _call(ToolName.CLOSE_CONVERSATION, ctx, resumoConversa="Dúvida resolvida")

        assert result.data["closed"] is True
        conversation = db.get(Conversation, ctx.conversation.id)
        assert conversation.status == "CLOSED"
        assert conversation.closed_at is not None

    def test_capture_lead(self, db, ctx, sink):
        _call(ToolName.CAPTURE_LEAD, ctx, nome="Maria Souza", email="maria@example.com")

        deal = db.query(Deal).one()
        assert deal.stage == "LEAD"
        assert "maria@example.com" in deal.notes
        assert sink.call_args.args[1] == WebhookEvent.LEAD_CAPTURED


class TestSalesTools:
    def test_register_interest_advances_deal(self, db, ctx):
        _call(ToolName.CAPTURE_LEAD, ctx, nome="Maria")
        _call(ToolName.REGISTER_INTEREST, ctx, produto="Camiseta Azul", detalhes="tamanho M")

        assert db.query(CustomerInterest).one().product_name == "Camiseta Azul"
        assert db.query(Deal).one().stage == "INTERESTED"

    def test_process_sale_uses_catalog_price_and_pix(self, db, ctx, catalog, sink):
        result = _call(ToolName.PROCESS_SALE, ctx, produto="Camiseta Azul", preco=10.0, quantidade=2, tamanho="M")

        order = db.query(Order).one()
        assert order.total_amount == pytest.approx(119.8)
        assert order.items == "2x Camiseta Azul (M)"
        assert order.conversation_id == ctx.conversation.id
        assert "pix@lojaaurora.com" in result.message
        assert db.query(Deal).one().stage == "CLOSED_WON"
        assert sink.call_args.args[1] == WebhookEvent.SALE_COMPLETED

    def test_process_sale_merges_recent_order(self, db, ctx, catalog):
        _call(ToolName.PROCESS_SALE, ctx, produto="Camiseta Azul", preco=59.9)
        _call(ToolName.PROCESS_SALE, ctx, produto="Boné", preco=39.0)

        order = db.query(Order).one()
        assert order.quantity == 2
        assert order.total_amount == pytest.approx(98.9)
        assert order.items.splitlines() == ["1x Camiseta Azul", "1x Boné"]

    def test_old_order_is_not_merged(self, db, ctx, catalog):
        _call(ToolName.PROCESS_SALE, ctx, produto="Boné", preco=39.0)
        db.query(Order).update({"created_at": utcnow() - timedelta(hours=2)})
        db.commit()

        _call(ToolName.PROCESS_SALE, ctx, produto="Boné", preco=39.0)

        assert db.query(Order).count() == 2

    def test_process_sale_without_pix_key(self, db, ctx, seed):
        seed.company.pix_key = None
        db.commit()

        result = _call(ToolName.PROCESS_SALE, ctx, produto="Boné", preco=39.0)

        assert result.ok is False
        assert db.query(Order).count() == 0

    def test_collect_delivery_pickup(self, db, ctx, catalog):
        _call(ToolName.PROCESS_SALE, ctx, produto="Boné", preco=39.0)

        result = _call(ToolName.COLLECT_DELIVERY, ctx, tipoEntrega="RETIRADA")

        assert result.ok is True
        assert db.query(Order).one().delivery_type == "PICKUP"
        assert "R$ 39,00" in result.message

    def test_collect_delivery_rejects_shipping(self, ctx):
        assert _call(ToolName.COLLECT_DELIVERY, ctx, tipoEntrega="ENTREGA").ok is False

    def test_request_quote_emits_event(self, ctx, sink):
        result = _call(ToolName.REQUEST_QUOTE, ctx, produto="Uniformes", quantidade=50)

        assert result.ok is True
        assert sink.call_args.args[1] == WebhookEvent.QUOTE_REQUESTED


class TestSendDocument:
    def test_sends_best_matching_document(self, db, ctx, seed):
        db.add_all(
            [
                TrainingSource(agent_id=seed.agent.id, title="Tabela de preços", content="",
                               file_url="https://files.example.com/precos.pdf", file_name="precos.pdf"),
                TrainingSource(agent_id=seed.agent.id, title="Catálogo verão", content="",
                               file_url="https://files.example.com/catalogo.pdf", file_name="catalogo.pdf"),
            ]
        )
        db.commit()

        result = _call(ToolName.SEND_DOCUMENT, ctx, tipoDocumento="catálogo")

        assert result.ok is True
        assert result.attachment.kind == "file"
        assert result.attachment.file_name == "catalogo.pdf"

    def test_no_documents(self, ctx):
        assert _call(ToolName.SEND_DOCUMENT, ctx, tipoDocumento="cardápio").ok is False
