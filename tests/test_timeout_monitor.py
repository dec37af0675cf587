from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from atende.database import utcnow
from atende.models import AuditLog, Conversation, CustomerMemory, Message, Order
from atende.services.channel import ChannelError
from atende.services.timeout_monitor import (
    ConversationTimeoutMonitor,
    TimeoutAction,
    closing_message,
    warning_message,
)


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def idle_conversation(db, make_conversation, now):
    """AI answered 20 minutes ago and the customer went quiet."""
    conversation = make_conversation(last_message_at=now - timedelta(minutes=20))
    db.add_all(
        [
            Message(conversation_id=conversation.id, sender="CUSTOMER", content="tem camiseta azul?",
                    created_at=now - timedelta(minutes=21)),
            Message(conversation_id=conversation.id, sender="AI", content="Temos sim! Quer reservar?",
                    created_at=now - timedelta(minutes=20)),
        ]
    )
    db.commit()
    return conversation


def _monitor(runtime, at):
    return ConversationTimeoutMonitor(
        runtime,
        warning_after=timedelta(minutes=15),
        close_after=timedelta(minutes=30),
        clock=lambda: at,
    )


class TestMessages:
    def test_personalized_with_first_name(self):
        assert warning_message("Maria Souza").startswith("Oi, Maria!")
        assert ", Maria." in closing_message("Maria Souza")

    def test_without_name(self):
        assert warning_message(None).startswith("Oi!")
        assert closing_message("  ").startswith("Como não tivemos retorno, vou encerrar este atendimento por aqui.")


class TestWarning:
    @pytest.mark.asyncio
    async def test_warns_after_inactivity(self, db, idle_conversation, runtime, fake_channel, now):
        before = idle_conversation.last_message_at

        results = await _monitor(runtime, now).run(db)

        assert [result.action for result in results] == [TimeoutAction.WARNING_SENT]
        assert fake_channel.texts == [warning_message("Maria Souza")]
        db.expire_all()
        conversation = db.get(Conversation, idle_conversation.id)
        assert conversation.status == "AI_HANDLING"
        assert conversation.last_message_at == before
        assert db.query(AuditLog).filter(AuditLog.action == "INACTIVITY_WARNING_SENT").count() == 1

    @pytest.mark.asyncio
    async def test_warns_only_once_per_inactivity_period(self, db, idle_conversation, runtime, fake_channel, now):
        await _monitor(runtime, now).run(db)
        results = await _monitor(runtime, now + timedelta(minutes=5)).run(db)

        assert results[0].action == TimeoutAction.SKIPPED
        assert results[0].reason == "warning_already_sent"
        assert len(fake_channel.texts) == 1

    @pytest.mark.asyncio
    async def test_recent_conversations_are_not_candidates(self, db, idle_conversation, runtime, now):
        assert await _monitor(runtime, now - timedelta(minutes=10)).run(db) == []

    @pytest.mark.asyncio
    async def test_customer_spoke_last(self, db, make_conversation, runtime, fake_channel, now):
        conversation = make_conversation(last_message_at=now - timedelta(minutes=20))
        db.add(Message(conversation_id=conversation.id, sender="CUSTOMER", content="oi",
                       created_at=now - timedelta(minutes=20)))
        db.commit()

        results = await _monitor(runtime, now).run(db)

        assert results[0].reason == "last_message_from_customer"
        assert fake_channel.sent == []

    @pytest.mark.asyncio
    async def test_disconnected_session_is_skipped(self, db, seed, idle_conversation, runtime, fake_channel, now):
        seed.session.status = "DISCONNECTED"
        db.commit()

        results = await _monitor(runtime, now).run(db)

        assert results[0].reason == "session_disconnected"
        assert fake_channel.sent == []

    @pytest.mark.asyncio
    async def test_failed_delivery_releases_the_claim(self, db, idle_conversation, runtime, now):
        runtime.send_text = AsyncMock(side_effect=ChannelError("gateway down"))

        results = await _monitor(runtime, now).run(db)

        assert results[0].action == TimeoutAction.ERROR
        assert db.query(AuditLog).filter(AuditLog.action == "INACTIVITY_WARNING_SENT").count() == 0

        runtime.send_text = AsyncMock(return_value=True)
        results = await _monitor(runtime, now).run(db)
        assert results[0].action == TimeoutAction.WARNING_SENT


class TestClosing:
    @pytest.mark.asyncio
    async def test_closes_after_warning(self, db, idle_conversation, runtime, fake_channel, now):
        await _monitor(runtime, now).run(db)

        results = await _monitor(runtime, now + timedelta(minutes=15)).run(db)
        await runtime.tasks.drain()

        assert results[0].action == TimeoutAction.CLOSED
        assert fake_channel.texts[-1] == closing_message("Maria Souza")
        db.expire_all()
        conversation = db.get(Conversation, idle_conversation.id)
        assert conversation.status == "CLOSED"
        assert conversation.closed_at is not None
        assert db.query(AuditLog).filter(AuditLog.action == "CONVERSATION_CLOSED_INACTIVITY").count() == 1
        assert db.query(CustomerMemory).count() == 1

    @pytest.mark.asyncio
    async def test_late_first_check_warns_before_closing(self, db, idle_conversation, runtime, fake_channel, now):
        results = await _monitor(runtime, now + timedelta(minutes=20)).run(db)

        assert results[0].action == TimeoutAction.WARNING_SENT
        assert results[0].reason == "late"
        assert db.get(Conversation, idle_conversation.id).status == "AI_HANDLING"


class TestCompletedWork:
    @pytest.fixture
    def order(self, db, seed, idle_conversation):
        order = Order(
            company_id=seed.company.id,
            conversation_id=idle_conversation.id,
            customer_phone=idle_conversation.customer_phone,
            items="1x Camiseta Azul",
            total_amount=59.9,
        )
        db.add(order)
        db.commit()
        return order

    @pytest.mark.asyncio
    async def test_active_order_is_never_warned(self, db, order, runtime, fake_channel, now):
        results = await _monitor(runtime, now).run(db)

        assert results[0].action == TimeoutAction.SKIPPED
        assert results[0].reason == "ai_work_completed:order"
        assert fake_channel.sent == []

    @pytest.mark.asyncio
    async def test_closed_silently_after_close_timeout(self, db, order, idle_conversation, runtime, fake_channel, now):
        results = await _monitor(runtime, now + timedelta(minutes=15)).run(db)

        assert results[0].action == TimeoutAction.CLOSED_SILENT
        assert fake_channel.sent == []
        db.expire_all()
        assert db.get(Conversation, idle_conversation.id).status == "CLOSED"
        entry = db.query(AuditLog).filter(AuditLog.action == "CONVERSATION_CLOSED_INACTIVITY").one()
        assert entry.changes == {"silent": True, "reason": "order"}
