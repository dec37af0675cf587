from datetime import date, datetime, timezone

from atende.models import Agent, Conversation, Message, TokenUsage
from atende.services.conversation_service import (
    MEDIA_PLACEHOLDER,
    get_or_create_conversation,
    message_content,
    normalize_message_type,
    normalize_phone,
    recent_history,
    record_token_usage,
    save_message,
)


class TestNormalization:
    def test_phone(self):
        assert normalize_phone("5511999990000@c.us") == "5511999990000"
        assert normalize_phone("+55 (11) 99999-0000") == "5511999990000"

    def test_message_type(self):
        assert normalize_message_type("chat") == "TEXT"
        assert normalize_message_type("ptt") == "AUDIO"
        assert normalize_message_type("unknown") == "TEXT"
        assert normalize_message_type(None) == "TEXT"

    def test_media_body_is_replaced(self):
        assert message_content("data:image/jpeg;base64,AAAA", "IMAGE") == MEDIA_PLACEHOLDER
        assert message_content("", "AUDIO") == MEDIA_PLACEHOLDER
        assert message_content("legenda da foto", "IMAGE") == "legenda da foto"
        assert message_content("  oi  ", "TEXT") == "oi"


class TestGetOrCreateConversation:
    def test_creates_with_routed_agent(self, db, seed):
        resolution = get_or_create_conversation(
            db, session=seed.session, customer_phone="5511988887777", first_message="oi"
        )

        assert resolution.created is True
        assert resolution.conversation.agent_id == seed.agent.id
        assert resolution.conversation.status == "AI_HANDLING"

    def test_reuses_open_conversation(self, db, seed, make_conversation):
        existing = make_conversation(status="HUMAN_HANDLING")

        resolution = get_or_create_conversation(
            db, session=seed.session, customer_phone=existing.customer_phone, first_message="oi"
        )

        assert resolution.created is False
        assert resolution.conversation.id == existing.id

    def test_closed_conversation_starts_new_lifecycle(self, db, seed, make_conversation):
        closed = make_conversation(status="CLOSED")

        resolution = get_or_create_conversation(
            db, session=seed.session, customer_phone=closed.customer_phone, first_message="oi de novo"
        )

        assert resolution.created is True
        assert resolution.conversation.id != closed.id
        assert db.query(Conversation).count() == 2

    def test_without_agents_stays_open(self, db, seed):
        seed.agent.is_active = False
        db.commit()

        resolution = get_or_create_conversation(
            db, session=seed.session, customer_phone="5511911112222", first_message="oi"
        )

        assert resolution.conversation.status == "OPEN"
        assert resolution.conversation.agent_id is None

    def test_keyword_routing_on_first_message(self, db, seed):
        support = Agent(company_id=seed.company.id, name="Suporte", trigger_keywords=["troca", "defeito"], priority=2)
        db.add(support)
        db.commit()

        resolution = get_or_create_conversation(
            db, session=seed.session, customer_phone="5511933334444", first_message="quero fazer uma troca"
        )

        assert resolution.conversation.agent_id == support.id


class TestSaveMessage:
    def test_timestamps_strictly_increase(self, db, make_conversation):
        conversation = make_conversation()
        future = datetime(2100, 1, 1, tzinfo=timezone.utc)
        db.add(Message(conversation_id=conversation.id, sender="CUSTOMER", content="antes", created_at=future))
        db.commit()

        message = save_message(db, conversation, sender="AI", content="depois")
        db.commit()

        assert message.created_at.replace(tzinfo=timezone.utc) > future

    def test_touch_and_unread(self, db, make_conversation):
        conversation = make_conversation()
        before = conversation.last_message_at

        save_message(db, conversation, sender="CUSTOMER", content="oi", count_unread=True)
        db.commit()

        assert conversation.unread_count == 1
        assert conversation.last_message_at != before

    def test_no_touch(self, db, make_conversation):
        conversation = make_conversation()
        before = conversation.last_message_at

        save_message(db, conversation, sender="AI", content="Ainda está por aí?", touch=False)
        db.commit()

        assert conversation.last_message_at == before


class TestRecentHistory:
    def test_last_messages_oldest_first(self, db, make_conversation):
        conversation = make_conversation()
        for index in range(10):
            sender = "CUSTOMER" if index % 2 == 0 else "AI"
            save_message(db, conversation, sender=sender, content=f"m{index}")
        db.commit()

        history = recent_history(db, conversation.id, limit=4)

        assert [turn["content"] for turn in history] == ["m6", "m7", "m8", "m9"]
        assert [turn["role"] for turn in history] == ["user", "assistant", "user", "assistant"]


class TestTokenUsage:
    def test_accumulates_per_month(self, db, seed):
        now = datetime(2026, 3, 15, tzinfo=timezone.utc)

        record_token_usage(db, seed.company.id, input_tokens=100, output_tokens=20, now=now)
        record_token_usage(db, seed.company.id, input_tokens=50, output_tokens=5, now=now)

        usage = db.query(TokenUsage).one()
        db.refresh(usage)
        assert usage.month == date(2026, 3, 1)
        assert (usage.input_tokens, usage.output_tokens) == (150, 25)

    def test_zero_usage_is_skipped(self, db, seed):
        record_token_usage(db, seed.company.id, input_tokens=0, output_tokens=0)
        assert db.query(TokenUsage).count() == 0
