import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("TIMEOUT_MONITOR_ENABLED", "false")

from types import SimpleNamespace
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from atende.config import Settings
from atende.database import Base, utcnow
from atende.models import Agent, ChannelSession, Company, Conversation
from atende.runtime import build_runtime
from atende.services.channel import ChannelAdapter
from atende.services.llm import LLMProvider, LLMResponse, ToolCall

EMBEDDING_VOCABULARY = ["camiseta", "azul", "preco", "entrega", "horario", "pix"]


def keyword_embedding(text: str) -> List[float]:
    """Deterministic bag-of-words vector, good enough for similarity tests."""
    lowered = (text or "").lower().replace("ç", "c")
    vector = [float(lowered.count(word)) for word in EMBEDDING_VOCABULARY]
    vector.append(0.01)
    return vector


def text_response(content: str, *, prompt_tokens: int = 10, completion_tokens: int = 5) -> LLMResponse:
    return LLMResponse(
        content=content,
        model="gpt-4o-mini",
        usage={"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    )


def tool_response(*calls: tuple, prompt_tokens: int = 20, completion_tokens: int = 8) -> LLMResponse:
    """``calls`` are (name, arguments_json) pairs."""
    return LLMResponse(
        content="",
        model="gpt-4o-mini",
        usage={"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
        tool_calls=[ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls, 1)],
    )


class FakeLLM(LLMProvider):
    """Replays queued completions; records every request."""

    def __init__(self, responses: Optional[list] = None):
        self.responses = list(responses or [])
        self.calls: List[dict] = []
        self.embedded: List[str] = []

    async def complete(self, messages, *, tools=None, model=None, temperature=0.7, max_tokens=1000):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools, "max_tokens": max_tokens})
        if not self.responses:
            return text_response("Resumo da conversa.")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def embed(self, text, *, model=None):
        self.embedded.append(text)
        return keyword_embedding(text)


class FakeChannel(ChannelAdapter):
    def __init__(self):
        self.sent: List[tuple] = []
        self.status = "CONNECTED"

    async def send_text(self, session, recipient, text):
        self.sent.append(("text", session, recipient, text))
        return True

    async def send_file(self, session, recipient, file_url, file_name, caption=None):
        self.sent.append(("file", session, recipient, file_url))
        return True

    async def send_image(self, session, recipient, image_url, caption=None):
        self.sent.append(("image", session, recipient, image_url))
        return True

    async def get_status(self, session):
        return self.status

    async def start_session(self, session, webhook_url=None):
        return {"status": "QRCODE"}

    async def logout(self, session):
        return True

    @property
    def texts(self) -> List[str]:
        return [entry[3] for entry in self.sent if entry[0] == "text"]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        redis_url=None,
        worker_enabled=False,
        timeout_monitor_enabled=False,
        admin_token="admin-secret",
    )


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def runtime(test_settings, session_factory, fake_llm, fake_channel):
    return build_runtime(test_settings, session_factory=session_factory, llm=fake_llm, channel=fake_channel)


@pytest.fixture
def seed(db):
    company = Company(name="Loja Aurora", ai_enabled=True, pix_key="pix@lojaaurora.com", pix_key_type="EMAIL")
    db.add(company)
    db.flush()
    session = ChannelSession(company_id=company.id, session_name="aurora", status="CONNECTED")
    agent = Agent(
        company_id=company.id,
        name="Ana",
        personality="Simpática e objetiva",
        trigger_keywords=["camiseta", "preço"],
        priority=1,
        is_default=True,
    )
    db.add_all([session, agent])
    db.commit()
    return SimpleNamespace(company=company, session=session, agent=agent)


@pytest.fixture
def make_conversation(db, seed):
    def _make(
        *,
        status: str = "AI_HANDLING",
        phone: str = "5511999990000",
        name: Optional[str] = "Maria Souza",
        last_message_at=None,
        agent=True,
    ) -> Conversation:
        conversation = Conversation(
            company_id=seed.company.id,
            session_id=seed.session.id,
            agent_id=seed.agent.id if agent else None,
            customer_phone=phone,
            customer_whatsapp_id=f"{phone}@c.us",
            customer_name=name,
            status=status,
            last_message_at=last_message_at or utcnow(),
        )
        db.add(conversation)
        db.commit()
        return conversation

    return _make
