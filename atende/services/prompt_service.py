from datetime import datetime
from typing import Optional

from atende.database import utcnow
from atende.models import Agent, Company

_RULES = """REGRAS:
- Responda em português, de forma curta e natural, como numa conversa de WhatsApp.
- Sempre use buscarProduto antes de falar de preço ou disponibilidade. Nunca invente produtos ou preços.
- Se não encontrar algo, não diga que não temos: a equipe será acionada para verificar.
- Quando o cliente confirmar a compra, use processarVenda.
- Se o cliente pedir um atendente ou estiver insatisfeito, use transferirParaHumano.
- Quando o cliente se despedir e não houver nada pendente, use finalizarConversa."""


def build_system_prompt(
    *,
    company: Company,
    agent: Agent,
    knowledge_context: str = "",
    memory_block: str = "",
    customer_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Persona first, then company, grounding and (last, lowest priority) memory."""
    now = now or utcnow()
    sections = [f"Você é {agent.name}, atendente virtual de {company.name}."]
    if agent.personality:
        sections.append(f"Personalidade: {agent.personality}")
    if agent.tone:
        sections.append(f"Tom de voz: {agent.tone}")
    if agent.instructions:
        sections.append(f"Instruções da empresa:\n{agent.instructions}")
    if company.description:
        sections.append(f"Sobre a empresa: {company.description}")
    if company.niche:
        sections.append(f"Segmento: {company.niche}")
    sections.append(f"Data e hora atual (UTC): {now.strftime('%d/%m/%Y %H:%M')}")
    if customer_name:
        sections.append(f"Nome do cliente: {customer_name}")
    sections.append(_RULES)
    if knowledge_context:
        sections.append(f"=== BASE DE CONHECIMENTO ===\n{knowledge_context}")
    if memory_block:
        sections.append(memory_block)
    return "\n\n".join(sections)
