"""Two-pass function-calling flow around the completion service."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from atende.logging_config import get_logger
from atende.services.llm.base import LLMProvider, LLMResponse
from atende.services.resilience.circuit_breaker import CircuitBreaker
from atende.services.resilience.retry import OPENAI_RETRY, RetryOptions, retry
from atende.services.tools import (
    Attachment,
    ToolContext,
    ToolName,
    ToolResult,
    execute_tool,
    tool_definitions,
)

logger = get_logger("orchestrator")


class Stage(str, Enum):
    BUILD_PROMPT = "BUILD_PROMPT"
    FIRST_COMPLETION = "FIRST_COMPLETION"
    EXECUTE_TOOLS = "EXECUTE_TOOLS"
    SECOND_COMPLETION = "SECOND_COMPLETION"
    DONE = "DONE"


class SecondCompletionError(Exception):
    """Tools already ran (and committed) but the final completion failed."""

    def __init__(self, functions_called: List[str], cause: BaseException):
        self.functions_called = functions_called
        self.cause = cause
        super().__init__(f"Final completion failed after tools {functions_called}: {cause}")


@dataclass
class ExecutedTool:
    name: str
    arguments: str
    result: ToolResult
    automatic: bool = False


@dataclass
class OrchestratorResult:
    reply: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    tools: List[ExecutedTool] = field(default_factory=list)
    attachment: Optional[Attachment] = None

    @property
    def functions_called(self) -> List[str]:
        return [tool.name for tool in self.tools]

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class FunctionCallingOrchestrator:
    def __init__(
        self,
        llm: LLMProvider,
        breaker: CircuitBreaker,
        *,
        model: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 350,
        retry_options: RetryOptions = OPENAI_RETRY,
    ):
        self.llm = llm
        self.breaker = breaker
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry_options = retry_options

    async def _complete(self, messages: List[dict], tools: Optional[List[dict]]) -> LLMResponse:
        async def call() -> LLMResponse:
            return await self.breaker.execute(
                lambda: self.llm.complete(
                    messages,
                    tools=tools,
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
            )

        return await retry(call, self.retry_options)

    @staticmethod
    def build_messages(system_prompt: str, history: List[dict], user_message: Optional[str] = None) -> List[dict]:
        messages = [{"role": "system", "content": system_prompt}, *history]
        if user_message:
            messages.append({"role": "user", "content": user_message})
        return messages

    async def run(
        self,
        system_prompt: str,
        history: List[dict],
        ctx: ToolContext,
        user_message: Optional[str] = None,
    ) -> OrchestratorResult:
        stage = Stage.BUILD_PROMPT
        messages = self.build_messages(system_prompt, history, user_message)
        conversation_id = str(ctx.conversation.id)

        stage = Stage.FIRST_COMPLETION
        first = await self._complete(messages, tool_definitions())
        result = OrchestratorResult(
            reply=first.content.strip(),
            model=first.model,
            input_tokens=first.input_tokens,
            output_tokens=first.output_tokens,
        )
        if not first.tool_calls:
            logger.info(
                "Completion without tools",
                extra={"context": {"conversation_id": conversation_id, "tokens": result.total_tokens}},
            )
            return result

        stage = Stage.EXECUTE_TOOLS
        messages.append(first.assistant_message())
        notes = []
        # the model may request verification later in the same batch
        verification_requested = any(
            call.name == ToolName.REQUEST_VERIFICATION.value for call in first.tool_calls
        )
        for call in first.tool_calls:
            executed = ExecutedTool(call.name, call.arguments, execute_tool(call.name, call.arguments, ctx))
            result.tools.append(executed)
            messages.append(self._tool_message(call.id, executed.result))

            follow_up = executed.result.follow_up
            if follow_up is not None and not verification_requested:
                verification_requested = True
                automatic = self._run_verification(follow_up, ctx)
                result.tools.append(automatic)
                notes.append(
                    "Verificação solicitada automaticamente à equipe: "
                    + json.dumps(automatic.result.for_model(), ensure_ascii=False)
                )
        # tool replies must directly follow the assistant turn that requested them
        messages.extend({"role": "system", "content": note} for note in notes)

        result.attachment = next(
            (tool.result.attachment for tool in result.tools if tool.result.ok and tool.result.attachment),
            None,
        )

        stage = Stage.SECOND_COMPLETION
        try:
            second = await self._complete(messages, None)
        except Exception as exc:
            logger.error(
                "Final completion failed after tool side effects",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "stage": stage.value,
                        "functions_called": result.functions_called,
                        "error": str(exc),
                    }
                },
            )
            raise SecondCompletionError(result.functions_called, exc) from exc

        result.reply = second.content.strip()
        result.model = second.model
        result.input_tokens += second.input_tokens
        result.output_tokens += second.output_tokens
        stage = Stage.DONE
        logger.info(
            "Completion with tools",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "stage": stage.value,
                    "functions_called": result.functions_called,
                    "tokens": result.total_tokens,
                }
            },
        )
        return result

    @staticmethod
    def _tool_message(call_id: str, tool_result: ToolResult) -> dict:
        return {
            "role": "tool",
            "tool_call_id": call_id,
            "content": json.dumps(tool_result.for_model(), ensure_ascii=False),
        }

    @staticmethod
    def _run_verification(follow_up, ctx: ToolContext) -> ExecutedTool:
        arguments = json.dumps(
            {
                "assunto": follow_up.subject,
                "produtoMencionado": follow_up.product,
                "urgencia": follow_up.urgency,
            },
            ensure_ascii=False,
        )
        logger.info(
            "Automatic verification request",
            extra={"context": {"conversation_id": str(ctx.conversation.id), "subject": follow_up.subject}},
        )
        return ExecutedTool(
            ToolName.REQUEST_VERIFICATION.value,
            arguments,
            execute_tool(ToolName.REQUEST_VERIFICATION.value, arguments, ctx),
            automatic=True,
        )
