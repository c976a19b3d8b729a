from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from switchboard.logging import get_logger
from switchboard.service.errors import ServiceError, ToolExecutionFailed
from switchboard.service.orchestrator import ToolOrchestrator
from switchboard.service.tool_registry import ToolDefinition
from switchboard.storage.context_store import generate_session_id
from switchboard.storage.models import (
    ContextMessage,
    IncomingMessage,
    OutgoingMessage,
    ProcessingResult,
    RoutingResult,
    SessionContext,
    ToolExecution,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
FALLBACK_REPLY = "Sorry, I could not process your message right now. Please try again later."


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelReply:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tokens_used: int = 0
    provider: Optional[str] = None
    model: Optional[str] = None


class ModelBackend(Protocol):
    """Interface for pluggable chat-completion backends."""

    provider: str

    async def generate(
        self,
        messages: List[dict],
        tools: List[dict],
        *,
        model: str,
        llm_config: Optional[Dict[str, Any]] = None,
    ) -> ModelReply: ...


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("tool_call_arguments_invalid", raw=str(raw)[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class StubBackend:
    """Deterministic backend for tests and deployments without an API key.

    A ``script`` of replies is consumed in order; once it is exhausted the
    backend echoes the last user turn.
    """

    provider = "stub"

    def __init__(self, script: Optional[Sequence[ModelReply]] = None) -> None:
        self.script: List[ModelReply] = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    async def generate(
        self,
        messages: List[dict],
        tools: List[dict],
        *,
        model: str,
        llm_config: Optional[Dict[str, Any]] = None,
    ) -> ModelReply:
        self.calls.append({"messages": list(messages), "tools": list(tools), "model": model})
        if self.script:
            reply = self.script.pop(0)
            reply.provider = reply.provider or self.provider
            reply.model = reply.model or model
            return reply
        last_user = next(
            (m.get("content") or "" for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return ModelReply(
            content=f"[stub model={model}] {last_user}",
            tokens_used=len(last_user.split()),
            provider=self.provider,
            model=model,
        )


class OpenAIChatBackend:
    """Chat completions against OpenAI or any compatible endpoint."""

    provider = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def generate(
        self,
        messages: List[dict],
        tools: List[dict],
        *,
        model: str,
        llm_config: Optional[Dict[str, Any]] = None,
    ) -> ModelReply:
        config = llm_config or {}
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": config.get("temperature", 0.2),
        }
        if config.get("maxTokens"):
            kwargs["max_tokens"] = int(config["maxTokens"])
        if tools:
            kwargs["tools"] = tools
        completion = await self.client.chat.completions.create(**kwargs)

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if first_choice is None:
            logger.warning("completion_without_choices", model=model)
            return ModelReply(provider=self.provider, model=model)
        message = first_choice.message
        calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(completion, "usage", None)
        return ModelReply(
            content=message.content or "",
            tool_calls=calls,
            tokens_used=int(getattr(usage, "total_tokens", 0) or 0),
            provider=self.provider,
            model=getattr(completion, "model", None) or model,
        )


def tool_schema(tool: ToolDefinition) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


class ConversationProcessor:
    """Turns one inbound message into a reply, running requested tools in between."""

    def __init__(
        self,
        orchestrator: ToolOrchestrator,
        backend: ModelBackend,
        *,
        max_tool_rounds: int = 3,
        default_model: str = "gpt-4o-mini",
    ) -> None:
        self.orchestrator = orchestrator
        self.backend = backend
        self.max_tool_rounds = max_tool_rounds
        self.default_model = default_model

    def _tools_for(self, routing: Optional[RoutingResult], channel_type: str) -> List[ToolDefinition]:
        if routing is None or not routing.enabled_tools:
            return []
        enabled = set(routing.enabled_tools)
        return [t for t in self.orchestrator.get_tools_for_channel(channel_type) if t.name in enabled]

    @staticmethod
    def _prompt(context: SessionContext, routing: Optional[RoutingResult]) -> List[dict]:
        system_prompt = (routing.system_prompt if routing else "") or DEFAULT_SYSTEM_PROMPT
        messages: List[dict] = [{"role": "system", "content": system_prompt}]
        for turn in context.conversation_history:
            if turn.role in {"user", "assistant"}:
                messages.append({"role": turn.role, "content": turn.content})
        return messages

    async def _run_tool(self, call: ToolCall, context: SessionContext) -> ToolExecution:
        try:
            return await self.orchestrator.execute_tool(call.name, call.arguments, context)
        except ToolExecutionFailed:
            current = await self.orchestrator.get_context(context.session_id)
            if current is not None and current.tool_executions:
                return current.tool_executions[-1]
            raise
        except ServiceError as exc:
            logger.warning("tool_call_rejected", tool=call.name, error=exc.message)
            return ToolExecution(
                id=str(uuid.uuid4()),
                tool_name=call.name,
                parameters=call.arguments,
                status="failed",
                error=exc.message,
                executed_at=utcnow(),
            )

    async def process_message(
        self, message: IncomingMessage, routing: Optional[RoutingResult] = None
    ) -> ProcessingResult:
        started = time.monotonic()
        channel_type = message.channel_type
        user_id = message.channel_user_id
        conversation_id = str(
            message.metadata.get("conversationId") or message.conversation_id or user_id
        )
        session_id = generate_session_id(channel_type, user_id, conversation_id)
        context = await self.orchestrator.get_or_create_context(
            session_id, conversation_id, channel_type, user_id
        )
        history = [
            *context.conversation_history,
            ContextMessage(role="user", content=message.content, timestamp=message.timestamp.isoformat()),
        ]
        context = await self.orchestrator.update_context(session_id, {"conversation_history": history})

        model = (routing.llm_model if routing else None) or self.default_model
        llm_config = dict(routing.llm_config) if routing else {}
        tools = self._tools_for(routing, channel_type)
        tool_specs = [tool_schema(t) for t in tools]
        prompt = self._prompt(context, routing)

        executions: List[ToolExecution] = []
        tokens_used = 0
        metadata: Dict[str, Any] = {}
        reply = ModelReply(provider=self.backend.provider, model=model)
        try:
            for round_number in range(self.max_tool_rounds + 1):
                offer = tool_specs if round_number < self.max_tool_rounds else []
                reply = await self.backend.generate(prompt, offer, model=model, llm_config=llm_config)
                tokens_used += reply.tokens_used
                if not reply.tool_calls:
                    break
                prompt.append(
                    {
                        "role": "assistant",
                        "content": reply.content or None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                            }
                            for call in reply.tool_calls
                        ],
                    }
                )
                for call in reply.tool_calls:
                    execution = await self._run_tool(call, context)
                    executions.append(execution)
                    payload = (
                        {"result": execution.result}
                        if execution.status == "success"
                        else {"error": execution.error}
                    )
                    prompt.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": json.dumps(payload, default=str),
                        }
                    )
                logger.info(
                    "tool_round_completed",
                    session_id=session_id,
                    round=round_number + 1,
                    tools=[call.name for call in reply.tool_calls],
                )
            content = reply.content
        except Exception as exc:
            logger.error("model_generation_failed", session_id=session_id, model=model, error=str(exc))
            content = FALLBACK_REPLY
            metadata = {"error": str(exc), "errorCode": "generation_failed"}

        history = [
            *history,
            ContextMessage(role="assistant", content=content, timestamp=utcnow().isoformat()),
        ]
        await self.orchestrator.update_context(session_id, {"conversation_history": history})

        cost_per_1k = float(llm_config.get("costPer1kTokens") or 0.0)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "message_processed",
            session_id=session_id,
            model=model,
            tokens=tokens_used,
            tool_calls=len(executions),
            elapsed_ms=elapsed_ms,
        )
        return ProcessingResult(
            conversation_id=conversation_id,
            outgoing_message=OutgoingMessage(
                channel_user_id=user_id,
                content=content,
                metadata={"conversationId": conversation_id, **metadata},
            ),
            tool_executions=executions,
            tokens_used=tokens_used,
            cost=round(tokens_used / 1000 * cost_per_1k, 6),
            processing_time_ms=elapsed_ms,
            llm_provider=(routing.llm_provider if routing else None) or reply.provider,
            llm_model=reply.model or model,
            metadata=metadata,
        )
