from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query, Request

from switchboard.api.schemas import (
    Envelope,
    IntegrationContextRequest,
    IntegrationOutboundRequest,
    ToolExecuteRequest,
    ToolValidateRequest,
)
from switchboard.logging import get_logger
from switchboard.service.channels import is_status_only_payload
from switchboard.service.errors import QueueUnavailable, ToolExecutionFailed, ValidationError
from switchboard.service.runtime import get_runtime
from switchboard.service.sandbox import validate_implementation
from switchboard.storage.models import ChannelType

logger = get_logger(__name__)

router = APIRouter()


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationError("request body must be JSON", detail={"error": str(exc)}) from exc


async def _process_in_background(channel_type: str, payload: Any, channel_id: Optional[str] = None) -> None:
    """Runs one webhook outside the request; failures are logged, never raised."""
    try:
        await get_runtime().process_webhook(channel_type, payload, channel_id=channel_id)
    except Exception as exc:
        logger.error(
            "background_webhook_failed",
            channel=channel_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )


async def _acknowledge_whatsapp(
    payload: Any, background_tasks: BackgroundTasks, channel_id: Optional[str] = None
) -> Dict[str, Any]:
    if is_status_only_payload(payload):
        return {"success": True}

    runtime = get_runtime()
    if runtime.settings.use_queue_for_incoming_webhooks and isinstance(payload, dict):
        try:
            job_id = await runtime.dispatcher.enqueue_incoming_webhook(
                payload, channel_type=ChannelType.WHATSAPP.value, channel_id=channel_id
            )
            logger.info("incoming_webhook_queued", channel="whatsapp", job_id=job_id)
            return {"success": True, "queued": True}
        except QueueUnavailable as exc:
            logger.warning("incoming_webhook_queue_unavailable", channel="whatsapp", error=exc.message)

    background_tasks.add_task(_process_in_background, ChannelType.WHATSAPP.value, payload, channel_id)
    return {"success": True, "queued": True}


def _acknowledge_telegram(
    payload: Any, background_tasks: BackgroundTasks, channel_id: Optional[str] = None
) -> Dict[str, Any]:
    background_tasks.add_task(_process_in_background, ChannelType.TELEGRAM.value, payload, channel_id)
    return {"success": True}


# Webhooks --------------------------------------------------------------------


@router.post("/webhooks/whatsapp", tags=["webhooks"])
async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge immediately; the provider retries anything slower than a few seconds."""
    return await _acknowledge_whatsapp(await _json_body(request), background_tasks)


@router.post("/webhooks/telegram", tags=["webhooks"])
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
    return _acknowledge_telegram(await _json_body(request), background_tasks)


@router.post("/webhooks/email", response_model=Envelope, tags=["webhooks"])
async def email_webhook(request: Request):
    payload = await _json_body(request)
    result = await get_runtime().process_webhook(ChannelType.EMAIL.value, payload)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/webhooks/webchat", response_model=Envelope, tags=["webhooks"])
async def webchat_webhook(request: Request):
    payload = await _json_body(request)
    result = await get_runtime().process_webhook(ChannelType.WEBCHAT.value, payload)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/webhooks/{channel}", tags=["webhooks"])
async def channel_webhook(
    channel: str,
    request: Request,
    background_tasks: BackgroundTasks,
    channel_id: Optional[str] = Query(None, alias="channelId"),
):
    channel_type = channel.lower()
    payload = await _json_body(request)
    if channel_type == ChannelType.WHATSAPP.value:
        return await _acknowledge_whatsapp(payload, background_tasks, channel_id)
    if channel_type == ChannelType.TELEGRAM.value:
        return _acknowledge_telegram(payload, background_tasks, channel_id)
    result = await get_runtime().process_webhook(channel_type, payload, channel_id=channel_id)
    return Envelope(status="ok", data=result.to_dict())


# Tools -----------------------------------------------------------------------


@router.get("/tools", response_model=Envelope, tags=["tools"])
async def list_tools(channel: Optional[str] = Query(None)):
    orchestrator = get_runtime().orchestrator
    tools = (
        orchestrator.get_tools_for_channel(channel)
        if channel
        else orchestrator.registry.get_all()
    )
    return Envelope(
        status="ok",
        data={"tools": [tool.describe() for tool in tools], "count": len(tools)},
    )


@router.post("/tools/reload", response_model=Envelope, tags=["tools"])
async def reload_tools():
    result = await get_runtime().orchestrator.reload_tools()
    return Envelope(status="ok" if result.get("success") else "error", data=result)


@router.post("/tools/validate", response_model=Envelope, tags=["tools"])
async def validate_tool(body: ToolValidateRequest):
    return Envelope(status="ok", data=validate_implementation(body.implementation))


@router.post("/tools/{name}/execute", response_model=Envelope, tags=["tools"])
async def execute_tool(name: str, body: ToolExecuteRequest):
    """Run one tool against a throwaway session context."""
    orchestrator = get_runtime().orchestrator
    conversation_id = str(uuid.uuid4())
    session_id = f"tool-test:{conversation_id}"
    context = await orchestrator.create_context(
        session_id,
        conversation_id,
        body.channel_type,
        body.user_id,
        metadata={"source": "tool-test"},
    )
    try:
        execution = await orchestrator.execute_tool(name, body.parameters, context)
        data: Dict[str, Any] = {"success": True, "execution": execution.to_dict()}
    except ToolExecutionFailed as exc:
        recorded = await orchestrator.get_context(session_id)
        last = recorded.tool_executions[-1] if recorded and recorded.tool_executions else None
        data = {
            "success": False,
            "error": exc.error,
            "execution": last.to_dict() if last else None,
        }
    finally:
        await orchestrator.delete_context(session_id)
    logger.info("tool_test_executed", tool=name, success=data["success"], channel=body.channel_type)
    return Envelope(status="ok", data=data)


# Integrations ----------------------------------------------------------------


@router.post("/integrations/context", response_model=Envelope, tags=["integrations"])
async def upsert_integration_context(body: IntegrationContextRequest):
    conversation_id, metadata = await get_runtime().integrations.upsert_external_context(
        body.channel_type,
        body.user_id,
        body.envelope.to_payload(),
        body.conversation_metadata,
    )
    namespace = body.envelope.namespace
    return Envelope(
        status="ok",
        data={
            "conversationId": conversation_id,
            "externalContext": (metadata.get("external_context") or {}).get(namespace),
        },
    )


@router.post("/integrations/outbound", response_model=Envelope, status_code=202, tags=["integrations"])
async def send_integration_outbound(
    body: IntegrationOutboundRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    result = await get_runtime().integrations.send_outbound(
        body.channel_type,
        body.user_id,
        body.message,
        body.envelope.to_payload(),
        idempotency_key=idempotency_key,
        conversation_metadata=body.conversation_metadata,
    )
    return Envelope(status="ok", data=result.to_dict())
