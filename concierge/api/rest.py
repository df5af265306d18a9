"""REST API for the dashboard assistant.

Endpoints:
  POST   /chat                 - Send a message, stream the answer (SSE)
  GET    /conversations        - Recent conversations (summaries)
  POST   /conversations        - Create an empty conversation
  GET    /conversations/{id}   - Conversation with messages
  PATCH  /conversations/{id}   - Replace the message list
  DELETE /conversations/{id}   - Delete a conversation
  GET    /tools                - Registered tool catalog
  GET    /llm/usage            - LLM usage and cost summary
  GET    /health               - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from concierge.api.models import ExchangeRequest, ToolCall
from concierge.api.pricing import calculate_cost
from concierge.api.prompts import build_system_prompt
from concierge.api.rate_limit import SlidingWindowRateLimiter
from concierge.api.runner import AgentRunner, ExchangeStream
from concierge.api.schemas import ChatRequest, ConversationCreate, MessagesUpdate
from concierge.api.tools import web_search_declaration
from concierge.config import Settings
from concierge.storage.conversations import ConversationStore
from concierge.storage.database import Database
from concierge.storage.schemas import ConversationDetail, TokenUsage, Turn, UsageInput
from concierge.storage.usage import UsageLog

logger = logging.getLogger(__name__)

CHAT_SOURCE = "dashboard-chat"
TITLE_SOURCE = "conversation-title"
NEW_TITLE_CHARS = 60

TITLE_SYSTEM_PROMPT = (
    "Write a short title (at most six words) for a conversation that starts "
    "with the user's message. Reply with the title only, without quotes."
)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"chat:{forwarded.split(',')[0].strip()}"
    host = request.client.host if request.client else "unknown"
    return f"chat:{host}"


def _validation_error(e: ValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "Invalid request", "details": json.loads(e.json(include_url=False))},
        status_code=400,
    )


def _history(conversation: ConversationDetail | None, limit: int) -> list[dict[str, Any]]:
    """Prior turns in API form: most recent ``limit``, starting with a user turn."""
    if conversation is None:
        return []
    turns = [t for t in conversation.messages if t.content][-limit:] if limit > 0 else []
    while turns and turns[0].role == "assistant":
        turns.pop(0)
    return [{"role": t.role, "content": t.content} for t in turns]


def create_app(
    runner: AgentRunner,
    store: ConversationStore,
    usage_log: UsageLog,
    rate_limiter: SlidingWindowRateLimiter,
    database: Database,
    settings: Settings,
    llm: Any | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes.

    ``llm`` only needs ``generate_text``; without it new conversations keep
    their message-derived title.
    """
    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(request: Request) -> Response:
        """POST /chat - Run one exchange and stream its events."""
        decision = rate_limiter.check(_client_key(request))
        if not decision.allowed:
            return JSONResponse(
                {"error": "Too many requests"},
                status_code=429,
                headers={
                    "Retry-After": str(max(1, math.ceil(decision.reset_seconds))),
                    "X-RateLimit-Remaining": "0",
                },
            )

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            chat_request = ChatRequest.model_validate(body)
        except ValidationError as e:
            return _validation_error(e)

        if chat_request.confirmed_actions and not chat_request.conversation_id:
            return JSONResponse(
                {"error": "confirmedActions require a conversationId"}, status_code=400
            )

        try:
            model = chat_request.model or settings.model
            confirmed: list[ToolCall] = []
            claimed: list[dict[str, Any]] | None = None
            conversation: ConversationDetail | None = None
            is_new = False

            if chat_request.conversation_id:
                conversation = await store.get_conversation(chat_request.conversation_id)
                if conversation is None:
                    return JSONResponse({"error": "Conversation not found"}, status_code=404)

                if chat_request.confirmed_actions:
                    claimed = await store.claim_pending_actions(
                        conversation.id,
                        [(a.tool_id, a.tool_name) for a in chat_request.confirmed_actions],
                    )
                    if claimed is None:
                        return JSONResponse(
                            {"error": "confirmedActions do not match any pending action"},
                            status_code=400,
                        )
                    confirmed = [ToolCall.from_dict(a) for a in claimed]
                conversation_id = conversation.id
            else:
                created = await store.create_conversation(
                    chat_request.message.strip()[:NEW_TITLE_CHARS], model
                )
                conversation_id = created.id
                is_new = True

            tools: list[dict[str, Any]] = []
            if chat_request.tools_enabled:
                tools.extend(runner.registry.get_tool_schemas())
            if chat_request.web_search_enabled:
                tools.append(web_search_declaration(settings.web_search_max_uses))

            system = build_system_prompt(
                settings.owner_name, runner.registry if chat_request.tools_enabled else None
            )
            messages = _history(conversation, settings.history_limit)
            messages.append({"role": "user", "content": chat_request.message})

            stream = runner.stream_exchange(
                ExchangeRequest(
                    system=system,
                    messages=messages,
                    model=model,
                    tools=tools or None,
                    source=CHAT_SOURCE,
                    confirmed_actions=confirmed,
                )
            )
        except Exception as e:
            logger.error("Chat setup error: %s", e)
            if claimed:
                await _restore_claim(conversation.id, claimed)
            return JSONResponse({"error": "Failed to process chat request"}, status_code=500)

        async def event_generator():
            async for event in stream:
                yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Conversation-Id": str(conversation_id),
                "X-RateLimit-Remaining": str(decision.remaining),
            },
            background=BackgroundTask(
                _persist_exchange,
                stream,
                conversation_id,
                is_new,
                system,
                chat_request.message,
                claimed,
            ),
        )

    async def _persist_exchange(
        stream: ExchangeStream,
        conversation_id: Any,
        is_new: bool,
        system: str,
        message: str,
        claimed: list[dict[str, Any]] | None,
    ) -> None:
        """Store the finished exchange. Runs after the response has been sent."""
        result = stream.result
        if result is None:
            # Error event or client disconnect: nothing to store
            if claimed and not stream.started:
                await _restore_claim(conversation_id, claimed)
            return

        usage = result.usage
        try:
            await store.append_messages(
                conversation_id,
                [
                    Turn(role="user", content=result.user_content),
                    Turn(
                        role="assistant",
                        content=result.text,
                        token_usage=TokenUsage(
                            input_tokens=usage.input_tokens,
                            output_tokens=usage.output_tokens,
                            cost_usd=usage.cost_usd,
                        ),
                    ),
                ],
            )
            await store.set_pending_actions(
                conversation_id, [call.to_dict() for call in result.pending_actions]
            )
            await usage_log.log(
                UsageInput(
                    llm_model=usage.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    cost_usd=usage.cost_usd,
                    system_prompt=system,
                    user_prompt=message,
                    source=CHAT_SOURCE,
                )
            )
        except Exception:
            logger.exception("Failed to persist exchange for conversation %s", conversation_id)
            return

        if is_new and settings.auto_title and llm is not None:
            await _generate_title(conversation_id, message)

    async def _restore_claim(conversation_id: Any, actions: list[dict[str, Any]]) -> None:
        """Return approved actions that never ran to the pending set."""
        try:
            await store.restore_pending_actions(conversation_id, actions)
        except Exception:
            logger.exception("Failed to restore confirmed actions for conversation %s", conversation_id)

    async def _generate_title(conversation_id: Any, message: str) -> None:
        try:
            text, usage = await llm.generate_text(
                TITLE_SYSTEM_PROMPT, message, model=settings.title_model, max_tokens=30
            )
            title = text.strip().strip("\"'").strip()[:200]
            if title:
                await store.rename_conversation(conversation_id, title)

            input_tokens = int(usage.get("input_tokens", 0))
            output_tokens = int(usage.get("output_tokens", 0))
            await usage_log.log(
                UsageInput(
                    llm_model=settings.title_model,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_usd=calculate_cost(settings.title_model, input_tokens, output_tokens),
                    system_prompt=TITLE_SYSTEM_PROMPT,
                    user_prompt=message,
                    source=TITLE_SOURCE,
                )
            )
        except Exception as e:
            logger.warning("Title generation failed for conversation %s: %s", conversation_id, e)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Most recently updated conversations."""
        conversations = await store.list_conversations()
        return JSONResponse({
            "conversations": [c.model_dump(mode="json", by_alias=True) for c in conversations],
        })

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /conversations - Create an empty conversation."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            data = ConversationCreate.model_validate(body)
        except ValidationError as e:
            return _validation_error(e)

        conversation = await store.create_conversation(data.title, data.model)
        return JSONResponse(conversation.model_dump(mode="json", by_alias=True), status_code=201)

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Conversation with all turns."""
        conversation = await store.get_conversation(request.path_params["id"])
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(conversation.model_dump(mode="json", by_alias=True, exclude_none=True))

    async def update_conversation(request: Request) -> JSONResponse:
        """PATCH /conversations/{id} - Replace the message list."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            data = MessagesUpdate.model_validate(body)
        except ValidationError as e:
            return _validation_error(e)

        conversation = await store.update_conversation_messages(request.path_params["id"], data.messages)
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(conversation.model_dump(mode="json", by_alias=True, exclude_none=True))

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{id}"""
        deleted = await store.delete_conversation(request.path_params["id"])
        if not deleted:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"success": True})

    # ------------------------------------------------------------------
    # Catalog, usage, health
    # ------------------------------------------------------------------

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Registered tools and their classification."""
        return JSONResponse({"tools": runner.registry.describe()})

    async def llm_usage(request: Request) -> JSONResponse:
        """GET /llm/usage - Usage totals, breakdowns and recent calls."""
        summary = await usage_log.summary()
        return JSONResponse(summary.model_dump(mode="json", by_alias=True))

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if await database.ping():
            return JSONResponse({"status": "healthy"})
        return JSONResponse({"status": "unhealthy"}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations/{id}", get_conversation, methods=["GET"]),
        Route("/conversations/{id}", update_conversation, methods=["PATCH"]),
        Route("/conversations/{id}", delete_conversation, methods=["DELETE"]),
        Route("/tools", list_tools),
        Route("/llm/usage", llm_usage),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
