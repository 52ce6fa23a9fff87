"""Resolve one accepted webhook event into exactly one tool invocation and delivery."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from relaybot.config import _is_env_enabled, settings
from relaybot.logging_config import bind_chat, get_logger
from relaybot.schemas.engine import Decision, NormalizedRequest
from relaybot.schemas.webhook import GreenApiWebhook
from relaybot.services.alert_service import alert_error
from relaybot.services.authorization_service import AllowLists
from relaybot.services.command_store import LastCommandStore
from relaybot.services.execution_loop import ExecutionLoop, ExecutionResult
from relaybot.services.green_api_service import GreenApiClient
from relaybot.services.history_service import ConversationHistory
from relaybot.services.intent_router import IntentRouter, parse_retry
from relaybot.services.management_service import ManagementService
from relaybot.services.message_normalizer import classify, normalize
from relaybot.services.quoted_media_service import QuotedMediaResolver
from relaybot.services.result_delivery import UNKNOWN_ERROR_MESSAGE, ResultDeliverer
from relaybot.services.retry_service import RETRY_ACK, RetryResolver, request_with_media
from relaybot.services.state_machine import ExecutionState, RequestLifecycle
from relaybot.services.tool_registry import ToolContext, ToolRegistry

logger = get_logger("command_engine")


@dataclass
class EngineOutcome:
    state: ExecutionState
    decision: Optional[Decision] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None


class CommandEngine:
    def __init__(
        self,
        *,
        transport,
        router: IntentRouter,
        store: LastCommandStore,
        registry: ToolRegistry,
        loop: Optional[ExecutionLoop] = None,
        quoted_resolver: Optional[QuotedMediaResolver] = None,
        history: Optional[ConversationHistory] = None,
        allow_lists: Optional[AllowLists] = None,
        management: Optional[ManagementService] = None,
    ):
        self.transport = transport
        self.router = router
        self.store = store
        self.registry = registry
        self.loop = loop or ExecutionLoop(registry)
        self.quoted_resolver = quoted_resolver or QuotedMediaResolver(transport)
        self.history = history
        self.allow_lists = allow_lists
        self.management = management
        self.retry_resolver = RetryResolver(store, self.quoted_resolver, router)
        self.deliverer = ResultDeliverer(transport, history)

    async def handle_event(self, event: GreenApiWebhook) -> Optional[EngineOutcome]:
        classification = classify(event)
        if classification.kind == "management" and self.management is not None:
            await self.management.execute(classification.management, event.chat_id)
            return None
        if classification.kind != "command":
            return None

        try:
            authorizations = self.allow_lists.authorizations_for(event) if self.allow_lists is not None else None
            request = normalize(event, authorizations)
        except Exception as e:
            logger.error(
                f"Could not prepare command: {e}",
                extra={"context": {"chat_id": event.chat_id, "message_id": event.idMessage}},
                exc_info=True,
            )
            await asyncio.to_thread(
                alert_error, "Command preparation failed", {"chat_id": event.chat_id, "error": str(e)}
            )
            await self.deliverer.send_notice(event.chat_id, UNKNOWN_ERROR_MESSAGE, event.idMessage)
            return EngineOutcome(ExecutionState.FAILED, error=UNKNOWN_ERROR_MESSAGE)
        return await self.process(request)

    async def process(self, request: NormalizedRequest) -> EngineOutcome:
        log = bind_chat(logger, request.chatId, request.messageId)
        lifecycle = RequestLifecycle()

        try:
            is_retry = parse_retry(request.prompt) is not None
            if not is_retry:
                resolved_media = await self._resolve_media(request)
                if isinstance(resolved_media, str):
                    return await self._fail(lifecycle, request, resolved_media)
                request = resolved_media or request

            decision = await self.router.route(request)
            log.info(f"Routed to {decision.tool}", context={"reason": decision.reason})

            if is_retry and decision.tool != "retry_last_command":
                resolved_media = await self._resolve_media(request)
                if isinstance(resolved_media, str):
                    return await self._fail(lifecycle, request, resolved_media, decision)
                if resolved_media is not None:
                    request = resolved_media
                    if "prompt" in decision.args:
                        decision = decision.model_copy(update={"args": {**decision.args, "prompt": request.prompt}})

            if decision.tool == "retry_last_command":
                lifecycle.move(ExecutionState.RETRY_RESOLVE)
                resolved = await self.retry_resolver.resolve(decision, request)
                if not resolved.ok:
                    return await self._fail(lifecycle, request, resolved.error, decision)
                if resolved.value.rerouted:
                    lifecycle.move(ExecutionState.ROUTING)
                decision, request = resolved.value.decision, resolved.value.request
                log.info(f"Retry resolved via {resolved.value.source} to {decision.tool}")
                await self.deliverer.send_notice(request.chatId, RETRY_ACK, request.messageId)

            if self.history is not None:
                self.history.add(request.chatId, "user", request.prompt)

            lifecycle.move(ExecutionState.TOOL_CALL)
            context = ToolContext(
                chat_id=request.chatId,
                request=request,
                transport=self.transport,
                history=self.history,
                quoted_message_id=request.messageId,
            )

            if decision.tool == "multi_step":
                plan = [Decision(**step) for step in decision.args.get("plan") or []]
                self.store.save(request.chatId, decision, request, plan=[step.model_dump() for step in plan])
                result = await self.loop.execute_plan(plan, context, self.deliverer)
            else:
                self.store.save(request.chatId, decision, request)
                result = await self.loop.execute(decision, context)

            if not result.success:
                if result.already_sent:
                    lifecycle.fail()
                    return EngineOutcome(lifecycle.state, decision, result, result.error)
                return await self._fail(lifecycle, request, result.error, decision, result)

            lifecycle.move(ExecutionState.DELIVERING)
            await self.deliverer.deliver(result, request.chatId, request.messageId)
            lifecycle.move(ExecutionState.DONE)
            return EngineOutcome(lifecycle.state, decision, result)

        except Exception as e:
            log.error(f"Command processing failed: {e}", exc_info=True)
            await asyncio.to_thread(
                alert_error, "Command processing failed", {"chat_id": request.chatId, "error": str(e)}
            )
            return await self._fail(lifecycle, request, UNKNOWN_ERROR_MESSAGE)

    async def _resolve_media(self, request: NormalizedRequest):
        """Returns a rebuilt request, None when nothing changed, or an error string."""
        if request.quotedContext is not None:
            resolution = await self.quoted_resolver.resolve(request.quotedContext, request.prompt, request.chatId)
            if resolution.error:
                return resolution.error
            return request_with_media(
                request,
                prompt=resolution.prompt.strip(),
                image_url=resolution.imageUrl,
                video_url=resolution.videoUrl,
                audio_url=resolution.audioUrl,
            )
        return await self.quoted_resolver.ensure_request_media(request)

    async def _fail(
        self,
        lifecycle: RequestLifecycle,
        request: NormalizedRequest,
        message: Optional[str],
        decision: Optional[Decision] = None,
        result: Optional[ExecutionResult] = None,
    ) -> EngineOutcome:
        lifecycle.fail()
        text = message or UNKNOWN_ERROR_MESSAGE
        await self.deliverer.send_notice(request.chatId, text, request.messageId)
        return EngineOutcome(lifecycle.state, decision, result, text)


def build_engine(transport=None) -> CommandEngine:
    from relaybot.services.agent_service import OpenAIAgent
    from relaybot.services.llm import OpenAIProvider
    from relaybot.services.tool_handlers import build_default_registry

    transport = transport or GreenApiClient()
    provider = None
    if settings.openai_api_key:
        provider = OpenAIProvider(
            settings.openai_api_key,
            default_model=settings.openai_chat_model,
            image_model=settings.openai_image_model,
        )

    registry = build_default_registry(provider)
    agent = None
    if provider is not None and _is_env_enabled(settings.agent_loop_enabled, default=False):
        agent = OpenAIAgent(provider, registry)

    store = LastCommandStore()
    history = ConversationHistory()
    allow_lists = AllowLists()
    return CommandEngine(
        transport=transport,
        router=IntentRouter(llm=provider, available_tools=registry.names()),
        store=store,
        registry=registry,
        loop=ExecutionLoop(registry, agent=agent),
        history=history,
        allow_lists=allow_lists,
        management=ManagementService(transport, allow_lists, history, store),
    )
