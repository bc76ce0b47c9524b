#!/usr/bin/env python3
"""
Session Management for the Chat Stream Bridge
Owns the single active generation per conversation: opening streams,
cancellation, the bounded retry policy and tool/continuation follow-ups
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config import MAX_FOLLOW_UPS, MAX_RETRIES, RETRY_BASE_DELAY, SUPPORTED_MODES
from detector import detect
from history_filter import build_outbound_messages
from models import (
    AuthError, ConversationMode, CreateMessageRequest, DetectionKind, ExchangeResult,
    LLMProvider, Message, RetryExhaustedError, SessionEvent, SessionValidationError, StreamChatRequest,
    ToolCall, TransportError
)
from reconciler import Listener, MessageReconciler, notify, upsert_message
from stream_decoder import iter_deltas
from utils.helpers import emit_log as _emit_log, make_trace_logger

logger = logging.getLogger(__name__)


@dataclass
class StreamSession:
    """Ephemeral state of one exchange attempt for one conversation"""
    conversation_id: str
    config_ids: List[str]
    epoch: int
    retry_count: int = 0
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: Dict[str, asyncio.Task] = field(default_factory=dict)
    reconcilers: Dict[str, MessageReconciler] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    def describe(self) -> Dict[str, object]:
        return {
            "config_ids": self.config_ids,
            "retry_count": self.retry_count,
            "age_seconds": round(time.time() - self.started_at, 2),
            "streams": {
                config_id: reconciler.state.value
                for config_id, reconciler in self.reconcilers.items()
            },
        }


class SessionHandle:
    """Caller's view of a started session"""

    def __init__(self, coordinator: "SessionCoordinator", session: StreamSession):
        self._coordinator = coordinator
        self.session = session
        self.results: Dict[str, Message] = {}
        self.errors: Dict[str, BaseException] = {}

    @property
    def conversation_id(self) -> str:
        return self.session.conversation_id

    @property
    def cancelled(self) -> bool:
        return self.session.abort.is_set()

    @property
    def drafts(self) -> Dict[str, Optional[Message]]:
        return {config_id: r.draft for config_id, r in self.session.reconcilers.items()}

    def cancel(self) -> bool:
        return self._coordinator.cancel(self)

    async def wait(self) -> Tuple[Dict[str, Message], Dict[str, BaseException]]:
        """Wait for every stream; returns committed messages and per-config errors."""
        return await self._coordinator._collect(self)


class SessionCoordinator:
    """Single-flight registry of streaming sessions keyed by conversation id."""

    def __init__(
        self,
        backend,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_BASE_DELAY,
        max_follow_ups: int = MAX_FOLLOW_UPS,
        tool_executor=None,
    ):
        self.backend = backend
        self.tool_executor = tool_executor
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_follow_ups = max_follow_ups
        self.current_conversation_id: Optional[str] = None
        self._sleep = sleep
        self._sessions: Dict[str, StreamSession] = {}
        self._transcripts: Dict[str, List[Message]] = {}
        self._epochs: Dict[str, int] = {}

    # ========================================================================
    # Transcripts
    # ========================================================================

    def transcript(self, conversation_id: str) -> List[Message]:
        """Visible message list for a conversation (mutated in place)."""
        return self._transcripts.setdefault(conversation_id, [])

    async def load_transcript(self, conversation_id: str) -> List[Message]:
        transcript = self.transcript(conversation_id)
        if conversation_id in self._sessions:
            # The live session owns the list until it finishes
            return transcript
        transcript[:] = await self.backend.list_messages(conversation_id)
        logger.info(f"Loaded {len(transcript)} message(s) for conversation {conversation_id}")
        return transcript

    async def switch_conversation(self, conversation_id: str) -> List[Message]:
        """Cancel the outgoing conversation's session, then load the new one."""
        previous = self.current_conversation_id
        if previous and previous != conversation_id:
            self.cancel_conversation(previous)
        self.current_conversation_id = conversation_id
        return await self.load_transcript(conversation_id)

    def forget(self, conversation_id: str):
        """Drop all local state for a deleted conversation."""
        self.cancel_conversation(conversation_id)
        self._transcripts.pop(conversation_id, None)
        if self.current_conversation_id == conversation_id:
            self.current_conversation_id = None

    # ========================================================================
    # Single-flight registry
    # ========================================================================

    def active_sessions(self) -> Dict[str, Dict[str, object]]:
        return {cid: session.describe() for cid, session in self._sessions.items()}

    def get_session(self, conversation_id: str) -> Optional[StreamSession]:
        return self._sessions.get(conversation_id)

    def _bump_epoch(self, conversation_id: str) -> int:
        self._epochs[conversation_id] = self._epochs.get(conversation_id, 0) + 1
        return self._epochs[conversation_id]

    def _release(self, session: StreamSession):
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]

    def cancel(self, target) -> bool:
        """Abort a session (handle or session); returns False if it was already over."""
        session = target.session if isinstance(target, SessionHandle) else target
        if session.abort.is_set():
            return False
        session.abort.set()
        for task in session.tasks.values():
            if not task.done():
                task.cancel()
        for reconciler in session.reconcilers.values():
            reconciler.discard()
        self._release(session)
        logger.info(f"Cancelled session conversation={session.conversation_id} configs={session.config_ids}")
        return True

    def cancel_conversation(self, conversation_id: str) -> bool:
        # Also stops a send() that is waiting to retry
        self._bump_epoch(conversation_id)
        session = self._sessions.get(conversation_id)
        return self.cancel(session) if session else False

    def cancel_all(self) -> int:
        cancelled = 0
        for conversation_id in list(self._sessions.keys()):
            if self.cancel_conversation(conversation_id):
                cancelled += 1
        return cancelled

    # ========================================================================
    # Starting a session
    # ========================================================================

    async def resolve_providers(self, config_ids: Iterable[str], trace=None) -> Dict[str, LLMProvider]:
        """Map each user config id to its provider; cached only for the caller's exchange."""
        configs = {config.id: config for config in await self.backend.list_user_configs()}
        by_provider: Dict[str, LLMProvider] = {}
        providers: Dict[str, LLMProvider] = {}
        for config_id in config_ids:
            config = configs.get(config_id)
            if config is None:
                raise SessionValidationError(f"Config {config_id} not found")
            if not config.provider_id:
                raise SessionValidationError(f"Provider ID not found for config {config_id}")
            if config.provider_id not in by_provider:
                by_provider[config.provider_id] = await self.backend.get_provider(config.provider_id)
            providers[config_id] = by_provider[config.provider_id]
            _emit_log(trace, "provider.resolved", f"config={config_id} provider={providers[config_id].name}")
        return providers

    async def start(
        self,
        conversation_id: str,
        config_ids: List[str],
        history: Iterable,
        new_input: Optional[str] = None,
        retry_count: int = 0,
        listener: Optional[Listener] = None,
        providers: Optional[Dict[str, LLMProvider]] = None,
        trace=None,
    ) -> SessionHandle:
        """Cancel any live session for the conversation and open one stream per config."""
        if not conversation_id:
            raise SessionValidationError("No active conversation")
        if not config_ids:
            raise SessionValidationError("No LLM config selected")

        previous = self._sessions.get(conversation_id)
        if previous is not None:
            _emit_log(trace, "session.replace", f"conversation={conversation_id}")
            self.cancel(previous)

        session = StreamSession(
            conversation_id=conversation_id,
            config_ids=list(config_ids),
            epoch=self._bump_epoch(conversation_id),
            retry_count=retry_count,
        )
        self._sessions[conversation_id] = session
        handle = SessionHandle(self, session)

        try:
            messages = build_outbound_messages(history, new_input)
            if not messages:
                raise SessionValidationError("No valid messages to send to LLM")
            if providers is None:
                providers = await self.resolve_providers(config_ids, trace=trace)
            else:
                missing = [cid for cid in config_ids if cid not in providers]
                if missing:
                    providers = {**providers, **await self.resolve_providers(missing, trace=trace)}
        except BaseException:
            self._release(session)
            raise

        if session.abort.is_set():
            # Replaced or cancelled while resolving providers
            return handle

        _emit_log(
            trace,
            "session.start",
            f"conversation={conversation_id} configs={config_ids} messages={len(messages)} retry={retry_count}",
        )

        transcript = self.transcript(conversation_id)
        for config_id in config_ids:
            provider = providers[config_id]
            reconciler = MessageReconciler(
                conversation_id=conversation_id,
                transcript=transcript,
                config_id=config_id,
                provider_model=provider.name,
                listener=listener,
                is_cancelled=session.abort.is_set,
                trace=trace,
            )
            request = StreamChatRequest(
                user_llm_config_id=config_id,
                provider_id=provider.id,
                conversation_id=conversation_id,
                messages=messages,
            )
            session.reconcilers[config_id] = reconciler
            session.tasks[config_id] = asyncio.create_task(
                self._consume(session, reconciler, request, trace),
                name=f"stream:{conversation_id}:{config_id}",
            )
        return handle

    async def _consume(self, session: StreamSession, reconciler: MessageReconciler, request: StreamChatRequest, trace) -> Optional[Message]:
        """Pull deltas for one config into its reconciler, then persist."""
        try:
            async for delta in iter_deltas(self.backend.stream_chat(request, trace=trace), trace=trace):
                if session.abort.is_set():
                    break
                reconciler.apply_delta(delta)
        except TransportError:
            reconciler.abandon()
            raise

        if session.abort.is_set():
            reconciler.discard()
            return None
        return await reconciler.finalize(self.backend)

    async def _collect(self, handle: SessionHandle) -> Tuple[Dict[str, Message], Dict[str, BaseException]]:
        session = handle.session
        config_ids = list(session.tasks.keys())
        try:
            outcomes = await asyncio.gather(*session.tasks.values(), return_exceptions=True)
        except asyncio.CancelledError:
            self.cancel(session)
            raise
        finally:
            self._release(session)

        for config_id, outcome in zip(config_ids, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                continue
            if isinstance(outcome, BaseException):
                handle.errors[config_id] = outcome
            elif outcome is not None:
                handle.results[config_id] = outcome
        return handle.results, handle.errors

    # ========================================================================
    # Exchange driver
    # ========================================================================

    def validate(self, conversation_id: str, config_ids: List[str], new_input: str, mode: ConversationMode):
        if not new_input or not new_input.strip():
            raise SessionValidationError("Cannot process empty message.")
        if not conversation_id:
            raise SessionValidationError("No active conversation")
        if not config_ids:
            raise SessionValidationError("Please select a User LLM Config before sending a message.")
        limit = SUPPORTED_MODES[ConversationMode(mode).value]["max_configs"]
        if len(config_ids) > limit:
            raise SessionValidationError(f"Mode {ConversationMode(mode).value} accepts at most {limit} config(s)")
        if len(set(config_ids)) != len(config_ids):
            raise SessionValidationError("Duplicate config ids")

    async def send(
        self,
        conversation_id: str,
        config_ids: List[str],
        new_input: str,
        mode: ConversationMode = ConversationMode.CHAT,
        listener: Optional[Listener] = None,
    ) -> ExchangeResult:
        """Persist the user message once, stream the reply with bounded retry, run follow-ups."""
        self.validate(conversation_id, config_ids, new_input, mode)
        trace_id, trace = make_trace_logger("exchange")
        trace("exchange.start", f"conversation={conversation_id} configs={config_ids} mode={ConversationMode(mode).value}")

        result = ExchangeResult(conversation_id=conversation_id)
        transcript = self.transcript(conversation_id)

        try:
            providers = await self.resolve_providers(config_ids, trace=trace)
            provider_model = "user" if mode == ConversationMode.ARENA else providers[config_ids[0]].name
            user_message = await self.backend.create_message(CreateMessageRequest(
                conversation_id=conversation_id,
                role="user",
                content=new_input,
                provider_model=provider_model,
            ))
            upsert_message(transcript, user_message)
            result.user_message = user_message
            notify(listener, SessionEvent(type="user", conversation_id=conversation_id, message=user_message))

            new_messages = await self._exchange(result, config_ids, new_input, providers, listener, trace)
            if mode == ConversationMode.CHAT and not result.cancelled:
                await self._follow_up(result, config_ids, new_messages, providers, listener, trace)
        except AuthError:
            trace("exchange.unauthorized", "aborting all sessions", level=logging.WARNING)
            self.cancel_all()
            raise

        trace(
            "exchange.done",
            f"messages={len(result.messages)} errors={len(result.errors)} attempts={result.attempts} "
            f"follow_ups={result.follow_ups} cancelled={result.cancelled}",
        )
        return result

    async def _exchange(
        self,
        result: ExchangeResult,
        config_ids: List[str],
        new_input: Optional[str],
        providers: Dict[str, LLMProvider],
        listener: Optional[Listener],
        trace,
    ) -> Dict[str, Message]:
        """One request/stream round with the transport retry policy applied."""
        conversation_id = result.conversation_id
        attempt = 0
        while True:
            result.attempts += 1
            handle = await self.start(
                conversation_id,
                config_ids,
                self.transcript(conversation_id),
                new_input=new_input,
                retry_count=attempt,
                listener=listener,
                providers=providers,
                trace=trace,
            )
            epoch = handle.session.epoch
            messages, errors = await handle.wait()

            if handle.cancelled:
                result.cancelled = True
                return messages

            try:
                self._raise_for_errors(config_ids, errors)
            except TransportError as e:
                if not e.retryable:
                    raise
                if attempt >= self.max_retries:
                    trace("exchange.retry.exhausted", f"retries={attempt} error={e}", level=logging.ERROR)
                    raise RetryExhaustedError(
                        f"Exchange failed after {attempt} retries: {e}",
                        attempts=result.attempts,
                        last_error=e,
                    ) from e
                attempt += 1
                delay = attempt * self.retry_delay
                trace("exchange.retry", f"attempt={attempt} delay={delay:.1f}s error={e}", level=logging.WARNING)
                notify(listener, SessionEvent(
                    type="retry",
                    conversation_id=conversation_id,
                    data={"attempt": attempt, "delay": delay, "error": str(e)},
                ))
                await self._sleep(delay)
                if self._epochs.get(conversation_id) != epoch:
                    trace("exchange.retry.superseded", "conversation was cancelled or restarted")
                    result.cancelled = True
                    return {}
                continue

            for config_id, message in messages.items():
                result.messages[config_id] = message
                detection = detect(message.content)
                result.detections[config_id] = detection
                if detection.kind != DetectionKind.PLAIN:
                    notify(listener, SessionEvent(
                        type="detection",
                        conversation_id=conversation_id,
                        config_id=config_id,
                        data=detection.model_dump(mode="json"),
                    ))
            for config_id, error in errors.items():
                result.errors[config_id] = str(error)
            return messages

    def _raise_for_errors(self, config_ids: List[str], errors: Dict[str, BaseException]):
        """Decide whether per-stream errors fail the whole exchange."""
        if not errors:
            return
        for error in errors.values():
            if isinstance(error, AuthError):
                raise error
        if len(config_ids) == 1:
            raise next(iter(errors.values()))
        # Arena: other streams carry on unless every one of them hit the transport
        transport_errors = [e for e in errors.values() if isinstance(e, TransportError)]
        if len(errors) == len(config_ids) and len(transport_errors) == len(config_ids):
            retryable = all(e.retryable for e in transport_errors)
            raise TransportError(
                f"All {len(config_ids)} streams failed: {transport_errors[0]}",
                status_code=transport_errors[0].status_code,
                retryable=retryable,
            )
        for config_id, error in errors.items():
            logger.error(f"Arena stream failed config={config_id} error={error}")

    async def _follow_up(
        self,
        result: ExchangeResult,
        config_ids: List[str],
        messages: Dict[str, Message],
        providers: Dict[str, LLMProvider],
        listener: Optional[Listener],
        trace,
    ):
        """Keep the exchange going while the reply asks for it (continue marker or tool call)."""
        config_id = config_ids[0]
        while messages.get(config_id) is not None and not result.cancelled:
            detection = result.detections.get(config_id)
            if detection is None:
                return
            wants_tool = detection.kind == DetectionKind.TOOL_CALL and self.tool_executor is not None
            if detection.kind != DetectionKind.CONTINUE and not wants_tool:
                return
            if result.follow_ups >= self.max_follow_ups:
                trace("exchange.follow_up.limit", f"limit={self.max_follow_ups}", level=logging.WARNING)
                return

            if wants_tool:
                await self._run_tool(result.conversation_id, detection.payload, providers[config_id], listener, trace)

            result.follow_ups += 1
            trace("exchange.follow_up", f"#{result.follow_ups} kind={detection.kind.value}")
            result.detections.pop(config_id, None)
            messages = await self._exchange(result, config_ids, None, providers, listener, trace)

    async def _run_tool(self, conversation_id: str, call: ToolCall, provider: LLMProvider, listener: Optional[Listener], trace):
        """Execute a detected tool call and persist its outcome as a tool message."""
        try:
            await self.tool_executor.execute(call, trace=trace)
            outcome = {"tool_call_id": call.id, "name": call.name, "result": call.result}
        except AuthError:
            raise
        except Exception as e:
            # The model sees the failure on the follow-up turn
            outcome = {"tool_call_id": call.id, "name": call.name, "error": call.error or str(e)}

        notify(listener, SessionEvent(
            type="tool",
            conversation_id=conversation_id,
            data=call.model_dump(mode="json"),
        ))
        content = json.dumps(outcome, default=str)
        tool_message = await self.backend.create_message(CreateMessageRequest(
            conversation_id=conversation_id,
            role="tool",
            content=content,
            provider_model=provider.name,
            raw_output=content,
        ))
        upsert_message(self.transcript(conversation_id), tool_message)
