#!/usr/bin/env python3
"""
Message Reconciler
Merges streamed deltas into the visible transcript and swaps the local draft
for the backend's canonical record once the stream ends
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from models import AuthError, CreateMessageRequest, Message, PersistError, SessionEvent
from utils.helpers import emit_log as _emit_log, truncate as _truncate

logger = logging.getLogger(__name__)

Listener = Callable[[SessionEvent], None]


class ReconcilerState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    FAILED = "failed"
    DISCARDED = "discarded"


TERMINAL_STATES = (ReconcilerState.COMMITTED, ReconcilerState.FAILED, ReconcilerState.DISCARDED)


def upsert_message(transcript: List[Message], message: Message) -> int:
    """Replace the entry with the same id, or append; returns the index used."""
    if message.id:
        for index, existing in enumerate(transcript):
            if existing.id == message.id:
                transcript[index] = message
                return index
    transcript.append(message)
    return len(transcript) - 1


def notify(listener: Optional[Listener], event: SessionEvent):
    """Deliver an event; a failing listener must not break the stream."""
    if listener is None:
        return
    try:
        listener(event)
    except Exception as e:
        logger.error(f"listener error type={event.type} error={e}")


class MessageReconciler:
    """Per-stream state machine: idle -> streaming -> finalizing -> committed | failed"""

    def __init__(
        self,
        conversation_id: str,
        transcript: List[Message],
        config_id: Optional[str] = None,
        provider_model: str = "",
        listener: Optional[Listener] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        trace=None,
    ):
        self.conversation_id = conversation_id
        self.transcript = transcript
        self.config_id = config_id
        self.provider_model = provider_model
        self.state = ReconcilerState.IDLE
        self.draft: Optional[Message] = None
        self.committed: Optional[Message] = None
        self.deltas_applied = 0
        self._content = ""
        self._listener = listener
        self._is_cancelled = is_cancelled
        self._trace = trace

    @property
    def content(self) -> str:
        return self._content

    @property
    def cancelled(self) -> bool:
        return bool(self._is_cancelled and self._is_cancelled())

    def _event(self, event_type: str, **kwargs) -> SessionEvent:
        return SessionEvent(
            type=event_type,
            conversation_id=self.conversation_id,
            config_id=self.config_id,
            **kwargs,
        )

    def apply_delta(self, delta: str) -> bool:
        """Append one delta to the draft; returns False when it was not applied."""
        if not delta or self.cancelled:
            return False
        if self.state in TERMINAL_STATES or self.state == ReconcilerState.FINALIZING:
            return False

        self._content += delta
        self.deltas_applied += 1

        if self.draft is None:
            # Leading whitespace accumulates until there is something to show
            if not self._content.strip():
                return True
            self.draft = Message(
                id="",
                conversation_id=self.conversation_id,
                role="assistant",
                content=self._content,
                provider_model=self.provider_model,
            )
            self.transcript.append(self.draft)
            self.state = ReconcilerState.STREAMING
            _emit_log(self._trace, "reconcile.draft", f"config={self.config_id}", level=logging.DEBUG)
        else:
            self.draft.content = self._content

        notify(self._listener, self._event("delta", delta=delta))
        return True

    async def finalize(self, backend) -> Optional[Message]:
        """Persist the finished draft and replace it with the canonical record."""
        if self.state in TERMINAL_STATES:
            return self.committed
        if self.cancelled:
            self.discard()
            return None
        if self.draft is None or not self._content.strip():
            _emit_log(self._trace, "reconcile.empty", f"config={self.config_id} nothing to persist")
            self.discard()
            return None

        self.state = ReconcilerState.FINALIZING
        request = CreateMessageRequest(
            conversation_id=self.conversation_id,
            role="assistant",
            content=self._content,
            provider_model=self.provider_model or "",
            raw_output=self._content,
        )
        try:
            saved = await backend.create_message(request)
        except Exception as e:
            self.state = ReconcilerState.FAILED
            self.draft.unsent = True
            self.draft.error = str(e)
            _emit_log(
                self._trace,
                "reconcile.persist_failed",
                f"config={self.config_id} error={_truncate(str(e))}",
                level=logging.ERROR,
            )
            notify(self._listener, self._event("failed", message=self.draft))
            if isinstance(e, AuthError):
                raise
            raise PersistError(f"Failed to save assistant message: {e}", draft=self.draft) from e

        self._replace_draft(saved)
        self.committed = saved
        self.state = ReconcilerState.COMMITTED
        _emit_log(
            self._trace,
            "reconcile.committed",
            f"config={self.config_id} id={saved.id} len={len(saved.content)}",
        )
        notify(self._listener, self._event("committed", message=saved))
        return saved

    def _replace_draft(self, saved: Message):
        # The draft carries no id, so it is located by position
        index = None
        for position, entry in enumerate(self.transcript):
            if entry is self.draft:
                index = position
                break

        if saved.id:
            for position, entry in enumerate(self.transcript):
                if position != index and entry.id == saved.id:
                    # Already present (e.g. reloaded from the backend); keep a single copy
                    self.transcript[position] = saved
                    if index is not None:
                        del self.transcript[index]
                    return

        if index is None:
            self.transcript.append(saved)
        else:
            self.transcript[index] = saved

    def upsert(self, message: Message) -> int:
        """Merge an authoritative record into the transcript by id."""
        if not message.id:
            raise ValueError("only persisted messages can be upserted")
        index = upsert_message(self.transcript, message)
        if self.committed is not None and self.committed.id == message.id:
            self.committed = message
        return index

    def discard(self):
        """Stop applying deltas; whatever was applied stays visible."""
        if self.state not in TERMINAL_STATES:
            self.state = ReconcilerState.DISCARDED

    def abandon(self):
        """Discard and remove the draft, used before the exchange is retried."""
        self.discard()
        if self.draft is not None and self.state == ReconcilerState.DISCARDED:
            self.transcript[:] = [entry for entry in self.transcript if entry is not self.draft]
            self.draft = None
