"""
Streaming chat completion: one conversation turn, from user utterance to
persisted assistant reply.

    RESOLVING → GENERATING → FINALIZING → DONE
        └───────────┴────────────┴──────→ FAILED

Every fragment the provider emits is folded into the running reply and
published as a snapshot on the caller's output queue. Publishing awaits
queue.put(), so a slow consumer throttles the provider read instead of
growing a buffer. The conversation is saved only after the stream has
been fully drained; a failed or cancelled stream leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing, contextmanager
from dataclasses import dataclass, field
from enum import Enum

from chatservice.errors import (
    ChatServiceError,
    CompletionTimeout,
    ConversationLookupError,
    ConversationNotFound,
    Phase,
    PersistenceError,
    StreamError,
    ValidationError,
)
from chatservice.flight_recorder import FlightRecord, FlightRecorderStore
from chatservice.models import (
    Conversation,
    ConversationConfig,
    Message,
    MessageRole,
    ModelProfile,
    parse_bool,
)
from chatservice.storage.base import ConversationStore
from chatservice.tokens import TokenCounter
from chatservice.wiretap import WireLog

logger = logging.getLogger(__name__)


class CompletionState(str, Enum):
    RESOLVING = "resolving"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


_STATE_PHASE = {
    CompletionState.RESOLVING: Phase.RESOLVE,
    CompletionState.GENERATING: Phase.GENERATE,
    CompletionState.FINALIZING: Phase.FINALIZE,
}


@contextmanager
def _phase(phase: Phase):
    """Tag ChatServiceErrors raised inside the block with the phase."""
    try:
        yield
    except ChatServiceError as e:
        if e.phase is None:
            e.phase = phase
        raise


@dataclass
class CompletionConfigInput:
    """Settings for a conversation created by a completion request."""
    model: str = ""
    model_max_tokens: int = 0
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: list[str] = field(default_factory=list)
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    initial_system_message: str = ""
    pin_system_message: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "CompletionConfigInput":
        """Build from request/config keys. Accepts initial_system_msg as an alias."""
        try:
            stop = data.get("stop") or []
            if isinstance(stop, str):
                stop = [stop]
            return cls(
                model=str(data.get("model", "")),
                model_max_tokens=int(data.get("model_max_tokens", 0)),
                temperature=float(data.get("temperature", 1.0)),
                top_p=float(data.get("top_p", 1.0)),
                n=int(data.get("n", 1)),
                stop=list(stop),
                max_tokens=int(data.get("max_tokens", 0)),
                presence_penalty=float(data.get("presence_penalty", 0.0)),
                frequency_penalty=float(data.get("frequency_penalty", 0.0)),
                initial_system_message=str(
                    data.get("initial_system_message", data.get("initial_system_msg", ""))
                ),
                pin_system_message=parse_bool(
                    data.get("pin_system_message", True), "pin_system_message"
                ),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"invalid config: {e}") from e

    def to_conversation_config(self) -> ConversationConfig:
        return ConversationConfig(
            model=ModelProfile(self.model, self.model_max_tokens),
            temperature=self.temperature,
            top_p=self.top_p,
            n=self.n,
            stop=list(self.stop),
            max_tokens=self.max_tokens,
            presence_penalty=self.presence_penalty,
            frequency_penalty=self.frequency_penalty,
            pin_system_message=self.pin_system_message,
        )


@dataclass
class CompletionRequest:
    """
    One user turn. conversation_id may be empty or unknown, in which case
    a conversation is created from `config`.
    """
    user_id: str
    user_message: str
    conversation_id: str = ""
    config: CompletionConfigInput | None = None

    @classmethod
    def from_dict(cls, data: dict, config_defaults: dict | None = None) -> "CompletionRequest":
        """
        Parse a request body. Config values in the body override
        config_defaults key by key.
        """
        merged = dict(config_defaults or {})
        merged.update(data.get("config") or {})
        return cls(
            user_id=str(data.get("user_id") or ""),
            user_message=str(data.get("user_message") or ""),
            conversation_id=str(data.get("chat_id") or data.get("conversation_id") or ""),
            config=CompletionConfigInput.from_dict(merged) if merged else None,
        )


@dataclass(frozen=True)
class CompletionOutput:
    """A snapshot of the reply so far, or the final reply."""
    conversation_id: str
    user_id: str
    content: str

    def to_dict(self) -> dict:
        return {
            "chat_id": self.conversation_id,
            "user_id": self.user_id,
            "content": self.content,
        }


class CompletionOrchestrator:
    """
    Runs completion rounds against a store and a provider backend.

    Holds no per-round state: concurrent execute() calls are independent.
    Two rounds on the same conversation race at the store, where the
    version check rejects the later save.
    """

    def __init__(
        self,
        store: ConversationStore,
        backend,
        token_counter: TokenCounter,
        wire: WireLog | None = None,
        flight_recorder: FlightRecorderStore | None = None,
    ):
        self.store = store
        self.backend = backend
        self.token_counter = token_counter
        self.wire = wire
        self.flight_recorder = flight_recorder

    async def execute(
        self,
        request: CompletionRequest,
        stream: asyncio.Queue | None = None,
        timeout: float | None = None,
    ) -> CompletionOutput:
        """
        Run one turn. Snapshots go to `stream` when given. `timeout` bounds
        the round up to the save; on expiry CompletionTimeout is raised and
        the turn is not persisted. A save that has started always finishes.
        """
        record = FlightRecord(
            conversation_id=request.conversation_id, user_id=request.user_id,
        )
        if self.flight_recorder is not None:
            self.flight_recorder.store(record)

        state = CompletionState.RESOLVING
        record.log("Resolving")

        def transition(new_state: CompletionState, conversation_id: str, **details):
            nonlocal state
            logger.debug(
                "Conversation %s: %s → %s", conversation_id, state.value, new_state.value,
            )
            state = new_state
            record.log(new_state.value.capitalize(), **details)

        try:
            async with asyncio.timeout(timeout):
                conversation = await self._resolve(request)
                record.conversation_id = conversation.id
                record.model = conversation.config.model.name

                with _phase(Phase.APPEND):
                    user_msg = Message.create(
                        MessageRole.USER, request.user_message,
                        conversation.config.model, self.token_counter,
                    )
                    evicted = conversation.append(user_msg)
                self._tap("inbound", conversation, user_msg, len(evicted))

                transition(
                    CompletionState.GENERATING, conversation.id,
                    messages=conversation.count_messages(), tokens=conversation.token_usage,
                )
                content = await self._generate(conversation, stream, record)

                transition(CompletionState.FINALIZING, conversation.id, chars=len(content))
                output = CompletionOutput(conversation.id, conversation.user_id, content)
                with _phase(Phase.FINALIZE):
                    reply = Message.create(
                        MessageRole.ASSISTANT, content,
                        conversation.config.model, self.token_counter,
                    )
                    evicted = conversation.append(reply)

            # Outside the deadline: a store write handed to a worker thread
            # cannot be recalled, so once started it runs to completion.
            try:
                await self.store.save(conversation)
            except PersistenceError as e:
                e.phase = e.phase or Phase.PERSIST
                e.output = output
                raise
            except Exception as e:
                raise PersistenceError(
                    f"Error saving conversation {conversation.id}: {e}",
                    Phase.PERSIST, output=output,
                ) from e
            record.log("Persisted", version=conversation.version)
            self._tap("outbound", conversation, reply, len(evicted))

        except TimeoutError as e:
            phase = _STATE_PHASE.get(state, Phase.RESOLVE)
            record.close(CompletionState.FAILED.value, phase=phase.value, error="timeout")
            logger.warning(
                "Completion for conversation %s timed out after %ss while %s",
                record.conversation_id or "(new)", timeout, state.value,
            )
            raise CompletionTimeout(f"Completion timed out after {timeout}s", phase) from e
        except ChatServiceError as e:
            record.close(
                CompletionState.FAILED.value,
                phase=e.phase.value if e.phase else None, error=str(e),
            )
            logger.warning(
                "Completion for conversation %s failed while %s: %s",
                record.conversation_id or "(new)", state.value, e,
            )
            raise
        except asyncio.CancelledError:
            record.close("cancelled")
            logger.info(
                "Completion for conversation %s cancelled while %s",
                record.conversation_id or "(new)", state.value,
            )
            raise
        except Exception as e:
            record.close(CompletionState.FAILED.value, error=repr(e))
            logger.exception(
                "Unexpected error in completion for conversation %s while %s",
                record.conversation_id or "(new)", state.value,
            )
            raise

        state = CompletionState.DONE
        record.close(state.value)
        logger.info(
            "Conversation %s: reply of %d tokens (window %d/%d, %d erased)",
            conversation.id, reply.token_count, conversation.token_usage,
            conversation.config.model.max_tokens, len(conversation.erased_messages),
        )
        return output

    async def _resolve(self, request: CompletionRequest) -> Conversation:
        """Load the conversation, or create and persist it if it is unknown."""
        if not request.user_id:
            raise ValidationError("user_id is empty", Phase.RESOLVE)

        if request.conversation_id:
            try:
                conversation = await self.store.find(request.conversation_id)
            except ConversationNotFound:
                logger.info("Conversation %s not found, creating it", request.conversation_id)
            except Exception as e:
                raise ConversationLookupError(
                    f"Error fetching conversation {request.conversation_id}: {e}",
                    Phase.RESOLVE,
                ) from e
            else:
                if conversation.user_id != request.user_id:
                    raise ValidationError(
                        f"conversation {conversation.id} belongs to another user",
                        Phase.RESOLVE,
                    )
                return conversation

        conversation = self._new_conversation(request)
        try:
            await self.store.create(conversation)
        except Exception as e:
            raise PersistenceError(
                f"Error creating conversation {conversation.id}: {e}", Phase.RESOLVE,
            ) from e
        logger.info(
            "Created conversation %s for user %s (model=%s, budget=%d)",
            conversation.id, conversation.user_id,
            conversation.config.model.name, conversation.config.model.max_tokens,
        )
        return conversation

    def _new_conversation(self, request: CompletionRequest) -> Conversation:
        if request.config is None:
            raise ValidationError("config is required to create a conversation", Phase.RESOLVE)
        with _phase(Phase.RESOLVE):
            config = request.config.to_conversation_config()
            config.validate()
            system = Message.create(
                MessageRole.SYSTEM, request.config.initial_system_message,
                config.model, self.token_counter,
            )
            return Conversation.new(
                request.user_id, system, config,
                conversation_id=request.conversation_id or None,
            )

    async def _generate(
        self,
        conversation: Conversation,
        stream: asyncio.Queue | None,
        record: FlightRecord,
    ) -> str:
        """Consume the provider stream, publishing a snapshot per fragment."""
        content = ""
        fragments = 0
        try:
            async with aclosing(
                self.backend.forward_stream(conversation.messages, conversation.config)
            ) as provider_stream:
                async for fragment in provider_stream:
                    if not fragments:
                        record.log("First Fragment")
                    fragments += 1
                    content += fragment
                    if stream is not None:
                        await stream.put(
                            CompletionOutput(conversation.id, conversation.user_id, content)
                        )
        except Exception as e:
            raise StreamError(
                f"Error reading completion stream after {fragments} fragment(s): {e}",
                Phase.GENERATE,
            ) from e
        logger.debug("Conversation %s: stream drained, %d fragments", conversation.id, fragments)
        return content

    def _tap(self, direction: str, conversation: Conversation, message: Message, evicted: int):
        """Write the message to the wire log. A broken wire log never fails the round."""
        if self.wire is None:
            return
        try:
            self.wire.log(
                direction=direction,
                role=message.role.value,
                content=message.content,
                model=message.model,
                conversation_id=conversation.id,
                user_id=conversation.user_id,
                token_count=message.token_count,
                token_usage=conversation.token_usage,
                evicted=evicted,
            )
        except Exception as e:
            logger.warning(
                "Wire log write failed for conversation %s (%s): %s",
                conversation.id, direction, e,
            )
