"""
Data models for conversations.
These define the shape of data flowing through the completion flow and
into the stores.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from chatservice.errors import ConversationEnded, TokenCountError, ValidationError
from chatservice.tokens import TokenCounter
from chatservice.window import ConversationWindow


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def parse_bool(value, name: str) -> bool:
    """Accept real booleans and their usual string spellings; reject the rest."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ValidationError(f"invalid {name}: {value!r} is not a boolean")


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


@dataclass(frozen=True)
class ModelProfile:
    """Model identifier plus the token ceiling of its context window."""
    name: str
    max_tokens: int

    def validate(self):
        if not self.name:
            raise ValidationError("model name is empty")
        if not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            raise ValidationError(f"invalid model max tokens: {self.max_tokens!r}")


@dataclass(frozen=True)
class Message:
    """
    A single message in a conversation.
    token_count is fixed at creation; use Message.create() to compute it.
    """
    role: MessageRole
    content: str
    model: str
    token_count: int
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: str = field(default_factory=_now)

    @classmethod
    def create(
        cls,
        role: MessageRole | str,
        content: str,
        model: ModelProfile,
        counter: TokenCounter,
    ) -> "Message":
        """Build a message, counting its tokens against the model."""
        try:
            role = MessageRole(role)
        except ValueError:
            raise ValidationError(f"invalid role: {role!r}") from None
        if not content:
            raise ValidationError("content is empty")
        try:
            token_count = counter.count(model.name, content)
        except Exception as e:
            raise TokenCountError(
                f"cannot count tokens for model '{model.name}': {e}"
            ) from e
        return cls(role=role, content=content, model=model.name, token_count=token_count)

    def to_openai_format(self) -> dict:
        """Export in OpenAI messages array format."""
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "model": self.model,
            "token_count": self.token_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data["content"],
            model=data.get("model", ""),
            token_count=int(data["token_count"]),
            created_at=data.get("created_at") or _now(),
        )


@dataclass
class ConversationConfig:
    """Generation parameters fixed when a conversation is created."""
    model: ModelProfile
    temperature: float = 1.0       # 0.0 to 1.0
    top_p: float = 1.0             # 0.0 to 1.0, nucleus sampling threshold
    n: int = 1                     # candidate completions; only 1 is streamable
    stop: list[str] = field(default_factory=list)
    max_tokens: int = 0            # max output tokens, 0 = provider default
    presence_penalty: float = 0.0  # -2.0 to 2.0
    frequency_penalty: float = 0.0 # -2.0 to 2.0
    pin_system_message: bool = True

    def validate(self):
        self.model.validate()
        if not 0.0 <= self.temperature <= 1.0:
            raise ValidationError(f"invalid temperature: {self.temperature}")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValidationError(f"invalid top_p: {self.top_p}")
        if not -2.0 <= self.presence_penalty <= 2.0:
            raise ValidationError(f"invalid presence_penalty: {self.presence_penalty}")
        if not -2.0 <= self.frequency_penalty <= 2.0:
            raise ValidationError(f"invalid frequency_penalty: {self.frequency_penalty}")
        if self.n != 1:
            raise ValidationError(f"unsupported candidate count n={self.n}: streaming handles n=1 only")
        if self.max_tokens < 0:
            raise ValidationError(f"invalid max_tokens: {self.max_tokens}")
        if not all(isinstance(s, str) for s in self.stop):
            raise ValidationError("stop sequences must be strings")

    def to_dict(self) -> dict:
        return {
            "model": self.model.name,
            "model_max_tokens": self.model.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "n": self.n,
            "stop": list(self.stop),
            "max_tokens": self.max_tokens,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "pin_system_message": self.pin_system_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationConfig":
        return cls(
            model=ModelProfile(data["model"], int(data["model_max_tokens"])),
            temperature=float(data.get("temperature", 1.0)),
            top_p=float(data.get("top_p", 1.0)),
            n=int(data.get("n", 1)),
            stop=list(data.get("stop") or []),
            max_tokens=int(data.get("max_tokens", 0)),
            presence_penalty=float(data.get("presence_penalty", 0.0)),
            frequency_penalty=float(data.get("frequency_penalty", 0.0)),
            pin_system_message=parse_bool(
                data.get("pin_system_message", True), "pin_system_message"
            ),
        )


@dataclass
class Conversation:
    """
    A chat session: its config, its pinned system prompt and the token
    window holding active and erased messages.

    Not safe for concurrent mutation. Each completion round loads, mutates
    and saves it through a store.
    """
    user_id: str
    initial_system_message: Message
    config: ConversationConfig
    window: ConversationWindow
    id: str = field(default_factory=lambda: uuid4().hex)
    status: ConversationStatus = ConversationStatus.ACTIVE
    version: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @classmethod
    def new(
        cls,
        user_id: str,
        initial_system_message: Message,
        config: ConversationConfig,
        conversation_id: str | None = None,
    ) -> "Conversation":
        """Create and validate a conversation seeded with its system message."""
        config.validate()
        if initial_system_message.role is not MessageRole.SYSTEM:
            raise ValidationError("initial message must have the system role")
        pinned = initial_system_message if config.pin_system_message else None
        conv = cls(
            user_id=user_id,
            initial_system_message=initial_system_message,
            config=config,
            window=ConversationWindow(config.model.max_tokens, pinned=pinned),
        )
        if conversation_id:
            conv.id = conversation_id
        conv.validate()
        conv.append(initial_system_message)
        return conv

    def validate(self):
        if not self.user_id:
            raise ValidationError("user_id is empty")
        if not isinstance(self.status, ConversationStatus):
            raise ValidationError(f"invalid status: {self.status!r}")
        self.config.validate()

    @property
    def ended(self) -> bool:
        return self.status is ConversationStatus.ENDED

    @property
    def token_usage(self) -> int:
        return self.window.token_usage

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.window.active_messages()

    @property
    def erased_messages(self) -> tuple[Message, ...]:
        return self.window.erased_messages()

    def append(self, message: Message) -> list[Message]:
        """Admit a message under the token budget. Returns evicted messages."""
        if self.ended:
            raise ConversationEnded(f"conversation {self.id} is ended")
        evicted = self.window.append(message)
        self.updated_at = _now()
        return evicted

    def count_messages(self) -> int:
        return self.window.active_count()

    def end(self):
        self.status = ConversationStatus.ENDED
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "token_usage": self.token_usage,
            "config": self.config.to_dict(),
            "initial_system_message": self.initial_system_message.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
            "erased_messages": [m.to_dict() for m in self.erased_messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        """Rebuild a conversation from its stored form."""
        try:
            status = ConversationStatus(data["status"])
        except ValueError:
            raise ValidationError(f"invalid status: {data['status']!r}") from None
        config = ConversationConfig.from_dict(data["config"])
        system = Message.from_dict(data["initial_system_message"])
        active = [Message.from_dict(m) for m in data.get("messages", [])]
        erased = [Message.from_dict(m) for m in data.get("erased_messages", [])]
        pinned = None
        if config.pin_system_message and active and active[0].id == system.id:
            pinned = active[0]
        window = ConversationWindow(
            config.model.max_tokens, pinned=pinned, active=active, erased=erased,
        )
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            initial_system_message=system,
            config=config,
            window=window,
            status=status,
            version=int(data.get("version", 0)),
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at") or _now(),
        )
