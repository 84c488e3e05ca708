"""Conversation turn and function-call values exchanged with Gemini.

`ConversationTurn` is the unit of the ordered turn log replayed into each
provider request; `FunctionCall` is what the model asks the backend to run.
Both are immutable once built.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union


class Role(Enum):
    """Wire roles understood by the generateContent endpoint."""
    USER = "user"
    MODEL = "model"
    FUNCTION = "function"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Map a caller-supplied role to a wire role ('assistant' -> model, 'tool' -> function)."""
        normalized = (value or "user").strip().lower()
        aliases = {"assistant": "model", "tool": "function"}
        return cls(aliases.get(normalized, normalized))


@dataclass(frozen=True)
class FunctionCall:
    """A function invocation requested by the model.

    Attributes:
        name: Registered function name.
        args: Arguments exactly as the model supplied them (ints stay ints).
    """
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationTurn:
    """One turn of the conversation.

    Attributes:
        role: Who produced the turn.
        content: Plain text, or a structured part such as
            {"functionCall": {...}} / {"functionResponse": {...}}.
    """
    role: Role
    content: Union[str, Dict[str, Any]]

    @classmethod
    def user(cls, text: str) -> "ConversationTurn":
        return cls(Role.USER, text)

    @classmethod
    def function_call(cls, name: str, args: Dict[str, Any]) -> "ConversationTurn":
        return cls(Role.MODEL, {"functionCall": {"name": name, "args": dict(args)}})

    @classmethod
    def function_response(cls, name: str, result: Any) -> "ConversationTurn":
        return cls(Role.FUNCTION, {"functionResponse": {"name": name, "response": {"content": result}}})

    @property
    def text(self) -> str:
        return self.content if isinstance(self.content, str) else ""

    def to_wire(self) -> Dict[str, Any]:
        part = {"text": self.content} if isinstance(self.content, str) else dict(self.content)
        return {"role": self.role.value, "parts": [part]}
