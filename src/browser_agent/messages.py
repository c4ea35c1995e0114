"""Provider-neutral chat message types.

Messages form a closed union discriminated on ``role``; content parts form a
closed union discriminated on ``type``. Each LLM adapter owns one serializer that
translates these into its provider's wire shape.
"""

from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class ContentPartText(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ContentPartImage(BaseModel):
    type: Literal["image_url"] = "image_url"
    url: str
    detail: Literal["auto", "low", "high"] = "auto"
    media_type: str = "image/png"


class ContentPartRefusal(BaseModel):
    type: Literal["refusal"] = "refusal"
    refusal: str


ContentPart = Annotated[
    Union[ContentPartText, ContentPartImage, ContentPartRefusal],
    Field(discriminator="type"),
]


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = "{}"


class _MessageBase(BaseModel):
    content: Union[str, List[ContentPart]] = ""
    cache: bool = False

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring images."""
        if isinstance(self.content, str):
            return self.content
        chunks: List[str] = []
        for part in self.content:
            if isinstance(part, ContentPartText):
                chunks.append(part.text)
            elif isinstance(part, ContentPartRefusal):
                chunks.append(f"[Refusal] {part.refusal}")
        return "\n".join(chunks)

    @property
    def images(self) -> List[ContentPartImage]:
        if isinstance(self.content, str):
            return []
        return [part for part in self.content if isinstance(part, ContentPartImage)]


class SystemMessage(_MessageBase):
    role: Literal["system"] = "system"


class UserMessage(_MessageBase):
    role: Literal["user"] = "user"
    name: Optional[str] = None


class AssistantMessage(_MessageBase):
    role: Literal["assistant"] = "assistant"
    tool_calls: List[ToolCall] = Field(default_factory=list)

    @property
    def text(self) -> str:
        base = super().text
        if self.tool_calls:
            calls = "\n".join(f"{call.name}: {call.arguments}" for call in self.tool_calls)
            return f"{base}\n{calls}" if base else calls
        return base


BaseMessage = Annotated[
    Union[SystemMessage, UserMessage, AssistantMessage],
    Field(discriminator="role"),
]


def messages_to_text(messages: List[BaseMessage]) -> str:
    """Render a transcript for conversation dumps and debug logs."""
    lines: List[str] = []
    for message in messages:
        lines.append(f" {message.role} ".center(40, "-"))
        lines.append(message.text)
        if message.images:
            lines.append(f"[{len(message.images)} image(s)]")
    return "\n".join(lines)
