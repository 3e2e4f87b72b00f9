import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer, model_validator

from toolrelay.errors import ConversationError


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str | list[dict[str, Any]] = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @property
    def text(self) -> str:
        """Plain text of the message, joining text parts of mixed content."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.get("text", "") for part in self.content
            if part.get("type") == "text"
        )


class ToolCallRequest(BaseModel):
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolCallRequestMessage(Message):
    """Assistant turn asking for one tool invocation.

    ``content`` holds any text the assistant streamed before the request.
    """

    tool_call: ToolCallRequest

    @model_validator(mode="after")
    def _check_role(self):
        if self.role is not MessageRole.ASSISTANT:
            raise ValueError("tool call requests must have the assistant role")
        return self


class ToolCallResultMessage(Message):
    tool_call_id: str
    name: str = ""

    @model_validator(mode="after")
    def _check_role(self):
        if self.role is not MessageRole.TOOL:
            raise ValueError("tool results must have the tool role")
        return self


def _requests_from_openai(data: dict) -> list[ToolCallRequest]:
    calls = data.get("tool_calls") or []
    if not isinstance(calls, list):
        raise ConversationError("tool_calls must be a list")
    requests = []
    for call in calls:
        if not isinstance(call, dict):
            raise ConversationError(
                f"tool_calls entries must be objects, got {type(call).__name__}"
            )
        function = call.get("function") or {}
        if not isinstance(function, dict):
            raise ConversationError(
                f"tool call {call.get('id')!r} has a malformed function"
            )
        if not call.get("id") or not function.get("name"):
            raise ConversationError("tool calls must carry an id and a function name")
        arguments = function.get("arguments") or "{}"
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise ConversationError(
                    f"tool call {call.get('id')!r} has invalid arguments: {e}"
                ) from e
        requests.append(ToolCallRequest(
            id=call["id"], name=function["name"], input=arguments,
        ))
    return requests


def messages_from_dict(data: dict) -> list[Message]:
    """Build canonical messages from one inbound message dict.

    An OpenAI-style assistant message carrying several ``tool_calls``
    expands into one :class:`ToolCallRequestMessage` per call.
    """
    if not isinstance(data, dict):
        raise ConversationError(
            f"messages must be objects, got {type(data).__name__}"
        )
    if "role" not in data:
        raise ConversationError("every message must declare a role")
    try:
        role = MessageRole(data["role"])
    except ValueError as e:
        raise ConversationError(f"unknown message role: {data['role']!r}") from e
    content = data.get("content") or ""

    if role is MessageRole.TOOL:
        if not data.get("tool_call_id"):
            raise ConversationError("tool messages must carry a tool_call_id")
        return [ToolCallResultMessage(
            role=role, content=content,
            tool_call_id=data["tool_call_id"], name=data.get("name", ""),
        )]

    if role is MessageRole.ASSISTANT:
        requests = []
        if data.get("tool_call"):
            if not isinstance(data["tool_call"], dict):
                raise ConversationError("tool_call must be an object")
            requests.append(ToolCallRequest(**data["tool_call"]))
        requests.extend(_requests_from_openai(data))
        if requests:
            messages: list[Message] = [ToolCallRequestMessage(
                role=role, content=content, tool_call=requests[0],
            )]
            messages.extend(
                ToolCallRequestMessage(role=role, tool_call=r)
                for r in requests[1:]
            )
            return messages

    return [Message(role=role, content=content)]


class Conversation(BaseModel):
    """Ordered, append-only list of messages for one orchestration run.

    At most one system message is allowed and it must come first.  Each
    tool result must answer a tool call requested earlier.
    """

    messages: list[Message] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_invariants(self):
        requested: set[str] = set()
        for position, message in enumerate(self.messages):
            _check_message(message, position, requested)
        return self

    @classmethod
    def from_dicts(cls, items: list[dict]) -> "Conversation":
        messages: list[Message] = []
        for item in items:
            try:
                messages.extend(messages_from_dict(item))
            except ConversationError:
                raise
            except (KeyError, TypeError, ValueError) as e:
                raise ConversationError(f"malformed message: {e}") from e
        try:
            return cls(messages=messages)
        except ValueError as e:
            raise ConversationError(str(e)) from e

    @property
    def system_prompt(self) -> str | None:
        if self.messages and self.messages[0].role is MessageRole.SYSTEM:
            return self.messages[0].text
        return None

    def without_system(self) -> list[Message]:
        if self.system_prompt is not None:
            return list(self.messages[1:])
        return list(self.messages)

    def requested_ids(self) -> set[str]:
        return {
            m.tool_call.id for m in self.messages
            if isinstance(m, ToolCallRequestMessage)
        }

    def append(self, message: Message) -> None:
        _check_message(message, len(self.messages), self.requested_ids())
        self.messages.append(message)

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)

    def __getitem__(self, item):
        return self.messages[item]


def _check_message(message: Message, position: int, requested: set[str]) -> None:
    if message.role is MessageRole.SYSTEM and position != 0:
        raise ConversationError(
            "a system message is only allowed as the first message"
        )
    if isinstance(message, ToolCallRequestMessage):
        requested.add(message.tool_call.id)
    elif isinstance(message, ToolCallResultMessage):
        if message.tool_call_id not in requested:
            raise ConversationError(
                f"tool result {message.tool_call_id!r} does not answer "
                "an earlier tool call"
            )
    elif message.role is MessageRole.TOOL:
        raise ConversationError("tool messages must carry a tool_call_id")
