"""Streaming example: an assistant that inspects a (fake) page.

Demonstrates:
- Plugging an external ToolExecutor into the ToolDispatcher
- Mixing local @tool functions with executor-provided tools
- Consuming Orchestrator.iter() as a live event stream

Usage:
    Add TOOLRELAY_VENDOR=anthropic and ANTHROPIC_API_KEY=... (or
    OPENAI_API_KEY=sk-...) to .env, then:
    uv run --env-file=.env examples/ui_assistant.py
"""

import asyncio
import logging

from toolrelay.builtins import BUILTIN_TOOLS
from toolrelay.config import ProviderConfig, select_provider
from toolrelay.errors import ToolExecutionError
from toolrelay.events import ErrorEvent, TokenEvent, ToolResultEvent, ToolUseEvent
from toolrelay.orchestrator import Orchestrator
from toolrelay.tools import ToolDispatcher


class FakePage:
    """Stands in for a browser bridge that runs tools in a live page."""

    def __init__(self):
        self.fields = {"#title": "", "#priority": "low"}

    def schemas(self):
        return [
            {
                "name": "get_ui_state",
                "description": "Return the visible form fields and their values.",
                "parameters": {"type": "object", "properties": {}},
            },
            {
                "name": "fill_field",
                "description": "Type a value into a form field.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "selector": {"type": "string"},
                        "value": {"type": "string"},
                    },
                    "required": ["selector", "value"],
                },
            },
        ]

    async def execute(self, name, input):
        if name == "get_ui_state":
            return {"success": True, "result": dict(self.fields)}
        if name == "fill_field":
            selector = input["selector"]
            if selector not in self.fields:
                raise ToolExecutionError(f"no element matches {selector}")
            self.fields[selector] = input["value"]
            return {"success": True, "result": f"Filled {selector}."}
        return {"success": False, "error": f"unsupported tool {name}"}


async def main():
    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
    )
    config = ProviderConfig.from_env()
    orchestrator = Orchestrator(
        provider=select_provider(config),
        dispatcher=ToolDispatcher(tools=BUILTIN_TOOLS, executor=FakePage()),
        model=config.default_model,
        system_prompt=(
            "You help the user fill in the ticket form on screen. "
            "Look at the page before changing anything."
        ),
        max_turns=8,
    )

    conversation = [{
        "role": "user",
        "content": "Title the ticket 'Login broken' and make it high priority.",
    }]
    async for event in orchestrator.iter(conversation):
        if isinstance(event, TokenEvent):
            print(event.text, end="", flush=True)
        elif isinstance(event, ToolUseEvent):
            print(f"\n[tool] {event.data}")
        elif isinstance(event, ToolResultEvent):
            print(f"[result] {event.content}")
        elif isinstance(event, ErrorEvent):
            print(f"\n[error:{event.kind}] {event.message}")
    print()


if __name__ == "__main__":
    asyncio.run(main())
