"""FastAPI surface: one SSE stream per chat request."""

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from toolrelay.builtins import BUILTIN_TOOLS
from toolrelay.config import ProviderConfig, ServerSettings, select_provider
from toolrelay.errors import ConversationError
from toolrelay.message import Conversation
from toolrelay.orchestrator import Orchestrator
from toolrelay.provider import ModelProvider
from toolrelay.sse import EventChannel, as_sse_message, relay
from toolrelay.tools import ToolDispatcher

logger = logging.getLogger(__name__)


class FunctionDeclaration(BaseModel):
    """A tool the client offers for this request only."""

    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )


class ChatOptions(BaseModel):
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class ChatRequest(BaseModel):
    messages: list[dict] = Field(min_length=1)
    model: str | None = None
    functions: list[FunctionDeclaration] = Field(default_factory=list)
    options: ChatOptions | None = None


async def stream_chat(
    orchestrator: Orchestrator,
    conversation: Conversation,
    model: str | None = None,
    channel_size: int = 1024,
):
    """Yield SSE messages for one run.

    The orchestrator is pumped by a separate task into a bounded
    :class:`EventChannel`, so a slow client never stalls it.  When the
    consumer goes away the pump is cancelled and the provider stream
    released.
    """
    channel = EventChannel(maxsize=channel_size)
    pump = asyncio.create_task(
        relay(orchestrator.iter(conversation, model), channel)
    )
    finished = False
    try:
        async for event in channel:
            yield as_sse_message(event)
        finished = True
    finally:
        channel.close()
        if not finished and not pump.done():
            logger.info("Client went away; cancelling orchestration")
            pump.cancel()
        with suppress(asyncio.CancelledError):
            await pump


def create_app(
    provider: ModelProvider,
    dispatcher: ToolDispatcher,
    model: str | None = None,
    settings: ServerSettings | None = None,
    max_tokens: int = 4096,
    temperature: float = 0.7,
) -> FastAPI:
    """Build the app around one provider and dispatcher.

    Each request gets its own :class:`Orchestrator` and conversation.
    ``POST /chat/stream`` runs the tool loop, with any ``functions`` the
    client declares added to the catalog for that request only.
    ``POST /chat/title`` streams a single completion with no tools.
    Request ``options`` override ``max_tokens`` and ``temperature``.
    """
    settings = settings or ServerSettings()
    app = FastAPI(title="toolrelay")

    def new_orchestrator(
        body: ChatRequest,
        tools: ToolDispatcher,
        max_turns: int | None,
    ) -> Orchestrator:
        options = body.options or ChatOptions()
        return Orchestrator(
            provider=provider,
            dispatcher=tools,
            model=model,
            system_prompt=settings.system_prompt,
            max_tokens=options.max_tokens or max_tokens,
            temperature=(
                temperature if options.temperature is None
                else options.temperature
            ),
            max_turns=max_turns,
        )

    def conversation_of(body: ChatRequest) -> Conversation:
        try:
            return Conversation.from_dicts(body.messages)
        except ConversationError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "vendor": provider.vendor,
            "model": model or provider.default_model,
        }

    @app.post("/chat/stream")
    async def chat_stream(body: ChatRequest):
        conversation = conversation_of(body)
        tools = dispatcher
        if body.functions:
            tools = dispatcher.extend([f.model_dump() for f in body.functions])
        logger.info(
            f"Starting chat stream with {len(conversation)} messages and "
            f"{len(body.functions)} declared function(s)"
        )
        return EventSourceResponse(stream_chat(
            new_orchestrator(body, tools, settings.max_turns),
            conversation, body.model,
            channel_size=settings.channel_size,
        ))

    @app.post("/chat/title")
    async def chat_title(body: ChatRequest):
        # One tool-less turn: tokens, then done.
        conversation = conversation_of(body)
        logger.info(
            f"Starting title stream with {len(conversation)} messages"
        )
        return EventSourceResponse(stream_chat(
            new_orchestrator(body, ToolDispatcher(), 1),
            conversation, body.model,
            channel_size=settings.channel_size,
        ))

    return app


def main() -> None:
    import uvicorn

    settings = ServerSettings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    config = ProviderConfig.from_env()
    provider = select_provider(config)
    dispatcher = ToolDispatcher(
        tools=BUILTIN_TOOLS, max_result_chars=settings.max_result_chars,
    )
    app = create_app(
        provider, dispatcher,
        model=config.default_model,
        settings=settings,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
