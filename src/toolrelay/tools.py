import copy
import inspect
import json
import logging
import re
from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import BaseModel

from toolrelay.errors import ToolExecutionError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULT_CHARS = 4000

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
}


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


class DispatchResult(BaseModel):
    """Outcome of one tool execution as seen by the orchestrator."""

    success: bool
    result: Any = None
    error: str | None = None


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Read parameter descriptions from a Google or reST style docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    descriptions: dict[str, str] = {}
    for match in re.finditer(r":param\s+(\w+):\s*(.+)", doc):
        descriptions[match.group(1)] = match.group(2).strip()
    if descriptions:
        return descriptions

    in_args = False
    param_indent: int | None = None
    current: str | None = None
    for line in doc.splitlines():
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:"):
            in_args = True
            continue
        if not in_args or not stripped:
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        m = re.match(r"^(\w+)(?:\s*\([^)]*\))?:\s*(.*)$", stripped)
        if m and (param_indent is None or indent == param_indent):
            param_indent = indent
            current = m.group(1)
            descriptions[current] = m.group(2).strip()
        elif current is not None:
            descriptions[current] += "\n" + stripped
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = param.annotation
        origin = getattr(annotation, "__origin__", annotation)
        properties[name] = {
            "type": _JSON_TYPES.get(origin, "string"),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {
        "type": "object",
        "properties": properties,
        "required": required,
    }
    return schema, required


class Tool:
    """A callable exposed to the model.

    Wraps a sync or async function and derives its JSON schema from the
    signature and docstring.  Use the :func:`tool` decorator rather than
    constructing this directly.
    """

    def __init__(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        parameters_schema: dict | None = None,
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description or inspect.getdoc(func) or ""
        if parameters_schema is None:
            parameters_schema, _ = _build_parameters_schema(func)
        self.parameters_schema = parameters_schema

    @property
    def has_parameters(self) -> bool:
        return bool(self.parameters_schema.get("properties"))

    def schema(self) -> dict:
        """Vendor-neutral catalog entry; adapters reshape it."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r})"


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Decorate a function as a :class:`Tool`.

    Works bare (``@tool``) or with overrides
    (``@tool(name="get_ui_state")``).
    """
    def wrap(f: Callable) -> Tool:
        return Tool(f, name=name, description=description)

    if func is not None:
        return wrap(func)
    return wrap


@runtime_checkable
class ToolExecutor(Protocol):
    """External collaborator that runs tools the process does not own.

    A browser-automation bridge implements this.  ``execute`` returns a
    :class:`DispatchResult` or a ``{"success", "result", "error"}`` dict.
    """

    def schemas(self) -> list[dict]: ...

    async def execute(self, name: str, input: dict) -> Any: ...


def stringify_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def truncate_result(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return (
        f"{text[:max_chars]}\n\n"
        f"[Result truncated; total length: {len(text)} characters]"
    )


class ToolDispatcher:
    """Maps tool names to local tools or an external executor.

    Never raises: every failure comes back as an unsuccessful
    :class:`DispatchResult`, and :meth:`run` turns that into a
    ``"Failed to execute <name>: <reason>"`` string the model can read.

    Args:
        tools: Local tools, looked up first.
        executor: Optional external collaborator for everything else.
        max_result_chars: Size bound applied to result text.
    """

    def __init__(
        self,
        tools: list[Tool] | None = None,
        executor: ToolExecutor | None = None,
        max_result_chars: int = DEFAULT_MAX_RESULT_CHARS,
    ):
        self.tool_registry: dict[str, Tool] = {t.name: t for t in tools or []}
        self.executor = executor
        self.max_result_chars = max_result_chars
        self._external: dict[str, dict] = {}
        if executor is not None:
            for entry in executor.schemas():
                self._external.setdefault(entry["name"], entry)

    def extend(self, schemas: list[dict]) -> "ToolDispatcher":
        """Copy of this dispatcher that also advertises ``schemas``.

        Declared tools run on the shared executor.  Local tools and the
        executor's own schemas win on a name clash.
        """
        extended = copy.copy(self)
        extended._external = dict(self._external)
        for entry in schemas:
            extended._external.setdefault(entry["name"], entry)
        return extended

    def schemas(self) -> list[dict]:
        local = [t.schema() for t in self.tool_registry.values()]
        external = [
            s for name, s in self._external.items()
            if name not in self.tool_registry
        ]
        return local + external

    def has_parameters(self, name: str) -> bool:
        """Whether ``name`` declares parameters.  Unknown tools count as yes."""
        if name in self.tool_registry:
            return self.tool_registry[name].has_parameters
        if name in self._external:
            params = self._external[name].get("parameters") or {}
            return bool(params.get("properties"))
        return True

    async def execute(self, name: str, input: dict) -> DispatchResult:
        local = self.tool_registry.get(name)
        if local is not None:
            return await self._execute_local(local, input)
        if name in self._external:
            if self.executor is None:
                logger.warning(f"Tool {name} declared without an executor")
                return DispatchResult(
                    success=False,
                    error=f"tool '{name}' is declared but no executor is configured",
                )
            return await self._execute_external(name, input)
        logger.warning(f"Tool not found: {name}")
        return DispatchResult(success=False, error=f"tool '{name}' not found")

    async def run(self, name: str, input: dict) -> str:
        outcome = await self.execute(name, input)
        if outcome.success:
            text = stringify_result(outcome.result)
        else:
            text = f"Failed to execute {name}: {outcome.error}"
        return truncate_result(text, self.max_result_chars)

    async def _execute_local(self, local: Tool, input: dict) -> DispatchResult:
        logger.info(f"Calling {local.name} with {input}")
        try:
            inspect.signature(local.func).bind(**input)
        except TypeError as e:
            logger.warning(f"Bad arguments for {local.name}: {e}")
            return DispatchResult(success=False, error=f"invalid arguments: {e}")
        try:
            result = await local(**input)
        except ToolExecutionError as e:
            logger.warning(f"Tool {local.name} failed: {e}")
            return DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Tool {local.name} raised: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__)
        return DispatchResult(success=True, result=result.output)

    async def _execute_external(self, name: str, input: dict) -> DispatchResult:
        logger.info(f"Dispatching {name} to external executor with {input}")
        try:
            raw = await self.executor.execute(name, input)
        except ToolExecutionError as e:
            logger.warning(f"External tool {name} failed: {e}")
            return DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"External tool {name} raised: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__)
        if isinstance(raw, DispatchResult):
            return raw
        if isinstance(raw, dict) and "success" in raw:
            return DispatchResult(
                success=bool(raw["success"]),
                result=raw.get("result"),
                error=raw.get("error") or (None if raw["success"] else "unknown error"),
            )
        return DispatchResult(success=True, result=raw)
