from datetime import datetime, timezone

from toolrelay.tools import Tool, tool


@tool
def current_time():
    """Gets the current time in a machine-readable format. The result should
    be given back to the user in a friendly format."""
    return datetime.now(timezone.utc).isoformat()


BUILTIN_TOOLS: list[Tool] = [current_time]
