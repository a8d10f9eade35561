"""
Live console log for the previewed worker.

The preview host exposes a devtools-style inspector per session. We enable the
Runtime domain and print console calls and uncaught exceptions as they arrive.
Nothing here can affect request forwarding: every failure ends in a warning.
"""

import asyncio
import json

import websockets

INSPECT_URL = "wss://rawhttp.cloudflareworkers.com/inspect/{session_id}"


def _describe(arg: dict) -> str:
    if "value" in arg:
        value = arg["value"]
        return value if isinstance(value, str) else json.dumps(value)
    return str(arg.get("description", arg.get("type", "")))


def format_event(message: str) -> str | None:
    """Render one inspector frame as a console line, or None if it isn't one."""
    try:
        event = json.loads(message)
    except ValueError:
        return None
    if not isinstance(event, dict):
        return None

    params = event.get("params") or {}
    method = event.get("method")
    if method == "Runtime.consoleAPICalled":
        args = " ".join(_describe(a) for a in params.get("args", []))
        return f"[console.{params.get('type', 'log')}] {args}"
    if method == "Runtime.exceptionThrown":
        details = params.get("exceptionDetails") or {}
        exc = details.get("exception") or {}
        text = exc.get("description") or details.get("text", "Uncaught exception")
        return f"[exception] {text}"
    return None


async def listen(session_id: str, url: str = INSPECT_URL):
    target = url.format(session_id=session_id)
    try:
        async with websockets.connect(target, ping_interval=10, ping_timeout=10) as ws:
            print("🔌 Live log connected")
            await ws.send(json.dumps({"id": 1, "method": "Runtime.enable"}))
            async for message in ws:
                line = format_event(message)
                if line:
                    print(line, flush=True)
    except websockets.ConnectionClosed as e:
        print(f"⚠️ Live log disconnected: {e}")
    except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
        print(f"⚠️ Live log unavailable: {type(e).__name__}: {e}")
