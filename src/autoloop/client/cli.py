"""CLI client for the autoloop API."""

from __future__ import annotations

import json
import logging
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from autoloop.common import (
    AnsiColors,
    colored_print,
)
from autoloop.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def api_url(endpoint: str) -> str:
    return f"http://localhost:{settings.API_PORT}{endpoint}"


def call_api(endpoint: str, data: Dict[str, Any], max_retries: int = 5) -> Dict[str, Any]:
    """Make a POST request to the API and return the response with retries."""
    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=30.0) as client:
                response = client.post(api_url(endpoint), json=data)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.ConnectError as e:
            # On connection refused, retry with exponential backoff
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                import time  # pylint: disable=import-outside-toplevel

                time.sleep(retry_delay)
                continue
            logger.error("API connection error: %s", e)
            return {"error": f"Error connecting to API: {e}"}
        except httpx.HTTPStatusError as e:
            logger.error("API request error: %s", e)
            try:
                detail = e.response.json().get("detail", str(e))
            except ValueError:
                detail = str(e)
            return {"error": f"API error: {detail}"}
        except httpx.HTTPError as e:
            logger.error("API request error: %s", e)
            return {"error": f"Error connecting to API: {e}"}

    # If we've exhausted all retries without returning
    return {"error": f"Failed to connect to API after {max_retries} attempts"}


def stream_agent(message: str, session_id: str) -> Dict[str, Any]:
    """
    Send *message* to ``/agent/stream``, printing progress chunks as they arrive.

    Returns the final message payload (or ``{"error": ...}``).
    """
    payload = {"message": message, "session_id": session_id}
    final: Dict[str, Any] = {}
    try:
        with httpx.Client(timeout=None) as client:
            with client.stream("POST", api_url("/agent/stream"), json=payload) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    event = json.loads(line)
                    if event.get("type") == "chunk":
                        colored_print(event.get("content", ""), AnsiColors.GREY, end="", flush=True)
                    elif event.get("type") == "final":
                        final = event.get("message", {})
    except httpx.HTTPError as e:
        logger.error("API streaming error: %s", e)
        return {"error": f"Error connecting to API: {e}"}
    print()
    return final


def show_reply(message: Dict[str, Any]) -> None:
    """Print the final assistant message with its run summary."""
    if "error" in message and "content" not in message:
        colored_print(message["error"], AnsiColors.RED)
        return

    metadata = message.get("metadata") or {}
    for artifact in message.get("artifacts") or []:
        colored_print(f"[{artifact.get('title')}]\n{artifact.get('content')}", AnsiColors.GREEN)
    colored_print(message.get("content") or "No response from API", AnsiColors.YELLOW)

    if metadata.get("aborted"):
        colored_print("(stopped)", AnsiColors.RED)
    elif metadata.get("error"):
        colored_print(f"Error: {metadata['error']}", AnsiColors.RED)
    tools_used = metadata.get("tools_used") or []
    if tools_used:
        colored_print(
            f"{metadata.get('steps_consumed', 0)} steps, tools: {', '.join(tools_used)}",
            AnsiColors.GREY,
        )


def run_cli() -> None:
    """Run the CLI client that communicates with the API."""
    # Create a new session
    session_response = call_api("/sessions", {})
    session_id = session_response.get("session_id")

    if not session_id:
        colored_print("Failed to create a session", AnsiColors.RED)
        return

    colored_print("\nautoloop shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        try:
            reply = stream_agent(user_msg, session_id)
        except KeyboardInterrupt:
            # Ctrl+C during a run stops the run, not the shell
            call_api(f"/sessions/{session_id}/stop", {})
            colored_print("\n(stopping...)", AnsiColors.RED)
            continue
        show_reply(reply)


if __name__ == "__main__":
    run_cli()
