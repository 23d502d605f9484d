"""
Evaluator for user-authored (stored) tool bodies.

A stored tool is a piece of Python source that defines ``implementation(args)``, either a plain
function or a coroutine function.  It never runs inside the host process: each call starts an
isolated interpreter (``python -I``) with a scrubbed environment, passes the body and the parsed
arguments over stdin and reads one JSON result line back from stdout.
"""

import asyncio
import json
import logging
import os
import sys
from typing import (
    Any,
    Dict,
    Mapping,
)

logger = logging.getLogger(__name__)

_RESULT_MARKER = "__AUTOLOOP_RESULT__"

# Executed by the child interpreter.  Tool output printed by the body is allowed; only the last
# marker line is the result.
_RUNNER = f"""
import asyncio, inspect, json, sys, traceback

payload = json.loads(sys.stdin.read())
namespace = {{"__name__": "__stored_tool__"}}
try:
    exec(compile(payload["body"], "<stored tool>", "exec"), namespace)
    implementation = namespace.get("implementation")
    if not callable(implementation):
        raise NameError("stored tool body must define implementation(args)")
    value = implementation(payload["args"])
    if inspect.isawaitable(value):
        async def _await(awaitable):
            return await awaitable
        value = asyncio.run(_await(value))
    out = {{"ok": True, "result": value}}
except BaseException as exc:
    out = {{"ok": False, "error": f"{{type(exc).__name__}}: {{exc}}"}}
print("{_RESULT_MARKER}" + json.dumps(out, default=str), flush=True)
"""


class SandboxError(RuntimeError):
    """Raised when a stored tool body fails, times out or returns nothing usable."""


class ScriptSandbox:
    """
    Run stored tool bodies in a child interpreter.

    Parameters
    ----------
    timeout:
        Seconds a single evaluation may take before the child is killed.
    python:
        Interpreter used for the child process (defaults to the running one).
    env:
        Environment of the child.  Defaults to ``PATH`` only, so host secrets such as API keys are
        not visible to tool code.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        python: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.python = python or sys.executable
        self.env = dict(env) if env is not None else {"PATH": os.environ.get("PATH", "")}

    async def run(self, body: str, bindings: Dict[str, Any]) -> Any:
        """Evaluate *body* with *bindings* as ``args`` and return its result."""
        try:
            payload = json.dumps({"body": body, "args": bindings})
        except (TypeError, ValueError) as exc:
            raise SandboxError(f"Arguments are not JSON serializable: {exc}") from exc

        proc = await asyncio.create_subprocess_exec(
            self.python,
            "-I",
            "-c",
            _RUNNER,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SandboxError(f"Stored tool timed out after {self.timeout:g}s") from exc

        return self._parse_output(stdout.decode("utf-8", "replace"), stderr, proc.returncode)

    @staticmethod
    def _parse_output(stdout: str, stderr: bytes, returncode: int | None) -> Any:
        lines = [line for line in stdout.splitlines() if line.startswith(_RESULT_MARKER)]
        if not lines:
            detail = stderr.decode("utf-8", "replace").strip()[-500:]
            logger.debug("Sandbox child exited with %s: %s", returncode, detail)
            raise SandboxError(f"Stored tool produced no result (exit code {returncode}): {detail}")

        out = json.loads(lines[-1][len(_RESULT_MARKER) :])
        if not out.get("ok"):
            raise SandboxError(out.get("error") or "Stored tool failed")
        return out.get("result")
