"""Main orchestration loop for autoloop."""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Callable,
    Dict,
    List,
    Sequence,
    Set,
)

from autoloop.agent.result_assembler import (
    budget_exhausted_summary,
    build_final_message,
    duplicate_id_summary,
    retry_ceiling_summary,
    tool_result_message,
)
from autoloop.agent.tool_executor import ToolInvoker
from autoloop.agent.turn_executor import TurnExecutor
from autoloop.config import AgentConfig
from autoloop.core.cancellation import (
    AgentAborted,
    CancellationToken,
)
from autoloop.core.schema import (
    AgentExecutionContext,
    ChatMessage,
    FinalMessage,
    Role,
    StepResult,
    TokenUsage,
    ToolCallRequest,
    ToolOutcome,
)
from autoloop.protocol.client import ProtocolToolClient
from autoloop.tools.catalog import ToolCatalog
from autoloop.tools.sandbox import ScriptSandbox

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


def step_budget(config: AgentConfig, has_tools: bool) -> int:
    """
    Number of turns a run may take.

    Without tools a second turn can never be useful, so the budget is a single step; with tools it
    is the configured budget but at least two (one turn to call a tool, one to answer).
    """
    if not has_tools:
        return 1
    return max(config.max_tool_calls, 2)


def is_duplicate_id_error(exc: Exception) -> bool:
    """Whether the backend rejected the transcript because a tool-call id was answered twice."""
    message = str(exc).lower()
    return "duplicate" in message and ("tool_call_id" in message or "tool call" in message)


class AgentLoop:
    """
    Bounded turn -> tools -> continuation loop.

    One instance may serve many runs; all per-run state lives in :meth:`run`.

    Args:
        turn_executor: Performs each model turn.
        catalog: Tools the model may call.
        config: Policy for this invocation.
        protocol_client: Client for ``mcp_`` tools.
        sandbox: Evaluator for stored tools.
    """

    def __init__(
        self,
        turn_executor: TurnExecutor,
        catalog: ToolCatalog,
        config: AgentConfig,
        *,
        protocol_client: ProtocolToolClient | None = None,
        sandbox: ScriptSandbox | None = None,
    ) -> None:
        self.turn_executor = turn_executor
        self.catalog = catalog
        self.config = config
        self.protocol_client = protocol_client
        self.sandbox = sandbox

    async def run(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        query: str,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
        model_label: str | None = None,
    ) -> FinalMessage:
        """
        Drive the conversation in *messages* to a final answer.

        Never raises for transport, tool or abort failures; the returned envelope says what
        happened.
        """
        config = self.config
        tools = self.catalog.openai_tools() if self.catalog else []
        context = AgentExecutionContext(
            original_query=query,
            tools_available=self.catalog.names(),
            max_steps=step_budget(config, bool(tools)),
        )
        conversation: List[ChatMessage] = list(messages)
        outcomes: List[ToolOutcome] = []
        answered: Set[str] = set()
        processed_ids: List[str] = []
        usage = TokenUsage()
        content = ""
        failed_steps = 0
        wants_tools = False

        def emit(text: str) -> None:
            if on_chunk is not None and text:
                on_chunk(text)

        def narrate(text: str) -> None:
            context.progress_log.append(text.strip())
            if config.enable_progress_tracking:
                emit(text)

        invoker = ToolInvoker(
            self.catalog,
            config,
            protocol_client=self.protocol_client,
            sandbox=self.sandbox,
            narrate=narrate,
        )

        logger.info(
            "Starting agent loop: %d steps, %d tools, model=%s", context.max_steps, len(tools), model
        )
        narrate("**Autonomous Agent Activated**\n\n")
        if config.enable_streaming and tools and not self.turn_executor.use_streaming(True, True):
            narrate("Switching to non-streaming mode for better tool support with this provider...\n\n")

        step = 0
        last_error: str | None = None
        try:
            # Failed turns are retried in place and do not consume the step budget
            while True:
                if step >= context.max_steps:
                    if wants_tools:
                        logger.info("Step budget of %d exhausted", context.max_steps)
                        summary = budget_exhausted_summary(context, outcomes)
                        content += summary
                        emit(summary)
                    break

                context.current_step = step
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if step > 0:
                    narrate(f"\n**Step {step + 1}**: Continuing analysis...\n\n")

                try:
                    result = await self.turn_executor.execute(
                        model,
                        conversation,
                        config.request_options(),
                        tools,
                        enable_streaming=config.enable_streaming,
                        on_chunk=on_chunk,
                        cancel_token=cancel_token,
                    )
                except AgentAborted:
                    raise
                except Exception as exc:  # pylint: disable=broad-except
                    logger.error("Agent step %d failed: %s", step + 1, exc)
                    if is_duplicate_id_error(exc):
                        answered.clear()
                        narrate("\n**Error**: Duplicate tool call detected.\n\n")
                        summary = duplicate_id_summary(outcomes)
                        content += summary
                        emit(summary)
                        wants_tools = False
                        break

                    failed_steps += 1
                    last_error = str(exc)
                    narrate(f"\n**Error in step {step + 1}**: {exc}\n\n")
                    if failed_steps >= config.max_retries:
                        logger.warning("Max retries reached, leaving the agent loop")
                        summary = retry_ceiling_summary(outcomes)
                        content += summary
                        emit(summary)
                        wants_tools = False
                        break
                    if config.retry_delay > 0:
                        await asyncio.sleep(config.retry_delay)
                    continue

                usage += result.usage
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled(partial_text=result.content)
                content += result.content
                last_error = None
                wants_tools = bool(result.tool_calls)
                if not wants_tools:
                    logger.info("No tool calls in step %d, agent run complete", step + 1)
                    break

                await self._run_tools(
                    result, conversation, context, invoker, answered, processed_ids, outcomes,
                    narrate, cancel_token,
                )
                step += 1
        except AgentAborted as exc:
            logger.info("Agent run aborted at step %d", context.current_step + 1)
            return build_final_message(
                content + exc.partial_text,
                model=model_label or model,
                context=context,
                outcomes=outcomes,
                usage=usage,
                processed_ids=processed_ids,
                temperature=config.temperature,
                aborted=True,
            )

        logger.info(
            "Agent run finished after %d steps with %d tool results",
            context.current_step + 1,
            len(outcomes),
        )
        return build_final_message(
            content,
            model=model_label or model,
            context=context,
            outcomes=outcomes,
            usage=usage,
            processed_ids=processed_ids,
            temperature=config.temperature,
            error=last_error,
        )

    async def _run_tools(
        self,
        result: StepResult,
        conversation: List[ChatMessage],
        context: AgentExecutionContext,
        invoker: ToolInvoker,
        answered: Set[str],
        processed_ids: List[str],
        outcomes: List[ToolOutcome],
        narrate: Callable[[str], None],
        cancel_token: CancellationToken | None,
    ) -> None:
        """Record the requested calls, execute them in order and answer each one exactly once."""
        fresh: List[ToolCallRequest] = []
        for call in result.tool_calls:
            if call.id in answered or any(call.id == seen.id for seen in fresh):
                logger.warning("Skipping already answered tool call %s (%s)", call.id, call.name)
                narrate(f"Skipping repeated tool call {call.name} ({call.id})\n")
                continue
            fresh.append(call)
        if not fresh:
            return

        narrate("\n\n**Executing tools...**\n\n")
        conversation.append(ChatMessage(role=Role.ASSISTANT, content=result.content, tool_calls=fresh))

        step_outcomes: Dict[str, ToolOutcome] = {}
        for call in fresh:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            step_outcomes[call.id] = await invoker.invoke(call, context)

        for call in fresh:
            answered.add(call.id)
            processed_ids.append(call.id)
            conversation.append(tool_result_message(call, step_outcomes.get(call.id)))
        outcomes.extend(step_outcomes.values())

        ok = sum(1 for outcome in step_outcomes.values() if outcome.success)
        logger.info("Executed %d tool calls, %d successful", len(step_outcomes), ok)
        narrate("**Tools executed**\n\n")
