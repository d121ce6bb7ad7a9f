# harness.py
# Plan execution engine.
#
# The Session owns everything that outlives a single query (LLM carry-over,
# command history). A PlanRunner is created per query and owns that query's
# fact table and transcript. The LLM never executes anything — it only
# proposes a JSON plan.
#
# Control flow:
#   query → clear + seed facts → build prompt → LLM → parse plan
#   → per step: substitute → sanitize → execute → extract facts → transcript
#   → report
#
# All terminal output is delegated to display.py — no formatting here.

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from shell_planner import display
from shell_planner.executor import (
    IS_WINDOWS,
    CommandExecutor,
    ExecutionError,
    UnsupportedPlatform,
    sanitize_command,
)
from shell_planner.facts import (
    FactTable,
    MissingFactError,
    extract_output_facts,
    seed_from_query,
    substitute_placeholders,
)
from shell_planner.llm import GenerationContext
from shell_planner.models import Plan, Step, StepStatus, TranscriptEntry

logger = logging.getLogger(__name__)

DEFAULT_EXPLANATION = "Executing plan..."
HISTORY_WINDOW = 5


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PlanParseError(Exception):
    """Raised when the model's response is not a valid plan. Keeps the raw text."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(f"Failed to parse LLM JSON plan: {message}")
        self.raw = raw


class PlanAbortedError(Exception):
    """Raised when a step failure ends the plan. Carries the transcript so far."""

    def __init__(self, step: int, cause: Exception, transcript: list[TranscriptEntry]) -> None:
        if isinstance(cause, MissingFactError):
            message = f"Failed step {step}: Substituting placeholders failed: {cause}"
        else:
            message = f"Execution failed at step {step}: {cause}"
        super().__init__(message)
        self.step = step
        self.cause = cause
        self.transcript = transcript


class PlanGenerator(Protocol):
    async def generate(
        self, prompt: str, context: GenerationContext | None, os_name: str
    ) -> tuple[str, GenerationContext]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_plan(response: str) -> Plan:
    """
    Decode the model's JSON plan.

    A surrounding Markdown code fence is tolerated. Raises PlanParseError on
    malformed JSON or a missing required field.
    """
    raw = response.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)

    try:
        return Plan.model_validate(json.loads(raw))
    except json.JSONDecodeError as exc:
        raise PlanParseError(str(exc), response) from exc
    except ValidationError as exc:
        raise PlanParseError(str(exc), response) from exc


def format_report(explanation: str, transcript: list[TranscriptEntry]) -> str:
    blocks = "\n---\n".join(entry.report_block() for entry in transcript)
    return f"Plan Execution Summary:\n{explanation}\n\n{blocks}"


# ---------------------------------------------------------------------------
# PlanRunner
# ---------------------------------------------------------------------------


class PlanRunner:
    """
    Executes one plan, strictly in step order.

    Step n may reference a fact that only step n-1's output produced, so
    steps never run concurrently.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        facts: FactTable | None = None,
        windows: bool = IS_WINDOWS,
    ) -> None:
        self.executor = executor
        self.facts = facts if facts is not None else FactTable()
        self.transcript: list[TranscriptEntry] = []
        self._windows = windows

    async def run(self, plan: Plan) -> str:
        explanation = plan.explanation or DEFAULT_EXPLANATION
        display.plan_parsed(plan, explanation)

        if not plan.steps:
            logger.info("LLM returned empty steps array.")
            return explanation

        display.execution_start(len(plan.steps))
        for step in plan.steps:
            entry = await self.run_step(step)
            self.transcript.append(entry)

        return format_report(explanation, self.transcript)

    async def run_step(self, step: Step) -> TranscriptEntry:
        display.step_start(step)

        if step.action_type != "command":
            display.step_skipped(f"non-command action type: {step.action_type}")
            return TranscriptEntry(
                step=step.step,
                status=StepStatus.SKIPPED_ACTION,
                action_type=step.action_type,
                output=f"Skipped (Action Type: {step.action_type})",
            )

        if step.command is None:
            display.step_skipped("no command defined")
            return TranscriptEntry(
                step=step.step,
                status=StepStatus.SKIPPED_NO_COMMAND,
                output="Skipped (No command)",
            )

        logger.debug("Facts before substitution for step %d: %s", step.step, dict(self.facts))
        try:
            resolved = substitute_placeholders(step.command, self.facts)
        except MissingFactError as exc:
            display.halt(str(exc))
            raise PlanAbortedError(step.step, exc, list(self.transcript)) from exc

        command = sanitize_command(resolved)
        display.executing(command)

        try:
            output = await self.executor.execute(command)
        except UnsupportedPlatform as exc:
            display.step_skipped(f"unsupported platform: {exc}")
            return TranscriptEntry(
                step=step.step,
                status=StepStatus.SKIPPED_PLATFORM,
                command=command,
                output="Skipped (Unsupported Platform)",
            )
        except ExecutionError as exc:
            display.halt(f"Command execution failed: {exc}")
            raise PlanAbortedError(step.step, exc, list(self.transcript)) from exc

        display.step_output(output)
        before = dict(self.facts)
        extract_output_facts(step, output, self.facts, windows=self._windows)
        for name, value in self.facts.items():
            if before.get(name) != value:
                display.fact_discovered(name, value)

        return TranscriptEntry(
            step=step.step,
            status=StepStatus.EXECUTED,
            command=command,
            output=output,
        )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """
    Top-level query handler.

    Example:
        session = Session(client, executor, os_name="Kali Linux")
        report = await session.process_query("scan 192.168.1.0/24")
    """

    def __init__(
        self,
        client: PlanGenerator,
        executor: CommandExecutor,
        os_name: str,
        qwen_formatting: bool = True,
        windows: bool = IS_WINDOWS,
    ) -> None:
        self._client = client
        self._executor = executor
        self._os_name = os_name
        self._qwen_formatting = qwen_formatting
        self._windows = windows
        self.model_context: GenerationContext | None = None
        self.command_history: list[str] = []
        self.facts = FactTable()

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, query: str) -> str:
        recent = self.command_history[-HISTORY_WINDOW:]
        history = "\n---\n".join(recent) if recent else "None"
        body = f"OS: {self._os_name}\nTask: {query}\nPrevious Commands/Outputs Context:\n{history}"
        if not self._qwen_formatting:
            return body
        return f"<|im_start|>user\n{body}\n<|im_end|>\n<|im_start|>assistant\n"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_query(self, query: str) -> str:
        """
        Full pipeline entry point.

        Returns a string for every plan-level outcome: a report, or an error
        message that folds in the transcript so far and the raw response.
        Every returned string is also rendered through display.
        LLM failures (LLMError) propagate.
        """
        display.prompt_received(query)

        self.facts.clear()
        self._executor.forget_tools()
        seed_from_query(query, self.facts)
        logger.debug("Facts after query parse: %s", dict(self.facts))
        if self.facts:
            display.facts_seeded(dict(self.facts))

        display.calling_model()
        prompt = self.build_prompt(query)
        response, self.model_context = await self._client.generate(
            prompt, self.model_context, self._os_name
        )
        logger.debug("Raw LLM JSON response:\n>>>\n%s\n<<<", response)

        runner = PlanRunner(self._executor, self.facts, windows=self._windows)
        try:
            plan = parse_plan(response)
            report = await runner.run(plan)
        except PlanParseError as exc:
            logger.error("Error processing plan: %s", exc)
            report = f"Error during processing: {exc}. Raw response was:\n{exc.raw}"
            display.failure_report(report)
            return report
        except PlanAbortedError as exc:
            logger.error("Error processing plan: %s", exc)
            report = self._abort_report(exc, response)
            display.failure_report(report)
            return report
        finally:
            self._remember(runner.transcript)

        display.final_result(report)
        return report

    def _remember(self, transcript: list[TranscriptEntry]) -> None:
        for entry in transcript:
            if entry.status is not StepStatus.SKIPPED_ACTION:
                self.command_history.append(entry.history_line())

    def _abort_report(self, exc: PlanAbortedError, response: str) -> str:
        parts = [f"Error during processing: {exc}."]
        if exc.transcript:
            completed = "\n---\n".join(entry.report_block() for entry in exc.transcript)
            parts.append(f"Completed before failure:\n{completed}")
        parts.append(f"Raw response was:\n{response}")
        return "\n\n".join(parts)

    def save_output(self, output: str, path: str | Path) -> None:
        Path(path).write_text(output, encoding="utf-8")
