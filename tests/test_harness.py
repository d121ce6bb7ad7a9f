import json
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from shell_planner.executor import CommandExecutor, CommandFailure, DependencyFailure, UnsupportedPlatform
from shell_planner.facts import FactTable
from shell_planner.harness import (
    PlanAbortedError,
    PlanParseError,
    PlanRunner,
    Session,
    format_report,
    parse_plan,
)
from shell_planner.llm import GenerationContext, LLMError
from shell_planner.models import Plan, Step, StepStatus

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX binaries")


def _mock_executor(*outputs):
    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=list(outputs))
    return executor


def _plan(*steps, explanation="Test plan"):
    return Plan.model_validate({"explanation": explanation, "steps": list(steps)})


def _client(*responses):
    client = MagicMock()
    client.generate = AsyncMock(
        side_effect=[
            (text, GenerationContext(messages=[{"role": "assistant", "content": text}]))
            for text in responses
        ]
    )
    return client


# ---------------------------------------------------------------------------
# Plan parsing
# ---------------------------------------------------------------------------


def test_parse_plan_valid():
    plan = parse_plan(
        json.dumps(
            {
                "explanation": "Find the gateway then ping it.",
                "steps": [
                    {"step": 1, "action_type": "command", "command": "ip route", "purpose": "find default gateway"},
                    {"step": 2, "action_type": "command", "command": "ping -c 1 {default_gateway}"},
                ],
            }
        )
    )
    assert plan.explanation == "Find the gateway then ping it."
    assert [s.step for s in plan.steps] == [1, 2]
    assert plan.steps[1].purpose is None


def test_parse_plan_dedicated_and_open_options():
    plan = parse_plan(
        json.dumps(
            {
                "steps": [
                    {
                        "step": 1,
                        "action_type": "command",
                        "command": "msfconsole -q",
                        "PAYLOAD:": "windows/meterpreter/reverse_tcp",
                        "LHOST:": "10.0.0.2",
                        "LPORT:": 4444,
                        "options": {"SESSION": "1"},
                        "VERBOSE": True,
                    }
                ]
            }
        )
    )
    step = plan.steps[0]
    assert step.payload == "windows/meterpreter/reverse_tcp"
    assert step.lhost == "10.0.0.2"
    assert step.lport == "4444"
    assert step.options == {"SESSION": "1", "VERBOSE": "True"}


def test_parse_plan_strips_code_fence():
    plan = parse_plan('```json\n{"steps": [{"step": 1, "action_type": "info"}]}\n```')
    assert plan.steps[0].action_type == "info"
    assert plan.explanation is None


def test_parse_plan_without_steps_is_empty():
    assert parse_plan('{"explanation": "nothing to do"}').steps == []


def test_parse_plan_null_options():
    plan = parse_plan('{"steps": [{"step": 1, "action_type": "command", "command": "id", "options": null}]}')
    assert plan.steps[0].options == {}


def test_parse_plan_non_mapping_options_is_parse_error():
    raw = '{"steps": [{"step": 1, "action_type": "info", "note": "x", "options": 5}]}'
    with pytest.raises(PlanParseError) as excinfo:
        parse_plan(raw)
    assert excinfo.value.raw == raw


def test_parse_plan_option_values_coerced_alike():
    plan = parse_plan(
        '{"steps": [{"step": 1, "action_type": "info", "VERBOSE": true, "options": {"FORCE": true, "THREADS": 4}}]}'
    )
    assert plan.steps[0].options == {"FORCE": "True", "THREADS": "4", "VERBOSE": "True"}


def test_parse_plan_malformed_json_keeps_raw():
    raw = "{ broken json"
    with pytest.raises(PlanParseError, match="Failed to parse LLM JSON plan") as excinfo:
        parse_plan(raw)
    assert excinfo.value.raw == raw


def test_parse_plan_missing_required_field():
    raw = '{"steps": [{"action_type": "command", "command": "ls"}]}'
    with pytest.raises(PlanParseError) as excinfo:
        parse_plan(raw)
    assert excinfo.value.raw == raw


# ---------------------------------------------------------------------------
# PlanRunner
# ---------------------------------------------------------------------------


@posix_only
@pytest.mark.asyncio
async def test_runner_skips_non_command_then_runs_echo():
    installer = MagicMock()
    installer.check_and_install_tool = AsyncMock()
    executor = CommandExecutor(installer, windows=False)
    runner = PlanRunner(executor, windows=False)
    try:
        await runner.run(
            _plan(
                {"step": 1, "action_type": "info"},
                {"step": 2, "action_type": "command", "command": "echo hi"},
            )
        )
    finally:
        executor.close()

    first, second = runner.transcript
    assert first.status is StepStatus.SKIPPED_ACTION
    assert first.report_block() == "Step 1: Skipped (Action Type: info)"
    assert second.status is StepStatus.EXECUTED
    assert second.command == "echo hi"
    assert second.output.strip() == "hi"


@pytest.mark.asyncio
async def test_runner_step_without_command_is_skipped():
    executor = _mock_executor()
    runner = PlanRunner(executor)
    report = await runner.run(_plan({"step": 1, "action_type": "command", "purpose": "think"}))

    executor.execute.assert_not_awaited()
    assert runner.transcript[0].status is StepStatus.SKIPPED_NO_COMMAND
    assert "Skipped (No command)" in report


@pytest.mark.asyncio
async def test_runner_substitutes_then_sanitizes():
    executor = _mock_executor("ok")
    runner = PlanRunner(executor, FactTable(target_ip="10.0.0.5"))
    await runner.run(_plan({"step": 1, "action_type": "command", "command": "/usr/bin/nmap -sV {target_ip}"}))

    executor.execute.assert_awaited_once_with("nmap -sV 10.0.0.5")
    assert runner.transcript[0].command == "nmap -sV 10.0.0.5"


@pytest.mark.asyncio
async def test_runner_feeds_discovered_gateway_forward():
    executor = _mock_executor("default via 192.168.1.1 dev eth0\n", "PING ok\n")
    runner = PlanRunner(executor, windows=False)
    await runner.run(
        _plan(
            {"step": 1, "action_type": "command", "command": "ip route", "purpose": "Find default gateway"},
            {"step": 2, "action_type": "command", "command": "ping -c 1 {default_gateway}"},
        )
    )

    assert runner.facts["default_gateway"] == "192.168.1.1"
    assert executor.execute.await_args_list[1].args == ("ping -c 1 192.168.1.1",)


@pytest.mark.asyncio
async def test_runner_missing_fact_aborts_before_execution():
    executor = _mock_executor("first")
    runner = PlanRunner(executor)
    with pytest.raises(PlanAbortedError, match="Failed step 2") as excinfo:
        await runner.run(
            _plan(
                {"step": 1, "action_type": "command", "command": "whoami"},
                {"step": 2, "action_type": "command", "command": "ping {default_gateway}"},
                {"step": 3, "action_type": "command", "command": "whoami"},
            )
        )

    assert executor.execute.await_count == 1
    assert excinfo.value.step == 2
    assert [entry.step for entry in excinfo.value.transcript] == [1]


@pytest.mark.asyncio
async def test_runner_unsupported_platform_skips_and_continues():
    executor = _mock_executor(UnsupportedPlatform("setoolkit requires Linux"), "done\n")
    runner = PlanRunner(executor)
    report = await runner.run(
        _plan(
            {"step": 1, "action_type": "command", "command": "setoolkit"},
            {"step": 2, "action_type": "command", "command": "whoami"},
        )
    )

    assert executor.execute.await_count == 2
    assert runner.transcript[0].status is StepStatus.SKIPPED_PLATFORM
    assert runner.transcript[0].output == "Skipped (Unsupported Platform)"
    assert runner.transcript[1].status is StepStatus.EXECUTED
    assert "done" in report


@pytest.mark.parametrize("failure", [CommandFailure("exit 1"), DependencyFailure("no apt")])
@pytest.mark.asyncio
async def test_runner_other_failures_abort_remaining_steps(failure):
    executor = _mock_executor(failure, "never")
    runner = PlanRunner(executor)
    with pytest.raises(PlanAbortedError, match="Execution failed at step 1") as excinfo:
        await runner.run(
            _plan(
                {"step": 1, "action_type": "command", "command": "nmap 10.0.0.1"},
                {"step": 2, "action_type": "command", "command": "whoami"},
            )
        )

    assert executor.execute.await_count == 1
    assert excinfo.value.cause is failure
    assert runner.transcript == []


@pytest.mark.asyncio
async def test_runner_empty_plan_returns_explanation():
    executor = _mock_executor()
    runner = PlanRunner(executor)
    assert await runner.run(_plan(explanation="Nothing to run.")) == "Nothing to run."
    assert await runner.run(Plan()) == "Executing plan..."


@pytest.mark.asyncio
async def test_runner_report_format():
    executor = _mock_executor("out-2")
    runner = PlanRunner(executor)
    report = await runner.run(
        _plan(
            {"step": 1, "action_type": "note"},
            {"step": 2, "action_type": "command", "command": "whoami"},
            explanation="Two steps.",
        )
    )
    assert report == (
        "Plan Execution Summary:\nTwo steps.\n\n"
        "Step 1: Skipped (Action Type: note)\n---\nOutput from Step 2:\nout-2"
    )
    assert report == format_report("Two steps.", runner.transcript)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def _session(client, executor=None, **kwargs):
    executor = executor or _mock_executor()
    return Session(client, executor, os_name="Kali Linux", windows=False, **kwargs)


def test_build_prompt_without_history():
    session = _session(_client())
    prompt = session.build_prompt("scan the network")
    assert prompt == (
        "<|im_start|>user\nOS: Kali Linux\nTask: scan the network\n"
        "Previous Commands/Outputs Context:\nNone\n<|im_end|>\n<|im_start|>assistant\n"
    )


def test_build_prompt_uses_last_five_history_entries_oldest_first():
    session = _session(_client(), qwen_formatting=False)
    session.command_history = [f"entry-{i}" for i in range(8)]
    prompt = session.build_prompt("next")
    assert prompt.endswith("entry-3\n---\nentry-4\n---\nentry-5\n---\nentry-6\n---\nentry-7")
    assert "entry-2" not in prompt
    assert not prompt.startswith("<|im_start|>")


@pytest.mark.asyncio
async def test_process_query_seeds_cidr_and_resets_facts():
    plan = json.dumps({"steps": [{"step": 1, "action_type": "command", "command": "nmap -sn {subnet_cidr}"}]})
    executor = _mock_executor("hosts up", "pong")
    session = _session(_client(plan, plan), executor)
    session.facts["stale"] = "value"

    await session.process_query("sweep 192.168.1.0/24 from 10.0.0.9")

    assert session.facts == {"subnet_cidr": "192.168.1.0/24"}
    executor.execute.assert_awaited_with("nmap -sn 192.168.1.0/24")
    executor.forget_tools.assert_called_once()

    report = await session.process_query("sweep again without a range")
    assert session.facts == {}
    assert "Error during processing" in report
    assert "subnet_cidr" in report


@pytest.mark.asyncio
async def test_process_query_threads_context_and_history():
    plan = json.dumps(
        {
            "explanation": "Who am I?",
            "steps": [
                {"step": 1, "action_type": "info"},
                {"step": 2, "action_type": "command", "command": "whoami"},
            ],
        }
    )
    client = _client(plan, plan)
    session = _session(client, _mock_executor("root\n", "root\n"))

    first = await session.process_query("who am i")
    assert first.startswith("Plan Execution Summary:\nWho am I?")
    assert client.generate.await_args_list[0].args[1] is None
    first_context = session.model_context

    await session.process_query("again")
    second_call = client.generate.await_args_list[1]
    assert second_call.args[1] is first_context
    assert second_call.args[2] == "Kali Linux"
    assert "Step 2: whoami ->\nroot\n" in second_call.args[0]
    assert session.command_history == ["Step 2: whoami ->\nroot\n", "Step 2: whoami ->\nroot\n"]


@pytest.mark.asyncio
async def test_process_query_reports_parse_failure_with_raw_text():
    session = _session(_client("Sure! Here is your plan: nmap"))
    report = await session.process_query("scan")
    assert report.startswith("Error during processing: Failed to parse LLM JSON plan")
    assert report.endswith("Raw response was:\nSure! Here is your plan: nmap")


@pytest.mark.asyncio
async def test_process_query_reports_bad_options_instead_of_raising():
    raw = '{"steps": [{"step": 1, "action_type": "info", "note": "x", "options": 5}]}'
    session = _session(_client(raw))
    report = await session.process_query("scan")
    assert report.startswith("Error during processing: Failed to parse LLM JSON plan")
    assert report.endswith(f"Raw response was:\n{raw}")


@pytest.mark.asyncio
async def test_process_query_abort_report_includes_completed_steps():
    plan = json.dumps(
        {
            "steps": [
                {"step": 1, "action_type": "command", "command": "whoami"},
                {"step": 2, "action_type": "command", "command": "nmap 10.0.0.1"},
            ]
        }
    )
    executor = _mock_executor("root\n", CommandFailure("Command failed with status 1. Error:\nboom"))
    session = _session(_client(plan), executor)

    report = await session.process_query("scan")

    assert report.startswith("Error during processing: Execution failed at step 2")
    assert "Output from Step 1:\nroot" in report
    assert report.endswith(f"Raw response was:\n{plan}")
    assert session.command_history == ["Step 1: whoami ->\nroot\n"]


@pytest.mark.asyncio
async def test_process_query_llm_failure_propagates():
    client = MagicMock()
    client.generate = AsyncMock(side_effect=LLMError("Ollama API error"))
    session = _session(client)
    with pytest.raises(LLMError):
        await session.process_query("scan")


def test_save_output(tmp_path):
    session = _session(_client())
    target = tmp_path / "report.txt"
    session.save_output("Plan Execution Summary:\nok", target)
    assert target.read_text(encoding="utf-8") == "Plan Execution Summary:\nok"
