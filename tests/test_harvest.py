from __future__ import annotations

import asyncio

from delegate_mcp.session import FakeSessionService, MessageInfo, ModelRef, Part
from delegate_mcp.tasks import ResultHarvester, latest_turn
from delegate_mcp.tasks.harvest import format_parts


def test_latest_turn_starts_at_last_organic_prompt() -> None:
    service = FakeSessionService()
    service.add_session("ses_task")
    service.add_message("ses_task", "user", "first question")
    service.add_message("ses_task", "assistant", "first answer")
    second = service.add_message("ses_task", "user", "second question")
    service.add_message("ses_task", "user", "<notice>", synthetic=True)
    service.add_message("ses_task", "assistant", "second answer")

    turn = latest_turn(service.history["ses_task"])

    assert turn[0] is second
    assert [message.parts[0].text for message in turn] == ["second question", "<notice>", "second answer"]


def test_latest_turn_without_organic_prompt_returns_newest_message() -> None:
    service = FakeSessionService()
    task = service.add_session("ses_task")
    service.add_message("ses_task", "user", "<context>", synthetic=True)
    service.add_message("ses_task", "assistant", "stale answer")
    service.add_message("ses_task", "user", "<notice>", synthetic=True)
    newest = service.add_message("ses_task", "assistant", "fresh answer")

    assert latest_turn(service.history["ses_task"]) == [newest]

    bundle = asyncio.run(ResultHarvester(service).fetch(task))
    assert "fresh answer" in bundle.text
    assert "stale answer" not in bundle.text


def test_synthetic_messages_do_not_move_the_turn_start() -> None:
    service = FakeSessionService()
    task = service.add_session("ses_task")
    service.add_message("ses_task", "user", "old prompt")
    service.add_message("ses_task", "assistant", "old answer")
    prompt = service.add_message("ses_task", "user", "find X")
    service.add_message("ses_task", "assistant", "found X")
    harvester = ResultHarvester(service)

    first = asyncio.run(harvester.fetch(task))
    service.add_message("ses_task", "user", "<sibling_broadcast>update</sibling_broadcast>", synthetic=True)
    second = asyncio.run(harvester.fetch(task))

    assert latest_turn(service.history["ses_task"])[0] is prompt
    for bundle in (first, second):
        assert "find X" in bundle.text
        assert "old answer" not in bundle.text
    assert second.text.startswith(first.text)


def test_format_parts_renders_reasoning_and_tool_calls() -> None:
    info = MessageInfo(role="assistant", agent="explorer")
    parts = [
        Part(type="reasoning", text="look in src"),
        Part(type="tool", tool="grep", state={"input": {"pattern": "X"}}),
        Part(type="text", text="X lives in src/a.ts"),
        Part(type="step-start"),
    ]

    rendered = [part.text for part in format_parts(parts, info)]

    assert rendered == [
        "**explorer:**\n---\n",
        "<thinking>\nlook in src\n</thinking>",
        '<tool_call>\nName: grep\nInput: {"pattern": "X"}\n</tool_call>',
        "X lives in src/a.ts",
        "\n---\n",
    ]


def test_format_parts_labels_prompts_and_skips_empty_messages() -> None:
    prompt = format_parts([Part(type="text", text="find X")], MessageInfo(role="user"))
    empty = format_parts([Part(type="step-finish")], MessageInfo(role="assistant"))

    assert prompt[0].text == "**Prompt:**\n---\n"
    assert empty == []


def test_fetch_builds_bundle_with_header_and_merged_info() -> None:
    service = FakeSessionService()
    task = service.add_session("ses_task")
    service.add_message("ses_task", "user", "old prompt")
    service.add_message("ses_task", "assistant", "old answer", agent="explorer")
    service.add_message("ses_task", "user", "find X")
    service.add_message(
        "ses_task",
        "assistant",
        "found X",
        agent="explorer",
        model=ModelRef(providerID="anthropic", modelID="claude"),
    )

    bundle = asyncio.run(ResultHarvester(service).fetch(task))

    assert bundle.parts[0].text == "# Task(ses_task) output:\n"
    assert all(part.synthetic for part in bundle.parts)
    assert "found X" in bundle.text
    assert "find X" in bundle.text
    assert "old answer" not in bundle.text
    assert bundle.info["role"] == "assistant"
    assert bundle.info["agent"] == "explorer"
    assert bundle.info["model"] == {"providerID": "anthropic", "modelID": "claude"}


def test_was_aborted_checks_newest_assistant_error() -> None:
    service = FakeSessionService()
    task = service.add_session("ses_task")
    service.add_message("ses_task", "user", "find X")
    service.add_message("ses_task", "assistant", agent="explorer", error={"name": "MessageAbortedError"})
    harvester = ResultHarvester(service)

    assert asyncio.run(harvester.was_aborted(task)) is True

    service.add_message("ses_task", "assistant", "recovered", agent="explorer")
    assert asyncio.run(harvester.was_aborted(task)) is False


def test_agent_and_model_prefers_newest_message_with_model() -> None:
    service = FakeSessionService()
    task = service.add_session("ses_task")
    model = ModelRef(providerID="openai", modelID="gpt")
    service.add_message("ses_task", "user", "find X", agent="build", model=model)
    service.add_message("ses_task", "assistant", "done", agent="explorer")

    agent, found = asyncio.run(ResultHarvester(service).agent_and_model(task))

    assert agent == "build"
    assert found == model
