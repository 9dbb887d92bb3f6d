import io
from typing import ClassVar

import pytest
from rich.console import Console

from deckhand.config import Config
from deckhand.conversation import ImageBlock, ToolResultStatus, ToolUse
from deckhand.exceptions import ToolExecutionError
from deckhand.permissions import AgentPolicy, Agents, PermissionEvalResult
from deckhand.telemetry import TelemetryRecorder, ToolUseTelemetry
from deckhand.tool_pipeline import ToolPipeline
from deckhand.tools.registry import InvokeOutput, Tool, ToolContext, ToolRegistry


class EchoTool(Tool):
    name: ClassVar[str] = "echo"
    description: ClassVar[str] = "Echo text back"
    read_only: ClassVar[bool] = True

    text: str

    async def validate(self, ctx):
        if self.text == "broken":
            raise RuntimeError("validator crashed")

    async def invoke(self, ctx, output):
        if self.text == "fail":
            raise ToolExecutionError(self.name, "asked to fail")
        return InvokeOutput.from_text(self.text)


class PictureTool(Tool):
    name: ClassVar[str] = "picture"
    description: ClassVar[str] = "Return an image"
    read_only: ClassVar[bool] = True

    async def invoke(self, ctx, output):
        return InvokeOutput(kind="images", images=[ImageBlock(format="png", data=b"\x89PNG")])


class WriteTool(Tool):
    name: ClassVar[str] = "write"
    description: ClassVar[str] = "Pretend to write"

    async def invoke(self, ctx, output):
        return InvokeOutput.from_text("written")


def make_pipeline(tmp_path, telemetry=None):
    registry = ToolRegistry([EchoTool, PictureTool, WriteTool])
    ctx = ToolContext(cwd=tmp_path, config=Config())
    return ToolPipeline(
        registry,
        ctx,
        Console(file=io.StringIO()),
        telemetry=telemetry or TelemetryRecorder(),
        conversation_id="conv-1",
    )


def agents(trust_all_tools=False, denied=()):
    return Agents({"default": AgentPolicy(denied_tools=set(denied))}, trust_all_tools=trust_all_tools)


@pytest.mark.asyncio
async def test_results_keep_tool_use_order_when_one_fails(tmp_path):
    pipeline = make_pipeline(tmp_path)
    outcome = await pipeline.validate(
        [
            ToolUse(id="a", name="echo", args={"text": "first"}),
            ToolUse(id="b", name="echo", args={"text": "fail"}),
            ToolUse(id="c", name="echo", args={"text": "third"}),
        ]
    )
    assert outcome.errors == []
    assert pipeline.evaluate(outcome.queued, agents()) is None

    results, images = await pipeline.execute(outcome.queued)

    assert [r.tool_use_id for r in results] == ["a", "b", "c"]
    assert [r.status for r in results] == [
        ToolResultStatus.SUCCESS,
        ToolResultStatus.ERROR,
        ToolResultStatus.SUCCESS,
    ]
    assert results[0].content == ["first"]
    assert "asked to fail" in results[1].text()
    assert results[2].content == ["third"]
    assert images == []


@pytest.mark.asyncio
async def test_validation_separates_unknown_and_malformed_tools(tmp_path):
    pipeline = make_pipeline(tmp_path)

    outcome = await pipeline.validate(
        [
            ToolUse(id="a", name="echo", args={"text": "ok"}),
            ToolUse(id="b", name="missing", args={}),
            ToolUse(id="c", name="echo", args={"text": 1, "extra": True}),
        ]
    )

    assert [q.id for q in outcome.queued] == ["a"]
    assert [e.tool_use_id for e in outcome.errors] == ["b", "c"]
    assert 'The tool, "missing" is not supported by the client' in outcome.errors[0].text()
    assert outcome.errors[1].text().startswith("Failed to validate tool parameters:")


@pytest.mark.asyncio
async def test_evaluate_accepts_allowed_tools_and_stops_at_first_ask(tmp_path):
    pipeline = make_pipeline(tmp_path)
    outcome = await pipeline.validate(
        [
            ToolUse(id="a", name="echo", args={"text": "x"}),
            ToolUse(id="b", name="write", args={}),
            ToolUse(id="c", name="echo", args={"text": "y"}),
        ]
    )

    decision = pipeline.evaluate(outcome.queued, agents())

    assert decision is not None
    assert decision.index == 1
    assert decision.result is PermissionEvalResult.ASK
    assert [q.accepted for q in outcome.queued] == [True, False, False]

    outcome.queued[1].accepted = True
    assert pipeline.evaluate(outcome.queued, agents()) is None
    assert all(q.accepted for q in outcome.queued)


@pytest.mark.asyncio
async def test_evaluate_reports_denied_tool(tmp_path):
    pipeline = make_pipeline(tmp_path)
    outcome = await pipeline.validate([ToolUse(id="a", name="write", args={})])

    decision = pipeline.evaluate(outcome.queued, agents(trust_all_tools=True, denied={"write"}))

    assert decision.result is PermissionEvalResult.DENY
    assert decision.tool.id == "a"


@pytest.mark.asyncio
async def test_images_are_collected_separately(tmp_path):
    pipeline = make_pipeline(tmp_path)
    outcome = await pipeline.validate([ToolUse(id="p", name="picture", args={})])

    results, images = await pipeline.execute(outcome.queued)

    assert results[0].content == ["1 image(s) attached"]
    assert images == [ImageBlock(format="png", data=b"\x89PNG")]


@pytest.mark.asyncio
async def test_telemetry_is_flushed_per_tool_use(tmp_path):
    telemetry = TelemetryRecorder()
    pipeline = make_pipeline(tmp_path, telemetry)
    outcome = await pipeline.validate(
        [
            ToolUse(id="a", name="echo", args={"text": "ok"}),
            ToolUse(id="b", name="echo", args={"text": "fail"}),
            ToolUse(id="c", name="missing", args={}),
        ]
    )
    pipeline.evaluate(outcome.queued, agents())
    await pipeline.execute(outcome.queued, turn_start=0.0)

    pipeline.flush_telemetry()
    pipeline.flush_telemetry()

    events = {event.tool_use_id: event for event in telemetry.of_kind(ToolUseTelemetry)}
    assert len(telemetry.of_kind(ToolUseTelemetry)) == 3
    assert events["a"].is_success is True
    assert events["a"].is_trusted is True
    assert events["b"].is_success is False
    assert events["c"].is_valid is False
    assert events["a"].conversation_id == "conv-1"
    assert events["a"].turn_duration_ms is not None


@pytest.mark.asyncio
async def test_unexpected_validation_failure_becomes_error_result(tmp_path):
    pipeline = make_pipeline(tmp_path)

    outcome = await pipeline.validate(
        [
            ToolUse(id="a", name="echo", args={"text": "broken"}),
            ToolUse(id="b", name="echo", args={"text": "fine"}),
        ]
    )

    assert [item.id for item in outcome.queued] == ["b"]
    assert [result.tool_use_id for result in outcome.errors] == ["a"]
    assert outcome.errors[0].status is ToolResultStatus.ERROR
    assert "validator crashed" in outcome.errors[0].text()
