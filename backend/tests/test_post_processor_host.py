# tests/test_post_processor_host.py
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from icm.plugins.bonus import qualified_bonus
from icm.plugins.host import PluginContext, PostProcessorHost, PostProcessorRegistry
from icm.schemas.execution import AgentResult, ExecutionLog, ExecutionSummary, RunState, utcnow


def sample_log() -> ExecutionLog:
    return ExecutionLog(
        run_id="RUN_010924_1725148800000",
        scheme_id="SCH_001",
        tenant_id="client_001",
        mode="simulation",
        state=RunState.EVALUATED,
        summary=ExecutionSummary(total_agents=2, passed=1, failed=1, total_commission=Decimal("4925.00")),
        agents=[
            AgentResult(agent_id="AGENT001", qualified=True, commission=Decimal("4925.00")),
            AgentResult(agent_id="AGENT002", qualified=False),
        ],
    )


def context(**snapshot) -> PluginContext:
    return PluginContext(
        scheme_id="SCH_001",
        mode="simulation",
        tenant_id="client_001",
        timestamp=utcnow(),
        scheme_snapshot=snapshot,
    )


def host_with(name: str, fn, *, timeout: float = 5.0) -> PostProcessorHost:
    registry = PostProcessorRegistry()
    registry.register(name, fn)
    return PostProcessorHost(registry, timeout_seconds=timeout)


@pytest.mark.asyncio
async def test_qualified_bonus_adds_ten_percent():
    log = sample_log()
    processed = await PostProcessorHost().invoke("qualified_bonus", log, context())

    assert processed.agents[0].commission == Decimal("5417.50")
    assert processed.agents[1].commission == Decimal("0")
    assert processed.summary.total_commission == Decimal("5417.50")
    assert processed.agents[0].custom_logic[-1].rule == "Post-processing Bonus"
    assert processed.agents[0].custom_logic[-1].notes == "Added 10% bonus: 492.50"

    assert processed.post_processing_log.status == "success"
    assert processed.post_processing_log.plugin == "qualified_bonus"
    assert processed.post_processing_log.model_extra["totalBonus"] == "492.50"

    # the input log is never mutated
    assert log.agents[0].commission == Decimal("4925.00")
    assert log.post_processing_log is None


@pytest.mark.asyncio
async def test_raising_plugin_keeps_original_results():
    def explode(log, ctx):
        log["summary"]["totalCommission"] = "0"
        raise RuntimeError("boom")

    processed = await host_with("explode", explode).invoke("explode", sample_log(), context())

    assert processed.post_processing_log.status == "error"
    assert processed.post_processing_log.message == "Plugin error: boom"
    assert processed.summary.total_commission == Decimal("4925.00")
    assert processed.agents[0].commission == Decimal("4925.00")


@pytest.mark.asyncio
async def test_slow_plugin_times_out():
    async def slow(log, ctx):
        await asyncio.sleep(2)
        return log

    processed = await host_with("slow", slow, timeout=0.05).invoke("slow", sample_log(), context())

    assert processed.post_processing_log.status == "timeout"
    assert processed.summary.total_commission == Decimal("4925.00")


@pytest.mark.asyncio
async def test_unregistered_plugin_is_an_error_status():
    processed = await PostProcessorHost(PostProcessorRegistry()).invoke("nope", sample_log(), context())

    assert processed.post_processing_log.status == "error"
    assert "not registered" in processed.post_processing_log.message
    assert processed.agents[0].commission == Decimal("4925.00")


@pytest.mark.asyncio
async def test_plugin_may_not_change_run_identity():
    def hijack(log, ctx):
        log["runId"] = "RUN_000000_1"
        return log

    processed = await host_with("hijack", hijack).invoke("hijack", sample_log(), context())

    assert processed.run_id == "RUN_010924_1725148800000"
    assert processed.post_processing_log.status == "error"
    assert "run_id" in processed.post_processing_log.message


@pytest.mark.asyncio
async def test_in_place_edit_with_none_return():
    async def halve(log, ctx):
        log["summary"]["totalCommission"] = "2462.50"
        log["state"] = "Failed"

    log = sample_log()
    processed = await host_with("halve", halve).invoke("halve", log, context())

    assert processed.summary.total_commission == Decimal("2462.50")
    assert processed.state == RunState.EVALUATED
    assert processed.post_processing_log.status == "success"
    assert processed.post_processing_log.message == "Post-processor 'halve' applied"


@pytest.mark.parametrize("returned", [["not", "a", "log"], {"agents": "nope"}])
@pytest.mark.asyncio
async def test_unusable_return_value(returned):
    processed = await host_with("bad", lambda log, ctx: returned).invoke("bad", sample_log(), context())

    assert processed.post_processing_log.status == "error"
    assert processed.summary.total_commission == Decimal("4925.00")


@pytest.mark.asyncio
async def test_plugin_gets_a_copy_of_the_scheme_snapshot():
    snapshot = {"schemeId": "SCH_001", "quotaAmount": "100000"}
    seen = {}

    def peek(log, ctx):
        seen.update(ctx.scheme_snapshot)
        ctx.scheme_snapshot["quotaAmount"] = "0"
        return log

    await host_with("peek", peek).invoke("peek", sample_log(), context(**snapshot))

    assert seen["quotaAmount"] == "100000"
    assert snapshot["quotaAmount"] == "100000"


def test_registry_rules():
    registry = PostProcessorRegistry()

    @registry.register("bonus")
    def bonus(log, ctx):
        return log

    registry.register("bonus", bonus)
    assert registry.get(" bonus ") is bonus
    assert registry.names() == ["bonus"]

    with pytest.raises(ValueError):
        registry.register("bonus", qualified_bonus)
    with pytest.raises(ValueError):
        registry.register("  ", qualified_bonus)
