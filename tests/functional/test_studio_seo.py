"""SEO analysis: usage tracking and the topic analysis."""

import httpx
import pytest

from justflow.studio import create_studio_registry
from justflow.studio.api import InternalApi
from justflow.testing import FakeClock, TestFlow
from justflow.types import EventValidationError, RunStatus
from tests.factories import T0, FakeService

USAGE_PATH = "/api/studio/usage"


@pytest.fixture
def flow(api: InternalApi, clock: FakeClock) -> TestFlow:
    return TestFlow(create_studio_registry(api), clock=clock)


@pytest.mark.asyncio
async def test_records_usage_and_analyzes_topic(
    flow: TestFlow, service: FakeService
) -> None:
    service.on("POST", USAGE_PATH, {"id": "usage-1"})

    event_id = await flow.send(
        "seo.analyze",
        {
            "topic": "email marketing",
            "keywords": ["newsletters"],
            "competitors": ["mailchimp.com", "substack.com"],
            "workspaceId": "ws1",
        },
    )

    run = await flow.run_for("seo-analysis", event_id)
    assert run.status is RunStatus.COMPLETED
    assert await flow.succeeded_steps(run.run_id) == ["log-request", "analyze-topic"]

    [usage] = service.requests("POST", USAGE_PATH)
    assert usage.json == {
        "workspaceId": "ws1",
        "resourceType": "seo_analysis",
        "provider": "serpapi",
        "referenceType": "seo_job",
        "referenceId": event_id,
        "period": "2025-01",
    }
    assert usage.headers["Idempotency-Key"] == f"{event_id}:usage"

    assert run.output["topic"] == "email marketing"
    assert run.output["generatedAt"] == T0.isoformat()
    analysis = run.output["analysis"]
    assert (analysis["difficulty"], analysis["searchVolume"]) == (45, 12000)
    assert "how to email marketing" in analysis["relatedKeywords"]
    assert [c["domain"] for c in analysis["competitorInsights"]] == [
        "mailchimp.com",
        "substack.com",
    ]
    assert analysis["competitorInsights"][1]["ranking"] == 2


@pytest.mark.asyncio
async def test_no_usage_without_workspace(flow: TestFlow, service: FakeService) -> None:
    event_id = await flow.send("seo.analyze", {"topic": "podcasting"})

    run = await flow.run_for("seo-analysis", event_id)
    assert run.status is RunStatus.COMPLETED
    assert service.requests("POST", USAGE_PATH) == []
    assert "competitorInsights" not in run.output["analysis"]


@pytest.mark.asyncio
async def test_usage_outage_retries_before_analysis(
    flow: TestFlow, service: FakeService
) -> None:
    responses = iter([httpx.Response(503, json={"error": "db down"}), {"id": "u"}])
    service.on("POST", USAGE_PATH, lambda call: next(responses))

    event_id = await flow.send("seo.analyze", {"topic": "seo", "workspaceId": "ws1"})
    assert (await flow.run_for("seo-analysis", event_id)).status is RunStatus.SLEEPING

    await flow.advance_until_settled()

    run = await flow.run_for("seo-analysis", event_id)
    assert run.status is RunStatus.COMPLETED
    assert len(service.requests("POST", USAGE_PATH)) == 2


@pytest.mark.asyncio
async def test_topic_is_required(flow: TestFlow) -> None:
    with pytest.raises(EventValidationError):
        await flow.send("seo.analyze", {"workspaceId": "ws1"})
