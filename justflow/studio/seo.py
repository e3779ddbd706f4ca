"""SEO topic analysis.

Records a usage entry for the workspace, then produces the structured
analysis of a topic. The analysis is a fixed heuristic until a search
provider is wired in.
"""

from __future__ import annotations

import logging
from typing import Any

from justflow.events import SeoAnalyze
from justflow.registry import FunctionRegistry
from justflow.studio.api import InternalApi
from justflow.types import StepContext

logger = logging.getLogger("justflow.studio.seo")

USAGE_PATH = "/api/studio/usage"


def analyze_topic(
    topic: str, competitors: list[str] | None = None
) -> dict[str, Any]:
    analysis: dict[str, Any] = {
        "difficulty": 45,
        "searchVolume": 12000,
        "trendDirection": "up",
        "relatedKeywords": [
            f"{topic} best practices",
            f"{topic} examples",
            f"{topic} guide",
            f"how to {topic}",
            f"{topic} tips",
        ],
        "contentSuggestions": [
            f"Create a comprehensive guide on {topic}",
            f"Address common pain points related to {topic}",
            "Include case studies and real examples",
            "Optimize for featured snippets with Q&A format",
        ],
    }
    if competitors is not None:
        analysis["competitorInsights"] = [
            {
                "domain": domain,
                "ranking": n,
                "strengths": ["Strong backlink profile", "Regular content updates"],
            }
            for n, domain in enumerate(competitors, start=1)
        ]
    return analysis


def register_seo_analysis(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "seo-analysis",
        trigger=SeoAnalyze.NAME,
        retries=2,
        concurrency=20,
        name="SEO Content Analysis",
    )

    @fn.step("log-request")
    async def log_request(ctx: StepContext) -> dict[str, Any] | None:
        payload = SeoAnalyze.from_data(ctx.data)
        logger.info(
            "Analyzing topic %r (%d keywords, %d competitors)",
            payload.topic,
            len(payload.keywords or []),
            len(payload.competitors or []),
        )
        if not payload.workspace_id:
            return None
        record = {
            "workspaceId": payload.workspace_id,
            "resourceType": "seo_analysis",
            "provider": "serpapi",
            "referenceType": "seo_job",
            "referenceId": ctx.event.id,
            "period": f"{ctx.now.year}-{ctx.now.month:02d}",
        }
        await api.post(
            USAGE_PATH, json=record, idempotency_key=f"{ctx.event.id}:usage"
        )
        return record

    @fn.step("analyze-topic")
    def analyze(ctx: StepContext) -> dict[str, Any]:
        payload = SeoAnalyze.from_data(ctx.data)
        analysis = analyze_topic(payload.topic, payload.competitors)
        logger.info(
            "SEO analysis of %r done, difficulty %d",
            payload.topic,
            analysis["difficulty"],
        )
        return {
            "topic": payload.topic,
            "analysis": analysis,
            "generatedAt": ctx.now.isoformat(),
        }
