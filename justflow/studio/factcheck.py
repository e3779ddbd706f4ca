"""Durable fact-check pipeline.

extract-claims -> verify-claims (one parallel step per claim) ->
calculate-score -> emit ``content.factcheck.completed``. Throttled per user.
"""

from __future__ import annotations

import functools
import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

from justflow.events import ContentFactcheckRequested
from justflow.registry import FunctionRegistry
from justflow.studio.api import InternalApi
from justflow.types import (
    EmitEvent,
    ParallelGroup,
    PlanNode,
    StepContext,
    StepKind,
    StepSpec,
    Throttle,
    ValidationFailure,
)

logger = logging.getLogger("justflow.studio.factcheck")

CLAIM_CATEGORIES = frozenset({"statistic", "quote", "factual", "opinion"})
CLEAN_THRESHOLD = 80
CAUTION_THRESHOLD = 50


def verdict_for(score: int) -> str:
    if score >= CLEAN_THRESHOLD:
        return "clean"
    if score >= CAUTION_THRESHOLD:
        return "caution"
    return "warning"


def score_verifications(verifications: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    """Weighted blend of verification rate (70%) and mean confidence (30%).

    The score is rounded half up to an integer in 0..100. No claims at all
    scores 100.
    """
    total = len(verifications)
    if total == 0:
        return {
            "score": 100,
            "verdict": "clean",
            "verifiedCount": 0,
            "totalClaims": 0,
            "avgConfidence": 0.0,
        }
    verified = sum(1 for v in verifications if v.get("verified"))
    avg_confidence = sum(float(v.get("confidence") or 0) for v in verifications) / total
    score = math.floor((verified / total * 0.7 + avg_confidence * 0.3) * 100 + 0.5)
    return {
        "score": score,
        "verdict": verdict_for(score),
        "verifiedCount": verified,
        "totalClaims": total,
        "avgConfidence": avg_confidence,
    }


def normalize_claims(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationFailure("Claim extraction did not return a list")
    claims = []
    for n, item in enumerate(raw, start=1):
        if not isinstance(item, Mapping) or not item.get("text"):
            raise ValidationFailure(f"Claim {n} has no text")
        category = item.get("category")
        claims.append(
            {
                "id": item.get("id", n),
                "text": item["text"],
                "category": category if category in CLAIM_CATEGORIES else "factual",
            }
        )
    return claims


def claim_step_name(claim: Mapping[str, Any]) -> str:
    return f"verify-claim-{claim['id']}"


def register_fact_check(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "fact-check-content",
        trigger=ContentFactcheckRequested.NAME,
        retries=3,
        throttle=Throttle(key="data.userId", limit=5, period=60.0),
        name="Content Fact Check",
    )

    async def verify_claim(
        ctx: StepContext, claim: Mapping[str, Any]
    ) -> dict[str, Any]:
        payload = ContentFactcheckRequested.from_data(ctx.data)
        data = await api.post(
            "/api/studio/ai/verify-claim",
            json={
                "claim": claim["text"],
                "category": claim["category"],
                "context": {"title": payload.title, "contentId": payload.content_id},
            },
        )
        if not isinstance(data, Mapping):
            raise ValidationFailure(
                f"Verification of claim {claim['id']} returned no object"
            )
        return {
            "claimId": claim["id"],
            "claim": claim["text"],
            "verified": bool(data.get("verified")),
            "confidence": float(data.get("confidence") or 0),
            "source": data.get("source"),
            "correction": data.get("correction"),
        }

    def calculate_score(ctx: StepContext) -> dict[str, Any]:
        claims = ctx.result("extract-claims")
        return score_verifications([ctx.result(claim_step_name(c)) for c in claims])

    def factcheck_complete(ctx: StepContext) -> EmitEvent:
        payload = ContentFactcheckRequested.from_data(ctx.data)
        claims = ctx.result("extract-claims")
        result = ctx.result("calculate-score")
        logger.info(
            "Fact check of %s scored %d (%s)",
            payload.content_id,
            result["score"],
            result["verdict"],
        )
        return EmitEvent(
            "content.factcheck.completed",
            {
                "userId": payload.user_id,
                "contentId": payload.content_id,
                "score": result["score"],
                "verdict": result["verdict"],
                "claims": claims,
                "verifications": [ctx.result(claim_step_name(c)) for c in claims],
                "verifiedCount": result["verifiedCount"],
                "totalClaims": result["totalClaims"],
                "checkedAt": ctx.now.isoformat(),
            },
        )

    def no_claims_found(ctx: StepContext) -> EmitEvent:
        payload = ContentFactcheckRequested.from_data(ctx.data)
        return EmitEvent(
            "content.factcheck.completed",
            {
                "userId": payload.user_id,
                "contentId": payload.content_id,
                "score": 100,
                "verdict": "clean",
                "claims": [],
                "verifications": [],
                "checkedAt": ctx.now.isoformat(),
            },
        )

    def verification_plan(claims: list[dict[str, Any]]) -> list[PlanNode]:
        if not claims:
            return [
                StepSpec(name="no-claims-found", fn=no_claims_found, kind=StepKind.EMIT)
            ]
        return [
            ParallelGroup(
                name="verify-claims",
                steps=tuple(
                    StepSpec(
                        name=claim_step_name(claim),
                        fn=functools.partial(verify_claim, claim=claim),
                    )
                    for claim in claims
                ),
            ),
            StepSpec(name="calculate-score", fn=calculate_score),
            StepSpec(
                name="factcheck-complete", fn=factcheck_complete, kind=StepKind.EMIT
            ),
        ]

    @fn.step("extract-claims", then=verification_plan)
    async def extract_claims(ctx: StepContext) -> list[dict[str, Any]]:
        payload = ContentFactcheckRequested.from_data(ctx.data)
        data = await api.post(
            "/api/studio/ai/extract-claims",
            json={"title": payload.title, "body": payload.body},
        )
        raw = data.get("claims") if isinstance(data, Mapping) else None
        claims = normalize_claims(raw or [])
        logger.debug("Extracted %d claim(s) from %s", len(claims), payload.content_id)
        return claims
