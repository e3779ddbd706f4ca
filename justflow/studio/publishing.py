"""Publishing functions: job publish, scheduled publish, single channel publish."""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterable, Mapping
from typing import Any, NamedTuple

from justflow.events import ContentScheduleRequested, PublishContent, PublishToChannel
from justflow.registry import FunctionRegistry
from justflow.studio.api import InternalApi, idempotency_key
from justflow.types import (
    CancelOn,
    EmitEvent,
    FailureContext,
    PlanNode,
    StepContext,
    StepError,
    StepSpec,
    ValidationFailure,
)

logger = logging.getLogger("justflow.studio.publishing")


class Platform(NamedTuple):
    name: str
    integration: str


PLATFORM_MAP: dict[str, Platform] = {
    "LINKEDIN": Platform("linkedin", "LINKEDIN"),
    "linkedin": Platform("linkedin", "LINKEDIN"),
    "X_TWITTER": Platform("x", "X_TWITTER"),
    "TWITTER": Platform("x", "X_TWITTER"),
    "X": Platform("x", "X_TWITTER"),
    "x": Platform("x", "X_TWITTER"),
    "twitter": Platform("x", "X_TWITTER"),
    "YOUTUBE": Platform("youtube", "YOUTUBE"),
    "youtube": Platform("youtube", "YOUTUBE"),
}

CHANNEL_PLATFORMS = frozenset({"linkedin"})


def unique_channels(channels: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(channels))


def compose_text(content: Mapping[str, Any]) -> str:
    """Title, body, hashtags and call to action joined by blank lines."""
    parts = [content.get("title") or ""]
    if content.get("body"):
        parts.append(content["body"])
    hashtags = content.get("hashtags") or []
    if hashtags:
        parts.append(" ".join(h if h.startswith("#") else f"#{h}" for h in hashtags))
    if content.get("callToAction"):
        parts.append(content["callToAction"])
    return "\n\n".join(parts)


def final_status(results: list[Mapping[str, Any]]) -> str:
    if results and all(r.get("success") for r in results):
        return "COMPLETED"
    if any(r.get("success") for r in results):
        return "PARTIAL"
    return "FAILED"


def error_summary(results: list[Mapping[str, Any]]) -> str | None:
    failed = [
        f"{r['channel']}: {r.get('error')}" for r in results if not r.get("success")
    ]
    return "; ".join(failed) or None


def publish_result(channel: str, response: Any) -> dict[str, Any]:
    body = response if isinstance(response, Mapping) else {}
    return {
        "channel": channel,
        "success": bool(body.get("success")),
        "postId": body.get("postId"),
        "postUrl": body.get("postUrl") or body.get("permalink"),
        "error": body.get("error"),
    }


def terminal_result(channel: str, exc: StepError) -> dict[str, Any]:
    """A per-channel failure that retrying cannot fix is recorded, not raised."""
    logger.warning("Publishing to %s failed permanently: %s", channel, exc)
    return {"channel": channel, "success": False, "error": str(exc)}


# ---------------------------------------------------------------------------
# publish-content
# ---------------------------------------------------------------------------


def register_publish_content(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "publish-content",
        trigger=PublishContent.NAME,
        retries=3,
        concurrency=5,
        name="Publish Content to Platforms",
    )

    @fn.sleep_until("wait-for-schedule")
    def wait_for_schedule(ctx: StepContext) -> str | None:
        return PublishContent.from_data(ctx.data).scheduled_for

    @fn.step("load-content")
    async def load_content(ctx: StepContext) -> dict[str, Any]:
        payload = PublishContent.from_data(ctx.data)
        body = await api.get(f"/api/content/{payload.content_id}")
        record = body.get("content", body) if isinstance(body, Mapping) else None
        if not record:
            raise ValidationFailure(f"Content not found: {payload.content_id}")
        return {
            "id": record.get("id", payload.content_id),
            "title": record.get("title"),
            "body": record.get("body"),
            "hashtags": record.get("hashtags") or [],
            "callToAction": record.get("callToAction"),
            "createdById": record.get("createdById"),
        }

    async def publish_channel(ctx: StepContext, channel: str) -> dict[str, Any]:
        payload = PublishContent.from_data(ctx.data)
        content = ctx.result("load-content")
        job = ctx.result("create-publish-job")
        platform = PLATFORM_MAP.get(channel)
        if platform is None:
            return {
                "channel": channel,
                "success": False,
                "error": f"Unsupported platform: {channel}",
            }

        text = compose_text(content)
        try:
            response = await api.post(
                "/api/studio/publish",
                json={
                    "jobId": job["jobId"],
                    "contentId": payload.content_id,
                    "userId": job["userId"],
                    "channel": platform.integration,
                    "platform": platform.name,
                    "text": text,
                },
                idempotency_key=idempotency_key(
                    payload.workspace_id,
                    platform.name,
                    text,
                    window=api.idempotency_window,
                    now=ctx.now,
                ),
            )
        except StepError as exc:
            if exc.kind.retriable:
                raise
            return terminal_result(channel, exc)
        result = publish_result(channel, response)
        logger.info(
            "Channel %s for content %s: success=%s",
            channel,
            payload.content_id,
            result["success"],
        )
        return result

    def channel_steps(job: Mapping[str, Any]) -> list[PlanNode]:
        return [
            StepSpec(
                name=f"publish-to-{channel}",
                fn=functools.partial(publish_channel, channel=channel),
            )
            for channel in job["channels"]
        ]

    @fn.step("create-publish-job", then=channel_steps)
    async def create_publish_job(ctx: StepContext) -> dict[str, Any]:
        payload = PublishContent.from_data(ctx.data)
        content = ctx.result("load-content")
        user_id = payload.user_id or content.get("createdById")
        if not user_id:
            logger.error(
                "No user id for content %s; channels cannot be resolved",
                payload.content_id,
            )
        channels = unique_channels(payload.channels)
        body = await api.post(
            "/api/studio/publish/jobs",
            json={
                "workspaceId": payload.workspace_id,
                "contentId": payload.content_id,
                "status": "PUBLISHING",
                "targetChannels": channels,
                "startedAt": ctx.now.isoformat(),
            },
            idempotency_key=idempotency_key(
                ctx.run_id,
                "publish-job",
                window=api.idempotency_window,
                now=ctx.event.occurred_at,
            ),
        )
        job_id = None
        if isinstance(body, Mapping):
            job_id = body.get("jobId") or body.get("id")
        if not job_id:
            raise ValidationFailure("Publish job creation returned no job id")
        return {"jobId": job_id, "channels": channels, "userId": user_id}

    @fn.step("update-final-status")
    async def update_final_status(ctx: StepContext) -> dict[str, Any]:
        payload = PublishContent.from_data(ctx.data)
        job = ctx.result("create-publish-job")
        results = [ctx.result(f"publish-to-{c}") for c in job["channels"]]
        status = final_status(results)
        summary = error_summary(results)
        await api.patch(
            f"/api/studio/publish/jobs/{job['jobId']}",
            json={
                "status": status,
                "completedAt": ctx.now.isoformat(),
                "errorSummary": summary if status != "COMPLETED" else None,
            },
        )
        published = status == "COMPLETED"
        await api.patch(
            f"/api/content/{payload.content_id}",
            json={
                "status": "PUBLISHED" if published else "FAILED",
                "publishedAt": ctx.now.isoformat() if published else None,
                "publishResults": results,
                "errorMessage": summary if not published else None,
            },
        )
        logger.info(
            "Publish job %s finished %s (%d ok, %d failed)",
            job["jobId"],
            status,
            sum(1 for r in results if r.get("success")),
            sum(1 for r in results if not r.get("success")),
        )
        return {"jobId": job["jobId"], "status": status, "results": results}

    @fn.emit("publish-complete")
    def publish_complete(ctx: StepContext) -> EmitEvent:
        payload = PublishContent.from_data(ctx.data)
        job = ctx.result("create-publish-job")
        return EmitEvent(
            "content.published",
            {
                "userId": job["userId"],
                "contentId": payload.content_id,
                "channels": job["channels"],
                "publishedAt": ctx.now.isoformat(),
                "results": ctx.result("update-final-status")["results"],
            },
        )


# ---------------------------------------------------------------------------
# schedule-content-publish
# ---------------------------------------------------------------------------


def register_schedule_content_publish(
    registry: FunctionRegistry, api: InternalApi
) -> None:
    fn = registry.function(
        "schedule-content-publish",
        trigger=ContentScheduleRequested.NAME,
        retries=5,
        cancel_on=CancelOn(event=ContentScheduleRequested.NAME, match="data.contentId"),
        name="Scheduled Content Publish",
    )

    @fn.sleep_until("wait-for-schedule")
    def wait_for_schedule(ctx: StepContext) -> str:
        return ContentScheduleRequested.from_data(ctx.data).scheduled_at

    async def publish_channel(ctx: StepContext, channel: str) -> dict[str, Any]:
        payload = ContentScheduleRequested.from_data(ctx.data)
        try:
            response = await api.post(
                "/api/studio/publish",
                json={
                    "contentId": payload.content_id,
                    "channel": channel,
                    "title": payload.title,
                    "body": payload.body,
                    "hashtags": payload.hashtags,
                    "callToAction": payload.call_to_action,
                    "videoUrl": payload.video_url,
                },
                idempotency_key=idempotency_key(
                    payload.user_id,
                    payload.content_id,
                    channel,
                    payload.body,
                    window=api.idempotency_window,
                    now=ctx.now,
                ),
            )
        except StepError as exc:
            if exc.kind.retriable:
                raise
            return terminal_result(channel, exc)
        return publish_result(channel, response)

    def channel_steps(channels: list[str]) -> list[PlanNode]:
        return [
            StepSpec(
                name=f"publish-to-{channel}",
                fn=functools.partial(publish_channel, channel=channel),
            )
            for channel in channels
        ]

    @fn.step("resolve-channels", then=channel_steps)
    def resolve_channels(ctx: StepContext) -> list[str]:
        return unique_channels(ContentScheduleRequested.from_data(ctx.data).channels)

    @fn.emit("publish-complete")
    def publish_complete(ctx: StepContext) -> EmitEvent:
        payload = ContentScheduleRequested.from_data(ctx.data)
        channels = ctx.result("resolve-channels")
        return EmitEvent(
            "content.published",
            {
                "userId": payload.user_id,
                "contentId": payload.content_id,
                "channels": channels,
                "publishedAt": ctx.now.isoformat(),
                "results": [ctx.result(f"publish-to-{c}") for c in channels],
            },
        )


# ---------------------------------------------------------------------------
# publish-to-channel
# ---------------------------------------------------------------------------


def register_publish_to_channel(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "publish-to-channel",
        trigger=PublishToChannel.NAME,
        retries=3,
        concurrency=5,
        name="Publish to Channel",
    )

    @fn.step("load-channel")
    async def load_channel(ctx: StepContext) -> dict[str, Any]:
        payload = PublishToChannel.from_data(ctx.data)
        channel = await api.get(
            f"/api/studio/channels/{payload.channel_id}",
            params={"userId": payload.user_id},
        )
        if not isinstance(channel, Mapping) or not channel.get("isActive", True):
            raise ValidationFailure(
                f"Channel {payload.channel_id} not found or inactive"
            )
        if not channel.get("hasAccessToken"):
            raise ValidationFailure(f"Channel {payload.channel_id} has no access token")
        return {
            "id": channel.get("id", payload.channel_id),
            "platform": channel.get("platform"),
            "metadata": channel.get("metadata") or {},
        }

    @fn.step("mark-publishing")
    async def mark_publishing(ctx: StepContext) -> None:
        payload = PublishToChannel.from_data(ctx.data)
        await api.patch(
            f"/api/studio/publications/{payload.publication_id}",
            json={"status": "publishing"},
        )

    @fn.step("execute-publish")
    async def execute_publish(ctx: StepContext) -> dict[str, Any]:
        payload = PublishToChannel.from_data(ctx.data)
        channel = ctx.result("load-channel")
        platform = channel["platform"]
        if platform not in CHANNEL_PLATFORMS:
            return {"success": False, "error": f"Platform {platform} not yet supported"}
        if platform == "linkedin" and not channel["metadata"].get("personUrn"):
            raise ValidationFailure("Missing LinkedIn person URN")
        response = await api.post(
            f"/api/studio/publications/{payload.publication_id}/publish",
            json={
                "channelId": payload.channel_id,
                "variantId": payload.variant_id,
                "text": payload.text,
            },
            idempotency_key=idempotency_key(
                payload.channel_id,
                payload.text,
                window=api.idempotency_window,
                now=ctx.now,
            ),
        )
        result = publish_result(platform, response)
        del result["channel"]
        return result

    @fn.step("update-records")
    async def update_records(ctx: StepContext) -> dict[str, Any]:
        payload = PublishToChannel.from_data(ctx.data)
        channel = ctx.result("load-channel")
        result = ctx.result("execute-publish")
        success = bool(result.get("success"))
        await api.patch(
            f"/api/studio/publications/{payload.publication_id}",
            json={
                "status": "published" if success else "failed",
                "publishedAt": ctx.now.isoformat() if success else None,
                "postUrl": result.get("postUrl"),
                "postId": result.get("postId"),
                "error": result.get("error"),
            },
        )
        channel_update: dict[str, Any] = (
            {"lastPublishedAt": ctx.now.isoformat(), "lastError": None}
            if success
            else {"lastError": result.get("error") or "Publish failed"}
        )
        await api.patch(
            f"/api/studio/channels/{payload.channel_id}", json=channel_update
        )
        return {
            "success": success,
            "publicationId": payload.publication_id,
            "channelId": payload.channel_id,
            "platform": channel["platform"],
            "postUrl": result.get("postUrl"),
            "error": result.get("error"),
        }

    @fn.on_failure
    async def mark_publication_failed(ctx: FailureContext, error: str) -> None:
        payload = PublishToChannel.from_data(ctx.data)
        await api.patch(
            f"/api/studio/publications/{payload.publication_id}",
            json={"status": "failed", "error": error[:500]},
        )
