"""Video functions: durable test-render polling and full render jobs."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from justflow.events import VideoGenerate, VideoRenderRequested
from justflow.patterns import latest_poll, poll_loop, tiered_backoff
from justflow.registry import FunctionRegistry
from justflow.studio.api import InternalApi
from justflow.types import (
    CancelOn,
    EmitEvent,
    Event,
    FailureContext,
    PlanNode,
    StepContext,
    StepKind,
    StepSpec,
    ValidationFailure,
)

logger = logging.getLogger("justflow.studio.video")

RENDER_INITIAL_WAIT = 5.0
RENDER_MAX_POLLS = 40
RENDER_BACKOFF = tiered_backoff([(10, 10.0), (20, 20.0)], 30.0)

GENERATE_INITIAL_WAIT = 15.0
GENERATE_MAX_DURATION = 10 * 60.0
GENERATE_BACKOFF = tiered_backoff([(8, 15.0)], 30.0)

ASPECT_RATIOS = frozenset({"16:9", "9:16", "1:1"})


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def same_content(incoming: Event, trigger: Event) -> bool:
    """Only a newer render of the same, known content supersedes a run."""
    content_id = incoming.data.get("contentId")
    return content_id is not None and content_id == trigger.data.get("contentId")


def render_timeout_message(polls: int, elapsed: float) -> str:
    return f"Render timed out after {polls} polls ({round_half_up(elapsed)}s)"


def generate_timeout_message(polls: int, elapsed: float) -> str:
    return f"Video rendering timed out after {GENERATE_MAX_DURATION / 60:.0f} minutes"


def render_duration(value: Any) -> int:
    """Provider clip lengths are 4, 6 or 8 seconds."""
    return value if value in (4, 6) else 8


# ---------------------------------------------------------------------------
# poll-video-render
# ---------------------------------------------------------------------------


def register_poll_video_render(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "poll-video-render",
        trigger=VideoRenderRequested.NAME,
        retries=3,
        cancel_on=CancelOn(
            event=VideoRenderRequested.NAME,
            match="data.userId",
            condition=same_content,
        ),
        name="Poll Video Test Render",
    )

    async def poll_render(ctx: StepContext, n: int) -> Mapping[str, Any]:
        payload = VideoRenderRequested.from_data(ctx.data)
        status = await api.get(
            "/api/studio/video/test-render",
            params={"taskId": payload.task_id, "provider": payload.provider_id},
        )
        if not isinstance(status, Mapping):
            raise ValidationFailure(
                f"Render status for {payload.task_id} is not an object"
            )
        logger.debug(
            "Render %s poll %d: %s (%s%%)",
            payload.task_id,
            n,
            status.get("status"),
            status.get("progress", 0),
        )
        return status

    def send_completion(ctx: StepContext) -> EmitEvent:
        payload = VideoRenderRequested.from_data(ctx.data)
        final = latest_poll(ctx.results)
        return EmitEvent(
            "video.render.completed",
            {
                "userId": payload.user_id,
                "taskId": payload.task_id,
                "providerId": payload.provider_id,
                "videoUrl": final.get("videoUrl"),
                "renderType": payload.render_type,
                "actualCost": payload.estimated_cost,
                "renderTimeMs": int(final["elapsedSeconds"] * 1000),
                "contentId": payload.content_id,
            },
        )

    def on_complete(result: Mapping[str, Any]) -> list[PlanNode]:
        return [
            StepSpec(name="send-completion", fn=send_completion, kind=StepKind.EMIT)
        ]

    fn.add(
        *poll_loop(
            poll_render,
            backoff=RENDER_BACKOFF,
            max_polls=RENDER_MAX_POLLS,
            initial_delay=RENDER_INITIAL_WAIT,
            on_complete=on_complete,
            timeout_message=render_timeout_message,
        )
    )

    @fn.on_failure
    async def send_failure(ctx: FailureContext, error: str) -> None:
        payload = VideoRenderRequested.from_data(ctx.data)
        await ctx.emit(
            "video.render.failed",
            {
                "userId": payload.user_id,
                "taskId": payload.task_id,
                "providerId": payload.provider_id,
                "error": error,
                "renderType": payload.render_type,
                "contentId": payload.content_id,
            },
        )


# ---------------------------------------------------------------------------
# generate-video
# ---------------------------------------------------------------------------


def register_generate_video(registry: FunctionRegistry, api: InternalApi) -> None:
    fn = registry.function(
        "generate-video",
        trigger=VideoGenerate.NAME,
        retries=2,
        concurrency=5,
        name="Generate Video Content",
    )

    @fn.step("load-job")
    async def load_job(ctx: StepContext) -> dict[str, Any]:
        payload = VideoGenerate.from_data(ctx.data)
        logger.info(
            "Video job %s received (version %s)", payload.job_id, payload.version_id
        )
        job = await api.get(f"/api/studio/video-jobs/{payload.job_id}")
        if not isinstance(job, Mapping) or not job.get("id"):
            raise ValidationFailure(f"Video job {payload.job_id} not found")
        return {
            "id": job["id"],
            "inputPrompt": job.get("inputPrompt") or "",
            "config": job.get("config") or {},
        }

    @fn.step("submit-to-provider")
    async def submit_to_provider(ctx: StepContext) -> dict[str, Any]:
        payload = VideoGenerate.from_data(ctx.data)
        job = ctx.result("load-job")
        config = job["config"]
        aspect_ratio = config.get("aspectRatio")
        submission = await api.post(
            f"/api/studio/video-jobs/{payload.job_id}/submit",
            json={
                "workspaceId": payload.workspace_id,
                "prompt": job["inputPrompt"],
                "duration": render_duration(config.get("duration")),
                "aspectRatio": (
                    aspect_ratio if aspect_ratio in ASPECT_RATIOS else "16:9"
                ),
                "model": config.get("model"),
            },
            idempotency_key=f"{payload.job_id}:submit",
        )
        if not isinstance(submission, Mapping) or not submission.get("providerJobId"):
            raise ValidationFailure(
                f"Provider returned no job id for {payload.job_id}"
            )
        logger.info(
            "Video job %s submitted as %s", payload.job_id, submission["providerJobId"]
        )
        return {
            "providerJobId": submission["providerJobId"],
            "status": submission.get("status"),
            "submittedAt": ctx.now.isoformat(),
        }

    async def poll_provider(ctx: StepContext, n: int) -> Mapping[str, Any]:
        payload = VideoGenerate.from_data(ctx.data)
        submission = ctx.result("submit-to-provider")
        status = await api.get(
            f"/api/studio/video-jobs/{payload.job_id}/poll",
            params={"providerJobId": submission["providerJobId"]},
        )
        if not isinstance(status, Mapping):
            raise ValidationFailure(
                f"Poll of {payload.job_id} did not return an object"
            )
        state = status.get("status")
        progress = status.get("progress") or 0
        message = None
        if state == "processing":
            message = f"Rendering... {progress}%"
        elif state == "queued":
            message = "Waiting in queue..."
        await api.patch(
            f"/api/studio/video-jobs/{payload.job_id}",
            json={
                "progress": progress,
                "providerStatus": state,
                "progressMessage": message,
            },
        )
        if status.get("errorMessage") and not status.get("error"):
            return {**status, "error": status["errorMessage"]}
        return status

    def submitted_at(ctx: StepContext) -> datetime:
        return datetime.fromisoformat(ctx.result("submit-to-provider")["submittedAt"])

    async def finalize(ctx: StepContext) -> dict[str, Any]:
        payload = VideoGenerate.from_data(ctx.data)
        submission = ctx.result("submit-to-provider")
        final = latest_poll(ctx.results, "poll-provider")
        output_url = final.get("outputUrl")
        if not output_url:
            raise ValidationFailure(
                f"Video job {payload.job_id} completed without output"
            )
        await api.post(
            "/api/studio/assets",
            json={
                "workspaceId": payload.workspace_id,
                "type": "VIDEO",
                "status": "READY",
                "filename": f"render-{payload.job_id}.mp4",
                "mimeType": "video/mp4",
                "storageProvider": "external",
                "publicUrl": output_url,
                "thumbnailUrl": final.get("thumbnailUrl"),
                "providerJobId": submission["providerJobId"],
                "videoJobId": payload.job_id,
            },
            idempotency_key=f"{payload.job_id}:asset",
        )
        await api.patch(
            f"/api/studio/video-jobs/{payload.job_id}",
            json={
                "status": "COMPLETED",
                "progress": 100,
                "progressMessage": "Render complete",
                "completedAt": ctx.now.isoformat(),
            },
        )
        logger.info("Video job %s complete: %s", payload.job_id, output_url[:80])
        return {"jobId": payload.job_id, "status": "completed", "outputUrl": output_url}

    def on_complete(result: Mapping[str, Any]) -> list[PlanNode]:
        return [StepSpec(name="finalize", fn=finalize)]

    fn.add(
        *poll_loop(
            poll_provider,
            backoff=GENERATE_BACKOFF,
            max_duration=GENERATE_MAX_DURATION,
            initial_delay=GENERATE_INITIAL_WAIT,
            initial_wait_name="poll-wait-0",
            poll_name="poll-provider",
            wait_name="poll-wait",
            on_complete=on_complete,
            timeout_message=generate_timeout_message,
            since=submitted_at,
        )
    )

    @fn.on_failure
    async def mark_job_failed(ctx: FailureContext, error: str) -> None:
        job_id = ctx.data.get("jobId")
        if not job_id:
            return
        logger.error("Video job %s failed: %s", job_id, error[:200])
        await api.patch(
            f"/api/studio/video-jobs/{job_id}",
            json={
                "status": "FAILED",
                "errorMessage": error[:500],
                "completedAt": ctx.now.isoformat(),
            },
        )
