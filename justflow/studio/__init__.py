"""Marketing studio functions built on the justflow engine."""

from justflow.registry import FunctionRegistry
from justflow.studio.api import InternalApi, idempotency_key
from justflow.studio.factcheck import register_fact_check, score_verifications
from justflow.studio.hello import register_hello
from justflow.studio.publishing import (
    register_publish_content,
    register_publish_to_channel,
    register_schedule_content_publish,
)
from justflow.studio.seo import register_seo_analysis
from justflow.studio.video import register_generate_video, register_poll_video_render


def create_studio_registry(api: InternalApi) -> FunctionRegistry:
    """A fresh, frozen registry holding every studio function."""
    registry = FunctionRegistry()
    register_hello(registry)
    register_publish_content(registry, api)
    register_schedule_content_publish(registry, api)
    register_publish_to_channel(registry, api)
    register_poll_video_render(registry, api)
    register_generate_video(registry, api)
    register_fact_check(registry, api)
    register_seo_analysis(registry, api)
    return registry.freeze()


__all__ = [
    "InternalApi",
    "create_studio_registry",
    "idempotency_key",
    "register_fact_check",
    "register_generate_video",
    "register_hello",
    "register_poll_video_render",
    "register_publish_content",
    "register_publish_to_channel",
    "register_schedule_content_publish",
    "register_seo_analysis",
    "score_verifications",
]
