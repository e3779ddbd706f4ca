"""Tests for the pure helpers behind the studio functions."""

import pytest

from justflow.studio.factcheck import (
    claim_step_name,
    normalize_claims,
    score_verifications,
    verdict_for,
)
from justflow.studio.publishing import (
    PLATFORM_MAP,
    compose_text,
    error_summary,
    final_status,
    publish_result,
    unique_channels,
)
from justflow.studio.video import (
    render_duration,
    render_timeout_message,
    round_half_up,
    same_content,
)
from justflow.types import ValidationFailure
from tests.factories import make_event


class TestFactCheckScoring:
    def test_mixed_verifications(self) -> None:
        result = score_verifications(
            [
                {"verified": True, "confidence": 0.9},
                {"verified": True, "confidence": 0.8},
                {"verified": False, "confidence": 0.4},
            ]
        )
        assert result["score"] == 68
        assert result["verdict"] == "caution"
        assert result["verifiedCount"] == 2
        assert result["totalClaims"] == 3
        assert result["avgConfidence"] == pytest.approx(0.7)

    def test_no_claims_is_clean(self) -> None:
        result = score_verifications([])
        assert (result["score"], result["verdict"]) == (100, "clean")

    def test_all_unverified(self) -> None:
        result = score_verifications([{"verified": False, "confidence": 0.1}])
        assert (result["score"], result["verdict"]) == (3, "warning")

    @pytest.mark.parametrize(
        "score, verdict",
        [
            (100, "clean"),
            (80, "clean"),
            (79, "caution"),
            (50, "caution"),
            (49, "warning"),
        ],
    )
    def test_verdict_thresholds(self, score: int, verdict: str) -> None:
        assert verdict_for(score) == verdict

    def test_normalize_claims(self) -> None:
        claims = normalize_claims(
            [
                {"text": "Sales doubled", "category": "statistic"},
                {"id": "q", "text": "He said it", "category": "rumour"},
            ]
        )
        assert claims == [
            {"id": 1, "text": "Sales doubled", "category": "statistic"},
            {"id": "q", "text": "He said it", "category": "factual"},
        ]
        assert [claim_step_name(c) for c in claims] == [
            "verify-claim-1",
            "verify-claim-q",
        ]

    def test_normalize_rejects_bad_input(self) -> None:
        with pytest.raises(ValidationFailure):
            normalize_claims({"text": "x"})
        with pytest.raises(ValidationFailure, match="Claim 2"):
            normalize_claims([{"text": "ok"}, {"category": "quote"}])


class TestPublishing:
    def test_platform_aliases(self) -> None:
        assert PLATFORM_MAP["TWITTER"] == PLATFORM_MAP["x"]
        assert PLATFORM_MAP["X_TWITTER"].name == "x"
        assert PLATFORM_MAP["linkedin"].integration == "LINKEDIN"
        assert "mastodon" not in PLATFORM_MAP

    def test_unique_channels_keeps_order(self) -> None:
        assert unique_channels(["x", "linkedin", "x"]) == ["x", "linkedin"]

    def test_compose_text(self) -> None:
        text = compose_text(
            {
                "title": "Launch",
                "body": "We shipped.",
                "hashtags": ["launch", "#news"],
                "callToAction": "Try it",
            }
        )
        assert text == "Launch\n\nWe shipped.\n\n#launch #news\n\nTry it"
        assert compose_text({"title": "Only"}) == "Only"

    def test_final_status(self) -> None:
        ok = {"channel": "x", "success": True}
        bad = {"channel": "linkedin", "success": False, "error": "401"}
        assert final_status([ok, ok]) == "COMPLETED"
        assert final_status([ok, bad]) == "PARTIAL"
        assert final_status([bad]) == "FAILED"
        assert final_status([]) == "FAILED"
        assert error_summary([ok, bad]) == "linkedin: 401"
        assert error_summary([ok]) is None

    def test_publish_result(self) -> None:
        assert publish_result("x", {"success": True, "permalink": "u"}) == {
            "channel": "x",
            "success": True,
            "postId": None,
            "postUrl": "u",
            "error": None,
        }
        assert publish_result("x", None)["success"] is False


class TestVideo:
    def test_round_half_up(self) -> None:
        assert [round_half_up(v) for v in (0.5, 1.5, 2.5, 874.4)] == [1, 2, 3, 874]

    def test_render_timeout_message(self) -> None:
        assert (
            render_timeout_message(40, 875.0)
            == "Render timed out after 40 polls (875s)"
        )

    def test_render_duration(self) -> None:
        assert [render_duration(v) for v in (4, 6, 8, 10, None)] == [4, 6, 8, 8, 8]

    def test_same_content(self) -> None:
        trigger = make_event(data={"contentId": "c1"})
        assert same_content(make_event(data={"contentId": "c1"}), trigger)
        assert not same_content(make_event(data={"contentId": "c2"}), trigger)
        assert not same_content(make_event(data={}), make_event(data={}))
