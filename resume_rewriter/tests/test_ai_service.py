"""
Test metered resume optimization: credit gate, release on failure, history.

The Groq client is always mocked.
"""
from unittest.mock import Mock, patch

import groq
import pytest

from resume_rewriter.core.config import settings
from resume_rewriter.core.errors import ValidationError
from resume_rewriter.features.ai import service as ai
from resume_rewriter.features.ai.service import RewriterError
from resume_rewriter.features.billing.reconciler import confirm_payment
from resume_rewriter.features.usage import meter
from resume_rewriter.models.usage import DenialReason


RESUME = "Jane Doe\nSoftware Engineer\n- Built things"


def _completion(content="Optimized resume", total_tokens=321):
    completion = Mock()
    completion.choices = [Mock(message=Mock(content=content))]
    completion.usage = Mock(total_tokens=total_tokens)
    return completion


@pytest.mark.parametrize(
    "content,optimization_type,job_description",
    [
        ("", "ats-optimization", None),
        ("   ", "ats-optimization", None),
        (RESUME, "make-it-pop", None),
        (RESUME, "job-match", None),
        (RESUME, "job-match", "  "),
    ],
)
def test_validate_request_rejects(content, optimization_type, job_description):
    with pytest.raises(ValidationError):
        ai.validate_request(content, optimization_type, job_description)


def test_build_prompt_includes_job_description():
    prompt = ai.build_prompt("job-match", RESUME, "Senior Python role")

    assert prompt.startswith(ai.OPTIMIZATION_INSTRUCTIONS["job-match"])
    assert "TARGET JOB DESCRIPTION:\nSenior Python role" in prompt
    assert prompt.endswith(f"ORIGINAL RESUME:\n{RESUME}")


def test_invalid_request_takes_no_credit(alice):
    confirm_payment(alice, "starter-plan")

    with pytest.raises(ValidationError):
        ai.optimize_resume(alice, RESUME, "job-match")

    assert meter.get_status(alice).remaining == 3


def test_denied_without_plan(alice):
    with patch("resume_rewriter.features.ai.service.rewrite_with_groq") as rewrite:
        result = ai.optimize_resume(alice, RESUME, "ats-optimization")

    assert result.granted is False
    assert result.reason == DenialReason.NO_ENTITLEMENT
    rewrite.assert_not_called()


def test_grant_spends_one_credit(alice):
    confirm_payment(alice, "starter-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        return_value=("Better resume", 150),
    ):
        result = ai.optimize_resume(alice, RESUME, "ats-optimization", model="test-model")

    assert result.granted is True
    assert result.optimized_content == "Better resume"
    assert result.tokens_used == 150
    assert result.model == "test-model"
    assert result.remaining == 2
    assert meter.get_status(alice).usage_count == 1


def test_denied_when_credits_spent(alice):
    confirm_payment(alice, "starter-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        return_value=("Better resume", 150),
    ) as rewrite:
        for _ in range(3):
            assert ai.optimize_resume(alice, RESUME, "general-improvement").granted is True
        result = ai.optimize_resume(alice, RESUME, "general-improvement")

    assert result.granted is False
    assert result.reason == DenialReason.LIMIT_EXCEEDED
    assert result.remaining == 0
    assert result.limit == 3
    assert rewrite.call_count == 3


def test_failure_releases_credit(alice):
    confirm_payment(alice, "pro-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        side_effect=RewriterError("Optimization failed: upstream timeout"),
    ):
        with pytest.raises(RewriterError):
            ai.optimize_resume(alice, RESUME, "keyword-enhancement")

    assert meter.get_status(alice).usage_count == 0

    history = ai.get_history(alice)
    assert len(history) == 1
    assert history[0].success is False
    assert history[0].error_message == "Optimization failed: upstream timeout"


def test_empty_choices_releases_credit(alice, monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    confirm_payment(alice, "pro-plan")

    with patch("groq.Groq") as client_cls:
        client_cls.return_value.chat.completions.create.return_value = Mock(choices=[], usage=None)
        with pytest.raises(RewriterError):
            ai.optimize_resume(alice, RESUME, "keyword-enhancement")

    assert meter.get_status(alice).usage_count == 0
    history = ai.get_history(alice)
    assert history[0].success is False
    assert history[0].error_message == "Optimization returned no content"


def test_unexpected_error_releases_credit(alice):
    confirm_payment(alice, "pro-plan")

    with patch("resume_rewriter.features.ai.service.rewrite_with_groq", side_effect=KeyError("choices")):
        with pytest.raises(KeyError):
            ai.optimize_resume(alice, RESUME, "keyword-enhancement")

    assert meter.get_status(alice).usage_count == 0
    history = ai.get_history(alice)
    assert history[0].error_message == "Unexpected error: KeyError"


def test_unlimited_plan_never_counts(alice):
    confirm_payment(alice, "unlimited-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        return_value=("Better resume", 10),
    ):
        result = ai.optimize_resume(alice, RESUME, "format-improvement")

    assert result.unlimited is True
    assert meter.get_status(alice).usage_count == 0


def test_history_and_stats(alice, bob):
    confirm_payment(alice, "pro-plan")
    confirm_payment(bob, "pro-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        side_effect=[("one", 100), RewriterError("Optimization failed"), ("three", 50), ("bob", 7)],
    ):
        ai.optimize_resume(alice, RESUME, "ats-optimization")
        with pytest.raises(RewriterError):
            ai.optimize_resume(alice, RESUME, "ats-optimization")
        ai.optimize_resume(alice, RESUME, "ats-optimization")
        ai.optimize_resume(bob, RESUME, "ats-optimization")

    history = ai.get_history(alice)
    assert len(history) == 3
    assert ai.history_stats(history) == {
        "totalOptimizations": 3,
        "successfulOptimizations": 2,
        "failedOptimizations": 1,
        "totalTokens": 150,
    }
    assert len(ai.get_history(alice, limit=1)) == 1


def test_rewrite_requires_api_key(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", None)

    with pytest.raises(RewriterError):
        ai.rewrite_with_groq("prompt", "test-model")


def test_rewrite_with_groq(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")

    with patch("groq.Groq") as client_cls:
        client_cls.return_value.chat.completions.create.return_value = _completion("  Rewritten  ", 42)
        content, tokens = ai.rewrite_with_groq("prompt", "test-model")

    assert content == "Rewritten"
    assert tokens == 42
    client_cls.assert_called_once_with(api_key="gsk_test")
    kwargs = client_cls.return_value.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["messages"][0] == {"role": "system", "content": ai.SYSTEM_PROMPT}
    assert kwargs["max_tokens"] == ai.MAX_TOKENS


@pytest.mark.parametrize(
    "outcome",
    [
        {"side_effect": groq.GroqError("rate limited")},
        {"return_value": _completion(content="")},
        {"return_value": Mock(choices=[], usage=None)},
    ],
)
def test_rewrite_maps_provider_failures(monkeypatch, outcome):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")

    with patch("groq.Groq") as client_cls:
        client_cls.return_value.chat.completions.create.configure_mock(**outcome)
        with pytest.raises(RewriterError) as exc_info:
            ai.rewrite_with_groq("prompt", "test-model")

    assert exc_info.value.status_code == 502


def test_optimize_route_soft_gate(client, alice, auth_headers):
    response = client.post(
        "/api/ai/optimize",
        json={"resumeContent": RESUME, "optimizationType": "ats-optimization"},
        headers=auth_headers(alice),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["upgradeRequired"] is True
    assert body["reason"] == "no_entitlement"


def test_optimize_route_success_and_history(client, alice, auth_headers):
    confirm_payment(alice, "pro-plan")
    headers = auth_headers(alice)

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        return_value=("Better resume", 99),
    ):
        response = client.post(
            "/api/ai/optimize",
            json={"resumeContent": RESUME, "optimizationType": "ats-optimization"},
            headers=headers,
        )

    body = response.json()
    assert body["success"] is True
    assert body["optimizedContent"] == "Better resume"
    assert body["remaining"] == 29
    assert body["monthlyLimit"] == 30

    history = client.get("/api/ai/history", headers=headers).json()
    assert history["stats"]["totalOptimizations"] == 1
    assert history["history"][0]["optimizationType"] == "ats-optimization"


def test_optimize_route_rewriter_failure(client, alice, auth_headers):
    confirm_payment(alice, "pro-plan")

    with patch(
        "resume_rewriter.features.ai.service.rewrite_with_groq",
        side_effect=RewriterError("Optimization failed"),
    ):
        response = client.post(
            "/api/ai/optimize",
            json={"resumeContent": RESUME, "optimizationType": "ats-optimization"},
            headers=auth_headers(alice),
        )

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "rewriter_unavailable"
