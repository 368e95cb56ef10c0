from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

import summarizer
from aggregation import AggregatePoint
from errors import UpstreamServiceError
from conftest import HDR, slider, submit

def test_summary_ranks_top_problems(client, survey):
    submit(client, [slider(1, 2, 2), slider(2, 9, 9), slider(3, 5, 6)])
    r = client.post("/ai-summary", json={"limit": 2}, headers=HDR)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["summary"] == "mock summary of 2 problems from 1 responses"
    assert [p["id"] for p in data["topProblems"]] == [2, 3]
    assert data["topProblems"][0]["score"] == 81.0
    assert data["topProblems"][0]["section"] == "Query Performance & Tuning"
    assert data["metadata"]["responseCount"] == 1

def test_summary_needs_responses(client, survey):
    assert client.post("/ai-summary", json={}, headers=HDR).status_code == 400

def test_summary_unconfigured_is_503(client, survey, monkeypatch):
    monkeypatch.setattr("main.is_configured", lambda: False)
    submit(client, [slider(1, 2, 2)])
    r = client.post("/ai-summary", json={}, headers=HDR)
    assert r.status_code == 503

def test_upstream_failure_is_503(client, survey, monkeypatch):
    def broken(top_problems, response_count):
        raise UpstreamServiceError("AI service unavailable")
    monkeypatch.setattr("main.summarize", broken)
    submit(client, [slider(1, 2, 2)])
    r = client.post("/ai-summary", json={}, headers=HDR)
    assert r.status_code == 503
    assert r.json()["detail"] == "AI service unavailable"

POINT = AggregatePoint(id=1, x=6.0, y=7.0, group="Performance", title="Slow queries", count=3)

def _fake_client(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

def test_summarize_without_key_raises(monkeypatch):
    monkeypatch.setattr(summarizer, "_client", None)
    assert summarizer.is_configured() is False
    with pytest.raises(UpstreamServiceError):
        summarizer.summarize([POINT], 3)

def test_summarize_timeout_raises(monkeypatch):
    def slow(**kwargs):
        raise APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    monkeypatch.setattr(summarizer, "_client", _fake_client(slow))
    with pytest.raises(UpstreamServiceError) as e:
        summarizer.summarize([POINT], 3)
    assert e.value.message == "AI service unavailable"

def test_summarize_returns_model_text(monkeypatch):
    seen = {}
    def create(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="  Fix slow queries.  "))])
    monkeypatch.setattr(summarizer, "_client", _fake_client(create))
    assert summarizer.summarize([POINT], 3) == "Fix slow queries."
    assert "Slow queries" in seen["messages"][1]["content"]
    assert "score 42.0" in seen["messages"][1]["content"]
