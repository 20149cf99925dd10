import json
import time

import pytest
from fastapi.testclient import TestClient

from app import main
from app.run_manager import RunManager
from tests.conftest import FakeLLM


client = TestClient(main.app)

ANSWER = {"action": "answer", "think": "Known fact.", "answer": "Water boils at 100 degrees Celsius."}


@pytest.fixture
def fake_manager(monkeypatch, tmp_path, make_agent):
    def factory(**kwargs):
        return make_agent(FakeLLM({"agent": [ANSWER]}), **kwargs)

    manager = RunManager(agent_factory=factory, runs_dir=str(tmp_path))
    monkeypatch.setattr(main, "run_manager", manager)
    monkeypatch.setattr(main.auth.cfg, "secret", "")
    return manager


@pytest.fixture
def failing_manager(monkeypatch, tmp_path, make_agent):
    def factory(**kwargs):
        return make_agent(FakeLLM({"agent": RuntimeError("decision backend down")}), **kwargs)

    manager = RunManager(agent_factory=factory, runs_dir=str(tmp_path))
    monkeypatch.setattr(main, "run_manager", manager)
    monkeypatch.setattr(main.auth.cfg, "secret", "")
    return manager


def _sse_messages(body: str):
    out = []
    for block in body.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                out.append(json.loads(line[len("data: ") :]))
    return out


def _wait_for_task(request_id: str, timeout: float = 5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        rsp = client.get(f"/api/v1/task/{request_id}")
        if rsp.status_code == 200:
            return rsp
        time.sleep(0.05)
    return client.get(f"/api/v1/task/{request_id}")


def test_last_message_must_be_from_user(fake_manager):
    rsp = client.post(
        "/v1/chat/completions",
        json={"model": "test-model", "messages": [{"role": "assistant", "content": "hi"}]},
    )
    assert rsp.status_code == 400
    assert rsp.json()["error"] == "Last message must be from user"


def test_messages_must_not_be_empty(fake_manager):
    rsp = client.post("/v1/chat/completions", json={"model": "test-model", "messages": []})
    assert rsp.status_code == 400


def test_missing_bearer_is_unauthorized(fake_manager, monkeypatch):
    monkeypatch.setattr(main.auth.cfg, "secret", "s3cret")
    rsp = client.post(
        "/v1/chat/completions",
        json={"model": "test-model", "messages": [{"role": "user", "content": "hello"}]},
    )
    assert rsp.status_code == 401
    assert rsp.json()["error"] == "Unauthorized"


def test_raw_secret_and_signed_token_are_accepted(fake_manager, monkeypatch):
    monkeypatch.setattr(main.auth.cfg, "secret", "s3cret")
    token = main.auth.mint_token("tester", int(time.time()) + 60)
    for bearer in ("s3cret", token):
        rsp = client.post(
            "/api/v1/query",
            json={"q": "What is the boiling point of water?"},
            headers={"Authorization": f"Bearer {bearer}"},
        )
        assert rsp.status_code == 200
    wrong = client.post(
        "/api/v1/query",
        json={"q": "What is the boiling point of water?"},
        headers={"Authorization": "Bearer nope"},
    )
    assert wrong.status_code == 401


def test_chat_completion_returns_answer_and_usage(fake_manager):
    rsp = client.post(
        "/v1/chat/completions",
        json={"model": "test-model", "messages": [{"role": "user", "content": "Boiling point of water?"}]},
    )
    assert rsp.status_code == 200
    body = rsp.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "test-model"
    assert body["choices"][0]["message"]["role"] == "assistant"
    assert body["choices"][0]["message"]["content"].startswith("Water boils at 100 degrees Celsius.")
    usage = body["usage"]
    assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"]


def test_chat_completion_stream_ends_with_done(fake_manager):
    rsp = client.post(
        "/v1/chat/completions",
        json={
            "model": "test-model",
            "stream": True,
            "messages": [{"role": "user", "content": "Boiling point of water?"}],
        },
    )
    assert rsp.status_code == 200
    assert rsp.text.rstrip().endswith("data: [DONE]")
    chunks = _sse_messages(rsp.text.replace("data: [DONE]", ""))
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert chunks[1]["choices"][0]["delta"] == {"content": "<think>"}
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    content = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert "Known fact." in content
    assert "Water boils at 100 degrees Celsius." in content


def test_query_stream_and_task_lookup(fake_manager):
    rsp = client.post("/api/v1/query", json={"q": "Boiling point of water?", "maxBadAttempt": 2})
    assert rsp.status_code == 200
    request_id = rsp.json()["requestId"]

    stream = client.get(f"/api/v1/stream/{request_id}")
    assert stream.status_code == 200
    messages = _sse_messages(stream.text)
    assert messages[-1]["type"] == "answer"
    assert messages[-1]["data"]["answer"] == "Water boils at 100 degrees Celsius."
    assert any(m["type"] == "progress" for m in messages)

    task = _wait_for_task(request_id)
    assert task.status_code == 200
    stored = task.json()
    assert stored["status"] == "completed"
    assert stored["result"]["answer"] == "Water boils at 100 degrees Celsius."
    assert stored["trace"][0]["event_type"] == "run_started"


def test_failed_run_emits_error_event(failing_manager):
    request_id = client.post("/api/v1/query", json={"q": "Anything?"}).json()["requestId"]

    messages = _sse_messages(client.get(f"/api/v1/stream/{request_id}").text)

    assert messages[-1]["type"] == "error"
    assert "decision backend down" in messages[-1]["data"]
    assert _wait_for_task(request_id).json()["status"] == "failed"


def test_unknown_ids_are_not_found(fake_manager):
    assert client.get("/api/v1/stream/missing").status_code == 404
    rsp = client.get("/api/v1/task/missing")
    assert rsp.status_code == 404
    assert rsp.json()["error"] == "Task not found"
