from __future__ import annotations

import json
from collections import OrderedDict

import pytest
from fastapi.testclient import TestClient

import app as app_module
from services.evaluator import DMPEvaluator
from services.settings_store import SettingsStore
from utils.ai_client import ModelClient

from conftest import SAMPLE_CRITERIA, SAMPLE_DMP, FakeSession


@pytest.fixture
def api(tmp_path, monkeypatch):
    store = SettingsStore(tmp_path / "settings.json")
    store.set_test_mode(True)
    client = ModelClient(store, session=FakeSession([]), sleep=lambda _: None)
    evaluator = DMPEvaluator(store, client, log_path=tmp_path / "logs" / "evaluations.jsonl")

    monkeypatch.setattr(app_module, "OUTPUT_BASE", tmp_path)
    monkeypatch.setattr(app_module, "settings_store", store)
    monkeypatch.setattr(app_module, "model_client", client)
    monkeypatch.setattr(app_module, "evaluator", evaluator)
    monkeypatch.setattr(app_module, "_OUTCOMES", OrderedDict())
    return TestClient(app_module.app)


def _evaluation_form(**overrides):
    data = {"criteria_text": SAMPLE_CRITERIA, "dmp_text": SAMPLE_DMP, "phase": "proposal"}
    data.update(overrides)
    return data


def test_health(api):
    response = api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["test_mode"] is True


def test_settings_mask_the_api_key(api):
    response = api.put("/settings", json={"api_key": "sk-abcdefghijkl", "model": "org/model"})

    body = response.json()
    assert body["api_key_set"] is True
    assert body["api_key_preview"] == "****ijkl"
    assert "sk-abcdefghijkl" not in response.text
    assert body["model"] == "org/model"

    cleared = api.put("/settings", json={"api_key": ""}).json()
    assert cleared["api_key_set"] is False
    assert cleared["model"] == "org/model"


def test_profile_lifecycle(api):
    payload = {
        "name": "Local",
        "endpoint": "http://localhost:8080/v1/chat/completions",
        "authHeaderTemplate": "Bearer {API_KEY}",
    }

    saved = api.put("/profiles/local", json=payload)
    assert saved.status_code == 200
    assert saved.json()["builtin"] is False

    ids = {item["id"] for item in api.get("/profiles").json()}
    assert ids == {"together", "openai", "local"}

    preview = api.get("/profiles/local/preview")
    assert "http://localhost:8080/v1/chat/completions" in preview.text

    assert api.post("/profiles/local/activate").json() == {"active_profile_id": "local"}
    assert api.get("/profiles/local").json()["active"] is True

    deleted = api.delete("/profiles/local").json()
    assert deleted["active_profile_id"] == "together"
    assert api.get("/profiles/local").status_code == 404


def test_builtin_profile_cannot_be_deleted(api):
    assert api.delete("/profiles/together").status_code == 400
    assert api.put("/profiles/openai", json={"name": "x", "endpoint": "https://x.org"}).status_code == 400


def test_invalid_profile_is_rejected(api):
    response = api.put("/profiles/bad", json={"name": "Bad", "endpoint": "not-a-url"})

    assert response.status_code == 422
    assert response.json()["detail"][0]["msg"].endswith("endpoint must be an http(s) URL")
    assert "ctx" not in response.json()["detail"][0]


def test_default_criteria(api):
    body = api.get("/criteria/default", params={"phase": "end"}).json()

    assert body["phase"] == "end"
    assert len(body["rubric"]["categories"]) == 16
    assert body["text"].startswith("# DMP Evaluation Criteria (end-project)")


def test_unknown_phase_is_rejected(api):
    assert api.get("/criteria/default", params={"phase": "late"}).status_code == 400


def test_extract_criteria_from_upload(api):
    response = api.post(
        "/criteria/extract",
        data={"phase": "mid"},
        files={"criteria_file": ("criteria.md", SAMPLE_CRITERIA.encode("utf-8"), "text/markdown")},
    )

    body = response.json()
    assert response.status_code == 200
    assert [c["id"] for c in body["rubric"]["categories"]] == ["1a", "1b"]
    assert body["validation"]["valid"] is True
    assert body["stats"]["total"] == 2


def test_extract_criteria_rejects_unsupported_file(api):
    response = api.post(
        "/criteria/extract",
        files={"criteria_file": ("criteria.exe", b"MZ", "application/octet-stream")},
    )

    assert response.status_code == 400


def test_convert_criteria_in_test_mode(api):
    text = "Plans should explain where the data lives and who looks after it over time."

    body = api.post("/criteria/convert", json={"criteria_text": text}).json()

    assert body["suitable"] is False
    assert body["converted_text"] == text


def test_convert_criteria_rejects_short_text(api):
    assert api.post("/criteria/convert", json={"criteria_text": "short"}).status_code == 400


def test_evaluation_round_trip_and_exports(api, tmp_path):
    response = api.post("/evaluations", data=_evaluation_form())

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert [c["id"] for c in body["results"]["categories"]] == ["1a", "1b"]
    evaluation_id = body["evaluationId"]
    assert (tmp_path / "evaluations" / f"{evaluation_id}.json").exists()

    fetched = api.get(f"/evaluations/{evaluation_id}").json()
    assert fetched["results"] == body["results"]

    exported = api.get(f"/evaluations/{evaluation_id}/export/json")
    assert exported.headers["content-disposition"].startswith('attachment; filename="dmp-evaluation-')
    assert json.loads(exported.text)["results"]["overallScore"] == body["results"]["overallScore"]

    markdown = api.get(f"/evaluations/{evaluation_id}/export/md")
    assert markdown.text.startswith("# DMP Evaluation Report")

    pdf = api.get(f"/evaluations/{evaluation_id}/export/pdf")
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")

    assert api.get(f"/evaluations/{evaluation_id}/export/docx").status_code == 404

    events = [
        json.loads(line)["event"]
        for line in (tmp_path / "logs" / "evaluations.jsonl").read_text(encoding="utf-8").splitlines()
    ]
    assert events[:2] == ["evaluation_started", "evaluation_completed"]
    assert events.count("evaluation_exported") == 3


def test_evaluation_reloaded_from_disk(api):
    evaluation_id = api.post("/evaluations", data=_evaluation_form()).json()["evaluationId"]
    app_module._OUTCOMES.clear()

    assert api.get(f"/evaluations/{evaluation_id}").json()["evaluationId"] == evaluation_id


def test_failed_evaluation_is_reported_not_raised(api):
    response = api.post("/evaluations", data=_evaluation_form(dmp_text="Too short."))

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert "too short" in body["error"]
    assert api.get(f"/evaluations/{body['evaluationId']}/export/md").status_code == 409


def test_default_criteria_can_drive_an_evaluation(api):
    response = api.post(
        "/evaluations",
        data={"use_default_criteria": "true", "dmp_text": SAMPLE_DMP, "phase": "end"},
    )

    body = response.json()
    assert body["success"] is True
    assert len(body["results"]["categories"]) == 16
    assert body["metadata"]["criteriaFile"] == "default-criteria.md"


def test_evaluation_requires_inputs(api):
    assert api.post("/evaluations", data={"dmp_text": SAMPLE_DMP}).status_code == 400
    assert api.post("/evaluations", data={"criteria_text": SAMPLE_CRITERIA}).status_code == 400


def test_concurrent_evaluation_is_rejected(api):
    app_module._EVALUATION_LOCK.acquire()
    try:
        response = api.post("/evaluations", data=_evaluation_form())
    finally:
        app_module._EVALUATION_LOCK.release()

    assert response.status_code == 409


def test_unknown_evaluation_is_404(api):
    assert api.get("/evaluations/does-not-exist").status_code == 404
    assert api.get(f"/evaluations/{'0' * 32}").status_code == 404


def test_stream_emits_progress_then_outcome(api):
    with api.stream("POST", "/evaluations/stream", data=_evaluation_form()) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.iter_lines()
            if line.startswith("data: ")
        ]

    types = [event["type"] for event in events]
    assert types[0] == "status"
    assert types.count("complete") == 1
    assert types[-1] == "outcome"
    assert types[-2] == "complete"
    assert events[-1]["success"] is True
    assert not app_module._EVALUATION_LOCK.locked()


def test_outcome_cache_is_bounded_and_falls_back_to_disk(api, monkeypatch):
    monkeypatch.setattr(app_module, "MAX_CACHED_OUTCOMES", 2)

    ids = [api.post("/evaluations", data=_evaluation_form()).json()["evaluationId"] for _ in range(3)]

    assert list(app_module._OUTCOMES) == ids[1:]
    assert api.get(f"/evaluations/{ids[0]}").json()["evaluationId"] == ids[0]
    assert list(app_module._OUTCOMES) == [ids[2], ids[0]]


def test_evaluation_survives_unwritable_event_log(api, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    app_module.evaluator.event_log.path = blocker / "logs" / "evaluations.jsonl"

    response = api.post("/evaluations", data=_evaluation_form())

    assert response.status_code == 200
    assert response.json()["success"] is True
