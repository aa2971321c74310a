from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from conftest import FakeChatClient, FakeTranscriber, make_wav_bytes
from lecture_notes.services.progress import JobStatus
from lecture_notes.services.runtime import build_services
from lecture_notes.web.server import create_app


@pytest.fixture()
def services(temp_config, repository):
    return build_services(
        temp_config,
        repository,
        environ={},
        transcriber=FakeTranscriber(),
        chat_client=FakeChatClient(),
    )


@pytest.fixture()
def client(temp_config, repository, services):
    app = create_app(repository, config=temp_config, services=services)
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, *, seconds: float = 2.0, title: str = "Thermodynamics") -> Dict[str, Any]:
    response = client.post(
        "/api/uploads",
        files=[("files", ("lecture.wav", make_wav_bytes(seconds), "audio/wav"))],
        data={"title": title},
    )
    assert response.status_code == 201
    return response.json()["transcription"]


def _wait_for(client: TestClient, job_id: str, statuses: Iterable[str], timeout: float = 20.0) -> Dict[str, Any]:
    wanted = set(statuses)
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = client.get(f"/api/transcription/{job_id}").json()["transcription"]
        if job["status"] in wanted:
            return job
        time.sleep(0.05)
    raise AssertionError(f"Transcription {job_id} did not reach {sorted(wanted)}")


def _wait_for_task(client: TestClient, task_id: str, timeout: float = 20.0) -> Dict[str, Any]:
    deadline = time.time() + timeout
    while time.time() < deadline:
        for task in client.get("/api/tasks").json()["queue"]:
            if task["id"] == task_id and task["status"] in {"succeeded", "failed"}:
                return task
        time.sleep(0.05)
    raise AssertionError(f"Task {task_id} did not finish")


def _completed(client: TestClient) -> Dict[str, Any]:
    job = _upload(client)
    response = client.post(f"/api/transcribe/{job['id']}")
    assert response.status_code == 202
    task = _wait_for_task(client, response.json()["taskId"])
    assert task["options"]["result"] == "completed"
    return client.get(f"/api/transcription/{job['id']}").json()["transcription"]


def test_upload_creates_a_pending_transcription(client: TestClient) -> None:
    job = _upload(client)

    assert job["status"] == "pending"
    assert job["progress"] == 0
    assert job["sourceType"] == "audio"
    assert job["originalFileName"] == "lecture.wav"

    listing = client.get("/api/transcriptions").json()["transcriptions"]
    assert [item["id"] for item in listing] == [job["id"]]


def test_upload_without_files_is_rejected(client: TestClient) -> None:
    response = client.post("/api/uploads", data={"title": "Nothing"})

    assert response.status_code == 422


def test_trigger_runs_the_pipeline_to_completion(client: TestClient) -> None:
    job = _upload(client)

    response = client.post(f"/api/transcribe/{job['id']}")
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "processing"
    assert body["taskId"]

    _wait_for_task(client, body["taskId"])
    finished = _wait_for(client, job["id"], {"completed", "error"})
    assert finished["status"] == "completed"
    assert finished["progress"] == pytest.approx(1.0)
    assert finished["rawText"] == "text-1\n\ntext-2"
    assert finished["structuredText"].startswith("# Thermodynamics")
    assert finished["detectedLanguage"] == "German"
    assert finished["errorMessage"] is None

    tasks = client.get("/api/tasks").json()["queue"]
    assert [task["job_id"] for task in tasks] == [job["id"]]
    assert tasks[0]["options"]["result"] == "completed"


def test_trigger_of_completed_job_short_circuits(client: TestClient) -> None:
    job = _completed(client)

    again = client.post(f"/api/transcribe/{job['id']}")
    assert again.status_code == 200
    assert again.json() == {"id": job["id"], "status": "completed"}

    reprocess = client.post(f"/api/transcribe/{job['id']}", params={"reprocess": "true"})
    assert reprocess.status_code == 202
    _wait_for_task(client, reprocess.json()["taskId"])
    assert client.get(f"/api/transcription/{job['id']}").json()["transcription"]["status"] == "completed"


def test_reprocessing_runs_under_a_new_run_id(client: TestClient, repository) -> None:
    job = _completed(client)
    first_run = repository.require_job(job["id"]).run_id
    assert first_run

    reprocess = client.post(f"/api/transcribe/{job['id']}", params={"reprocess": "true"})
    assert reprocess.status_code == 202
    task = _wait_for_task(client, reprocess.json()["taskId"])

    second_run = repository.require_job(job["id"]).run_id
    assert second_run != first_run
    assert task["options"]["runId"] == second_run
    assert task["options"]["result"] == "completed"

def test_trigger_of_active_job_conflicts(client: TestClient, repository) -> None:
    job = _upload(client)
    assert repository.try_start(job["id"], {JobStatus.PENDING})

    response = client.post(f"/api/transcribe/{job['id']}")

    assert response.status_code == 409
    assert repository.require_job(job["id"]).status is JobStatus.PROCESSING


def test_trigger_of_unknown_job_is_404(client: TestClient) -> None:
    assert client.post("/api/transcribe/does-not-exist").status_code == 404


def test_cancel_only_applies_to_active_jobs(client: TestClient, repository) -> None:
    job = _upload(client)
    assert client.post(f"/api/transcription/{job['id']}/cancel").status_code == 409

    repository.try_start(job["id"], {JobStatus.PENDING})
    response = client.post(f"/api/transcription/{job['id']}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "canceled"
    assert client.get(f"/api/transcription/{job['id']}").json()["transcription"]["status"] == "canceled"


def test_jobs_are_scoped_to_their_owner(client: TestClient) -> None:
    job = _upload(client)
    stranger = {"X-User-Id": "someone-else"}

    assert client.get(f"/api/transcription/{job['id']}", headers=stranger).status_code == 404
    assert client.post(f"/api/transcribe/{job['id']}", headers=stranger).status_code == 404
    assert client.get("/api/transcriptions", headers=stranger).json()["transcriptions"] == []


def test_rename_transcription(client: TestClient) -> None:
    job = _upload(client)

    response = client.patch(f"/api/transcription/{job['id']}", json={"title": "  Entropy  "})

    assert response.status_code == 200
    assert response.json()["transcription"]["title"] == "Entropy"
    assert client.patch(f"/api/transcription/{job['id']}", json={"title": ""}).status_code == 422


def test_delete_removes_job_and_sources(client: TestClient, repository, services) -> None:
    job = _upload(client)
    source_key = repository.require_job(job["id"]).source_keys[0]
    assert services.object_store.exists(source_key)

    assert client.delete(f"/api/transcription/{job['id']}").status_code == 204

    assert client.get(f"/api/transcription/{job['id']}").status_code == 404
    assert not services.object_store.exists(source_key)


def test_delete_of_active_job_conflicts(client: TestClient, repository) -> None:
    job = _upload(client)
    repository.try_start(job["id"], {JobStatus.PENDING})

    assert client.delete(f"/api/transcription/{job['id']}").status_code == 409
    assert repository.get_job(job["id"]) is not None


def test_study_material_requires_a_completed_job(client: TestClient) -> None:
    job = _upload(client)

    for path in ("pdf", "quiz", "flashcards"):
        response = client.post(f"/api/transcription/{job['id']}/{path}")
        assert response.status_code == 400


def test_quiz_and_flashcards_keep_history(client: TestClient) -> None:
    job = _completed(client)

    created = client.post(f"/api/transcription/{job['id']}/quiz", json={"count": 3})
    assert created.status_code == 201
    quiz = created.json()["quiz"]
    assert quiz["questions"][0]["correctAnswer"] == 0

    latest = client.get(f"/api/transcription/{job['id']}/quiz").json()["quiz"]
    assert latest["id"] == quiz["id"]
    assert len(client.get(f"/api/transcription/{job['id']}/quizzes").json()["quizzes"]) == 2

    deck = client.post(f"/api/transcription/{job['id']}/flashcards").json()["flashcardDeck"]
    assert deck["cards"][0]["front"] == "Entropy"
    decks = client.get(f"/api/transcription/{job['id']}/flashcard-decks").json()["flashcardDecks"]
    assert len(decks) == 2


def test_missing_quiz_is_404(client: TestClient) -> None:
    job = _upload(client)

    assert client.get(f"/api/transcription/{job['id']}/quiz").status_code == 404
    assert client.get(f"/api/transcription/{job['id']}/flashcards").status_code == 404


def test_pdf_is_cached_and_downloadable(client: TestClient) -> None:
    job = _completed(client)

    cached = client.post(f"/api/transcription/{job['id']}/pdf").json()
    assert cached["cached"] is True
    assert cached["key"] == job["pdfKey"]

    fresh = client.post(f"/api/transcription/{job['id']}/pdf", json={"regenerate": True}).json()
    assert fresh["cached"] is False
    assert fresh["key"] != cached["key"]

    download = client.get(fresh["url"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.content.startswith(b"%PDF")

    tampered = fresh["url"].replace("signature=", "signature=0")
    assert client.get(tampered).status_code == 403


def test_shutdown_requires_a_running_server(client: TestClient) -> None:
    assert client.post("/api/system/shutdown").status_code == 503


def test_root_path_prefix_is_honoured(temp_config, repository, services) -> None:
    app = create_app(repository, config=temp_config, services=services, root_path="/notes/")
    with TestClient(app) as prefixed:
        assert prefixed.get("/notes/api/transcriptions").status_code == 200


def test_record_lookups_run_off_the_event_loop(client: TestClient, repository, monkeypatch) -> None:
    job = _upload(client)
    lookups = []
    original = repository.get_job

    def recording_get_job(*args, **kwargs):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            lookups.append("worker")
        else:
            lookups.append("event-loop")
        return original(*args, **kwargs)

    monkeypatch.setattr(repository, "get_job", recording_get_job)

    assert client.get(f"/api/transcription/{job['id']}").status_code == 200
    assert client.patch(f"/api/transcription/{job['id']}", json={"title": "Entropy"}).status_code == 200
    assert client.post(f"/api/transcription/{job['id']}/quiz").status_code == 400

    assert lookups
    assert set(lookups) == {"worker"}
