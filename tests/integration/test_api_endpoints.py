import asyncio

from fastapi.testclient import TestClient
import pytest

from intake.api.http_app import build_app
from intake.domain.duplicates import DuplicateDetector
from intake.roles import ROLE_TUBES, validate_role
from intake.services.bootstrap import build_runtime_container
from intake.workers.handlers.deps import WorkerDeps
from intake.workers.loop import WorkerLoop
from tests.integration.pipeline_support import CSV_HEADER, csv_line, drain, student


def _api_app_and_container(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    role = validate_role("api")
    container = build_runtime_container(role)
    app = build_app(
        role=role.name,
        run_id="integration-api",
        worker_loops=container.worker_loops,
        api_deps=container.api_deps,
    )
    return app, container


def _worker_for(container, role: str) -> WorkerLoop:
    return WorkerLoop(
        role=role,
        worker_id=f"{role}-test",
        tubes=ROLE_TUBES[role],
        queue=container.queue,
        deps=WorkerDeps(
            store=container.store,
            detector=DuplicateDetector(store=container.store),
            events=container.events,
        ),
        reserve_timeout_ms=0,
    )


@pytest.mark.integration
def test_health_and_ready_for_api_role(monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = _api_app_and_container(monkeypatch)

    with TestClient(app) as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "role": "api", "mode": "pipeline"}
    assert ready.status_code == 200
    body = ready.json()
    assert body["worker_loop_enabled"] is False
    assert body["worker_loop_ready"] is True
    assert body["worker_concurrency"] == 0


@pytest.mark.integration
def test_submission_is_queued_then_processed(monkeypatch: pytest.MonkeyPatch) -> None:
    app, container = _api_app_and_container(monkeypatch)

    with TestClient(app) as client:
        created = client.post(
            "/submissions",
            json={"source": "form", "operation": "create", "data": student("api@example.com")},
            headers={"user-agent": "intake-tests"},
        )
        assert created.status_code == 202
        body = created.json()
        assert body["status"] == "queued"
        assert body["tube"] == "form_submissions"
        submission_id = body["submission_ids"][0]

        queued = client.get(f"/submissions/{submission_id}")
        assert queued.status_code == 200
        assert queued.json()["status"] == "queued"

        asyncio.run(drain(_worker_for(container, "worker-submissions")))

        done = client.get(f"/submissions/{submission_id}")
        assert done.json()["status"] == "completed"
        assert done.json()["person_id"].startswith("per_")
        assert done.json()["processed_at"] is not None

        listed = client.get("/submissions", params={"status": "completed", "email": "API@example.com"})
        assert [item["submission_id"] for item in listed.json()["items"]] == [submission_id]

        stats = client.get("/stats").json()
        assert stats["by_status"]["completed"] == 1
        assert stats["by_source"]["form"] == 1
        assert {queue["tube"] for queue in stats["queues"]} == {"form_submissions", "api_submissions", "csv_jobs"}

        notifications = client.get("/notifications").json()
        assert notifications["unread_count"] == 1
        assert notifications["items"][0]["title"] == "Form Submission Processed"

    snapshot = asyncio.run(container.store.get_submission(submission_id=submission_id))
    assert snapshot is not None
    assert snapshot.user_agent == "intake-tests"


@pytest.mark.integration
def test_csv_upload_endpoint_enqueues_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    app, container = _api_app_and_container(monkeypatch)
    content = "\n".join([CSV_HEADER, csv_line("Ada", "ada@example.com"), csv_line("Grace", "grace@example.com")])

    with TestClient(app) as client:
        response = client.post(
            "/submissions/csv",
            files={"file": ("students.csv", content.encode("utf-8"), "text/csv")},
            data={"operation": "create"},
        )
        assert response.status_code == 202
        body = response.json()
        assert body["tube"] == "csv_jobs"
        assert len(body["submission_ids"]) == 2

        asyncio.run(drain(_worker_for(container, "worker-csv")))

        batch = client.get("/submissions", params={"batch_id": body["item_id"]}).json()["items"]
        assert sorted(item["csv_row"] for item in batch) == [1, 2]
        assert {item["status"] for item in batch} == {"completed"}


@pytest.mark.integration
def test_notifications_can_be_marked_read_and_cleared(monkeypatch: pytest.MonkeyPatch) -> None:
    app, container = _api_app_and_container(monkeypatch)
    content = "\n".join([CSV_HEADER, csv_line("Ada", "ada@example.com"), csv_line("Grace", "grace@example.com")])

    with TestClient(app) as client:
        upload = client.post("/submissions/csv", files={"file": ("students.csv", content.encode("utf-8"), "text/csv")})
        assert upload.status_code == 202
        started = client.get("/notifications").json()
        assert started["unread_count"] == 1
        assert started["items"][0]["title"] == "CSV Upload Started"
        assert started["items"][0]["message"] == "Processing students.csv with 2 rows"

        asyncio.run(drain(_worker_for(container, "worker-csv")))
        listing = client.get("/notifications").json()
        assert listing["unread_count"] == 4
        first, second = listing["items"][0]["notification_id"], listing["items"][1]["notification_id"]

        marked = client.post(f"/notifications/{first}/read")
        assert marked.status_code == 200
        assert marked.json() == {"message": "Notification marked as read", "affected": 1, "unread_count": 3}

        missing = client.post("/notifications/ntf_01ARZ3NDEKTSV4RRFFQ69G5FAV/read")
        assert missing.status_code == 404

        cleared = client.delete("/notifications/read")
        assert cleared.json() == {"message": "Cleared 1 read notifications", "affected": 1, "unread_count": 3}

        everything = client.post("/notifications/read-all")
        assert everything.json() == {"message": "Marked 3 notifications as read", "affected": 3, "unread_count": 0}

        deleted = client.delete(f"/notifications/{second}")
        assert deleted.status_code == 200
        assert deleted.json()["message"] == "Notification deleted"
        assert client.delete(f"/notifications/{second}").status_code == 404
        assert client.delete("/notifications/not-an-id").status_code == 422

        remaining = client.get("/notifications").json()
        assert len(remaining["items"]) == 2
        assert all(item["is_read"] for item in remaining["items"])


@pytest.mark.integration
def test_request_errors_map_to_http_statuses(monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = _api_app_and_container(monkeypatch)

    with TestClient(app) as client:
        unsupported = client.post("/submissions", json={"operation": "upsert", "data": student("x@example.com")})
        assert unsupported.status_code == 400
        assert "Unsupported operation 'upsert'" in unsupported.json()["detail"]

        empty_csv = client.post("/submissions/csv", files={"file": ("empty.csv", b"", "text/csv")})
        assert empty_csv.status_code == 400

        header_only = client.post("/submissions/csv", files={"file": ("h.csv", CSV_HEADER.encode(), "text/csv")})
        assert header_only.status_code == 400
        assert header_only.json()["detail"] == "CSV file contains no data rows"

        missing = client.get("/submissions/sub_01ARZ3NDEKTSV4RRFFQ69G5FAV")
        assert missing.status_code == 404

        malformed_id = client.get("/submissions/not-an-id")
        assert malformed_id.status_code == 422


@pytest.mark.integration
def test_requeue_endpoint_only_accepts_failed_submissions(monkeypatch: pytest.MonkeyPatch) -> None:
    app, container = _api_app_and_container(monkeypatch)

    with TestClient(app) as client:
        invalid = client.post("/submissions", json={"operation": "create", "data": {"email": "nobody@example.com"}})
        submission_id = invalid.json()["submission_ids"][0]

        too_early = client.post(f"/submissions/{submission_id}/requeue")
        assert too_early.status_code == 409

        asyncio.run(drain(_worker_for(container, "worker-submissions")))
        failed = client.get(f"/submissions/{submission_id}").json()
        assert failed["status"] == "failed"
        assert failed["error_code"] == "validation_error"

        requeued = client.post(f"/submissions/{submission_id}/requeue")
        assert requeued.status_code == 200
        assert requeued.json()["status"] == "queued"
        assert requeued.json()["error_message"] is None

        unknown = client.post("/submissions/sub_01ARZ3NDEKTSV4RRFFQ69G5FAV/requeue")
        assert unknown.status_code == 404


@pytest.mark.integration
def test_endpoints_report_unavailable_without_dependencies() -> None:
    app = build_app(role="api", run_id="integration-no-deps")

    with TestClient(app) as client:
        response = client.get("/stats")
        health = client.get("/health")

    assert response.status_code == 503
    assert response.json()["detail"] == "api dependencies are not available"
    assert health.json()["mode"] == "skeleton"
