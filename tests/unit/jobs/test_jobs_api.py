from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from src.optimizer.config import AppConfig, build_database
from src.optimizer.main import create_app
from tests.mocks.backends import MockDestinationClient, MockProcessingBackend

pytestmark = pytest.mark.unit

CATALOG = [
    {
        "id": "p-1",
        "title": "Sneakers",
        "images": [
            {"id": "p-1-a", "src": "https://cdn.shop.test/p-1/a.jpg", "position": 1},
            {"id": "p-1-b", "src": "https://cdn.shop.test/p-1/b.jpg", "position": 2},
            {"id": "p-1-c", "src": "https://cdn.shop.test/p-1/logo.svg", "position": 3},
        ],
    },
    {
        "id": "p-2",
        "title": "Boots",
        "images": [
            {"id": "p-2-a", "src": "https://cdn.shop.test/p-2/a.jpg", "position": 1},
            {
                "id": "p-2-b",
                "src": "https://cdn.shop.test/p-2/b.jpg",
                "position": 2,
                "already_processed": True,
            },
        ],
    },
]


def _job_request(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "owner_ref": "shop-1",
        "catalog": CATALOG,
        "selection": {"selected_items": ["p-1", "p-2"], "mode": "all"},
        "config": {"preset_id": "white-bg"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def destination() -> MockDestinationClient:
    return MockDestinationClient()


@pytest.fixture
def client(destination):
    config = AppConfig(
        dispatch_loop_enabled=False,
        dispatch_concurrency=1,
        presets={"white-bg": "Pure white background"},
        allowed_owner_refs=["shop-1"],
    )
    app = create_app(
        config,
        database=build_database("sqlite://"),
        backend=MockProcessingBackend(),
        destination=destination,
    )
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, **overrides: Any) -> dict[str, Any]:
    response = client.post("/api/jobs", json=_job_request(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def _failure_reason(response) -> str:
    return response.json()["detail"]["failure_reason"]


def test_create_job_returns_pending_job_and_exclusions(client: TestClient) -> None:
    body = _create(client)

    assert body["job"]["status"] == "pending"
    assert body["job"]["item_count"] == 3
    assert body["job"]["group_count"] == 2
    assert body["job"]["preset_type"] == "template"
    assert body["excluded_counts"] == {"unsupported_format": 1, "already_processed": 1}


def test_get_job_returns_items_and_stats(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]

    response = client.get(f"/api/jobs/{job_id}")

    assert response.status_code == 200
    body = response.json()
    assert [item["image_ref"] for item in body["items"]] == ["p-1-a", "p-1-b", "p-2-a"]
    assert body["stats"]["queued"] == 3
    assert body["deadline"] is None


@pytest.mark.parametrize(
    ("overrides", "status_code", "reason"),
    [
        ({"selection": {"selected_items": []}}, 400, "empty_selection"),
        ({"config": {}}, 400, "missing_config"),
        ({"config": {"preset_id": "white-bg", "ai_model": "unknown"}}, 400, "missing_config"),
        ({"owner_ref": "shop-2"}, 403, "unauthorized"),
    ],
)
def test_create_job_rejections(client: TestClient, overrides, status_code: int, reason: str) -> None:
    response = client.post("/api/jobs", json=_job_request(**overrides))

    assert response.status_code == status_code
    assert _failure_reason(response) == reason


def test_unknown_job_is_404(client: TestClient) -> None:
    response = client.get("/api/jobs/missing")

    assert response.status_code == 404
    assert _failure_reason(response) == "not_found"


def test_approving_pending_job_is_conflict(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]

    response = client.post(f"/api/jobs/{job_id}/approve")

    assert response.status_code == 409
    assert _failure_reason(response) == "invalid_transition"


def test_full_preview_flow(client: TestClient, destination: MockDestinationClient) -> None:
    job_id = _create(client)["job"]["id"]

    dispatched = client.post(f"/api/jobs/{job_id}/dispatch").json()
    assert len(dispatched["accepted"]) == 3
    for index, item_id in enumerate(dispatched["accepted"]):
        callback = client.post(
            "/api/callbacks/processing",
            json={
                "item_id": item_id,
                "success": index < 2,
                "result_ref": f"https://results.test/{item_id}.png",
                "error_message": None if index < 2 else "Model timeout",
            },
        )
        assert callback.status_code == 200

    detail = client.get(f"/api/jobs/{job_id}").json()
    assert detail["job"]["status"] == "awaiting_approval"
    assert detail["deadline"]["is_expired"] is False
    assert detail["deadline"]["remaining_ms"] > 0

    approved = client.post(f"/api/jobs/{job_id}/approve").json()
    assert approved["job"]["status"] == "approved"
    assert approved["stats"]["approved"] == 2

    pushed = client.post(f"/api/jobs/{job_id}/push").json()
    assert pushed == {"pushed_count": 2, "failed_count": 0}
    assert len(destination.pushed) == 2

    final = client.get(f"/api/jobs/{job_id}").json()
    assert final["job"]["status"] == "completed"
    assert final["job"]["pushed_count"] == 2
    assert final["job"]["failed_count"] == 1


def test_retry_endpoints(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]
    accepted = client.post(f"/api/jobs/{job_id}/dispatch").json()["accepted"]
    for item_id in accepted:
        client.post(
            "/api/callbacks/processing",
            json={"item_id": item_id, "success": False, "error_message": "Model timeout"},
        )
    assert client.get(f"/api/jobs/{job_id}").json()["job"]["status"] == "failed"

    single = client.post(f"/api/items/{accepted[0]}/retry")
    assert single.status_code == 200
    assert single.json()["status"] == "queued"
    assert single.json()["attempt_number"] == 2

    bulk = client.post(f"/api/jobs/{job_id}/retry-failed").json()
    assert bulk == {"count": 2, "held_back": {}}
    assert client.get(f"/api/jobs/{job_id}").json()["stats"]["queued"] == 3


def test_retrying_non_failed_item_is_conflict(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]
    item_id = client.post(f"/api/jobs/{job_id}/dispatch").json()["accepted"][0]

    response = client.post(f"/api/items/{item_id}/retry")

    assert response.status_code == 409
    assert _failure_reason(response) == "retry_not_permitted"


def test_pause_resume_and_cancel(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]

    assert client.post(f"/api/jobs/{job_id}/pause").json()["job"]["status"] == "paused"
    blocked = client.post(f"/api/jobs/{job_id}/dispatch")
    assert blocked.status_code == 409
    assert client.post(f"/api/jobs/{job_id}/resume").json()["job"]["status"] == "pending"
    assert client.post(f"/api/jobs/{job_id}/cancel").json()["job"]["status"] == "cancelled"
    assert client.post(f"/api/jobs/{job_id}/cancel").status_code == 200


def test_queue_and_listing(client: TestClient) -> None:
    first = _create(client)["job"]["id"]
    second = _create(client)["job"]["id"]
    client.post(f"/api/jobs/{second}/cancel")

    queue = client.get("/api/queue", params={"owner_ref": "shop-1"}).json()
    assert {job["id"] for job in queue["jobs"]} == {first, second}
    assert queue["active_count"] == 1
    assert queue["counts_by_status"]["queued"] == 6

    filtered = client.get("/api/jobs", params={"status": "cancelled"}).json()
    assert [job["id"] for job in filtered["jobs"]] == [second]


def test_queue_requires_owner(client: TestClient) -> None:
    assert client.get("/api/queue").status_code == 422


def test_variants_only_with_model_images_excluded(client: TestClient) -> None:
    catalog = [
        {
            "id": "p-3",
            "title": "Scarf",
            "images": [
                {"id": "p-3-a", "src": "https://cdn.shop.test/p-3/a.jpg", "position": 1},
                {
                    "id": "p-3-b",
                    "src": "https://cdn.shop.test/p-3/b.jpg",
                    "position": 2,
                    "alt": "Scarf worn by a model",
                },
                {"id": "p-3-c", "src": "https://cdn.shop.test/p-3/c.jpg", "position": 3},
            ],
        }
    ]
    selection = {"selected_items": ["p-3"], "mode": "variants_only", "exclude_model_images": True}

    body = _create(client, catalog=catalog, selection=selection)

    assert body["job"]["item_count"] == 1
    assert body["excluded_counts"] == {"model_image": 1}
    detail = client.get(f"/api/jobs/{body['job']['id']}").json()
    assert [item["image_ref"] for item in detail["items"]] == ["p-3-c"]


def test_discard_job_deletes_it(client: TestClient) -> None:
    job_id = _create(client)["job"]["id"]

    response = client.delete(f"/api/jobs/{job_id}")

    assert response.status_code == 204
    assert client.get(f"/api/jobs/{job_id}").status_code == 404
    again = client.delete(f"/api/jobs/{job_id}")
    assert again.status_code == 404
    assert _failure_reason(again) == "not_found"
