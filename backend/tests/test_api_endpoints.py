"""
Tests for the HTTP API.
"""

import json
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from retrainer.main import create_app
from retrainer.services.asset_storage import ConsolidatedStorage

from helpers import BlockingTrainer, wait_for

API = "/api/v1"


@pytest.fixture
def trainer() -> Generator[BlockingTrainer, None, None]:
    instance = BlockingTrainer()
    yield instance
    instance.release.set()


@pytest.fixture
def blocking_client(
    storage: ConsolidatedStorage,
    session_factory: sessionmaker,
    trainer: BlockingTrainer,
) -> Generator[TestClient, None, None]:
    """Client whose training function blocks until released."""
    app = create_app(
        train_fn=trainer,
        storage=storage,
        db_session_factory=session_factory,
        init_database=False,
    )

    with TestClient(app) as test_client:
        yield test_client
        trainer.release.set()


def _history_total(client: TestClient) -> int:
    return client.get(f"{API}/training/status").json()["history"]["total"]


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client: TestClient):
        """Test the health check responds."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestTrainingEndpoints:
    """Tests for /training."""

    def test_status_when_idle(self, client: TestClient):
        """Test the status snapshot of an idle scheduler."""
        response = client.get(f"{API}/training/status")

        assert response.status_code == 200
        data = response.json()
        assert data["active"]["count"] == 0
        assert data["queued"]["count"] == 0
        assert data["is_running"] is True

    def test_can_train(self, client: TestClient):
        """Test admission check for a fresh pair."""
        response = client.get(f"{API}/training/can-train/btcusdt/LSTM")

        assert response.status_code == 200
        assert response.json()["allowed"] is True

    def test_can_train_unknown_variant(self, client: TestClient):
        """Test an unknown variant is a bad request."""
        response = client.get(f"{API}/training/can-train/BTCUSDT/xgboost")

        assert response.status_code == 400

    def test_train_variant_runs_and_persists(self, client: TestClient, fake_train_fn):
        """Test a queued job runs and its weights land in storage."""
        response = client.post(f"{API}/training/btcusdt/lstm", json={"config": {"epochs": 2}})

        assert response.status_code == 202
        result = response.json()["results"][0]
        assert result["status"] == "queued"
        assert result["priority"] == 3
        assert wait_for(lambda: _history_total(client) == 1)

        assert fake_train_fn.calls == [("BTCUSDT", "lstm", {"epochs": 2})]
        asset = client.get(f"{API}/storage/assets/BTCUSDT").json()
        assert asset["models"]["lstm"]["has_weights"] is True
        assert asset["training"]["total_sessions"] == 1

    def test_duplicate_request_conflicts(self, client: TestClient):
        """Test a pair that is queued, active or cooling down returns 409."""
        assert client.post(f"{API}/training/BTCUSDT/lstm").status_code == 202

        response = client.post(f"{API}/training/BTCUSDT/lstm")

        assert response.status_code == 409
        assert response.json()["detail"]["reason"] in {
            "Already queued",
            "Already active",
            "Cooldown active",
        }

    def test_train_all_variants(self, client: TestClient):
        """Test a subject-only request queues every enabled variant."""
        response = client.post(f"{API}/training/ETHUSDT")

        assert response.status_code == 202
        results = response.json()["results"]
        assert [r["variant"] for r in results] == ["lstm", "gru", "cnn", "transformer"]
        assert all(r["status"] == "queued" for r in results)

    def test_train_unknown_variant(self, client: TestClient):
        """Test a request for an unknown variant is a bad request."""
        response = client.post(f"{API}/training/BTCUSDT/xgboost")

        assert response.status_code == 400

    def test_train_without_training_function(self, client_without_trainer: TestClient):
        """Test training is unavailable without a training function."""
        response = client_without_trainer.post(f"{API}/training/BTCUSDT/lstm")

        assert response.status_code == 503

    def test_cancel_unknown_job(self, client: TestClient):
        """Test cancelling an unknown job returns 404."""
        response = client.delete(f"{API}/training/jobs/NOPE_lstm_1")

        assert response.status_code == 404

    def test_cancel_queued_job(self, blocking_client: TestClient, trainer: BlockingTrainer):
        """Test a queued job is removed and retired as cancelled."""
        blocking_client.post(f"{API}/training/BTCUSDT/lstm")
        assert trainer.started.wait(timeout=5)
        queued = blocking_client.post(f"{API}/training/BTCUSDT/gru").json()["results"][0]

        response = blocking_client.request(
            "DELETE",
            f"{API}/training/jobs/{queued['job_id']}",
            json={"reason": "Not needed"},
        )

        assert response.status_code == 200
        assert response.json()["reason"] == "Not needed"
        status = blocking_client.get(f"{API}/training/status").json()
        assert status["queued"]["count"] == 0
        assert status["history"]["recent"][0]["state"] == "cancelled"
        assert status["history"]["recent"][0]["cancel_reason"] == "Not needed"

    def test_emergency_stop(self, blocking_client: TestClient, trainer: BlockingTrainer):
        """Test emergency stop cancels queued jobs and flags active ones."""
        blocking_client.post(f"{API}/training/BTCUSDT/lstm")
        assert trainer.started.wait(timeout=5)
        blocking_client.post(f"{API}/training/BTCUSDT/gru")

        response = blocking_client.post(f"{API}/training/emergency-stop")

        assert response.status_code == 200
        data = response.json()
        assert data["queued_jobs_cancelled"] == 1
        assert data["active_jobs_marked"] == 1
        assert data["periodic_training_stopped"] is False

    def test_clear_cooldowns(self, client: TestClient):
        """Test clearing cooldowns re-admits a trained pair."""
        client.post(f"{API}/training/BTCUSDT/lstm")
        assert wait_for(lambda: _history_total(client) == 1)
        assert client.get(f"{API}/training/can-train/BTCUSDT/lstm").json()["reason"] == "Cooldown active"

        response = client.post(f"{API}/training/clear-cooldowns")

        assert response.status_code == 200
        assert response.json()["cleared"] == 1
        assert client.get(f"{API}/training/can-train/BTCUSDT/lstm").json()["allowed"] is True

    def test_clear_single_cooldown(self, client: TestClient):
        """Test clearing a pair without a cooldown reports nothing cleared."""
        response = client.post(
            f"{API}/training/clear-cooldowns",
            json={"subject": "BTCUSDT", "variant": "lstm"},
        )

        assert response.status_code == 200
        assert response.json()["cleared"] == 0

    def test_periodic_run_now(self, client: TestClient):
        """Test an on-demand periodic cycle queues work for the provided subjects."""
        response = client.post(f"{API}/training/periodic/run-now")

        assert response.status_code == 200
        data = response.json()
        assert data["skipped_cycle"] is False
        assert data["subjects_processed"] == 2

    def test_periodic_run_now_unavailable(self, client_without_trainer: TestClient):
        """Test run-now without a periodic trainer returns 503."""
        response = client_without_trainer.post(f"{API}/training/periodic/run-now")

        assert response.status_code == 503


class TestStorageEndpoints:
    """Tests for /storage."""

    def test_stats_empty(self, client: TestClient):
        """Test statistics of an empty storage."""
        response = client.get(f"{API}/storage/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["document_count"] == 0
        assert data["legacy_data_present"] is False

    def test_assets_listing(self, client: TestClient, storage: ConsolidatedStorage):
        """Test stored subjects are listed."""
        storage.save_training_history("BTCUSDT", {"timestamp": 1_700_000_000_000, "loss": 0.2})

        response = client.get(f"{API}/storage/assets")

        assert response.status_code == 200
        assert [a["subject"] for a in response.json()] == ["BTCUSDT"]
        assert response.json()[0]["training_sessions"] == 1

    def test_unknown_asset(self, client: TestClient):
        """Test a subject without a document returns 404."""
        response = client.get(f"{API}/storage/assets/NOPE")

        assert response.status_code == 404

    def test_cleanup(self, client: TestClient):
        """Test cleanup with an explicit retention window."""
        response = client.post(f"{API}/storage/cleanup", json={"max_age_hours": 24})

        assert response.status_code == 200
        assert response.json()["max_age_hours"] == 24

    def test_cleanup_rejects_invalid_window(self, client: TestClient):
        """Test a non-positive retention window is rejected."""
        response = client.post(f"{API}/storage/cleanup", json={"max_age_hours": 0})

        assert response.status_code == 422

    def test_force_save(self, client: TestClient):
        """Test force save responds with the number of saved documents."""
        response = client.post(f"{API}/storage/save")

        assert response.status_code == 200
        assert response.json()["message"] == "Force save completed"

    def test_migrate(self, client: TestClient, storage_dir: Path):
        """Test legacy files are migrated on request."""
        legacy = storage_dir / "predictions" / "btcusdt_predictions.json"
        legacy.parent.mkdir(parents=True)
        legacy.write_text(
            json.dumps({"predictions": [{"signal": "buy"}], "timestamp": 1_690_000_000_000}),
            encoding="utf-8",
        )

        response = client.post(f"{API}/storage/migrate")

        assert response.status_code == 200
        data = response.json()
        assert data["migrated_assets"] == 1
        assert data["migrated_predictions"] == 1
