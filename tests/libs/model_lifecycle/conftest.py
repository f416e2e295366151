"""Shared fixtures for model lifecycle tests."""

import itertools
import json
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from libs.model_lifecycle.shadow import ShadowTestManager
from libs.model_lifecycle.state_store import JsonFileStateStore
from libs.model_lifecycle.types import ModelVersion, ShadowPrediction
from libs.model_lifecycle.version_store import VersionStore

SEED_TIME = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)


@pytest.fixture
def make_artifacts(tmp_path: Path) -> Callable[..., list[Path]]:
    """Factory creating ``n`` fake trained-model directories."""
    counter = itertools.count(1)

    def _make(n: int = 3) -> list[Path]:
        batch = next(counter)
        paths = []
        for i in range(1, n + 1):
            model_dir = tmp_path / "artifacts" / f"run-{batch}" / f"member{i}"
            model_dir.mkdir(parents=True)
            (model_dir / "model.json").write_text(json.dumps({"weights": [batch, i]}))
            paths.append(model_dir)
        return paths

    return _make


@pytest.fixture
def store(tmp_path: Path) -> VersionStore:
    return VersionStore(tmp_path / "store", provenance_provider=None)


@pytest.fixture
def shadow_state(tmp_path: Path) -> JsonFileStateStore:
    return JsonFileStateStore(tmp_path / "state" / "shadow-tests.json")


@pytest.fixture
def shadow_manager(store: VersionStore, shadow_state: JsonFileStateStore) -> ShadowTestManager:
    return ShadowTestManager(store, shadow_state)


@pytest.fixture
def production_and_candidate(store: VersionStore, make_artifacts) -> tuple[ModelVersion, ModelVersion]:
    """Two stored versions with the first one in production."""
    production = store.save_version(make_artifacts(2), {"avg_accuracy": 0.71})
    candidate = store.save_version(make_artifacts(2), {"avg_accuracy": 0.74})
    store.set_production(production.version_id, changed_by="setup")
    return production, candidate


@pytest.fixture
def seed_arm(shadow_state: JsonFileStateStore) -> Callable[..., None]:
    """Bulk-append unresolved predictions to one arm of a stored shadow test.

    The first ``correct`` predictions are bullish and the rest bearish, so
    resolving ``symbol`` as bullish yields ``correct / total`` accuracy.
    """

    def _seed(test_id: str, arm: str, correct: int, total: int, symbol: str = "SPY") -> None:
        with shadow_state.transaction() as state:
            test = next(t for t in state["tests"] if t["test_id"] == test_id)
            test["predictions"][arm].extend(
                ShadowPrediction(
                    timestamp=SEED_TIME,
                    symbol=symbol,
                    predicted_label="bullish" if i < correct else "bearish",
                    confidence=0.6,
                ).model_dump(mode="json")
                for i in range(total)
            )

    return _seed
