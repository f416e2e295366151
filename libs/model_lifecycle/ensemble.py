"""
Ensemble consensus: N model confidences -> BUY / HOLD.

A BUY requires every model to clear the individual threshold, the mean to
clear the average threshold, and the population standard deviation to stay
within the disagreement limit. HOLD carries the first failing clause in the
fixed order individual -> average -> disagreement.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from libs.common.exceptions import InsufficientDataError, StateError

if TYPE_CHECKING:
    from config.settings import Settings
    from libs.model_lifecycle.version_store import VersionStore

logger = logging.getLogger(__name__)

CHECK_INDIVIDUAL = "individual_confidence"
CHECK_AVERAGE = "average_confidence"
CHECK_DISAGREEMENT = "disagreement"


class Signal(str, Enum):
    BUY = "BUY"
    HOLD = "HOLD"


class Predictor(Protocol):
    """A loaded ensemble member."""

    def predict(self, features: Any) -> float:
        """Bullish confidence in [0, 1]."""
        ...


PredictorLoader = Callable[[Path], Predictor]


@dataclass(frozen=True)
class ConsensusConfig:
    min_individual_confidence: float = 0.45
    min_average_confidence: float = 0.50
    max_disagreement: float = 0.15

    @classmethod
    def from_settings(cls, settings: Settings) -> ConsensusConfig:
        return cls(
            min_individual_confidence=settings.min_individual_confidence,
            min_average_confidence=settings.min_average_confidence,
            max_disagreement=settings.max_disagreement,
        )


@dataclass(frozen=True)
class ConsensusSignal:
    """Consensus decision for one symbol."""

    symbol: str
    signal: Signal
    avg_confidence: float
    std_dev: float
    min_confidence: float
    max_confidence: float
    scores: tuple[float, ...]
    reason: str
    failed_check: str | None = None
    price: float | None = None
    model_version: str | None = None

    @property
    def is_buy(self) -> bool:
        return self.signal is Signal.BUY


class EnsembleConsensusEngine:
    """Applies the consensus rule to a set of loaded predictors."""

    def __init__(
        self,
        predictors: Sequence[Predictor] = (),
        config: ConsensusConfig | None = None,
        *,
        model_version: str | None = None,
    ) -> None:
        self.predictors = list(predictors)
        self.config = config or ConsensusConfig()
        self.model_version = model_version

    @classmethod
    def from_version_store(
        cls,
        store: VersionStore,
        loader: PredictorLoader,
        config: ConsensusConfig | None = None,
    ) -> EnsembleConsensusEngine:
        """Load every artifact of the current production version.

        Raises:
            StateError: If no production version is set.
        """
        version = store.get_production_version()
        if version is None:
            raise StateError("No production version set; cannot load ensemble")
        predictors = [loader(path) for path in version.artifact_paths]
        logger.info(
            "Loaded production ensemble",
            extra={"version_id": version.version_id, "num_models": len(predictors)},
        )
        return cls(predictors, config, model_version=version.version_id)

    def evaluate(self, scores: Sequence[float], symbol: str = "") -> ConsensusSignal:
        """Turn raw model confidences into a signal.

        Raises:
            InsufficientDataError: If ``scores`` is empty.
            ValueError: If any score is outside [0, 1] or not finite.
        """
        values = np.asarray(scores, dtype=float)
        if values.size == 0:
            raise InsufficientDataError("Consensus requires at least one model score")
        if not np.all(np.isfinite(values)) or np.any(values < 0.0) or np.any(values > 1.0):
            raise ValueError(f"Model scores must be within [0, 1], got {list(values)}")

        avg = float(np.mean(values))
        std = float(np.std(values))
        low = float(np.min(values))
        cfg = self.config

        if low < cfg.min_individual_confidence:
            failed, reason = CHECK_INDIVIDUAL, "Not all models agree"
        elif avg < cfg.min_average_confidence:
            failed, reason = CHECK_AVERAGE, "Average confidence too low"
        elif std > cfg.max_disagreement:
            failed, reason = CHECK_DISAGREEMENT, "High disagreement between models"
        else:
            failed, reason = None, "Strong consensus"

        return ConsensusSignal(
            symbol=symbol,
            signal=Signal.BUY if failed is None else Signal.HOLD,
            avg_confidence=avg,
            std_dev=std,
            min_confidence=low,
            max_confidence=float(np.max(values)),
            scores=tuple(float(v) for v in values),
            reason=reason,
            failed_check=failed,
            model_version=self.model_version,
        )

    def predict_symbol(self, symbol: str, features: Any, price: float | None = None) -> ConsensusSignal:
        """Score ``features`` with every predictor and evaluate consensus."""
        if not self.predictors:
            raise InsufficientDataError("No predictors loaded")
        scores = [float(p.predict(features)) for p in self.predictors]
        signal = self.evaluate(scores, symbol)
        if price is not None:
            signal = replace(signal, price=price)
        logger.debug(
            "Consensus evaluated",
            extra={
                "symbol": symbol,
                "signal": signal.signal.value,
                "avg_confidence": signal.avg_confidence,
                "std_dev": signal.std_dev,
            },
        )
        return signal

    def predict_universe(
        self,
        features_by_symbol: Mapping[str, Any],
        prices: Mapping[str, float] | None = None,
    ) -> list[ConsensusSignal]:
        """Signals for every symbol, highest average confidence first."""
        prices = prices or {}
        signals = [
            self.predict_symbol(symbol, features, prices.get(symbol))
            for symbol, features in features_by_symbol.items()
        ]
        signals.sort(key=lambda s: s.avg_confidence, reverse=True)
        buys = sum(1 for s in signals if s.is_buy)
        logger.info(
            "Universe scored",
            extra={"symbols": len(signals), "buy_signals": buys, "model_version": self.model_version},
        )
        return signals
