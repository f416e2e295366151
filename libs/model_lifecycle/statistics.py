"""
Two-proportion z-test for comparing production and candidate accuracy.

The standard normal CDF uses the Zelen & Severo polynomial approximation
(Abramowitz & Stegun 26.2.17) with fixed coefficients so p-values are
reproducible across platforms; absolute error is below 7.5e-8.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from typing import Any

from libs.common.exceptions import InsufficientDataError
from libs.model_lifecycle.types import ComparisonResult

logger = logging.getLogger(__name__)

DEFAULT_SIGNIFICANCE_LEVEL = 0.05
CI_Z_95 = 1.96

_P = 0.2316419
_B = (0.3193815, -0.3565638, 1.781478, -1.821256, 1.330274)
_DENSITY = 0.3989423


def normal_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    t = 1.0 / (1.0 + _P * abs(x))
    d = _DENSITY * math.exp(-x * x / 2.0)
    poly = t * (_B[0] + t * (_B[1] + t * (_B[2] + t * (_B[3] + t * _B[4]))))
    tail = d * poly
    return 1.0 - tail if x > 0 else tail


def two_tailed_p_value(z: float) -> float:
    p = 2.0 * (1.0 - normal_cdf(abs(z)))
    return min(1.0, max(0.0, p))


def _as_outcome(item: Any) -> bool | None:
    if isinstance(item, bool):
        return item
    if isinstance(item, Mapping):
        value = item.get("correct")
    else:
        value = getattr(item, "correct", item)
    return None if value is None else bool(value)


def count_outcomes(outcomes: Iterable[Any]) -> tuple[int, int]:
    """Return ``(n, correct)``; items whose correctness is unknown are skipped."""
    n = correct = 0
    for item in outcomes:
        value = _as_outcome(item)
        if value is None:
            continue
        n += 1
        correct += int(value)
    return n, correct


class StatisticalComparator:
    """Pure two-proportion comparison of binary outcomes.

    Each arm is an iterable of booleans, or of objects/mappings exposing a
    boolean ``correct``.
    """

    def __init__(self, significance_level: float = DEFAULT_SIGNIFICANCE_LEVEL) -> None:
        if not 0.0 < significance_level < 1.0:
            raise ValueError(f"significance_level must be in (0, 1), got {significance_level}")
        self.significance_level = significance_level

    def compare(
        self,
        production: Iterable[Any],
        candidate: Iterable[Any],
        *,
        strict: bool = False,
    ) -> ComparisonResult:
        """Compare candidate accuracy against production.

        An empty arm yields ``insufficient_data=True`` and
        ``significant=False``, or raises when ``strict``.

        Raises:
            InsufficientDataError: If an arm is empty and ``strict`` is set.
        """
        n_a, correct_a = count_outcomes(production)
        n_b, correct_b = count_outcomes(candidate)

        acc_a = correct_a / n_a if n_a else 0.0
        acc_b = correct_b / n_b if n_b else 0.0
        difference = acc_b - acc_a
        percent_improvement = difference / acc_a * 100.0 if acc_a > 0 else None

        if n_a == 0 or n_b == 0:
            reason = (
                f"Insufficient data: production has {n_a} and candidate has {n_b} "
                "resolved predictions"
            )
            if strict:
                raise InsufficientDataError(reason)
            logger.warning(
                "Comparison run with an empty arm",
                extra={"production_n": n_a, "candidate_n": n_b},
            )
            return ComparisonResult(
                production_n=n_a,
                candidate_n=n_b,
                production_correct=correct_a,
                candidate_correct=correct_b,
                production_accuracy=acc_a,
                candidate_accuracy=acc_b,
                accuracy_difference=difference,
                percent_improvement=percent_improvement,
                standard_error=0.0,
                z_score=0.0,
                p_value=1.0,
                confidence_interval=(difference, difference),
                significance_level=self.significance_level,
                significant=False,
                insufficient_data=True,
                reason=reason,
            )

        pooled = (correct_a + correct_b) / (n_a + n_b)
        se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n_a + 1.0 / n_b))
        z = difference / se if se > 0 else 0.0
        p_value = two_tailed_p_value(z)
        significant = p_value < self.significance_level

        result = ComparisonResult(
            production_n=n_a,
            candidate_n=n_b,
            production_correct=correct_a,
            candidate_correct=correct_b,
            production_accuracy=acc_a,
            candidate_accuracy=acc_b,
            accuracy_difference=difference,
            percent_improvement=percent_improvement,
            standard_error=se,
            z_score=z,
            p_value=p_value,
            confidence_interval=(difference - CI_Z_95 * se, difference + CI_Z_95 * se),
            significance_level=self.significance_level,
            significant=significant,
        )
        logger.debug(
            "Compared arms",
            extra={
                "production_accuracy": acc_a,
                "candidate_accuracy": acc_b,
                "z_score": z,
                "p_value": p_value,
                "significant": significant,
            },
        )
        return result
