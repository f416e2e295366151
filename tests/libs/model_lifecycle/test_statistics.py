"""Tests for the two-proportion z-test comparator."""

import pytest

from libs.common.exceptions import InsufficientDataError
from libs.model_lifecycle.statistics import (
    StatisticalComparator,
    count_outcomes,
    normal_cdf,
    two_tailed_p_value,
)


def _arm(correct: int, total: int) -> list[bool]:
    return [True] * correct + [False] * (total - correct)


class TestNormalCDF:
    @pytest.mark.parametrize(
        ("x", "expected"),
        [
            (0.0, 0.5),
            (1.0, 0.8413447),
            (1.96, 0.9750021),
            (-1.96, 0.0249979),
            (3.0, 0.9986501),
        ],
    )
    def test_known_values(self, x: float, expected: float) -> None:
        assert normal_cdf(x) == pytest.approx(expected, abs=1e-6)

    def test_symmetry(self) -> None:
        for x in (0.3, 1.1, 2.5):
            assert normal_cdf(x) + normal_cdf(-x) == pytest.approx(1.0, abs=1e-12)

    def test_p_value_is_clamped(self) -> None:
        assert 0.0 <= two_tailed_p_value(0.0) <= 1.0
        assert two_tailed_p_value(0.0) == pytest.approx(1.0, abs=1e-5)
        assert two_tailed_p_value(40.0) == pytest.approx(0.0, abs=1e-12)


def test_count_outcomes_accepts_mixed_inputs() -> None:
    class Obj:
        def __init__(self, correct):
            self.correct = correct

    items = [True, False, {"correct": True}, {"correct": None}, Obj(True), Obj(None)]

    assert count_outcomes(items) == (4, 3)


def test_compare_identical_arms_is_not_significant() -> None:
    arm = _arm(60, 100)

    result = StatisticalComparator().compare(arm, list(arm))

    assert result.accuracy_difference == 0.0
    assert result.z_score == 0.0
    assert result.p_value == pytest.approx(1.0, abs=1e-5)
    assert result.significant is False
    assert result.insufficient_data is False


def test_compare_large_improvement_is_significant() -> None:
    result = StatisticalComparator().compare(_arm(600, 1000), _arm(680, 1000))

    assert result.production_accuracy == pytest.approx(0.60)
    assert result.candidate_accuracy == pytest.approx(0.68)
    assert result.accuracy_difference == pytest.approx(0.08)
    assert result.percent_improvement == pytest.approx(13.333, abs=1e-3)
    assert result.z_score == pytest.approx(3.727, abs=1e-3)
    assert result.p_value < 0.001
    assert result.significant is True
    low, high = result.confidence_interval
    assert low == pytest.approx(0.08 - 1.96 * result.standard_error)
    assert high == pytest.approx(0.08 + 1.96 * result.standard_error)


def test_compare_small_sample_is_not_significant() -> None:
    result = StatisticalComparator().compare(_arm(60, 100), _arm(68, 100))

    assert result.z_score == pytest.approx(1.178, abs=1e-3)
    assert result.p_value == pytest.approx(0.2386, abs=1e-3)
    assert result.significant is False


def test_compare_negative_difference_has_negative_z() -> None:
    result = StatisticalComparator().compare(_arm(680, 1000), _arm(600, 1000))

    assert result.z_score < 0
    assert result.significant is True
    assert result.percent_improvement == pytest.approx(-11.765, abs=1e-3)


def test_compare_perfect_arms_has_zero_standard_error() -> None:
    result = StatisticalComparator().compare(_arm(10, 10), _arm(10, 10))

    assert result.standard_error == 0.0
    assert result.z_score == 0.0
    assert result.significant is False


def test_compare_empty_arm_reports_insufficient_data() -> None:
    result = StatisticalComparator().compare([], _arm(5, 10))

    assert result.insufficient_data is True
    assert result.significant is False
    assert result.p_value == 1.0
    assert result.reason == (
        "Insufficient data: production has 0 and candidate has 10 resolved predictions"
    )
    assert result.percent_improvement is None


def test_compare_empty_arm_strict_raises() -> None:
    with pytest.raises(InsufficientDataError):
        StatisticalComparator().compare(_arm(5, 10), [], strict=True)


def test_significance_level_is_configurable() -> None:
    production, candidate = _arm(60, 100), _arm(68, 100)

    assert StatisticalComparator(0.30).compare(production, candidate).significant is True
    with pytest.raises(ValueError):
        StatisticalComparator(1.5)
