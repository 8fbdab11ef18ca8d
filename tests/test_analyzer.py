import math

import pytest

from ab_engine.services.analyzer import (
    compare_variants,
    confidence_interval,
    conversion_rate,
    determine_winner,
    recommend,
    relative_lift,
    significance,
    summarize,
)


def expected_significance(pc, nc, pv, nv):
    se = math.sqrt(pc * (1 - pc) / nc + pv * (1 - pv) / nv)
    z = abs(pv - pc) / se
    return min(99.9, (1 - math.exp(-z * z / 2)) * 100)


def test_conversion_rate_empty_variant_is_zero():
    assert conversion_rate(0, 0) == 0.0
    assert conversion_rate(5, 50) == pytest.approx(0.1)


def test_confidence_interval_empty_sample():
    assert confidence_interval(0.0, 0) == (0.0, 0.0)
    assert confidence_interval(0.4, 0) == (0.0, 0.0)


@pytest.mark.parametrize("rate,n", [(0.0, 10), (1.0, 10), (0.5, 1), (0.02, 40), (0.97, 25), (0.1, 500)])
def test_confidence_interval_bounds_contain_estimate(rate, n):
    low, high = confidence_interval(rate, n)
    assert 0.0 <= low <= rate <= high <= 1.0


def test_confidence_interval_wald_margin():
    low, high = confidence_interval(0.1, 500)
    margin = 1.96 * math.sqrt(0.1 * 0.9 / 500)
    assert low == pytest.approx(0.1 - margin)
    assert high == pytest.approx(0.1 + margin)


def test_significance_formula():
    assert significance(0.10, 500, 0.15, 500) == pytest.approx(expected_significance(0.10, 500, 0.15, 500))


def test_significance_zero_standard_error():
    assert significance(0.0, 100, 0.0, 100) == 0.0
    assert significance(1.0, 100, 1.0, 100) == 0.0


def test_significance_empty_arm():
    assert significance(0.1, 0, 0.2, 100) == 0.0
    assert significance(0.1, 100, 0.0, 0) == 0.0


def test_significance_is_capped():
    assert significance(0.05, 10000, 0.5, 10000) == 99.9


def test_relative_lift():
    assert relative_lift(0.10, 0.15) == pytest.approx(50.0)
    assert relative_lift(0.20, 0.10) == pytest.approx(-50.0)
    assert relative_lift(0.0, 0.3) == 0.0


def test_recommendation_thresholds():
    assert recommend(50, 99.9) == "insufficient_data"
    assert recommend(99, 99.9) == "insufficient_data"
    assert recommend(1500, 97.0) == "conclude"
    assert recommend(1000, 95.0) == "conclude"
    assert recommend(500, 80.0) == "continue"
    assert recommend(500, 99.0) == "continue"
    assert recommend(1500, 94.9) == "continue"


def test_compare_variants_scenario():
    results = compare_variants(["A", "B"], {"A": 500, "B": 500}, {"A": 50, "B": 75})
    control, treatment = results

    assert control.conversion_rate == pytest.approx(0.10)
    assert treatment.conversion_rate == pytest.approx(0.15)
    assert control.statistical_significance == 0.0
    assert control.relative_improvement == 0.0
    assert treatment.relative_improvement == pytest.approx(50.0)
    assert treatment.statistical_significance == pytest.approx(expected_significance(0.10, 500, 0.15, 500))

    analytics = summarize("t", results)
    assert analytics.total_participants == 1000
    # About 94.3: close, but under the winner threshold
    assert analytics.confidence_level < 95
    assert analytics.winner is None
    assert analytics.recommendation == "continue"


def test_compare_variants_missing_variant_counts_as_empty():
    control, treatment = compare_variants(["A", "B"], {"A": 10}, {})
    assert treatment.sample_size == 0
    assert treatment.conversion_rate == 0.0
    assert treatment.confidence_interval == [0.0, 0.0]
    assert treatment.statistical_significance == 0.0


def test_winner_is_best_significant_variant():
    results = compare_variants(
        ["A", "B", "C"],
        {"A": 2000, "B": 2000, "C": 2000},
        {"A": 100, "B": 300, "C": 400},
    )
    assert all(r.statistical_significance >= 95 for r in results[1:])
    assert determine_winner(results) == "C"

    analytics = summarize("t", results)
    assert analytics.winner == "C"
    assert analytics.confidence_level == max(r.statistical_significance for r in results)
    assert analytics.recommendation == "conclude"


def test_no_winner_below_threshold():
    results = compare_variants(["A", "B"], {"A": 40, "B": 40}, {"A": 4, "B": 5})
    assert determine_winner(results) is None
    assert summarize("t", results).recommendation == "insufficient_data"
