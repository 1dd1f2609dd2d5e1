import random
from collections import Counter

import pytest

from crash_round.engine import GameConfig, generate_crash_point, multiplier_at


class ScriptedRandom:
    """random.Random stand-in that replays fixed draws."""

    def __init__(self, *values):
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


BUCKETS = [
    (1.0, 1.5, 0.36),
    (1.5, 2.0, 0.27),
    (2.0, 3.0, 0.27),
    (3.0, 10.0, 0.06),
    (10.0, 50.0, 0.03),
    (50.0, 200.0, 0.01),
]


def _bucket_of(value):
    for index, (low, high, _) in enumerate(BUCKETS):
        if low <= value < high:
            return index
    raise AssertionError(f"{value} outside every bucket")


def test_crash_point_never_below_one():
    rng = random.Random(7)
    samples = [generate_crash_point(rng) for _ in range(20_000)]
    assert min(samples) >= 1.0
    assert max(samples) < 200.0


def test_default_rng_needs_no_arguments():
    assert 1.0 <= generate_crash_point() < 200.0


def test_bucket_frequencies_match_house_edge_curve():
    rng = random.Random(2024)
    n = 200_000
    counts = Counter(_bucket_of(generate_crash_point(rng)) for _ in range(n))

    for index, (_, _, expected) in enumerate(BUCKETS):
        assert counts[index] / n == pytest.approx(expected, abs=0.006)


@pytest.mark.parametrize(
    "draws, expected",
    [
        ((0.10, 0.10, 0.0), 1.0),
        ((0.10, 0.39, 0.5), 1.25),
        ((0.89, 0.40, 0.5), 1.75),
        ((0.50, 0.70, 0.5), 2.5),
        ((0.90, 0.00, 0.0), 3.0),
        ((0.95, 0.60, 0.5), 30.0),
        ((0.99, 0.90, 0.5), 125.0),
    ],
)
def test_nested_draws_select_bucket(draws, expected):
    assert generate_crash_point(ScriptedRandom(*draws)) == pytest.approx(expected)


def test_bucket_table_covers_whole_probability_mass():
    assert GameConfig.EARLY_BUCKETS[-1][0] == 1.0
    assert GameConfig.HIGH_BUCKETS[-1][0] == 1.0


def test_multiplier_starts_at_one():
    assert multiplier_at(0.0) == 1.0


def test_multiplier_growth_is_quadratic():
    assert multiplier_at(5.0) == pytest.approx(3.0)
    assert multiplier_at(2.5) == pytest.approx(1.5)
    assert multiplier_at(10.0) == pytest.approx(9.0)


def test_multiplier_is_non_decreasing():
    values = [multiplier_at(step * 0.05) for step in range(400)]
    assert values == sorted(values)
