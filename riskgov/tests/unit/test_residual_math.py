from __future__ import annotations

from fractions import Fraction
from itertools import product

import pytest

from riskgov.services.residual import (
    POLICY_DIMINISHING,
    POLICY_MAX,
    ControlScores,
    combine_effectiveness,
    compute_residual,
    control_effectiveness,
    residual_dimension,
)


def test_effectiveness_is_sum_over_twelve() -> None:
    assert control_effectiveness(3, 3, 2, 2) == Fraction(10, 12)
    assert control_effectiveness(3, 3, 3, 3) == 1
    assert control_effectiveness(1, 1, 0, 0) == Fraction(2, 12)


def test_effectiveness_zero_without_design_or_implementation() -> None:
    # Monitoring and evaluation cannot rescue an undesigned or unimplemented control.
    assert control_effectiveness(0, 3, 3, 3) == 0
    assert control_effectiveness(3, 0, 3, 3) == 0


def test_effectiveness_none_until_fully_scored() -> None:
    assert control_effectiveness(3, 3, None, 2) is None
    assert control_effectiveness(None, None, None, None) is None


def test_effectiveness_rejects_out_of_range_scores() -> None:
    with pytest.raises(ValueError):
        control_effectiveness(4, 3, 3, 3)
    with pytest.raises(ValueError):
        control_effectiveness(3, -1, 3, 3)


def test_strong_control_reduces_likelihood_to_floor() -> None:
    # (4 - 1) * 10/12 = 2.5 rounds half-up to 3, leaving 1.
    residual = compute_residual(4, 5, [ControlScores("likelihood", 3, 3, 2, 2)])
    assert residual.likelihood == 1
    assert residual.impact == 5
    assert residual.score == 5


def test_undesigned_control_leaves_inherent_unchanged() -> None:
    residual = compute_residual(4, 5, [ControlScores("likelihood", 0, 3, 3, 3)])
    assert (residual.likelihood, residual.impact, residual.score) == (4, 5, 20)


def test_controls_only_affect_their_target_dimension() -> None:
    residual = compute_residual(4, 5, [ControlScores("impact", 3, 3, 3, 3)])
    assert residual.likelihood == 4
    assert residual.impact == 1


def test_partially_scored_controls_earn_no_credit() -> None:
    residual = compute_residual(6, 6, [ControlScores("likelihood", 3, 3, None, 3)])
    assert residual.likelihood == 6


def test_no_controls_means_residual_equals_inherent() -> None:
    residual = compute_residual(3, 2, [])
    assert residual.as_dict() == {"likelihood": 3, "impact": 2, "score": 6}


def test_max_policy_does_not_stack_weak_controls() -> None:
    weak = ControlScores("likelihood", 2, 2, 1, 1)
    one = compute_residual(5, 5, [weak], policy=POLICY_MAX)
    many = compute_residual(5, 5, [weak, weak, weak], policy=POLICY_MAX)
    assert one == many
    assert one.likelihood == 3


def test_diminishing_policy_stacks_with_decreasing_returns() -> None:
    half = Fraction(1, 2)
    assert combine_effectiveness([half, half], POLICY_DIMINISHING) == Fraction(3, 4)
    weak = ControlScores("likelihood", 2, 2, 1, 1)
    residual = compute_residual(5, 5, [weak, weak], policy=POLICY_DIMINISHING)
    assert residual.likelihood == 2


def test_combination_rejects_unknown_policy() -> None:
    with pytest.raises(ValueError):
        combine_effectiveness([Fraction(1, 2)], "sum")


def test_half_values_round_up() -> None:
    # (3 - 1) * 3/4 = 1.5 -> 2
    assert residual_dimension(3, Fraction(3, 4)) == 1
    # (6 - 1) * 1/2 = 2.5 -> 3
    assert residual_dimension(6, Fraction(1, 2)) == 3


def test_residual_dimension_validates_inputs() -> None:
    with pytest.raises(ValueError):
        residual_dimension(0, Fraction(0))
    with pytest.raises(ValueError):
        residual_dimension(7, Fraction(0))
    with pytest.raises(ValueError):
        residual_dimension(3, Fraction(3, 2))


def test_unknown_control_target_is_rejected() -> None:
    with pytest.raises(ValueError):
        compute_residual(3, 3, [ControlScores("velocity", 3, 3, 3, 3)])


def test_residual_always_within_one_and_inherent() -> None:
    score_range = range(0, 4)
    for inherent in range(1, 7):
        for scores in product(score_range, repeat=4):
            value = residual_dimension(inherent, control_effectiveness(*scores))
            assert 1 <= value <= inherent
