"""Promotion-chance model built on the Irwin–Hall distribution.

Each promotion run walks the lanes in a random order and handles the
items of each lane one after another; every item costs a random delay,
uniform between ``DELAY_MIN`` and ``DELAY_MAX`` seconds.  An item that
becomes eligible ``s`` seconds into a tick is promoted in that same run
only if the accumulated delay ahead of it exceeds ``s``.  The sum of
``n`` such delays is an affine transform of the Irwin–Hall distribution
of order ``n``.

The lane ordering is approximated by averaging over every position the
item's lane could take; this is not exact when several lanes have items
in the same tick.
"""

from __future__ import annotations

from fractions import Fraction
from itertools import permutations
from math import comb, factorial
from typing import Sequence

from rankwatch.cadence import DEFAULT_RULES, Rules


def _sgn(value: Fraction) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def irwin_hall_cdf(n: int, x: float) -> float:
    """CDF of the sum of *n* independent Uniform(0, 1) variables at *x*.

    Evaluated exactly with :class:`fractions.Fraction`; the alternating
    closed form loses all precision in floating point once *n* grows
    past a couple dozen.
    """
    if x < 0:
        return 0.0
    if x > n:
        return 1.0
    fx = Fraction(x)
    total = Fraction(0)
    for k in range(n + 1):
        term = comb(n, k) * _sgn(fx - k) * (fx - k) ** n
        total += term if k % 2 == 0 else -term
    value = Fraction(1, 2) + total / (2 * factorial(n))
    return min(1.0, max(0.0, float(value)))


def _competitor_sums(
    position: int,
    other_lane_counts: Sequence[int] | None,
) -> list[int]:
    """Items queued ahead of this lane when it runs at *position* (1-based)."""
    if not other_lane_counts or position == 1:
        return [0]
    return [sum(combo) for combo in permutations(other_lane_counts, position - 1)]


def promotion_chance(
    seconds_into_tick: float,
    other_lane_counts: Sequence[int] | None = None,
    rules: Rules = DEFAULT_RULES,
) -> float:
    """Chance that an item ready *seconds_into_tick* makes the current run.

    *other_lane_counts* holds the number of items every other lane has in
    the same run; omit it to model this lane alone.  Returns a value in
    ``[0, 1]`` rounded to ``rules.probability_precision`` decimals.
    """
    spread = rules.delay_max - rules.delay_min
    positions = len(other_lane_counts) + 1 if other_lane_counts else rules.lanes
    memo: dict[int, float] = {}

    overall = 0.0
    for position in range(1, positions + 1):
        sums = _competitor_sums(position, other_lane_counts)
        position_sum = 0.0
        for permutation_sum in sums:
            n = position + permutation_sum
            if n not in memo:
                x = (seconds_into_tick - n * rules.delay_min) / spread
                memo[n] = 1 - irwin_hall_cdf(n, x)
            position_sum += memo[n]
        overall += position_sum / len(sums)

    chance = overall / positions
    return round(min(1.0, max(0.0, chance)), rules.probability_precision)
