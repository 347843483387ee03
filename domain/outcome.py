"""
Outcome selection for a round.

With probability ``house_edge_probability`` the round lands on the colour
and the number carrying the least stake; otherwise colour and number are
drawn uniformly and independently.
"""

import random
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from domain.errors import ErrorContext, NoOutcomeBetsEmpty
from domain.models import Bet, Color
from infra.settings import settings

NUMBERS = range(10)

_system_random = random.SystemRandom()


@dataclass(frozen=True)
class Outcome:
    color: Color
    number: int

    def matches(self, color: Color, number: int) -> bool:
        return self.color == Color(color) and self.number == number

    def to_dict(self) -> dict:
        return {"color": self.color.value, "number": self.number}


@dataclass
class StakeTotals:
    by_color: Dict[Color, int]
    by_number: Dict[int, int]
    total: int

    def least_staked_color(self) -> Color:
        staked = [color for color in Color if color in self.by_color]
        return min(staked, key=lambda color: self.by_color[color])

    def least_staked_number(self) -> int:
        staked = [number for number in NUMBERS if number in self.by_number]
        return min(staked, key=lambda number: self.by_number[number])


def aggregate_stakes(bets: Iterable[Bet]) -> StakeTotals:
    by_color: Dict[Color, int] = {}
    by_number: Dict[int, int] = {}
    total = 0
    for bet in bets:
        color = Color(bet.color)
        by_color[color] = by_color.get(color, 0) + bet.amount
        by_number[bet.number] = by_number.get(bet.number, 0) + bet.amount
        total += bet.amount
    return StakeTotals(by_color=by_color, by_number=by_number, total=total)


def select_outcome(
    bets: Iterable[Bet],
    rng: Optional[random.Random] = None,
    house_edge_probability: Optional[float] = None,
) -> Outcome:
    """Pick the settlement colour and number for the bets of one round.

    Ties go to the first colour in RED, VIOLET, GREEN order and to the
    lowest number. Raises NoOutcomeBetsEmpty when there is nothing to settle.
    """
    rng = rng or _system_random
    if house_edge_probability is None:
        house_edge_probability = settings.house_edge_probability

    totals = aggregate_stakes(bets)
    if not totals.by_color:
        raise NoOutcomeBetsEmpty(context=ErrorContext(metadata={"bets": 0}))

    if rng.random() < house_edge_probability and totals.total > 0:
        return Outcome(totals.least_staked_color(), totals.least_staked_number())

    return Outcome(rng.choice(list(Color)), rng.randrange(len(NUMBERS)))
