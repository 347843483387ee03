"""
Round clock.

Rounds are fixed tumbling windows of ``round_seconds`` aligned to the Unix
epoch. A round is identified by its sequence number
``floor(epoch_seconds / round_seconds)``; bet intake and settlement both
derive the window from that number so they always agree on boundaries.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from infra.settings import settings

OPEN = "open"
CLOSING = "closing"


@dataclass(frozen=True)
class RoundPhase:
    round_id: int
    window_start: datetime
    window_end: datetime
    phase: str
    seconds_remaining: int

    @property
    def is_open(self) -> bool:
        return self.phase == OPEN

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "phase": self.phase,
            "seconds_remaining": self.seconds_remaining,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class RoundClock:
    """Derives round windows and phases from wall-clock time. Stateless."""

    def __init__(self, round_seconds: Optional[int] = None, closing_buffer_seconds: Optional[int] = None):
        self.round_seconds = round_seconds or settings.round_seconds
        self.closing_buffer_seconds = (
            settings.closing_buffer_seconds if closing_buffer_seconds is None else closing_buffer_seconds
        )

    def round_id_at(self, now: datetime) -> int:
        return math.floor(_as_utc(now).timestamp() / self.round_seconds)

    def window_for(self, round_id: int, now: Optional[datetime] = None) -> RoundPhase:
        """Describe the window of ``round_id`` as seen at ``now``"""
        window_start = datetime.fromtimestamp(round_id * self.round_seconds, tz=timezone.utc)
        window_end = window_start + timedelta(seconds=self.round_seconds)

        if now is None:
            seconds_remaining = 0
        else:
            remaining = (window_end - _as_utc(now)).total_seconds()
            seconds_remaining = max(0, math.floor(remaining))

        phase = CLOSING if seconds_remaining <= self.closing_buffer_seconds else OPEN
        return RoundPhase(
            round_id=round_id,
            window_start=window_start,
            window_end=window_end,
            phase=phase,
            seconds_remaining=seconds_remaining,
        )

    def current_phase(self, now: Optional[datetime] = None) -> RoundPhase:
        now = now or utcnow()
        return self.window_for(self.round_id_at(now), now)

    def previous_window(self, now: Optional[datetime] = None) -> RoundPhase:
        """The most recently elapsed window, the one a scheduler should settle"""
        now = now or utcnow()
        return self.window_for(self.round_id_at(now) - 1, now)


round_clock = RoundClock()


def current_phase(now: Optional[datetime] = None) -> RoundPhase:
    return round_clock.current_phase(now)
