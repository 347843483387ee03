from datetime import datetime, timedelta, timezone

from freezegun import freeze_time
from hypothesis import given, strategies as st

from domain.clock import CLOSING, OPEN, RoundClock, current_phase

from conftest import ROUND_START


class TestRoundClock:
    def test_window_boundaries(self, clock):
        """Window starts on the minute and lasts one round"""
        phase = clock.current_phase(ROUND_START + timedelta(seconds=12, milliseconds=300))

        assert phase.window_start == ROUND_START
        assert phase.window_end == ROUND_START + timedelta(seconds=60)
        assert phase.round_id == int(ROUND_START.timestamp()) // 60
        assert phase.seconds_remaining == 47
        assert phase.phase == OPEN

    def test_window_start_belongs_to_new_round(self, clock):
        phase = clock.current_phase(ROUND_START)
        previous = clock.current_phase(ROUND_START - timedelta(microseconds=1))

        assert phase.window_start == ROUND_START
        assert phase.seconds_remaining == 60
        assert previous.round_id == phase.round_id - 1
        assert previous.window_end == ROUND_START

    def test_closing_phase_within_buffer(self, clock):
        """The last five seconds of a round are the closing phase"""
        assert clock.current_phase(ROUND_START + timedelta(seconds=54)).phase == OPEN
        assert clock.current_phase(ROUND_START + timedelta(seconds=54, milliseconds=500)).phase == CLOSING
        assert clock.current_phase(ROUND_START + timedelta(seconds=55)).phase == CLOSING
        assert clock.current_phase(ROUND_START + timedelta(seconds=59, milliseconds=999)).seconds_remaining == 0

    def test_naive_datetimes_are_utc(self, clock):
        naive = datetime(2025, 9, 1, 12, 0, 30)
        assert clock.current_phase(naive) == clock.current_phase(naive.replace(tzinfo=timezone.utc))

    def test_other_timezones_share_boundaries(self, clock):
        ist = timezone(timedelta(hours=5, minutes=30))
        local = (ROUND_START + timedelta(seconds=20)).astimezone(ist)
        assert clock.current_phase(local).round_id == clock.current_phase(ROUND_START).round_id

    def test_window_for_round_id(self, clock):
        phase = clock.current_phase(ROUND_START)
        window = clock.window_for(phase.round_id)

        assert window.window_start == phase.window_start
        assert window.window_end == phase.window_end

    def test_previous_window(self, clock):
        previous = clock.previous_window(ROUND_START + timedelta(seconds=2))

        assert previous.window_end == ROUND_START
        assert previous.phase == CLOSING
        assert previous.seconds_remaining == 0

    def test_custom_round_length(self):
        clock = RoundClock(round_seconds=30, closing_buffer_seconds=3)
        phase = clock.current_phase(ROUND_START + timedelta(seconds=40))

        assert phase.window_start == ROUND_START + timedelta(seconds=30)
        assert phase.seconds_remaining == 20

    @freeze_time("2025-09-01T12:00:57+00:00")
    def test_defaults_to_wall_clock(self):
        phase = current_phase()

        assert phase.window_start == ROUND_START
        assert phase.seconds_remaining == 3
        assert phase.phase == CLOSING

    @given(offset=st.integers(min_value=0, max_value=10 ** 9))
    def test_now_always_inside_its_window(self, offset):
        clock = RoundClock(round_seconds=60, closing_buffer_seconds=5)
        now = datetime(2020, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=offset)
        phase = clock.current_phase(now)

        assert phase.window_start <= now < phase.window_end
        assert 0 <= phase.seconds_remaining <= 60
        assert phase.window_start.second == 0
