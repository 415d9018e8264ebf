"""Countdown label and phase-progress derivation.

The short label switches unit as the deadline approaches (D > H > M > S),
and the progress fraction is measured over a sub-window that narrows with
the unit, so the indicator visibly speeds up near the deadline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

DAYS_THRESHOLD = 36 * 3600
HOURS_THRESHOLD = 90 * 60
MINUTES_THRESHOLD = 90


def _whole_seconds(remaining: float) -> int:
	return max(0, math.floor(remaining))


def _round_half_up(value: float) -> int:
	return math.floor(value + 0.5)


def unit_for(remaining: float) -> str:
	"""Classify remaining seconds into 'd', 'h', 'm' or 's'."""
	s = _whole_seconds(remaining)
	if s > DAYS_THRESHOLD:
		return "d"
	if s > HOURS_THRESHOLD:
		return "h"
	if s > MINUTES_THRESHOLD:
		return "m"
	return "s"


def format_remaining(remaining: float) -> str:
	"""Coarse label: '2D', '5H', '45M', '30S'."""
	s = _whole_seconds(remaining)
	unit = unit_for(s)
	if unit == "d":
		return f"{_round_half_up(s / 86400)}D"
	if unit == "h":
		return f"{_round_half_up(s / 3600)}H"
	if unit == "m":
		return f"{_round_half_up(s / 60)}M"
	return f"{s}S"


def format_countdown(remaining: float) -> str:
	"""Long form used by detail pills: '1d 02:03:04' or '02:03:04'."""
	s = _whole_seconds(remaining)
	days, rest = divmod(s, 86400)
	hours, rest = divmod(rest, 3600)
	minutes, seconds = divmod(rest, 60)
	clock = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
	return f"{days}d {clock}" if days else clock


def progress_window(unit: str, phase_start: float, end: float) -> tuple[float, float]:
	"""Sub-window over which progress is measured for a given unit."""
	if not end:
		return (0.0, 0.0)
	start = phase_start or (end - DAYS_THRESHOLD)
	phase_len = max(0.0, end - start)
	if unit == "d":
		return (start, end)
	if unit == "h":
		return (start if phase_len < DAYS_THRESHOLD else end - DAYS_THRESHOLD, end)
	if unit == "m":
		return (start if phase_len < HOURS_THRESHOLD else end - HOURS_THRESHOLD, end)
	return (end - MINUTES_THRESHOLD, end)


def progress_fraction(start: float, end: float, now: float) -> float:
	"""Elapsed fraction of [start, end], clamped to [0, 1]."""
	if end <= start:
		return 1.0 if now >= end else 0.0
	if now <= start:
		return 0.0
	if now >= end:
		return 1.0
	return (now - start) / (end - start)


@dataclass(frozen=True)
class CountdownState:
	label: str
	unit: str
	progress: float
	remaining: int


class CountdownBinder:
	"""Tracks one phase window and yields label/progress on every tick.

	The progress sub-window is only recomputed when the unit classification
	changes, not on every tick.
	"""

	def __init__(self) -> None:
		self._start: float = 0.0
		self._end: float = 0.0
		self._unit: str | None = None
		self._window: tuple[float, float] = (0.0, 0.0)
		self.window_changes: int = 0

	@property
	def bound(self) -> bool:
		return self._end > 0

	@property
	def window(self) -> tuple[float, float]:
		return self._window

	@property
	def unit(self) -> str | None:
		return self._unit

	def bind(self, start: float, end: float) -> None:
		self._start = start
		self._end = end
		self._unit = None
		self._window = (0.0, 0.0)

	def bind_finished(self) -> None:
		"""Bind to an ended phase: no deadline, full progress."""
		self._start = 0.0
		self._end = 0.0
		self._unit = None
		self._window = (0.0, 0.0)

	def unbind(self) -> None:
		self.bind_finished()

	def tick(self, now: float) -> CountdownState:
		if not self._end:
			return CountdownState(label="", unit="", progress=1.0, remaining=0)
		remaining = _whole_seconds(self._end - now)
		unit = unit_for(remaining)
		if unit != self._unit:
			self._unit = unit
			self._window = progress_window(unit, self._start, self._end)
			self.window_changes += 1
		start, end = self._window
		if now < self._start:
			progress = 0.0
		elif now >= self._end:
			progress = 1.0
		else:
			progress = progress_fraction(start, end, now)
		return CountdownState(
			label=format_remaining(remaining),
			unit=unit,
			progress=progress,
			remaining=remaining,
		)
