"""
CHIP-8 Device Layer
====================
The passive state the interpreter drives alongside memory and registers:

  Timers       delay + sound counters, decremented at 60 Hz of wall time
  Framebuffer  64x32 monochrome pixels, changed only by CLS and DRW (XOR)
  Keypad       16 key-down flags, refreshed by the input collaborator

None of these know about the CPU; chip8.py owns one of each and the
host loop in system.py feeds them wall-clock time and key state.
"""

from __future__ import annotations
from typing import Iterable

import numpy as np

DISPLAY_WIDTH  = 64
DISPLAY_HEIGHT = 32
NUM_KEYS       = 16
TIMER_HZ       = 60
NS_PER_SEC     = 1_000_000_000


# ---------------------------------------------------------------------------
#  Timers
# ---------------------------------------------------------------------------

class Timers:
    """Delay and sound timers on a fixed wall-clock cadence.

    ``advance(dt)`` rounds elapsed seconds to whole nanoseconds and folds
    them into an integer accumulator, so repeated small steps never drift
    and the remainder of a partial period is carried into the next call.
    """

    def __init__(self, hz: int = TIMER_HZ):
        self.hz = hz
        self._delay: int = 0
        self._sound: int = 0
        self._accum: int = 0   # ns * hz toward the next tick

    def reset(self):
        self._delay = 0
        self._sound = 0
        self._accum = 0

    @property
    def delay(self) -> int:
        return self._delay

    @delay.setter
    def delay(self, value: int):
        self._delay = value & 0xFF

    @property
    def sound(self) -> int:
        return self._sound

    @sound.setter
    def sound(self, value: int):
        self._sound = value & 0xFF

    @property
    def sound_active(self) -> bool:
        return self._sound > 0

    def advance(self, dt: float) -> int:
        """Account for *dt* seconds of wall time.  Returns ticks emitted."""
        if dt <= 0:
            return 0
        # Accumulator unit is ns * hz, so one tick is exactly NS_PER_SEC.
        # 1/60 s is not a whole number of nanoseconds; a tick within 1 ns
        # of the boundary counts, and the remainder may dip just below 0.
        self._accum += round(dt * NS_PER_SEC) * self.hz
        ticks, rem = divmod(self._accum + self.hz, NS_PER_SEC)
        self._accum = rem - self.hz
        if ticks:
            self.tick(ticks)
        return ticks

    def tick(self, count: int = 1):
        """Decrement both counters by *count*, flooring at zero."""
        self._delay = max(0, self._delay - count)
        self._sound = max(0, self._sound - count)


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------

class Framebuffer:
    """Monochrome pixel grid, indexed ``pixels[y, x]``."""

    def __init__(self, width: int = DISPLAY_WIDTH,
                 height: int = DISPLAY_HEIGHT):
        self.width = width
        self.height = height
        self.pixels = np.zeros((height, width), dtype=bool)
        self.dirty = True

    def clear(self):
        self.pixels[:, :] = False
        self.dirty = True

    def pixel(self, x: int, y: int) -> bool:
        return bool(self.pixels[y % self.height, x % self.width])

    def blit(self, x: int, y: int, rows: Iterable[int]) -> bool:
        """XOR an 8-pixel-wide sprite onto the grid at (x, y).

        Coordinates wrap modulo the grid size.  Returns True if any pixel
        that was set is cleared by the XOR (a collision).
        """
        data = np.array(list(rows), dtype=np.uint8)
        if data.size == 0:
            return False
        bits = np.unpackbits(data).reshape(data.size, 8).astype(bool)
        ys = (y + np.arange(data.size)) % self.height
        xs = (x + np.arange(8)) % self.width
        region = np.ix_(ys, xs)
        collided = bool(np.any(self.pixels[region] & bits))
        self.pixels[region] ^= bits
        self.dirty = True
        return collided

    def snapshot(self) -> np.ndarray:
        return self.pixels.copy()

    def to_text(self, on: str = "#", off: str = ".") -> str:
        """Render as lines of text, one character per pixel."""
        return "\n".join(
            "".join(on if p else off for p in row) for row in self.pixels)


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------

class Keypad:
    """Current-state table for the 16 hex keys (no event queue)."""

    def __init__(self):
        self.state: list[bool] = [False] * NUM_KEYS

    def set_state(self, state: Iterable[bool]):
        """Replace the whole table (called once per frame by the input side)."""
        new = [bool(s) for s in state]
        if len(new) != NUM_KEYS:
            raise ValueError(f"expected {NUM_KEYS} key states, got {len(new)}")
        self.state = new

    def press(self, key: int):
        self.state[key & 0xF] = True

    def release(self, key: int):
        self.state[key & 0xF] = False

    def release_all(self):
        self.state = [False] * NUM_KEYS

    def is_down(self, key: int) -> bool:
        return self.state[key & 0xF]

    def snapshot(self) -> list[bool]:
        return list(self.state)

    def new_presses(self, since: list[bool]) -> list[int]:
        """Keys down now that were up in *since*, lowest first."""
        return [k for k in range(NUM_KEYS) if self.state[k] and not since[k]]
