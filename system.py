"""
CHIP-8 System
==============
Wires together:
  - the Chip8 interpreter (chip8.py)
  - its timers, framebuffer and keypad (devices.py)
  - a display collaborator (display.py) that renders the framebuffer,
    reports key-down state and, in debug mode, supplies step signals

The host loop interleaves, on every iteration:

    [wait for step signal]  ->  cpu.step()  ->  timers.advance(elapsed)
        ->  poll keys  ->  render on frame boundaries  ->  throttle

Timer cadence comes from wall-clock time, never from instruction count,
so it is correct whether the CPU is throttled, free-running or paused
in the debugger.
"""

from __future__ import annotations
import os
import time
from typing import Callable, Optional, Protocol

from chip8 import Chip8, Instruction, LoadError
from devices import Framebuffer, Keypad, Timers

# Default instruction rate; 0 means run unthrottled.
DEFAULT_IPS = int(os.environ.get("CHIP8_IPS", "700"))

# wait_for_step() answers
STEP     = "step"
CONTINUE = "continue"
QUIT     = "quit"


class DisplayCollaborator(Protocol):
    closed: bool

    def render(self, fb: Framebuffer) -> None: ...
    def poll_keys(self, keypad: Keypad) -> None: ...
    def wait_for_step(self) -> str: ...
    def set_tone(self, active: bool) -> None: ...


def read_program(path: str) -> bytes:
    """Read a program image from disk, mapping I/O failures to LoadError."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise LoadError(f"Cannot read '{path}': {e.strerror or e}") from e


class Chip8System:
    """One machine plus the loop that drives it against a display."""

    def __init__(self, display: Optional[DisplayCollaborator] = None,
                 ips: int = DEFAULT_IPS, debug: bool = False,
                 seed: Optional[int] = None,
                 clock: Callable[[], float] = time.perf_counter,
                 sleep: Callable[[float], None] = time.sleep):
        self.cpu = Chip8(seed=seed)
        self.display = display
        self.ips = ips
        self.debug = debug
        self.clock = clock
        self.sleep = sleep

        # Called after each instruction in debug mode: (addr, instr)
        self.on_trace: Optional[Callable[[int, Instruction], None]] = None

        self._last_time: Optional[float] = None
        self._tone = False

    # -- Shortcuts --

    @property
    def fb(self) -> Framebuffer:
        return self.cpu.fb

    @property
    def keypad(self) -> Keypad:
        return self.cpu.keypad

    @property
    def timers(self) -> Timers:
        return self.cpu.timers

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray):
        self.cpu.reset()
        self.cpu.load_program(data)
        self._last_time = None

    def load_program_file(self, path: str) -> int:
        """Load a program file at 0x200.  Returns its length in bytes."""
        data = read_program(path)
        self.load_program(data)
        return len(data)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> Instruction:
        """One host-loop iteration: execute, then service timers and I/O."""
        addr = self.cpu.pc
        instr = self.cpu.step()
        if self.debug and self.on_trace is not None:
            self.on_trace(addr, instr)
        self._service()
        return instr

    def _service(self):
        now = self.clock()
        if self._last_time is None:
            self._last_time = now
        ticks = self.timers.advance(now - self._last_time)
        self._last_time = now

        if self.display is None:
            return
        self.display.poll_keys(self.keypad)
        if (ticks or self.debug) and self.fb.dirty:
            self.display.render(self.fb)
            self.fb.dirty = False
        tone = self.timers.sound_active
        if tone != self._tone:
            self._tone = tone
            self.display.set_tone(tone)

    @property
    def stopped(self) -> bool:
        return self.cpu.halted or (self.display is not None
                                   and self.display.closed)

    def run(self, max_steps: Optional[int] = None) -> int:
        """Drive the machine until HALT, window close, or *max_steps*.

        Returns the number of instructions executed.  Chip8Error from the
        interpreter propagates to the caller.
        """
        count = 0
        period = 1.0 / self.ips if self.ips > 0 else 0.0
        next_due = self.clock()
        self._last_time = None
        while not self.stopped:
            if max_steps is not None and count >= max_steps:
                break
            if self.debug and self.display is not None:
                answer = self.display.wait_for_step()
                if answer == QUIT:
                    break
                if answer == CONTINUE:
                    self.debug = False
                # Time spent paused is not emulated time.
                self._last_time = self.clock()
            self.step()
            count += 1
            if period and not self.debug:
                next_due += period
                delay = next_due - self.clock()
                if delay > 0:
                    self.sleep(delay)
                elif delay < -0.25:
                    # Too far behind; stop trying to catch up.
                    next_due = self.clock()
        if self.display is not None and self.fb.dirty:
            self.display.render(self.fb)
            self.fb.dirty = False
        return count
