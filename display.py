"""
CHIP-8 Display
===============
Renders the 64x32 framebuffer in a pygame window and reports raw
key-down state for the 16-key hex pad.  The interpreter never sees
pygame key codes; ``KEYMAP`` folds the usual QWERTY block onto the
logical keys:

    1 2 3 4        1 2 3 C
    Q W E R   ->   4 5 6 D
    A S D F        7 8 9 E
    Z X C V        A 0 B F

In debug mode the window also supplies step signals:
  Enter   execute one instruction
  Delete  leave debug mode and run freely
  Escape  quit

Usage (programmatic):
    from display import Chip8Display
    disp = Chip8Display(color="green", scale=12)
    disp.start()
    system = Chip8System(display=disp)
    ...
    disp.stop()

``HeadlessDisplay`` implements the same interface without pygame for
tests and scripted runs.
"""

from __future__ import annotations
from collections import deque
from typing import Iterable, Optional

import numpy as np

from devices import DISPLAY_HEIGHT, DISPLAY_WIDTH, NUM_KEYS, Framebuffer, Keypad
from system import CONTINUE, QUIT, STEP

# Foreground colours (0xRRGGBB); background is always black.
PALETTES = {
    "purple": 0xAF12E8,
    "green":  0x008000,
    "blue":   0x0000FF,
    "red":    0xFF0000,
}
DEFAULT_COLOR = "purple"
OFF_COLOR = 0x000000

# Physical key name (pygame.key.key_code) -> logical hex key
KEYMAP = {
    "1": 0x1, "2": 0x2, "3": 0x3, "4": 0xC,
    "q": 0x4, "w": 0x5, "e": 0x6, "r": 0xD,
    "a": 0x7, "s": 0x8, "d": 0x9, "f": 0xE,
    "z": 0xA, "x": 0x0, "c": 0xB, "v": 0xF,
}

TONE_HZ = 440
SAMPLE_RATE = 22050


def rgb(color: int) -> tuple[int, int, int]:
    return ((color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF)


def palette_color(name: str) -> int:
    """Foreground colour for *name*; unknown names fall back to purple."""
    return PALETTES.get(name.lower(), PALETTES[DEFAULT_COLOR])


def framebuffer_rgb(fb: Framebuffer, color: int) -> np.ndarray:
    """(width, height, 3) uint8 array ready for pygame.surfarray."""
    on = np.array(rgb(color), dtype=np.uint8)
    off = np.array(rgb(OFF_COLOR), dtype=np.uint8)
    return np.where(fb.pixels.T[:, :, None], on, off).astype(np.uint8)


class Chip8Display:
    """pygame window for the CHIP-8 framebuffer and keypad."""

    def __init__(self, color: str = DEFAULT_COLOR, scale: int = 12,
                 title: str = "CHIP-8", fps: int = 60):
        self.color = palette_color(color)
        self.scale = max(1, scale)
        self.title = title
        self.fps = fps
        self.closed = False
        self._screen = None
        self._surface = None
        self._clock = None
        self._keycodes: dict[int, int] = {}
        self._beep = None

    # -- public API -------------------------------------------------------

    def start(self):
        """Open the window (and the mixer, if audio is available)."""
        import pygame

        pygame.init()
        pygame.display.set_caption(self.title)
        self._screen = pygame.display.set_mode(
            (DISPLAY_WIDTH * self.scale, DISPLAY_HEIGHT * self.scale))
        self._surface = pygame.Surface((DISPLAY_WIDTH, DISPLAY_HEIGHT))
        self._clock = pygame.time.Clock()
        self._keycodes = {pygame.key.key_code(name): key
                          for name, key in KEYMAP.items()}
        self._beep = self._make_beep(pygame)
        self._screen.fill(rgb(OFF_COLOR))
        pygame.display.flip()

    def stop(self):
        import pygame

        self.closed = True
        pygame.quit()

    def render(self, fb: Framebuffer):
        import pygame

        if self._screen is None:
            return
        pygame.surfarray.blit_array(self._surface,
                                    framebuffer_rgb(fb, self.color))
        scaled = pygame.transform.scale(self._surface,
                                        self._screen.get_size())
        self._screen.blit(scaled, (0, 0))
        pygame.display.flip()

    def poll_keys(self, keypad: Keypad):
        """Drain window events, then sample the raw key-down table."""
        import pygame

        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.closed = True
            elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                self.closed = True
        pressed = pygame.key.get_pressed()
        state = [False] * NUM_KEYS
        for code, key in self._keycodes.items():
            if pressed[code]:
                state[key] = True
        keypad.set_state(state)

    def wait_for_step(self) -> str:
        """Block until Enter (step), Delete (continue) or Escape (quit)."""
        import pygame

        while True:
            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    self.closed = True
                    return QUIT
                if event.type != pygame.KEYDOWN:
                    continue
                if event.key == pygame.K_RETURN:
                    return STEP
                if event.key == pygame.K_DELETE:
                    return CONTINUE
                if event.key == pygame.K_ESCAPE:
                    self.closed = True
                    return QUIT
            self._clock.tick(self.fps)

    def set_tone(self, active: bool):
        if self._beep is None:
            return
        if active:
            self._beep.play(loops=-1)
        else:
            self._beep.stop()

    # -- internals --------------------------------------------------------

    def _make_beep(self, pygame):
        """Square-wave tone for the sound timer, or None without audio."""
        try:
            pygame.mixer.init(frequency=SAMPLE_RATE, size=-16, channels=1,
                              allowedchanges=0)
        except pygame.error as e:
            print(f"[display] audio unavailable: {e}")
            return None
        freq, _, channels = pygame.mixer.get_init()
        period = max(2, freq // TONE_HZ)
        wave = np.where(np.arange(period) < period // 2, 4000, -4000)
        wave = wave.astype(np.int16)
        if channels > 1:
            wave = np.repeat(wave[:, None], channels, axis=1)
        return pygame.sndarray.make_sound(wave)


class HeadlessDisplay:
    """No-window display for tests: scripted keys, recorded frames."""

    def __init__(self, key_frames: Iterable[Iterable[int]] = (),
                 step_answers: Iterable[str] = ()):
        # Each key frame is the set of logical keys held for one poll;
        # once exhausted the last frame stays held.
        self._key_frames = deque(frozenset(f) for f in key_frames)
        self._held: frozenset[int] = frozenset()
        self._answers = deque(step_answers)
        self.closed = False
        self.snapshots: list[np.ndarray] = []
        self.tones: list[bool] = []
        self.polls = 0
        self.step_waits = 0

    def start(self):
        pass

    def stop(self):
        self.closed = True

    def render(self, fb: Framebuffer):
        self.snapshots.append(fb.snapshot())

    def poll_keys(self, keypad: Keypad):
        self.polls += 1
        if self._key_frames:
            self._held = self._key_frames.popleft()
        keypad.set_state(k in self._held for k in range(NUM_KEYS))

    def wait_for_step(self) -> str:
        self.step_waits += 1
        if self._answers:
            answer = self._answers.popleft()
            if answer == QUIT:
                self.closed = True
            return answer
        return STEP

    def set_tone(self, active: bool):
        self.tones.append(active)

    @property
    def last_frame(self) -> Optional[np.ndarray]:
        return self.snapshots[-1] if self.snapshots else None
