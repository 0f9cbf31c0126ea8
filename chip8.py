"""
CHIP-8 Bytecode Interpreter
============================
A step-at-a-time interpreter for the CHIP-8 virtual machine: 4 KiB of
memory, sixteen 8-bit V registers, a 12-bit I register, a 16-deep call
stack, two 60 Hz timers, a 64x32 XOR framebuffer and a 16-key hex pad.

Every instruction word is fetched big-endian from memory at PC, decoded
into an explicit ``Instruction`` value, then executed.  Decode and
execute are separate so each can be exercised on its own:

    cpu = Chip8()
    cpu.load_program(rom)
    while not cpu.halted:
        cpu.step()
"""

from __future__ import annotations
import random
from enum import IntEnum
from typing import NamedTuple, Optional

from devices import Framebuffer, Keypad, Timers

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEMORY_SIZE   = 0x1000   # 4 KiB
ADDR_MASK     = 0x0FFF
PROGRAM_START = 0x200
MAX_PROGRAM   = MEMORY_SIZE - PROGRAM_START
FONT_START    = 0x050
FONT_HEIGHT   = 5
STACK_SIZE    = 16
VF            = 0xF

# Hex digit glyphs 0-F, 4x5 pixels each (high nibble of every byte).
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for every fatal interpreter condition."""
    pass

class LoadError(Chip8Error):
    pass

class DecodeError(Chip8Error):
    def __init__(self, addr: int, word: int):
        self.addr = addr
        self.word = word
        super().__init__(f"Unknown opcode {word:#06x} @ {addr:#05x}")

class AddressFault(Chip8Error):
    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"Address fault @ {addr:#x}")

class StackOverflow(Chip8Error):
    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"Stack overflow: CALL @ {addr:#05x} "
                         f"exceeds depth {STACK_SIZE}")

class StackUnderflow(Chip8Error):
    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"Stack underflow: RET @ {addr:#05x} with empty stack")

class HaltError(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  Decode
# ---------------------------------------------------------------------------

class Op(IntEnum):
    HALT     = 0
    CLS      = 1
    RET      = 2
    JP       = 3
    CALL     = 4
    SE_IMM   = 5
    SNE_IMM  = 6
    SE_REG   = 7
    LD_IMM   = 8
    ADD_IMM  = 9
    LD_REG   = 10
    OR       = 11
    AND      = 12
    XOR      = 13
    ADD_REG  = 14
    SUB      = 15
    SHR      = 16
    SUBN     = 17
    SHL      = 18
    SNE_REG  = 19
    LD_I     = 20
    JP_V0    = 21
    RND      = 22
    DRW      = 23
    SKP      = 24
    SKNP     = 25
    LD_VX_DT = 26
    LD_VX_K  = 27
    LD_DT    = 28
    LD_ST    = 29
    ADD_I    = 30
    LD_F     = 31
    BCD      = 32
    STORE    = 33
    LOAD     = 34


class Instruction(NamedTuple):
    """A decoded instruction word: the variant plus every operand field."""
    op: Op
    x: int
    y: int
    n: int
    nn: int
    nnn: int
    word: int


# 0x8 family, selected by the low nibble
_ALU_OPS = {
    0x0: Op.LD_REG, 0x1: Op.OR, 0x2: Op.AND, 0x3: Op.XOR,
    0x4: Op.ADD_REG, 0x5: Op.SUB, 0x6: Op.SHR, 0x7: Op.SUBN,
    0xE: Op.SHL,
}

# 0xE family, selected by the low byte
_KEY_OPS = {0x9E: Op.SKP, 0xA1: Op.SKNP}

# 0xF family, selected by the low byte
_MISC_OPS = {
    0x07: Op.LD_VX_DT, 0x0A: Op.LD_VX_K, 0x15: Op.LD_DT, 0x18: Op.LD_ST,
    0x1E: Op.ADD_I, 0x29: Op.LD_F, 0x33: Op.BCD, 0x55: Op.STORE,
    0x65: Op.LOAD,
}

# Families whose whole low 12 bits are operands
_SIMPLE_OPS = {
    0x1: Op.JP, 0x2: Op.CALL, 0x3: Op.SE_IMM, 0x4: Op.SNE_IMM,
    0x6: Op.LD_IMM, 0x7: Op.ADD_IMM, 0xA: Op.LD_I, 0xB: Op.JP_V0,
    0xC: Op.RND, 0xD: Op.DRW,
}


def decode(word: int, addr: int = 0) -> Instruction:
    """Decode a 16-bit instruction word.

    *addr* is only used to annotate a ``DecodeError``.
    """
    word &= 0xFFFF
    f   = (word >> 12) & 0xF   # family
    x   = (word >> 8) & 0xF
    y   = (word >> 4) & 0xF
    n   = word & 0xF
    nn  = word & 0xFF
    nnn = word & 0xFFF

    op: Optional[Op] = None
    if f == 0x0:
        if word == 0x0000:
            op = Op.HALT
        elif word == 0x00E0:
            op = Op.CLS
        elif word == 0x00EE:
            op = Op.RET
    elif f in _SIMPLE_OPS:
        op = _SIMPLE_OPS[f]
    elif f == 0x5:
        if n == 0:
            op = Op.SE_REG
    elif f == 0x8:
        op = _ALU_OPS.get(n)
    elif f == 0x9:
        if n == 0:
            op = Op.SNE_REG
    elif f == 0xE:
        op = _KEY_OPS.get(nn)
    elif f == 0xF:
        op = _MISC_OPS.get(nn)

    if op is None:
        raise DecodeError(addr, word)
    return Instruction(op, x, y, n, nn, nnn, word)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the decode/execute engine."""

    def __init__(self, framebuffer: Optional[Framebuffer] = None,
                 keypad: Optional[Keypad] = None,
                 timers: Optional[Timers] = None,
                 seed: Optional[int] = None):
        self.fb = framebuffer if framebuffer is not None else Framebuffer()
        self.keypad = keypad if keypad is not None else Keypad()
        self.timers = timers if timers is not None else Timers()
        self.rng = random.Random(seed)

        self.mem = bytearray(MEMORY_SIZE)
        self.v: list[int] = [0] * 16
        self.i: int = 0
        self.pc: int = PROGRAM_START
        self.stack: list[int] = []

        self.halted: bool = False
        self.waiting_for_key: bool = False
        self._key_snapshot: Optional[list[bool]] = None
        self.step_count: int = 0

        self.reset()

    def reset(self):
        """Zero all state, reinstall the font, clear the display."""
        self.mem[:] = bytes(MEMORY_SIZE)
        self.mem[FONT_START:FONT_START + len(FONT)] = FONT
        self.v = [0] * 16
        self.i = 0
        self.pc = PROGRAM_START
        self.stack = []
        self.halted = False
        self.waiting_for_key = False
        self._key_snapshot = None
        self.step_count = 0
        self.timers.reset()
        self.fb.clear()

    # -- Memory access --

    def _check_addr(self, addr: int):
        if not 0 <= addr < MEMORY_SIZE:
            raise AddressFault(addr)

    def mem_read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def mem_write8(self, addr: int, val: int):
        self._check_addr(addr)
        self.mem[addr] = val & 0xFF

    def fetch16(self) -> int:
        """Read the big-endian instruction word at PC (PC is not moved)."""
        return (self.mem_read8(self.pc) << 8) | self.mem_read8(self.pc + 1)

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at *addr*."""
        end = addr + len(data)
        if addr < 0 or end > MEMORY_SIZE:
            raise AddressFault(addr if addr < 0 else end - 1)
        self.mem[addr:end] = data

    def load_program(self, data: bytes | bytearray):
        """Copy a program image to PROGRAM_START."""
        if PROGRAM_START + len(data) > MEMORY_SIZE:
            raise LoadError(f"Program is {len(data)} bytes; at most "
                            f"{MAX_PROGRAM} fit above {PROGRAM_START:#05x}")
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    # -- Stack --

    def push(self, addr: int):
        if len(self.stack) >= STACK_SIZE:
            raise StackOverflow(self.pc)
        self.stack.append(addr)

    def pop(self) -> int:
        if not self.stack:
            raise StackUnderflow(self.pc)
        return self.stack.pop()

    # =====================================================================
    #  STEP
    # =====================================================================

    def step(self) -> Instruction:
        """Fetch, decode and execute one instruction.  Returns it."""
        if self.halted:
            raise HaltError("CPU is halted")
        addr = self.pc
        instr = decode(self.fetch16(), addr)
        self.pc = (addr + 2) & ADDR_MASK
        self.execute(instr)
        self.step_count += 1
        return instr

    def _skip_if(self, cond: bool):
        if cond:
            self.pc = (self.pc + 2) & ADDR_MASK

    def execute(self, instr: Instruction):
        """Apply one decoded instruction.  PC already points past it."""
        op, x, y = instr.op, instr.x, instr.y
        v = self.v

        # -- Flow --
        if op is Op.HALT:
            self.halted = True
        elif op is Op.CLS:
            self.fb.clear()
        elif op is Op.RET:
            self.pc = self.pop()
        elif op is Op.JP:
            self.pc = instr.nnn
        elif op is Op.CALL:
            self.push(self.pc)
            self.pc = instr.nnn
        elif op is Op.JP_V0:
            self.pc = (instr.nnn + v[0]) & ADDR_MASK

        # -- Skips --
        elif op is Op.SE_IMM:
            self._skip_if(v[x] == instr.nn)
        elif op is Op.SNE_IMM:
            self._skip_if(v[x] != instr.nn)
        elif op is Op.SE_REG:
            self._skip_if(v[x] == v[y])
        elif op is Op.SNE_REG:
            self._skip_if(v[x] != v[y])
        elif op is Op.SKP:
            self._skip_if(self.keypad.is_down(v[x] & 0xF))
        elif op is Op.SKNP:
            self._skip_if(not self.keypad.is_down(v[x] & 0xF))

        # -- Loads / immediate arithmetic --
        elif op is Op.LD_IMM:
            v[x] = instr.nn
        elif op is Op.ADD_IMM:
            v[x] = (v[x] + instr.nn) & 0xFF
        elif op is Op.LD_I:
            self.i = instr.nnn
        elif op is Op.RND:
            v[x] = self.rng.randrange(256) & instr.nn

        # -- ALU (0x8 family).  VF is written after the result. --
        elif op is Op.LD_REG:
            v[x] = v[y]
        elif op is Op.OR:
            v[x] |= v[y]
        elif op is Op.AND:
            v[x] &= v[y]
        elif op is Op.XOR:
            v[x] ^= v[y]
        elif op is Op.ADD_REG:
            total = v[x] + v[y]
            v[x] = total & 0xFF
            v[VF] = 1 if total > 0xFF else 0
        elif op is Op.SUB:
            a, b = v[x], v[y]
            v[x] = (a - b) & 0xFF
            v[VF] = 1 if a >= b else 0   # not-borrow
        elif op is Op.SUBN:
            a, b = v[x], v[y]
            v[x] = (b - a) & 0xFF
            v[VF] = 1 if b >= a else 0
        elif op is Op.SHR:
            a = v[x]
            v[x] = a >> 1
            v[VF] = a & 1
        elif op is Op.SHL:
            a = v[x]
            v[x] = (a << 1) & 0xFF
            v[VF] = (a >> 7) & 1

        # -- Display --
        elif op is Op.DRW:
            rows = [self.mem_read8(self.i + r) for r in range(instr.n)]
            collided = self.fb.blit(v[x], v[y], rows)
            v[VF] = 1 if collided else 0

        # -- Timers / keys --
        elif op is Op.LD_VX_DT:
            v[x] = self.timers.delay
        elif op is Op.LD_DT:
            self.timers.delay = v[x]
        elif op is Op.LD_ST:
            self.timers.sound = v[x]
        elif op is Op.LD_VX_K:
            self._wait_key(x)

        # -- I register / memory --
        elif op is Op.ADD_I:
            self.i = (self.i + v[x]) & ADDR_MASK
        elif op is Op.LD_F:
            self.i = FONT_START + FONT_HEIGHT * (v[x] & 0xF)
        elif op is Op.BCD:
            val = v[x]
            self.mem_write8(self.i, val // 100)
            self.mem_write8(self.i + 1, (val // 10) % 10)
            self.mem_write8(self.i + 2, val % 10)
        elif op is Op.STORE:
            for k in range(x + 1):
                self.mem_write8(self.i + k, v[k])
        elif op is Op.LOAD:
            for k in range(x + 1):
                v[k] = self.mem_read8(self.i + k)

    def _wait_key(self, x: int):
        """Fx0A: complete only once a key goes from up to down.

        Until then PC is rewound so the next step re-executes this
        instruction, polling the keypad again.
        """
        if self._key_snapshot is None:
            self._key_snapshot = self.keypad.snapshot()
        pressed = self.keypad.new_presses(self._key_snapshot)
        if pressed:
            self.v[x] = pressed[0]
            self._key_snapshot = None
            self.waiting_for_key = False
            return
        # Keys released since the last poll may be pressed again later.
        self._key_snapshot = self.keypad.snapshot()
        self.waiting_for_key = True
        self.pc = (self.pc - 2) & ADDR_MASK

    # -- Run loop --

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until HALT or *max_steps*.  Returns steps executed."""
        count = 0
        while count < max_steps and not self.halted:
            self.step()
            count += 1
        return count

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, 16, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I={self.i:#05x}  PC={self.pc:#05x}  "
                     f"SP={len(self.stack)}  DT={self.timers.delay}  "
                     f"ST={self.timers.sound}  STEPS={self.step_count}")
        if self.stack:
            lines.append("  STACK=" + " ".join(f"{a:#05x}" for a in self.stack))
        return "\n".join(lines)
