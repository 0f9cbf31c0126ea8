#!/usr/bin/env python3
"""
CHIP-8 Command Line
====================
Front-end for the CHIP-8 interpreter.

Provides:
  - load:  run a program in a pygame window
  - debug: same, but pause before every instruction; each step prints
           the disassembled instruction and the register file
  - dis:   print a disassembly listing of a program file

Usage:
  python cli.py load  PROGRAM [purple|green|blue|red] [--scale N] [--ips N]
  python cli.py debug PROGRAM [purple|green|blue|red] [--scale N]
  python cli.py dis   PROGRAM
"""

from __future__ import annotations
import argparse
import sys
from typing import Optional

from chip8 import (Chip8Error, DecodeError, Instruction, LoadError, Op,
                   PROGRAM_START, decode)
from system import Chip8System, DEFAULT_IPS, read_program

COLORS = ("purple", "green", "blue", "red")

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

_FIXED = {
    Op.HALT: "HALT", Op.CLS: "CLS", Op.RET: "RET",
}

_ADDR_OPS = {Op.JP: "JP", Op.CALL: "CALL", Op.LD_I: "LD I,"}

_XNN_OPS = {
    Op.SE_IMM: "SE", Op.SNE_IMM: "SNE", Op.LD_IMM: "LD",
    Op.ADD_IMM: "ADD", Op.RND: "RND",
}

_XY_OPS = {
    Op.SE_REG: "SE", Op.SNE_REG: "SNE", Op.LD_REG: "LD", Op.OR: "OR",
    Op.AND: "AND", Op.XOR: "XOR", Op.ADD_REG: "ADD", Op.SUB: "SUB",
    Op.SUBN: "SUBN", Op.SHR: "SHR", Op.SHL: "SHL",
}

_X_FORMATS = {
    Op.SKP: "SKP V{x:X}", Op.SKNP: "SKNP V{x:X}",
    Op.LD_VX_DT: "LD V{x:X}, DT", Op.LD_VX_K: "LD V{x:X}, K",
    Op.LD_DT: "LD DT, V{x:X}", Op.LD_ST: "LD ST, V{x:X}",
    Op.ADD_I: "ADD I, V{x:X}", Op.LD_F: "LD F, V{x:X}",
    Op.BCD: "LD B, V{x:X}", Op.STORE: "LD [I], V{x:X}",
    Op.LOAD: "LD V{x:X}, [I]",
}


def format_instruction(instr: Instruction) -> str:
    op = instr.op
    if op in _FIXED:
        return _FIXED[op]
    if op in _ADDR_OPS:
        return f"{_ADDR_OPS[op]} {instr.nnn:#05x}"
    if op is Op.JP_V0:
        return f"JP V0, {instr.nnn:#05x}"
    if op in _XNN_OPS:
        return f"{_XNN_OPS[op]} V{instr.x:X}, {instr.nn:#04x}"
    if op in _XY_OPS:
        return f"{_XY_OPS[op]} V{instr.x:X}, V{instr.y:X}"
    if op is Op.DRW:
        return f"DRW V{instr.x:X}, V{instr.y:X}, {instr.n}"
    return _X_FORMATS[op].format(x=instr.x)


def disasm_one(mem: bytes | bytearray, addr: int) -> str:
    """Disassemble the word at *addr*.  Undecodable words show as ``???``.

    A lone trailing byte shows as raw data (``DB 0xNN``).
    """
    if addr + 1 >= len(mem):
        return f"DB {mem[addr]:#04x}"
    word = (mem[addr] << 8) | mem[addr + 1]
    try:
        return format_instruction(decode(word, addr))
    except DecodeError:
        return f"??? {word:#06x}"


def disasm_range(mem: bytes | bytearray, start: int,
                 count: int) -> list[str]:
    """List *count* consecutive words from *start* as 'ADDR: WORD  TEXT'."""
    lines = []
    for k in range(count):
        addr = start + 2 * k
        if addr >= len(mem):
            break
        raw = mem[addr:addr + 2].hex().upper().ljust(4)
        lines.append(f"{addr:#05x}: {raw}  {disasm_one(mem, addr)}")
    return lines


# ---------------------------------------------------------------------------
#  Commands
# ---------------------------------------------------------------------------

def _trace(system: Chip8System):
    def on_trace(addr: int, instr: Instruction):
        print(f"  {addr:#05x}: {instr.word:04X}  {format_instruction(instr)}")
        print(system.cpu.dump_regs())
    return on_trace


def run_program(path: str, color: str, scale: int, ips: int,
                debug: bool, seed: Optional[int] = None) -> int:
    from display import Chip8Display

    system = Chip8System(ips=ips, debug=debug, seed=seed)
    try:
        size = system.load_program_file(path)
    except LoadError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    print(f"[chip8] loaded {size} bytes from '{path}' at {PROGRAM_START:#05x}")
    if debug:
        print("[chip8] debug: Enter = step, Delete = run, Escape = quit")
        system.on_trace = _trace(system)

    display = Chip8Display(color=color, scale=scale)
    display.start()
    system.display = display
    try:
        steps = system.run()
    except Chip8Error as e:
        print(f"error: {e}", file=sys.stderr)
        print(system.cpu.dump_regs(), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n[chip8] interrupted")
        return 130
    finally:
        display.stop()
    state = "halted" if system.cpu.halted else "stopped"
    print(f"[chip8] {state} after {steps} instructions")
    return 0


def disassemble_file(path: str) -> int:
    try:
        data = read_program(path)
    except LoadError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    mem = bytearray(PROGRAM_START) + bytearray(data)
    for line in disasm_range(mem, PROGRAM_START, (len(data) + 1) // 2):
        print(line)
    return 0


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chip8",
        description="CHIP-8 interpreter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  chip8 load pong.ch8\n"
               "  chip8 load pong.ch8 green --scale 16\n"
               "  chip8 debug pong.ch8\n"
               "  chip8 dis pong.ch8\n"
               "\n"
               "Keys: 1234 / QWER / ASDF / ZXCV map to 123C / 456D / 789E / A0BF\n"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_run_args(p: argparse.ArgumentParser):
        p.add_argument("path", help="CHIP-8 program image")
        p.add_argument("color", nargs="?", default="purple", choices=COLORS,
                       help="pixel colour (default: purple)")
        p.add_argument("--scale", type=int, default=12, metavar="N",
                       help="window pixels per CHIP-8 pixel (default: 12)")
        p.add_argument("--seed", type=int, default=None,
                       help="seed for the RND instruction")

    p_load = sub.add_parser("load", help="load and run a program")
    add_run_args(p_load)
    p_load.add_argument("--ips", type=int, default=DEFAULT_IPS, metavar="N",
                        help=f"instructions per second, 0 = unthrottled "
                             f"(default: {DEFAULT_IPS})")

    p_debug = sub.add_parser(
        "debug", help="load a program and step it one instruction at a time")
    add_run_args(p_debug)

    p_dis = sub.add_parser("dis", help="disassemble a program")
    p_dis.add_argument("path", help="CHIP-8 program image")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "dis":
        return disassemble_file(args.path)
    debug = args.command == "debug"
    return run_program(args.path, args.color, args.scale,
                       getattr(args, "ips", DEFAULT_IPS), debug, args.seed)


if __name__ == "__main__":
    sys.exit(main())
