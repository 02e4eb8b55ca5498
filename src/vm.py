#!/usr/bin/env python3
"""
BASM VM

Usage: python vm.py <program.basm|program.basmo> [--max-cycles N] [--trace] [--debug]

Runs an assembled program on a register machine:
  256 registers    r0-r255, signed 64-bit, all zero at start
  pc               index of the next instruction, starts at 0
  flag             LESS / EQUAL / GREATER, starts EQUAL

Arithmetic wraps modulo 2^64 and sets the flag by comparing the result
with zero; cmp sets it from comparing its two operands. jl/jg/je jump
when the flag matches. A jump sets pc to the target label's index, and
pc is incremented after every instruction, so execution resumes right
after the label marker.

The program stops when pc runs past the last instruction, or pauses
when the cycle budget (--max-cycles) is used up.
"""

import sys
import time
from enum import Enum
from typing import List, Optional, TextIO
from bytecode import (
    Program, Instruction, Value, Register, Address,
    Comment, Out, Mov, Arithmetic, Add, Sub, Mul, Div, Mod, Label, Jump, Jmp, Jl, Jg, Je, Cmp,
    REGISTER_COUNT, disassemble,
)
from assemble import Assembler, AssemblerError, BasmError, ErrorKind, parse_register_index


class VMError(BasmError):
    """Run-time failure; aborts the run."""
    def __init__(self, kind: ErrorKind, message: str, pc: Optional[int] = None):
        self.pc = pc
        if pc is not None:
            message = f"{message} (pc={pc})"
        super().__init__(kind, message)


class Comparison(Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


def compare(left: int, right: int) -> Comparison:
    """Three-way comparison of two integers."""
    if left < right:
        return Comparison.LESS
    if left > right:
        return Comparison.GREATER
    return Comparison.EQUAL


def mod_s64(value: int) -> int:
    """Wrap an integer into the signed 64-bit range."""
    return (value + 0x8000_0000_0000_0000) % 0x1_0000_0000_0000_0000 - 0x8000_0000_0000_0000


def truncated_div(left: int, right: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(left) // abs(right)
    return quotient if (left < 0) == (right < 0) else -quotient


CONDITIONS = {
    Jl: Comparison.LESS,
    Jg: Comparison.GREATER,
    Je: Comparison.EQUAL,
}


class VM:
    """BASM register machine. One instance per run."""

    def __init__(self, code: List[Instruction], stdout: Optional[TextIO] = None, start: int = 0):
        self.code = code

        # Registers r0-r255
        self.regs = [0] * REGISTER_COUNT

        # Special registers
        self.pc = start
        self.flag = Comparison.EQUAL

        # Execution state
        self.cycles = 0

        # Debug options
        self.trace = False

        self.stdout = stdout if stdout is not None else sys.stdout

    @property
    def halted(self) -> bool:
        """Whether pc has run past the last instruction."""
        return self.pc >= len(self.code)

    def resolve(self, value: Value) -> int:
        """Current integer behind an operand."""
        if isinstance(value, Register):
            return self.regs[value.index]
        return value.value

    def format_output(self, template: str) -> str:
        """Interpolate register references into an out template.

        "{N}" becomes the value of register N and "{{" a literal "{".
        A reference that is not a register index is kept as "{" plus its
        text, without the closing brace; so is an unterminated one.
        """
        result = []
        chars = iter(template)

        for c in chars:
            if c != '{':
                result.append(c)
                continue

            buffer = ""
            terminator = None
            for c in chars:
                if c in '{}':
                    terminator = c
                    break
                buffer += c

            if terminator == '{':
                result.append('{')
                continue

            index = parse_register_index(buffer) if terminator == '}' else None
            if index is None:
                result.append('{' + buffer)
            else:
                result.append(str(self.regs[index]))

        return ''.join(result)

    def alu_execute(self, op: Arithmetic, left: int, right: int) -> int:
        """Execute an arithmetic operation and return the wrapped result."""
        if isinstance(op, Add):
            return mod_s64(left + right)
        elif isinstance(op, Sub):
            return mod_s64(left - right)
        elif isinstance(op, Mul):
            return mod_s64(left * right)

        if right == 0:
            raise VMError(ErrorKind.DIVISION_BY_ZERO, f"Division by zero: {op}", self.pc)

        quotient = truncated_div(left, right)
        if isinstance(op, Div):
            return mod_s64(quotient)
        elif isinstance(op, Mod):
            # Remainder takes the sign of the dividend
            return mod_s64(left - right * quotient)

        raise TypeError(f"Unknown arithmetic instruction: {op!r}")

    def jump(self, op: Jump):
        target = op.target
        if not isinstance(target, Address):
            raise VMError(ErrorKind.UNRESOLVED_LABEL, f"Unresolved label: {op}", self.pc)
        self.pc = target.index

    def execute(self, op: Instruction):
        """Execute a single instruction. pc is advanced by the caller."""
        if isinstance(op, (Comment, Label)):
            return

        if isinstance(op, Out):
            self.stdout.write(self.format_output(op.template))

        elif isinstance(op, Mov):
            self.regs[op.dest] = self.resolve(op.src)

        elif isinstance(op, Arithmetic):
            result = self.alu_execute(op, self.resolve(op.left), self.resolve(op.right))
            self.regs[op.dest] = result
            self.flag = compare(result, 0)

        elif isinstance(op, Cmp):
            self.flag = compare(self.resolve(op.left), self.resolve(op.right))

        elif isinstance(op, Jmp):
            self.jump(op)

        elif isinstance(op, Jump):
            if self.flag == CONDITIONS[type(op)]:
                self.jump(op)

        else:
            raise TypeError(f"Unknown instruction: {op!r}")

    def step(self) -> bool:
        """Execute one instruction. Returns False if halted."""
        if self.halted:
            return False

        op = self.code[self.pc]

        if self.trace:
            self.print_state(op)

        self.cycles += 1
        self.execute(op)
        self.pc += 1

        return not self.halted

    def run(self, max_cycles: Optional[int] = None) -> bool:
        """Run until halted or max_cycles instructions were executed.

        Returns True if the program finished, False if it paused on the budget.
        Calling run again continues where the previous call paused.
        """
        executed = 0
        while not self.halted:
            if max_cycles is not None and executed >= max_cycles:
                return False
            self.step()
            executed += 1
        return True

    def print_state(self, op: Optional[Instruction] = None):
        """Print current VM state."""
        regs_str = ' '.join(f"r{i}={v}" for i, v in enumerate(self.regs) if v != 0)
        print(f"[{self.cycles:06d}] PC={self.pc:04X} FLAG={self.flag.name} {regs_str}".rstrip(),
              file=sys.stderr)
        if op is not None:
            print(f"         {op}", file=sys.stderr)


def run_program(code: List[Instruction], max_cycles: Optional[int] = None,
                stdout: Optional[TextIO] = None) -> VM:
    """Run a resolved instruction sequence on a fresh VM and return it."""
    vm = VM(code, stdout=stdout)
    vm.run(max_cycles)
    return vm


def load_program(path: str) -> Program:
    """Compile a .basm source file or decode a .basmo bytecode file."""
    if path.endswith('.basm'):
        with open(path, 'r', encoding='utf-8') as f:
            source = f.read()
        return Assembler().assemble(source)

    if path.endswith('.basmo'):
        with open(path, 'rb') as f:
            data = f.read()
        return Program.decode(data)

    raise ValueError(f"Invalid input file {path}: expected .basm or .basmo")


def main():
    import argparse

    parser = argparse.ArgumentParser(description='BASM VM')
    parser.add_argument('program', help='Source (.basm) or bytecode (.basmo) file')
    parser.add_argument('--max-cycles', '-c', type=int, default=None, help='Maximum cycles')
    parser.add_argument('--trace', '-t', action='store_true', help='Trace execution')
    parser.add_argument('--debug', '-d', action='store_true', help='Print instructions and final state')
    parser.add_argument('--performance', '-p', action='store_true', help='Print phase timings')
    parser.add_argument('--disasm', action='store_true', help='Disassemble and exit')

    args = parser.parse_args()

    start = time.perf_counter()

    # Load program
    try:
        program = load_program(args.program)

    except FileNotFoundError:
        print(f"Error: File not found: {args.program}", file=sys.stderr)
        sys.exit(1)

    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    except ValueError as e:
        print(f"Error loading program: {e}", file=sys.stderr)
        sys.exit(1)

    loaded = time.perf_counter()

    if args.disasm:
        print(disassemble(program))
        sys.exit(0)

    if args.debug:
        print(disassemble(program), file=sys.stderr)

    # Create and configure VM
    vm = VM(program.instructions)
    vm.trace = args.trace

    # Run
    try:
        finished = vm.run(args.max_cycles)
    except VMError as e:
        sys.stdout.flush()
        print(f"Runtime error: {e}", file=sys.stderr)
        sys.exit(1)

    executed = time.perf_counter()

    if not finished:
        print(f"Warning: Execution stopped after {vm.cycles} cycles", file=sys.stderr)

    if args.debug:
        print(f"\nExecution finished after {vm.cycles} cycles", file=sys.stderr)
        vm.print_state()

    if args.performance:
        print(f"Loading  : {loaded - start:.6f}", file=sys.stderr)
        print(f"Executing: {executed - loaded:.6f}", file=sys.stderr)


if __name__ == '__main__':
    main()
