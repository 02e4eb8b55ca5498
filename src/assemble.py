#!/usr/bin/env python3
"""
BASM Assembler

Usage: python assemble.py <infile.basm> [outfile=infile.basmo]

Assembly language syntax:
    /* block comment */
    label:
    command operands

Commands:
    Output:     out "template"   (exact text, escapes \\n \\r \\t \\0 \\\\ \\")
                out word         (word followed by a newline)
    Data:       mov rd, value
    Arithmetic: add, sub, mul, div, mod   rd, value, value
    Compare:    cmp value, value
    Control:    jmp, jl, jg, je   label

Operands:
    r0-r255     Registers
    -42, 7      Signed 64-bit decimal numbers

Output templates interpolate registers: "{3}" prints the value of r3,
"{{" prints a single "{".
"""

import sys
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple
from bytecode import (
    Program, Instruction, Value, Number, Register, Symbolic, Address,
    Comment, Out, Mov, Add, Sub, Mul, Div, Mod, Label, Jump, Jmp, Jl, Jg, Je, Cmp,
    REGISTER_COUNT,
)

I64_MIN = -(1 << 63)
I64_MAX = (1 << 63) - 1

NUMBER_PATTERN = re.compile(r'[+-]?[0-9]+')
REGISTER_PATTERN = re.compile(r'\+?[0-9]+')

STRING_ESCAPES = {
    'n': '\n',
    'r': '\r',
    't': '\t',
    '0': '\0',
    '\\': '\\',
    '"': '"',
}

ARITHMETIC = {
    'add': Add,
    'sub': Sub,
    'mul': Mul,
    'div': Div,
    'mod': Mod,
}

JUMPS = {
    'jmp': Jmp,
    'jl': Jl,
    'jg': Jg,
    'je': Je,
}


class ErrorKind(Enum):
    UNEXPECTED_END_OF_FILE = "Unexpected end of file"
    UNEXPECTED_END_OF_LINE = "Unexpected end of line"
    INVALID_ARGUMENT = "Invalid argument"
    INVALID_REGISTER = "Invalid register"
    INVALID_DESTINATION = "Invalid destination"
    INVALID_ESCAPE = "Invalid escape"
    INVALID_LABEL = "Invalid label"
    INVALID_COMMAND = "Invalid command"
    UNRESOLVED_LABEL = "Unresolved label"
    DIVISION_BY_ZERO = "Division by zero"


class BasmError(Exception):
    """Base for every compile and run failure, with optional source position."""
    def __init__(self, kind: ErrorKind, message: str, line: Optional[int] = None,
                 column: Optional[int] = None):
        self.kind = kind
        self.message = message
        self.line = line
        self.column = column
        if line is not None:
            super().__init__(f"Line {line}, column {column}: {message}")
        else:
            super().__init__(message)


class AssemblerError(BasmError):
    """Assembler error with line and column information."""


def parse_register_index(text: str) -> Optional[int]:
    """Parse an unsigned 8-bit register index, None if text is not one."""
    if not REGISTER_PATTERN.fullmatch(text):
        return None
    index = int(text)
    if index >= REGISTER_COUNT:
        return None
    return index


def parse_number(text: str) -> Optional[int]:
    """Parse a signed 64-bit decimal, None if text is not one."""
    if not NUMBER_PATTERN.fullmatch(text):
        return None
    number = int(text)
    if number < I64_MIN or number > I64_MAX:
        return None
    return number


class Scanner:
    """Character cursor over source text, tracking line and column."""

    def __init__(self, source: str):
        self.line = 1
        self.column = 0
        self.buffer = iter(source)
        self.last: Optional[str] = None

    def __iter__(self):
        return self

    def __next__(self) -> str:
        c = self.next_char()
        if c is None:
            raise StopIteration
        return c

    def next_char(self) -> Optional[str]:
        """Pull the next character, None once the source is exhausted."""
        c = next(self.buffer, None)
        if c == '\n':
            self.line += 1
            self.column = 0
        else:
            self.column += 1
        self.last = c
        return c

    def eof(self) -> bool:
        """Whether the last pull ran past the end of the source."""
        return self.last is None


class Assembler:
    """BASM Assembler."""

    def __init__(self):
        self.code: List[Instruction] = []
        self.labels: Dict[str, int] = {}
        self.scanner: Optional[Scanner] = None

    def error(self, kind: ErrorKind, message: str):
        """Raise an assembler error at the current scanner position."""
        raise AssemblerError(kind, f"{kind.value}: {message}", self.scanner.line, self.scanner.column)

    def end_of_file(self, context: str):
        self.error(ErrorKind.UNEXPECTED_END_OF_FILE, f"while reading {context}")

    def emit(self, op: Instruction):
        """Emit an instruction."""
        self.code.append(op)

    # Operand grammar

    def skip_whitespace(self) -> Optional[str]:
        """Skip whitespace on the current line. Returns the first other char, None at EOF."""
        c = self.scanner.next_char()
        while c is not None and c.isspace():
            if c == '\n':
                self.error(ErrorKind.UNEXPECTED_END_OF_LINE, "expected an argument")
            c = self.scanner.next_char()
        return c

    def read_until_whitespace(self, first: str) -> Tuple[str, str]:
        """Read a value token starting with first, up to a comma or whitespace.

        Returns the token and the last char read (the terminator, or the last
        char of the token at EOF).
        """
        token = first
        last_char = first
        for c in self.scanner:
            last_char = c
            if c == ',' or c.isspace():
                break
            token += c
        return token, last_char

    def parse_value(self, token: str) -> Value:
        """Parse a value token: rN is a register, anything else a number."""
        if token.startswith('r'):
            index = parse_register_index(token[1:])
            if index is None:
                self.error(ErrorKind.INVALID_REGISTER,
                           f"'{token}', expected r0 to r{REGISTER_COUNT - 1}")
            return Register(index)

        number = parse_number(token)
        if number is None:
            self.error(ErrorKind.INVALID_ARGUMENT, f"'{token}' is not a 64-bit integer")
        return Number(number)

    def read_first_argument(self) -> Tuple[Value, str]:
        c = self.skip_whitespace()
        if c is None:
            self.end_of_file("an argument")

        token, last_char = self.read_until_whitespace(c)
        return self.parse_value(token), last_char

    def read_later_argument(self, last_char: str) -> Tuple[Value, str]:
        """Read ', value' after a previous value that ended on last_char."""
        if last_char == '\n':
            self.error(ErrorKind.UNEXPECTED_END_OF_LINE, "expected ','")

        separator_found = last_char == ','
        while not separator_found:
            c = self.scanner.next_char()
            if c is None:
                self.end_of_file("an argument list")
            elif c == ',':
                separator_found = True
            elif c == '\n':
                self.error(ErrorKind.UNEXPECTED_END_OF_LINE, "expected ','")
            elif not c.isspace():
                self.error(ErrorKind.INVALID_ARGUMENT, f"unexpected character '{c}', expected ','")

        c = self.skip_whitespace()
        if c is None:
            self.end_of_file("an argument")

        token, last_char = self.read_until_whitespace(c)
        return self.parse_value(token), last_char

    def read_values(self, count: int) -> List[Value]:
        """Read a comma-separated list of count values."""
        value, last_char = self.read_first_argument()
        values = [value]
        for _ in range(count - 1):
            value, last_char = self.read_later_argument(last_char)
            values.append(value)
        return values

    def read_register_arguments(self, count: int) -> Tuple[int, List[Value]]:
        """Read a destination register followed by count values."""
        dest, last_char = self.read_first_argument()
        if not isinstance(dest, Register):
            self.error(ErrorKind.INVALID_DESTINATION, f"can only store into registers, got '{dest}'")

        values = []
        for _ in range(count):
            value, last_char = self.read_later_argument(last_char)
            values.append(value)
        return dest.index, values

    def read_word(self, context: str) -> str:
        """Skip whitespace and read a bare word up to the next whitespace."""
        c = self.skip_whitespace()
        if c is None:
            self.end_of_file(context)

        word = c
        for c in self.scanner:
            if c.isspace():
                break
            word += c
        return word

    def read_string(self) -> str:
        """Read a quoted string; the opening quote is already consumed."""
        result = ""
        escaped = False

        for c in self.scanner:
            if escaped:
                if c not in STRING_ESCAPES:
                    self.error(ErrorKind.INVALID_ESCAPE, f"'\\{c}'")
                result += STRING_ESCAPES[c]
                escaped = False
            elif c == '"':
                break
            elif c == '\\':
                escaped = True
            else:
                result += c

        if self.scanner.eof():
            self.end_of_file("a string")
        return result

    def read_comment(self) -> Comment:
        """Read a block comment; the opening '/*' is already consumed."""
        comment = ""

        last_char = self.scanner.next_char()
        if last_char is None:
            self.end_of_file("a comment")

        for c in self.scanner:
            if last_char == '*' and c == '/':
                break
            comment += last_char
            last_char = c

        if self.scanner.eof():
            self.end_of_file("a comment")
        return Comment(comment)

    # Commands

    def assemble_out(self):
        """Assemble out: a quoted template verbatim, or a bare word plus newline."""
        c = self.skip_whitespace()
        if c is None:
            self.end_of_file("out")

        if c == '"':
            self.emit(Out(self.read_string()))
            return

        output = c
        for c in self.scanner:
            if c.isspace():
                break
            output += c
        self.emit(Out(output + '\n'))

    def assemble_mov(self):
        """Assemble mov instruction: mov rd, value"""
        dest, (src,) = self.read_register_arguments(1)
        self.emit(Mov(dest, src))

    def assemble_arithmetic(self, mnemonic: str):
        """Assemble arithmetic instructions: op rd, value, value"""
        dest, (left, right) = self.read_register_arguments(2)
        self.emit(ARITHMETIC[mnemonic](dest, left, right))

    def assemble_jump(self, mnemonic: str):
        """Assemble jump instructions; the target stays symbolic until resolve_labels."""
        target = self.read_word("a jump target")
        self.emit(JUMPS[mnemonic](Symbolic(target)))

    def assemble_cmp(self):
        """Assemble cmp instruction: cmp value, value"""
        left, right = self.read_values(2)
        self.emit(Cmp(left, right))

    def assemble_label(self, command: str):
        colon_pos = command.index(':')
        if colon_pos != len(command) - 1:
            self.error(ErrorKind.INVALID_LABEL, f"'{command}', nothing may follow ':'")
        if colon_pos == 0:
            self.error(ErrorKind.INVALID_LABEL, "label name is empty")
        self.emit(Label(command[:colon_pos]))

    def parse_command(self, command: str):
        """Dispatch one whitespace-delimited command and read its operands."""
        if not command:
            return

        if command == 'out':
            self.assemble_out()
        elif command == 'mov':
            self.assemble_mov()
        elif command in ARITHMETIC:
            self.assemble_arithmetic(command)
        elif command in JUMPS:
            self.assemble_jump(command)
        elif command == 'cmp':
            self.assemble_cmp()
        elif ':' in command:
            self.assemble_label(command)
        else:
            self.error(ErrorKind.INVALID_COMMAND, f"'{command}'")

    def parse(self, source: str) -> List[Instruction]:
        """Split source into the raw instruction sequence, jump targets unresolved."""
        self.code = []
        self.scanner = Scanner(source)

        last_char = self.scanner.next_char()
        if last_char is None:
            return self.code

        command = "" if last_char.isspace() else last_char

        for c in self.scanner:
            if c.isspace():
                self.parse_command(command)
                command = ""
            elif last_char == '/' and c == '*':
                # The pending '/' belongs to the comment, not a command
                self.emit(self.read_comment())
                command = ""
            else:
                command += c
            last_char = c

        self.parse_command(command)
        return self.code

    def assemble(self, source: str) -> Program:
        """Assemble source code into a resolved program."""
        code = self.parse(source)
        self.labels = resolve_labels(code)
        return Program(code)


def resolve_labels(code: List[Instruction]) -> Dict[str, int]:
    """Rewrite symbolic jump targets to instruction indices, in place.

    A label resolves to the index of its own Label marker; the last
    declaration of a name wins. Nothing is rewritten if any target is
    missing. Returns the label map.
    """
    labels = {}
    for i, op in enumerate(code):
        if isinstance(op, Label):
            labels[op.name] = i

    patches = []
    for op in code:
        if not isinstance(op, Jump) or not isinstance(op.target, Symbolic):
            continue
        name = op.target.name
        if name not in labels:
            raise AssemblerError(ErrorKind.UNRESOLVED_LABEL,
                                 f"{ErrorKind.UNRESOLVED_LABEL.value}: {op.mnemonic} {name}")
        patches.append((op, Address(labels[name])))

    for op, address in patches:
        op.target = address

    return labels


def main():
    import argparse

    parser = argparse.ArgumentParser(description='BASM Assembler')
    parser.add_argument('infile', help='Input assembly file (.basm)')
    parser.add_argument('outfile', nargs='?', default=None, help='Output bytecode file (.basmo)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')
    parser.add_argument('--debug', '-d', action='store_true', help='Print the assembled instructions')

    args = parser.parse_args()

    # Read source file
    try:
        with open(args.infile, 'r', encoding='utf-8') as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    assembler = Assembler()
    try:
        program = assembler.assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"Assembled {len(program.instructions)} instructions")
        print(f"Labels: {assembler.labels}")

    if args.dump_labels:
        for name, addr in sorted(assembler.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: 0x{addr:04X}")

    if args.debug:
        from bytecode import disassemble
        print(disassemble(program), file=sys.stderr)

    if not args.outfile:
        args.outfile = args.infile.removesuffix('.basm') + '.basmo'

    # Write output
    try:
        with open(args.outfile, 'wb') as f:
            f.write(program.encode())
        print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
