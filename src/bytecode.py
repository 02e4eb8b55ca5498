"""
Bytecode encoding/decoding library for BASM.

A program is an ordered list of instructions. Jump targets are label
references: Symbolic(name) straight out of the assembler, Address(index)
once labels have been resolved.

Image Format (zstd-compressed):
  Bytes 0-3:  MAGIC 'BASM'
  Bytes 4-5:  Format version
  Bytes 6-9:  Instruction count
  Then one record per instruction:
    Byte 0:   Opcode (see OPCODES)
    Payload:  depends on the opcode

Payload fields:
  string     u32 byte length + UTF-8 bytes
  register   u8 register index
  value      u8 tag (0=number, 1=register) + i64 number or u8 register
  target     u8 tag (0=symbolic, 1=address) + string or u64 index

  comment, out, label   string
  mov                   register, value
  add/sub/mul/div/mod   register, value, value
  jmp/jl/jg/je          target
  cmp                   value, value
"""

from zstd import Error as ZstdError, compress, decompress
from dataclasses import dataclass
from typing import List, Tuple, Union
import struct

# Magic bytes for bytecode images
MAGIC = b'BASM'
VERSION = 1
HEADER_SIZE = 10
COMPRESSION_LEVEL = 22

REGISTER_COUNT = 256

VALUE_NUMBER = 0
VALUE_REGISTER = 1

TARGET_SYMBOLIC = 0
TARGET_ADDRESS = 1

ESCAPES = {
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
    '\0': '\\0',
    '\\': '\\\\',
    '"': '\\"',
}


@dataclass(frozen=True)
class Number:
    """Literal 64-bit signed integer operand."""
    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class Register:
    """Operand naming one of the 256 registers."""
    index: int

    def __str__(self) -> str:
        return f"r{self.index}"


Value = Union[Number, Register]


@dataclass(frozen=True)
class Symbolic:
    """Jump target by label name, before resolution."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Address:
    """Jump target by instruction index, after resolution."""
    index: int

    def __str__(self) -> str:
        return f"@{self.index}"


Target = Union[Symbolic, Address]


def quote(text: str) -> str:
    """Render text as a quoted string literal."""
    return '"' + ''.join(ESCAPES.get(c, c) for c in text) + '"'


@dataclass
class Comment:
    text: str

    def __str__(self) -> str:
        return f"/*{self.text}*/"


@dataclass
class Out:
    template: str

    def __str__(self) -> str:
        return f"out {quote(self.template)}"


@dataclass
class Mov:
    dest: int
    src: Value

    def __str__(self) -> str:
        return f"mov r{self.dest}, {self.src}"


@dataclass
class Arithmetic:
    """Shared shape of add, sub, mul, div and mod: dest = left OP right."""
    dest: int
    left: Value
    right: Value

    mnemonic = ''

    def __str__(self) -> str:
        return f"{self.mnemonic} r{self.dest}, {self.left}, {self.right}"


@dataclass
class Add(Arithmetic):
    mnemonic = 'add'


@dataclass
class Sub(Arithmetic):
    mnemonic = 'sub'


@dataclass
class Mul(Arithmetic):
    mnemonic = 'mul'


@dataclass
class Div(Arithmetic):
    mnemonic = 'div'


@dataclass
class Mod(Arithmetic):
    mnemonic = 'mod'


@dataclass
class Label:
    """No-op marker; jumps to this label land on its index."""
    name: str

    def __str__(self) -> str:
        return f"{self.name}:"


@dataclass
class Jump:
    """Shared shape of the jumps. The target is rewritten in place by the resolver."""
    target: Target

    mnemonic = ''

    def __str__(self) -> str:
        return f"{self.mnemonic} {self.target}"


@dataclass
class Jmp(Jump):
    mnemonic = 'jmp'


@dataclass
class Jl(Jump):
    mnemonic = 'jl'


@dataclass
class Jg(Jump):
    mnemonic = 'jg'


@dataclass
class Je(Jump):
    mnemonic = 'je'


@dataclass
class Cmp:
    left: Value
    right: Value

    def __str__(self) -> str:
        return f"cmp {self.left}, {self.right}"


Instruction = Union[Comment, Out, Mov, Arithmetic, Label, Jump, Cmp]

# Opcodes
OPCODES = {
    Comment: 0x00,
    Out:     0x01,
    Mov:     0x02,
    Add:     0x03,
    Sub:     0x04,
    Mul:     0x05,
    Div:     0x06,
    Mod:     0x07,
    Label:   0x08,
    Jmp:     0x09,
    Jl:      0x0A,
    Jg:      0x0B,
    Je:      0x0C,
    Cmp:     0x0D,
}

OPCODE_TYPES = {v: k for k, v in OPCODES.items()}


def encode_string(text: str) -> bytes:
    raw = text.encode('utf-8')
    return struct.pack('<I', len(raw)) + raw


def encode_value(value: Value) -> bytes:
    if isinstance(value, Register):
        return struct.pack('<BB', VALUE_REGISTER, value.index)
    return struct.pack('<Bq', VALUE_NUMBER, value.value)


def encode_target(target: Target) -> bytes:
    if isinstance(target, Address):
        return struct.pack('<BQ', TARGET_ADDRESS, target.index)
    return struct.pack('<B', TARGET_SYMBOLIC) + encode_string(target.name)


def encode_instruction(op: Instruction) -> bytes:
    """Encode a single instruction record."""
    if type(op) not in OPCODES:
        raise ValueError(f"Cannot encode {op!r}")
    data = struct.pack('<B', OPCODES[type(op)])

    if isinstance(op, Comment):
        data += encode_string(op.text)
    elif isinstance(op, Out):
        data += encode_string(op.template)
    elif isinstance(op, Label):
        data += encode_string(op.name)
    elif isinstance(op, Mov):
        data += struct.pack('<B', op.dest) + encode_value(op.src)
    elif isinstance(op, Arithmetic):
        data += struct.pack('<B', op.dest) + encode_value(op.left) + encode_value(op.right)
    elif isinstance(op, Jump):
        data += encode_target(op.target)
    elif isinstance(op, Cmp):
        data += encode_value(op.left) + encode_value(op.right)

    return data


def unpack(fmt: str, data: bytes, offset: int) -> Tuple[tuple, int]:
    """struct.unpack_from that reports truncation and returns the new offset."""
    size = struct.calcsize(fmt)
    if offset + size > len(data):
        raise ValueError(f"Truncated bytecode at offset {offset}")
    return struct.unpack_from(fmt, data, offset), offset + size


def decode_string(data: bytes, offset: int) -> Tuple[str, int]:
    (length,), offset = unpack('<I', data, offset)
    if offset + length > len(data):
        raise ValueError(f"Truncated string at offset {offset}")
    return data[offset:offset + length].decode('utf-8'), offset + length


def decode_value(data: bytes, offset: int) -> Tuple[Value, int]:
    (tag,), offset = unpack('<B', data, offset)
    if tag == VALUE_REGISTER:
        (index,), offset = unpack('<B', data, offset)
        return Register(index), offset
    if tag == VALUE_NUMBER:
        (number,), offset = unpack('<q', data, offset)
        return Number(number), offset
    raise ValueError(f"Invalid value tag {tag} at offset {offset - 1}")


def decode_target(data: bytes, offset: int) -> Tuple[Target, int]:
    (tag,), offset = unpack('<B', data, offset)
    if tag == TARGET_ADDRESS:
        (index,), offset = unpack('<Q', data, offset)
        return Address(index), offset
    if tag == TARGET_SYMBOLIC:
        name, offset = decode_string(data, offset)
        return Symbolic(name), offset
    raise ValueError(f"Invalid target tag {tag} at offset {offset - 1}")


def decode_instruction(data: bytes, offset: int) -> Tuple[Instruction, int]:
    """Decode one instruction record. Returns (instruction, new offset)."""
    (opcode,), offset = unpack('<B', data, offset)
    kind = OPCODE_TYPES.get(opcode)
    if kind is None:
        raise ValueError(f"Invalid opcode 0x{opcode:02X} at offset {offset - 1}")

    if kind in (Comment, Out, Label):
        text, offset = decode_string(data, offset)
        return kind(text), offset

    if kind is Mov:
        (dest,), offset = unpack('<B', data, offset)
        src, offset = decode_value(data, offset)
        return Mov(dest, src), offset

    if issubclass(kind, Arithmetic):
        (dest,), offset = unpack('<B', data, offset)
        left, offset = decode_value(data, offset)
        right, offset = decode_value(data, offset)
        return kind(dest, left, right), offset

    if issubclass(kind, Jump):
        target, offset = decode_target(data, offset)
        return kind(target), offset

    left, offset = decode_value(data, offset)
    right, offset = decode_value(data, offset)
    return Cmp(left, right), offset


@dataclass
class Program:
    """An assembled instruction sequence."""
    instructions: List[Instruction] = None

    def __post_init__(self):
        if self.instructions is None:
            self.instructions = []

    def encode(self) -> bytes:
        """Encode program to a compressed bytecode image."""
        header = struct.pack('<4sHI', MAGIC, VERSION, len(self.instructions))
        body = b''.join(encode_instruction(op) for op in self.instructions)

        return compress(header + body, COMPRESSION_LEVEL)

    @classmethod
    def decode(cls, data: bytes) -> 'Program':
        """Decode a compressed bytecode image."""
        try:
            data = decompress(data)
        except ZstdError as e:
            raise ValueError(f"Invalid bytecode image: {e}") from e

        if len(data) < HEADER_SIZE:
            raise ValueError("Data too short for bytecode header")

        magic, version, count = struct.unpack('<4sHI', data[:HEADER_SIZE])

        if magic != MAGIC:
            raise ValueError(f"Invalid magic bytes: {magic}")
        if version > VERSION:
            raise ValueError(f"Unsupported version: {version}")

        program = cls()
        offset = HEADER_SIZE
        for _ in range(count):
            op, offset = decode_instruction(data, offset)
            program.instructions.append(op)

        if offset != len(data):
            raise ValueError(f"Trailing data after {count} instructions at offset {offset}")

        return program


def disassemble(program: Program) -> str:
    """Disassemble program to human-readable format."""
    labels = sum(1 for op in program.instructions if isinstance(op, Label))
    lines = [
        f"/* Instructions: {len(program.instructions)} */",
        f"/* Labels: {labels} */",
        "",
    ]

    for i, op in enumerate(program.instructions):
        lines.append(f"0x{i:04X}: {op}")

    return '\n'.join(lines)
