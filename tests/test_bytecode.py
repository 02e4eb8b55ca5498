from __future__ import annotations

import struct

import pytest
from zstd import compress

from assemble import Assembler
from bytecode import (
    MAGIC, VERSION, Address, Comment, Jmp, Mov, Number, Out, Program, Register, Sub,
    Symbolic, disassemble,
)

SOURCE = """
/* countdown */
mov r0, 3
loop:
out "{0}\\n"
sub r0, r0, 1
cmp r0, -9223372036854775808
jg loop
jl loop
je loop
mul r1, r0, r255
div r2, 10, 3
mod r3, r2, 2
add r4, r4, 1
jmp end
end:
out done
"""


def test_program_round_trips_through_bytecode():
    program = Assembler().assemble(SOURCE)
    data = program.encode()
    assert isinstance(data, bytes)
    assert Program.decode(data) == program


def test_unresolved_targets_round_trip():
    program = Program([Jmp(Symbolic("later")), Comment("é ☃"), Out("")])
    assert Program.decode(program.encode()) == program


def test_empty_program():
    assert Program.decode(Program().encode()).instructions == []


def test_bad_magic():
    data = compress(struct.pack('<4sHI', b'NOPE', VERSION, 0), 3)
    with pytest.raises(ValueError, match="magic"):
        Program.decode(data)


def test_newer_version_is_rejected():
    data = compress(struct.pack('<4sHI', MAGIC, VERSION + 1, 0), 3)
    with pytest.raises(ValueError, match="version"):
        Program.decode(data)


def test_truncated_image():
    data = compress(struct.pack('<4sHI', MAGIC, VERSION, 1) + b'\x02\x00', 3)
    with pytest.raises(ValueError, match="Truncated"):
        Program.decode(data)


def test_unknown_opcode():
    data = compress(struct.pack('<4sHI', MAGIC, VERSION, 1) + b'\xEE', 3)
    with pytest.raises(ValueError, match="opcode"):
        Program.decode(data)


def test_trailing_bytes():
    data = compress(struct.pack('<4sHI', MAGIC, VERSION, 0) + b'\x00', 3)
    with pytest.raises(ValueError, match="Trailing"):
        Program.decode(data)


def test_instruction_text():
    assert str(Mov(0, Number(10))) == "mov r0, 10"
    assert str(Sub(2, Register(0), Number(-1))) == "sub r2, r0, -1"
    assert str(Out('say "hi"\n')) == 'out "say \\"hi\\"\\n"'
    assert str(Jmp(Symbolic("loop"))) == "jmp loop"
    assert str(Jmp(Address(4))) == "jmp @4"
    assert str(Comment(" note ")) == "/* note */"


def test_disassemble():
    program = Assembler().assemble("mov r0, 10\nx:\njmp x")
    text = disassemble(program)
    assert "/* Instructions: 3 */" in text
    assert "0x0000: mov r0, 10" in text
    assert "0x0001: x:" in text
    assert "0x0002: jmp @1" in text


def test_corrupt_image_is_a_value_error():
    with pytest.raises(ValueError, match="Invalid bytecode image"):
        Program.decode(b"not zstd at all")
