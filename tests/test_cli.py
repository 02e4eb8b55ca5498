from __future__ import annotations

import sys

import pytest

import assemble
import vm
from bytecode import Program

PROGRAM = 'mov r0, 6\nmul r1, r0, 7\nout "answer={1}\\n"\n'


def write(tmp_path, name: str, text: str):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_assemble_writes_bytecode_next_to_source(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "answer.basm", PROGRAM)
    monkeypatch.setattr(sys, "argv", ["assemble.py", str(src)])
    assemble.main()

    out_path = tmp_path / "answer.basmo"
    assert out_path.exists()
    program = Program.decode(out_path.read_bytes())
    assert len(program.instructions) == 3
    assert "Output written to" in capsys.readouterr().out


def test_run_source_and_bytecode(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "answer.basm", PROGRAM)
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src)])
    vm.main()
    assert capsys.readouterr().out == "answer=42\n"

    bin_path = tmp_path / "answer.basmo"
    bin_path.write_bytes(assemble.Assembler().assemble(PROGRAM).encode())
    monkeypatch.setattr(sys, "argv", ["vm.py", str(bin_path)])
    vm.main()
    assert capsys.readouterr().out == "answer=42\n"


def test_dump_labels(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "labels.basm", "a:\nout x\nb:\n")
    out_path = tmp_path / "labels.out"
    monkeypatch.setattr(sys, "argv", ["assemble.py", str(src), str(out_path), "--dump-labels"])
    assemble.main()
    out = capsys.readouterr().out
    assert "a: 0x0000" in out
    assert "b: 0x0002" in out
    assert out_path.exists()


def test_assembler_error_exits(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "bad.basm", "mov r0, 1\nbogus r1\n")
    monkeypatch.setattr(sys, "argv", ["assemble.py", str(src)])
    with pytest.raises(SystemExit) as exc:
        assemble.main()
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "Assembler error" in err
    assert "Line 2" in err


def test_runtime_error_exits(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "zero.basm", "div r0, 1, r1\n")
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src)])
    with pytest.raises(SystemExit) as exc:
        vm.main()
    assert exc.value.code == 1
    assert "Runtime error" in capsys.readouterr().err


def test_invalid_extension(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "prog.txt", PROGRAM)
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src)])
    with pytest.raises(SystemExit) as exc:
        vm.main()
    assert exc.value.code == 1
    assert "Invalid input file" in capsys.readouterr().err


def test_missing_file(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["vm.py", str(tmp_path / "nope.basm")])
    with pytest.raises(SystemExit) as exc:
        vm.main()
    assert exc.value.code == 1
    assert "File not found" in capsys.readouterr().err


def test_corrupt_bytecode_exits(tmp_path, monkeypatch, capsys):
    bad = tmp_path / "bad.basmo"
    bad.write_bytes(b"not zstd at all")
    monkeypatch.setattr(sys, "argv", ["vm.py", str(bad)])
    with pytest.raises(SystemExit) as exc:
        vm.main()
    assert exc.value.code == 1
    assert "Error loading program" in capsys.readouterr().err


def test_max_cycles_warns(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "spin.basm", "loop:\njmp loop\n")
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src), "--max-cycles", "50"])
    vm.main()
    assert "stopped after 50 cycles" in capsys.readouterr().err


def test_disasm(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "answer.basm", PROGRAM)
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src), "--disasm"])
    with pytest.raises(SystemExit) as exc:
        vm.main()
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "0x0001: mul r1, r0, 7" in out
    assert "answer=42" not in out


def test_trace_and_performance_go_to_stderr(tmp_path, monkeypatch, capsys):
    src = write(tmp_path, "answer.basm", PROGRAM)
    monkeypatch.setattr(sys, "argv", ["vm.py", str(src), "--trace", "--performance", "--debug"])
    vm.main()
    captured = capsys.readouterr()
    assert captured.out == "answer=42\n"
    assert "PC=0001" in captured.err
    assert "Executing:" in captured.err
