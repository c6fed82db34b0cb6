import json
import os

from bitlang import run_cli, run_repl

PROGRAMS = os.path.join(os.path.dirname(os.path.abspath(__file__)), "programs")


def testRunLiteralSource(capsys):
    assert run_cli(["-source", "LINE NUMBER ZERO CODE PRINT ONE"]) == 0
    assert capsys.readouterr().out == "1"


def testRunFileAsAscii(capsys):
    assert run_cli(["-ascii", os.path.join(PROGRAMS, "hello_world.bit")]) == 0
    assert capsys.readouterr().out == "Hello world!"


def testInputBits(capsys):
    assert run_cli(["-input", "11", os.path.join(PROGRAMS, "bit_addition.bit")]) == 0
    assert capsys.readouterr().out == "10"


def testParseErrorExitCode(capsys):
    assert run_cli(["-source", "LINE NUMBER ZERO CODE PRINT TWO"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("ParseError: Illegal symbol found. Bit constant was expected.")
    assert err.rstrip().endswith("^")


def testRuntimeErrorTraceback(capsys):
    assert run_cli(["-source", "LINE NUMBER ZERO CODE PRINT ONE GOTO ONE"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert "Traceback (most recent line last):" in captured.err
    assert "BITRuntimeError: No line exists with number 1. (rewrite: GOTO)" in captured.err


def testTracebackJson(capsys):
    assert run_cli(["--traceback-json", "-source", "LINE NUMBER ZERO CODE READ", "-input", ""]) == 1
    err = capsys.readouterr().err
    payload = err[err.index("{"):]
    data = json.loads(payload)
    assert data["error"]["message"] == "No more input bits."
    assert data["traceback"][0]["line_number"] == 0


def testMissingFile(capsys, tmp_path):
    assert run_cli([str(tmp_path / "missing.bit")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def testSourceFlagNeedsProgram(capsys):
    assert run_cli(["-source"]) == 1
    assert "-source requires a program string" in capsys.readouterr().err


def testExtensionFlag(capsys, tmp_path):
    path = tmp_path / "trailer.py"
    path.write_text(
        "import sys\n\n"
        "def bit_lang_register(ext):\n"
        "    ext.on_event('program_end', lambda interpreter: sys.stdout.write('!'))\n"
    )
    assert run_cli(["-ext", str(path), "-source", "LINE NUMBER ZERO CODE PRINT ZERO"]) == 0
    assert capsys.readouterr().out == "0!"


def testVerboseListsExtensions(capsys, tmp_path):
    path = tmp_path / "marker.py"
    path.write_text(
        "def bit_lang_register(ext):\n"
        "    ext.metadata(name='marker', version='2.0.1')\n"
    )
    assert run_cli(["-verbose", "-ext", str(path), "-source", "LINE NUMBER ZERO CODE PRINT ONE"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert captured.err == "Loaded extension marker 2.0.1 (api 1)\n"


def testBadExtensionFlag(capsys, tmp_path):
    assert run_cli(["-ext", str(tmp_path / "nope.py"), "-source", "LINE NUMBER ZERO CODE PRINT ZERO"]) == 1
    assert "ExtensionError" in capsys.readouterr().err


def feed(monkeypatch, lines):
    pending = list(lines)

    def fake_input(prompt=""):
        if not pending:
            raise EOFError
        return pending.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)


def testReplRunsBufferedProgram(capsys, monkeypatch):
    feed(monkeypatch, ["LINE NUMBER ZERO CODE PRINT ONE GOTO ONE", "LINE NUMBER ONE CODE PRINT ZERO", ""])
    assert run_repl(verbose=False) == 0
    out = capsys.readouterr().out
    assert "BIT" in out
    assert out.endswith("10\n\n")


def testReplReportsErrorsAndContinues(capsys, monkeypatch):
    feed(monkeypatch, ["LINE NUMBER ZERO CODE PRINT", "", "LINE NUMBER ZERO CODE PRINT ONE", ""])
    assert run_repl(verbose=False) == 0
    captured = capsys.readouterr()
    assert "ParseError" in captured.err
    assert captured.out.endswith("1\n\n")
