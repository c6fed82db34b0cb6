import pytest

from bitio import bits_from_text
from extensions import (
    BITExtensionError,
    ExtensionAPI,
    build_default_services,
    load_runtime_services,
)
from interpreter import BITRuntimeError, Interpreter

CHAIN = (
    "LINE NUMBER ZERO CODE PRINT ZERO GOTO ONE "
    "LINE NUMBER ONE CODE PRINT ZERO GOTO ONE ZERO "
    "LINE NUMBER ONE ZERO CODE PRINT ZERO GOTO ONE ONE "
    "LINE NUMBER ONE ONE CODE PRINT ZERO"
)

LOOP = "LINE NUMBER ZERO CODE PRINT ONE GOTO ZERO"


def run_with(services, source):
    out = []
    interpreter = Interpreter(
        source=source,
        services=services,
        input_provider=bits_from_text("").read_bit,
        output_sink=out.append,
    )
    interpreter.run()
    return "".join(out), interpreter


def newApi(name="test"):
    services = build_default_services()
    return services, ExtensionAPI(services=services, ext_name=name)


def testLineEvents():
    services, api = newApi()
    seen = []
    api.on_event("program_start", lambda interpreter, program: seen.append(("start", program.first_line_number)))
    api.on_event("before_line", lambda interpreter, line: seen.append(("before", line.number)))
    api.on_event("after_line", lambda interpreter, line, nxt: seen.append(("after", line.number, nxt)))
    api.on_event("program_end", lambda interpreter: seen.append(("end",)))
    run_with(services, "LINE NUMBER ZERO CODE PRINT ZERO GOTO ONE LINE NUMBER ONE CODE PRINT ONE")
    assert seen == [
        ("start", 0),
        ("before", 0),
        ("after", 0, 1),
        ("before", 1),
        ("after", 1, None),
        ("end",),
    ]


def testEventPriority():
    services, api = newApi()
    order = []

    @api.on_event("program_end", priority=1)
    def low(interpreter):
        order.append("low")

    @api.on_event("program_end", priority=5)
    def high(interpreter):
        order.append("high")

    run_with(services, "LINE NUMBER ZERO CODE PRINT ONE")
    assert order == ["high", "low"]


def testUnknownEvent():
    _, api = newApi()
    with pytest.raises(BITExtensionError):
        api.on_event("before_statement", lambda *args: None)


def testErrorEvent():
    services, api = newApi()
    errors = []
    api.on_event("on_error", lambda interpreter, error: errors.append(error.message))
    with pytest.raises(BITRuntimeError):
        run_with(services, "LINE NUMBER ZERO CODE PRINT ONE GOTO ONE")
    assert errors == ["No line exists with number 1."]


def testEveryNSteps():
    services, api = newApi()
    steps = []

    @api.every_n_steps(2)
    def record(interpreter, ctx):
        steps.append((ctx.step_index, ctx.line_number, ctx.rule))

    run_with(services, CHAIN)
    assert steps == [(2, 1, "PRINT"), (4, 3, "PRINT")]


def testStepRuleCanStopEndlessProgram():
    services, api = newApi()

    def limit(interpreter, ctx):
        if ctx.step_index > 10:
            raise BITRuntimeError("Step limit reached.", rewrite_rule="LIMIT")

    api.every_n_steps(1, limit)
    out = []
    interpreter = Interpreter(source=LOOP, services=services, output_sink=out.append)
    with pytest.raises(BITRuntimeError) as exc:
        interpreter.run()
    assert exc.value.rewrite_rule == "LIMIT"
    assert "".join(out) == "1" * 10


def testFailingHookIsReported():
    services, api = newApi()

    def explode(interpreter, line):
        raise KeyError(line.number)

    api.on_event("before_line", explode)
    with pytest.raises(BITRuntimeError) as exc:
        run_with(services, LOOP)
    assert exc.value.message == "Extension 'test' hook 'before_line' failed: 0"
    assert exc.value.rewrite_rule == "EXT"


def testInvalidStepInterval():
    _, api = newApi()
    with pytest.raises(BITExtensionError):
        api.every_n_steps(0, lambda interpreter, ctx: None)


def testMetadataVersionCheck():
    services, api = newApi()
    api.metadata(name="ok", version="1.2.3")
    assert services.metadata[0].version == "1.2.3"
    with pytest.raises(BITExtensionError):
        api.metadata(name="future", requires_api=99)


EXTENSION_SOURCE = '''
import sys

BIT_LANG_EXTENSION_NAME = "done_marker"

printed = []


def bit_lang_register(ext):
    ext.metadata(name="done_marker", version="1.0.0")

    @ext.on_event("program_end")
    def _done(interpreter):
        sys.stderr.write(f"done after {len(printed)} bits\\n")

    @ext.on_event("on_print")
    def _count(interpreter, bit):
        printed.append(bit)
'''


def testLoadExtensionFromFile(tmp_path, capsys):
    path = tmp_path / "done_marker.py"
    path.write_text(EXTENSION_SOURCE)
    services = load_runtime_services([str(path)])
    assert [m.name for m in services.metadata] == ["done_marker"]
    out, _ = run_with(services, "LINE NUMBER ZERO CODE PRINT ONE GOTO ONE LINE NUMBER ONE CODE PRINT ZERO")
    assert out == "10"
    assert capsys.readouterr().err == "done after 2 bits\n"


def testExtensionWithoutRegisterFunction(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n")
    with pytest.raises(BITExtensionError):
        load_runtime_services([str(path)])


def testExtensionApiVersionMismatch(tmp_path):
    path = tmp_path / "old.py"
    path.write_text("BIT_LANG_EXTENSION_API_VERSION = 0\n\ndef bit_lang_register(ext):\n    pass\n")
    with pytest.raises(BITExtensionError):
        load_runtime_services([str(path)])


def testMissingExtension(tmp_path):
    with pytest.raises(BITExtensionError):
        load_runtime_services([str(tmp_path / "nope.py")])


def testIoEvents():
    services, api = newApi()
    seen = []
    api.on_event("on_read", lambda interpreter, bit: seen.append(("read", bit)))
    api.on_event("on_print", lambda interpreter, bit: seen.append(("print", bit)))
    interpreter = Interpreter(
        source="LINE NUMBER ZERO CODE READ GOTO ONE LINE NUMBER ONE CODE PRINT ZERO",
        services=services,
        input_provider=bits_from_text("1").read_bit,
        output_sink=[].append,
    )
    interpreter.run()
    assert seen == [("read", 1), ("print", 0)]


def testStepContextCarriesLineAndJumpRegister():
    services, api = newApi()
    seen = []

    @api.every_n_steps(1)
    def record(interpreter, ctx):
        seen.append((ctx.line_number, ctx.line.location.statement, ctx.jump_register))

    run_with(services, "LINE NUMBER ZERO CODE THE JUMP REGISTER EQUALS ONE GOTO ONE LINE NUMBER ONE CODE PRINT ONE")
    assert seen == [
        (0, "LINE NUMBER ZERO CODE THE JUMP REGISTER EQUALS ONE GOTO ONE", 0),
        (1, "LINE NUMBER ONE CODE PRINT ONE", 1),
    ]


def testFailingStepRuleNamesExtension():
    services, api = newApi("counter")

    @api.every_n_steps(1)
    def broken(interpreter, ctx):
        raise ValueError("boom")

    with pytest.raises(BITRuntimeError) as exc:
        run_with(services, LOOP)
    assert exc.value.message == "Extension 'counter' step rule 'broken' failed: boom"
    assert exc.value.rewrite_rule == "EXT"


def testExtensionWithoutMetadataIsListed(tmp_path):
    path = tmp_path / "quiet.py"
    path.write_text("def bit_lang_register(ext):\n    pass\n")
    services = load_runtime_services([str(path)])
    assert services.describe() == ["quiet 0.0.0 (api 1)"]


def testBrokenExtensionImport(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("raise RuntimeError('nope')\n")
    with pytest.raises(BITExtensionError):
        load_runtime_services([str(path)])
