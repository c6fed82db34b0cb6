from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from bitio import OUTPUT_BITS, BitSink, StreamBitSource, make_output_sink
from extensions import BITExtensionError, HookRegistry, RuntimeServices, StepContext, build_default_services
from parser import (
    JUMP_REGISTER_ADDRESS,
    AddressOf,
    Assignment,
    Constant,
    Expression,
    Goto,
    GotoTarget,
    Instruction,
    Line,
    Nand,
    Parser,
    PrintCommand,
    Program,
    ReadCommand,
    SourceLocation,
    ValueAt,
    ValueBeyond,
    Variable,
)
from scanner import BITError, Scanner


KIND_UNDEFINED = "UNDEFINED"
KIND_BIT = "BIT"
KIND_ADDRESS = "ADDRESS_OF_A_BIT"


@dataclass(frozen=True)
class Value:
    kind: str
    payload: int

    def render(self) -> str:
        if self.kind == KIND_BIT:
            return str(self.payload)
        if self.kind == KIND_ADDRESS:
            return f"&{self.payload}"
        return f"?{self.payload}"


UNDEFINED = Value(KIND_UNDEFINED, 0)


class BITRuntimeError(BITError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule
        self.step_index: Optional[int] = None


class Memory:
    """Sparse bit memory plus the jump register.

    Addresses start at the jump register's reserved address; every address
    above it is an ordinary cell that reads as undefined until written.
    """

    def __init__(self) -> None:
        self.cells: Dict[int, Value] = {}
        self.jump_register = 0

    def clear(self) -> None:
        self.cells.clear()
        self.jump_register = 0

    def read(self, address: int) -> Value:
        if address == JUMP_REGISTER_ADDRESS:
            return Value(KIND_BIT, self.jump_register)
        if address < JUMP_REGISTER_ADDRESS:
            raise BITRuntimeError(f"Invalid memory address: {address}.", rewrite_rule="MEMORY")
        value = self.cells.get(address)
        if value is None:
            value = self.cells[address] = UNDEFINED
        return value

    def write(self, address: int, value: Value) -> None:
        if value.kind == KIND_BIT and value.payload not in (0, 1):
            raise BITRuntimeError(f"Illegal value: {value.payload}.", rewrite_rule="MEMORY")
        if address == JUMP_REGISTER_ADDRESS:
            if value.kind == KIND_ADDRESS:
                raise BITRuntimeError(
                    "The jump register can't store address-of-a-bit values.", rewrite_rule="MEMORY"
                )
            if value.payload not in (0, 1):
                raise BITRuntimeError(f"Illegal value: {value.payload}.", rewrite_rule="MEMORY")
            self.jump_register = value.payload
            return
        if address < JUMP_REGISTER_ADDRESS:
            raise BITRuntimeError(f"Invalid memory address: {address}.", rewrite_rule="MEMORY")
        self.cells[address] = value

    def snapshot(self) -> Dict[str, str]:
        out = {"JUMP_REGISTER": str(self.jump_register)}
        for address in sorted(self.cells):
            out[str(address)] = self.cells[address].render()
        return out


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    line_number: Optional[int]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    memory_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


# Entries kept for tracebacks; older ones are discarded as a run goes on.
STATE_HISTORY = 64


class StateLogger:
    def __init__(self, verbose: bool, history: int = STATE_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        line_number: Optional[int],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        memory_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            line_number=line_number,
            source_location=location,
            statement=statement,
            memory_snapshot=memory_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def recent_lines(self, count: int) -> List[StateEntry]:
        executed = [entry for entry in self.entries if entry.line_number is not None]
        return executed[-count:] if count > 0 else []


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], Union[int, str]]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        output_mode: str = OUTPUT_BITS,
    ) -> None:
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or StreamBitSource().read_bit
        self.output: BitSink = make_output_sink(output_mode, output_sink or _write_stdout)
        self.memory = Memory()
        self.program: Optional[Program] = None
        self.current_line: Optional[Line] = None
        self._reset_logs()

    def _reset_logs(self) -> None:
        self.logger = StateLogger(verbose=self.verbose)
        self.logger.record(line_number=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})

    def parse(self) -> Program:
        return Parser(Scanner(self.source, self.filename)).parse()

    def run(self) -> None:
        self.run_program(self.parse())

    def run_program(self, program: Program) -> None:
        self.memory.clear()
        self._reset_logs()
        self.program = program
        self.current_line = None
        self._emit_event("program_start", self, program)
        try:
            self._execute_program(program)
        except BITRuntimeError as error:
            if error.location is None and self.current_line is not None:
                error.location = self.current_line.location
            self._emit_event("on_error", self, error)
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions into BITRuntimeError
            # so callers (REPL/CLI) can format them as BIT tracebacks.
            loc = self.current_line.location if self.current_line is not None else None
            wrapped = BITRuntimeError(f"Internal interpreter error: {exc}", location=loc, rewrite_rule="internal")
            if self.logger.entries:
                wrapped.step_index = self.logger.entries[-1].step_index
            raise wrapped from exc
        else:
            self._emit_event("program_end", self)
        finally:
            self.output.flush()

    def _execute_program(self, program: Program) -> None:
        emit_event = self._emit_event
        line: Line = program.first_line
        while True:
            self.current_line = line
            emit_event("before_line", self, line)
            self._log_step(line)
            self._execute_instruction(line.instruction)
            next_number = self._next_line_number(line.goto) if line.goto is not None else None
            emit_event("after_line", self, line, next_number)
            if next_number is None:
                return
            next_line = program.lines.get(next_number)
            if next_line is None:
                raise BITRuntimeError(f"No line exists with number {next_number}.", rewrite_rule="GOTO")
            line = next_line

    def _execute_instruction(self, instruction: Instruction) -> None:
        if isinstance(instruction, PrintCommand):
            self.output.emit(instruction.bit)
            self._emit_event("on_print", self, instruction.bit)
            return
        if isinstance(instruction, ReadCommand):
            try:
                raw = self.input_provider()
            except EOFError:
                raise BITRuntimeError("No more input bits.", rewrite_rule="READ") from None
            if isinstance(raw, bool) or raw not in (0, 1):
                raise BITRuntimeError(f"Invalid value read: {raw!r}.", rewrite_rule="READ")
            self.memory.write(JUMP_REGISTER_ADDRESS, Value(KIND_BIT, int(raw)))
            self._emit_event("on_read", self, int(raw))
            return
        if isinstance(instruction, Assignment):
            address = self._resolve_address(instruction.target)
            value = self._evaluate_expression(instruction.expression)
            self.memory.write(address, value)
            return
        raise BITRuntimeError(f"Unknown instruction {instruction.__class__.__name__}", rewrite_rule="internal")

    def _next_line_number(self, goto: Goto) -> Optional[int]:
        if goto.target is not None:
            return self._resolve_goto_target(goto.target)
        arm = goto.if_zero if self.memory.jump_register == 0 else goto.if_one
        if arm is None:
            return None
        return self._resolve_goto_target(arm)

    def _resolve_goto_target(self, target: GotoTarget) -> int:
        if not target.indirect:
            return target.line_number
        stored = self.memory.read(target.line_number)
        if stored.payload < 0:
            raise BITRuntimeError(f"Invalid line number: {stored.payload}.", rewrite_rule="GOTO")
        return stored.payload

    def _evaluate_expression(self, expression: Expression) -> Value:
        if isinstance(expression, Nand):
            left = self._evaluate_expression(expression.left)
            if expression.right is None:
                return left
            right = self._evaluate_expression(expression.right)
            if left.kind != KIND_BIT or right.kind != KIND_BIT:
                raise BITRuntimeError("The NAND operator requires bit values.", rewrite_rule="NAND")
            return Value(KIND_BIT, 1 - (left.payload & right.payload))
        if isinstance(expression, AddressOf):
            return self._address_of(expression.child)
        if isinstance(expression, ValueBeyond):
            return self._dereference(self._pointer(expression.child, "THE VALUE BEYOND") + 1)
        if isinstance(expression, ValueAt):
            return self._dereference(self._pointer(expression.child, "THE VALUE AT"))
        if isinstance(expression, Variable):
            if expression.address < JUMP_REGISTER_ADDRESS:
                raise BITRuntimeError(f"Illegal address: {expression.address}.", rewrite_rule="VARIABLE")
            return self.memory.read(expression.address)
        if isinstance(expression, Constant):
            return Value(KIND_UNDEFINED, expression.value)
        raise BITRuntimeError(f"Unknown expression {expression.__class__.__name__}", rewrite_rule="internal")

    def _address_of(self, child: Expression) -> Value:
        address = self._designated_address(child)
        if address is None:
            value = self._evaluate_expression(child)
            if value.kind == KIND_ADDRESS:
                raise BITRuntimeError("The THE ADDRESS OF operator requires a bit value.", rewrite_rule="ADDRESS_OF")
            address = value.payload
        if address < JUMP_REGISTER_ADDRESS:
            raise BITRuntimeError(f"Invalid memory address: {address}.", rewrite_rule="ADDRESS_OF")
        if address == JUMP_REGISTER_ADDRESS:
            raise BITRuntimeError(
                "The THE ADDRESS OF operator can't be used with the jump register.", rewrite_rule="ADDRESS_OF"
            )
        return Value(KIND_ADDRESS, address)

    def _pointer(self, child: Expression, operator: str) -> int:
        value = self._evaluate_expression(child)
        if value.kind == KIND_BIT:
            raise BITRuntimeError(
                f"The {operator} operator requires an address-of-a-bit value.",
                rewrite_rule=operator.replace(" ", "_"),
            )
        if value.payload < 0:
            raise BITRuntimeError(f"Invalid memory address: {value.payload}.", rewrite_rule=operator.replace(" ", "_"))
        return value.payload

    def _dereference(self, address: int) -> Value:
        result = self.memory.read(address)
        if result.kind == KIND_ADDRESS:
            raise BITRuntimeError("Variable must contain a bit value.", rewrite_rule="DEREFERENCE")
        return result

    def _designated_address(self, expression: Expression) -> Optional[int]:
        # The cell an expression names, if it names one at all.
        if isinstance(expression, Nand) and expression.right is None:
            return self._designated_address(expression.left)
        if isinstance(expression, Variable):
            return expression.address
        if isinstance(expression, ValueAt):
            return self._pointer(expression.child, "THE VALUE AT")
        if isinstance(expression, ValueBeyond):
            return self._pointer(expression.child, "THE VALUE BEYOND") + 1
        return None

    def _resolve_address(self, target: Expression) -> int:
        address = self._designated_address(target)
        if address is None:
            address = self._evaluate_expression(target).payload
        return address

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except BITExtensionError as exc:
            loc = self.current_line.location if self.current_line is not None else None
            raise BITRuntimeError(str(exc), location=loc, rewrite_rule="EXT") from exc

    def _log_step(self, line: Line) -> None:
        rule = _rule_name(line.instruction)
        snapshot = self.memory.snapshot() if self.verbose else None
        entry = self.logger.record(
            line_number=line.number,
            location=line.location,
            statement=line.location.statement,
            memory_snapshot=snapshot,
            rewrite_record={"rule": rule, "line": line.number},
        )
        ctx = StepContext(step_index=entry.step_index, rule=rule, line=line, jump_register=self.memory.jump_register)
        try:
            self.hook_registry.after_step(self, ctx)
        except BITExtensionError as exc:
            raise BITRuntimeError(str(exc), location=line.location, rewrite_rule="EXT") from exc


def _rule_name(instruction: Instruction) -> str:
    if isinstance(instruction, PrintCommand):
        return "PRINT"
    if isinstance(instruction, ReadCommand):
        return "READ"
    return "ASSIGN"


TRACEBACK_DEPTH = 5


@dataclass
class TracebackFrame:
    name: str
    line_number: int
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: StateEntry


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter, depth: int = TRACEBACK_DEPTH) -> None:
        self.interpreter = interpreter
        self.depth = depth

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for entry in self.interpreter.logger.recent_lines(self.depth):
            frames.append(
                TracebackFrame(
                    name=f"LINE {entry.line_number:b}",
                    line_number=entry.line_number,
                    location=entry.source_location,
                    statement=entry.statement,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: BITRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent line last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            lines.append(
                f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
            )
            if verbose and frame.state_entry.memory_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.memory_snapshot.items())
                lines.append(f"    Memory snapshot: {snapshot}")
        rule = error.rewrite_rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rewrite: {rule})")
        return "\n".join(lines)

    def to_json(self, error: BITRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "line_number": frame.line_number}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            entry["state_id"] = frame.state_entry.state_id
            entry["step_index"] = frame.state_entry.step_index
            if frame.state_entry.memory_snapshot is not None:
                entry["memory_snapshot"] = frame.state_entry.memory_snapshot
            if frame.state_entry.rewrite_record is not None:
                entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rewrite_rule": error.rewrite_rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
