from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Union

from scanner import (
    CLOSE_PARENTHESIS,
    CODE,
    EQUAL_TO,
    EQUALS,
    GOTO,
    IF_THE_JUMP_REGISTER_IS,
    LINE_NUMBER,
    NAND,
    ONE,
    OPEN_PARENTHESIS,
    PRINT,
    READ,
    THE_ADDRESS_OF,
    THE_JUMP_REGISTER,
    THE_VALUE_AT,
    THE_VALUE_BEYOND,
    VARIABLE,
    ZERO,
    Scanner,
)


JUMP_REGISTER_ADDRESS = -1


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    position: int
    statement: str


class Expression:
    pass


@dataclass(frozen=True)
class Nand(Expression):
    left: Expression
    right: Optional[Expression]


@dataclass(frozen=True)
class AddressOf(Expression):
    child: Expression


@dataclass(frozen=True)
class ValueBeyond(Expression):
    child: Expression


@dataclass(frozen=True)
class ValueAt(Expression):
    child: Expression


@dataclass(frozen=True)
class Variable(Expression):
    address: int

    @property
    def is_jump_register(self) -> bool:
        return self.address == JUMP_REGISTER_ADDRESS


@dataclass(frozen=True)
class Constant(Expression):
    value: int


class Instruction:
    pass


@dataclass(frozen=True)
class PrintCommand(Instruction):
    bit: int


@dataclass(frozen=True)
class ReadCommand(Instruction):
    pass


@dataclass(frozen=True)
class Assignment(Instruction):
    # A Variable target is written directly; any other expression is
    # resolved to an address at run time.
    target: Union[Variable, Expression]
    expression: Expression


@dataclass(frozen=True)
class GotoTarget:
    line_number: int
    # GOTO VARIABLE <bits>: the line number is read from memory at <bits>.
    indirect: bool = False


@dataclass(frozen=True)
class Goto:
    target: Optional[GotoTarget] = None
    if_zero: Optional[GotoTarget] = None
    if_one: Optional[GotoTarget] = None

    @property
    def is_conditional(self) -> bool:
        return self.target is None


@dataclass(frozen=True)
class Line:
    number: int
    instruction: Instruction
    goto: Optional[Goto]
    location: SourceLocation


@dataclass
class Program:
    lines: Dict[int, Line]
    first_line_number: int

    @property
    def first_line(self) -> Line:
        return self.lines[self.first_line_number]


class Parser:
    def __init__(self, scanner: Scanner) -> None:
        self.scanner = scanner

    def parse(self) -> Program:
        scanner = self.scanner
        first = self._parse_line()
        lines: Dict[int, Line] = {first.number: first}
        while scanner.check(LINE_NUMBER):
            scanner.skip_whitespace()
            start = scanner.position
            line = self._parse_line()
            if line.number in lines:
                raise scanner.error(f"Line number {line.number} is already defined.", start)
            lines[line.number] = line
        if not scanner.at_end():
            raise scanner.error(f"Unexpected input after the last line. {LINE_NUMBER} was expected.")
        return Program(lines=lines, first_line_number=first.number)

    def _parse_line(self) -> Line:
        scanner = self.scanner
        scanner.skip_whitespace()
        start = scanner.position
        scanner.consume(LINE_NUMBER)
        number = self.parse_bits()
        scanner.consume(CODE)
        instruction = self._parse_instruction()
        goto: Optional[Goto] = None
        if scanner.check(GOTO):
            goto = self._parse_goto()
        return Line(number=number, instruction=instruction, goto=goto, location=self._location(start))

    def _parse_instruction(self) -> Instruction:
        scanner = self.scanner
        if scanner.check(PRINT):
            scanner.consume(PRINT)
            return PrintCommand(bit=self.parse_bit())
        if scanner.check(READ):
            scanner.consume(READ)
            return ReadCommand()
        return self._parse_assignment()

    def _parse_assignment(self) -> Assignment:
        scanner = self.scanner
        target: Expression
        if scanner.check(VARIABLE) or scanner.check(THE_JUMP_REGISTER):
            target = self._parse_variable()
        else:
            target = self._parse_expression()
        scanner.consume(EQUALS)
        expression = self._parse_expression()
        return Assignment(target=target, expression=expression)

    def _parse_goto(self) -> Goto:
        scanner = self.scanner
        scanner.consume(GOTO)
        first = self._parse_goto_target()
        if not scanner.check(IF_THE_JUMP_REGISTER_IS):
            return Goto(target=first)
        first_bit = self._parse_guard()
        arms: Dict[int, GotoTarget] = {first_bit: first}
        if scanner.check(GOTO):
            scanner.consume(GOTO)
            second = self._parse_goto_target()
            guard_start = scanner.position
            second_bit = self._parse_guard()
            if second_bit == first_bit:
                raise scanner.error(
                    "Illegal symbol found. Conditional goto with different bit constant was expected.",
                    guard_start,
                )
            arms[second_bit] = second
        return Goto(if_zero=arms.get(0), if_one=arms.get(1))

    def _parse_goto_target(self) -> GotoTarget:
        scanner = self.scanner
        indirect = False
        if scanner.check(VARIABLE):
            scanner.consume(VARIABLE)
            indirect = True
        return GotoTarget(line_number=self.parse_bits(), indirect=indirect)

    def _parse_guard(self) -> int:
        scanner = self.scanner
        scanner.consume(IF_THE_JUMP_REGISTER_IS)
        if scanner.check(EQUAL_TO):
            scanner.consume(EQUAL_TO)
        return self.parse_bit()

    def _parse_expression(self) -> Expression:
        left = self._parse_expression2()
        right: Optional[Expression] = None
        if self.scanner.check(NAND):
            self.scanner.consume(NAND)
            right = self._parse_expression2()
        return Nand(left=left, right=right)

    def _parse_expression2(self) -> Expression:
        if self.scanner.check(THE_ADDRESS_OF):
            self.scanner.consume(THE_ADDRESS_OF)
            return AddressOf(child=self._parse_expression3())
        return self._parse_expression3()

    def _parse_expression3(self) -> Expression:
        if self.scanner.check(THE_VALUE_BEYOND):
            self.scanner.consume(THE_VALUE_BEYOND)
            return ValueBeyond(child=self._parse_expression4())
        return self._parse_expression4()

    def _parse_expression4(self) -> Expression:
        if self.scanner.check(THE_VALUE_AT):
            self.scanner.consume(THE_VALUE_AT)
            return ValueAt(child=self._parse_expression5())
        return self._parse_expression5()

    def _parse_expression5(self) -> Expression:
        scanner = self.scanner
        if scanner.check(VARIABLE) or scanner.check(THE_JUMP_REGISTER):
            return self._parse_variable()
        if scanner.check(ZERO) or scanner.check(ONE):
            return Constant(value=self.parse_bits())
        if scanner.check(OPEN_PARENTHESIS):
            scanner.consume(OPEN_PARENTHESIS)
            expression = self._parse_expression()
            scanner.consume(CLOSE_PARENTHESIS)
            return expression
        scanner.skip_whitespace()
        raise scanner.error("Illegal symbol found. Expression was expected.")

    def _parse_variable(self) -> Variable:
        scanner = self.scanner
        if scanner.check(VARIABLE):
            scanner.consume(VARIABLE)
            return Variable(address=self.parse_bits())
        if scanner.check(THE_JUMP_REGISTER):
            scanner.consume(THE_JUMP_REGISTER)
            return Variable(address=JUMP_REGISTER_ADDRESS)
        scanner.skip_whitespace()
        raise scanner.error("Illegal symbol found. Variable was expected.")

    def parse_bits(self) -> int:
        bits = self.parse_bit()
        while self.scanner.check(ZERO) or self.scanner.check(ONE):
            bits = (bits << 1) | self.parse_bit()
        return bits

    def parse_bit(self) -> int:
        scanner = self.scanner
        if scanner.check(ZERO):
            scanner.consume(ZERO)
            return 0
        if scanner.check(ONE):
            scanner.consume(ONE)
            return 1
        scanner.skip_whitespace()
        raise scanner.error("Illegal symbol found. Bit constant was expected.")

    def _location(self, start: int) -> SourceLocation:
        scanner = self.scanner
        line, column = scanner.location(start)
        statement = " ".join(scanner.text[start:scanner.position].split())
        return SourceLocation(file=scanner.filename, line=line, column=column, position=start, statement=statement)


def parse_source(text: str, filename: str = "<string>") -> Program:
    return Parser(Scanner(text, filename)).parse()
