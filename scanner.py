from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple


class BITError(Exception):
    """Base class for interpreter errors."""


@dataclass
class Preview:
    text: str
    caret: int

    def render(self) -> str:
        return f"  {self.text}\n  {' ' * self.caret}^"


class BITParseError(BITError):
    """Raised when parsing fails."""

    def __init__(
        self,
        message: str,
        *,
        position: int = 0,
        preview: Optional[Preview] = None,
        filename: str = "<string>",
        line: int = 1,
        column: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.position = position
        self.preview = preview
        self.filename = filename
        self.line = line
        self.column = column

    def __str__(self) -> str:
        return f"{self.message} Position {self.position} ({self.filename}:{self.line}:{self.column})"

    def format_text(self) -> str:
        text = f"ParseError: {self}"
        if self.preview is not None:
            text += "\n" + self.preview.render()
        return text


LINE_NUMBER = "LINE NUMBER"
CODE = "CODE"
GOTO = "GOTO"
IF_THE_JUMP_REGISTER_IS = "IF THE JUMP REGISTER IS"
EQUAL_TO = "EQUAL TO"
PRINT = "PRINT"
READ = "READ"
EQUALS = "EQUALS"
VARIABLE = "VARIABLE"
THE_JUMP_REGISTER = "THE JUMP REGISTER"
NAND = "NAND"
THE_ADDRESS_OF = "THE ADDRESS OF"
THE_VALUE_BEYOND = "THE VALUE BEYOND"
THE_VALUE_AT = "THE VALUE AT"
OPEN_PARENTHESIS = "OPEN PARENTHESIS"
CLOSE_PARENTHESIS = "CLOSE PARENTHESIS"
ZERO = "ZERO"
ONE = "ONE"

PREVIEW_LENGTH = 60


class Scanner:
    """Matches keywords positionally against the raw program text.

    There is no token stream: the parser always knows which symbol it
    expects next and asks the scanner to check or consume it. Whitespace is
    skipped before every character of a symbol, so ``LINE NUMBER``,
    ``LINENUMBER`` and ``LINE  NUM BER`` are the same input.
    """

    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.position = 0
        self.length = len(text)

    def skip_whitespace(self) -> None:
        text = self.text
        n = self.length
        while self.position < n and text[self.position].isspace():
            self.position += 1

    def at_end(self) -> bool:
        self.skip_whitespace()
        return self.position >= self.length

    def check(self, symbol: str) -> bool:
        return self._match(symbol) is not None

    def consume(self, symbol: str) -> None:
        end = self._match(symbol)
        if end is None:
            self.skip_whitespace()
            raise self.error(f"Illegal symbol found. {symbol} was expected.")
        self.position = end

    def _match(self, symbol: str) -> Optional[int]:
        # Returns the cursor position just past the symbol, or None.
        text = self.text
        n = self.length
        index = self.position
        for ch in symbol:
            if ch == " ":
                continue
            while index < n and text[index].isspace():
                index += 1
            if index >= n or text[index] != ch:
                return None
            index += 1
        return index

    def location(self, position: int) -> Tuple[int, int]:
        line = self.text.count("\n", 0, position) + 1
        line_start = self.text.rfind("\n", 0, position) + 1
        return line, position - line_start + 1

    def preview(self, position: int) -> Preview:
        start = max(position - PREVIEW_LENGTH // 2, 0)
        end = min(position + PREVIEW_LENGTH // 2, self.length)
        window = self.text[start:end].replace("\n", " ").replace("\t", " ").replace("\r", " ")
        return Preview(text=window, caret=position - start)

    def error(self, message: str, position: Optional[int] = None) -> BITParseError:
        pos = self.position if position is None else position
        line, column = self.location(pos)
        return BITParseError(
            message,
            position=pos,
            preview=self.preview(pos),
            filename=self.filename,
            line=line,
            column=column,
        )
