from __future__ import annotations
from typing import Optional


class DoumiError(Exception):
    """Base class for interpreter errors."""


class DoumiParseError(DoumiError):
    """Raised when parsing fails."""


class NestingTooDeepError(DoumiParseError):
    """Block definitions nest deeper than the parser can recurse."""


OP_INC = "INC"
OP_DEC = "DEC"
OP_RESET = "RESET"
OP_SQUARE = "SQUARE"
OP_JUMP = "JUMP"
OP_OUT = "OUT"
OP_OUTCHAR = "OUTCHAR"

INSTRUCTIONS = {
    "i": OP_INC,
    "d": OP_DEC,
    "r": OP_RESET,
    "s": OP_SQUARE,
    "j": OP_JUMP,
    "o": OP_OUT,
    "p": OP_OUTCHAR,
}

COMMENT = "#"
DEF_OPEN = "("
DEF_SEP = ";"
DEF_CLOSE = ")"
CALL_OPEN = "@"
CALL_CLOSE = "."


class Scanner:
    """Character cursor over lowercased source.

    There is no token stream: the parser drives the scanner one character at
    a time and asks it to consume comments and identifiers in place.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text.lower()
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    @property
    def eof(self) -> bool:
        return self.index >= len(self.text)

    def peek(self) -> str:
        return self.text[self.index]

    def advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1

    def skip_to_end(self) -> None:
        while not self.eof:
            self.advance()

    def consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self.advance
        while self.index < n and text[self.index] != "\n":
            _advance()
        if self.index < n:
            _advance()  # the newline belongs to the comment

    def consume_identifier(self, terminator: str, skip: str) -> Optional[str]:
        # Returns None when input ends before the terminator.
        chars = []
        text = self.text
        n = len(text)
        _advance = self.advance
        while self.index < n:
            ch = text[self.index]
            _advance()
            if ch == terminator:
                return "".join(chars)
            if ch in skip:
                continue
            chars.append(ch)
        return None
