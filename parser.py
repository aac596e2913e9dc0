from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from lexer import (
    CALL_CLOSE,
    CALL_OPEN,
    COMMENT,
    DEF_CLOSE,
    DEF_OPEN,
    DEF_SEP,
    INSTRUCTIONS,
    DoumiParseError,
    NestingTooDeepError,
    Scanner,
)


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass(frozen=True)
class Node:
    location: SourceLocation = field(compare=False, repr=False)


@dataclass(frozen=True)
class Program(Node):
    statements: Tuple[Node, ...]


@dataclass(frozen=True)
class Instruction(Node):
    op: str


@dataclass(frozen=True)
class BlockDef(Node):
    name: str
    body: Tuple[Node, ...]


@dataclass(frozen=True)
class BlockCall(Node):
    name: str


# op -> source letter, for rendering programs back to text
OP_LETTERS = {op: letter for letter, op in INSTRUCTIONS.items()}


class Parser:
    def __init__(self, text: str, filename: str, source_lines: Optional[List[str]] = None) -> None:
        self.scanner = Scanner(text, filename)
        self.filename = filename
        self.source_lines = source_lines if source_lines is not None else text.splitlines()
        # One stripped string per line, shared by every node on that line.
        self._statements = [line.strip() for line in self.source_lines]
        # Non-fatal warnings, e.g. a stray ')' that ended the parse early.
        self.diagnostics: List[str] = []

    def parse(self) -> Program:
        location = self._location()
        try:
            statements = self._parse_sequence(opened_at=None)
        except RecursionError:
            # The scanner still points where the stack ran out.
            loc = self._location()
            raise NestingTooDeepError(
                f"Block nesting too deep at {loc.file}:{loc.line}:{loc.column}"
            ) from None
        return Program(location=location, statements=tuple(statements))

    def _parse_sequence(self, opened_at: Optional[SourceLocation]) -> List[Node]:
        """Parse nodes until EOF (top level) or the first unmatched ')' (block body).

        `opened_at` is the location of the enclosing '(' or None at top level.
        """
        nodes: List[Node] = []
        append = nodes.append
        scanner = self.scanner
        instructions = INSTRUCTIONS
        while not scanner.eof:
            ch = scanner.peek()
            if ch in instructions:
                append(Instruction(location=self._location(), op=instructions[ch]))
                scanner.advance()
                continue
            if ch == COMMENT:
                scanner.consume_comment()
                continue
            if ch == DEF_OPEN:
                append(self._parse_block_def())
                continue
            if ch == CALL_OPEN:
                append(self._parse_block_call())
                continue
            if ch == DEF_CLOSE:
                if opened_at is not None:
                    scanner.advance()
                    return nodes
                loc = self._location()
                self.diagnostics.append(
                    f"Unmatched ')' at {loc.file}:{loc.line}:{loc.column}; remaining input ignored"
                )
                scanner.skip_to_end()
                return nodes
            scanner.advance()
        if opened_at is not None:
            raise DoumiParseError(
                f"Unterminated block definition body (missing ')') opened at "
                f"{opened_at.file}:{opened_at.line}:{opened_at.column}"
            )
        return nodes

    def _parse_block_def(self) -> BlockDef:
        location = self._location()
        self.scanner.advance()  # consume '('
        name = self.scanner.consume_identifier(DEF_SEP, " ")
        if name is None:
            raise DoumiParseError(
                f"Unterminated block definition (missing ';' after name) at "
                f"{location.file}:{location.line}:{location.column}"
            )
        body = self._parse_sequence(opened_at=location)
        return BlockDef(location=location, name=name, body=tuple(body))

    def _parse_block_call(self) -> BlockCall:
        location = self._location()
        self.scanner.advance()  # consume '@'
        name = self.scanner.consume_identifier(CALL_CLOSE, CALL_OPEN + " ")
        if name is None:
            raise DoumiParseError(
                f"Unterminated block call (missing '.') at "
                f"{location.file}:{location.line}:{location.column}"
            )
        return BlockCall(location=location, name=name)

    def _location(self) -> SourceLocation:
        scanner = self.scanner
        line = scanner.line
        statements = self._statements
        statement = statements[line - 1] if 0 < line <= len(statements) else ""
        return SourceLocation(file=self.filename, line=line, column=scanner.column, statement=statement)


def render_source(nodes: Sequence[Node]) -> str:
    """Render nodes back into canonical program text."""
    parts: List[str] = []
    for node in nodes:
        if isinstance(node, Instruction):
            parts.append(OP_LETTERS[node.op])
        elif isinstance(node, BlockDef):
            parts.append(f"{DEF_OPEN}{node.name}{DEF_SEP}{render_source(node.body)}{DEF_CLOSE}")
        elif isinstance(node, BlockCall):
            parts.append(f"{CALL_OPEN}{node.name}{CALL_CLOSE}")
    return "".join(parts)


def dump_tree(nodes: Sequence[Node], indent: int = 0) -> str:
    lines: List[str] = []
    pad = "  " * indent
    for node in nodes:
        if isinstance(node, Instruction):
            lines.append(f"{pad}{node.op}")
        elif isinstance(node, BlockDef):
            lines.append(f"{pad}BlockDef {node.name!r}")
            if node.body:
                lines.append(dump_tree(node.body, indent + 1))
        elif isinstance(node, BlockCall):
            lines.append(f"{pad}BlockCall {node.name!r}")
    return "\n".join(lines)
