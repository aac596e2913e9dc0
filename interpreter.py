from __future__ import annotations
import json
import os
import sys
import numpy as np
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from numpy.typing import NDArray

from hooks import HookRegistry, StepContext
from lexer import OP_DEC, OP_INC, OP_JUMP, OP_OUT, OP_OUTCHAR, OP_RESET, OP_SQUARE, DoumiError
from parser import BlockCall, BlockDef, Instruction, Node, Parser, Program, SourceLocation, dump_tree, render_source


INT64_MIN = int(np.iinfo(np.int64).min)
INT64_SPAN = 1 << 64

# The wrap rule: a value below zero or exactly this one is followed by a 0.
WRAP_VALUE = 256
CHAR_MAX = 255

# Frames shown at each end of a traceback before the middle is elided.
TRACEBACK_EDGE_FRAMES = 10

# Trailing accumulator values captured with each step in verbose mode.
HISTORY_TAIL = 8


def _wrap_int64(value: int) -> int:
    return ((value - INT64_MIN) % INT64_SPAN) + INT64_MIN


class Accumulator:
    """Append-only history of accumulator values.

    The current value is the last pushed element, or 0 when nothing has been
    pushed. Nothing is ever popped, so memory grows by one int64 per value
    producing instruction for the lifetime of the accumulator. Callers that
    run unbounded programs should bound them with a step limit.
    """

    def __init__(self, capacity: int = 64) -> None:
        self._data: NDArray[np.int64] = np.zeros(max(capacity, 1), dtype=np.int64)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def current(self) -> int:
        if self._size == 0:
            return 0
        return int(self._data[self._size - 1])

    def push(self, value: int) -> None:
        if self._size == len(self._data):
            grown = np.zeros(len(self._data) * 2, dtype=np.int64)
            grown[: self._size] = self._data
            self._data = grown
        self._data[self._size] = value
        self._size += 1

    def history(self) -> NDArray[np.int64]:
        return self._data[: self._size].copy()

    def tail(self, count: int) -> List[int]:
        start = max(self._size - count, 0)
        return self._data[start : self._size].tolist()


class DoumiRuntimeError(DoumiError):
    """Raised for runtime faults.

    `frames` is the call stack captured when the error left `execute()`; the
    live stack has already been unwound by the time a caller sees the error.
    """

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None
        self.frames: Optional[List[TracebackFrame]] = None


class UnknownBlockError(DoumiRuntimeError):
    def __init__(self, name: str, known: List[str], *, location: Optional[SourceLocation] = None) -> None:
        listing = ", ".join(repr(k) for k in known) if known else "<none>"
        super().__init__(
            f"Block '{name}' must be defined before it is called. "
            f"To define a block use this syntax: (NAME; PROGRAM). "
            f"Currently defined blocks: {listing}",
            location=location,
            rule="BlockCall",
        )
        self.name = name
        self.known = known


class StepLimitExceeded(DoumiRuntimeError):
    pass


class JumpSignal(Exception):
    pass


@dataclass
class Step:
    """One executed node.

    `acc_after` stays None while the node is still running (a block call in
    progress) or when it was aborted.
    """

    index: int
    rule: str
    block: str
    frame_id: int
    depth: int
    location: Optional[SourceLocation]
    acc_before: int
    acc_after: Optional[int] = None
    history: Optional[List[int]] = None


@dataclass
class Frame:
    name: str
    accumulator: Accumulator
    frame_id: int
    call_location: Optional[SourceLocation]
    last_step: Optional[Step] = None


class StepLog:
    """Every node the machine has executed, in order."""

    def __init__(self, history_tail: int = 0) -> None:
        self.history_tail = history_tail
        self.steps: List[Step] = []

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def last(self) -> Optional[Step]:
        return self.steps[-1] if self.steps else None

    def record(self, *, rule: str, frame: Frame, depth: int, location: Optional[SourceLocation]) -> Step:
        acc = frame.accumulator
        step = Step(
            index=len(self.steps) + 1,
            rule=rule,
            block=frame.name,
            frame_id=frame.frame_id,
            depth=depth,
            location=location,
            acc_before=acc.current,
            history=acc.tail(self.history_tail) if self.history_tail else None,
        )
        self.steps.append(step)
        frame.last_step = step
        return step


def rule_for(node: Node) -> str:
    if isinstance(node, Instruction):
        return node.op
    return node.__class__.__name__


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str,
        verbose: bool,
        hooks: Optional[HookRegistry] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        error_sink: Optional[Callable[[str], None]] = None,
        step_limit: Optional[int] = None,
    ) -> None:
        self.source = source
        normalized_filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.filename = normalized_filename
        self.verbose = verbose
        self.hooks = hooks or HookRegistry()
        self.output_sink = output_sink or (lambda text: print(text, end="", flush=True))
        self.error_sink = error_sink or (lambda text: print(text, file=sys.stderr))
        self.step_limit = step_limit

        self.accumulator = Accumulator()
        self.blocks: Dict[str, BlockDef] = {}
        self.program: Optional[Program] = None
        self.diagnostics: List[str] = []
        self.step_log = StepLog(history_tail=HISTORY_TAIL if verbose else 0)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        # Steps logged before the current execute() call; the step limit is per call.
        self._run_start = 0

    def load(self, text: str) -> Program:
        """Parse `text` and make it the current program without running it."""
        parser = Parser(text, self.filename, text.splitlines())
        program = parser.parse()
        self.program = program
        self.diagnostics = parser.diagnostics
        for diagnostic in parser.diagnostics:
            self.error_sink(f"Warning: {diagnostic}")
        return program

    def parse(self) -> Program:
        return self.load(self.source)

    def run(self) -> None:
        program = self.parse()
        self.execute(program.statements)

    def execute(self, nodes: Sequence[Node]) -> None:
        self._run_start = len(self.step_log)
        base = len(self.call_stack)
        frame = self._new_frame("<top-level>", self.accumulator, None)
        self.call_stack.append(frame)
        try:
            self._emit_event("program_start", self, nodes)
            self._execute_block(nodes)
            self._emit_event("program_end", self, self.accumulator.current)
        except DoumiRuntimeError as error:
            self._fail(error)
            raise
        except RecursionError:
            # Self-referential blocks are allowed to recurse until the host
            # stack runs out; report that instead of crashing the process.
            wrapped = DoumiRuntimeError(
                f"Block recursion exhausted the interpreter stack ({len(self.call_stack) - base} frames deep)",
                location=self._last_location(),
                rule="BlockCall",
            )
            self._fail(wrapped)
            raise wrapped from None
        except Exception as exc:
            # Surface unexpected Python-level exceptions as runtime errors so
            # the REPL/CLI can format them with tracebacks.
            wrapped = DoumiRuntimeError(
                f"Internal interpreter error: {exc}", location=self._last_location(), rule="internal"
            )
            self._fail(wrapped)
            raise wrapped from exc
        finally:
            del self.call_stack[base:]

    def dump_ast(self) -> str:
        if self.program is None:
            return "<no program loaded>"
        if not self.program.statements:
            return "<empty program>"
        return dump_tree(self.program.statements)

    def dump_blocks(self) -> str:
        if not self.blocks:
            return "<no blocks defined>"
        return "\n".join(f"{name}: {render_source(self.blocks[name].body)}" for name in sorted(self.blocks))

    def _execute_block(self, nodes: Sequence[Node]) -> None:
        i = 0
        emit_event = self._emit_event
        execute_node = self._execute_node

        frame: Frame = self.call_stack[-1]
        while i < len(nodes):
            node = nodes[i]
            emit_event("before_node", self, node, frame)
            try:
                execute_node(node, frame)
            except JumpSignal:
                emit_event("after_node", self, node, frame)
                i = 0
                continue
            except UnknownBlockError as error:
                # Abandons the rest of this sequence only; the caller carries on.
                self._report(error)
                return
            emit_event("after_node", self, node, frame)
            i += 1

    def _execute_node(self, node: Node, frame: Frame) -> None:
        step = self._log_step(node, frame)
        acc = frame.accumulator
        if isinstance(node, Instruction):
            op = node.op
            if op == OP_JUMP:
                step.acc_after = acc.current
                raise JumpSignal()
            if op == OP_OUT:
                self.output_sink(str(acc.current))
            elif op == OP_OUTCHAR:
                value = acc.current
                self.output_sink(chr(value) if 0 <= value <= CHAR_MAX else str(value))
            else:
                if op == OP_RESET:
                    value = 0
                elif op == OP_DEC:
                    value = acc.current - 1
                elif op == OP_INC:
                    value = acc.current + 1
                elif op == OP_SQUARE:
                    value = acc.current * acc.current
                else:
                    raise DoumiRuntimeError(f"Unknown instruction '{op}'", location=node.location, rule=op)
                acc.push(_wrap_int64(value))
                self._check_bounds(acc)
        elif isinstance(node, BlockDef):
            # Nodes are immutable, so the definition is shared rather than copied.
            self.blocks[node.name] = node
        elif isinstance(node, BlockCall):
            self._call_block(node, acc)
        else:
            raise DoumiRuntimeError(f"Unsupported node {node.__class__.__name__}", location=node.location, rule="internal")
        step.acc_after = acc.current

    def _call_block(self, node: BlockCall, acc: Accumulator) -> None:
        block = self.blocks.get(node.name)
        if block is None:
            raise UnknownBlockError(node.name, sorted(self.blocks), location=node.location)
        callee = self._new_frame(node.name, Accumulator(), node.location)
        # Popped only on success; execute() snapshots and unwinds on failure.
        self.call_stack.append(callee)
        self._execute_block(block.body)
        self.call_stack.pop()
        acc.push(_wrap_int64(acc.current + callee.accumulator.current))
        self._check_bounds(acc)

    def _check_bounds(self, acc: Accumulator) -> None:
        value = acc.current
        if value < 0 or value == WRAP_VALUE:
            acc.push(0)

    def _fail(self, error: DoumiRuntimeError) -> None:
        """Stamp `error` with the failing step and the stack it unwinds."""
        last = self.step_log.last
        if last is not None:
            error.step_index = last.index
        error.frames = TracebackFormatter(self).build_frames()
        self._emit_event("on_error", self, error)

    def _report(self, error: DoumiRuntimeError) -> None:
        last = self.step_log.last
        if last is not None:
            error.step_index = last.index
        self._emit_event("on_error", self, error)
        formatter = TracebackFormatter(self)
        self.error_sink(formatter.format_text(error, verbose=self.verbose))

    def _last_location(self) -> Optional[SourceLocation]:
        last = self.step_log.last
        return last.location if last is not None else None

    def _new_frame(self, name: str, accumulator: Accumulator, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = self.frame_counter
        self.frame_counter += 1
        return Frame(name=name, accumulator=accumulator, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hooks.emit(event, *args)
        except (DoumiRuntimeError, RecursionError):
            raise
        except Exception as exc:
            raise DoumiRuntimeError(
                f"Hook '{event}' failed: {exc}",
                location=self._last_location(),
                rule="EXT",
            )

    def _log_step(self, node: Node, frame: Frame) -> Step:
        rule = rule_for(node)
        depth = len(self.call_stack) - 1
        step = self.step_log.record(rule=rule, frame=frame, depth=depth, location=node.location)
        if self.step_limit is not None and step.index - self._run_start > self.step_limit:
            raise StepLimitExceeded(
                f"Step limit of {self.step_limit} exceeded",
                location=node.location,
                rule=rule,
            )

        try:
            self.hooks.after_step(
                self,
                StepContext(
                    step_index=step.index,
                    rule=rule,
                    block=frame.name,
                    depth=depth,
                    acc=step.acc_before,
                    location=node.location,
                ),
            )
        except (DoumiRuntimeError, RecursionError):
            raise
        except Exception as exc:
            raise DoumiRuntimeError(
                f"Hook step rule failed: {exc}",
                location=node.location,
                rule="EXT",
            )
        return step


@dataclass
class TracebackFrame:
    name: str
    depth: int
    location: Optional[SourceLocation]
    step: Optional[Step]


def _describe_step(step: Step) -> str:
    if step.acc_after is None:
        return f"step {step.index}: {step.rule}, acc {step.acc_before}"
    return f"step {step.index}: {step.rule}, acc {step.acc_before} -> {step.acc_after}"


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for depth, frame in enumerate(self.interpreter.call_stack):
            step = frame.last_step
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    depth=depth,
                    location=step.location if step else frame.call_location,
                    step=step,
                )
            )
        return frames

    def _frames_for(self, error: DoumiRuntimeError) -> List[TracebackFrame]:
        return error.frames if error.frames is not None else self.build_frames()

    def format_text(self, error: DoumiRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        frames = self._frames_for(error)
        omitted = 0
        if len(frames) > 2 * TRACEBACK_EDGE_FRAMES:
            omitted = len(frames) - 2 * TRACEBACK_EDGE_FRAMES
            frames = frames[:TRACEBACK_EDGE_FRAMES] + frames[-TRACEBACK_EDGE_FRAMES:]
        for index, frame in enumerate(frames):
            if omitted and index == TRACEBACK_EDGE_FRAMES:
                lines.append(f"  [... {omitted} frames omitted ...]")
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, "
                    f"column {frame.location.column}, in {frame.name}"
                )
                if frame.location.statement:
                    lines.append(f"    {frame.location.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.step:
                lines.append(f"    {_describe_step(frame.step)}")
                if verbose and frame.step.history is not None:
                    values = " ".join(str(v) for v in frame.step.history) or "<empty>"
                    lines.append(f"    history: {values}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: DoumiRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for frame in self._frames_for(error):
            entry: Dict[str, Any] = {"block": frame.name, "depth": frame.depth}
            if frame.location:
                entry["location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.step:
                entry["step"] = frame.step.index
                entry["rule"] = frame.step.rule
                entry["acc_before"] = frame.step.acc_before
                entry["acc_after"] = frame.step.acc_after
                if frame.step.history is not None:
                    entry["history"] = frame.step.history
            frames_json.append(entry)
        details: Dict[str, Any] = {
            "type": error.__class__.__name__,
            "message": error.message,
            "rule": error.rule,
            "step": error.step_index,
        }
        if isinstance(error, UnknownBlockError):
            details["block"] = error.name
            details["known"] = error.known
        return json.dumps({"error": details, "frames": frames_json}, indent=2)
