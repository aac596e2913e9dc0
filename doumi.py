"""Doumi entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional

from hooks import HookRegistry
from interpreter import DoumiRuntimeError, Frame, Interpreter, TracebackFormatter, rule_for
from lexer import DoumiParseError, NestingTooDeepError
from parser import Node, Program

VERSION = "0.1.0"
BANNER = f"Doumi v{VERSION}"

HELP_TEXT = """\
type i to increase
type d to decrease
type s to square
type r to reset
type j to jump to the start again
type o to output the raw value
type p to output the extended-ASCII symbol (falls back to the raw value outside 0-255)
type (name; program) to define a block and @name. to call it
type # to comment something
type help to print this help
type ast to print the currently-parsed AST
type blocks to print the defined blocks
type stack to print the accumulator history
type quit or exit (or CTRL-D) to leave
an unterminated line continues on the next lines; a blank line runs it"""

REPL_COMMANDS = ("help", "ast", "blocks", "stack")


def _trace_handler(interpreter: Interpreter, node: Node, frame: Frame) -> None:
    location = node.location
    print(
        f"[trace] {frame.name} {location.line}:{location.column} "
        f"{rule_for(node)} acc={frame.accumulator.current}",
        file=sys.stderr,
    )


def _build_hooks(trace: bool) -> HookRegistry:
    hooks = HookRegistry()
    if trace:
        hooks.on_event("after_node", _trace_handler)
    return hooks


def _run_command(interpreter: Interpreter, command: str) -> None:
    if command == "help":
        print(HELP_TEXT)
    elif command == "ast":
        print(interpreter.dump_ast())
    elif command == "blocks":
        print(interpreter.dump_blocks())
    elif command == "stack":
        print(" ".join(str(v) for v in interpreter.accumulator.history().tolist()) or "<empty>")


def _execute_program(interpreter: Interpreter, program: Program) -> None:
    try:
        interpreter.execute(program.statements)
    except DoumiRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)


def run_repl(verbose: bool, step_limit: Optional[int] = None, trace: bool = False,
             input_provider: Optional[Callable[[str], str]] = None) -> int:
    read_line = input_provider or input
    print(BANNER)
    print("Type  help  for info about available commands\n")
    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        print(text, end="", flush=True)

    interpreter = Interpreter(
        source="",
        filename="<repl>",
        verbose=verbose,
        hooks=_build_hooks(trace),
        output_sink=_output_sink,
        step_limit=step_limit,
    )
    buffer: List[str] = []

    while True:
        prompt = ">>> " if not buffer else "..> "
        if had_output:
            # Start the prompt on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = read_line(prompt)
        except EOFError:
            print()
            break
        except KeyboardInterrupt:
            print("\nCaught Interrupt. Type CTRL-D to quit the REPL (to reset type ro)")
            buffer.clear()
            continue

        stripped = line.strip()

        if not buffer:
            command = stripped.lower()
            if command in ("quit", "exit"):
                break
            if command in REPL_COMMANDS:
                _run_command(interpreter, command)
                continue
            if stripped == "":
                continue
            try:
                program = interpreter.load(line)
            except NestingTooDeepError as error:
                # More input cannot fix this one
                print(f"ParseError: {error}", file=sys.stderr)
                continue
            except DoumiParseError:
                # An unterminated block continues on the following lines
                buffer.append(line)
                continue
            _execute_program(interpreter, program)
            continue

        if stripped == "":
            source_text = "\n".join(buffer)
            buffer.clear()
            try:
                program = interpreter.load(source_text)
            except DoumiParseError as error:
                print(f"ParseError: {error}", file=sys.stderr)
                continue
            _execute_program(interpreter, program)
            continue

        buffer.append(line)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="doumi", description="Doumi interpreter and REPL")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record accumulator snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--emit", choices=["ast"], help="Print the parsed program instead of running it")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N", help="Abort after executing N instructions")
    parser.add_argument("--trace", action="store_true", help="Print every executed instruction to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    if args.max_steps is not None and args.max_steps < 0:
        parser.error("--max-steps must be non-negative")

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, step_limit=args.max_steps, trace=args.trace)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        sys.stdout.write(text)

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        hooks=_build_hooks(args.trace),
        output_sink=_output_sink,
        step_limit=args.max_steps,
    )
    try:
        if args.emit == "ast":
            interpreter.parse()
            print(interpreter.dump_ast())
            return 0
        interpreter.run()
    except DoumiParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except DoumiRuntimeError as error:
        if had_output:
            print()
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    if had_output:
        print()
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
