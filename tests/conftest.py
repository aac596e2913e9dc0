from typing import List

import pytest

from interpreter import Interpreter


class Captured:
    def __init__(self) -> None:
        self.out: List[str] = []
        self.err: List[str] = []

    @property
    def stdout(self) -> str:
        return "".join(self.out)

    @property
    def stderr(self) -> str:
        return "\n".join(self.err)


@pytest.fixture
def make_interpreter():
    def _make(**kwargs):
        captured = Captured()
        interpreter = Interpreter(
            source=kwargs.pop("source", ""),
            filename="<string>",
            verbose=kwargs.pop("verbose", False),
            output_sink=captured.out.append,
            error_sink=captured.err.append,
            **kwargs,
        )
        return interpreter, captured

    return _make


@pytest.fixture
def run(make_interpreter):
    """Parse and execute `source` on a fresh interpreter with captured sinks."""

    def _run(source: str, **kwargs):
        interpreter, captured = make_interpreter(**kwargs)
        program = interpreter.load(source)
        interpreter.execute(program.statements)
        return interpreter, captured

    return _run
