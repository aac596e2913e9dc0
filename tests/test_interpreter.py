import json

import numpy as np
import pytest

from interpreter import (
    Accumulator,
    DoumiRuntimeError,
    TRACEBACK_EDGE_FRAMES,
    StepLimitExceeded,
    TracebackFormatter,
    UnknownBlockError,
    _wrap_int64,
)
from parser import render_source


def history(interpreter):
    return interpreter.accumulator.history().tolist()


def assert_wrapped(values):
    for index, value in enumerate(values):
        if value < 0 or value == 256:
            assert values[index + 1] == 0


def test_increments_count_up(run):
    interpreter, _ = run("iiiii")
    assert interpreter.accumulator.current == 5
    assert history(interpreter) == [1, 2, 3, 4, 5]


def test_decrement_below_zero_wraps(run):
    interpreter, _ = run("d")
    assert history(interpreter) == [-1, 0]
    assert interpreter.accumulator.current == 0


def test_repeated_decrements_stay_at_zero(run):
    interpreter, _ = run("ddd")
    assert history(interpreter) == [-1, 0, -1, 0, -1, 0]


@pytest.mark.parametrize("source", ["iisssdddio", "ddisdsis", "r" + "i" * 300, "iissii" * 20])
def test_wrap_rule_always_follows_negative_or_256(run, source):
    interpreter, _ = run(source)
    values = history(interpreter)
    assert_wrapped(values)
    assert all(0 <= value for value in values[-1:])


def test_square_of_zero_and_one(run):
    interpreter, _ = run("rs")
    assert interpreter.accumulator.current == 0
    interpreter, _ = run("ris")
    assert interpreter.accumulator.current == 1


def test_square_hitting_256_wraps(run):
    interpreter, captured = run("iissso")
    assert history(interpreter)[-2:] == [256, 0]
    assert captured.stdout == "0"


def test_square_overflow_wraps_to_int64(run):
    interpreter, _ = run("iiisssss" + "s")
    values = history(interpreter)
    assert values[:8] == [1, 2, 3, 9, 81, 6561, 43046721, 1853020188851841]
    expected = _wrap_int64(3 ** 64)
    if expected < 0:
        assert values[-2:] == [expected, 0]
    else:
        assert values[-1] == expected


def test_wrap_int64():
    assert _wrap_int64(2 ** 63) == -(2 ** 63)
    assert _wrap_int64(2 ** 63 - 1) == 2 ** 63 - 1
    assert _wrap_int64(-1) == -1
    assert _wrap_int64(2 ** 64 + 5) == 5


def test_output_raw_has_no_separators(run):
    _, captured = run("ioio")
    assert captured.stdout == "12"


def test_output_char(run):
    _, captured = run("iiiiiiiisip")
    assert captured.stdout == "A"


def test_output_char_upper_bound(run):
    _, captured = run("r" + "i" * 255 + "p")
    assert captured.stdout == chr(255)


def test_output_char_falls_back_to_decimal(run):
    _, captured = run("i" * 17 + "sp")
    assert captured.stdout == "289"


def test_256_wraps_before_output_char(run):
    _, wrapped = run("r" + "i" * 256 + "p")
    _, reset = run("rp")
    assert wrapped.stdout == reset.stdout == "\x00"


def test_jump_to_start_loops_until_step_limit(run):
    with pytest.raises(StepLimitExceeded):
        run("ij", step_limit=100)


def test_jump_to_start_growth_is_monotonic(make_interpreter):
    interpreter, _ = make_interpreter(step_limit=100)
    program = interpreter.load("ij")
    with pytest.raises(StepLimitExceeded) as excinfo:
        interpreter.execute(program.statements)
    values = interpreter.accumulator.history()
    assert len(values) == 50
    assert np.all(np.diff(values) >= 0)
    assert values[-1] == 50
    assert excinfo.value.step_index == 101


def test_jump_inside_block_restarts_block_body(make_interpreter):
    interpreter, _ = make_interpreter(step_limit=20)
    program = interpreter.load("(b;ij)i@b.")
    with pytest.raises(StepLimitExceeded) as excinfo:
        interpreter.execute(program.statements)
    assert [frame.name for frame in excinfo.value.frames] == ["<top-level>", "b"]
    # the top-level 'i' ran once; the loop stayed inside the block
    assert history(interpreter) == [1]


def test_block_result_adds_to_caller(run):
    interpreter, _ = run("(b;rii)iii@b.")
    assert interpreter.accumulator.current == 5
    assert history(interpreter) == [1, 2, 3, 5]


def test_block_call_from_zero(run):
    interpreter, captured = run("(b;iii)@b.o@b.o")
    assert captured.stdout == "36"
    assert history(interpreter) == [3, 6]


def test_composed_push_applies_wrap_rule(run):
    interpreter, _ = run("(b;iiiis)" + "i" * 15 + "s" + "i" * 15 + "@b.")
    assert history(interpreter)[-2:] == [256, 0]


def test_undefined_block_reports_and_aborts_sequence(run):
    interpreter, captured = run("iii@nope.ii")
    assert history(interpreter) == [1, 2, 3]
    assert "UnknownBlockError" in captured.stderr
    assert "'nope'" in captured.stderr


def test_undefined_block_lists_known_blocks(run):
    _, captured = run("(b;i)(a;i)@c.")
    assert "Currently defined blocks: 'a', 'b'" in captured.stderr


def test_undefined_block_inside_block_aborts_only_that_block(run):
    interpreter, captured = run("(b;ii@nope.iii)@b.o")
    assert captured.stdout == "2"
    assert history(interpreter) == [2]
    assert "in b" in captured.stderr


def test_redefinition_overwrites(run):
    interpreter, _ = run("(b;i)(b;ii)@b.")
    assert interpreter.accumulator.current == 2


def test_nested_definition_is_published_when_run(run):
    interpreter, _ = run("(outer;(inner;ii)i)@outer.@inner.")
    assert sorted(interpreter.blocks) == ["inner", "outer"]
    assert history(interpreter) == [1, 3]


def test_calls_do_not_alter_stored_definition(run):
    interpreter, _ = run("(b;ii)@b.@b.@b.")
    assert history(interpreter) == [2, 4, 6]
    stored = interpreter.blocks["b"]
    assert stored == interpreter.program.statements[0]
    assert render_source(stored.body) == "ii"


def test_state_persists_across_executions(make_interpreter):
    interpreter, captured = make_interpreter()
    interpreter.execute(interpreter.load("(b;iii)ii").statements)
    interpreter.execute(interpreter.load("@b.o").statements)
    assert captured.stdout == "5"
    assert history(interpreter) == [1, 2, 5]


def test_unbounded_recursion_is_reported(run):
    with pytest.raises(DoumiRuntimeError) as excinfo:
        run("(b;i@b.)@b.")
    assert "recursion" in excinfo.value.message
    assert excinfo.value.rule == "BlockCall"


def test_recursion_traceback_elides_middle_frames(make_interpreter):
    interpreter, _ = make_interpreter()
    program = interpreter.load("(b;@b.)@b.")
    with pytest.raises(DoumiRuntimeError) as excinfo:
        interpreter.execute(program.statements)
    text = TracebackFormatter(interpreter).format_text(excinfo.value, verbose=False)
    assert "frames omitted" in text
    assert text.splitlines()[0] == "Traceback (most recent call last):"


def test_stray_paren_diagnostic_goes_to_error_sink(run):
    interpreter, captured = run("io)io")
    assert captured.stdout == "1"
    assert captured.stderr.startswith("Warning: Unmatched ')'")
    assert len(interpreter.diagnostics) == 1


def test_step_log_records_each_node(run):
    interpreter, _ = run("(b;i)i@b.", verbose=True)
    steps = interpreter.step_log.steps
    assert [step.rule for step in steps] == ["BlockDef", "INC", "BlockCall", "INC"]
    assert [step.index for step in steps] == [1, 2, 3, 4]
    assert [(step.block, step.depth) for step in steps] == [
        ("<top-level>", 0),
        ("<top-level>", 0),
        ("<top-level>", 0),
        ("b", 1),
    ]
    # the call finishes after its body, so its result includes the callee's value
    assert (steps[2].acc_before, steps[2].acc_after) == (1, 2)
    assert (steps[3].acc_before, steps[3].acc_after) == (0, 1)
    assert steps[2].history == [1]
    assert steps[3].history == []


def test_step_log_skips_history_unless_verbose(run):
    interpreter, _ = run("ii")
    assert [step.history for step in interpreter.step_log.steps] == [None, None]


def test_call_stack_is_unwound_after_runtime_error(make_interpreter):
    interpreter, _ = make_interpreter(step_limit=5)
    with pytest.raises(StepLimitExceeded):
        interpreter.execute(interpreter.load("(b;(c;ij)@c.)@b.").statements)
    assert interpreter.call_stack == []
    interpreter.step_limit = None
    interpreter.execute(interpreter.load("ri").statements)
    assert interpreter.call_stack == []
    assert interpreter.accumulator.current == 1


def test_call_stack_is_unwound_after_recursion_error(make_interpreter):
    interpreter, _ = make_interpreter()
    with pytest.raises(DoumiRuntimeError) as excinfo:
        interpreter.execute(interpreter.load("(b;@b.)@b.").statements)
    assert interpreter.call_stack == []
    assert len(excinfo.value.frames) > 2 * TRACEBACK_EDGE_FRAMES


def test_traceback_describes_last_step_of_each_frame(make_interpreter):
    interpreter, _ = make_interpreter(step_limit=5)
    with pytest.raises(StepLimitExceeded) as excinfo:
        interpreter.execute(interpreter.load("i(b;ij)@b.").statements)
    # formatted after execute() has unwound the live stack
    text = TracebackFormatter(interpreter).format_text(excinfo.value, verbose=False)
    assert "column 8, in <top-level>" in text
    assert "step 3: BlockCall, acc 1\n" in text
    assert "column 5, in b" in text
    assert "step 6: INC, acc 1\n" in text
    assert text.endswith("StepLimitExceeded: Step limit of 5 exceeded (rule: INC)")


def test_json_traceback_names_unknown_block(make_interpreter):
    interpreter, _ = make_interpreter()
    interpreter.execute(interpreter.load("(a;i)").statements)
    error = UnknownBlockError("b", ["a"])
    error.step_index = 2
    payload = json.loads(TracebackFormatter(interpreter).to_json(error))
    assert payload["error"]["block"] == "b"
    assert payload["error"]["known"] == ["a"]
    assert payload["error"]["step"] == 2
    assert payload["frames"] == []


def test_dump_ast_and_blocks(run):
    interpreter, _ = run("(b;ri)@b.")
    assert interpreter.dump_ast() == "BlockDef 'b'\n  RESET\n  INC\nBlockCall 'b'"
    assert interpreter.dump_blocks() == "b: ri"


def test_dumps_without_state(make_interpreter):
    interpreter, _ = make_interpreter()
    assert interpreter.dump_ast() == "<no program loaded>"
    assert interpreter.dump_blocks() == "<no blocks defined>"
    interpreter.load("")
    assert interpreter.dump_ast() == "<empty program>"


def test_run_uses_constructor_source(make_interpreter):
    interpreter, captured = make_interpreter(source="IIIO")
    interpreter.run()
    assert captured.stdout == "3"


def test_accumulator_grows_past_capacity():
    acc = Accumulator(capacity=4)
    assert acc.current == 0
    for value in range(200):
        acc.push(value)
    assert len(acc) == 200
    assert acc.current == 199
    snapshot = acc.history()
    assert snapshot.dtype == np.int64
    snapshot[0] = 99
    assert acc.history()[0] == 0
