"""Tests for the iterate-intercept-resume loop (scripted sessions, leaf-only resolver)."""

import asyncio

import pytest

from rlm_orchestrator.errors import (
    DecodeError,
    DelegationError,
    IterationBudgetExceeded,
    ProgramError,
    SessionCrashed,
)
from rlm_orchestrator.events import NodeCreated, NodeOutputAppended, NodeStatus, NodeStatusChanged
from rlm_orchestrator.loop import IMPLICIT_RESULT, ExecutionLoop
from rlm_orchestrator.protocol import BATCH_END, BATCH_START, QUERY_START
from rlm_orchestrator.resolver import DelegationResolver
from rlm_orchestrator.sandbox import RunResult

from fakes import (
    FakeSession,
    ScriptedLLMClient,
    batch_run,
    final_run,
    plain_run,
    recording_emitter,
    single_run,
)

BODY = "answer = llm_query('q')\nFINAL(answer)\n"


def _loop(events, *, handler=lambda system, user: "answer to " + user, max_iterations=100):
    emitter = recording_emitter(events)
    client = ScriptedLLMClient(handler)
    resolver = DelegationResolver(
        client=client,
        emitter=emitter,
        max_depth=1,
        model="test/sub",
        stagger_seconds=0.0,
        cooldown_seconds=0.0,
    )
    return ExecutionLoop(resolver=resolver, emitter=emitter, max_iterations=max_iterations), client


def _run(loop, session, body=BODY):
    return asyncio.run(
        loop.run(session=session, body=body, node_id="root", depth=0, context_id="ctx")
    )


def _statuses(events, node_id="root"):
    return [e.status for e in events if isinstance(e, NodeStatusChanged) and e.node_id == node_id]


# =============================================================================
# Success paths
# =============================================================================


def test_pending_then_final():
    events = []
    loop, client = _loop(events)
    session = FakeSession([single_run("q"), final_run("answer to q")])

    result = _run(loop, session)

    assert result.result == "answer to q"
    assert result.iterations == 2
    assert result.explicit
    assert session.codes[0] == BODY
    assert "_llm_cache['q'] = 'answer to q'" in session.codes[1]
    assert session.codes[1].endswith(BODY)
    assert _statuses(events) == [NodeStatus.EXECUTING, NodeStatus.LLM_CALLING, NodeStatus.EXECUTING]
    first = [e for e in events if isinstance(e, NodeStatusChanged)][0]
    assert first.code == BODY
    assert len(client.leaf_calls) == 1


def test_cache_accumulates_across_iterations():
    events = []
    loop, _ = _loop(events)
    session = FakeSession([single_run("q1"), single_run("q2"), final_run("done")])

    _run(loop, session)

    assert "_llm_cache['q1']" in session.codes[2]
    assert "_llm_cache['q2']" in session.codes[2]


def test_final_wins_when_output_also_has_pending_marker():
    events = []
    loop, client = _loop(events)
    both = final_run("early").stdout + batch_run(["x"]).stdout
    session = FakeSession([RunResult(stdout=both, output=both, exit_status=43)])

    assert _run(loop, session).result == "early"
    assert client.calls == []


def test_empty_batch_proceeds_without_children():
    events = []
    loop, client = _loop(events)
    session = FakeSession([batch_run([]), final_run("nothing to ask")])

    result = _run(loop, session)

    assert result.result == "nothing to ask"
    assert not any(isinstance(e, NodeCreated) for e in events)
    assert client.calls == []
    assert "_llm_cache = {}" in session.codes[1]


def test_clean_exit_without_final_is_implicit_success():
    events = []
    loop, _ = _loop(events)
    result = _run(loop, FakeSession([plain_run("counted 7 things\n")]))
    assert result.result == "counted 7 things"
    assert not result.explicit


def test_clean_exit_with_no_output_uses_placeholder():
    events = []
    loop, _ = _loop(events)
    assert _run(loop, FakeSession([plain_run("")])).result == IMPLICIT_RESULT


def test_output_events_are_marker_free():
    events = []
    loop, _ = _loop(events)
    session = FakeSession([single_run("q", prefix="Found 2 pairs\n"), final_run("1")])

    _run(loop, session)

    texts = [e.text for e in events if isinstance(e, NodeOutputAppended) and e.node_id == "root"]
    assert texts == ["Found 2 pairs", "1"]
    assert not any(QUERY_START in t for t in texts)


def test_marker_only_output_is_not_emitted():
    events = []
    loop, _ = _loop(events)
    _run(loop, FakeSession([single_run("q"), final_run("")]))
    texts = [e.text for e in events if isinstance(e, NodeOutputAppended) and e.node_id == "root"]
    assert texts == []


# =============================================================================
# Failure paths
# =============================================================================


def test_program_error_without_marker():
    events = []
    loop, _ = _loop(events)
    crash = "[stderr] Traceback (most recent call last):\n[stderr] ZeroDivisionError: division by zero\n"
    session = FakeSession([RunResult(stdout="", output=crash, exit_status=1)])

    with pytest.raises(ProgramError) as info:
        _run(loop, session)
    assert info.value.exit_status == 1
    assert "ZeroDivisionError" in str(info.value)


def test_missing_exit_status_is_a_crash_not_a_program_error():
    events = []
    loop, _ = _loop(events)
    session = FakeSession([plain_run("partial work\n", exit_status=None)])

    with pytest.raises(SessionCrashed) as info:
        _run(loop, session)
    assert not isinstance(info.value, ProgramError)
    assert "partial work" in info.value.output
    assert "partial work" in str(info.value)


def test_malformed_batch_is_fatal():
    events = []
    loop, _ = _loop(events)
    bad = f"{BATCH_START}\nnot json\n{BATCH_END}\n"
    with pytest.raises(DecodeError):
        _run(loop, FakeSession([RunResult(stdout=bad, output=bad, exit_status=43)]))


def test_truncated_marker_with_failure_is_program_error():
    events = []
    loop, _ = _loop(events)
    cut = f"{QUERY_START}\nhalf a prompt"
    with pytest.raises(ProgramError):
        _run(loop, FakeSession([RunResult(stdout=cut, output=cut, exit_status=1)]))


def test_unresolvable_prompt_terminates_instead_of_hanging():
    events = []
    loop, _ = _loop(events, handler=lambda s, u: RuntimeError("provider down"))
    session = FakeSession([single_run("same prompt")])

    with pytest.raises(DelegationError):
        _run(loop, session)
    assert len(session.codes) <= 100


def test_iteration_budget():
    events = []
    loop, _ = _loop(events, max_iterations=5)
    counter = iter(range(1000))
    session = FakeSession([lambda code: single_run(f"prompt {next(counter)}")])

    with pytest.raises(IterationBudgetExceeded):
        _run(loop, session)
    assert len(session.codes) == 5


def test_last_iteration_does_not_resolve_pending_calls():
    events = []
    loop, client = _loop(events, max_iterations=2)
    session = FakeSession([single_run("first"), single_run("second")])

    with pytest.raises(IterationBudgetExceeded):
        _run(loop, session)

    assert [c["user"] for c in client.calls] == ["first"]
    assert [e.node.delegated_prompt for e in events if isinstance(e, NodeCreated)] == ["first"]
    assert _statuses(events)[-1] == NodeStatus.EXECUTING
