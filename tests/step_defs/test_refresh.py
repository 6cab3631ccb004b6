"""
Step definitions for the full re-evaluation feature.

These tests verify the refresh cycle of ReevaluationEngine:
- ordering by arrival, stable across edits
- per-fragment failure isolation
- idempotence of repeated refreshes
- shared namespace lifetime and handler registry reset
- serialization of concurrent refreshes

Session, fragment and marker steps live in conftest.py.
"""

import asyncio

import pytest
from pytest_bdd import given, parsers, scenarios, then, when

from codeloom.kernel.schema import Fragment, OutcomeStatus
from conftest import fenced, run_async

# Load scenarios from feature file
scenarios("../features/refresh.feature")


@pytest.fixture(autouse=True)
def test_context(live_session):
    """Shared context for passing data between steps; notes the namespace identity up front."""
    return {
        "shared_identity": id(live_session.context.shared),
        "error": None,
    }


def add_fragment(session, fragment_id: str, author: str, content: str) -> None:
    session.store.upsert(
        Fragment(id=fragment_id, author_id=author, channel_id="code", content=content)
    )


# =============================================================================
# Given Steps
# =============================================================================


@given(parsers.parse('a fragment "{fragment_id}" by "{author}" with text "{text}"'))
def fragment_with_text(live_session, fragment_id: str, author: str, text: str):
    add_fragment(live_session, fragment_id, author, text)


@given(parsers.parse('a fragment "{fragment_id}" by "{author}" with blocks "{first}" and "{second}"'))
def fragment_with_blocks(live_session, fragment_id: str, author: str, first: str, second: str):
    add_fragment(live_session, fragment_id, author, f"{fenced(first)}\nthen\n{fenced(second)}")


@given(parsers.parse('a fragment "{fragment_id}" by "{author}" placed directly in the store'))
def untrusted_fragment(live_session, fragment_id: str, author: str):
    add_fragment(live_session, fragment_id, author, fenced("shared.x = 1"))


@given(parsers.parse("the fragment timeout is {seconds:f} seconds"))
def fragment_timeout(live_session, seconds: float):
    live_session.engine.fragment_timeout = seconds


# =============================================================================
# When Steps
# =============================================================================


@when("the engine refreshes expecting a failure")
def engine_refreshes_failing(test_context, live_session):
    try:
        run_async(live_session, live_session.engine.refresh())
    except AssertionError as e:
        test_context["error"] = e


@when(parsers.parse('fragment "{fragment_id}" is edited to code "{code}"'))
def fragment_edited(live_session, fragment_id: str, code: str):
    original = live_session.store.get(fragment_id)
    live_session.store.upsert(original.model_copy(update={"content": fenced(code)}))


@when(parsers.parse('fragment "{fragment_id}" is removed'))
def fragment_removed(live_session, fragment_id: str):
    assert live_session.store.remove(fragment_id)


@when("two refreshes are started together")
def two_refreshes(live_session):
    async def both():
        return await asyncio.gather(live_session.engine.refresh(), live_session.engine.refresh())

    run_async(live_session, both())


# =============================================================================
# Then Steps
# =============================================================================


@then(parsers.parse('the shared namespace has no value "{name}"'))
def shared_value_absent(live_session, name: str):
    assert not hasattr(live_session.context.shared, name)


@then("the shared namespace is the same object as before")
def shared_identity_kept(test_context, live_session):
    assert id(live_session.context.shared) == test_context["shared_identity"]


@then(parsers.parse('the evaluation order is "{order}"'))
def evaluation_order(live_session, order: str):
    report = live_session.engine.last_report
    assert [o.fragment_id for o in report.outcomes] == order.split(",")


@then(parsers.parse('fragment "{fragment_id}" has no markers'))
def no_markers(gateway, fragment_id: str):
    assert not gateway.reactions[fragment_id]


@then(parsers.parse('fragment "{fragment_id}" was skipped'))
def was_skipped(live_session, fragment_id: str):
    report = live_session.engine.last_report
    assert report.by_id(fragment_id).status == OutcomeStatus.SKIPPED


@then(parsers.parse('fragment "{fragment_id}" ran {count:d} block'))
def ran_blocks(live_session, fragment_id: str, count: int):
    assert live_session.engine.last_report.by_id(fragment_id).blocks_run == count


@then(parsers.parse('the handler registry holds {count:d} handler from "{fragment_id}"'))
def registry_holds(live_session, count: int, fragment_id: str):
    records = live_session.context.handlers.snapshot()
    assert len(records) == count
    assert all(record.fragment_id == fragment_id for record in records)


@then(parsers.parse("the engine has completed {count:d} cycles"))
def cycles_completed(live_session, count: int):
    assert live_session.engine.cycle == count


@then(parsers.parse('the refresh raised "{error_name}"'))
def refresh_raised(test_context, error_name: str):
    assert type(test_context["error"]).__name__ == error_name
