import pytest

from trafficbot.errors import UpstreamUnavailable
from trafficbot.structured.executor import QueryExecutor, State, next_state
from trafficbot.structured.generator import QueryGenerator, clean_query_text
from trafficbot.structured.render import format_rows, query_failed
from trafficbot.structured.validator import KeywordQueryValidator

from conftest import TYPE3_SQL, FakeModel, FakeStore


def make_executor(replies, store, max_attempts=2, strict=False):
    model = FakeModel(replies=replies)
    validator = KeywordQueryValidator(strict=strict, allowed_functions=["jsonb_array_elements"])
    return QueryExecutor(QueryGenerator(model), validator, store, max_attempts=max_attempts), model


# --- transition table -------------------------------------------------

@pytest.mark.parametrize("state,ok,expected", [
    (State.GENERATE, True, State.VALIDATE),
    (State.GENERATE, False, State.RETRYABLE_FAILURE),
    (State.VALIDATE, True, State.EXECUTE),
    (State.VALIDATE, False, State.RETRYABLE_FAILURE),
    (State.EXECUTE, True, State.SUCCESS),
    (State.EXECUTE, False, State.RETRYABLE_FAILURE),
])
def test_transitions(state, ok, expected):
    assert next_state(state, ok, attempt=1, max_attempts=2) is expected


def test_retry_until_attempts_exhausted():
    assert next_state(State.RETRYABLE_FAILURE, False, attempt=1, max_attempts=2) is State.GENERATE
    assert next_state(State.RETRYABLE_FAILURE, False, attempt=2, max_attempts=2) is State.FATAL_FAILURE


def test_terminal_states_stay_put():
    assert next_state(State.SUCCESS, False, 1, 2) is State.SUCCESS
    assert next_state(State.FATAL_FAILURE, True, 1, 2) is State.FATAL_FAILURE


# --- runs ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_type3_count_scenario(schema):
    store = FakeStore(rows=[{"count": 4}])
    executor, model = make_executor([TYPE3_SQL + ";"], store, strict=True)

    report = await executor.run("How many Type 3s on JOB-789?", schema)

    assert report.ok
    assert report.attempts == 1
    assert store.executed == [TYPE3_SQL]
    assert "contract_number = 'JOB-789'" in store.executed[0]
    assert "'Type 3'" in store.executed[0]
    assert format_rows(report.rows) == '[Result 1]\n{\n  "count": 4\n}'
    # schema columns are in the prompt
    prompt = model.prompts[0][-1].content
    assert "equipment_rental jsonb" in prompt
    assert "How many Type 3s on JOB-789?" in prompt


@pytest.mark.asyncio
async def test_mutation_never_reaches_the_store(schema):
    store = FakeStore(rows=[{"n": 1}])
    executor, _ = make_executor(
        ["DELETE FROM jobs_complete", "SELECT 1 FROM jobs_complete; DROP TABLE jobs_complete"], store
    )

    report = await executor.run("wipe it", schema)

    assert report.state is State.FATAL_FAILURE
    assert report.attempts == 2
    assert store.executed == []
    assert len(report.errors) == 2


@pytest.mark.asyncio
async def test_rejection_is_fed_back_into_next_attempt(schema):
    store = FakeStore(rows=[])
    executor, model = make_executor(["UPDATE jobs_complete SET status = 'x'", "SELECT id FROM jobs_complete"], store)

    report = await executor.run("list jobs", schema)

    assert report.ok
    assert report.attempts == 2
    assert report.query.attempt == 2
    second_prompt = model.prompts[1][-1].content
    assert "NotReadOnly" in second_prompt
    assert format_rows(report.rows) == "No data found."


@pytest.mark.asyncio
async def test_execution_error_is_retried(schema):
    store = FakeStore(rows=[{"id": 7}], errors=1)
    executor, model = make_executor(
        ["SELECT contract_no FROM jobs_complete", "SELECT contract_number FROM jobs_complete"], store
    )

    report = await executor.run("contracts?", schema)

    assert report.ok
    assert len(store.executed) == 2
    assert "does not exist" in model.prompts[1][-1].content


@pytest.mark.asyncio
async def test_generation_failure_is_retryable_and_bounded(schema):
    store = FakeStore()
    boom = UpstreamUnavailable("completion", "timeout")
    executor, model = make_executor([boom, boom, "SELECT id FROM jobs_complete"], store, max_attempts=2)

    report = await executor.run("anything", schema)

    assert report.state is State.FATAL_FAILURE
    assert len(model.prompts) == 2
    assert store.executed == []
    assert query_failed(report.attempts) == "Structured query failed after 2 attempts."


@pytest.mark.asyncio
async def test_empty_generation_counts_as_an_attempt(schema):
    store = FakeStore(rows=[{"id": 1}])
    executor, _ = make_executor(["", "```sql\nSELECT id FROM jobs_complete\n```"], store)

    report = await executor.run("ids", schema)

    assert report.ok
    assert report.attempts == 2
    assert store.executed == ["SELECT id FROM jobs_complete"]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [1, 2, 3])
async def test_at_most_n_attempts(schema, max_attempts):
    store = FakeStore(errors=10)
    executor, model = make_executor(["SELECT id FROM jobs_complete"] * 5, store, max_attempts=max_attempts)

    report = await executor.run("ids", schema)

    assert report.state is State.FATAL_FAILURE
    assert len(model.prompts) == max_attempts
    assert len(store.executed) == max_attempts


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        QueryExecutor(None, KeywordQueryValidator(), FakeStore(), max_attempts=0)


@pytest.mark.parametrize("raw,expected", [
    ("SELECT 1;", "SELECT 1"),
    ("  ```sql\nSELECT 1\n```  ", "SELECT 1"),
    ("SQL: SELECT 1", "SELECT 1"),
])
def test_clean_query_text(raw, expected):
    assert clean_query_text(raw) == expected


def test_format_rows_numbers_each_row():
    out = format_rows([{"a": 1}, {"a": 2}])
    assert out.startswith("[Result 1]\n")
    assert "\n\n[Result 2]\n" in out
