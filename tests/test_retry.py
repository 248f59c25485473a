import pytest

from chunked_upload.errors import DestinationError
from chunked_upload.services.retry import retry_with_backoff


class Flaky:
    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_linear_backoff_until_success(sleep_recorder):
    operation = Flaky(DestinationError("down"), DestinationError("down"))

    result = await retry_with_backoff(operation, sleep=sleep_recorder)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep_recorder.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_last_error_is_raised_when_attempts_run_out(sleep_recorder):
    operation = Flaky(*[DestinationError(f"down {n}") for n in range(3)])

    with pytest.raises(DestinationError, match="down 2"):
        await retry_with_backoff(operation, sleep=sleep_recorder)
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_rejected_errors_are_raised_at_once(sleep_recorder):
    operation = Flaky(DestinationError("Session abc not found", status_code=404))

    with pytest.raises(DestinationError, match="not found"):
        await retry_with_backoff(
            operation,
            sleep=sleep_recorder,
            retry_on=(DestinationError,),
            retry_if=lambda e: e.is_transient,
        )
    assert operation.calls == 1
    assert sleep_recorder.delays == []


@pytest.mark.asyncio
async def test_unlisted_errors_are_not_retried(sleep_recorder):
    operation = Flaky(KeyError("boom"))

    with pytest.raises(KeyError):
        await retry_with_backoff(operation, sleep=sleep_recorder, retry_on=(DestinationError,))
    assert operation.calls == 1


@pytest.mark.parametrize(
    "status_code, transient",
    [(None, True), (500, True), (503, True), (429, True), (400, False), (401, False), (404, False), (200, False)],
)
def test_transient_destination_errors(status_code, transient):
    assert DestinationError("x", status_code=status_code).is_transient is transient
