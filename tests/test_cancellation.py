import pytest

from supportpilot.cancellation import CancellationToken, IngestionCancelledError


@pytest.mark.asyncio
async def test_token_latches_after_first_positive_check():
    answers = [False, True, False]
    checks = []

    async def check():
        checks.append(1)
        return answers.pop(0)

    token = CancellationToken(check)
    assert await token.is_cancelled() is False
    assert await token.is_cancelled() is True
    assert await token.is_cancelled() is True
    assert len(checks) == 2

    with pytest.raises(IngestionCancelledError, match="Ingestion cancelled by user"):
        await token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_token_passes_while_flag_is_clear():
    async def check():
        return False

    token = CancellationToken(check)
    await token.raise_if_cancelled()
    assert await token.is_cancelled() is False
