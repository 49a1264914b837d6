"""
Unit tests for the bulk operation runner.
"""

import asyncio

import pytest

from aem_client.app.bulk import BulkOperationRunner
from aem_client.app.models import OperationResponse, ResponseMetadata
from aem_shared.errors import NotFoundError


class TestBulkOperationRunner:
    """Test cases for BulkOperationRunner."""

    @pytest.fixture
    def progress(self):
        return []

    @pytest.fixture
    def runner(self, progress):
        return BulkOperationRunner(progress_callback=progress.append)

    @pytest.mark.asyncio
    async def test_all_items_succeed(self, runner, progress):
        """Test results keep input order and progress is reported per batch."""
        async def double(item, index):
            await asyncio.sleep(0.001 * (5 - index % 5))
            return item * 2

        result = await runner.run(list(range(7)), double, batch_size=3)

        assert result.success is True
        assert result.results == [0, 2, 4, 6, 8, 10, 12]
        assert result.processed_items == 7
        assert result.failed_items == 0
        assert [p.current_batch for p in progress[:3]] == [1, 2, 3]
        assert progress[-1].status == "completed"
        assert progress[-1].percentage == 100

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, runner):
        """Test no more than max_concurrency items run at once."""
        running = 0
        peak = 0

        async def track(item, index):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return item

        await runner.run(list(range(10)), track, batch_size=10, max_concurrency=3)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_failures_are_collected_with_index(self, runner):
        async def flaky(item, index):
            if item % 3 == 0:
                raise NotFoundError(f"/content/{item} missing")
            return item

        result = await runner.run(list(range(6)), flaky, batch_size=2)

        assert result.success is False
        assert result.successful_items == 4
        assert result.failed_items == 2
        assert [e.item_index for e in result.errors] == [0, 3]
        assert result.errors[0].error_code == "NOT_FOUND_ERROR"
        assert result.results == [1, 2, 4, 5]

    @pytest.mark.asyncio
    async def test_failed_envelopes_count_as_failures(self, runner):
        async def call(item, index):
            if item == "missing":
                return OperationResponse.fail(NotFoundError(), ResponseMetadata())
            return OperationResponse.ok({"path": item}, ResponseMetadata())

        result = await runner.run(["a", "missing", "b"], call)

        assert result.failed_items == 1
        assert result.errors[0].item == "missing"
        assert [r.data for r in result.results] == [{"path": "a"}, {"path": "b"}]

    @pytest.mark.asyncio
    async def test_stop_on_error(self, runner):
        """Test processing stops after the batch containing a failure."""
        seen = []

        async def fail_on_three(item, index):
            seen.append(item)
            if item == 3:
                raise RuntimeError("boom")
            return item

        result = await runner.run(list(range(10)), fail_on_three, batch_size=2, continue_on_error=False)

        assert sorted(seen) == [0, 1, 2, 3]
        assert result.processed_items == 4
        assert result.total_items == 10
        assert result.errors[0].error == "boom"

    @pytest.mark.asyncio
    async def test_item_timeout(self, runner):
        async def slow(item, index):
            await asyncio.sleep(1.0 if item == "slow" else 0)
            return item

        result = await runner.run(["fast", "slow"], slow, timeout=0.05)

        assert result.results == ["fast"]
        assert result.errors[0].error_code == "TIMEOUT_ERROR"

    @pytest.mark.asyncio
    async def test_empty_input(self, runner):
        async def never(item, index):
            raise AssertionError("should not be called")

        result = await runner.run([], never)

        assert result.success is True
        assert result.total_items == 0
        assert result.results == []

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, runner):
        async def noop(item, index):
            return item

        with pytest.raises(ValueError):
            await runner.run([1], noop, batch_size=0)
