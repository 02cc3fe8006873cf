import asyncio
from unittest.mock import patch

from tenantgate.service.runtime import get_runtime, reset_runtime_for_tests


class FakeCache:
    def __init__(self, error=None):
        self.error = error
        self.closed = False

    async def close(self):
        self.closed = True
        if self.error is not None:
            raise self.error


class TestResetRuntime:
    def test_reset_without_loop_closes_cache_inline(self):
        cache = FakeCache()
        get_runtime().cache = cache

        fresh = reset_runtime_for_tests()

        assert cache.closed is True
        assert get_runtime() is fresh

    async def test_close_failure_inside_loop_is_logged(self):
        cache = FakeCache(error=ConnectionError("redis gone"))
        get_runtime().cache = cache

        with patch("tenantgate.service.runtime.logger") as mock_logger:
            reset_runtime_for_tests()
            for _ in range(3):
                await asyncio.sleep(0)

        assert cache.closed is True
        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "runtime_cache_close_failed" in events


class TestStart:
    async def test_start_builds_the_dummy_hash(self):
        runtime = get_runtime()
        assert runtime.passwords._dummy_hash is None

        await runtime.start()

        assert runtime.passwords._dummy_hash is not None
        await runtime.close()
