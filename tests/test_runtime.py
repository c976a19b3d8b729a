from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from switchboard.config import Settings
from switchboard.service import runtime as runtime_module
from switchboard.service.errors import QueueUnavailable
from switchboard.service.queue import MemoryJobQueue


def _settings(**overrides):
    values = {"use_memory_store": True, "test_mode": False, "allow_redis_fallback_dev": False}
    values.update(overrides)
    return Settings(**values)


class TestRedisRequirement:
    def test_unreachable_redis_raises_queue_unavailable(self):
        refused = RedisConnectionError("connection refused")
        with patch.object(runtime_module, "get_settings", return_value=_settings()), patch.object(
            runtime_module, "verify_connection", side_effect=refused
        ):
            with pytest.raises(QueueUnavailable) as excinfo:
                runtime_module.Runtime()

        assert excinfo.value.__cause__ is refused
        assert excinfo.value.status_code == 503

    def test_dev_fallback_uses_memory_queue(self):
        settings = _settings(allow_redis_fallback_dev=True)
        with patch.object(runtime_module, "get_settings", return_value=settings), patch.object(
            runtime_module, "verify_connection", side_effect=RedisConnectionError("connection refused")
        ):
            runtime = runtime_module.Runtime()
        runtime.engine.shutdown(wait=False)

        assert runtime.redis_available is False
        assert isinstance(runtime.queue, MemoryJobQueue)
