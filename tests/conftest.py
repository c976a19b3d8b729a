import asyncio
import inspect
import os
import sys
import uuid
from pathlib import Path

# Set before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("QUEUE_POLL_INTERVAL_SECONDS", "0.05")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from switchboard.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from switchboard.storage.memory import MemoryStore  # noqa: E402
from switchboard.storage.models import ChannelConfig, Flow, LLMConfig  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class Seeder:
    """Creates channel, LLM and flow rows in a MemoryStore."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def channel(self, channel_type="whatsapp", config=None, *, active=True, name=None):
        return self.store.add_channel_config(
            ChannelConfig(
                id=str(uuid.uuid4()),
                name=name or f"{channel_type} channel",
                channel_type=channel_type,
                config=config or {},
                is_active=active,
            )
        )

    def llm(self, model="gpt-4o-mini", config=None):
        return self.store.add_llm_config(
            LLMConfig(id=str(uuid.uuid4()), provider="openai", model=model, config=config or {})
        )

    def flow(self, channel, *, name="Support", priority=100, active=True, conditions=None, tools=None, prompt=None, llm=None):
        llm = llm or self.llm()
        flow = Flow(
            id=str(uuid.uuid4()),
            name=name,
            llm_id=llm.id,
            flow_config={"systemPrompt": prompt} if prompt else {},
            enabled_tools=list(tools or []),
            routing_conditions=conditions or {},
            priority=priority,
            active=active,
        )
        return self.store.add_flow(flow, [channel.id])


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def runtime_seed(runtime):
    return Seeder(runtime.store)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
