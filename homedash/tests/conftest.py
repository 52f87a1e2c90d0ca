import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from homedash.engine.reconciler import build_reconciler
from homedash.engine.scheduling import ManualScheduler

USER_ID = "tester"


class FakeTransport:
    def __init__(self, connected: bool = True):
        self.is_connected = connected
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    def subscribe(self, topic_filter: str) -> None:
        self.subscribed.append(topic_filter)

    def unsubscribe(self, topic: str) -> None:
        self.unsubscribed.append(topic)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.published.append((topic, payload))


class MemoryRepository:
    def __init__(self):
        self.configs: Dict[str, Dict[str, Any]] = {}
        self.saves = 0
        self.fail = False
        self.error: Optional[Exception] = None

    async def load_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        config = self.configs.get(user_id)
        return copy.deepcopy(config) if config is not None else None

    async def save_config(self, user_id: str, config: Dict[str, Any]) -> bool:
        self.saves += 1
        if self.error is not None:
            raise self.error
        if self.fail:
            return False
        self.configs[user_id] = copy.deepcopy(config)
        return True


class StaticTimeoutSource:
    def __init__(self, seconds: float = 60.0):
        self.seconds = seconds
        self.calls = 0
        self.error: Optional[Exception] = None

    async def get_global_sensor_timeout_seconds(self) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.seconds


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def repository():
    return MemoryRepository()


@pytest.fixture
def timeout_source():
    return StaticTimeoutSource()


@pytest.fixture
def reconciler(repository, transport, timeout_source, scheduler):
    return build_reconciler(
        repository,
        transport,
        timeout_source,
        scheduler,
        user_id=USER_ID,
        recent_limit=100,
        timeout_default=60.0,
        timeout_ttl=300.0,
        cleanup_delay=1.0,
    )


@pytest.fixture
def store(reconciler):
    return reconciler.store
