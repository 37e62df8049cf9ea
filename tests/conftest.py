"""Shared fixtures and fakes for tests."""

from __future__ import annotations

import dataclasses
import datetime
import threading
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from vault_lifecycle.errors import SchedulerUnavailableError, VaultTransportError
from vault_lifecycle.session.trigger import FixedTimeoutRefreshTrigger

EPOCH = datetime.datetime(2024, 1, 1, 12, 0, 0, tzinfo=datetime.UTC)

Response = Mapping[str, Any] | BaseException


@dataclasses.dataclass(frozen=True)
class Call:
    method: str
    path: str
    headers: Mapping[str, str]
    json: Any


class StubTransport:
    """Blocking transport returning scripted responses per ``(method, path)``.

    Each route holds a queue of responses; the last one repeats once the queue
    is down to a single entry.  Exceptions in the queue are raised.  Unknown
    routes fail with a 404 ``VaultTransportError``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes: dict[tuple[str, str], list[Response]] = {}
        self._hooks: dict[tuple[str, str], Callable[[], None]] = {}
        self.calls: list[Call] = []
        self.closed = False

    def add(self, method: str, path: str, *responses: Response) -> StubTransport:
        with self._lock:
            self._routes.setdefault((method, path), []).extend(responses)
        return self

    def replace(self, method: str, path: str, *responses: Response) -> StubTransport:
        with self._lock:
            self._routes[(method, path)] = list(responses)
        return self

    def on_request(self, method: str, path: str, hook: Callable[[], None]) -> None:
        """Run *hook* (outside the lock) before answering ``method path``."""
        self._hooks[(method, path)] = hook

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        with self._lock:
            self.calls.append(Call(method, path, dict(headers or {}), json))
            hook = self._hooks.get((method, path))
        if hook is not None:
            hook()
        with self._lock:
            queue = self._routes.get((method, path))
            if not queue:
                raise VaultTransportError(f"{method} {path} returned HTTP 404", status_code=404)
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return dict(response)

    def close(self) -> None:
        self.closed = True

    def count(self, method: str, path: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call.method == method and call.path == path)

    def calls_to(self, method: str, path: str) -> list[Call]:
        with self._lock:
            return [call for call in self.calls if call.method == method and call.path == path]


class AsyncStubTransport(StubTransport):
    """``StubTransport`` with an awaitable ``request``."""

    async def request(  # type: ignore[override]
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        return StubTransport.request(self, method, path, headers=headers, json=json)


@dataclasses.dataclass
class ScheduledJob:
    func: Callable[..., Any]
    run_at: datetime.datetime
    kwargs: dict[str, Any]


class ManualScheduler:
    """``TaskScheduler`` that records jobs and runs them only when told to."""

    def __init__(self, running: bool = True) -> None:
        self._running = running
        self.jobs: dict[str, ScheduledJob] = {}
        self.cancelled: list[str] = []

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False

    def schedule(
        self,
        job_id: str,
        func: Callable[..., Any],
        run_at: datetime.datetime,
        **kwargs: Any,
    ) -> None:
        if not self._running:
            raise SchedulerUnavailableError(f"Cannot schedule {job_id}: scheduler is not running")
        self.jobs[job_id] = ScheduledJob(func, run_at, kwargs)

    def cancel(self, job_id: str) -> None:
        self.cancelled.append(job_id)
        self.jobs.pop(job_id, None)

    def fire(self, job_id: str) -> None:
        job = self.jobs.pop(job_id)
        job.func(**job.kwargs)


class FixedClock:
    """A clock that only moves when ``advance()`` is called."""

    def __init__(self, now: datetime.datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, delta: datetime.timedelta) -> None:
        self.now += delta


def login_response(
    token: str = "t1",
    lease_duration: int = 3600,
    renewable: bool = True,
) -> dict[str, Any]:
    return {
        "auth": {
            "client_token": token,
            "accessor": f"accessor-{token}",
            "lease_duration": lease_duration,
            "renewable": renewable,
            "policies": ["default"],
        }
    }


@pytest.fixture
def transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def trigger(clock: FixedClock) -> FixedTimeoutRefreshTrigger:
    return FixedTimeoutRefreshTrigger(datetime.timedelta(seconds=5), clock=clock)


@pytest.fixture
def events() -> list[Any]:
    return []
