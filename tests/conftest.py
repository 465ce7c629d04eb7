from __future__ import annotations

from typing import Any, Callable, Optional

import pytest


class FakeResult:
    def __init__(self, value: Any = None) -> None:
        self._value = value

    def scalar_one_or_none(self) -> Any:
        return self._value

    def one_or_none(self) -> Any:
        return self._value


class _FakeTransaction:
    def __init__(self, session: "FakeSession") -> None:
        self._session = session

    async def __aenter__(self) -> "_FakeTransaction":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if exc_type is None:
            self._session.commits += 1
        else:
            self._session.rollbacks += 1
        return False


class FakeSession:
    def __init__(self, factory: "FakeSessionFactory") -> None:
        self._factory = factory
        self.commits = 0
        self.rollbacks = 0

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        return False

    def begin(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    def add(self, obj: Any) -> None:
        if getattr(obj, "id", None) is None:
            obj.id = f"00000000-0000-4000-8000-{len(self._factory.added) + 1:012d}"
        self._factory.added.append(obj)

    async def commit(self) -> None:
        self.commits += 1

    async def execute(self, statement: Any) -> FakeResult:
        self._factory.statements.append(statement)
        if self._factory.on_execute is None:
            return FakeResult()
        return self._factory.on_execute(statement)


class FakeSessionFactory:
    """Stands in for ``async_sessionmaker``: ``async with factory() as session``."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.added: list[Any] = []
        self.statements: list[Any] = []
        self.on_execute: Optional[Callable[[Any], FakeResult]] = None
        self.fail_with: Optional[BaseException] = None

    def __call__(self) -> FakeSession:
        if self.fail_with is not None:
            raise self.fail_with
        session = FakeSession(self)
        self.sessions.append(session)
        return session


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()
