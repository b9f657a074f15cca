"""Tests for the retrying transaction scope."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from bursar.services.exceptions import ConcurrencyConflict, ValidationError
from bursar.services.unit_of_work import is_retryable, run_in_transaction


class _PgError(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def _dbapi_error(sqlstate: str) -> DBAPIError:
    return DBAPIError("UPDATE student_ledgers", {}, _PgError(sqlstate))


class _SessionFactory:
    """Stands in for async_sessionmaker: each call yields a fresh mock session."""

    def __init__(self):
        self.sessions: list[AsyncMock] = []

    def __call__(self):
        session = AsyncMock()
        self.sessions.append(session)
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=session)
        context.__aexit__ = AsyncMock(return_value=False)
        return context


@pytest.fixture(autouse=True)
def _no_backoff():
    with patch("bursar.services.unit_of_work._BACKOFF_SECONDS", 0):
        yield


class TestIsRetryable:

    def test_stale_data(self):
        assert is_retryable(StaleDataError("version mismatch")) is True

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "55P03"])
    def test_retryable_sqlstates(self, sqlstate):
        assert is_retryable(_dbapi_error(sqlstate)) is True

    def test_unique_violation_not_retryable(self):
        assert is_retryable(IntegrityError("INSERT", {}, _PgError("23505"))) is False

    def test_domain_error_not_retryable(self):
        assert is_retryable(ValidationError("bad")) is False


class TestRunInTransaction:

    @pytest.mark.asyncio
    async def test_commits_on_success(self):
        factory = _SessionFactory()
        fn = AsyncMock(return_value="done")
        assert await run_in_transaction(fn, session_factory=factory) == "done"
        factory.sessions[0].commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        factory = _SessionFactory()
        fn = AsyncMock(side_effect=[StaleDataError("stale"), "ok"])
        assert await run_in_transaction(fn, attempts=3, session_factory=factory) == "ok"
        assert len(factory.sessions) == 2
        factory.sessions[0].rollback.assert_awaited_once()
        factory.sessions[1].commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_with_conflict(self):
        factory = _SessionFactory()
        fn = AsyncMock(side_effect=_dbapi_error("40P01"))
        with pytest.raises(ConcurrencyConflict, match="after 3 attempts"):
            await run_in_transaction(fn, attempts=3, session_factory=factory)
        assert len(factory.sessions) == 3

    @pytest.mark.asyncio
    async def test_domain_error_not_retried(self):
        factory = _SessionFactory()
        fn = AsyncMock(side_effect=ValidationError("bad amount"))
        with pytest.raises(ValidationError):
            await run_in_transaction(fn, attempts=3, session_factory=factory)
        assert len(factory.sessions) == 1
        factory.sessions[0].rollback.assert_awaited_once()
        factory.sessions[0].commit.assert_not_awaited()
