"""
Tests for application startup and shutdown wiring.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI

import app.main as main
from app.config import settings
from app.observability import tracing


class TestLifespan:
    @pytest.mark.asyncio
    async def test_both_engines_instrumented(
        self, app: FastAPI, monkeypatch: pytest.MonkeyPatch
    ):
        write_engine, read_engine = MagicMock(name="write"), MagicMock(name="read")
        instrument = MagicMock()
        monkeypatch.setattr(main, "get_write_engine", lambda: write_engine)
        monkeypatch.setattr(main, "get_read_engine", lambda: read_engine)
        monkeypatch.setattr(main, "instrument_sqlalchemy", instrument)
        monkeypatch.setattr(main, "close_engines", AsyncMock())
        monkeypatch.setattr(settings, "sweeps_enabled", False)
        monkeypatch.setattr(settings, "run_migrations_on_startup", False)

        async with main.lifespan(app):
            assert app.state.container is not None

        assert [call.args[0] for call in instrument.call_args_list] == [write_engine, read_engine]
        main.close_engines.assert_awaited_once()
        del app.state.container


class TestInstrumentSqlalchemy:
    def test_instruments_sync_engine(self, monkeypatch: pytest.MonkeyPatch):
        instrumentor = MagicMock()
        monkeypatch.setattr(tracing, "SQLAlchemyInstrumentor", instrumentor)
        monkeypatch.setattr(settings, "tracing_enabled", True)
        engine = MagicMock()

        tracing.instrument_sqlalchemy(engine)

        instrumentor.return_value.instrument.assert_called_once_with(engine=engine.sync_engine)

    def test_disabled(self, monkeypatch: pytest.MonkeyPatch):
        instrumentor = MagicMock()
        monkeypatch.setattr(tracing, "SQLAlchemyInstrumentor", instrumentor)
        monkeypatch.setattr(settings, "tracing_enabled", False)

        tracing.instrument_sqlalchemy(MagicMock())

        instrumentor.assert_not_called()
