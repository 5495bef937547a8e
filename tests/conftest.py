from decimal import Decimal

import pytest

from tradearena.config import settings
from tradearena.runtime import TradingRuntime


@pytest.fixture(autouse=True, scope="session")
def use_test_db(tmp_path_factory):
    # Route the default database to a temporary DuckDB file so tests never
    # touch data/tradearena.duckdb while a live server holds it
    temp_dir = tmp_path_factory.mktemp("test_db")
    settings.DB_PATH = temp_dir / "test_tradearena.duckdb"
    yield


@pytest.fixture()
def runtime(tmp_path):
    """Fresh runtime on its own database; no rate limit, any symbol, no loop."""
    rt = TradingRuntime(
        db_path=tmp_path / "arena.duckdb",
        starting_cash=Decimal("1000"),
        submit_min_interval_ms=0,
        symbols=[],
    )
    rt.start(schedule=False)
    yield rt
    rt.shutdown()
