"""Runs against a real SQL Server when MSSQL_HOST, MSSQL_DATABASE and MSSQL_USER are set.

docker run -e ACCEPT_EULA=Y -e MSSQL_SA_PASSWORD='MyPassword123!' -p 1433:1433 mcr.microsoft.com/mssql/server
MSSQL_HOST=127.0.0.1 MSSQL_DATABASE=master MSSQL_USER=sa MSSQL_PASSWORD='MyPassword123!' pytest tests/test_integration.py
"""

import os
import threading
import time

import pytest

from mssql_connload import (
    ConnectionRegistry,
    Connector,
    StrictRateGovernor,
    load_config,
    mssql_connect_factory,
    run,
)

pytestmark = pytest.mark.skipif(
    not all(os.environ.get(name) for name in ("MSSQL_HOST", "MSSQL_DATABASE", "MSSQL_USER")),
    reason="no SQL Server configured",
)


def fill(max_conns, rate):
    config = load_config([], dict(os.environ, MAX_CONNS=str(max_conns), CONN_CREATION_RATE=str(rate)))
    registry = ConnectionRegistry(config.max_conns)
    stop = threading.Event()
    connector = Connector(1, mssql_connect_factory(config), registry, StrictRateGovernor(config.rate), stop)
    thread = threading.Thread(target=connector.run, daemon=True)
    thread.start()
    return registry, stop, thread


def test_unthrottled_fill_reaches_max():
    registry, stop, thread = fill(10, 1000)
    try:
        thread.join(timeout=30)
        assert len(registry) == 10
        time.sleep(1)
        assert len(registry) == 10
    finally:
        stop.set()
        registry.close_all()


def test_rate_limited_fill():
    registry, stop, thread = fill(5, 1)
    try:
        time.sleep(3)
        assert 0 <= len(registry) <= 4
        thread.join(timeout=10)
        assert len(registry) == 5
    finally:
        stop.set()
        registry.close_all()


def test_unreachable_server_exits_non_zero():
    config = load_config([], dict(os.environ, MSSQL_HOST="127.0.0.1", MSSQL_PORT="1", CONNECT_TIMEOUT="2"))
    assert run(config) == 1
