from __future__ import annotations

import logging

import pytest

from autonews.config import load_config
from autonews.db import connect_db


@pytest.fixture
def conn(tmp_path):
    connection = connect_db(str(tmp_path / "autonews.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def config():
    return load_config(environ={})


@pytest.fixture
def logger():
    return logging.getLogger("test")
