"""
Shared pytest fixtures for the pipeline tests.
- Puts the tests directory on sys.path so sample_data imports work.
- Provides a temporary SQLite database and sample candle windows.
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from ops.db import DatabaseManager
from sample_data import create_sample_candles


@pytest.fixture
def temp_db_path():
    """Create temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def database(temp_db_path):
    """DatabaseManager on a fresh SQLite file."""
    manager = DatabaseManager(f"sqlite:///{temp_db_path}")
    yield manager
    manager.engine.dispose()


@pytest.fixture
def sample_candles():
    return create_sample_candles(200)
