import pytest

from database_manager import DatabaseManager

SEAT_COUNT = 12
PRICES = [12.5, 8.0, 9.5]


@pytest.fixture
def db(tmp_path):
    """A fresh catalog of 12 seats and 3 price categories in a throwaway SQLite file."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'seats.db'}")
    success, message = manager.initialize_catalog(SEAT_COUNT, PRICES)
    assert success, message
    yield manager
    manager.close()


@pytest.fixture
def client(db):
    from app import create_app

    app = create_app(db, seed_demo=False)
    app.config['TESTING'] = True
    return app.test_client()
