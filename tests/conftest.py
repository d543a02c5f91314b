import os
import pathlib
import tempfile

import pytest


def pytest_configure():
    if os.getenv("LEDGER_DATABASE_URL") or os.getenv("LEDGER_DATA_DIR"):
        return
    temp_dir = tempfile.mkdtemp(prefix="ledger-tests-")
    os.environ["LEDGER_DATA_DIR"] = temp_dir
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["LEDGER_DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture()
def api_client(tmp_path):
    from fastapi.testclient import TestClient
    from sqlalchemy.orm import sessionmaker

    from database import Base, create_store_engine
    from main import app, get_db
    from notifications import change_bridge

    engine = create_store_engine(f"sqlite:///{tmp_path / 'api.db'}")
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    change_bridge.attach(TestSession)

    def _get_test_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        change_bridge.detach(TestSession)
        engine.dispose()
