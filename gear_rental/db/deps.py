from collections.abc import Generator

from .session import SessionLocalDatastore


def get_datastore_db() -> Generator:
    db = SessionLocalDatastore()
    try:
        yield db
    finally:
        db.close()
