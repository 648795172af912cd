"""Database session management.

The engine and session factory are created in the application lifespan and
stored on ``app.state``; nothing is created at import time.
"""

from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session bound to the application's engine
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
