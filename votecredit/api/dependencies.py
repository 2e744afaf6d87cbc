from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.database import Database


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(request: Request) -> Generator[Session, None, None]:
    db = get_database(request).SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_app_settings() -> Settings:
    return get_settings()
