from __future__ import annotations

from app.db.base import Base
from app.db.models import OAuthConnection
from app.db.session import async_session_maker, engine, get_async_session

__all__ = ["Base", "OAuthConnection", "engine", "async_session_maker", "get_async_session"]
