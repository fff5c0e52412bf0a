from __future__ import annotations

from app.db.models.oauth_connection import OAuthConnection

__all__ = ["OAuthConnection"]
