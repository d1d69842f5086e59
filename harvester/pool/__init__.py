"""Pool module - bounded browser session pool."""

from .session_pool import BrowserInstance, Session, SessionFactory, SessionPool

__all__ = ["BrowserInstance", "Session", "SessionFactory", "SessionPool"]
