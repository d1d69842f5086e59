"""Fetchers module - Playwright session factory and page loader."""

from .browser_fetcher import PlaywrightPageLoader, PlaywrightSessionFactory

__all__ = ["PlaywrightPageLoader", "PlaywrightSessionFactory"]
