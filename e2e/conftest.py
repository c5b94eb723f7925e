import pytest_asyncio
from playwright.async_api import Page

from kyoto_e2e.app import goto_app
from kyoto_e2e.plugin import *  # noqa: F401,F403


@pytest_asyncio.fixture
async def app(page: Page) -> Page:
    """The planner loaded with its seed data."""
    await goto_app(page)
    return page
