"""Page helpers for the Kyoto two-pane planner."""

from __future__ import annotations

from typing import Optional

import pytest
from playwright.async_api import Locator, Page

ENTITY_CHIP = "[data-entity-chip]"
SELECTION_POPOVER = "[data-selection-popover]"
NOTES_EDITOR = ".waypoint-notes-editor"
TITLEBAR_NAME = ".titlebar__name"

HYDRATION_TIMEOUT_MS = 5000


async def goto_app(page: Page, path: str = "/", timeout: float = HYDRATION_TIMEOUT_MS) -> None:
    """Open the app and wait until the seed data has rendered chips."""
    await page.goto(path)
    await page.wait_for_selector(ENTITY_CHIP, timeout=timeout)


def tab(page: Page, name: str, pane: str = "left") -> Locator:
    return page.locator(f'[data-pane="{pane}"] [data-tab="{name}"]')


async def open_tab(page: Page, name: str, pane: str = "left", wait_for: Optional[str] = None) -> None:
    await tab(page, name, pane).click()
    if wait_for:
        await page.wait_for_selector(wait_for)


def chips(page: Page, entity_type: Optional[str] = None) -> Locator:
    if entity_type is None:
        return page.locator(ENTITY_CHIP)
    return page.locator(f'{ENTITY_CHIP}[data-entity-type="{entity_type}"]')


def chip_by_id(page: Page, entity_id: str) -> Locator:
    return page.locator(f'{ENTITY_CHIP}[data-entity-id="{entity_id}"]')


async def click_chip(chip: Locator, add: bool = False) -> None:
    """Click a chip's name; ``add`` extends the current selection."""
    await chip.locator("[data-chip-name]").click(modifiers=["Control"] if add else None)


def popover(page: Page) -> Locator:
    return page.locator(SELECTION_POPOVER)


def tree_view(page: Page, kind: str) -> Locator:
    return page.locator(f'[data-tree-view="{kind}"]')


def tree_children(page: Page, parent_id: str) -> Locator:
    return page.locator(f'[data-tree-node][data-parent-id="{parent_id}"]')


async def expand(node: Locator) -> None:
    if await node.get_attribute("data-expanded") == "false":
        await node.locator("[data-toggle]").first.click()


def ancestor(locator: Locator, attribute: str) -> Locator:
    return locator.locator(f"xpath=ancestor::*[@{attribute}][1]")


async def require(locator: Locator, reason: str) -> Locator:
    """Skip the current test unless the seed data renders ``locator``."""
    if await locator.count() == 0:
        pytest.skip(reason)
    return locator


async def computed_style(locator: Locator, prop: str) -> str:
    return await locator.evaluate("(el, prop) => getComputedStyle(el)[prop]", prop)
