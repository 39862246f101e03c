"""Headless browser automation: driver, extraction and session persistence."""

from automation_service.browser.driver import AutomationDriver, BrowserSession, LoginCredentials
from automation_service.browser.extraction import SelectorSpec
from automation_service.browser.session_store import SessionStore

__all__ = [
    "AutomationDriver",
    "BrowserSession",
    "LoginCredentials",
    "SelectorSpec",
    "SessionStore",
]
