"""Remote browser sessions: provider client, approvals and lifecycle."""

from signup_pilot.browser.approval import ApprovalVerifier
from signup_pilot.browser.client import BrowserProvider, HttpBrowserProvider
from signup_pilot.browser.lifecycle import SessionLifecycleManager
from signup_pilot.browser.models import (
    SENSITIVE_ACTIONS,
    ActionRequest,
    ApprovalToken,
    BrowserAction,
    BrowserSession,
    PageData,
    SessionStatus,
)

__all__ = [
    "SessionLifecycleManager",
    "BrowserProvider",
    "HttpBrowserProvider",
    "ApprovalVerifier",
    "ApprovalToken",
    "ActionRequest",
    "BrowserAction",
    "BrowserSession",
    "PageData",
    "SessionStatus",
    "SENSITIVE_ACTIONS",
]
