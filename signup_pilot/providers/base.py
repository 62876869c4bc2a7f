"""Provider adapter contract and shared types."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Optional

from signup_pilot.browser.lifecycle import SessionLifecycleManager
from signup_pilot.browser.models import ActionRequest, ApprovalToken, BrowserAction, PageData
from signup_pilot.providers.credentials import CredentialStore, Credentials
from signup_pilot.providers.payments import PaymentGateway
from signup_pilot.utils.logging import get_logger

# Markers of a human-verification challenge in page HTML
CAPTCHA_MARKERS = (
    "g-recaptcha",
    "recaptcha/api",
    "h-captcha",
    "hcaptcha.com",
    "cf-turnstile",
    "challenges.cloudflare.com",
    "verify you are human",
)

CONFIRMATION_PATTERN = re.compile(
    r"(?:confirmation|enrollment|order|registration)\s*(?:#|number|no\.?|id)\s*:?\s*([A-Z0-9][A-Z0-9-]{3,})",
    re.IGNORECASE,
)


@dataclass
class ChildProfile:
    """The child being registered."""

    name: str = ""
    dob: Optional[date] = None
    grade: Optional[str] = None
    emergency_contacts: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ProviderContext:
    """Everything an adapter needs for one registration attempt."""

    attempt_id: str
    user_id: str
    canonical_url: str
    child: ChildProfile = field(default_factory=ChildProfile)
    approval: Optional[ApprovalToken] = None
    session_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderIntent:
    """What the parent is looking for."""

    title_contains: Optional[str] = None
    week_of: Optional[date] = None
    time_text: Optional[str] = None
    alt_titles: list[str] = field(default_factory=list)


@dataclass
class SessionCandidate:
    """A concrete enrollable offering discovered on a provider."""

    id: str
    url: str
    title: str
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    capacity: Optional[int] = None
    provider_id: Optional[str] = None
    availability: str = "open"
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_provider_id(self, provider_id: str) -> "SessionCandidate":
        return replace(self, provider_id=provider_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "capacity": self.capacity,
            "provider_id": self.provider_id,
            "availability": self.availability,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionCandidate":
        """Create from dictionary."""
        start_at = data.get("start_at")
        end_at = data.get("end_at")
        return cls(
            id=data["id"],
            url=data.get("url", ""),
            title=data.get("title", ""),
            start_at=datetime.fromisoformat(start_at) if start_at else None,
            end_at=datetime.fromisoformat(end_at) if end_at else None,
            capacity=data.get("capacity"),
            provider_id=data.get("provider_id"),
            availability=data.get("availability", "open"),
        )


@dataclass
class PrecheckResult:
    """Outcome of validating an attempt's data before automation starts."""

    ok: bool
    reason: Optional[str] = None
    requires_auth: bool = False
    missing_fields: list[str] = field(default_factory=list)


@dataclass
class ReserveResult:
    """
    Outcome of a reservation.

    ``needs_captcha`` and ``waitlisted`` are distinct non-success outcomes the
    orchestrator reacts to; ``reason`` is kept verbatim for diagnostics.
    """

    success: bool
    candidate: Optional[SessionCandidate] = None
    needs_captcha: bool = False
    waitlisted: bool = False
    reason: Optional[str] = None
    provider: Optional[str] = None


@dataclass
class FinalizeResult:
    """Outcome of payment finalization."""

    success: bool
    confirmation_id: Optional[str] = None
    error: Optional[str] = None


def page_has_captcha(page: PageData) -> bool:
    html = page.html.lower()
    return any(marker in html for marker in CAPTCHA_MARKERS)


def find_confirmation_id(page: PageData) -> Optional[str]:
    match = CONFIRMATION_PATTERN.search(page.html)
    return match.group(1) if match else None


class ProviderAdapter(ABC):
    """
    Base class for registration platform adapters.

    Each adapter translates one platform's login, enrollment and payment
    flow into the four calls the orchestrator understands. Adapters drive
    the browser only through the session lifecycle manager, so every
    navigation passes the compliance gate and rate limiter.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        credentials: CredentialStore,
        payments: Optional[PaymentGateway] = None,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            lifecycle: Session lifecycle manager used for all browser calls
            credentials: Store of parent account credentials
            payments: Payment gateway for fees and provider payments
        """
        self.lifecycle = lifecycle
        self.credentials = credentials
        self.payments = payments
        self.logger = get_logger(f"providers.{self.platform}")

    @property
    @abstractmethod
    def platform(self) -> str:
        """Unique identifier for this platform."""
        ...

    @abstractmethod
    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        """
        Validate identity and credential data. Must not navigate.

        Args:
            ctx: Attempt context

        Returns:
            PrecheckResult listing any missing fields
        """
        ...

    @abstractmethod
    async def find_sessions(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
    ) -> list[SessionCandidate]:
        """
        Discover enrollable offerings, ranked by intent.

        Args:
            ctx: Attempt context
            intent: Optional title / week-of filter

        Returns:
            Candidates, best match first
        """
        ...

    @abstractmethod
    async def reserve(self, ctx: ProviderContext, candidate: SessionCandidate) -> ReserveResult:
        """
        Log in, enroll the child in ``candidate`` and submit.

        Args:
            ctx: Attempt context
            candidate: Offering to reserve

        Returns:
            ReserveResult distinguishing captcha, waitlist and failure
        """
        ...

    @abstractmethod
    async def finalize_payment(
        self,
        ctx: ProviderContext,
        candidate: SessionCandidate,
    ) -> FinalizeResult:
        """
        Complete payment for a reserved candidate.

        Args:
            ctx: Attempt context
            candidate: Reserved offering

        Returns:
            FinalizeResult with the provider's confirmation id
        """
        ...

    # -- browser helpers -----------------------------------------------------

    async def _session_id(self, ctx: ProviderContext) -> str:
        # A closed session is never silently replaced; execute_action reports it
        if ctx.session_id is None:
            session = await self.lifecycle.create_session(
                ctx.attempt_id,
                url=ctx.canonical_url,
                provider_id=self.platform,
            )
            ctx.session_id = session.id
        return ctx.session_id

    async def _navigate(self, ctx: ProviderContext, url: str) -> PageData:
        session_id = await self._session_id(ctx)
        return await self.lifecycle.navigate_with_compliance(session_id, url, self.platform)

    async def _interact(
        self,
        ctx: ProviderContext,
        steps: list[dict[str, Any]],
        action: str = BrowserAction.INTERACT,
    ) -> PageData:
        session_id = await self._session_id(ctx)
        return await self.lifecycle.execute_action(ActionRequest(
            session_id=session_id,
            action=action,
            data={"steps": steps},
            approval=ctx.approval,
        ))

    async def read_page(self, ctx: ProviderContext, selector: Optional[str] = None) -> PageData:
        """Read the current page of the attempt's session."""
        session_id = await self._session_id(ctx)
        return await self.lifecycle.execute_action(ActionRequest(
            session_id=session_id,
            action=BrowserAction.EXTRACT,
            data={"selector": selector} if selector else {},
        ))

    async def _lookup_credentials(
        self,
        ctx: ProviderContext,
        organization_id: Optional[str] = None,
    ) -> Optional[Credentials]:
        return await self.credentials.get_credentials(
            ctx.user_id,
            ctx.canonical_url,
            organization_id,
        )
