"""Provider adapters for registration platforms."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from signup_pilot.browser.lifecycle import SessionLifecycleManager
from signup_pilot.providers.base import (
    ChildProfile,
    FinalizeResult,
    PrecheckResult,
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    ReserveResult,
    SessionCandidate,
)
from signup_pilot.providers.credentials import (
    CredentialStore,
    Credentials,
    StaticCredentialStore,
    load_credentials_file,
)
from signup_pilot.providers.jackrabbit import JackrabbitClassAdapter
from signup_pilot.providers.payments import HttpPaymentGateway, PaymentGateway, PaymentResult
from signup_pilot.providers.skiclubpro import SkiClubProAdapter
from signup_pilot.utils.logging import get_logger

logger = get_logger("providers")

# Provider registry mapping platform ids to adapter classes
PROVIDER_REGISTRY: dict[str, type[ProviderAdapter]] = {
    "jackrabbit_class": JackrabbitClassAdapter,
    "skiclubpro": SkiClubProAdapter,
}

# Hostname patterns identifying each platform
PLATFORM_PATTERNS: dict[str, list[str]] = {
    "jackrabbit_class": ["*.jackrabbitclass.com", "jackrabbitclass.com"],
    "skiclubpro": ["*.skiclubpro.team"],
}


@dataclass
class AdapterDeps:
    """Collaborators every adapter is built with."""

    lifecycle: SessionLifecycleManager
    credentials: CredentialStore
    payments: Optional[PaymentGateway] = None


@dataclass
class FlowResult:
    """Outcome of running an adapter end to end."""

    success: bool
    platform: Optional[str] = None
    candidate: Optional[SessionCandidate] = None
    confirmation_id: Optional[str] = None
    error: Optional[str] = None
    needs_captcha: bool = False
    waitlisted: bool = False


def _pattern_regex(pattern: str) -> re.Pattern:
    escaped = re.escape(pattern).replace(r"\*", ".*")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def detect_platform(url: str) -> Optional[str]:
    """
    Identify the registration platform serving a URL.

    Returns:
        Platform id, or None when no pattern matches
    """
    host = urlsplit(url).hostname
    if not host:
        return None

    for platform, patterns in PLATFORM_PATTERNS.items():
        if any(_pattern_regex(p).match(host) for p in patterns):
            return platform
    return None


def load_adapter(platform: str, deps: AdapterDeps) -> ProviderAdapter:
    """
    Factory function to get an adapter by platform id.

    Raises:
        ValueError: If platform is not registered
    """
    if platform not in PROVIDER_REGISTRY:
        available = ", ".join(PROVIDER_REGISTRY.keys())
        raise ValueError(f"No adapter for platform: {platform}. Available: {available}")

    adapter_class = PROVIDER_REGISTRY[platform]
    return adapter_class(
        lifecycle=deps.lifecycle,
        credentials=deps.credentials,
        payments=deps.payments,
    )


def list_platforms() -> list[str]:
    return list(PROVIDER_REGISTRY.keys())


async def run_provider_flow(
    ctx: ProviderContext,
    deps: AdapterDeps,
    intent: Optional[ProviderIntent] = None,
) -> FlowResult:
    """
    Run precheck, find_sessions, reserve and finalize_payment for the best candidate.

    Args:
        ctx: Attempt context
        deps: Adapter collaborators
        intent: Optional ranking intent

    Returns:
        FlowResult describing where the flow stopped
    """
    platform = detect_platform(ctx.canonical_url)
    if platform is None:
        return FlowResult(success=False, error="Platform not recognized for URL")

    adapter = load_adapter(platform, deps)

    precheck = await adapter.precheck(ctx)
    if not precheck.ok:
        return FlowResult(success=False, platform=platform, error=precheck.reason)

    candidates = await adapter.find_sessions(ctx, intent)
    if not candidates:
        return FlowResult(success=False, platform=platform, error="No matching sessions found")
    candidate = candidates[0]

    reserved = await adapter.reserve(ctx, candidate)
    if not reserved.success:
        return FlowResult(
            success=False,
            platform=platform,
            candidate=candidate,
            error=reserved.reason or "Reservation failed",
            needs_captcha=reserved.needs_captcha,
            waitlisted=reserved.waitlisted,
        )

    candidate = reserved.candidate or candidate
    finalized = await adapter.finalize_payment(ctx, candidate)
    logger.info(
        "provider_flow_finished",
        platform=platform,
        success=finalized.success,
        candidate=candidate.id,
    )
    return FlowResult(
        success=finalized.success,
        platform=platform,
        candidate=candidate,
        confirmation_id=finalized.confirmation_id,
        error=finalized.error,
    )


__all__ = [
    "PROVIDER_REGISTRY",
    "PLATFORM_PATTERNS",
    "AdapterDeps",
    "FlowResult",
    "detect_platform",
    "load_adapter",
    "list_platforms",
    "run_provider_flow",
    # Contract
    "ProviderAdapter",
    "ProviderContext",
    "ProviderIntent",
    "ChildProfile",
    "SessionCandidate",
    "PrecheckResult",
    "ReserveResult",
    "FinalizeResult",
    # Adapters
    "JackrabbitClassAdapter",
    "SkiClubProAdapter",
    # Collaborators
    "CredentialStore",
    "Credentials",
    "StaticCredentialStore",
    "load_credentials_file",
    "PaymentGateway",
    "HttpPaymentGateway",
    "PaymentResult",
]
