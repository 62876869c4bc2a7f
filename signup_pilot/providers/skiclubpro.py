"""SkiClubPro club program registration adapter."""

from __future__ import annotations

from typing import Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from signup_pilot.browser.models import BrowserAction
from signup_pilot.providers.base import (
    FinalizeResult,
    PrecheckResult,
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    ReserveResult,
    SessionCandidate,
    find_confirmation_id,
    page_has_captcha,
)
from signup_pilot.providers.matching import PROGRAM_MATCH_THRESHOLD, best_program_score

PROGRAM_BLOCK_SELECTOR = ".views-row, article, section.program, li.program, tr"

WAITLIST_MARKERS = ("waitlist", "wait list", "sold out")


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def parse_program_blocks(html: str, page_url: str) -> list[SessionCandidate]:
    """Program blocks that carry a Register or Add to Cart link."""
    soup = BeautifulSoup(html, "lxml")
    candidates = []
    seen: set[str] = set()

    for block in soup.select(PROGRAM_BLOCK_SELECTOR):
        link = None
        for a in block.find_all("a", href=True):
            label = a.get_text(" ", strip=True).lower()
            if "register" in label or "add to cart" in label:
                link = a
                break
        if link is None:
            continue

        url = urljoin(page_url, link["href"])
        if url in seen:
            continue
        seen.add(url)

        heading = block.find(["h2", "h3", "h4"]) or block.find(class_="title")
        title = heading.get_text(" ", strip=True) if heading else block.get_text(" ", strip=True)[:80]
        text = block.get_text(" ", strip=True)

        candidates.append(SessionCandidate(
            id=link.get("data-program-id") or url.rstrip("/").rsplit("/", 1)[-1],
            url=url,
            title=title,
            availability="waitlist" if any(m in text.lower() for m in WAITLIST_MARKERS) else "open",
            metadata={"text": text},
        ))

    return candidates


class SkiClubProAdapter(ProviderAdapter):
    """SkiClubPro club sites: membership, program registration and cart checkout."""

    @property
    def platform(self) -> str:
        return "skiclubpro"

    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        missing = []
        if not ctx.child.name:
            missing.append("child_name")

        creds = await self._lookup_credentials(ctx)
        if creds is None or not creds.email or not creds.password:
            missing.append("credentials")

        if missing:
            return PrecheckResult(
                ok=False,
                reason=f"Missing required information: {', '.join(missing)}",
                requires_auth=True,
                missing_fields=missing,
            )
        return PrecheckResult(ok=True, requires_auth=True)

    async def find_sessions(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
    ) -> list[SessionCandidate]:
        programs_url = f"{_origin(ctx.canonical_url)}/registration"
        page = await self._navigate(ctx, programs_url)
        candidates = parse_program_blocks(page.html, programs_url)

        if intent and intent.title_contains:
            scored = []
            for candidate in candidates:
                score = best_program_score(
                    candidate.metadata.get("text", candidate.title),
                    intent.title_contains,
                    intent.alt_titles,
                    intent.time_text,
                )
                if score >= PROGRAM_MATCH_THRESHOLD:
                    candidate.metadata["score"] = score
                    scored.append(candidate)
            scored.sort(key=lambda c: c.metadata["score"], reverse=True)
            candidates = scored

        self.logger.info("sessions_found", url=programs_url, count=len(candidates))
        return candidates

    async def _login(self, ctx: ProviderContext) -> bool:
        creds = await self._lookup_credentials(ctx)
        if creds is None:
            return False

        await self._navigate(ctx, f"{_origin(ctx.canonical_url)}/user/login")
        page = await self._interact(ctx, [
            {"type": "fill", "selector": "input[type='email'], input[name*='email' i], input[name='name']", "value": creds.email},
            {"type": "fill", "selector": "input[type='password']", "value": creds.password},
            {"type": "click", "selector": "button[type='submit'], input[type='submit']"},
            {"type": "wait_for", "selector": "body"},
        ])
        return "log out" in page.html.lower() or "logout" in page.html.lower()

    async def reserve(self, ctx: ProviderContext, candidate: SessionCandidate) -> ReserveResult:
        if not await self._login(ctx):
            return ReserveResult(
                success=False,
                candidate=candidate,
                reason="Failed to login to SkiClubPro",
            )

        # Club membership must be in the cart before programs can be added
        membership = await self._navigate(ctx, f"{_origin(ctx.canonical_url)}/membership")
        if "add to cart" in membership.html.lower():
            await self._interact(ctx, [{"type": "click_text", "text": "Add to Cart"}])

        page = await self._navigate(ctx, candidate.url)
        if page_has_captcha(page):
            return ReserveResult(
                success=False,
                needs_captcha=True,
                provider=self.platform,
                candidate=candidate,
            )
        if candidate.availability == "waitlist":
            return ReserveResult(success=False, waitlisted=True, candidate=candidate)

        page = await self._interact(ctx, [
            {"type": "click_text", "text": "Register"},
            {"type": "select", "selector": "select[name*='child' i], select[id*='child' i]", "value": ctx.child.name},
            {"type": "click_text", "text": "Continue"},
        ], action=BrowserAction.SUBMIT_FORM)

        if page_has_captcha(page):
            return ReserveResult(
                success=False,
                needs_captcha=True,
                provider=self.platform,
                candidate=candidate,
            )
        if any(m in page.html.lower() for m in WAITLIST_MARKERS):
            return ReserveResult(success=False, waitlisted=True, candidate=candidate)

        cart = await self._navigate(ctx, f"{_origin(ctx.canonical_url)}/cart")
        if candidate.title.lower() not in cart.html.lower():
            return ReserveResult(
                success=False,
                candidate=candidate,
                reason=f"Program not in cart after registration: {candidate.title}",
            )

        return ReserveResult(success=True, candidate=candidate)

    async def finalize_payment(
        self,
        ctx: ProviderContext,
        candidate: SessionCandidate,
    ) -> FinalizeResult:
        # The club charges the card saved on the family account
        page = await self._interact(ctx, [
            {"type": "click_text", "text": "Checkout"},
            {"type": "click_text", "text": "Complete Order"},
            {"type": "wait_for", "selector": "body"},
        ], action=BrowserAction.PAYMENT)

        if page_has_captcha(page):
            return FinalizeResult(success=False, error="Human verification required at checkout")

        confirmation = find_confirmation_id(page)
        if not confirmation:
            return FinalizeResult(success=False, error="Order was not confirmed")

        if self.payments is not None:
            fee = await self.payments.charge_service_fee(ctx.attempt_id, ctx.user_id)
            if not fee.success:
                return FinalizeResult(success=False, error=fee.error or "Service fee charge failed")

        return FinalizeResult(success=True, confirmation_id=confirmation)
