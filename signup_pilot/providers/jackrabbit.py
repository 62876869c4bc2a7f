"""Jackrabbit class registration adapter."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional
from urllib.parse import parse_qs, urljoin, urlsplit

from bs4 import BeautifulSoup

from signup_pilot.browser.models import BrowserAction, PageData
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
from signup_pilot.providers.matching import sort_candidates

# Column order of the Jackrabbit openings table
COL_REGISTER, COL_TITLE, COL_DESCRIPTION, COL_DAYS, COL_TIMES = 0, 1, 2, 3, 4
COL_AGES, COL_OPENINGS, COL_STARTS, COL_ENDS = 6, 7, 8, 9
MIN_COLUMNS = 10

DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y-%m-%d")

# Page text meaning the provider bills the family directly
PROVIDER_BILLING_MARKERS = (
    "tuition will be billed",
    "billed to your account",
    "charged to your family account",
    "pay at the studio",
    "payment will be collected",
    "autopay",
)

WAITLIST_MARKERS = (
    "added to the waitlist",
    "join waitlist",
    "waitlist only",
    "class is full",
)

LOGIN_ERROR_MARKERS = ("invalid login", "incorrect password", "login failed")


def organization_id(url: str) -> Optional[str]:
    """Organization id from the ``id`` or ``OrgID`` query parameter."""
    params = {k.lower(): v for k, v in parse_qs(urlsplit(url).query).items()}
    for key in ("id", "orgid"):
        if params.get(key):
            return params[key][0]
    return None


def is_openings_direct(url: str) -> bool:
    """OpeningsDirect listings are public and need no login."""
    return "/openings/openingsdirect" in urlsplit(url).path.lower()


def _parse_date(text: str) -> Optional[datetime]:
    text = text.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _availability(openings_text: str) -> tuple[str, Optional[int]]:
    text = openings_text.strip().lower()
    if "wait" in text:
        return "waitlist", None
    match = re.search(r"\d+", text)
    if match is None:
        return "open", None
    openings = int(match.group(0))
    if openings <= 0:
        return "full", 0
    return "open", openings


def parse_class_table(html: str, page_url: str, org_id: str) -> list[SessionCandidate]:
    """
    Parse the class openings table into candidates.

    Rows with fewer than ten cells (headers, spacers) are skipped. Full
    classes report a capacity of 0; open classes report their openings.
    """
    soup = BeautifulSoup(html, "lxml")
    candidates = []

    for index, row in enumerate(soup.select("table tr")):
        cells = row.find_all("td")
        if len(cells) < MIN_COLUMNS:
            continue

        title = cells[COL_TITLE].get_text(" ", strip=True)
        if not title:
            continue

        link = cells[COL_REGISTER].find("a", href=True)
        enroll_url = urljoin(page_url, link["href"]) if link else f"{page_url}&class={index}"

        class_id = link.get("data-class-id") if link else None
        if not class_id:
            class_id = f"{org_id}-{index}"

        availability, capacity = _availability(cells[COL_OPENINGS].get_text(strip=True))

        candidates.append(SessionCandidate(
            id=class_id,
            url=enroll_url,
            title=title,
            start_at=_parse_date(cells[COL_STARTS].get_text(strip=True)),
            end_at=_parse_date(cells[COL_ENDS].get_text(strip=True)),
            capacity=capacity,
            provider_id=org_id,
            availability=availability,
            metadata={
                "days": cells[COL_DAYS].get_text(" ", strip=True),
                "times": cells[COL_TIMES].get_text(" ", strip=True),
                "ages": cells[COL_AGES].get_text(" ", strip=True),
                "description": cells[COL_DESCRIPTION].get_text(" ", strip=True),
            },
        ))

    return candidates


class JackrabbitClassAdapter(ProviderAdapter):
    """Jackrabbit Class: dance, gymnastics and swim studio enrollment."""

    @property
    def platform(self) -> str:
        return "jackrabbit_class"

    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        org_id = organization_id(ctx.canonical_url)
        if not org_id:
            return PrecheckResult(
                ok=False,
                reason="Invalid Jackrabbit URL - missing organization ID",
            )

        requires_auth = not is_openings_direct(ctx.canonical_url)
        missing = []

        if not ctx.child.dob:
            missing.append("child_dob")
        if not ctx.child.emergency_contacts:
            missing.append("emergency_contacts")

        if requires_auth:
            creds = await self._lookup_credentials(ctx, org_id)
            if creds is None:
                missing.append("credentials")

        if missing:
            reason = (
                "Parent organization credentials not found in vault"
                if missing == ["credentials"]
                else f"Missing required information: {', '.join(missing)}"
            )
            return PrecheckResult(
                ok=False,
                reason=reason,
                requires_auth=requires_auth,
                missing_fields=missing,
            )

        return PrecheckResult(ok=True, requires_auth=requires_auth)

    def _listing_url(self, ctx: ProviderContext, org_id: str) -> str:
        if is_openings_direct(ctx.canonical_url):
            return ctx.canonical_url
        parts = urlsplit(ctx.canonical_url)
        return f"{parts.scheme}://{parts.netloc}/regv2.asp?id={org_id}"

    async def find_sessions(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
    ) -> list[SessionCandidate]:
        org_id = organization_id(ctx.canonical_url)
        if not org_id:
            return []

        listing_url = self._listing_url(ctx, org_id)
        page = await self._navigate(ctx, listing_url)
        candidates = parse_class_table(page.html, listing_url, org_id)

        if intent and intent.title_contains:
            needle = intent.title_contains.lower()
            candidates = [c for c in candidates if needle in c.title.lower()]

        if intent and intent.week_of:
            candidates = sort_candidates(candidates, intent.week_of, intent.title_contains)

        self.logger.info(
            "sessions_found",
            org_id=org_id,
            count=len(candidates),
            listing_url=listing_url,
        )
        return candidates

    async def _login(self, ctx: ProviderContext, page: PageData, org_id: str) -> bool:
        if 'type="password"' not in page.html and "type='password'" not in page.html:
            return True

        creds = await self._lookup_credentials(ctx, org_id)
        if creds is None:
            return False

        result = await self._interact(ctx, [
            {"type": "fill", "selector": "input[name*='user' i], input[type='email']", "value": creds.email},
            {"type": "fill", "selector": "input[type='password']", "value": creds.password},
            {"type": "click", "selector": "button[type='submit'], input[type='submit']"},
            {"type": "wait_for", "selector": "body"},
        ])
        text = result.html.lower()
        return not any(marker in text for marker in LOGIN_ERROR_MARKERS)

    async def reserve(self, ctx: ProviderContext, candidate: SessionCandidate) -> ReserveResult:
        org_id = candidate.provider_id or organization_id(ctx.canonical_url) or ""

        if not ctx.child.dob:
            return ReserveResult(
                success=False,
                candidate=candidate,
                reason="Missing login credentials or child data",
            )

        page = await self._navigate(ctx, candidate.url or ctx.canonical_url)

        if not is_openings_direct(ctx.canonical_url):
            if not await self._login(ctx, page, org_id):
                return ReserveResult(
                    success=False,
                    candidate=candidate,
                    reason="Failed to login to Jackrabbit system",
                )

        # Register / Enroll button
        page = await self._interact(ctx, [
            {"type": "click_text", "text": "Register"},
            {"type": "wait_for", "selector": "form"},
        ])
        if page_has_captcha(page):
            self.logger.info("human_verification_detected", candidate=candidate.id)
            return ReserveResult(
                success=False,
                needs_captcha=True,
                provider=self.platform,
                candidate=candidate,
            )

        page_text = page.html.lower()
        if candidate.availability == "waitlist" or any(m in page_text for m in WAITLIST_MARKERS):
            return ReserveResult(success=False, waitlisted=True, candidate=candidate)

        steps = [
            {"type": "select", "selector": "select[name*='student' i]", "value": ctx.child.name},
            {"type": "fill", "selector": "input[name*='birth' i]", "value": ctx.child.dob.strftime("%m/%d/%Y")},
        ]
        if ctx.child.grade:
            steps.append({"type": "fill", "selector": "input[name*='grade' i]", "value": ctx.child.grade})
        for i, contact in enumerate(ctx.child.emergency_contacts, start=1):
            steps.extend([
                {"type": "fill", "selector": f"input[name='EmergName{i}']", "value": contact.get("name", "")},
                {"type": "fill", "selector": f"input[name='EmergPhone{i}']", "value": contact.get("phone", "")},
                {"type": "fill", "selector": f"input[name='EmergRel{i}']", "value": contact.get("relationship", "")},
            ])
        steps.append({"type": "click", "selector": "button[type='submit'], input[type='submit']"})

        page = await self._interact(ctx, steps, action=BrowserAction.SUBMIT_FORM)

        if page_has_captcha(page):
            return ReserveResult(
                success=False,
                needs_captcha=True,
                provider=self.platform,
                candidate=candidate,
            )

        confirmation = find_confirmation_id(page)
        if confirmation:
            self.logger.info("registration_submitted", candidate=candidate.id, confirmation=confirmation)
            return ReserveResult(success=True, candidate=candidate.with_provider_id(confirmation))

        return ReserveResult(
            success=False,
            candidate=candidate,
            reason="Registration submission failed: no confirmation number on page",
        )

    async def _provider_collects_payment(self, ctx: ProviderContext) -> bool:
        page = await self.read_page(ctx)
        text = page.html.lower()
        return any(marker in text for marker in PROVIDER_BILLING_MARKERS)

    async def finalize_payment(
        self,
        ctx: ProviderContext,
        candidate: SessionCandidate,
    ) -> FinalizeResult:
        if self.payments is None:
            return FinalizeResult(success=False, error="No payment gateway configured")

        if await self._provider_collects_payment(ctx):
            # Studio bills tuition itself; only our service fee is charged
            fee = await self.payments.charge_service_fee(ctx.attempt_id, ctx.user_id)
            if not fee.success:
                return FinalizeResult(success=False, error=fee.error or "Service fee charge failed")
            return FinalizeResult(
                success=True,
                confirmation_id=candidate.provider_id or candidate.id,
            )

        payment = await self.payments.submit_provider_payment(ctx.attempt_id, ctx.user_id, candidate)
        if not payment.success:
            return FinalizeResult(success=False, error=payment.error or "Payment processing failed")
        return FinalizeResult(success=True, confirmation_id=payment.reference)
