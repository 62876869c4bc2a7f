"""Service wiring: builds every component from a PilotConfig."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Optional, Sequence

import httpx

from signup_pilot.audit import AuditLog, JsonlAuditLog
from signup_pilot.browser import (
    ApprovalVerifier,
    BrowserProvider,
    HttpBrowserProvider,
    SessionLifecycleManager,
)
from signup_pilot.compliance import ComplianceGate, RateLimiter, RobotsFetcher, Verdict, get_classifier
from signup_pilot.config.settings import (
    PilotConfig,
    get_env_api_key,
    get_env_approval_secret,
    get_env_browser_api_key,
    get_env_payment_api_key,
    get_env_webhook_url,
)
from signup_pilot.errors import CheckpointError
from signup_pilot.providers import (
    AdapterDeps,
    ChildProfile,
    CredentialStore,
    HttpPaymentGateway,
    PaymentGateway,
    ProviderContext,
    ProviderIntent,
    StaticCredentialStore,
    detect_platform,
    load_adapter,
    load_credentials_file,
)
from signup_pilot.utils.atomic import AtomicWriteError, atomic_write_json, read_json
from signup_pilot.utils.logging import get_logger
from signup_pilot.workflow import (
    FileCheckpointStore,
    HumanNotifier,
    ProviderBarrierExecutor,
    WorkflowOrchestrator,
    WorkflowState,
    create_notifier,
)

logger = get_logger("app")

DEFAULT_STATE_DIR = Path("./state")


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class AttemptSpec:
    """What a registration attempt is for; persisted so later commands can resume it."""

    attempt_id: str
    url: str
    user_id: str
    child: ChildProfile = field(default_factory=ChildProfile)
    intent: ProviderIntent = field(default_factory=ProviderIntent)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "attempt_id": self.attempt_id,
            "url": self.url,
            "user_id": self.user_id,
            "child": {
                "name": self.child.name,
                "dob": self.child.dob.isoformat() if self.child.dob else None,
                "grade": self.child.grade,
                "emergency_contacts": self.child.emergency_contacts,
            },
            "intent": {
                "title_contains": self.intent.title_contains,
                "week_of": self.intent.week_of.isoformat() if self.intent.week_of else None,
                "time_text": self.intent.time_text,
                "alt_titles": self.intent.alt_titles,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptSpec:
        """Create from dictionary."""
        child = data.get("child") or {}
        intent = data.get("intent") or {}
        return cls(
            attempt_id=data["attempt_id"],
            url=data["url"],
            user_id=data["user_id"],
            child=ChildProfile(
                name=child.get("name", ""),
                dob=_parse_date(child.get("dob")),
                grade=child.get("grade"),
                emergency_contacts=list(child.get("emergency_contacts") or []),
            ),
            intent=ProviderIntent(
                title_contains=intent.get("title_contains"),
                week_of=_parse_date(intent.get("week_of")),
                time_text=intent.get("time_text"),
                alt_titles=list(intent.get("alt_titles") or []),
            ),
        )


class PilotApp:
    """
    Owns every long-lived component of a registration run.

    Components are built from configuration and environment secrets; tests
    and embedders may pass their own browser provider, notifier, audit log
    or HTTP client instead.
    """

    def __init__(
        self,
        config: PilotConfig,
        provider: Optional[BrowserProvider] = None,
        notifier: Optional[HumanNotifier] = None,
        audit: Optional[AuditLog] = None,
        credentials: Optional[CredentialStore] = None,
        payments: Optional[PaymentGateway] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the application.

        Args:
            config: Loaded configuration
            provider: Browser automation provider (HTTP client from config if omitted)
            notifier: Human intervention notifier (webhook or log if omitted)
            audit: Audit log (JSONL file under the state directory if omitted)
            credentials: Credential store (credentials file if omitted)
            payments: Payment gateway (HTTP gateway if configured)
            http_client: Shared HTTP client for robots.txt and terms pages
        """
        config = config.with_state_dir(config.state_dir or DEFAULT_STATE_DIR)
        self.config = config
        self.state_dir = Path(config.state_dir)

        self.http = http_client or httpx.AsyncClient(
            timeout=config.compliance.robots_timeout_seconds,
            follow_redirects=True,
        )
        self.audit = audit or JsonlAuditLog(self.state_dir / "audit.jsonl")

        classifier_kwargs: dict[str, Any] = {}
        if config.compliance.classifier == "anthropic":
            classifier_kwargs = {
                "api_key": get_env_api_key(),
                "model": config.compliance.classifier_model,
                "user_agent": config.compliance.user_agent,
                "http_client": self.http,
            }
        self.gate = ComplianceGate(
            config=config.compliance,
            fetcher=RobotsFetcher(
                config.compliance.user_agent,
                timeout=config.compliance.robots_timeout_seconds,
                client=self.http,
            ),
            classifier=get_classifier(config.compliance.classifier, **classifier_kwargs),
            audit=self.audit,
        )
        self.rate_limiter = RateLimiter(config.rate_limit)

        secret = get_env_approval_secret()
        self.approvals = (
            ApprovalVerifier(secret, ttl_seconds=config.sessions.approval_ttl_seconds)
            if secret else None
        )

        self.provider = provider or HttpBrowserProvider(
            api_url=config.browser.api_url,
            api_key=get_env_browser_api_key() or "",
            project_id=config.browser.project_id,
            timeout=config.sessions.action_timeout_seconds,
        )
        self.lifecycle = SessionLifecycleManager(
            provider=self.provider,
            gate=self.gate,
            rate_limiter=self.rate_limiter,
            config=config.sessions,
            approvals=self.approvals,
            audit=self.audit,
        )

        self.credentials = credentials or self._load_credentials()
        self.payments = payments or self._build_payments()

        self.executor = ProviderBarrierExecutor(self.lifecycle)
        self.orchestrator = WorkflowOrchestrator(
            store=FileCheckpointStore(config.workflow.checkpoint_dir),
            executor=self.executor,
            notifier=notifier or create_notifier(get_env_webhook_url()),
            config=config.workflow,
            audit=self.audit,
        )

    def _load_credentials(self) -> CredentialStore:
        path = self.config.credentials_file
        if path is None or not Path(path).exists():
            logger.warning("credentials_file_missing", path=str(path) if path else None)
            return StaticCredentialStore()
        return load_credentials_file(Path(path))

    def _build_payments(self) -> Optional[PaymentGateway]:
        if not self.config.payments.api_url:
            logger.debug("payments_not_configured")
            return None
        return HttpPaymentGateway(
            api_url=self.config.payments.api_url,
            api_key=get_env_payment_api_key() or "",
            service_fee_cents=self.config.payments.service_fee_cents,
        )

    # -- attempt specs -------------------------------------------------------

    def _spec_path(self, attempt_id: str) -> Path:
        return self.state_dir / "attempts" / f"{attempt_id}.json"

    def save_spec(self, spec: AttemptSpec) -> None:
        try:
            atomic_write_json(self._spec_path(spec.attempt_id), spec.to_dict())
        except AtomicWriteError as e:
            raise CheckpointError(spec.attempt_id, str(e)) from e

    def load_spec(self, attempt_id: str) -> Optional[AttemptSpec]:
        data = read_json(self._spec_path(attempt_id))
        return AttemptSpec.from_dict(data) if data else None

    def _bind(self, spec: AttemptSpec, approve: Sequence[str] = ()) -> None:
        platform = detect_platform(spec.url)
        if platform is None:
            raise ValueError(f"Platform not recognized for URL: {spec.url}")

        adapter = load_adapter(platform, AdapterDeps(
            lifecycle=self.lifecycle,
            credentials=self.credentials,
            payments=self.payments,
        ))
        approval = None
        if approve:
            if self.approvals is None:
                raise ValueError("Approvals need SIGNUP_PILOT_APPROVAL_SECRET to be set")
            approval = self.approvals.issue(spec.attempt_id, approve)

        ctx = ProviderContext(
            attempt_id=spec.attempt_id,
            user_id=spec.user_id,
            canonical_url=spec.url,
            child=spec.child,
            approval=approval,
        )
        self.executor.bind(ctx, adapter, spec.intent)

    def _bind_saved(self, attempt_id: str, approve: Sequence[str]) -> None:
        spec = self.load_spec(attempt_id)
        if spec is None:
            raise KeyError(f"Unknown attempt: {attempt_id}")
        self._bind(spec, approve)

    # -- operations ----------------------------------------------------------

    async def check_url(self, url: str, provider_id: Optional[str] = None) -> Verdict:
        return await self.gate.evaluate(url, provider_id)

    async def run_attempt(self, spec: AttemptSpec, approve: Sequence[str] = ()) -> WorkflowState:
        """Persist the attempt spec and start the workflow."""
        self._bind(spec, approve)
        self.save_spec(spec)
        self.lifecycle.start()
        return await self.orchestrator.start(spec.attempt_id)

    async def resume_attempt(self, attempt_id: str, stage_id: str, approve: Sequence[str] = ()) -> WorkflowState:
        self._bind_saved(attempt_id, approve)
        self.lifecycle.start()
        return await self.orchestrator.resume(attempt_id, stage_id)

    async def recover_attempt(self, attempt_id: str, approve: Sequence[str] = ()) -> WorkflowState:
        self._bind_saved(attempt_id, approve)
        self.lifecycle.start()
        return await self.orchestrator.recover(attempt_id)

    async def attempt_status(self, attempt_id: str) -> Optional[WorkflowState]:
        return await self.orchestrator.status(attempt_id)

    async def aclose(self) -> None:
        """Close every open session and release HTTP clients."""
        await self.lifecycle.shutdown()
        await self.provider.aclose()
        if self.payments is not None:
            await self.payments.aclose()
        await self.http.aclose()
