"""
Metered Gateway

The gateway's logical operations, independent of transport. The HTTP layer
and the CLI are thin adapters over this class.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
import hmac
import json
import re
import time
import uuid
import structlog

from .billing.ledger import CreditLedger
from .billing.metering import UsageMeter, estimate_tokens
from .config import GatewayConfig
from .errors import AllProvidersFailed, InvalidRequest, PayloadTooLarge, Unauthorized
from .jobs.handlers import HandlerContext, get_handler, registered_types
from .jobs.processor import JobProcessor, ProcessResult
from .jobs.scheduler import EagerTrigger, Sweeper
from .jobs.store import JobStore
from .persistence.database import Database, get_database
from .persistence.models import JobRecord, UsageEventRecord
from .persistence.repository import UserRepository, UsageRepository, normalize_email
from .providers.base import Completion
from .providers.router import (
    DEGRADED_MODEL,
    DEGRADED_PROVIDER,
    ProviderRouter,
    degraded_text,
)
from .skills import get_skill, list_skills, system_prompt_for
from .storage.object_store import MemoryObjectStore, ObjectStore

logger = structlog.get_logger()

SKILL_ROUTE = "/skills/ask"
USAGE_LIMIT_DEFAULT = 50
USAGE_LIMIT_MAX = 100
UPLOAD_JOB_TYPE = "sketch_to_app"
UPLOAD_EXT_MAX = 10


@dataclass
class SkillResult:
    """Answer to a billed skill call."""
    skill: str
    kind: str
    text: str
    tokens_in: int
    tokens_out: int
    cost: Decimal
    balance: Decimal
    provider: str
    model: str
    request_id: str
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "result": {"kind": self.kind, "content": self.text},
            "usage": {"tokens_in": self.tokens_in, "tokens_out": self.tokens_out},
            "cost": float(self.cost),
            "balance": float(self.balance),
            "provider": self.provider,
            "model": self.model,
            "request_id": self.request_id,
            "degraded": self.degraded,
        }


@dataclass
class Download:
    content: bytes
    content_type: str
    filename: str


@dataclass
class UploadResult:
    """A stored upload and the job queued to process it."""
    key: str
    size: int
    job: JobRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "key": self.key,
            "size": self.size,
            "job_id": self.job.id,
            "status": self.job.status,
        }


@dataclass
class BalanceView:
    email: str
    balance: Decimal
    warn_credits: Decimal

    @property
    def low(self) -> bool:
        return self.balance < self.warn_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "balance": float(self.balance),
            "warn_credits": float(self.warn_credits),
            "low": self.low,
        }


def upload_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    """File extension for an upload key: filename suffix, else content subtype, else bin."""
    name = (filename or "").rsplit("/", 1)[-1]
    ext = name.rsplit(".", 1)[-1] if "." in name else ""
    if not ext and content_type and "/" in content_type:
        ext = content_type.split(";", 1)[0].split("/", 1)[1]
    ext = re.sub(r"[^a-z0-9]", "", ext.lower())[:UPLOAD_EXT_MAX]
    return ext or "bin"


def credential_matches(given: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset or empty secret never matches."""
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


class MeteredGateway:
    """
    Wires ledger, meter, router and job queue together.

    Usage:
        gateway = MeteredGateway(GatewayConfig.from_env())
        result = await gateway.run_billed_skill("a@x.io", "summarize", text)
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        db: Optional[Database] = None,
        router: Optional[ProviderRouter] = None,
        object_store: Optional[ObjectStore] = None,
    ):
        self.config = config or GatewayConfig.from_env()
        self.db = db or get_database(self.config.database_url)
        self.users = UserRepository(self.db)
        self.usage = UsageRepository(self.db)
        self.ledger = CreditLedger(self.db)
        self.meter = UsageMeter(self.db, self.ledger, self.config)
        self.router = router or ProviderRouter(self.config)
        self.object_store = object_store if object_store is not None else MemoryObjectStore()
        self.jobs = JobStore(self.db)
        self.processor = JobProcessor(
            self.jobs,
            self.object_store,
            HandlerContext(router=self.router),
        )
        self.trigger = EagerTrigger(self.processor)
        self.sweeper = Sweeper(self.processor, self.config.sweep_batch_size)

    # =========================================================================
    # Text generation
    # =========================================================================

    async def complete_text(
        self,
        provider: Optional[str],
        model: Optional[str],
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        """Unbilled completion through the fallback chain."""
        return await self.router.complete(provider, model, prompt, system_prompt, max_tokens, temperature)

    async def run_billed_skill(
        self,
        email: Optional[str],
        skill: str,
        input_text: str,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        route: str = SKILL_ROUTE,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> SkillResult:
        """Answer an inline skill and charge the caller for it."""
        definition = get_skill(skill)
        if definition.queued:
            raise InvalidRequest(f"Skill {definition.key} runs as a job", code="queued_skill")
        input_text = (input_text or "").strip()
        if not input_text:
            raise InvalidRequest("Input is required", code="missing_input")

        request_id = request_id or uuid.uuid4().hex
        user = self.users.ensure_user(email)
        self.meter.ensure_can_spend(user.id)

        degraded = False
        try:
            completion = await self.router.complete(
                provider,
                model,
                input_text,
                system_prompt_for(definition, params),
                max_tokens if max_tokens is not None else definition.max_tokens,
                temperature,
            )
        except AllProvidersFailed as e:
            logger.warning("skill_degraded", skill=definition.key, request_id=request_id, attempts=e.extra()["attempts"])
            degraded = True
            completion = Completion(degraded_text(input_text), DEGRADED_PROVIDER, DEGRADED_MODEL)

        tokens_in = completion.tokens_in if completion.tokens_in is not None else estimate_tokens(input_text)
        tokens_out = completion.tokens_out if completion.tokens_out is not None else estimate_tokens(completion.text)

        charge = self.meter.charge_and_record(
            user.id,
            route,
            completion.provider,
            completion.model,
            tokens_in,
            tokens_out,
            request_id,
            metadata={"skill": definition.key, "degraded": degraded},
        )
        return SkillResult(
            skill=definition.key,
            kind=definition.kind,
            text=completion.text,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=charge.cost,
            balance=charge.new_balance,
            provider=completion.provider,
            model=completion.model,
            request_id=request_id,
            degraded=degraded,
        )

    def list_skills(self) -> List[Dict[str, Any]]:
        return list_skills()

    # =========================================================================
    # Jobs
    # =========================================================================

    def enqueue_job(self, email: Optional[str], job_type: str, payload: Optional[Dict[str, Any]] = None) -> JobRecord:
        """Queue a job; the caller decides whether to fire the eager trigger."""
        email = normalize_email(email)
        if get_handler(job_type) is None:
            raise InvalidRequest(
                f"Unknown job type: {job_type}",
                detail="known types: " + ", ".join(registered_types()),
                code="unknown_job_type",
            )
        return self.jobs.enqueue(email, job_type, payload or {})

    def enqueue_skill_job(
        self,
        email: Optional[str],
        skill: str,
        input_text: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        """Queue a queued-type skill after the same credit floor check as inline skills."""
        definition = get_skill(skill)
        if not definition.queued:
            raise InvalidRequest(f"Skill {definition.key} is answered inline", code="inline_skill")
        user = self.users.ensure_user(email)
        self.meter.ensure_can_spend(user.id)
        payload = {
            "email": user.email,
            "spec": (input_text or "").strip() or str((params or {}).get("spec") or ""),
            "extras": params or {},
        }
        return self.jobs.enqueue(user.email, definition.key, payload)

    def upload_and_enqueue(
        self,
        email: Optional[str],
        filename: Optional[str],
        data: bytes,
        content_type: Optional[str] = None,
        prompt: str = "",
    ) -> UploadResult:
        """Store an uploaded sketch and queue the job that turns it into an app."""
        email = normalize_email(email)
        limit = self.config.max_upload_bytes
        if len(data) > limit:
            raise PayloadTooLarge(limit)

        content_type = content_type or "application/octet-stream"
        key = f"uploads/{int(time.time() * 1000)}_{uuid.uuid4().hex[:10]}.{upload_extension(filename, content_type)}"
        self.object_store.put(key, data, content_type, {"owner": email, "filename": filename or ""})

        job = self.jobs.enqueue(email, UPLOAD_JOB_TYPE, {
            "email": email,
            "r2_key": key,
            "prompt": (prompt or "").strip(),
        })
        logger.info("upload_enqueued", key=key, size=len(data), job_id=job.id)
        return UploadResult(key=key, size=len(data), job=job)

    def get_job(self, job_id: str) -> JobRecord:
        return self.jobs.get_by_id(job_id)

    def download_job_result(self, job_id: str) -> Download:
        """The stored artifact if there is one, else the inline result as text."""
        job = self.jobs.get_by_id(job_id)

        if job.result_ref:
            stored = self.object_store.get(job.result_ref)
            if stored is not None:
                return Download(stored.data, stored.content_type, stored.filename)
            logger.warning("artifact_missing", job_id=job_id, key=job.result_ref)

        if isinstance(job.result_payload, str):
            text = job.result_payload
        else:
            text = json.dumps(job.result_payload if job.result_payload is not None else {}, indent=2)
        return Download(text.encode("utf-8"), "text/plain; charset=utf-8", f"{job.id}.txt")

    async def process_one_queued_job(
        self,
        admin_key: Optional[str] = None,
        task_key: Optional[str] = None,
    ) -> ProcessResult:
        """Process one job; requires the operator key or the internal task secret."""
        if not (
            credential_matches(admin_key, self.config.admin_key)
            or credential_matches(task_key, self.config.admin_task_secret)
        ):
            logger.warning("process_one_forbidden")
            raise Unauthorized("forbidden")
        return await self.processor.process_one()

    # =========================================================================
    # Status
    # =========================================================================

    def readiness(self) -> Dict[str, Any]:
        """Provider and model a default request would use first."""
        provider, model = self.router.primary()
        return {
            "ok": True,
            "provider": provider,
            "model": model,
            "configured": self.router.configured(),
        }

    # =========================================================================
    # Billing
    # =========================================================================

    def get_balance(self, email: Optional[str]) -> BalanceView:
        user = self.users.ensure_user(email)
        return BalanceView(
            email=user.email,
            balance=self.ledger.get_balance(user.id),
            warn_credits=self.config.warn_credits,
        )

    def list_usage(self, email: Optional[str], limit: Optional[int] = USAGE_LIMIT_DEFAULT) -> List[UsageEventRecord]:
        """Most recent usage events, newest first."""
        user = self.users.ensure_user(email)
        limit = max(1, min(int(limit or USAGE_LIMIT_DEFAULT), USAGE_LIMIT_MAX))
        return self.usage.list_recent(user.id, limit)

    def top_up(
        self,
        email: Optional[str],
        amount: Decimal,
        reason: str = "manual-topup",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BalanceView:
        user = self.users.ensure_user(email)
        self.ledger.top_up(user.id, Decimal(amount), reason or "manual-topup", metadata)
        return self.get_balance(user.email)
