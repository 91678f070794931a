"""Data model for mining jobs, mined leads and the audit layer.

Records are pydantic models so they round-trip through the key-value
store as plain JSON (``model_dump(mode="json")`` / ``model_validate``).
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


logger = logging.getLogger(__name__)


JOB_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def normalize_cnpj(value: Any) -> str:
    """Return the digits of a CNPJ, the natural key used for dedup.

    ``"12.345.678/0001-90"`` and ``"12345678000190"`` normalize to the
    same key. Anything without digits normalizes to ``""``.
    """

    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


class MiningEnv(str, Enum):
    PRODUCTION = "PRODUCTION"
    STAGING = "STAGING"


class JobStatus(str, Enum):
    RUNNING = "Running"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})


class JobAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class CompanySize(str, Enum):
    ME = "Microempresa (ME)"
    EPP = "Pequeno Porte (EPP)"
    MEDIUM = "Média Empresa"
    LARGE = "Grande Empresa"


class JobFilters(BaseModel):
    """Search filters a job sends to the discovery provider on every page."""

    segment: str
    state: str = ""
    city: str = ""
    size: Union[CompanySize, str] = "all"
    tax_regime: str = ""
    fiscal_filter: str = "Indiferente"


class JobParams(BaseModel):
    """Parameters accepted by ``create_job``.

    Validation happens here, before any job is written.
    """

    segment_name: str = Field(..., min_length=1)
    state: str = ""
    city: str = ""
    size: Union[CompanySize, str] = "all"
    tax_regime: str = ""
    target_count: int = Field(100, gt=0)
    fiscal_filter: str = "Indiferente"
    auto_create_segment: bool = True
    enrich: bool = True

    @field_validator("segment_name")
    @classmethod
    def _segment_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("segment_name must not be blank")
        return value

    @field_validator("size", mode="before")
    @classmethod
    def _known_size(cls, value: Any) -> Any:
        if value in (None, ""):
            return "all"
        if isinstance(value, CompanySize) or value == "all":
            return value
        return CompanySize(value)


class MiningJob(BaseModel):
    """One discovery campaign and its progress counters."""

    id: str = Field(default_factory=lambda: new_id("job"))
    name: str
    status: JobStatus = JobStatus.RUNNING
    version: int = JOB_SCHEMA_VERSION
    config_payload: Dict[str, Any] = Field(default_factory=dict)
    filters: JobFilters
    target_count: int
    found_count: int = 0
    pages_fetched: int = 0
    errors: int = 0
    empty_pages: int = 0
    auto_create_segment: bool = True
    enrich: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_notification_milestone: int = 0

    @property
    def next_page(self) -> int:
        return self.pages_fetched + 1

    @property
    def target_reached(self) -> bool:
        return self.found_count >= self.target_count

    def touch(self) -> None:
        self.updated_at = utcnow()


class CandidateCompany(BaseModel):
    """A company record as returned by the discovery provider.

    Providers answer in camelCase (``cnpjRaw``, ``decisionMakerName``);
    both spellings are accepted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str = ""
    trade_name: Optional[str] = None
    cnpj: Optional[str] = None
    cnpj_raw: Optional[str] = None
    segment: str = ""
    city: str = ""
    state: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    email_company: Optional[str] = None
    website: Optional[str] = None
    partners: Optional[List[str]] = None
    decision_maker_name: Optional[str] = None
    decision_maker_phone_formatted: Optional[str] = None
    icp_score: Optional[int] = None
    debt_status: Optional[str] = None
    estimated_revenue: Optional[str] = None

    @field_validator("partners", mode="before")
    @classmethod
    def _partners_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value] if value.strip() else None
        return value

    @field_validator("icp_score", mode="before")
    @classmethod
    def _score_range(cls, value: Any) -> Optional[int]:
        if value in (None, ""):
            return None
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError):
            return None
        return max(1, min(5, score))

    @property
    def natural_key(self) -> str:
        return normalize_cnpj(self.cnpj_raw or self.cnpj)


class ProvenanceSource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uri: Optional[str] = None
    title: Optional[str] = None


class DiscoveryRequest(BaseModel):
    segment: str
    city: str = ""
    state: str = ""
    size: Optional[str] = None
    tax_regime: Optional[str] = None
    page: int = Field(1, ge=1)


class DiscoveryResult(BaseModel):
    companies: List[CandidateCompany] = Field(default_factory=list)
    sources: List[ProvenanceSource] = Field(default_factory=list)


class MiningLead(BaseModel):
    """A company mined by a job, keyed naturally by ``cnpj_raw``."""

    id: str = Field(default_factory=lambda: new_id("mlead"))
    job_id: str
    cnpj_raw: str
    cnpj: Optional[str] = None
    name: str = ""
    trade_name: str
    segment: str = ""
    city: str = ""
    state: str = ""
    phone_company: str
    email_company: str
    partners: List[str]
    contact_name: str
    contact_phone: str
    contact_email: str
    score_ia: int
    debt_status: str
    debt_value_est: str
    website: str = ""
    sources: List[str]
    is_garimpo: bool = True
    is_imported: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("log"))
    action: str
    entity_id: str
    actor_id: str
    actor_name: str
    timestamp: datetime = Field(default_factory=utcnow)
    previous_state: Any = None
    new_state: Any = None


class Snapshot(BaseModel):
    id: str = Field(default_factory=lambda: new_id("snap"))
    timestamp: datetime = Field(default_factory=utcnow)
    env: MiningEnv
    data: Dict[str, List[Any]] = Field(default_factory=dict)


def parse_records(model, rows: List[Any]) -> list:
    """Validate stored rows into ``model``, skipping any that are malformed."""

    parsed = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s record: %s", model.__name__, exc)
    return parsed
