"""
Provider-agnostic record shapes and adapter interfaces.

Provider adapters (Gong, Zoom, Salesforce, HubSpot, ...) translate their
own payloads into these normalized records. The sync engine only ever sees
this shape.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class OpportunityStatus(str, Enum):
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"


@dataclass
class NormalizedParticipant:
    email: Optional[str] = None
    name: Optional[str] = None
    is_host: bool = False


@dataclass
class NormalizedCall:
    external_id: str
    title: Optional[str] = None
    recording_url: Optional[str] = None
    duration: Optional[int] = None  # seconds
    occurred_at: Optional[str] = None  # ISO-8601
    participants: list[NormalizedParticipant] = field(default_factory=list)
    transcript: Optional[str] = None


@dataclass
class NormalizedAccount:
    external_id: str
    name: str
    domain: Optional[str] = None
    industry: Optional[str] = None
    employee_count: Optional[int] = None
    annual_revenue: Optional[float] = None


@dataclass
class NormalizedContact:
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None
    account_external_id: Optional[str] = None


@dataclass
class NormalizedOpportunity:
    external_id: str
    account_external_id: str
    name: Optional[str] = None
    amount: Optional[float] = None
    stage: Optional[str] = None
    status: OpportunityStatus = OpportunityStatus.OPEN
    close_date: Optional[str] = None


@dataclass
class ProviderPage(Generic[T]):
    """One page of provider results."""
    data: list[T]
    next_cursor: Optional[str] = None
    has_more: bool = False


class CallRecordingProvider:
    """Interface for call-recording adapters."""

    name: str = ""

    def fetch_calls(
        self,
        credentials: dict[str, Any],
        cursor: Optional[str],
        since: Optional[str],
    ) -> ProviderPage[NormalizedCall]:
        raise NotImplementedError

    def fetch_transcript(self, credentials: dict[str, Any], external_id: str) -> Optional[str]:
        raise NotImplementedError

    def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        raise NotImplementedError


class CrmProvider:
    """Interface for CRM adapters."""

    name: str = ""

    def fetch_accounts(
        self,
        credentials: dict[str, Any],
        cursor: Optional[str],
        since: Optional[str],
    ) -> ProviderPage[NormalizedAccount]:
        raise NotImplementedError

    def fetch_contacts(
        self,
        credentials: dict[str, Any],
        cursor: Optional[str],
        since: Optional[str],
    ) -> ProviderPage[NormalizedContact]:
        raise NotImplementedError

    def fetch_opportunities(
        self,
        credentials: dict[str, Any],
        cursor: Optional[str],
        since: Optional[str],
    ) -> ProviderPage[NormalizedOpportunity]:
        raise NotImplementedError

    def validate_credentials(self, credentials: dict[str, Any]) -> bool:
        raise NotImplementedError
