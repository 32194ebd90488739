from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AlmanacEvent(str, Enum):
    # Maintenance events whose last run is tracked in the almanac.
    TOKEN_CLEANUP = "tokenCleanup"
    SCOPE_CLEANUP = "scopeCleanup"
    TICKET_PUBLISHED = "ticketPublished"


@dataclass(frozen=True)
class ResourceRecord:
    resource_id: str
    secret: str
    description: str
    created: datetime


@dataclass(frozen=True)
class AuthenticationRecord:
    identifier: str
    credential: str | None
    otp_key: str | None
    created: datetime
    last_authentication: datetime | None


@dataclass
class ScopeDetails:
    # Shared between profile_scopes and scope_index, so profiles accumulates in place.
    scope: str
    description: str
    application: str
    is_permanent: bool
    is_manually_added: bool
    profiles: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProfilesScopes:
    profiles: list[str]
    profile_scopes: dict[str, dict[str, ScopeDetails]]
    scope_index: dict[str, ScopeDetails]


@dataclass(frozen=True)
class TokenRecord:
    code_id: str
    profile: str
    identifier: str
    client_id: str
    created: datetime
    expires: datetime | None
    refresh_expires: datetime | None
    refreshed: datetime | None
    duration: int | None
    refresh_duration: int | None
    refresh_count: int
    is_revoked: bool
    is_token: bool
    resource: str | None
    profile_data: dict[str, Any] | None
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RefreshResult:
    expires: datetime | None
    refresh_expires: datetime | None
    refresh_count: int
    # Only present when the refresh narrowed the scope set.
    scopes: list[str] | None = None


@dataclass(frozen=True)
class RedeemedTicketRecord:
    ticket_id: int
    created: datetime
    subject: str
    resource: str
    iss: str | None
    ticket: str
    token: str
    published: datetime | None

    def redeemed_data(self) -> dict[str, str | None]:
        # Fields that identify the redemption when marking it published.
        return {
            "subject": self.subject,
            "resource": self.resource,
            "iss": self.iss,
            "ticket": self.ticket,
            "token": self.token,
        }


@dataclass(frozen=True)
class AlmanacEntry:
    event: str
    date: datetime


@dataclass(frozen=True)
class CleanupResult:
    # Always truthy, so "ran but removed nothing" differs from a throttled None.
    event: str
    removed: int
    ran_at: datetime
