from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Tables are created by the SQL migrations under persistence/sql; these mappings only describe them.


class EpochSeconds(TypeDecorator):
    """Store aware datetimes as integer epoch seconds (SQLite has no timestamp type)."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> int | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return int(value.timestamp())
        return int(value)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return datetime.fromtimestamp(int(value), tz=timezone.utc)


Timestamp = DateTime(timezone=True).with_variant(EpochSeconds(), "sqlite")
UuidString = String().with_variant(postgresql.UUID(as_uuid=False), "postgresql")
JsonDocument = JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")
Flag = Boolean(create_constraint=False)


class Base(DeclarativeBase):
    pass


class MetaSchemaVersion(Base):
    __tablename__ = "_meta_schema_version"

    major: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    minor: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    patch: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    applied: Mapped[datetime] = mapped_column(Timestamp)


class Almanac(Base):
    __tablename__ = "almanac"

    # One row per maintenance event, holding when it last ran.
    event: Mapped[str] = mapped_column(Text, primary_key=True)
    date: Mapped[datetime] = mapped_column(Timestamp)


class Authentication(Base):
    __tablename__ = "authentication"

    identifier_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    created: Mapped[datetime] = mapped_column(Timestamp)
    last_authentication: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)
    identifier: Mapped[str] = mapped_column(Text, unique=True)
    # Opaque credential material; hashing policy belongs to the caller.
    credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    otp_key: Mapped[str | None] = mapped_column(Text, nullable=True)


class Resource(Base):
    __tablename__ = "resource"

    resource_id: Mapped[str] = mapped_column(UuidString, primary_key=True)
    description: Mapped[str] = mapped_column(Text)
    created: Mapped[datetime] = mapped_column(Timestamp)
    secret: Mapped[str] = mapped_column(Text)


class Profile(Base):
    __tablename__ = "profile"

    profile_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    identifier_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("authentication.identifier_id"))
    profile: Mapped[str] = mapped_column(Text)


class Scope(Base):
    __tablename__ = "scope"

    scope_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    scope: Mapped[str] = mapped_column(Text, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    application: Mapped[str] = mapped_column(Text, default="")
    # Seeded scopes; never deleted.
    is_permanent: Mapped[bool] = mapped_column(Flag, default=False)
    # Operator-created scopes; survive cleanup but may be deleted explicitly.
    is_manually_added: Mapped[bool] = mapped_column(Flag, default=False)


class ProfileScope(Base):
    __tablename__ = "profile_scope"

    profile_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profile.profile_id"), primary_key=True)
    scope_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("scope.scope_id"), primary_key=True)


class Token(Base):
    __tablename__ = "token"

    code_id: Mapped[str] = mapped_column(UuidString, primary_key=True)
    profile_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profile.profile_id"))
    created: Mapped[datetime] = mapped_column(Timestamp)
    expires: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)
    refresh_expires: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)
    refreshed: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)
    # Lifespans in seconds; null duration never expires, null refresh_duration is not refreshable.
    duration: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refresh_duration: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refresh_count: Mapped[int] = mapped_column(BigInteger, default=0)
    is_revoked: Mapped[bool] = mapped_column(Flag, default=False)
    # False for profile-only redemptions, kept to block re-redemption while the code is valid.
    is_token: Mapped[bool] = mapped_column(Flag)
    client_id: Mapped[str] = mapped_column(Text)
    resource: Mapped[str | None] = mapped_column(Text, nullable=True)
    profile_data: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)


class TokenScope(Base):
    __tablename__ = "token_scope"

    code_id: Mapped[str] = mapped_column(UuidString, ForeignKey("token.code_id"), primary_key=True)
    scope_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("scope.scope_id"), primary_key=True)


class RedeemedTicket(Base):
    __tablename__ = "redeemed_ticket"

    ticket_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    created: Mapped[datetime] = mapped_column(Timestamp)
    subject: Mapped[str] = mapped_column(Text)
    resource: Mapped[str] = mapped_column(Text)
    iss: Mapped[str | None] = mapped_column(Text, nullable=True)
    token: Mapped[str] = mapped_column(Text)
    ticket: Mapped[str] = mapped_column(Text)
    # Null until handed off downstream.
    published: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)


# Tables holding data, in an order safe for deletion.
DATA_TABLES = (
    "almanac",
    "token_scope",
    "token",
    "profile_scope",
    "profile",
    "authentication",
    "redeemed_ticket",
    "resource",
)
