# models.py - Database models for Launchpad
# - String UUID primary keys everywhere
# - Soft deletes on every tenant-owned entity (deleted_at)
# - Append-only activity log used as the only state-transition history
# - One response row per block (insert-or-update keyed by block_id)

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ORG_ADMIN = "org_admin"
    MEMBER = "member"


class SpaceStatus(str, PyEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MemberRole(str, PyEnum):
    STAKEHOLDER = "stakeholder"


class EngagementLevel(str, PyEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class BlockType(str, PyEnum):
    TASK = "task"
    ACTION_PLAN = "action_plan"
    FORM = "form"
    FILE_UPLOAD = "file_upload"
    FILE_DOWNLOAD = "file_download"
    CHECKLIST = "checklist"
    TEXT = "text"
    CONTACT = "contact"
    EMBED = "embed"
    DIVIDER = "divider"
    NEXT_TASK = "next_task"
    ACTION_PLAN_PROGRESS = "action_plan_progress"


class ActivityAction(str, PyEnum):
    TASK_COMPLETED = "task.completed"
    TASK_REOPENED = "task.reopened"
    FORM_SUBMITTED = "form.submitted"
    FORM_ANSWERED = "form.answered"
    CHECKLIST_UPDATED = "checklist.updated"
    FILE_UPLOADED = "file.uploaded"
    FILE_DELETED = "file.deleted"
    FILE_DOWNLOADED = "file.downloaded"
    PAGE_VIEWED = "page.viewed"
    PORTAL_FIRST_VISIT = "portal.first_visit"
    PORTAL_VISIT = "portal.visit"
    PROJECT_STATUS_CHANGED = "project.status_changed"
    STAKEHOLDER_INVITED = "stakeholder.invited"
    STAKEHOLDER_REMOVED = "stakeholder.removed"


# ============================================================
# ORGANISATIONS
# ============================================================

class Organisation(Base):
    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    # slack_webhook_url / teams_webhook_url live here
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    users = relationship("User", back_populates="organisation")
    spaces = relationship("Space", back_populates="organisation")


# ============================================================
# STAFF USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.MEMBER, nullable=False, index=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    organisation = relationship("Organisation", back_populates="users")
    memberships = relationship("OrganisationMember", back_populates="user")


class OrganisationMember(Base):
    """Proves a staff account belongs to an organisation."""
    __tablename__ = "organisation_members"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    role = Column(SQLEnum(UserRole), default=UserRole.MEMBER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "organisation_id", name="uq_org_member"),
    )


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# SPACES
# ============================================================

class Space(Base):
    __tablename__ = "spaces"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    client_name = Column(String, nullable=False, default="")
    status = Column(SQLEnum(SpaceStatus), default=SpaceStatus.DRAFT, nullable=False, index=True)
    target_go_live_date = Column(Date, nullable=True)
    # Written by the external engagement scoring job, read-only here
    engagement_score = Column(Integer, nullable=True)
    engagement_level = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    organisation = relationship("Organisation", back_populates="spaces")
    pages = relationship("Page", back_populates="space")
    members = relationship("SpaceMember", back_populates="space")

    __table_args__ = (
        Index("idx_space_org_status", "organisation_id", "status"),
    )


class SpaceMember(Base):
    """An externally invited stakeholder of one space."""
    __tablename__ = "space_members"

    id = Column(String, primary_key=True, default=new_uuid)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    invited_email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.STAKEHOLDER, nullable=False)
    invited_by = Column(String, ForeignKey("users.id"), nullable=True)
    invited_at = Column(DateTime(timezone=True), default=utcnow)
    joined_at = Column(DateTime(timezone=True), nullable=True)

    space = relationship("Space", back_populates="members")

    __table_args__ = (
        UniqueConstraint("space_id", "invited_email", name="uq_space_member_email"),
    )


class PortalAccessToken(Base):
    """One-time magic link token exchanged for a portal session cookie."""
    __tablename__ = "portal_access_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    email = Column(String, nullable=False)
    token = Column(String, unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# PAGES & BLOCKS
# ============================================================

class Page(Base):
    __tablename__ = "pages"

    id = Column(String, primary_key=True, default=new_uuid)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    space = relationship("Space", back_populates="pages")
    blocks = relationship("Block", back_populates="page")

    __table_args__ = (
        UniqueConstraint("space_id", "slug", name="uq_page_space_slug"),
    )


class Block(Base):
    __tablename__ = "blocks"

    id = Column(String, primary_key=True, default=new_uuid)
    page_id = Column(String, ForeignKey("pages.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)  # BlockType value, unknown types allowed
    content = Column(JSON, nullable=False, default=dict)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    page = relationship("Page", back_populates="blocks")


class Response(Base):
    __tablename__ = "responses"

    id = Column(String, primary_key=True, default=new_uuid)
    block_id = Column(String, ForeignKey("blocks.id"), nullable=False, unique=True, index=True)
    value = Column(JSON, nullable=False, default=dict)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    customer_email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class FileRecord(Base):
    __tablename__ = "files"

    id = Column(String, primary_key=True, default=new_uuid)
    block_id = Column(String, ForeignKey("blocks.id"), nullable=False, index=True)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    file_size_bytes = Column(BigInteger, default=0)
    storage_path = Column(Text, nullable=False)
    uploaded_by = Column(String, nullable=True)  # actor email
    created_at = Column(DateTime(timezone=True), default=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


# ============================================================
# ACTIVITY LOG (Append-only - never update or delete)
# ============================================================

class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(String, primary_key=True, default=new_uuid)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    actor_email = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    extra_data = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_activity_space_created", "space_id", "created_at"),
        Index("idx_activity_space_actor_action", "space_id", "actor_email", "action"),
    )
