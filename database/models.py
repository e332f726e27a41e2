from sqlalchemy import Column, String, DateTime, JSON, Integer, Float, Boolean, Text, ForeignKey, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base
import uuid
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def get_uuid_column():
    return String(36)


class GHLConnection(Base):
    """OAuth credentials and sync state for one GoHighLevel location"""
    __tablename__ = "ghl_connections"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), nullable=False, unique=True, index=True)
    location_id = Column(String(64), nullable=False, index=True)
    company_id = Column(String(64))
    ghl_user_id = Column(String(64))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)
    scope = Column(Text)
    location_name = Column(String(255))
    location_email = Column(String(255))
    location_timezone = Column(String(64))
    form_type = Column(String(10), default="sie")  # du / sie
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # At most one active connection per location
    __table_args__ = (
        Index(
            "uq_ghl_connections_active_location",
            "location_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class ApprovedSubaccount(Base):
    """Whitelist of locations allowed to connect via OAuth"""
    __tablename__ = "approved_subaccounts"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    location_id = Column(String(64), unique=True, nullable=False)
    name = Column(String(255))
    is_active = Column(Boolean, default=True)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)


class Objekt(Base):
    """Property listing"""
    __tablename__ = "objekte"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), index=True)
    name = Column(String(255), nullable=False)
    city = Column(String(255), default="Unbekannt")
    price = Column(Float, default=0)
    rooms = Column(Float, default=0)
    area_sqm = Column(Float, default=0)
    status = Column(String(50), default="aktiv")
    ai_ready = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Lead(Base):
    """Local representation of a GHL contact"""
    __tablename__ = "leads"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), index=True)
    connection_id = Column(get_uuid_column(), ForeignKey("ghl_connections.id"))
    ghl_contact_id = Column(String(64), unique=True, nullable=False)
    ghl_location_id = Column(String(64), index=True)
    name = Column(String(255), default="Unbekannt")
    email = Column(String(255), index=True)
    phone = Column(String(64))
    status = Column(String(50), default="neu")
    source = Column(String(50), default="extern")
    notes = Column(Text)
    objekt_id = Column(get_uuid_column(), ForeignKey("objekte.id"), nullable=True)
    ghl_data = Column(JSON, default=dict)
    last_message_at = Column(DateTime)
    is_archived = Column(Boolean, default=False)
    auto_respond_enabled = Column(Boolean, default=False)

    # Conversation analysis
    quality_score = Column(Integer)
    conversation_status = Column(String(50))
    ai_improvement_suggestion = Column(Text)  # JSON analysis payload
    has_makler_termin = Column(Boolean, default=False)
    simpli_platziert = Column(Boolean, default=False)
    simpli_interessiert = Column(Boolean, default=False)
    last_analyzed_at = Column(DateTime)

    # Simpli Finance pipeline (high-water-mark flags, never reset)
    sf_pipeline_stage = Column(String(64))
    sf_contact_id = Column(String(64))
    sf_opportunity_id = Column(String(64))
    sf_reached_beratung = Column(Boolean, default=False)
    sf_reached_bestaetigung = Column(Boolean, default=False)
    sf_reached_warte_kredit = Column(Boolean, default=False)
    sf_reached_vertrag = Column(Boolean, default=False)
    sf_reached_auszahlung = Column(Boolean, default=False)
    sf_blockiert = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Message(Base):
    """One GHL conversation message"""
    __tablename__ = "messages"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    lead_id = Column(get_uuid_column(), ForeignKey("leads.id"), nullable=False, index=True)
    ghl_message_id = Column(String(64), unique=True, nullable=False)
    ghl_conversation_id = Column(String(64))
    type = Column(String(20), nullable=False)  # incoming / outgoing
    content = Column(Text, default="")
    status = Column(String(20), default="sent")  # pending, sent, delivered, read, failed
    error_message = Column(Text)
    is_template = Column(Boolean, default=False)
    is_ai_generated = Column(Boolean, default=False)
    sent_at = Column(DateTime, default=utcnow, index=True)
    created_at = Column(DateTime, default=utcnow)


class Todo(Base):
    """Task or calendar appointment"""
    __tablename__ = "todos"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), index=True)
    lead_id = Column(get_uuid_column(), ForeignKey("leads.id"), nullable=True)
    objekt_id = Column(get_uuid_column(), ForeignKey("objekte.id"), nullable=True)
    ghl_task_id = Column(String(64), unique=True)
    ghl_event_id = Column(String(64), unique=True)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    type = Column(String(50), default="nachricht")  # nachricht, anruf, besichtigung, finanzierung, dokument
    priority = Column(String(20), default="normal")  # normal, dringend
    completed = Column(Boolean, default=False)
    due_date = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class KIWissen(Base):
    """Knowledge entry the assistant can reuse when answering questions"""
    __tablename__ = "ki_wissen"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), index=True)
    objekt_id = Column(get_uuid_column(), ForeignKey("objekte.id"), nullable=True)
    lead_id = Column(get_uuid_column(), nullable=True)
    knowledge_type = Column(String(50), default="objekt_info")
    category = Column(String(100))
    question = Column(Text)
    answer = Column(Text, nullable=False)
    source = Column(String(50), default="learned")
    created_at = Column(DateTime, default=utcnow)


class AnalysisJob(Base):
    """Progress record for a chunked background job"""
    __tablename__ = "analysis_jobs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column(), nullable=True)
    kind = Column(String(50), nullable=False, default="lead_analysis")
    status = Column(String(20), nullable=False, default="running")  # running, completed, failed
    total_leads = Column(Integer, default=0)
    analyzed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    force_all = Column(Boolean, default=False)
    custom_prompt = Column(Text)
    version = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AnalysisJobItem(Base):
    """One unit of work inside an AnalysisJob, claimed before processing"""
    __tablename__ = "analysis_job_items"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    job_id = Column(get_uuid_column(), ForeignKey("analysis_jobs.id"), nullable=False, index=True)
    lead_id = Column(get_uuid_column(), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, claimed, analyzed, skipped, failed
    claim_token = Column(String(36))
    claimed_at = Column(DateTime)
    processed_at = Column(DateTime)
    error_message = Column(Text)

    __table_args__ = (
        UniqueConstraint("job_id", "lead_id", name="unique_job_lead"),
    )


class FollowupPromptVersion(Base):
    __tablename__ = "followup_prompt_versions"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    category = Column(String(50), default="standard_followup")
    name = Column(String(255))
    prompt = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class FollowupApproval(Base):
    """Drafted follow-up message waiting for a human decision"""
    __tablename__ = "followup_approvals"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    lead_id = Column(get_uuid_column(), ForeignKey("leads.id"), nullable=False, index=True)
    user_id = Column(get_uuid_column())
    message = Column(Text, nullable=False)
    reason = Column(Text)
    summary = Column(Text)
    is_template = Column(Boolean, default=False)
    prompt_version_id = Column(get_uuid_column())
    status = Column(String(20), nullable=False, default="pending")  # pending, approved, rejected, expired, sent
    ghl_message_id = Column(String(64))
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    decided_at = Column(DateTime)
    sent_at = Column(DateTime)

    # Exactly one pending approval per lead
    __table_args__ = (
        Index(
            "uq_followup_pending_lead",
            "lead_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )


class SyncLog(Base):
    __tablename__ = "ghl_sync_logs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    user_id = Column(get_uuid_column())
    connection_id = Column(get_uuid_column())
    sync_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # success, partial, error
    contacts_synced = Column(Integer, default=0)
    conversations_synced = Column(Integer, default=0)
    messages_synced = Column(Integer, default=0)
    appointments_synced = Column(Integer, default=0)
    tasks_synced = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    error_message = Column(Text)
    details = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)


def model_to_dict(instance) -> dict:
    """Column values of a mapped instance keyed by attribute name"""
    if instance is None:
        return None
    return {
        attr.key: getattr(instance, attr.key)
        for attr in instance.__mapper__.column_attrs
    }
