from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Boolean,
    Index, UniqueConstraint, SmallInteger, CheckConstraint, Enum, ForeignKey
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()

# --- Enums ---

class GTDCategory(PyEnum):
    # Values are the labels the web app stores and renders.
    Inbox = "Inbox"
    NextAction = "Próximas acciones"
    MultiStep = "Multitarea"
    Waiting = "A la espera"
    Someday = "Algún día"

class IntentKind(PyEnum):
    create_task = "create_task"
    view_tasks = "view_tasks"
    complete_task = "complete_task"
    edit_task = "edit_task"
    add_context = "add_context"
    help = "help"
    greeting = "greeting"

class PayloadKind(PyEnum):
    text = "text"
    audio = "audio"
    button_selection = "button_selection"
    list_selection = "list_selection"
    own_message = "own_message"
    unsupported = "unsupported"

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

# --- Task store (shared with the web app) ---

class UserAccount(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)
    role = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_users_phone", "phone"),
    )

class Context(Base):
    __tablename__ = "contexts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_contexts_user", "user_id"),
    )

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(
        Enum(GTDCategory, name="gtd_category", values_callable=_enum_values),
        nullable=False,
        default=GTDCategory.Inbox,
    )
    context_id = Column(String, ForeignKey("contexts.id"), nullable=True)
    due_date = Column(Date, nullable=True)
    estimated_minutes = Column(SmallInteger, CheckConstraint("estimated_minutes BETWEEN 1 AND 1440"), nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    is_quick_action = Column(Boolean, nullable=False, default=False)
    source = Column(String, nullable=True)
    source_event_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "source_event_id", name="uq_tasks_user_source_event"),
        Index("idx_tasks_user_completed_due", "user_id", "completed", "due_date"),
        Index("idx_tasks_user_category", "user_id", "category"),
    )

# --- Messaging pipeline ---

class AccountLink(Base):
    __tablename__ = "account_links"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    normalized_address = Column(String, nullable=False)
    link_code = Column(String(6), nullable=True)
    link_code_expiry = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_account_links_address_active", "normalized_address", "is_active"),
        Index("idx_account_links_code_active", "link_code", "is_active"),
        Index("idx_account_links_user", "user_id"),
    )

class ConversationContext(Base):
    __tablename__ = "conversation_contexts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    sender_address = Column(String, nullable=False)
    last_task_id = Column(String, nullable=True)
    last_intent = Column(String, nullable=True)
    conversation_history = Column(JSONB, nullable=False, server_default='[]')
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "sender_address", name="uq_conversation_user_address"),
        Index("idx_conversation_contexts_expires", "expires_at"),
    )

class ProcessedMarker(Base):
    __tablename__ = "processed_messages"

    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    resolved_user_id = Column(String, nullable=True)
    resulting_task_id = Column(String, nullable=True)
    intent = Column(String, nullable=True)
    reason = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processed_messages_event"),
        Index("idx_processed_messages_processed_at", processed_at.desc()),
    )

class PromptRun(Base):
    __tablename__ = "prompt_runs"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    prompt_version = Column(String, nullable=False)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    status = Column(String, nullable=False)
    error_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_prompt_runs_user_op_created", "user_id", "operation", created_at.desc()),
    )

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSONB, nullable=False, server_default='{}')
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_event_log_request", "request_id"),
        Index("idx_event_log_user_created", "user_id", created_at.desc()),
    )
