from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class AgentDefinition(Base):
    """Configuration of one assistant."""

    __tablename__ = "agent_definitions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    developer_name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, default="", nullable=False)
    welcome_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    memory_strategy: Mapped[str] = mapped_column(
        String(30), default="buffer_window", nullable=False
    )  # full_history | buffer_window
    history_window: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_turns: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    llm_configuration: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class AgentCapability(Base):
    """A tool exposed to the LLM for one agent."""

    __tablename__ = "agent_capabilities"
    __table_args__ = (
        UniqueConstraint("agent_definition_id", "name", name="uq_agent_capability_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    agent_definition_id: Mapped[str] = mapped_column(
        String, ForeignKey("agent_definitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    implementation_key: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    parameters_schema: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    run_asynchronously: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    execution_prerequisites: Mapped[Optional[list]] = mapped_column(
        JSON, nullable=True
    )  # Ordered capability names
    prerequisite_validation_scope: Mapped[str] = mapped_column(
        String(20), default="turn", nullable=False
    )  # turn | session
    halt_and_report_error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    picklist_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    implementation_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ChatSession(Base):
    """
    Chat session with its turn processing state.

    ``version`` is bumped on every write and checked on update
    (compare-and-swap on top of SELECT ... FOR UPDATE).
    """

    __tablename__ = "chat_sessions"
    __table_args__ = (
        Index("ix_chat_sessions_user_agent_activity", "user_id", "agent_definition_id", "last_activity_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    agent_definition_id: Mapped[str] = mapped_column(
        String, ForeignKey("agent_definitions.id"), nullable=False
    )
    page_record_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(40), default="idle", nullable=False, index=True
    )
    current_turn_identifier: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    current_job_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    current_step_description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ChatMessage(Base):
    """Append-only message history."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "external_id", name="uq_chat_messages_external_id"),
        UniqueConstraint("session_id", "sequence_number", name="uq_chat_messages_sequence"),
        Index("ix_chat_messages_session_turn", "session_id", "turn_identifier"),
        Index("ix_chat_messages_session_tool_call", "session_id", "tool_call_id"),
        Index("ix_chat_messages_session_created", "session_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    turn_identifier: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # user | assistant | tool | system
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tool_calls: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    tool_call_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    parent_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pending_confirmation: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    capability_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    record_context_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    record_context_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    diagnostic_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_usage: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ApprovalRequest(Base):
    """
    Gated tool call waiting for a human decision.

    Request lifecycle:
    - pending: Waiting for the approver
    - approved: Approver accepted; the action runs
    - rejected: Approver declined; the LLM is told
    - error: Submission to the approval workflow failed
    """

    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_identifier: Mapped[str] = mapped_column(String, nullable=False)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    assistant_message_id: Mapped[str] = mapped_column(String, nullable=False)
    tool_call_id: Mapped[str] = mapped_column(String, nullable=False)
    capability_name: Mapped[str] = mapped_column(String(200), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    tool_arguments: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    decision_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    workflow_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    execution_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
