"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

from om2chat.core.config import EMBED_DIM

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Ensure pgvector is enabled for every environment, not just manual setup.
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "brokers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(), nullable=False, server_default=""),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_tier", sa.String(), nullable=False, server_default="individual"),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="trial"),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("document_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reset_token", sa.String(), nullable=True),
        sa.Column("reset_token_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("is_team_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "subscription_status IN ('trial', 'active', 'past_due', 'cancelled', 'pending')",
            name="ck_brokers_subscription_status",
        ),
    )
    op.create_index("ix_brokers_email", "brokers", ["email"], unique=True)
    op.create_index("ix_brokers_stripe_customer_id", "brokers", ["stripe_customer_id"])
    op.create_index("ix_brokers_reset_token", "brokers", ["reset_token"])
    op.create_index("ix_brokers_team_id", "brokers", ["team_id"])

    op.create_table(
        "document_metadata",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("broker_id", sa.String(), sa.ForeignKey("brokers.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_document_metadata_broker_id", "document_metadata", ["broker_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("file_id", sa.String(), sa.ForeignKey("document_metadata.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        # Keep schema aligned with the embedding dimension used at runtime.
        sa.Column("embedding", Vector(EMBED_DIM), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_documents_file_id", "documents", ["file_id"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_documents_embedding_hnsw "
        "ON documents USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "public_links",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("document_id", sa.String(), sa.ForeignKey("document_metadata.id"), nullable=False),
        sa.Column("broker_id", sa.String(), sa.ForeignKey("brokers.id"), nullable=False),
        sa.Column("link_token", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("custom_branding", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_public_links_document_id", "public_links", ["document_id"])
    op.create_index("ix_public_links_broker_id", "public_links", ["broker_id"])
    op.create_index("ix_public_links_link_token", "public_links", ["link_token"], unique=True)

    op.create_table(
        "client_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("public_link_id", sa.String(), sa.ForeignKey("public_links.id"), nullable=False),
        sa.Column("broker_id", sa.String(), nullable=False),
        sa.Column("session_token", sa.String(), nullable=False),
        sa.Column("client_email", sa.String(), nullable=True),
        sa.Column("client_name", sa.String(), nullable=True),
        sa.Column("client_phone", sa.String(), nullable=True),
        sa.Column("first_activity", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_activity", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_client_sessions_public_link_id", "client_sessions", ["public_link_id"])
    op.create_index("ix_client_sessions_broker_id", "client_sessions", ["broker_id"])
    op.create_index("ix_client_sessions_session_token", "client_sessions", ["session_token"], unique=True)

    op.create_table(
        "chat_histories",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("broker_id", sa.String(), nullable=True),
        sa.Column("client_session_id", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('user', 'assistant')", name="ck_chat_histories_role"),
    )
    op.create_index("ix_chat_histories_document_id", "chat_histories", ["document_id"])
    op.create_index("ix_chat_histories_broker_id", "chat_histories", ["broker_id"])
    op.create_index("ix_chat_histories_client_session_id", "chat_histories", ["client_session_id"])
    op.create_index(
        "ix_chat_histories_document_created_at", "chat_histories", ["document_id", "created_at"]
    )

    op.create_table(
        "analytics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("broker_id", sa.String(), nullable=True),
        sa.Column("public_link_id", sa.String(), nullable=True),
        sa.Column("client_session_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "event_type IN ('link_view', 'email_capture', 'chat_message', 'document_download')",
            name="ck_analytics_event_type",
        ),
    )
    op.create_index("ix_analytics_broker_id", "analytics", ["broker_id"])
    op.create_index("ix_analytics_public_link_id", "analytics", ["public_link_id"])
    op.create_index("ix_analytics_event_type", "analytics", ["event_type"])
    op.create_index(
        "ix_analytics_broker_created_at", "analytics", ["broker_id", sa.text("created_at DESC")]
    )

    op.create_table(
        "teams",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("admin_broker_id", sa.String(), sa.ForeignKey("brokers.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_teams_admin_broker_id", "teams", ["admin_broker_id"])

    op.create_table(
        "team_invitations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("admin_broker_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_team_invitations_team_id", "team_invitations", ["team_id"])
    op.create_index("ix_team_invitations_email", "team_invitations", ["email"])
    op.create_index("ix_team_invitations_token", "team_invitations", ["token"], unique=True)

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("broker_id", sa.String(), nullable=True),
        sa.Column("stripe_event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_events_broker_id", "subscription_events", ["broker_id"])
    op.create_index("ix_subscription_events_stripe_event_id", "subscription_events", ["stripe_event_id"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("stack", sa.Text(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("broker_id", sa.String(), nullable=True),
        sa.Column("severity", sa.String(), nullable=False, server_default="error"),
        sa.Column("context", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "banned_emails",
        sa.Column("email", sa.String(), primary_key=True),
        sa.Column("reason", sa.String(), nullable=False, server_default="subscription_cancelled"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Similarity search runs server side so only the top rows leave the database.
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION match_documents(
            query_embedding vector({EMBED_DIM}),
            match_count int,
            target_file_id text
        )
        RETURNS TABLE (id text, content text, chunk_index int, similarity float)
        LANGUAGE sql STABLE
        AS $$
            SELECT d.id, d.content, d.chunk_index, 1 - (d.embedding <=> query_embedding) AS similarity
            FROM documents d
            WHERE d.file_id = target_file_id
            ORDER BY d.embedding <=> query_embedding
            LIMIT match_count
        $$;
        """
    )


def downgrade() -> None:
    op.execute(f"DROP FUNCTION IF EXISTS match_documents(vector({EMBED_DIM}), int, text)")
    op.drop_table("banned_emails")
    op.drop_table("error_logs")
    op.drop_index("ix_subscription_events_stripe_event_id", table_name="subscription_events")
    op.drop_index("ix_subscription_events_broker_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_team_invitations_token", table_name="team_invitations")
    op.drop_index("ix_team_invitations_email", table_name="team_invitations")
    op.drop_index("ix_team_invitations_team_id", table_name="team_invitations")
    op.drop_table("team_invitations")
    op.drop_index("ix_teams_admin_broker_id", table_name="teams")
    op.drop_table("teams")
    op.drop_index("ix_analytics_broker_created_at", table_name="analytics")
    op.drop_index("ix_analytics_event_type", table_name="analytics")
    op.drop_index("ix_analytics_public_link_id", table_name="analytics")
    op.drop_index("ix_analytics_broker_id", table_name="analytics")
    op.drop_table("analytics")
    op.drop_index("ix_chat_histories_document_created_at", table_name="chat_histories")
    op.drop_index("ix_chat_histories_client_session_id", table_name="chat_histories")
    op.drop_index("ix_chat_histories_broker_id", table_name="chat_histories")
    op.drop_index("ix_chat_histories_document_id", table_name="chat_histories")
    op.drop_table("chat_histories")
    op.drop_index("ix_client_sessions_session_token", table_name="client_sessions")
    op.drop_index("ix_client_sessions_broker_id", table_name="client_sessions")
    op.drop_index("ix_client_sessions_public_link_id", table_name="client_sessions")
    op.drop_table("client_sessions")
    op.drop_index("ix_public_links_link_token", table_name="public_links")
    op.drop_index("ix_public_links_broker_id", table_name="public_links")
    op.drop_index("ix_public_links_document_id", table_name="public_links")
    op.drop_table("public_links")
    op.execute("DROP INDEX IF EXISTS ix_documents_embedding_hnsw")
    op.drop_index("ix_documents_file_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_document_metadata_broker_id", table_name="document_metadata")
    op.drop_table("document_metadata")
    op.drop_index("ix_brokers_team_id", table_name="brokers")
    op.drop_index("ix_brokers_reset_token", table_name="brokers")
    op.drop_index("ix_brokers_stripe_customer_id", table_name="brokers")
    op.drop_index("ix_brokers_email", table_name="brokers")
    op.drop_table("brokers")
