"""protocol_review_tables

Creates the protocol review workflow tables:
  - protocol_applications  one row per IRB / IBC protocol, versioned for CAS updates
  - review_events          append-only log of workflow actions
  - board_members          committee members eligible as reviewers

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1a9c3b7d20
Revises:
Create Date: 2026-10-18 09:12:41.530118
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1a9c3b7d20'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── ProtocolApplication ───────────────────────────────────────────────
    if "protocol_applications" not in existing:
        op.create_table(
            "protocol_applications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "protocol_number", sa.String(length=20), nullable=False,
                comment="Internal number, e.g. IRB-2025-001",
            ),
            sa.Column(
                "registration_number", sa.String(length=64), nullable=True,
                comment="External registration number; null until formally issued",
            ),
            sa.Column(
                "committee", sa.String(length=10), nullable=False,
                server_default="irb", comment="irb | ibc",
            ),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("short_title", sa.String(length=200), nullable=True),
            sa.Column("principal_investigator_id", sa.Integer(), nullable=False),
            sa.Column("protocol_type", sa.String(length=50), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("form_data", sa.JSON(), nullable=True),
            sa.Column(
                "status", sa.String(length=30), nullable=False,
                server_default="draft",
            ),
            sa.Column("submission_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("triage_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("review_start_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approval_date", sa.Date(), nullable=True),
            sa.Column("expiration_date", sa.Date(), nullable=True),
            sa.Column("reviewer_assignment", sa.JSON(), nullable=True),
            sa.Column("legacy_review_comments", sa.JSON(), nullable=True),
            sa.Column("legacy_pi_responses", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("protocol_number", name="uq_protocol_number"),
        )
        op.create_index("ix_protocol_status", "protocol_applications", ["status"])
        op.create_index(
            "ix_protocol_committee_status", "protocol_applications", ["committee", "status"]
        )
        op.create_index("ix_protocol_pi", "protocol_applications", ["principal_investigator_id"])

    # ── ReviewEvent ───────────────────────────────────────────────────────
    if "review_events" not in existing:
        op.create_table(
            "review_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("application_id", sa.Integer(), nullable=False),
            sa.Column(
                "actor_type", sa.String(length=20), nullable=False,
                comment="office | investigator",
            ),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("decision", sa.String(length=40), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("from_status", sa.String(length=30), nullable=True),
            sa.Column("to_status", sa.String(length=30), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column(
                "legacy_key", sa.String(length=40), nullable=True,
                comment="Original timestamp key when imported from a legacy comment blob",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(
                ["application_id"], ["protocol_applications.id"], ondelete="CASCADE"
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_review_event_app_created", "review_events", ["application_id", "created_at"]
        )
        op.create_index(
            "ix_review_event_legacy", "review_events",
            ["application_id", "actor_type", "legacy_key"],
        )

    # ── BoardMember ───────────────────────────────────────────────────────
    if "board_members" not in existing:
        op.create_table(
            "board_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("scientist_id", sa.Integer(), nullable=True),
            sa.Column("display_name", sa.String(length=200), nullable=False),
            sa.Column("committee", sa.String(length=10), nullable=False, server_default="irb"),
            sa.Column(
                "role", sa.String(length=20), nullable=False,
                server_default="member", comment="member | chair | deputy_chair",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("term_end_date", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_board_member_committee_active", "board_members", ["committee", "is_active"]
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    if "board_members" in existing:
        op.drop_index("ix_board_member_committee_active", table_name="board_members")
        op.drop_table("board_members")

    if "review_events" in existing:
        op.drop_index("ix_review_event_legacy", table_name="review_events")
        op.drop_index("ix_review_event_app_created", table_name="review_events")
        op.drop_table("review_events")

    if "protocol_applications" in existing:
        op.drop_index("ix_protocol_pi", table_name="protocol_applications")
        op.drop_index("ix_protocol_committee_status", table_name="protocol_applications")
        op.drop_index("ix_protocol_status", table_name="protocol_applications")
        op.drop_table("protocol_applications")
