"""Create DSAR request table and its append-only child logs.

Revision ID: 001
Revises:
Create Date: 2026-03-02

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_STATUSES = "'pending', 'in_progress', 'completed', 'rejected', 'cancelled'"


def upgrade() -> None:
    """Create dsar_requests, dsar_processing_notes, dsar_communications, dsar_status_changes."""
    op.create_table(
        'dsar_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('request_id', sa.String(64), nullable=False, unique=True,
                  comment='Human-readable identifier, DSAR-<millis>-<6 chars>'),

        sa.Column('requester_id', sa.String(512), nullable=False),
        sa.Column('requester_name', sa.String(255), nullable=False),
        sa.Column('requester_email', sa.String(320), nullable=False),
        sa.Column('requester_phone', sa.String(64), nullable=True),

        sa.Column('request_type', sa.String(50), nullable=False),
        sa.Column('subject', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('data_categories', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('legal_basis', sa.String(50), nullable=True),

        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),

        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False,
                  comment='Set once at creation, never recalculated'),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        sa.Column('assigned_user_id', sa.String(512), nullable=True),
        sa.Column('assigned_name', sa.String(255), nullable=True),
        sa.Column('assigned_email', sa.String(320), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),

        sa.Column('response_method', sa.String(50), nullable=False, server_default='email'),
        sa.Column('response_data', postgresql.JSONB, nullable=True),

        sa.Column('verification_method', sa.String(50), nullable=False,
                  server_default='email_verification'),
        sa.Column('verification_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_by', sa.String(255), nullable=True),

        sa.Column('rejection_reason', sa.String(50), nullable=True),
        sa.Column('rejection_details', sa.Text, nullable=True),

        sa.Column('source', sa.String(50), nullable=False, server_default='web_form'),
        sa.Column('customer_type', sa.String(50), nullable=False, server_default='individual'),
        sa.Column('jurisdiction', sa.String(100), nullable=False, server_default='Sri Lanka'),
        sa.Column('applicable_laws', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('risk_level', sa.String(20), nullable=False, server_default='low'),
        sa.Column('sensitive_data', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('tags', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('related_tickets', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('related_cases', postgresql.JSONB, nullable=False, server_default='[]'),

        sa.Column('created_by', sa.String(512), nullable=True),
        sa.Column('updated_by', sa.String(512), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('version', sa.Integer, nullable=False),

        sa.CheckConstraint(f'status IN ({_STATUSES})', name='ck_dsar_requests_status'),
    )

    op.create_index('ix_dsar_requests_requester_id', 'dsar_requests', ['requester_id'])
    op.create_index('ix_dsar_requests_requester_email', 'dsar_requests', ['requester_email'])
    op.create_index('ix_dsar_requests_request_type', 'dsar_requests', ['request_type'])
    op.create_index('ix_dsar_requests_status', 'dsar_requests', ['status'])
    op.create_index('ix_dsar_requests_priority', 'dsar_requests', ['priority'])
    op.create_index('ix_dsar_requests_due_date', 'dsar_requests', ['due_date'])
    op.create_index('ix_dsar_requests_assigned_user_id', 'dsar_requests', ['assigned_user_id'])
    op.create_index(
        'ix_dsar_requests_submitted_at_desc',
        'dsar_requests',
        [sa.text('submitted_at DESC')],
    )

    op.create_table(
        'dsar_processing_notes',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('request_pk', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('note', sa.Text, nullable=False),
        sa.Column('author', sa.String(255), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['request_pk'], ['dsar_requests.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_dsar_processing_notes_request_pk', 'dsar_processing_notes', ['request_pk'])

    op.create_table(
        'dsar_communications',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('request_pk', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('author', sa.String(255), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['request_pk'], ['dsar_requests.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_dsar_communications_request_pk', 'dsar_communications', ['request_pk'])

    op.create_table(
        'dsar_status_changes',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('request_pk', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_status', sa.String(50), nullable=False),
        sa.Column('to_status', sa.String(50), nullable=False),
        sa.Column('changed_by', sa.String(255), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['request_pk'], ['dsar_requests.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_dsar_status_changes_request_pk', 'dsar_status_changes', ['request_pk'])


def downgrade() -> None:
    """Drop the DSAR tables (children first)."""
    op.drop_table('dsar_status_changes')
    op.drop_table('dsar_communications')
    op.drop_table('dsar_processing_notes')
    op.drop_table('dsar_requests')
