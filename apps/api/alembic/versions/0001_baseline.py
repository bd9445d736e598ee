"""Baseline migration - contacts, automations, broadcasts, polling, publishing, job runs

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Creates every table the scheduled jobs read and write.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)


def _timestamps(updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column('created_at', TS, server_default=sa.func.now(), nullable=False)]
    if updated:
        cols.append(sa.Column('updated_at', TS, server_default=sa.func.now(), nullable=False))
    return cols


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Contacts
    # ==========================================================================
    op.create_table(
        'contacts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('email', sa.String(320)),
        sa.Column('phone', sa.String(50)),
        sa.Column('tags', JSON, nullable=False),
        sa.Column('is_unsubscribed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('unsubscribed_at', TS),
        *_timestamps(updated=True),
    )
    op.create_index('idx_contacts_user', 'contacts', ['user_id'])
    op.create_index('idx_contacts_user_email', 'contacts', ['user_id', 'email'])

    # ==========================================================================
    # Automation sequences
    # ==========================================================================
    op.create_table(
        'automation_sequences',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('total_executions', sa.Integer(), server_default=sa.text('0'), nullable=False),
        *_timestamps(updated=True),
    )
    op.create_index(
        'idx_sequences_trigger', 'automation_sequences', ['user_id', 'trigger_type', 'is_active']
    )

    op.create_table(
        'automation_steps',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'sequence_id', sa.Uuid(),
            sa.ForeignKey('automation_sequences.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('step_type', sa.String(20), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('sequence_id', 'step_order', name='uq_step_order'),
    )

    op.create_table(
        'automation_enrollments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'sequence_id', sa.Uuid(),
            sa.ForeignKey('automation_sequences.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('contact_id', sa.Uuid(), nullable=False),
        sa.Column('current_step_order', sa.Integer(), server_default=sa.text('-1'), nullable=False),
        sa.Column('next_step_at', TS),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('last_error', sa.Text()),
        sa.Column('claim_token', sa.String(64)),
        sa.Column('claimed_at', TS),
        sa.Column('completed_at', TS),
        *_timestamps(updated=True),
    )
    op.create_index(
        'idx_enrollments_due', 'automation_enrollments', ['status', 'next_step_at'],
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        'uq_enrollment_active', 'automation_enrollments', ['sequence_id', 'contact_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    # ==========================================================================
    # Broadcasts
    # ==========================================================================
    op.create_table(
        'broadcasts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('broadcast_type', sa.String(30), nullable=False),
        sa.Column('channel', sa.String(10), nullable=False),
        sa.Column('audience_spec', sa.Text(), nullable=False),
        sa.Column('content_versions', JSON, nullable=False),
        sa.Column('ab_test_config', JSON),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('scheduled_at', TS),
        sa.Column('winner_check_at', TS),
        sa.Column('sending_started_at', TS),
        sa.Column('sent_at', TS),
        sa.Column('total_recipients', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('sent_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('failed_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('open_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('click_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('last_error', sa.Text()),
        *_timestamps(updated=True),
    )
    op.create_index('idx_broadcasts_due', 'broadcasts', ['status', 'scheduled_at'])
    op.create_index('idx_broadcasts_winner_due', 'broadcasts', ['status', 'winner_check_at'])
    op.create_index('idx_broadcasts_sending', 'broadcasts', ['status', 'sending_started_at'])
    op.create_index('idx_broadcasts_user', 'broadcasts', ['user_id', 'created_at'])

    op.create_table(
        'broadcast_recipients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'broadcast_id', sa.Uuid(),
            sa.ForeignKey('broadcasts.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('contact_id', sa.Uuid(), nullable=False),
        sa.Column('variant', sa.String(1)),
        sa.Column('phase', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error', sa.Text()),
        sa.Column('provider_message_id', sa.String(255)),
        sa.Column('tracking_token', sa.String(64), unique=True),
        sa.Column('open_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('opened_at', TS),
        sa.Column('click_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('clicked_at', TS),
        sa.Column('sent_at', TS),
        *_timestamps(),
        sa.UniqueConstraint('broadcast_id', 'contact_id', name='uq_broadcast_recipient'),
    )
    op.create_index(
        'idx_broadcast_recipients_variant', 'broadcast_recipients', ['broadcast_id', 'variant']
    )

    # ==========================================================================
    # Polling
    # ==========================================================================
    op.create_table(
        'poll_checkpoints',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('source_type', sa.String(20), nullable=False),
        sa.Column('source_id', sa.Uuid(), nullable=False),
        sa.Column('last_seen_external_id', sa.String(255)),
        sa.Column('last_checked_at', TS),
        sa.Column('updated_at', TS, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('source_type', 'source_id', name='uq_poll_checkpoint_source'),
    )

    def source_columns() -> list[sa.Column]:
        return [
            sa.Column('id', sa.Uuid(), primary_key=True),
            sa.Column('user_id', sa.Uuid(), nullable=False),
            sa.Column('platform', sa.String(20), nullable=False),
            sa.Column('platform_account_id', sa.String(255), nullable=False),
            sa.Column('platform_account_name', sa.String(255)),
            sa.Column('access_token', sa.Text()),
            sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
            sa.Column('status', sa.String(20), nullable=False),
            sa.Column('last_error', sa.Text()),
            *_timestamps(),
        ]

    op.create_table('social_connections', *source_columns())
    op.create_index('idx_social_connections_active', 'social_connections', ['is_active'])

    op.create_table(
        'social_messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column(
            'connection_id', sa.Uuid(),
            sa.ForeignKey('social_connections.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('platform_message_id', sa.String(255), nullable=False),
        sa.Column('platform_conversation_id', sa.String(255)),
        sa.Column('sender_id', sa.String(255)),
        sa.Column('sender_name', sa.String(255)),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('sent_at', TS),
        *_timestamps(),
        sa.UniqueConstraint('connection_id', 'platform_message_id', name='uq_social_message'),
    )
    op.create_index(
        'idx_social_messages_thread', 'social_messages',
        ['connection_id', 'platform_conversation_id'],
    )

    op.create_table('review_sources', *source_columns())
    op.create_index('idx_review_sources_active', 'review_sources', ['is_active'])

    op.create_table(
        'reviews',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column(
            'source_id', sa.Uuid(),
            sa.ForeignKey('review_sources.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('platform_review_id', sa.String(255), nullable=False),
        sa.Column('reviewer_name', sa.String(255), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('review_url', sa.Text()),
        sa.Column('reviewed_at', TS),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('suggested_response', sa.Text()),
        sa.Column('response_retry_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('response_error_message', sa.Text()),
        sa.Column('response_claimed_at', TS),
        *_timestamps(updated=True),
        sa.UniqueConstraint('source_id', 'platform_review_id', name='uq_review_platform_id'),
    )
    op.create_index('idx_reviews_user_status', 'reviews', ['user_id', 'status'])
    op.create_index('idx_reviews_response_queue', 'reviews', ['status', 'updated_at'])

    op.create_table(
        'review_responses',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'review_id', sa.Uuid(),
            sa.ForeignKey('reviews.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('platform_response_id', sa.String(255)),
        sa.Column('responded_at', TS, nullable=False),
    )
    op.create_index('idx_review_responses_review', 'review_responses', ['review_id'])

    op.create_table(
        'tracked_keywords',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('keyword', sa.String(255), nullable=False),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255)),
        sa.Column('competitors', JSON, nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('last_error', sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'keyword', 'location', name='uq_tracked_keyword'),
    )

    op.create_table(
        'keyword_rank_snapshots',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column(
            'keyword_id', sa.Uuid(),
            sa.ForeignKey('tracked_keywords.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('snapshot_key', sa.String(20), nullable=False),
        sa.Column('snapshot_date', sa.Date(), nullable=False),
        sa.Column('rank', sa.Integer()),
        sa.Column('competitor_ranks', JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('keyword_id', 'snapshot_key', name='uq_keyword_snapshot_day'),
    )

    # ==========================================================================
    # Publishing
    # ==========================================================================
    op.create_table(
        'blog_posts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('slug', sa.String(500), nullable=False),
        sa.Column('content_markdown', sa.Text(), nullable=False),
        sa.Column('seo_metadata', JSON, nullable=False),
        sa.Column('focus_keyword', sa.String(255)),
        sa.Column('branded_graphic_url', sa.Text()),
        sa.Column('repurposed_assets', JSON, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('scheduled_at', TS),
        sa.Column('published_at', TS),
        sa.Column('last_error', sa.Text()),
        *_timestamps(updated=True),
    )
    op.create_index('idx_blog_posts_due', 'blog_posts', ['status', 'scheduled_at'])

    op.create_table(
        'action_commands',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('command_type', sa.String(50), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text()),
        sa.Column('processed_at', TS),
        *_timestamps(),
    )
    op.create_index('idx_action_commands_pending', 'action_commands', ['status', 'created_at'])

    # ==========================================================================
    # Job runs
    # ==========================================================================
    op.create_table(
        'job_runs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('job_name', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', TS, nullable=False),
        sa.Column('completed_at', TS),
        sa.Column('error_message', sa.Text()),
        sa.Column('details', JSON, nullable=False),
    )
    op.create_index('idx_job_runs_name', 'job_runs', ['job_name', 'started_at'])


def downgrade() -> None:
    """Drop all tables."""
    for table in (
        'job_runs',
        'action_commands',
        'blog_posts',
        'keyword_rank_snapshots',
        'tracked_keywords',
        'review_responses',
        'reviews',
        'review_sources',
        'social_messages',
        'social_connections',
        'poll_checkpoints',
        'broadcast_recipients',
        'broadcasts',
        'automation_enrollments',
        'automation_steps',
        'automation_sequences',
        'contacts',
    ):
        op.drop_table(table)
