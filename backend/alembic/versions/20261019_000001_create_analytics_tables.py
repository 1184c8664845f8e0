"""Create experiment, conversion and attribution tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates the analytics schema:
    - conversion_goals: What counts as a conversion, with value and window
    - conversions: External conversions (unique conversion_id)
    - attribution_touchpoints: Ordered journey per session
    - touchpoint_attributions: Credit per touchpoint per model
    - experiments / experiment_variants / experiment_events: A/B tests

WHY:
    Every recording operation is retried by clients. The unique constraints
    here are what make those retries safe:
    - (session_id, touchpoint_order) serializes concurrent touchpoint inserts
    - (experiment_id, session_id, event_type) keeps one assignment and one
      conversion per session
    - (touchpoint_id, attribution_model) keeps one credit row per model

REFERENCES:
    - conversionlab/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


goal_type_enum = sa.Enum(
    'url_visit', 'custom_event', 'form_submit', 'purchase', name='goaltypeenum'
)
experiment_status_enum = sa.Enum(
    'draft', 'running', 'paused', 'completed', name='experimentstatusenum'
)
experiment_event_type_enum = sa.Enum(
    'assignment', 'conversion', name='experimenteventtypeenum'
)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Conversion goals
    # =========================================================================
    op.create_table(
        'conversion_goals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('goal_type', goal_type_enum, nullable=False),
        sa.Column('target_url', sa.String(), nullable=True),
        sa.Column('custom_event_name', sa.String(), nullable=True),
        sa.Column('goal_value', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('attribution_window', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversion_goals_owner_id', 'conversion_goals', ['owner_id'])

    # =========================================================================
    # STEP 2: Conversions
    # =========================================================================
    # WHAT: One row per external conversion id
    # WHY: Unique conversion_id makes tracking idempotent
    op.create_table(
        'conversions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversion_id', sa.String(), nullable=False, unique=True),
        sa.Column('goal_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('conversion_goals.id'), nullable=False),
        sa.Column('short_code', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('conversion_type', goal_type_enum, nullable=False),
        sa.Column('conversion_value', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('conversion_time', sa.DateTime(), nullable=False),
        sa.Column('attribution_model', sa.String(), nullable=False, server_default='last_touch'),
        sa.Column('time_to_conversion', sa.Integer(), nullable=True),  # minutes
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversions_short_code', 'conversions', ['short_code'])
    op.create_index('ix_conversions_session_id', 'conversions', ['session_id'])

    # =========================================================================
    # STEP 3: Touchpoints and per-model credit
    # =========================================================================
    op.create_table(
        'attribution_touchpoints',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('short_code', sa.String(), nullable=False),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('campaign_source', sa.String(), nullable=True),
        sa.Column('campaign_medium', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('campaign_term', sa.String(), nullable=True),
        sa.Column('campaign_content', sa.String(), nullable=True),
        sa.Column('touchpoint_order', sa.Integer(), nullable=False),
        sa.Column('touchpoint_time', sa.DateTime(), nullable=False),
        sa.Column('conversion_id', sa.String(), nullable=True),
        # Client-generated id for deduplicating retried beacons
        sa.Column('event_id', sa.String(), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('session_id', 'touchpoint_order', name='uq_touchpoint_session_order'),
    )
    op.create_index('ix_attribution_touchpoints_short_code', 'attribution_touchpoints', ['short_code'])
    op.create_index('ix_touchpoints_session_time', 'attribution_touchpoints',
                    ['session_id', 'touchpoint_time'])

    op.create_table(
        'touchpoint_attributions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('touchpoint_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('attribution_touchpoints.id', ondelete='CASCADE'), nullable=False),
        sa.Column('conversion_id', sa.String(), nullable=False),
        sa.Column('attribution_model', sa.String(), nullable=False),
        sa.Column('attribution_value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('weight', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('touchpoint_id', 'attribution_model', name='uq_touchpoint_attribution_model'),
    )
    op.create_index('ix_touchpoint_attributions_conversion_id', 'touchpoint_attributions',
                    ['conversion_id'])

    # =========================================================================
    # STEP 4: Experiments
    # =========================================================================
    op.create_table(
        'experiments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('experiment_type', sa.String(), nullable=False, server_default='ab'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', experiment_status_enum, nullable=False, server_default='draft'),
        sa.Column('sample_size', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='95'),
        sa.Column('conversion_goal_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('conversion_goals.id'), nullable=True),
        sa.Column('winner', sa.String(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_experiments_owner_id', 'experiments', ['owner_id'])

    op.create_table(
        'experiment_variants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('short_code', sa.String(), nullable=False),
        sa.Column('traffic_allocation', sa.Integer(), nullable=False),
        sa.Column('is_control', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('experiment_id', 'name', name='uq_variant_name'),
        sa.UniqueConstraint('experiment_id', 'short_code', name='uq_variant_short_code'),
    )

    # WHAT: Append-only assignment/conversion log
    # WHY: One assignment and one conversion per (experiment, session)
    op.create_table(
        'experiment_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('variant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiment_variants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('event_type', experiment_event_type_enum, nullable=False),
        sa.Column('conversion_value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('experiment_id', 'session_id', 'event_type',
                            name='uq_experiment_session_event'),
    )
    op.create_index('ix_experiment_events_variant_type', 'experiment_events',
                    ['experiment_id', 'variant_id', 'event_type'])


def downgrade() -> None:
    op.drop_index('ix_experiment_events_variant_type', table_name='experiment_events')
    op.drop_table('experiment_events')
    op.drop_table('experiment_variants')
    op.drop_index('ix_experiments_owner_id', table_name='experiments')
    op.drop_table('experiments')

    op.drop_index('ix_touchpoint_attributions_conversion_id', table_name='touchpoint_attributions')
    op.drop_table('touchpoint_attributions')
    op.drop_index('ix_touchpoints_session_time', table_name='attribution_touchpoints')
    op.drop_index('ix_attribution_touchpoints_short_code', table_name='attribution_touchpoints')
    op.drop_table('attribution_touchpoints')

    op.drop_index('ix_conversions_session_id', table_name='conversions')
    op.drop_index('ix_conversions_short_code', table_name='conversions')
    op.drop_table('conversions')
    op.drop_index('ix_conversion_goals_owner_id', table_name='conversion_goals')
    op.drop_table('conversion_goals')

    # Enum types outlive their tables on PostgreSQL
    bind = op.get_bind()
    experiment_event_type_enum.drop(bind, checkfirst=True)
    experiment_status_enum.drop(bind, checkfirst=True)
    goal_type_enum.drop(bind, checkfirst=True)
