"""Create geofence notification pipeline tables

Revision ID: 001_nearme_pipeline
Revises:
Create Date: 2026-10-16

Creates every table of the geofence-to-notification pipeline:
- tasks: synced reminder tasks with their location classification
- geofences: generated tiers per task, with registry state
- geofence_events: every crossing report and its intake outcome
- notifications: durable scheduler state (pending, delivered, retries)
- notification_snoozes / task_mutes: suppression windows
- intake_guards: per (user, task, geofence, event type) cooldown and dedup
- queued_events: offline replay queue
- push_subscriptions: Web Push targets

Enum columns are stored as strings (native_enum=False). Timestamps are
timezone-aware on PostgreSQL and naive UTC on SQLite.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_nearme_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def _uuid_column() -> sa.Column:
    return sa.Column(
        'uuid',
        postgresql.UUID(as_uuid=True).with_variant(sa.LargeBinary(16), 'sqlite'),
        nullable=False,
    )


def _json_type():
    return postgresql.JSONB().with_variant(sa.JSON(), 'sqlite')


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _claim_columns() -> list:
    return [
        sa.Column('claim_token', sa.String(length=32), nullable=True),
        sa.Column('claimed_until', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Create pipeline tables and indexes."""
    # tasks
    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location_type', sa.String(length=20), nullable=False),
        sa.Column('place_type', sa.String(length=20), nullable=True),
        sa.Column('poi_category', sa.String(length=20), nullable=True),
        sa.Column('location_name', sa.String(length=200), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('custom_approach_miles', sa.Float(), nullable=True),
        sa.Column('custom_arrival_meters', sa.Float(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('geofence_fingerprint', sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_uuid', 'tasks', ['uuid'], unique=True)
    op.create_index('ix_tasks_user_id', 'tasks', ['user_id'])
    op.create_index('ix_tasks_user_status', 'tasks', ['user_id', 'status'])

    # geofences
    op.create_table(
        'geofences',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('radius_m', sa.Float(), nullable=False),
        sa.Column('tier', sa.String(length=20), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False, server_default='BOUNDARY'),
        sa.Column('dwell_seconds', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deactivated_reason', sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['task_id'], ['tasks.id'], name='fk_geofences_task_id', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_geofences_uuid', 'geofences', ['uuid'], unique=True)
    op.create_index('ix_geofences_task_id', 'geofences', ['task_id'])
    op.create_index('ix_geofences_task_tier', 'geofences', ['task_id', 'tier'], unique=True)

    # geofence_events
    op.create_table(
        'geofence_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=True),
        sa.Column('geofence_id', sa.Integer(), nullable=True),
        sa.Column('tier', sa.String(length=20), nullable=True),
        sa.Column('event_type', sa.String(length=10), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('suppression_reason', sa.String(length=30), nullable=True),
        sa.Column('notification_id', sa.Integer(), nullable=True),
        sa.Column('cooldown_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('client_event_id', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_geofence_events_uuid', 'geofence_events', ['uuid'], unique=True)
    op.create_index('ix_geofence_events_user_id', 'geofence_events', ['user_id'])
    op.create_index('ix_geofence_events_task_id', 'geofence_events', ['task_id'])
    op.create_index('ix_geofence_events_geofence_id', 'geofence_events', ['geofence_id'])
    op.create_index('ix_geofence_events_notification_id', 'geofence_events', ['notification_id'])
    op.create_index('ix_geofence_events_created_at', 'geofence_events', ['created_at'])
    op.create_index('ix_geofence_events_task_tier', 'geofence_events', ['task_id', 'tier'])
    op.create_index('ix_geofence_events_user_created', 'geofence_events', ['user_id', 'created_at'])

    # notifications
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('tier', sa.String(length=20), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('body', sa.String(length=500), nullable=False),
        sa.Column('actions', _json_type(), nullable=False),
        sa.Column('is_bundle', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('anchor_latitude', sa.Float(), nullable=True),
        sa.Column('anchor_longitude', sa.Float(), nullable=True),
        sa.Column('anchor_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_reason', sa.String(length=50), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trigger_event_id', sa.Integer(), nullable=True),
        *_claim_columns(),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['task_id'], ['tasks.id'], name='fk_notifications_task_id', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_notifications_uuid', 'notifications', ['uuid'], unique=True)
    op.create_index('ix_notifications_task_id', 'notifications', ['task_id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index(
        'ix_notifications_task_tier_status', 'notifications', ['task_id', 'tier', 'status']
    )
    op.create_index('ix_notifications_status_due', 'notifications', ['status', 'scheduled_for'])
    op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'])

    # notification_snoozes
    op.create_table(
        'notification_snoozes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('notification_id', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=20), nullable=False),
        sa.Column('duration', sa.String(length=10), nullable=False),
        sa.Column('snooze_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('original_scheduled_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('snooze_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        *_claim_columns(),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['task_id'], ['tasks.id'], name='fk_notification_snoozes_task_id', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['notification_id'], ['notifications.id'],
            name='fk_notification_snoozes_notification_id', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_notification_snoozes_uuid', 'notification_snoozes', ['uuid'], unique=True)
    op.create_index('ix_notification_snoozes_user_id', 'notification_snoozes', ['user_id'])
    op.create_index('ix_notification_snoozes_task_id', 'notification_snoozes', ['task_id'])
    op.create_index(
        'ix_notification_snoozes_notification_id', 'notification_snoozes', ['notification_id']
    )
    op.create_index('ix_snoozes_task_tier_status', 'notification_snoozes', ['task_id', 'tier', 'status'])
    op.create_index('ix_snoozes_status_until', 'notification_snoozes', ['status', 'snooze_until'])

    # task_mutes
    op.create_table(
        'task_mutes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('duration', sa.String(length=20), nullable=False),
        sa.Column('mute_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('mute_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('reason', sa.String(length=200), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        *_claim_columns(),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['task_id'], ['tasks.id'], name='fk_task_mutes_task_id', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_task_mutes_uuid', 'task_mutes', ['uuid'], unique=True)
    op.create_index('ix_task_mutes_user_id', 'task_mutes', ['user_id'])
    op.create_index('ix_task_mutes_task_id', 'task_mutes', ['task_id'])
    op.create_index('ix_mutes_task_status', 'task_mutes', ['task_id', 'status'])
    op.create_index('ix_mutes_status_until', 'task_mutes', ['status', 'mute_until'])

    # intake_guards
    op.create_table(
        'intake_guards',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('geofence_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=10), nullable=False),
        sa.Column('last_accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cooldown_until', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'user_id', 'task_id', 'geofence_id', 'event_type', name='uq_intake_guards_key'
        ),
    )

    # queued_events
    op.create_table(
        'queued_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('payload', _json_type(), nullable=False),
        sa.Column('enqueued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='QUEUED'),
        sa.Column('result_event_id', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_claim_columns(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_queued_events_uuid', 'queued_events', ['uuid'], unique=True)
    op.create_index('ix_queued_events_user_id', 'queued_events', ['user_id'])
    op.create_index(
        'ix_queued_events_user_fifo', 'queued_events', ['user_id', 'status', 'enqueued_at']
    )

    # push_subscriptions
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _uuid_column(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('endpoint', sa.String(length=1024), nullable=False),
        sa.Column('p256dh_key', sa.String(length=255), nullable=False),
        sa.Column('auth_key', sa.String(length=255), nullable=False),
        sa.Column('device_name', sa.String(length=100), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('endpoint', name='uq_push_subscriptions_endpoint'),
    )
    op.create_index('ix_push_subscriptions_uuid', 'push_subscriptions', ['uuid'], unique=True)
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade() -> None:
    """Drop pipeline tables in dependency order."""
    op.drop_table('push_subscriptions')
    op.drop_table('queued_events')
    op.drop_table('intake_guards')
    op.drop_table('task_mutes')
    op.drop_table('notification_snoozes')
    op.drop_table('notifications')
    op.drop_table('geofence_events')
    op.drop_table('geofences')
    op.drop_table('tasks')
