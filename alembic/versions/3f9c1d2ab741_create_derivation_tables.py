"""create_derivation_tables

Revision ID: 3f9c1d2ab741
Revises:
Create Date: 2025-11-03 09:12:40

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9c1d2ab741'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JsonColumn = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """
    Create every table of the derivation engine.

    - trips: finalized trips, unique per (device_id, start_time)
    - geofence_zones: zone reference data (circle or GeoJSON polygon)
    - vehicle_geofence_status: Outside/Inside state per device (versioned)
    - geofence_events: append-only ENTRY/EXIT log
    - proactive_events: domain event outbox
    - speed_alert_markers: last speed alert per (device, zone)
    - open_trip_state: durable trip accumulator per device
    """
    print("[MIGRATION] Creating derivation engine tables...")

    op.create_table(
        'trips',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('start_lat', sa.Float(), nullable=False),
        sa.Column('start_lon', sa.Float(), nullable=False),
        sa.Column('end_lat', sa.Float(), nullable=False),
        sa.Column('end_lon', sa.Float(), nullable=False),
        sa.Column('distance_km', sa.Float(), server_default='0.0', nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=False),
        sa.Column('avg_speed', sa.Float(), nullable=True),
        sa.Column('max_speed', sa.Float(), nullable=True),
        sa.Column('point_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('source', sa.String(length=30), server_default='derived', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('end_time > start_time', name='check_time_order'),
        sa.CheckConstraint('distance_km >= 0', name='check_distance_positive'),
        sa.CheckConstraint('start_lat >= -90 AND start_lat <= 90', name='check_lat_range'),
        sa.CheckConstraint('start_lon >= -180 AND start_lon <= 180', name='check_lon_range'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('device_id', 'start_time', name='uq_trips_device_start'),
    )
    op.create_index('ix_trips_device_id', 'trips', ['device_id'])
    op.create_index('idx_trips_device_start_time', 'trips', ['device_id', 'start_time'])

    op.create_table(
        'geofence_zones',
        sa.Column('id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('zone_type', sa.String(length=50), nullable=True),
        sa.Column('color', sa.String(length=7), nullable=True),
        sa.Column('shape_type', sa.String(length=20), nullable=False),
        sa.Column('center_lat', sa.Float(), nullable=True),
        sa.Column('center_lon', sa.Float(), nullable=True),
        sa.Column('radius_meters', sa.Float(), nullable=True),
        sa.Column('boundary', JsonColumn, nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active_days', JsonColumn, nullable=True),
        sa.Column('effective_start_time', sa.Time(), nullable=True),
        sa.Column('effective_end_time', sa.Time(), nullable=True),
        sa.Column('speed_limit_kmh', sa.Float(), nullable=True),
        sa.Column('device_id', sa.String(length=100), nullable=True),
        sa.Column('applies_to_all', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("shape_type IN ('circle', 'polygon', 'rectangle')", name='check_shape_type'),
        sa.CheckConstraint(
            "(shape_type = 'circle' AND center_lat IS NOT NULL AND center_lon IS NOT NULL "
            "AND radius_meters IS NOT NULL) "
            "OR (shape_type IN ('polygon', 'rectangle') AND boundary IS NOT NULL)",
            name='valid_shape'
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_geofence_zones_device_id', 'geofence_zones', ['device_id'])
    op.create_index('idx_geofence_device_active', 'geofence_zones', ['device_id', 'is_active'])

    op.create_table(
        'vehicle_geofence_status',
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('geofence_id', sa.String(length=100), nullable=True),
        sa.Column('is_inside', sa.Boolean(), nullable=False),
        sa.Column('entered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entry_lat', sa.Float(), nullable=True),
        sa.Column('entry_lon', sa.Float(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('device_id'),
    )
    op.create_index('ix_vehicle_geofence_status_geofence_id', 'vehicle_geofence_status', ['geofence_id'])

    op.create_table(
        'geofence_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('geofence_id', sa.String(length=100), nullable=False),
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=10), nullable=False),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('duration_inside_seconds', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.CheckConstraint("event_type IN ('entry', 'exit')", name='check_event_type'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('idx_geofence_events_zone', 'geofence_events', ['geofence_id', 'event_time'])
    op.create_index('idx_geofence_events_device', 'geofence_events', ['device_id', 'event_time'])

    op.create_table(
        'proactive_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', JsonColumn, nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_proactive_events_device_id', 'proactive_events', ['device_id'])
    op.create_index('idx_proactive_events_status', 'proactive_events', ['status', 'id'])

    op.create_table(
        'speed_alert_markers',
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('geofence_id', sa.String(length=100), nullable=False),
        sa.Column('last_alert_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_speed', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('device_id', 'geofence_id'),
    )

    op.create_table(
        'open_trip_state',
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('last_report_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('start_lat', sa.Float(), nullable=True),
        sa.Column('start_lon', sa.Float(), nullable=True),
        sa.Column('last_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_lat', sa.Float(), nullable=True),
        sa.Column('last_lon', sa.Float(), nullable=True),
        sa.Column('running_distance_km', sa.Float(), nullable=True),
        sa.Column('max_speed', sa.Float(), nullable=True),
        sa.Column('speed_sum', sa.Float(), nullable=True),
        sa.Column('sample_count', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('device_id'),
    )

    print("[MIGRATION] Tables created")


def downgrade() -> None:
    print("[MIGRATION] Dropping derivation engine tables...")

    op.drop_table('open_trip_state')
    op.drop_table('speed_alert_markers')
    op.drop_index('idx_proactive_events_status', table_name='proactive_events')
    op.drop_index('ix_proactive_events_device_id', table_name='proactive_events')
    op.drop_table('proactive_events')
    op.drop_index('idx_geofence_events_device', table_name='geofence_events')
    op.drop_index('idx_geofence_events_zone', table_name='geofence_events')
    op.drop_table('geofence_events')
    op.drop_index('ix_vehicle_geofence_status_geofence_id', table_name='vehicle_geofence_status')
    op.drop_table('vehicle_geofence_status')
    op.drop_index('idx_geofence_device_active', table_name='geofence_zones')
    op.drop_index('ix_geofence_zones_device_id', table_name='geofence_zones')
    op.drop_table('geofence_zones')
    op.drop_index('idx_trips_device_start_time', table_name='trips')
    op.drop_index('ix_trips_device_id', table_name='trips')
    op.drop_table('trips')

    print("[MIGRATION] Tables dropped")
