"""Create security control plane tables

Revision ID: 0001_security_control_plane
Revises:
Create Date: 2026-03-02 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_security_control_plane'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(150), nullable=True),
        sa.Column('username', sa.String(50), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('photo_url', sa.String(255), nullable=True),
        sa.Column('gender', sa.String(20), nullable=True),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('department', sa.String(100), nullable=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table('api_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('last_ip', sa.String(45), nullable=True),
        sa.Column('last_user_agent', sa.String(255), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_reason', sa.String(100), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_api_tokens_token_hash', 'api_tokens', ['token_hash'], unique=True)
    op.create_index('ix_api_tokens_user_id', 'api_tokens', ['user_id'])
    op.create_index('ix_api_tokens_expires_at', 'api_tokens', ['expires_at'])

    op.create_table('api_rate_limits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('identifier', sa.String(128), nullable=False),
        sa.Column('identifier_type', sa.String(10), nullable=False),
        sa.Column('endpoint', sa.String(255), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False),
        sa.Column('last_request_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('identifier', 'identifier_type', 'endpoint', name='uq_api_rate_limits_key'),
    )
    op.create_index('ix_api_rate_limits_window_start', 'api_rate_limits', ['window_start'])

    op.create_table('login_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=False),
        sa.Column('username', sa.String(100), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_attempt', sa.DateTime(), nullable=False),
        sa.Column('blocked_until', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('ip_address', 'username', name='uq_login_attempts_ip_username'),
    )

    op.create_table('alert_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_name', sa.String(100), nullable=False),
        sa.Column('rule_type', sa.String(20), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=True),
        sa.Column('threshold_warning', sa.Integer(), nullable=False),
        sa.Column('threshold_critical', sa.Integer(), nullable=False),
        sa.Column('time_window_seconds', sa.Integer(), nullable=False),
        sa.Column('cooldown_seconds', sa.Integer(), nullable=False),
        sa.Column('scope', sa.String(255), nullable=True),
        sa.Column('auto_action', sa.JSON(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_name'),
    )

    op.create_table('alert_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('source_hash', sa.String(64), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['alert_rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_id', 'source_hash', 'window_start', name='uq_alert_metrics_key'),
    )
    op.create_index('ix_alert_metrics_window_start', 'alert_metrics', ['window_start'])

    op.create_table('alert_state',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('source_hash', sa.String(64), nullable=False),
        sa.Column('last_fired_at', sa.DateTime(), nullable=True),
        sa.Column('fire_count', sa.Integer(), nullable=False),
        sa.Column('escalated', sa.Boolean(), nullable=False),
        sa.Column('cooldown_until', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['rule_id'], ['alert_rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_id', 'source_hash', name='uq_alert_state_key'),
    )

    op.create_table('alert_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('rule_name', sa.String(100), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('source_type', sa.String(10), nullable=False),
        sa.Column('source_value', sa.String(255), nullable=True),
        sa.Column('trigger_count', sa.Integer(), nullable=False),
        sa.Column('time_window_seconds', sa.Integer(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('fired_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_alert_events_severity', 'alert_events', ['severity'])
    op.create_index('ix_alert_events_fired_at', 'alert_events', ['fired_at'])
    op.create_index('idx_alert_events_rule_fired', 'alert_events', ['rule_id', 'fired_at'])

    op.create_table('blocked_ips',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=False),
        sa.Column('blocked_at', sa.DateTime(), nullable=False),
        sa.Column('blocked_until', sa.DateTime(), nullable=False),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('auto_unblock', sa.Boolean(), nullable=False),
        sa.Column('alert_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_blocked_ips_ip_address', 'blocked_ips', ['ip_address'], unique=True)
    op.create_index('ix_blocked_ips_blocked_until', 'blocked_ips', ['blocked_until'])

    op.create_table('ip_reputation',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=False),
        sa.Column('reputation_score', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
        sa.Column('last_incident_at', sa.DateTime(), nullable=True),
        sa.Column('last_decay_at', sa.DateTime(), nullable=True),
        sa.Column('total_alerts', sa.Integer(), nullable=False),
        sa.Column('critical_alerts', sa.Integer(), nullable=False),
        sa.Column('auto_block_count', sa.Integer(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ip_reputation_ip_address', 'ip_reputation', ['ip_address'], unique=True)
    op.create_index('idx_ip_reputation_score', 'ip_reputation', ['reputation_score'])
    op.create_index('idx_ip_reputation_last_incident', 'ip_reputation', ['last_incident_at'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(255), nullable=True),
        sa.Column('endpoint', sa.String(255), nullable=True),
        sa.Column('http_method', sa.String(10), nullable=True),
        sa.Column('request_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(10), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('metadata', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_ip_address', 'audit_logs', ['ip_address'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('idx_audit_logs_event_time', 'audit_logs', ['event_type', 'timestamp'])


def downgrade():
    for table in (
        'audit_logs', 'ip_reputation', 'blocked_ips', 'alert_events', 'alert_state',
        'alert_metrics', 'alert_rules', 'login_attempts', 'api_rate_limits', 'api_tokens', 'users',
    ):
        op.drop_table(table)
