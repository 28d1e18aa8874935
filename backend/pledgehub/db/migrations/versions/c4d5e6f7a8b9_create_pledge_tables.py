"""create pledge tables

Revision ID: c4d5e6f7a8b9
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'c4d5e6f7a8b9'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(18, 4)
LIVE_PLEDGE = "status NOT IN ('executed', 'failed', 'cancelled')"


def _partial_unique(name, table, columns, where):
    op.create_index(
        name,
        table,
        columns,
        unique=True,
        postgresql_where=sa.text(where),
        sqlite_where=sa.text(where),
    )


def upgrade() -> None:
    """Create users, access requests, sessions, pledges, payments, executions and audit log."""

    # ============================================================================
    # 1. users
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=False, server_default='user'),
        sa.Column('has_pledge_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('linked_brokerage_account_id', sa.String(18), nullable=True),
        sa.Column('linked_broker', sa.String(), nullable=True),
        sa.Column('pledge_access_granted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # ============================================================================
    # 2. pledge_access_requests
    # ============================================================================
    op.create_table(
        'pledge_access_requests',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('user_id', sa.String(32), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('brokerage_account_id', sa.String(18), nullable=False),
        sa.Column('broker', sa.String(), nullable=False),
        sa.Column('trading_experience', sa.String(), nullable=True),
        sa.Column('annual_income_range', sa.String(), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False),
        sa.Column('consent_given', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('reviewed_by', sa.String(32), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.CheckConstraint('risk_score BETWEEN 0 AND 100', name='ck_access_requests_risk_score'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pledge_access_requests_user_id', 'pledge_access_requests', ['user_id'])
    op.create_index('ix_access_requests_status', 'pledge_access_requests', ['status'])
    # One approved link per brokerage account, one pending request per user
    _partial_unique('uq_access_requests_approved_account', 'pledge_access_requests',
                    ['brokerage_account_id'], "status = 'approved'")
    _partial_unique('uq_access_requests_pending_user', 'pledge_access_requests',
                    ['user_id'], "status = 'pending'")

    # ============================================================================
    # 3. pledge_sessions
    # ============================================================================
    op.create_table(
        'pledge_sessions',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('stock_symbol', sa.String(), nullable=False),
        sa.Column('stock_name', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('session_mode', sa.String(), nullable=False),
        sa.Column('execution_rule', sa.String(), nullable=False, server_default='manual'),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('session_start', sa.DateTime(), nullable=False),
        sa.Column('session_end', sa.DateTime(), nullable=False),
        sa.Column('min_qty', sa.Integer(), nullable=True),
        sa.Column('max_qty', sa.Integer(), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=True),
        sa.Column('convenience_fee_type', sa.String(), nullable=False, server_default='flat'),
        sa.Column('convenience_fee_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('commission_rate_override', MONEY, nullable=True),
        sa.Column('allow_amo', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stock_price', MONEY, nullable=True),
        sa.Column('last_executed_at', sa.DateTime(), nullable=True),
        sa.Column('execution_notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('min_qty IS NULL OR max_qty IS NULL OR min_qty <= max_qty',
                           name='ck_pledge_sessions_qty_bounds'),
        sa.CheckConstraint('convenience_fee_amount >= 0', name='ck_pledge_sessions_fee'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pledge_sessions_status', 'pledge_sessions', ['status'])
    op.create_index('ix_pledge_sessions_stock_symbol', 'pledge_sessions', ['stock_symbol'])

    # ============================================================================
    # 4. pledges
    # ============================================================================
    op.create_table(
        'pledges',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('pledge_sessions.id'), nullable=False),
        sa.Column('user_id', sa.String(32), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('brokerage_account_id', sa.String(18), nullable=False),
        sa.Column('stock_symbol', sa.String(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('price_target', MONEY, nullable=False),
        sa.Column('side', sa.String(), nullable=False),
        sa.Column('consent_hash', sa.String(64), nullable=True),
        sa.Column('risk_acknowledgment', sa.JSON(), nullable=True),
        sa.Column('digital_consent', sa.JSON(), nullable=True),
        sa.Column('convenience_fee_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('convenience_fee_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('convenience_fee_payment_id', sa.String(32), nullable=True),
        sa.Column('auto_sell_config', sa.JSON(), nullable=True),
        sa.Column('auto_sell_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='draft'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('client_correlation_id', sa.String(64), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('qty > 0', name='ck_pledges_qty_positive'),
        sa.CheckConstraint('price_target > 0', name='ck_pledges_price_positive'),
        sa.CheckConstraint('convenience_fee_amount >= 0', name='ck_pledges_fee'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pledges_session_status', 'pledges', ['session_id', 'status'])
    op.create_index('ix_pledges_user_id', 'pledges', ['user_id'])
    op.create_index('ix_pledges_client_correlation_id', 'pledges', ['client_correlation_id'])
    # One live pledge per user per session
    _partial_unique('uq_pledges_live_per_user_session', 'pledges', ['user_id', 'session_id'], LIVE_PLEDGE)

    # ============================================================================
    # 5. pledge_payments
    # ============================================================================
    op.create_table(
        'pledge_payments',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('pledge_id', sa.String(32), sa.ForeignKey('pledges.id'), nullable=True),
        sa.Column('user_id', sa.String(32), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('payment_ref', sa.String(), nullable=True),
        sa.Column('payment_provider', sa.String(), nullable=False),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount >= 0', name='ck_pledge_payments_amount'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pledge_payments_pledge_id', 'pledge_payments', ['pledge_id'])
    op.create_index('ix_pledge_payments_user_id', 'pledge_payments', ['user_id'])

    # ============================================================================
    # 6. pledge_execution_records
    # ============================================================================
    op.create_table(
        'pledge_execution_records',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('pledge_id', sa.String(32), sa.ForeignKey('pledges.id'), nullable=False),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('pledge_sessions.id'), nullable=False),
        sa.Column('user_id', sa.String(32), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('brokerage_account_id', sa.String(18), nullable=False),
        sa.Column('stock_symbol', sa.String(), nullable=False),
        sa.Column('side', sa.String(), nullable=False),
        sa.Column('pledged_qty', sa.Integer(), nullable=False),
        sa.Column('executed_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('executed_price', MONEY, nullable=True),
        sa.Column('total_execution_value', MONEY, nullable=False, server_default='0'),
        sa.Column('platform_commission', MONEY, nullable=False, server_default='0'),
        sa.Column('commission_rate', MONEY, nullable=True),
        sa.Column('broker_commission', MONEY, nullable=False, server_default='0'),
        sa.Column('realized_pl', MONEY, nullable=True),
        sa.Column('net_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('broker_order_id', sa.String(), nullable=True),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('settlement_date', sa.Date(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_records_user_id', 'pledge_execution_records', ['user_id'])
    op.create_index('ix_execution_records_session_id', 'pledge_execution_records', ['session_id'])
    # A leg can be written once unless the earlier attempt failed
    _partial_unique('uq_execution_records_leg', 'pledge_execution_records',
                    ['pledge_id', 'side'], "status <> 'failed'")

    # ============================================================================
    # 7. pledge_audit_logs
    # ============================================================================
    op.create_table(
        'pledge_audit_logs',
        sa.Column('sequence', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('actor_id', sa.String(32), nullable=True),
        sa.Column('actor_role', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target_type', sa.String(), nullable=False),
        sa.Column('target_pledge_id', sa.String(32), nullable=True),
        sa.Column('target_session_id', sa.String(32), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('sequence'),
        sa.UniqueConstraint('id'),
    )
    op.create_index('ix_pledge_audit_logs_actor_id', 'pledge_audit_logs', ['actor_id'])
    op.create_index('ix_pledge_audit_logs_target_pledge_id', 'pledge_audit_logs', ['target_pledge_id'])
    op.create_index('ix_pledge_audit_logs_target_session_id', 'pledge_audit_logs', ['target_session_id'])
    op.create_index('ix_pledge_audit_logs_created_at', 'pledge_audit_logs', ['created_at'])


def downgrade() -> None:
    """Drop pledge tables."""
    op.drop_table('pledge_audit_logs')
    op.drop_table('pledge_execution_records')
    op.drop_table('pledge_payments')
    op.drop_table('pledges')
    op.drop_table('pledge_sessions')
    op.drop_table('pledge_access_requests')
    op.drop_table('users')
