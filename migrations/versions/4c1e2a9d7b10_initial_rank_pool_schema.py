"""Initial rank / income pool schema"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e2a9d7b10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'ranks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(40), nullable=False, unique=True),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False, unique=True),
        sa.Column('activation_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('referral_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('global_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('level_percentages', sa.JSON(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('activation_amount > 0', name='ck_rank_amount_positive'),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(80), nullable=False, unique=True),
        sa.Column('email', sa.String(120), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, index=True),
        sa.Column('referral_code', sa.String(20), nullable=False, unique=True),
        sa.Column('sponsor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('current_rank_id', sa.Integer(), sa.ForeignKey('ranks.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_suspended', sa.Boolean(), nullable=False),
        sa.Column('available_balance', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('locked_balance', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('total_earnings', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('direct_referrals_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('wallet_address', sa.String(64), nullable=True),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('available_balance >= 0', name='ck_user_available_non_negative'),
        sa.CheckConstraint('locked_balance >= 0', name='ck_user_locked_non_negative'),
        sa.CheckConstraint('total_earnings >= 0', name='ck_user_earnings_non_negative'),
    )
    op.create_index('idx_user_referral_code', 'users', ['referral_code'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('type', sa.String(30), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('rank_id', sa.Integer(), sa.ForeignKey('ranks.id'), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('external_reference', sa.String(160), nullable=True, unique=True),
        sa.Column('counterparty_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('processed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('commissions_processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount >= 0', name='ck_transaction_amount_non_negative'),
    )
    op.create_index('idx_transaction_user_status', 'transactions', ['user_id', 'status'])

    op.create_table(
        'income_pools',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('rank_id', sa.Integer(), sa.ForeignKey('ranks.id'), nullable=False),
        sa.Column('source_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('activation_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('max_pool_income', sa.Numeric(18, 2), nullable=False),
        sa.Column('pool_income', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('claimed_amount', sa.Numeric(18, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('required_direct_referrals', sa.Integer(), nullable=False),
        sa.Column('can_claim', sa.Boolean(), nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('pool_income >= 0', name='ck_pool_income_non_negative'),
        sa.CheckConstraint('pool_income <= max_pool_income', name='ck_pool_income_capped'),
    )
    op.create_index('idx_pool_user_rank', 'income_pools', ['user_id', 'rank_id'])

    op.create_table(
        'income_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('recipient_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('source_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('source_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'),
                  nullable=False, index=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('pool_id', sa.Integer(), sa.ForeignKey('income_pools.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('source_transaction_id', 'recipient_id', 'kind', 'level',
                            name='uq_income_source_recipient_kind_level'),
        sa.CheckConstraint('amount > 0', name='ck_income_amount_positive'),
    )

    op.create_table(
        'platform_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('direct_referral_requirement', sa.Integer(), nullable=False),
        sa.Column('maintenance_mode', sa.Boolean(), nullable=False),
        sa.Column('registration_open', sa.Boolean(), nullable=False),
        sa.Column('welcome_bonus', sa.Numeric(18, 2), nullable=False),
        sa.Column('max_rank_level', sa.Integer(), nullable=False),
        sa.Column('updated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.Integer(), nullable=True, index=True),
        sa.Column('action', sa.String(80), nullable=False, index=True),
        sa.Column('entity_type', sa.String(40), nullable=True),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'payout_queue',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('source_type', sa.String(40), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_payout_amount_positive'),
    )

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('fee', sa.Numeric(18, 2), nullable=False),
        sa.Column('network_fee', sa.Numeric(18, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('destination', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('reference', sa.String(64), nullable=False, unique=True),
        sa.Column('external_txid', sa.String(100), nullable=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('processed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.String(255), nullable=True),
        *_timestamps(),
    )


def downgrade():
    op.drop_table('withdrawals')
    op.drop_table('payout_queue')
    op.drop_table('audit_logs')
    op.drop_table('platform_settings')
    op.drop_table('income_entries')
    op.drop_index('idx_pool_user_rank', table_name='income_pools')
    op.drop_table('income_pools')
    op.drop_index('idx_transaction_user_status', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('idx_user_referral_code', table_name='users')
    op.drop_table('users')
    op.drop_table('ranks')
