"""initial financial core schema

Revision ID: 4c2e8a91d7b3
Revises:
Create Date: 2026-10-18 09:12:40.318226

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c2e8a91d7b3'
down_revision = None
branch_labels = None
depends_on = None


MONEY = sa.Numeric(precision=18, scale=2)
RATE = sa.Numeric(precision=10, scale=6)

purchase_status = sa.Enum('PENDING', 'CONFIRMED', 'EXPIRED', 'CANCELLED', 'COMPLETED', name='purchasestatus')
license_status = sa.Enum('ACTIVE', 'PAUSED', 'COMPLETED', 'CANCELLED', name='licensestatus')
entry_kind = sa.Enum('PURCHASE', 'BENEFIT', 'DIRECT_REFERRAL_COMMISSION', 'PARENT_BONUS_COMMISSION',
                     'WITHDRAWAL', 'ADJUSTMENT', 'TRANSFER', name='entrykind')
entry_status = sa.Enum('PENDING', 'CONFIRMED', 'FAILED', 'CANCELLED', name='entrystatus')
benefit_day_status = sa.Enum('SCHEDULED', 'RELEASED', 'FAILED', name='benefitdaystatus')
benefit_rule = sa.Enum('CASHBACK', 'STANDARD', name='benefitrule')
commission_tier = sa.Enum('DIRECT', 'PARENT_BONUS', name='commissiontier')
commission_status = sa.Enum('PENDING', 'AVAILABLE', 'PAID', 'CANCELLED', name='commissionstatus')
wallet_status = sa.Enum('AVAILABLE', 'ASSIGNED', 'COOLDOWN', 'DISABLED', name='walletstatus')
job_status = sa.Enum('RUNNING', 'SUCCESS', 'ERROR', 'SKIPPED', name='jobstatus')


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade():
    op.create_table(
        'cohorts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=80), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('direct_rate', RATE, nullable=True),
        sa.Column('parent_rate', RATE, nullable=True),
        sa.Column('direct_unlock_days', sa.Integer(), nullable=True),
        sa.Column('parent_unlock_days', sa.Integer(), nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=80), nullable=False),
        sa.Column('email', sa.String(length=120), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('referred_by', sa.Integer(), nullable=True),
        sa.Column('cohort_id', sa.Integer(), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(['cohort_id'], ['cohorts.id']),
        sa.ForeignKeyConstraint(['referred_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('username'),
    )

    op.create_table(
        'package_catalog',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=40), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('daily_benefit_rate', RATE, nullable=False),
        sa.Column('benefit_days', sa.Integer(), nullable=False),
        sa.Column('total_cycles', sa.Integer(), nullable=False),
        sa.Column('cashback_rate', RATE, nullable=True),
        sa.Column('cashback_days', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )

    op.create_table(
        'purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('network', sa.String(length=20), nullable=False),
        sa.Column('status', purchase_status, nullable=False),
        sa.Column('wallet_address', sa.String(length=64), nullable=True),
        sa.Column('tx_hash', sa.String(length=128), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(['package_id'], ['package_catalog.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash'),
    )
    with op.batch_alter_table('purchases', schema=None) as batch_op:
        batch_op.create_index('idx_purchase_user_status', ['user_id', 'status'], unique=False)
        batch_op.create_index(batch_op.f('ix_purchases_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_purchases_user_id'), ['user_id'], unique=False)

    op.create_table(
        'licenses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('principal', MONEY, nullable=False),
        sa.Column('daily_benefit_rate', RATE, nullable=False),
        sa.Column('benefit_days', sa.Integer(), nullable=False),
        sa.Column('total_cycles', sa.Integer(), nullable=False),
        sa.Column('cashback_rate', RATE, nullable=False),
        sa.Column('cashback_days', sa.Integer(), nullable=False),
        sa.Column('status', license_status, nullable=False),
        sa.Column('activated_at', sa.DateTime(), nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('paused_reason', sa.String(length=255), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id'),
    )
    with op.batch_alter_table('licenses', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_licenses_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_licenses_user_id'), ['user_id'], unique=False)

    op.create_table(
        'benefit_schedules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('license_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('production_days', sa.Integer(), nullable=False),
        sa.Column('principal', MONEY, nullable=False),
        sa.Column('daily_rate', RATE, nullable=False),
        sa.Column('daily_amount', MONEY, nullable=False),
        sa.Column('rule', benefit_rule, nullable=False),
        *timestamps(),
        sa.ForeignKeyConstraint(['license_id'], ['licenses.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id', 'cycle', name='uq_schedule_purchase_cycle'),
    )

    op.create_table(
        'commissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('source_user_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('tier', commission_tier, nullable=False),
        sa.Column('rate', RATE, nullable=False),
        sa.Column('base_amount', MONEY, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', commission_status, nullable=False),
        sa.Column('unlock_date', sa.DateTime(), nullable=False),
        sa.Column('strategy', sa.String(length=20), nullable=False),
        sa.Column('idempotency_key', sa.String(length=160), nullable=False),
        sa.Column('ledger_entry_id', sa.Integer(), nullable=True),
        sa.Column('available_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(['package_id'], ['package_catalog.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['recipient_id'], ['users.id']),
        sa.ForeignKeyConstraint(['source_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_commission_idempotency_key'),
        sa.UniqueConstraint('recipient_id', 'purchase_id', 'tier', name='uq_commission_recipient_purchase_tier'),
    )
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.create_index('idx_commission_status_unlock', ['status', 'unlock_date'], unique=False)
        batch_op.create_index(batch_op.f('ix_commissions_recipient_id'), ['recipient_id'], unique=False)

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', entry_kind, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('balance_after', MONEY, server_default=sa.text('0.00'), nullable=False),
        sa.Column('status', entry_status, nullable=False),
        sa.Column('idempotency_key', sa.String(length=160), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=True),
        sa.Column('schedule_id', sa.Integer(), nullable=True),
        sa.Column('commission_id', sa.Integer(), nullable=True),
        sa.Column('related_user_id', sa.Integer(), nullable=True),
        sa.Column('reversed_by_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['commission_id'], ['commissions.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['related_user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['reversed_by_id'], ['ledger_entries.id']),
        sa.ForeignKeyConstraint(['schedule_id'], ['benefit_schedules.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_ledger_idempotency_key'),
    )
    with op.batch_alter_table('ledger_entries', schema=None) as batch_op:
        batch_op.create_index('idx_ledger_user_id_desc', ['user_id', 'id'], unique=False)
        batch_op.create_index('idx_ledger_user_kind', ['user_id', 'kind'], unique=False)

    # commissions <-> ledger_entries reference each other
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.create_foreign_key('fk_commission_ledger_entry', 'ledger_entries', ['ledger_entry_id'], ['id'])

    op.create_table(
        'benefit_days',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('day_index', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', benefit_day_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.Column('ledger_entry_id', sa.Integer(), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['ledger_entry_id'], ['ledger_entries.id']),
        sa.ForeignKeyConstraint(['schedule_id'], ['benefit_schedules.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('schedule_id', 'day_index', name='uq_benefit_day'),
    )
    with op.batch_alter_table('benefit_days', schema=None) as batch_op:
        batch_op.create_index('idx_benefit_day_due_status', ['status', 'due_date'], unique=False)

    op.create_table(
        'wallet_addresses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('address', sa.String(length=64), nullable=False),
        sa.Column('network', sa.String(length=20), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('purpose', sa.String(length=20), nullable=False),
        sa.Column('status', wallet_status, nullable=False),
        sa.Column('assigned_purchase_id', sa.Integer(), nullable=True),
        sa.Column('assigned_user_id', sa.Integer(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('assignment_expires_at', sa.DateTime(), nullable=True),
        sa.Column('expected_amount', MONEY, nullable=True),
        sa.Column('cooldown_until', sa.DateTime(), nullable=True),
        sa.Column('last_shown_at', sa.DateTime(), nullable=True),
        sa.Column('shown_count', sa.Integer(), nullable=False),
        sa.Column('total_assigned', sa.Integer(), nullable=False),
        sa.Column('disabled_reason', sa.String(length=255), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(['assigned_purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['assigned_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('address'),
    )
    with op.batch_alter_table('wallet_addresses', schema=None) as batch_op:
        batch_op.create_index('idx_wallet_pool_lookup', ['network', 'currency', 'purpose', 'status'], unique=False)

    op.create_table(
        'wallet_assignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=True),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallet_addresses.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('wallet_assignments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_wallet_assignments_wallet_id'), ['wallet_id'], unique=False)

    op.create_table(
        'job_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job', sa.String(length=40), nullable=False),
        sa.Column('status', job_status, nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('last_run', sa.DateTime(), nullable=True),
        sa.Column('last_success', sa.DateTime(), nullable=True),
        sa.Column('as_of', sa.DateTime(), nullable=True),
        sa.Column('processed', sa.Integer(), nullable=False),
        sa.Column('errors', sa.Integer(), nullable=False),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job'),
    )


def downgrade():
    op.drop_table('job_runs')
    with op.batch_alter_table('wallet_assignments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_wallet_assignments_wallet_id'))
    op.drop_table('wallet_assignments')
    with op.batch_alter_table('wallet_addresses', schema=None) as batch_op:
        batch_op.drop_index('idx_wallet_pool_lookup')
    op.drop_table('wallet_addresses')
    with op.batch_alter_table('benefit_days', schema=None) as batch_op:
        batch_op.drop_index('idx_benefit_day_due_status')
    op.drop_table('benefit_days')
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.drop_constraint('fk_commission_ledger_entry', type_='foreignkey')
    with op.batch_alter_table('ledger_entries', schema=None) as batch_op:
        batch_op.drop_index('idx_ledger_user_kind')
        batch_op.drop_index('idx_ledger_user_id_desc')
    op.drop_table('ledger_entries')
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_commissions_recipient_id'))
        batch_op.drop_index('idx_commission_status_unlock')
    op.drop_table('commissions')
    op.drop_table('benefit_schedules')
    with op.batch_alter_table('licenses', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_licenses_user_id'))
        batch_op.drop_index(batch_op.f('ix_licenses_status'))
    op.drop_table('licenses')
    with op.batch_alter_table('purchases', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_purchases_user_id'))
        batch_op.drop_index(batch_op.f('ix_purchases_status'))
        batch_op.drop_index('idx_purchase_user_status')
    op.drop_table('purchases')
    op.drop_table('package_catalog')
    op.drop_table('users')
    op.drop_table('cohorts')

    bind = op.get_bind()
    for enum_type in (job_status, wallet_status, commission_status, commission_tier, benefit_rule,
                      benefit_day_status, entry_status, entry_kind, license_status, purchase_status):
        enum_type.drop(bind, checkfirst=True)
