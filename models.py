# models.py - Canonical Flask-SQLAlchemy models for the financial core
import enum
from decimal import Decimal
from sqlalchemy import UniqueConstraint, Index, text
from extensions import db

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class PurchaseStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class LicenseStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EntryKind(enum.Enum):
    PURCHASE = "purchase"
    BENEFIT = "benefit"
    DIRECT_REFERRAL_COMMISSION = "direct_referral_commission"
    PARENT_BONUS_COMMISSION = "parent_bonus_commission"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"


class EntryStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BenefitDayStatus(enum.Enum):
    SCHEDULED = "scheduled"
    RELEASED = "released"
    FAILED = "failed"


class BenefitRule(enum.Enum):
    CASHBACK = "cashback"
    STANDARD = "standard"


class CommissionTier(enum.Enum):
    DIRECT = "direct"
    PARENT_BONUS = "parent_bonus"


class CommissionStatus(enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    PAID = "paid"
    CANCELLED = "cancelled"


class WalletStatus(enum.Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


class JobStatus(enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


MONEY = db.Numeric(18, 2)
RATE = db.Numeric(10, 6)


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime, default=db.func.now())
    updated_at = db.Column(db.DateTime,
                           default=db.func.now(),
                           onupdate=db.func.now())

# ===========================================================
# USERS & COHORTS
# ===========================================================

class Cohort(db.Model, BaseMixin):
    """Per-cohort commission configuration; absent values fall back to defaults."""
    __tablename__ = 'cohorts'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    direct_rate = db.Column(RATE, nullable=True)
    parent_rate = db.Column(RATE, nullable=True)
    direct_unlock_days = db.Column(db.Integer, nullable=True)
    parent_unlock_days = db.Column(db.Integer, nullable=True)

    def __repr__(self):
        return f"<Cohort {self.name}>"


class User(db.Model, BaseMixin):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)  # ID of user who referred this user
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=True)

    referrer = db.relationship('User', remote_side=[id], backref='referrals')
    cohort = db.relationship('Cohort')

    def __repr__(self):
        return f"<User {self.id} {self.username}>"


# ===========================================================
# PACKAGES, PURCHASES, LICENSES
# ===========================================================

class PackageCatalog(db.Model, BaseMixin):
    """Catalog of purchasable licenses and their benefit terms."""
    __tablename__ = 'package_catalog'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    price = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="USDT")
    daily_benefit_rate = db.Column(RATE, nullable=False, default=Decimal("0.125"))
    benefit_days = db.Column(db.Integer, nullable=False, default=8)
    total_cycles = db.Column(db.Integer, nullable=False, default=5)
    # NULL cashback_rate means daily_benefit_rate * cashback_days
    cashback_rate = db.Column(RATE, nullable=True)
    cashback_days = db.Column(db.Integer, nullable=False, default=8)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class Purchase(db.Model, BaseMixin):
    __tablename__ = 'purchases'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey('package_catalog.id'), nullable=True)
    amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="USDT")
    network = db.Column(db.String(20), nullable=False, default="BEP20")
    status = db.Column(db.Enum(PurchaseStatus), nullable=False, default=PurchaseStatus.PENDING, index=True)

    wallet_address = db.Column(db.String(64), nullable=True)
    tx_hash = db.Column(db.String(128), nullable=True, unique=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', backref=db.backref('purchases', lazy='dynamic'))
    package = db.relationship('PackageCatalog')

    __table_args__ = (
        Index('idx_purchase_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<Purchase {self.id} user={self.user_id} {self.amount}>"


class License(db.Model, BaseMixin):
    """Benefit-bearing license created when a purchase is confirmed."""
    __tablename__ = 'licenses'
    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    principal = db.Column(MONEY, nullable=False)
    daily_benefit_rate = db.Column(RATE, nullable=False)
    benefit_days = db.Column(db.Integer, nullable=False)
    total_cycles = db.Column(db.Integer, nullable=False)
    cashback_rate = db.Column(RATE, nullable=False)
    cashback_days = db.Column(db.Integer, nullable=False)

    status = db.Column(db.Enum(LicenseStatus), nullable=False, default=LicenseStatus.ACTIVE, index=True)
    activated_at = db.Column(db.DateTime, nullable=False)
    paused_at = db.Column(db.DateTime, nullable=True)
    paused_reason = db.Column(db.String(255), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    purchase = db.relationship('Purchase', backref=db.backref('license', uselist=False))


# ===========================================================
# LEDGER
# ===========================================================

class LedgerEntry(db.Model):
    """Append-only monetary event. Only status and reversal link change after insert."""
    __tablename__ = 'ledger_entries'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    kind = db.Column(db.Enum(EntryKind), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="USDT")
    balance_after = db.Column(MONEY, nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    status = db.Column(db.Enum(EntryStatus), nullable=False, default=EntryStatus.CONFIRMED)
    idempotency_key = db.Column(db.String(160), nullable=False)

    purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('benefit_schedules.id'), nullable=True)
    commission_id = db.Column(db.Integer, db.ForeignKey('commissions.id'), nullable=True)
    related_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    reversed_by_id = db.Column(db.Integer, db.ForeignKey('ledger_entries.id'), nullable=True)

    description = db.Column(db.String(255), nullable=True)
    meta = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=db.func.now())

    __table_args__ = (
        UniqueConstraint('idempotency_key', name='uq_ledger_idempotency_key'),
        Index('idx_ledger_user_id_desc', 'user_id', 'id'),
        Index('idx_ledger_user_kind', 'user_id', 'kind'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "balanceAfter": str(self.balance_after),
            "status": self.status.value,
            "idempotencyKey": self.idempotency_key,
            "purchaseId": self.purchase_id,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# BENEFIT SCHEDULES
# ===========================================================

class BenefitSchedule(db.Model, BaseMixin):
    __tablename__ = 'benefit_schedules'
    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=False)
    license_id = db.Column(db.Integer, db.ForeignKey('licenses.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    cycle = db.Column(db.Integer, nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False)
    production_days = db.Column(db.Integer, nullable=False, default=8)
    principal = db.Column(MONEY, nullable=False)
    daily_rate = db.Column(RATE, nullable=False)
    daily_amount = db.Column(MONEY, nullable=False)
    rule = db.Column(db.Enum(BenefitRule), nullable=False)

    days = db.relationship('BenefitDay', back_populates='schedule',
                           order_by='BenefitDay.day_index', lazy='selectin')
    license = db.relationship('License', backref=db.backref('schedules', order_by='BenefitSchedule.cycle'))

    __table_args__ = (
        UniqueConstraint('purchase_id', 'cycle', name='uq_schedule_purchase_cycle'),
    )


class BenefitDay(db.Model):
    __tablename__ = 'benefit_days'
    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('benefit_schedules.id'), nullable=False)
    day_index = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    amount = db.Column(MONEY, nullable=False)
    status = db.Column(db.Enum(BenefitDayStatus), nullable=False, default=BenefitDayStatus.SCHEDULED)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey('ledger_entries.id'), nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)

    schedule = db.relationship('BenefitSchedule', back_populates='days')

    __table_args__ = (
        UniqueConstraint('schedule_id', 'day_index', name='uq_benefit_day'),
        Index('idx_benefit_day_due_status', 'status', 'due_date'),
    )


# ===========================================================
# COMMISSIONS
# ===========================================================

class Commission(db.Model, BaseMixin):
    __tablename__ = 'commissions'
    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    source_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey('package_catalog.id'), nullable=True)
    tier = db.Column(db.Enum(CommissionTier), nullable=False)
    rate = db.Column(RATE, nullable=False)
    base_amount = db.Column(MONEY, nullable=False)
    amount = db.Column(MONEY, nullable=False)
    status = db.Column(db.Enum(CommissionStatus), nullable=False, default=CommissionStatus.PENDING)
    unlock_date = db.Column(db.DateTime, nullable=False)
    strategy = db.Column(db.String(20), nullable=False, default="default")
    idempotency_key = db.Column(db.String(160), nullable=False)

    ledger_entry_id = db.Column(db.Integer, db.ForeignKey('ledger_entries.id', use_alter=True, name='fk_commission_ledger_entry'), nullable=True)
    available_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint('idempotency_key', name='uq_commission_idempotency_key'),
        UniqueConstraint('recipient_id', 'purchase_id', 'tier', name='uq_commission_recipient_purchase_tier'),
        Index('idx_commission_status_unlock', 'status', 'unlock_date'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "recipientId": self.recipient_id,
            "sourceUserId": self.source_user_id,
            "purchaseId": self.purchase_id,
            "tier": self.tier.value,
            "rate": str(self.rate),
            "amount": str(self.amount),
            "status": self.status.value,
            "unlockDate": self.unlock_date.isoformat(),
        }


# ===========================================================
# WALLET POOL
# ===========================================================

class WalletAddress(db.Model, BaseMixin):
    __tablename__ = 'wallet_addresses'
    id = db.Column(db.Integer, primary_key=True)
    address = db.Column(db.String(64), unique=True, nullable=False)
    network = db.Column(db.String(20), nullable=False, default="BEP20")
    currency = db.Column(db.String(10), nullable=False, default="USDT")
    purpose = db.Column(db.String(20), nullable=False, default="collection")
    status = db.Column(db.Enum(WalletStatus), nullable=False, default=WalletStatus.AVAILABLE)

    assigned_purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=True)
    assigned_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    assignment_expires_at = db.Column(db.DateTime, nullable=True)
    expected_amount = db.Column(MONEY, nullable=True)
    cooldown_until = db.Column(db.DateTime, nullable=True)

    last_shown_at = db.Column(db.DateTime, nullable=True)
    shown_count = db.Column(db.Integer, nullable=False, default=0)
    total_assigned = db.Column(db.Integer, nullable=False, default=0)
    disabled_reason = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        Index('idx_wallet_pool_lookup', 'network', 'currency', 'purpose', 'status'),
    )

    def to_dict(self):
        return {
            "address": self.address,
            "network": self.network,
            "currency": self.currency,
            "status": self.status.value,
            "expiresAt": self.assignment_expires_at.isoformat() if self.assignment_expires_at else None,
        }


class WalletAssignment(db.Model):
    """Audit trail of every address hand-out."""
    __tablename__ = 'wallet_assignments'
    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallet_addresses.id'), nullable=False, index=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey('purchases.id'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    released_at = db.Column(db.DateTime, nullable=True)
    outcome = db.Column(db.String(20), nullable=True)  # released | expired | confirmed | failed

    wallet = db.relationship('WalletAddress')


# ===========================================================
# JOB STATE
# ===========================================================

class JobRun(db.Model):
    __tablename__ = 'job_runs'
    id = db.Column(db.Integer, primary_key=True)
    job = db.Column(db.String(40), unique=True, nullable=False)
    status = db.Column(db.Enum(JobStatus), nullable=False, default=JobStatus.SUCCESS)
    started_at = db.Column(db.DateTime, nullable=True)
    last_run = db.Column(db.DateTime, nullable=True)
    last_success = db.Column(db.DateTime, nullable=True)
    as_of = db.Column(db.DateTime, nullable=True)
    processed = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(MONEY, nullable=False, default=Decimal("0.00"))
    duration_ms = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "job": self.job,
            "status": self.status.value,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastSuccess": self.last_success.isoformat() if self.last_success else None,
            "processed": self.processed,
            "errors": self.errors,
            "totalAmount": str(self.total_amount),
            "durationMs": self.duration_ms,
            "errorMessage": self.error_message,
        }
