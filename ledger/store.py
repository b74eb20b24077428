from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import User, LedgerEntry, EntryKind, EntryStatus
from ledger.keys import reversal_key, withdrawal_key
from utils import money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Kinds that may carry a negative amount
DEBIT_KINDS = {EntryKind.WITHDRAWAL, EntryKind.ADJUSTMENT, EntryKind.TRANSFER}

REFERENCE_FIELDS = ("purchase_id", "schedule_id", "commission_id", "related_user_id")

# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class LedgerError(Exception):
    """Base ledger exception"""
    pass

class LedgerValidationError(LedgerError):
    pass

class LedgerInvariantError(LedgerError):
    """A posting would break a ledger invariant (e.g. negative balance)."""
    pass


# ==========================================================
#                  LEDGER STORE
# ==========================================================
class LedgerStore:
    """
    Append-only, idempotent ledger.

    Every entry records the owner's running balance at insertion time.
    The unique idempotency key is the correctness backstop: a second post
    with the same key returns the stored entry instead of writing again.
    """

    def __init__(self, currency: str = "USDT", allow_negative_balance: bool = False):
        self.currency = currency
        self.allow_negative_balance = allow_negative_balance

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def post_if_absent(self, owner_id: int, kind, amount, idempotency_key: str,
                       reference: Optional[Dict[str, Any]] = None,
                       metadata: Optional[Dict[str, Any]] = None,
                       status: EntryStatus = EntryStatus.CONFIRMED,
                       currency: Optional[str] = None,
                       description: Optional[str] = None) -> Tuple[LedgerEntry, bool]:
        kind = self._coerce_kind(kind)
        amount = self._validate_amount(kind, amount)
        if not idempotency_key:
            raise LedgerValidationError("idempotency_key is required")

        existing = self.get_by_key(idempotency_key)
        if existing is not None:
            logger.debug(f"Ledger key {idempotency_key} already posted as entry {existing.id}")
            return existing, False

        reference = reference or {}
        unknown = set(reference) - set(REFERENCE_FIELDS)
        if unknown:
            raise LedgerValidationError(f"Unknown reference fields: {sorted(unknown)}")

        try:
            with db.session.begin_nested():
                self._lock_owner(owner_id)
                prior = self._latest_confirmed_balance(owner_id)

                if status == EntryStatus.CONFIRMED:
                    balance_after = prior + amount
                else:
                    balance_after = prior

                if balance_after < ZERO and amount < ZERO and not self.allow_negative_balance:
                    raise LedgerInvariantError(
                        f"Posting {amount} for user {owner_id} would leave balance {balance_after}"
                    )

                entry = LedgerEntry(
                    user_id=owner_id,
                    kind=kind,
                    amount=amount,
                    currency=currency or self.currency,
                    balance_after=balance_after,
                    status=status,
                    idempotency_key=idempotency_key,
                    description=description,
                    meta=metadata or {},
                    **reference,
                )
                db.session.add(entry)
                db.session.flush()
        except IntegrityError:
            # Lost the insert race; the winner is the entry
            winner = self.get_by_key(idempotency_key)
            if winner is None:
                raise
            logger.info(f"Ledger key {idempotency_key} inserted concurrently, returning entry {winner.id}")
            return winner, False

        logger.info(
            f"Ledger entry {entry.id}: user {owner_id} {kind.value} {amount} "
            f"-> balance {entry.balance_after} [{idempotency_key}]"
        )
        return entry, True

    def debit_withdrawal(self, owner_id: int, amount, withdrawal_id,
                         metadata: Optional[Dict[str, Any]] = None) -> Tuple[LedgerEntry, bool]:
        """Withdrawal debit requested by the payout subsystem; never overdraws."""
        value = money(amount)
        if value <= ZERO:
            raise LedgerValidationError("Withdrawal amount must be positive")
        return self.post_if_absent(
            owner_id=owner_id,
            kind=EntryKind.WITHDRAWAL,
            amount=-value,
            idempotency_key=withdrawal_key(withdrawal_id),
            metadata=metadata or {"source": "api"},
            description=f"Withdrawal {withdrawal_id}",
        )

    def reverse(self, entry_id: int, reason: str,
                metadata: Optional[Dict[str, Any]] = None) -> Tuple[LedgerEntry, bool]:
        """
        Compensate a confirmed entry with an opposite adjustment.

        The original stays confirmed and is linked to its compensation, so the
        owner's confirmed entries still sum to the running balance.
        """
        original = db.session.get(LedgerEntry, entry_id)
        if original is None:
            raise LedgerValidationError(f"Ledger entry {entry_id} not found")
        if original.status != EntryStatus.CONFIRMED:
            raise LedgerInvariantError(
                f"Only confirmed entries can be reversed (entry {entry_id} is {original.status.value})"
            )

        meta = {"reason": reason, "reverses": original.id}
        meta.update(metadata or {})
        compensation, created = self.post_if_absent(
            owner_id=original.user_id,
            kind=EntryKind.ADJUSTMENT,
            amount=-Decimal(original.amount),
            idempotency_key=reversal_key(original.id),
            reference={"purchase_id": original.purchase_id},
            metadata=meta,
            currency=original.currency,
            description=f"Reversal of entry {original.id}: {reason}",
        )
        if original.reversed_by_id is None:
            original.reversed_by_id = compensation.id
            db.session.flush()
        return compensation, created

    def cancel_pending(self, entry_id: int, status: EntryStatus = EntryStatus.CANCELLED) -> LedgerEntry:
        """pending -> cancelled|failed. Pending entries never moved the balance."""
        if status not in (EntryStatus.CANCELLED, EntryStatus.FAILED):
            raise LedgerValidationError(f"Pending entries can only become cancelled or failed, not {status.value}")
        entry = db.session.get(LedgerEntry, entry_id)
        if entry is None:
            raise LedgerValidationError(f"Ledger entry {entry_id} not found")
        if entry.status != EntryStatus.PENDING:
            raise LedgerInvariantError(f"Entry {entry_id} is {entry.status.value}, expected pending")
        entry.status = status
        db.session.flush()
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        return LedgerEntry.query.filter_by(idempotency_key=idempotency_key).first()

    def balance_of(self, owner_id: int) -> Decimal:
        return self._latest_confirmed_balance(owner_id)

    def history_of(self, owner_id: int, kind=None, date_from=None, date_to=None,
                   page: int = 1, per_page: int = 50) -> Dict[str, Any]:
        query = LedgerEntry.query.filter(LedgerEntry.user_id == owner_id)
        if kind is not None:
            query = query.filter(LedgerEntry.kind == self._coerce_kind(kind))
        if date_from is not None:
            query = query.filter(LedgerEntry.created_at >= date_from)
        if date_to is not None:
            query = query.filter(LedgerEntry.created_at <= date_to)

        per_page = max(1, min(per_page, 200))
        pagination = query.order_by(LedgerEntry.id.desc()).paginate(
            page=max(page, 1), per_page=per_page, error_out=False
        )
        return {
            "items": pagination.items,
            "total": pagination.total,
            "page": pagination.page,
            "pages": pagination.pages,
            "per_page": per_page,
        }

    def confirmed_sum(self, owner_id: int) -> Decimal:
        total = db.session.query(func.coalesce(func.sum(LedgerEntry.amount), 0)).filter(
            LedgerEntry.user_id == owner_id,
            LedgerEntry.status == EntryStatus.CONFIRMED,
        ).scalar()
        return money(total)

    def verify_owner(self, owner_id: int) -> Tuple[bool, Decimal, Decimal]:
        balance = self.balance_of(owner_id)
        total = self.confirmed_sum(owner_id)
        return balance == total, balance, total

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _latest_confirmed_balance(self, owner_id: int) -> Decimal:
        latest = (LedgerEntry.query
                  .filter_by(user_id=owner_id, status=EntryStatus.CONFIRMED)
                  .order_by(LedgerEntry.id.desc())
                  .first())
        if latest is None:
            return ZERO
        return money(latest.balance_after)

    def _lock_owner(self, owner_id: int) -> None:
        # Serializes balance computation per owner (FOR UPDATE is a no-op on SQLite)
        owner = (db.session.query(User.id)
                 .filter(User.id == owner_id)
                 .with_for_update()
                 .first())
        if owner is None:
            raise LedgerValidationError(f"Unknown ledger owner {owner_id}")

    @staticmethod
    def _coerce_kind(kind) -> EntryKind:
        if isinstance(kind, EntryKind):
            return kind
        try:
            return EntryKind(kind)
        except ValueError:
            raise LedgerValidationError(f"Unknown ledger entry kind: {kind}")

    @staticmethod
    def _validate_amount(kind: EntryKind, amount) -> Decimal:
        try:
            value = money(amount)
        except ValueError as e:
            raise LedgerValidationError(str(e))
        if value == ZERO:
            raise LedgerValidationError("Ledger amount cannot be zero")
        if value < ZERO and kind not in DEBIT_KINDS:
            raise LedgerValidationError(f"{kind.value} entries must be positive, got {value}")
        return value
