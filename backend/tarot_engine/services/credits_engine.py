from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tarot_engine.core.errors import NotFoundError, PersistenceError, ValidationError
from tarot_engine.models.point_transaction import (
    READING_REFUND,
    READING_REWARD,
    READING_SPEND,
    PointTransaction,
    transaction_id_for,
)
from tarot_engine.models.user import User
from tarot_engine.schemas.reading import RefundMetadata, RewardMetadata, SpendMetadata
from tarot_engine.services.rewards import READING_COMPLETED, get_event_rewards, reading_cost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeductionResult:
    transaction_id: str
    spent_free_point: int
    spent_stars: int
    # True when the deduction already existed and nothing new was written
    replayed: bool = False


@dataclass(frozen=True)
class InsufficientCredits:
    required: int
    free_point: int
    stars: int

    @property
    def available(self) -> int:
        return self.free_point + self.stars


@dataclass(frozen=True)
class RefundResult:
    transaction_id: str
    original_transaction_id: str
    refunded_free_point: int
    refunded_stars: int


@dataclass(frozen=True)
class RefundNoOp:
    reason: str
    transaction_id: str | None = None


def _lock_user(db: Session, user_id: str) -> User | None:
    # FOR UPDATE serializes concurrent balance changes for one user; dialects
    # without row locks (SQLite) serialize writers at the database level
    return db.query(User).filter(User.id == user_id).with_for_update().first()


def get_balance(db: Session, user_id: str) -> tuple[int, int]:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError(f"user not found: {user_id}")
    return int(user.free_point or 0), int(user.stars or 0)


def _replayed_deduction(entry: PointTransaction) -> DeductionResult:
    return DeductionResult(
        transaction_id=entry.id,
        spent_free_point=-int(entry.delta_free_point or 0),
        spent_stars=-int(entry.delta_stars or 0),
        replayed=True,
    )


def deduct_reading_credit(
    db: Session,
    user_id: str,
    reading_id: str,
    amount: int | None = None,
    *,
    question_length: int = 0,
    commit: bool = True,
) -> DeductionResult | InsufficientCredits:
    """Spend credits for one reading, promotional balance first.

    The ledger entry id is derived from ``reading_id``: calling this again for
    the same reading returns the recorded deduction without touching the
    balance. With ``commit=False`` the writes are flushed and left for the
    caller to commit together with its own changes.
    """
    txn_id = transaction_id_for(READING_SPEND, reading_id)
    existing = db.get(PointTransaction, txn_id)
    if existing is not None:
        if existing.user_id != user_id:
            raise ValidationError("reading id belongs to another user", code="READING_ID_CONFLICT")
        logger.info("credits.deduct_replayed user_id=%s reading_id=%s", user_id, reading_id)
        return _replayed_deduction(existing)

    amount = int(amount) if amount is not None else reading_cost(db)
    if amount <= 0:
        raise ValueError("amount must be positive")

    user = _lock_user(db, user_id)
    if user is None:
        raise NotFoundError(f"user not found: {user_id}")

    free_point = int(user.free_point or 0)
    stars = int(user.stars or 0)
    if free_point + stars < amount:
        logger.info(
            "credits.insufficient user_id=%s reading_id=%s required=%s free_point=%s stars=%s",
            user_id,
            reading_id,
            amount,
            free_point,
            stars,
        )
        return InsufficientCredits(required=amount, free_point=free_point, stars=stars)

    use_free_point = min(amount, free_point)
    use_stars = amount - use_free_point
    user.free_point = free_point - use_free_point
    user.stars = stars - use_stars

    metadata = SpendMetadata(
        reading_id=reading_id,
        free_point_used=use_free_point,
        stars_used=use_stars,
        question_length=question_length,
    )
    db.add(
        PointTransaction(
            id=txn_id,
            user_id=user_id,
            event_type=READING_SPEND,
            delta_free_point=-use_free_point,
            delta_stars=-use_stars,
            reading_id=reading_id,
            event_metadata=metadata.model_dump(mode="json"),
        )
    )
    try:
        db.flush()
    except IntegrityError:
        # a concurrent request for the same reading won the insert; the
        # deduction is the first write of its transaction so nothing else is lost
        db.rollback()
        existing = db.get(PointTransaction, txn_id)
        if existing is None:
            raise PersistenceError(f"deduction for reading {reading_id} conflicted and vanished")
        return _replayed_deduction(existing)

    if commit:
        db.commit()
    logger.info(
        "credits.deducted user_id=%s reading_id=%s free_point=%s stars=%s",
        user_id,
        reading_id,
        use_free_point,
        use_stars,
    )
    return DeductionResult(transaction_id=txn_id, spent_free_point=use_free_point, spent_stars=use_stars)


def refund_reading_credit(
    db: Session,
    user_id: str,
    reading_id: str,
    reason: str = "Reading failed - credit refund",
    *,
    commit: bool = True,
) -> RefundResult | RefundNoOp:
    original = (
        db.query(PointTransaction)
        .filter(
            PointTransaction.user_id == user_id,
            PointTransaction.event_type == READING_SPEND,
            PointTransaction.reading_id == reading_id,
        )
        .order_by(PointTransaction.created_at.desc())
        .first()
    )
    if original is None:
        logger.info("credits.refund_noop user_id=%s reading_id=%s reason=no_deduction", user_id, reading_id)
        return RefundNoOp(reason="no_deduction")

    already = db.query(PointTransaction).filter(PointTransaction.reference_id == original.id).first()
    if already is not None:
        logger.info(
            "credits.refund_noop user_id=%s reading_id=%s reason=already_refunded refund_id=%s",
            user_id,
            reading_id,
            already.id,
        )
        return RefundNoOp(reason="already_refunded", transaction_id=already.id)

    user = _lock_user(db, user_id)
    if user is None:
        raise NotFoundError(f"user not found for refund: {user_id}")

    refund_free_point = -int(original.delta_free_point or 0)
    refund_stars = -int(original.delta_stars or 0)
    txn_id = transaction_id_for(READING_REFUND, reading_id)
    metadata = RefundMetadata(
        reading_id=reading_id,
        original_transaction_id=original.id,
        reason=reason,
        free_point_refunded=refund_free_point,
        stars_refunded=refund_stars,
    )
    try:
        # a lost insert race rolls back only this savepoint
        with db.begin_nested():
            user.free_point = int(user.free_point or 0) + refund_free_point
            user.stars = int(user.stars or 0) + refund_stars
            db.add(
                PointTransaction(
                    id=txn_id,
                    user_id=user_id,
                    event_type=READING_REFUND,
                    delta_free_point=refund_free_point,
                    delta_stars=refund_stars,
                    reading_id=reading_id,
                    reference_id=original.id,
                    event_metadata=metadata.model_dump(mode="json"),
                )
            )
            db.flush()
    except IntegrityError:
        logger.info("credits.refund_noop user_id=%s reading_id=%s reason=concurrent_refund", user_id, reading_id)
        return RefundNoOp(reason="already_refunded", transaction_id=txn_id)

    if commit:
        db.commit()
    logger.info(
        "credits.refunded user_id=%s reading_id=%s free_point=%s stars=%s reason=%s",
        user_id,
        reading_id,
        refund_free_point,
        refund_stars,
        reason,
    )
    return RefundResult(
        transaction_id=txn_id,
        original_transaction_id=original.id,
        refunded_free_point=refund_free_point,
        refunded_stars=refund_stars,
    )


def grant_reading_reward(db: Session, user_id: str, reading_id: str, *, commit: bool = True) -> PointTransaction | None:
    """EXP and coins for a completed reading; at most once per reading."""
    txn_id = transaction_id_for(READING_REWARD, reading_id)
    if db.get(PointTransaction, txn_id) is not None:
        return None

    rewards = get_event_rewards(db, READING_COMPLETED)
    if rewards.exp <= 0 and rewards.coins <= 0:
        return None

    user = _lock_user(db, user_id)
    if user is None:
        return None
    entry = PointTransaction(
        id=txn_id,
        user_id=user_id,
        event_type=READING_REWARD,
        delta_coins=rewards.coins,
        delta_exp=rewards.exp,
        reading_id=reading_id,
        event_metadata=RewardMetadata(reading_id=reading_id, reward_name=READING_COMPLETED).model_dump(mode="json"),
    )
    try:
        with db.begin_nested():
            user.exp = int(user.exp or 0) + rewards.exp
            user.coins = int(user.coins or 0) + rewards.coins
            db.add(entry)
            db.flush()
    except IntegrityError:
        logger.info("credits.reward_noop user_id=%s reading_id=%s reason=concurrent_reward", user_id, reading_id)
        return None
    if commit:
        db.commit()
    return entry
