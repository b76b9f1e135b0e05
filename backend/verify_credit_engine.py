from tarot_engine.core.database import build_engine, build_session_factory, init_db
from tarot_engine.models.point_transaction import PointTransaction
from tarot_engine.models.user import User
from tarot_engine.services.credits_engine import (
    DeductionResult,
    InsufficientCredits,
    RefundNoOp,
    RefundResult,
    deduct_reading_credit,
    get_balance,
    refund_reading_credit,
)


def main() -> None:
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    TestingSessionLocal = build_session_factory(engine)

    db = TestingSessionLocal()
    try:
        user_id = "user-1"
        db.add(User(id=user_id, free_point=1, stars=2))
        db.commit()

        first = deduct_reading_credit(db, user_id, "r-1")
        assert isinstance(first, DeductionResult), first
        assert (first.spent_free_point, first.spent_stars) == (1, 0), first
        assert get_balance(db, user_id) == (0, 2)

        again = deduct_reading_credit(db, user_id, "r-1")
        assert isinstance(again, DeductionResult) and again.replayed, again
        assert get_balance(db, user_id) == (0, 2)

        second = deduct_reading_credit(db, user_id, "r-2", amount=2)
        assert isinstance(second, DeductionResult), second
        assert get_balance(db, user_id) == (0, 0)

        short = deduct_reading_credit(db, user_id, "r-3")
        assert isinstance(short, InsufficientCredits), short

        refund = refund_reading_credit(db, user_id, "r-2", "generation failed")
        assert isinstance(refund, RefundResult), refund
        assert get_balance(db, user_id) == (0, 2)

        repeat = refund_reading_credit(db, user_id, "r-2", "generation failed")
        assert isinstance(repeat, RefundNoOp) and repeat.reason == "already_refunded", repeat
        assert get_balance(db, user_id) == (0, 2)

        rows = db.query(PointTransaction).filter(PointTransaction.user_id == user_id).all()
        assert len(rows) == 3, [r.id for r in rows]
        assert sum(r.delta_free_point + r.delta_stars for r in rows) == -1
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
