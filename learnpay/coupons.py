from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update

from learnpay.errors import PaymentValidationError
from learnpay.logging_config import get_logger
from learnpay.models import PaymentCoupon, PaymentCouponRedemption, utcnow
from learnpay.totals import CouponTerms

logger = get_logger("coupons")


def _as_utc(value):
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CouponRedemptionGuard:
    """Validates coupons at checkout and records redemptions once paid."""

    def find_by_code(self, db, code, *, lock=False):
        query = select(PaymentCoupon).where(PaymentCoupon.code == str(code).strip().upper())
        if lock:
            query = query.with_for_update()
        return db.execute(query).scalar_one_or_none()

    def count_user_redemptions(self, db, coupon_id, user_id) -> int:
        if user_id is None:
            return 0
        return db.execute(
            select(func.count(PaymentCouponRedemption.id)).where(
                PaymentCouponRedemption.coupon_id == coupon_id,
                PaymentCouponRedemption.user_id == str(user_id),
            )
        ).scalar_one()

    def check(self, db, coupon, *, currency=None, user_id=None, now=None):
        """Raise PaymentValidationError if the coupon cannot be used right now."""
        now = now or datetime.now(timezone.utc)
        if coupon is None:
            raise PaymentValidationError("Coupon is invalid or expired", code="COUPON_INVALID")
        if coupon.status != "active":
            raise PaymentValidationError("Coupon is not active", code="COUPON_INACTIVE")
        if coupon.valid_from and _as_utc(coupon.valid_from) > now:
            raise PaymentValidationError("Coupon is not yet valid", code="COUPON_NOT_YET_VALID")
        if coupon.valid_until and _as_utc(coupon.valid_until) < now:
            raise PaymentValidationError("Coupon has expired", code="COUPON_EXPIRED")
        if (
            currency
            and coupon.discount_type == "fixed"
            and (coupon.currency or "").upper() != currency.upper()
        ):
            raise PaymentValidationError(
                "Coupon currency does not match order currency", code="COUPON_CURRENCY_MISMATCH"
            )
        if coupon.max_redemptions is not None and coupon.times_redeemed >= coupon.max_redemptions:
            raise PaymentValidationError("Coupon redemption limit has been reached", code="COUPON_REDEMPTION_LIMIT")
        if coupon.per_user_limit is not None and user_id is not None:
            used = self.count_user_redemptions(db, coupon.id, user_id)
            if used >= coupon.per_user_limit:
                raise PaymentValidationError(
                    "Coupon already used the maximum number of times", code="COUPON_USER_LIMIT"
                )
        return coupon

    def preview(self, db, code, *, currency=None, user_id=None, now=None) -> PaymentCoupon:
        """Non-locking validation used while pricing a new payment."""
        return self.check(db, self.find_by_code(db, code), currency=currency, user_id=user_id, now=now)

    def finalize(self, db, intent, *, now=None) -> bool:
        """Record the redemption for a paid intent.

        Runs under a row lock on the coupon. If a concurrent payment consumed
        the last redemption the intent stays paid and nothing is recorded.
        """
        if intent.coupon_id is None:
            return False
        coupon = db.execute(
            select(PaymentCoupon).where(PaymentCoupon.id == intent.coupon_id).with_for_update()
        ).scalar_one_or_none()
        already = db.execute(
            select(PaymentCouponRedemption.id).where(PaymentCouponRedemption.payment_intent_id == intent.id)
        ).first()
        if already:
            return False
        try:
            self.check(db, coupon, user_id=intent.user_id, now=now)
        except PaymentValidationError as exc:
            logger.warning("coupon_redemption_skipped", payment_id=intent.public_id,
                           coupon_id=intent.coupon_id, reason=exc.code)
            return False

        claimed = db.execute(
            update(PaymentCoupon)
            .where(PaymentCoupon.id == coupon.id)
            .where(or_(
                PaymentCoupon.max_redemptions.is_(None),
                PaymentCoupon.times_redeemed < PaymentCoupon.max_redemptions,
            ))
            .values(times_redeemed=PaymentCoupon.times_redeemed + 1)
            .execution_options(synchronize_session="fetch")
        )
        if claimed.rowcount != 1:
            logger.warning("coupon_redemption_skipped", payment_id=intent.public_id,
                           coupon_id=coupon.id, reason="COUPON_REDEMPTION_LIMIT")
            return False
        db.add(PaymentCouponRedemption(
            coupon_id=coupon.id,
            payment_intent_id=intent.id,
            user_id=intent.user_id,
            redeemed_at=now or utcnow(),
        ))
        db.flush()
        logger.info("coupon_redeemed", payment_id=intent.public_id, coupon_id=coupon.id)
        return True

    @staticmethod
    def to_terms(coupon) -> CouponTerms:
        return CouponTerms(
            id=coupon.id,
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            currency=coupon.currency,
        )
