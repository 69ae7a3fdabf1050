"""
Unit Tests for referrals and referral bonuses
"""

import pytest
from decimal import Decimal

from ledger.errors import InvalidAmountError, NotFoundOrAlreadyProcessedError, UserNotFoundError
from ledger.models import PurchaseProductRequest, ReferralEvent, TransactionType


class TestRecordReferral:
    """Tests for linking new users to referrers."""

    def test_register_with_valid_code(self, services, make_user):
        referrer = make_user()

        referred = make_user(referral_code=referrer.referral_code)

        assert referred.referred_by_user_id == referrer.id
        listing = services.referrals.list_referred(referrer.id)
        assert listing.count == 1
        assert listing.referred[0].username == referred.username
        assert listing.referred[0].bonus_granted is False

    def test_unknown_code_does_not_block_registration(self, services, make_user):
        user = make_user(referral_code="GH-NOPE0000")

        assert user.referred_by_user_id is None
        assert services.accounts.get_user(user.id).id == user.id

    def test_referrer_is_never_reassigned(self, services, make_user):
        first = make_user()
        second = make_user()
        referred = make_user(referral_code=first.referral_code)

        assert services.referrals.record_referral(second.referral_code, referred.id) is None

        assert services.accounts.get_user(referred.id).referred_by_user_id == first.id
        assert services.referrals.list_referred(second.id).count == 0

    def test_user_cannot_refer_themselves(self, services, make_user):
        user = make_user()

        assert services.referrals.record_referral(user.referral_code, user.id) is None
        assert services.accounts.get_user(user.id).referred_by_user_id is None


class TestCheckCode:
    def test_valid_code(self, services, make_user):
        referrer = make_user(username="alice")

        result = services.referrals.check_code(referrer.referral_code)

        assert result.is_valid
        assert result.referrer_id == referrer.id
        assert result.referrer_name == "alice"

    def test_invalid_code(self, services):
        assert services.referrals.check_code("GH-MISSING").is_valid is False


class TestGrantBonus:
    """Tests for granting referral bonuses."""

    def _link(self, services, make_user):
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)
        referral = services.referrals.list_referred(referrer.id).referred[0].referral
        return referrer, referred, referral

    def test_grant_credits_referrer(self, services, make_user, notifier):
        referrer, _, referral = self._link(services, make_user)

        result = services.referrals.grant_referral_bonus(referral.id, Decimal("5"), ReferralEvent.MANUAL)

        assert result.created
        assert result.ledger_entry.transaction_type == TransactionType.REFERRAL_BONUS
        assert result.ledger_entry.related_referral_id == referral.id
        assert result.ledger_entry.referral_event == ReferralEvent.MANUAL
        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("5.00")
        assert ("referral_bonus_granted", referral.id) in notifier.events

    def test_grant_is_idempotent_per_event(self, services, make_user):
        referrer, _, referral = self._link(services, make_user)

        first = services.referrals.grant_referral_bonus(referral.id, Decimal("5"), ReferralEvent.FIRST_PURCHASE)
        second = services.referrals.grant_referral_bonus(referral.id, Decimal("5"), ReferralEvent.FIRST_PURCHASE)

        assert first.created
        assert not second.created
        assert second.ledger_entry.id == first.ledger_entry.id
        assert services.ledger.get_balance(referrer.id).total_entries == 1

    def test_distinct_events_each_pay(self, services, make_user):
        referrer, _, referral = self._link(services, make_user)

        services.referrals.grant_referral_bonus(referral.id, Decimal("1"), ReferralEvent.FIRST_PURCHASE)
        services.referrals.grant_referral_bonus(referral.id, Decimal("2"), ReferralEvent.MANUAL)

        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("3.00")

    def test_concurrent_grants_pay_once(self, services, make_user, run_concurrently):
        referrer, _, referral = self._link(services, make_user)

        def grant():
            return services.referrals.grant_referral_bonus(referral.id, Decimal("4"), ReferralEvent.MANUAL)

        results = run_concurrently(grant, grant, grant)

        assert not any(isinstance(r, Exception) for r in results)
        assert sum(r.created for r in results) == 1
        assert len({r.ledger_entry.id for r in results}) == 1
        balance = services.ledger.get_balance(referrer.id)
        assert balance.current_balance == Decimal("4.00")
        assert balance.total_entries == 1

    def test_unknown_referral(self, services):
        with pytest.raises(NotFoundOrAlreadyProcessedError):
            services.referrals.grant_referral_bonus(777, Decimal("5"), ReferralEvent.MANUAL)

    def test_invalid_bonus_amount(self, services, make_user):
        _, _, referral = self._link(services, make_user)

        with pytest.raises(InvalidAmountError):
            services.referrals.grant_referral_bonus(referral.id, Decimal("0"), ReferralEvent.MANUAL)


class TestPurchaseTrigger:
    """Tests for the bonus paid when a referred user buys something."""

    def test_purchase_pays_percentage_once(self, services, make_user):
        """A purchase trigger delivered twice credits the referrer 5% exactly once."""
        referrer = make_user()
        buyer = make_user(balance="200", referral_code=referrer.referral_code)

        purchase = services.settlement.settle_purchase(PurchaseProductRequest(
            user_id=buyer.id, product_id="aimbot", product_name="Aimbot", price=Decimal("100"),
        )).purchase

        replay = services.referrals.on_purchase_completed(buyer.id, purchase.id, 10000, "Aimbot")

        assert not replay.created
        assert replay.ledger_entry.amount == Decimal("5.00")
        assert replay.ledger_entry.referral_event == ReferralEvent.FIRST_PURCHASE
        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("5.00")
        assert services.referrals.list_referred(referrer.id).referred[0].bonus_granted

    def test_settled_purchases_pay_only_first(self, services, make_user):
        referrer = make_user()
        buyer = make_user(balance="200", referral_code=referrer.referral_code)
        request = PurchaseProductRequest(user_id=buyer.id, product_id="esp", product_name="ESP", price=Decimal("40"))

        services.settlement.settle_purchase(request)
        services.settlement.settle_purchase(request)

        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("2.00")

    def test_first_purchase_bonus_reaches_referrer(self, services, make_user, notifier):
        """The bonus of a referred buyer's first purchase is credited and announced."""
        referrer = make_user()
        buyer = make_user(balance="50", referral_code=referrer.referral_code)
        referral = services.referrals.list_referred(referrer.id).referred[0].referral

        services.settlement.settle_purchase(PurchaseProductRequest(
            user_id=buyer.id, product_id="esp", product_name="ESP", price=Decimal("20"),
        ))

        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("1.00")
        assert ("referral_bonus_granted", referral.id) in notifier.events

    def test_zero_share_first_purchase_is_not_carried_over(self, services, make_user):
        """A first purchase too small to earn a bonus is still the first purchase."""
        referrer = make_user()
        buyer = make_user(balance="200", referral_code=referrer.referral_code)

        services.settlement.settle_purchase(PurchaseProductRequest(
            user_id=buyer.id, product_id="sticker", product_name="Sticker", price=Decimal("0.09"),
        ))
        services.settlement.settle_purchase(PurchaseProductRequest(
            user_id=buyer.id, product_id="aim", product_name="Aim Assist", price=Decimal("100"),
        ))

        assert services.ledger.get_balance(referrer.id).current_balance == Decimal("0.00")
        assert services.referrals.list_referred(referrer.id).referred[0].bonus_granted is False

    def test_deposit_approval_pays_no_bonus(self, services, make_user):
        """Only purchases trigger a bonus; a referred user's deposit never does."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)
        request = services.payments.submit(referred.id, Decimal("100"))

        services.payments.approve(request.id)

        assert services.ledger.get_balance(referrer.id).total_entries == 0
        assert {e.value for e in ReferralEvent} == {"first_purchase", "manual"}

    def test_buyer_without_referrer(self, services, make_user):
        buyer = make_user(balance="10")

        assert services.referrals.on_purchase_completed(buyer.id, 1, 1000, "Key") is None


class TestListReferred:
    def test_unknown_referrer(self, services):
        with pytest.raises(UserNotFoundError):
            services.referrals.list_referred(5555)

    def test_bonus_flags(self, services, make_user):
        referrer = make_user()
        rewarded = make_user(referral_code=referrer.referral_code)
        make_user(referral_code=referrer.referral_code)
        referral_id = next(
            r.referral.id for r in services.referrals.list_referred(referrer.id).referred
            if r.username == rewarded.username
        )
        services.referrals.grant_referral_bonus(referral_id, Decimal("1"), ReferralEvent.MANUAL)

        flags = {r.username: r.bonus_granted for r in services.referrals.list_referred(referrer.id).referred}

        assert flags[rewarded.username] is True
        assert list(flags.values()).count(False) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
