import secrets
from decimal import Decimal
from typing import Optional

import structlog

from .errors import UserNotFoundError
from .models import ReferralView, RegisterUserRequest, UserView
from .referrals import ReferralService
from .tables import User

logger = structlog.get_logger(__name__)


def generate_referral_code(username: str) -> str:
    return f"GH-{username.upper()[:5]}{secrets.token_hex(2).upper()}"


class AccountService:
    """User rows as seen by the ledger. Credentials are produced by the auth layer."""

    def __init__(self, referrals: ReferralService, default_referral_percentage: Decimal = Decimal("5.00")):
        self.referrals = referrals
        self.db = referrals.db
        self.default_referral_percentage = default_referral_percentage

    def register(self, request: RegisterUserRequest) -> tuple[UserView, Optional[ReferralView]]:
        """Create a user with a zero balance and record its referral, if any.

        An unknown referral code never blocks registration.
        """
        with self.db.session() as session:
            user = User(
                username=request.username,
                email=request.email,
                password_hash=request.password_hash,
                role=request.role.value,
                balance_minor=0,
                referral_code=generate_referral_code(request.username),
                referral_percentage=self.default_referral_percentage,
            )
            session.add(user)
            session.flush()

            referral = None
            if request.referral_code:
                referral = self.referrals.record_referral_in(session, request.referral_code, user.id)
                session.refresh(user)

        logger.info("user_registered", user_id=user.id, referred_by_user_id=user.referred_by_user_id)
        return UserView.from_row(user), referral

    def get_user(self, user_id: int) -> UserView:
        with self.db.session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            return UserView.from_row(user)
