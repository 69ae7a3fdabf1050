"""Shared test fixtures."""

import itertools
import threading
from decimal import Decimal

import pytest

from ledger.api import build_services
from ledger.config import Settings
from ledger.errors import LedgerServiceError
from ledger.models import RegisterUserRequest
from ledger.notifications import Notifier


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def payment_approved(self, request, entry):
        self.events.append(("payment_approved", request.id))

    def payment_rejected(self, request):
        self.events.append(("payment_rejected", request.id))

    def referral_bonus_granted(self, referral, entry):
        self.events.append(("referral_bonus_granted", referral.id))

    def purchase_completed(self, purchase, entry):
        self.events.append(("purchase_completed", purchase.id))

    def case_opened(self, case_opening, entry):
        self.events.append(("case_opened", case_opening.id))

    def promo_code_applied(self, user_id, result):
        self.events.append(("promo_code_applied", user_id))


class FailingNotifier(Notifier):
    def payment_approved(self, request, entry):
        raise RuntimeError("notification channel down")

    def referral_bonus_granted(self, referral, entry):
        raise RuntimeError("notification channel down")

    def purchase_completed(self, purchase, entry):
        raise RuntimeError("notification channel down")


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'ledger.db'}", log_format="console", admin_open=True)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(settings, notifier):
    services = build_services(settings, notifier)
    services.db.create_all()
    yield services
    services.db.dispose()


@pytest.fixture
def make_user(services):
    """Register a user, optionally funding it through an admin adjustment."""
    counter = itertools.count(1)

    def _make(balance="0", referral_code=None, username=None):
        name = username or f"player{next(counter)}"
        user, _ = services.accounts.register(RegisterUserRequest(
            username=name,
            email=f"{name}@example.com",
            referral_code=referral_code,
        ))
        if Decimal(balance) > 0:
            services.ledger.adjust(user.id, Decimal(balance), "Opening balance")
        return services.accounts.get_user(user.id)

    return _make


@pytest.fixture
def run_concurrently():
    """Start every call at the same moment; return results or raised ledger errors."""

    def _run(*calls):
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def worker(index, call):
            barrier.wait()
            try:
                results[index] = call()
            except LedgerServiceError as e:
                results[index] = e

        threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results

    return _run


@pytest.fixture
def failing_services(settings):
    """Services whose notifier raises on every approval, bonus and purchase."""
    services = build_services(settings, FailingNotifier())
    services.db.create_all()
    yield services
    services.db.dispose()
