"""
Shared fixtures for the ledger test suite

Key Components:
1. File-backed SQLite database per test with the full schema
2. Session factory for tests that need two concurrent units of work
3. Account factories with preset bucket balances
4. Principals for the account owner and an administrator
5. Deterministic payout provider and a notification recorder
"""

import logging
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_tables
from models import Account, Plan
from services.banking_service import BankingService
from services.notification_service import notification_service
from services.payout_provider import StubPayoutProvider
from utils.authorization import Principal
from utils.rate_limit_store import KeyedRateLimitStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture
def engine(tmp_path):
    """Fresh database file for every test"""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'ledger_test.db'}")
    assert create_tables(bind=test_engine) is True
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    db_session = session_factory()
    yield db_session
    db_session.close()


@pytest.fixture
def make_account(session):
    """Factory creating committed accounts with the given bucket balances"""
    counter = {'n': 0}

    def _make(deposit="0", interest="0", bonus="0", withdraw="0", is_admin=False,
              referral_code=None, username=None):
        counter['n'] += 1
        name = username or f"user{counter['n']}"
        account = Account(
            email=f"{name}@example.com",
            username=name,
            name=name.title(),
            is_admin=is_admin,
            referral_code=referral_code,
            deposit=Decimal(str(deposit)),
            interest=Decimal(str(interest)),
            bonus=Decimal(str(bonus)),
            withdraw=Decimal(str(withdraw)),
        )
        session.add(account)
        session.commit()
        return account

    return _make


@pytest.fixture
def account(make_account):
    return make_account(deposit="100")


@pytest.fixture
def owner(account):
    return Principal.from_account(account)


@pytest.fixture
def admin_account(make_account):
    return make_account(is_admin=True, username="admin")


@pytest.fixture
def admin(admin_account):
    return Principal.from_account(admin_account)


@pytest.fixture
def plan(session):
    gold = Plan(name="Gold", min_amount=Decimal("50"), roi_percent=Decimal("10"), duration_days=30)
    session.add(gold)
    session.commit()
    return gold


@pytest.fixture
def banking():
    """Banking service with its own rate limit store so tests do not share counters"""
    return BankingService(rate_limits=KeyedRateLimitStore())


@pytest.fixture
def stub_provider():
    return StubPayoutProvider(balances={'BTC': '1000', 'ETH': '1000', 'USDT': '100000'})


@pytest.fixture
def notifications():
    """Records every notification sent during the test"""
    sent = []
    notification_service.register_handler(sent.append)
    yield sent
    notification_service.clear_handlers()


@pytest.fixture
def reload(session):
    """Latest persisted state of a row, including writes from other sessions"""
    def _reload(entity):
        session.expire_all()
        return session.get(type(entity), entity.id)

    return _reload
