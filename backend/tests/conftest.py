import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, BACKEND_DIR)

import app.models  # noqa: F401  registers every table on Base
from app.config import Settings
from app.db.db import Base
from app.models.user_account import UserAccount
from app.services.ledger_client import InMemoryLedger

from factories import WALLET, FakeClock


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return Settings()


@pytest.fixture()
def ledger():
    return InMemoryLedger(treasury_address="AriaTreasury")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def user(db_session):
    account = UserAccount(id=1, username="u_001", wallet_address=WALLET)
    db_session.add(account)
    db_session.commit()
    return account
