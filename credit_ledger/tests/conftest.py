from collections.abc import Callable

import pytest
from sqlmodel import Session, SQLModel

from ..core.config import Settings
from ..core.db import create_engine_for_url
from ..models import AccountRef
from ..services import IdempotencyGuard, LedgerService


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'credits.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(anonymous_free_credits=50, sweeper_enabled=False)


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def service(session: Session, guard: IdempotencyGuard, settings: Settings) -> LedgerService:
    return LedgerService(session, guard=guard, settings=settings)


@pytest.fixture
def user() -> AccountRef:
    return AccountRef(user_id="user-1")


@pytest.fixture
def fund(service: LedgerService) -> Callable[..., AccountRef]:
    counter = {"n": 0}

    def _fund(ref: AccountRef, amount: int) -> AccountRef:
        counter["n"] += 1
        service.charge_credits(ref, amount, f"seed-{ref.user_id}-{counter['n']}")
        return ref

    return _fund
