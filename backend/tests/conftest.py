"""Shared fixtures: in-memory store and small factories."""
import pytest
from sqlalchemy.orm import sessionmaker

from memo_core.database import Base, make_engine
from memo_core.memos import MemoRepository
from memo_core.schemas import NewMemo, NewUser
from memo_core.social import SocialRepository
from memo_core.users import UserRepository


@pytest.fixture
def engine():
    """In-memory SQLite engine with foreign keys enforced."""
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create in-memory database session for testing."""
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def users(db_session):
    return UserRepository(db_session)


@pytest.fixture
def memos(db_session):
    return MemoRepository(db_session)


@pytest.fixture
def social(db_session):
    return SocialRepository(db_session)


@pytest.fixture
def make_user(users):
    """Factory for registered users with unique handles."""
    def _make(username: str):
        return users.create(NewUser(
            username=username,
            email=f"{username}@example.com",
            first_name=username.capitalize(),
            password_hash="hashed",
        ))
    return _make


@pytest.fixture
def make_memo(memos):
    """Factory for text memos."""
    def _make(owner, content: str = "hello"):
        return memos.create(owner.id, NewMemo(content=content))
    return _make


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite so separate sessions really are separate connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'memos.db'}", timeout=30)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()
