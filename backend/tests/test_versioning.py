"""Test the optimistic-concurrency protocol."""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from memo_core.errors import (
    ConcurrentUpdateError, DuplicateDetailsError, RecordDeletedError,
    RecordNotFoundError, StoreError, ValidationFailure,
)
from memo_core.models import Memo, User
from memo_core.schemas import NewUser, UserChanges
from memo_core.users import USER_CONSTRAINTS, UserRepository
from memo_core.versioning import VersionedRecordStore, atomic
from memo_core.visibility import locked_lookup, require_all


@pytest.fixture
def store(db_session):
    return VersionedRecordStore(db_session, Memo)


class TestUpdateWithVersionCheck:
    """Version bumps on success, nothing written on mismatch."""

    def test_update_bumps_version_and_timestamp(self, store, make_user, make_memo):
        memo = make_memo(make_user("alice"), "draft")
        created_at = memo.created_at
        updated_at = memo.updated_at

        updated = store.update_with_version_check(memo.id, 0, {"content": "final"})

        assert updated.version == 1
        assert updated.content == "final"
        assert updated.updated_at > updated_at
        assert updated.created_at == created_at

    def test_stale_version_conflicts_and_leaves_row(self, store, make_user, make_memo):
        memo = make_memo(make_user("bob"), "original")
        store.update_with_version_check(memo.id, 0, {"content": "first"})

        with pytest.raises(ConcurrentUpdateError) as excinfo:
            store.update_with_version_check(memo.id, 0, {"content": "second"})

        assert excinfo.value.context["stored_version"] == 1
        current = store.get(memo.id)
        assert current.version == 1
        assert current.content == "first"

    def test_future_version_conflicts(self, store, make_user, make_memo):
        memo = make_memo(make_user("carol"))

        with pytest.raises(ConcurrentUpdateError):
            store.update_with_version_check(memo.id, 5, {"content": "x"})

    def test_missing_record(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_with_version_check("missing", 0, {"content": "x"})

    def test_sequential_updates_chain_versions(self, store, make_user, make_memo):
        memo = make_memo(make_user("dave"))
        for expected in range(3):
            memo = store.update_with_version_check(memo.id, expected, {"content": f"v{expected + 1}"})
        assert memo.version == 3

    @pytest.mark.parametrize("field", ["version", "deleted", "id", "created_at", "updated_at", "likes", "shares"])
    def test_protocol_and_derived_columns_rejected(self, store, make_user, make_memo, field):
        memo = make_memo(make_user("erin"))

        with pytest.raises(ValidationFailure):
            store.update_with_version_check(memo.id, 0, {field: 7})

        assert store.get(memo.id).version == 0

    def test_unknown_field_rejected(self, store, make_user, make_memo):
        memo = make_memo(make_user("frank"))
        with pytest.raises(ValidationFailure, match="unknown field"):
            store.update_with_version_check(memo.id, 0, {"nonsense": 1})

    def test_null_for_required_column_rejected(self, db_session, make_user):
        user = make_user("nina")
        store = VersionedRecordStore(db_session, User, USER_CONSTRAINTS)

        with pytest.raises(ValidationFailure, match="username cannot be null"):
            store.update_with_version_check(user.id, 0, {"username": None})

        assert store.get(user.id).username == "nina"

    def test_nullable_column_accepts_null(self, store, make_user, make_memo):
        memo = make_memo(make_user("otto"))

        updated = store.update_with_version_check(memo.id, 0, {"caption": None})

        assert updated.version == 1
        assert updated.caption is None


class TestSoftDelete:
    """Soft delete follows the same protocol."""

    def test_delete_marks_row_and_bumps_version(self, store, make_user, make_memo):
        memo = make_memo(make_user("gina"))

        deleted = store.soft_delete(memo.id, 0)

        assert deleted.deleted is True
        assert deleted.version == 1

    def test_second_delete_with_old_version_conflicts(self, store, make_user, make_memo):
        memo = make_memo(make_user("hank"))
        store.soft_delete(memo.id, 0)

        with pytest.raises(ConcurrentUpdateError):
            store.soft_delete(memo.id, 0)

    def test_get_deleted_carries_record(self, store, make_user, make_memo):
        memo = make_memo(make_user("ivy"), "gone")
        store.soft_delete(memo.id, 0)

        with pytest.raises(RecordDeletedError) as excinfo:
            store.get(memo.id)

        assert excinfo.value.record.id == memo.id
        assert excinfo.value.record.content == "gone"
        assert excinfo.value.record.deleted is True

    def test_deleted_row_still_updatable_by_default(self, store, make_user, make_memo):
        memo = make_memo(make_user("jack"))
        store.soft_delete(memo.id, 0)

        updated = store.update_with_version_check(memo.id, 1, {"content": "after"})

        assert updated.version == 2
        assert updated.deleted is True

    def test_guard_rejects_mutating_deleted_row(self, db_session, make_user, make_memo):
        guarded = VersionedRecordStore(db_session, Memo, guard_deleted=True)
        memo = make_memo(make_user("kate"))
        guarded.soft_delete(memo.id, 0)

        with pytest.raises(RecordDeletedError):
            guarded.update_with_version_check(memo.id, 1, {"content": "after"})

        assert guarded.find(memo.id).version == 1


class TestAtomic:
    """Transaction boundary behavior."""

    def test_unmapped_failure_becomes_store_error(self, db_session):
        with pytest.raises(StoreError) as excinfo:
            with atomic(db_session):
                db_session.execute(text("SELECT * FROM no_such_table"))

        assert isinstance(excinfo.value.__cause__, OperationalError)
        assert "no_such_table" not in str(excinfo.value)

    def test_rollback_on_domain_error(self, db_session, make_user):
        user = make_user("liam")

        with pytest.raises(RecordNotFoundError):
            with atomic(db_session):
                db_session.execute(
                    User.__table__.update().where(User.id == user.id).values(about="partial")
                )
                raise RecordNotFoundError()

        assert db_session.get(User, user.id).about == ""

    def test_mapped_constraint_translated(self, db_session, make_user):
        make_user("mia")
        store = VersionedRecordStore(db_session, User, USER_CONSTRAINTS)

        with pytest.raises(DuplicateDetailsError):
            store.insert(User(username="mia", email="other@example.com", password_hash="x"))


class TestSameVersionRace:
    """Writers racing with the same expected version: exactly one wins."""

    WRITERS = 8

    def test_one_writer_wins(self, file_engine):
        Session = sessionmaker(bind=file_engine, autoflush=False)

        setup = Session()
        user_id = UserRepository(setup).create(
            NewUser(username="racer", email="racer@example.com", password_hash="h")
        ).id
        setup.close()

        barrier = threading.Barrier(self.WRITERS)

        def write(n):
            session = Session()
            try:
                barrier.wait()
                UserRepository(session).update(user_id, 0, UserChanges(about=f"writer {n}"))
                return "ok"
            except ConcurrentUpdateError:
                return "conflict"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=self.WRITERS) as pool:
            outcomes = list(pool.map(write, range(self.WRITERS)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == self.WRITERS - 1

        check = Session()
        try:
            user = UserRepository(check).get_by_id(user_id)
            assert user.version == 1
            assert user.about.startswith("writer ")
        finally:
            check.close()


class TestExistenceChecks:

    def test_lookup_takes_key_share_row_lock(self):
        sql = str(locked_lookup(Memo, "m1").compile(dialect=postgresql.dialect()))

        assert "FOR NO KEY UPDATE" in sql

    def test_require_all_locks_in_stable_order(self, db_session, monkeypatch):
        seen = []
        monkeypatch.setattr(
            "memo_core.visibility.require_active", lambda db, model, record_id: seen.append((model, record_id))
        )

        require_all(db_session, [(User, "b"), (Memo, "z"), (User, "a")])

        assert seen == [(Memo, "z"), (User, "a"), (User, "b")]

    def test_require_all_missing_row(self, db_session, make_user):
        with pytest.raises(RecordNotFoundError):
            require_all(db_session, [(User, make_user("nora").id), (Memo, "missing")])
