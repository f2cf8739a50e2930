"""Test the user repository."""
import pytest
from pydantic import ValidationError

from memo_core.config import settings
from memo_core.errors import (
    ConcurrentUpdateError, DuplicateDetailsError, RecordDeletedError, RecordNotFoundError,
)
from memo_core.schemas import NewUser, UserChanges


class TestCreateUser:

    def test_create_starts_at_version_zero(self, make_user):
        user = make_user("alice")

        assert user.version == 0
        assert user.deleted is False
        assert user.email == "alice@example.com"

    def test_duplicate_username(self, users, make_user):
        make_user("alice")
        with pytest.raises(DuplicateDetailsError):
            users.create(NewUser(username="alice", email="fresh@example.com", password_hash="h"))

    def test_duplicate_email(self, users, make_user):
        make_user("alice")
        with pytest.raises(DuplicateDetailsError):
            users.create(NewUser(username="fresh", email="alice@example.com", password_hash="h"))

    def test_counters_cannot_be_supplied(self):
        with pytest.raises(ValidationError):
            NewUser(username="x", email="x@example.com", password_hash="h", follower_count=10)


class TestLookups:

    def test_get_by_id_email_username(self, users, make_user):
        user = make_user("bob")

        assert users.get_by_id(user.id).username == "bob"
        assert users.get_by_email("bob@example.com").id == user.id
        assert users.get_by_username("bob").id == user.id

    def test_missing_user(self, users):
        with pytest.raises(RecordNotFoundError):
            users.get_by_username("nobody")

    def test_deleted_user_lookup_carries_record(self, users, make_user):
        user = make_user("carol")
        users.delete(user.id, 0)

        with pytest.raises(RecordDeletedError) as excinfo:
            users.get_by_email("carol@example.com")
        assert excinfo.value.record.username == "carol"

    def test_search_is_case_insensitive(self, users, make_user):
        make_user("dave")
        make_user("erin")

        found = users.search("DAV")

        assert [u.username for u in found] == ["dave"]

    def test_list_excludes_deleted(self, users, make_user):
        keep = make_user("frank")
        drop = make_user("gina")
        users.delete(drop.id, 0)

        ids = [u.id for u in users.list_users(page=1, page_size=50)]

        assert keep.id in ids
        assert drop.id not in ids


class TestUpdateUser:

    def test_update_then_stale_update(self, users, make_user):
        user = make_user("hank")

        updated = users.update(user.id, 0, UserChanges(about="hello"))
        assert updated.version == 1
        assert updated.about == "hello"

        with pytest.raises(ConcurrentUpdateError):
            users.update(user.id, 0, UserChanges(about="stale"))
        assert users.get_by_id(user.id).about == "hello"

    def test_only_set_fields_change(self, users, make_user):
        user = make_user("ivy")

        updated = users.update(user.id, 0, UserChanges(status="busy"))

        assert updated.status == "busy"
        assert updated.first_name == "Ivy"

    def test_rename_to_taken_username(self, users, make_user):
        make_user("jack")
        kate = make_user("kate")

        with pytest.raises(DuplicateDetailsError):
            users.update(kate.id, 0, UserChanges(username="jack"))
        assert users.get_by_id(kate.id).version == 0

    def test_derived_counter_not_in_changes(self):
        with pytest.raises(ValidationError):
            UserChanges(following_count=3)

    @pytest.mark.parametrize("field", ["username", "email", "password_hash", "first_name", "last_name", "is_activated"])
    def test_explicit_null_rejected(self, field):
        with pytest.raises(ValidationError, match=f"{field} cannot be null"):
            UserChanges(**{field: None})

    def test_omitted_fields_are_not_nulled(self, users, make_user):
        user = make_user("lena")

        updated = users.update(user.id, 0, UserChanges(about="hi"))

        assert updated.username == "lena"
        assert updated.email == "lena@example.com"
        assert updated.is_activated is False

    def test_profile_update_uses_query_budget(self, users, make_user, monkeypatch):
        budgets = []
        monkeypatch.setattr("memo_core.versioning.apply_statement_timeout", lambda db, seconds: budgets.append(seconds))
        user = make_user("milo")

        users.update(user.id, 0, UserChanges(status="away"))

        assert budgets
        assert set(budgets) == {settings.query_timeout_seconds}


class TestFollowLists:

    def test_followers_and_following(self, users, social, make_user):
        liam = make_user("liam")
        mia = make_user("mia")
        noah = make_user("noah")
        social.follow(mia.id, liam.id)
        social.follow(noah.id, liam.id)
        social.follow(liam.id, noah.id)

        followers = {u.username for u in users.get_followers(liam.id)}
        following = {u.username for u in users.get_following(liam.id)}

        assert followers == {"mia", "noah"}
        assert following == {"noah"}

    def test_deleted_follower_hidden(self, users, social, make_user):
        olga = make_user("olga")
        paul = make_user("paul")
        social.follow(paul.id, olga.id)
        users.delete(paul.id, 0)

        assert users.get_followers(olga.id) == []
