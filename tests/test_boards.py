"""
Tests for board routing and notification scoping.
"""

from datetime import datetime

import pytest

from aside import boards, storage
from aside.boards import TagScope


T0 = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def family(db):
    """#family shared board: alice owns, bob joined; carol is an outsider."""
    alice = storage.create_user(db, "+15554440001")
    bob = storage.create_user(db, "+15554440002")
    carol = storage.create_user(db, "+15554440003")
    board = storage.create_shared_board(db, "family", alice.id)
    storage.add_board_member(db, board.id, bob.id)
    return {"alice": alice.id, "bob": bob.id, "carol": carol.id, "board": board}


def store(db, user_id: int, content: str, tags: list[str]):
    return storage.insert_message(
        db, sender_id=f"sender-{user_id}", user_id=user_id, content=content, tags=tags, created_at=T0
    )


class TestRouteTag:

    def test_member_routes_to_shared_board(self, db, family):
        route = boards.route_tag(db, "family", family["bob"])

        assert route.scope is TagScope.SHARED
        assert route.board_id == family["board"].id

    def test_non_member_routes_private(self, db, family):
        route = boards.route_tag(db, "family", family["carol"])

        assert route.scope is TagScope.PRIVATE
        assert route.board_id is None

    def test_unknown_tag_is_private(self, db, family):
        assert boards.route_tag(db, "movies", family["alice"]).scope is TagScope.PRIVATE

    def test_sentinel_is_private(self, db, family):
        assert boards.route_tag(db, "untagged", family["alice"]).scope is TagScope.PRIVATE

    def test_board_names_are_exact(self, db, family):
        assert boards.route_tag(db, "Family", family["alice"]).scope is TagScope.PRIVATE

    def test_route_tags_keeps_order(self, db, family):
        routes = boards.route_tags(db, ["movies", "family"], family["alice"])
        assert [(r.tag, r.scope) for r in routes] == [
            ("movies", TagScope.PRIVATE),
            ("family", TagScope.SHARED),
        ]


class TestNotificationSet:

    def test_private_message_notifies_owner_only(self, db, family):
        assert boards.notification_set(db, family["alice"], ["movies"]) == {family["alice"]}

    def test_shared_message_notifies_all_members(self, db, family):
        recipients = boards.notification_set(db, family["bob"], ["family"])
        assert recipients == {family["alice"], family["bob"]}

    def test_outsider_same_name_notifies_only_outsider(self, db, family):
        assert boards.notification_set(db, family["carol"], ["family"]) == {family["carol"]}

    def test_notification_set_for_message(self, db, family):
        message = store(db, family["bob"], "#family dinner", ["family"])
        assert boards.notification_set_for(db, message) == {family["alice"], family["bob"]}

    def test_new_member_included(self, db, family):
        storage.add_board_member(db, family["board"].id, family["carol"])
        recipients = boards.notification_set(db, family["alice"], ["family"])
        assert family["carol"] in recipients


class TestBoardListings:

    def test_shared_listing_for_member(self, db, family):
        store(db, family["alice"], "#family dinner", ["family"])
        store(db, family["bob"], "#family dessert", ["family"])
        store(db, family["carol"], "#family private", ["family"])
        store(db, family["bob"], "#movies heat", ["movies"])

        messages, total = boards.list_shared_board(db, family["board"], family["alice"])

        assert total == 2
        assert {m.content for m in messages} == {"#family dinner", "#family dessert"}

    def test_shared_listing_rejects_non_member(self, db, family):
        with pytest.raises(PermissionError):
            boards.list_shared_board(db, family["board"], family["carol"])

    def test_private_listing_ignores_shared_board(self, db, family):
        store(db, family["bob"], "#family dessert", ["family"])
        store(db, family["carol"], "#family private", ["family"])

        messages, total = boards.list_private_tag(db, family["carol"], "family")

        assert total == 1
        assert messages[0].content == "#family private"

    def test_members_listed_in_join_order(self, db, family):
        assert storage.members_of(db, family["board"].id) == [family["alice"], family["bob"]]
