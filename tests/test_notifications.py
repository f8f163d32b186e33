"""Notification sink tests (signal-driven, written after the routing commit)."""

from reftrack.models.notification import Notification
from reftrack.services.notification import NotificationService
from reftrack.services.reference_lifecycle import (
    apply_movement,
    create_reference,
    request_reopen,
    resolve_reopen,
)


def _categories(user):
    return [n.category for n in NotificationService.list_for_recipient(user.id)]


class TestNotificationService:

    def test_broadcast_dedupes_recipients(self, users):
        sent = NotificationService.broadcast(
            recipient_ids=[users["bob"].id, users["bob"].id, users["erin"].id],
            title="Heads up", category="REFERENCE_ASSIGNED",
        )
        assert len(sent) == 2

    def test_list_unread_only(self, users):
        bob = users["bob"]
        first = NotificationService.create(recipient_id=bob.id, title="One", category="REFERENCE_ASSIGNED")
        NotificationService.create(recipient_id=bob.id, title="Two", category="REFERENCE_ASSIGNED")
        first.is_read = True
        assert [n.title for n in NotificationService.list_for_recipient(bob.id, unread_only=True)] == ["Two"]
        assert len(NotificationService.list_for_recipient(bob.id, limit=1)) == 1


class TestRoutingNotifications:

    def test_new_holder_is_notified_not_the_actor(self, users):
        alice, bob = users["alice"], users["bob"]
        ref = create_reference("local", alice, subject="Notify", marked_to=[bob.id], remarks="go")["reference"]

        notes = NotificationService.list_for_recipient(bob.id)
        assert [n.category for n in notes] == ["REFERENCE_ASSIGNED"]
        assert notes[0].reference_id == ref["id"]
        assert notes[0].scope == "local"
        assert ref["ref_code"] in notes[0].title
        assert _categories(alice) == []

    def test_reopen_flow_notifies_admins_then_requester(self, users):
        alice, bob, carol, frank = users["alice"], users["bob"], users["carol"], users["frank"]
        ref = create_reference("local", alice, subject="Reopen me", marked_to=[bob.id], remarks="go")["reference"]
        apply_movement("local", ref["id"], bob, [alice.id], "Closed", "Done")

        request_reopen("local", ref["id"], alice, "Missed an annexure")
        assert "REOPEN_REQUEST" in _categories(carol)
        assert "REOPEN_REQUEST" in _categories(users["sam"])
        assert "REOPEN_REQUEST" not in _categories(frank)

        resolve_reopen("local", ref["id"], carol, False)
        assert "REOPEN_REJECTED" in _categories(alice)

    def test_notification_rows_are_per_recipient(self, users):
        ian, bob, dave = users["ian"], users["bob"], users["dave"]
        create_reference("global", ian, subject="Both", marked_to=[bob.id, dave.id], remarks="go")
        assert Notification.query.filter_by(category="REFERENCE_ASSIGNED").count() == 2
