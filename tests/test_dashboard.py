"""Dashboard counter tests."""

from datetime import timedelta

from reftrack.models.base import utcnow
from reftrack.services.dashboard_service import get_dashboard_stats, month_start
from reftrack.services.reference_lifecycle import apply_movement, create_reference
from reftrack.services.reference_query import list_references


def _seed(users):
    alice, bob, erin = users["alice"], users["bob"], users["erin"]
    create_reference("local", alice, subject="One", marked_to=[bob.id], remarks="go", priority="High")
    create_reference("local", alice, subject="Two", marked_to=[erin.id], remarks="go")
    three = create_reference("local", erin, subject="Three", marked_to=[bob.id], remarks="go")["reference"]
    apply_movement("local", three["id"], bob, [], "Closed", "Done")


class TestDashboard:

    def test_admin_counters(self, users):
        _seed(users)
        stats = get_dashboard_stats("local", users["carol"])
        assert stats == {
            "open_count": 2,
            "high_priority_count": 1,
            "pending_7_days_count": 0,
            "closed_this_month_count": 1,
            "closed_count": 1,
            "marked_to_user_count": 0,
            "pending_in_division_count": 0,
            "total_references": 3,
        }

    def test_holder_counters(self, users):
        _seed(users)
        stats = get_dashboard_stats("local", users["bob"])
        assert stats["total_references"] == 2
        assert stats["open_count"] == 1
        assert stats["marked_to_user_count"] == 1
        assert stats["pending_in_division_count"] == 1

    def test_clock_drives_age_and_month_counters(self, users):
        _seed(users)
        later = utcnow() + timedelta(days=40)
        stats = get_dashboard_stats("local", users["carol"], now=later)
        assert stats["pending_7_days_count"] == 2
        assert stats["closed_this_month_count"] == 0

    def test_open_matches_list_view(self, users):
        _seed(users)
        carol = users["carol"]
        stats = get_dashboard_stats("local", carol)
        listed = list_references("local", carol, {"status": ["Open", "InProgress", "Reopened"]})
        assert stats["open_count"] == listed["pagination"]["total"]
        assert stats["open_count"] + stats["closed_count"] <= stats["total_references"]

    def test_actor_without_division(self, users, make_user):
        _seed(users)
        nomad = make_user(division=None, role="Delegated Admin")
        stats = get_dashboard_stats("local", nomad)
        assert stats["pending_in_division_count"] == 0
        assert stats["total_references"] == 3

    def test_empty_scope(self, users):
        _seed(users)
        stats = get_dashboard_stats("global", users["sam"])
        assert set(stats.values()) == {0}

    def test_month_start(self):
        now = utcnow().replace(day=17, hour=13)
        start = month_start(now)
        assert (start.day, start.hour, start.minute) == (1, 0, 0)
        assert start.tzinfo == now.tzinfo
