"""Tests for the unlock scheduler — pure unlock-time computation."""

from datetime import datetime, timedelta, timezone

from drip_engine.tests.conftest import NOW, make_items, make_participant, make_sequence


def _complete(participant, item_id, at):
    participant["item_progress"][item_id] = {"status": "completed", "completed_at": at.isoformat()}


class TestComputeUnlock:

    def test_all_at_once_unlocks_at_registration(self):
        from drip_engine.services.unlock_scheduler import unlock_schedule

        seq = make_sequence(delivery_mode="all_at_once")
        p = make_participant(seq)
        assert set(unlock_schedule(p, seq).values()) == {NOW}

    def test_drip_from_registration(self):
        from drip_engine.services.unlock_scheduler import compute_unlock

        seq = make_sequence()
        p = make_participant(seq)
        assert compute_unlock(p, seq, seq["items"][0]) == NOW
        assert compute_unlock(p, seq, seq["items"][1]) == NOW + timedelta(hours=24)
        assert compute_unlock(p, seq, seq["items"][2]) == NOW + timedelta(hours=48)

    def test_drip_from_completion_waits_for_previous(self):
        from drip_engine.services.unlock_scheduler import compute_unlock

        items = make_items(3)
        for item in items[1:]:
            item["unlock_rule"] = {"type": "delay_from_previous", "delay_hours": 12}
        seq = make_sequence(delivery_mode="drip_from_completion", items=items)
        p = make_participant(seq)

        assert compute_unlock(p, seq, seq["items"][0]) == NOW
        assert compute_unlock(p, seq, seq["items"][1]) is None

        done = NOW + timedelta(hours=30)
        _complete(p, "day-1", done)
        assert compute_unlock(p, seq, seq["items"][1]) == done + timedelta(hours=12)

    def test_latest_required_prior_completion_wins(self):
        from drip_engine.services.unlock_scheduler import compute_unlock

        items = make_items(3)
        items[2]["required_prior_items"] = ["day-1", "day-2"]
        items[2]["unlock_rule"] = {"type": "delay_from_previous", "delay_hours": 1}
        seq = make_sequence(delivery_mode="hybrid", items=items)
        p = make_participant(seq)
        _complete(p, "day-1", NOW + timedelta(hours=50))
        _complete(p, "day-2", NOW + timedelta(hours=40))

        assert compute_unlock(p, seq, seq["items"][2]) == NOW + timedelta(hours=51)

    def test_locked_prerequisite_is_undetermined(self):
        from drip_engine.services.unlock_scheduler import compute_unlock

        items = make_items(2)
        items[1]["required_prior_items"] = ["day-1"]
        seq = make_sequence(items=items)
        p = make_participant(seq)
        p["item_progress"]["day-1"] = {"status": "locked"}

        assert compute_unlock(p, seq, seq["items"][1]) is None

    def test_calendar_time_of_day_rounds_forward_in_timezone(self):
        from drip_engine.services.unlock_scheduler import compute_unlock

        items = make_items(2)
        items[1]["unlock_rule"] = {"type": "calendar_time_of_day", "delay_hours": 24, "time_of_day": "19:00"}
        seq = make_sequence(delivery_mode="hybrid", timezone="America/New_York", items=items)
        p = make_participant(seq)

        # NOW + 24h is 04:00 in New York (EST); next 19:00 EST is 00:00 UTC the day after
        assert compute_unlock(p, seq, seq["items"][1]) == datetime(2026, 3, 4, 0, 0, tzinfo=timezone.utc)

    def test_time_of_day_already_reached_is_kept(self):
        from drip_engine.services.unlock_scheduler import round_to_time_of_day

        instant = datetime(2026, 3, 2, 19, 0, tzinfo=timezone.utc)
        assert round_to_time_of_day(instant, "19:00", "UTC") == instant

    def test_recomputation_is_deterministic(self):
        from drip_engine.services.unlock_scheduler import unlock_schedule

        seq = make_sequence()
        p = make_participant(seq)
        assert unlock_schedule(p, seq) == unlock_schedule(p, seq)


class TestNextUnlock:

    def test_returns_earliest_future_unlock(self):
        from drip_engine.services.unlock_scheduler import next_unlock

        seq = make_sequence()
        p = make_participant(seq)
        upcoming = next_unlock(p, seq, NOW + timedelta(hours=1))
        assert upcoming == {"item_id": "day-2", "order": 1, "unlock_at": NOW + timedelta(hours=24)}

    def test_none_when_everything_is_due(self):
        from drip_engine.services.unlock_scheduler import next_unlock

        seq = make_sequence()
        p = make_participant(seq)
        assert next_unlock(p, seq, NOW + timedelta(days=10)) is None
