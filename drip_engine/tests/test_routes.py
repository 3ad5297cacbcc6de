"""Tests for the HTTP surface — status codes, error bodies, webhooks."""

from datetime import timedelta

from drip_engine.tests.conftest import NOW, make_items, make_participant, make_sequence, make_sequence_definition


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestSequenceRoutes:

    def test_create_returns_201(self, client, fake_db):
        resp = client.post("/api/v1/sequences", json=make_sequence_definition(slug="route-test"))
        assert resp.status_code == 201
        data = resp.json()
        assert data["slug"] == "route-test"
        assert data["version"] == 1
        assert fake_db.store["dp_sequences"][0]["created_by"] == "api"

    def test_invalid_definition_is_422(self, client):
        resp = client.post("/api/v1/sequences", json=make_sequence_definition(delivery_mode="whenever"))
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation-failure"

    def test_non_json_body_is_422(self, client):
        resp = client.post("/api/v1/sequences", content=b"not json",
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 422

    def test_duplicate_slug_is_409(self, client):
        client.post("/api/v1/sequences", json=make_sequence_definition(slug="twice"))
        resp = client.post("/api/v1/sequences", json=make_sequence_definition(slug="twice"))
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    def test_publishing_empty_definition_is_422(self, client, fake_db):
        resp = client.post("/api/v1/sequences", json=make_sequence_definition(items=[]))
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation-failure"
        assert fake_db.store["dp_sequences"] == []

    def test_slug_collision_on_edit_is_409(self, client, fake_db):
        fake_db.add("dp_sequences", make_sequence(slug="taken"))
        seq = fake_db.add("dp_sequences", make_sequence(slug="free"))

        resp = client.patch(f"/api/v1/sequences/{seq['id']}", json={"slug": "taken"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    def test_missing_sequence_is_404(self, client):
        resp = client.get("/api/v1/sequences/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not-found"

    def test_get_by_slug(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence(slug="lookup"))
        resp = client.get("/api/v1/sequences/by-slug/lookup")
        assert resp.status_code == 200
        assert resp.json()["id"] == seq["id"]

    def test_add_and_reorder_items(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())

        resp = client.post(f"/api/v1/sequences/{seq['id']}/items", json={"id": "bonus", "title": "Bonus"})
        assert resp.status_code == 201
        assert resp.json()["items"][-1]["order"] == 3

        resp = client.put(f"/api/v1/sequences/{seq['id']}/items/order",
                          json={"item_ids": ["bonus", "day-1", "day-2", "day-3"]})
        assert resp.status_code == 200
        assert [i["id"] for i in resp.json()["items"]][0] == "bonus"

    def test_leaderboard(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        fake_db.add("dp_participants", make_participant(seq, email="b@x.com", points=30))
        fake_db.add("dp_participants", make_participant(seq, email="c@x.com", points=10))

        resp = client.get(f"/api/v1/sequences/{seq['id']}/leaderboard?limit=1")
        assert resp.status_code == 200
        assert [e["email"] for e in resp.json()["results"]] == ["b@x.com"]

    def test_list_participants_by_status(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        fake_db.add("dp_participants", make_participant(seq, email="on@x.com"))
        fake_db.add("dp_participants", make_participant(seq, email="off@x.com", status="paused"))

        resp = client.get(f"/api/v1/sequences/{seq['id']}/participants", params={"status": "paused"})
        assert resp.status_code == 200
        assert [p["email"] for p in resp.json()["results"]] == ["off@x.com"]

        resp = client.get(f"/api/v1/sequences/{seq['id']}/participants", params={"status": "lost"})
        assert resp.status_code == 422

    def test_analytics(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        start = (NOW - timedelta(days=1)).isoformat()
        end = (NOW + timedelta(days=1)).isoformat()

        resp = client.get(f"/api/v1/sequences/{seq['id']}/analytics", params={"start": start, "end": end})
        assert resp.status_code == 200
        data = resp.json()
        assert data["partial"] is False
        assert data["funnel"]["total_events"] == 0

    def test_stats(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        fake_db.add("dp_participants", make_participant(seq, email="buyer@x.com", status="converted",
                                                        converted_at=NOW.isoformat()))
        fake_db.add("dp_participants", make_participant(seq, email="new@x.com"))

        resp = client.get(f"/api/v1/sequences/{seq['id']}/stats", params={
            "start": (NOW - timedelta(days=1)).isoformat(),
            "end": (NOW + timedelta(days=1)).isoformat(),
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_participants"] == 2
        assert data["conversion_rate"] == 50.0
        assert len(data["items"]) == 3

    def test_analytics_bad_timestamp_is_422(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        resp = client.get(f"/api/v1/sequences/{seq['id']}/analytics", params={"start": "last tuesday"})
        assert resp.status_code == 422


class TestParticipantRoutes:

    def test_register_then_locked_item_is_403(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())

        resp = client.post(f"/api/v1/sequences/{seq['id']}/register", json={"email": "new@x.com"})
        assert resp.status_code == 200
        participant_id = resp.json()["id"]

        resp = client.get(f"/api/v1/participants/{participant_id}/items/day-1/access")
        assert resp.status_code == 200
        assert resp.json()["allowed"] is True

        resp = client.get(f"/api/v1/participants/{participant_id}/items/day-2/access")
        assert resp.status_code == 403
        body = resp.json()
        assert body["reason"] == "not-yet-unlocked"
        assert body["unlock_at"]

    def test_register_closed_sequence_is_409(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence(registration={"is_open": False}))
        resp = client.post(f"/api/v1/sequences/{seq['id']}/register", json={"email": "new@x.com"})
        assert resp.status_code == 409

    def test_failed_completion_is_403(self, client, fake_db):
        items = make_items(2)
        items[0]["conditions"] = {"min_score": 50}
        seq = fake_db.add("dp_sequences", make_sequence(items=items))
        p = fake_db.add("dp_participants", make_participant(seq))

        resp = client.post(f"/api/v1/participants/{p['id']}/items/day-1/complete",
                           json={"measurements": {"score": 10}})
        assert resp.status_code == 403
        assert resp.json()["reason"] == "condition-not-met"

    def test_complete_and_progress(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        p = fake_db.add("dp_participants", make_participant(seq))

        resp = client.post(f"/api/v1/participants/{p['id']}/items/day-1/complete", json={})
        assert resp.status_code == 200
        assert resp.json()["item_progress"]["day-1"]["status"] == "completed"

        resp = client.get(f"/api/v1/participants/{p['id']}/progress")
        assert resp.status_code == 200
        assert resp.json()["completed_count"] == 1

    def test_pause_completed_is_409(self, client, fake_db):
        seq = fake_db.add("dp_sequences", make_sequence())
        p = fake_db.add("dp_participants", make_participant(seq, status="completed"))
        assert client.post(f"/api/v1/participants/{p['id']}/pause").status_code == 409

    def test_unknown_participant_is_404(self, client):
        assert client.get("/api/v1/participants/ghost/progress").status_code == 404


class TestWebhooks:

    def test_event_requires_secret(self, client):
        resp = client.post("/webhooks/events", json={"type": "view"})
        assert resp.status_code == 401

    def test_unknown_event_type_is_422(self, client, auth_headers):
        resp = client.post("/webhooks/events", json={"type": "teleport"}, headers=auth_headers)
        assert resp.status_code == 422

    def test_purchase_converts_participant(self, client, fake_db, auth_headers):
        seq = fake_db.add("dp_sequences", make_sequence())
        p = fake_db.add("dp_participants", make_participant(seq))

        resp = client.post("/webhooks/events", headers=auth_headers, json={
            "type": "purchase",
            "participant_id": p["id"],
            "metadata": {"amount": 97.0, "currency": "USD"},
            "utm_source": "newsletter",
        })
        assert resp.status_code == 200
        assert resp.json()["is_conversion"] is True

        stored = fake_db.row("dp_participants", p["id"])
        assert stored["status"] == "converted"
        assert stored["attribution"]["last_touch"]["source"] == "newsletter"

        event = fake_db.store["dp_events"][0]
        assert event["value"] == 97.0
        assert event["source"]["utm_source"] == "newsletter"

    def test_optin_registers_by_slug(self, client, fake_db, auth_headers):
        seq = fake_db.add("dp_sequences", make_sequence(slug="kickstart"))

        resp = client.post("/webhooks/optin", headers=auth_headers, json={
            "email": "Lead@Example.com",
            "sequence": "kickstart",
            "name": "Lee",
            "source": {"utm_source": "facebook", "utm_campaign": "spring"},
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

        participant = fake_db.store["dp_participants"][0]
        assert participant["sequence_id"] == seq["id"]
        assert participant["email"] == "lead@example.com"
        assert participant["attribution"]["first_touch"]["source"] == "facebook"
        assert {e["type"] for e in fake_db.store["dp_events"]} == {"registration", "optin"}

    def test_repeat_optin_records_one_optin_event(self, client, fake_db, auth_headers):
        fake_db.add("dp_sequences", make_sequence(slug="kickstart"))
        payload = {"email": "lead@example.com", "sequence": "kickstart", "utm_source": "facebook"}

        first = client.post("/webhooks/optin", headers=auth_headers, json=payload)
        second = client.post("/webhooks/optin", headers=auth_headers, json=payload)

        assert first.json()["participant_id"] == second.json()["participant_id"]
        optins = [e for e in fake_db.store["dp_events"] if e["type"] == "optin"]
        assert len(optins) == 1
        assert len(fake_db.store["dp_participants"]) == 1

    def test_redelivered_event_id_is_recorded_once(self, client, fake_db, auth_headers):
        seq = fake_db.add("dp_sequences", make_sequence())
        p = fake_db.add("dp_participants", make_participant(seq))
        payload = {"id": "evt-open-1", "type": "email_open", "participant_id": p["id"]}

        assert client.post("/webhooks/events", headers=auth_headers, json=payload).status_code == 200
        resp = client.post("/webhooks/events", headers=auth_headers, json=payload)

        assert resp.status_code == 200
        assert resp.json()["id"] == "evt-open-1"
        assert len(fake_db.store["dp_events"]) == 1

    def test_optin_invalid_email_is_400(self, client, auth_headers):
        resp = client.post("/webhooks/optin", headers=auth_headers,
                           json={"email": "nope", "sequence": "kickstart"})
        assert resp.status_code == 400

    def test_optin_requires_sequence(self, client, auth_headers):
        resp = client.post("/webhooks/optin", headers=auth_headers, json={"email": "a@x.com"})
        assert resp.status_code == 400
