"""
HTTP API tests — envelope, authentication, status mapping and an
end-to-end routing walk through the blueprints.
"""

import pytest


def _create(client, headers, holder_id, scope="local", **extra):
    payload = {"subject": "Purchase of fume hood", "marked_to": [holder_id],
               "remarks": "Kindly process", **extra}
    return client.post(f"/api/v1/references/{scope}", json=payload, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# Envelope & auth
# ═══════════════════════════════════════════════════════════════════════════


class TestEnvelope:

    def test_health_needs_no_actor(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_liveness_checks_database(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"

    @pytest.mark.parametrize("headers", [{}, {"X-Actor-Id": "abc"}, {"X-Actor-Id": "99999"}])
    def test_missing_or_unknown_actor_is_401(self, client, users, headers):
        res = client.get("/api/v1/references/local", headers=headers)
        assert res.status_code == 401
        body = res.get_json()
        assert body["success"] is False
        assert body["code"] == "ERR_UNAUTHENTICATED"

    def test_inactive_actor_is_401(self, client, make_user, as_actor):
        ghost = make_user(status="inactive")
        assert client.get("/api/v1/references/local", headers=as_actor(ghost)).status_code == 401

    def test_unknown_scope_is_400(self, client, users, as_actor):
        res = client.get("/api/v1/references/regional", headers=as_actor(users["alice"]))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_route_is_404_envelope(self, client, users, as_actor):
        res = client.get("/api/v1/nowhere", headers=as_actor(users["alice"]))
        assert res.status_code == 404
        assert res.get_json()["success"] is False

    def test_non_object_body_is_400(self, client, users, as_actor):
        res = client.post("/api/v1/references/local", json=["subject"], headers=as_actor(users["alice"]))
        assert res.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Routing through the API
# ═══════════════════════════════════════════════════════════════════════════


class TestReferenceRoutes:

    def test_end_to_end_walk(self, client, users, as_actor):
        alice, bob, erin = users["alice"], users["bob"], users["erin"]

        res = _create(client, as_actor(alice), bob.id)
        assert res.status_code == 201
        body = res.get_json()
        assert body["success"] is True
        ref = body["data"]["reference"]
        base = f"/api/v1/references/local/{ref['id']}"

        res = client.post(f"{base}/movements", headers=as_actor(bob),
                          json={"marked_to": [erin.id], "status": "InProgress",
                                "remarks": "Please verify quotes", "expected_version": ref["version"]})
        assert res.status_code == 201
        assert res.get_json()["data"]["new_status"] == "InProgress"

        res = client.post(f"{base}/movements", headers=as_actor(erin),
                          json={"marked_to": [], "status": "Closed", "remarks": "Ordered"})
        assert res.status_code == 201
        assert res.get_json()["data"]["reference"]["marked_to"] == [users["carol"].id]

        res = client.get(base, headers=as_actor(alice))
        assert res.status_code == 200
        detail = res.get_json()["data"]
        assert detail["status"] == "Closed"
        assert [m["status_on_movement"] for m in detail["movements"]] == ["Open", "InProgress", "Closed"]

        res = client.get(f"{base}/replay", headers=as_actor(alice))
        assert res.get_json()["data"]["consistent"] is True

    def test_forward_without_remarks_uses_default(self, client, users, as_actor):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        res = client.post(f"/api/v1/references/local/{ref['id']}/movements", headers=as_actor(users["bob"]),
                          json={"marked_to": [users["erin"].id], "status": "InProgress"})
        assert res.status_code == 201
        assert res.get_json()["data"]["movement"]["remarks"]

    def test_status_is_required(self, client, users, as_actor):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        res = client.post(f"/api/v1/references/local/{ref['id']}/movements", headers=as_actor(users["bob"]),
                          json={"marked_to": [users["erin"].id]})
        assert res.status_code == 400

    def test_error_status_mapping(self, client, users, as_actor):
        alice, bob, erin = users["alice"], users["bob"], users["erin"]
        ref = _create(client, as_actor(alice), bob.id).get_json()["data"]["reference"]
        move = f"/api/v1/references/local/{ref['id']}/movements"

        # not the holder
        res = client.post(move, headers=as_actor(erin),
                          json={"marked_to": [alice.id], "status": "InProgress", "remarks": "x"})
        assert (res.status_code, res.get_json()["code"]) == (403, "ERR_NOT_CURRENT_HOLDER")

        # illegal transition
        res = client.post(move, headers=as_actor(bob),
                          json={"marked_to": [erin.id], "status": "Open", "remarks": "x"})
        assert (res.status_code, res.get_json()["code"]) == (409, "ERR_INVALID_TRANSITION")

        # stale version
        res = client.post(move, headers=as_actor(bob),
                          json={"marked_to": [erin.id], "status": "InProgress", "remarks": "x",
                                "expected_version": ref["version"] + 3})
        assert (res.status_code, res.get_json()["code"]) == (409, "ERR_CONCURRENT_MODIFICATION")

        # other partition
        res = client.get(f"/api/v1/references/global/{ref['id']}", headers=as_actor(bob))
        assert (res.status_code, res.get_json()["code"]) == (404, "ERR_NOT_FOUND")

        # not a participant
        res = client.get(f"/api/v1/references/local/{ref['id']}", headers=as_actor(users["erin"]))
        assert res.status_code == 403

    def test_idempotency_key_header_replays(self, client, users, as_actor):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        move = f"/api/v1/references/local/{ref['id']}/movements"
        payload = {"marked_to": [users["erin"].id], "status": "InProgress", "remarks": "once"}
        headers = {**as_actor(users["bob"]), "Idempotency-Key": "retry-1"}

        first = client.post(move, json=payload, headers=headers)
        second = client.post(move, json=payload, headers=headers)
        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["data"]["idempotent_replay"] is True
        assert first.get_json()["data"]["movement"]["id"] == second.get_json()["data"]["movement"]["id"]

    def test_list_filters_and_pagination(self, client, users, as_actor):
        for _ in range(3):
            _create(client, as_actor(users["alice"]), users["bob"].id)
        res = client.get("/api/v1/references/local?markedTo[]=me&status[]=Open&limit=2&page=1",
                         headers=as_actor(users["bob"]))
        data = res.get_json()["data"]
        assert res.status_code == 200
        assert len(data["items"]) == 2
        assert data["pagination"]["total"] == 3
        assert data["pagination"]["total_pages"] == 2

    def test_bad_sort_is_400(self, client, users, as_actor):
        res = client.get("/api/v1/references/local?sortBy=colour", headers=as_actor(users["alice"]))
        assert res.status_code == 400

    def test_filters_and_dashboard(self, client, users, as_actor):
        _create(client, as_actor(users["alice"]), users["bob"].id, priority="High")
        options = client.get("/api/v1/references/local/filters", headers=as_actor(users["bob"])).get_json()
        assert options["data"]["priorities"] == ["High"]
        stats = client.get("/api/v1/references/local/dashboard", headers=as_actor(users["bob"])).get_json()
        assert stats["data"]["marked_to_user_count"] == 1

    def test_bulk(self, client, users, as_actor):
        ids = [_create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]["id"]
               for _ in range(2)]
        res = client.post("/api/v1/references/local/bulk", headers=as_actor(users["bob"]),
                          json={"reference_ids": ids + [424242],
                                "action": {"type": "markPriority", "priority": "Low"}})
        assert res.status_code == 200
        data = res.get_json()["data"]
        assert data["succeeded"] == ids
        assert data["failed"][0]["reason"] == "NotFound"

    def test_priority_and_reopen_routes(self, client, users, as_actor):
        alice, bob, carol = users["alice"], users["bob"], users["carol"]
        ref = _create(client, as_actor(alice), bob.id).get_json()["data"]["reference"]
        base = f"/api/v1/references/local/{ref['id']}"

        res = client.post(f"{base}/priority", headers=as_actor(bob), json={"priority": "High"})
        assert res.get_json()["data"]["changed"] is True

        client.post(f"{base}/movements", headers=as_actor(bob),
                    json={"marked_to": [alice.id], "status": "Closed", "remarks": "done"})
        res = client.post(f"{base}/reopen-request", headers=as_actor(alice), json={"reason": "More work"})
        assert res.status_code == 201

        res = client.post(f"{base}/reopen-resolution", headers=as_actor(carol), json={"approve": "yes"})
        assert res.status_code == 400
        res = client.post(f"{base}/reopen-resolution", headers=as_actor(carol), json={"approve": True})
        assert res.status_code == 200
        assert res.get_json()["data"]["reference"]["status"] == "Reopened"

    def test_repair_requires_override(self, client, users, as_actor):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        url = f"/api/v1/references/local/{ref['id']}/replay/repair"
        assert client.post(url, headers=as_actor(users["bob"])).status_code == 403
        res = client.post(url, headers=as_actor(users["carol"]))
        assert res.status_code == 200
        assert res.get_json()["data"]["repaired"] is False

    def test_other_lab_admin_cannot_override_or_repair(self, client, users, as_actor):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        base = f"/api/v1/references/local/{ref['id']}"
        frank = as_actor(users["frank"])

        res = client.post(f"{base}/movements", headers=frank,
                          json={"marked_to": [users["dave"].id], "status": "Closed", "remarks": "x",
                                "override": True})
        assert res.status_code == 403
        assert client.post(f"{base}/replay/repair", headers=frank).status_code == 403

        detail = client.get(base, headers=as_actor(users["alice"])).get_json()["data"]
        assert detail["status"] == "Open"
        assert detail["marked_to"] == [users["bob"].id]

    @pytest.mark.parametrize("flag", ["false", "true", 0, 1])
    def test_override_must_be_a_json_boolean(self, client, users, as_actor, flag):
        ref = _create(client, as_actor(users["alice"]), users["bob"].id).get_json()["data"]["reference"]
        base = f"/api/v1/references/local/{ref['id']}"
        res = client.post(f"{base}/movements", headers=as_actor(users["bob"]),
                          json={"marked_to": [users["erin"].id], "status": "InProgress", "override": flag})
        assert res.status_code == 400
        res = client.post(f"{base}/priority", headers=as_actor(users["bob"]),
                          json={"priority": "High", "override": flag})
        assert res.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Identities
# ═══════════════════════════════════════════════════════════════════════════


class TestIdentityRoutes:

    def test_self_update_refreshes_embedded_copies(self, client, users, as_actor):
        alice, bob = users["alice"], users["bob"]
        ref = _create(client, as_actor(alice), bob.id).get_json()["data"]["reference"]

        res = client.patch(f"/api/v1/identities/{bob.id}", headers=as_actor(bob), json={"division": "Optics"})
        assert res.status_code == 200
        assert res.get_json()["data"]["changed_fields"] == ["division"]

        detail = client.get(f"/api/v1/references/local/{ref['id']}", headers=as_actor(alice)).get_json()["data"]
        assert detail["marked_to_division"] == "Optics"
        assert detail["marked_to_details"][0]["division"] == "Optics"

    def test_users_cannot_edit_others_or_roles(self, client, users, as_actor):
        bob = users["bob"]
        assert client.patch(f"/api/v1/identities/{users['erin'].id}", headers=as_actor(bob),
                            json={"division": "X"}).status_code == 403
        assert client.patch(f"/api/v1/identities/{bob.id}", headers=as_actor(bob),
                            json={"role": "Superadmin"}).status_code == 403

    def test_superuser_may_change_role_and_force_sync(self, client, users, as_actor):
        sam, bob = users["sam"], users["bob"]
        res = client.patch(f"/api/v1/identities/{bob.id}", headers=as_actor(sam),
                           json={"role": "Inter Lab sender"})
        assert res.status_code == 200
        res = client.post(f"/api/v1/identities/{bob.id}/sync", headers=as_actor(sam))
        assert res.status_code == 200
        assert res.get_json()["data"]["skipped"] is False
        assert client.post(f"/api/v1/identities/{bob.id}/sync", headers=as_actor(bob)).status_code == 403

    def test_email_change_is_rejected(self, client, users, as_actor):
        bob = users["bob"]
        res = client.patch(f"/api/v1/identities/{bob.id}", headers=as_actor(bob), json={"email": "b@x.org"})
        assert res.status_code == 400

    @pytest.mark.parametrize("field", ["actor_id", "user_id"])
    def test_reserved_keys_are_rejected(self, client, users, as_actor, field):
        bob = users["bob"]
        res = client.patch(f"/api/v1/identities/{bob.id}", headers=as_actor(bob),
                           json={"division": "Optics", field: users["sam"].id})
        assert res.status_code == 400
        assert res.get_json()["success"] is False
