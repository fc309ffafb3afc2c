from datetime import date, timedelta

from race_results import models

from conftest import add_participant, login, make_user


def _record(client, participant, category, time):
    return client.post(
        "/api/marshal/scan-result",
        json={"participantId": participant.id, "categoryId": category.id, "completionTime": time},
    )


# ---------------------------
# Auth
# ---------------------------

def test_register_login_profile_logout(client):
    r = client.post("/api/auth/register", json={"name": "Ann", "email": "ann@example.com", "password": "longenough"})
    assert r.status_code == 201
    assert r.json()["user"]["role"] == "Runner"

    r = client.post("/api/auth/login", json={"email": "ann@example.com", "password": "longenough"})
    assert r.status_code == 200
    assert client.get("/api/profile").json()["user"]["email"] == "ann@example.com"

    client.post("/api/auth/logout")
    client.cookies.clear()
    assert client.get("/api/profile").status_code == 401


def test_bad_login(client):
    r = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "whatever"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid email or password"}


def test_tampered_cookie_is_ignored(client, session):
    make_user(session, "ann@example.com")
    client.cookies.set("race_auth", "not-a-signed-value")
    assert client.get("/api/profile").status_code == 401


def test_register_validation_error(client):
    r = client.post("/api/auth/register", json={"name": "Ann", "email": "ann@example.com", "password": "short"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid request data"


def test_admin_verifies_marshal(client, session, admin):
    pending = make_user(session, "max@example.com", role=models.MARSHAL, verification_status=models.PENDING)

    login(client, "max@example.com")
    assert client.get("/api/marshal/events-categories").status_code == 403

    login(client, "admin@example.com")
    listed = client.get("/api/admin/marshal-verification").json()
    assert [m["id"] for m in listed["marshals"]] == [pending.id]
    r = client.post("/api/admin/marshal-verification", json={"userId": pending.id, "action": "approve"})
    assert r.json()["user"]["verificationStatus"] == "Approved"

    login(client, "max@example.com")
    assert client.get("/api/marshal/events-categories").status_code == 200
    assert client.get("/api/admin/marshal-verification").status_code == 403


def test_change_password(client, session):
    make_user(session, "pat@example.com")
    r = client.patch("/api/settings/password", json={"currentPassword": "password123", "newPassword": "N3w-secret!"})
    assert r.status_code == 401

    login(client, "pat@example.com")
    r = client.patch("/api/settings/password", json={"currentPassword": "nope", "newPassword": "N3w-secret!"})
    assert r.status_code == 400
    assert r.json()["error"] == "Current password is incorrect"

    r = client.patch("/api/settings/password", json={"currentPassword": "password123", "newPassword": "N3w-secret!"})
    assert r.status_code == 200
    login(client, "pat@example.com", password="N3w-secret!")


# ---------------------------
# Recording results
# ---------------------------

def test_record_requires_authentication(client, category, runners):
    r = _record(client, runners[0], category, "20:00")
    assert r.status_code == 401
    assert r.json() == {"error": "Authentication required"}


def test_record_requires_marshal_role(client, session, category, runners):
    login(client, "ann@example.com")
    r = _record(client, runners[1], category, "20:00")
    assert r.status_code == 403


def test_record_and_query_rankings(client, session, marshal, event, category, runners):
    ann, bob, cat = runners
    login(client, marshal.email)

    r = _record(client, ann, category, "20:15")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["result"]["ranking"] == 1
    assert body["participant"] == {
        "id": ann.id,
        "name": "Ann",
        "email": "ann@example.com",
        "category": "10K",
        "event": "City Run",
    }

    assert _record(client, bob, category, "19:58").json()["result"]["ranking"] == 1
    assert _record(client, cat, category, "20:15").status_code == 200

    r = client.get("/api/marshal/scan-result", params={"categoryId": category.id})
    assert r.status_code == 200
    data = r.json()
    assert data["categoryName"] == "10K"
    assert data["totalResults"] == 3
    assert [row["ranking"] for row in data["results"]] == [1, 2, 3]
    assert data["results"][0]["participantName"] == "Bob"
    assert {row["participantName"] for row in data["results"][1:]} == {"Ann", "Cat"}
    assert all(row["completionTime"] in ("20:15", "19:58") for row in data["results"])


def test_record_invalid_time(client, marshal, category, runners):
    login(client, marshal.email)
    r = _record(client, runners[0], category, "ab:cd")
    assert r.status_code == 400
    assert "Invalid completion time" in r.json()["error"]


def test_record_overlong_time(client, session, marshal, category, runners):
    login(client, marshal.email)
    r = _record(client, runners[0], category, "1" * 60 + ":00")
    assert r.status_code == 400
    assert session.query(models.Result).count() == 0


def test_record_non_ascii_digits(client, session, marshal, category, runners):
    login(client, marshal.email)
    r = _record(client, runners[0], category, "١٢:٣٠")
    assert r.status_code == 400
    assert "Invalid completion time" in r.json()["error"]
    assert session.query(models.Result).count() == 0


def test_record_missing_fields(client, marshal):
    login(client, marshal.email)
    r = client.post("/api/marshal/scan-result", json={"participantId": 1})
    assert r.status_code == 400


def test_record_pending_participant(client, session, marshal, event, category):
    pending = add_participant(session, event, category, "Eve", status=models.PENDING)
    login(client, marshal.email)
    r = _record(client, pending, category, "20:00")
    assert r.status_code == 404
    assert r.json()["error"] == "Participant not found or not approved for this category"
    assert session.query(models.Result).count() == 0


def test_record_duplicate(client, session, marshal, category, runners):
    ann, bob, _ = runners
    login(client, marshal.email)
    _record(client, ann, category, "21:00")
    _record(client, bob, category, "20:00")

    r = _record(client, ann, category, "19:00")
    assert r.status_code == 400
    assert r.json()["error"] == "Result already recorded for this participant in this category"

    rows = client.get("/api/public/categories/%d/rankings" % category.id).json()["results"]
    assert [(row["participantName"], row["completionTime"], row["ranking"]) for row in rows] == [
        ("Bob", "20:00", 1),
        ("Ann", "21:00", 2),
    ]


def test_admin_can_record(client, admin, category, runners):
    login(client, admin.email)
    assert _record(client, runners[0], category, "1:02:03.450").status_code == 200


def test_manual_recalculate(client, marshal, category, runners):
    login(client, marshal.email)
    _record(client, runners[0], category, "30:00")
    r = client.post(f"/api/marshal/categories/{category.id}/recalculate")
    assert r.json() == {"success": True, "categoryId": category.id, "totalResults": 1}


def test_rankings_unknown_category(client):
    r = client.get("/api/public/categories/999/rankings")
    assert r.status_code == 404


# ---------------------------
# Events and registration
# ---------------------------

def test_marshal_creates_event_and_runner_registers(client, session, marshal):
    login(client, marshal.email)
    r = client.post(
        "/api/events",
        json={
            "eventName": "Spring 10K",
            "eventDate": (date.today() + timedelta(days=20)).isoformat(),
            "location": "Park",
            "categories": [{"categoryName": "10K"}, {"categoryName": "Kids"}],
        },
    )
    assert r.status_code == 201
    event = r.json()["event"]
    category_id = event["categories"][0]["id"]

    make_user(session, "runner@example.com")
    login(client, "runner@example.com")
    r = client.post(f"/api/events/{event['id']}/register", json={"categoryId": category_id})
    assert r.status_code == 201
    registration = r.json()["registration"]
    assert registration["registrationStatus"] == "Pending"

    r = client.post(f"/api/events/{event['id']}/register", json={"categoryId": category_id})
    assert r.status_code == 400

    status = client.get(f"/api/events/{event['id']}/register").json()
    assert status["isRegistered"] is True

    login(client, marshal.email)
    r = client.post("/api/marshal/verify-payment", json={"participantId": registration["id"], "action": "approve"})
    assert r.status_code == 200
    assert r.json()["participant"]["registrationStatus"] == "Approved"

    r = client.post(
        "/api/marshal/scan-result",
        json={"participantId": registration["id"], "categoryId": category_id, "completionTime": "45:10.2"},
    )
    assert r.json()["result"]["ranking"] == 1

    login(client, "runner@example.com")
    mine = client.get("/api/runner/my-registrations").json()["registrations"]
    assert mine[0]["result"]["completionTime"] == "45:10.2"
    assert mine[0]["result"]["ranking"] == 1


def test_only_runners_register(client, marshal, event, category):
    login(client, marshal.email)
    r = client.post(f"/api/events/{event.id}/register", json={"categoryId": category.id})
    assert r.status_code == 403


def test_public_events(client, event):
    data = client.get("/api/public/events").json()
    assert data["total"] == 1
    assert [c["name"] for c in data["events"][0]["categories"]] == ["10K", "5K"]
    assert client.get(f"/api/public/events/{event.id}").json()["event"]["name"] == "City Run"
    assert client.get("/api/public/events/999").status_code == 404


def test_marshal_participants_listing(client, session, marshal, event, category, runners):
    add_participant(session, event, category, "Pia", status=models.PENDING)
    login(client, marshal.email)
    pending = client.get("/api/marshal/participants", params={"eventId": event.id, "status": "Pending"}).json()
    assert [p["name"] for p in pending["participants"]] == ["Pia"]

    overview = client.get("/api/marshal/events-categories").json()
    ten_k = overview["events"][0]["categories"][0]
    assert ten_k["participantsCount"] == 3
    assert ten_k["finishedCount"] == 0


def test_foreign_marshal_cannot_list_participants(client, session, event):
    make_user(session, "other@example.com", role=models.MARSHAL)
    login(client, "other@example.com")
    r = client.get("/api/marshal/participants", params={"eventId": event.id})
    assert r.status_code == 403


def test_marshal_updates_and_deletes_event(client, session, marshal, event, category, runners):
    login(client, marshal.email)
    _record(client, runners[0], category, "20:00")

    r = client.put(f"/api/events/{event.id}", json={"eventName": "City Run 2025", "location": "Old Town"})
    assert r.status_code == 200
    assert r.json()["event"]["name"] == "City Run 2025"
    assert r.json()["event"]["location"] == "Old Town"

    r = client.delete(f"/api/events/{event.id}")
    assert r.status_code == 200
    assert client.get(f"/api/public/events/{event.id}").status_code == 404
    assert client.get(f"/api/public/categories/{category.id}/rankings").status_code == 404
    assert session.query(models.Result).count() == 0


def test_marshal_updates_and_deletes_category(client, session, marshal, event, category, runners):
    login(client, marshal.email)
    _record(client, runners[0], category, "20:00")
    five_k = event.categories[1]

    r = client.put(f"/api/events/{event.id}/categories/{five_k.id}", json={"categoryName": "5K Fun Run"})
    assert r.status_code == 200
    assert r.json()["category"]["name"] == "5K Fun Run"

    r = client.put(f"/api/events/{event.id}/categories/{five_k.id}", json={"categoryName": "10K"})
    assert r.status_code == 400

    r = client.delete(f"/api/events/{event.id}/categories/{category.id}")
    assert r.status_code == 200
    names = [c["name"] for c in client.get(f"/api/public/events/{event.id}").json()["event"]["categories"]]
    assert names == ["5K Fun Run"]
    assert session.query(models.Result).count() == 0
    assert session.query(models.Participant).count() == 0


def test_category_of_another_event_is_not_found(client, session, marshal, event):
    other = models.Event(event_name="Trail", event_date=event.event_date, created_by=marshal.id)
    other.categories.append(models.Category(category_name="21K"))
    session.add(other)
    session.commit()
    login(client, marshal.email)
    r = client.delete(f"/api/events/{event.id}/categories/{other.categories[0].id}")
    assert r.status_code == 404
    assert r.json()["error"] == "Category not found for this event"


def test_foreign_marshal_cannot_change_event(client, session, event, category):
    make_user(session, "other@example.com", role=models.MARSHAL)
    login(client, "other@example.com")
    assert client.put(f"/api/events/{event.id}", json={"eventName": "Mine"}).status_code == 403
    assert client.delete(f"/api/events/{event.id}/categories/{category.id}").status_code == 403
    assert client.delete(f"/api/events/{event.id}").status_code == 403
    assert client.delete("/api/events/999").status_code == 404


# ---------------------------
# QR codes and exports
# ---------------------------

def test_runner_gets_own_qr(client, session, event, category, runners):
    login(client, "ann@example.com")
    r = client.get("/api/runner/my-qr", params={"participantId": runners[0].id})
    assert r.status_code == 200
    qr = r.json()["qrCode"]
    assert qr["content"] == str(runners[0].id)
    assert qr["dataUrl"].startswith("data:image/png;base64,")

    r = client.get("/api/runner/my-qr", params={"participantId": runners[1].id})
    assert r.status_code == 403


def test_event_marshal_can_fetch_participant_qr(client, session, marshal, event, category, runners):
    make_user(session, "other@example.com", role=models.MARSHAL)
    login(client, "other@example.com")
    r = client.get("/api/runner/my-qr", params={"participantId": runners[0].id})
    assert r.status_code == 403

    login(client, marshal.email)
    r = client.get("/api/runner/my-qr", params={"participantId": runners[0].id})
    assert r.status_code == 200
    assert r.json()["qrCode"]["participant"]["name"] == "Ann"


def test_qr_label_sheet(client, marshal, category, runners):
    login(client, marshal.email)
    r = client.get("/api/marshal/qr-labels.pdf", params={"categoryId": category.id})
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.content.startswith(b"%PDF")


def test_results_csv(client, marshal, category, runners):
    login(client, marshal.email)
    _record(client, runners[0], category, "2:30.5")
    _record(client, runners[1], category, "2:30")
    r = client.get("/api/results.csv", params={"categoryId": category.id})
    assert r.status_code == 200
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("ranking,participant_id,name,completion_time,time_ms")
    assert lines[1].startswith(f"1,{runners[1].id},Bob,2:30,150000,02:30.000")
    assert lines[2].startswith(f"2,{runners[0].id},Ann,2:30.5,150500,02:30.500")


def test_participants_csv(client, marshal, event, runners):
    login(client, marshal.email)
    r = client.get("/api/participants.csv", params={"eventId": event.id})
    assert r.status_code == 200
    assert len(r.text.strip().splitlines()) == 4


def test_rankings_page(client, marshal, category, runners):
    login(client, marshal.email)
    _record(client, runners[0], category, "19:58")
    client.cookies.clear()
    r = client.get(f"/rankings/{category.id}")
    assert r.status_code == 200
    assert "City Run" in r.text
    assert "19:58" in r.text
