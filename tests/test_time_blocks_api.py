def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def _block(client, token, **overrides):
    payload = {"date": "2024-07-01", "startTime": "12:00", "endTime": "13:00", "reason": "Lunch"}
    payload.update(overrides)
    return client.post("/time-blocks", json=payload, headers=auth_header(token))


def _appointment(client, token, time="10:00"):
    patient = client.post(
        "/patients",
        json={"firstName": "Joao", "lastName": "Pinto", "dateOfBirth": "1960-02-02", "phone": "555"},
        headers=auth_header(token),
    ).json()
    resp = client.post(
        "/appointments",
        json={"patientId": patient["id"], "date": "2024-07-01", "time": time, "type": "follow-up"},
        headers=auth_header(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_time_block_defaults(client, clinician_token):
    resp = _block(client, clinician_token)
    assert resp.status_code == 201
    body = resp.json()
    assert body["type"] == "other"
    assert body["recurrence"] is None

    fetched = client.get(f"/time-blocks/{body['id']}", headers=auth_header(clinician_token)).json()
    assert fetched == body


def test_create_time_block_validation(client, clinician_token):
    resp = _block(client, clinician_token, startTime="14:00", endTime="14:00", type="nap")
    assert resp.status_code == 400
    assert resp.json()["errors"] == [
        "endTime must be after startTime",
        "Invalid type. Must be: break, admin, meeting, or other",
    ]


def test_time_block_overlapping_appointment_is_rejected(client, clinician_token, frozen_today):
    appointment = _appointment(client, clinician_token)

    resp = _block(client, clinician_token, startTime="10:15", endTime="11:00")
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "Time block conflicts with existing appointment",
        "message": "Cannot create time block that overlaps with scheduled appointments",
        "conflict": {
            "appointmentId": appointment["id"],
            "patientId": appointment["patientId"],
            "time": "10:00",
            "duration": 30,
        },
    }

    assert _block(client, clinician_token, startTime="10:30", endTime="11:00").status_code == 201


def test_update_time_block(client, clinician_token, frozen_today):
    _appointment(client, clinician_token, time="15:00")
    block = _block(client, clinician_token).json()
    url = f"/time-blocks/{block['id']}"

    resp = client.put(url, json={}, headers=auth_header(clinician_token))
    assert resp.status_code == 400
    assert resp.json() == {"error": "No fields to update"}

    resp = client.put(url, json={"endTime": "11:30"}, headers=auth_header(clinician_token))
    assert resp.status_code == 400
    assert resp.json()["errors"] == ["endTime must be after startTime"]

    resp = client.put(url, json={"endTime": "15:15"}, headers=auth_header(clinician_token))
    assert resp.status_code == 409
    assert resp.json()["message"] == "Cannot update time block to overlap with scheduled appointments"

    resp = client.put(
        url,
        json={"reason": "Team meeting", "type": "meeting", "recurrence": {"type": "weekly", "daysOfWeek": [1, 3]}},
        headers=auth_header(clinician_token),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["reason"] == "Team meeting"
    assert body["recurrence"] == {"type": "weekly", "daysOfWeek": [1, 3]}
    assert body["startTime"] == "12:00"


def test_list_time_blocks_filters_and_ordering(client, clinician_token):
    late = _block(client, clinician_token, startTime="16:00", endTime="17:00", type="admin").json()
    early = _block(client, clinician_token, startTime="08:00", endTime="08:30", type="break").json()
    _block(client, clinician_token, date="2024-08-01", type="admin")

    body = client.get("/time-blocks", headers=auth_header(clinician_token)).json()
    assert body["total"] == 3
    assert [b["id"] for b in body["timeBlocks"][:2]] == [early["id"], late["id"]]

    body = client.get(
        "/time-blocks",
        params={"endDate": "2024-07-31", "type": "admin"},
        headers=auth_header(clinician_token),
    ).json()
    assert [b["id"] for b in body["timeBlocks"]] == [late["id"]]


def test_delete_time_block(client, clinician_token, other_clinician_token):
    block = _block(client, clinician_token).json()

    resp = client.delete(f"/time-blocks/{block['id']}", headers=auth_header(other_clinician_token))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Time block not found"}

    resp = client.delete(f"/time-blocks/{block['id']}", headers=auth_header(clinician_token))
    assert resp.json() == {"success": True, "message": "Time block deleted successfully"}
    assert client.get(f"/time-blocks/{block['id']}", headers=auth_header(clinician_token)).status_code == 404
