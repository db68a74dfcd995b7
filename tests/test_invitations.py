import pytest

from clinicavoice import invitations
from clinicavoice import store as docstore

from conftest import CLINICIAN_ID


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def _create_patient(client, token, email="lucia@example.com"):
    resp = client.post(
        "/patients",
        json={
            "firstName": "Lucia",
            "lastName": "Ferreira",
            "dateOfBirth": "1979-03-02",
            "email": email,
        },
        headers=auth_header(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _token_for(services, patient_id):
    return services.store.get(docstore.PATIENTS, CLINICIAN_ID, patient_id)["invitationToken"]


def test_activation_then_login(client, clinician_token, services):
    patient = _create_patient(client, clinician_token)
    token = _token_for(services, patient["id"])

    resp = client.post("/patients/activate", json={"token": token, "password": "Secur3pass"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "Account activated successfully"
    assert body["patient"]["accountStatus"] == "active"

    stored = services.store.get(docstore.PATIENTS, CLINICIAN_ID, patient["id"])
    assert stored["invitationToken"] is None
    assert stored["cognitoUserId"]

    resp = client.post("/auth/login", json={"email": "Lucia@Example.com", "password": "Secur3pass"})
    assert resp.status_code == 200
    login = resp.json()
    assert login["userType"] == "patient"
    assert login["patientId"] == patient["id"]
    assert services.store.get(docstore.PATIENTS, CLINICIAN_ID, patient["id"])["lastLoginAt"]

    resp = client.get("/appointments", headers=auth_header(login["accessToken"]))
    assert resp.status_code == 200
    assert resp.json() == {"appointments": [], "total": 0}


def test_token_is_single_use(client, clinician_token, services):
    patient = _create_patient(client, clinician_token)
    token = _token_for(services, patient["id"])
    client.post("/patients/activate", json={"token": token, "password": "Secur3pass"})

    resp = client.post("/patients/activate", json={"token": token, "password": "Secur3pass"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid token", "message": "Invalid activation token"}


def test_expired_token_reported_before_password_strength(client, clinician_token, services):
    patient = _create_patient(client, clinician_token)
    token = _token_for(services, patient["id"])
    services.store.update(
        docstore.PATIENTS,
        CLINICIAN_ID,
        patient["id"],
        {"invitationExpiresAt": "2020-01-01T00:00:00.000Z"},
    )

    resp = client.post("/patients/activate", json={"token": token, "password": "weak"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid token", "message": "Activation token has expired"}


def test_already_active_account(client, clinician_token, services):
    patient = _create_patient(client, clinician_token)
    token = _token_for(services, patient["id"])
    services.store.update(docstore.PATIENTS, CLINICIAN_ID, patient["id"], {"accountStatus": "active"})

    resp = client.post("/patients/activate", json={"token": token, "password": "Secur3pass"})
    assert resp.json() == {"error": "Invalid token", "message": "Account is already activated"}


def test_weak_password_reports_first_failed_rule(client, clinician_token, services):
    patient = _create_patient(client, clinician_token)
    token = _token_for(services, patient["id"])

    resp = client.post("/patients/activate", json={"token": token, "password": "lowercase1"})
    assert resp.status_code == 400
    assert resp.json() == {
        "error": "Validation failed",
        "message": "Password must contain at least one uppercase letter",
    }


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"password": "Secur3pass"}, "Activation token is required"),
        ({"token": "abc"}, "Password is required"),
    ],
)
def test_activation_requires_token_and_password(client, payload, message):
    resp = client.post("/patients/activate", json=payload)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Validation failed", "message": message}


def test_duplicate_portal_account_is_rejected(client, clinician_token, services):
    first = _create_patient(client, clinician_token)
    second = _create_patient(client, clinician_token)
    client.post(
        "/patients/activate",
        json={"token": _token_for(services, first["id"]), "password": "Secur3pass"},
    )

    resp = client.post(
        "/patients/activate",
        json={"token": _token_for(services, second["id"]), "password": "Secur3pass"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Account creation failed"


def test_login_rejects_bad_credentials(client):
    resp = client.post("/auth/login", json={"email": "nobody@example.com", "password": "x"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid email or password"}


def test_send_invitation_requires_email(services, store):
    store.put(
        docstore.PATIENTS,
        {"id": "p1", "userId": CLINICIAN_ID, "firstName": "No", "email": ""},
    )
    with pytest.raises(ValueError, match="does not have an email"):
        invitations.send_invitation(services, {"patientId": "p1", "userId": CLINICIAN_ID})
    with pytest.raises(ValueError, match="Missing required parameters"):
        invitations.send_invitation(services, {"patientId": "p1"})
    with pytest.raises(LookupError):
        invitations.send_invitation(services, {"patientId": "nope", "userId": CLINICIAN_ID})


def test_render_invitation_mentions_link_and_expiry():
    text = invitations.render_invitation(
        {"firstName": "Lucia"}, "abc123", "https://portal.example.test", "Dr. Costa"
    )
    assert "Hi Lucia," in text
    assert "Dr. Costa has created a patient portal account" in text
    assert "https://portal.example.test/activate?token=abc123" in text
    assert "expire in 7 days" in text


def test_activation_tokens_are_random_hex():
    token = invitations.generate_activation_token()
    assert len(token) == 64
    int(token, 16)
    assert token != invitations.generate_activation_token()
