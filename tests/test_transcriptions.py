import re

import pytest

from clinicavoice import store as docstore
from clinicavoice import transcriptions
from clinicavoice.uploads import MAX_UPLOAD_BYTES

from conftest import CLINICIAN_ID, INTERNAL_TOKEN


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def internal_header(token=INTERNAL_TOKEN):
    return {"X-Internal-Token": token}


def _upload(client, token, **overrides):
    payload = {"fileName": "visit.webm", "fileType": "audio/webm", "fileSize": 2048}
    payload.update(overrides)
    return client.post("/upload", json=payload, headers=auth_header(token))


def test_upload_issues_signed_url_and_pending_record(client, clinician_token, services):
    resp = _upload(client, clinician_token)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["expiresIn"] == 300
    assert body["message"] == "Upload URL generated successfully"
    assert re.fullmatch(rf"audio/{CLINICIAN_ID}/\d+_{body['fileId']}\.webm", body["s3Key"])
    assert body["uploadUrl"].startswith("http://localhost:8000/uploads/clinicavoice-audio/audio/")
    assert "signature=" in body["uploadUrl"]

    record = services.store.get(docstore.REPORTS, CLINICIAN_ID, body["fileId"])
    assert record["type"] == "transcription"
    assert record["status"] == "pending_upload"
    assert record["originalFileName"] == "visit.webm"


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"fileType": "video/mp4"}, {"error": "Invalid file type. Only audio files are allowed."}),
        ({"fileSize": MAX_UPLOAD_BYTES + 1}, {"error": "File too large. Maximum size is 100MB."}),
        ({"fileName": None}, {"error": "Validation failed", "message": "fileName is required"}),
    ],
)
def test_upload_rejections(client, clinician_token, overrides, expected):
    resp = _upload(client, clinician_token, **overrides)
    assert resp.status_code == 400
    assert resp.json() == expected


def test_upload_roles(client, patient_token, make_token):
    assert _upload(client, patient_token("portal-user")).status_code == 200

    resp = _upload(client, make_token("someone", role="admin"))
    assert resp.status_code == 403
    assert resp.json() == {"error": "Invalid user type. Please contact support."}


def test_transcription_pipeline(client, clinician_token, services):
    upload = _upload(client, clinician_token).json()
    file_id = upload["fileId"]

    resp = client.post(
        "/internal/events/transcription-processor",
        json={"key": upload["s3Key"]},
        headers=internal_header(),
    )
    assert resp.status_code == 202
    assert resp.json() == {"accepted": True, "function": "transcription-processor"}

    record = services.store.get(docstore.REPORTS, CLINICIAN_ID, file_id)
    assert record["status"] == "processing"
    job_name = record["jobName"]
    assert re.fullmatch(rf"transcription-\d+-{file_id}", job_name)
    job = services.transcriber.jobs[-1]
    assert job["mediaFormat"] == "webm"
    assert job["mediaUri"] == f"s3://clinicavoice-audio/{upload['s3Key']}"
    assert job["outputKey"] == f"transcripts/{job_name}.json"

    transcript = "Patient reports hypertension and takes lisinopril daily. Call 555-123-4567."
    resp = client.post(
        "/internal/events/transcription-completion",
        json={
            "key": f"transcripts/{job_name}.json",
            "output": {"results": {"transcripts": [{"transcript": transcript}]}},
        },
        headers=internal_header(),
    )
    assert resp.status_code == 202

    status = client.post(f"/transcribe/{file_id}", headers=auth_header(clinician_token)).json()
    assert status["status"] == "completed"
    assert status["transcript"] == transcript
    assert status["jobName"] == job_name

    analysis = status["medicalAnalysis"]
    assert [e["text"] for e in analysis["entities"]] == ["hypertension", "lisinopril"]
    assert analysis["summary"]["categories"] == ["MEDICAL_CONDITION", "MEDICATION"]
    assert "PHONE_OR_FAX" in {p["type"] for p in analysis["phi"]}
    assert analysis["summary"]["totalPHI"] == len(analysis["phi"])


def test_failed_transcription_job(client, clinician_token, services):
    upload = _upload(client, clinician_token, fileName="memo.m4a", fileType="audio/m4a").json()
    client.post(
        "/internal/events/transcription-processor", json={"key": upload["s3Key"]}, headers=internal_header()
    )
    assert services.transcriber.jobs[-1]["mediaFormat"] == "mp4"
    job_name = services.store.get(docstore.REPORTS, CLINICIAN_ID, upload["fileId"])["jobName"]

    client.post(
        "/internal/events/transcription-completion",
        json={"key": f"transcripts/{job_name}.json", "output": {"status": "FAILED"}},
        headers=internal_header(),
    )
    record = services.store.get(docstore.REPORTS, CLINICIAN_ID, upload["fileId"])
    assert record["status"] == "failed"
    assert record["errorMessage"] == "Transcription failed"


def test_internal_events_require_token_and_known_function(client):
    resp = client.post("/internal/events/medical-analysis", json={}, headers=internal_header("wrong"))
    assert resp.status_code == 403

    resp = client.post("/internal/events/nope", json={}, headers=internal_header())
    assert resp.status_code == 404
    assert resp.json() == {"error": "Unknown function: nope"}


def test_transcription_reads(client, clinician_token):
    assert client.get("/transcribe", headers=auth_header(clinician_token)).json() == []
    upload = _upload(client, clinician_token).json()

    listing = client.get("/transcribe", headers=auth_header(clinician_token)).json()
    assert [item["id"] for item in listing] == [upload["fileId"]]

    resp = client.get("/transcribe/unknown", headers=auth_header(clinician_token))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Transcription not found"}

    status = client.post("/transcribe/unknown", headers=auth_header(clinician_token)).json()
    assert status == {
        "status": "processing",
        "fileId": "unknown",
        "message": "Transcription is being processed",
    }

    resp = client.post("/transcribe", headers=auth_header(clinician_token))
    assert resp.json()["status"] == "upload_ready"


def test_parse_audio_key():
    assert transcriptions.parse_audio_key("audio/u1/1700000000000_abc-123.MP3") == {
        "userId": "u1",
        "fileId": "abc-123",
        "extension": "mp3",
    }
    assert transcriptions.parse_audio_key("audio/u1") is None
    assert transcriptions.parse_audio_key("audio/u1/noseparator.mp3") is None


def test_process_upload_ignores_malformed_keys(services):
    assert transcriptions.process_upload(services, {"key": "bad"}) == {"started": False, "key": "bad"}


def test_analysis_requires_id_and_transcript(services):
    with pytest.raises(ValueError, match="Invalid event format"):
        transcriptions.analyze_transcription(services, {"transcriptionId": "x"})
    with pytest.raises(LookupError):
        transcriptions.analyze_transcription(services, {"transcriptionId": "x", "transcript": "fever"})
