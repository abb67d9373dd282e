"""
End-to-end tests through the FastAPI routes.
"""

import json
from datetime import timedelta
from decimal import Decimal

from medconsult.config import get_settings
from medconsult.utils.hashing import sign_payload

from conftest import DOCTOR, OTHER, PATIENT, as_user


def _start_text(client):
    resp = client.post("/api/text-sessions/start", json={"doctor_id": DOCTOR, "reason": "rash"},
                       headers=as_user(PATIENT))
    assert resp.status_code == 200
    return resp.json()["session_id"]


def _start_call(client, call_type="voice"):
    resp = client.post("/api/calls/start", json={"doctor_id": DOCTOR, "call_type": call_type},
                       headers=as_user(PATIENT))
    assert resp.status_code == 200
    return resp.json()["session_id"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


# ---------------------------------------------------------------------------
# Text sessions
# ---------------------------------------------------------------------------

class TestTextSessionApi:
    def test_full_consultation(self, client, clock, balance):
        sid = _start_text(client)

        msg = client.post(f"/api/text-sessions/{sid}/patient-message", headers=as_user(PATIENT)).json()
        assert msg["deadline_set"] is True
        assert msg["status"] == "waiting_for_doctor"

        clock.advance(seconds=120)
        reply = client.post(f"/api/text-sessions/{sid}/doctor-message", headers=as_user(DOCTOR))
        assert reply.status_code == 200
        assert reply.json()["status"] == "active"

        clock.advance(minutes=25)
        end = client.post(f"/api/text-sessions/{sid}/end", json={"reported_duration": 1500},
                          headers=as_user(PATIENT)).json()
        assert end["units_charged"] == 3
        assert end["final_status"] == "ended"
        assert Decimal(end["amount"]) == Decimal("12.00")

        again = client.post(f"/api/text-sessions/{sid}/end", headers=as_user(DOCTOR)).json()
        assert again["already_done"] is True
        assert again["units_charged"] == 0

    def test_late_doctor_reply_is_conflict(self, client, clock, balance):
        sid = _start_text(client)
        client.post(f"/api/text-sessions/{sid}/patient-message", headers=as_user(PATIENT))
        clock.advance(seconds=301)

        resp = client.post(f"/api/text-sessions/{sid}/doctor-message", headers=as_user(DOCTOR))

        assert resp.status_code == 409
        status = client.get(f"/api/text-sessions/{sid}/status", headers=as_user(PATIENT)).json()
        assert status["status"] == "expired"
        assert status["identifier"] == f"text_{sid}"

    def test_stranger_gets_403(self, client, balance):
        sid = _start_text(client)
        resp = client.get(f"/api/text-sessions/{sid}/status", headers=as_user(OTHER))
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "UNAUTHORIZED_ACCESS"

    def test_unknown_session_is_404(self, client):
        resp = client.get("/api/text-sessions/12345/status", headers=as_user(PATIENT))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"

    def test_missing_caller_header(self, client, balance):
        resp = client.post("/api/text-sessions/start", json={"doctor_id": DOCTOR})
        assert resp.status_code == 422

    def test_no_units_is_402(self, client):
        resp = client.post("/api/text-sessions/start", json={"doctor_id": DOCTOR}, headers=as_user(PATIENT))
        assert resp.status_code == 402
        assert resp.json()["error_code"] == "INSUFFICIENT_BALANCE"

    def test_lapsed_subscription_is_402(self, client, db, clock, balance):
        balance.expires_at = clock.now() - timedelta(days=1)
        db.commit()

        resp = client.post("/api/calls/start", json={"doctor_id": DOCTOR, "call_type": "voice"},
                           headers=as_user(PATIENT))

        assert resp.status_code == 402
        assert resp.json()["error_code"] == "INSUFFICIENT_BALANCE"

    def test_cancel(self, client, balance):
        sid = _start_text(client)
        resp = client.post(f"/api/text-sessions/{sid}/cancel", headers=as_user(PATIENT))
        assert resp.json()["final_status"] == "cancelled"

    def test_start_is_rate_limited(self, client, balance):
        codes = [
            client.post("/api/text-sessions/start", json={"doctor_id": DOCTOR}, headers=as_user(PATIENT)).status_code
            for _ in range(11)
        ]
        assert codes[:10] == [200] * 10
        assert codes[10] == 429


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

class TestCallApi:
    def test_call_lifecycle(self, client, clock, balance, scheduler):
        cid = _start_call(client)

        answer = client.post(f"/api/calls/{cid}/answer", headers=as_user(DOCTOR)).json()
        assert answer["status"] == "answered"
        assert answer["applied"] is True
        assert len(scheduler.tasks) == 1

        connected = client.post(f"/api/calls/{cid}/connected", headers=as_user(PATIENT)).json()
        assert connected["status"] == "active"

        clock.advance(minutes=10)
        tick = client.post(f"/api/calls/{cid}/deduction", json={"reported_duration": 600},
                           headers=as_user(PATIENT)).json()
        assert tick["units_charged"] == 1

        replay = client.post(f"/api/calls/{cid}/deduction", json={"reported_duration": 600},
                             headers=as_user(PATIENT)).json()
        assert replay["units_charged"] == 0

        clock.advance(minutes=2)
        end = client.post(f"/api/calls/{cid}/end", json={"was_connected": True}, headers=as_user(DOCTOR)).json()
        assert end["units_charged"] == 1
        assert end["final_status"] == "ended"

        status = client.get(f"/api/calls/{cid}/status", headers=as_user(PATIENT)).json()
        assert status["status"] == "ended"
        assert status["sessions_used"] == 2

    def test_decline_then_answer_conflicts(self, client, balance):
        cid = _start_call(client, "video")
        assert client.post(f"/api/calls/{cid}/decline", headers=as_user(DOCTOR)).json()["status"] == "declined"
        resp = client.post(f"/api/calls/{cid}/answer", headers=as_user(DOCTOR))
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "INVALID_TRANSITION"

    def test_patient_cannot_answer(self, client, balance):
        cid = _start_call(client)
        assert client.post(f"/api/calls/{cid}/answer", headers=as_user(PATIENT)).status_code == 403


# ---------------------------------------------------------------------------
# Tagged identifiers
# ---------------------------------------------------------------------------

class TestSessionLookup:
    def test_text_and_call_identifiers(self, client, balance):
        sid = _start_text(client)
        cid = _start_call(client)

        text = client.get(f"/api/sessions/text_{sid}/status", headers=as_user(PATIENT)).json()
        call = client.get(f"/api/sessions/call_{cid}/status", headers=as_user(DOCTOR)).json()

        assert text["session_type"] == "text"
        assert text["status"] == "waiting_for_doctor"
        assert call["session_type"] == "call"
        assert call["status"] == "connecting"

    def test_direct_and_garbage_identifiers_are_404(self, client):
        for ident in ("direct_abc", "12", "zoom_4"):
            resp = client.get(f"/api/sessions/{ident}/status", headers=as_user(PATIENT))
            assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _webhook_body(reference, plan_id):
    return json.dumps({
        "event_type": "checkout.payment",
        "status": "success",
        "tx_ref": reference,
        "amount": "10.00",
        "currency": "USD",
        "meta": json.dumps({"user_id": PATIENT, "plan_id": plan_id}),
    }).encode()


class TestPaymentApi:
    def test_purchase_flow(self, client, plan):
        init = client.post("/api/payments/initiate", json={"plan_id": plan.id}, headers=as_user(PATIENT))
        assert init.status_code == 200
        reference = init.json()["reference"]
        assert init.json()["status"] == "pending"

        body = _webhook_body(reference, plan.id)
        first = client.post("/api/payments/webhook", content=body, headers={"Content-Type": "application/json"})
        second = client.post("/api/payments/webhook", content=body, headers={"Content-Type": "application/json"})

        assert first.json()["applied"] is True
        assert second.json()["already_applied"] is True

        status = client.get(f"/api/payments/{reference}", headers=as_user(PATIENT)).json()
        assert status["status"] == "success"
        assert status["applied"] is True

        # Entitlements are usable right away
        start = client.post("/api/text-sessions/start", json={"doctor_id": DOCTOR}, headers=as_user(PATIENT))
        assert start.json()["sessions_remaining"] == 5

    def test_signature_required_when_secret_configured(self, client, plan, monkeypatch):
        monkeypatch.setattr(get_settings(), "PAYMENT_WEBHOOK_SECRET", "s3cret")
        body = _webhook_body("R-SIG", plan.id)

        unsigned = client.post("/api/payments/webhook", content=body)
        assert unsigned.status_code == 401
        assert unsigned.json()["error_code"] == "INVALID_SIGNATURE"

        signed = client.post("/api/payments/webhook", content=body,
                             headers={"Signature": sign_payload(body, "s3cret")})
        assert signed.status_code == 200
        assert signed.json()["applied"] is True

    def test_malformed_webhook_is_422(self, client):
        body = json.dumps({"event_type": "checkout.payment", "status": "success", "tx_ref": "R9",
                           "meta": "{broken"}).encode()
        resp = client.post("/api/payments/webhook", content=body)
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "MALFORMED_EXTERNAL_EVENT"

    def test_unsupported_event_is_acknowledged(self, client):
        body = json.dumps({"event_type": "refund.created", "tx_ref": "R10"}).encode()
        resp = client.post("/api/payments/webhook", content=body)
        assert resp.status_code == 200
        assert resp.json()["ignored"] is True

    def test_other_users_payment_is_hidden(self, client, plan):
        reference = client.post("/api/payments/initiate", json={"plan_id": plan.id},
                                headers=as_user(PATIENT)).json()["reference"]
        assert client.get(f"/api/payments/{reference}", headers=as_user(OTHER)).status_code == 403


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class TestAdminApi:
    def test_sweep_and_listing(self, client, clock, balance):
        sid = _start_text(client)
        clock.advance(seconds=301)

        report = client.post("/api/admin/sweep").json()
        assert report["expired"] == 1

        sessions = client.get("/api/admin/sessions", params={"status": "expired"}).json()
        assert [s["identifier"] for s in sessions] == [f"text_{sid}"]
        assert sessions[0]["end_reason"] == "no_first_message"

    def test_wallet_after_billing(self, client, clock, balance):
        cid = _start_call(client, "video")
        client.post(f"/api/calls/{cid}/connected", headers=as_user(DOCTOR))
        clock.advance(minutes=20)
        client.post(f"/api/calls/{cid}/end", headers=as_user(PATIENT))

        wallet = client.get(f"/api/admin/wallets/{DOCTOR}").json()
        assert Decimal(wallet["balance"]) == Decimal("18.00")
        assert wallet["entries"][0]["units"] == 3
        assert wallet["entries"][0]["idempotency_key"] == f"call:{cid}:ticks:0-2:manual"

    def test_unknown_wallet(self, client):
        assert client.get("/api/admin/wallets/nobody").status_code == 404
