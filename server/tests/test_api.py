"""
HTTP API tests driven through the ASGI app with an in-memory database.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.models.letter import LetterType
from app.services import jobs

from conftest import (
    ADMIN,
    AUTHOR,
    FINANCE,
    WORKFLOW_APPROVERS,
    auth_headers,
    letter_payload,
    webhook_headers,
)


async def create_letter(client, **overrides):
    response = await client.post("/letters", json=letter_payload(**overrides), headers=auth_headers(AUTHOR))
    assert response.status_code == 201, response.text
    return response.json()


async def submitted_letter(client):
    letter = await create_letter(client)
    response = await client.post(f"/letters/{letter['id']}/submit", headers=auth_headers(AUTHOR))
    assert response.status_code == 200, response.text
    return response.json()


async def decide(client, letter_id, step_number, decision="APPROVED", actor=None):
    return await client.post(
        f"/letters/{letter_id}/approval-steps/{step_number}/decision",
        json={"decision": decision, "comments": f"step {step_number}"},
        headers=auth_headers(actor or WORKFLOW_APPROVERS[step_number]),
    )


async def approved_letter(client):
    letter = await submitted_letter(client)
    for step_number in (1, 2, 3):
        response = await decide(client, letter["id"], step_number)
        assert response.status_code == 200, response.text
    return response.json(), letter["id"]


async def audit_actions(client, letter_id):
    response = await client.get(f"/letters/{letter_id}/audit", headers=auth_headers(AUTHOR))
    assert response.status_code == 200
    return [entry["action"] for entry in response.json()]


async def post_webhook(client, provider, body, headers=None):
    content = body if isinstance(body, bytes) else json.dumps(body).encode()
    return await client.post(f"/webhooks/esign/{provider}", content=content, headers=headers or webhook_headers())


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_mutations_require_bearer_token(self, client):
        response = await client.post("/letters", json=letter_payload())
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/letters", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["esign_providers"]["registered"] == ["digio", "docusign"]
        assert body["checks"]["locks"]["distributed"] is False


class TestLetters:
    @pytest.mark.asyncio
    async def test_create_and_read(self, client):
        letter = await create_letter(client)

        assert letter["status"] == "DRAFT"
        assert letter["serial_no"].startswith("LEN/OFR/")
        assert letter["serial_no"].endswith("/IN-IND-114/00001")
        assert [step["step_number"] for step in letter["approval_steps"]] == [1, 2, 3]

        response = await client.get(f"/letters/{letter['id']}", headers=auth_headers(AUTHOR))
        assert response.json()["id"] == letter["id"]

    @pytest.mark.asyncio
    async def test_unknown_signatory_provider(self, client):
        payload = letter_payload()
        payload["signatories"][0]["provider"] = "adobe_sign"
        response = await client.post("/letters", json=payload, headers=auth_headers(AUTHOR))

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_letter(self, client):
        response = await client.get("/letters/does-not-exist", headers=auth_headers(AUTHOR))
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_list_and_stats(self, client):
        await create_letter(client)
        await create_letter(client, letter_type=LetterType.PROMOTION.value, new_designation="Store Manager")

        response = await client.get("/letters", params={"letter_type": "PROMOTION"}, headers=auth_headers(AUTHOR))
        listing = response.json()
        assert listing["total"] == 1
        assert listing["items"][0]["letter_type"] == "PROMOTION"

        stats = (await client.get("/letters/stats", headers=auth_headers(AUTHOR))).json()
        assert stats["total"] == 2
        assert stats["by_type"] == {"OFFER": 1, "PROMOTION": 1}

    @pytest.mark.asyncio
    async def test_page_size_bounds(self, client):
        await create_letter(client)

        response = await client.get("/letters", params={"page_size": 1}, headers=auth_headers(AUTHOR))
        assert response.json()["page_size"] == 1
        assert len(response.json()["items"]) == 1
        default = await client.get("/letters", headers=auth_headers(AUTHOR))
        assert default.json()["page_size"] == 20

        too_large = await client.get("/letters", params={"page_size": 101}, headers=auth_headers(AUTHOR))
        assert too_large.status_code == 422

    @pytest.mark.asyncio
    async def test_patch_in_draft_only(self, client):
        letter = await create_letter(client)
        response = await client.patch(
            f"/letters/{letter['id']}", json={"template_version": "4"}, headers=auth_headers(AUTHOR)
        )
        assert response.json()["template_version"] == "4"

        await client.post(f"/letters/{letter['id']}/submit", headers=auth_headers(AUTHOR))
        response = await client.patch(
            f"/letters/{letter['id']}", json={"template_version": "5"}, headers=auth_headers(AUTHOR)
        )
        assert response.status_code == 409
        assert response.json()["context"]["guard"] == "editable_in_draft"

    @pytest.mark.asyncio
    async def test_submit_with_incomplete_binding(self, client):
        letter = await create_letter(client, data_binding={"employee": {"id": "EMP-1"}})
        response = await client.post(f"/letters/{letter['id']}/submit", headers=auth_headers(AUTHOR))

        assert response.status_code == 409
        assert response.json()["context"]["guard"] == "data_binding_complete"
        actions = await audit_actions(client, letter["id"])
        assert actions == ["letter.created", "letter.submit.rejected"]

    @pytest.mark.asyncio
    async def test_void(self, client):
        letter = await create_letter(client)
        response = await client.post(
            f"/letters/{letter['id']}/void", json={"reason": "raised in error"}, headers=auth_headers(AUTHOR)
        )
        assert response.json()["status"] == "VOID"
        assert response.json()["void_reason"] == "raised in error"

        response = await client.post(
            f"/letters/{letter['id']}/void", json={"reason": "again"}, headers=auth_headers(AUTHOR)
        )
        assert response.status_code == 409
        assert response.json()["context"]["guard"] == "terminal_state"


class TestApprovalDecisions:
    @pytest.mark.asyncio
    async def test_out_of_order_decision(self, client):
        letter = await submitted_letter(client)
        response = await decide(client, letter["id"], 2)

        assert response.status_code == 409
        assert response.json()["error"] == "out_of_order_decision"
        assert response.json()["message"] == "step 2 cannot be decided before step 1"
        actions = await audit_actions(client, letter["id"])
        assert actions[-1] == "approval.decide.rejected"

    @pytest.mark.asyncio
    async def test_wrong_approver(self, client):
        letter = await submitted_letter(client)
        response = await decide(client, letter["id"], 1, actor=FINANCE)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_override(self, client):
        letter = await submitted_letter(client)
        response = await decide(client, letter["id"], 1, actor=ADMIN)
        assert response.status_code == 200
        assert response.json()["step"]["decided_by"] == "admin-01"

    @pytest.mark.asyncio
    async def test_repeated_click_is_replayed(self, client):
        letter = await submitted_letter(client)
        first = await decide(client, letter["id"], 1)
        again = await decide(client, letter["id"], 1)

        assert first.json()["replayed"] is False
        assert again.status_code == 200
        assert again.json()["replayed"] is True
        actions = await audit_actions(client, letter["id"])
        assert actions.count("approval.step.decided") == 1

    @pytest.mark.asyncio
    async def test_rejection_returns_to_draft(self, client):
        letter = await submitted_letter(client)
        await decide(client, letter["id"], 1)
        response = await decide(client, letter["id"], 2, decision="REJECTED")

        assert response.json()["workflow_state"] == "rejected"
        assert response.json()["letter_status"] == "DRAFT"
        frozen = await decide(client, letter["id"], 3)
        assert frozen.status_code == 409

    @pytest.mark.asyncio
    async def test_final_approval_requests_signatures(self, client, providers):
        decision, letter_id = await approved_letter(client)

        assert decision["letter_status"] == "APPROVED"
        assert decision["workflow_state"] == "completed"
        assert len(providers.get("docusign").requests) == 2
        letter = (await client.get(f"/letters/{letter_id}", headers=auth_headers(AUTHOR))).json()
        assert all(signatory["signing_request_id"] for signatory in letter["signatories"])


class TestSignatureWebhooks:
    @pytest.mark.asyncio
    async def test_completion_flow_and_duplicate_delivery(self, client, providers):
        _, letter_id = await approved_letter(client)
        fake = providers.get("docusign")
        first, second = fake.requests

        response = await post_webhook(client, "docusign", fake.webhook(first))
        assert response.status_code == 200
        assert response.json() == {"status": "applied", "request_id": first.request_id, "request_status": "COMPLETED"}
        letter = (await client.get(f"/letters/{letter_id}", headers=auth_headers(AUTHOR))).json()
        assert letter["status"] == "APPROVED"

        actions_before = await audit_actions(client, letter_id)
        duplicate = await post_webhook(client, "docusign", fake.webhook(first))
        assert duplicate.status_code == 200
        assert duplicate.json()["status"] == "duplicate"
        assert await audit_actions(client, letter_id) == actions_before

        await post_webhook(client, "docusign", fake.webhook(second))
        letter = (await client.get(f"/letters/{letter_id}", headers=auth_headers(AUTHOR))).json()
        assert letter["status"] == "SIGNED"

        response = await client.post(
            f"/letters/{letter_id}/finalize",
            json={"files": {"pdf_url": "https://files.test/offer.pdf"}},
            headers=auth_headers(AUTHOR),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ISSUED"
        assert response.json()["files"] == {"pdf_url": "https://files.test/offer.pdf"}

    @pytest.mark.asyncio
    async def test_intermediate_status(self, client, providers):
        await approved_letter(client)
        fake = providers.get("docusign")
        response = await post_webhook(client, "docusign", fake.webhook(fake.requests[0], status="delivered"))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert response.json()["request_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_webhook_for_expired_request_is_stale(self, client, providers, session_factory, locks):
        _, letter_id = await approved_letter(client)
        fake = providers.get("docusign")
        request = fake.requests[0]
        async with session_factory() as session:
            await jobs.run_expiry_sweep(session, locks, now=datetime.now(timezone.utc) + timedelta(hours=25))
        actions_before = await audit_actions(client, letter_id)

        response = await post_webhook(client, "docusign", fake.webhook(request))

        assert response.status_code == 200
        assert response.json() == {"status": "stale", "request_id": request.request_id, "request_status": "FAILED"}
        assert await audit_actions(client, letter_id) == actions_before
        letter = (await client.get(f"/letters/{letter_id}", headers=auth_headers(AUTHOR))).json()
        assert letter["status"] == "APPROVED"

    @pytest.mark.asyncio
    async def test_unauthenticated_webhook(self, client, providers):
        await approved_letter(client)
        fake = providers.get("docusign")
        response = await post_webhook(
            client, "docusign", fake.webhook(fake.requests[0]), headers={"X-Fake-Signature": "guess"}
        )
        assert response.status_code == 401
        status = await client.get(f"/signing-requests/{fake.requests[0].request_id}", headers=auth_headers(AUTHOR))
        assert status.json()["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_forged_token_fails_request(self, client, providers):
        await approved_letter(client)
        fake = providers.get("docusign")
        request = fake.requests[0]
        response = await post_webhook(client, "docusign", fake.webhook(request, token="forged"))

        assert response.status_code == 401
        status = await client.get(f"/signing-requests/{request.request_id}", headers=auth_headers(AUTHOR))
        assert status.json()["status"] == "FAILED"
        assert status.json()["failure_reason"] == "signature_invalid"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await post_webhook(client, "docusign", b"{broken")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await post_webhook(client, "adobe_sign", {"request_id": "x", "status": "completed"})
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_provider"

    @pytest.mark.asyncio
    async def test_unknown_request(self, client):
        response = await post_webhook(client, "docusign", {"request_id": "missing", "status": "completed"})
        assert response.status_code == 404


class TestSigningRequests:
    @pytest.mark.asyncio
    async def test_verify_callback(self, client, providers):
        await approved_letter(client)
        request = providers.get("docusign").requests[0]

        ok = await client.post(f"/signing-requests/{request.request_id}/verify", json={"signature": request.token})
        assert ok.json() == {"request_id": request.request_id, "verified": True}

        bad = await client.post(f"/signing-requests/{request.request_id}/verify", json={"signature": "f" * 64})
        assert bad.status_code == 401
        status = await client.get(f"/signing-requests/{request.request_id}", headers=auth_headers(AUTHOR))
        assert status.json()["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_cancel_then_request_again(self, client, providers):
        _, letter_id = await approved_letter(client)
        request = providers.get("docusign").requests[0]

        cancelled = await client.post(f"/signing-requests/{request.request_id}/cancel", headers=auth_headers(AUTHOR))
        assert cancelled.json()["status"] == "CANCELLED"
        again = await client.post(f"/signing-requests/{request.request_id}/cancel", headers=auth_headers(AUTHOR))
        assert again.status_code == 409

        response = await client.post(
            f"/letters/{letter_id}/signatures", json={"signatory_index": 0}, headers=auth_headers(AUTHOR)
        )
        assert response.status_code == 201
        assert response.json()["requests"][0]["signatory_index"] == 0
        assert len(providers.get("docusign").requests) == 3

    @pytest.mark.asyncio
    async def test_second_active_request_is_refused(self, client):
        _, letter_id = await approved_letter(client)
        response = await client.post(
            f"/letters/{letter_id}/signatures", json={"signatory_index": 1}, headers=auth_headers(AUTHOR)
        )
        assert response.status_code == 409
        assert response.json()["context"]["guard"] == "no_active_request"


class TestJobs:
    @pytest.mark.asyncio
    async def test_sweeps_run_with_nothing_due(self, client):
        await submitted_letter(client)
        for path, job in (
            ("/jobs/escalations", "escalations"),
            ("/jobs/signing-expiry", "signing-expiry"),
            ("/jobs/outbox/dispatch", "outbox"),
        ):
            response = await client.post(path, headers=auth_headers(ADMIN))
            assert response.status_code == 200
            assert response.json() == {"job": job, "processed": 0, "items": []}
