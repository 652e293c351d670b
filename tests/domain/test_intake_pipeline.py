"""End-to-end tests for the webhook intake pipeline on in-memory storage."""

import json
from unittest.mock import Mock

import pytest

from conftest import (
    EONMEDS_PASSWORD,
    EONMEDS_USERNAME,
    HEYFLOW_SECRET,
    OVERTIME_SECRET,
    WELLMEDR_SECRET,
    basic_auth,
    body,
)
from intake_gateway.adapters.collaborators import ConfiguredAffiliateEngine
from intake_gateway.adapters.storage import InMemoryStorageAdapter
from intake_gateway.domain.models import SourceConfig
from intake_gateway.domain.ports import PayloadFault, StorageError
from intake_gateway.domain.services.intake_pipeline import detect_source, parse_payload, peek_payload
from intake_gateway.domain.services.tenant_auth import WebhookRequest
from intake_gateway.infrastructure.request_context import get_tenant_id, tenant_scope
from intake_gateway.main import build_pipeline

JANE = {
    "submission-id": "wm-jane-1",
    "email": "jane@x.com",
    "first-name": "Jane",
    "last-name": "Doe",
    "dob": "03/04/1990",
    "Checkout Completed": "Yes",
}


class FailingPatientStorage(InMemoryStorageAdapter):
    """In-memory storage whose patient inserts always fail."""

    def create_patient(self, patient):
        raise StorageError("connection reset by peer", operation="create_patient")


def make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait):
    renderer = Mock()
    renderer.file_extension = "pdf"
    renderer.render.return_value = b"%PDF-1.4"
    return build_pipeline(
        storage,
        cipher=cipher,
        sources=sources,
        dead_letter_queue=dead_letter_queue,
        renderer=renderer,
        affiliate_engine=ConfiguredAffiliateEngine(),
        notifier=Mock(),
        retry_policy=no_wait,
    )


def wellmedr_request(payload=None, raw_body=None, secret=WELLMEDR_SECRET, request_id="req-1"):
    headers = {"x-webhook-secret": secret} if secret else {}
    return WebhookRequest(
        source="wellmedr",
        raw_body=raw_body if raw_body is not None else body(payload or JANE),
        headers=headers,
        request_id=request_id,
        client_ip="203.0.113.7",
        user_agent="wellmedr-hooks/2.1",
    )


@pytest.fixture
def pipeline(storage, cipher, sources, dead_letter_queue, no_wait, tenants):
    pipeline = make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait)
    yield pipeline
    pipeline.close()


class TestSourceDetection:
    def test_hint_wins(self):
        assert detect_source("WellMedr", {"x-intake-source": "overtime"}) == "wellmedr"

    def test_source_header(self):
        assert detect_source(None, {"x-intake-source": "overtime"}) == "overtime"

    def test_vendor_header_sniffing(self):
        assert detect_source("", {"x-heyflow-secret": "abc"}) == "heyflow"

    def test_unidentified(self):
        assert detect_source(None, {}) is None


class TestPayloadParsing:
    def test_peek_is_lenient(self):
        assert peek_payload(b"not json") is None
        assert peek_payload(b"[1, 2]") is None
        assert peek_payload(b'{"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("raw", [b"", b"   ", b"{not json", b"[1, 2]", b'"text"'])
    def test_strict_parse_rejects(self, raw):
        with pytest.raises(PayloadFault):
            parse_payload(raw, "wellmedr")


class TestIntakePipeline:
    """Request-level flow."""

    def test_new_complete_submission(self, pipeline, storage, cipher):
        """A completed intake creates a patient, a document and one clinical note."""
        response = pipeline.handle(wellmedr_request())

        assert response.status == 200
        assert response.body["success"] is True
        assert response.body["isNewPatient"] is True
        assert response.body["isComplete"] is True
        assert response.body["patientNumber"] == "PT-000001"
        assert response.body["requestId"] == "req-1"

        with tenant_scope(1):
            patient = storage.get_patient(response.body["patientId"])
            assert cipher.decrypt(patient.dob) == "1990-03-04"
            assert cipher.decrypt(patient.email) == "jane@x.com"
            assert "complete-intake" in patient.tags
            assert len(storage.list_clinical_notes(patient.id)) == 1
            document = storage.get_document("wm-jane-1")
            assert document.ip_address == "203.0.113.7"
            assert document.user_agent == "wellmedr-hooks/2.1"

    def test_duplicate_delivery(self, pipeline, storage):
        """The same bytes again replay the cached response without side effects."""
        first = pipeline.handle(wellmedr_request(request_id="req-1"))
        second = pipeline.handle(wellmedr_request(request_id="req-2"))

        assert second.status == 200
        assert second.body["status"] == "duplicate"
        assert second.body["requestId"] == "req-2"
        assert second.body["originalResponse"]["patientId"] == first.body["patientId"]
        with tenant_scope(1):
            assert storage.count_patients() == 1
            assert storage.count_documents() == 1

    def test_redelivery_with_new_bytes_updates_patient(self, pipeline, storage):
        pipeline.handle(wellmedr_request())
        changed = dict(JANE, phone="555-123-4567")

        response = pipeline.handle(wellmedr_request(changed, request_id="req-2"))

        assert response.status == 200
        assert response.body["isNewPatient"] is False
        with tenant_scope(1):
            assert storage.count_patients() == 1
            assert storage.count_documents() == 1

    def test_tenant_isolation(self, pipeline, storage):
        """The same person submitting to two clinics becomes two patients."""
        wellmedr = pipeline.handle(wellmedr_request())
        overtime = pipeline.handle(WebhookRequest(
            source="overtime",
            raw_body=body(JANE),
            headers={"x-webhook-secret": OVERTIME_SECRET},
            request_id="req-2",
        ))

        assert overtime.status == 200
        assert overtime.body["isNewPatient"] is True
        assert overtime.body["patientNumber"] == "PT-000001"
        with tenant_scope(1):
            assert storage.count_patients() == 1
            assert storage.get_patient(overtime.body["patientId"]) is None
        with tenant_scope(2):
            assert storage.count_patients() == 1
            assert storage.get_patient(wellmedr.body["patientId"]) is None

    def test_unknown_source(self, pipeline):
        response = pipeline.handle(WebhookRequest(source="typeform", raw_body=body(JANE), request_id="req-1"))

        assert response.status == 400
        assert response.body["success"] is False
        assert response.body["code"] == "INVALID_PAYLOAD"

    def test_invalid_credentials(self, pipeline, storage):
        response = pipeline.handle(wellmedr_request(secret="wrong"))

        assert response.status == 401
        assert response.body["code"] == "UNAUTHORIZED"
        with tenant_scope(1):
            assert storage.count_patients() == 0

    def test_missing_credentials(self, pipeline):
        assert pipeline.handle(wellmedr_request(secret=None)).status == 401

    def test_invalid_json(self, pipeline, storage):
        response = pipeline.handle(wellmedr_request(raw_body=b"{not json"))

        assert response.status == 400
        assert response.body["code"] == "INVALID_PAYLOAD"
        with tenant_scope(1):
            assert storage.count_patients() == 0

    def test_tenant_id_mismatch(self, storage, cipher, sources, dead_letter_queue, no_wait, tenants):
        """A pinned tenant id that does not match aborts before any write."""
        sources["wellmedr"] = SourceConfig(
            name="wellmedr", tenant_subdomain="wellmedr", expected_tenant_id=99, secret=WELLMEDR_SECRET
        )
        pipeline = make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait)

        response = pipeline.handle(wellmedr_request())

        assert response.status == 500
        assert response.body["code"] == "CLINIC_ID_MISMATCH"
        assert response.body["queued"] is False
        assert dead_letter_queue.list_entries() == []
        with tenant_scope(1):
            assert storage.count_patients() == 0

    def test_persistence_outage_is_dead_lettered(self, cipher, sources, dead_letter_queue, no_wait, tenants):
        storage = FailingPatientStorage()
        for tenant in tenants.values():
            storage.save_tenant(tenant)
        pipeline = make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait)
        raw = body(JANE)

        response = pipeline.handle(wellmedr_request(raw_body=raw))

        assert response.status == 500
        assert response.body["code"] == "PERSISTENCE_FAILED"
        assert response.body["queued"] is True
        entries = dead_letter_queue.list_entries()
        assert len(entries) == 1
        assert entries[0].payload == raw.decode("utf-8")
        assert entries[0].submission_id == "wm-jane-1"
        assert entries[0].request_id == "req-1"

        # Failures are not cached, so the vendor's retry is processed again
        retry = pipeline.handle(wellmedr_request(raw_body=raw, request_id="req-2"))
        assert retry.status == 500
        assert len(dead_letter_queue.list_entries()) == 2

    def test_multi_tenant_basic_auth(self, pipeline, storage):
        """A Heyflow delivery is bound to the clinic owning the Basic-auth username."""
        payload = {"fields": {"email": "sam@lee.io", "first-name": "Sam"}, "responseId": "hf-1"}
        response = pipeline.handle(WebhookRequest(
            source="heyflow",
            raw_body=body(payload),
            headers={"authorization": basic_auth(EONMEDS_USERNAME, EONMEDS_PASSWORD)},
            request_id="req-1",
        ))

        assert response.status == 200
        assert response.body["patientNumber"] == "EON-000001"
        with tenant_scope(3):
            assert storage.count_patients() == 1

    def test_multi_tenant_payload_clinic(self, pipeline, storage):
        payload = {"clinic-subdomain": "ot", "fields": {"email": "sam@lee.io"}}
        response = pipeline.handle(WebhookRequest(
            source="heyflow",
            raw_body=body(payload),
            headers={"x-heyflow-secret": HEYFLOW_SECRET},
            request_id="req-1",
        ))

        assert response.status == 200
        with tenant_scope(2):
            assert storage.count_patients() == 1

    def test_same_bytes_for_two_clinics_are_not_duplicates(self, pipeline, storage):
        """Identical bodies routed to different clinics by header each create a patient."""
        raw = body({"fields": {"email": "sam@lee.io", "first-name": "Sam"}, "responseId": "hf-9"})

        first = pipeline.handle(WebhookRequest(
            source="heyflow",
            raw_body=raw,
            headers={"x-heyflow-secret": HEYFLOW_SECRET, "x-clinic-subdomain": "ot"},
            request_id="req-1",
        ))
        second = pipeline.handle(WebhookRequest(
            source="heyflow",
            raw_body=raw,
            headers={"x-heyflow-secret": HEYFLOW_SECRET, "x-clinic-subdomain": "eonmeds"},
            request_id="req-2",
        ))

        assert first.status == 200
        assert second.status == 200
        assert second.body.get("status") != "duplicate"
        assert second.body["patientNumber"] == "EON-000001"
        with tenant_scope(2):
            assert storage.count_patients() == 1
        with tenant_scope(3):
            assert storage.count_patients() == 1

    def test_unmatched_delivery_is_stored(self, pipeline, storage):
        """An authenticated delivery naming an unknown clinic is kept for reconciliation."""
        raw = body({"clinic-subdomain": "nowhere", "fields": {"email": "sam@lee.io"}})
        request = WebhookRequest(source="heyflow", raw_body=raw, headers={"x-heyflow-secret": HEYFLOW_SECRET}, request_id="req-1")

        response = pipeline.handle(request)

        assert response.status == 202
        assert response.body == {"received": True, "status": "unmatched", "requestId": "req-1"}
        unmatched = storage.list_unmatched()
        assert len(unmatched) == 1
        assert unmatched[0].source == "heyflow"
        assert json.loads(unmatched[0].payload)["clinic-subdomain"] == "nowhere"

        again = pipeline.handle(request)
        assert again.status == 202
        assert again.body["status"] == "duplicate"
        assert len(storage.list_unmatched()) == 1

    def test_unmatched_without_credentials_is_rejected(self, pipeline, storage):
        raw = body({"fields": {"email": "sam@lee.io"}})
        response = pipeline.handle(WebhookRequest(source="heyflow", raw_body=raw, request_id="req-1"))

        assert response.status == 401
        assert storage.list_unmatched() == []

    def test_normalization_failure_uses_fallback(self, pipeline, storage):
        raw = body({"clinic-subdomain": "eonmeds", "fields": "unexpected"})
        response = pipeline.handle(WebhookRequest(
            source="heyflow", raw_body=raw, headers={"x-heyflow-secret": HEYFLOW_SECRET}, request_id="req-7"
        ))

        assert response.status == 200
        assert response.body["submissionId"] == "fallback-req-7"
        assert response.body["isComplete"] is False
        assert any(warning.startswith("normalization:") for warning in response.body["warnings"])
        with tenant_scope(3):
            patient = storage.get_patient(response.body["patientId"])
            assert "needs-review" in patient.tags

    def test_signature_required(self, storage, cipher, sources, dead_letter_queue, no_wait, tenants):
        sources["wellmedr"] = SourceConfig(
            name="wellmedr",
            tenant_subdomain="wellmedr",
            secret=WELLMEDR_SECRET,
            require_signature=True,
            signing_secret="signing-key",
        )
        pipeline = make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait)

        response = pipeline.handle(wellmedr_request())

        assert response.status == 401
        with tenant_scope(1):
            assert storage.count_patients() == 0

    def test_signature_required_without_signing_secret(self, storage, cipher, sources, dead_letter_queue, no_wait, tenants):
        """A source demanding signatures but holding no signing key rejects every delivery."""
        sources["wellmedr"] = SourceConfig(
            name="wellmedr",
            tenant_subdomain="wellmedr",
            secret=WELLMEDR_SECRET,
            require_signature=True,
        )
        pipeline = make_pipeline(storage, cipher, sources, dead_letter_queue, no_wait)

        response = pipeline.handle(wellmedr_request())

        assert response.status == 500
        assert response.body["code"] == "NO_SIGNING_SECRET"
        with tenant_scope(1):
            assert storage.count_patients() == 0

    def test_tenant_scope_is_released(self, pipeline):
        pipeline.handle(wellmedr_request())
        assert get_tenant_id() is None

    def test_source_status(self, pipeline):
        heyflow = pipeline.source_status("heyflow")
        assert heyflow["configured"] is True
        assert heyflow["clinicIsolation"] == "dynamic"
        assert heyflow["authKinds"] == ["header_secret", "bearer", "basic"]

        wellmedr = pipeline.source_status("WELLMEDR")
        assert wellmedr["clinicIsolation"] == "static"
        assert wellmedr["tenantSubdomain"] == "wellmedr"

        assert pipeline.source_status("typeform") == {"source": "typeform", "configured": False}
