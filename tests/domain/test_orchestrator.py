"""Tests for the submission orchestrator's step sequencing."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

import pytest

from intake_gateway.adapters.collaborators import DraftNoteGenerator
from intake_gateway.domain.canonical import CanonicalIntake, IntakeAnswer, IntakeIdentity, IntakeSection
from intake_gateway.domain.ports import PersistenceFault, SideEffectFault, StorageError
from intake_gateway.domain.services.attribution import ReferralAttributor
from intake_gateway.domain.services.identity_resolver import PatientIdentityResolver
from intake_gateway.domain.services.orchestrator import (
    ACTION_COMPLETE,
    ACTION_PARTIAL,
    NEW_PATIENT_EVENT,
    SubmissionContext,
    SubmissionOrchestrator,
)
from intake_gateway.infrastructure.request_context import tenant_scope


def make_intake(submission_id="wm-1", complete=True, email="jane@x.com"):
    return CanonicalIntake(
        submission_id=submission_id,
        source="wellmedr",
        identity=IntakeIdentity(first_name="Jane", last_name="Doe", email=email, dob="1990-03-04"),
        sections=[IntakeSection(title="Goals", answers=[IntakeAnswer(id="goals", label="Goals", value="Energy")])],
        is_complete=complete,
    )


@pytest.fixture
def renderer():
    renderer = Mock()
    renderer.file_extension = "pdf"
    renderer.render.return_value = b"%PDF-1.4 intake"
    return renderer


@pytest.fixture
def object_store():
    store = Mock()
    store.put.side_effect = lambda data, key: f"file:///artifacts/{key}"
    return store


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def orchestrator(storage, cipher, no_wait, renderer, object_store, notifier):
    engine = Mock()
    engine.attribute.return_value = None
    engine.attribute_by_recent_touch.return_value = None
    orchestrator = SubmissionOrchestrator(
        resolver=PatientIdentityResolver(storage, cipher),
        documents=storage,
        retry_policy=no_wait,
        renderer=renderer,
        object_store=object_store,
        note_generator=DraftNoteGenerator(storage),
        attributor=ReferralAttributor(engine, storage),
        audit=storage,
        notifier=notifier,
    )
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def scope(tenants):
    with tenant_scope(1):
        yield


@pytest.mark.usefixtures("scope")
class TestSubmissionOrchestrator:

    def test_complete_submission_runs_every_step(self, orchestrator, tenants, storage, object_store, notifier):
        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))
        orchestrator.shutdown()

        assert outcome.is_new_patient
        assert outcome.warnings == []
        assert outcome.document.rendered
        assert outcome.document.artifact_url == "file:///artifacts/intake/1/PT-000001/wm-1.pdf"
        assert outcome.document.clinical_note_id == outcome.clinical_note_id
        object_store.put.assert_called_once_with(b"%PDF-1.4 intake", "intake/1/PT-000001/wm-1.pdf")

        assert len(storage.list_clinical_notes(outcome.patient.id)) == 1
        stored = storage.get_document("wm-1")
        assert stored.clinical_note_id == outcome.clinical_note_id
        assert stored.sections[0]["title"] == "Goals"

        events = storage.audit_events(ACTION_COMPLETE)
        assert len(events) == 1
        assert events[0].request_id == "req-1"
        assert events[0].details["steps"] == {
            "document": True,
            "artifact": True,
            "document_record": True,
            "clinical_note": True,
            "attribution": False,
        }

        notifier.notify.assert_called_once()
        event = notifier.notify.call_args.args[0]
        assert event.kind == NEW_PATIENT_EVENT
        assert event.patient_id == outcome.patient.id

    def test_partial_submission(self, orchestrator, tenants, storage, notifier):
        outcome = orchestrator.process(make_intake(complete=False), tenants["wellmedr"], SubmissionContext(request_id="req-1"))
        orchestrator.shutdown()

        assert outcome.clinical_note_id is None
        assert storage.list_clinical_notes(outcome.patient.id) == []
        assert len(storage.audit_events(ACTION_PARTIAL)) == 1
        notifier.notify.assert_not_called()

    def test_clinical_note_once_per_submission(self, orchestrator, tenants, storage):
        first = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))
        second = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-2"))

        assert second.clinical_note_id == first.clinical_note_id
        assert second.document.id == first.document.id
        assert not second.is_new_patient
        assert len(storage.list_clinical_notes(first.patient.id)) == 1
        assert storage.count_documents() == 1

    def test_renderer_failure_is_a_warning(self, orchestrator, tenants, storage, renderer, object_store):
        renderer.render.side_effect = RuntimeError("font missing")

        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))

        assert outcome.warnings == ["document: RuntimeError: font missing"]
        assert storage.count_patients() == 1
        assert not outcome.document.rendered
        assert outcome.document.artifact_url is None
        object_store.put.assert_not_called()
        assert outcome.clinical_note_id is not None

    def test_upload_failure_is_a_warning(self, orchestrator, tenants, object_store):
        object_store.put.side_effect = SideEffectFault("bucket unavailable", step="artifact")

        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))

        assert outcome.warnings == ["artifact: bucket unavailable"]
        assert outcome.document.rendered
        assert outcome.document.artifact_url is None

    def test_notification_failure_is_swallowed(self, orchestrator, tenants, notifier):
        notifier.notify.side_effect = RuntimeError("smtp down")

        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))
        orchestrator.shutdown()

        assert outcome.warnings == []
        notifier.notify.assert_called_once()

    def test_context_warnings_are_carried(self, orchestrator, tenants):
        context = SubmissionContext(request_id="req-1", warnings=["normalization: bad payload"])
        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], context)
        assert outcome.warnings == ["normalization: bad payload"]

    def test_patient_upsert_failure_is_fatal(self, storage, no_wait, renderer, tenants):
        resolver = Mock()
        resolver.resolve.side_effect = StorageError("connection reset", operation="create_patient")
        orchestrator = SubmissionOrchestrator(resolver=resolver, documents=storage, retry_policy=no_wait, renderer=renderer)

        with pytest.raises(PersistenceFault) as exc_info:
            orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))

        assert exc_info.value.operation == "patient_upsert"
        assert resolver.resolve.call_count == 3
        renderer.render.assert_not_called()

    def test_response_body(self, orchestrator, tenants):
        outcome = orchestrator.process(make_intake(), tenants["wellmedr"], SubmissionContext(request_id="req-1"))
        body = outcome.to_response("req-1")

        assert body["success"] is True
        assert body["requestId"] == "req-1"
        assert body["patientNumber"] == "PT-000001"
        assert body["submissionId"] == "wm-1"
        assert body["isNewPatient"] is True
        assert body["isComplete"] is True
        assert body["document"]["rendered"] is True
        assert body["clinicalNote"] == {"id": outcome.clinical_note_id}
        assert body["affiliate"] is None
        assert body["warnings"] == []


class TestNotificationExecutor:
    """Lazily created pool for detached notifications."""

    def test_concurrent_first_use_creates_one_executor(self, storage, cipher):
        orchestrator = SubmissionOrchestrator(resolver=PatientIdentityResolver(storage, cipher), documents=storage)
        created = []

        def slow_pool(*args, **kwargs):
            time.sleep(0.05)
            pool = ThreadPoolExecutor(*args, **kwargs)
            created.append(pool)
            return pool

        barrier = threading.Barrier(8)
        seen = []

        def first_use():
            barrier.wait()
            seen.append(orchestrator.notification_executor())

        with patch("intake_gateway.domain.services.orchestrator.ThreadPoolExecutor", side_effect=slow_pool):
            workers = [threading.Thread(target=first_use) for _ in range(8)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

        assert len(created) == 1
        assert all(executor is created[0] for executor in seen)

        orchestrator.shutdown()
        with pytest.raises(RuntimeError):
            created[0].submit(print)

    def test_injected_executor_is_not_shut_down(self, storage, cipher):
        executor = Mock()
        orchestrator = SubmissionOrchestrator(
            resolver=PatientIdentityResolver(storage, cipher), documents=storage, executor=executor
        )

        assert orchestrator.notification_executor() is executor
        orchestrator.shutdown()
        executor.shutdown.assert_not_called()
