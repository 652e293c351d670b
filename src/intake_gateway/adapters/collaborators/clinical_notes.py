"""Draft clinical note generator.

Creates an empty draft note record linked to the intake document. The note
text itself is written later by a clinician; only the record is created here.
"""

import logging

from intake_gateway.domain.ports import ClinicalNotePort, ClinicalNoteRepositoryPort

logger = logging.getLogger(__name__)


class DraftNoteGenerator(ClinicalNotePort):
    def __init__(self, notes: ClinicalNoteRepositoryPort):
        self._notes = notes

    def generate(self, patient_id: int, document_id: int) -> str:
        note_id = self._notes.insert_clinical_note(patient_id, document_id)
        logger.info(f"Created draft clinical note {note_id} for document {document_id}")
        return note_id
