"""Reference side-effect collaborators for the submission orchestrator.

Each class implements one collaborator port from the domain layer: document
rendering, artifact storage, clinical notes, referral attribution,
notifications and the dead-letter queue.
"""

from intake_gateway.adapters.collaborators.affiliates import Affiliate, ConfiguredAffiliateEngine, Touch
from intake_gateway.adapters.collaborators.clinical_notes import DraftNoteGenerator
from intake_gateway.adapters.collaborators.dead_letter_queue import FileDeadLetterQueue
from intake_gateway.adapters.collaborators.notifier import LoggingNotifier
from intake_gateway.adapters.collaborators.object_store import LocalObjectStore
from intake_gateway.adapters.collaborators.pdf_renderer import ReportLabIntakeRenderer

__all__ = [
    "Affiliate",
    "ConfiguredAffiliateEngine",
    "DraftNoteGenerator",
    "FileDeadLetterQueue",
    "LocalObjectStore",
    "LoggingNotifier",
    "ReportLabIntakeRenderer",
    "Touch",
]
