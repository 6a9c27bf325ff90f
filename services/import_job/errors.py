from __future__ import annotations


class ImportWizardError(Exception):
    """Base class for every failure raised by the import workflow."""


class InvalidInputError(ImportWizardError, ValueError):
    """Bad document or bad patch. Recovered locally, nothing was sent."""


class SubmissionError(ImportWizardError):
    """Upload / job creation was rejected or could not be delivered."""


class TransportError(ImportWizardError):
    """Status poll failed on the wire. Terminal for the run, not retried."""


class ResultFetchError(ImportWizardError):
    """Job finished but its records could not be fetched or were malformed."""


class PersistenceError(ImportWizardError):
    """Commit failed. The working set is kept so the user can retry."""


class WorkflowStateError(ImportWizardError, RuntimeError):
    """Operation is not legal in the current workflow / store state."""
