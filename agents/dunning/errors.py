"""Exception hierarchy for the dunning workflow engine."""


class DunningError(Exception):
    """Base class for all dunning engine errors."""


class WorkflowConfigurationError(DunningError):
    """Workflow or step configuration cannot be resolved unambiguously."""

    def __init__(self, message: str, workflow_id: str | None = None):
        super().__init__(message)
        self.workflow_id = workflow_id


class StoreError(DunningError):
    """A read or write against one of the backing stores failed."""


class StoreUnavailableError(StoreError):
    """The input collection for an operation could not be read at all."""


class DispatchConflictError(DunningError):
    """A non-failed dispatch record already exists for the pair."""

    def __init__(self, obligation_id: str, template_id: str):
        super().__init__(f"dispatch already recorded for {obligation_id}/{template_id}")
        self.obligation_id = obligation_id
        self.template_id = template_id


class InvalidTemplateTransitionError(DunningError):
    """Template lifecycle transition is not allowed from the current state."""


class TemplateRenderError(DunningError):
    """Template content could not be rendered for an obligation."""


class ReassignmentInProgressError(DunningError):
    """Another bucket reassignment run holds the reassignment lock."""
