class WorkflowError(Exception):
    pass


class ValidationError(WorkflowError):
    pass


class NotAuthorized(WorkflowError):
    pass


class NotFound(WorkflowError):
    pass


class VersionConflict(WorkflowError):
    def __init__(self, task_id: int, expected_version: int, current_version: int):
        super().__init__(
            f"Task {task_id}: expected version {expected_version}, found {current_version}"
        )
        self.task_id = task_id
        self.expected_version = expected_version
        self.current_version = current_version


class ClaimOwnershipConflict(WorkflowError):
    """Task is claimed by another user. `holder` is that user's id."""

    def __init__(self, task_id: int, holder: int):
        super().__init__(f"Task {task_id} is claimed by user {holder}")
        self.task_id = task_id
        self.holder = holder


class AlreadyClaimed(WorkflowError):
    pass


class InvalidTransition(WorkflowError):
    pass


class DbError(WorkflowError):
    pass

