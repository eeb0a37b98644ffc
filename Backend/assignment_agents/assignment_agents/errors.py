# assignment_agents/errors.py
from __future__ import annotations


class AssignmentEngineError(Exception):
    pass


class ConfigError(AssignmentEngineError):
    """Invalid scheduler configuration. Raised at load time only."""


class NotFoundError(AssignmentEngineError):
    pass


class IllegalTransitionError(AssignmentEngineError):
    def __init__(self, current, target) -> None:
        super().__init__(f"Illegal assignment transition {current} -> {target}")
        self.current = current
        self.target = target


class AssignmentConflictError(AssignmentEngineError):
    """A case already has a PENDING assignment."""

    def __init__(self, case_id: int, pending_assignment_id: int) -> None:
        super().__init__(f"Case {case_id} already has pending assignment {pending_assignment_id}")
        self.case_id = case_id
        self.pending_assignment_id = pending_assignment_id


class CollaboratorTimeoutError(AssignmentEngineError):
    pass
