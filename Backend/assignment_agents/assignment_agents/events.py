# assignment_agents/events.py
# Central list of event and task names used by the worker and the outbox.
CASE_REASSIGNMENT_REQUESTED = "CaseReassignmentRequested"

TASK_EXPIRATION = "expiration"
TASK_REMINDERS = "reminders"
TASK_CLEANUP = "cleanup"
TASK_EMERGENCY_MODE = "emergency_mode"

ALL_TASKS = (TASK_EXPIRATION, TASK_REMINDERS, TASK_CLEANUP, TASK_EMERGENCY_MODE)
