"""Operator-facing scheduler actions."""

from src.admin.actions import (
    ActionResult,
    cancel_task,
    get_task,
    init_admin_actions,
    list_outcomes,
    list_tasks,
    schedule_task,
    trigger_tick,
)

__all__ = [
    "ActionResult",
    "cancel_task",
    "get_task",
    "init_admin_actions",
    "list_outcomes",
    "list_tasks",
    "schedule_task",
    "trigger_tick",
]
