"""Convergence steps grouped by the resource kind they reconcile."""

from .runs import RunHandler, delete_run_state
from .templates import ensure_template_thread_share, snapshot_upgrade_status
from .threads import ThreadHandler, ensure_shared
from .workspaces import LocalWorkspaceProvider, WorkspaceHandler, WorkspaceProvider

__all__ = [
    "RunHandler",
    "delete_run_state",
    "ensure_template_thread_share",
    "snapshot_upgrade_status",
    "ThreadHandler",
    "ensure_shared",
    "LocalWorkspaceProvider",
    "WorkspaceHandler",
    "WorkspaceProvider",
]
