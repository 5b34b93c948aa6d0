"""Workspace provisioning: assigns ``status.workspace_id`` once ancestors have one."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Protocol

from ..convergence import get_or_none
from ..logging_utils import get_logger
from ..resources import Workspace
from ..router import Request, Response

logger = get_logger(__name__)

DIRECTORY_SCHEME = "directory://"


class WorkspaceProvider(Protocol):
    async def provision(self, workspace: Workspace, from_ids: list[str]) -> str:
        """Create backing storage seeded from ``from_ids`` (farthest first); return its ID."""
        ...


class LocalWorkspaceProvider:
    """Directories under a root path; a workspace's ID is ``directory://<path>``."""

    def __init__(self, root: str | Path):
        self._root = Path(root)

    async def provision(self, workspace: Workspace, from_ids: list[str]) -> str:
        return await asyncio.to_thread(self._provision, workspace, from_ids)

    def _provision(self, workspace: Workspace, from_ids: list[str]) -> str:
        path = (self._root / workspace.namespace / workspace.name).resolve()
        path.mkdir(parents=True, exist_ok=True)
        for workspace_id in from_ids:
            if not workspace_id.startswith(DIRECTORY_SCHEME):
                continue
            src = Path(workspace_id[len(DIRECTORY_SCHEME):])
            # nearer ancestors come later and win on conflicting files
            if src.is_dir():
                shutil.copytree(src, path, dirs_exist_ok=True)
        return DIRECTORY_SCHEME + str(path)


class WorkspaceHandler:
    def __init__(self, provider: WorkspaceProvider):
        self._provider = provider

    async def provision(self, req: Request, resp: Response) -> None:
        ws: Workspace = req.obj
        if ws.status.workspace_id or ws.deleting:
            return

        from_ids: list[str] = []
        for name in ws.spec.from_workspace_names:
            parent = await get_or_none(req.store, Workspace, ws.namespace, name)
            if parent is None or not parent.status.workspace_id:
                return
            from_ids.append(parent.status.workspace_id)

        ws.status.workspace_id = await self._provider.provision(ws, from_ids)
        logger.info("workspace provisioned", data={"workspace": ws.name, "workspace_id": ws.status.workspace_id})
