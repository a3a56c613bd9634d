"""Isolated per-run workspaces."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from .contracts import Workspace

logger = logging.getLogger(__name__)


def workspace_name(workflow_name: str, run_id: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", workflow_name).strip("-") or "workflow"
    return f"{slug}-{run_id}"


class WorkspaceManager(Protocol):
    async def create(self, name: str) -> Workspace:
        ...

    async def destroy(self, workspace: Workspace) -> None:
        ...


class DirectoryWorkspaceManager:
    """Give each run its own directory under ``root``."""

    def __init__(self, root: Optional[str | Path] = None) -> None:
        self.root = Path(root) if root else Path(tempfile.gettempdir()) / "waypoint-workspaces"

    async def create(self, name: str) -> Workspace:
        path = self.root / name
        if path.exists():
            raise FileExistsError(f"Workspace {name} already exists at {path}")
        await asyncio.to_thread(path.mkdir, parents=True)
        logger.info(f"Created workspace {name} at {path}")
        return Workspace(name=name, path=str(path))

    async def destroy(self, workspace: Workspace) -> None:
        if not workspace.path:
            return
        path = Path(workspace.path)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info(f"Destroyed workspace {workspace.name}")
