"""Human-readable workflow-status.yaml files, one per run."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..constants import STATUS_FILE_NAME
from ..contracts import utcnow
from ..errors import StoreWriteError
from .models import RunRecord

logger = logging.getLogger(__name__)


class StatusFileWriter:
    """Write ``<root>/<run_id>/workflow-status.yaml`` atomically."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, run_id: str) -> Path:
        return self.root / run_id / STATUS_FILE_NAME

    @staticmethod
    def render(record: RunRecord) -> str:
        state = record.state
        data: Dict[str, Any] = {
            "workflow": {
                "name": state.workflow_name,
                "run_id": state.run_id,
                "current_step": state.current_step_id or "initialization",
                "status": state.status.value,
                "progress_percentage": state.progress_percentage,
                "completed_steps": list(state.completed_step_ids),
                "escalation_count": state.escalation_count,
                "pending_escalation_id": state.pending_escalation_id,
                "started_at": state.started_at.isoformat() if state.started_at else None,
                "completed_at": state.completed_at.isoformat() if state.completed_at else None,
            }
        }
        if state.error is not None:
            data["workflow"]["error"] = state.error.model_dump()
        header = (
            "# Workflow Status - Auto-generated\n"
            "# Do not edit manually\n"
            f"# Last updated: {utcnow().isoformat()}\n\n"
        )
        return header + yaml.safe_dump(data, sort_keys=False, width=120)

    def _write(self, record: RunRecord) -> Path:
        target = self.path_for(record.run_id)
        tmp = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(self.render(record))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError as e:
            if tmp.is_file():
                tmp.unlink()
            raise StoreWriteError(
                f"Failed to write status file {target}: {e}",
                context={"path": str(target)},
                cause=e,
            )
        return target

    async def write(self, record: RunRecord) -> Path:
        path = await asyncio.to_thread(self._write, record)
        logger.debug(f"Status file written: {path}")
        return path

    def read(self, run_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(run_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
