from __future__ import annotations

import json
import logging
import os
import re
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import Settings
from ..schemas import RunSummary
from ..utils.datetime import utc_now

logger = logging.getLogger(__name__)
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


def _instance_name(hostname: str, pid: int) -> str:
    configured = os.getenv("WORKER_HEARTBEAT_INSTANCE", "").strip()
    cleaned = _UNSAFE_CHARS.sub("_", configured or f"{hostname}-{pid}").strip("._-")
    return cleaned or str(pid)


class WorkerHeartbeat:
    """Per-process JSON status file for the sweep worker.

    One file per (worker, instance); every update rewrites it atomically
    so an external reader never sees a half-written document.
    """

    def __init__(self, settings: Settings, worker_id: str) -> None:
        self.worker_id = worker_id
        self.base_dir = Path(settings.worker_heartbeat_dir).expanduser()
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.instance_id = _instance_name(self.hostname, self.pid)
        self.path = self.base_dir / f"{worker_id}--{self.instance_id}.json"

    def update(self, state: str, details: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {
            "worker_id": self.worker_id,
            "instance_id": self.instance_id,
            "state": str(state or "unknown"),
            "updated_at": utc_now().isoformat(),
            "pid": self.pid,
            "hostname": self.hostname,
            "details": details or {},
        }
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            staging = self.path.with_suffix(".tmp")
            staging.write_text(
                json.dumps(payload, ensure_ascii=True, sort_keys=True), encoding="utf-8"
            )
            staging.replace(self.path)
        except OSError:
            logger.debug("Failed to write heartbeat for %s", self.worker_id, exc_info=True)

    def record_run(self, summary: RunSummary, next_run_in_seconds: float) -> None:
        self.update(
            "sleeping",
            {
                "last_run_id": summary.run_id,
                "last_run_succeeded": summary.succeeded,
                "last_run_failed": summary.failed,
                "failed_sites": sorted(summary.failures),
                "next_run_in_seconds": int(next_run_in_seconds),
            },
        )
