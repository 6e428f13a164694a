"""Pre-execution recovery records for file-mutating tool calls.

Before a write_file/replace call is approved, the working tree is
snapshotted into a shadow git repository and a JSON record of the pending
call, the snapshot id and the conversation is written next to it. None of
this may block the tool call: every failure is logged and skipped.
"""

import json
import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .content import ToolCallRequestInfo
from .report import to_jsonable

logger = logging.getLogger(__name__)

_GIT_TIMEOUT = 60


class GitService:
    """A git repository kept outside the project, tracking its working tree.

    The project's own .git (if any) is never touched: GIT_DIR points at
    ``history_dir`` and GIT_WORK_TREE at the project root.
    """

    def __init__(self, project_root: str, history_dir: str):
        self.project_root = Path(project_root).resolve()
        self.history_dir = Path(history_dir)
        self._initialized = False

    def _env(self) -> dict:
        env = dict(os.environ)
        env["GIT_DIR"] = str(self.history_dir / ".git")
        env["GIT_WORK_TREE"] = str(self.project_root)
        env["GIT_AUTHOR_NAME"] = env["GIT_COMMITTER_NAME"] = "grokloop"
        env["GIT_AUTHOR_EMAIL"] = env["GIT_COMMITTER_EMAIL"] = "grokloop@localhost"
        return env

    def _git(self, *args: str) -> str:
        proc = subprocess.run(
            ["git", *args],
            cwd=self.project_root,
            env=self._env(),
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
        )
        if proc.returncode != 0:
            raise RuntimeError(
                f"git {args[0]} failed ({proc.returncode}): {proc.stderr.strip()}"
            )
        return proc.stdout.strip()

    def initialize(self) -> None:
        if self._initialized:
            return
        git_dir = self.history_dir / ".git"
        if not git_dir.exists():
            self.history_dir.mkdir(parents=True, exist_ok=True)
            self._git("init", "--quiet")
            self._git("commit", "--allow-empty", "--quiet", "-m", "Initial commit")
        self._initialized = True

    def create_snapshot(self, label: str) -> str | None:
        try:
            self.initialize()
            self._git("add", "-A")
            self._git("commit", "--allow-empty", "--quiet", "-m", label)
            return self._git("rev-parse", "HEAD")
        except (OSError, RuntimeError, subprocess.TimeoutExpired) as e:
            logger.warning("snapshot %r failed: %s", label, e)
            return None

    def get_current_snapshot_id(self) -> str | None:
        try:
            self.initialize()
            return self._git("rev-parse", "HEAD")
        except (OSError, RuntimeError, subprocess.TimeoutExpired) as e:
            logger.warning("could not read current snapshot: %s", e)
            return None


class Checkpointer:
    def __init__(
        self,
        checkpoint_dir: str,
        git_service: GitService,
        history_provider: Callable[[], list],
        ui_history_provider: Callable[[], list] | None = None,
    ):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.git_service = git_service
        self.history_provider = history_provider
        self.ui_history_provider = ui_history_provider

    def record(self, request: ToolCallRequestInfo) -> Path | None:
        """Snapshot the tree and write the recovery record. Returns its path."""
        file_path = request.args.get("file_path")
        if not file_path:
            logger.error(
                "Skipping restorable tool call due to missing file_path: %s",
                request.name,
            )
            return None

        snapshot = self.git_service.create_snapshot(f"Snapshot for {request.name}")
        if not snapshot:
            snapshot = self.git_service.get_current_snapshot_id()
        if not snapshot:
            logger.error(
                "Failed to create snapshot for %s. Skipping restorable tool call.",
                file_path,
            )
            return None

        timestamp = (
            datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "_")
        )
        name = f"{timestamp}-{Path(file_path).name}-{request.name}.json"
        ui_history = self.ui_history_provider() if self.ui_history_provider else []
        record = {
            "history": to_jsonable(ui_history),
            "clientHistory": to_jsonable(self.history_provider()),
            "toolCall": {"name": request.name, "args": to_jsonable(request.args)},
            "commitHash": snapshot,
            "filePath": file_path,
        }
        try:
            self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
            path = self.checkpoint_dir / name
            path.write_text(json.dumps(record, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            logger.error("Failed to write restorable tool call file: %s", e)
            return None
        logger.debug("recovery record written to %s", path)
        return path
