"""
Plan Reader

Read-only access to plan documents. Plans are owned outside the engine;
a missing plan is reported as None, never raised.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("plan_reader")


class PlanReader:
    """Resolves stored plan paths against a project root and reads them."""

    def __init__(self, project_root: Optional[Path] = None):
        self._project_root = Path(project_root) if project_root else Path.cwd()

    def resolve(self, plan_path: str) -> Path:
        path = Path(plan_path)
        return path if path.is_absolute() else self._project_root / path

    def exists(self, plan_path: str) -> bool:
        return bool(plan_path) and self.resolve(plan_path).is_file()

    def read_plan_text(self, plan_path: str) -> Optional[str]:
        """Return the plan text, or None if the file is missing or unreadable."""
        if not plan_path:
            return None
        path = self.resolve(plan_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read plan {path}: {e}")
            return None
