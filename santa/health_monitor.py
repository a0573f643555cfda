"""
Health Monitor - Proactive Failure Detection

FEATURES:
- 🔍 Disk space checks before the state file is rewritten
- ✅ Directory/file permission validation
- 📬 Notification queue backlog warnings

USAGE:
    from .health_monitor import HealthMonitor

    monitor = HealthMonitor(logger)

    is_safe, warning = monitor.validate_path_safety(state_path)
    if not is_safe:
        raise OSError(warning)

    monitor.check_queue_backlog(pending_count, warn_at=100)
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional, Tuple


class HealthMonitor:
    """
    Detects conditions that would make a storage or delivery step fail
    before the step is attempted.
    """

    def __init__(self, logger=None):
        self.logger = logger

    def _log_warning(self, message: str):
        if self.logger:
            self.logger.warning(message)

    def _log_error(self, message: str):
        if self.logger:
            self.logger.error(message)

    def check_disk_space(self, path: Path, required_mb: float = 1.0, warn_threshold_mb: float = 50.0) -> Tuple[bool, Optional[str]]:
        """
        Check if there's enough disk space next to path.

        Returns:
            (is_safe, message) - message is set for both failures and warnings
        """
        try:
            target = path if path.is_dir() else path.parent
            free_mb = shutil.disk_usage(target).free / (1024 * 1024)

            if free_mb < required_mb:
                error_msg = f"⚠️ CRITICAL: Only {free_mb:.1f}MB free disk space (need {required_mb:.1f}MB)"
                self._log_error(error_msg)
                return False, error_msg

            if free_mb < warn_threshold_mb:
                warning_msg = f"⚠️ Low disk space: {free_mb:.1f}MB available (warn threshold: {warn_threshold_mb:.1f}MB)"
                self._log_warning(warning_msg)
                return True, warning_msg

            return True, None

        except OSError as e:
            # Can't tell - don't block the write
            self._log_warning(f"Could not check disk space for {path}: {e}")
            return True, None

    def check_file_permissions(self, path: Path, check_write: bool = True) -> Tuple[bool, Optional[str]]:
        """
        Check that path's directory exists (creating it if needed) and is writable.

        Returns:
            (is_safe, error_message)
        """
        parent = path.parent
        if not parent.exists():
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                error_msg = f"⚠️ Cannot create directory {parent}: {e}"
                self._log_error(error_msg)
                return False, error_msg

        if check_write:
            if not os.access(parent, os.W_OK):
                error_msg = f"⚠️ No write permission for {parent}"
                self._log_error(error_msg)
                return False, error_msg

            if path.exists() and not os.access(path, os.W_OK):
                error_msg = f"⚠️ No write permission for existing file {path}"
                self._log_error(error_msg)
                return False, error_msg

        return True, None

    def check_queue_backlog(self, pending: int, warn_at: int = 100) -> Optional[str]:
        """Warn when undelivered notifications pile up (usually a broken transport)"""
        if warn_at <= 0 or pending < warn_at:
            return None

        warning_msg = f"⚠️ Notification backlog: {pending} pending (warn threshold: {warn_at})"
        self._log_warning(warning_msg)
        return warning_msg

    def validate_path_safety(self, path: Path, operation: str = "write") -> Tuple[bool, Optional[str]]:
        """
        Permission check, then disk space check for writes.

        Returns:
            (is_safe, message)
        """
        is_safe, perm_error = self.check_file_permissions(path, check_write=(operation == "write"))
        if not is_safe:
            return False, perm_error

        if operation == "write":
            return self.check_disk_space(path)

        return True, None
