"""Boot status broadcasting for vmdisk."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from vmdisk.constants import STATUS_FILE
from vmdisk.utils import log


class StatusBroadcaster:
    """Write provisioning progress to a file polled by the boot status page."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or STATUS_FILE
        self._done = False

    def update(self, msg: str) -> None:
        """Append a status message to the status file."""
        if self._done:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(msg + "\n")
                f.flush()
        except OSError:
            pass
        log("DEBUG", f"Status: {msg}")

    def done(self) -> None:
        """Signal that disks are ready; remove the status file so polling detects completion."""
        self._done = True
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            pass
        log("DEBUG", "Status: disks initialized")
