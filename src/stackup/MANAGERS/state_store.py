"""
Persistence of a project's run state, so status and down work from a
separate invocation of the CLI.
"""
import json
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class StateStore:
    """
    Reads and writes <state_dir>/<project>/state.json.

    The file holds the supervising process id, the startup order, the
    startup outcome once known, and per service the runtime state, process
    id and restart count.
    """
    def __init__(self, state_dir: str, project: str):
        self.project = project
        self.directory = os.path.join(os.path.abspath(state_dir), project)
        self.path = os.path.join(self.directory, "state.json")
        self._data: Dict[str, Any] = {"project": project, "supervisor_pid": None,
                                      "order": [], "outcome": None, "services": {}}

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Dict[str, Any]:
        """
        Loads the state file, or returns an empty state if there is none.
        """
        if not self.exists():
            return dict(self._data)
        with open(self.path, 'r', encoding='utf-8') as f:
            self._data = json.load(f)
        return dict(self._data)

    def begin(self, order: List[str], supervisor_pid: Optional[int]):
        """Starts a fresh record for a run."""
        self._data = {
            "project": self.project,
            "supervisor_pid": supervisor_pid,
            "order": list(order),
            "outcome": None,
            "services": {name: {"state": "pending", "pid": None, "restarts": 0} for name in order},
        }
        self.save()

    def record_service(self, name: str, state: str,
                       pid: Optional[int] = None, restarts: Optional[int] = None):
        entry = self._data["services"].setdefault(name, {"state": state, "pid": None, "restarts": 0})
        entry["state"] = state
        if pid is not None:
            entry["pid"] = pid
        if restarts is not None:
            entry["restarts"] = restarts
        self.save()

    def record_outcome(self, outcome: str):
        self._data["outcome"] = outcome
        self.save()

    def services(self) -> Dict[str, Dict[str, Any]]:
        return self._data.get("services", {})

    def save(self):
        os.makedirs(self.directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp, self.path)

    def clear(self):
        if self.exists():
            os.remove(self.path)
            logger.debug("Removed state file %s", self.path)
