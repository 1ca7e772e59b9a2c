"""Persisted per-node lifecycle record.

Each component advances the record when it completes its transition.
The record only ever moves forward; re-running a component that owns an
earlier state leaves a later state in place.
"""
import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate

from .models import LifecycleState, NodeRole

logger = logging.getLogger("kubeboot.state")

STATE_SCHEMA = {
    "type": "object",
    "properties": {
        "hostname": {"type": "string"},
        "role": {"enum": [None] + [r.value for r in NodeRole]},
        "address": {"type": ["string", "null"]},
        "state": {"enum": [s.value for s in LifecycleState]},
        "history": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "state": {"type": "string"},
                    "component": {"type": "string"},
                    "at": {"type": "string"},
                },
                "required": ["state", "component", "at"],
            },
        },
    },
    "required": ["state"],
}


class NodeStateStore:
    """JSON lifecycle record for the local node."""

    def __init__(self, path: str, dry_run: bool = False):
        self.path = Path(path)
        self.dry_run = dry_run

    def load(self) -> Dict[str, Any]:
        if self.path.exists():
            try:
                with open(self.path, "r") as f:
                    record = json.load(f)
                validate(instance=record, schema=STATE_SCHEMA)
                return record
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"⚠️  Ignoring unreadable state file {self.path}: {e}")
        return {
            "hostname": socket.gethostname(),
            "role": None,
            "address": None,
            "state": LifecycleState.UNINITIALIZED.value,
            "history": [],
        }

    def current(self) -> LifecycleState:
        return LifecycleState(self.load().get("state", LifecycleState.UNINITIALIZED.value))

    def advance(
        self,
        state: LifecycleState,
        component: str,
        role: Optional[NodeRole] = None,
        address: Optional[str] = None,
        **details: Any,
    ) -> Dict[str, Any]:
        """Record that ``component`` reached ``state``.

        The state only moves forward; details are always merged in.

        Returns:
            The record as written
        """
        record = self.load()
        previous = LifecycleState(record.get("state", LifecycleState.UNINITIALIZED.value))
        if state.rank > previous.rank:
            record["state"] = state.value
        if role is not None:
            record["role"] = role.value
        if address is not None:
            record["address"] = address
        record.update(details)
        record.setdefault("history", []).append({
            "state": state.value,
            "component": component,
            "at": datetime.now(timezone.utc).isoformat(),
        })
        self._save(record)
        logger.debug(f"Node state: {previous.value} -> {record['state']} ({component})")
        return record

    def reach(
        self,
        state: LifecycleState,
        component: str,
        role: Optional[NodeRole] = None,
        **details: Any,
    ) -> Dict[str, Any]:
        """Record ``state`` for an idempotent no-op run.

        Nothing is written when the record is already at or past ``state``
        with the same role, so repeated runs leave the file untouched.
        """
        record = self.load()
        previous = LifecycleState(record.get("state", LifecycleState.UNINITIALIZED.value))
        if previous.rank >= state.rank and (role is None or record.get("role") == role.value):
            return record
        return self.advance(state, component, role=role, **details)

    def _save(self, record: Dict[str, Any]) -> None:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would update {self.path}")
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f".{self.path.name}.tmp")
            with open(tmp, "w") as f:
                json.dump(record, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            # the record is informational; probes stay authoritative
            logger.warning(f"⚠️  Could not persist node state to {self.path}: {e}")
