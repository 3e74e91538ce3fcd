"""Persisted stack state.

Tracks per-resource status, the properties last applied, and the outputs
the cloud returned (ids, addresses). State is written after every resource
operation so that later plans can diff against it and destroy can find
resources without the stack file.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_FILE = 'state.json'


def fingerprint(properties: dict) -> str:
    """sha256 of the canonical JSON form of a property dict."""
    canonical = json.dumps(properties, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class ResourceState:
    """Per-resource state.

    Attributes:
        name: Resource name (matches StackResource.name)
        type: Resource type
        status: pending, running, completed, failed, skipped, destroyed
        properties: Interpolated properties last applied successfully
        fingerprint: Hash of properties
        outputs: Attributes returned by the provider (id, ip_address, ...)
        dependencies: Dependency names at the time of apply
        started_at: Timestamp when the last operation started
        completed_at: Timestamp when the last operation ended
        error: Error message if failed or reason if skipped
    """
    name: str
    type: str = ''
    status: str = 'pending'
    properties: dict = field(default_factory=dict)
    fingerprint: Optional[str] = None
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()
        self.completed_at = None
        self.error = None

    def complete(self, properties: Optional[dict] = None, outputs: Optional[dict] = None) -> None:
        self.status = 'completed'
        self.completed_at = time.time()
        self.error = None
        if properties is not None:
            self.properties = dict(properties)
            self.fingerprint = fingerprint(self.properties)
        if outputs is not None:
            self.outputs = dict(outputs)

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        """Record why the resource was not touched.

        A resource that already exists in the cloud keeps its status so it
        is still planned against and destroyed.
        """
        if not self.exists:
            self.status = 'skipped'
        self.error = reason

    def mark_destroyed(self) -> None:
        self.status = 'destroyed'
        self.completed_at = time.time()
        self.outputs = {}

    @property
    def exists(self) -> bool:
        """True if the resource may exist in the cloud."""
        return self.status in ('completed', 'failed') and bool(self.outputs or self.fingerprint)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
            'status': self.status,
        }
        if self.properties:
            d['properties'] = self.properties
        if self.fingerprint is not None:
            d['fingerprint'] = self.fingerprint
        if self.outputs:
            d['outputs'] = self.outputs
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            name=data['name'],
            type=data.get('type', ''),
            status=data.get('status', 'pending'),
            properties=data.get('properties', {}),
            fingerprint=data.get('fingerprint'),
            outputs=data.get('outputs', {}),
            dependencies=data.get('dependencies', []),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error'),
        )


class StackState:
    """Stack-level state with save/load.

    State is persisted to {state_dir}/{stack}/state.json.
    """

    def __init__(self, stack_name: str, profile_name: str, state_dir: Optional[Path] = None):
        """Initialize stack state.

        Args:
            stack_name: Stack identifier
            profile_name: Profile the stack was applied with
            state_dir: Root state directory (default: <checkout>/.states)
        """
        self.stack_name = stack_name
        self.profile_name = profile_name
        self.state_dir = state_dir
        self._resources: dict[str, ResourceState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_resource(self, name: str, type: str = '') -> ResourceState:
        """Register a resource for tracking (returns existing entry if present)."""
        if name in self._resources:
            return self._resources[name]
        state = ResourceState(name=name, type=type)
        self._resources[name] = state
        return state

    def get_resource(self, name: str) -> ResourceState:
        """Get resource state by name.

        Raises:
            KeyError: If resource not registered
        """
        return self._resources[name]

    def remove_resource(self, name: str) -> None:
        self._resources.pop(name, None)

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    @property
    def live_resources(self) -> dict[str, ResourceState]:
        """Resources recorded as successfully applied."""
        return {n: s for n, s in self._resources.items() if s.status == 'completed'}

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def outputs_context(self) -> dict[str, dict]:
        """Outputs of completed resources, keyed by resource name."""
        return {name: dict(s.outputs) for name, s in self.live_resources.items()}

    def path(self) -> Path:
        if self.state_dir is None:
            from config import get_base_dir
            base = get_base_dir() / '.states'
        else:
            base = Path(self.state_dir)
        return base / self.stack_name / STATE_FILE

    def save(self, path: Optional[Path] = None) -> Path:
        """Save state to JSON file.

        Returns:
            Path where state was saved
        """
        if path is None:
            path = self.path()
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'stack_name': self.stack_name,
            'profile_name': self.profile_name,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'resources': {name: s.to_dict() for name, s in self._resources.items()},
        }
        tmp = path.with_suffix('.json.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)
        logger.debug(f"Saved stack state to {path}")
        return path

    def delete(self, path: Optional[Path] = None) -> None:
        """Remove the state file (after a complete destroy)."""
        if path is None:
            path = self.path()
        if path.exists():
            path.unlink()
            logger.debug(f"Removed stack state {path}")

    @classmethod
    def load(
        cls,
        stack_name: str,
        profile_name: str,
        state_dir: Optional[Path] = None,
        path: Optional[Path] = None,
    ) -> 'StackState':
        """Load state from JSON file.

        Raises:
            FileNotFoundError: If state file doesn't exist
        """
        state = cls(stack_name, profile_name, state_dir)
        if path is None:
            path = state.path()

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        recorded_profile = data.get('profile_name')
        if recorded_profile and recorded_profile != profile_name:
            logger.warning(
                f"State for '{stack_name}' was written by profile '{recorded_profile}', "
                f"now using '{profile_name}'"
            )

        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        for name, res_data in data.get('resources', {}).items():
            state._resources[name] = ResourceState.from_dict(res_data)

        logger.debug(f"Loaded stack state from {path}")
        return state

    @classmethod
    def load_or_create(
        cls,
        stack_name: str,
        profile_name: str,
        state_dir: Optional[Path] = None,
    ) -> 'StackState':
        """Load existing state, or start empty if none was saved."""
        try:
            return cls.load(stack_name, profile_name, state_dir)
        except FileNotFoundError:
            return cls(stack_name, profile_name, state_dir)
