"""Stack loading and validation.

A stack declares a set of cloud resources, their properties, and the
dependencies between them. Dependencies are either explicit (depends_on)
or implied by ${name.attr} references inside property values.

Stacks are loaded from <config>/stacks/*.yaml, an explicit file path, or
an inline JSON string.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from cloud_init import resolve_cloud_init
from config import ConfigError, get_config_dir
from providers.types import get_resource_type, list_resource_types

logger = logging.getLogger(__name__)

# Default stack name when none specified
DEFAULT_STACK = 'web-lab'

SUPPORTED_SCHEMA_VERSIONS = {1}

ON_ERROR_MODES = ('stop', 'continue', 'rollback')

NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')

# ${resource.attr}
REF_RE = re.compile(r'\$\{([A-Za-z0-9][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)\}')


def find_references(value: Any) -> list[tuple[str, str]]:
    """Collect (resource, attr) pairs referenced anywhere in a value."""
    refs: list[tuple[str, str]] = []
    if isinstance(value, str):
        refs.extend(REF_RE.findall(value))
    elif isinstance(value, list):
        for item in value:
            refs.extend(find_references(item))
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(find_references(item))
    return refs


@dataclass
class StackResource:
    """A single declared resource.

    Attributes:
        name: Resource name (Azure name and reference key)
        type: Resource type from providers.types
        properties: Desired properties (defaults merged at load time)
        depends_on: Explicit dependencies on other resource names
    """
    name: str
    type: str
    properties: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def references(self) -> set[str]:
        """Resource names referenced through ${name.attr}."""
        return {name for name, _ in find_references(self.properties)}

    @property
    def dependencies(self) -> set[str]:
        return set(self.depends_on) | self.references

    @classmethod
    def from_dict(cls, data: dict) -> 'StackResource':
        depends_on = data.get('depends_on', []) or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            name=data['name'],
            type=data['type'],
            properties=dict(data.get('properties', {}) or {}),
            depends_on=list(depends_on),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'type': self.type}
        if self.properties:
            d['properties'] = self.properties
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class StackSettings:
    """Optional settings for stack execution.

    Attributes:
        on_error: Error handling strategy (stop, continue, rollback)
        refresh: Read live state before planning (default: True)
        verify_ssh: Check SSH reachability during verify (default: True)
        verify_https: Check the web endpoint during verify (default: True)
        timeout: Per-command timeout in seconds (default: the profile's, 600)
    """
    on_error: str = 'stop'
    refresh: bool = True
    verify_ssh: bool = True
    verify_https: bool = True
    timeout: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StackSettings':
        if not data:
            return cls()
        settings = cls(
            on_error=data.get('on_error', 'stop'),
            refresh=data.get('refresh', True),
            verify_ssh=data.get('verify_ssh', True),
            verify_https=data.get('verify_https', True),
            timeout=data.get('timeout'),
        )
        if settings.on_error not in ON_ERROR_MODES:
            raise ConfigError(
                f"Invalid on_error '{settings.on_error}'. "
                f"Supported: {', '.join(ON_ERROR_MODES)}"
            )
        timeout = settings.timeout
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0):
            raise ConfigError(f"Invalid timeout '{timeout}': must be a positive integer")
        return settings

    def to_dict(self) -> dict:
        return {
            'on_error': self.on_error,
            'refresh': self.refresh,
            'verify_ssh': self.verify_ssh,
            'verify_https': self.verify_https,
            'timeout': self.timeout,
        }


@dataclass
class Stack:
    """A declarative set of resources to provision.

    Attributes:
        schema_version: Stack schema version
        name: Stack identifier (also keys the state directory)
        resources: Declared resources, in declaration order
        description: Optional description
        defaults: Properties merged into resources whose type accepts them
        settings: Execution settings
        source_path: Path the stack was loaded from (for relative paths)
    """
    schema_version: int
    name: str
    resources: list[StackResource]
    description: str = ''
    defaults: dict = field(default_factory=dict)
    settings: StackSettings = field(default_factory=StackSettings)
    source_path: Optional[Path] = None

    @property
    def base_dir(self) -> Optional[Path]:
        return self.source_path.parent if self.source_path else None

    def get_resource(self, name: str) -> StackResource:
        """Get a resource by name.

        Raises:
            KeyError: If no resource has that name
        """
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)

    @property
    def resource_names(self) -> list[str]:
        return [r.name for r in self.resources]

    def to_dict(self) -> dict:
        """Convert stack to dictionary (for JSON serialization)."""
        return {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'defaults': dict(self.defaults),
            'settings': self.settings.to_dict(),
            'resources': [r.to_dict() for r in self.resources],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create and validate a Stack from a dictionary.

        Raises:
            ConfigError: If the stack is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported stack schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")
        if 'resources' not in data:
            raise ConfigError("Stack missing required field: resources")
        if not data['resources']:
            raise ConfigError("Stack must have at least one resource")

        defaults = data.get('defaults', {}) or {}
        if not isinstance(defaults, dict):
            raise ConfigError("Stack 'defaults' must be a mapping")

        name = data['name']
        if not isinstance(name, str) or not NAME_RE.match(name):
            raise ConfigError(
                f"Invalid stack name '{name}': use letters, digits, '-' and '_'"
            )
        if not isinstance(data['resources'], list):
            raise ConfigError("Stack 'resources' must be a list")

        resources = []
        for i, res_data in enumerate(data['resources']):
            _check_resource_fields(i, res_data)
            resources.append(StackResource.from_dict(res_data))

        stack = cls(
            schema_version=schema_version,
            name=name,
            description=data.get('description', ''),
            defaults=dict(defaults),
            resources=resources,
            settings=StackSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )
        _apply_defaults(stack)
        _validate_resources(stack)
        _validate_graph(stack.resources)
        return stack

    @classmethod
    def from_json(cls, json_str: str) -> 'Stack':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Stack JSON must be an object")
        return cls.from_dict(data)


def _check_resource_fields(index: int, res_data: Any) -> None:
    """Check field types of a raw resource entry before it is parsed."""
    if not isinstance(res_data, dict):
        raise ConfigError(f"Resource {index} must be a mapping")
    for key in ('name', 'type'):
        if key not in res_data:
            raise ConfigError(f"Resource {index} missing required field: {key}")
        if not isinstance(res_data[key], str):
            raise ConfigError(f"Resource {index} field '{key}' must be a string")

    label = f"Resource '{res_data['name']}'"
    properties = res_data.get('properties')
    if properties is not None and not isinstance(properties, dict):
        raise ConfigError(f"{label} 'properties' must be a mapping")

    depends_on = res_data.get('depends_on')
    if depends_on is None or isinstance(depends_on, str):
        return
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ConfigError(f"{label} 'depends_on' must be a resource name or a list of names")


def _apply_defaults(stack: Stack) -> None:
    """Merge stack defaults and type defaults into resource properties.

    Stack defaults only fill keys the resource type declares and never
    override explicit properties. A default that would reference the
    resource itself is skipped.
    """
    for resource in stack.resources:
        rtype = get_resource_type(resource.type)
        if rtype is None:
            continue
        for key, value in stack.defaults.items():
            if key not in rtype.keys or key in resource.properties:
                continue
            if resource.name in {name for name, _ in find_references(value)}:
                continue
            resource.properties[key] = value
        resource.properties = rtype.with_defaults(resource.properties)


def _validate_resources(stack: Stack) -> None:
    """Validate names, types, and property keys."""
    known_types = list_resource_types()
    for resource in stack.resources:
        if not NAME_RE.match(resource.name):
            raise ConfigError(
                f"Invalid resource name '{resource.name}': use letters, digits, '-' and '_'"
            )
        rtype = get_resource_type(resource.type)
        if rtype is None:
            raise ConfigError(
                f"Resource '{resource.name}' has unknown type '{resource.type}'. "
                f"Known types: {', '.join(known_types)}"
            )

        unknown = set(resource.properties) - rtype.keys
        if unknown:
            raise ConfigError(
                f"Resource '{resource.name}' ({resource.type}) has unknown "
                f"properties: {', '.join(sorted(unknown))}"
            )
        missing = [k for k in rtype.required if resource.properties.get(k) in (None, '', [])]
        if missing:
            raise ConfigError(
                f"Resource '{resource.name}' ({resource.type}) missing required "
                f"properties: {', '.join(missing)}"
            )

        if resource.type == 'virtual_machine' and resource.properties.get('cloud_init') is not None:
            resolve_cloud_init(resource.properties['cloud_init'], stack.base_dir)


def _validate_graph(resources: list[StackResource]) -> None:
    """Validate the dependency graph of a stack.

    Checks for:
    - Duplicate resource names
    - Dangling depends_on / ${ref} targets
    - References to attributes the target type does not export
    - Cycles

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for resource in resources:
        if resource.name in seen:
            raise ConfigError(f"Duplicate resource name: '{resource.name}'")
        seen.add(resource.name)

    by_name = {r.name: r for r in resources}

    for resource in resources:
        for dep in resource.depends_on:
            if dep not in by_name:
                raise ConfigError(
                    f"Resource '{resource.name}' depends on unknown resource '{dep}'"
                )
        for ref, attr in find_references(resource.properties):
            if ref not in by_name:
                raise ConfigError(
                    f"Resource '{resource.name}' references unknown resource '{ref}'"
                )
            if ref == resource.name:
                raise ConfigError(f"Resource '{resource.name}' references itself")
            target_type = get_resource_type(by_name[ref].type)
            if target_type is not None and attr not in target_type.exports:
                raise ConfigError(
                    f"Resource '{resource.name}' references '{ref}.{attr}', but "
                    f"{by_name[ref].type} exports only: {', '.join(target_type.exports)}"
                )

    # DFS with an explicit stack marker for cycle detection
    visited: set[str] = set()
    in_stack: set[str] = set()

    def _has_cycle(name: str) -> bool:
        if name in in_stack:
            return True
        if name in visited:
            return False
        visited.add(name)
        in_stack.add(name)
        for dep in sorted(by_name[name].dependencies):
            if _has_cycle(dep):
                return True
        in_stack.discard(name)
        return False

    for resource in resources:
        if _has_cycle(resource.name):
            raise ConfigError(f"Cycle detected in dependency graph involving '{resource.name}'")


class StackLoader:
    """Loads stacks from the config directory's stacks/ folder."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize loader.

        Args:
            config_path: Path to config directory. If None, uses discovery
                         ($AZSTACK_CONFIG, config/, /usr/local/etc/azstack).
        """
        if config_path:
            self.config_dir = Path(config_path)
        else:
            self.config_dir = get_config_dir()

        self.stacks_dir = self.config_dir / 'stacks'

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted(f.stem for f in self.stacks_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str) -> Stack:
        """Load a stack by name (without .yaml extension).

        Raises:
            ConfigError: If stack not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load a stack from a specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        return load_stack_file(Path(path))

    def get_default(self) -> Stack:
        """Get the default stack (stacks/default.yaml, else DEFAULT_STACK)."""
        default_path = self.stacks_dir / 'default.yaml'
        if default_path.exists():
            return self.load_file(default_path)
        return self.load(DEFAULT_STACK)


def load_stack(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Stack:
    """Load a stack from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from <config>/stacks/
    4. Default stack

    Raises:
        ConfigError: If stack not found or invalid
    """
    if json_str:
        return Stack.from_json(json_str)
    if file_path:
        return load_stack_file(Path(file_path))
    loader = StackLoader()
    if name:
        return loader.load(name)
    return loader.get_default()


def load_stack_file(path: Path) -> Stack:
    """Load a stack from a YAML file (no config directory needed).

    Raises:
        ConfigError: If file not found or invalid
    """
    if not path.exists():
        raise ConfigError(f"Stack file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in stack {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Stack {path} must be a YAML object (dict)")

    logger.debug(f"Loaded stack from {path}")
    return Stack.from_dict(data, source_path=path)
