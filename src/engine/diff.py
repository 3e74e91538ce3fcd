"""Idempotency checker: diff desired resources against recorded state.

compute_plan() decides, per resource, whether to create, update, replace,
delete, or leave it alone. A resource is unchanged when the fingerprint of
its interpolated properties matches the one recorded at last apply (and,
with refresh, the provider still reports it as present). Running apply and
then planning again therefore yields only no-ops.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from cloud_init import resolve_cloud_init
from config import ConfigError
from engine.graph import ResourceGraph, order_by_dependencies
from engine.state import StackState, fingerprint
from providers.types import get_resource_type
from stack import REF_RE, Stack, StackResource

logger = logging.getLogger(__name__)


class _Unknown:
    """Placeholder for values that only exist after a dependency is applied."""

    def __repr__(self) -> str:
        return '(known after apply)'

    __str__ = __repr__


UNKNOWN = _Unknown()


class ChangeAction(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    REPLACE = 'replace'
    DELETE = 'delete'
    NOOP = 'noop'


_SYMBOLS = {
    ChangeAction.CREATE: '+',
    ChangeAction.UPDATE: '~',
    ChangeAction.REPLACE: '-/+',
    ChangeAction.DELETE: '-',
    ChangeAction.NOOP: ' ',
}


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, str):
        return str(UNKNOWN) in value
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def interpolate(value: Any, outputs: dict[str, dict], unknown: frozenset = frozenset()) -> Any:
    """Resolve ${name.attr} references in a property value.

    A string that is exactly one reference takes the output's native type.
    References embedded in longer strings are formatted into the string.
    References to resources in `unknown`, or with no recorded outputs,
    resolve to UNKNOWN.

    Raises:
        ConfigError: If a resource with outputs lacks the referenced attribute
    """
    if isinstance(value, list):
        return [interpolate(v, outputs, unknown) for v in value]
    if isinstance(value, dict):
        return {k: interpolate(v, outputs, unknown) for k, v in value.items()}
    if not isinstance(value, str):
        return value

    def _lookup(name: str, attr: str) -> Any:
        if name in unknown or name not in outputs:
            return UNKNOWN
        resource_outputs = outputs[name]
        if attr not in resource_outputs:
            raise ConfigError(f"Resource '{name}' has no output '{attr}'")
        return resource_outputs[attr]

    whole = REF_RE.fullmatch(value)
    if whole:
        return _lookup(whole.group(1), whole.group(2))

    return REF_RE.sub(lambda m: str(_lookup(m.group(1), m.group(2))), value)


def resolve_properties(
    resource: StackResource,
    outputs: dict[str, dict],
    base_dir: Optional[Path] = None,
    unknown: frozenset = frozenset(),
    render: bool = False,
) -> dict:
    """Interpolate a resource's properties.

    The cloud_init property is replaced by the sha256 of its rendered
    document (render=False, for diffing and state) or by the rendered
    document itself (render=True, for the provider call).
    """
    props = interpolate(resource.properties, outputs, unknown)
    ci = props.get('cloud_init')
    if ci is not None and not contains_unknown(ci):
        payload = resolve_cloud_init(ci, base_dir)
        props['cloud_init'] = payload.render() if render else f'sha256:{payload.fingerprint()}'
    return props


@dataclass
class Change:
    """A planned change to one resource."""
    name: str
    type: str
    action: ChangeAction
    changed_keys: list[str] = field(default_factory=list)
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)
    reason: str = ''

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
            'action': self.action.value,
        }
        if self.changed_keys:
            d['changed_keys'] = list(self.changed_keys)
        if self.reason:
            d['reason'] = self.reason
        return d


@dataclass
class Plan:
    """Ordered set of changes for a stack."""
    stack_name: str
    changes: list[Change] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NOOP for c in self.changes)

    def get(self, name: str) -> Change:
        """Get the change for a resource.

        Raises:
            KeyError: If the resource is not in the plan
        """
        for change in self.changes:
            if change.name == name:
                return change
        raise KeyError(name)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'stack': self.stack_name,
            'has_changes': self.has_changes,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
        }

    def format(self) -> str:
        """Human-readable plan listing."""
        lines = [f"Plan for stack '{self.stack_name}':", '']
        for change in self.changes:
            if change.action == ChangeAction.NOOP:
                continue
            symbol = _SYMBOLS[change.action]
            line = f"  {symbol:>3} {change.action.value:<8} {change.type:<24} {change.name}"
            if change.changed_keys:
                line += f"  ({', '.join(change.changed_keys)})"
            if change.reason:
                line += f"  [{change.reason}]"
            lines.append(line)
        if not self.has_changes:
            lines.append('  No changes. Infrastructure matches the stack.')
        counts = self.summary()
        lines.append('')
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete, "
            f"{counts['noop']} unchanged."
        )
        return '\n'.join(lines)


def _changed_keys(before: dict, after: dict) -> list[str]:
    keys = set(before) | set(after)
    return sorted(k for k in keys if before.get(k) != after.get(k))


def compute_plan(
    stack: Stack,
    graph: ResourceGraph,
    state: StackState,
    provider=None,
    refresh: bool = True,
) -> Plan:
    """Compute the changes needed to bring the cloud in line with the stack."""
    plan = Plan(stack_name=stack.name)
    recorded = state.resources

    # Resources in state that the stack no longer declares
    orphans = {n: s for n, s in recorded.items() if n not in graph and s.exists}
    for name in reversed(order_by_dependencies({n: set(s.dependencies) for n, s in orphans.items()})):
        rs = orphans[name]
        plan.changes.append(Change(
            name=name, type=rs.type, action=ChangeAction.DELETE,
            before=dict(rs.properties), reason='removed from stack',
        ))

    outputs = state.outputs_context()
    pending: set[str] = set()

    for node in graph.apply_order():
        resource = node.resource
        rtype = get_resource_type(resource.type)
        rs = recorded.get(resource.name)
        desired = resolve_properties(resource, outputs, stack.base_dir, frozenset(pending))

        if rs is None or not rs.exists:
            action, reason, changed = ChangeAction.CREATE, '', []
        else:
            action, reason, changed = None, '', []
            if refresh and provider is not None:
                live = provider.read(resource.name, resource.type, rs.properties)
                if live is None:
                    action, reason = ChangeAction.CREATE, 'missing in cloud (drift)'
                else:
                    outputs[resource.name] = live
            if action is None:
                if rs.status == 'completed' and fingerprint(desired) == rs.fingerprint:
                    action = ChangeAction.NOOP
                else:
                    changed = _changed_keys(rs.properties, desired)
                    if rs.type and rs.type != resource.type:
                        action, reason = ChangeAction.REPLACE, f'type changed from {rs.type}'
                    elif set(changed) & rtype.force_new or not rtype.updatable:
                        action = ChangeAction.REPLACE
                    elif changed:
                        action = ChangeAction.UPDATE
                    else:
                        # failed update with identical properties: retry
                        action, reason = ChangeAction.UPDATE, 'previous apply failed'

        if action in (ChangeAction.CREATE, ChangeAction.REPLACE):
            pending.add(resource.name)

        plan.changes.append(Change(
            name=resource.name,
            type=resource.type,
            action=action,
            changed_keys=changed,
            before=dict(rs.properties) if rs else {},
            after=desired,
            reason=reason,
        ))

    logger.debug(f"Plan for '{stack.name}': {plan.summary()}")
    return plan
