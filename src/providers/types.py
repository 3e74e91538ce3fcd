"""Resource type registry.

Describes the property schema of every supported resource type: which
properties are required, which are optional (with defaults), which force
replacement when changed, and which output attributes the type exports
for ${name.attr} references.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ResourceType:
    """Schema for one resource type.

    Attributes:
        name: Type identifier used in stack files
        required: Property keys that must be present
        optional: Optional property keys mapped to their defaults
            (None means "no default, omit when unset")
        force_new: Keys whose change requires delete + create
        updatable: Whether non-force_new changes can be applied in place
        exports: Output attributes available to references
    """
    name: str
    required: tuple[str, ...]
    optional: dict[str, Any] = field(default_factory=dict)
    force_new: frozenset[str] = frozenset()
    updatable: bool = True
    exports: tuple[str, ...] = ('id', 'name')

    @property
    def keys(self) -> set[str]:
        return set(self.required) | set(self.optional)

    def with_defaults(self, properties: dict) -> dict:
        """Return properties with optional defaults filled in."""
        merged = {}
        for key, default in self.optional.items():
            if default is not None:
                merged[key] = list(default) if isinstance(default, list) else default
        merged.update(properties)
        return merged


RESOURCE_TYPES: dict[str, ResourceType] = {}


def _register(rtype: ResourceType) -> None:
    RESOURCE_TYPES[rtype.name] = rtype


_register(ResourceType(
    name='resource_group',
    required=('location',),
    optional={'tags': None},
    force_new=frozenset({'location'}),
))

_register(ResourceType(
    name='virtual_network',
    required=('resource_group', 'location', 'address_prefixes'),
    optional={'tags': None},
    force_new=frozenset({'resource_group', 'location'}),
))

_register(ResourceType(
    name='subnet',
    required=('resource_group', 'vnet', 'address_prefix'),
    optional={'nsg': None},
    force_new=frozenset({'resource_group', 'vnet'}),
))

_register(ResourceType(
    name='network_security_group',
    required=('resource_group', 'location'),
    optional={'tags': None},
    force_new=frozenset({'resource_group', 'location'}),
))

_register(ResourceType(
    name='nsg_rule',
    required=('resource_group', 'nsg', 'priority', 'ports'),
    optional={
        'direction': 'Inbound',
        'access': 'Allow',
        'protocol': 'Tcp',
        'source': '*',
        'description': None,
    },
    force_new=frozenset({'resource_group', 'nsg'}),
))

_register(ResourceType(
    name='public_ip',
    required=('resource_group', 'location'),
    optional={'sku': 'Standard', 'allocation': 'Static', 'dns_label': None, 'tags': None},
    force_new=frozenset({'resource_group', 'location', 'sku'}),
    exports=('id', 'name', 'ip_address'),
))

_register(ResourceType(
    name='network_interface',
    required=('resource_group', 'location', 'vnet', 'subnet'),
    optional={'public_ip': None, 'nsg': None},
    force_new=frozenset({'resource_group', 'location', 'vnet'}),
    exports=('id', 'name', 'private_ip'),
))

_register(ResourceType(
    name='virtual_machine',
    required=('resource_group', 'location', 'image', 'size', 'admin_username', 'nics'),
    optional={'ssh_key': None, 'cloud_init': None, 'os_disk_size_gb': None, 'tags': None},
    force_new=frozenset({
        'resource_group', 'location', 'image', 'admin_username', 'nics',
        'ssh_key', 'cloud_init', 'os_disk_size_gb',
    }),
    exports=('id', 'name', 'public_ip', 'private_ip'),
))

_register(ResourceType(
    name='log_analytics_workspace',
    required=('resource_group', 'location'),
    optional={'sku': 'PerGB2018', 'retention_days': 30, 'tags': None},
    force_new=frozenset({'resource_group', 'location'}),
    exports=('id', 'name', 'customer_id'),
))

_register(ResourceType(
    name='diagnostic_setting',
    required=('target', 'workspace'),
    optional={'metrics': ['AllMetrics'], 'logs': []},
    force_new=frozenset({'target'}),
))


def get_resource_type(name: str) -> Optional[ResourceType]:
    """Look up a resource type by name (None if unknown)."""
    return RESOURCE_TYPES.get(name)


def list_resource_types() -> list[str]:
    return sorted(RESOURCE_TYPES)
