"""Simulated cloud backed by a local JSON file.

Used for offline rehearsal of a stack (profile provider: local) and for
end-to-end tests of the engine. Resources get Azure-shaped ids and
deterministic addresses derived from their ids. Like Azure, creating a
resource inside a missing resource group fails, and deleting a resource
group removes everything in it.
"""

import hashlib
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from config import ProfileConfig
from providers.base import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION = '00000000-0000-0000-0000-000000000000'

_PROVIDER_PATHS = {
    'virtual_network': 'Microsoft.Network/virtualNetworks/{name}',
    'subnet': 'Microsoft.Network/virtualNetworks/{vnet}/subnets/{name}',
    'network_security_group': 'Microsoft.Network/networkSecurityGroups/{name}',
    'nsg_rule': 'Microsoft.Network/networkSecurityGroups/{nsg}/securityRules/{name}',
    'public_ip': 'Microsoft.Network/publicIPAddresses/{name}',
    'network_interface': 'Microsoft.Network/networkInterfaces/{name}',
    'virtual_machine': 'Microsoft.Compute/virtualMachines/{name}',
    'log_analytics_workspace': 'Microsoft.OperationalInsights/workspaces/{name}',
}


def _last_segment(value: Any) -> str:
    """Name from either a bare name or a resource id."""
    return str(value).rstrip('/').split('/')[-1]


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode('utf-8')).digest()


class LocalProvider:
    """Provider that records resources in {state_dir}/{profile}-cloud.json."""

    def __init__(self, config: ProfileConfig, path: Optional[Path] = None):
        self.config = config
        self.subscription = config.subscription or DEFAULT_SUBSCRIPTION
        self.path = path or Path(config.state_dir) / f'{config.name}-cloud.json'

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, encoding='utf-8') as f:
            return json.load(f).get('resources', {})

    def _save(self, resources: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump({'resources': resources}, f, indent=2, sort_keys=True)

    @staticmethod
    def _key(rtype: str, name: str, props: dict) -> str:
        # Child resources are scoped by their parent so names may repeat
        if rtype == 'subnet':
            return f"{rtype}/{_last_segment(props.get('vnet', ''))}/{name}"
        if rtype == 'nsg_rule':
            return f"{rtype}/{_last_segment(props.get('nsg', ''))}/{name}"
        if rtype == 'diagnostic_setting':
            return f"{rtype}/{props.get('target', '')}/{name}"
        return f'{rtype}/{name}'

    # ------------------------------------------------------------------
    # Provider protocol
    # ------------------------------------------------------------------

    def read(self, name: str, rtype: str, props: dict) -> Optional[dict]:
        record = self._load().get(self._key(rtype, name, props))
        if record is None:
            return None
        return dict(record['outputs'])

    def create(self, name: str, rtype: str, props: dict) -> dict:
        resources = self._load()
        self._check_parents(rtype, props, resources)
        outputs = self._outputs(name, rtype, props, resources)
        resources[self._key(rtype, name, props)] = {
            'type': rtype,
            'resource_group': props.get('resource_group'),
            'properties': props,
            'outputs': outputs,
        }
        self._save(resources)
        logger.info(f"[local] Created {rtype} '{name}'")
        return dict(outputs)

    def update(self, name: str, rtype: str, props: dict, changed: list[str]) -> dict:
        key = self._key(rtype, name, props)
        if key not in self._load():
            raise ProviderError(f"ResourceNotFound: {rtype} '{name}' does not exist")
        logger.info(f"[local] Updating {rtype} '{name}' ({', '.join(changed) or 'retry'})")
        return self.create(name, rtype, props)

    def delete(self, name: str, rtype: str, props: dict) -> None:
        resources = self._load()
        key = self._key(rtype, name, props)
        if key not in resources:
            logger.debug(f"[local] {rtype} '{name}' already absent")
            return
        del resources[key]
        if rtype == 'resource_group':
            contained = [k for k, r in resources.items()
                         if _last_segment(r.get('resource_group') or '') == name]
            for k in contained:
                del resources[k]
        # Diagnostic settings go away with their target
        live_ids = {r['outputs'].get('id') for r in resources.values()}
        for k in [k for k, r in resources.items()
                  if r['type'] == 'diagnostic_setting'
                  and r['properties'].get('target') not in live_ids]:
            del resources[k]
        self._save(resources)
        logger.info(f"[local] Deleted {rtype} '{name}'")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_parents(self, rtype: str, props: dict, resources: dict) -> None:
        rg = props.get('resource_group')
        if rtype != 'resource_group' and rg is not None:
            if f'resource_group/{_last_segment(rg)}' not in resources:
                raise ProviderError(f"ResourceGroupNotFound: Resource group '{rg}' could not be found")
        if rtype == 'diagnostic_setting':
            target = str(props.get('target', ''))
            if not any(r['outputs'].get('id') == target for r in resources.values()):
                raise ProviderError(f"ResourceNotFound: diagnostic target '{target}' does not exist")
            workspace = str(props.get('workspace', ''))
            if not any(r['outputs'].get('id') == workspace for r in resources.values()):
                raise ProviderError(f"ResourceNotFound: workspace '{workspace}' does not exist")

    def _resource_id(self, name: str, rtype: str, props: dict) -> str:
        if rtype == 'resource_group':
            return f'/subscriptions/{self.subscription}/resourceGroups/{name}'
        if rtype == 'diagnostic_setting':
            return f"{props['target']}/providers/microsoft.insights/diagnosticSettings/{name}"
        path = _PROVIDER_PATHS[rtype].format(
            name=name,
            vnet=_last_segment(props.get('vnet', '')),
            nsg=_last_segment(props.get('nsg', '')),
        )
        rg = _last_segment(props['resource_group'])
        return f'/subscriptions/{self.subscription}/resourceGroups/{rg}/providers/{path}'

    def _lookup(self, resources: dict, rtype: str, ref: Any) -> Optional[dict]:
        name = _last_segment(ref)
        record = resources.get(f'{rtype}/{name}')
        return record['outputs'] if record else None

    def _outputs(self, name: str, rtype: str, props: dict, resources: dict) -> dict:
        resource_id = self._resource_id(name, rtype, props)
        digest = _digest(resource_id)
        outputs: dict[str, Any] = {'id': resource_id, 'name': name}

        if rtype == 'public_ip':
            outputs['ip_address'] = f'20.{digest[0]}.{digest[1]}.{digest[2] % 254 + 1}'
        elif rtype == 'network_interface':
            outputs['private_ip'] = f'10.0.{digest[0] % 256}.{digest[1] % 250 + 4}'
        elif rtype == 'virtual_machine':
            public_ip = private_ip = None
            for nic_ref in props.get('nics') or []:
                nic = resources.get(f'network_interface/{_last_segment(nic_ref)}')
                if nic is None:
                    raise ProviderError(f"ResourceNotFound: network interface '{nic_ref}' does not exist")
                private_ip = private_ip or nic['outputs'].get('private_ip')
                pip_ref = nic['properties'].get('public_ip')
                if pip_ref and public_ip is None:
                    pip = self._lookup(resources, 'public_ip', pip_ref)
                    public_ip = pip.get('ip_address') if pip else None
            outputs['public_ip'] = public_ip
            outputs['private_ip'] = private_ip
        elif rtype == 'log_analytics_workspace':
            outputs['customer_id'] = str(uuid.UUID(bytes=digest[:16]))
        elif rtype == 'nsg_rule':
            ports = props.get('ports')
            outputs['access'] = props.get('access')
            outputs['direction'] = props.get('direction')
            outputs['protocol'] = props.get('protocol')
            outputs['ports'] = [str(p) for p in (ports if isinstance(ports, list) else [ports])]
        return outputs
