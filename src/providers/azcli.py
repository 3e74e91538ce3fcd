"""Azure provider driving the az CLI.

Each resource type maps to a group of az commands (create/show/delete).
Network and monitor 'create' commands are idempotent PUTs, so in-place
updates re-issue them. Virtual machines update through 'vm resize' and
'vm update --set'.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from common import run_command
from config import ProfileConfig
from providers.base import ProviderError

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ('ResourceNotFound', 'ResourceGroupNotFound', 'NotFound', 'was not found')

# az exits with 3 when 'show' targets a missing resource
NOT_FOUND_EXIT_CODE = 3

# Wrapper keys some create commands put around the resource body
_CREATE_WRAPPERS = ('newVNet', 'NewNSG', 'publicIp', 'NewNIC')


def _is_not_found(returncode: int, stderr: str) -> bool:
    return returncode == NOT_FOUND_EXIT_CODE or any(m in stderr for m in NOT_FOUND_MARKERS)


def _tags_args(props: dict) -> list[str]:
    tags = props.get('tags') or {}
    if not tags:
        return []
    return ['--tags', *[f'{k}={v}' for k, v in sorted(tags.items())]]


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def create_temp_custom_data(name: str, content: str) -> Path:
    """Write cloud-init custom data to a private temp file.

    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'custom-data-{name}-', suffix='.yaml')
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(content)
    return Path(path)


class AzCliProvider:
    """Provider backed by the az command line."""

    def __init__(self, config: ProfileConfig, timeout: Optional[int] = None):
        self.config = config
        self.az_path = config.az_path
        self.subscription = config.subscription
        self.timeout = timeout or config.timeout

    # ------------------------------------------------------------------
    # az invocation
    # ------------------------------------------------------------------

    def _az(self, args: list[str], allow_missing: bool = False) -> Optional[dict]:
        """Run an az command and parse its JSON output.

        Returns None when allow_missing is set and the resource is absent.

        Raises:
            ProviderError: On non-zero exit or unparseable output
        """
        cmd = [self.az_path, *args, '--output', 'json']
        if self.subscription:
            cmd += ['--subscription', self.subscription]

        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            if allow_missing and _is_not_found(rc, err):
                return None
            message = err.strip() or out.strip() or 'unknown error'
            raise ProviderError(
                f"az {' '.join(args[:3])} failed (rc={rc}): {message[:500]}",
                command=cmd, returncode=rc, stderr=err,
            )

        if not out.strip():
            return {}
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise ProviderError(f"az {' '.join(args[:3])} returned invalid JSON: {e}", command=cmd)
        if not isinstance(data, dict):
            return {'value': data}
        for key in _CREATE_WRAPPERS:
            if key in data and isinstance(data[key], dict):
                return data[key]
        return data

    # ------------------------------------------------------------------
    # Provider protocol
    # ------------------------------------------------------------------

    def read(self, name: str, rtype: str, props: dict) -> Optional[dict]:
        args = self._show_args(name, rtype, props)
        data = self._az(args, allow_missing=True)
        if data is None:
            logger.debug(f"{rtype} '{name}' not found")
            return None
        return self._outputs(name, rtype, data)

    def create(self, name: str, rtype: str, props: dict) -> dict:
        logger.info(f"[azcli] Creating {rtype} '{name}'")
        if rtype == 'virtual_machine':
            return self._create_vm(name, props)
        data = self._az(self._create_args(name, rtype, props))
        return self._outputs(name, rtype, data or {})

    def update(self, name: str, rtype: str, props: dict, changed: list[str]) -> dict:
        logger.info(f"[azcli] Updating {rtype} '{name}' ({', '.join(changed) or 'retry'})")
        if rtype != 'virtual_machine':
            data = self._az(self._create_args(name, rtype, props))
            return self._outputs(name, rtype, data or {})

        rg = props['resource_group']
        if 'size' in changed:
            self._az(['vm', 'resize', '--resource-group', rg, '--name', name, '--size', props['size']])
        if 'tags' in changed:
            tags = props.get('tags') or {}
            set_args = [f'tags.{k}={v}' for k, v in sorted(tags.items())] or ['tags={}']
            self._az(['vm', 'update', '--resource-group', rg, '--name', name, '--set', *set_args])
        outputs = self.read(name, rtype, props)
        if outputs is None:
            raise ProviderError(f"virtual_machine '{name}' disappeared during update")
        return outputs

    def delete(self, name: str, rtype: str, props: dict) -> None:
        logger.info(f"[azcli] Deleting {rtype} '{name}'")
        self._az(self._delete_args(name, rtype, props), allow_missing=True)

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    def _create_args(self, name: str, rtype: str, p: dict) -> list[str]:
        if rtype == 'resource_group':
            return ['group', 'create', '--name', name, '--location', p['location'], *_tags_args(p)]

        if rtype == 'virtual_network':
            return ['network', 'vnet', 'create',
                    '--resource-group', p['resource_group'], '--name', name,
                    '--location', p['location'],
                    '--address-prefixes', *_as_list(p['address_prefixes']), *_tags_args(p)]

        if rtype == 'subnet':
            args = ['network', 'vnet', 'subnet', 'create',
                    '--resource-group', p['resource_group'], '--vnet-name', p['vnet'],
                    '--name', name, '--address-prefixes', *_as_list(p['address_prefix'])]
            if p.get('nsg'):
                args += ['--network-security-group', p['nsg']]
            return args

        if rtype == 'network_security_group':
            return ['network', 'nsg', 'create',
                    '--resource-group', p['resource_group'], '--name', name,
                    '--location', p['location'], *_tags_args(p)]

        if rtype == 'nsg_rule':
            args = ['network', 'nsg', 'rule', 'create',
                    '--resource-group', p['resource_group'], '--nsg-name', p['nsg'],
                    '--name', name, '--priority', str(p['priority']),
                    '--direction', p['direction'], '--access', p['access'],
                    '--protocol', p['protocol'],
                    '--source-address-prefixes', *_as_list(p['source']),
                    '--destination-port-ranges', *_as_list(p['ports'])]
            if p.get('description'):
                args += ['--description', p['description']]
            return args

        if rtype == 'public_ip':
            args = ['network', 'public-ip', 'create',
                    '--resource-group', p['resource_group'], '--name', name,
                    '--location', p['location'], '--sku', p['sku'],
                    '--allocation-method', p['allocation'], *_tags_args(p)]
            if p.get('dns_label'):
                args += ['--dns-name', p['dns_label']]
            return args

        if rtype == 'network_interface':
            args = ['network', 'nic', 'create',
                    '--resource-group', p['resource_group'], '--name', name,
                    '--location', p['location'], '--vnet-name', p['vnet'],
                    '--subnet', p['subnet']]
            if p.get('public_ip'):
                args += ['--public-ip-address', p['public_ip']]
            if p.get('nsg'):
                args += ['--network-security-group', p['nsg']]
            return args

        if rtype == 'log_analytics_workspace':
            return ['monitor', 'log-analytics', 'workspace', 'create',
                    '--resource-group', p['resource_group'], '--workspace-name', name,
                    '--location', p['location'], '--sku', p['sku'],
                    '--retention-time', str(p['retention_days']), *_tags_args(p)]

        if rtype == 'diagnostic_setting':
            metrics = [{'category': m, 'enabled': True} for m in _as_list(p.get('metrics') or [])]
            args = ['monitor', 'diagnostic-settings', 'create',
                    '--name', name, '--resource', p['target'], '--workspace', p['workspace']]
            if metrics:
                args += ['--metrics', json.dumps(metrics)]
            logs = [{'category': c, 'enabled': True} for c in _as_list(p.get('logs') or [])]
            if logs:
                args += ['--logs', json.dumps(logs)]
            return args

        raise ProviderError(f"Unsupported resource type: {rtype}")

    def _create_vm(self, name: str, p: dict) -> dict:
        args = ['vm', 'create',
                '--resource-group', p['resource_group'], '--name', name,
                '--location', p['location'], '--image', p['image'], '--size', p['size'],
                '--admin-username', p['admin_username'], '--nics', *_as_list(p['nics'])]
        if p.get('ssh_key'):
            key = Path(os.path.expanduser(str(p['ssh_key'])))
            args += ['--ssh-key-values', str(key)]
        else:
            args += ['--generate-ssh-keys']
        if p.get('os_disk_size_gb'):
            args += ['--os-disk-size-gb', str(p['os_disk_size_gb'])]
        args += _tags_args(p)

        custom_data = None
        try:
            if p.get('cloud_init'):
                custom_data = create_temp_custom_data(name, p['cloud_init'])
                args += ['--custom-data', str(custom_data)]
            self._az(args)
        finally:
            if custom_data and custom_data.exists():
                custom_data.unlink()
                logger.debug(f"Cleaned up custom data file: {custom_data}")

        # vm create output lacks the full resource body; read it back
        outputs = self.read(name, 'virtual_machine', p)
        if outputs is None:
            raise ProviderError(f"virtual_machine '{name}' not found after create")
        return outputs

    def _show_args(self, name: str, rtype: str, p: dict) -> list[str]:
        rg = p.get('resource_group', '')
        if rtype == 'resource_group':
            return ['group', 'show', '--name', name]
        if rtype == 'virtual_network':
            return ['network', 'vnet', 'show', '--resource-group', rg, '--name', name]
        if rtype == 'subnet':
            return ['network', 'vnet', 'subnet', 'show', '--resource-group', rg,
                    '--vnet-name', p['vnet'], '--name', name]
        if rtype == 'network_security_group':
            return ['network', 'nsg', 'show', '--resource-group', rg, '--name', name]
        if rtype == 'nsg_rule':
            return ['network', 'nsg', 'rule', 'show', '--resource-group', rg,
                    '--nsg-name', p['nsg'], '--name', name]
        if rtype == 'public_ip':
            return ['network', 'public-ip', 'show', '--resource-group', rg, '--name', name]
        if rtype == 'network_interface':
            return ['network', 'nic', 'show', '--resource-group', rg, '--name', name]
        if rtype == 'virtual_machine':
            return ['vm', 'show', '--show-details', '--resource-group', rg, '--name', name]
        if rtype == 'log_analytics_workspace':
            return ['monitor', 'log-analytics', 'workspace', 'show', '--resource-group', rg,
                    '--workspace-name', name]
        if rtype == 'diagnostic_setting':
            return ['monitor', 'diagnostic-settings', 'show', '--name', name,
                    '--resource', p['target']]
        raise ProviderError(f"Unsupported resource type: {rtype}")

    def _delete_args(self, name: str, rtype: str, p: dict) -> list[str]:
        if rtype == 'resource_group':
            return ['group', 'delete', '--name', name, '--yes']
        if rtype == 'virtual_machine':
            return ['vm', 'delete', '--resource-group', p['resource_group'], '--name', name, '--yes']
        if rtype == 'log_analytics_workspace':
            return ['monitor', 'log-analytics', 'workspace', 'delete',
                    '--resource-group', p['resource_group'], '--workspace-name', name,
                    '--yes', '--force']
        # Every other type deletes with the arguments its show command takes
        args = self._show_args(name, rtype, p)
        args[args.index('show')] = 'delete'
        return args

    # ------------------------------------------------------------------
    # Output extraction
    # ------------------------------------------------------------------

    def _outputs(self, name: str, rtype: str, data: dict) -> dict:
        outputs: dict[str, Any] = {
            'id': data.get('id', ''),
            'name': data.get('name', name),
        }
        if rtype == 'public_ip':
            outputs['ip_address'] = data.get('ipAddress')
        elif rtype == 'network_interface':
            configs = data.get('ipConfigurations') or [{}]
            outputs['private_ip'] = configs[0].get('privateIPAddress') or configs[0].get('privateIpAddress')
        elif rtype == 'virtual_machine':
            outputs['public_ip'] = data.get('publicIps') or data.get('publicIpAddress') or None
            outputs['private_ip'] = data.get('privateIps') or data.get('privateIpAddress') or None
        elif rtype == 'log_analytics_workspace':
            outputs['customer_id'] = data.get('customerId')
        elif rtype == 'nsg_rule':
            ports = data.get('destinationPortRanges') or []
            if not ports and data.get('destinationPortRange'):
                ports = [data['destinationPortRange']]
            outputs['access'] = data.get('access')
            outputs['direction'] = data.get('direction')
            outputs['protocol'] = data.get('protocol')
            outputs['ports'] = [str(p) for p in ports]
        return outputs
