"""Shared pytest fixtures for azstack tests."""

import copy
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


WEB_LAB = {
    'schema_version': 1,
    'name': 'web-lab',
    'defaults': {
        'location': 'eastus',
        'resource_group': '${lab-rg.name}',
    },
    'resources': [
        {'name': 'lab-rg', 'type': 'resource_group'},
        {'name': 'lab-vnet', 'type': 'virtual_network',
         'properties': {'address_prefixes': ['10.0.0.0/16']}},
        {'name': 'web-nsg', 'type': 'network_security_group'},
        {'name': 'allow-ssh', 'type': 'nsg_rule',
         'properties': {'nsg': '${web-nsg.name}', 'priority': 1000, 'ports': [22]}},
        {'name': 'allow-https', 'type': 'nsg_rule',
         'properties': {'nsg': '${web-nsg.name}', 'priority': 1010, 'ports': [443]}},
        {'name': 'web-subnet', 'type': 'subnet',
         'properties': {'vnet': '${lab-vnet.name}', 'address_prefix': '10.0.1.0/24',
                        'nsg': '${web-nsg.name}'}},
        {'name': 'web-pip', 'type': 'public_ip'},
        {'name': 'web-nic', 'type': 'network_interface',
         'properties': {'vnet': '${lab-vnet.name}', 'subnet': '${web-subnet.name}',
                        'public_ip': '${web-pip.name}', 'nsg': '${web-nsg.name}'}},
        {'name': 'web-vm', 'type': 'virtual_machine',
         'properties': {
             'image': 'Ubuntu2204',
             'size': 'Standard_B1s',
             'admin_username': 'azureuser',
             'nics': ['${web-nic.id}'],
             'cloud_init': {
                 'packages': ['nginx'],
                 'runcmd': [['systemctl', 'enable', 'nginx'], ['systemctl', 'start', 'nginx']],
             },
         }},
        {'name': 'lab-logs', 'type': 'log_analytics_workspace'},
        {'name': 'web-vm-diag', 'type': 'diagnostic_setting',
         'properties': {'target': '${web-vm.id}', 'workspace': '${lab-logs.id}'}},
    ],
    'settings': {'verify_ssh': False, 'verify_https': False},
}


@pytest.fixture
def web_lab_data():
    """Fresh copy of the web lab stack as a dict."""
    return copy.deepcopy(WEB_LAB)


@pytest.fixture
def web_lab(web_lab_data):
    """The web lab stack, loaded and validated."""
    from stack import Stack
    return Stack.from_dict(web_lab_data)


@pytest.fixture
def local_config(tmp_path):
    """Profile using the local provider with state under tmp_path."""
    from config import ProfileConfig
    return ProfileConfig(name='local', provider='local', state_dir=tmp_path / 'states')


@pytest.fixture
def config_dir(tmp_path, web_lab_data):
    """Create a temporary config directory.

    Creates:
    - site.yaml (defaults)
    - profiles/lab.yaml (azcli)
    - profiles/local.yaml (local provider)
    - stacks/web-lab.yaml
    - cloud-init/web.yaml
    """
    import yaml

    root = tmp_path / 'config'
    for d in ['profiles', 'stacks', 'cloud-init']:
        (root / d).mkdir(parents=True, exist_ok=True)

    (root / 'site.yaml').write_text("""
defaults:
  location: westeurope
  timeout: 300
  state_dir: states
""")

    (root / 'profiles/lab.yaml').write_text("""
provider: azcli
subscription: 11111111-2222-3333-4444-555555555555
""")

    (root / 'profiles/local.yaml').write_text("""
provider: local
""")

    (root / 'cloud-init/web.yaml').write_text("""#cloud-config
packages:
  - nginx
runcmd:
  - systemctl enable --now nginx
""")

    data = web_lab_data
    vm = next(r for r in data['resources'] if r['name'] == 'web-vm')
    vm['properties']['cloud_init'] = '../cloud-init/web.yaml'
    (root / 'stacks/web-lab.yaml').write_text(yaml.safe_dump(data, sort_keys=False))

    return root


@pytest.fixture
def use_config_dir(config_dir):
    """Point AZSTACK_CONFIG at the temporary config directory."""
    with patch.dict(os.environ, {'AZSTACK_CONFIG': str(config_dir)}):
        yield config_dir
