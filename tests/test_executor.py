"""Tests for engine.executor module.

End-to-end lifecycle runs use the local provider; error handling uses a
mocked provider so individual operations can be made to fail.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.diff import ChangeAction
from engine.executor import StackExecutor
from engine.graph import ResourceGraph
from engine.state import StackState
from providers.base import ProviderError
from providers.local import LocalProvider
from stack import Stack


def _make_stack(resources, on_error='stop', name='test'):
    """Helper to create a stack from resource dicts."""
    return Stack.from_dict({
        'schema_version': 1,
        'name': name,
        'resources': resources,
        'settings': {'on_error': on_error},
    })


def _executor(stack, config, provider, dry_run=False):
    return StackExecutor(
        stack=stack,
        graph=ResourceGraph(stack),
        config=config,
        provider=provider,
        dry_run=dry_run,
    )


def _mock_provider(fail_on=()):
    """Provider whose create fails for names in fail_on."""
    provider = MagicMock()

    def create(name, rtype, props):
        if name in fail_on:
            raise ProviderError(f"az create failed for {name}")
        return {'id': f'/ids/{name}', 'name': name}

    provider.create.side_effect = create
    provider.read.side_effect = lambda name, rtype, props: {'id': f'/ids/{name}', 'name': name}
    return provider


RG = {'name': 'rg', 'type': 'resource_group', 'properties': {'location': 'eastus'}}
NSG = {'name': 'nsg', 'type': 'network_security_group',
       'properties': {'resource_group': '${rg.name}', 'location': 'eastus'}}
RG2 = {'name': 'rg2', 'type': 'resource_group', 'properties': {'location': 'eastus'}}


class TestLifecycle:
    """Apply, re-plan, drift, and destroy against the local provider."""

    def test_apply_creates_everything(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        context = {}
        success, state = _executor(web_lab, local_config, provider).apply(context)

        assert success
        assert all(rs.status == 'completed' for rs in state.resources.values())
        assert context['web-pip']['ip_address'].startswith('20.')
        assert context['web-vm']['public_ip'] == context['web-pip']['ip_address']
        assert context['web-vm']['private_ip'] == context['web-nic']['private_ip']
        assert state.path().exists()

    def test_vm_receives_rendered_cloud_init(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        _executor(web_lab, local_config, provider).apply({})

        cloud = json.loads(provider.path.read_text())['resources']
        vm = cloud['virtual_machine/web-vm']['properties']
        assert vm['cloud_init'].startswith('#cloud-config\n')
        assert 'nginx' in vm['cloud_init']

    def test_state_records_cloud_init_fingerprint(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        _, state = _executor(web_lab, local_config, provider).apply({})
        assert state.get_resource('web-vm').properties['cloud_init'].startswith('sha256:')

    def test_second_plan_is_noop(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        executor = _executor(web_lab, local_config, provider)
        executor.apply({})

        plan = executor.plan()
        assert not plan.has_changes
        assert plan.summary()['noop'] == 11

    def test_second_apply_calls_no_provider_writes(self, web_lab, local_config):
        _executor(web_lab, local_config, LocalProvider(local_config)).apply({})

        provider = MagicMock(wraps=LocalProvider(local_config))
        success, _ = _executor(web_lab, local_config, provider).apply({})
        assert success
        provider.create.assert_not_called()
        provider.update.assert_not_called()
        provider.delete.assert_not_called()

    def test_drift_recreates_missing_resource(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        executor = _executor(web_lab, local_config, provider)
        _, state = executor.apply({})

        # Deleting the VM out of band also removes its diagnostic setting
        provider.delete('web-vm', 'virtual_machine', state.get_resource('web-vm').properties)

        plan = executor.plan()
        assert plan.get('web-vm').action == ChangeAction.CREATE
        assert plan.get('web-vm-diag').action == ChangeAction.CREATE
        assert plan.get('web-nic').action == ChangeAction.NOOP

        success, _ = executor.apply({})
        assert success
        assert not executor.plan().has_changes

    def test_cloud_init_change_replaces_vm(self, web_lab_data, local_config):
        provider = LocalProvider(local_config)
        stack = Stack.from_dict(web_lab_data)
        _executor(stack, local_config, provider).apply({})

        vm = web_lab_data['resources'][8]
        vm['properties']['cloud_init']['packages'] = ['apache2']
        changed = Stack.from_dict(web_lab_data)
        executor = _executor(changed, local_config, provider)

        plan = executor.plan()
        assert plan.get('web-vm').action == ChangeAction.REPLACE
        assert plan.get('web-vm').changed_keys == ['cloud_init']

        success, _ = executor.apply({})
        assert success
        assert not executor.plan().has_changes

    def test_size_change_updates_vm(self, web_lab_data, local_config):
        provider = LocalProvider(local_config)
        _executor(Stack.from_dict(web_lab_data), local_config, provider).apply({})

        web_lab_data['resources'][8]['properties']['size'] = 'Standard_B2s'
        executor = _executor(Stack.from_dict(web_lab_data), local_config, provider)
        assert executor.plan().get('web-vm').action == ChangeAction.UPDATE

        success, state = executor.apply({})
        assert success
        assert state.get_resource('web-vm').properties['size'] == 'Standard_B2s'

    def test_replaced_parent_recreates_children(self, local_config):
        provider = LocalProvider(local_config)
        _executor(_make_stack([RG, NSG]), local_config, provider).apply({})

        moved = dict(RG, properties={'location': 'westus'})
        executor = _executor(_make_stack([moved, NSG]), local_config, provider)
        success, state = executor.apply({})

        assert success
        assert provider.read('nsg', 'network_security_group', state.get_resource('nsg').properties)
        assert not executor.plan().has_changes

    def test_removed_resource_deleted(self, local_config):
        provider = LocalProvider(local_config)
        _executor(_make_stack([RG, NSG]), local_config, provider).apply({})

        success, state = _executor(_make_stack([RG]), local_config, provider).apply({})
        assert success
        assert 'nsg' not in state.resources
        assert provider.read('nsg', 'network_security_group', {'resource_group': 'rg'}) is None

    def test_destroy_removes_everything(self, web_lab, local_config):
        provider = LocalProvider(local_config)
        executor = _executor(web_lab, local_config, provider)
        _, applied = executor.apply({})
        state_path = applied.path()

        success, state = executor.destroy({})
        assert success
        assert state.resources == {}
        assert not state_path.exists()
        assert json.loads(provider.path.read_text())['resources'] == {}

    def test_destroy_order_dependents_first(self, local_config):
        provider = MagicMock(wraps=LocalProvider(local_config))
        executor = _executor(_make_stack([RG, NSG]), local_config, provider)
        executor.apply({})
        executor.destroy({})

        deleted = [c.args[0] for c in provider.delete.call_args_list]
        assert deleted == ['nsg', 'rg']

    def test_destroy_nothing_recorded(self, web_lab, local_config):
        success, state = _executor(web_lab, local_config, LocalProvider(local_config)).destroy({})
        assert success
        assert state.resources == {}

    def test_refresh_marks_missing(self, local_config):
        provider = LocalProvider(local_config)
        executor = _executor(_make_stack([RG, NSG]), local_config, provider)
        _, state = executor.apply({})
        provider.delete('nsg', 'network_security_group', state.get_resource('nsg').properties)

        missing, refreshed = executor.refresh()
        assert missing == ['nsg']
        assert refreshed.get_resource('nsg').status == 'pending'
        reloaded = StackState.load('test', local_config.name, local_config.state_dir)
        assert reloaded.get_resource('nsg').status == 'pending'


class TestErrorHandling:
    """Tests for on_error modes with a failing provider."""

    def test_stop_on_first_failure(self, local_config):
        provider = _mock_provider(fail_on={'rg'})
        stack = _make_stack([RG, NSG, RG2], on_error='stop')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        assert state.get_resource('rg').status == 'failed'
        assert 'az create failed' in state.get_resource('rg').error
        assert state.get_resource('rg2').status == 'pending'
        assert provider.create.call_count == 1

    def test_continue_skips_dependents(self, local_config):
        provider = _mock_provider(fail_on={'rg'})
        stack = _make_stack([RG, NSG, RG2], on_error='continue')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        assert state.get_resource('nsg').status == 'skipped'
        assert state.get_resource('nsg').error == 'dependency failed: rg'
        assert state.get_resource('rg2').status == 'completed'

    def test_rollback_deletes_created(self, local_config):
        provider = _mock_provider(fail_on={'nsg'})
        stack = _make_stack([RG, NSG, RG2], on_error='rollback')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        provider.delete.assert_called_once()
        assert provider.delete.call_args.args[0] == 'rg'
        assert state.get_resource('rg').status == 'destroyed'
        assert state.get_resource('rg2').status == 'pending'

    def test_failed_create_is_planned_again(self, local_config):
        stack = _make_stack([RG], on_error='stop')
        _executor(stack, local_config, _mock_provider(fail_on={'rg'})).apply({})

        plan = _executor(stack, local_config, _mock_provider()).plan()
        assert plan.get('rg').action == ChangeAction.CREATE

    def test_destroy_continues_after_failure(self, local_config):
        stack = _make_stack([RG, RG2])
        provider = _mock_provider()
        _executor(stack, local_config, provider).apply({})

        def delete(name, rtype, props):
            if name == "rg2":
                raise ProviderError("ResourceGroupBeingDeleted: locked")

        provider.delete.side_effect = delete
        success, state = _executor(stack, local_config, provider).destroy({})

        assert not success
        assert list(state.resources) == ['rg2']
        assert state.get_resource('rg2').status == 'failed'
        assert state.path().exists()

    def test_read_failure_during_planning_fails_apply(self, local_config):
        stack = _make_stack([RG, NSG])
        _executor(stack, local_config, LocalProvider(local_config)).apply({})

        provider = MagicMock(wraps=LocalProvider(local_config))
        provider.read.side_effect = ProviderError('az: token expired')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        provider.create.assert_not_called()
        reloaded = StackState.load('test', local_config.name, local_config.state_dir)
        assert reloaded.get_resource('nsg').status == 'completed'

    def test_read_failure_while_reconciling_is_handled(self, local_config):
        settings = {'on_error': 'stop', 'refresh': False}
        _executor(
            Stack.from_dict({'name': 'test', 'resources': [RG, NSG], 'settings': settings}),
            local_config, LocalProvider(local_config),
        ).apply({})

        moved = dict(RG, properties={'location': 'westus'})
        stack = Stack.from_dict({'name': 'test', 'resources': [moved, NSG], 'settings': settings})
        provider = MagicMock(wraps=LocalProvider(local_config))
        provider.read.side_effect = ProviderError('az: token expired')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        assert state.get_resource('rg').status == 'completed'
        assert state.get_resource('nsg').status == 'failed'
        assert 'token expired' in state.get_resource('nsg').error

    def test_continue_keeps_live_dependent(self, local_config):
        rule = {'name': 'allow-ssh', 'type': 'nsg_rule', 'properties': {
            'resource_group': '${rg.name}', 'nsg': '${nsg.name}', 'priority': 1000, 'ports': [22],
        }}
        _executor(_make_stack([RG, NSG, rule], on_error='continue'),
                  local_config, LocalProvider(local_config)).apply({})

        tagged = dict(NSG, properties=dict(NSG['properties'], tags={'env': 'lab'}))
        stack = _make_stack([RG, tagged, rule], on_error='continue')
        provider = MagicMock(wraps=LocalProvider(local_config))
        provider.update.side_effect = ProviderError('az: throttled')
        success, state = _executor(stack, local_config, provider).apply({})

        assert not success
        live_rule = state.get_resource('allow-ssh')
        assert live_rule.status == 'completed'
        assert live_rule.exists
        assert live_rule.error == 'dependency failed: nsg'

        plan = _executor(stack, local_config, LocalProvider(local_config)).plan()
        assert plan.get('allow-ssh').action == ChangeAction.NOOP
        assert plan.get('nsg').action == ChangeAction.UPDATE

        _, destroyed = _executor(stack, local_config, LocalProvider(local_config)).destroy({})
        assert destroyed.resources == {}


class TestDryRun:
    """Tests for dry-run (preview) mode."""

    def test_apply_dry_run(self, web_lab, local_config, capsys):
        provider = LocalProvider(local_config)
        success, _ = _executor(web_lab, local_config, provider, dry_run=True).apply({})

        assert success
        captured = capsys.readouterr()
        assert 'DRY-RUN APPLY: web-lab' in captured.out
        assert 'Plan: 11 to create' in captured.out
        assert not provider.path.exists()
        assert not StackState('web-lab', 'local', local_config.state_dir).path().exists()

    def test_destroy_dry_run(self, local_config, capsys):
        provider = LocalProvider(local_config)
        stack = _make_stack([RG, NSG])
        _executor(stack, local_config, provider).apply({})
        capsys.readouterr()

        success, _ = _executor(stack, local_config, provider, dry_run=True).destroy({})
        assert success
        out = capsys.readouterr().out
        assert 'DRY-RUN DESTROY: test' in out
        assert out.index('nsg') < out.index('- resource_group')
        assert provider.read('rg', 'resource_group', {}) is not None

    def test_destroy_dry_run_empty(self, local_config, capsys):
        stack = _make_stack([RG])
        _executor(stack, local_config, LocalProvider(local_config), dry_run=True).destroy({})
        assert 'Nothing to destroy.' in capsys.readouterr().out


@pytest.mark.parametrize('mode', ['stop', 'continue', 'rollback'])
def test_successful_apply_same_for_all_modes(mode, local_config):
    success, state = _executor(
        _make_stack([RG, NSG], on_error=mode), local_config, _mock_provider(),
    ).apply({})
    assert success
    assert [rs.status for rs in state.resources.values()] == ['completed', 'completed']
