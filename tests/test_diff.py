"""Tests for engine.diff module - interpolation and plan computation."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from engine.diff import (
    UNKNOWN,
    ChangeAction,
    compute_plan,
    contains_unknown,
    interpolate,
    resolve_properties,
)
from engine.graph import ResourceGraph
from engine.state import StackState
from stack import Stack


def _stack(resources):
    return Stack.from_dict({'schema_version': 1, 'name': 'test', 'resources': resources})


RG = {'name': 'rg', 'type': 'resource_group', 'properties': {'location': 'eastus'}}
NSG = {'name': 'nsg', 'type': 'network_security_group',
       'properties': {'resource_group': '${rg.name}', 'location': 'eastus'}}


def _applied_state(stack, tmp_path, outputs):
    """State as if every resource in the stack had been applied."""
    state = StackState(stack.name, 'local', tmp_path)
    context = {}
    for node in ResourceGraph(stack).apply_order():
        context[node.name] = outputs[node.name]
        props = resolve_properties(node.resource, context, stack.base_dir)
        rs = state.add_resource(node.name, node.type)
        rs.dependencies = sorted(node.resource.dependencies)
        rs.complete(properties=props, outputs=outputs[node.name])
    return state


OUTPUTS = {
    'rg': {'id': '/subscriptions/s/resourceGroups/rg', 'name': 'rg'},
    'nsg': {'id': '/subscriptions/s/resourceGroups/rg/providers/nsg', 'name': 'nsg'},
}


class TestInterpolate:
    """Tests for ${name.attr} resolution."""

    def test_whole_reference_keeps_type(self):
        assert interpolate('${vm.nics}', {'vm': {'nics': ['a', 'b']}}) == ['a', 'b']

    def test_embedded_reference(self):
        assert interpolate('rg-${x.name}-01', {'x': {'name': 'lab'}}) == 'rg-lab-01'

    def test_nested_structures(self):
        value = {'nics': ['${nic.id}'], 'n': 3}
        assert interpolate(value, {'nic': {'id': '/nic'}}) == {'nics': ['/nic'], 'n': 3}

    def test_unknown_when_no_outputs(self):
        assert interpolate('${vm.id}', {}) is UNKNOWN

    def test_unknown_when_pending(self):
        assert interpolate('${vm.id}', {'vm': {'id': '/old'}}, frozenset({'vm'})) is UNKNOWN

    def test_embedded_unknown_detected(self):
        assert contains_unknown(interpolate(['x-${vm.id}'], {}))

    def test_missing_attribute_raises(self):
        with pytest.raises(ConfigError, match="has no output 'ip_address'"):
            interpolate('${vm.ip_address}', {'vm': {'id': '/vm'}})


class TestResolveProperties:
    """Tests for property resolution including cloud-init."""

    def test_cloud_init_fingerprinted_for_diff(self, web_lab):
        vm = web_lab.get_resource('web-vm')
        props = resolve_properties(vm, {})
        assert props['cloud_init'].startswith('sha256:')
        assert props['nics'] == [UNKNOWN]

    def test_cloud_init_rendered_for_provider(self, web_lab):
        vm = web_lab.get_resource('web-vm')
        props = resolve_properties(vm, {}, render=True)
        assert props['cloud_init'].startswith('#cloud-config\n')


class TestComputePlan:
    """Tests for compute_plan() decisions."""

    def test_fresh_state_creates_everything(self, web_lab, tmp_path):
        state = StackState(web_lab.name, 'local', tmp_path)
        plan = compute_plan(web_lab, ResourceGraph(web_lab), state)
        assert {c.action for c in plan.changes} == {ChangeAction.CREATE}
        assert [c.name for c in plan.changes] == web_lab.resource_names
        assert plan.has_changes

    def test_dependents_of_pending_see_unknown(self, web_lab, tmp_path):
        state = StackState(web_lab.name, 'local', tmp_path)
        plan = compute_plan(web_lab, ResourceGraph(web_lab), state)
        assert plan.get('web-vm-diag').after['target'] is UNKNOWN

    def test_applied_state_is_noop(self, tmp_path):
        stack = _stack([RG, NSG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        plan = compute_plan(stack, ResourceGraph(stack), state, refresh=False)
        assert not plan.has_changes
        assert plan.summary()['noop'] == 2

    def test_updatable_change_is_update(self, tmp_path):
        stack = _stack([RG, NSG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        nsg = dict(NSG, properties=dict(NSG['properties'], tags={'env': 'lab'}))
        changed = _stack([RG, nsg])

        plan = compute_plan(changed, ResourceGraph(changed), state, refresh=False)
        change = plan.get('nsg')
        assert change.action == ChangeAction.UPDATE
        assert change.changed_keys == ['tags']
        assert plan.get('rg').action == ChangeAction.NOOP

    def test_force_new_change_is_replace(self, tmp_path):
        stack = _stack([RG, NSG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        rg = dict(RG, properties={'location': 'westus'})
        changed = _stack([rg, NSG])

        plan = compute_plan(changed, ResourceGraph(changed), state, refresh=False)
        assert plan.get('rg').action == ChangeAction.REPLACE
        # nsg's resource_group is now unknown, which differs from state
        assert plan.get('nsg').action == ChangeAction.REPLACE

    def test_removed_resource_is_delete(self, tmp_path):
        stack = _stack([RG, NSG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        smaller = _stack([RG])

        plan = compute_plan(smaller, ResourceGraph(smaller), state, refresh=False)
        assert plan.changes[0].name == 'nsg'
        assert plan.changes[0].action == ChangeAction.DELETE
        assert plan.changes[0].reason == 'removed from stack'

    def test_drift_detected_with_refresh(self, tmp_path):
        stack = _stack([RG, NSG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        provider = MagicMock()
        provider.read.side_effect = lambda name, rtype, props: None if name == 'nsg' else OUTPUTS[name]

        plan = compute_plan(stack, ResourceGraph(stack), state, provider, refresh=True)
        assert plan.get('rg').action == ChangeAction.NOOP
        assert plan.get('nsg').action == ChangeAction.CREATE
        assert 'drift' in plan.get('nsg').reason

    def test_no_refresh_skips_provider(self, tmp_path):
        stack = _stack([RG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        provider = MagicMock()
        compute_plan(stack, ResourceGraph(stack), state, provider, refresh=False)
        provider.read.assert_not_called()

    def test_failed_update_retried(self, tmp_path):
        stack = _stack([RG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        state.get_resource('rg').fail('update failed')

        plan = compute_plan(stack, ResourceGraph(stack), state, refresh=False)
        assert plan.get('rg').action == ChangeAction.UPDATE
        assert plan.get('rg').reason == 'previous apply failed'


class TestPlanFormat:
    """Tests for human-readable plan output."""

    def test_format_lists_changes_and_summary(self, web_lab, tmp_path):
        state = StackState(web_lab.name, 'local', tmp_path)
        text = compute_plan(web_lab, ResourceGraph(web_lab), state).format()
        assert "Plan for stack 'web-lab':" in text
        assert 'create   virtual_machine' in text
        assert 'Plan: 11 to create, 0 to update, 0 to replace, 0 to delete, 0 unchanged.' in text

    def test_format_no_changes(self, tmp_path):
        stack = _stack([RG])
        state = _applied_state(stack, tmp_path, OUTPUTS)
        text = compute_plan(stack, ResourceGraph(stack), state, refresh=False).format()
        assert 'No changes. Infrastructure matches the stack.' in text

    def test_to_dict(self, web_lab, tmp_path):
        state = StackState(web_lab.name, 'local', tmp_path)
        data = compute_plan(web_lab, ResourceGraph(web_lab), state).to_dict()
        assert data['summary']['create'] == 11
        assert data['changes'][0] == {'name': 'lab-rg', 'type': 'resource_group', 'action': 'create'}
