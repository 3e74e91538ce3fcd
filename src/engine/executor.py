"""Stack executor: dependency-ordered plan/apply/destroy.

Walks the plan computed by engine.diff and performs each change through
the provider, persisting state after every resource. Failures are
handled according to the stack's on_error setting:

- stop: abort at the first failure
- continue: keep going, skipping dependents of failed resources
- rollback: delete everything created during this run, then abort
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from common import ActionResult
from config import ConfigError, ProfileConfig
from engine.diff import (
    Change,
    ChangeAction,
    Plan,
    compute_plan,
    contains_unknown,
    resolve_properties,
)
from engine.graph import GraphNode, ResourceGraph, order_by_dependencies
from engine.state import ResourceState, StackState, fingerprint
from providers.base import Provider, ProviderError
from providers.types import get_resource_type
from stack import Stack

logger = logging.getLogger(__name__)


@dataclass
class StackExecutor:
    """Executes lifecycle operations for a stack.

    Attributes:
        stack: The stack being applied
        graph: Dependency graph built from the stack
        config: Profile selecting subscription and state location
        provider: Backend performing cloud operations
        dry_run: If True, preview operations without executing
    """
    stack: Stack
    graph: ResourceGraph
    config: ProfileConfig
    provider: Provider
    dry_run: bool = False

    def _load_state(self) -> StackState:
        return StackState.load_or_create(self.stack.name, self.config.name, self.config.state_dir)

    def plan(self, refresh: Optional[bool] = None) -> Plan:
        """Compute the plan for the stack against saved state."""
        if refresh is None:
            refresh = self.stack.settings.refresh
        state = self._load_state()
        return compute_plan(self.stack, self.graph, state, self.provider, refresh=refresh)

    def apply(self, context: dict) -> tuple[bool, StackState]:
        """Apply the stack: delete orphans, then create/update/replace in order."""
        state = self._load_state()
        state.start()

        try:
            plan = compute_plan(
                self.stack, self.graph, state, self.provider,
                refresh=self.stack.settings.refresh,
            )
        except (ConfigError, ProviderError) as e:
            logger.error(f"[apply] planning failed: {e}")
            state.finish()
            return False, state

        if self.dry_run:
            self._preview_apply(plan)
            state.finish()
            return True, state

        for change in plan.changes:
            state.add_resource(change.name, change.type)

        on_error = self.stack.settings.on_error
        outputs = state.outputs_context()
        created: list[GraphNode] = []
        failed: set[str] = set()
        success = True

        for change in plan.changes:
            rs = state.get_resource(change.name)

            if change.action == ChangeAction.DELETE:
                result = self._delete_orphan(change, rs)
                if result.success:
                    state.remove_resource(change.name)
                    state.save()
                    continue
            else:
                node = self.graph.get_node(change.name)
                blocked = [d.name for d in node.dependencies if d.name in failed]
                if blocked:
                    rs.skip(f"dependency failed: {', '.join(blocked)}")
                    failed.add(change.name)
                    logger.warning(f"[apply] {change.name}: skipped ({rs.error})")
                    state.save()
                    continue

                result = self._apply_change(change, node, rs, outputs, created)
                if result.success:
                    outputs[change.name] = dict(result.outputs)
                    state.save()
                    continue

            # Failure handling
            success = False
            failed.add(change.name)
            rs.fail(result.message)
            state.save()
            logger.error(f"[apply] {change.name}: {change.action.value} failed: {result.message}")
            if on_error == 'stop':
                break
            if on_error == 'rollback':
                self._rollback(created, state)
                break

        state.finish()
        state.save()
        context.update(state.outputs_context())
        return success, state

    def _apply_change(
        self,
        change: Change,
        node: GraphNode,
        rs: ResourceState,
        outputs: dict[str, dict],
        created: list[GraphNode],
    ) -> ActionResult:
        """Perform one create/update/replace/noop change.

        Nodes actually created or replaced are appended to `created` for
        rollback.
        """
        resource = node.resource
        start = time.time()

        if change.action == ChangeAction.NOOP:
            rs.dependencies = sorted(resource.dependencies)
            logger.debug(f"[apply] {resource.name}: unchanged")
            return ActionResult(success=True, message='unchanged', outputs=dict(rs.outputs))

        try:
            desired = resolve_properties(resource, outputs, self.stack.base_dir)
            call_props = resolve_properties(resource, outputs, self.stack.base_dir, render=True)
        except ConfigError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        if contains_unknown(call_props):
            return ActionResult(
                success=False,
                message='unresolved references (a dependency has no outputs)',
                duration=time.time() - start,
            )

        try:
            action = self._reconcile(change, desired, rs)
        except ProviderError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)
        logger.info(f"[apply] {resource.name}: {action.value}")
        rs.start()

        try:
            if action == ChangeAction.NOOP:
                out = dict(rs.outputs)
            elif action == ChangeAction.CREATE:
                out = self.provider.create(resource.name, resource.type, call_props)
            elif action == ChangeAction.UPDATE:
                changed = [k for k in change.changed_keys if rs.properties.get(k) != desired.get(k)]
                out = self.provider.update(resource.name, resource.type, call_props, changed)
            else:
                self.provider.delete(resource.name, rs.type or resource.type, rs.properties)
                # Gone from the cloud: forget it so a failed create plans a create
                rs.properties, rs.fingerprint, rs.outputs = {}, None, {}
                out = self.provider.create(resource.name, resource.type, call_props)
        except ProviderError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        if action in (ChangeAction.CREATE, ChangeAction.REPLACE):
            created.append(node)
        rs.type = resource.type
        rs.dependencies = sorted(resource.dependencies)
        rs.complete(properties=desired, outputs=out)
        return ActionResult(
            success=True,
            message=f"{resource.type} '{resource.name}': {action.value}",
            duration=time.time() - start,
            outputs=out,
        )

    def _reconcile(self, change: Change, desired: dict, rs: ResourceState) -> ChangeAction:
        """Re-check a planned change now that dependency outputs are known.

        Plans made while dependencies were pending compare against unknown
        values. Once those values are real the change may shrink (replace to
        update) or vanish. A replaced parent can take its children with it
        (deleting a resource group), in which case the child is created.
        """
        if change.action not in (ChangeAction.UPDATE, ChangeAction.REPLACE):
            return change.action
        if not rs.exists or not contains_unknown(change.after):
            return change.action
        if self.provider.read(change.name, change.type, rs.properties) is None:
            rs.properties, rs.fingerprint, rs.outputs = {}, None, {}
            return ChangeAction.CREATE
        if rs.status == 'completed' and fingerprint(desired) == rs.fingerprint:
            return ChangeAction.NOOP
        rtype = get_resource_type(change.type)
        changed = {k for k in set(rs.properties) | set(desired)
                   if rs.properties.get(k) != desired.get(k)}
        if changed & rtype.force_new or not rtype.updatable:
            return ChangeAction.REPLACE
        return ChangeAction.UPDATE

    def _delete_orphan(self, change: Change, rs: ResourceState) -> ActionResult:
        """Delete a resource that was removed from the stack."""
        start = time.time()
        logger.info(f"[apply] {change.name}: delete ({change.reason})")
        rs.start()
        try:
            self.provider.delete(change.name, rs.type, rs.properties)
        except ProviderError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)
        rs.mark_destroyed()
        return ActionResult(success=True, message=f"Deleted {change.name}", duration=time.time() - start)

    def destroy(self, context: dict) -> tuple[bool, StackState]:
        """Delete every resource recorded in state, dependents first."""
        state = self._load_state()
        state.start()
        context.update(state.outputs_context())

        targets = {n: s for n, s in state.resources.items() if s.exists}
        order = list(reversed(order_by_dependencies(
            {n: set(s.dependencies) for n, s in targets.items()}
        )))

        if self.dry_run:
            self._preview_destroy(order, state)
            state.finish()
            return True, state

        if not order:
            logger.info(f"Nothing to destroy for stack '{self.stack.name}'")

        success = True
        for name in order:
            rs = state.get_resource(name)
            logger.info(f"[destroy] {name}: delete")
            rs.start()
            try:
                self.provider.delete(name, rs.type, rs.properties)
            except ProviderError as e:
                rs.fail(str(e))
                success = False
                logger.error(f"[destroy] {name}: delete failed: {e}")
            else:
                rs.mark_destroyed()
            state.save()

        for name, rs in state.resources.items():
            if not rs.exists:
                state.remove_resource(name)

        state.finish()
        if state.resources:
            state.save()
        else:
            state.delete()
        return success, state

    def refresh(self) -> tuple[list[str], StackState]:
        """Re-read outputs of applied resources; returns names found missing."""
        state = self._load_state()
        missing: list[str] = []
        for name, rs in state.live_resources.items():
            live = self.provider.read(name, rs.type, rs.properties)
            if live is None:
                logger.warning(f"[refresh] {name}: missing in cloud")
                rs.status = 'pending'
                rs.properties, rs.fingerprint, rs.outputs = {}, None, {}
                missing.append(name)
            else:
                rs.outputs = live
        if not self.dry_run:
            state.save()
        return missing, state

    def _rollback(self, created: list[GraphNode], state: StackState) -> None:
        """Delete resources created during this run, in reverse order."""
        logger.info(f"Rolling back {len(created)} created resources...")
        for node in reversed(created):
            rs = state.get_resource(node.name)
            try:
                self.provider.delete(node.name, node.type, rs.properties)
            except ProviderError as e:
                logger.error(f"Rollback delete failed for {node.name}: {e}")
                continue
            rs.mark_destroyed()
            state.save()

    def _preview_apply(self, plan: Plan) -> None:
        """Preview apply operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN APPLY: {self.stack.name}")
        print(f"  Profile: {self.config.name} ({self.config.provider})")
        print(f"  On error: {self.stack.settings.on_error}")
        print("=" * 65)
        print("")
        print(plan.format())
        print("")

    def _preview_destroy(self, order: list[str], state: StackState) -> None:
        """Preview destroy operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN DESTROY: {self.stack.name}")
        print(f"  Profile: {self.config.name} ({self.config.provider})")
        print("=" * 65)
        print("")
        if not order:
            print("  Nothing to destroy.")
        for name in order:
            rs = state.get_resource(name)
            print(f"  - {rs.type:<24} {name}")
        print("")
