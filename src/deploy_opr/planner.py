"""Resource graph planner.

Computes the difference between a stage's desired graph and its
last-applied (observed) graph:
- create/update/replace/no-op for desired nodes, dependencies first
- destroy for observed nodes no longer desired, dependents first, listed last

A destroy (or replace) of a node that later-stage resources still reference
is recorded as a blocking conflict, never cascaded.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from common import DeployError
from credentials import CredentialScope
from resource_graph import ResourceGraph, ResourceNode, split_ref

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DESTROY = 'destroy'
NOOP = 'no-op'

DESTRUCTIVE_ACTIONS = frozenset({REPLACE, DESTROY})


class PlanConflict(DeployError):
    """A destroy or replace would orphan dependent resources."""


@dataclass
class PlanAction:
    """Planned action for a single resource node.

    Attributes:
        action: create, update, replace, destroy or no-op
        node: Resource name
        type: Resource type (desired type, or observed type for destroys)
        changes: Changed attributes as {attr: [old, new]}
        reason: Why a replace was chosen over an update
    """
    action: str
    node: str
    type: str
    changes: dict[str, list] = field(default_factory=dict)
    reason: str = ''

    @property
    def destructive(self) -> bool:
        return self.action in DESTRUCTIVE_ACTIONS

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'action': self.action, 'node': self.node, 'type': self.type}
        if self.changes:
            d['changes'] = self.changes
        if self.reason:
            d['reason'] = self.reason
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'PlanAction':
        return cls(
            action=data['action'],
            node=data['node'],
            type=data.get('type', ''),
            changes=dict(data.get('changes') or {}),
            reason=data.get('reason', ''),
        )


@dataclass
class PlanDiff:
    """Ordered set of actions that turns observed state into desired state.

    Attributes:
        stage: Stage the diff applies to
        actions: Ordered actions (creates/updates first, destroys last)
        base_version: Observed state version the diff was computed against
        conflicts: Blocking destroys as {node, action, dependents}
    """
    stage: str
    actions: list[PlanAction] = field(default_factory=list)
    base_version: int = 0
    conflicts: list[dict] = field(default_factory=list)

    @property
    def destructive(self) -> bool:
        return any(a.destructive for a in self.actions)

    @property
    def has_changes(self) -> bool:
        return any(a.action != NOOP for a in self.actions)

    def by_action(self, action: str) -> list[PlanAction]:
        return [a for a in self.actions if a.action == action]

    def counts(self) -> dict[str, int]:
        counts = {CREATE: 0, UPDATE: 0, REPLACE: 0, DESTROY: 0, NOOP: 0}
        for a in self.actions:
            counts[a.action] += 1
        return counts

    def summary(self) -> str:
        c = self.counts()
        return (
            f"{c[CREATE]} to create, {c[UPDATE]} to update, {c[REPLACE]} to replace, "
            f"{c[DESTROY]} to destroy, {c[NOOP]} unchanged"
        )

    def raise_for_conflicts(self) -> None:
        """Raise PlanConflict if any destroy would orphan dependents."""
        if not self.conflicts:
            return
        first = self.conflicts[0]
        details = '; '.join(
            f"{c['action']} {c['node']} (referenced by {', '.join(c['dependents'])})"
            for c in self.conflicts
        )
        raise PlanConflict(
            f"Plan for '{self.stage}' has blocking conflicts: {details}",
            stage=self.stage,
            node=first['node'],
        )

    def to_dict(self) -> dict:
        return {
            'stage': self.stage,
            'base_version': self.base_version,
            'destructive': self.destructive,
            'summary': self.summary(),
            'actions': [a.to_dict() for a in self.actions],
            'conflicts': self.conflicts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PlanDiff':
        return cls(
            stage=data['stage'],
            actions=[PlanAction.from_dict(a) for a in data.get('actions', [])],
            base_version=int(data.get('base_version', 0)),
            conflicts=list(data.get('conflicts') or []),
        )


def external_dependents(stage: str, later_graphs: Iterable[ResourceGraph]) -> dict[str, list[str]]:
    """Map each node of stage to the 'stage:name' refs later graphs hold on it."""
    refs: dict[str, list[str]] = {}
    for graph in later_graphs:
        for node in graph.nodes:
            for ref in node.depends_on:
                ref_stage, ref_name = split_ref(ref)
                if ref_stage == stage:
                    refs.setdefault(ref_name, []).append(f'{graph.stage}:{node.name}')
    return refs


def _changed_attributes(old: ResourceNode, new: ResourceNode) -> dict[str, list]:
    changes = {}
    for key in sorted(set(old.attributes) | set(new.attributes)):
        before = old.attributes.get(key)
        after = new.attributes.get(key)
        if before != after:
            changes[key] = [before, after]
    return changes


def _classify(old: ResourceNode, new: ResourceNode) -> PlanAction:
    if old.type != new.type:
        return PlanAction(
            action=REPLACE, node=new.name, type=new.type,
            changes={'type': [old.type, new.type]},
            reason=f"type changed from {old.type} to {new.type}",
        )

    changes = _changed_attributes(old, new)
    forced = [key for key in changes if key in new.replace_on]
    if forced:
        return PlanAction(
            action=REPLACE, node=new.name, type=new.type, changes=changes,
            reason=f"immutable attribute(s) changed: {', '.join(forced)}",
        )

    if sorted(set(old.depends_on)) != sorted(set(new.depends_on)):
        changes['depends_on'] = [sorted(set(old.depends_on)), sorted(set(new.depends_on))]
    if changes:
        return PlanAction(action=UPDATE, node=new.name, type=new.type, changes=changes)
    return PlanAction(action=NOOP, node=new.name, type=new.type)


def plan(
    desired: ResourceGraph,
    observed: ResourceGraph,
    external_refs: Optional[dict[str, list[str]]] = None,
) -> PlanDiff:
    """Compute the PlanDiff that turns observed into desired.

    Args:
        desired: Desired graph of the stage
        observed: Last-applied graph of the same stage
        external_refs: node name -> later-stage refs holding it (see external_dependents)
    """
    if desired.stage != observed.stage:
        raise ValueError(
            f"Cannot plan across stages: desired '{desired.stage}', observed '{observed.stage}'"
        )
    external_refs = external_refs or {}

    actions: list[PlanAction] = []
    conflicts: list[dict] = []
    for node in desired.topological_order():
        old = observed.get(node.name)
        if old is None:
            actions.append(PlanAction(action=CREATE, node=node.name, type=node.type))
            continue
        action = _classify(old, node)
        actions.append(action)
        if action.action == REPLACE and external_refs.get(node.name):
            conflicts.append({
                'node': node.name,
                'action': REPLACE,
                'dependents': sorted(external_refs[node.name]),
            })

    removed = {n.name for n in observed.nodes if n.name not in desired}
    for node in reversed(observed.topological_order()):
        if node.name not in removed:
            continue
        actions.append(PlanAction(action=DESTROY, node=node.name, type=node.type))
        # Desired nodes cannot depend on a removed node (validate_graph rejects
        # that), so only later stages can hold it.
        if external_refs.get(node.name):
            conflicts.append({
                'node': node.name,
                'action': DESTROY,
                'dependents': sorted(external_refs[node.name]),
            })

    diff = PlanDiff(
        stage=desired.stage,
        actions=actions,
        base_version=observed.version,
        conflicts=conflicts,
    )
    logger.debug(f"[plan] {desired.stage}: {diff.summary()}")
    return diff


def plan_stage(
    backend,
    desired: ResourceGraph,
    scope: Optional[CredentialScope] = None,
    later_graphs: Iterable[ResourceGraph] = (),
) -> PlanDiff:
    """Read observed state under the stage lock and plan against it.

    The lock is released on every path. If observed state cannot be read,
    ObservationUnavailable propagates and no diff is produced.
    """
    stage = desired.stage
    with backend.locked(stage, scope=scope):
        observed = backend.read_state(stage, scope=scope)
    diff = plan(desired, observed, external_refs=external_dependents(stage, later_graphs))
    logger.info(f"[plan] {stage} (base version {diff.base_version}): {diff.summary()}")
    return diff
