"""
Design-time validation of workflow definitions.

Validation only reads the definition; it never changes state.
"""

from collections import Counter, deque
from typing import List, Optional, Set

from requestflow.models.orm import WorkflowDefinition
from requestflow.models.schemas import WorkflowStepType


def _successors(definition: WorkflowDefinition, step) -> List[str]:
    """Step ids reachable in one hop: transitions, branch targets and parallel members"""
    targets = [t.to_step_id for t in definition.transitions_from(step.step_id)]
    configuration = step.configuration_dict

    if step.step_type == WorkflowStepType.BRANCH.value:
        targets.extend(
            condition.get("target_step_id")
            for condition in configuration.get("branch_conditions") or []
            if condition.get("target_step_id")
        )
    if step.step_type == WorkflowStepType.PARALLEL.value:
        targets.extend(configuration.get("parallel_step_ids") or [])

    return targets


def reachable_step_ids(definition: WorkflowDefinition, start_step_id: Optional[str]) -> Set[str]:
    """Breadth-first search from the start step"""
    if not start_step_id:
        return set()

    steps_by_id = {step.step_id: step for step in definition.steps}
    seen = {start_step_id}
    queue = deque([start_step_id])

    while queue:
        step = steps_by_id.get(queue.popleft())
        if step is None:
            continue
        for target in _successors(definition, step):
            if target not in seen:
                seen.add(target)
                queue.append(target)

    return seen


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """
    Check a workflow definition for structural problems.

    Returns a list of human-readable errors; an empty list means valid.
    """
    errors: List[str] = []
    steps = list(definition.steps)
    known_ids = {step.step_id for step in steps}

    duplicates = [step_id for step_id, count in Counter(s.step_id for s in steps).items() if count > 1]
    for step_id in duplicates:
        errors.append(f"Step id '{step_id}' is used by more than one step")

    start_steps = definition.steps_of_type(WorkflowStepType.START.value)
    if not start_steps:
        errors.append("Workflow must have exactly one start step")
    elif len(start_steps) > 1:
        errors.append("Workflow can only have one start step")

    if not definition.steps_of_type(WorkflowStepType.END.value):
        errors.append("Workflow must have at least one end step")

    for transition in definition.transitions:
        for ref in (transition.from_step_id, transition.to_step_id):
            if ref not in known_ids:
                errors.append(
                    f"Transition {transition.from_step_id} -> {transition.to_step_id} references unknown step '{ref}'"
                )

    reachable = reachable_step_ids(definition, start_steps[0].step_id if start_steps else None)
    for step in steps:
        if step.step_type != WorkflowStepType.START.value and step.step_id not in reachable:
            errors.append(f"Step '{step.name}' ({step.step_id}) is not reachable from the start step")

    for step in steps:
        configuration = step.configuration_dict

        if step.step_type == WorkflowStepType.APPROVAL.value:
            if not step.assigned_roles_list:
                errors.append(f"Approval step '{step.name}' ({step.step_id}) must have at least one assigned role")
            if configuration.get("minimum_approvers", 1) < 1:
                errors.append(f"Approval step '{step.name}' ({step.step_id}) must require at least one approver")

        elif step.step_type == WorkflowStepType.BRANCH.value:
            if len(definition.transitions_from(step.step_id)) < 2:
                errors.append(f"Branch step '{step.name}' ({step.step_id}) must have at least two outgoing transitions")
            for condition in configuration.get("branch_conditions") or []:
                target = condition.get("target_step_id")
                if target not in known_ids:
                    errors.append(f"Branch step '{step.name}' ({step.step_id}) routes to unknown step '{target}'")

        elif step.step_type == WorkflowStepType.PARALLEL.value:
            members = configuration.get("parallel_step_ids") or []
            if not members:
                errors.append(f"Parallel step '{step.name}' ({step.step_id}) must have at least one parallel step")
            for member in members:
                if member not in known_ids:
                    errors.append(f"Parallel step '{step.name}' ({step.step_id}) includes unknown step '{member}'")

    return errors

