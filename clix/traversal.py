"""
Walking the step tree.

The variable engine and both validators need the same recursive walk through
then/else/case/default/loop bodies; it lives here.
"""
from typing import Iterator, List, Sequence, Tuple

from .models import StepType


def child_blocks(step) -> List[Tuple[str, Sequence]]:
    """
    Return the nested step lists of a step as ``(label, steps)`` pairs.

    Labels name the block the way execution traces do: ``then``, ``else``,
    ``case[<value>]``, ``default`` and ``loop``. Command and auth steps have
    no children.
    """
    if step.step_type == StepType.CONDITIONAL:
        payload = step.conditional
        blocks = [("then", payload.then_block)]
        if payload.else_block is not None:
            blocks.append(("else", payload.else_block))
        return blocks
    if step.step_type == StepType.BRANCH:
        payload = step.branch
        blocks = [(f"case[{case.value}]", case.steps) for case in payload.cases]
        if payload.default_case is not None:
            blocks.append(("default", payload.default_case))
        return blocks
    if step.step_type == StepType.LOOP:
        return [("loop", step.loop.steps)]
    return []


def child_steps(step) -> Iterator:
    """Yield the direct children of a step, block by block."""
    for _, steps in child_blocks(step):
        yield from steps


def walk(steps: Sequence) -> Iterator:
    """Depth-first, pre-order walk over every step in a tree."""
    for step in steps:
        yield step
        yield from walk(list(child_steps(step)))


def condition_expressions(step) -> List[str]:
    """Condition text carried by a step (conditionals and loops only)."""
    if step.step_type == StepType.CONDITIONAL:
        return [step.conditional.condition.expression]
    if step.step_type == StepType.LOOP:
        return [step.loop.condition.expression]
    return []


def step_texts(step) -> List[str]:
    """All executable text a single step carries, excluding its children."""
    texts = [step.command] if step.command else []
    texts.extend(condition_expressions(step))
    return texts


def captured_names(steps: Sequence) -> List[str]:
    """Variables that conditions in the tree capture their outcome into."""
    names: List[str] = []
    for step in walk(steps):
        if step.step_type == StepType.CONDITIONAL:
            variable = step.conditional.condition.variable
        elif step.step_type == StepType.LOOP:
            variable = step.loop.condition.variable
        else:
            variable = None
        if variable and variable not in names:
            names.append(variable)
    return names
