"""
Variable substitution for workflow templates.

Commands, conditions and branch case values may contain ``{{ name }}``
placeholders. They are resolved from a flat name -> value context built from
a profile, explicit overrides and, for anything still missing, an interactive
prompt.
"""
import logging
import re
from typing import Callable, Dict, List, Mapping, Optional

from .errors import RequiredVariableMissingError
from .models import (
    BranchCase,
    Condition,
    StepType,
    Workflow,
)
from .traversal import captured_names, step_texts, walk

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class WorkflowContext:
    """
    The variables live during one workflow run.

    A context is owned by exactly one run; concurrent runs need their own.
    """

    def __init__(self, variables: Optional[Mapping[str, str]] = None):
        self.variables: Dict[str, str] = dict(variables or {})

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.variables.get(name, default)

    def set(self, name: str, value: str) -> None:
        self.variables[name] = value

    def merge(self, values: Mapping[str, str]) -> None:
        """Overlay values onto the context; later merges win."""
        self.variables.update(values)

    def __contains__(self, name: str) -> bool:
        return name in self.variables

    def __repr__(self) -> str:
        return f"WorkflowContext({self.variables!r})"


def _as_mapping(context) -> Mapping[str, str]:
    if isinstance(context, WorkflowContext):
        return context.variables
    return context


def resolve(text: str, context) -> str:
    """
    Replace every ``{{ name }}`` whose name is in the context.

    Placeholders with no value are left verbatim.
    """
    values = _as_mapping(context)

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_substitute, text)


def extract_names(text: str) -> List[str]:
    """Distinct placeholder names in first-appearance order."""
    names: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(text):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def scan_workflow(workflow: Workflow) -> List[str]:
    """
    Every placeholder name used anywhere in a workflow's step tree.

    Nested then/else/case/default/loop bodies are included, as are branch
    case values. Order is first appearance in a depth-first walk.
    """
    names: List[str] = []
    for step in walk(workflow.steps):
        texts = step_texts(step)
        if step.step_type == StepType.BRANCH:
            texts.extend(case.value for case in step.branch.cases)
        for text in texts:
            for name in extract_names(text):
                if name not in names:
                    names.append(name)
    return names


def _resolve_condition(condition: Condition, values) -> Condition:
    return condition.model_copy(update={"expression": resolve(condition.expression, values)})


def _resolve_steps(steps, values, nested: bool = True) -> list:
    if not nested:
        return list(steps)
    return [resolve_step(step, values) for step in steps]


def resolve_step(step, context, nested: bool = True):
    """
    Copy of a step with its templates substituted.

    Command text, description, condition expressions and branch case values
    are resolved. Nested steps are resolved too unless ``nested`` is False,
    in which case they are left as written so they can be resolved when
    they run. Step names and the branch selector variable are identifiers
    and stay as written.
    """
    values = _as_mapping(context)
    update = {
        "command": resolve(step.command, values),
        "description": resolve(step.description, values),
    }

    if step.step_type == StepType.CONDITIONAL:
        payload = step.conditional
        update["conditional"] = payload.model_copy(update={
            "condition": _resolve_condition(payload.condition, values),
            "then_block": _resolve_steps(payload.then_block, values, nested),
            "else_block": (
                _resolve_steps(payload.else_block, values, nested)
                if payload.else_block is not None else None
            ),
        })
    elif step.step_type == StepType.BRANCH:
        payload = step.branch
        update["branch"] = payload.model_copy(update={
            "cases": [
                BranchCase(value=resolve(case.value, values),
                           steps=_resolve_steps(case.steps, values, nested))
                for case in payload.cases
            ],
            "default_case": (
                _resolve_steps(payload.default_case, values, nested)
                if payload.default_case is not None else None
            ),
        })
    elif step.step_type == StepType.LOOP:
        payload = step.loop
        update["loop"] = payload.model_copy(update={
            "condition": _resolve_condition(payload.condition, values),
            "steps": _resolve_steps(payload.steps, values, nested),
        })

    return step.model_copy(update=update)


def resolve_workflow(workflow: Workflow, context) -> Workflow:
    """A concrete copy of a workflow for one run."""
    return workflow.model_copy(
        update={"steps": [resolve_step(step, context) for step in workflow.steps]}
    )


def build_context(
    workflow: Workflow,
    profile_name: Optional[str] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> WorkflowContext:
    """
    Merge profile values and explicit overrides into one context.

    Profile values are applied first so overrides take precedence. An unknown
    profile is reported and otherwise ignored.
    """
    context = WorkflowContext()

    if profile_name:
        profile = workflow.get_profile(profile_name)
        if profile is not None:
            logger.info(f"Using profile: {profile.name}")
            context.merge(profile.variables)
        else:
            logger.warning(f"Profile '{profile_name}' not found in workflow '{workflow.name}'")

    if overrides:
        context.merge(overrides)

    return context


def prompt_missing(
    workflow: Workflow,
    context: WorkflowContext,
    input_func: Callable[[str], str] = input,
    interactive: bool = True,
) -> WorkflowContext:
    """
    Fill in every placeholder the workflow uses that the context lacks.

    Missing names are handled in first-appearance order, reading one line per
    variable. Empty input falls back to the declared default; a required
    variable with neither input nor default raises
    RequiredVariableMissingError. With ``interactive=False`` nothing is read
    and only defaults are applied.

    Names that a condition captures its outcome into are set during the
    run and are never asked for.

    Returns the same context, updated in place.
    """
    captured = captured_names(workflow.steps)
    for name in scan_workflow(workflow):
        if name in context or name in captured:
            continue

        declared = workflow.get_variable(name)
        description = declared.description if declared and declared.description else f"Value for {name}"
        default = declared.default_value if declared else None

        entered = ""
        if interactive:
            prompt = f"{name} ({description})"
            prompt += f" [{default}]: " if default is not None else ": "
            entered = input_func(prompt).strip()

        if entered:
            value = entered
        elif default is not None:
            value = default
        elif declared is not None and declared.required:
            raise RequiredVariableMissingError(name)
        elif not interactive:
            continue
        else:
            value = ""

        logger.debug(f"Variable {name} set for workflow '{workflow.name}'")
        context.set(name, value)

    return context
