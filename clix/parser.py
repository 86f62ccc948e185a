"""
Parse workflow definitions from JSON/YAML into Workflow models.
Validates structure and provides clear error messages.
"""
import json
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .errors import WorkflowParseError
from .models import CommandStore, StepType, Workflow

_PAYLOAD_KEYS = {
    "conditional": StepType.CONDITIONAL.value,
    "branch": StepType.BRANCH.value,
    "loop": StepType.LOOP.value,
}


def _format_errors(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        lines.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(lines)


def _with_step_types(steps: Any) -> Any:
    """
    Fill in ``step_type`` where a definition leaves it out.

    A step carrying a conditional/branch/loop payload takes that type;
    anything else is a command step.
    """
    if not isinstance(steps, list):
        return steps

    normalized: List[Any] = []
    for step in steps:
        if not isinstance(step, dict):
            normalized.append(step)
            continue

        step = dict(step)
        if "step_type" not in step:
            inferred = next((t for key, t in _PAYLOAD_KEYS.items() if key in step), None)
            step["step_type"] = inferred or StepType.COMMAND.value

        conditional = step.get("conditional")
        if isinstance(conditional, dict):
            conditional = dict(conditional)
            conditional["then_block"] = _with_step_types(conditional.get("then_block", []))
            if conditional.get("else_block") is not None:
                conditional["else_block"] = _with_step_types(conditional["else_block"])
            step["conditional"] = conditional

        branch = step.get("branch")
        if isinstance(branch, dict):
            branch = dict(branch)
            branch["cases"] = [
                {**case, "steps": _with_step_types(case.get("steps", []))}
                if isinstance(case, dict) else case
                for case in branch.get("cases", [])
            ]
            if branch.get("default_case") is not None:
                branch["default_case"] = _with_step_types(branch["default_case"])
            step["branch"] = branch

        loop = step.get("loop")
        if isinstance(loop, dict):
            loop = dict(loop)
            loop["steps"] = _with_step_types(loop.get("steps", []))
            step["loop"] = loop

        normalized.append(step)
    return normalized


def parse_workflow(data: Dict[str, Any]) -> Workflow:
    """
    Build a Workflow from a mapping.

    Accepts both a flat definition and one nested under a ``workflow`` key.

    Raises:
        WorkflowParseError: If the definition is malformed
    """
    if not isinstance(data, dict):
        raise WorkflowParseError("Workflow definition must be a dictionary at top level")

    workflow_data = data.get("workflow", data)
    if not isinstance(workflow_data, dict):
        raise WorkflowParseError("'workflow' must be a dictionary")

    if not workflow_data.get("name"):
        raise WorkflowParseError("Workflow missing 'name' field")

    workflow_data = dict(workflow_data)
    workflow_data["steps"] = _with_step_types(workflow_data.get("steps", []))

    try:
        return Workflow.model_validate(workflow_data)
    except ValidationError as e:
        raise WorkflowParseError(
            f"Invalid workflow '{workflow_data['name']}': {_format_errors(e)}"
        ) from e


def load_workflow(path: Path) -> Workflow:
    """
    Parse a workflow file (.json, .yaml or .yml).

    Raises:
        WorkflowParseError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    if not path.exists():
        raise WorkflowParseError(f"Workflow file not found: {path}")

    content = path.read_text()
    suffix = path.suffix.lower()

    if suffix == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}") from e
    elif suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML: {e}") from e
    else:
        raise WorkflowParseError(f"Unsupported workflow file type: {suffix or path.name}")

    return parse_workflow(data)


def dump_workflow(workflow: Workflow) -> Dict[str, Any]:
    """JSON-ready mapping of a workflow, accepted back by parse_workflow."""
    return workflow.model_dump(mode="json")


def parse_store(data: Dict[str, Any]) -> CommandStore:
    """
    Build the persisted command/workflow store.

    Raises:
        WorkflowParseError: If the store is malformed
    """
    if not isinstance(data, dict):
        raise WorkflowParseError("Command store must be a dictionary at top level")

    data = dict(data)
    workflows = data.get("workflows", {})
    if isinstance(workflows, dict):
        data["workflows"] = {
            name: {**wf, "steps": _with_step_types(wf.get("steps", []))}
            if isinstance(wf, dict) else wf
            for name, wf in workflows.items()
        }

    try:
        return CommandStore.model_validate(data)
    except ValidationError as e:
        raise WorkflowParseError(f"Invalid command store: {_format_errors(e)}") from e
