"""
Static checks run on a workflow before it is executed.

Every check runs unconditionally and contributes issues to one report:

- cross-workflow call cycles (``clix flow run <name>`` inside step text)
- step reachability
- variable consistency (declared vs. referenced)
- step metadata (names, descriptions)
- infinite-loop heuristics
- duplicate step names
- command syntax (quote parity, obviously destructive text)

Issues are collected, never raised. A report is valid unless it holds at
least one error.

Call detection and name-based reachability both work on literal text, so a
renamed target step or an unrelated string that happens to look like an
invocation is taken at face value.
"""
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .config import EngineConfig
from .models import StepType, Workflow
from .traversal import child_blocks, step_texts, walk
from .variables import PLACEHOLDER_PATTERN

logger = logging.getLogger(__name__)

_SHELL_VAR = re.compile(r"\$\{(\w+)\}|\$(\w+)")


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationIssue:
    """A single finding"""
    severity: Severity
    message: str
    step_name: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass
class ValidationReport:
    """Result of validating one workflow"""
    workflow_name: str
    is_valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    dependency_graph: Dict[str, List[str]] = field(default_factory=dict)

    def _with(self, severity: Severity) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == severity]

    @property
    def errors(self) -> List[ValidationIssue]:
        return self._with(Severity.ERROR)

    @property
    def warnings(self) -> List[ValidationIssue]:
        return self._with(Severity.WARNING)

    @property
    def infos(self) -> List[ValidationIssue]:
        return self._with(Severity.INFO)


def workflow_call_pattern(prefix: str) -> re.Pattern:
    """Regex matching ``<prefix> <workflow-name>``, whitespace-tolerant."""
    words = [re.escape(word) for word in prefix.split()]
    return re.compile(r"\s+".join(words) + r"\s+([\w-]+)")


def extract_workflow_calls(steps: Sequence, pattern: re.Pattern) -> List[str]:
    """Sorted, distinct workflow names invoked anywhere in a step tree."""
    calls: Set[str] = set()
    for step in walk(steps):
        if step.command:
            calls.update(match.group(1) for match in pattern.finditer(step.command))
    return sorted(calls)


def has_unmatched_quotes(command: str) -> bool:
    """Odd count of single or double quotes, ignoring backslash-escaped ones."""
    single = double = 0
    escaped = False
    for ch in command:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif ch == "'":
            single += 1
        elif ch == '"':
            double += 1
    return single % 2 != 0 or double % 2 != 0


class WorkflowValidator:
    """
    Validates workflows.

    Args:
        workflows: Known workflows by name, used to follow cross-workflow
            calls. Unknown targets are skipped.
        config: Engine configuration (call prefix, built-in variable names)
    """

    def __init__(
        self,
        workflows: Optional[Mapping[str, Workflow]] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.workflows = workflows or {}
        self.config = config or EngineConfig()
        self.call_pattern = workflow_call_pattern(self.config.workflow_call_prefix)
        self.builtin_variables = set(self.config.builtin_variables)

    def validate(self, workflow: Workflow) -> ValidationReport:
        """Run every check against a workflow."""
        issues: List[ValidationIssue] = []
        dependency_graph: Dict[str, List[str]] = {}

        self._check_circular_dependencies(workflow, issues, dependency_graph)
        self._check_unreachable_steps(workflow, issues)
        self._check_variables(workflow, issues)
        self._check_step_metadata(workflow, issues)
        self._check_infinite_loops(workflow, issues)
        self._check_duplicate_step_names(workflow, issues)
        self._check_command_syntax(workflow, issues)

        is_valid = not any(issue.severity == Severity.ERROR for issue in issues)
        logger.debug(
            f"Validated workflow '{workflow.name}': {len(issues)} issue(s), valid={is_valid}"
        )
        return ValidationReport(
            workflow_name=workflow.name,
            is_valid=is_valid,
            issues=issues,
            dependency_graph=dependency_graph,
        )

    # ------------------------------------------------------------------
    # Cross-workflow calls
    # ------------------------------------------------------------------

    def extract_calls(self, workflow: Workflow) -> List[str]:
        return extract_workflow_calls(workflow.steps, self.call_pattern)

    def _check_circular_dependencies(
        self,
        workflow: Workflow,
        issues: List[ValidationIssue],
        dependency_graph: Dict[str, List[str]],
    ) -> None:
        calls = self.extract_calls(workflow)
        dependency_graph[workflow.name] = calls

        if workflow.name in calls:
            issues.append(ValidationIssue(
                severity=Severity.ERROR,
                message=f"Workflow '{workflow.name}' calls itself directly",
                suggestion="Remove the self-referencing call or add a condition to prevent infinite recursion",
            ))

        for called in calls:
            if called == workflow.name:
                continue
            target = self.workflows.get(called)
            if target is None:
                continue
            path = self._find_path_to(target, workflow.name, set())
            if path:
                chain = " -> ".join([workflow.name] + path)
                issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    message=f"Circular dependency detected: {chain}",
                    suggestion="Restructure workflows to eliminate circular calls",
                ))

    def _find_path_to(self, workflow: Workflow, target: str, visited: Set[str]) -> Optional[List[str]]:
        """
        Depth-first search for a call chain from ``workflow`` back to ``target``.

        ``visited`` holds the workflows on the current path only; entries are
        removed again when the search backtracks.
        """
        if workflow.name in visited:
            return None
        visited.add(workflow.name)

        calls = self.extract_calls(workflow)
        if target in calls:
            return [workflow.name, target]

        for name in calls:
            called = self.workflows.get(name)
            if called is None:
                continue
            path = self._find_path_to(called, target, visited)
            if path:
                return [workflow.name] + path

        visited.discard(workflow.name)
        return None

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def _check_unreachable_steps(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        reachable = self._find_reachable_steps(workflow)
        for index, step in enumerate(workflow.steps):
            if index not in reachable:
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Step '{step.name}' may be unreachable",
                    step_name=step.name,
                    suggestion="Check if this step can be reached through normal execution flow",
                ))

    def _find_reachable_steps(self, workflow: Workflow) -> Set[int]:
        """Breadth-first search over top-level step indexes starting at 0."""
        steps = workflow.steps
        reachable: Set[int] = set()
        to_visit = deque([0] if steps else [])

        while to_visit:
            index = to_visit.popleft()
            if index in reachable:
                continue
            reachable.add(index)
            step = steps[index]

            if index + 1 < len(steps):
                to_visit.append(index + 1)

            if step.step_type in (StepType.CONDITIONAL, StepType.BRANCH):
                for _, block in child_blocks(step):
                    for target in block:
                        target_index = self._find_step_index(steps, target.name)
                        if target_index is not None:
                            to_visit.append(target_index)

        return reachable

    @staticmethod
    def _find_step_index(steps: Sequence, name: str) -> Optional[int]:
        for index, step in enumerate(steps):
            if step.name == name:
                return index
        return None

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def _collect_used_variables(self, workflow: Workflow) -> List[str]:
        used: Dict[str, None] = {}
        for step in walk(workflow.steps):
            texts = step_texts(step)
            if step.step_type == StepType.BRANCH:
                used[step.branch.variable] = None
                texts.extend(case.value for case in step.branch.cases)
            for text in texts:
                for match in _SHELL_VAR.finditer(text):
                    used[match.group(1) or match.group(2)] = None
                for match in PLACEHOLDER_PATTERN.finditer(text):
                    used[match.group(1)] = None
        return list(used)

    def _is_builtin(self, name: str) -> bool:
        return name in self.builtin_variables or name.isdigit()

    def _check_variables(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        declared = [variable.name for variable in workflow.variables]
        used = self._collect_used_variables(workflow)

        for name in used:
            if name not in declared and not self._is_builtin(name):
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Variable '{name}' is used but not defined",
                    suggestion=f"Add variable '{name}' to workflow variables",
                ))

        for name in dict.fromkeys(declared):
            if name not in used:
                issues.append(ValidationIssue(
                    severity=Severity.INFO,
                    message=f"Variable '{name}' is defined but never used",
                    suggestion="Consider removing unused variables",
                ))

    # ------------------------------------------------------------------
    # Step metadata and names
    # ------------------------------------------------------------------

    def _check_step_metadata(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        for step in workflow.steps:
            if not step.name.strip():
                issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    message="Step has empty name",
                    suggestion="Provide a meaningful name for the step",
                ))

            if not step.description.strip():
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Step '{step.name}' has empty description",
                    step_name=step.name,
                    suggestion="Add a description to explain what this step does",
                ))

            if len(step.name) > 100:
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Step '{step.name}' has very long name",
                    step_name=step.name,
                    suggestion="Consider using a shorter, more concise name",
                ))

    def _check_duplicate_step_names(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        first_seen: Dict[str, int] = {}
        for index, step in enumerate(workflow.steps):
            if step.name in first_seen:
                issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    message=(
                        f"Duplicate step name '{step.name}' found at positions "
                        f"{first_seen[step.name] + 1} and {index + 1}"
                    ),
                    step_name=step.name,
                    suggestion="Use unique names for all steps",
                ))
            else:
                first_seen[step.name] = index

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _check_infinite_loops(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        for step in walk(workflow.steps):
            if step.step_type != StepType.LOOP:
                continue
            condition = step.loop.condition

            if condition.expression.strip() in ("true", "1"):
                issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    message=f"Step '{step.name}' contains an infinite loop condition",
                    step_name=step.name,
                    suggestion="Add a proper exit condition to the loop",
                ))

            if condition.variable and not self._body_assigns(step.loop.steps, condition.variable):
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=(
                        f"Loop in step '{step.name}' may not modify its condition "
                        f"variable '{condition.variable}'"
                    ),
                    step_name=step.name,
                    suggestion="Ensure the loop modifies the condition variable to eventually exit",
                ))

    @staticmethod
    def _body_assigns(steps: Sequence, name: str) -> bool:
        # Covers NAME=, export NAME=, local NAME=, declare NAME=
        assignment = re.compile(rf"(?<![\w$]){re.escape(name)}=")
        return any(assignment.search(step.command) for step in walk(steps) if step.command)

    # ------------------------------------------------------------------
    # Command syntax
    # ------------------------------------------------------------------

    def _check_command_syntax(self, workflow: Workflow, issues: List[ValidationIssue]) -> None:
        for step in walk(workflow.steps):
            if step.step_type not in (StepType.COMMAND, StepType.AUTH) or not step.command.strip():
                continue

            if has_unmatched_quotes(step.command):
                issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    message=f"Step '{step.name}' has unmatched quotes",
                    step_name=step.name,
                    suggestion="Check that all quotes are properly matched",
                ))

            if "rm -rf /" in step.command:
                issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Step '{step.name}' contains potentially dangerous command",
                    step_name=step.name,
                    suggestion="Review this command carefully for safety",
                ))
