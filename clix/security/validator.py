"""
Pattern-based risk classification of shell commands.

A command is *unsafe* when it trips any fixed danger check and *requires
approval* when it matches a configurable approval pattern. Nothing here
blocks execution: results are reports for the caller to act on.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import EngineConfig
from ..models import Workflow
from ..traversal import child_steps
from ..validator import extract_workflow_calls, workflow_call_pattern

logger = logging.getLogger(__name__)

DANGEROUS_PATTERNS = [
    r"rm\s+-[rf]+.*[\*/]",                        # rm -rf with wildcards or root
    r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme\d)",        # redirect onto a raw disk
    r"\bof=/dev/(?:sd[a-z]|hd[a-z]|nvme\d)",       # dd onto a raw disk
    r":\(\)\s*\{.*\}\s*;\s*:",                      # fork bomb
    r"while\s+true.*do",                           # unconditional loop
    r"(?:curl|wget).*\|\s*(?:sh|bash|zsh)\b",      # download piped to a shell
    r">\s*/etc/",                                  # write to system config
    r"chmod\s+[0-7]*7[0-7]*\s+/",                  # world-executable system files
]


@dataclass
class SecurityCheck:
    """Verdict for one command"""
    command: str
    is_safe: bool
    requires_approval: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class StepSecurityReport:
    """Verdict for one top-level step, including everything nested under it"""
    step_name: str
    is_safe: bool
    requires_approval: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class WorkflowSecurityReport:
    workflow_name: str
    is_safe: bool
    requires_approval: bool
    issues: List[str] = field(default_factory=list)
    step_reports: List[StepSecurityReport] = field(default_factory=list)


class SecurityValidator:
    """
    Flags dangerous commands and commands that need approval.

    Patterns are compiled once per validator from its configuration.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.dangerous_commands = set(self.config.dangerous_commands)
        self.dangerous_patterns = [re.compile(p) for p in DANGEROUS_PATTERNS]
        self.require_approval_patterns = []
        for pattern in self.config.require_approval_patterns:
            try:
                self.require_approval_patterns.append(re.compile(pattern))
            except re.error as e:
                logger.warning(f"Ignoring invalid approval pattern '{pattern}': {e}")
        self.call_pattern = workflow_call_pattern(self.config.workflow_call_prefix)

    def validate_command(self, command: str) -> SecurityCheck:
        issues: List[str] = []

        if len(command) > self.config.max_command_length:
            issues.append("Command is too long (potential buffer overflow)")

        if "\0" in command:
            issues.append("Command contains null bytes (potential injection)")

        for pattern in self.dangerous_patterns:
            if pattern.search(command):
                issues.append(f"Dangerous pattern detected: {pattern.pattern}")

        requires_approval = any(p.search(command) for p in self.require_approval_patterns)

        words = command.split()
        if words and words[0] in self.dangerous_commands:
            issues.append(f"Potentially dangerous command: {words[0]}")

        if ">/dev/" in command and ">/dev/null" not in command:
            issues.append("Suspicious redirection to device file")

        if command.count(";") > self.config.max_chained_commands:
            issues.append("Excessive command chaining detected")

        if "$(" in command or "`" in command:
            issues.append("Command substitution detected - review carefully")

        return SecurityCheck(
            command=command,
            is_safe=not issues,
            requires_approval=requires_approval,
            issues=issues,
        )

    def validate_workflow(self, workflow: Workflow) -> WorkflowSecurityReport:
        """Check every step of a workflow, nested steps included."""
        all_issues: List[str] = []
        step_reports: List[StepSecurityReport] = []
        requires_approval = False

        if ".." in workflow.name or "/" in workflow.name:
            all_issues.append("Workflow name contains suspicious path elements")

        for step in workflow.steps:
            report = self.validate_step(step)
            all_issues.extend(report.issues)
            requires_approval = requires_approval or report.requires_approval
            step_reports.append(report)

        if workflow.name in extract_workflow_calls(workflow.steps, self.call_pattern):
            all_issues.append("Potential circular dependency detected in workflow calls")

        if all_issues:
            logger.warning(f"Workflow '{workflow.name}' has {len(all_issues)} security issue(s)")

        return WorkflowSecurityReport(
            workflow_name=workflow.name,
            is_safe=not all_issues,
            requires_approval=requires_approval,
            issues=all_issues,
            step_reports=step_reports,
        )

    def validate_step(self, step) -> StepSecurityReport:
        issues: List[str] = []
        requires_approval = step.require_approval

        if step.command:
            check = self.validate_command(step.command)
            issues.extend(check.issues)
            requires_approval = requires_approval or check.requires_approval

        for child in child_steps(step):
            sub_report = self.validate_step(child)
            issues.extend(sub_report.issues)
            requires_approval = requires_approval or sub_report.requires_approval

        return StepSecurityReport(
            step_name=step.name,
            is_safe=not issues,
            requires_approval=requires_approval,
            issues=issues,
        )


def get_security_recommendations(command: str) -> List[str]:
    """Human-readable hints for a command that was flagged."""
    recommendations = []

    if "rm" in command:
        recommendations.append(
            "Consider using 'trash' command instead of 'rm' for safer file deletion"
        )
    if "sudo" in command:
        recommendations.append("Verify that elevated privileges are truly necessary")
    if "curl" in command or "wget" in command:
        recommendations.append(
            "Verify the source URL and consider using --fail-with-body for curl"
        )
    if ">" in command and ">>" not in command:
        recommendations.append(
            "Consider using '>>' for append instead of '>' to avoid overwriting files"
        )
    if "chmod 777" in command:
        recommendations.append("Avoid chmod 777 - use more restrictive permissions")

    return recommendations
