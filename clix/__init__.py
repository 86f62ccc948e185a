"""
clix - saved shell commands and multi-step workflows.

This package contains the workflow automation core:
- models: Data models for commands, workflows and the step tree
- variables: {{ name }} template resolution and prompting
- expression: Condition evaluation for conditional and loop steps
- executor: The step-tree interpreter
- validator: Static workflow checks
- security: Command risk classification and input sanitizing
- parser: JSON/YAML workflow parsing
- converter: Shell function to workflow conversion
"""

from .models import (
    StepType,
    ActionType,
    Condition,
    ConditionalAction,
    ConditionalPayload,
    BranchCase,
    BranchPayload,
    LoopPayload,
    CommandStep,
    AuthStep,
    ConditionalStep,
    BranchStep,
    LoopStep,
    Step,
    Variable,
    Profile,
    Workflow,
    Command,
    CommandStore,
    ProcessResult,
    StepResult,
    RunStatus,
    RunReport,
)
from .errors import (
    ClixError,
    CommandExecutionError,
    ExpressionError,
    MissingResultError,
    VariableError,
    RequiredVariableMissingError,
    ApprovalDeniedError,
    LoopLimitExceededError,
    SecurityError,
    SanitizationError,
    WorkflowParseError,
    ConfigurationError,
    ConversionError,
    WorkflowExecutionError,
)
from .config import EngineConfig
from .variables import (
    WorkflowContext,
    resolve,
    extract_names,
    scan_workflow,
    resolve_step,
    resolve_workflow,
    build_context,
    prompt_missing,
)
from .expression import ExpressionEvaluator, evaluate
from .shell import ShellRunner
from .executor import WorkflowExecutor, run_workflow
from .validator import Severity, ValidationIssue, ValidationReport, WorkflowValidator
from .parser import parse_workflow, load_workflow, dump_workflow, parse_store
from .converter import convert_function, convert_source

__all__ = [
    # Enums
    "StepType",
    "ActionType",
    "RunStatus",
    "Severity",
    # Step tree
    "Condition",
    "ConditionalAction",
    "ConditionalPayload",
    "BranchCase",
    "BranchPayload",
    "LoopPayload",
    "CommandStep",
    "AuthStep",
    "ConditionalStep",
    "BranchStep",
    "LoopStep",
    "Step",
    # Entities
    "Variable",
    "Profile",
    "Workflow",
    "Command",
    "CommandStore",
    # Run results
    "ProcessResult",
    "StepResult",
    "RunReport",
    # Errors
    "ClixError",
    "CommandExecutionError",
    "ExpressionError",
    "MissingResultError",
    "VariableError",
    "RequiredVariableMissingError",
    "ApprovalDeniedError",
    "LoopLimitExceededError",
    "SecurityError",
    "SanitizationError",
    "WorkflowParseError",
    "ConfigurationError",
    "ConversionError",
    "WorkflowExecutionError",
    # Configuration
    "EngineConfig",
    # Variables
    "WorkflowContext",
    "resolve",
    "extract_names",
    "scan_workflow",
    "resolve_step",
    "resolve_workflow",
    "build_context",
    "prompt_missing",
    # Execution
    "ExpressionEvaluator",
    "evaluate",
    "ShellRunner",
    "WorkflowExecutor",
    "run_workflow",
    # Validation
    "ValidationIssue",
    "ValidationReport",
    "WorkflowValidator",
    # Parsing
    "parse_workflow",
    "load_workflow",
    "dump_workflow",
    "parse_store",
    # Conversion
    "convert_function",
    "convert_source",
]
