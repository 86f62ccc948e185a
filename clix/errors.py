"""
Error types for the clix workflow core.

Validation and security findings are returned as reports and never raised.
Everything here is a failure that stops the operation that raised it.
"""

from typing import Optional


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ClixError(Exception):
    """Base exception for clix errors"""
    pass


class CommandExecutionError(ClixError):
    """A process could not be spawned"""
    pass


class ExpressionError(ClixError):
    """A condition expression could not be evaluated"""
    pass


class MissingResultError(ExpressionError):
    """An exit-code check was requested but no command has run yet"""
    pass


class VariableError(ClixError):
    """Variable resolution failed"""
    pass


class RequiredVariableMissingError(VariableError):
    """A required variable has no value and no default"""

    def __init__(self, name: str):
        super().__init__(f"Variable '{name}' is required")
        self.name = name


class ApprovalDeniedError(ClixError):
    """The user declined to approve a step or workflow"""
    pass


class LoopLimitExceededError(ClixError):
    """A loop ran past the configured iteration cap"""
    pass


class SecurityError(ClixError):
    """A security policy rejected the input"""
    pass


class SanitizationError(SecurityError):
    """Input could not be sanitized into an acceptable form"""
    pass


class WorkflowParseError(ClixError):
    """Error parsing a workflow definition"""
    pass


class ConfigurationError(ClixError):
    """Configuration is invalid"""
    pass


class ConversionError(ClixError):
    """A shell function could not be converted into a workflow"""
    pass


class WorkflowExecutionError(ClixError):
    """
    An error escaped a workflow run.

    The partially filled run report is attached so callers can still show
    which steps ran before the failure.
    """

    def __init__(self, message: str, report: Optional[object] = None):
        super().__init__(message)
        self.report = report
