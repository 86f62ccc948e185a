"""
Condition expressions for conditional and loop steps.

Shell-style ``$VAR`` / ``${VAR}`` tokens are substituted from the run context
first. Exit-code checks against the previous command (``$? -eq 0``) are
evaluated here; every other shape is handed to the host shell, which already
knows how to run ``[ -f file ]`` and friends.
"""
import logging
import re
from enum import Enum
from typing import Callable, Mapping, Optional

from .errors import ExpressionError, MissingResultError
from .models import ProcessResult
from .shell import ShellRunner

logger = logging.getLogger(__name__)

# Takes the fully substituted expression, returns whether it held
ShellDelegate = Callable[[str], bool]

_BRACED_VAR = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
_SIMPLE_VAR = re.compile(r"\$([A-Za-z0-9_]+)")

_EXIT_CODE_CHECK = re.compile(
    r"^\s*\$\?\s*(-eq|-ne|-gt|-lt|-ge|-le|==|!=|>=|<=|>|<)\s*(\d+)\s*$"
)
_FILE_TEST = re.compile(r"^\s*(\[|\[\[)\s*-[fderwxs]\s+.+\s*(\]|\]\])\s*$")
_STRING_TEST = re.compile(r"^\s*(\[|\[\[)\s*(-z|-n)\s+.+\s*(\]|\]\])\s*$")

_COMPARISONS = {
    "-eq": lambda a, b: a == b,
    "==": lambda a, b: a == b,
    "-ne": lambda a, b: a != b,
    "!=": lambda a, b: a != b,
    "-gt": lambda a, b: a > b,
    ">": lambda a, b: a > b,
    "-lt": lambda a, b: a < b,
    "<": lambda a, b: a < b,
    "-ge": lambda a, b: a >= b,
    ">=": lambda a, b: a >= b,
    "-le": lambda a, b: a <= b,
    "<=": lambda a, b: a <= b,
}


class ExpressionKind(str, Enum):
    """Shape of a substituted expression"""
    EXIT_CODE = "exit_code"
    FILE_TEST = "file_test"
    STRING_TEST = "string_test"
    SHELL = "shell"


def substitute_variables(expression: str, context: Mapping[str, str]) -> str:
    """
    Replace ``${name}`` and ``$name`` with context values.

    Unknown names stay as written so the shell can still see them. ``$?`` is
    never substituted.
    """
    def _lookup(match: re.Match) -> str:
        return context.get(match.group(1), match.group(0))

    result = _BRACED_VAR.sub(_lookup, expression)
    return _SIMPLE_VAR.sub(_lookup, result)


def classify(expression: str) -> ExpressionKind:
    if _EXIT_CODE_CHECK.match(expression):
        return ExpressionKind.EXIT_CODE
    if _FILE_TEST.match(expression):
        return ExpressionKind.FILE_TEST
    if _STRING_TEST.match(expression):
        return ExpressionKind.STRING_TEST
    return ExpressionKind.SHELL


class ExpressionEvaluator:
    """
    Evaluates condition strings.

    Args:
        delegate: Decides expressions that are not exit-code checks. Defaults
            to spawning the platform shell; tests pass a plain function.
    """

    def __init__(self, delegate: Optional[ShellDelegate] = None):
        self.delegate = delegate or ShellRunner().test

    def evaluate(
        self,
        expression: str,
        context: Optional[Mapping[str, str]] = None,
        last_result: Optional[ProcessResult] = None,
    ) -> bool:
        """
        Evaluate one expression.

        Raises:
            MissingResultError: ``$?`` is checked but nothing has run yet
            ExpressionError: The expression could not be evaluated
        """
        substituted = substitute_variables(expression, context or {})
        kind = classify(substituted)
        logger.debug(f"Expression '{substituted}' classified as {kind.value}")

        if kind == ExpressionKind.EXIT_CODE:
            return self._evaluate_exit_code(substituted, last_result)
        return self.delegate(substituted)

    @staticmethod
    def _evaluate_exit_code(expression: str, last_result: Optional[ProcessResult]) -> bool:
        match = _EXIT_CODE_CHECK.match(expression)
        if match is None:
            raise ExpressionError(f"Invalid exit code expression: {expression}")

        if last_result is None:
            raise MissingResultError(
                "No previous command output available for $? evaluation"
            )

        operator, expected = match.group(1), int(match.group(2))
        return _COMPARISONS[operator](last_result.returncode, expected)


def evaluate(
    expression: str,
    context: Optional[Mapping[str, str]] = None,
    last_result: Optional[ProcessResult] = None,
) -> bool:
    """Evaluate with the default shell delegate."""
    return ExpressionEvaluator().evaluate(expression, context, last_result)
