"""
Convert shell functions into workflows.

The body of a function is read line by line into a small statement tree
(commands, if/elif/else, case, for, while and assignments) which is then
mapped onto workflow steps: ``if`` becomes a Conditional, ``case`` a Branch
and ``while`` a Loop. Control keywords sit on their own lines, with
``then``/``do`` either closing the opening line after ``;`` or alone on the
next line. A ``for`` loop is kept as one command since the step tree has no
list iteration.
"""
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ConversionError
from .models import (
    BranchCase,
    BranchPayload,
    BranchStep,
    CommandStep,
    Condition,
    ConditionalPayload,
    ConditionalStep,
    LoopPayload,
    LoopStep,
    Variable,
    Workflow,
)

logger = logging.getLogger(__name__)

MAX_STEP_NAME_LENGTH = 50

_IF_INLINE_THEN = re.compile(r"^if\s+(.+?)\s*;\s*then$")
_CASE_HEADER = re.compile(r'^case\s+"?\$?\{?(\w+)\}?"?\s+in$')
_CASE_INLINE = re.compile(r"^([^\s()]+)\)\s*(.+?)\s*;;$")
_FOR_HEADER = re.compile(r"^for\s+(\w+)\s+in\s+(.+?)(\s*;\s*do)?$")
_WHILE_HEADER = re.compile(r"^while\s+(.+?)(\s*;\s*do)?$")
_ASSIGNMENT = re.compile(r"""^([A-Za-z_]\w*)=("[^"]*"|'[^']*'|\S*)$""")
_ONE_LINE_COMPOUND = re.compile(r"^(if|for|while)\s.*;\s*(fi|done)$|^case\s.*\besac$")
_POSITIONAL = re.compile(r"\$\{?(\d+)")
_NAMED = re.compile(r"\$\{?([A-Za-z_][A-Za-z0-9_]*)")


# ============================================================================
# Statement tree
# ============================================================================

@dataclass
class ShellCommand:
    text: str


@dataclass
class IfStatement:
    condition: str
    then_block: List["Statement"] = field(default_factory=list)
    else_block: Optional[List["Statement"]] = None


@dataclass
class CaseEntry:
    pattern: str
    body: List["Statement"] = field(default_factory=list)


@dataclass
class CaseStatement:
    variable: str
    cases: List[CaseEntry] = field(default_factory=list)
    default: Optional[List["Statement"]] = None


@dataclass
class ForLoop:
    variable: str
    items: str
    source: str
    body: List["Statement"] = field(default_factory=list)


@dataclass
class WhileLoop:
    condition: str
    body: List["Statement"] = field(default_factory=list)


@dataclass
class Assignment:
    name: str
    value: str
    local: bool = False


Statement = Union[ShellCommand, IfStatement, CaseStatement, ForLoop, WhileLoop, Assignment]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


# ============================================================================
# Parsing
# ============================================================================

class ShellFunctionParser:
    """
    Line-oriented reader for shell function bodies.

    Values assigned along the way are collected in ``assignments``.
    """

    def __init__(self):
        self.assignments: Dict[str, str] = {}

    def parse(self, content: str) -> List[Statement]:
        lines = [line.strip() for line in content.splitlines()]
        statements, _, _ = self._parse_block(lines, 0, ())
        return statements

    def _parse_block(
        self, lines: Sequence[str], start: int, terminators: Tuple[str, ...]
    ) -> Tuple[List[Statement], int, Optional[str]]:
        """
        Parse statements until a line in ``terminators``.

        Returns the statements, the index of the terminating line and which
        terminator ended the block (None at end of input).
        """
        statements: List[Statement] = []
        index = start

        while index < len(lines):
            line = lines[index]

            # Case bodies may end with ';;' on the last command's line
            if ";;" in terminators and line.endswith(";;"):
                text = line[:-2].strip()
                if text:
                    statements.append(ShellCommand(text))
                return statements, index, ";;"
            if line in terminators:
                return statements, index, line
            if "elif" in terminators and line.startswith("elif "):
                return statements, index, "elif"

            if not line or line.startswith("#"):
                index += 1
                continue

            statement, index = self._parse_statement(lines, index)
            statements.append(statement)

        return statements, index, None

    def _parse_statement(self, lines: Sequence[str], start: int) -> Tuple[Statement, int]:
        line = lines[start]

        if _ONE_LINE_COMPOUND.match(line):
            return ShellCommand(line), start + 1
        if line.startswith("if "):
            return self._parse_if(lines, start)
        if line.startswith("case "):
            return self._parse_case(lines, start)
        if line.startswith("for "):
            return self._parse_for(lines, start)
        if line.startswith("while "):
            return self._parse_while(lines, start)
        if line.startswith("local "):
            return self._parse_local(line), start + 1

        match = _ASSIGNMENT.match(line)
        if match:
            name, value = match.group(1), _unquote(match.group(2))
            self.assignments[name] = value
            return Assignment(name, value), start + 1

        return ShellCommand(line), start + 1

    def _parse_if(
        self, lines: Sequence[str], start: int, header: Optional[str] = None
    ) -> Tuple[IfStatement, int]:
        header = header or lines[start]
        match = _IF_INLINE_THEN.match(header)
        if match:
            condition = match.group(1)
            index = start + 1
        elif start + 1 < len(lines) and lines[start + 1] == "then":
            condition = header[3:].strip()
            index = start + 2
        else:
            raise ConversionError(f"Malformed if statement: {header}")

        then_block, index, end = self._parse_block(lines, index, ("else", "elif", "fi"))

        if end == "elif":
            # 'elif X' is an 'if X' nested in the else branch, sharing the 'fi'
            nested, index = self._parse_if(lines, index, header=lines[index][2:])
            return IfStatement(condition, then_block, [nested]), index

        else_block = None
        if end == "else":
            else_block, index, end = self._parse_block(lines, index + 1, ("fi",))
        if end != "fi":
            raise ConversionError(f"Missing 'fi' for: {header}")
        return IfStatement(condition, then_block, else_block), index + 1

    def _parse_case(self, lines: Sequence[str], start: int) -> Tuple[CaseStatement, int]:
        header = lines[start]
        match = _CASE_HEADER.match(header)
        if not match:
            raise ConversionError(f"Invalid case statement: {header}")

        statement = CaseStatement(variable=match.group(1))
        index = start + 1

        while index < len(lines):
            line = lines[index]
            if line == "esac":
                return statement, index + 1

            inline = _CASE_INLINE.match(line)
            if inline:
                self._add_case(statement, inline.group(1), [ShellCommand(inline.group(2))])
                index += 1
            elif line.endswith(")"):
                body, index, end = self._parse_block(lines, index + 1, (";;", "esac"))
                self._add_case(statement, line[:-1], body)
                if end == ";;":
                    index += 1
            else:
                index += 1

        raise ConversionError(f"Missing 'esac' for: {header}")

    @staticmethod
    def _add_case(statement: CaseStatement, pattern: str, body: List[Statement]) -> None:
        pattern = _unquote(pattern)
        if pattern == "*":
            statement.default = body
        else:
            statement.cases.append(CaseEntry(pattern, body))

    def _loop_body_start(self, lines: Sequence[str], start: int, inline_do: bool, keyword: str) -> int:
        if inline_do:
            return start + 1
        if start + 1 < len(lines) and lines[start + 1] == "do":
            return start + 2
        raise ConversionError(f"Missing 'do' in {keyword} loop: {lines[start]}")

    def _parse_for(self, lines: Sequence[str], start: int) -> Tuple[ForLoop, int]:
        header = lines[start]
        match = _FOR_HEADER.match(header)
        if not match:
            raise ConversionError(f"Invalid for loop: {header}")

        index = self._loop_body_start(lines, start, bool(match.group(3)), "for")
        body, index, end = self._parse_block(lines, index, ("done",))
        if end is None:
            raise ConversionError(f"Missing 'done' for: {header}")

        source = "\n".join(line for line in lines[start:index + 1] if line)
        return ForLoop(match.group(1), match.group(2), source, body), index + 1

    def _parse_while(self, lines: Sequence[str], start: int) -> Tuple[WhileLoop, int]:
        header = lines[start]
        match = _WHILE_HEADER.match(header)
        if not match:
            raise ConversionError(f"Invalid while loop: {header}")

        index = self._loop_body_start(lines, start, bool(match.group(2)), "while")
        body, index, end = self._parse_block(lines, index, ("done",))
        if end is None:
            raise ConversionError(f"Missing 'done' for: {header}")
        return WhileLoop(match.group(1), body), index + 1

    def _parse_local(self, line: str) -> Assignment:
        declaration = line[len("local "):].strip()
        if "=" in declaration:
            name, value = declaration.split("=", 1)
            name, value = name.strip(), _unquote(value)
        else:
            name, value = declaration, ""
        self.assignments[name] = value
        return Assignment(name, value, local=True)


# ============================================================================
# Step building
# ============================================================================

def _truncate(text: str) -> str:
    if len(text) > MAX_STEP_NAME_LENGTH:
        return text[:MAX_STEP_NAME_LENGTH - 3] + "..."
    return text


def build_steps(statements: Iterable[Statement]) -> list:
    """Map parsed statements onto workflow steps, recursively."""
    steps = []

    for statement in statements:
        if isinstance(statement, ShellCommand):
            steps.append(CommandStep(
                name=f"Execute: {_truncate(statement.text)}",
                description="Execute shell command",
                command=statement.text,
            ))
        elif isinstance(statement, IfStatement):
            steps.append(ConditionalStep(
                name="Conditional Check",
                description=f"Check condition: {statement.condition}",
                conditional=ConditionalPayload(
                    condition=Condition(expression=statement.condition),
                    then_block=build_steps(statement.then_block),
                    else_block=(
                        build_steps(statement.else_block)
                        if statement.else_block is not None else None
                    ),
                ),
            ))
        elif isinstance(statement, CaseStatement):
            steps.append(BranchStep(
                name="Branch by Value",
                description=f"Branch based on variable: {statement.variable}",
                branch=BranchPayload(
                    variable=statement.variable,
                    cases=[
                        BranchCase(value=entry.pattern, steps=build_steps(entry.body))
                        for entry in statement.cases
                    ],
                    default_case=(
                        build_steps(statement.default)
                        if statement.default is not None else None
                    ),
                ),
            ))
        elif isinstance(statement, ForLoop):
            steps.append(CommandStep(
                name="For Loop",
                description=f"Iterate {statement.variable} over {statement.items}",
                command=statement.source,
            ))
        elif isinstance(statement, WhileLoop):
            steps.append(LoopStep(
                name="While Loop",
                description=f"Loop while: {statement.condition}",
                loop=LoopPayload(
                    condition=Condition(expression=statement.condition),
                    steps=build_steps(statement.body),
                ),
            ))
        elif isinstance(statement, Assignment):
            scope = "local" if statement.local else "global"
            if statement.value:
                command = f'{statement.name}="{statement.value}"'
            else:
                command = f"# Declare {scope} variable {statement.name}"
            steps.append(CommandStep(
                name=f"Set {scope} variable: {statement.name}",
                description=f"Set {scope} variable {statement.name} to {statement.value or 'unset'}",
                command=command,
            ))

    return steps


# ============================================================================
# Functions and variables
# ============================================================================

def extract_function(content: str, function_name: str) -> str:
    """
    Return the body of ``function_name`` from a script.

    The closing brace must start its own line.

    Raises:
        ConversionError: If the function is not defined in the script
    """
    pattern = re.compile(
        rf"^(?:function\s+)?{re.escape(function_name)}\s*(?:\(\)\s*)?\{{(.*?)^\}}",
        re.DOTALL | re.MULTILINE,
    )
    match = pattern.search(content)
    if not match:
        raise ConversionError(f"Function '{function_name}' not found in the script")
    return match.group(1)


def extract_variables(body: str) -> List[Variable]:
    """
    Workflow variables for a function body.

    Positional parameters up to the highest one referenced become required
    ``paramN`` variables; every other ``$NAME`` becomes an optional variable,
    in first-appearance order.
    """
    highest = max((int(number) for number in _POSITIONAL.findall(body)), default=0)
    variables = [
        Variable(name=f"param{i}", description=f"Function parameter ${i}", required=True)
        for i in range(1, highest + 1)
    ]

    seen = set()
    for name in _NAMED.findall(body):
        if name not in seen:
            seen.add(name)
            variables.append(Variable(name=name, description=f"Shell variable: {name}"))

    return variables


def convert_source(
    content: str,
    function_name: str,
    workflow_name: Optional[str] = None,
    description: str = "",
    tags: Optional[Iterable[str]] = None,
) -> Workflow:
    """Convert a function defined in script text into a Workflow."""
    body = extract_function(content, function_name)
    statements = ShellFunctionParser().parse(body)

    workflow = Workflow(
        name=workflow_name or function_name,
        description=description,
        steps=build_steps(statements),
        variables=extract_variables(body),
        tags=list(tags or []),
    )
    logger.info(
        f"Converted function '{function_name}' into workflow '{workflow.name}' "
        f"({len(workflow.steps)} steps, {len(workflow.variables)} variables)"
    )
    return workflow


def convert_function(
    path: Path,
    function_name: str,
    workflow_name: Optional[str] = None,
    description: str = "",
    tags: Optional[Iterable[str]] = None,
) -> Workflow:
    """
    Convert a function from a shell script file into a Workflow.

    Raises:
        ConversionError: If the file cannot be read, the function is
            missing or its body cannot be parsed
    """
    try:
        content = Path(path).read_text()
    except OSError as e:
        raise ConversionError(f"Failed to read script file: {e}") from e

    return convert_source(content, function_name, workflow_name, description, tags)
