"""
Data model for saved commands and workflows.

Workflow definitions are pydantic models so that the persisted JSON shape and
the in-memory tree are the same thing. A workflow step is exactly one of five
variants, told apart by its ``step_type`` tag; control-flow variants carry
their nested step lists in a payload and never carry command text.

Runtime results produced while running a workflow are plain dataclasses.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now() -> int:
    """Current time as whole seconds since the epoch."""
    return int(time.time())


class StepType(str, Enum):
    """The five kinds of workflow step"""
    COMMAND = "command"
    AUTH = "auth"
    CONDITIONAL = "conditional"
    BRANCH = "branch"
    LOOP = "loop"


class ActionType(str, Enum):
    """What a conditional step does once its block has run"""
    RUN_THEN = "run_then"
    RUN_ELSE = "run_else"
    CONTINUE = "continue"
    BREAK = "break"
    RETURN = "return"


# ============================================================================
# Step payloads
# ============================================================================

class Condition(BaseModel):
    """A boolean expression, optionally captured into a variable."""
    model_config = ConfigDict(frozen=True)

    expression: str
    variable: Optional[str] = None


class ConditionalAction(BaseModel):
    """
    Post-evaluation action of a conditional step.

    Accepts a bare action name (``"break"``) or ``"return:<code>"`` when parsed
    from YAML/JSON, in addition to the full mapping form.
    """
    model_config = ConfigDict(frozen=True)

    type: ActionType
    exit_code: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _from_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            kind, _, code = data.partition(":")
            parsed: Dict[str, Any] = {"type": kind.strip().lower()}
            if code.strip():
                parsed["exit_code"] = int(code)
            return parsed
        return data

    @model_validator(mode="after")
    def _return_needs_code(self) -> "ConditionalAction":
        if self.type == ActionType.RETURN and self.exit_code is None:
            raise ValueError("return action requires an exit_code")
        return self

    @classmethod
    def returning(cls, exit_code: int) -> "ConditionalAction":
        return cls(type=ActionType.RETURN, exit_code=exit_code)

    @classmethod
    def of(cls, action_type: ActionType) -> "ConditionalAction":
        return cls(type=action_type)


class ConditionalPayload(BaseModel):
    """if / then / else"""
    model_config = ConfigDict(frozen=True)

    condition: Condition
    then_block: List["Step"] = Field(default_factory=list)
    else_block: Optional[List["Step"]] = None
    action: Optional[ConditionalAction] = None


class BranchCase(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    steps: List["Step"] = Field(default_factory=list)


class BranchPayload(BaseModel):
    """case / switch on the string value of one variable"""
    model_config = ConfigDict(frozen=True)

    variable: str
    cases: List[BranchCase] = Field(default_factory=list)
    default_case: Optional[List["Step"]] = None


class LoopPayload(BaseModel):
    """while loop; the condition is re-evaluated before every iteration"""
    model_config = ConfigDict(frozen=True)

    condition: Condition
    steps: List["Step"] = Field(default_factory=list)


# ============================================================================
# Steps
# ============================================================================

class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    command: str = ""
    continue_on_error: bool = False
    require_approval: bool = False

    @property
    def is_control_flow(self) -> bool:
        return self.step_type in (StepType.CONDITIONAL, StepType.BRANCH, StepType.LOOP)


class _ControlStepBase(_StepBase):

    @model_validator(mode="after")
    def _no_command_text(self):
        if self.command:
            raise ValueError(
                f"{self.step_type} step '{self.name}' cannot have command text"
            )
        return self


class CommandStep(_StepBase):
    """Runs ``command`` through the platform shell."""
    step_type: Literal["command"] = "command"


class AuthStep(_StepBase):
    """
    Runs an interactive authentication command.

    A failing auth step always stops the run, whatever ``continue_on_error``
    says.
    """
    step_type: Literal["auth"] = "auth"


class ConditionalStep(_ControlStepBase):
    step_type: Literal["conditional"] = "conditional"
    conditional: ConditionalPayload


class BranchStep(_ControlStepBase):
    step_type: Literal["branch"] = "branch"
    branch: BranchPayload


class LoopStep(_ControlStepBase):
    step_type: Literal["loop"] = "loop"
    loop: LoopPayload


Step = Annotated[
    Union[CommandStep, AuthStep, ConditionalStep, BranchStep, LoopStep],
    Field(discriminator="step_type"),
]


# ============================================================================
# Workflows and saved commands
# ============================================================================

class Variable(BaseModel):
    """A variable declared by a workflow"""
    name: str
    description: str = ""
    default_value: Optional[str] = None
    required: bool = False


class Profile(BaseModel):
    """A named set of variable values applied to a run"""
    name: str
    description: str = ""
    variables: Dict[str, str] = Field(default_factory=dict)


class Workflow(BaseModel):
    """A named, ordered step tree plus its variables and profiles"""
    name: str
    description: str = ""
    steps: List[Step] = Field(default_factory=list)
    variables: List[Variable] = Field(default_factory=list)
    profiles: Dict[str, Profile] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=_now)
    last_used: Optional[int] = None
    use_count: int = 0

    def get_profile(self, name: str) -> Optional[Profile]:
        return self.profiles.get(name)

    def get_variable(self, name: str) -> Optional[Variable]:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    def add_variable(self, variable: Variable) -> None:
        """Declare a variable, replacing any earlier declaration of the same name."""
        self.variables = [v for v in self.variables if v.name != variable.name]
        self.variables.append(variable)

    def add_profile(self, profile: Profile) -> None:
        self.profiles[profile.name] = profile

    def mark_used(self) -> None:
        self.last_used = _now()
        self.use_count += 1


class Command(BaseModel):
    """A single saved shell command"""
    name: str
    description: str = ""
    command: str
    tags: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=_now)
    last_used: Optional[int] = None
    use_count: int = 0

    def mark_used(self) -> None:
        self.last_used = _now()
        self.use_count += 1


class CommandStore(BaseModel):
    """Everything the storage layer persists"""
    commands: Dict[str, Command] = Field(default_factory=dict)
    workflows: Dict[str, Workflow] = Field(default_factory=dict)

    def get_workflow(self, name: str) -> Optional[Workflow]:
        return self.workflows.get(name)

    def get_command(self, name: str) -> Optional[Command]:
        return self.commands.get(name)


for _model in (ConditionalPayload, BranchCase, BranchPayload, LoopPayload,
               ConditionalStep, BranchStep, LoopStep, Workflow, CommandStore):
    _model.model_rebuild()


# ============================================================================
# Run results (runtime)
# ============================================================================

@dataclass
class ProcessResult:
    """Captured output of one spawned process"""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass
class StepResult:
    """Outcome of one executed step: a process result or the error that replaced it"""
    name: str
    result: Optional[ProcessResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None and self.result.success

    @property
    def returncode(self) -> Optional[int]:
        return self.result.returncode if self.result else None


class RunStatus(str, Enum):
    """How a workflow run ended"""
    COMPLETED = "completed"
    HALTED = "halted"      # A failing step stopped the run
    RETURNED = "returned"  # A conditional Return action ended the run
    BROKEN = "broken"      # A Break outside any loop ended the run


@dataclass
class RunReport:
    """
    Result of running a workflow.

    ``results`` holds the caller-visible top-level step outcomes in order.
    Control-flow steps add nothing there; every executed leaf step,
    nested or not, is recorded in ``trace`` under its path name.
    """
    workflow_name: str
    results: List[StepResult] = field(default_factory=list)
    trace: List[StepResult] = field(default_factory=list)
    status: RunStatus = RunStatus.COMPLETED
    exit_code: int = 0
    failed_step: Optional[str] = None

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def names(self) -> List[str]:
        return [r.name for r in self.results]

    def find(self, name: str) -> Optional[StepResult]:
        """Look up a traced result by its path name or its bare step name."""
        for entry in self.trace:
            if entry.name == name or entry.name.rsplit("/", 1)[-1] == name:
                return entry
        return None
