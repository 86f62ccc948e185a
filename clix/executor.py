"""
Workflow executor.

Walks a workflow's step tree in order, spawning Command and Auth steps
through the shell and evaluating Conditional, Branch and Loop steps against
the run's variable context. Control-flow steps are scaffolding: only
top-level leaf steps appear in the caller-visible results, while every
executed leaf is kept in the report's trace under its path name.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from .config import EngineConfig
from .errors import (
    ApprovalDeniedError,
    CommandExecutionError,
    ExpressionError,
    LoopLimitExceededError,
    WorkflowExecutionError,
)
from .expression import ExpressionEvaluator
from .models import (
    ActionType,
    Command,
    Condition,
    ProcessResult,
    RunReport,
    RunStatus,
    StepResult,
    StepType,
    Workflow,
)
from .security import SecurityValidator
from .shell import ShellRunner
from .variables import WorkflowContext, build_context, prompt_missing, resolve, resolve_step

logger = logging.getLogger(__name__)

# Takes a prompt message, returns whether the user approved
Approver = Callable[[str], bool]


class _BreakSignal(Exception):
    """Unwinds to the nearest enclosing loop"""
    pass


class _ReturnSignal(Exception):
    """Ends the whole run with an exit code"""

    def __init__(self, exit_code: int):
        super().__init__(exit_code)
        self.exit_code = exit_code


class _HaltSignal(Exception):
    """A failing step stopped the run"""

    def __init__(self, step_name: str, exit_code: int):
        super().__init__(step_name)
        self.step_name = step_name
        self.exit_code = exit_code


@dataclass
class _RunState:
    context: WorkflowContext
    report: RunReport
    last_result: Optional[ProcessResult] = None
    preapproved: bool = False


class WorkflowExecutor:
    """
    Runs workflows and saved commands.

    Args:
        runner: Spawns commands. Defaults to a ShellRunner built from config.
        evaluator: Evaluates conditions. Defaults to one that delegates to
            the runner's shell test.
        approver: Confirms steps flagged ``require_approval``. Defaults to
            an interactive ``[y/N]`` prompt.
        auth_confirm: Called with each Auth step after its process succeeds.
            Defaults to waiting for Enter on ``input_func``.
        max_loop_iterations: Per-loop iteration cap; None means unbounded.
            Falls back to ``execution.max_loop_iterations`` in config.
        config: Engine configuration.
        security_check: Validate the whole workflow before running it and
            ask for approval when the security report calls for it.
        security_validator: Used for ``security_check`` and saved commands.
        input_func: Line reader for prompts.
    """

    def __init__(
        self,
        runner: Optional[ShellRunner] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        approver: Optional[Approver] = None,
        auth_confirm: Optional[Callable] = None,
        max_loop_iterations: Optional[int] = None,
        config: Optional[EngineConfig] = None,
        security_check: bool = False,
        security_validator: Optional[SecurityValidator] = None,
        input_func: Callable[[str], str] = input,
    ):
        self.config = config or EngineConfig()
        self.runner = runner or ShellRunner(self.config.shell, self.config.test_shell)
        self.evaluator = evaluator or ExpressionEvaluator(self.runner.test)
        self.input_func = input_func
        self.approver = approver or self._confirm
        self.auth_confirm = auth_confirm or self._wait_for_auth
        self.max_loop_iterations = (
            max_loop_iterations if max_loop_iterations is not None
            else self.config.max_loop_iterations
        )
        self.security_check = security_check
        self.security_validator = security_validator or SecurityValidator(self.config)

    def _confirm(self, message: str) -> bool:
        answer = self.input_func(f"{message} [y/N]: ").strip().lower()
        return answer in ("y", "yes")

    def _wait_for_auth(self, step) -> None:
        self.input_func(f"Complete authentication for '{step.name}', then press Enter to continue...")

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def run_workflow(
        self,
        workflow: Workflow,
        profile: Optional[str] = None,
        overrides: Optional[Mapping[str, str]] = None,
        context: Optional[WorkflowContext] = None,
        prompt: bool = True,
    ) -> RunReport:
        """
        Run a workflow to completion, or until a step stops it.

        Args:
            workflow: The workflow to run
            profile: Name of a profile whose values seed the context
            overrides: Explicit values, applied over the profile
            context: A prepared context; profile and overrides are ignored
            prompt: Ask for missing variables on stdin; when False only
                declared defaults are applied

        Returns:
            RunReport with top-level results, the full trace and how the
            run ended

        Raises:
            RequiredVariableMissingError: A required variable has no value
            WorkflowExecutionError: A condition could not be evaluated; the
                partial report is attached
        """
        if context is None:
            context = build_context(workflow, profile, overrides)
        prompt_missing(workflow, context, self.input_func, interactive=prompt)

        report = RunReport(workflow_name=workflow.name)
        state = _RunState(context=context, report=report)

        logger.info(f"Running workflow '{workflow.name}' ({len(workflow.steps)} steps)")

        if self.security_check and not self._approve_workflow(workflow, state):
            return report

        try:
            self._run_block(workflow.steps, state, prefix="", top_level=True)
        except _HaltSignal as halt:
            report.status = RunStatus.HALTED
            report.exit_code = halt.exit_code
            report.failed_step = halt.step_name
            logger.warning(f"Workflow '{workflow.name}' halted at step '{halt.step_name}'")
        except _ReturnSignal as ret:
            report.status = RunStatus.RETURNED
            report.exit_code = ret.exit_code
            logger.info(f"Workflow '{workflow.name}' returned with exit code {ret.exit_code}")
        except _BreakSignal:
            report.status = RunStatus.BROKEN
            logger.info(f"Workflow '{workflow.name}' ended by break outside a loop")
        except ExpressionError as e:
            report.status = RunStatus.HALTED
            report.exit_code = 1
            raise WorkflowExecutionError(
                f"Workflow '{workflow.name}' failed: {e}", report=report
            ) from e
        else:
            logger.info(f"Workflow '{workflow.name}' completed")

        return report

    def _approve_workflow(self, workflow: Workflow, state: _RunState) -> bool:
        security = self.security_validator.validate_workflow(workflow)
        for issue in security.issues:
            logger.warning(f"Security: {issue}")

        if security.is_safe and not security.requires_approval:
            return True

        if self.approver(f"Workflow '{workflow.name}' requires approval to run"):
            state.preapproved = True
            return True

        entry = StepResult(
            name=workflow.name,
            error=ApprovalDeniedError(f"Workflow '{workflow.name}' was not approved"),
        )
        state.report.trace.append(entry)
        state.report.status = RunStatus.HALTED
        state.report.exit_code = 1
        state.report.failed_step = workflow.name
        return False

    def _run_block(self, steps, state: _RunState, prefix: str, top_level: bool) -> None:
        for step in steps:
            self._run_step(step, state, prefix, top_level)

    def _run_step(self, step, state: _RunState, prefix: str, top_level: bool) -> None:
        path = f"{prefix}/{step.name}" if prefix else step.name

        # Resolve late and one level at a time so values captured by earlier
        # conditions are visible to every later step, nested or not
        resolved = resolve_step(step, state.context, nested=False)

        if step.require_approval and not state.preapproved:
            self._approve_step(resolved, state, path, top_level)

        if step.step_type in (StepType.COMMAND, StepType.AUTH):
            self._run_leaf(resolved, state, path, top_level)
        elif step.step_type == StepType.CONDITIONAL:
            self._run_conditional(step, state, path)
        elif step.step_type == StepType.BRANCH:
            self._run_branch(resolved, state, path)
        elif step.step_type == StepType.LOOP:
            self._run_loop(step, state, path)

    def _approve_step(self, step, state: _RunState, path: str, top_level: bool) -> None:
        summary = step.command or f"{step.step_type} step"
        if self.approver(f"Step '{step.name}' requires approval: {summary}"):
            return
        error = ApprovalDeniedError(f"Step '{step.name}' was not approved")
        self._record(StepResult(name=path, error=error), state, top_level)
        raise _HaltSignal(path, 1)

    def _record(self, entry: StepResult, state: _RunState, top_level: bool) -> None:
        state.report.trace.append(entry)
        if top_level:
            state.report.results.append(entry)

    def _run_leaf(self, step, state: _RunState, path: str, top_level: bool) -> None:
        logger.info(f"Step {path}: {step.command}")
        try:
            result = self.runner.run(step.command)
        except CommandExecutionError as e:
            entry = StepResult(name=path, error=e)
        else:
            entry = StepResult(name=path, result=result)
            state.last_result = result

        self._record(entry, state, top_level)

        if entry.ok:
            if step.step_type == StepType.AUTH:
                self.auth_confirm(step)
            return

        reason = entry.error or f"exit code {entry.returncode}"
        # Auth steps never continue past a failure
        continuing = step.step_type == StepType.COMMAND and step.continue_on_error
        if continuing:
            logger.warning(f"Step {path} failed ({reason}), continuing")
            return

        logger.warning(f"Step {path} failed ({reason})")
        raise _HaltSignal(path, entry.returncode or 1)

    def _evaluate(self, condition: Condition, state: _RunState) -> bool:
        # Templates are resolved per evaluation so loop conditions see fresh values
        expression = resolve(condition.expression, state.context)
        outcome = self.evaluator.evaluate(
            expression, state.context.variables, state.last_result
        )
        if condition.variable:
            state.context.set(condition.variable, "true" if outcome else "false")
        return outcome

    def _run_conditional(self, step, state: _RunState, path: str) -> None:
        payload = step.conditional

        if self._evaluate(payload.condition, state):
            label, block = "then", payload.then_block
        elif payload.else_block is not None:
            label, block = "else", payload.else_block
        else:
            label, block = None, None

        logger.debug(f"Conditional {path} selected {label or 'nothing'}")
        if block:
            self._run_block(block, state, f"{path}/{label}", top_level=False)

        action = payload.action
        if action is None:
            return
        if action.type == ActionType.BREAK:
            raise _BreakSignal()
        if action.type == ActionType.RETURN:
            raise _ReturnSignal(action.exit_code)

    def _run_branch(self, step, state: _RunState, path: str) -> None:
        payload = step.branch
        value = state.context.get(payload.variable, "")

        for case in payload.cases:
            if case.value == value:
                logger.debug(f"Branch {path} matched case '{case.value}'")
                self._run_block(case.steps, state, f"{path}/case[{case.value}]", top_level=False)
                return

        if payload.default_case is not None:
            logger.debug(f"Branch {path} fell through to default")
            self._run_block(payload.default_case, state, f"{path}/default", top_level=False)

    def _run_loop(self, step, state: _RunState, path: str) -> None:
        payload = step.loop
        iteration = 0

        while self._evaluate(payload.condition, state):
            iteration += 1
            if self.max_loop_iterations is not None and iteration > self.max_loop_iterations:
                error = LoopLimitExceededError(
                    f"Loop '{step.name}' exceeded {self.max_loop_iterations} iterations"
                )
                state.report.trace.append(StepResult(name=path, error=error))
                raise _HaltSignal(path, 1)

            try:
                self._run_block(payload.steps, state, f"{path}/loop[{iteration}]", top_level=False)
            except _BreakSignal:
                logger.debug(f"Loop {path} broken after {iteration} iteration(s)")
                break

    # ------------------------------------------------------------------
    # Saved commands
    # ------------------------------------------------------------------

    def execute_command(self, command: Command) -> StepResult:
        """
        Run a saved command after a security check.

        Unsafe commands and commands matching an approval pattern are only
        run once the approver agrees. The command is marked used once it
        has been spawned.
        """
        check = self.security_validator.validate_command(command.command)
        for issue in check.issues:
            logger.warning(f"Security: {issue}")

        if not check.is_safe or check.requires_approval:
            if not self.approver(f"Command '{command.name}' requires approval: {command.command}"):
                return StepResult(
                    name=command.name,
                    error=ApprovalDeniedError(f"Command '{command.name}' was not approved"),
                )

        logger.info(f"Executing command '{command.name}': {command.command}")
        try:
            result = self.runner.run(command.command)
        except CommandExecutionError as e:
            return StepResult(name=command.name, error=e)

        command.mark_used()
        return StepResult(name=command.name, result=result)


def run_workflow(
    workflow: Workflow,
    profile: Optional[str] = None,
    overrides: Optional[Mapping[str, str]] = None,
    **kwargs,
) -> RunReport:
    """Run a workflow with a default-configured executor."""
    prompt = kwargs.pop("prompt", True)
    return WorkflowExecutor(**kwargs).run_workflow(
        workflow, profile=profile, overrides=overrides, prompt=prompt
    )
