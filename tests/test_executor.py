"""
Tests for the workflow executor.

Most tests replace process spawning with FakeRunner and condition
evaluation with a Mock delegate. TestRealShell runs actual POSIX commands.
"""
import sys
from unittest.mock import Mock

import pytest

from conftest import FakeRunner
from clix.config import EngineConfig
from clix.errors import (
    ApprovalDeniedError,
    CommandExecutionError,
    LoopLimitExceededError,
    MissingResultError,
    WorkflowExecutionError,
)
from clix.executor import WorkflowExecutor, run_workflow
from clix.expression import ExpressionEvaluator
from clix.models import (
    ActionType,
    AuthStep,
    BranchCase,
    BranchPayload,
    BranchStep,
    Command,
    CommandStep,
    Condition,
    ConditionalAction,
    ConditionalPayload,
    ConditionalStep,
    LoopPayload,
    LoopStep,
    ProcessResult,
    Profile,
    RunStatus,
    Variable,
    Workflow,
)

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX shell required")


def conditional(name, expression, then_block=(), else_block=None, action=None, variable=None):
    return ConditionalStep(
        name=name,
        conditional=ConditionalPayload(
            condition=Condition(expression=expression, variable=variable),
            then_block=list(then_block),
            else_block=list(else_block) if else_block is not None else None,
            action=action,
        ),
    )


def make_executor(runner=None, delegate=None, **kwargs):
    runner = runner or FakeRunner()
    evaluator = ExpressionEvaluator(delegate=delegate or Mock(return_value=False))
    kwargs.setdefault("input_func", Mock(return_value=""))
    return WorkflowExecutor(runner=runner, evaluator=evaluator, **kwargs)


# ============================================================================
# Sequential commands
# ============================================================================

class TestSequentialCommands:
    """Command and auth step semantics."""

    def test_results_in_order(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            CommandStep(name="one", command="echo 1"),
            CommandStep(name="two", command="echo 2"),
        ])
        report = make_executor(runner).run_workflow(wf)

        assert report.names() == ["one", "two"]
        assert runner.commands == ["echo 1", "echo 2"]
        assert report.status == RunStatus.COMPLETED

    def test_failure_halts_remaining_steps(self):
        """A nonzero exit stops the run unless continue_on_error is set."""
        runner = FakeRunner(results={"false": ProcessResult(returncode=1)})
        wf = Workflow(name="w", steps=[
            CommandStep(name="fail", command="false"),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner).run_workflow(wf)

        assert report.names() == ["fail"]
        assert "echo after" not in runner.commands
        assert report.status == RunStatus.HALTED
        assert report.failed_step == "fail"
        assert report.exit_code == 1

    def test_continue_on_error(self):
        runner = FakeRunner(results={"false": ProcessResult(returncode=2)})
        wf = Workflow(name="w", steps=[
            CommandStep(name="fail", command="false", continue_on_error=True),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner).run_workflow(wf)

        assert report.names() == ["fail", "after"]
        assert report.results[0].returncode == 2
        assert report.status == RunStatus.COMPLETED

    def test_auth_failure_always_halts(self):
        """continue_on_error has no effect on auth steps."""
        runner = FakeRunner(results={"login": ProcessResult(returncode=1)})
        wf = Workflow(name="w", steps=[
            AuthStep(name="auth", command="login", continue_on_error=True),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner).run_workflow(wf)

        assert report.names() == ["auth"]
        assert report.status == RunStatus.HALTED

    def test_auth_confirm_called_on_success(self):
        confirm = Mock()
        wf = Workflow(name="w", steps=[AuthStep(name="auth", command="login")])
        make_executor(auth_confirm=confirm).run_workflow(wf)
        confirm.assert_called_once()
        assert confirm.call_args.args[0].name == "auth"

    def test_auth_waits_for_enter_by_default(self):
        input_func = Mock(return_value="")
        wf = Workflow(name="w", steps=[AuthStep(name="auth", command="login")])
        make_executor(input_func=input_func).run_workflow(wf)

        input_func.assert_called_once()
        assert "auth" in input_func.call_args.args[0]
        assert "press Enter" in input_func.call_args.args[0]

    def test_spawn_error_recorded_and_gated(self):
        """Spawn failures are step outcomes subject to continue_on_error."""
        runner = FakeRunner(errors={"missing-binary": CommandExecutionError("Failed to execute: no such file")})
        wf = Workflow(name="w", steps=[
            CommandStep(name="broken", command="missing-binary", continue_on_error=True),
            CommandStep(name="next", command="echo next"),
            CommandStep(name="broken-again", command="missing-binary"),
            CommandStep(name="never", command="echo never"),
        ])
        report = make_executor(runner).run_workflow(wf)

        assert report.names() == ["broken", "next", "broken-again"]
        assert isinstance(report.results[0].error, CommandExecutionError)
        assert report.status == RunStatus.HALTED
        assert report.failed_step == "broken-again"


# ============================================================================
# Conditionals
# ============================================================================

class TestConditionals:
    """Conditional steps and their actions."""

    def test_exit_code_scenario(self, exit_code_workflow):
        """Conditionals add no top-level result; inner steps are traced."""
        runner = FakeRunner(results={"echo ok": ProcessResult(returncode=0, stdout="ok\n")})
        report = make_executor(runner).run_workflow(exit_code_workflow)

        assert report.names() == ["A"]
        assert report.find("B").result.stdout == "ok\n"
        assert report.find("Check/then/B") is not None
        assert report.find("C") is None
        assert runner.commands == ["exit 0", "echo ok"]

    def test_else_block(self, exit_code_workflow):
        runner = FakeRunner(results={"exit 0": ProcessResult(returncode=5)})
        wf = exit_code_workflow.model_copy(update={
            "steps": [CommandStep(name="A", command="exit 0", continue_on_error=True)]
            + exit_code_workflow.steps[1:],
        })
        report = make_executor(runner).run_workflow(wf)
        assert runner.commands == ["exit 0", "echo fail"]
        assert report.find("Check/else/C") is not None

    def test_no_else_is_noop(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("c", "[ -f nope ]", then_block=[CommandStep(name="t", command="echo t")]),
            CommandStep(name="after", command="echo after"),
        ])
        make_executor(runner, delegate=Mock(return_value=False)).run_workflow(wf)
        assert runner.commands == ["echo after"]

    def test_return_aborts_run(self):
        """Return ends the whole run with its exit code."""
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("stop", "[ -f lock ]", action=ConditionalAction.returning(7),
                        then_block=[CommandStep(name="warn", command="echo locked")]),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)

        assert runner.commands == ["echo locked"]
        assert report.status == RunStatus.RETURNED
        assert report.exit_code == 7

    def test_return_from_nested_depth(self):
        runner = FakeRunner()
        inner = conditional("inner", "[ -n x ]", action=ConditionalAction.returning(3))
        wf = Workflow(name="w", steps=[
            LoopStep(name="loop", loop=LoopPayload(condition=Condition(expression="[ -n y ]"),
                                                   steps=[inner])),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)
        assert report.status == RunStatus.RETURNED
        assert report.exit_code == 3
        assert runner.commands == []

    def test_continue_action_is_noop(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("c", "[ -n x ]", action=ConditionalAction.of(ActionType.CONTINUE)),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)
        assert runner.commands == ["echo after"]
        assert report.status == RunStatus.COMPLETED

    def test_break_outside_loop_ends_run(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("c", "[ -n x ]", action=ConditionalAction.of(ActionType.BREAK)),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)
        assert runner.commands == []
        assert report.status == RunStatus.BROKEN

    def test_condition_capture(self):
        """A captured outcome is visible to later steps."""
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("c", "[ -f marker ]", variable="HAS_MARKER"),
            CommandStep(name="report", command="echo {{HAS_MARKER}}"),
        ])
        make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf, prompt=False)
        assert runner.commands == ["echo true"]

    def test_capture_visible_inside_nested_block(self):
        """Nested steps resolve when they run, after earlier captures."""
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            conditional("outer", "[ -n x ]", then_block=[
                conditional("check", "[ -f ok ]", variable="ok"),
                CommandStep(name="use", command="echo {{ok}}"),
            ]),
        ])
        make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)
        assert runner.commands == ["echo true"]

    def test_capture_refreshed_each_loop_iteration(self):
        runner = FakeRunner()
        # loop, check, loop, check, loop
        delegate = Mock(side_effect=[True, True, True, False, False])
        wf = Workflow(name="w", steps=[
            LoopStep(name="poll", loop=LoopPayload(
                condition=Condition(expression="[ -n x ]"),
                steps=[
                    conditional("check", "[ -f seen ]", variable="SEEN"),
                    CommandStep(name="show", command="echo {{SEEN}}"),
                ],
            )),
        ])
        make_executor(runner, delegate=delegate).run_workflow(wf, prompt=False)
        assert runner.commands == ["echo true", "echo false"]

    def test_capture_names_not_prompted(self):
        input_func = Mock(return_value="typed")
        wf = Workflow(name="w", steps=[
            conditional("check", "[ -f ok ]", variable="ok"),
            CommandStep(name="use", command="echo {{ok}}"),
        ])
        runner = FakeRunner()
        make_executor(runner, delegate=Mock(return_value=False), input_func=input_func).run_workflow(wf)
        input_func.assert_not_called()
        assert runner.commands == ["echo false"]

    def test_missing_result_wrapped_with_partial_report(self):
        wf = Workflow(name="w", steps=[conditional("c", "$? -eq 0")])
        with pytest.raises(WorkflowExecutionError) as exc_info:
            make_executor().run_workflow(wf)

        assert isinstance(exc_info.value.__cause__, MissingResultError)
        assert exc_info.value.report.workflow_name == "w"
        assert exc_info.value.report.status == RunStatus.HALTED

    def test_nested_failure_halts_whole_run(self):
        runner = FakeRunner(results={"false": ProcessResult(returncode=1)})
        wf = Workflow(name="w", steps=[
            conditional("c", "[ -n x ]", then_block=[CommandStep(name="inner", command="false")]),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, delegate=Mock(return_value=True)).run_workflow(wf)

        assert report.names() == []
        assert report.failed_step == "c/then/inner"
        assert "echo after" not in runner.commands


# ============================================================================
# Branches
# ============================================================================

class TestBranches:
    """Branch case selection."""

    def setup_method(self):
        self.workflow = Workflow(name="w", steps=[
            BranchStep(
                name="env",
                branch=BranchPayload(
                    variable="ENV",
                    cases=[
                        BranchCase(value="prod", steps=[CommandStep(name="p1", command="echo prod")]),
                        BranchCase(value="prod", steps=[CommandStep(name="p2", command="echo prod again")]),
                        BranchCase(value="dev", steps=[CommandStep(name="d", command="echo dev")]),
                    ],
                    default_case=[CommandStep(name="other", command="echo other")],
                ),
            ),
        ])

    def test_first_match_wins(self):
        runner = FakeRunner()
        report = make_executor(runner).run_workflow(self.workflow, overrides={"ENV": "prod"})
        assert runner.commands == ["echo prod"]
        assert report.find("env/case[prod]/p1") is not None

    def test_exact_match_only(self):
        runner = FakeRunner()
        make_executor(runner).run_workflow(self.workflow, overrides={"ENV": "Dev"})
        assert runner.commands == ["echo other"]

    def test_no_match_no_default(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            BranchStep(name="env", branch=BranchPayload(
                variable="ENV",
                cases=[BranchCase(value="prod", steps=[CommandStep(name="p", command="echo p")])],
            )),
        ])
        report = make_executor(runner).run_workflow(wf)
        assert runner.commands == []
        assert report.trace == []

    def test_profile_selects_case(self):
        runner = FakeRunner()
        wf = self.workflow.model_copy(update={
            "profiles": {"dev": Profile(name="dev", variables={"ENV": "dev"})},
        })
        make_executor(runner).run_workflow(wf, profile="dev")
        assert runner.commands == ["echo dev"]


# ============================================================================
# Loops
# ============================================================================

class TestLoops:
    """Loop iteration and break."""

    def test_iterates_until_false(self):
        runner = FakeRunner()
        delegate = Mock(side_effect=[True, True, True, False])
        wf = Workflow(name="w", steps=[
            LoopStep(name="retry", loop=LoopPayload(
                condition=Condition(expression="[ ! -f done ]"),
                steps=[CommandStep(name="probe", command="probe")],
            )),
        ])
        report = make_executor(runner, delegate=delegate).run_workflow(wf)

        assert runner.commands == ["probe"] * 3
        assert [entry.name for entry in report.trace] == [
            "retry/loop[1]/probe", "retry/loop[2]/probe", "retry/loop[3]/probe",
        ]

    def test_break_stops_nearest_loop_only(self):
        runner = FakeRunner()
        delegate = Mock(side_effect=[True, True])
        wf = Workflow(name="w", steps=[
            LoopStep(name="outer", loop=LoopPayload(
                condition=Condition(expression="[ -n go ]"),
                steps=[
                    CommandStep(name="work", command="work"),
                    conditional("done", "[ -f done ]", action=ConditionalAction.of(ActionType.BREAK)),
                    CommandStep(name="skipped", command="skipped"),
                ],
            )),
            CommandStep(name="after", command="after"),
        ])
        report = make_executor(runner, delegate=delegate).run_workflow(wf)

        assert runner.commands == ["work", "after"]
        assert report.status == RunStatus.COMPLETED

    def test_iteration_cap(self):
        wf = Workflow(name="w", steps=[
            LoopStep(name="spin", loop=LoopPayload(
                condition=Condition(expression="[ -n forever ]"),
                steps=[CommandStep(name="tick", command="tick")],
            )),
        ])
        runner = FakeRunner()
        report = make_executor(runner, delegate=Mock(return_value=True),
                               max_loop_iterations=5).run_workflow(wf)

        assert len(runner.commands) == 5
        assert report.status == RunStatus.HALTED
        assert report.failed_step == "spin"
        assert isinstance(report.trace[-1].error, LoopLimitExceededError)

    def test_cap_from_config(self):
        config = EngineConfig({"execution": {"max_loop_iterations": 2}})
        executor = make_executor(config=config)
        assert executor.max_loop_iterations == 2


# ============================================================================
# Approval
# ============================================================================

class TestApproval:
    """Step, workflow and command approval."""

    def test_declined_step_halts(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            CommandStep(name="danger", command="sudo reboot", require_approval=True),
            CommandStep(name="after", command="echo after"),
        ])
        report = make_executor(runner, approver=Mock(return_value=False)).run_workflow(wf)

        assert runner.commands == []
        assert isinstance(report.results[0].error, ApprovalDeniedError)
        assert report.status == RunStatus.HALTED

    def test_approved_step_runs(self):
        runner = FakeRunner()
        approver = Mock(return_value=True)
        wf = Workflow(name="w", steps=[
            CommandStep(name="danger", command="sudo reboot", require_approval=True),
        ])
        make_executor(runner, approver=approver).run_workflow(wf)
        assert runner.commands == ["sudo reboot"]
        assert "danger" in approver.call_args.args[0]

    def test_declined_conditional_skips_its_blocks(self):
        runner = FakeRunner()
        approver = Mock(return_value=False)
        delegate = Mock(return_value=True)
        guarded = conditional("guard", "[ -n x ]",
                              then_block=[CommandStep(name="danger", command="rm -rf build")])
        guarded = guarded.model_copy(update={"require_approval": True})
        wf = Workflow(name="w", steps=[guarded, CommandStep(name="after", command="echo after")])
        report = make_executor(runner, delegate=delegate, approver=approver).run_workflow(wf)

        assert approver.call_count == 1
        assert "guard" in approver.call_args.args[0]
        delegate.assert_not_called()
        assert runner.commands == []
        assert report.status == RunStatus.HALTED
        assert report.failed_step == "guard"
        assert isinstance(report.find("guard").error, ApprovalDeniedError)

    def test_approved_loop_runs(self):
        runner = FakeRunner()
        approver = Mock(return_value=True)
        wf = Workflow(name="w", steps=[
            LoopStep(name="retry", require_approval=True, loop=LoopPayload(
                condition=Condition(expression="[ -n x ]"),
                steps=[CommandStep(name="try", command="echo try")],
            )),
        ])
        delegate = Mock(side_effect=[True, False])
        make_executor(runner, delegate=delegate, approver=approver).run_workflow(wf)

        approver.assert_called_once()
        assert runner.commands == ["echo try"]

    def test_default_approver_reads_input(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[
            CommandStep(name="danger", command="sudo ls", require_approval=True),
        ])
        make_executor(runner, input_func=Mock(return_value="y")).run_workflow(wf)
        assert runner.commands == ["sudo ls"]

    def test_security_check_declined(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[CommandStep(name="wipe", command="rm -rf /")])
        report = make_executor(runner, approver=Mock(return_value=False),
                               security_check=True).run_workflow(wf)

        assert runner.commands == []
        assert report.status == RunStatus.HALTED
        assert report.failed_step == "w"

    def test_security_check_approval_covers_steps(self):
        runner = FakeRunner()
        approver = Mock(return_value=True)
        wf = Workflow(name="w", steps=[
            CommandStep(name="up", command="sudo apt update", require_approval=True),
        ])
        make_executor(runner, approver=approver, security_check=True).run_workflow(wf)

        assert approver.call_count == 1
        assert runner.commands == ["sudo apt update"]

    def test_safe_workflow_not_asked(self):
        approver = Mock(return_value=False)
        wf = Workflow(name="w", steps=[CommandStep(name="ls", command="ls")])
        report = make_executor(approver=approver, security_check=True).run_workflow(wf)
        approver.assert_not_called()
        assert report.status == RunStatus.COMPLETED


# ============================================================================
# Saved commands and variables
# ============================================================================

class TestExecuteCommand:
    """Running saved commands."""

    def test_safe_command_runs_and_is_marked(self):
        runner = FakeRunner()
        cmd = Command(name="list", command="ls -la")
        result = make_executor(runner).execute_command(cmd)

        assert result.ok
        assert cmd.use_count == 1

    def test_unsafe_command_declined(self):
        runner = FakeRunner()
        cmd = Command(name="wipe", command="rm -rf /tmp/*")
        result = make_executor(runner, approver=Mock(return_value=False)).execute_command(cmd)

        assert isinstance(result.error, ApprovalDeniedError)
        assert runner.commands == []
        assert cmd.use_count == 0


class TestVariablesDuringRun:
    def test_templates_resolved_from_overrides_and_defaults(self):
        runner = FakeRunner()
        wf = Workflow(
            name="w",
            variables=[Variable(name="GREETING", default_value="hello")],
            steps=[CommandStep(name="say", command="echo {{GREETING}} {{NAME}}")],
        )
        make_executor(runner).run_workflow(wf, overrides={"NAME": "bob"}, prompt=False)
        assert runner.commands == ["echo hello bob"]

    def test_module_level_run_workflow(self):
        runner = FakeRunner()
        wf = Workflow(name="w", steps=[CommandStep(name="a", command="echo a")])
        report = run_workflow(
            wf,
            runner=runner,
            evaluator=ExpressionEvaluator(delegate=Mock(return_value=False)),
            prompt=False,
        )
        assert report.names() == ["a"]


# ============================================================================
# Real shell
# ============================================================================

@posix_only
class TestRealShell:
    """End-to-end runs through sh and bash."""

    def test_exit_code_scenario(self, exit_code_workflow):
        report = WorkflowExecutor().run_workflow(exit_code_workflow, prompt=False)

        assert report.names() == ["A"]
        assert report.find("B").result.stdout == "ok\n"

    def test_counter_loop(self, tmp_path):
        """Iteration count follows the counter arithmetic."""
        counter = tmp_path / "counter"
        counter.write_text("0")
        log = tmp_path / "log"
        wf = Workflow(name="count", steps=[
            LoopStep(name="count", loop=LoopPayload(
                condition=Condition(expression=f"[ $(cat {counter}) -lt 3 ]"),
                steps=[CommandStep(
                    name="inc",
                    command=f"echo tick >> {log}; echo $(( $(cat {counter}) + 1 )) > {counter}",
                )],
            )),
        ])
        report = WorkflowExecutor().run_workflow(wf, prompt=False)

        assert report.status == RunStatus.COMPLETED
        assert counter.read_text().strip() == "3"
        assert log.read_text().count("tick") == 3
        assert len(report.trace) == 3
