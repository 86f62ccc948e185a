"""
Shared fixtures for clix tests.
"""
from typing import Dict, List, Optional

import pytest

from clix.models import (
    CommandStep,
    Condition,
    ConditionalPayload,
    ConditionalStep,
    ProcessResult,
    Workflow,
)


class FakeRunner:
    """
    Records commands instead of spawning them.

    ``results`` maps a command string to the ProcessResult it should
    produce; anything else succeeds with empty output. ``errors`` maps a
    command to an exception to raise.
    """

    def __init__(self, results: Optional[Dict[str, ProcessResult]] = None, errors=None):
        self.results = results or {}
        self.errors = errors or {}
        self.commands: List[str] = []

    def run(self, command: str) -> ProcessResult:
        self.commands.append(command)
        if command in self.errors:
            raise self.errors[command]
        return self.results.get(command, ProcessResult(returncode=0))

    def test(self, expression: str) -> bool:
        raise AssertionError(f"unexpected shell test: {expression}")


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def exit_code_workflow():
    """A then/else conditional keyed on the previous step's exit code."""
    return Workflow(
        name="check",
        description="Branch on the exit status of A",
        steps=[
            CommandStep(name="A", description="succeed", command="exit 0"),
            ConditionalStep(
                name="Check",
                description="Did A succeed",
                conditional=ConditionalPayload(
                    condition=Condition(expression="$? -eq 0"),
                    then_block=[CommandStep(name="B", command="echo ok")],
                    else_block=[CommandStep(name="C", command="echo fail")],
                ),
            ),
        ],
    )
