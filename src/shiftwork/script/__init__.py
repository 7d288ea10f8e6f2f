"""Job scripts: authored YAML/JSON, compiled into an immutable step tree."""

from shiftwork.script.conditions import Condition, ConditionOp
from shiftwork.script.spec import compile_script, compile_step
from shiftwork.script.steps import (
    Assign,
    Branch,
    BranchCase,
    Command,
    JoinPolicy,
    Loop,
    Parallel,
    Sequence,
    Step,
    StepKind,
    step_from_dict,
    step_to_dict,
)

__all__ = [
    "Assign",
    "Branch",
    "BranchCase",
    "Command",
    "Condition",
    "ConditionOp",
    "JoinPolicy",
    "Loop",
    "Parallel",
    "Sequence",
    "Step",
    "StepKind",
    "compile_script",
    "compile_step",
    "step_from_dict",
    "step_to_dict",
]
