"""Pydantic models for authored job scripts.

Job definitions store their script as YAML (or JSON, which YAML accepts).
This module validates the document and compiles it into the immutable step
tree of :mod:`shiftwork.script.steps`.

Usage::

    from shiftwork.script.spec import compile_script

    tree = compile_script(definition.script)

Example YAML::

    sequence:
      - assign: {MODE: full}
      - command: ./extract.sh
      - command:
          shell: ./load.sh
          queue: heavy
          retries: 2
          expected_memory: 524288
      - parallel:
          join: any
          steps:
            - command: ./mirror-a.sh
            - command: ./mirror-b.sh
      - branch:
          cases:
            - when: {var: MODE, op: eq, value: full}
              do: {command: ./reindex.sh}
          default: {command: ./touch.sh}
      - loop:
          while: {var: LOOP_INDEX, op: lt, value: 3}
          max_iterations: 10
          do: {command: ./page.sh}
        continue_on_error: true

A bare string is a command, a list is a sequence, and every mapping holds
exactly one step key plus the optional ``name`` / ``continue_on_error``
modifiers.
"""

from __future__ import annotations

from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shiftwork.core.errors import ScriptError
from shiftwork.core.settings import DEFAULT_QUEUE
from shiftwork.script.conditions import Condition, ConditionOp
from shiftwork.script.steps import (
    DEFAULT_LOOP_COUNTER,
    DEFAULT_MAX_ITERATIONS,
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
)

_MODIFIERS = {"name", "continue_on_error"}
_STEP_KEYS = {kind.value for kind in StepKind}


class ConditionSpec(BaseModel):
    """``when`` / ``while`` clause."""

    model_config = ConfigDict(extra="forbid")

    var: str = Field(..., min_length=1)
    op: ConditionOp = ConditionOp.TRUTHY
    value: Any = None

    def to_condition(self) -> Condition:
        value = tuple(self.value) if isinstance(self.value, list) else self.value
        return Condition(var=self.var, op=self.op, value=value)


class CommandSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shell: str = Field(..., min_length=1)
    queue: str = Field(default=DEFAULT_QUEUE, min_length=1)
    expected_memory: int | None = Field(default=None, ge=0, description="KiB")
    retries: int = Field(default=0, ge=0)
    capture: str | None = Field(default=None, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")


class ParallelSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    join: JoinPolicy = JoinPolicy.ALL
    steps: list[Any] = Field(..., min_length=1)


class BranchCaseSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    when: ConditionSpec
    do: Any


class BranchSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cases: list[BranchCaseSpec] = Field(default_factory=list)
    default: Any = None


class LoopSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    while_: ConditionSpec = Field(..., alias="while")
    do: Any
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    counter: str = Field(default=DEFAULT_LOOP_COUNTER, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")


def compile_step(node: Any, *, where: str = "script") -> Step:
    """Compile one authored node (string, list or mapping) into a ``Step``."""
    if isinstance(node, str):
        return Command(shell=_non_empty(node, where))
    if isinstance(node, list):
        return Sequence(
            children=tuple(
                compile_step(child, where=f"{where}[{i}]") for i, child in enumerate(node)
            )
        )
    if not isinstance(node, dict):
        raise ScriptError(f"{where}: expected a string, list or mapping, got {type(node).__name__}")

    keys = set(node) & _STEP_KEYS
    unknown = set(node) - _STEP_KEYS - _MODIFIERS
    if unknown:
        raise ScriptError(f"{where}: unknown keys {sorted(unknown)}")
    if len(keys) != 1:
        raise ScriptError(f"{where}: expected exactly one step key, got {sorted(keys) or 'none'}")

    key = keys.pop()
    body = node[key]
    common = {
        "name": str(node.get("name", "")),
        "continue_on_error": bool(node.get("continue_on_error", False)),
    }
    here = f"{where}.{key}"

    try:
        if key == StepKind.COMMAND.value:
            spec = CommandSpec.model_validate({"shell": body} if isinstance(body, str) else body)
            return Command(**spec.model_dump(), **common)

        if key == StepKind.ASSIGN.value:
            if not isinstance(body, dict):
                raise ScriptError(f"{here}: expected a mapping of variables")
            return Assign(values=dict(body), **common)

        if key == StepKind.SEQUENCE.value:
            if not isinstance(body, list):
                raise ScriptError(f"{here}: expected a list of steps")
            return Sequence(
                children=tuple(
                    compile_step(child, where=f"{here}[{i}]") for i, child in enumerate(body)
                ),
                **common,
            )

        if key == StepKind.PARALLEL.value:
            spec = ParallelSpec.model_validate({"steps": body} if isinstance(body, list) else body)
            return Parallel(
                children=tuple(
                    compile_step(child, where=f"{here}[{i}]") for i, child in enumerate(spec.steps)
                ),
                join=spec.join,
                **common,
            )

        if key == StepKind.BRANCH.value:
            spec = BranchSpec.model_validate(body)
            if not spec.cases and spec.default is None:
                raise ScriptError(f"{here}: a branch needs at least one case or a default")
            return Branch(
                cases=tuple(
                    BranchCase(
                        condition=case.when.to_condition(),
                        step=compile_step(case.do, where=f"{here}.cases[{i}]"),
                    )
                    for i, case in enumerate(spec.cases)
                ),
                default=(
                    compile_step(spec.default, where=f"{here}.default")
                    if spec.default is not None
                    else None
                ),
                **common,
            )

        spec = LoopSpec.model_validate(body)
        return Loop(
            body=compile_step(spec.do, where=f"{here}.do"),
            condition=spec.while_.to_condition(),
            max_iterations=spec.max_iterations,
            counter=spec.counter,
            **common,
        )
    except ValidationError as exc:
        raise ScriptError(f"{here}: {exc.errors()[0]['msg']}", cause=exc) from exc


def compile_script(text: str) -> Step:
    """Parse YAML/JSON *text* and compile it into the root step.

    Raises:
        ScriptError: If the text is not valid YAML or does not describe a
            valid step tree.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ScriptError(f"invalid script: {exc}", cause=exc) from exc
    if document is None or document == [] or document == {}:
        raise ScriptError("script is empty")
    return compile_step(document)


def _non_empty(shell: str, where: str) -> str:
    if not shell.strip():
        raise ScriptError(f"{where}: empty command")
    return shell


__all__ = [
    "ConditionSpec",
    "CommandSpec",
    "ParallelSpec",
    "BranchSpec",
    "LoopSpec",
    "compile_step",
    "compile_script",
]
