"""Step Types: the compiled, immutable step tree of a job script.

A compiled script is an ordered tree of tagged step variants.  The token
tree executor handles each variant exhaustively; nothing else in the engine
inspects raw script text.

ARCHITECTURE
────────────
::

    Step  (name, continue_on_error)
      ├── Command   ── leaf: shell text + queue + memory hint + retries
      ├── Assign    ── leaf: write context variables, no process
      ├── Sequence  ── ordered children, all must succeed
      ├── Parallel  ── unordered children, JoinPolicy ALL | ANY
      ├── Branch    ── first BranchCase whose Condition holds (or default)
      └── Loop      ── body repeated while Condition holds, bounded

    StepKind    ── enum tag stored in every serialized fragment
    JoinPolicy  ── ALL (every child must succeed) or ANY (first success wins)

Each token row stores the fragment of its own step as a dict
(``step_to_dict``); ``step_from_dict`` restores it.

Example::

    from shiftwork.script.steps import Command, Sequence

    tree = Sequence(children=(
        Command(shell="./extract.sh"),
        Command(shell="./load.sh", retries=2),
    ))
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from shiftwork.core.errors import ScriptError
from shiftwork.core.settings import DEFAULT_QUEUE
from shiftwork.script.conditions import Condition

DEFAULT_MAX_ITERATIONS = 100
DEFAULT_LOOP_COUNTER = "LOOP_INDEX"


class StepKind(str, Enum):
    """Tag of a step variant."""

    COMMAND = "command"
    ASSIGN = "assign"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    BRANCH = "branch"
    LOOP = "loop"


class JoinPolicy(str, Enum):
    """How a Parallel step resolves from its children."""

    ALL = "all"  # every child must succeed
    ANY = "any"  # first successful child wins, the rest are canceled


@dataclass(frozen=True, kw_only=True)
class Step:
    """Fields shared by every variant.

    ``continue_on_error`` makes a failure of this step count as WARNING for
    its parent instead of failing it.
    """

    kind: ClassVar[StepKind]

    name: str = ""
    continue_on_error: bool = False

    @property
    def is_leaf(self) -> bool:
        return self.kind in (StepKind.COMMAND, StepKind.ASSIGN)

    def child(self, index: int) -> Step | None:
        """Step expanded at child position *index* (``None`` when out of range)."""
        return None

    def _base_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        if self.name:
            data["name"] = self.name
        if self.continue_on_error:
            data["continue_on_error"] = True
        return data


@dataclass(frozen=True, kw_only=True)
class Command(Step):
    kind: ClassVar[StepKind] = StepKind.COMMAND

    shell: str
    queue: str = DEFAULT_QUEUE
    expected_memory: int | None = None  # KiB
    retries: int = 0
    capture: str | None = None

    def __post_init__(self) -> None:
        if not self.shell.strip():
            raise ScriptError("command step requires a non-empty shell")
        if self.retries < 0:
            raise ScriptError(f"retries must be >= 0, got {self.retries}")


@dataclass(frozen=True, kw_only=True)
class Assign(Step):
    kind: ClassVar[StepKind] = StepKind.ASSIGN

    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class Sequence(Step):
    kind: ClassVar[StepKind] = StepKind.SEQUENCE

    children: tuple[Step, ...] = ()

    def child(self, index: int) -> Step | None:
        return self.children[index] if 0 <= index < len(self.children) else None


@dataclass(frozen=True, kw_only=True)
class Parallel(Step):
    kind: ClassVar[StepKind] = StepKind.PARALLEL

    children: tuple[Step, ...] = ()
    join: JoinPolicy = JoinPolicy.ALL

    def child(self, index: int) -> Step | None:
        return self.children[index] if 0 <= index < len(self.children) else None


@dataclass(frozen=True)
class BranchCase:
    condition: Condition
    step: Step


@dataclass(frozen=True, kw_only=True)
class Branch(Step):
    """Cases occupy child positions ``0..n-1``; the default is position ``n``."""

    kind: ClassVar[StepKind] = StepKind.BRANCH

    cases: tuple[BranchCase, ...] = ()
    default: Step | None = None

    def child(self, index: int) -> Step | None:
        if 0 <= index < len(self.cases):
            return self.cases[index].step
        if index == len(self.cases):
            return self.default
        return None

    def select(self, context: Mapping[str, Any]) -> int | None:
        """Child position chosen for *context*, or ``None`` if nothing matches."""
        for index, case in enumerate(self.cases):
            if case.condition.evaluate(context):
                return index
        if self.default is not None:
            return len(self.cases)
        return None


@dataclass(frozen=True, kw_only=True)
class Loop(Step):
    """Every iteration expands ``body`` at child position = iteration number."""

    kind: ClassVar[StepKind] = StepKind.LOOP

    body: Step
    condition: Condition
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    counter: str = DEFAULT_LOOP_COUNTER

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ScriptError(f"max_iterations must be >= 1, got {self.max_iterations}")

    def child(self, index: int) -> Step | None:
        return self.body if 0 <= index < self.max_iterations else None


# =============================================================================
# Serialization
# =============================================================================


def step_to_dict(step: Step) -> dict[str, Any]:
    """Serialize *step* (and its subtree) into a JSON-compatible dict."""
    data = step._base_dict()
    match step:
        case Command():
            data["shell"] = step.shell
            if step.queue != DEFAULT_QUEUE:
                data["queue"] = step.queue
            if step.expected_memory is not None:
                data["expected_memory"] = step.expected_memory
            if step.retries:
                data["retries"] = step.retries
            if step.capture:
                data["capture"] = step.capture
        case Assign():
            data["values"] = dict(step.values)
        case Sequence() | Parallel():
            data["children"] = [step_to_dict(child) for child in step.children]
            if isinstance(step, Parallel):
                data["join"] = step.join.value
        case Branch():
            data["cases"] = [
                {"condition": case.condition.to_dict(), "step": step_to_dict(case.step)}
                for case in step.cases
            ]
            if step.default is not None:
                data["default"] = step_to_dict(step.default)
        case Loop():
            data["body"] = step_to_dict(step.body)
            data["condition"] = step.condition.to_dict()
            data["max_iterations"] = step.max_iterations
            data["counter"] = step.counter
        case _:
            raise ScriptError(f"unknown step type: {type(step).__name__}")
    return data


def step_from_dict(data: Mapping[str, Any]) -> Step:
    """Rebuild a step tree from ``step_to_dict`` output."""
    try:
        return _step_from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise ScriptError(f"malformed step fragment: {exc}", cause=exc) from exc


def _step_from_dict(data: Mapping[str, Any]) -> Step:
    try:
        kind = StepKind(data["kind"])
    except (KeyError, ValueError) as exc:
        raise ScriptError(f"invalid step kind in {dict(data)!r}", cause=exc) from exc

    common = {
        "name": data.get("name", ""),
        "continue_on_error": bool(data.get("continue_on_error", False)),
    }

    if kind is StepKind.COMMAND:
        return Command(
            shell=data["shell"],
            queue=data.get("queue", DEFAULT_QUEUE),
            expected_memory=data.get("expected_memory"),
            retries=int(data.get("retries", 0)),
            capture=data.get("capture"),
            **common,
        )
    if kind is StepKind.ASSIGN:
        return Assign(values=dict(data.get("values", {})), **common)
    if kind is StepKind.SEQUENCE:
        return Sequence(
            children=tuple(_step_from_dict(child) for child in data.get("children", [])),
            **common,
        )
    if kind is StepKind.PARALLEL:
        return Parallel(
            children=tuple(_step_from_dict(child) for child in data.get("children", [])),
            join=JoinPolicy(data.get("join", JoinPolicy.ALL.value)),
            **common,
        )
    if kind is StepKind.BRANCH:
        default = data.get("default")
        return Branch(
            cases=tuple(
                BranchCase(
                    condition=Condition.from_dict(case["condition"]),
                    step=_step_from_dict(case["step"]),
                )
                for case in data.get("cases", [])
            ),
            default=_step_from_dict(default) if default is not None else None,
            **common,
        )
    return Loop(
        body=_step_from_dict(data["body"]),
        condition=Condition.from_dict(data["condition"]),
        max_iterations=int(data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
        counter=data.get("counter", DEFAULT_LOOP_COUNTER),
        **common,
    )


def iter_steps(step: Step) -> Iterator[Step]:
    """Depth-first walk over *step* and every step below it."""
    yield step
    match step:
        case Sequence() | Parallel():
            for child in step.children:
                yield from iter_steps(child)
        case Branch():
            for case in step.cases:
                yield from iter_steps(case.step)
            if step.default is not None:
                yield from iter_steps(step.default)
        case Loop():
            yield from iter_steps(step.body)


def queues_of(step: Step) -> set[str]:
    """Every queue a command inside *step* dispatches to."""
    return {s.queue for s in iter_steps(step) if isinstance(s, Command)}


__all__ = [
    "StepKind",
    "JoinPolicy",
    "Step",
    "Command",
    "Assign",
    "Sequence",
    "Parallel",
    "BranchCase",
    "Branch",
    "Loop",
    "step_to_dict",
    "step_from_dict",
    "iter_steps",
    "queues_of",
]
