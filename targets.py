"""
Named build targets with dependency edges, ordering hints and gating
predicates.

A target runs at most once per invocation. Requirements of every planned
target are checked before anything executes, a target whose predicate is
false is skipped without blocking its dependents, and the first failure
aborts the run.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, Iterable, List, Optional

from tabulate import tabulate

from buildlog import LOG


class TargetStatus(str, Enum):
    NOT_RUN = "NotRun"
    SKIPPED = "Skipped"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class BuildError(Exception):
    pass


class UnknownTargetError(BuildError):
    def __init__(self, name: str, known: Iterable[str]):
        self.name = name
        super().__init__(f"Target '{name}' does not exist. Available targets: {', '.join(known)}")


class MissingRequirementError(BuildError):
    def __init__(self, missing: Dict[str, List[str]]):
        self.missing = missing
        details = "; ".join(f"{target} requires {', '.join(params)}" for target, params in missing.items())
        super().__init__(f"Missing required parameters: {details}")


class TargetFailedError(BuildError):
    def __init__(self, target: str, cause: BaseException):
        self.target = target
        self.cause = cause
        super().__init__(f"Target '{target}' failed: {cause}")


@dataclass
class Target:
    name: str
    action: Callable[[], None]
    description: str = ""
    depends_on: List[str] = field(default_factory=list)
    before: List[str] = field(default_factory=list)
    after: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    only_when: List[Callable[[], bool]] = field(default_factory=list)
    status: TargetStatus = TargetStatus.NOT_RUN
    duration: float = 0.0


def normalize(name: str) -> str:
    return name.replace("-", "").replace("_", "").lower()


def summary(docstring: Optional[str]) -> str:
    lines = (docstring or "").strip().splitlines()
    return lines[0].strip() if lines else ""


class TargetGraph:
    def __init__(self, parameters=None):
        self.parameters = parameters
        self.targets: Dict[str, Target] = {}

    def add(self, target: Target) -> Target:
        if normalize(target.name) in map(normalize, self.targets):
            raise BuildError(f"Target '{target.name}' is already defined")
        self.targets[target.name] = target
        return target

    def target(
        self,
        name: Optional[str] = None,
        *,
        depends_on: Iterable[str] = (),
        before: Iterable[str] = (),
        after: Iterable[str] = (),
        requires: Iterable[str] = (),
        only_when: Iterable[Callable[[], bool]] = (),
    ):
        """Register the decorated function as a target."""

        def decorator(func):
            self.add(
                Target(
                    name=name or func.__name__,
                    action=func,
                    description=summary(func.__doc__),
                    depends_on=list(depends_on),
                    before=list(before),
                    after=list(after),
                    requires=list(requires),
                    only_when=list(only_when),
                )
            )
            return func

        return decorator

    def get(self, name: str) -> Target:
        wanted = normalize(name)
        for target_name, target in self.targets.items():
            if normalize(target_name) == wanted:
                return target
        raise UnknownTargetError(name, self.targets)

    def plan(self, invoked: Iterable[str]) -> List[Target]:
        """Invoked targets and their transitive dependencies, in execution order."""
        included: Dict[str, Target] = {}
        pending = [self.get(name) for name in invoked]
        while pending:
            target = pending.pop(0)
            if target.name in included:
                continue
            included[target.name] = target
            pending.extend(self.get(dep) for dep in target.depends_on)

        graph: Dict[str, set] = {name: set() for name in included}
        for target in included.values():
            for dep in target.depends_on:
                graph[target.name].add(self.get(dep).name)
            for other in target.after:
                other_name = self.get(other).name
                if other_name in included:
                    graph[target.name].add(other_name)
            for other in target.before:
                other_name = self.get(other).name
                if other_name in included:
                    graph[other_name].add(target.name)

        try:
            order = list(TopologicalSorter(graph).static_order())
        except CycleError as error:
            raise BuildError(f"Circular target dependencies: {' -> '.join(error.args[1])}") from error
        return [included[name] for name in order]

    def missing_requirements(self, targets: Iterable[Target]) -> Dict[str, List[str]]:
        missing = {}
        for target in targets:
            absent = [
                param for param in target.requires if getattr(self.parameters, param, None) in (None, "")
            ]
            if absent:
                missing[target.name] = absent
        return missing

    def execute(self, invoked: Iterable[str], skip: Iterable[str] = ()) -> List[Target]:
        plan = self.plan(invoked)
        skipped = {self.get(name).name for name in skip}
        for target in plan:
            target.status = TargetStatus.NOT_RUN
            target.duration = 0.0

        missing = self.missing_requirements(t for t in plan if t.name not in skipped)
        if missing:
            raise MissingRequirementError(missing)

        for target in plan:
            if target.name in skipped or not all(predicate() for predicate in target.only_when):
                LOG.info(f"Skipping {target.name}")
                target.status = TargetStatus.SKIPPED
                continue

            LOG.info(f"> {target.name}")
            start = time.monotonic()
            try:
                target.action()
            except Exception as error:
                target.duration = time.monotonic() - start
                target.status = TargetStatus.FAILED
                LOG.error(f"Target {target.name} failed after {target.duration:.2f}s - {error}")
                self.report(plan)
                raise TargetFailedError(target.name, error) from error
            target.duration = time.monotonic() - start
            target.status = TargetStatus.SUCCEEDED

        self.report(plan)
        return plan

    def report(self, plan: List[Target]) -> None:
        LOG.info(
            "\n"
            + tabulate(
                [[target.name, target.status.value, f"{target.duration:.2f}s"] for target in plan],
                ["Target", "Status", "Duration"],
                tablefmt="rst",
            )
        )
