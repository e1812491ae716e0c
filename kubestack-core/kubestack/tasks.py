"""
Task trees: composable units of orchestration work.

A tree is executed depth-first. A sequential tree runs its children one at a time in declared order and stops at
the first failure (unless it is best-effort), a parallel tree runs all of its children concurrently and joins on
all of them. The results of all leaf tasks are collected in declaration order, regardless of completion order.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from kubestack import config
from kubestack.cfn.exceptions import AggregateError, TaskCancelledError

LOG = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # the run was cancelled before the task started
    CANCELLED = "cancelled"
    # an earlier sibling in a sequential tree failed
    SKIPPED = "skipped"


@dataclass
class TaskResult:
    name: str
    status: TaskStatus
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    def __str__(self):
        if self.status == TaskStatus.SKIPPED:
            return f"{self.name}: skipped, a previous task failed"
        if self.error is not None:
            return f"{self.name}: {self.status.value}: {type(self.error).__name__}: {self.error}"
        return f"{self.name}: {self.status.value}"


ResultHook = Callable[[TaskResult], None]


class TaskContext:
    """Handed to every running task. Carries the cancellation signal of the run."""

    def __init__(self, cancel_event: threading.Event = None):
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self):
        self.cancel_event.set()

    def check(self):
        """Raises ``TaskCancelledError`` if the run was cancelled."""
        if self.cancelled:
            raise TaskCancelledError()


class Task:
    """A named unit of work. Leaf tasks implement ``run``, and signal completion through their result hooks."""

    def __init__(self):
        self.result_hooks: list[ResultHook] = []

    def describe(self) -> str:
        raise NotImplementedError

    def run(self, context: TaskContext) -> None:
        raise NotImplementedError

    def on_result(self, hook: ResultHook) -> "Task":
        """
        Registers a hook which receives the result of this task once it is known, whether the task succeeded,
        failed, or never ran. Hooks of a tree are added to all of its leaves.
        """
        self.result_hooks.append(hook)
        return self

    def leaves(self) -> list["Task"]:
        return [self]

    def __str__(self):
        return self.describe()


class GenericTask(Task):
    def __init__(self, description: str, fn: Callable[[TaskContext], None]):
        super().__init__()
        self.description = description
        self.fn = fn

    def describe(self) -> str:
        return self.description

    def run(self, context: TaskContext) -> None:
        self.fn(context)


class TaskTree(Task):
    """
    An ordered collection of tasks and sub-trees.

    :param tasks: the children, in declaration order
    :param parallel: run the children concurrently instead of one after the other
    :param best_effort: for sequential trees, keep running the remaining children after a failure
    :param concurrency_limit: max number of concurrently running children of a parallel tree (defaults to
        ``KS_TASK_CONCURRENCY_LIMIT``, or unbounded)
    """

    def __init__(
        self,
        *tasks: Task,
        parallel: bool = False,
        best_effort: bool = False,
        concurrency_limit: Optional[int] = None,
    ):
        super().__init__()
        self.tasks: list[Task] = []
        self.parallel = parallel
        self.best_effort = best_effort
        self.concurrency_limit = concurrency_limit
        self.is_sub_tree = False
        self.append(*tasks)

    def append(self, *tasks: Task) -> "TaskTree":
        for task in tasks:
            if isinstance(task, TaskTree):
                task.is_sub_tree = True
            self.tasks.append(task)
        return self

    def __len__(self):
        return len(self.tasks)

    def on_result(self, hook: ResultHook) -> "TaskTree":
        for leaf in self.leaves():
            leaf.on_result(hook)
        return self

    def leaves(self) -> list[Task]:
        leaves = []
        for task in self.tasks:
            leaves.extend(task.leaves())
        return leaves

    def describe(self) -> str:
        if not self.tasks:
            return "no tasks"
        descriptions = [task.describe() for task in self.tasks]
        if len(descriptions) == 1:
            return descriptions[0]
        noun = "sub-tasks" if self.is_sub_tree else "tasks"
        mode = "parallel" if self.parallel else "sequential"
        return f"{len(descriptions)} {mode} {noun}: {{ {', '.join(descriptions)} }}"

    def run(self, context: TaskContext) -> None:
        """Runs the tree as a task of an enclosing workflow, raising the aggregate error on failure."""
        if error := self.do(context.cancel_event):
            raise error

    def do(
        self, cancel_event: threading.Event = None, plan_mode: bool = False
    ) -> Optional[AggregateError]:
        """
        Executes the tree and returns the aggregated error of all leaf tasks, or ``None`` if every leaf succeeded.

        :param cancel_event: when set, no further leaf tasks are started. Running tasks are allowed to finish.
        :param plan_mode: only describe (and log) what would be done, without executing anything
        """
        if not self.tasks:
            LOG.debug("no tasks")
            return None
        if plan_mode:
            LOG.info("(plan) would execute %s", self.describe())
            return None

        LOG.info("%s", self.describe())
        results = self.execute(TaskContext(cancel_event))
        if all(result.ok for result in results):
            return None
        return AggregateError(results)

    def execute(self, context: TaskContext) -> list[TaskResult]:
        """Executes the tree and returns the results of all leaf tasks in declaration order."""
        if not self.tasks:
            return []
        if self.parallel:
            return self._execute_parallel(context)
        return self._execute_sequential(context)

    def _execute_sequential(self, context: TaskContext) -> list[TaskResult]:
        results = []
        failed = False
        for task in self.tasks:
            if failed and not self.best_effort:
                results.extend(skip_task(task, TaskStatus.SKIPPED))
                continue
            task_results = execute_task(task, context)
            results.extend(task_results)
            if any(result.status == TaskStatus.FAILED for result in task_results):
                failed = True
        return results

    def _execute_parallel(self, context: TaskContext) -> list[TaskResult]:
        limit = self.concurrency_limit or config.TASK_CONCURRENCY_LIMIT or len(self.tasks)
        with ThreadPoolExecutor(
            max_workers=min(limit, len(self.tasks)), thread_name_prefix="task-tree"
        ) as executor:
            futures = [executor.submit(execute_task, task, context) for task in self.tasks]
            results = []
            for future in futures:
                results.extend(future.result())
        return results


def execute_task(task: Task, context: TaskContext) -> list[TaskResult]:
    if isinstance(task, TaskTree):
        return task.execute(context)
    return [run_leaf(task, context)]


def run_leaf(task: Task, context: TaskContext) -> TaskResult:
    name = task.describe()
    if context.cancelled:
        LOG.debug("not starting cancelled task: %s", name)
        return record_result(task, TaskResult(name, TaskStatus.CANCELLED, TaskCancelledError()))

    LOG.debug("started task: %s", name)
    try:
        task.run(context)
    except Exception as e:
        LOG.warning(
            "task %s failed: %s",
            name,
            e,
            exc_info=config.KS_VERBOSE_ERRORS or LOG.isEnabledFor(logging.DEBUG),
        )
        return record_result(task, TaskResult(name, TaskStatus.FAILED, e))
    LOG.debug("completed task: %s", name)
    return record_result(task, TaskResult(name, TaskStatus.SUCCEEDED))


def skip_task(task: Task, status: TaskStatus) -> list[TaskResult]:
    return [record_result(leaf, TaskResult(leaf.describe(), status)) for leaf in task.leaves()]


def record_result(task: Task, result: TaskResult) -> TaskResult:
    """Hands the result to the hooks of the task. A failing hook turns a successful result into a failure."""
    for hook in task.result_hooks:
        try:
            hook(result)
        except Exception as e:
            LOG.warning("result hook of task %s failed: %s", result.name, e)
            if result.ok:
                result = TaskResult(result.name, TaskStatus.FAILED, e)
    return result
