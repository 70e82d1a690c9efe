"""Step orchestration for provisioning operations.

A SetupController runs named steps in the order they were added.  Global steps
run once; node steps run for every selected node on a bounded thread pool.  A
node step that raises marks only that node as faulted, its siblings finish, and
the run stops before the next step.  Steps given an idempotent id are recorded
in a StepStore and skipped when a later run finds them already complete.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from cluster_hosting.exceptions import ClusterHostingError, PartialNodeFailure
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.node import NodeDefinition

logger = get_logger(__name__)

DEFAULT_MAX_PARALLEL = 8

STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_DONE = "done"
STEP_SKIPPED = "skipped"
STEP_FAILED = "failed"


class StepStore(Protocol):
    """Records which idempotent steps have completed, per node."""

    def is_complete(self, step_id: str, node_name: str | None = None) -> bool: ...

    def mark_complete(self, step_id: str, node_name: str | None = None) -> None: ...


class MemoryStepStore:
    """StepStore kept in memory for the lifetime of one process."""

    def __init__(self):
        self._completed: set[tuple[str, str | None]] = set()
        self._lock = threading.Lock()

    def is_complete(self, step_id: str, node_name: str | None = None) -> bool:
        with self._lock:
            return (step_id, node_name) in self._completed

    def mark_complete(self, step_id: str, node_name: str | None = None) -> None:
        with self._lock:
            self._completed.add((step_id, node_name))


@dataclass
class SetupStep:
    """A registered step."""

    label: str
    global_action: Callable[["SetupController"], None] | None = None
    node_action: Callable[["SetupController", NodeDefinition], None] | None = None
    predicate: Callable[[NodeDefinition], bool] | None = None
    no_parallel_limit: bool = False
    quiet: bool = False
    idempotent_id: str | None = None
    status: str = STEP_PENDING

    @property
    def is_global(self) -> bool:
        return self.global_action is not None


class SetupController:
    """Runs global and per-node steps and tracks their status."""

    def __init__(
        self,
        title: str,
        nodes: list[NodeDefinition],
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        step_store: StepStore | None = None,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the controller.

        Args:
            title: Operation title used in status messages
            nodes: Nodes available to node steps
            max_parallel: Maximum nodes processed at once by a node step
            step_store: Where idempotent step completion is recorded
            on_status: Called with every status message
        """
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")

        self.title = title
        self.nodes = list(nodes)
        self.max_parallel = max_parallel
        self.step_store = step_store or MemoryStepStore()
        self.on_status = on_status
        self.cancel_event = threading.Event()
        self.steps: list[SetupStep] = []
        self.error: ClusterHostingError | None = None
        self.operation_status = ""

        self._state: dict[str, Any] = {}
        self._node_status: dict[str, str] = {node.name: "" for node in self.nodes}
        self._faulted: set[str] = set()
        self._lock = threading.Lock()

    def add_global_step(
        self,
        label: str,
        action: Callable[["SetupController"], None],
        quiet: bool = False,
        idempotent_id: str | None = None,
    ) -> None:
        """Append a step that runs once."""
        self.steps.append(
            SetupStep(label=label, global_action=action, quiet=quiet, idempotent_id=idempotent_id)
        )

    def add_node_step(
        self,
        label: str,
        action: Callable[["SetupController", NodeDefinition], None],
        predicate: Callable[[NodeDefinition], bool] | None = None,
        quiet: bool = False,
        no_parallel_limit: bool = False,
        idempotent_id: str | None = None,
    ) -> None:
        """Append a step that runs for every node accepted by predicate."""
        self.steps.append(
            SetupStep(
                label=label,
                node_action=action,
                predicate=predicate,
                quiet=quiet,
                no_parallel_limit=no_parallel_limit,
                idempotent_id=idempotent_id,
            )
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value shared between steps."""
        with self._lock:
            return self._state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Share a value between steps."""
        with self._lock:
            self._state[key] = value

    def set_operation_status(self, status: str = "") -> None:
        self.operation_status = status
        if status:
            self._report(status)

    def set_node_status(self, node_name: str, status: str) -> None:
        with self._lock:
            self._node_status[node_name] = status
        self._report(f"{node_name}: {status}")

    def node_status(self, node_name: str) -> str:
        with self._lock:
            return self._node_status.get(node_name, "")

    @property
    def faulted_nodes(self) -> list[str]:
        with self._lock:
            return sorted(self._faulted)

    def cancel(self) -> None:
        """Request cooperative cancellation of the running operation."""
        self.cancel_event.set()

    @property
    def is_cancel_pending(self) -> bool:
        return self.cancel_event.is_set()

    def run(self) -> bool:
        """Perform the steps in the order they were added.

        Returns:
            True if every step completed; False on failure or cancellation
        """
        logger.info(f"Starting: {self.title}")

        for number, step in enumerate(self.steps, start=1):
            if self.is_cancel_pending:
                logger.warning(f"{self.title} cancelled before step '{step.label}'")
                return False

            if not step.quiet:
                self._report(f"[{number}/{len(self.steps)}] {step.label}")

            step.status = STEP_RUNNING
            succeeded = self._run_global(step) if step.is_global else self._run_nodes(step)
            if not succeeded:
                step.status = STEP_FAILED
                return False

        if self.is_cancel_pending:
            return False

        for node in self.nodes:
            self.set_node_status(node.name, "ready")
        logger.info(f"Completed: {self.title}")
        return True

    def throw_on_error(self) -> None:
        """Raise the error that stopped the last run, if any."""
        if self.error is not None:
            raise self.error

    def _run_global(self, step: SetupStep) -> bool:
        if step.idempotent_id and self.step_store.is_complete(step.idempotent_id):
            logger.debug(f"Skipping completed step '{step.label}'")
            step.status = STEP_SKIPPED
            return True

        try:
            step.global_action(self)
        except ClusterHostingError as e:
            logger.error(f"Step '{step.label}' failed: {e.message}")
            self.error = e
            return False

        if step.idempotent_id and not self.is_cancel_pending:
            self.step_store.mark_complete(step.idempotent_id)
        step.status = STEP_DONE
        return True

    def _run_nodes(self, step: SetupStep) -> bool:
        selected = [n for n in self.nodes if step.predicate is None or step.predicate(n)]
        pending = [
            n
            for n in selected
            if not (step.idempotent_id and self.step_store.is_complete(step.idempotent_id, n.name))
        ]

        if not pending:
            step.status = STEP_SKIPPED if selected else STEP_DONE
            return True

        workers = len(pending) if step.no_parallel_limit else min(self.max_parallel, len(pending))
        failures: dict[str, Exception] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="setup") as pool:
            futures = {pool.submit(self._run_node, step, node): node for node in pending}
            for future in as_completed(futures):
                node = futures[future]
                error = future.result()
                if error is not None:
                    failures[node.name] = error

        if failures:
            self.error = PartialNodeFailure(step.label, failures)
            logger.error(self.error.message)
            return False

        step.status = STEP_DONE
        return True

    def _run_node(self, step: SetupStep, node: NodeDefinition) -> Exception | None:
        """Run a node action, returning the exception it raised instead of propagating it."""
        if self.is_cancel_pending:
            return None

        try:
            step.node_action(self, node)
        except Exception as e:
            logger.exception(f"Node '{node.name}' failed step '{step.label}'")
            with self._lock:
                self._faulted.add(node.name)
            self.set_node_status(node.name, f"[fault] {e}")
            return e

        if step.idempotent_id and not self.is_cancel_pending:
            self.step_store.mark_complete(step.idempotent_id, node.name)
        return None

    def _report(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            self.on_status(message)
