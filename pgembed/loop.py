import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from ddtrace.trace import tracer

from .embeddings import Embedder
from .errors import BackendInvocationError
from .ml_options import MlOptions
from .options import Configuration
from .status import SUCCESS_STATUS, accept
from .store import TableStore

logger = structlog.get_logger()

Clock = Callable[[], float]


@dataclass
class RunState:
    """
    Progress of one run of the loop.

    Attributes:
        start_timestamp: Clock reading taken when the loop started.
        rows_affected_last_batch: Rows inserted by the latest iteration.
        rows_selected_last_batch: Pending rows found by the latest iteration.
        iterations: Iterations completed.
        rows_inserted: Rows inserted by all iterations.
        converged: True if the loop stopped because no pending row was left,
            False if it ran out of time or only retryable failures remain.
    """

    start_timestamp: float
    rows_affected_last_batch: int = 0
    rows_selected_last_batch: int = 0
    iterations: int = 0
    rows_inserted: int = 0
    converged: bool = False


@dataclass
class BatchOutcome:
    selected: int = 0
    inserted: int = 0
    retryable: int = 0
    failed: int = 0


class ConvergenceLoop:
    """
    Embeds pending source rows, one bounded batch at a time, until no batch
    inserts anything or the time budget is spent.

    Each iteration selects at most ``batch_size`` source rows with no
    destination row, embeds them, and appends every result that is not a
    retryable failure. Rows that failed with a retryable error never reach
    the destination, so a later iteration selects them again. Failures of
    the store or the backend are not caught here: a failed run is resumed
    by running it again.

    Attributes:
        store (TableStore): Reads source rows and writes destination rows.
        embedder (Embedder): The embedding backend.
        configuration (Configuration): Batch size and time budget.
        ml_options (MlOptions): Options passed to every backend call.
        clock (Clock): Monotonic seconds, used for the time budget.
    """

    def __init__(
        self,
        store: TableStore,
        embedder: Embedder,
        configuration: Configuration,
        ml_options: MlOptions,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.embedder = embedder
        self.configuration = configuration
        self.ml_options = ml_options
        self.clock = clock

    def elapsed(self, state: RunState) -> float:
        return self.clock() - state.start_timestamp

    def should_stop(self, state: RunState) -> bool:
        if state.rows_affected_last_batch == 0:
            state.converged = state.rows_selected_last_batch == 0
            return True
        return self.elapsed(state) >= self.configuration.termination_time_secs

    async def run(self) -> RunState:
        """
        Embedding loop. Iterates until convergence or timeout. The time
        budget is only checked between iterations.

        Returns:
            RunState: The final state of the run.
        """
        state = RunState(start_timestamp=self.clock())
        while True:
            outcome = await self._do_batch()
            state.iterations += 1
            state.rows_affected_last_batch = outcome.inserted
            state.rows_selected_last_batch = outcome.selected
            state.rows_inserted += outcome.inserted
            await logger.ainfo(
                "batch done",
                iteration=state.iterations,
                selected=outcome.selected,
                inserted=outcome.inserted,
                retryable=outcome.retryable,
                failed=outcome.failed,
                elapsed=round(self.elapsed(state), 3),
            )
            if self.should_stop(state):
                break

        await logger.ainfo(
            "finished embedding",
            converged=state.converged,
            iterations=state.iterations,
            rows_inserted=state.rows_inserted,
        )
        return state

    @tracer.wrap()
    async def _do_batch(self) -> BatchOutcome:
        """
        Runs one iteration: select, materialize, embed, filter, insert.

        Returns:
            BatchOutcome: What the iteration selected and inserted.
        """
        outcome = BatchOutcome()
        async with self.store.materialize_pending(self.configuration.batch_size) as rows:
            outcome.selected = len(rows)
            if not rows:
                return outcome

            results = await self.embedder.embed(rows, self.ml_options)
            if len(results) != len(rows):
                raise BackendInvocationError(
                    f"expected {len(rows)} embedding results, got {len(results)}"
                )

            accepted = [r for r in results if accept(r)]
            outcome.retryable = len(results) - len(accepted)
            outcome.failed = sum(1 for r in accepted if r.status != SUCCESS_STATUS)

            outcome.inserted = await self.store.insert(
                [
                    r.to_target_row(self.ml_options.flatten_json_output)
                    for r in accepted
                ]
            )
        return outcome
