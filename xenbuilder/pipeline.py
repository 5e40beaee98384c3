"""Sequential step pipeline with cooperative cancellation.

A :class:`Runner` executes its steps strictly in order against one
:class:`~xenbuilder.state.BuildState`. Each step answers with a
:class:`StepAction`:

* ``CONTINUE`` - move on to the next step;
* ``HALT`` - stop early without an error;
* ``ERROR`` - stop; the step has stored its error under ``StateKey.ERROR``.

The runner never retries a step and never undoes finished ones. Steps that
allocate resources clean up after themselves or register a cleanup with the
build state.
"""

from __future__ import annotations

import enum
import threading
from typing import Iterable, List, Optional

from xenbuilder.exceptions import BuildError, StepError
from xenbuilder.state import BuildState, CancelToken, StateKey
from xenbuilder.utils import log


class StepAction(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"
    ERROR = "error"


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED}


def _coerce_error(state: BuildState) -> None:
    # Steps may store a plain message; callers re-raise whatever is stored.
    error = state.error
    if not isinstance(error, BaseException):
        state.put(StateKey.ERROR, StepError(str(error)))


class Step:
    """One provisioning action in the pipeline."""

    name = ""

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name or type(self).__name__

    def fail(self, state: BuildState, message: str) -> StepAction:
        """Record ``message`` as the build error and stop the pipeline."""
        state.put(StateKey.ERROR, StepError(message))
        ui = state.get(StateKey.UI)
        if ui is not None:
            ui.error(message)
        else:
            log("ERROR", message)
        return StepAction.ERROR


class Runner:
    def __init__(self, steps: Iterable[Step], token: Optional[CancelToken] = None) -> None:
        self.steps: List[Step] = list(steps)
        self.token = token or CancelToken()
        self._state = RunState.IDLE
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._run_thread: Optional[int] = None

    @property
    def state(self) -> RunState:
        return self._state

    def run(self, state: BuildState) -> RunState:
        with self._lock:
            if self._state is not RunState.IDLE:
                raise BuildError(f"Runner already used (state: {self._state.value})")
            self._state = RunState.RUNNING
            self._run_thread = threading.get_ident()
        state.put(StateKey.CANCEL, self.token)
        try:
            self._state = self._execute(state)
        finally:
            if self._state is RunState.RUNNING:
                self._state = RunState.FAILED
            self._done.set()
        log("DEBUG", f"Step pipeline finished: {self._state.value}")
        return self._state

    def _execute(self, state: BuildState) -> RunState:
        for step in self.steps:
            name = step.describe()
            if self.token.cancelled:
                log("INFO", f"Cancellation observed before {name}")
                return RunState.CANCELLED
            log("DEBUG", f"Running step {name}")
            try:
                action = step.run(state)
            except BuildError as exc:
                state.put(StateKey.ERROR, exc)
                action = StepAction.ERROR
            except Exception as exc:
                error = StepError(f"{name}: {exc}")
                error.__cause__ = exc
                state.put(StateKey.ERROR, error)
                action = StepAction.ERROR

            if self.token.cancelled:
                log("INFO", f"Cancellation observed after {name}")
                return RunState.CANCELLED
            if action is StepAction.CONTINUE:
                continue
            if action is StepAction.HALT:
                if state.error is None:
                    return RunState.COMPLETED
                _coerce_error(state)
                return RunState.FAILED
            if action is StepAction.ERROR:
                if state.error is None:
                    state.put(StateKey.ERROR, StepError(f"{name} failed without reporting an error"))
                _coerce_error(state)
                return RunState.FAILED
            state.put(StateKey.ERROR, StepError(f"{name} returned an unexpected result: {action!r}"))
            return RunState.FAILED
        return RunState.COMPLETED

    def cancel(self) -> None:
        """Request cancellation; block until the run returns unless called from inside it."""
        self.token.cancel()
        with self._lock:
            running = self._state is RunState.RUNNING
            same_thread = self._run_thread == threading.get_ident()
        if running and not same_thread:
            log("INFO", "Cancelling the step runner...")
            self._done.wait()
