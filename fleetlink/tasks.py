"""Sequential execution of flight task steps against one device.

A run walks its steps in order. Command steps send a literal command and
let the aircraft settle; movement steps re-send their target every poll
until the reconciled state is within tolerance; delay steps simply wait.
The first step that times out, fails or is cancelled ends the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .core import (
    CommandSender,
    DeviceBusyError,
    DeviceNotConnectedError,
    StateReader,
    TaskDefinitionError,
)
from .telemetry.event_types import EventName
from .telemetry.events import EventBus

LOGGER = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 30.0


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class TaskStep:
    timeout_seconds: float = field(default=DEFAULT_STEP_TIMEOUT, kw_only=True)

    step_type: ClassVar[str] = ""

    def describe(self) -> Dict[str, Any]:
        return {"step_type": self.step_type, "timeout": self.timeout_seconds}


@dataclass(frozen=True)
class CommandStep(TaskStep):
    """A step that sends one fixed command and then settles."""

    command: ClassVar[str] = ""


@dataclass(frozen=True)
class Takeoff(CommandStep):
    step_type: ClassVar[str] = "takeoff"
    command: ClassVar[str] = "up"


@dataclass(frozen=True)
class Landing(CommandStep):
    step_type: ClassVar[str] = "landing"
    command: ClassVar[str] = "down"


@dataclass(frozen=True)
class Photo(CommandStep):
    step_type: ClassVar[str] = "photo"
    command: ClassVar[str] = "photo"


@dataclass(frozen=True)
class MoveToHeight(TaskStep):
    height: float
    step_type: ClassVar[str] = "move_to_height"


@dataclass(frozen=True)
class MoveToHeading(TaskStep):
    heading: float
    step_type: ClassVar[str] = "move_to_heading"


@dataclass(frozen=True)
class Wait(TaskStep):
    duration_seconds: float
    step_type: ClassVar[str] = "wait"


@dataclass(frozen=True)
class Hover(TaskStep):
    duration_seconds: float
    step_type: ClassVar[str] = "hover"


_SIMPLE_STEPS = {cls.step_type: cls for cls in (Takeoff, Landing, Photo)}
_PARAMETER_STEPS = {
    MoveToHeight.step_type: (MoveToHeight, "height", "height"),
    MoveToHeading.step_type: (MoveToHeading, "heading", "heading"),
    Wait.step_type: (Wait, "duration", "duration_seconds"),
    Hover.step_type: (Hover, "duration", "duration_seconds"),
}
# camelCase spellings used by hand-written step files
_STEP_ALIASES = {
    "moveToHeight": MoveToHeight.step_type,
    "moveToHeading": MoveToHeading.step_type,
}


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise TaskDefinitionError(f"{what} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise TaskDefinitionError(f"{what} must be a number, got {value!r}") from None


def parse_step(
    record: Mapping[str, Any], *, default_timeout: float = DEFAULT_STEP_TIMEOUT
) -> TaskStep:
    """Build a step from a ``{"step_type", "parameters", "timeout"}`` record.

    ``default_timeout`` applies when the record carries no ``timeout``.
    """

    step_type = record.get("step_type")
    if not isinstance(step_type, str):
        raise TaskDefinitionError(f"Unknown step type: {step_type!r}")
    step_type = _STEP_ALIASES.get(step_type, step_type)
    timeout_value = record.get("timeout")
    timeout = (
        default_timeout
        if timeout_value is None
        else _number(timeout_value, "timeout")
    )
    if timeout <= 0:
        raise TaskDefinitionError(f"timeout must be positive, got {timeout}")

    simple = _SIMPLE_STEPS.get(step_type)
    if simple is not None:
        return simple(timeout_seconds=timeout)

    entry = _PARAMETER_STEPS.get(step_type)
    if entry is None:
        raise TaskDefinitionError(f"Unknown step type: {step_type!r}")

    cls, key, attribute = entry
    parameters = record.get("parameters") or {}
    if not isinstance(parameters, Mapping) or parameters.get(key) is None:
        raise TaskDefinitionError(f"{step_type} step requires parameter {key!r}")

    value = _number(parameters[key], key)
    if attribute == "duration_seconds" and value < 0:
        raise TaskDefinitionError(f"{step_type} duration must not be negative")
    return cls(**{attribute: value}, timeout_seconds=timeout)


def parse_steps(
    payload: Iterable[Mapping[str, Any]], *, default_timeout: float = DEFAULT_STEP_TIMEOUT
) -> List[TaskStep]:
    steps: List[TaskStep] = []
    for index, record in enumerate(payload):
        if not isinstance(record, Mapping):
            raise TaskDefinitionError(f"Step {index} is not an object")
        try:
            steps.append(parse_step(record, default_timeout=default_timeout))
        except TaskDefinitionError as exc:
            raise TaskDefinitionError(f"Step {index}: {exc}") from None
    return steps


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
class RunStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Phase of the current step: ``dispatched`` then ``polling`` then a terminal status."""

    DISPATCHED = "dispatched"
    POLLING = "polling"
    STEP_DONE = "step_done"
    STEP_TIMED_OUT = "step_timed_out"
    STEP_CANCELLED = "step_cancelled"
    STEP_FAILED = "step_failed"


_RUN_STATUS = {
    StepStatus.STEP_TIMED_OUT: RunStatus.TIMED_OUT,
    StepStatus.STEP_CANCELLED: RunStatus.CANCELLED,
    StepStatus.STEP_FAILED: RunStatus.FAILED,
}

_STATUS_CODES = {
    RunStatus.TIMED_OUT: "step_timeout",
    RunStatus.CANCELLED: "cancelled",
    RunStatus.FAILED: "send_rejected",
}


@dataclass(frozen=True, slots=True)
class TaskRunResult:
    status: RunStatus
    completed_steps: int
    total_steps: int
    failed_step: Optional[int] = None
    code: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "completedSteps": self.completed_steps,
            "totalSteps": self.total_steps,
            "failedStep": self.failed_step,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class TaskProgress:
    device_id: int
    running: bool
    current_index: int
    total_steps: int
    current_step: Optional[TaskStep]
    started_at: datetime
    step_status: Optional[StepStatus] = None


@dataclass
class _ActiveRun:
    device_id: int
    steps: Tuple[TaskStep, ...]
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    index: int = 0
    step_status: Optional[StepStatus] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def progress(self, running: bool = True) -> TaskProgress:
        current = self.steps[self.index] if running and self.index < len(self.steps) else None
        return TaskProgress(
            device_id=self.device_id,
            running=running,
            current_index=self.index,
            total_steps=len(self.steps),
            current_step=current,
            started_at=self.started_at,
            step_status=self.step_status,
        )


def _format_target(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _heading_error(current: float, target: float) -> float:
    difference = abs(current - target) % 360.0
    return min(difference, 360.0 - difference)


# ----------------------------------------------------------------------
# Sequencer
# ----------------------------------------------------------------------
class TaskSequencer:
    """Runs at most one task per device at a time."""

    def __init__(
        self,
        store: StateReader,
        commands: CommandSender,
        *,
        bus: Optional[EventBus] = None,
        poll_interval: float = 1.0,
        settle_seconds: float = 2.0,
        height_tolerance: float = 0.1,
        heading_tolerance: float = 3.0,
    ) -> None:
        self._store = store
        self._commands = commands
        self._bus = bus
        self.poll_interval = poll_interval
        self.settle_seconds = settle_seconds
        self.height_tolerance = height_tolerance
        self.heading_tolerance = heading_tolerance

        self._active: Dict[int, _ActiveRun] = {}
        self._finished: Dict[int, TaskProgress] = {}

    def is_running(self, device_id: int) -> bool:
        return device_id in self._active

    def progress(self, device_id: int) -> Optional[TaskProgress]:
        run = self._active.get(device_id)
        if run is not None:
            return run.progress()
        return self._finished.get(device_id)

    def stop(self, device_id: Optional[int] = None) -> bool:
        """Request cancellation of one device's run, or every run.

        Returns True if at least one active run was signalled.
        """

        if device_id is None:
            runs = list(self._active.values())
        else:
            run = self._active.get(device_id)
            runs = [run] if run is not None else []

        for run in runs:
            LOGGER.info("Stopping task on device %s", run.device_id)
            run.cancel.set()
        return bool(runs)

    async def run(self, device_id: int, steps: Sequence[TaskStep]) -> TaskRunResult:
        """Execute ``steps`` on ``device_id`` and return the terminal outcome.

        Raises:
            DeviceBusyError: another run is active for the device.
            DeviceNotConnectedError: the device has no ready command channel.
        """

        # No await between the check and the registration.
        if device_id in self._active:
            raise DeviceBusyError(device_id)
        if not self._commands.is_ready(device_id):
            raise DeviceNotConnectedError(device_id)

        run = _ActiveRun(device_id=device_id, steps=tuple(steps))
        self._active[device_id] = run
        self._finished.pop(device_id, None)

        LOGGER.info("Starting task on device %s with %d steps", device_id, len(run.steps))
        self._emit(EventName.TASK_STARTED, device_id, total_steps=len(run.steps))

        try:
            result = await self._execute(run)
        finally:
            if self._active.get(device_id) is run:
                del self._active[device_id]
            self._finished[device_id] = run.progress(running=False)

        LOGGER.info(
            "Task on device %s finished: %s after %d/%d steps",
            device_id,
            result.status.value,
            result.completed_steps,
            result.total_steps,
        )
        self._emit(EventName.TASK_FINISHED, device_id, **result.as_dict())
        return result

    async def _execute(self, run: _ActiveRun) -> TaskRunResult:
        total = len(run.steps)
        for index, step in enumerate(run.steps):
            run.index = index
            run.step_status = StepStatus.DISPATCHED
            LOGGER.debug("Device %s step %d: %s", run.device_id, index, step.step_type)

            status, detail = await self._execute_step(run, step)
            run.step_status = status
            if status is not StepStatus.STEP_DONE:
                run_status = _RUN_STATUS[status]
                return TaskRunResult(
                    status=run_status,
                    completed_steps=index,
                    total_steps=total,
                    failed_step=index,
                    code=_STATUS_CODES[run_status],
                    message=detail,
                )

            self._emit(
                EventName.TASK_STEP_COMPLETED,
                run.device_id,
                index=index,
                step_type=step.step_type,
                status=status.value,
            )

        run.index = total
        return TaskRunResult(
            status=RunStatus.COMPLETED, completed_steps=total, total_steps=total
        )

    async def _execute_step(
        self, run: _ActiveRun, step: TaskStep
    ) -> Tuple[StepStatus, Optional[str]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + step.timeout_seconds

        if isinstance(step, CommandStep):
            if run.cancelled:
                return StepStatus.STEP_CANCELLED, None
            result = await self._commands.send(run.device_id, step.command)
            if not result.ok:
                return StepStatus.STEP_FAILED, f"{step.command!r} rejected: {result.value}"
            return await self._delay(run, self.settle_seconds, deadline), None

        if isinstance(step, MoveToHeight):
            return await self._converge(
                run,
                lambda state: state.altitude,
                step.height,
                lambda current, target: abs(current - target),
                self.height_tolerance,
                f"height:{_format_target(step.height)}",
                deadline,
            )

        if isinstance(step, MoveToHeading):
            return await self._converge(
                run,
                lambda state: state.heading,
                step.heading,
                _heading_error,
                self.heading_tolerance,
                f"heading:{_format_target(step.heading)}",
                deadline,
            )

        if isinstance(step, (Wait, Hover)):
            return await self._delay(run, step.duration_seconds), None

        raise TaskDefinitionError(f"Unsupported step: {step!r}")

    async def _converge(
        self,
        run: _ActiveRun,
        read,
        target: float,
        error,
        tolerance: float,
        command: str,
        deadline: float,
    ) -> Tuple[StepStatus, Optional[str]]:
        loop = asyncio.get_running_loop()
        while True:
            if run.cancelled:
                return StepStatus.STEP_CANCELLED, None

            state = self._store.get_state(run.device_id)
            current = read(state) if state is not None else None
            if current is not None and error(current, target) < tolerance:
                return StepStatus.STEP_DONE, None

            if loop.time() >= deadline:
                return StepStatus.STEP_TIMED_OUT, f"last reading {current!r}, target {target}"

            result = await self._commands.send(run.device_id, command)
            if not result.ok:
                return StepStatus.STEP_FAILED, f"{command!r} rejected: {result.value}"
            run.step_status = StepStatus.POLLING

            if await self._pause(run, self.poll_interval):
                return StepStatus.STEP_CANCELLED, None

    async def _delay(
        self, run: _ActiveRun, seconds: float, deadline: Optional[float] = None
    ) -> StepStatus:
        loop = asyncio.get_running_loop()
        end = loop.time() + seconds
        run.step_status = StepStatus.POLLING
        while True:
            if run.cancelled:
                return StepStatus.STEP_CANCELLED
            now = loop.time()
            if now >= end:
                return StepStatus.STEP_DONE
            if deadline is not None and now >= deadline:
                return StepStatus.STEP_TIMED_OUT

            limit = end if deadline is None else min(end, deadline)
            if await self._pause(run, min(self.poll_interval, limit - now)):
                return StepStatus.STEP_CANCELLED

    @staticmethod
    async def _pause(run: _ActiveRun, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if the run was cancelled meanwhile."""
        try:
            await asyncio.wait_for(run.cancel.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    def _emit(self, name: EventName, device_id: int, **payload: Any) -> None:
        if self._bus is not None:
            self._bus.emit(name, device_id=device_id, **payload)
