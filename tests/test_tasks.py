"""Tests for the task sequencer."""

import asyncio
from typing import Callable, Optional

import pytest

from conftest import wait_until
from fleetlink.core import (
    ChannelKind,
    DeviceBusyError,
    DeviceNotConnectedError,
    SendResult,
    TaskDefinitionError,
)
from fleetlink.tasks import (
    Hover,
    Landing,
    MoveToHeading,
    MoveToHeight,
    Photo,
    RunStatus,
    StepStatus,
    Takeoff,
    TaskSequencer,
    Wait,
    parse_steps,
)
from fleetlink.telemetry import DeviceStateStore, EventBus, EventName

DEVICE = 5


class FakeCommands:
    """Command sender double recording every command per device."""

    def __init__(
        self,
        *,
        ready: bool = True,
        result: SendResult = SendResult.SENT,
        on_send: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.ready = ready
        self.result = result
        self.on_send = on_send
        self.sent: list[str] = []

    def is_ready(self, device_id: int) -> bool:
        return self.ready

    async def send(self, device_id: int, command: str) -> SendResult:
        self.sent.append(command)
        if self.on_send is not None:
            self.on_send(command)
        return self.result


def _sequencer(store, commands, bus=None) -> TaskSequencer:
    return TaskSequencer(
        store,
        commands,
        bus=bus,
        poll_interval=0.01,
        settle_seconds=0.01,
    )


def test_parse_steps_builds_typed_steps():
    steps = parse_steps(
        [
            {"step_type": "takeoff"},
            {"step_type": "move_to_height", "parameters": {"height": "12.5"}, "timeout": 45},
            {"step_type": "move_to_heading", "parameters": {"heading": 90}},
            {"step_type": "hover", "parameters": {"duration": 3}},
            {"step_type": "wait", "parameters": {"duration": 1.5}},
            {"step_type": "photo"},
            {"step_type": "landing", "timeout": 60},
        ]
    )

    assert steps == [
        Takeoff(),
        MoveToHeight(12.5, timeout_seconds=45),
        MoveToHeading(90.0),
        Hover(3.0),
        Wait(1.5),
        Photo(),
        Landing(timeout_seconds=60),
    ]
    assert steps[0].timeout_seconds == 30


def test_parse_steps_accepts_backend_one_click_task():
    steps = parse_steps(
        [
            {"step_type": "takeoff", "parameters": {}, "timeout": 30},
            {"step_type": "wait", "parameters": {"duration": 10}, "timeout": None},
            {"step_type": "move_to_heading", "parameters": {"heading": 0}, "timeout": 30},
            {"step_type": "move_to_height", "parameters": {"height": 1.5}, "timeout": 30},
            {"step_type": "landing", "parameters": {}, "timeout": 60},
        ]
    )

    assert steps == [
        Takeoff(),
        Wait(10.0),
        MoveToHeading(0.0),
        MoveToHeight(1.5),
        Landing(timeout_seconds=60),
    ]
    assert MoveToHeight.step_type == "move_to_height"


def test_parse_steps_accepts_camel_case_aliases():
    steps = parse_steps(
        [
            {"step_type": "moveToHeight", "parameters": {"height": 3}},
            {"step_type": "moveToHeading", "parameters": {"heading": 180}},
        ]
    )

    assert steps == [MoveToHeight(3.0), MoveToHeading(180.0)]


def test_parse_steps_applies_default_timeout():
    steps = parse_steps(
        [{"step_type": "takeoff"}, {"step_type": "landing", "timeout": 60}],
        default_timeout=12,
    )

    assert [step.timeout_seconds for step in steps] == [12, 60]


@pytest.mark.parametrize(
    "records",
    [
        [{"step_type": "barrelRoll"}],
        [{"step_type": "move_to_height", "parameters": {}}],
        [{"step_type": "wait"}],
        [{"step_type": "move_to_heading", "parameters": {"heading": "north"}}],
        [{"step_type": None}],
        [{"step_type": ["takeoff"]}],
        [{"step_type": "takeoff", "timeout": 0}],
        ["takeoff"],
    ],
)
def test_parse_steps_rejects_invalid_records(records):
    with pytest.raises(TaskDefinitionError):
        parse_steps(records)


@pytest.mark.asyncio
async def test_command_steps_run_in_order_and_publish_lifecycle():
    store = DeviceStateStore()
    bus = EventBus()
    events: list[str] = []
    bus.subscribe(lambda event: events.append(event.name.value))
    commands = FakeCommands()

    result = await _sequencer(store, commands, bus).run(DEVICE, [Takeoff(), Photo(), Landing()])

    assert result.status is RunStatus.COMPLETED
    assert result.completed_steps == 3
    assert commands.sent == ["up", "photo", "down"]
    assert events == [
        "taskStarted",
        "taskStepCompleted",
        "taskStepCompleted",
        "taskStepCompleted",
        "taskFinished",
    ]


@pytest.mark.asyncio
async def test_move_to_height_resends_until_within_tolerance():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "0"})

    def climb(command: str) -> None:
        if len(commands.sent) == 3:
            store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "4.95"})

    commands = FakeCommands(on_send=climb)

    result = await _sequencer(store, commands).run(DEVICE, [MoveToHeight(5)])

    assert result.ok
    assert commands.sent == ["height:5", "height:5", "height:5"]


@pytest.mark.asyncio
async def test_move_to_height_already_there_sends_nothing():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"location": "30 120 7.5"})
    commands = FakeCommands()

    result = await _sequencer(store, commands).run(DEVICE, [MoveToHeight(7.5)])

    assert result.ok
    assert commands.sent == []


@pytest.mark.asyncio
async def test_move_to_heading_tolerates_wraparound():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"attitude": "0 0 359"})
    commands = FakeCommands()

    result = await _sequencer(store, commands).run(DEVICE, [MoveToHeading(1)])

    assert result.ok
    assert commands.sent == []


@pytest.mark.asyncio
async def test_timeout_aborts_remaining_steps():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"heading": "0"})
    commands = FakeCommands()

    result = await _sequencer(store, commands).run(
        DEVICE, [MoveToHeading(90, timeout_seconds=0.05), Landing()]
    )

    assert result.status is RunStatus.TIMED_OUT
    assert result.failed_step == 0
    assert result.code == "step_timeout"
    assert "down" not in commands.sent
    assert set(commands.sent) == {"heading:90"}


@pytest.mark.asyncio
async def test_unconverged_height_times_out_after_step_timeout():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "0"})
    commands = FakeCommands()
    poll_interval = 0.05
    timeout = 0.3
    sequencer = TaskSequencer(store, commands, poll_interval=poll_interval)

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await sequencer.run(DEVICE, [MoveToHeight(5, timeout_seconds=timeout)])
    elapsed = loop.time() - started

    assert result.status is RunStatus.TIMED_OUT
    assert timeout <= elapsed <= timeout + poll_interval + 0.1
    assert set(commands.sent) == {"height:5"}
    assert len(commands.sent) >= 3
    assert sequencer.progress(DEVICE).step_status is StepStatus.STEP_TIMED_OUT


@pytest.mark.asyncio
async def test_stop_during_height_polling_sends_nothing_further():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "0"})
    commands = FakeCommands()
    sequencer = TaskSequencer(store, commands, poll_interval=0.02)

    run = asyncio.create_task(
        sequencer.run(DEVICE, [MoveToHeight(5, timeout_seconds=30), Landing()])
    )
    await wait_until(lambda: len(commands.sent) >= 2)

    sent_before_stop = len(commands.sent)
    assert sequencer.stop(DEVICE) is True
    result = await asyncio.wait_for(run, timeout=1.0)
    await asyncio.sleep(0.1)

    assert result.status is RunStatus.CANCELLED
    assert result.code == "cancelled"
    assert len(commands.sent) == sent_before_stop
    assert "down" not in commands.sent


@pytest.mark.asyncio
async def test_step_status_moves_from_dispatched_to_polling_to_done():
    store = DeviceStateStore()
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "0"})
    bus = EventBus()
    completed = []
    bus.subscribe(completed.append, names=[EventName.TASK_STEP_COMPLETED])
    phases: list = []

    def observe(command: str) -> None:
        phases.append(sequencer.progress(DEVICE).step_status)

    commands = FakeCommands(on_send=observe)
    sequencer = TaskSequencer(store, commands, bus=bus, poll_interval=0.02)

    run = asyncio.create_task(sequencer.run(DEVICE, [MoveToHeight(5)]))
    await wait_until(
        lambda: sequencer.progress(DEVICE) is not None
        and sequencer.progress(DEVICE).step_status is StepStatus.POLLING
    )
    store.apply_update(DEVICE, ChannelKind.PRIMARY, {"height": "5"})
    result = await asyncio.wait_for(run, timeout=1.0)

    assert result.ok
    assert phases[0] is StepStatus.DISPATCHED
    assert sequencer.progress(DEVICE).step_status is StepStatus.STEP_DONE
    assert completed[0].payload["status"] == "step_done"


@pytest.mark.asyncio
async def test_rejected_send_fails_run():
    store = DeviceStateStore()
    commands = FakeCommands(result=SendResult.NOT_READY)

    result = await _sequencer(store, commands).run(DEVICE, [Takeoff(), Landing()])

    assert result.status is RunStatus.FAILED
    assert result.code == "send_rejected"
    assert commands.sent == ["up"]


@pytest.mark.asyncio
async def test_second_run_is_rejected_and_first_is_untouched():
    store = DeviceStateStore()
    commands = FakeCommands()
    sequencer = _sequencer(store, commands)

    first = asyncio.create_task(sequencer.run(DEVICE, [Hover(0.2), Photo()]))
    await wait_until(lambda: sequencer.is_running(DEVICE))

    with pytest.raises(DeviceBusyError):
        await sequencer.run(DEVICE, [Takeoff()])

    result = await first
    assert result.ok
    assert commands.sent == ["photo"]
    assert not sequencer.is_running(DEVICE)


@pytest.mark.asyncio
async def test_concurrent_runs_only_one_wins():
    sequencer = _sequencer(DeviceStateStore(), FakeCommands())

    outcomes = await asyncio.gather(
        sequencer.run(DEVICE, [Wait(0.05)]),
        sequencer.run(DEVICE, [Wait(0.05)]),
        return_exceptions=True,
    )

    assert sum(isinstance(item, DeviceBusyError) for item in outcomes) == 1


@pytest.mark.asyncio
async def test_stop_cancels_delay_promptly():
    commands = FakeCommands()
    sequencer = TaskSequencer(DeviceStateStore(), commands, poll_interval=0.05)

    run = asyncio.create_task(sequencer.run(DEVICE, [Wait(30), Landing()]))
    await wait_until(lambda: sequencer.is_running(DEVICE))

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert sequencer.stop(DEVICE) is True
    result = await asyncio.wait_for(run, timeout=1.0)

    assert result.status is RunStatus.CANCELLED
    assert loop.time() - started < 0.5
    assert commands.sent == []
    assert sequencer.stop() is False


@pytest.mark.asyncio
async def test_not_connected_device_is_rejected():
    sequencer = _sequencer(DeviceStateStore(), FakeCommands(ready=False))

    with pytest.raises(DeviceNotConnectedError):
        await sequencer.run(DEVICE, [Takeoff()])

    assert not sequencer.is_running(DEVICE)


@pytest.mark.asyncio
async def test_progress_reports_current_step():
    sequencer = _sequencer(DeviceStateStore(), FakeCommands())
    assert sequencer.progress(DEVICE) is None

    run = asyncio.create_task(sequencer.run(DEVICE, [Photo(), Wait(0.3)]))
    await wait_until(
        lambda: sequencer.progress(DEVICE) is not None
        and sequencer.progress(DEVICE).current_index == 1
    )

    progress = sequencer.progress(DEVICE)
    assert progress.running
    assert progress.total_steps == 2
    assert progress.current_step == Wait(0.3)

    await run
    finished = sequencer.progress(DEVICE)
    assert finished.running is False
    assert finished.current_step is None
    assert finished.current_index == 2


@pytest.mark.asyncio
async def test_task_finished_event_carries_result():
    bus = EventBus()
    finished = []
    bus.subscribe(finished.append, names=[EventName.TASK_FINISHED])
    sequencer = _sequencer(DeviceStateStore(), FakeCommands(), bus)

    await sequencer.run(DEVICE, [])

    assert finished[0].device_id == DEVICE
    assert finished[0].payload["status"] == "completed"
    assert finished[0].payload["totalSteps"] == 0
