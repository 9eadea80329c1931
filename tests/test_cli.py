"""Tests for the command-line interface."""

import json

import pytest

from fleetlink import cli
from fleetlink.core import DeviceBusyError, DeviceIdentity, SendResult
from fleetlink.tasks import Landing, Photo, RunStatus, TaskRunResult, Takeoff
from fleetlink.telemetry import EventBus


class _FakeRegistry:
    def __init__(self) -> None:
        self.relayed: list[tuple] = []
        self.task_uuids: list[str] = []

    async def send_device_command(self, device_ref, command):
        self.relayed.append((device_ref, command))
        return SendResult.SENT

    async def get_device_history(self, device_uuid, limit=100, offset=0):
        return [{"device_uuid": device_uuid, "limit": limit, "offset": offset}]

    async def get_task_steps(self, task_uuid):
        self.task_uuids.append(task_uuid)
        return [Takeoff(), Landing()]


class _FakeCommands:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    async def send(self, device_id, command):
        self.sent.append((device_id, command))
        return SendResult.NOT_READY if command == "fail" else SendResult.SENT


class _FakeTasks:
    def __init__(self) -> None:
        self.runs: list[tuple] = []
        self.busy = False

    async def run(self, device_id, steps):
        if self.busy:
            raise DeviceBusyError(device_id)
        self.runs.append((device_id, list(steps)))
        return TaskRunResult(
            status=RunStatus.COMPLETED, completed_steps=len(steps), total_steps=len(steps)
        )


class _FakeContext:
    last: "_FakeContext" = None

    def __init__(self, config) -> None:
        self.config = config
        self.registry = _FakeRegistry()
        self.commands = _FakeCommands()
        self.tasks = _FakeTasks()
        self.bus = EventBus()
        self.opened: list = []
        self.stopped = False
        _FakeContext.last = self

    async def open_device(self, device_ref):
        self.opened.append(device_ref)
        if device_ref == "missing":
            return None
        return DeviceIdentity(device_id=3, uuid="c0ffee-03")

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def fake_context(monkeypatch):
    monkeypatch.setattr(cli, "FleetLinkContext", _FakeContext)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    return _FakeContext


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "fleetlink.cfg"
    path.write_text("[commands]\nhost = 10.0.0.9\n", encoding="utf-8")
    return path


def test_show_config_prints_sections(config_path, capsys):
    assert cli.main(["-c", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {config_path}" in output
    assert "[commands]" in output
    assert "host = 10.0.0.9" in output


def test_run_task_requires_step_source():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["run-task", "3"])


def test_device_refs_accept_ids_and_uuids():
    args = cli.build_parser().parse_args(["monitor", "3", "c0ffee-03"])

    assert args.devices == [3, "c0ffee-03"]


def test_send_over_command_channel(fake_context, config_path, capsys):
    assert cli.main(["-c", str(config_path), "send", "3", "height:5"]) == 0

    context = fake_context.last
    assert context.commands.sent == [(3, "height:5")]
    assert context.stopped
    assert capsys.readouterr().out.strip() == "sent"


def test_send_reports_rejection(fake_context, config_path, capsys):
    assert cli.main(["-c", str(config_path), "send", "3", "fail"]) == 1
    assert capsys.readouterr().out.strip() == "not_ready"


def test_send_unknown_device_fails(fake_context, config_path):
    assert cli.main(["-c", str(config_path), "send", "missing", "up"]) == 1
    assert fake_context.last.commands.sent == []


def test_send_relay_uses_registry(fake_context, config_path):
    assert cli.main(["-c", str(config_path), "send", "c0ffee-03", "photo", "--relay"]) == 0

    context = fake_context.last
    assert context.registry.relayed == [("c0ffee-03", "photo")]
    assert context.opened == []


def test_run_task_from_steps_file(fake_context, config_path, tmp_path, capsys):
    steps_file = tmp_path / "steps.json"
    steps_file.write_text(
        json.dumps({"steps": [{"step_type": "takeoff"}, {"step_type": "photo"}]}),
        encoding="utf-8",
    )

    code = cli.main(
        ["-c", str(config_path), "run-task", "3", "--steps-file", str(steps_file)]
    )

    assert code == 0
    assert fake_context.last.tasks.runs == [(3, [Takeoff(), Photo()])]
    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert result["status"] == "completed"


def test_invalid_steps_file_fails(fake_context, config_path, tmp_path):
    steps_file = tmp_path / "steps.json"
    steps_file.write_text(json.dumps([{"step_type": "loop"}]), encoding="utf-8")

    code = cli.main(
        ["-c", str(config_path), "run-task", "3", "--steps-file", str(steps_file)]
    )

    assert code == 1
    assert fake_context.last.stopped


def test_history_prints_records(fake_context, config_path, capsys):
    code = cli.main(["-c", str(config_path), "history", "c0ffee-03", "--limit", "5"])

    assert code == 0
    record = json.loads(capsys.readouterr().out.strip())
    assert record == {"device_uuid": "c0ffee-03", "limit": 5, "offset": 0}


def test_run_task_uses_configured_default_timeout(fake_context, tmp_path):
    config_path = tmp_path / "fleetlink.cfg"
    config_path.write_text("[tasks]\ndefault_step_timeout_seconds = 12\n", encoding="utf-8")
    steps_file = tmp_path / "steps.json"
    steps_file.write_text(
        json.dumps([{"step_type": "takeoff"}, {"step_type": "landing", "timeout": 60}]),
        encoding="utf-8",
    )

    code = cli.main(
        ["-c", str(config_path), "run-task", "3", "--steps-file", str(steps_file)]
    )

    assert code == 0
    assert fake_context.last.tasks.runs == [
        (3, [Takeoff(timeout_seconds=12), Landing(timeout_seconds=60)])
    ]


def test_run_task_fetches_steps_from_registry(fake_context, config_path):
    code = cli.main(["-c", str(config_path), "run-task", "3", "--task", "t-1"])

    assert code == 0
    context = fake_context.last
    assert context.registry.task_uuids == ["t-1"]
    assert context.tasks.runs == [(3, [Takeoff(), Landing()])]
