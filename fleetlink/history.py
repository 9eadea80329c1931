"""Optional forwarding of device readings to a history service.

The first reading of each device, and then one reading every
``immediate_interval`` seconds, is handed to the sink right away. Everything
else is buffered and flushed in batches every ``flush_interval`` seconds.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .core import DecodedFrame, HistorySink

LOGGER = logging.getLogger(__name__)


class HistoryRecorder:
    def __init__(
        self,
        sink: HistorySink,
        *,
        immediate_interval: float = 30.0,
        flush_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._immediate_interval = max(0.0, immediate_interval)
        self._flush_interval = max(0.05, flush_interval)
        self._clock = clock
        self._last_immediate: Dict[int, float] = {}
        self._pending: List[Dict[str, Any]] = []
        self._flush_requested: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def record(self, frame: DecodedFrame) -> bool:
        """Queue a reading. Returns True when it is due for immediate delivery."""

        if frame.is_heartbeat:
            return False

        self._pending.append(
            {
                "device_id": frame.device_id,
                "data_type": frame.channel.value,
                "data_content": dict(frame.fields),
                "received_at": (
                    frame.timestamp or datetime.now(timezone.utc)
                ).isoformat(),
            }
        )

        now = self._clock()
        last = self._last_immediate.get(frame.device_id)
        if last is not None and now - last < self._immediate_interval:
            return False

        self._last_immediate[frame.device_id] = now
        if self._flush_requested is not None:
            self._flush_requested.set()
        return True

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._flush_requested = asyncio.Event()
        self._task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush()

    async def flush(self) -> int:
        if not self._pending:
            return 0

        batch, self._pending = self._pending, []
        try:
            result = self._sink(batch)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("History sink failed; %d readings lost", len(batch))
            return 0

        LOGGER.debug("Flushed %d readings to history", len(batch))
        return len(batch)

    async def _flush_loop(self) -> None:
        assert self._flush_requested is not None
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._flush_requested.wait(), timeout=self._flush_interval
                )
            self._flush_requested.clear()
            await self.flush()


class JsonLinesSink:
    """History sink appending one JSON object per reading to a file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, batch: Sequence[Mapping[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as stream:
            for record in batch:
                stream.write(json.dumps(record, default=str) + "\n")
