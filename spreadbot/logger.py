# spreadbot/logger.py
import asyncio
import logging
import os
import sys
import time

import aiofiles
from aiocsv import AsyncWriter

from .models import CycleReport

AUDIT_HEADER = ["time", "cycle_id", "status", "final_state", "entry_qty", "sold_qty",
                "liquidated_qty", "open_qty", "duration_s", "reason"]


class AsyncAuditLogger:
    """
    Non-blocking CSV audit trail of finished cycles.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task = None

    async def start(self):
        """
        Creates the file (with header) if missing and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath):
            async with aiofiles.open(self.filepath, mode='w', newline='') as f:
                await AsyncWriter(f, dialect='unix').writerow(AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_cycle(self, report: CycleReport):
        await self._queue.put([
            time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(report.finished_at)),
            report.cycle_id,
            report.status.value,
            report.final_state.value,
            f"{report.entry_qty:.8f}",
            f"{report.sold_qty:.8f}",
            f"{report.liquidated_qty:.8f}",
            f"{report.open_qty:.8f}",
            f"{report.finished_at - report.started_at:.3f}",
            report.reason,
        ])

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # Disk trouble must not stop trading
                print(f"AUDIT LOG FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()

    async def stop(self):
        """Flushes queued rows and stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        await asyncio.gather(self._worker_task, return_exceptions=True)
        self._worker_task = None


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
