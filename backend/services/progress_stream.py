"""Server-sent event stream of job snapshots.

Emits an ``init`` snapshot immediately, then an ``update`` snapshot every
poll interval. The stream ends shortly after the job reaches a terminal
state, or immediately if the job disappears from the registry. When the
observer disconnects, the framework cancels the generator mid-sleep, so no
poll timer outlives the connection.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from config import settings
from services.job_registry import JobRegistry

logger = logging.getLogger(__name__)


def format_event(event_type: str, snapshot: dict) -> str:
    return f"data: {json.dumps({'type': event_type, 'job': snapshot})}\n\n"


async def stream_job_events(
    job_id: str,
    registry: JobRegistry,
    poll_interval: Optional[float] = None,
    close_delay: Optional[float] = None,
) -> AsyncIterator[str]:
    poll_interval = poll_interval if poll_interval is not None else settings.stream_poll_interval_seconds
    close_delay = close_delay if close_delay is not None else settings.stream_close_delay_seconds

    job = registry.get(job_id)
    if job is None:
        return

    try:
        yield format_event("init", job.to_snapshot())
        while True:
            await asyncio.sleep(poll_interval)
            job = registry.get(job_id)
            if job is None:
                logger.debug(f"[{job_id[:8]}] Job vanished, closing stream")
                return

            yield format_event("update", job.to_snapshot())
            if job.is_terminal:
                await asyncio.sleep(close_delay)
                return
    finally:
        logger.debug(f"[{job_id[:8]}] Progress stream closed")
