import asyncio
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Union

from playstream.modules.status.schemas import DeploymentStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"SUCCEEDED", "FAILED", "NOT_FOUND"}

StatusFetcher = Callable[[str], Union[DeploymentStatus, Awaitable[DeploymentStatus]]]


async def watch_deployment_status(
    fetch: StatusFetcher,
    user_id: str,
    interval: float = 3.0,
) -> AsyncIterator[DeploymentStatus]:
    """
    Poll ``fetch(user_id)`` every ``interval`` seconds, yielding each status.

    Stops after the first terminal status. Cancelling the consuming task only
    stops this loop; the workflow keeps running. Synchronous fetchers run in
    a worker thread.
    """
    while True:
        if inspect.iscoroutinefunction(fetch):
            status = await fetch(user_id)
        else:
            status = await asyncio.to_thread(fetch, user_id)

        yield status
        if status.status in TERMINAL_STATUSES:
            return

        logger.debug(f"Deployment for {user_id} still {status.status}, next poll in {interval}s")
        await asyncio.sleep(interval)
