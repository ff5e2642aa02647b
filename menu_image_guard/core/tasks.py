"""
Detached execution of image pipeline runs.

Creating a menu schedules one fire-and-forget task for its illustration;
the creator gets the menu back immediately and never awaits the task.
The result becomes visible in two ways:

- Polling: the menu's ``generating`` flag drops to False exactly once,
  with ``image_ref`` set on success (``wait_for_menu_image``).
- Push: callbacks registered with ``ImageTaskHandle.subscribe`` receive
  the PipelineOutcome after the menu was updated.

Every task carries a deadline. If the pipeline has not resolved by then it
is cancelled (releasing any budget hold) and the menu is resolved without
an image, so no menu stays stuck in ``generating``.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Protocol, Set, Tuple

from menu_image_guard.storage.models import MenuRecord
from menu_image_guard.storage.repository import MenuRepository

from .normalizer import normalize_title
from .pipeline import ImagePipeline, PipelineOutcome

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[PipelineOutcome], None]

# Strong references to running tasks; the event loop only keeps weak ones
_background_tasks: Set[asyncio.Task] = set()

OWNER_WRITE_ATTEMPTS = 2


class ImageOwner(Protocol):
    """Entity that exposes ``generating`` and ``image_ref`` to readers."""

    def resolve_image(self, image_ref: Optional[str]) -> None: ...


class MenuImageOwner:
    """Adapter resolving a stored menu through the menu repository."""

    def __init__(self, repository: MenuRepository, menu_id: int):
        self.repository = repository
        self.menu_id = menu_id

    def resolve_image(self, image_ref: Optional[str]) -> None:
        self.repository.resolve_menu_image(self.menu_id, image_ref)


class ImageTaskHandle:
    """Handle on one detached pipeline run.

    Owns the terminal write: whichever path ends the task (success,
    failure, deadline, crash, cancellation), the owner is resolved once.
    A failed write is retried once; if the retry fails too, the owner is
    left generating and the error is logged, so pollers must bound their
    wait (see ``wait_for_menu_image``).
    """

    def __init__(self, title: str, owner: ImageOwner, deadline_seconds: float):
        if deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")
        self.title = title
        self.owner = owner
        self.deadline_seconds = deadline_seconds
        self.started_at = time.monotonic()
        self.outcome: Optional[PipelineOutcome] = None
        self._task: Optional[asyncio.Task] = None
        self._callbacks: List[OutcomeCallback] = []

    @property
    def deadline(self) -> float:
        """Monotonic clock time at which the run is abandoned."""
        return self.started_at + self.deadline_seconds

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def subscribe(self, callback: OutcomeCallback) -> None:
        """Call ``callback`` with the outcome once the owner is resolved.

        Subscribing after resolution calls it right away.
        """
        if self.outcome is not None:
            _notify(callback, self.outcome)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> PipelineOutcome:
        """Wait for the outcome without cancelling the task when the waiter is."""
        if self._task is None:
            raise RuntimeError("Task has not been started")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Abandon the run; the owner is still resolved without an image."""
        if self._task is not None:
            self._task.cancel()

    async def _finish(self, outcome: PipelineOutcome) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        await self._write_owner(outcome.image_ref)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            _notify(callback, outcome)

    async def _write_owner(self, image_ref: Optional[str]) -> None:
        for attempt in range(1, OWNER_WRITE_ATTEMPTS + 1):
            try:
                await asyncio.shield(asyncio.to_thread(self.owner.resolve_image, image_ref))
                return
            except Exception:
                logger.exception(
                    "Error updating owner for %r (attempt %d/%d)", self.title, attempt, OWNER_WRITE_ATTEMPTS
                )
        logger.error("Owner of %r left generating after %d failed updates", self.title, OWNER_WRITE_ATTEMPTS)


def _notify(callback: OutcomeCallback, outcome: PipelineOutcome) -> None:
    try:
        callback(outcome)
    except Exception:
        logger.exception("Image outcome subscriber failed")


async def _drive(pipeline: ImagePipeline, handle: ImageTaskHandle) -> PipelineOutcome:
    """Run the pipeline under the handle's deadline and resolve the owner."""
    try:
        outcome = await asyncio.wait_for(pipeline.run(handle.title), timeout=handle.deadline_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Image generation for %r exceeded its %.0fs deadline", handle.title, handle.deadline_seconds
        )
        outcome = PipelineOutcome(
            title=handle.title,
            key=normalize_title(handle.title),
            timed_out=True,
            error="deadline exceeded"
        )
    except asyncio.CancelledError:
        await handle._finish(PipelineOutcome(
            title=handle.title,
            key=normalize_title(handle.title),
            error="cancelled"
        ))
        raise
    except Exception as e:
        logger.exception("Background image generation failed for %r", handle.title)
        outcome = PipelineOutcome(
            title=handle.title,
            key=normalize_title(handle.title),
            error=str(e)
        )
    await handle._finish(outcome)
    return outcome


def spawn_image_task(
    pipeline: ImagePipeline,
    title: str,
    owner: ImageOwner,
    deadline_seconds: float
) -> ImageTaskHandle:
    """Start a detached pipeline run on the running event loop.

    Returns immediately. Must be called from within a running loop.

    Args:
        pipeline: Shared pipeline
        title: Raw menu title
        owner: Entity to resolve when the run ends
        deadline_seconds: Time budget before the run is abandoned

    Returns:
        Handle to observe or cancel the run
    """
    handle = ImageTaskHandle(title, owner, deadline_seconds)
    loop = asyncio.get_running_loop()
    task = loop.create_task(_drive(pipeline, handle), name=f"menu-image:{normalize_title(title)}")
    handle._task = task
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return handle


def create_menu(
    repository: MenuRepository,
    pipeline: ImagePipeline,
    title: str,
    deadline_seconds: float
) -> Tuple[MenuRecord, ImageTaskHandle]:
    """Create a menu and kick off its illustration in the background.

    The menu is stored with ``generating`` set before the task starts.

    Returns:
        The created menu and the handle of its image task
    """
    menu = repository.create_menu(title)
    handle = spawn_image_task(
        pipeline,
        title,
        MenuImageOwner(repository, menu.id),
        deadline_seconds
    )
    return menu, handle


async def wait_for_menu_image(
    repository: MenuRepository,
    menu_id: int,
    interval: float = 2.0,
    timeout: float = 120.0
) -> Optional[MenuRecord]:
    """Poll a menu until its image is resolved or ``timeout`` elapses.

    Args:
        repository: Menu repository to read from
        menu_id: Menu to watch
        interval: Seconds between reads
        timeout: Give up after this many seconds

    Returns:
        The latest record; still ``generating`` if the timeout was hit,
        None if the menu doesn't exist
    """
    loop = asyncio.get_running_loop()
    give_up_at = loop.time() + timeout
    while True:
        menu = await asyncio.to_thread(repository.get_menu, menu_id)
        if menu is None or not menu.generating:
            return menu
        remaining = give_up_at - loop.time()
        if remaining <= 0:
            logger.warning("Menu %s still generating after %.0fs", menu_id, timeout)
            return menu
        await asyncio.sleep(min(interval, remaining))
