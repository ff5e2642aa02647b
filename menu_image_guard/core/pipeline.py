"""
Pipeline orchestrator for menu illustrations.

Runs one request through the cache, the spend ledger, the generation
service and the asset store:

    Idle -> CacheCheck -> hit                  -> Resolved (cached image)
                       -> miss -> BudgetCheck
    BudgetCheck -> rejected                    -> Resolved (no image)
                -> granted  -> Generating
    Generating  -> failed                      -> Resolved (no image)
                -> ok       -> Uploading
    Uploading   -> failed                      -> Resolved (no image)
                -> ok       -> Charging -> CacheInsert -> Resolved (image)

Charging happens only after the image was generated and stored and before
the cache write; failed generations and uploads release their budget hold
and cost nothing. A cache write that fails after charging is logged and
the charge stands.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol

from menu_image_guard.config.loader import BudgetConfig, PipelineConfig
from menu_image_guard.sdk.gemini_client import GeminiImageClient, GeneratedImage, build_image_prompt
from menu_image_guard.storage.assets import LocalAssetStore
from menu_image_guard.storage.cache_store import SqliteImageCache
from menu_image_guard.storage.ledger import SqliteSpendLedger

from .errors import (
    CacheWriteError,
    ConfigurationError,
    GenerationError,
    LedgerError,
    StorageError,
)
from .normalizer import normalize_title

logger = logging.getLogger(__name__)


class ImageCache(Protocol):
    def lookup(self, key: str) -> Optional[str]: ...
    def insert(self, key: str, image_ref: str) -> None: ...


class SpendLedger(Protocol):
    def try_reserve(self, unit_cost: Decimal, cap: Decimal) -> bool: ...
    def settle(self, unit_cost: Decimal) -> None: ...
    def release(self, unit_cost: Decimal) -> None: ...


class ImageGenerator(Protocol):
    async def generate(self, prompt: str) -> GeneratedImage: ...


class AssetStore(Protocol):
    def store(self, key: str, payload: bytes, mime_type: str) -> str: ...


class TaskState(Enum):
    """States a generation task moves through, in order."""
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    BUDGET_CHECK = "budget_check"
    GENERATING = "generating"
    UPLOADING = "uploading"
    CHARGING = "charging"
    CACHE_INSERT = "cache_insert"
    RESOLVED = "resolved"


@dataclass
class GenerationTask:
    """Ephemeral per-request state. Never persisted."""
    title: str
    key: str
    prompt: str
    state: TaskState = TaskState.IDLE
    history: List[TaskState] = field(default_factory=lambda: [TaskState.IDLE])

    def advance(self, state: TaskState) -> None:
        logger.debug("Task %r: %s -> %s", self.key, self.state.value, state.value)
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal result of one pipeline run."""
    title: str
    key: str
    image_ref: Optional[str] = None
    cached: bool = False
    budget_exceeded: bool = False
    charged: bool = False
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.image_ref is not None


class ImagePipeline:
    """Coordinates cache, ledger, generator and asset store for one title.

    All collaborators are injected; the ledger in particular is the one
    process-wide instance built by ``build_pipeline`` (or an in-memory
    ledger in tests).
    """

    def __init__(
        self,
        cache: ImageCache,
        ledger: SpendLedger,
        generator: ImageGenerator,
        assets: AssetStore,
        budget: BudgetConfig
    ):
        self.cache = cache
        self.ledger = ledger
        self.generator = generator
        self.assets = assets
        self.budget = budget

    async def run(self, title: str) -> PipelineOutcome:
        """Resolve an illustration for ``title``.

        Never raises for the failures in the error taxonomy; they are
        logged and reported through the outcome. Cancellation propagates
        after any budget hold has been released.

        Cache and ledger calls run in worker threads so a locked database
        never stalls the event loop.
        """
        key = normalize_title(title)
        task = GenerationTask(title=title, key=key, prompt=build_image_prompt(title))
        logger.info('Generating image for: "%s" (normalized: "%s")', title, key)

        if not key:
            logger.warning("Title %r has no cacheable characters, skipping generation", title)
            return self._resolve(task, error="title normalizes to an empty key")

        task.advance(TaskState.CACHE_CHECK)
        cached_ref = await asyncio.to_thread(self.cache.lookup, key)
        if cached_ref:
            return self._resolve(task, image_ref=cached_ref, cached=True)

        task.advance(TaskState.BUDGET_CHECK)
        try:
            granted = await self._reserve()
        except LedgerError as e:
            logger.error("Spend ledger unavailable, refusing generation: %s", e)
            return self._resolve(task, budget_exceeded=True, error=str(e))
        if not granted:
            logger.warning("Image generation skipped: budget cap reached")
            return self._resolve(task, budget_exceeded=True)

        return await self._generate_reserved(task)

    async def _reserve(self) -> bool:
        """Ask the ledger for a hold without blocking the loop.

        The reservation runs in an executor future, which the loop does not
        cancel. If this coroutine is cancelled while it is in flight, a hold
        granted afterwards is released as soon as the reservation lands.
        """
        loop = asyncio.get_running_loop()
        reservation = loop.run_in_executor(
            None, self.ledger.try_reserve, self.budget.unit_cost, self.budget.cap
        )
        try:
            return await asyncio.shield(reservation)
        except asyncio.CancelledError:
            reservation.add_done_callback(self._release_abandoned_hold)
            raise

    def _release_abandoned_hold(self, reservation: "asyncio.Future[bool]") -> None:
        if reservation.cancelled() or reservation.exception() is not None:
            return
        if reservation.result():
            logger.info("Releasing budget hold of a cancelled request")
            asyncio.get_running_loop().run_in_executor(
                None, self._release_hold_now, self.budget.unit_cost
            )

    async def _generate_reserved(self, task: GenerationTask) -> PipelineOutcome:
        """Run the stages that execute while a budget hold is in place."""
        unit_cost = self.budget.unit_cost
        hold_open = True
        try:
            task.advance(TaskState.GENERATING)
            try:
                image = await self.generator.generate(task.prompt)
            except (ConfigurationError, GenerationError) as e:
                logger.error("Image generation failed for %r: %s", task.key, e)
                return self._resolve(task, error=str(e))

            task.advance(TaskState.UPLOADING)
            try:
                image_ref = await asyncio.to_thread(
                    self.assets.store, task.key, image.payload, image.mime_type
                )
            except StorageError as e:
                logger.error("Image upload failed for %r: %s", task.key, e)
                return self._resolve(task, error=str(e))

            task.advance(TaskState.CHARGING)
            hold_open = False
            charged = True
            try:
                await asyncio.to_thread(self.ledger.settle, unit_cost)
            except LedgerError as e:
                # Hold stays in place so the cap keeps counting this image
                logger.error("Failed to charge ledger for %r: %s", task.key, e)
                charged = False
        finally:
            if hold_open:
                await self._release_hold(unit_cost)

        task.advance(TaskState.CACHE_INSERT)
        try:
            await asyncio.to_thread(self.cache.insert, task.key, image_ref)
        except CacheWriteError as e:
            logger.error("Error caching image URL for %r: %s", task.key, e)

        return self._resolve(task, image_ref=image_ref, charged=charged)

    async def _release_hold(self, unit_cost: Decimal) -> None:
        # Shielded so a second cancellation cannot abandon the release
        await asyncio.shield(asyncio.to_thread(self._release_hold_now, unit_cost))

    def _release_hold_now(self, unit_cost: Decimal) -> None:
        try:
            self.ledger.release(unit_cost)
        except LedgerError as e:
            logger.error("Failed to release budget hold: %s", e)

    @staticmethod
    def _resolve(task: GenerationTask, **fields) -> PipelineOutcome:
        task.advance(TaskState.RESOLVED)
        outcome = PipelineOutcome(title=task.title, key=task.key, **fields)
        if outcome.succeeded:
            logger.info("Image resolved for %r (cached=%s)", task.key, outcome.cached)
        else:
            logger.info("No image for %r", task.key)
        return outcome


def build_pipeline(
    config: PipelineConfig,
    db_path: str,
    api_key: Optional[str] = None,
    ledger: Optional[SpendLedger] = None
) -> ImagePipeline:
    """Wire the SQLite-backed pipeline.

    Call once per process and share the returned pipeline; it owns the
    process's spend ledger handle.

    Args:
        config: Validated pipeline configuration
        db_path: SQLite database holding cache, ledger and menus
        api_key: Generation API key; defaults to GEMINI_API_KEY
        ledger: Ledger to use instead of the SQLite one
    """
    generation = config.generation
    return ImagePipeline(
        cache=SqliteImageCache(db_path),
        ledger=ledger if ledger is not None else SqliteSpendLedger(db_path),
        generator=GeminiImageClient(
            model=generation.model,
            aspect_ratio=generation.aspect_ratio,
            api_base=generation.api_base,
            api_key=api_key,
            timeout_seconds=generation.timeout_seconds
        ),
        assets=LocalAssetStore(config.storage.root, config.storage.public_base_url),
        budget=config.budget
    )
