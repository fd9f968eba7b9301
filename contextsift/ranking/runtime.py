"""Lifecycle shared by the model-backed channels.

A model service is an explicit handle: it is constructed once, loaded with
`initialize()`, shared across searches and released with `dispose()`. Loading
and inference run off the event loop with `asyncio.to_thread`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..bus import EventBus
from ..errors import ChannelUnavailableError

logger = logging.getLogger(__name__)

# loader(model_id, device) -> model; device None means "let the library decide"
Loader = Callable[[str, str | None], Any]


class ModelStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class ModelService(ABC):
    """Base class for a lazily loaded model with a CPU fallback.

    Subclasses provide `default_loader`, used when no loader is injected.
    """

    kind = "model"

    def __init__(
        self,
        model_id: str,
        device: str = "auto",
        loader: Loader | None = None,
        bus: EventBus | None = None,
    ):
        self.model_id = model_id
        self.device = device
        self.active_device: str | None = None
        self.bus = bus
        self._loader = loader or self.default_loader
        self._model: Any = None
        self._status = ModelStatus.IDLE
        self._error: str | None = None
        self._load_task: asyncio.Task | None = None

    @staticmethod
    @abstractmethod
    def default_loader(model_id: str, device: str | None) -> Any: ...

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    def _set_status(self, status: ModelStatus) -> None:
        self._status = status
        logger.debug(f"{self.kind} model {self.model_id}: {status.value}")
        if self.bus is not None:
            self.bus.emit(
                "model.status",
                kind=self.kind,
                model_id=self.model_id,
                status=status.value,
                error=self._error,
            )

    def _devices(self) -> list[str | None]:
        device = None if self.device in ("", "auto") else self.device
        return [device] if device == "cpu" else [device, "cpu"]

    async def initialize(self) -> ModelStatus:
        """Load the model; concurrent callers share the same load."""
        if self._status in (ModelStatus.READY, ModelStatus.ERROR):
            return self._status
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load())
        await asyncio.shield(self._load_task)
        return self._status

    async def _load(self) -> None:
        self._set_status(ModelStatus.LOADING)
        last_error: Exception | None = None
        for device in self._devices():
            try:
                self._model = await asyncio.to_thread(self._loader, self.model_id, device)
            except Exception as e:
                logger.warning(
                    f"Failed to load {self.kind} model {self.model_id} "
                    f"on {device or 'default device'}: {e}"
                )
                last_error = e
                continue
            self.active_device = device or "auto"
            logger.info(f"Loaded {self.kind} model {self.model_id} ({self.active_device})")
            self._set_status(ModelStatus.READY)
            return

        # permanent for this instance
        self._error = str(last_error) or type(last_error).__name__
        self._set_status(ModelStatus.ERROR)

    async def _ready_model(self) -> Any:
        if self._status == ModelStatus.LOADING and self._load_task is not None:
            await asyncio.shield(self._load_task)
        if self._status == ModelStatus.ERROR:
            raise ChannelUnavailableError(
                f"{self.kind} model {self.model_id} failed to load: {self._error}"
            )
        if self._status != ModelStatus.READY:
            raise ChannelUnavailableError(
                f"{self.kind} model {self.model_id} is not initialized"
            )
        return self._model

    async def _invoke(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run `fn(model, *args)` in a worker thread."""
        model = await self._ready_model()
        return await asyncio.to_thread(fn, model, *args)

    async def dispose(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            await asyncio.shield(self._load_task)
        self._load_task = None
        self._model = None
        if self._status == ModelStatus.READY:
            self._set_status(ModelStatus.IDLE)
