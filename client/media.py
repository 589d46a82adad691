from abc import ABC, abstractmethod


class MediaPlayback(ABC):
    """Local video element handle owned by one client."""

    @abstractmethod
    async def play(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def seek(self, seconds: float) -> None: ...

    @abstractmethod
    def position(self) -> float:
        """Current playback offset in seconds."""

    @abstractmethod
    def is_paused(self) -> bool: ...

    async def wait_ready(self) -> None:
        """Resolve once media is loaded; players that load synchronously need not override."""
        return None
