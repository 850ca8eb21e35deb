"""Capture controller implementation."""

from __future__ import annotations

import asyncio
import base64
import errno
import io
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import numpy as np
from PIL import Image

from voicelens.common import BaseComponent, get_logger
from voicelens.common.errors import CaptureError, CaptureErrorKind
from voicelens.common.events import EventBus
from voicelens.common.state import SessionState
from voicelens.config import Config

FrameSink = Callable[[np.ndarray], None]


class Facing(str, Enum):
    """Camera facing."""

    FRONT = "front"
    BACK = "back"

    @property
    def opposite(self) -> Facing:
        return Facing.BACK if self is Facing.FRONT else Facing.FRONT


@dataclass
class CaptureConstraints:
    """Requested video resolution."""

    ideal: tuple[int, int] = (1280, 720)
    minimum: tuple[int, int] = (640, 480)


@dataclass
class CapturedFrame:
    """Encoded still image."""

    data: bytes
    width: int
    height: int
    format: str = "jpeg"
    frame_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"

    @property
    def data_url(self) -> str:
        """Base64 data URL, as accepted by vision endpoints."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class CaptureSession:
    """Live device session. Owned by exactly one CaptureController."""

    facing: Facing
    handle: Any
    active: bool = True
    sink: FrameSink | None = None
    latest: np.ndarray | None = None
    frames_received: int = 0
    started_at: float = field(default_factory=time.time)
    first_frame: asyncio.Event = field(default_factory=asyncio.Event)


def has_pixels(frame: np.ndarray | None) -> bool:
    """Whether a frame has nonzero width and height."""
    return frame is not None and frame.ndim >= 2 and frame.shape[0] > 0 and frame.shape[1] > 0


def classify_device_error(error: BaseException) -> CaptureErrorKind:
    """Map a platform device error onto a capture failure class."""
    if isinstance(error, PermissionError):
        return CaptureErrorKind.PERMISSION_DENIED
    if isinstance(error, (FileNotFoundError, LookupError)):
        return CaptureErrorKind.DEVICE_NOT_FOUND
    if isinstance(error, OSError) and error.errno in (errno.EBUSY, errno.EAGAIN):
        return CaptureErrorKind.DEVICE_BUSY
    return CaptureErrorKind.UNSUPPORTED


class CameraBackend:
    """Abstract camera backend."""

    async def open(self, facing: Facing, constraints: CaptureConstraints) -> Any:
        """Open the device for a facing. Returns an opaque device handle."""
        raise NotImplementedError

    async def read(self, handle: Any) -> np.ndarray | None:
        """Read the current RGB frame, or None when no frame is available yet."""
        raise NotImplementedError

    async def release(self, handle: Any) -> None:
        """Release a device handle."""
        raise NotImplementedError

    def get_status(self) -> dict:
        """Get backend status."""
        raise NotImplementedError


class MockCameraBackend(CameraBackend):
    """Mock camera backend for testing."""

    def __init__(
        self,
        size: tuple[int, int] = (640, 480),
        color: tuple[int, int, int] = (73, 109, 137),
        ready: bool = True,
    ) -> None:
        self.size = size
        self.color = color
        self.ready = ready
        self.failures: dict[Facing, CaptureErrorKind] = {}
        self.open_handles: list[dict] = []
        self.open_count = 0

    async def open(self, facing: Facing, constraints: CaptureConstraints) -> Any:
        if facing in self.failures:
            raise CaptureError(self.failures[facing], f"mock {facing.value} camera unavailable")
        self.open_count += 1
        handle = {"facing": facing, "id": self.open_count}
        self.open_handles.append(handle)
        return handle

    async def read(self, handle: Any) -> np.ndarray | None:
        if not self.ready:
            return None
        width, height = self.size
        return np.full((height, width, 3), self.color, dtype=np.uint8)

    async def release(self, handle: Any) -> None:
        if handle in self.open_handles:
            self.open_handles.remove(handle)

    def get_status(self) -> dict:
        return {
            "backend": "mock",
            "open_handles": len(self.open_handles),
            "ready": self.ready,
        }


class VideoDevice:
    """An open OpenCV capture device.

    ``cv2.VideoCapture`` objects must not be used from two threads at once,
    so every call on the device runs on its own single worker thread.
    Release queues behind any read still in flight.
    """

    def __init__(self, index: int, executor: ThreadPoolExecutor, capture: Any = None) -> None:
        self.index = index
        self.capture = capture
        self._executor = executor

    @classmethod
    def for_index(cls, index: int) -> VideoDevice:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"camera-{index}")
        return cls(index, executor)

    async def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def read(self) -> np.ndarray | None:
        ok, frame = await self.call(self.capture.read)
        if not ok or frame is None:
            return None
        # OpenCV delivers BGR
        return np.ascontiguousarray(frame[:, :, ::-1])

    async def release(self) -> None:
        try:
            if self.capture is not None:
                await self.call(self.capture.release)
        finally:
            self._executor.shutdown(wait=False)


class OpenCVCameraBackend(CameraBackend):
    """Camera backend using OpenCV video capture devices."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.logger = get_logger("opencv_camera_backend")

    def _device_index(self, facing: Facing) -> int:
        if facing is Facing.FRONT:
            return self.config.camera.front_device_index
        return self.config.camera.back_device_index

    async def open(self, facing: Facing, constraints: CaptureConstraints) -> Any:
        try:
            import cv2
        except ImportError as e:
            raise CaptureError(CaptureErrorKind.UNSUPPORTED, "opencv-python is not installed") from e

        device = VideoDevice.for_index(self._device_index(facing))
        try:
            width, height = await device.call(self._open_capture, cv2, device, constraints)
        except BaseException:
            await device.release()
            raise

        self.logger.info("opencv_camera_opened", index=device.index, width=width, height=height)
        return device

    @staticmethod
    def _open_capture(
        cv2: Any, device: VideoDevice, constraints: CaptureConstraints
    ) -> tuple[int, int]:
        device.capture = cv2.VideoCapture(device.index)
        capture = device.capture
        if not capture.isOpened():
            raise CaptureError(
                CaptureErrorKind.DEVICE_NOT_FOUND, f"no video device at index {device.index}"
            )

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.ideal[0])
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.ideal[1])

        width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        min_width, min_height = constraints.minimum
        # Some drivers report 0 until the first frame; only reject known-small sizes
        if 0 < width < min_width or 0 < height < min_height:
            raise CaptureError(
                CaptureErrorKind.UNSUPPORTED,
                f"device resolution {width}x{height} below {min_width}x{min_height}",
            )
        return width, height

    async def read(self, handle: VideoDevice) -> np.ndarray | None:
        return await handle.read()

    async def release(self, handle: VideoDevice) -> None:
        await handle.release()

    def get_status(self) -> dict:
        return {
            "backend": "opencv",
            "front_device_index": self.config.camera.front_device_index,
            "back_device_index": self.config.camera.back_device_index,
        }


class CaptureController(BaseComponent):
    """Capture controller.

    Responsibilities:
    - Own the live camera device handle
    - Keep the most recent frame of the feed
    - Encode still frames on demand
    """

    def __init__(
        self,
        backend: CameraBackend,
        config: Config,
        state: SessionState,
        events: EventBus | None = None,
        sink: FrameSink | None = None,
    ) -> None:
        super().__init__("camera", config, state, events)
        self._backend = backend
        self._sink = sink
        self._session: CaptureSession | None = None
        self._pump_task: asyncio.Task | None = None
        self.facing = Facing(config.camera.default_facing)
        self.constraints = CaptureConstraints(
            ideal=tuple(config.camera.ideal_resolution),
            minimum=tuple(config.camera.min_resolution),
        )

    async def setup(self) -> None:
        self.logger.info("camera_setup", backend=type(self._backend).__name__)

    async def teardown(self) -> None:
        await self.stop()

    @property
    def active(self) -> bool:
        return self._session is not None and self._session.active

    @property
    def capture(self) -> CaptureSession | None:
        return self._session

    def bind_sink(self, sink: FrameSink | None) -> None:
        """Set the consumer of live frames (e.g. a preview)."""
        self._sink = sink
        if self._session:
            self._session.sink = sink

    async def start(self, facing: Facing | None = None) -> CaptureSession:
        """Open the camera and bind the live feed.

        Args:
            facing: Facing to open. Defaults to the current preferred facing.

        Returns:
            The active capture session.

        Raises:
            CaptureError: The device could not be opened.
        """
        facing = facing or self.facing
        if self.active:
            await self.stop()

        handle = await self._open(facing)
        self.facing = facing
        self._activate(facing, handle)
        return self._session

    async def stop(self) -> None:
        """Release the device and unbind the feed. No-op when inactive."""
        session = self._session
        if session is None:
            return

        self._session = None
        await self._deactivate(session)
        self.events.emit("camera.stopped", self.name, facing=session.facing.value)
        self.logger.info("camera_stopped", facing=session.facing.value)

    async def switch_facing(self) -> Facing:
        """Switch to the opposite facing.

        The new device is opened before the current one is released, so a
        failure leaves the current facing fully active.

        Returns:
            The facing now in effect.

        Raises:
            CaptureError: The opposite device could not be opened.
        """
        target = self.facing.opposite

        if not self.active:
            self.facing = target
            self.logger.info("camera_facing_set", facing=target.value)
            return target

        try:
            handle = await self._open(target)
        except CaptureError as e:
            self.logger.warning(
                "camera_switch_failed",
                facing=self.facing.value,
                target=target.value,
                kind=e.kind.value,
            )
            raise

        previous = self._session
        self._session = None
        await self._deactivate(previous)

        self.facing = target
        self._activate(target, handle)
        self.logger.info("camera_switched", facing=target.value)
        return target

    def capture_frame(self) -> CapturedFrame:
        """Encode the most recent frame as a JPEG still.

        Raises:
            CaptureError: ``NOT_READY`` when the camera is inactive or the feed
                has not produced a frame with nonzero dimensions yet.
        """
        session = self._session
        if session is None or not session.active:
            raise CaptureError(CaptureErrorKind.NOT_READY, "camera inactive")

        frame = session.latest
        if not has_pixels(frame):
            raise CaptureError(CaptureErrorKind.NOT_READY, "no frame received yet")

        img = Image.fromarray(frame[:, :, :3] if frame.ndim == 3 else frame).convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=self.config.camera.jpeg_quality)

        captured = CapturedFrame(data=buffer.getvalue(), width=img.width, height=img.height)
        self.logger.debug(
            "frame_captured",
            frame_id=captured.frame_id,
            width=captured.width,
            height=captured.height,
            size_bytes=len(captured.data),
        )
        return captured

    async def wait_for_frame(self, timeout: float = 5.0) -> bool:
        """Wait until the feed has produced a usable frame.

        Returns:
            True when a frame is available, False on timeout or inactive camera.
        """
        session = self._session
        if session is None:
            return False
        try:
            await asyncio.wait_for(session.first_frame.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return session.active

    async def _open(self, facing: Facing) -> Any:
        try:
            return await self._backend.open(facing, self.constraints)
        except CaptureError as e:
            self.logger.warning("camera_open_failed", facing=facing.value, kind=e.kind.value, error=str(e))
            raise
        except Exception as e:
            kind = classify_device_error(e)
            self.logger.warning("camera_open_failed", facing=facing.value, kind=kind.value, error=str(e))
            raise CaptureError(kind, str(e)) from e

    def _activate(self, facing: Facing, handle: Any) -> None:
        session = CaptureSession(facing=facing, handle=handle, sink=self._sink)
        self._session = session
        self._pump_task = asyncio.get_running_loop().create_task(self._pump(session))
        self.events.emit("camera.started", self.name, facing=facing.value)
        self.logger.info("camera_started", facing=facing.value)

    async def _deactivate(self, session: CaptureSession) -> None:
        session.active = False
        session.sink = None

        task, self._pump_task = self._pump_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            await self._backend.release(session.handle)
        except Exception as e:
            self.logger.exception("camera_release_failed", error=str(e))

    async def _pump(self, session: CaptureSession) -> None:
        interval = 1.0 / max(self.config.camera.fps, 1)
        read_failures = 0

        while session.active:
            try:
                frame = await self._backend.read(session.handle)
            except Exception as e:
                read_failures += 1
                if read_failures == 1:
                    self.logger.warning("camera_read_failed", error=str(e))
                frame = None

            if session.active and has_pixels(frame):
                read_failures = 0
                session.latest = frame
                session.frames_received += 1
                session.first_frame.set()
                if session.sink:
                    try:
                        session.sink(frame)
                    except Exception as e:
                        self.logger.exception("frame_sink_failed", error=str(e))

            await asyncio.sleep(interval)

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        session = self._session
        status.update(
            {
                "active": self.active,
                "facing": self.facing.value,
                "frames_received": session.frames_received if session else 0,
                "backend": self._backend.get_status(),
            }
        )
        return status
