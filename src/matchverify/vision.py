"""OpenCV-backed camera collaborator and QR image rendering.

``OpenCVCamera`` implements the capture-loop camera API on top of
``cv2.VideoCapture`` and ``cv2.QRCodeDetector``.  Blocking device calls
run in a worker thread (``asyncio.to_thread``) so poll ticks and
in-flight verify calls keep running between frames.

Desktop webcams have no facing; ``facing`` is accepted for API
compatibility and ``config.camera_index`` picks the device.
"""

import asyncio
import logging
from pathlib import Path

import cv2

from matchverify.config import VerifyConfig
from matchverify.exceptions import CameraUnavailable

logger = logging.getLogger(__name__)

# Quiet zone around the rendered code, in modules
_QR_BORDER = 4


class OpenCVCamera:
    """Camera collaborator for a local video device.

    With ``preview_window`` set, each frame is shown in an OpenCV window
    of that name; the window is the preview surface and is created
    before the first frame is decoded.
    """

    def __init__(
        self,
        config: VerifyConfig | None = None,
        preview_window: str | None = None,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self._index = config.camera_index
        self._preview_window = preview_window
        self._detector = cv2.QRCodeDetector()

    async def open_stream(self, facing: str = "environment") -> cv2.VideoCapture:
        capture = await asyncio.to_thread(cv2.VideoCapture, self._index)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailable(
                f"Video device {self._index} could not be opened ({facing})"
            )
        if self._preview_window:
            cv2.namedWindow(self._preview_window, cv2.WINDOW_AUTOSIZE)
        logger.debug("Opened video device %d for %s-facing scan", self._index, facing)
        return capture

    async def decode_frame(self, stream: cv2.VideoCapture) -> str | None:
        ok, frame = await asyncio.to_thread(stream.read)
        if not ok or frame is None:
            return None
        if self._preview_window:
            cv2.imshow(self._preview_window, frame)
            cv2.waitKey(1)
        text, _points, _ = self._detector.detectAndDecode(frame)
        return text or None

    async def close_stream(self, stream: cv2.VideoCapture) -> None:
        await asyncio.to_thread(stream.release)
        if self._preview_window:
            cv2.destroyWindow(self._preview_window)


def write_qr_image(payload: str, path: str | Path, size: int = 300) -> Path:
    """Render *payload* as a QR code PNG of roughly ``size`` pixels.

    Returns:
        The written path.
    """
    encoder = cv2.QRCodeEncoder.create()
    modules = encoder.encode(payload)
    # Whole pixels per module keep the code crisp for phone cameras
    scale = max(1, size // modules.shape[0])
    image = cv2.resize(
        modules, None, fx=scale, fy=scale, interpolation=cv2.INTER_NEAREST
    )
    border = _QR_BORDER * scale
    image = cv2.copyMakeBorder(
        image, border, border, border, border, cv2.BORDER_CONSTANT, value=255
    )

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), image):
        raise OSError(f"Could not write QR image to {path}")
    logger.info("QR code written to %s", path)
    return path
