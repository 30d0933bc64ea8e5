import logging

import cv2  # type: ignore
import numpy as np  # type: ignore

logger = logging.getLogger(__name__)


class FrameDecodeError(Exception):
    """The frame could not be read as an image."""


class QrDecoder:
    """
    One decode surface: an OpenCV QR detector fed with camera frames.

    The scanner controller tears a surface down and builds a fresh one on
    every re-arm.
    """

    def __init__(self):
        self._detector = cv2.QRCodeDetector()
        self.closed = False

    def decode_frame(self, frame_bgr) -> str | None:
        # close() may run on another thread mid-decode
        detector = self._detector
        if self.closed or detector is None:
            raise FrameDecodeError("Decode surface is closed.")
        if frame_bgr is None or getattr(frame_bgr, "size", 0) == 0:
            raise FrameDecodeError("Empty frame.")

        try:
            text, points, _ = detector.detectAndDecode(frame_bgr)
        except cv2.error as e:
            raise FrameDecodeError(f"QR detection failed: {e}") from e

        if points is None or not text:
            return None
        text = text.strip()
        return text or None

    def decode_image_bytes(self, data: bytes) -> str | None:
        img_array = np.frombuffer(data, np.uint8)
        frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR) if img_array.size else None
        if frame is None:
            raise FrameDecodeError("Invalid image data.")
        return self.decode_frame(frame)

    def close(self) -> None:
        self.closed = True
        self._detector = None
