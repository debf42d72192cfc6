"""ArUco marker detection on video frames."""

from abc import ABC, abstractmethod
from typing import List

import cv2
import numpy as np

from .config import ARUCO_DICTIONARY, ARUCO_PROCESSING_WIDTH
from .visual_servo import MarkerDetection


class MarkerDetector(ABC):
    @abstractmethod
    def detect(self, frame: np.ndarray) -> List[MarkerDetection]:
        """Return detections in source-frame coordinates, possibly empty."""


class ArucoMarkerDetector(MarkerDetector):
    """OpenCV ArUco detector working on a downscaled grayscale copy.

    Frames wider than ``processing_width`` are resized before detection to
    bound CPU cost; corners are scaled back to the source resolution.
    """

    def __init__(
        self,
        dictionary: str = ARUCO_DICTIONARY,
        processing_width: int = ARUCO_PROCESSING_WIDTH,
    ):
        self.processing_width = processing_width
        self.aruco_dict = cv2.aruco.getPredefinedDictionary(getattr(cv2.aruco, dictionary))
        self.aruco_params = cv2.aruco.DetectorParameters()
        self.detector = cv2.aruco.ArucoDetector(self.aruco_dict, self.aruco_params)

    def detect(self, frame: np.ndarray) -> List[MarkerDetection]:
        if frame.ndim == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame

        height, width = gray.shape[:2]
        if width > self.processing_width:
            scale = self.processing_width / width
            gray_detect = cv2.resize(
                gray,
                (self.processing_width, max(1, round(height * scale))),
                interpolation=cv2.INTER_AREA,
            )
            scale_inv = 1.0 / scale
        else:
            gray_detect = gray
            scale_inv = 1.0

        corners, ids, _ = self.detector.detectMarkers(gray_detect)
        if ids is None:
            return []

        detections = []
        for marker_corners, marker_id in zip(corners, ids.flatten()):
            points = np.asarray(marker_corners, dtype=float).reshape(-1, 2) * scale_inv
            detections.append(
                MarkerDetection(
                    corners=tuple((float(x), float(y)) for x, y in points),
                    marker_id=int(marker_id),
                )
            )
        return detections
