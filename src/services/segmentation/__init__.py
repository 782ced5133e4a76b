"""Text segmentation: fixed, paragraph, semantic and sentence strategies."""

from src.services.segmentation.segmenter import Segmenter, detect_content_type

__all__ = ["Segmenter", "detect_content_type"]
