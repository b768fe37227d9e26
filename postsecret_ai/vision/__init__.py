"""
Vision classification module.

- Prompt loading and versioning
- Vision-model classification with retries
- Schema guard that coerces model output into the canonical payload
"""

from .classifier import ClassifierError, VisionClassifier
from .schema_guard import normalize
from .schemas import ClassificationPayload

__all__ = ['ClassifierError', 'VisionClassifier', 'normalize', 'ClassificationPayload']
