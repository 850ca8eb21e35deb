"""Remote vision question answering."""

from voicelens.foundation.vision.service import (
    QueryResult,
    VisionQueryService,
    build_prompt,
    mock_transport,
)

__all__ = ["QueryResult", "VisionQueryService", "build_prompt", "mock_transport"]
