from .config import ServerConfig
from .errors import ComfyError
from .inputs import Attachment, InputRecord, InputSource
from .pipeline import PipelineResult, RenderPipeline
from .profiles import (
    AUDIO,
    DUAL_IMAGE,
    IMAGE,
    VIDEO,
    AudioJobParams,
    DualImageJobParams,
    ImageJobParams,
    VideoJobParams,
    get_profile,
)
from .result import ResultRecord

__all__ = [
    "AUDIO",
    "DUAL_IMAGE",
    "IMAGE",
    "VIDEO",
    "Attachment",
    "AudioJobParams",
    "ComfyError",
    "DualImageJobParams",
    "ImageJobParams",
    "InputRecord",
    "InputSource",
    "PipelineResult",
    "RenderPipeline",
    "ResultRecord",
    "ServerConfig",
    "VideoJobParams",
    "get_profile",
]
