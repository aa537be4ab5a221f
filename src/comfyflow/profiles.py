"""Per-media pipeline profiles.

The image, dual-image, video and audio pipelines differ only in data: which
nodes receive the uploaded inputs, which parameters get swept into the
graph, which output buckets count and how filenames map to formats. Each is
a `PipelineProfile` consumed by the one `RenderPipeline` engine.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, Field, model_validator

from .clients.comfy_client import AssetReference
from .outputs import (
    ANIMATION_SUFFIXES,
    AUDIO_FALLBACK,
    AUDIO_FORMATS,
    IMAGE_FALLBACK,
    IMAGE_FORMATS,
    VIDEO_FALLBACK,
    VIDEO_FORMATS,
    BucketRule,
    MediaFormat,
)

LOAD_IMAGE = "LoadImage"

VIDEO_NODE_KINDS = (
    "AnimateDiffSampler",
    "SVD_img2vid_Conditioning",
    "VideoHelperSuite",
    "VHS_VideoCombine",
    "AnimateDiffCombine",
)

MAX_SEED = 10**15


# -----------------------
# Job parameters
# -----------------------


class JobParams(BaseModel):
    """Parameters shared by every pipeline."""

    workflow: str = Field(min_length=1, description="ComfyUI workflow in API (prompt) JSON format")
    timeout_minutes: float = Field(default=30.0, gt=0)

    def node_ids(self) -> Optional[Tuple[str, ...]]:
        """Explicit target node ids, or None to locate targets by kind."""
        return None

    def text_value(self) -> Optional[str]:
        return None

    def sweep_values(self) -> Dict[str, Any]:
        return {}

    def metadata(self, assets: Sequence[AssetReference], values: Mapping[str, Any]) -> Dict[str, Any]:
        return {}


class ImageJobParams(JobParams):
    image_node_id: Optional[str] = None

    def node_ids(self) -> Optional[Tuple[str, ...]]:
        return (self.image_node_id,) if self.image_node_id else None

    def metadata(self, assets: Sequence[AssetReference], values: Mapping[str, Any]) -> Dict[str, Any]:
        return {"inputImage": assets[0].name}


class DualImageJobParams(JobParams):
    first_node_id: Optional[str] = None
    second_node_id: Optional[str] = None

    @model_validator(mode="after")
    def _both_or_neither(self) -> "DualImageJobParams":
        if bool(self.first_node_id) != bool(self.second_node_id):
            raise ValueError("first_node_id and second_node_id must be given together")
        return self

    def node_ids(self) -> Optional[Tuple[str, ...]]:
        if self.first_node_id and self.second_node_id:
            return (self.first_node_id, self.second_node_id)
        return None

    def metadata(self, assets: Sequence[AssetReference], values: Mapping[str, Any]) -> Dict[str, Any]:
        return {"inputImages": {"first": assets[0].name, "second": assets[1].name}}


class VideoJobParams(JobParams):
    timeout_minutes: float = Field(default=60.0, gt=0)
    first_node_id: str = Field(default="load_image_1", min_length=1)
    second_node_id: str = Field(default="load_image_2", min_length=1)
    frame_count: int = Field(default=16, gt=0)
    frame_rate: float = Field(default=8, gt=0)

    def node_ids(self) -> Optional[Tuple[str, ...]]:
        return (self.first_node_id, self.second_node_id)

    def sweep_values(self) -> Dict[str, Any]:
        return {"frame_count": self.frame_count, "frame_rate": self.frame_rate}

    def metadata(self, assets: Sequence[AssetReference], values: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "frameCount": self.frame_count,
            "frameRate": self.frame_rate,
            "duration": self.frame_count / self.frame_rate,
        }


AudioQuality = Literal["64k", "128k", "192k", "256k", "320k"]


class AudioJobParams(JobParams):
    prompt: str = Field(min_length=1, description="Description of the audio to generate")
    duration: float = Field(default=180, gt=0, description="Seconds of audio")
    quality: AudioQuality = "128k"
    seed: int = Field(default=-1, ge=-1, description="-1 picks a random seed")
    steps: int = Field(default=50, ge=1)
    cfg: float = Field(default=5, gt=0)

    def resolved_seed(self) -> int:
        return random.randrange(MAX_SEED) if self.seed == -1 else self.seed

    def text_value(self) -> Optional[str]:
        return self.prompt

    def sweep_values(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "quality": self.quality,
            "seed": self.resolved_seed(),
            "steps": self.steps,
            "cfg": self.cfg,
        }

    def metadata(self, assets: Sequence[AssetReference], values: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "duration": self.duration,
            "quality": self.quality,
            "seed": values.get("seed"),
        }


# -----------------------
# Profiles
# -----------------------


@dataclass(frozen=True)
class InputRole:
    name: str
    upload_filename: str
    default_attachment: str = "data"


@dataclass(frozen=True)
class FieldSweep:
    kinds: Tuple[str, ...]
    # node input field -> key in JobParams.sweep_values()
    fields: Mapping[str, str]
    first_only: bool = False

    def values(self, resolved: Mapping[str, Any]) -> Dict[str, Any]:
        return {name: resolved[key] for name, key in self.fields.items() if key in resolved}


@dataclass(frozen=True)
class PipelineProfile:
    name: str
    label: str
    media_class: str
    params_model: Type[JobParams]
    output_rules: Tuple[BucketRule, ...]
    formats: Mapping[str, MediaFormat]
    fallback_format: MediaFormat
    initial_wait_s: float
    poll_interval_s: float

    input_roles: Tuple[InputRole, ...] = ()
    target_kind: str = LOAD_IMAGE
    target_field: str = "image"
    # (kind, field) that receives JobParams.text_value()
    text_target: Optional[Tuple[str, str]] = None
    sweeps: Tuple[FieldSweep, ...] = field(default_factory=tuple)
    input_mime_prefix: str = "image/"

    @property
    def arity(self) -> int:
        return len(self.input_roles)


IMAGE = PipelineProfile(
    name="image",
    label="ComfyUI Image",
    media_class="image",
    params_model=ImageJobParams,
    input_roles=(InputRole("image", "input.png"),),
    output_rules=(BucketRule("images"),),
    formats=IMAGE_FORMATS,
    fallback_format=IMAGE_FALLBACK,
    initial_wait_s=5.0,
    poll_interval_s=1.0,
)

DUAL_IMAGE = PipelineProfile(
    name="dual-image",
    label="ComfyUI Dual",
    media_class="image",
    params_model=DualImageJobParams,
    input_roles=(
        InputRole("first", "first_input.png", "data"),
        InputRole("second", "second_input.png", "data2"),
    ),
    output_rules=(BucketRule("images"),),
    formats=IMAGE_FORMATS,
    fallback_format=IMAGE_FALLBACK,
    initial_wait_s=5.0,
    poll_interval_s=1.0,
)

VIDEO = PipelineProfile(
    name="video",
    label="ComfyUI Video",
    media_class="video",
    params_model=VideoJobParams,
    input_roles=(
        InputRole("first", "first_input.png", "data"),
        InputRole("second", "second_input.png", "data2"),
    ),
    sweeps=(
        FieldSweep(
            kinds=VIDEO_NODE_KINDS,
            fields={
                "frame_count": "frame_count",
                "frames": "frame_count",
                "frame_rate": "frame_rate",
                "fps": "frame_rate",
            },
        ),
    ),
    output_rules=(
        BucketRule("gifs"),
        BucketRule("videos"),
        BucketRule("images", suffixes=ANIMATION_SUFFIXES),
    ),
    formats=VIDEO_FORMATS,
    fallback_format=VIDEO_FALLBACK,
    initial_wait_s=10.0,
    poll_interval_s=5.0,
)

AUDIO = PipelineProfile(
    name="audio",
    label="ComfyUI Audio",
    media_class="audio",
    params_model=AudioJobParams,
    text_target=("TextEncodeAceStepAudio", "tags"),
    sweeps=(
        FieldSweep(("EmptyAceStepLatentAudio",), {"seconds": "duration"}, first_only=True),
        FieldSweep(("KSampler",), {"seed": "seed", "steps": "steps", "cfg": "cfg"}, first_only=True),
        FieldSweep(("SaveAudioMP3",), {"quality": "quality"}, first_only=True),
    ),
    output_rules=(BucketRule("audio"),),
    formats=AUDIO_FORMATS,
    fallback_format=AUDIO_FALLBACK,
    initial_wait_s=5.0,
    poll_interval_s=1.0,
)

PROFILES: Dict[str, PipelineProfile] = {p.name: p for p in (IMAGE, DUAL_IMAGE, VIDEO, AUDIO)}


def get_profile(name: str) -> PipelineProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown pipeline {name!r}; expected one of: {', '.join(PROFILES)}") from None


def list_profiles() -> List[str]:
    return list(PROFILES)
