"""Find, fetch and classify the media a finished job produced.

ComfyUI reports outputs per node, grouped into buckets named after the
media class (`images`, `videos`, `gifs`, `audio`). Video helpers often
report animations inside `images`, so a bucket rule may admit entries by
filename suffix.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import NoMatchingOutput
from .logging import get_logger

ACCEPTED_CONTAINERS = ("output", "temp")
ANIMATION_SUFFIXES = (".gif", ".mp4", ".webm", ".mov")


@dataclass(frozen=True)
class MediaFormat:
    mime_type: str
    extension: str
    file_type: str  # "image" | "video" | "audio"


@dataclass(frozen=True)
class BucketRule:
    bucket: str
    # When set, only entries whose filename ends with one of these are kept.
    suffixes: Optional[Tuple[str, ...]] = None

    def admits(self, filename: str) -> bool:
        return self.suffixes is None or filename.lower().endswith(self.suffixes)


@dataclass(frozen=True)
class OutputArtifact:
    node_id: str
    filename: str
    subfolder: str
    container: str
    bucket: str


IMAGE_FORMATS: Dict[str, MediaFormat] = {
    ".jpg": MediaFormat("image/jpeg", "jpg", "image"),
    ".jpeg": MediaFormat("image/jpeg", "jpeg", "image"),
    ".webp": MediaFormat("image/webp", "webp", "image"),
    ".png": MediaFormat("image/png", "png", "image"),
    ".gif": MediaFormat("image/gif", "gif", "image"),
}
IMAGE_FALLBACK = MediaFormat("image/png", "png", "image")

VIDEO_FORMATS: Dict[str, MediaFormat] = {
    # GIF is technically an image container.
    ".gif": MediaFormat("image/gif", "gif", "image"),
    ".webm": MediaFormat("video/webm", "webm", "video"),
    ".mov": MediaFormat("video/quicktime", "mov", "video"),
    ".mp4": MediaFormat("video/mp4", "mp4", "video"),
}
VIDEO_FALLBACK = MediaFormat("video/mp4", "mp4", "video")

AUDIO_FORMATS: Dict[str, MediaFormat] = {
    ".wav": MediaFormat("audio/wav", "wav", "audio"),
    ".ogg": MediaFormat("audio/ogg", "ogg", "audio"),
    ".m4a": MediaFormat("audio/mp4", "m4a", "audio"),
    ".flac": MediaFormat("audio/flac", "flac", "audio"),
    ".mp3": MediaFormat("audio/mpeg", "mp3", "audio"),
}
AUDIO_FALLBACK = MediaFormat("audio/mpeg", "mp3", "audio")


def classify_format(filename: str, table: Mapping[str, MediaFormat], fallback: MediaFormat) -> MediaFormat:
    name = filename.lower()
    for suffix, fmt in table.items():
        if name.endswith(suffix):
            return fmt
    return fallback


def collect_artifacts(outputs: Mapping[str, Any], rules: Sequence[BucketRule]) -> List[OutputArtifact]:
    """Flatten the per-node output buckets into one ordered list.

    Order follows the bundle (node order, then rule order within a node).
    Entries outside the `output`/`temp` containers are discarded.
    """
    found: List[OutputArtifact] = []
    for node_id, node_output in outputs.items():
        if not isinstance(node_output, dict):
            continue
        for rule in rules:
            entries = node_output.get(rule.bucket)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                filename = entry.get("filename")
                if not isinstance(filename, str) or not filename:
                    continue
                if not rule.admits(filename):
                    continue
                container = entry.get("type")
                if container not in ACCEPTED_CONTAINERS:
                    continue
                found.append(
                    OutputArtifact(
                        node_id=str(node_id),
                        filename=filename,
                        subfolder=str(entry.get("subfolder") or ""),
                        container=container,
                        bucket=rule.bucket,
                    )
                )
    return found


ArtifactFetcher = Callable[[str, str, str], bytes]


@dataclass(frozen=True)
class ResolvedOutput:
    artifact: OutputArtifact
    data: bytes
    format: MediaFormat


class OutputResolver:
    def __init__(
        self,
        rules: Sequence[BucketRule],
        formats: Mapping[str, MediaFormat],
        fallback: MediaFormat,
        *,
        media_class: str = "image",
    ):
        self.log = get_logger()
        self.rules = tuple(rules)
        self.formats = dict(formats)
        self.fallback = fallback
        self.media_class = media_class

    def select(self, outputs: Mapping[str, Any]) -> OutputArtifact:
        artifacts = collect_artifacts(outputs, self.rules)
        self.log.info(f"[outputs] found {len(artifacts)} {self.media_class} output(s)")
        if not artifacts:
            raise NoMatchingOutput(
                f"No {self.media_class} outputs found in results",
                description=f"nodes with outputs: {', '.join(map(str, outputs)) or 'none'}",
            )
        return artifacts[0]

    def resolve(self, outputs: Mapping[str, Any], fetch: ArtifactFetcher) -> ResolvedOutput:
        artifact = self.select(outputs)
        data = fetch(artifact.filename, artifact.subfolder, artifact.container)
        fmt = classify_format(artifact.filename, self.formats, self.fallback)
        self.log.info(f"[outputs] {artifact.filename} ({fmt.mime_type}, {len(data)} bytes)")
        return ResolvedOutput(artifact=artifact, data=data, format=fmt)
