from __future__ import annotations

import pytest

from comfyflow.errors import NoMatchingOutput
from comfyflow.outputs import (
    AUDIO_FALLBACK,
    AUDIO_FORMATS,
    IMAGE_FALLBACK,
    IMAGE_FORMATS,
    VIDEO_FALLBACK,
    VIDEO_FORMATS,
    OutputResolver,
    classify_format,
    collect_artifacts,
)
from comfyflow.profiles import AUDIO, IMAGE, VIDEO


def _file(name, container="output", subfolder=""):
    return {"filename": name, "subfolder": subfolder, "type": container}


@pytest.mark.parametrize(
    "name,mime,ext,kind",
    [
        ("clip.GIF", "image/gif", "gif", "image"),
        ("clip.webm", "video/webm", "webm", "video"),
        ("clip.mov", "video/quicktime", "mov", "video"),
        ("clip.mp4", "video/mp4", "mp4", "video"),
        ("clip.avi", "video/mp4", "mp4", "video"),
    ],
)
def test_video_formats(name, mime, ext, kind):
    fmt = classify_format(name, VIDEO_FORMATS, VIDEO_FALLBACK)
    assert (fmt.mime_type, fmt.extension, fmt.file_type) == (mime, ext, kind)


def test_image_and_audio_fallbacks():
    assert classify_format("out.JPG", IMAGE_FORMATS, IMAGE_FALLBACK).mime_type == "image/jpeg"
    assert classify_format("out.bmp", IMAGE_FORMATS, IMAGE_FALLBACK).mime_type == "image/png"
    assert classify_format("song.m4a", AUDIO_FORMATS, AUDIO_FALLBACK).mime_type == "audio/mp4"
    assert classify_format("song.opus", AUDIO_FORMATS, AUDIO_FALLBACK).extension == "mp3"


def test_collect_skips_input_container():
    outputs = {"9": {"images": [_file("preview.png", "input"), _file("final.png", "temp")]}}
    found = collect_artifacts(outputs, IMAGE.output_rules)
    assert [a.filename for a in found] == ["final.png"]
    assert found[0].container == "temp"


def test_video_rules_filter_images_by_suffix():
    outputs = {
        "8": {"images": [_file("frame_0001.png"), _file("anim.webm")]},
        "12": {"gifs": [_file("clip.gif")], "videos": [_file("clip.mp4")]},
    }
    found = collect_artifacts(outputs, VIDEO.output_rules)
    assert [(a.node_id, a.filename, a.bucket) for a in found] == [
        ("8", "anim.webm", "images"),
        ("12", "clip.gif", "gifs"),
        ("12", "clip.mp4", "videos"),
    ]


def test_resolver_fetches_first_match():
    fetched = []

    def fetch(filename, subfolder, container):
        fetched.append((filename, subfolder, container))
        return b"RIFF"

    resolver = OutputResolver(AUDIO.output_rules, AUDIO.formats, AUDIO.fallback_format, media_class="audio")
    out = resolver.resolve(
        {"59": {"audio": [_file("a.wav", subfolder="audio"), _file("b.mp3")]}},
        fetch,
    )
    assert fetched == [("a.wav", "audio", "output")]
    assert out.format.mime_type == "audio/wav"
    assert out.data == b"RIFF"


def test_resolver_without_matches():
    resolver = OutputResolver(VIDEO.output_rules, VIDEO.formats, VIDEO.fallback_format, media_class="video")
    with pytest.raises(NoMatchingOutput) as excinfo:
        resolver.select({"8": {"images": [_file("frame.png")]}})
    assert excinfo.value.message == "No video outputs found in results"
