from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from comfyflow.config import ServerConfig

API_URL = "http://comfy.test:8188"


class FakeComfyServer:
    """In-memory stand-in for a ComfyUI server plus arbitrary remote files."""

    def __init__(self) -> None:
        self.calls: List[httpx.Request] = []
        self.remote_files: Dict[str, bytes] = {}
        self.upload_names: List[str] = []
        self.uploads: List[bytes] = []
        self.prompts: List[Dict[str, Any]] = []
        self.prompt_response: Any = {"prompt_id": "J1", "number": 1, "node_errors": {}}
        self.prompt_status = 200
        self.history: List[Dict[str, Any]] = []
        self.view_files: Dict[str, bytes] = {}
        self.system_stats_status = 200
        self.upload_status = 200
        self.upload_body: Optional[bytes] = None

    # -- helpers --

    def comfy_calls(self, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            r
            for r in self.calls
            if r.url.host == "comfy.test" and (path is None or r.url.path == path or r.url.path.startswith(path))
        ]

    def complete(self, job_id: str, outputs: Dict[str, Any], status_str: str = "success") -> Dict[str, Any]:
        return {
            job_id: {
                "prompt": [],
                "outputs": outputs,
                "status": {"status_str": status_str, "completed": True, "messages": []},
            }
        }

    # -- transport --

    def handler(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.calls.append(request)
        if request.url.host != "comfy.test":
            data = self.remote_files.get(str(request.url))
            if data is None:
                return httpx.Response(404, text="missing")
            return httpx.Response(200, content=data)

        path = request.url.path
        if path == "/system_stats":
            if self.system_stats_status != 200:
                return httpx.Response(self.system_stats_status, text="unavailable")
            return httpx.Response(200, json={"system": {"os": "posix"}, "devices": []})

        if path == "/upload/image":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="upload refused")
            self.uploads.append(request.content)
            if self.upload_body is not None:
                return httpx.Response(200, content=self.upload_body)
            name = self.upload_names.pop(0) if self.upload_names else f"upload_{len(self.uploads)}.png"
            return httpx.Response(200, json={"name": name, "subfolder": "", "type": "input"})

        if path == "/prompt":
            self.prompts.append(json.loads(request.content))
            if self.prompt_status != 200:
                return httpx.Response(self.prompt_status, json={"error": "invalid prompt", "node_errors": {}})
            return httpx.Response(200, json=self.prompt_response)

        if path.startswith("/history/"):
            if not self.history:
                return httpx.Response(200, json={})
            body = self.history.pop(0) if len(self.history) > 1 else self.history[0]
            return httpx.Response(200, json=body)

        if path == "/view":
            data = self.view_files.get(request.url.params.get("filename", ""))
            if data is None:
                return httpx.Response(404, text="Not Found")
            return httpx.Response(200, content=data)

        return httpx.Response(404, text="no route")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class VirtualClock:
    def __init__(self) -> None:
        self.sleeps: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    @property
    def elapsed(self) -> float:
        return sum(self.sleeps)


@pytest.fixture
def server() -> FakeComfyServer:
    return FakeComfyServer()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(api_url=API_URL, api_key="secret-token")


@pytest.fixture
def video_workflow() -> str:
    return json.dumps(
        {
            "load_image_1": {"inputs": {"image": "placeholder.png"}, "class_type": "LoadImage"},
            "load_image_2": {"inputs": {"image": "placeholder.png"}, "class_type": "LoadImage"},
            "12": {
                "inputs": {"frame_rate": 24, "images": ["10", 0], "filename_prefix": "clip"},
                "class_type": "VHS_VideoCombine",
            },
            "14": {
                "inputs": {"video_frames": 25, "fps": 6, "init_image": ["load_image_1", 0]},
                "class_type": "SVD_img2vid_Conditioning",
            },
        }
    )


@pytest.fixture
def audio_workflow() -> str:
    return json.dumps(
        {
            "14": {
                "inputs": {"tags": "placeholder", "lyrics": "", "clip": ["40", 1]},
                "class_type": "TextEncodeAceStepAudio",
                "_meta": {"title": "TextEncodeAceStepAudio"},
            },
            "17": {"inputs": {"seconds": 180, "batch_size": 1}, "class_type": "EmptyAceStepLatentAudio"},
            "52": {
                "inputs": {"seed": 1, "steps": 50, "cfg": 5, "sampler_name": "euler", "model": ["49", 0]},
                "class_type": "KSampler",
            },
            "59": {
                "inputs": {"filename_prefix": "audio/ComfyUI", "quality": "128k", "audio": ["18", 0]},
                "class_type": "SaveAudioMP3",
            },
        }
    )
