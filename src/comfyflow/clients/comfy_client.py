from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import urlencode

import httpx

from ..config import ServerConfig
from ..errors import (
    MalformedUploadResponse,
    NoJobId,
    OutputFetchFailed,
    OutputNotFound,
    PollTransportError,
    ServerUnavailable,
    SubmitTransportError,
    UploadTransportError,
)
from ..graph import WorkflowGraph
from ..logging import get_logger


@dataclass(frozen=True)
class AssetReference:
    """Server-side handle for an uploaded input (`{name, subfolder, type}`)."""

    name: str
    subfolder: str = ""
    namespace: str = "input"

    @classmethod
    def from_response(cls, data: Any) -> "AssetReference":
        if not isinstance(data, dict):
            raise MalformedUploadResponse(f"Unexpected upload response: {data!r}")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedUploadResponse(f"Upload response missing asset name: {data!r}")
        subfolder = data.get("subfolder")
        namespace = data.get("type")
        return cls(
            name=name,
            subfolder=subfolder if isinstance(subfolder, str) else "",
            namespace=namespace if isinstance(namespace, str) and namespace else "input",
        )


def _excerpt(r: httpx.Response, limit: int = 2000) -> str:
    return r.text[:limit]


class ComfyClient:
    """Thin wrapper around the ComfyUI HTTP API.

    One instance per invocation. The bearer token (if any) is sent on every
    request, including artifact downloads.
    """

    def __init__(self, config: ServerConfig, *, transport: Optional[httpx.BaseTransport] = None):
        self.log = get_logger()
        self.cfg = config
        self.base_url = config.api_url.rstrip("/")

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=config.auth_headers(),
            timeout=config.request_timeout_s,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ComfyClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def check_connection(self) -> Dict[str, Any]:
        self.log.info(f"[comfy] checking API connection at {self.base_url}")
        try:
            r = self._client.get("/system_stats")
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            raise ServerUnavailable(
                f"ComfyUI server at {self.base_url} rejected the connection check ({e.response.status_code})",
                description=_excerpt(e.response),
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ServerUnavailable(f"Cannot reach ComfyUI server at {self.base_url}", description=str(e)) from e
        return data if isinstance(data, dict) else {}

    def upload_image(self, data: bytes, filename: str) -> AssetReference:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        self.log.info(f"[comfy] uploading {filename} ({len(data)} bytes)")
        try:
            r = self._client.post(
                "/upload/image",
                files={"image": (filename, data, content_type)},
                data={"subfolder": "", "overwrite": "true"},
            )
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UploadTransportError(
                f"Upload of {filename} failed ({e.response.status_code})",
                description=_excerpt(e.response),
            ) from e
        except httpx.HTTPError as e:
            raise UploadTransportError(f"Upload of {filename} failed", description=str(e)) from e

        try:
            payload = r.json()
        except ValueError as e:
            raise MalformedUploadResponse(
                f"Upload of {filename} returned a non-JSON response", description=_excerpt(r)
            ) from e
        ref = AssetReference.from_response(payload)
        self.log.info(f"[comfy] uploaded {filename} as {ref.name}")
        return ref

    def queue_prompt(self, graph: Union[WorkflowGraph, Mapping[str, Any]]) -> str:
        body = graph.to_dict() if isinstance(graph, WorkflowGraph) else dict(graph)
        self.log.info("[comfy] queueing workflow")
        try:
            r = self._client.post("/prompt", json={"prompt": body})
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            # 400 carries ComfyUI's node validation errors in the body.
            raise SubmitTransportError(
                f"Workflow submission failed ({e.response.status_code})",
                description=_excerpt(e.response),
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SubmitTransportError("Workflow submission failed", description=str(e)) from e

        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not job_id:
            raise NoJobId("Failed to get prompt ID from ComfyUI", description=str(data)[:2000])
        self.log.info(f"[comfy] queued prompt_id={job_id}")
        return str(job_id)

    def get_history(self, job_id: str) -> Dict[str, Any]:
        try:
            r = self._client.get(f"/history/{job_id}")
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            raise PollTransportError(
                f"History query for {job_id} failed ({e.response.status_code})",
                description=_excerpt(e.response),
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise PollTransportError(f"History query for {job_id} failed", description=str(e)) from e
        return data if isinstance(data, dict) else {}

    def view_url(self, filename: str, subfolder: str = "", container: str = "output") -> str:
        query = urlencode({"filename": filename, "subfolder": subfolder or "", "type": container})
        return f"{self.base_url}/view?{query}"

    def fetch_artifact(self, filename: str, subfolder: str = "", container: str = "output") -> bytes:
        url = self.view_url(filename, subfolder, container)
        self.log.info(f"[comfy] downloading {filename}")
        try:
            r = self._client.get(url, timeout=self.cfg.download_timeout_s)
        except httpx.HTTPError as e:
            raise OutputFetchFailed(f"Failed to download {filename} from {url}", description=str(e)) from e

        if r.status_code == 404:
            raise OutputNotFound(f"Output file not found at {url}")
        if r.status_code >= 400:
            raise OutputFetchFailed(
                f"Failed to download {filename} from {url} ({r.status_code})",
                description=_excerpt(r),
            )
        return r.content
