from __future__ import annotations

import base64
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .outputs import MediaFormat


def size_label(num_bytes: int) -> str:
    """Kilobytes rounded half-up to one decimal, e.g. `12.3 kB`."""
    kb = math.floor(num_bytes / 1024 * 10 + 0.5) / 10
    text = str(int(kb)) if kb.is_integer() else f"{kb:.1f}"
    return f"{text} kB"


@dataclass(frozen=True)
class ResultRecord:
    mime_type: str
    file_name: str
    file_extension: str
    file_type: str
    data: str  # base64
    size_bytes: int
    file_size: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def json_view(self, *, include_data: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {"mimeType": self.mime_type, "fileName": self.file_name}
        if include_data:
            out["data"] = self.data
        out.update(self.metadata)
        return out

    def binary_view(self, *, key: str = "data") -> Dict[str, Dict[str, Any]]:
        return {
            key: {
                "fileName": self.file_name,
                "data": self.data,
                "fileType": self.file_type,
                "fileSize": self.file_size,
                "fileExtension": self.file_extension,
                "mimeType": self.mime_type,
            }
        }

    def to_item(self) -> Dict[str, Any]:
        """The `{json, binary}` pair a host expects for one output row."""
        return {"json": self.json_view(), "binary": self.binary_view()}


def package_result(
    data: bytes,
    filename: str,
    fmt: MediaFormat,
    metadata: Optional[Mapping[str, Any]] = None,
) -> ResultRecord:
    return ResultRecord(
        mime_type=fmt.mime_type,
        file_name=filename,
        file_extension=fmt.extension,
        file_type=fmt.file_type,
        data=base64.b64encode(data).decode("ascii"),
        size_bytes=len(data),
        file_size=size_label(len(data)),
        metadata=dict(metadata or {}),
    )
