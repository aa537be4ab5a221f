"""Resolve caller-supplied input descriptors into raw bytes.

Three source kinds are supported:

- ``url``: fetched with an unauthenticated GET,
- ``base64``: inline payload (a ``data:`` URI prefix is tolerated),
- ``binary``: a named attachment on one of the host's input records.

Attachment lookup tries an ordered list of strategies (exact name, the
conventional names used for a second input, then a scan by media type) and
takes the first one that returns a match.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Collection, Dict, List, Optional, Sequence

import httpx

from .errors import AttachmentNotFound, InputDecodeFailed, InputFetchFailed, WrongMediaType
from .logging import get_logger

# Property names hosts commonly use for a second image.
SECOND_INPUT_NAMES = ("data2", "image2", "second_image", "secondImage")


class SourceKind(str, Enum):
    URL = "url"
    INLINE = "base64"
    ATTACHMENT = "binary"


@dataclass(frozen=True)
class InputSource:
    kind: SourceKind
    value: str

    @classmethod
    def url(cls, url: str) -> "InputSource":
        return cls(SourceKind.URL, url)

    @classmethod
    def inline(cls, payload: str) -> "InputSource":
        return cls(SourceKind.INLINE, payload)

    @classmethod
    def attachment(cls, name: str) -> "InputSource":
        return cls(SourceKind.ATTACHMENT, name)

    @classmethod
    def parse(cls, kind: str, value: str) -> "InputSource":
        try:
            return cls(SourceKind(kind.strip().lower()), value)
        except ValueError as e:
            raise ValueError(f"Unknown input type {kind!r} (expected url, base64 or binary)") from e


@dataclass(frozen=True)
class Attachment:
    data: bytes
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


@dataclass
class InputRecord:
    """One input row presented by the host: binary attachments keyed by name."""

    attachments: Dict[str, Attachment] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedInput:
    source_kind: SourceKind
    data: bytes
    attachment_name: Optional[str] = None
    mime_type: Optional[str] = None


# (record, requested_name, mime_prefix, role, exclude) -> attachment name or None
SelectionStrategy = Callable[[InputRecord, str, str, int, Collection[str]], Optional[str]]


def _matches_prefix(att: Attachment, prefix: str) -> bool:
    return bool(att.mime_type) and att.mime_type.startswith(prefix)  # type: ignore[union-attr]


def select_exact(record: InputRecord, requested: str, prefix: str, role: int, exclude: Collection[str]) -> Optional[str]:
    return requested if requested in record.attachments else None


def select_conventional(
    record: InputRecord, requested: str, prefix: str, role: int, exclude: Collection[str]
) -> Optional[str]:
    if role != 1:
        return None
    for name in SECOND_INPUT_NAMES:
        att = record.attachments.get(name)
        if att is not None and name not in exclude and _matches_prefix(att, prefix):
            return name
    return None


def select_by_media_type(
    record: InputRecord, requested: str, prefix: str, role: int, exclude: Collection[str]
) -> Optional[str]:
    for name, att in record.attachments.items():
        if name not in exclude and _matches_prefix(att, prefix):
            return name
    return None


DEFAULT_STRATEGIES: Sequence[SelectionStrategy] = (select_exact, select_conventional, select_by_media_type)


def record_index_for_role(role: int, record_count: int) -> int:
    """The second input reads the second record when the host supplied more than one."""
    return 1 if role == 1 and record_count > 1 else 0


def decode_inline(payload: str) -> bytes:
    text = (payload or "").strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    text = "".join(text.split())
    if not text:
        raise InputDecodeFailed("Inline input is empty; expected base64-encoded data.")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputDecodeFailed("Inline input is not valid base64.", description=str(e)) from e


class InputResolver:
    def __init__(
        self,
        http: httpx.Client,
        records: Sequence[InputRecord] = (),
        *,
        mime_prefix: str = "image/",
        strategies: Sequence[SelectionStrategy] = DEFAULT_STRATEGIES,
    ):
        self.log = get_logger()
        self.http = http
        self.records: List[InputRecord] = list(records)
        self.mime_prefix = mime_prefix
        self.strategies = tuple(strategies)

    def resolve(self, source: InputSource, *, role: int = 0, exclude: Collection[str] = ()) -> ResolvedInput:
        label = f"input {role + 1}"
        if source.kind is SourceKind.URL:
            return ResolvedInput(SourceKind.URL, self.fetch_url(source.value, label=label))
        if source.kind is SourceKind.INLINE:
            return ResolvedInput(SourceKind.INLINE, decode_inline(source.value))
        return self.resolve_attachment(source.value, role=role, exclude=exclude)

    def fetch_url(self, url: str, *, label: str = "input") -> bytes:
        self.log.info(f"[inputs] downloading {label} from {url}")
        try:
            r = self.http.get(url)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise InputFetchFailed(
                f"Failed to download {label} from {url} ({e.response.status_code})",
                description=e.response.text[:500],
            ) from e
        except httpx.HTTPError as e:
            raise InputFetchFailed(f"Failed to download {label} from {url}", description=str(e)) from e
        return r.content

    def resolve_attachment(self, requested: str, *, role: int = 0, exclude: Collection[str] = ()) -> ResolvedInput:
        label = f"input {role + 1}"
        if not self.records:
            raise AttachmentNotFound(f'No input records available to read attachment "{requested}" for {label}')

        index = record_index_for_role(role, len(self.records))
        record = self.records[index]
        self.log.debug(f"[inputs] {label}: record {index} has attachments {list(record.attachments)}")

        name: Optional[str] = None
        for strategy in self.strategies:
            name = strategy(record, requested, self.mime_prefix, role, exclude)
            if name is not None:
                break

        if name is None:
            raise AttachmentNotFound(
                f'No binary data found in property "{requested}" for {label} '
                f"and no {self.mime_prefix.rstrip('/')} alternatives found"
            )
        if name != requested:
            self.log.info(f'[inputs] {label}: "{requested}" not found, using "{name}"')

        att = record.attachments[name]
        if not _matches_prefix(att, self.mime_prefix):
            raise WrongMediaType(
                f"Invalid media type for {label}: {att.mime_type}. "
                f"Only {self.mime_prefix.rstrip('/')} data is supported."
            )
        return ResolvedInput(SourceKind.ATTACHMENT, att.data, attachment_name=name, mime_type=att.mime_type)
