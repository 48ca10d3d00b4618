"""Artifact payloads: data-URL references to rendered images."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import MalformedPayloadError

SUPPORTED_MIME_TYPES: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}

DEFAULT_FILENAME_BASE = "compose-relay-image"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>image/[a-z0-9.+-]+);base64,(?P<data>.*)$", re.IGNORECASE | re.DOTALL)


def is_supported_payload_ref(ref: Any) -> bool:
    """Cheap syntactic check used before dispatch (full decode happens in from_data_url)."""
    if not isinstance(ref, str):
        return False
    m = _DATA_URL_RE.match(ref)
    return bool(m) and m.group("mime").lower() in SUPPORTED_MIME_TYPES


@dataclass(frozen=True)
class ArtifactPayload:
    mime: str
    data: bytes = field(repr=False)
    filename: str

    @property
    def extension(self) -> str:
        return SUPPORTED_MIME_TYPES.get(self.mime, "png")

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.data).decode('ascii')}"

    @classmethod
    def from_bytes(cls, data: bytes, *, mime: str = "image/png", filename: str | None = None) -> ArtifactPayload:
        mime = str(mime or "").strip().lower()
        if mime not in SUPPORTED_MIME_TYPES:
            raise MalformedPayloadError(f"unsupported media type {mime!r}", details={"mime": mime})
        if not data:
            raise MalformedPayloadError("empty artifact")
        ext = SUPPORTED_MIME_TYPES[mime]
        name = filename if (filename and "." in filename) else f"{DEFAULT_FILENAME_BASE}.{ext}"
        return cls(mime=mime, data=bytes(data), filename=name)

    @classmethod
    def from_data_url(cls, ref: Any, *, filename: str | None = None) -> ArtifactPayload:
        if not isinstance(ref, str) or not ref:
            raise MalformedPayloadError("payload reference is missing")
        m = _DATA_URL_RE.match(ref.strip())
        if not m:
            raise MalformedPayloadError("expected a base64 data:image/... URL", details={"prefix": ref[:32]})
        try:
            raw = base64.b64decode(m.group("data"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedPayloadError(f"invalid base64 body ({exc})") from exc
        return cls.from_bytes(raw, mime=m.group("mime"), filename=filename)

    def materialize(self, directory: str | Path) -> Path:
        """Write the artifact to disk (content-addressed) so CDP can hand it to file inputs."""
        root = Path(directory).expanduser()
        root.mkdir(parents=True, exist_ok=True)
        path = root / f"{DEFAULT_FILENAME_BASE}-{self.sha256[:16]}.{self.extension}"
        if path.exists() and path.stat().st_size == self.size:
            return path.absolute()
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(self.data)
        with suppress(Exception):
            os.chmod(tmp, 0o600)
        tmp.replace(path)
        return path.absolute()

    def describe(self) -> dict[str, Any]:
        return {"mime": self.mime, "bytes": self.size, "sha256": self.sha256[:16], "filename": self.filename}


@dataclass(frozen=True)
class PayloadDescriptor:
    """What a share is about: the render request, where it goes, and (later) the artifact."""

    request: dict[str, Any]
    target_url: str
    payload_ref: str | None = field(default=None, repr=False)

    def with_payload(self, payload_ref: str) -> PayloadDescriptor:
        return PayloadDescriptor(request=self.request, target_url=self.target_url, payload_ref=payload_ref)


__all__ = [
    "ArtifactPayload",
    "DEFAULT_FILENAME_BASE",
    "PayloadDescriptor",
    "SUPPORTED_MIME_TYPES",
    "is_supported_payload_ref",
]
