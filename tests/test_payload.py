from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import PNG_BYTES, PNG_DATA_URL


def test_from_data_url_decodes_png() -> None:
    from relay_servers.compose_relay.payload import ArtifactPayload

    payload = ArtifactPayload.from_data_url(PNG_DATA_URL)
    assert payload.mime == "image/png"
    assert payload.data == PNG_BYTES
    assert payload.filename == "compose-relay-image.png"
    assert payload.data_url == PNG_DATA_URL


@pytest.mark.parametrize(
    "ref",
    [
        None,
        "",
        "https://example.com/a.png",
        "data:text/plain;base64,aGVsbG8=",
        "data:image/png;base64,@@@not-base64@@@",
        "data:image/tiff;base64,AAAA",
        "data:image/png;base64,",
    ],
)
def test_malformed_refs_are_rejected(ref) -> None:  # noqa: ANN001
    from relay_servers.compose_relay.errors import MalformedPayloadError
    from relay_servers.compose_relay.payload import ArtifactPayload

    with pytest.raises(MalformedPayloadError):
        ArtifactPayload.from_data_url(ref)


def test_supported_ref_check() -> None:
    from relay_servers.compose_relay.payload import is_supported_payload_ref

    assert is_supported_payload_ref(PNG_DATA_URL)
    assert is_supported_payload_ref("data:image/JPEG;base64,AAAA")
    assert not is_supported_payload_ref("data:image/bmp;base64,AAAA")
    assert not is_supported_payload_ref(42)


def test_jpeg_extension_and_custom_filename() -> None:
    from relay_servers.compose_relay.payload import ArtifactPayload

    jpeg = ArtifactPayload.from_bytes(b"\xff\xd8\xff", mime="image/jpeg")
    assert jpeg.extension == "jpg"
    assert jpeg.filename == "compose-relay-image.jpg"
    named = ArtifactPayload.from_bytes(PNG_BYTES, filename="progress.png")
    assert named.filename == "progress.png"


def test_materialize_is_content_addressed(tmp_path: Path) -> None:
    from relay_servers.compose_relay.payload import ArtifactPayload

    payload = ArtifactPayload.from_bytes(PNG_BYTES)
    first = payload.materialize(tmp_path / "out")
    second = payload.materialize(tmp_path / "out")

    assert first == second
    assert first.read_bytes() == PNG_BYTES
    assert first.name == f"compose-relay-image-{payload.sha256[:16]}.png"
    assert list((tmp_path / "out").iterdir()) == [first]
    if os.name == "posix":
        assert first.stat().st_mode & 0o777 == 0o600


def test_descriptor_with_payload_keeps_request() -> None:
    from relay_servers.compose_relay.payload import PayloadDescriptor

    desc = PayloadDescriptor(request={"title": "t"}, target_url="https://x.com/compose/post")
    filled = desc.with_payload(PNG_DATA_URL)
    assert filled.request == {"title": "t"}
    assert filled.payload_ref == PNG_DATA_URL
    assert desc.payload_ref is None
    assert PNG_DATA_URL not in repr(filled)
