from __future__ import annotations

import io
import re

import httpx
import pytest
from botocore.exceptions import ClientError
from PIL import Image

from services.storage.s3_uploader import S3Uploader
from utils.errors import StorageUploadError
from utils.media_validation import extension_for_content_type, resolve_content_type
from utils.settings import S3Settings

SETTINGS = S3Settings(
    region="us-east-1",
    access_key_id="key",
    secret_access_key="secret",
    endpoint="https://s3.example.com",
    bucket_name="selfies",
    public_endpoint="https://cdn.example.com",
)


class FakeS3:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.puts = []

    def put_object(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.puts.append(kwargs)
        return {"ETag": '"abc"'}


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2), "red").save(buffer, format="PNG")
    return buffer.getvalue()


def _uploader(handler, s3: FakeS3) -> S3Uploader:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return S3Uploader(SETTINGS, s3_client=s3, http=http)


@pytest.mark.anyio
async def test_upload_puts_public_object_and_returns_public_url() -> None:
    s3 = FakeS3()
    uploader = _uploader(lambda request: httpx.Response(200, content=b"jpeg-bytes", headers={"content-type": "image/jpeg"}), s3)

    url = await uploader.upload_from_url("http://comfy.test:8188/view?filename=a.jpg")

    (put,) = s3.puts
    assert put["Bucket"] == "selfies"
    assert put["ACL"] == "public-read"
    assert put["ContentType"] == "image/jpeg"
    assert put["Body"] == b"jpeg-bytes"
    assert re.fullmatch(r"selfie/\d+-[0-9a-z]{8}\.jpg", put["Key"])
    assert url == f"https://cdn.example.com/{put['Key']}"


@pytest.mark.anyio
async def test_content_type_is_sniffed_when_header_is_not_an_image() -> None:
    s3 = FakeS3()
    body = _png_bytes()
    uploader = _uploader(lambda request: httpx.Response(200, content=body, headers={"content-type": "application/octet-stream"}), s3)

    await uploader.upload_from_url("http://comfy.test:8188/view?filename=a")

    assert s3.puts[0]["ContentType"] == "image/png"
    assert s3.puts[0]["Key"].endswith(".png")


@pytest.mark.anyio
async def test_download_failure_raises_storage_error() -> None:
    s3 = FakeS3()
    uploader = _uploader(lambda request: httpx.Response(404), s3)

    with pytest.raises(StorageUploadError, match="404"):
        await uploader.upload_from_url("http://comfy.test:8188/view?filename=missing.png")

    assert s3.puts == []


@pytest.mark.anyio
async def test_bucket_rejection_raises_storage_error() -> None:
    denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject")
    uploader = _uploader(lambda request: httpx.Response(200, content=b"x", headers={"content-type": "image/png"}), FakeS3(denied))

    with pytest.raises(StorageUploadError, match="AccessDenied"):
        await uploader.upload_from_url("http://comfy.test:8188/view?filename=a.png")


@pytest.mark.parametrize(
    "content_type,extension",
    [("image/jpeg", ".jpg"), ("image/webp", ".webp"), ("image/gif", ".gif"), ("image/png", ".png"), ("", ".png")],
)
def test_extension_for_content_type(content_type, extension) -> None:
    assert extension_for_content_type(content_type) == extension


def test_resolve_content_type_defaults_to_png() -> None:
    assert resolve_content_type(None, b"not an image") == "image/png"
    assert resolve_content_type("image/webp; charset=binary", b"") == "image/webp"
